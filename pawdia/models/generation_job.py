from datetime import datetime

from beanie import Document, Indexed, PydanticObjectId
from pydantic import Field


class GenerationJob(Document):
    """One paid AI generation attempt and what happened to its credit."""
    account_id: PydanticObjectId
    request_id: str
    job_key: Indexed(str, unique=True)  # "<account>:<request_id>"
    mode: str = "text_to_image"  # text_to_image, image_to_image
    status: str = "charged"  # charged, succeeded, refunded, refund_failed
    cost: int = 1
    error: str | None = None
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)

    class Settings:
        name = "generation_jobs"
        indexes = [[("account_id", 1), ("created_at", -1)], [("status", 1)]]
