from datetime import datetime
from typing import Any

from beanie import Document, PydanticObjectId
from pydantic import Field


class AuditLog(Document):
    """Append-only record of a credit-affecting or account-level action."""
    event: str  # account_created, payment_captured, admin_credits_add, ...
    account_id: PydanticObjectId | None = None  # account the action applies to
    actor_id: str | None = None  # admin who acted; None when the account acted itself
    entity_type: str = "account"
    entity_id: str | None = None
    request_id: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=datetime.utcnow)

    class Settings:
        name = "audit_logs"
        indexes = [
            [("account_id", 1), ("created_at", -1)],
            [("event", 1), ("created_at", -1)],
        ]
