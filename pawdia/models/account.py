from datetime import datetime

from beanie import Document, Indexed
from pydantic import BaseModel, Field


class LedgerMark(BaseModel):
    """Id of a ledger entry settled on this account; rejected for a refused subtract."""
    op: str
    rejected: bool = False


class Account(Document):
    email: Indexed(str, unique=True)
    name: str = ""
    password_hash: str
    role: str = "user"  # "user" | "admin"
    credits: int = 0  # written only by services.ledger
    credits_expires_at: datetime | None = None  # None: credits never expire
    subscription_plan: str | None = None
    subscription_status: str | None = None  # "active" | "cancelled" | "expired"
    subscription_expires_at: datetime | None = None
    session_version: int = 0
    ledger_tail: list[LedgerMark] = Field(default_factory=list)
    last_login_at: datetime | None = None
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)

    class Settings:
        name = "accounts"
