from datetime import datetime

from beanie import Document, Indexed, PydanticObjectId
from pydantic import Field


class CreditLedgerEntry(Document):
    """One ledger operation against an account, including rejected ones."""
    account_id: PydanticObjectId
    kind: str  # add, subtract, set
    amount: int
    idempotency_key: str | None = None
    # "<account>:<idempotency_key>" while the key is held, random otherwise
    dedupe_key: Indexed(str, unique=True)
    status: str = "pending"  # pending, applied, rejected
    previous_balance: int | None = None
    new_balance: int | None = None
    rejection_reason: str | None = None
    reason: str = ""
    actor_id: str | None = None
    requested_at: datetime = Field(default_factory=datetime.utcnow)
    applied_at: datetime | None = None
    created_at: datetime = Field(default_factory=datetime.utcnow)

    class Settings:
        name = "credit_ledger"
        indexes = [
            [("account_id", 1), ("created_at", -1)],
            [("created_at", -1)],
        ]
