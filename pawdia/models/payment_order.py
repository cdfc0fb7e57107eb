from datetime import datetime

from beanie import Document, Indexed, PydanticObjectId
from pydantic import Field


class PaymentOrder(Document):
    """PayPal order_id -> account for capture and webhook attribution."""
    order_id: Indexed(str, unique=True)
    account_id: PydanticObjectId
    purpose: str  # credits, subscription
    package_id: str | None = None
    plan: str | None = None
    credits: int
    amount: str  # decimal string as sent to PayPal
    currency: str = "USD"
    status: str = "pending"  # pending, completed, failed
    capture_id: str | None = None
    created_at: datetime = Field(default_factory=datetime.utcnow)
    completed_at: datetime | None = None

    class Settings:
        name = "payment_orders"
        indexes = [[("account_id", 1), ("created_at", -1)], [("status", 1)]]
