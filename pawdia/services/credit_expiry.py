"""Purchased credits expire 30 days after the last paid grant; free credits never expire.

Expiry zeroes the balance through the ledger (Set 0) keyed by the expiry
timestamp, so a sweep and an on-request check racing on the same account
record a single entry.
"""

from datetime import datetime, timedelta

from beanie import PydanticObjectId

from pawdia.core.logging import get_logger
from pawdia.models.account import Account
from pawdia.services import ledger
from pawdia.services.ledger import LedgerKind, LedgerOperation

log = get_logger(__name__)

CREDIT_LIFETIME_DAYS = 30
EXPIRY_REASON = "credits_expired"


def expiry_key(expires_at: datetime) -> str:
    return f"expire:{expires_at.isoformat()}"


async def extend_expiry(account_id: PydanticObjectId, now: datetime | None = None) -> datetime:
    """Push the account's credit expiry to CREDIT_LIFETIME_DAYS from now."""
    expires_at = (now or datetime.utcnow()) + timedelta(days=CREDIT_LIFETIME_DAYS)
    await Account.get_motor_collection().update_one(
        {"_id": account_id},
        {"$set": {"credits_expires_at": expires_at, "updated_at": datetime.utcnow()}},
    )
    return expires_at


async def expire_if_due(account: Account, now: datetime | None = None) -> Account:
    """Zero an account whose credits have expired and clear its expiry. Returns the fresh account."""
    now = now or datetime.utcnow()
    expires_at = account.credits_expires_at
    if expires_at is None or expires_at >= now:
        return account
    if account.credits > 0:
        result = await ledger.apply(
            LedgerOperation(
                account_id=account.id,
                kind=LedgerKind.SET,
                amount=0,
                idempotency_key=expiry_key(expires_at),
                reason=EXPIRY_REASON,
            )
        )
        if result.applied:
            log.info(
                "credits_expired",
                account_id=str(account.id),
                expired_credits=result.previous_balance,
                expires_at=expires_at.isoformat(),
            )
    await Account.get_motor_collection().update_one(
        {"_id": account.id, "credits_expires_at": expires_at},
        {"$set": {"credits_expires_at": None}},
    )
    return await Account.get(account.id) or account


async def sweep_expired(now: datetime | None = None, limit: int = 500) -> int:
    """Expire every due account (up to limit). Returns how many balances were zeroed."""
    now = now or datetime.utcnow()
    due = await Account.find({"credits_expires_at": {"$ne": None, "$lt": now}}).limit(limit).to_list()
    zeroed = 0
    for account in due:
        had_credits = account.credits > 0
        fresh = await expire_if_due(account, now=now)
        if had_credits and fresh.credits == 0:
            zeroed += 1
    log.info("credits_expired_sweep", scanned=len(due), zeroed=zeroed)
    return zeroed
