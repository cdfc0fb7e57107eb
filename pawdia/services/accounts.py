"""Account registration, login and attribute updates.

Accounts are never written with a full-document save after creation: credits
belong to the ledger, everything else goes through targeted $set updates.
"""

import re
from datetime import datetime
from typing import Any

from beanie import PydanticObjectId
from pymongo.errors import DuplicateKeyError

from pawdia.core import audit
from pawdia.core.config import get_settings
from pawdia.core.exceptions import (
    AccountNotFoundError,
    BadRequestError,
    ConflictError,
    UnauthorizedError,
)
from pawdia.core.logging import get_logger
from pawdia.core.security import hash_password, verify_password
from pawdia.models.account import Account
from pawdia.services import ledger
from pawdia.services.ledger import LedgerKind, LedgerOperation

log = get_logger(__name__)

MIN_PASSWORD_LENGTH = 8


def _normalize_email(email: str) -> str:
    return (email or "").strip().lower()


async def register(email: str, password: str, name: str = "") -> Account:
    """Create an account with zero credits, then issue the signup grant through the ledger."""
    email = _normalize_email(email)
    if "@" not in email:
        raise BadRequestError("Invalid email")
    if len(password or "") < MIN_PASSWORD_LENGTH:
        raise BadRequestError(f"Password must be at least {MIN_PASSWORD_LENGTH} characters")
    if await Account.find_one(Account.email == email):
        raise ConflictError("Email already registered")
    account = Account(
        email=email,
        name=(name or "").strip(),
        password_hash=hash_password(password),
        credits=0,
    )
    try:
        await account.insert()
    except DuplicateKeyError as e:
        raise ConflictError("Email already registered") from e
    log.info("account_created", account_id=str(account.id), email=account.email)
    await audit.record("account_created", account.id, metadata={"email": email})

    bonus = get_settings().signup_bonus_credits
    if bonus > 0:
        await ledger.apply(
            LedgerOperation(
                account_id=account.id,
                kind=LedgerKind.ADD,
                amount=bonus,
                idempotency_key="signup",
                reason="signup_bonus",
            )
        )
    return await Account.get(account.id)


async def authenticate(email: str, password: str) -> Account:
    account = await Account.find_one(Account.email == _normalize_email(email))
    if not account or not verify_password(password or "", account.password_hash):
        raise UnauthorizedError("Invalid email or password")
    await account.set({Account.last_login_at: datetime.utcnow()})
    log.info("account_login", account_id=str(account.id))
    return account


async def get_account(account_id: PydanticObjectId) -> Account:
    account = await Account.get(account_id)
    if not account:
        raise AccountNotFoundError(account_id)
    return account


async def set_fields(account: Account, fields: dict[Any, Any]) -> Account:
    """Targeted $set of non-credit attributes."""
    if any(str(k) in ("credits", "ledger_tail") for k in fields):
        raise BadRequestError("Credits can only change through the ledger")
    fields = {**fields, Account.updated_at: datetime.utcnow()}
    await account.set(fields)
    return account


async def invalidate_sessions(account: Account) -> None:
    await account.inc({Account.session_version: 1})


async def list_accounts(page: int, limit: int, search: str = "") -> tuple[list[Account], int]:
    """Admin listing, newest first, optional case-insensitive match on name or email."""
    if search:
        pattern = re.escape(search.strip())
        query = Account.find(
            {"$or": [{"email": {"$regex": pattern, "$options": "i"}}, {"name": {"$regex": pattern, "$options": "i"}}]}
        )
    else:
        query = Account.find_all()
    total = await query.count()
    items = await query.sort(-Account.created_at).skip((page - 1) * limit).limit(limit).to_list()
    return items, total


def session_payload_for_account(account: Account) -> dict:
    return {"account_id": str(account.id), "session_version": account.session_version}


def account_to_dict(account: Account) -> dict:
    """Public view; never exposes the password hash or ledger bookkeeping."""
    return {
        "id": str(account.id),
        "email": account.email,
        "name": account.name,
        "role": account.role,
        "credits": account.credits,
        "credits_expires_at": account.credits_expires_at.isoformat() if account.credits_expires_at else None,
        "subscription": {
            "plan": account.subscription_plan,
            "status": account.subscription_status,
            "expires_at": account.subscription_expires_at.isoformat() if account.subscription_expires_at else None,
        },
        "created_at": account.created_at.isoformat(),
        "last_login_at": account.last_login_at.isoformat() if account.last_login_at else None,
    }
