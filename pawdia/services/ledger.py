"""Credit ledger: the only writer of Account.credits.

Every balance mutation is a single conditional find_one_and_update on the
account document, so concurrent callers on any number of API instances are
serialized by MongoDB's single-document atomicity. No balance is ever computed
outside that update.

Idempotency records live in the credit_ledger collection: each entry carries a
unique dedupe_key, "<account_id>:<idempotency_key>" while a caller key is held.
The account keeps a bounded tail of settled entry ids; the update filter
excludes accounts whose tail already holds the entry, which makes re-driving a
pending entry (crashed or concurrent caller) safe. A subtract refused for a
short balance leaves a rejected mark in the same tail, so every caller driving
that entry sees the same outcome even if the balance is topped up afterwards.
"""

from datetime import datetime
from enum import Enum
from typing import Any
from uuid import uuid4

from beanie import PydanticObjectId
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pymongo import ReturnDocument
from pymongo.errors import ConnectionFailure, DuplicateKeyError

from pawdia.core.config import get_settings
from pawdia.core.exceptions import (
    AccountNotFoundError,
    BadRequestError,
    ConflictError,
    StoreUnavailableError,
)
from pawdia.core.logging import get_logger
from pawdia.models.account import Account
from pawdia.models.credit_ledger import CreditLedgerEntry

log = get_logger(__name__)

# Attempts to claim a key that a concurrent rejection is releasing.
_CLAIM_ATTEMPTS = 3
# Attempts to settle an entry while the balance keeps moving across the subtract threshold.
_COMMIT_ATTEMPTS = 5


class LedgerKind(str, Enum):
    ADD = "add"
    SUBTRACT = "subtract"
    SET = "set"


class RejectionReason(str, Enum):
    INSUFFICIENT_BALANCE = "insufficient_balance"
    ALREADY_APPLIED = "already_applied"


class EntryStatus(str, Enum):
    PENDING = "pending"
    APPLIED = "applied"
    REJECTED = "rejected"


class LedgerOperation(BaseModel):
    """A request to mutate one account's balance. requested_at is for audit only."""

    model_config = ConfigDict(frozen=True)

    account_id: PydanticObjectId
    kind: LedgerKind
    amount: int
    idempotency_key: str | None = None
    requested_at: datetime = Field(default_factory=datetime.utcnow)
    reason: str = ""
    actor_id: str | None = None

    @field_validator("idempotency_key", mode="before")
    @classmethod
    def _blank_key_is_none(cls, v: Any) -> Any:
        if isinstance(v, str):
            v = v.strip()
            return v or None
        return v

    @model_validator(mode="after")
    def _check_amount(self) -> "LedgerOperation":
        if self.kind == LedgerKind.SET:
            if self.amount < 0:
                raise BadRequestError("Amount must be non-negative", details={"amount": self.amount})
        elif self.amount <= 0:
            raise BadRequestError("Amount must be positive", details={"amount": self.amount})
        return self


class LedgerResult(BaseModel):
    new_balance: int
    applied: bool
    rejection_reason: RejectionReason | None = None
    previous_balance: int | None = None
    entry_id: str | None = None

    @property
    def replayed(self) -> bool:
        return self.rejection_reason == RejectionReason.ALREADY_APPLIED


def _accounts():
    return Account.get_motor_collection()


def _entries():
    return CreditLedgerEntry.get_motor_collection()


def _dedupe_key(op: LedgerOperation) -> str:
    if op.idempotency_key:
        return f"{op.account_id}:{op.idempotency_key}"
    return f"{op.account_id}:auto:{uuid4().hex}"


async def get_balance(account_id: PydanticObjectId) -> int:
    """Return the stored balance. Raises AccountNotFoundError."""
    try:
        doc = await _accounts().find_one({"_id": account_id}, {"credits": 1})
    except ConnectionFailure as e:
        raise StoreUnavailableError() from e
    if doc is None:
        raise AccountNotFoundError(account_id)
    return int(doc.get("credits", 0))


async def apply(op: LedgerOperation) -> LedgerResult:
    """
    Apply one operation atomically.

    Subtract is rejected (applied=False, insufficient_balance) when the balance is
    below the amount. A key that was already applied returns the original result
    with applied=False and already_applied. Raises AccountNotFoundError, and
    StoreUnavailableError when the store cannot be reached; the latter is safe to
    retry with the same idempotency key.
    """
    try:
        return await _apply(op)
    except ConnectionFailure as e:
        log.warning(
            "ledger_store_unavailable",
            account_id=str(op.account_id),
            kind=op.kind.value,
            idempotency_key=op.idempotency_key,
        )
        raise StoreUnavailableError() from e


async def _apply(op: LedgerOperation) -> LedgerResult:
    exists = await _accounts().find_one({"_id": op.account_id}, {"_id": 1})
    if exists is None:
        raise AccountNotFoundError(op.account_id)

    for _ in range(_CLAIM_ATTEMPTS):
        entry = CreditLedgerEntry(
            account_id=op.account_id,
            kind=op.kind.value,
            amount=op.amount,
            idempotency_key=op.idempotency_key,
            dedupe_key=_dedupe_key(op),
            reason=op.reason,
            actor_id=op.actor_id,
            requested_at=op.requested_at,
        )
        try:
            await entry.insert()
        except DuplicateKeyError:
            existing = await CreditLedgerEntry.find_one(CreditLedgerEntry.dedupe_key == entry.dedupe_key)
            if existing is None:
                # released by a rejection between insert and lookup
                continue
            return await _replay(existing)
        return await _commit(entry)
    raise ConflictError("Idempotency key is busy, retry the request", details={"idempotency_key": op.idempotency_key})


async def _commit(entry: CreditLedgerEntry) -> LedgerResult:
    """
    Drive a pending entry to exactly one outcome.

    The outcome is decided on the account document itself: either the mutation
    is pushed onto ledger_tail, or (subtract against a short balance) a rejected
    mark is. Any later caller re-driving the same entry reads that mark back.
    """
    op_id = str(entry.id)
    for _ in range(_COMMIT_ATTEMPTS):
        result = await _try_apply(entry)
        if result is not None:
            return result
        if LedgerKind(entry.kind) == LedgerKind.SUBTRACT:
            before = await _try_reject(entry)
            if before is not None:
                return await _record_rejection(entry, int(before.get("credits", 0)))

        current = await _accounts().find_one({"_id": entry.account_id}, {"credits": 1, "ledger_tail": 1})
        if current is None:
            await _entries().delete_one({"_id": entry.id})
            raise AccountNotFoundError(entry.account_id)
        balance = int(current.get("credits", 0))
        mark = next((m for m in current.get("ledger_tail") or [] if m.get("op") == op_id), None)
        if mark is None:
            # balance moved between the two conditional updates
            continue
        if mark.get("rejected"):
            return await _record_rejection(entry, balance)
        return await _settled(entry, balance)
    raise ConflictError("Balance is changing too fast, retry the request", details={"entry_id": op_id})


def _tail_push(op_id: str, rejected: bool = False) -> dict[str, Any]:
    mark: dict[str, Any] = {"op": op_id}
    if rejected:
        mark["rejected"] = True
    return {"ledger_tail": {"$each": [mark], "$slice": -get_settings().ledger_tail_size}}


async def _try_apply(entry: CreditLedgerEntry) -> LedgerResult | None:
    op_id = str(entry.id)
    kind = LedgerKind(entry.kind)
    now = datetime.utcnow()

    query: dict[str, Any] = {"_id": entry.account_id, "ledger_tail.op": {"$ne": op_id}}
    if kind == LedgerKind.SUBTRACT:
        query["credits"] = {"$gte": entry.amount}
    delta = 0
    if kind == LedgerKind.SET:
        update: dict[str, Any] = {"$set": {"credits": entry.amount, "updated_at": now}}
    else:
        delta = entry.amount if kind == LedgerKind.ADD else -entry.amount
        update = {"$inc": {"credits": delta}, "$set": {"updated_at": now}}
    update["$push"] = _tail_push(op_id)

    before = await _accounts().find_one_and_update(
        query,
        update,
        projection={"credits": 1},
        return_document=ReturnDocument.BEFORE,
    )
    if before is None:
        return None
    previous = int(before.get("credits", 0))
    new_balance = entry.amount if kind == LedgerKind.SET else previous + delta
    await _entries().update_one(
        {"_id": entry.id},
        {
            "$set": {
                "status": EntryStatus.APPLIED.value,
                "previous_balance": previous,
                "new_balance": new_balance,
                "applied_at": now,
            }
        },
    )
    log.info(
        "ledger_applied",
        account_id=str(entry.account_id),
        entry_id=op_id,
        kind=kind.value,
        amount=entry.amount,
        previous_balance=previous,
        new_balance=new_balance,
        idempotency_key=entry.idempotency_key,
    )
    return LedgerResult(
        new_balance=new_balance,
        applied=True,
        previous_balance=previous,
        entry_id=op_id,
    )


async def _try_reject(entry: CreditLedgerEntry) -> dict | None:
    """Mark a subtract rejected on the account while the balance is still short."""
    op_id = str(entry.id)
    return await _accounts().find_one_and_update(
        {"_id": entry.account_id, "ledger_tail.op": {"$ne": op_id}, "credits": {"$lt": entry.amount}},
        {"$push": _tail_push(op_id, rejected=True), "$set": {"updated_at": datetime.utcnow()}},
        projection={"credits": 1},
        return_document=ReturnDocument.BEFORE,
    )


async def _record_rejection(entry: CreditLedgerEntry, balance: int) -> LedgerResult:
    """Persist the rejection on the entry and release its idempotency key."""
    op_id = str(entry.id)
    released = await _entries().update_one(
        {"_id": entry.id, "status": EntryStatus.PENDING.value},
        {
            "$set": {
                "status": EntryStatus.REJECTED.value,
                "rejection_reason": RejectionReason.INSUFFICIENT_BALANCE.value,
                "previous_balance": balance,
                "new_balance": balance,
                "dedupe_key": f"{entry.account_id}:rejected:{op_id}",
            }
        },
    )
    if released.modified_count:
        log.info(
            "ledger_rejected",
            account_id=str(entry.account_id),
            entry_id=op_id,
            kind=entry.kind,
            amount=entry.amount,
            balance=balance,
            reason=RejectionReason.INSUFFICIENT_BALANCE.value,
        )
    return LedgerResult(
        new_balance=balance,
        applied=False,
        rejection_reason=RejectionReason.INSUFFICIENT_BALANCE,
        previous_balance=balance,
        entry_id=op_id,
    )


async def _settled(entry: CreditLedgerEntry, balance: int) -> LedgerResult:
    """The entry's mutation is on the account's tail already; report it as a replay."""
    op_id = str(entry.id)
    doc = await _entries().find_one({"_id": entry.id})
    if doc and doc.get("status") == EntryStatus.APPLIED.value and doc.get("new_balance") is not None:
        return LedgerResult(
            new_balance=int(doc["new_balance"]),
            applied=False,
            rejection_reason=RejectionReason.ALREADY_APPLIED,
            previous_balance=doc.get("previous_balance"),
            entry_id=op_id,
        )
    # Applied by a caller that has not recorded its result (or crashed before
    # doing so): the exact snapshot is gone, record the balance seen now.
    await _entries().update_one(
        {"_id": entry.id, "status": EntryStatus.PENDING.value},
        {"$set": {"status": EntryStatus.APPLIED.value, "new_balance": balance, "applied_at": datetime.utcnow()}},
    )
    log.warning("ledger_entry_recovered", account_id=str(entry.account_id), entry_id=op_id, balance=balance)
    return LedgerResult(
        new_balance=balance,
        applied=False,
        rejection_reason=RejectionReason.ALREADY_APPLIED,
        entry_id=op_id,
    )


async def _replay(existing: CreditLedgerEntry) -> LedgerResult:
    op_id = str(existing.id)
    if existing.status == EntryStatus.APPLIED.value:
        log.info(
            "ledger_replayed",
            account_id=str(existing.account_id),
            entry_id=op_id,
            idempotency_key=existing.idempotency_key,
        )
        return LedgerResult(
            new_balance=int(existing.new_balance or 0),
            applied=False,
            rejection_reason=RejectionReason.ALREADY_APPLIED,
            previous_balance=existing.previous_balance,
            entry_id=op_id,
        )
    if existing.status == EntryStatus.PENDING.value:
        # in flight elsewhere or left behind by a crash; the tail guard stops a double apply
        log.info("ledger_resume_pending", account_id=str(existing.account_id), entry_id=op_id)
        return await _commit(existing)
    balance = await get_balance(existing.account_id)
    return LedgerResult(
        new_balance=balance,
        applied=False,
        rejection_reason=RejectionReason(existing.rejection_reason or RejectionReason.INSUFFICIENT_BALANCE.value),
        entry_id=op_id,
    )


async def list_entries(account_id: PydanticObjectId, limit: int = 50, offset: int = 0) -> list[CreditLedgerEntry]:
    """Ledger entries for one account, newest first."""
    return (
        await CreditLedgerEntry.find(CreditLedgerEntry.account_id == account_id)
        .sort(-CreditLedgerEntry.created_at)
        .skip(offset)
        .limit(limit)
        .to_list()
    )


async def list_all_entries(
    limit: int = 50,
    offset: int = 0,
    account_id: PydanticObjectId | None = None,
) -> tuple[list[CreditLedgerEntry], int]:
    """Ledger entries across accounts for the admin history view; returns (entries, total)."""
    query = CreditLedgerEntry.find(CreditLedgerEntry.account_id == account_id) if account_id else CreditLedgerEntry.find_all()
    total = await query.count()
    entries = await query.sort(-CreditLedgerEntry.created_at).skip(offset).limit(limit).to_list()
    return entries, total


def entry_to_dict(e: CreditLedgerEntry) -> dict:
    return {
        "id": str(e.id),
        "account_id": str(e.account_id),
        "kind": e.kind,
        "amount": e.amount,
        "status": e.status,
        "previous_balance": e.previous_balance,
        "new_balance": e.new_balance,
        "rejection_reason": e.rejection_reason,
        "idempotency_key": e.idempotency_key,
        "reason": e.reason,
        "actor_id": e.actor_id,
        "requested_at": e.requested_at.isoformat(),
        "created_at": e.created_at.isoformat(),
    }
