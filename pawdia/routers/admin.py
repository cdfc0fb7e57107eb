from datetime import datetime

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from pawdia.core import audit
from pawdia.core.config import get_settings
from pawdia.core.exceptions import BadRequestError
from pawdia.core.logging import get_logger
from pawdia.core.pagination import page_meta, paginate
from pawdia.deps import parse_object_id, require_admin
from pawdia.models.account import Account
from pawdia.services import accounts as accounts_service
from pawdia.services import analytics as analytics_service
from pawdia.services import credit_expiry, ledger
from pawdia.services import subscriptions as subscriptions_service
from pawdia.services.ledger import LedgerKind, LedgerOperation, RejectionReason

router = APIRouter()
log = get_logger(__name__)


class CreditChangeRequest(BaseModel):
    amount: int = Field(ge=1, le=100_000)
    reason: str = Field(default="", max_length=500)


class CreditSetRequest(BaseModel):
    amount: int = Field(ge=0)
    reason: str = Field(default="", max_length=500)


class SubscriptionUpdateRequest(BaseModel):
    plan: str | None = None
    status: str | None = None
    expires_at: datetime | None = None
    set_credits: int | None = Field(default=None, ge=0)
    add_plan_credits: bool = False


async def _credit_change(admin: Account, user_id: str, kind: LedgerKind, amount: int, reason: str) -> dict:
    target = await accounts_service.get_account(parse_object_id(user_id, "user id"))
    result = await ledger.apply(
        LedgerOperation(
            account_id=target.id,
            kind=kind,
            amount=amount,
            reason=reason or f"admin_{kind.value}",
            actor_id=str(admin.id),
        )
    )
    if result.rejection_reason == RejectionReason.INSUFFICIENT_BALANCE:
        raise BadRequestError("Insufficient credits", details={"current_credits": result.new_balance})
    log.info(
        "admin_credit_change",
        admin_id=str(admin.id),
        target_id=str(target.id),
        kind=kind.value,
        amount=amount,
        previous=result.previous_balance,
        credits=result.new_balance,
    )
    await audit.record(
        f"admin_credits_{kind.value}",
        target.id,
        actor_id=str(admin.id),
        entity_type="ledger_entry",
        entity_id=result.entry_id,
        metadata={"amount": amount, "reason": reason, "previous": result.previous_balance, "credits": result.new_balance},
    )
    return {
        "success": True,
        "credits": result.new_balance,
        "previous_credits": result.previous_balance,
        "entry_id": result.entry_id,
    }


@router.get("/users")
async def admin_users(
    admin: Account = Depends(require_admin),
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    search: str = Query("", max_length=100),
):
    """Admin: accounts newest first, optional name/email search."""
    items, total = await accounts_service.list_accounts(page, limit, search)
    return {
        "users": [accounts_service.account_to_dict(a) for a in items],
        "pagination": page_meta(page, limit, total),
    }


@router.get("/users/{user_id}")
async def admin_user(user_id: str, admin: Account = Depends(require_admin)):
    """Admin: one account with its most recent audit events."""
    target = await accounts_service.get_account(parse_object_id(user_id, "user id"))
    events = await audit.recent_for_account(target.id)
    return {
        "user": accounts_service.account_to_dict(target),
        "audit": [audit.entry_to_dict(e) for e in events],
    }


@router.post("/users/{user_id}/credits/add")
async def admin_credits_add(user_id: str, body: CreditChangeRequest, admin: Account = Depends(require_admin)):
    return await _credit_change(admin, user_id, LedgerKind.ADD, body.amount, body.reason)


@router.post("/users/{user_id}/credits/deduct")
async def admin_credits_deduct(user_id: str, body: CreditChangeRequest, admin: Account = Depends(require_admin)):
    return await _credit_change(admin, user_id, LedgerKind.SUBTRACT, body.amount, body.reason)


@router.put("/users/{user_id}/credits/set")
async def admin_credits_set(user_id: str, body: CreditSetRequest, admin: Account = Depends(require_admin)):
    if body.amount > get_settings().admin_max_set_credits:
        raise BadRequestError("Invalid credits value", details={"max": get_settings().admin_max_set_credits})
    return await _credit_change(admin, user_id, LedgerKind.SET, body.amount, body.reason)


@router.put("/users/{user_id}/subscription")
async def admin_subscription_update(
    user_id: str,
    body: SubscriptionUpdateRequest,
    admin: Account = Depends(require_admin),
):
    """Admin: plan/status/expiry override; set_credits then add_plan_credits, in that order."""
    if body.set_credits is not None and body.set_credits > get_settings().admin_max_set_credits:
        raise BadRequestError("Invalid setCredits value", details={"max": get_settings().admin_max_set_credits})
    target = await accounts_service.get_account(parse_object_id(user_id, "user id"))
    out = await subscriptions_service.admin_update_subscription(
        target,
        actor_id=str(admin.id),
        plan=body.plan,
        status=body.status,
        expires_at=body.expires_at,
        set_credits=body.set_credits,
        add_plan_credits=body.add_plan_credits,
    )
    await audit.record(
        "admin_update_subscription",
        target.id,
        actor_id=str(admin.id),
        metadata=body.model_dump(mode="json", exclude_none=True),
    )
    return out


@router.get("/credits/history")
async def admin_credit_history(
    admin: Account = Depends(require_admin),
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    user_id: str | None = Query(None),
):
    """Admin: ledger operations across accounts, newest first."""
    limit, offset = paginate(limit, offset)
    account_id = parse_object_id(user_id, "user id") if user_id else None
    entries, total = await ledger.list_all_entries(limit=limit, offset=offset, account_id=account_id)
    return {
        "operations": [ledger.entry_to_dict(e) for e in entries],
        "total": total,
        "limit": limit,
        "offset": offset,
    }


@router.get("/analytics/stats")
async def admin_stats(admin: Account = Depends(require_admin)):
    return await analytics_service.stats()


@router.post("/credits/expire")
async def admin_expire_credits(admin: Account = Depends(require_admin), limit: int = Query(500, ge=1, le=5000)):
    """Admin: zero every balance whose purchased credits are past their expiry."""
    zeroed = await credit_expiry.sweep_expired(limit=limit)
    log.info("admin_credit_expiry_sweep", admin_id=str(admin.id), zeroed=zeroed)
    return {"success": True, "expired_accounts": zeroed}
