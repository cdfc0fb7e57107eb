"""Subscription plans and activation. Plan credit grants go through the ledger."""

from datetime import datetime, timedelta
from typing import Any

from pawdia.core.exceptions import BadRequestError
from pawdia.core.logging import get_logger
from pawdia.models.account import Account
from pawdia.services import accounts as accounts_service
from pawdia.services import ledger
from pawdia.services.ledger import LedgerKind, LedgerOperation, LedgerResult

log = get_logger(__name__)

PLAN_DURATION_DAYS = 30

PLANS: dict[str, dict[str, Any]] = {
    "free": {
        "name": "Free",
        "price": "0.00",
        "credits": 3,
        "features": ["3 free AI generations", "Basic art styles"],
    },
    "basic": {
        "name": "Basic",
        "price": "9.99",
        "credits": 30,
        "features": ["30 AI generations", "All art styles", "Priority processing"],
    },
    "premium": {
        "name": "Premium",
        "price": "19.99",
        "credits": 60,
        "features": ["60 AI generations", "All art styles", "Priority processing", "HD quality"],
    },
}

SUBSCRIPTION_STATUSES = ("active", "cancelled", "expired")


def get_plan(plan: str) -> dict[str, Any]:
    if plan not in PLANS:
        raise BadRequestError("Invalid subscription plan", details={"plan": plan, "allowed": list(PLANS)})
    return PLANS[plan]


def effective_status(account: Account, now: datetime | None = None) -> str | None:
    now = now or datetime.utcnow()
    if (
        account.subscription_status == "active"
        and account.subscription_expires_at is not None
        and account.subscription_expires_at <= now
    ):
        return "expired"
    return account.subscription_status


def has_active_paid_plan(account: Account, now: datetime | None = None) -> bool:
    return (
        account.subscription_plan not in (None, "free")
        and effective_status(account, now) == "active"
    )


def ensure_can_purchase(account: Account, plan: str) -> None:
    """Paid plans cannot be stacked; wait for the current one to expire."""
    get_plan(plan)
    if plan != "free" and has_active_paid_plan(account):
        raise BadRequestError(
            "You already have an active subscription. Please wait until it expires before purchasing a new one."
        )


def profile(account: Account) -> dict[str, Any]:
    return {
        "credits": account.credits,
        "credits_expires_at": account.credits_expires_at.isoformat() if account.credits_expires_at else None,
        "subscription": {
            "plan": account.subscription_plan,
            "status": effective_status(account),
            "expires_at": account.subscription_expires_at.isoformat() if account.subscription_expires_at else None,
        },
    }


async def subscribe_free(account: Account) -> dict[str, Any]:
    """Activate the free plan; its credit grant is keyed so it happens once per account."""
    if has_active_paid_plan(account):
        raise BadRequestError("You already have an active subscription.")
    plan = PLANS["free"]
    grant = await ledger.apply(
        LedgerOperation(
            account_id=account.id,
            kind=LedgerKind.ADD,
            amount=plan["credits"],
            idempotency_key="plan:free",
            reason="free_plan_grant",
        )
    )
    if grant.replayed:
        raise BadRequestError("You have already activated the free subscription. You cannot activate it again.")
    await accounts_service.set_fields(
        account,
        {
            Account.subscription_plan: "free",
            Account.subscription_status: "active",
            Account.subscription_expires_at: None,
        },
    )
    log.info("subscription_activated", account_id=str(account.id), plan="free", credits=plan["credits"])
    return {
        "message": f"Free subscription activated. {plan['credits']} credits granted.",
        "credits": grant.new_balance,
        "subscription": profile(account)["subscription"],
    }


async def activate_paid_plan(account: Account, plan: str, now: datetime | None = None) -> Account:
    """Set plan attributes for a paid plan; the credit grant is applied by the payment capture."""
    get_plan(plan)
    now = now or datetime.utcnow()
    await accounts_service.set_fields(
        account,
        {
            Account.subscription_plan: plan,
            Account.subscription_status: "active",
            Account.subscription_expires_at: now + timedelta(days=PLAN_DURATION_DAYS),
        },
    )
    log.info("subscription_activated", account_id=str(account.id), plan=plan)
    return account


async def admin_update_subscription(
    account: Account,
    actor_id: str,
    plan: str | None = None,
    status: str | None = None,
    expires_at: datetime | None = None,
    set_credits: int | None = None,
    add_plan_credits: bool = False,
) -> dict[str, Any]:
    """
    Admin override of plan attributes and credits.
    Credit changes run as separate ledger calls in a fixed order: Set first, then the
    plan grant Add, so asking for both yields set_credits + plan credits.
    """
    fields: dict[Any, Any] = {}
    if plan is not None:
        get_plan(plan)
        fields[Account.subscription_plan] = plan
    if status is not None:
        if status not in SUBSCRIPTION_STATUSES:
            raise BadRequestError("Invalid subscription status", details={"allowed": list(SUBSCRIPTION_STATUSES)})
        fields[Account.subscription_status] = status
    if expires_at is not None:
        fields[Account.subscription_expires_at] = expires_at
    if fields:
        await accounts_service.set_fields(account, fields)

    results: list[LedgerResult] = []
    if set_credits is not None:
        results.append(
            await ledger.apply(
                LedgerOperation(
                    account_id=account.id,
                    kind=LedgerKind.SET,
                    amount=set_credits,
                    reason="admin_subscription_set",
                    actor_id=actor_id,
                )
            )
        )
    if add_plan_credits:
        grant_plan = plan or account.subscription_plan or "free"
        results.append(
            await ledger.apply(
                LedgerOperation(
                    account_id=account.id,
                    kind=LedgerKind.ADD,
                    amount=get_plan(grant_plan)["credits"],
                    reason=f"admin_plan_grant:{grant_plan}",
                    actor_id=actor_id,
                )
            )
        )
    credits = results[-1].new_balance if results else await ledger.get_balance(account.id)
    return {
        "success": True,
        "credits": credits,
        "subscription": profile(account)["subscription"],
        "ledger": [r.model_dump(mode="json") for r in results],
    }
