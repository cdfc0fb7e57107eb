"""PayPal checkout: credit packs and paid plans, idempotent credit apply on capture and webhook."""

import json
from datetime import datetime
from typing import Any

from beanie import PydanticObjectId

from pawdia.core import audit
from pawdia.core.config import get_settings
from pawdia.core.exceptions import BadRequestError, NotFoundError
from pawdia.core.logging import get_logger
from pawdia.models.account import Account
from pawdia.models.payment_order import PaymentOrder
from pawdia.services import credit_expiry, ledger, paypal
from pawdia.services import subscriptions as subscriptions_service
from pawdia.services.ledger import LedgerKind, LedgerOperation

log = get_logger(__name__)

CREDIT_PACKAGES: dict[str, dict[str, Any]] = {
    "credits-10": {"credits": 10, "bonus": 0, "price": "4.99"},
    "credits-25": {"credits": 25, "bonus": 5, "price": "9.99"},
    "credits-60": {"credits": 60, "bonus": 15, "price": "19.99"},
    "credits-150": {"credits": 150, "bonus": 50, "price": "39.99"},
}

CAPTURE_COMPLETED_EVENT = "PAYMENT.CAPTURE.COMPLETED"


def payment_key(order_id: str) -> str:
    return f"paypal:{order_id}"


async def create_checkout(account: Account, package_id: str | None = None, plan: str | None = None) -> dict:
    """Create a PayPal order for a credit pack or a paid plan; return order_id and approval link."""
    if bool(package_id) == bool(plan):
        raise BadRequestError("Provide exactly one of package_id or plan")
    currency = get_settings().paypal_currency
    if package_id:
        pack = CREDIT_PACKAGES.get(package_id)
        if not pack:
            raise BadRequestError("Invalid credit package", details={"allowed": list(CREDIT_PACKAGES)})
        credits = pack["credits"] + pack["bonus"]
        amount = pack["price"]
        name = f"{credits} AI Generation Credits"
        description = f"Purchase {credits} credits for AI pet portrait generation"
        purpose = "credits"
    else:
        if plan == "free":
            raise BadRequestError("The free plan does not require payment")
        subscriptions_service.ensure_can_purchase(account, plan)
        details = subscriptions_service.get_plan(plan)
        credits = details["credits"]
        amount = details["price"]
        name = f"{details['name']} subscription"
        description = f"{details['name']} plan with {credits} AI generations"
        purpose = "subscription"

    order = await paypal.create_order(amount, currency, name, description)
    order_id = order.get("id")
    if not order_id:
        raise BadRequestError("PayPal returned no order id")
    await PaymentOrder(
        order_id=order_id,
        account_id=account.id,
        purpose=purpose,
        package_id=package_id,
        plan=plan,
        credits=credits,
        amount=amount,
        currency=currency,
    ).insert()
    log.info("payment_order_created", account_id=str(account.id), order_id=order_id, purpose=purpose, amount=amount)
    return {
        "order_id": order_id,
        "approval_url": paypal.approval_url(order),
        "amount": amount,
        "currency": currency,
        "credits": credits,
        "status": "created",
    }


async def fulfill(order: PaymentOrder, capture_id: str | None, source: str) -> dict:
    """Grant the order's credits once (keyed by PayPal order id), activate the plan, mark completed."""
    result = await ledger.apply(
        LedgerOperation(
            account_id=order.account_id,
            kind=LedgerKind.ADD,
            amount=order.credits,
            idempotency_key=payment_key(order.order_id),
            reason="credit_purchase" if order.purpose == "credits" else f"subscription:{order.plan}",
        )
    )
    if order.status != "completed":
        if order.purpose == "subscription" and order.plan:
            account = await Account.get(order.account_id)
            if account:
                await subscriptions_service.activate_paid_plan(account, order.plan)
        await PaymentOrder.get_motor_collection().update_one(
            {"_id": order.id, "status": {"$ne": "completed"}},
            {"$set": {"status": "completed", "capture_id": capture_id, "completed_at": datetime.utcnow()}},
        )
    if result.applied:
        await credit_expiry.extend_expiry(order.account_id)
        log.info(
            "payment_fulfilled",
            account_id=str(order.account_id),
            order_id=order.order_id,
            credits=order.credits,
            source=source,
        )
        await audit.record(
            "payment_captured",
            order.account_id,
            entity_type="payment",
            entity_id=order.order_id,
            metadata={"amount": order.amount, "currency": order.currency, "credits": order.credits, "source": source},
        )
    return {
        "success": True,
        "order_id": order.order_id,
        "credits_added": order.credits if result.applied else 0,
        "credits": result.new_balance,
        "already_processed": result.replayed,
    }


async def capture(account: Account, order_id: str) -> dict:
    """Capture an approved order at PayPal and fulfil it."""
    order = await PaymentOrder.find_one(PaymentOrder.order_id == order_id)
    if not order or order.account_id != account.id:
        raise NotFoundError("Order not found")
    if order.status == "completed":
        return await fulfill(order, order.capture_id, source="capture")
    result = await paypal.capture_order(order_id)
    status = result.get("status")
    if status != "COMPLETED":
        await order.set({PaymentOrder.status: "failed"})
        log.warning("payment_capture_not_completed", order_id=order_id, paypal_status=status)
        raise BadRequestError("Payment capture failed", details={"paypal_status": status})
    return await fulfill(order, paypal.capture_id(result), source="capture")


async def handle_webhook(payload: bytes, headers: dict[str, str]) -> dict:
    """Verify with PayPal and apply credits idempotently (PAYMENT.CAPTURE.COMPLETED)."""
    try:
        event = json.loads(payload.decode())
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise BadRequestError("Invalid webhook payload") from e
    if not await paypal.verify_webhook_signature(headers, event):
        raise BadRequestError("Invalid webhook signature")
    event_type = event.get("event_type")
    if event_type != CAPTURE_COMPLETED_EVENT:
        return {"status": "ignored", "event_type": event_type}
    resource = event.get("resource") or {}
    order_id = ((resource.get("supplementary_data") or {}).get("related_ids") or {}).get("order_id")
    order = await PaymentOrder.find_one(PaymentOrder.order_id == order_id) if order_id else None
    if not order:
        log.warning("webhook_unknown_order", order_id=order_id, event_id=event.get("id"))
        return {"status": "ignored", "event_type": event_type}
    out = await fulfill(order, resource.get("id"), source="webhook")
    return {"status": "ok", **out}


async def list_orders(account_id: PydanticObjectId, limit: int = 50, offset: int = 0) -> list[PaymentOrder]:
    return (
        await PaymentOrder.find(PaymentOrder.account_id == account_id)
        .sort(-PaymentOrder.created_at)
        .skip(offset)
        .limit(limit)
        .to_list()
    )


def order_to_dict(o: PaymentOrder) -> dict:
    return {
        "order_id": o.order_id,
        "purpose": o.purpose,
        "package_id": o.package_id,
        "plan": o.plan,
        "credits": o.credits,
        "amount": o.amount,
        "currency": o.currency,
        "status": o.status,
        "created_at": o.created_at.isoformat(),
        "completed_at": o.completed_at.isoformat() if o.completed_at else None,
    }
