from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel

from pawdia.core.pagination import paginate
from pawdia.deps import get_current_account
from pawdia.models.account import Account
from pawdia.services import payments as payments_service

router = APIRouter()


class CreateOrderRequest(BaseModel):
    package_id: str | None = None  # e.g. "credits-25"
    plan: str | None = None  # e.g. "basic"


@router.get("/packages")
async def credit_packages():
    return payments_service.CREDIT_PACKAGES


@router.post("/orders")
async def create_order(body: CreateOrderRequest, account: Account = Depends(get_current_account)):
    """Create PayPal order; frontend sends the buyer to approval_url, then calls capture."""
    return await payments_service.create_checkout(account, package_id=body.package_id, plan=body.plan)


@router.post("/orders/{order_id}/capture")
async def capture_order(order_id: str, account: Account = Depends(get_current_account)):
    """Capture an approved order and add its credits (idempotent per order)."""
    return await payments_service.capture(account, order_id)


@router.get("/orders")
async def my_orders(
    account: Account = Depends(get_current_account),
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
):
    limit, offset = paginate(limit, offset)
    orders = await payments_service.list_orders(account.id, limit=limit, offset=offset)
    return {"orders": [payments_service.order_to_dict(o) for o in orders], "limit": limit, "offset": offset}


@router.post("/webhook")
async def paypal_webhook(request: Request):
    """PayPal webhook: PAYMENT.CAPTURE.COMPLETED -> apply credits (idempotent)."""
    body = await request.body()
    return await payments_service.handle_webhook(body, dict(request.headers))
