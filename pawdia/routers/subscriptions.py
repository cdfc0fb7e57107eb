from fastapi import APIRouter, Depends
from pydantic import BaseModel

from pawdia.core.exceptions import BadRequestError
from pawdia.deps import get_current_account
from pawdia.models.account import Account
from pawdia.services import subscriptions as subscriptions_service

router = APIRouter()


class SubscribeRequest(BaseModel):
    plan: str = "free"


@router.get("/plans")
async def subscription_plans():
    return subscriptions_service.PLANS


@router.get("/profile")
async def subscription_profile(account: Account = Depends(get_current_account)):
    """Current credits and subscription attributes."""
    return subscriptions_service.profile(account)


@router.post("/subscribe")
async def subscribe(body: SubscribeRequest, account: Account = Depends(get_current_account)):
    """Activate the free plan. Paid plans are activated by capturing a PayPal order."""
    subscriptions_service.get_plan(body.plan)
    if body.plan != "free":
        raise BadRequestError("Paid plans require checkout", details={"checkout": "/v1/payments/orders"})
    return await subscriptions_service.subscribe_free(account)
