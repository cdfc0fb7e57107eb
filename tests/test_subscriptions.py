from datetime import datetime, timedelta

import pytest

from pawdia.core.exceptions import BadRequestError
from pawdia.models.account import Account
from pawdia.services import accounts as accounts_service
from pawdia.services import ledger
from pawdia.services import subscriptions as subscriptions_service


async def test_free_plan_grants_once(make_account):
    account = await make_account()
    out = await subscriptions_service.subscribe_free(account)
    assert out["credits"] == 3
    assert out["subscription"]["plan"] == "free"
    with pytest.raises(BadRequestError):
        await subscriptions_service.subscribe_free(await Account.get(account.id))
    assert await ledger.get_balance(account.id) == 3


async def test_free_plan_blocked_by_active_paid_plan(make_account):
    account = await make_account()
    await subscriptions_service.activate_paid_plan(account, "premium")
    with pytest.raises(BadRequestError):
        await subscriptions_service.subscribe_free(account)


async def test_paid_plan_expiry(make_account):
    account = await make_account()
    now = datetime.utcnow()
    await subscriptions_service.activate_paid_plan(account, "basic", now=now - timedelta(days=31))
    assert subscriptions_service.effective_status(account) == "expired"
    assert not subscriptions_service.has_active_paid_plan(account)
    subscriptions_service.ensure_can_purchase(account, "premium")


def test_unknown_plan():
    with pytest.raises(BadRequestError):
        subscriptions_service.get_plan("platinum")


async def test_admin_update_sets_then_adds(make_account):
    account = await make_account(credits=40)
    admin = await make_account(role="admin")
    out = await subscriptions_service.admin_update_subscription(
        account,
        actor_id=str(admin.id),
        plan="basic",
        status="active",
        set_credits=10,
        add_plan_credits=True,
    )
    assert out["credits"] == 40
    assert [r["new_balance"] for r in out["ledger"]] == [10, 40]
    assert out["subscription"]["plan"] == "basic"
    assert await ledger.get_balance(account.id) == 40


async def test_admin_update_only_attributes(make_account):
    account = await make_account(credits=5)
    out = await subscriptions_service.admin_update_subscription(account, actor_id="x", status="cancelled")
    assert out["credits"] == 5
    assert out["ledger"] == []
    assert (await Account.get(account.id)).subscription_status == "cancelled"
    with pytest.raises(BadRequestError):
        await subscriptions_service.admin_update_subscription(account, actor_id="x", status="paused")


async def test_set_fields_refuses_credits(make_account):
    account = await make_account()
    with pytest.raises(BadRequestError):
        await accounts_service.set_fields(account, {Account.credits: 100})
