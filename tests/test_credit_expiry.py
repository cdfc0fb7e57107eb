"""Purchased credits expire; free credits are permanent."""

from datetime import datetime, timedelta

from pawdia.models.account import Account
from pawdia.models.credit_ledger import CreditLedgerEntry
from pawdia.services import credit_expiry, ledger
from pawdia.services.ledger import LedgerKind, LedgerOperation


async def expiring(make_account, credits, expires_at):
    account = await make_account(credits=credits)
    await Account.get_motor_collection().update_one(
        {"_id": account.id}, {"$set": {"credits_expires_at": expires_at}}
    )
    return await Account.get(account.id)


async def test_sweep_zeroes_only_expired_balances(make_account):
    now = datetime.utcnow()
    expired = await expiring(make_account, 5, now - timedelta(days=1))
    expired_empty = await expiring(make_account, 0, now - timedelta(days=2))
    current = await expiring(make_account, 5, now + timedelta(days=3))
    permanent = await make_account(credits=3)

    assert await credit_expiry.sweep_expired(now=now) == 1

    assert await ledger.get_balance(expired.id) == 0
    assert await ledger.get_balance(expired_empty.id) == 0
    assert await ledger.get_balance(current.id) == 5
    assert await ledger.get_balance(permanent.id) == 3
    assert (await Account.get(expired.id)).credits_expires_at is None
    assert (await Account.get(expired_empty.id)).credits_expires_at is None
    assert (await Account.get(current.id)).credits_expires_at is not None

    entries = await CreditLedgerEntry.find(CreditLedgerEntry.reason == credit_expiry.EXPIRY_REASON).to_list()
    assert [e.account_id for e in entries] == [expired.id]
    assert (entries[0].previous_balance, entries[0].new_balance) == (5, 0)

    assert await credit_expiry.sweep_expired(now=now) == 0


async def test_expiry_is_recorded_once_per_deadline(make_account):
    deadline = datetime.utcnow() - timedelta(hours=1)
    account = await expiring(make_account, 4, deadline)
    stale = account.model_copy()

    await credit_expiry.expire_if_due(account)
    await ledger.apply(LedgerOperation(account_id=account.id, kind=LedgerKind.ADD, amount=2))
    # a second checker holding the old snapshot must not wipe the new credits
    fresh = await credit_expiry.expire_if_due(stale)
    assert fresh.credits == 2
    assert await CreditLedgerEntry.find(CreditLedgerEntry.reason == credit_expiry.EXPIRY_REASON).count() == 1


async def test_extend_expiry(make_account):
    account = await make_account()
    now = datetime.utcnow()
    expires_at = await credit_expiry.extend_expiry(account.id, now=now)
    assert expires_at == now + timedelta(days=credit_expiry.CREDIT_LIFETIME_DAYS)
    assert (await Account.get(account.id)).credits_expires_at is not None


async def test_me_expires_credits(client, make_account, auth_headers):
    account = await expiring(make_account, 7, datetime.utcnow() - timedelta(minutes=5))
    r = await client.get("/v1/auth/me", headers=auth_headers(account))
    assert r.status_code == 200
    assert r.json()["credits"] == 0
    assert r.json()["credits_expires_at"] is None


async def test_admin_sweep_endpoint(client, make_account, auth_headers):
    admin = await make_account(role="admin")
    user = await expiring(make_account, 2, datetime.utcnow() - timedelta(days=1))
    r = await client.post("/v1/admin/credits/expire", headers=auth_headers(admin))
    assert r.status_code == 200
    assert r.json() == {"success": True, "expired_accounts": 1}
    assert await ledger.get_balance(user.id) == 0
