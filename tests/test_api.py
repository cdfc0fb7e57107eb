"""HTTP surface: sessions, error schema, generation, admin credit operations."""

import pytest

from pawdia.services import ai_provider, ledger


async def test_health(client):
    r = await client.get("/health")
    assert r.status_code == 200
    assert r.json() == {"status": "ok"}


async def test_register_login_me(client):
    r = await client.post("/v1/auth/register", json={"email": "Rex@Example.com", "password": "woofwoof1", "name": "Rex"})
    assert r.status_code == 201
    assert r.json()["user"]["email"] == "rex@example.com"
    assert r.json()["user"]["credits"] == 0

    r = await client.post("/v1/auth/register", json={"email": "rex@example.com", "password": "woofwoof1"})
    assert r.status_code == 409

    r = await client.post("/v1/auth/login", json={"email": "rex@example.com", "password": "wrong-pass"})
    assert r.status_code == 401
    assert r.json()["error"]["code"] == "UNAUTHORIZED"

    r = await client.post("/v1/auth/login", json={"email": "rex@example.com", "password": "woofwoof1"})
    token = r.json()["token"]
    r = await client.get("/v1/auth/me", headers={"Authorization": f"Bearer {token}"})
    assert r.status_code == 200
    assert r.json()["name"] == "Rex"


async def test_logout_all_invalidates_tokens(client, make_account, auth_headers):
    account = await make_account()
    headers = auth_headers(account)
    r = await client.post("/v1/auth/logout-all", headers=headers)
    assert r.status_code == 200
    r = await client.get("/v1/auth/me", headers=headers)
    assert r.status_code == 401


async def test_error_schema_has_request_id(client):
    r = await client.get("/v1/credits/balance", headers={"X-Request-ID": "rid-1"})
    assert r.status_code == 401
    body = r.json()
    assert body["error"]["code"] == "UNAUTHORIZED"
    assert body["request_id"] == "rid-1"
    assert r.headers["X-Request-ID"] == "rid-1"


async def test_balance_and_ledger(client, make_account, auth_headers):
    account = await make_account(credits=4)
    r = await client.get("/v1/credits/balance", headers=auth_headers(account))
    assert r.json() == {"balance": 4}
    r = await client.get("/v1/credits/ledger", headers=auth_headers(account))
    assert r.json()["entries"][0]["kind"] == "set"


async def test_generate_endpoint(client, make_account, auth_headers, monkeypatch):
    async def fake(inp):
        return {"image_url": "https://img.test/1.png", "created": 1}

    monkeypatch.setattr(ai_provider, "generate_image", fake)
    account = await make_account(credits=1)
    headers = {**auth_headers(account), "Idempotency-Key": "gen-req-1"}

    r = await client.post("/v1/generate", json={"prompt": "watercolor beagle"}, headers=headers)
    assert r.status_code == 200
    assert r.json()["credits"] == 0
    assert r.json()["request_id"] == "gen-req-1"

    r = await client.post("/v1/generate", json={"prompt": "watercolor beagle"}, headers=headers)
    assert r.status_code == 409

    r = await client.post("/v1/generate", json={"prompt": "another"}, headers=auth_headers(account))
    assert r.status_code == 402
    assert r.json()["error"]["code"] == "INSUFFICIENT_CREDITS"
    assert r.json()["error"]["details"] == {"balance": 0, "required": 1}


async def test_generate_validation_error(client, make_account, auth_headers):
    account = await make_account(credits=1)
    r = await client.post("/v1/generate", json={"prompt": ""}, headers=auth_headers(account))
    assert r.status_code == 422
    assert r.json()["error"]["code"] == "VALIDATION_ERROR"
    assert await ledger.get_balance(account.id) == 1


async def test_subscribe_endpoint(client, make_account, auth_headers):
    account = await make_account()
    r = await client.post("/v1/subscriptions/subscribe", json={"plan": "free"}, headers=auth_headers(account))
    assert r.status_code == 200
    assert r.json()["credits"] == 3
    r = await client.post("/v1/subscriptions/subscribe", json={"plan": "free"}, headers=auth_headers(account))
    assert r.status_code == 400
    r = await client.post("/v1/subscriptions/subscribe", json={"plan": "basic"}, headers=auth_headers(account))
    assert r.status_code == 400
    r = await client.get("/v1/subscriptions/plans")
    assert set(r.json()) == {"free", "basic", "premium"}


async def test_admin_requires_admin_role(client, make_account, auth_headers):
    user = await make_account()
    r = await client.get("/v1/admin/users", headers=auth_headers(user))
    assert r.status_code == 403


@pytest.mark.parametrize(
    "method,path,body,expected",
    [
        ("post", "add", {"amount": 5}, 7),
        ("post", "deduct", {"amount": 2}, 0),
        ("put", "set", {"amount": 50}, 50),
    ],
)
async def test_admin_credit_operations(client, make_account, auth_headers, method, path, body, expected):
    admin = await make_account(role="admin")
    user = await make_account(credits=2)
    r = await getattr(client, method)(
        f"/v1/admin/users/{user.id}/credits/{path}", json=body, headers=auth_headers(admin)
    )
    assert r.status_code == 200
    assert r.json()["credits"] == expected
    assert r.json()["previous_credits"] == 2


async def test_admin_deduct_insufficient(client, make_account, auth_headers):
    admin = await make_account(role="admin")
    user = await make_account(credits=1)
    r = await client.post(
        f"/v1/admin/users/{user.id}/credits/deduct", json={"amount": 5}, headers=auth_headers(admin)
    )
    assert r.status_code == 400
    assert r.json()["error"]["details"] == {"current_credits": 1}
    assert await ledger.get_balance(user.id) == 1


async def test_admin_unknown_user(client, make_account, auth_headers):
    admin = await make_account(role="admin")
    r = await client.post(
        "/v1/admin/users/65f000000000000000000000/credits/add", json={"amount": 1}, headers=auth_headers(admin)
    )
    assert r.status_code == 404
    assert r.json()["error"]["code"] == "ACCOUNT_NOT_FOUND"
    r = await client.get("/v1/admin/users/not-an-id", headers=auth_headers(admin))
    assert r.status_code == 400


async def test_admin_subscription_and_history(client, make_account, auth_headers):
    admin = await make_account(role="admin")
    user = await make_account(credits=9)
    r = await client.put(
        f"/v1/admin/users/{user.id}/subscription",
        json={"plan": "free", "set_credits": 10, "add_plan_credits": True},
        headers=auth_headers(admin),
    )
    assert r.status_code == 200
    assert r.json()["credits"] == 13

    r = await client.get(f"/v1/admin/credits/history?user_id={user.id}", headers=auth_headers(admin))
    ops = r.json()["operations"]
    assert r.json()["total"] == 3
    assert {o["kind"] for o in ops} == {"set", "add"}

    r = await client.get("/v1/admin/users?search=user", headers=auth_headers(admin))
    assert r.json()["pagination"]["total"] == 2

    r = await client.get("/v1/admin/analytics/stats", headers=auth_headers(admin))
    assert r.json()["accounts"] == {"total": 2, "admins": 1}
    assert r.json()["credits_outstanding"] == 13


async def test_readiness(client, monkeypatch):
    from pymongo.errors import ServerSelectionTimeoutError

    import pawdia.main

    async def ok():
        return None

    async def down():
        raise ServerSelectionTimeoutError("no servers")

    monkeypatch.setattr(pawdia.main, "ping_db", ok)
    r = await client.get("/health/ready")
    assert r.json() == {"status": "ready"}

    monkeypatch.setattr(pawdia.main, "ping_db", down)
    r = await client.get("/health/ready")
    assert r.status_code == 503
    assert r.json()["error"]["code"] == "STORE_UNAVAILABLE"


async def test_admin_actions_are_audited(client, make_account, auth_headers):
    admin = await make_account(role="admin")
    user = await make_account(credits=1)
    await client.post(
        f"/v1/admin/users/{user.id}/credits/add",
        json={"amount": 4, "reason": "support goodwill"},
        headers={**auth_headers(admin), "X-Request-ID": "rid-audit"},
    )
    r = await client.get(f"/v1/admin/users/{user.id}", headers=auth_headers(admin))
    assert r.json()["user"]["credits"] == 5
    event = r.json()["audit"][0]
    assert event["event"] == "admin_credits_add"
    assert event["actor_id"] == str(admin.id)
    assert event["request_id"] == "rid-audit"
    assert event["metadata"]["reason"] == "support goodwill"


async def test_login_with_corrupted_password_hash_is_unauthorized(client, make_account):
    from pawdia.models.account import Account

    account = await make_account(email="broken@example.com")
    await Account.get_motor_collection().update_one(
        {"_id": account.id}, {"$set": {"password_hash": "pbkdf2_sha256$many$!!$!!"}}
    )
    r = await client.post("/v1/auth/login", json={"email": "broken@example.com", "password": "woofwoof1"})
    assert r.status_code == 401
    assert r.json()["error"]["code"] == "UNAUTHORIZED"
