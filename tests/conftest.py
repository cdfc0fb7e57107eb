import os
from typing import AsyncGenerator

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from mongomock_motor import AsyncMongoMockClient

# Use test DB; no Redis so the generation limiter stays off unless a test passes one in
os.environ.setdefault("MONGODB_URI", "mongodb://localhost:27017")
os.environ.setdefault("MONGODB_DB_NAME", "pawdia_test")
os.environ.setdefault("SECRET_KEY", "test-secret-key-min-32-characters-long")
os.environ["REDIS_URL"] = ""
os.environ["AI_API_KEY"] = ""


@pytest_asyncio.fixture(autouse=True)
async def db() -> AsyncGenerator[None, None]:
    """Fresh in-memory database per test."""
    from pawdia.db.init import init_db
    await init_db(client=AsyncMongoMockClient())
    yield


@pytest_asyncio.fixture
async def client() -> AsyncGenerator[AsyncClient, None]:
    from pawdia.main import app
    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as ac:
        yield ac


@pytest.fixture
def make_account():
    """Factory: insert an account and seed its balance through the ledger."""
    from pawdia.models.account import Account
    from pawdia.services import ledger
    from pawdia.services.ledger import LedgerKind, LedgerOperation

    counter = {"n": 0}

    async def _make(credits: int = 0, role: str = "user", email: str | None = None) -> Account:
        counter["n"] += 1
        account = Account(
            email=email or f"user{counter['n']}@example.com",
            name=f"User {counter['n']}",
            password_hash="x",
            role=role,
        )
        await account.insert()
        if credits:
            await ledger.apply(LedgerOperation(account_id=account.id, kind=LedgerKind.SET, amount=credits))
        return await Account.get(account.id)

    return _make


@pytest.fixture
def auth_headers():
    from pawdia.core.security import create_session_token
    from pawdia.services.accounts import session_payload_for_account

    def _headers(account) -> dict[str, str]:
        token = create_session_token(session_payload_for_account(account))
        return {"Authorization": f"Bearer {token}"}

    return _headers
