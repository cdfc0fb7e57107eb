"""Generation: debit first, refund on provider failure, never charge twice."""

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from pawdia.core.config import get_settings
from pawdia.core.exceptions import (
    AccountNotFoundError,
    ConflictError,
    GenerationFailedError,
    InsufficientCreditsError,
    PayloadTooLargeError,
    RateLimitedError,
    RefundFailedError,
    StoreUnavailableError,
    UpstreamError,
)
from pawdia.models.generation_job import GenerationJob
from pawdia.services import ai_provider, ledger
from pawdia.services import generation as generation_service
from pawdia.services.ai_provider import GenerationInput
from pawdia.services.ledger import LedgerKind
from pawdia.services.rate_limit import check_generation_rate

IMAGE = {"base64": "aW1n", "created": 1700000000}


@pytest.fixture
def provider_ok(monkeypatch):
    calls = []

    async def fake(inp):
        calls.append(inp)
        return IMAGE

    monkeypatch.setattr(ai_provider, "generate_image", fake)
    return calls


@pytest.fixture
def provider_down(monkeypatch):
    async def fake(inp):
        raise UpstreamError("AI provider returned an error", provider="ai")

    monkeypatch.setattr(ai_provider, "generate_image", fake)


async def test_success_charges_once(make_account, provider_ok):
    account = await make_account(credits=3)
    out = await generation_service.generate_portrait(account, GenerationInput(prompt="a corgi in oils"), "req-1")
    assert out["image"] == IMAGE
    assert out["charged"] == 1
    assert out["credits"] == 2
    assert await ledger.get_balance(account.id) == 2
    job = await GenerationJob.find_one(GenerationJob.request_id == "req-1")
    assert job.status == "succeeded"
    assert job.mode == "text_to_image"


async def test_retry_of_processed_request_is_not_charged(make_account, provider_ok):
    account = await make_account(credits=3)
    await generation_service.generate_portrait(account, GenerationInput(prompt="cat"), "req-1")
    with pytest.raises(ConflictError) as exc:
        await generation_service.generate_portrait(account, GenerationInput(prompt="cat"), "req-1")
    assert exc.value.details["status"] == "succeeded"
    assert len(provider_ok) == 1
    assert await ledger.get_balance(account.id) == 2


async def test_provider_failure_refunds(make_account, provider_down):
    account = await make_account(credits=1)
    with pytest.raises(GenerationFailedError) as exc:
        await generation_service.generate_portrait(account, GenerationInput(prompt="dog"), "req-2")
    assert exc.value.details["balance"] == 1
    assert exc.value.details["refunded"] is True
    assert await ledger.get_balance(account.id) == 1
    job = await GenerationJob.find_one(GenerationJob.request_id == "req-2")
    assert job.status == "refunded"
    entries = await ledger.list_entries(account.id)
    keys = {e.idempotency_key for e in entries}
    assert {"gen:req-2", "gen:req-2:refund"} <= keys


async def test_insufficient_credits_never_calls_provider(make_account, provider_ok):
    account = await make_account(credits=0)
    with pytest.raises(InsufficientCreditsError) as exc:
        await generation_service.generate_portrait(account, GenerationInput(prompt="dog"), "req-3")
    assert exc.value.details == {"balance": 0, "required": 1}
    assert provider_ok == []
    assert await GenerationJob.find_all().count() == 0


@pytest.mark.parametrize(
    "failure",
    [
        StoreUnavailableError(),
        ConflictError("Balance is changing too fast, retry the request"),
        AccountNotFoundError("gone"),
    ],
)
async def test_refund_write_failure_is_reported_distinctly(make_account, provider_down, monkeypatch, failure):
    account = await make_account(credits=1)
    real_apply = ledger.apply

    async def apply(op):
        if op.kind == LedgerKind.ADD:
            raise failure
        return await real_apply(op)

    monkeypatch.setattr(ledger, "apply", apply)
    with pytest.raises(RefundFailedError) as exc:
        await generation_service.generate_portrait(account, GenerationInput(prompt="dog"), "req-4")
    assert exc.value.code == "CHARGED_NOT_REFUNDED"
    assert await ledger.get_balance(account.id) == 0
    job = await GenerationJob.find_one(GenerationJob.request_id == "req-4")
    assert job.status == "refund_failed"


async def test_payload_too_large(make_account, provider_ok, monkeypatch):
    monkeypatch.setattr(get_settings(), "max_payload_chars", 10)
    account = await make_account(credits=1)
    inp = GenerationInput(prompt="dog", image_base64="A" * 100)
    with pytest.raises(PayloadTooLargeError):
        await generation_service.generate_portrait(account, inp, "req-5")
    assert await ledger.get_balance(account.id) == 1


def test_keys():
    assert generation_service.debit_key("abc") == "gen:abc"
    assert generation_service.refund_key("abc") == "gen:abc:refund"


class FakeRedis:
    def __init__(self, fail: bool = False):
        self.counts: dict[str, int] = {}
        self.ttl: dict[str, int] = {}
        self.fail = fail

    async def incr(self, key):
        if self.fail:
            raise RedisConnectionError("down")
        self.counts[key] = self.counts.get(key, 0) + 1
        return self.counts[key]

    async def expire(self, key, seconds):
        self.ttl[key] = seconds


async def test_rate_limit(monkeypatch):
    monkeypatch.setattr(get_settings(), "generation_rate_limit", 2)
    monkeypatch.setattr(get_settings(), "generation_rate_window_seconds", 3600)
    redis = FakeRedis()
    await check_generation_rate("acc-1", redis=redis)
    await check_generation_rate("acc-1", redis=redis)
    with pytest.raises(RateLimitedError) as exc:
        await check_generation_rate("acc-1", redis=redis)
    assert exc.value.details["retry_after"] > 0
    assert list(redis.ttl.values()) == [get_settings().generation_rate_window_seconds + 1]
    # other accounts have their own window
    await check_generation_rate("acc-2", redis=redis)


async def test_rate_limit_fails_open_when_redis_down():
    await check_generation_rate("acc-1", redis=FakeRedis(fail=True))


async def test_rate_limit_disabled_without_redis():
    await check_generation_rate("acc-1")
