"""Paid AI generation: debit first, call the provider, refund on failure.

A user is only ever charged for a generation that actually succeeded. The debit
is keyed "gen:<request_id>" and the refund "gen:<request_id>:refund", so a
retried request can never be charged or refunded twice. A refund that cannot be
written surfaces as RefundFailedError instead of a generic error.
"""

from datetime import datetime
from typing import Any

from beanie import PydanticObjectId
from pymongo.errors import ConnectionFailure

from pawdia.core.config import get_settings
from pawdia.core.exceptions import (
    AppError,
    ConflictError,
    GenerationFailedError,
    InsufficientCreditsError,
    PayloadTooLargeError,
    RefundFailedError,
    UpstreamError,
)
from pawdia.core.logging import get_logger
from pawdia.models.account import Account
from pawdia.models.generation_job import GenerationJob
from pawdia.services import ai_provider, ledger
from pawdia.services.ai_provider import GenerationInput
from pawdia.services.ledger import LedgerKind, LedgerOperation
from pawdia.services.rate_limit import check_generation_rate

log = get_logger(__name__)


def debit_key(request_id: str) -> str:
    return f"gen:{request_id}"


def refund_key(request_id: str) -> str:
    return f"{debit_key(request_id)}:refund"


def _job_key(account_id: PydanticObjectId, request_id: str) -> str:
    return f"{account_id}:{request_id}"


def _check_payload_size(inp: GenerationInput) -> None:
    size = len(inp.prompt) + len(inp.image_base64 or "")
    if size > get_settings().max_payload_chars:
        raise PayloadTooLargeError()


async def _mark(job: GenerationJob | None, status: str, error: str | None = None) -> None:
    """Best-effort job bookkeeping; the ledger is the record of what was charged."""
    if job is None:
        return
    try:
        await job.set({
            GenerationJob.status: status,
            GenerationJob.error: error,
            GenerationJob.updated_at: datetime.utcnow(),
        })
    except ConnectionFailure as e:
        log.warning("generation_job_update_failed", job_key=job.job_key, status=status, error=str(e))


async def _refund(account_id: PydanticObjectId, request_id: str, cost: int, job: GenerationJob | None, error: str) -> int:
    try:
        refund = await ledger.apply(
            LedgerOperation(
                account_id=account_id,
                kind=LedgerKind.ADD,
                amount=cost,
                idempotency_key=refund_key(request_id),
                reason="generation_refund",
            )
        )
    except AppError as e:
        log.error(
            "generation_refund_failed",
            account_id=str(account_id),
            request_id=request_id,
            cost=cost,
            error=error,
            refund_error=e.code,
        )
        await _mark(job, "refund_failed", error)
        raise RefundFailedError(request_id) from e
    await _mark(job, "refunded", error)
    log.info("generation_refunded", account_id=str(account_id), request_id=request_id, balance=refund.new_balance)
    return refund.new_balance


async def generate_portrait(account: Account, inp: GenerationInput, request_id: str) -> dict[str, Any]:
    """Charge, generate, refund on failure. Returns the image and the balance after the charge."""
    await check_generation_rate(str(account.id))
    _check_payload_size(inp)
    cost = get_settings().credits_per_generation

    debit = await ledger.apply(
        LedgerOperation(
            account_id=account.id,
            kind=LedgerKind.SUBTRACT,
            amount=cost,
            idempotency_key=debit_key(request_id),
            reason="generation",
        )
    )
    if not debit.applied:
        if debit.replayed:
            job = await GenerationJob.find_one(GenerationJob.job_key == _job_key(account.id, request_id))
            raise ConflictError(
                "Generation request already processed",
                details={
                    "request_id": request_id,
                    "status": job.status if job else "charged",
                    "balance": debit.new_balance,
                },
            )
        raise InsufficientCreditsError(balance=debit.new_balance, required=cost)

    job: GenerationJob | None = None
    try:
        job = GenerationJob(
            account_id=account.id,
            request_id=request_id,
            job_key=_job_key(account.id, request_id),
            mode=inp.mode,
            cost=cost,
        )
        await job.insert()
        image = await ai_provider.generate_image(inp)
    except Exception as e:
        error = e.message if isinstance(e, UpstreamError) else str(e) or type(e).__name__
        log.warning("generation_failed", account_id=str(account.id), request_id=request_id, error=error)
        balance = await _refund(account.id, request_id, cost, job, error)
        raise GenerationFailedError(f"Generation failed: {error}. Your credit has been refunded.", balance=balance) from e

    await _mark(job, "succeeded")
    log.info("generation_succeeded", account_id=str(account.id), request_id=request_id, mode=inp.mode)
    return {
        "request_id": request_id,
        "image": image,
        "charged": cost,
        "credits": debit.new_balance,
    }
