from fastapi import APIRouter, Depends, Header

from pawdia.core.security import generate_request_id, require_idempotency_key
from pawdia.deps import get_current_account
from pawdia.models.account import Account
from pawdia.services import generation as generation_service
from pawdia.services.ai_provider import GenerationInput

router = APIRouter()


class GenerateRequest(GenerationInput):
    request_id: str | None = None


@router.post("")
async def generate(
    body: GenerateRequest,
    account: Account = Depends(get_current_account),
    idempotency_key: str | None = Header(None, alias="Idempotency-Key"),
):
    """Charge one generation, call the image model, refund if it fails. Retry with the same request id is never charged twice."""
    request_id = require_idempotency_key(idempotency_key or body.request_id or generate_request_id())
    inp = GenerationInput(**body.model_dump(exclude={"request_id"}))
    return await generation_service.generate_portrait(account, inp, request_id)
