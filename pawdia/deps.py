"""Shared FastAPI dependencies."""

from beanie import PydanticObjectId
from bson.errors import InvalidId
from fastapi import Request

from pawdia.core.exceptions import BadRequestError, ForbiddenError, UnauthorizedError
from pawdia.core.logging import bind_account_id
from pawdia.core.security import load_session_token
from pawdia.models.account import Account
from pawdia.services import credit_expiry

SESSION_COOKIE_NAME = "pawdia_session"


def _token_from_request(request: Request) -> str | None:
    auth = request.headers.get("Authorization") or ""
    if auth.lower().startswith("bearer "):
        return auth[7:].strip() or None
    return request.cookies.get(SESSION_COOKIE_NAME)


async def get_current_account(request: Request) -> Account:
    """Dependency: load session from bearer token or cookie and return Account."""
    token = _token_from_request(request)
    if not token:
        raise UnauthorizedError("Not authenticated")
    payload = load_session_token(token)
    if not payload:
        raise UnauthorizedError("Invalid or expired session")
    account_id = payload.get("account_id")
    if not account_id:
        raise UnauthorizedError("Invalid session")
    try:
        account = await Account.get(PydanticObjectId(account_id))
    except InvalidId as e:
        raise UnauthorizedError("Invalid session") from e
    if not account:
        raise UnauthorizedError("Account not found")
    if payload.get("session_version") != account.session_version:
        raise UnauthorizedError("Session invalidated")
    bind_account_id(str(account.id))
    return await credit_expiry.expire_if_due(account)


async def require_admin(request: Request) -> Account:
    """Dependency: require current account to have role admin."""
    account = await get_current_account(request)
    if account.role != "admin":
        raise ForbiddenError("Admin only")
    return account


def parse_object_id(value: str, what: str = "id") -> PydanticObjectId:
    try:
        return PydanticObjectId(value)
    except (InvalidId, TypeError) as e:
        raise BadRequestError(f"Invalid {what}") from e
