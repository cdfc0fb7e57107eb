from fastapi import APIRouter, Depends, Response
from pydantic import BaseModel, Field

from pawdia.core.config import get_settings
from pawdia.core.security import create_session_token
from pawdia.deps import SESSION_COOKIE_NAME, get_current_account
from pawdia.models.account import Account
from pawdia.services import accounts as accounts_service

router = APIRouter()


class RegisterRequest(BaseModel):
    email: str = Field(max_length=254)
    password: str = Field(max_length=256)
    name: str = Field(default="", max_length=100)


class LoginRequest(BaseModel):
    email: str
    password: str


def _issue_session(account: Account, response: Response) -> str:
    max_age = get_settings().session_max_age_seconds
    token = create_session_token(accounts_service.session_payload_for_account(account))
    response.set_cookie(
        key=SESSION_COOKIE_NAME,
        value=token,
        max_age=max_age,
        httponly=True,
        secure=get_settings().env == "production",
        samesite="lax",
        path="/",
    )
    return token


@router.post("/register", status_code=201)
async def auth_register(body: RegisterRequest, response: Response):
    """Create an account and start a session."""
    account = await accounts_service.register(body.email, body.password, body.name)
    token = _issue_session(account, response)
    return {"token": token, "user": accounts_service.account_to_dict(account)}


@router.post("/login")
async def auth_login(body: LoginRequest, response: Response):
    """Exchange email/password for a session token (also set as httpOnly cookie)."""
    account = await accounts_service.authenticate(body.email, body.password)
    token = _issue_session(account, response)
    return {"token": token, "user": accounts_service.account_to_dict(account)}


@router.get("/me")
async def auth_me(account: Account = Depends(get_current_account)):
    """Return current account. Requires session."""
    return accounts_service.account_to_dict(account)


@router.post("/logout")
async def auth_logout(response: Response):
    response.delete_cookie(SESSION_COOKIE_NAME, path="/")
    return {"status": "ok"}


@router.post("/logout-all")
async def auth_logout_all(response: Response, account: Account = Depends(get_current_account)):
    """Invalidate every session of the current account."""
    await accounts_service.invalidate_sessions(account)
    response.delete_cookie(SESSION_COOKIE_NAME, path="/")
    return {"status": "ok"}
