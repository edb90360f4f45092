from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Cookie, Header, HTTPException, Query, Response
from fastapi.responses import RedirectResponse

from authcore.api.schemas import (
    AccountProfile,
    EmailRequest,
    Envelope,
    LoginRequest,
    LoginResponse,
    MessageResponse,
    PasswordResetConfirm,
    RegisterRequest,
    RegisterResponse,
    TokenRefreshRequest,
    TokenRefreshResponse,
)
from authcore.logging import get_logger
from authcore.service.errors import (
    AccountNotActivated,
    FederatedAccountConflict,
    UnknownAccount,
)
from authcore.service.runtime import Runtime, get_runtime
from authcore.storage.models import Account, LoginResult

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")

ACCESS_COOKIE = "access_token"
REFRESH_COOKIE = "refresh_token"

_RESET_GENERIC_MESSAGE = "if the account exists, an email has been sent"


def _http_error(
    code: str, message: str, status_code: int, details: Optional[dict | str] = None
) -> HTTPException:
    payload: dict[str, object] = {
        "status": "error",
        "error": {"code": code, "message": message},
    }
    if details is not None:
        payload["error"]["details"] = details  # type: ignore[index]
    return HTTPException(status_code=status_code, detail=payload)


async def _enforce_rate_limit(runtime: Runtime, key: str, limit: int, window_seconds: int = 60) -> None:
    """Raise 429 when ``key`` has exhausted its bucket."""
    allowed = await runtime.cache.check_rate_limit(key, limit, window_seconds)
    if not allowed:
        logger.warning("rate_limited", limit=limit, window_seconds=window_seconds)
        raise _http_error("rate_limited", "rate limit exceeded", status_code=429)


def _cookie_kwargs(runtime: Runtime) -> dict:
    return {
        "httponly": True,
        "secure": runtime.settings.cookie_secure,
        "samesite": runtime.settings.cookie_samesite,
        "path": "/",
    }


def _apply_credential_cookies(
    response: Response,
    runtime: Runtime,
    access_token: str,
    refresh_token: Optional[str] = None,
) -> None:
    kwargs = _cookie_kwargs(runtime)
    response.set_cookie(
        ACCESS_COOKIE,
        access_token,
        max_age=runtime.settings.access_token_ttl_minutes * 60,
        **kwargs,
    )
    if refresh_token:
        response.set_cookie(
            REFRESH_COOKIE,
            refresh_token,
            max_age=runtime.settings.refresh_token_ttl_minutes * 60,
            **kwargs,
        )


def _clear_credential_cookies(response: Response, runtime: Runtime) -> None:
    kwargs = _cookie_kwargs(runtime)
    response.delete_cookie(ACCESS_COOKIE, **kwargs)
    response.delete_cookie(REFRESH_COOKIE, **kwargs)


def _profile(account: Account) -> AccountProfile:
    return AccountProfile(**account.profile())


def _login_envelope(result: LoginResult) -> Envelope:
    return Envelope(
        status="ok",
        data=LoginResponse(
            access_token=result.access_token,
            access_expires_at=result.access_expires_at,
            refresh_token=result.refresh_token,
            refresh_expires_at=result.refresh_expires_at,
            token_type=result.token_type,
            account=_profile(result.account),
        ),
    )


def _extract_bearer(header: Optional[str]) -> Optional[str]:
    if not header:
        return None
    scheme, _, value = header.partition(" ")
    if scheme.lower() != "bearer" or not value.strip():
        return None
    return value.strip()


@router.post("/auth/register", response_model=Envelope, status_code=201, tags=["auth"])
async def register(body: RegisterRequest):
    """Create a pending local account and email its activation link.

    Raises:
        400: duplicate email, weak password or mismatched confirmation
        429: rate limit exceeded for this email
        500: account created but the activation email could not be sent
    """
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime, f"signup:{body.email}", runtime.settings.signup_rate_limit_per_minute
    )
    account = await runtime.auth.register(
        body.email, body.username, body.password, body.confirm_password
    )
    return Envelope(status="ok", data=RegisterResponse(id=account.id, email=account.email))


@router.get("/auth/activate", response_model=Envelope, tags=["auth"])
async def activate(token: Optional[str] = Query(None, max_length=256)):
    runtime = get_runtime()
    await runtime.auth.activate(token)
    return Envelope(status="ok", data=MessageResponse(message="account activated"))


@router.post("/auth/activate/resend", response_model=Envelope, tags=["auth"])
async def resend_activation(body: EmailRequest):
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime, f"activation:{body.email}", runtime.settings.reset_rate_limit_per_minute
    )
    try:
        await runtime.auth.resend_activation(body.email)
    except (UnknownAccount, FederatedAccountConflict):
        if not runtime.settings.reset_request_generic_response:
            raise
    return Envelope(status="ok", data=MessageResponse(message=_RESET_GENERIC_MESSAGE))


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest, response: Response):
    """Authenticate with email and password.

    Sets ``access_token`` and ``refresh_token`` cookies and returns both
    credentials with the account profile.

    Raises:
        401: unknown email or wrong password
        403: account not activated, or account uses federated sign-in
        429: rate limit exceeded for this email
    """
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime, f"login:{body.email}", runtime.settings.login_rate_limit_per_minute
    )
    result = await runtime.auth.login(body.email, body.password)
    _apply_credential_cookies(response, runtime, result.access_token, result.refresh_token)
    return _login_envelope(result)


@router.post("/auth/refresh", response_model=Envelope, tags=["auth"])
async def refresh(
    response: Response,
    body: Optional[TokenRefreshRequest] = None,
    refresh_cookie: Optional[str] = Cookie(None, alias=REFRESH_COOKIE),
):
    runtime = get_runtime()
    refresh_token = (body.refresh_token if body else None) or refresh_cookie
    result = await runtime.auth.refresh(refresh_token)
    _apply_credential_cookies(response, runtime, result.access_token, result.refresh_token)
    return Envelope(
        status="ok",
        data=TokenRefreshResponse(
            access_token=result.access_token,
            access_expires_at=result.access_expires_at,
            token_type=result.token_type,
            refresh_token=result.refresh_token,
            refresh_expires_at=result.refresh_expires_at,
        ),
    )


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(
    response: Response,
    body: Optional[TokenRefreshRequest] = None,
    refresh_cookie: Optional[str] = Cookie(None, alias=REFRESH_COOKIE),
):
    runtime = get_runtime()
    refresh_token = (body.refresh_token if body else None) or refresh_cookie
    await runtime.auth.logout(refresh_token)
    _clear_credential_cookies(response, runtime)
    return Envelope(status="ok", data=MessageResponse(message="logged out"))


@router.post("/auth/reset/request", response_model=Envelope, tags=["auth"])
async def request_password_reset(body: EmailRequest):
    """Email a password reset link.

    With generic responses enabled the reply does not reveal whether the
    email belongs to an account that may reset its password.
    """
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime, f"reset:{body.email}", runtime.settings.reset_rate_limit_per_minute
    )
    try:
        await runtime.auth.request_password_reset(body.email)
    except (UnknownAccount, AccountNotActivated, FederatedAccountConflict):
        if not runtime.settings.reset_request_generic_response:
            raise
    return Envelope(status="ok", data=MessageResponse(message=_RESET_GENERIC_MESSAGE))


@router.post("/auth/reset/confirm", response_model=Envelope, tags=["auth"])
async def confirm_password_reset(body: PasswordResetConfirm):
    runtime = get_runtime()
    await runtime.auth.reset_password(body.token, body.password, body.confirm_password)
    return Envelope(status="ok", data=MessageResponse(message="password updated"))


@router.get("/auth/google", tags=["auth"])
async def google_start():
    """Redirect to Google's consent screen with a fresh CSRF state."""
    runtime = get_runtime()
    authorization_url = await runtime.auth.start_federated_login()
    return RedirectResponse(authorization_url, status_code=302)


@router.get("/auth/google/callback", response_model=Envelope, tags=["auth"])
async def google_callback(
    response: Response,
    code: Optional[str] = Query(None, max_length=2048),
    state: Optional[str] = Query(None, max_length=256),
):
    runtime = get_runtime()
    result = await runtime.auth.complete_federated_login(code, state)
    _apply_credential_cookies(response, runtime, result.access_token, result.refresh_token)
    return _login_envelope(result)


@router.get("/auth/me", response_model=Envelope, tags=["auth"])
async def me(
    authorization: Optional[str] = Header(None),
    access_cookie: Optional[str] = Cookie(None, alias=ACCESS_COOKIE),
):
    runtime = get_runtime()
    account = await runtime.auth.authenticate(_extract_bearer(authorization) or access_cookie)
    return Envelope(status="ok", data=_profile(account))
