from __future__ import annotations

from typing import Any, Callable, Optional

from fastapi import APIRouter, Depends, HTTPException, Request, Response

from authcore.api.error_handling import clear_refresh_cookie
from authcore.api.schemas import (
    AccountResponse,
    AuthResponse,
    Envelope,
    LoginRequest,
    LogoutRequest,
    RefreshRequest,
    RegisterRequest,
    TokenResponse,
)
from authcore.config import Settings
from authcore.logging import get_correlation_id
from authcore.service.authenticator import Identity
from authcore.service.runtime import get_runtime
from authcore.service.tokens import TokenPair

router = APIRouter(prefix="/v1")


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


def _ok(data: Any = None) -> Envelope:
    cid = get_correlation_id()
    if cid:
        return Envelope(status="ok", data=data, request_id=cid)
    return Envelope(status="ok", data=data)


def _client_meta(request: Request) -> dict[str, Optional[str]]:
    return {
        "ip_addr": request.client.host if request.client else None,
        "user_agent": request.headers.get("user-agent"),
    }


def _apply_refresh_cookie(response: Response, tokens: TokenPair, settings: Settings) -> None:
    response.set_cookie(
        settings.refresh_cookie_name,
        tokens.refresh_token,
        httponly=True,
        secure=settings.cookie_secure,
        samesite="strict",
        max_age=int(settings.refresh_token_ttl.total_seconds()),
        path=settings.refresh_cookie_path,
    )


def _presented_refresh_token(request: Request, body_token: Optional[str]) -> Optional[str]:
    """Cookie first, then the body field."""
    settings = get_runtime().settings
    return request.cookies.get(settings.refresh_cookie_name) or body_token


async def require_identity(request: Request) -> Identity:
    identity = getattr(request.state, "identity", None)
    if identity is None:
        raise _http_error(
            "unauthorized",
            "authentication required",
            status_code=401,
        )
    return identity


def require_role(*roles: str) -> Callable:
    """Dependency factory; admins pass every role check."""

    async def _dependency(identity: Identity = Depends(require_identity)) -> Identity:
        if not identity.has_role(*roles):
            raise _http_error("forbidden", "insufficient role", status_code=403)
        return identity

    return _dependency


@router.post("/auth/register", response_model=Envelope, status_code=201, tags=["auth"])
async def register(body: RegisterRequest, request: Request, response: Response):
    """Create an account and start its first session.

    Raises:
        400: Field validation or bot verification failed
        403: Signup disabled
        409: Account cannot be created with these details
    """
    runtime = get_runtime()
    result = await runtime.auth.register(
        body.email,
        body.password,
        body.name,
        bot_token=body.bot_token,
        **_client_meta(request),
    )
    _apply_refresh_cookie(response, result.tokens, runtime.settings)
    return _ok(
        AuthResponse(
            account=AccountResponse.from_view(result.account),
            access_token=result.tokens.access_token,
            expires_in=result.tokens.expires_in,
        )
    )


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest, request: Request, response: Response):
    """Exchange email and password for a bearer token and refresh cookie.

    Raises:
        401: Invalid credentials
        403: Account suspended or inactive
    """
    runtime = get_runtime()
    result = await runtime.auth.login(
        body.email,
        body.password,
        bot_token=body.bot_token,
        **_client_meta(request),
    )
    _apply_refresh_cookie(response, result.tokens, runtime.settings)
    return _ok(
        AuthResponse(
            account=AccountResponse.from_view(result.account),
            access_token=result.tokens.access_token,
            expires_in=result.tokens.expires_in,
        )
    )


@router.post("/auth/refresh", response_model=Envelope, tags=["auth"])
async def refresh(
    request: Request,
    response: Response,
    body: Optional[RefreshRequest] = None,
):
    """Rotate the refresh credential. The presented one is consumed."""
    runtime = get_runtime()
    presented = _presented_refresh_token(request, body.refresh_token if body else None)
    result = await runtime.auth.refresh(presented, **_client_meta(request))
    _apply_refresh_cookie(response, result.tokens, runtime.settings)
    return _ok(
        TokenResponse(
            access_token=result.tokens.access_token,
            expires_in=result.tokens.expires_in,
        )
    )


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(
    request: Request,
    response: Response,
    body: Optional[LogoutRequest] = None,
):
    runtime = get_runtime()
    presented = _presented_refresh_token(request, body.refresh_token if body else None)
    await runtime.auth.logout(presented)
    clear_refresh_cookie(response, runtime.settings)
    return _ok({})


@router.get("/auth/me", response_model=Envelope, tags=["auth"])
async def me(identity: Identity = Depends(require_identity)):
    runtime = get_runtime()
    account = runtime.auth.resolve_current_identity(identity.subject)
    return _ok(AccountResponse.from_view(account))
