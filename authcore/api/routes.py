from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Cookie, Depends, Header, Request, Response

from authcore.api.schemas import (
    Envelope,
    InvalidateAllResponse,
    LoginRequest,
    LoginResponse,
    LoginStartResponse,
    LogoutRequest,
    OtpStatusResponse,
    RefreshResponse,
    RegisterRequest,
    ResendOtpRequest,
    ResendVerificationRequest,
    SessionListResponse,
    SessionResponse,
    TokenRefreshRequest,
    UserResponse,
    VerifyEmailRequest,
    VerifyOtpRequest,
)
from authcore.logging import get_logger
from authcore.service.errors import AuthenticationError, RateLimitError, TokenError
from authcore.service.rate_limit import GUEST, RateLimitResult, classify_endpoint
from authcore.service.runtime import get_runtime
from authcore.service.tokens import TokenClaims
from authcore.storage.models import Session, TokenType, User

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")

REFRESH_COOKIE = "refresh_token"


def _client_ip(request: Request) -> Optional[str]:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    real_ip = request.headers.get("x-real-ip")
    if real_ip:
        return real_ip.strip()
    return request.client.host if request.client else None


def _bearer_token(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


def _apply_rate_limit_headers(response: Response, result: RateLimitResult) -> None:
    response.headers["X-RateLimit-Limit"] = str(result.limit)
    response.headers["X-RateLimit-Remaining"] = str(max(0, result.remaining))
    response.headers["X-RateLimit-Reset"] = str(result.reset_time)


async def enforce_rate_limit(
    request: Request,
    response: Response,
    authorization: Optional[str] = Header(None),
) -> RateLimitResult:
    """Sliding-window ceiling per (client ip, role, endpoint class)."""
    runtime = get_runtime()
    role = GUEST
    token = _bearer_token(authorization)
    if token:
        try:
            role = runtime.auth.tokens.decode(token, TokenType.ACCESS).role
        except TokenError:
            role = GUEST
    identity = _client_ip(request) or "unknown"
    result = await runtime.rate_limiter.check(
        identity, role, classify_endpoint(request.url.path)
    )
    _apply_rate_limit_headers(response, result)
    if not result.allowed:
        raise RateLimitError(
            "rate limit exceeded",
            retry_after=result.retry_after(),
            detail={"limit": result.limit, "remaining": 0},
        )
    return result


async def get_principal(authorization: Optional[str] = Header(None)) -> TokenClaims:
    token = _bearer_token(authorization)
    if not token:
        raise AuthenticationError("missing bearer token")
    return await get_runtime().auth.authenticate(token)


def _user_to_response(user: User) -> UserResponse:
    return UserResponse(
        id=user.id,
        email=user.email,
        name=user.name,
        phone=user.phone,
        role=user.role,
        is_active=user.is_active,
        email_verified=user.email_verified,
        created_at=user.created_at,
    )


def _session_to_response(session: Session, current_jti: Optional[str]) -> SessionResponse:
    return SessionResponse(
        id=session.id,
        device_name=session.device_name,
        user_agent=session.user_agent,
        ip_address=session.ip_address,
        created_at=session.created_at,
        last_activity=session.last_activity,
        expires_at=session.expires_at,
        is_current=bool(current_jti) and session.access_token_jti == current_jti,
    )


def _set_refresh_cookie(response: Response, refresh_token: str, max_age: int) -> None:
    response.set_cookie(
        REFRESH_COOKIE,
        refresh_token,
        httponly=True,
        secure=True,
        samesite="lax",
        max_age=max_age,
        path="/",
    )


def _resolve_refresh_token(body_token: Optional[str], cookie_token: Optional[str]) -> str:
    token = body_token or cookie_token
    if not token:
        raise AuthenticationError("missing refresh token")
    return token


@router.post(
    "/auth/register",
    response_model=Envelope,
    status_code=201,
    tags=["auth"],
    dependencies=[Depends(enforce_rate_limit)],
)
async def register(body: RegisterRequest):
    runtime = get_runtime()
    user = await runtime.auth.register(
        body.email,
        body.password,
        body.name,
        body.phone,
        is_seller=body.is_seller,
    )
    return Envelope(status="ok", data=_user_to_response(user))


@router.post(
    "/auth/verify-email",
    response_model=Envelope,
    tags=["auth"],
    dependencies=[Depends(enforce_rate_limit)],
)
async def verify_email(body: VerifyEmailRequest):
    await get_runtime().auth.verify_email(body.token)
    return Envelope(status="ok", data={"verified": True})


@router.post(
    "/auth/resend-verification",
    response_model=Envelope,
    tags=["auth"],
    dependencies=[Depends(enforce_rate_limit)],
)
async def resend_verification(body: ResendVerificationRequest):
    await get_runtime().auth.resend_verification(body.email)
    return Envelope(status="ok", data={"sent": True})


@router.post(
    "/auth/login",
    response_model=Envelope,
    tags=["auth"],
    dependencies=[Depends(enforce_rate_limit)],
)
async def login(body: LoginRequest, request: Request):
    """First login step: check the password and send a one-time code."""
    user_id = await get_runtime().auth.login_step1(
        body.email,
        body.password,
        ip=_client_ip(request),
        user_agent=request.headers.get("user-agent"),
    )
    return Envelope(status="ok", data=LoginStartResponse(user_id=user_id))


@router.post(
    "/auth/verify-otp",
    response_model=Envelope,
    tags=["auth"],
    dependencies=[Depends(enforce_rate_limit)],
)
async def verify_otp(body: VerifyOtpRequest, request: Request, response: Response):
    """Second login step: exchange the code for an access/refresh pair."""
    runtime = get_runtime()
    result = await runtime.auth.login_step2(
        body.user_id,
        body.otp_code,
        ip=_client_ip(request),
        user_agent=request.headers.get("user-agent"),
    )
    _set_refresh_cookie(
        response, result.refresh_token, runtime.settings.jwt_refresh_expiry
    )
    return Envelope(
        status="ok",
        data=LoginResponse(
            access_token=result.access_token,
            refresh_token=result.refresh_token,
            expires_in=result.expires_in,
            session_id=result.session_id,
            user=_user_to_response(result.user),
        ),
    )


@router.post(
    "/auth/resend-otp",
    response_model=Envelope,
    tags=["auth"],
    dependencies=[Depends(enforce_rate_limit)],
)
async def resend_otp(body: ResendOtpRequest, request: Request):
    await get_runtime().auth.resend_otp(
        body.user_id,
        ip=_client_ip(request),
        user_agent=request.headers.get("user-agent"),
    )
    return Envelope(status="ok", data={"sent": True})


@router.get(
    "/auth/otp-status",
    response_model=Envelope,
    tags=["auth"],
    dependencies=[Depends(enforce_rate_limit)],
)
async def otp_status(principal: TokenClaims = Depends(get_principal)):
    status = await get_runtime().auth.otp_status(principal.sub)
    return Envelope(
        status="ok",
        data=OtpStatusResponse(
            is_blocked=status.is_blocked,
            blocked_until=status.blocked_until,
            remaining_minutes=status.remaining_minutes,
            has_active_code=status.has_active_code,
            code_expires_at=status.code_expires_at,
            remaining_attempts=status.remaining_attempts,
        ),
    )


@router.post(
    "/auth/refresh",
    response_model=Envelope,
    tags=["auth"],
    dependencies=[Depends(enforce_rate_limit)],
)
async def refresh_token(
    body: Optional[TokenRefreshRequest] = None,
    refresh_cookie: Optional[str] = Cookie(None, alias=REFRESH_COOKIE),
):
    runtime = get_runtime()
    token = _resolve_refresh_token(body.refresh_token if body else None, refresh_cookie)
    access_token = await runtime.auth.refresh(token)
    return Envelope(
        status="ok",
        data=RefreshResponse(
            access_token=access_token, expires_in=runtime.settings.jwt_access_expiry
        ),
    )


@router.post(
    "/auth/logout",
    response_model=Envelope,
    tags=["auth"],
    dependencies=[Depends(enforce_rate_limit)],
)
async def logout(
    response: Response,
    body: Optional[LogoutRequest] = None,
    refresh_cookie: Optional[str] = Cookie(None, alias=REFRESH_COOKIE),
):
    token = _resolve_refresh_token(body.refresh_token if body else None, refresh_cookie)
    await get_runtime().auth.logout(token)
    response.delete_cookie(REFRESH_COOKIE, path="/")
    return Envelope(status="ok", data={"logged_out": True})


@router.get(
    "/auth/sessions",
    response_model=Envelope,
    tags=["auth"],
    dependencies=[Depends(enforce_rate_limit)],
)
async def list_sessions(principal: TokenClaims = Depends(get_principal)):
    sessions = await get_runtime().auth.list_sessions(principal.sub)
    return Envelope(
        status="ok",
        data=SessionListResponse(
            items=[_session_to_response(s, principal.jti) for s in sessions]
        ),
    )


@router.delete(
    "/auth/sessions/{session_id}",
    response_model=Envelope,
    tags=["auth"],
    dependencies=[Depends(enforce_rate_limit)],
)
async def invalidate_session(
    session_id: str, principal: TokenClaims = Depends(get_principal)
):
    await get_runtime().auth.invalidate_session(principal.sub, session_id)
    return Envelope(status="ok", data={"invalidated": session_id})


@router.post(
    "/auth/sessions/invalidate-all",
    response_model=Envelope,
    tags=["auth"],
    dependencies=[Depends(enforce_rate_limit)],
)
async def invalidate_all_sessions(principal: TokenClaims = Depends(get_principal)):
    count = await get_runtime().auth.invalidate_all_sessions(principal.sub)
    return Envelope(status="ok", data=InvalidateAllResponse(invalidated=count))
