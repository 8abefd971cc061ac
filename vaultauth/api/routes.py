from __future__ import annotations

from typing import Any, Dict, Optional

from fastapi import APIRouter, Cookie, Depends, Header, HTTPException, Query, Request, Response

from vaultauth.api.schemas import (
    ChangePasswordRequest,
    EmailRequest,
    Envelope,
    LoginRequest,
    LogoutRequest,
    MfaConfirmRequest,
    MfaDisableRequest,
    MfaSetupRequest,
    RefreshRequest,
    RegisterRequest,
    ResetPasswordRequest,
    TokenRequest,
    UpdateProfileRequest,
    VerifyMfaRequest,
)
from vaultauth.logging import get_logger
from vaultauth.service.auth import AuthContext, LoginResult, RegisterInput, TokenSet
from vaultauth.service.errors import AuthenticationError, RateLimitedError
from vaultauth.service.runtime import Runtime, check_rate_limit, get_runtime
from vaultauth.storage.models import Session, SessionMetadata

logger = get_logger(__name__)

router = APIRouter()

ACCESS_COOKIE = "access_token"
REFRESH_COOKIE = "refresh_token"
RATE_WINDOW_SECONDS = 60


def _http_error(
    code: str, message: str, status_code: int, details: Optional[dict | str] = None
) -> HTTPException:
    payload: Dict[str, Any] = {"error": code, "message": message}
    if details is not None:
        payload["details"] = details
    return HTTPException(status_code=status_code, detail=payload)


class RateLimitInfo:
    """Rate limit state for adding response headers."""

    __slots__ = ("limit", "remaining", "reset_seconds")

    def __init__(self, limit: int, remaining: int, reset_seconds: int):
        self.limit = limit
        self.remaining = remaining
        self.reset_seconds = reset_seconds

    def apply_headers(self, response: Response) -> None:
        response.headers["X-RateLimit-Limit"] = str(self.limit)
        response.headers["X-RateLimit-Remaining"] = str(max(0, self.remaining))
        response.headers["X-RateLimit-Reset"] = str(self.reset_seconds)


async def _enforce_rate_limit(
    runtime: Runtime,
    key: str,
    limit: int,
    window_seconds: int = RATE_WINDOW_SECONDS,
    *,
    response: Optional[Response] = None,
) -> RateLimitInfo:
    """Enforce a rate limit and optionally apply headers to the response.

    Raises:
        RateLimitedError: when the bucket for ``key`` is empty
    """
    allowed, remaining, retry_after = await check_rate_limit(runtime, key, limit, window_seconds)
    info = RateLimitInfo(limit, remaining, retry_after if not allowed else window_seconds)
    if response is not None:
        info.apply_headers(response)
    if not allowed:
        logger.warning("rate_limit_exceeded", key=key, limit=limit, retry_after=retry_after)
        raise RateLimitedError(
            "Too many requests, please try again later", retry_after=retry_after, limit=limit
        )
    return info


def _client_ip(request: Request) -> str:
    return request.client.host if request.client else "unknown"


async def _limit_auth(request: Request, response: Response, action: str) -> RateLimitInfo:
    runtime = get_runtime()
    return await _enforce_rate_limit(
        runtime,
        f"auth:{action}:{_client_ip(request)}",
        runtime.settings.auth_rate_limit_per_minute,
        response=response,
    )


async def _limit_mfa(user_key: str, response: Response, action: str) -> RateLimitInfo:
    runtime = get_runtime()
    return await _enforce_rate_limit(
        runtime,
        f"mfa:{action}:{user_key}",
        runtime.settings.mfa_rate_limit_per_minute,
        response=response,
    )


def _device_type(user_agent: Optional[str]) -> str:
    ua = (user_agent or "").lower()
    if "ipad" in ua or "tablet" in ua:
        return "tablet"
    if "mobile" in ua or "android" in ua or "iphone" in ua:
        return "mobile"
    return "desktop"


def _session_metadata(request: Request, device_type: Optional[str] = None) -> SessionMetadata:
    user_agent = request.headers.get("user-agent")
    return SessionMetadata(
        ip_address=_client_ip(request),
        user_agent=user_agent,
        device_type=device_type or _device_type(user_agent),
    )


def _bearer_token(authorization: Optional[str], cookie_token: Optional[str]) -> Optional[str]:
    if authorization:
        scheme, _, token = authorization.partition(" ")
        if scheme.lower() == "bearer" and token.strip():
            return token.strip()
        return None
    return cookie_token


async def get_user(
    authorization: Optional[str] = Header(None),
    access_token: Optional[str] = Cookie(None, alias=ACCESS_COOKIE),
) -> AuthContext:
    runtime = get_runtime()
    return await runtime.auth.authenticate(_bearer_token(authorization, access_token))


async def get_optional_user(
    authorization: Optional[str] = Header(None),
    access_token: Optional[str] = Cookie(None, alias=ACCESS_COOKIE),
) -> Optional[AuthContext]:
    token = _bearer_token(authorization, access_token)
    if not token:
        return None
    runtime = get_runtime()
    try:
        return await runtime.auth.authenticate(token)
    except AuthenticationError as exc:
        logger.info("optional_auth_rejected", error_type=type(exc).__name__)
        return None


def _apply_session_cookies(response: Response, tokens: TokenSet) -> None:
    secure = get_runtime().settings.cookie_secure
    response.set_cookie(
        ACCESS_COOKIE,
        tokens.access_token,
        httponly=True,
        secure=secure,
        samesite="lax",
        max_age=tokens.expires_in,
        path="/",
    )
    response.set_cookie(
        REFRESH_COOKIE,
        tokens.refresh_token,
        httponly=True,
        secure=secure,
        samesite="lax",
        max_age=tokens.refresh_expires_in,
        path="/",
    )


def _clear_session_cookies(response: Response) -> None:
    response.delete_cookie(ACCESS_COOKIE, path="/")
    response.delete_cookie(REFRESH_COOKIE, path="/")


def _tokens_view(tokens: TokenSet) -> Dict[str, Any]:
    data = tokens.to_dict()
    data["session_id"] = tokens.session_id
    return data


def _session_view(session: Session, current_session_id: str) -> Dict[str, Any]:
    return {
        "id": session.id,
        "ip_address": session.metadata.ip_address,
        "user_agent": session.metadata.user_agent,
        "device_type": session.metadata.device_type,
        "client_id": session.metadata.client_id,
        "created_at": session.created_at.isoformat(),
        "last_seen_at": session.last_seen_at.isoformat(),
        "expires_at": session.expires_at.isoformat(),
        "current": session.id == current_session_id,
    }


def _envelope(message: str, data: Any = None) -> Dict[str, Any]:
    return Envelope(success=True, message=message, data=data).model_dump(exclude_none=True)


def _login_payload(result: LoginResult, response: Response) -> Dict[str, Any]:
    if result.mfa_required:
        return _envelope(
            "Multi-factor authentication required",
            {
                "user": {"id": result.user.id, "email": result.user.email},
                "mfa_required": True,
                "mfa_methods": list(result.methods),
                "challenge_id": result.challenge_id,
                "expires_in": result.expires_in,
            },
        )
    _apply_session_cookies(response, result.tokens)
    return _envelope(
        "Login successful",
        {"user": result.user.public_dict(), "tokens": _tokens_view(result.tokens)},
    )


# registration and login ------------------------------------------------------
@router.post("/auth/register", response_model=Envelope, response_model_exclude_none=True, status_code=201, tags=["auth"])
async def register(body: RegisterRequest, request: Request, response: Response):
    """Create a new account in pending-verification state.

    A verification link is sent to the address; no session is issued until
    the address is confirmed.
    """
    await _limit_auth(request, response, "register")
    runtime = get_runtime()
    result = await runtime.auth.register(
        RegisterInput(
            email=body.email,
            password=body.password,
            first_name=body.first_name,
            last_name=body.last_name,
            phone=body.phone,
        ),
        _session_metadata(request),
    )
    return _envelope(
        "Registration successful. Please check your email to verify your account.",
        {
            "user": result.user.public_dict(),
            "verification_required": result.verification_required,
        },
    )


@router.post("/auth/login", response_model=Envelope, response_model_exclude_none=True, tags=["auth"])
async def login(body: LoginRequest, request: Request, response: Response):
    """Authenticate with email and password.

    Returns tokens directly, or a challenge id when the account has MFA
    enabled. Session cookies are set on success.

    Raises:
        401: invalid credentials
        403: email not verified
        423: account locked
        429: rate limit exceeded for this IP
    """
    await _limit_auth(request, response, "login")
    runtime = get_runtime()
    result = await runtime.auth.login(
        body.email,
        body.password,
        _session_metadata(request, body.device_type),
        remember_me=body.remember_me,
    )
    return _login_payload(result, response)


@router.post("/auth/verify-mfa", response_model=Envelope, response_model_exclude_none=True, tags=["auth"])
async def verify_mfa(body: VerifyMfaRequest, request: Request, response: Response):
    """Complete a login that requires a second factor."""
    runtime = get_runtime()
    user_id = await runtime.auth.peek_mfa_challenge_user(body.challenge_id)
    # Unknown challenges share a per-IP bucket so guessing ids is throttled
    await _limit_mfa(user_id or f"ip:{_client_ip(request)}", response, "verify")
    result = await runtime.auth.verify_mfa_challenge(
        body.challenge_id, body.mfa_token, body.mfa_type
    )
    return _login_payload(result, response)


@router.post("/auth/refresh", response_model=Envelope, response_model_exclude_none=True, tags=["auth"])
async def refresh(
    request: Request,
    response: Response,
    body: Optional[RefreshRequest] = None,
    refresh_cookie: Optional[str] = Cookie(None, alias=REFRESH_COOKIE),
):
    """Rotate a refresh token and issue a new access token."""
    await _limit_auth(request, response, "refresh")
    token = (body.refresh_token if body else None) or refresh_cookie
    if not token:
        raise _http_error("INVALID_REFRESH_TOKEN", "Refresh token is required", status_code=401)
    runtime = get_runtime()
    tokens = await runtime.auth.refresh_tokens(token)
    _apply_session_cookies(response, tokens)
    return _envelope("Token refreshed successfully", {"tokens": _tokens_view(tokens)})


@router.post("/auth/logout", response_model=Envelope, response_model_exclude_none=True, tags=["auth"])
async def logout(
    response: Response,
    body: Optional[LogoutRequest] = None,
    authorization: Optional[str] = Header(None),
    access_token: Optional[str] = Cookie(None, alias=ACCESS_COOKIE),
):
    runtime = get_runtime()
    all_devices = bool(body and body.all_devices)
    revoked = await runtime.auth.logout(
        _bearer_token(authorization, access_token), all_devices=all_devices
    )
    _clear_session_cookies(response)
    message = "Logged out from all devices" if all_devices else "Logged out successfully"
    return _envelope(message, {"sessions_revoked": revoked})


# passwords and email verification --------------------------------------------
@router.put("/auth/change-password", response_model=Envelope, response_model_exclude_none=True, tags=["auth"])
async def change_password(
    body: ChangePasswordRequest,
    response: Response,
    principal: AuthContext = Depends(get_user),
):
    """Change the password and end every session, including this one."""
    runtime = get_runtime()
    revoked = await runtime.auth.change_password(
        principal.user_id, body.current_password, body.new_password
    )
    _clear_session_cookies(response)
    return _envelope(
        "Password changed successfully. Please log in again.", {"sessions_revoked": revoked}
    )


@router.post("/auth/verify-email", response_model=Envelope, response_model_exclude_none=True, tags=["auth"])
async def verify_email(body: TokenRequest, request: Request, response: Response):
    await _limit_auth(request, response, "verify-email")
    runtime = get_runtime()
    user = await runtime.auth.verify_email(body.token)
    return _envelope("Email verified successfully", {"user": user.public_dict()})


@router.get("/auth/verify-email", response_model=Envelope, response_model_exclude_none=True, tags=["auth"])
async def verify_email_link(
    request: Request,
    response: Response,
    token: str = Query(..., min_length=1, max_length=512),
):
    """Target of the link in verification emails."""
    await _limit_auth(request, response, "verify-email")
    runtime = get_runtime()
    user = await runtime.auth.verify_email(token)
    return _envelope("Email verified successfully", {"user": user.public_dict()})


@router.post("/auth/resend-verification", response_model=Envelope, response_model_exclude_none=True, tags=["auth"])
async def resend_verification(body: EmailRequest, request: Request, response: Response):
    await _limit_auth(request, response, "resend-verification")
    runtime = get_runtime()
    await runtime.auth.resend_verification(body.email)
    return _envelope("If the account exists and is unverified, a new link has been sent")


@router.post("/auth/forgot-password", response_model=Envelope, response_model_exclude_none=True, tags=["auth"])
async def forgot_password(body: EmailRequest, request: Request, response: Response):
    await _limit_auth(request, response, "forgot-password")
    runtime = get_runtime()
    await runtime.auth.request_password_reset(body.email)
    return _envelope("If an account exists for that email, a reset link has been sent")


@router.post("/auth/reset-password", response_model=Envelope, response_model_exclude_none=True, tags=["auth"])
async def reset_password(body: ResetPasswordRequest, request: Request, response: Response):
    await _limit_auth(request, response, "reset-password")
    runtime = get_runtime()
    revoked = await runtime.auth.reset_password(body.token, body.new_password)
    return _envelope("Password has been reset. Please log in.", {"sessions_revoked": revoked})


# profile and sessions --------------------------------------------------------
@router.get("/auth/profile", response_model=Envelope, response_model_exclude_none=True, tags=["auth"])
async def get_profile(principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    user = runtime.auth.get_profile(principal.user_id)
    data = user.public_dict()
    data.update(
        {
            "phone": user.phone,
            "phone_verified": user.phone_verified,
            "mfa_methods": list(user.mfa_methods),
            "last_login_at": user.last_login_at.isoformat() if user.last_login_at else None,
        }
    )
    return _envelope("Profile retrieved", {"user": data})


@router.put("/auth/profile", response_model=Envelope, response_model_exclude_none=True, tags=["auth"])
async def update_profile(body: UpdateProfileRequest, principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    user = runtime.auth.update_profile(
        principal.user_id,
        first_name=body.first_name,
        last_name=body.last_name,
        phone=body.phone,
    )
    return _envelope("Profile updated", {"user": user.public_dict()})


@router.get("/auth/sessions", response_model=Envelope, response_model_exclude_none=True, tags=["auth"])
async def list_sessions(principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    sessions = await runtime.auth.list_sessions(principal.user_id)
    return _envelope(
        "Sessions retrieved",
        {"sessions": [_session_view(item, principal.session_id) for item in sessions]},
    )


@router.delete("/auth/sessions/{session_id}", response_model=Envelope, response_model_exclude_none=True, tags=["auth"])
async def revoke_session(session_id: str, principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    await runtime.auth.revoke_session(principal.user_id, session_id)
    return _envelope("Session revoked")


@router.delete("/auth/sessions", response_model=Envelope, response_model_exclude_none=True, tags=["auth"])
async def revoke_other_sessions(principal: AuthContext = Depends(get_user)):
    """Revoke every session except the one making the request."""
    runtime = get_runtime()
    revoked = await runtime.auth.revoke_other_sessions(principal.user_id, principal.session_id)
    return _envelope("Other sessions revoked", {"sessions_revoked": revoked})


# mfa enrollment --------------------------------------------------------------
@router.post("/auth/mfa/setup", response_model=Envelope, response_model_exclude_none=True, tags=["auth"])
async def mfa_setup(
    body: MfaSetupRequest, response: Response, principal: AuthContext = Depends(get_user)
):
    """Begin MFA enrollment.

    TOTP returns the shared secret and an otpauth URI; SMS and email send a
    confirmation code to the destination.
    """
    await _limit_mfa(principal.user_id, response, "setup")
    runtime = get_runtime()
    start = await runtime.auth.begin_mfa_enrollment(
        principal.user_id, body.method, body.destination
    )
    data = {
        "method": start.method,
        "secret": start.secret,
        "otpauth_uri": start.otpauth_uri,
        "destination": start.destination,
    }
    return _envelope(
        "MFA setup started", {key: value for key, value in data.items() if value is not None}
    )


@router.post("/auth/mfa/confirm", response_model=Envelope, response_model_exclude_none=True, tags=["auth"])
async def mfa_confirm(
    body: MfaConfirmRequest, response: Response, principal: AuthContext = Depends(get_user)
):
    await _limit_mfa(principal.user_id, response, "confirm")
    runtime = get_runtime()
    backup_codes = await runtime.auth.confirm_mfa_enrollment(
        principal.user_id, body.method, body.code
    )
    return _envelope(
        "MFA enabled. Store these backup codes somewhere safe.", {"backup_codes": backup_codes}
    )


@router.post("/auth/mfa/disable", response_model=Envelope, response_model_exclude_none=True, tags=["auth"])
async def mfa_disable(
    body: MfaDisableRequest, response: Response, principal: AuthContext = Depends(get_user)
):
    await _limit_mfa(principal.user_id, response, "disable")
    runtime = get_runtime()
    await runtime.auth.disable_mfa(principal.user_id, body.password)
    return _envelope("MFA disabled")
