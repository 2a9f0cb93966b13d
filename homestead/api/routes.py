from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Header, Request

from homestead.api.gate import bearer_token, require_admin, require_user
from homestead.api.schemas import (
    AuthTokensResponse,
    BackupResponse,
    Envelope,
    LoginRequest,
    LogoutRequest,
    MessageResponse,
    PasswordProofRequest,
    RegisterRequest,
    RegisterResponse,
    SetupStatusResponse,
    TokenPairResponse,
    TokenRefreshRequest,
    TOTPSetupResponse,
    UserPublic,
    VerifyInitialRequest,
    VerifyRequest,
)
from homestead.logging import get_logger
from homestead.service.auth import AuthContext, BearerProof, PasswordProof
from homestead.service.errors import NotFoundError, RateLimitedError, ValidationError
from homestead.service.runtime import check_rate_limit, get_runtime
from homestead.service.totp import TOTPEnrollment, is_well_formed_code
from homestead.storage.models import User

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")


async def _enforce_rate_limit(runtime, key: str, limit: int, window_seconds: int = 60) -> None:
    """Raise 429 once ``key`` has spent its budget for the window."""

    if not await check_rate_limit(runtime, key, limit, window_seconds):
        raise RateLimitedError("rate limit exceeded")


def _client_key(request: Request) -> str:
    return request.client.host if request.client else "unknown"


def _user_to_response(user: User) -> UserPublic:
    return UserPublic(**user.public_view())


def _enrollment_to_response(enrollment: TOTPEnrollment) -> TOTPSetupResponse:
    return TOTPSetupResponse(
        secret=enrollment.secret,
        otpauth_uri=enrollment.otpauth_uri,
        qr_code=enrollment.qr_code,
    )


def _require_code(code: Optional[str]) -> str:
    if not code:
        raise ValidationError("two-factor code is required")
    if not is_well_formed_code(code):
        raise ValidationError("two-factor code must be 6 digits")
    return code


@router.get("/auth/setup-status", response_model=Envelope, tags=["auth"])
async def setup_status():
    """Report whether the first (admin) account has been created."""
    runtime = get_runtime()
    admin_exists = runtime.auth.setup_status()
    return Envelope(
        status="ok",
        data=SetupStatusResponse(admin_exists=admin_exists, needs_setup=not admin_exists),
    )


@router.post("/auth/register", response_model=Envelope, status_code=201, tags=["auth"])
async def register(body: RegisterRequest, request: Request):
    """Create an account. The first account ever created becomes the admin.

    The admin response names the secrets file and its timestamp so the
    operator knows what to back up; the secrets themselves are never returned.

    Raises:
        400: Missing fields or a weak password
        409: Username or email already taken
        429: Too many registrations from this client
    """
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"register:{_client_key(request)}",
        runtime.settings.auth_rate_limit_per_minute,
    )
    result = await runtime.auth.register(body.username, body.email, body.password)
    response = RegisterResponse(
        user=_user_to_response(result.user),
        is_admin=result.is_admin,
        message="account created; set up two-factor authentication to sign in",
    )
    if result.is_admin:
        response.secrets_file = str(runtime.secret_store.path)
        response.generated_at = runtime.secret_store.generated_at()
        logger.info(
            "admin_bootstrapped",
            user_id=result.user.id,
            secrets_file=response.secrets_file,
            secrets_source=runtime.secret_store.source,
        )
    return Envelope(status="ok", data=response)


@router.post("/auth/2fa/setup-initial", response_model=Envelope, tags=["auth"])
async def setup_totp_initial(body: PasswordProofRequest):
    """Start two-factor enrollment for an account that has never enabled it.

    Authenticated by username (or email) and password since no token exists yet.
    """
    if not body.username or not body.password:
        raise ValidationError("username and password are required")
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"2fa_initial:{body.username.strip().lower()}",
        runtime.settings.auth_rate_limit_per_minute,
    )
    enrollment = await runtime.auth.enroll_totp(
        PasswordProof(username=body.username, password=body.password)
    )
    return Envelope(status="ok", data=_enrollment_to_response(enrollment))


@router.post("/auth/2fa/verify-initial", response_model=Envelope, tags=["auth"])
async def verify_totp_initial(body: VerifyInitialRequest):
    """Confirm pre-auth enrollment with a code from the authenticator app."""
    if not body.username or not body.password or not body.code:
        raise ValidationError("username, password and two-factor code are required")
    code = _require_code(body.code)
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"2fa_initial:{body.username.strip().lower()}",
        runtime.settings.auth_rate_limit_per_minute,
    )
    await runtime.auth.confirm_totp(
        PasswordProof(username=body.username, password=body.password), code
    )
    return Envelope(
        status="ok", data=MessageResponse(message="two-factor authentication enabled")
    )


@router.post("/auth/2fa/setup", response_model=Envelope, tags=["auth"])
async def setup_totp(
    principal: AuthContext = Depends(require_user),
    authorization: Optional[str] = Header(None),
):
    """Start (or restart) two-factor enrollment for the signed-in user.

    An already working secret stays valid until the new one is confirmed.
    """
    runtime = get_runtime()
    enrollment = await runtime.auth.enroll_totp(
        BearerProof(access_token=bearer_token(authorization) or "")
    )
    return Envelope(status="ok", data=_enrollment_to_response(enrollment))


@router.post("/auth/2fa/verify", response_model=Envelope, tags=["auth"])
async def verify_totp(
    body: VerifyRequest,
    principal: AuthContext = Depends(require_user),
    authorization: Optional[str] = Header(None),
):
    code = _require_code(body.code)
    runtime = get_runtime()
    await runtime.auth.confirm_totp(
        BearerProof(access_token=bearer_token(authorization) or ""), code
    )
    return Envelope(
        status="ok", data=MessageResponse(message="two-factor authentication enabled")
    )


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest):
    """Authenticate with username or email, password and a TOTP code.

    Returns an access token and a refresh token bound to ``device_id``.

    Raises:
        400: Missing username, password or device id
        401: Invalid credentials, or ``mfa_setup_required`` when enrollment is unfinished
        429: Rate limit exceeded for this identifier
    """
    if not body.username or not body.password:
        raise ValidationError("username and password are required")
    if not body.device_id:
        raise ValidationError("device id is required")
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"login:{body.username.strip().lower()}",
        runtime.settings.auth_rate_limit_per_minute,
    )
    result = await runtime.auth.login(
        body.username, body.password, body.totp_code, body.device_id
    )
    return Envelope(
        status="ok",
        data=AuthTokensResponse(
            user=_user_to_response(result.user),
            access_token=result.access_token,
            refresh_token=result.refresh_token,
        ),
    )


@router.post("/auth/refresh", response_model=Envelope, tags=["auth"])
async def refresh_tokens(body: TokenRefreshRequest):
    """Exchange a refresh token for a new pair; the presented token stops working."""
    if not body.refresh_token or not body.device_id:
        raise ValidationError("refresh token and device id are required")
    runtime = get_runtime()
    pair = await runtime.auth.refresh(body.refresh_token, body.device_id)
    return Envelope(
        status="ok",
        data=TokenPairResponse(
            access_token=pair.access_token, refresh_token=pair.refresh_token
        ),
    )


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(body: LogoutRequest, principal: AuthContext = Depends(require_user)):
    if not body.refresh_token or not body.device_id:
        raise ValidationError("refresh token and device id are required")
    runtime = get_runtime()
    await runtime.auth.logout(body.refresh_token, body.device_id)
    return Envelope(status="ok", data=MessageResponse(message="logged out"))


@router.get("/auth/backup", response_model=Envelope, tags=["admin"])
async def export_backup(principal: AuthContext = Depends(require_admin)):
    """Return the secrets bundle for offline backup. Admin only."""
    runtime = get_runtime()
    info = await runtime.auth.export_backup(principal.user_id)
    return Envelope(
        status="ok",
        data=BackupResponse(
            jwt_secret=info.secrets.access_signing_key,
            jwt_refresh_secret=info.secrets.refresh_signing_key,
            encryption_key=info.secrets.encryption_key,
            secrets_file=info.secrets_file,
            source=info.source,
            generated_at=info.generated_at,
        ),
    )


@router.get("/me", response_model=Envelope, tags=["auth"])
async def me(principal: AuthContext = Depends(require_user)):
    runtime = get_runtime()
    user = runtime.store.get_user(principal.user_id)
    if not user:
        raise NotFoundError("user not found")
    return Envelope(status="ok", data=_user_to_response(user))
