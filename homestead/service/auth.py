from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional, Protocol, Union

from homestead.config import Settings
from homestead.logging import get_logger
from homestead.service.errors import (
    AuthenticationError,
    AuthorizationError,
    ConflictError,
    TwoFactorSetupRequiredError,
    ValidationError,
)
from homestead.service.passwords import PasswordHasher, validate_password_strength
from homestead.service.secrets import BackupInfo, SecretStore
from homestead.service.tokens import TokenIssuer, TokenPair
from homestead.service.totp import TOTPEnrollment, TOTPEngine
from homestead.storage.errors import UniqueViolation
from homestead.storage.models import Session, User, canonical_email

logger = get_logger(__name__)

INVALID_CREDENTIALS = "invalid credentials"
INVALID_REFRESH = "invalid or expired refresh token"


class AuthStore(Protocol):
    def create_user(self, username: str, email: str, password_hash: str) -> User: ...

    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_user_by_login(self, identifier: str) -> Optional[User]: ...

    def admin_exists(self) -> bool: ...

    def set_pending_totp_secret(self, user_id: str, secret: str) -> None: ...

    def confirm_totp(self, user_id: str, secret: str) -> Optional[User]: ...

    def delete_user(self, user_id: str) -> bool: ...

    def create_session(
        self, user_id: str, device_id: str, refresh_token: str, expires_at: datetime
    ) -> Session: ...

    def find_active_session(
        self, refresh_token: str, device_id: str, now: datetime
    ) -> Optional[Session]: ...

    def rotate_session(
        self,
        session_id: str,
        expected_refresh_token: str,
        new_refresh_token: str,
        new_expires_at: datetime,
    ) -> bool: ...

    def delete_session(self, refresh_token: str, device_id: str) -> bool: ...

    def prune_expired_sessions(self, now: datetime) -> int: ...


@dataclass
class AuthContext:
    user_id: str
    token_id: Optional[str] = None


@dataclass(frozen=True)
class PasswordProof:
    """Username (or email) plus password, used before any token exists."""

    username: str
    password: str


@dataclass(frozen=True)
class BearerProof:
    access_token: str


AuthProof = Union[PasswordProof, BearerProof]


@dataclass(frozen=True)
class RegistrationResult:
    user: User
    is_admin: bool


@dataclass(frozen=True)
class LoginResult:
    user: User
    access_token: str
    refresh_token: str


class AuthService:
    """Registration, two-factor enrollment, login and refresh rotation.

    Holds no mutable state of its own; every invariant is enforced by a single
    atomic store call so concurrent requests need no locking here.
    """

    def __init__(
        self,
        store: AuthStore,
        settings: Settings,
        *,
        hasher: PasswordHasher,
        totp: TOTPEngine,
        tokens: TokenIssuer,
        secrets: SecretStore,
    ) -> None:
        self.store: AuthStore = store
        self.settings = settings
        self.hasher = hasher
        self.totp = totp
        self.tokens = tokens
        self.secrets = secrets
        self.logger = logger
        self._dummy_hash: Optional[str] = None

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    async def _hash_password(self, password: str) -> str:
        return await asyncio.to_thread(self.hasher.hash, password)

    async def _verify_password(self, password: str, password_hash: str) -> bool:
        return await asyncio.to_thread(self.hasher.verify, password, password_hash)

    async def _burn_password_check(self, password: str) -> None:
        """Spend a hash verification for unknown users so timing matches a real miss."""

        if self._dummy_hash is None:
            self._dummy_hash = await self._hash_password("homestead-unknown-user")
        await self._verify_password(password or "", self._dummy_hash)

    # registration
    async def register(self, username: str, email: str, password: str) -> RegistrationResult:
        username = (username or "").strip()
        email = canonical_email(email or "")
        if not username or not email or not password:
            raise ValidationError("username, email and password are required")
        check = validate_password_strength(password, self.settings.password_min_length)
        if not check.ok:
            raise ValidationError(check.reason or "password is too weak")
        password_hash = await self._hash_password(password)
        try:
            user = self.store.create_user(username, email, password_hash)
        except UniqueViolation:
            # Never say which field collided
            self.logger.info("registration_conflict")
            raise ConflictError("account already exists")
        self.logger.info("user_registered", user_id=user.id, is_admin=user.is_admin)
        return RegistrationResult(user=user, is_admin=user.is_admin)

    def setup_status(self) -> bool:
        """True once the first (admin) account exists."""

        return self.store.admin_exists()

    # proofs
    def authenticate_access(self, access_token: Optional[str]) -> Optional[AuthContext]:
        payload = self.tokens.verify_access(access_token)
        if not payload:
            return None
        return AuthContext(user_id=str(payload["sub"]), token_id=payload.get("jti"))

    async def resolve_proof(self, proof: AuthProof) -> User:
        if isinstance(proof, BearerProof):
            ctx = self.authenticate_access(proof.access_token)
            user = self.store.get_user(ctx.user_id) if ctx else None
            if not user:
                raise AuthenticationError("invalid or expired token")
            return user
        if isinstance(proof, PasswordProof):
            return await self._check_password(proof.username, proof.password)
        raise AuthenticationError(INVALID_CREDENTIALS)

    async def _check_password(self, identifier: str, password: str) -> User:
        identifier = (identifier or "").strip()
        if "@" in identifier:
            # Emails are stored in canonical form
            identifier = canonical_email(identifier)
        if not identifier or not password:
            raise AuthenticationError(INVALID_CREDENTIALS)
        user = self.store.get_user_by_login(identifier)
        if not user:
            await self._burn_password_check(password)
            self.logger.warning("login_unknown_user")
            raise AuthenticationError(INVALID_CREDENTIALS)
        if not await self._verify_password(password, user.password_hash):
            self.logger.warning("password_verification_failed", user_id=user.id)
            raise AuthenticationError(INVALID_CREDENTIALS)
        return user

    # two-factor enrollment
    async def enroll_totp(self, proof: AuthProof) -> TOTPEnrollment:
        """Generate a candidate TOTP secret and park it as pending.

        The password variant only serves accounts that have never finished
        enrollment, so a leaked password cannot replace a working second factor.
        """

        user = await self.resolve_proof(proof)
        if isinstance(proof, PasswordProof) and user.totp_enabled:
            self.logger.warning("totp_preauth_enroll_refused", user_id=user.id)
            raise AuthorizationError("two-factor authentication is already enabled")
        enrollment = self.totp.enroll(user.username)
        self.store.set_pending_totp_secret(user.id, enrollment.secret)
        self.logger.info("totp_enrollment_started", user_id=user.id)
        return enrollment

    async def confirm_totp(self, proof: AuthProof, code: Optional[str]) -> User:
        user = await self.resolve_proof(proof)
        if user.totp_pending_secret:
            if not self.totp.verify(user.totp_pending_secret, code):
                self.logger.warning("totp_confirm_failed", user_id=user.id)
                raise AuthenticationError("invalid two-factor code")
            confirmed = self.store.confirm_totp(user.id, user.totp_pending_secret)
            if not confirmed:
                # A newer enrollment replaced the secret this code was checked against
                self.logger.warning("totp_confirm_superseded", user_id=user.id)
                raise ValidationError("two-factor setup was restarted; confirm the latest code")
            self.logger.info("totp_enabled", user_id=user.id)
            return confirmed
        if user.totp_enabled and user.totp_secret:
            # Repeat confirmation of an already active secret
            if not self.totp.verify(user.totp_secret, code):
                self.logger.warning("totp_confirm_failed", user_id=user.id)
                raise AuthenticationError("invalid two-factor code")
            return user
        raise ValidationError("two-factor setup has not been started")

    # sessions
    async def login(
        self,
        identifier: str,
        password: str,
        totp_code: Optional[str],
        device_id: Optional[str],
    ) -> LoginResult:
        if not device_id or not device_id.strip():
            raise ValidationError("device id is required")
        user = await self._check_password(identifier, password)
        if not user.totp_enabled or not user.totp_secret:
            self.logger.info("login_requires_totp_setup", user_id=user.id)
            raise TwoFactorSetupRequiredError(
                "two-factor setup must be completed before signing in"
            )
        if not self.totp.verify(user.totp_secret, totp_code):
            self.logger.warning("login_totp_failed", user_id=user.id)
            raise AuthenticationError(INVALID_CREDENTIALS)
        pair = self.tokens.issue_pair(user.id)
        self.store.create_session(
            user.id, device_id, pair.refresh_token, pair.refresh_expires_at
        )
        self.logger.info("login_succeeded", user_id=user.id, device_id=device_id)
        return LoginResult(
            user=user, access_token=pair.access_token, refresh_token=pair.refresh_token
        )

    async def refresh(self, refresh_token: Optional[str], device_id: Optional[str]) -> TokenPair:
        """Swap a live refresh token for a new pair; the old token dies on success."""

        if not refresh_token or not device_id:
            raise AuthenticationError(INVALID_REFRESH)
        payload = self.tokens.verify_refresh(refresh_token)
        if not payload:
            raise AuthenticationError(INVALID_REFRESH)
        session = self.store.find_active_session(refresh_token, device_id, self._now())
        if not session or session.user_id != str(payload.get("sub")):
            self.logger.warning("refresh_session_missing", device_id=device_id)
            raise AuthenticationError(INVALID_REFRESH)
        pair = self.tokens.issue_pair(session.user_id)
        rotated = self.store.rotate_session(
            session.id, refresh_token, pair.refresh_token, pair.refresh_expires_at
        )
        if not rotated:
            # A concurrent refresh with the same token already won
            self.logger.warning("refresh_rotation_lost", session_id=session.id)
            raise AuthenticationError(INVALID_REFRESH)
        self.logger.info("session_refreshed", user_id=session.user_id, session_id=session.id)
        return pair

    async def logout(self, refresh_token: Optional[str], device_id: Optional[str]) -> bool:
        if not refresh_token or not device_id:
            return False
        removed = self.store.delete_session(refresh_token, device_id)
        self.logger.info("logout", device_id=device_id, removed=removed)
        return removed

    def prune_sessions(self) -> int:
        return self.store.prune_expired_sessions(self._now())

    # admin
    async def export_backup(self, user_id: str) -> BackupInfo:
        user = self.store.get_user(user_id)
        if not user or not user.is_admin:
            self.logger.warning("backup_export_denied", user_id=user_id)
            raise AuthorizationError("admin access required")
        self.logger.info("backup_exported", user_id=user_id)
        return self.secrets.backup_info()
