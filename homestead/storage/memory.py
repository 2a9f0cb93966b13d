from __future__ import annotations

import threading
import uuid
from dataclasses import replace
from datetime import datetime, timezone
from typing import Dict, Optional

from homestead.logging import get_logger
from homestead.service.crypto import SecretCipher
from homestead.storage.errors import ConstraintViolation, UniqueViolation
from homestead.storage.models import Session, User


class MemoryStore:
    """In-process store for tests and single-node development.

    Every public method runs under one ``RLock`` so each call is atomic with
    respect to the others, which is what the admin flag and session rotation
    rely on.
    """

    def __init__(self, *, cipher: Optional[SecretCipher] = None) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.sessions: Dict[str, Session] = {}
        self._cipher = cipher
        # RLock for all data operations to ensure thread safety
        self._data_lock = threading.RLock()

    # TOTP secrets at rest
    def _seal(self, secret: Optional[str]) -> Optional[str]:
        if not secret or not self._cipher:
            return secret
        return self._cipher.encrypt(secret)

    def _unseal(self, secret: Optional[str]) -> Optional[str]:
        if not secret or not self._cipher:
            return secret
        return self._cipher.decrypt(secret)

    def _public_copy(self, user: User) -> User:
        return replace(
            user,
            totp_secret=self._unseal(user.totp_secret),
            totp_pending_secret=self._unseal(user.totp_pending_secret),
        )

    # users
    def create_user(self, username: str, email: str, password_hash: str) -> User:
        with self._data_lock:
            for existing in self.users.values():
                if existing.username == username:
                    raise UniqueViolation("username already exists", {"field": "username"})
                if existing.email == email:
                    raise UniqueViolation("email already exists", {"field": "email"})
            is_admin = not any(existing.is_admin for existing in self.users.values())
            user = User(
                id=str(uuid.uuid4()),
                username=username,
                email=email,
                password_hash=password_hash,
                is_admin=is_admin,
            )
            self.users[user.id] = user
            return self._public_copy(user)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            return self._public_copy(user) if user else None

    def get_user_by_login(self, identifier: str) -> Optional[User]:
        with self._data_lock:
            user = next(
                (
                    u
                    for u in self.users.values()
                    if u.username == identifier or u.email == identifier
                ),
                None,
            )
            return self._public_copy(user) if user else None

    def admin_exists(self) -> bool:
        with self._data_lock:
            return any(u.is_admin for u in self.users.values())

    def set_pending_totp_secret(self, user_id: str, secret: str) -> None:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                raise ConstraintViolation("user not found for totp", {"user_id": user_id})
            user.totp_pending_secret = self._seal(secret)
            user.updated_at = datetime.now(timezone.utc)

    def confirm_totp(self, user_id: str, secret: str) -> Optional[User]:
        """Promote the pending TOTP secret and enable 2FA.

        Returns ``None`` when the pending slot no longer holds ``secret``
        (a newer enrollment replaced it, or the user is gone).
        """

        with self._data_lock:
            user = self.users.get(user_id)
            if not user or self._unseal(user.totp_pending_secret) != secret:
                return None
            user.totp_secret = self._seal(secret)
            user.totp_pending_secret = None
            user.totp_enabled = True
            user.updated_at = datetime.now(timezone.utc)
            return self._public_copy(user)

    def delete_user(self, user_id: str) -> bool:
        with self._data_lock:
            if self.users.pop(user_id, None) is None:
                return False
            stale = [sid for sid, sess in self.sessions.items() if sess.user_id == user_id]
            for sid in stale:
                self.sessions.pop(sid, None)
            return True

    # session ledger
    def create_session(
        self, user_id: str, device_id: str, refresh_token: str, expires_at: datetime
    ) -> Session:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation("user does not exist", {"user_id": user_id})
            sess = Session.new(user_id, device_id, refresh_token, expires_at)
            self.sessions[sess.id] = sess
            return replace(sess)

    def find_active_session(
        self, refresh_token: str, device_id: str, now: datetime
    ) -> Optional[Session]:
        with self._data_lock:
            for sess in self.sessions.values():
                if (
                    sess.refresh_token == refresh_token
                    and sess.device_id == device_id
                    and sess.is_active(now)
                ):
                    return replace(sess)
            return None

    def rotate_session(
        self,
        session_id: str,
        expected_refresh_token: str,
        new_refresh_token: str,
        new_expires_at: datetime,
    ) -> bool:
        with self._data_lock:
            sess = self.sessions.get(session_id)
            if (
                not sess
                or sess.refresh_token != expected_refresh_token
                or not sess.is_active(datetime.now(timezone.utc))
            ):
                return False
            sess.refresh_token = new_refresh_token
            sess.expires_at = new_expires_at
            return True

    def delete_session(self, refresh_token: str, device_id: str) -> bool:
        with self._data_lock:
            match = next(
                (
                    sid
                    for sid, sess in self.sessions.items()
                    if sess.refresh_token == refresh_token and sess.device_id == device_id
                ),
                None,
            )
            if match is None:
                return False
            self.sessions.pop(match, None)
            return True

    def prune_expired_sessions(self, now: datetime) -> int:
        with self._data_lock:
            stale = [sid for sid, sess in self.sessions.items() if not sess.is_active(now)]
            for sid in stale:
                self.sessions.pop(sid, None)
            if stale:
                self.logger.info("sessions_pruned", count=len(stale))
            return len(stale)

    def close(self) -> None:
        return None
