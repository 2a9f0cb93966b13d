from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any, Mapping, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from homestead.logging import get_logger
from homestead.service.crypto import SecretCipher
from homestead.storage.errors import ConstraintViolation, UniqueViolation
from homestead.storage.models import Session, User

# Partial unique index admitting at most one admin row
SINGLE_ADMIN_INDEX = "app_user_single_admin"

_SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS app_user (
        id UUID PRIMARY KEY,
        username TEXT NOT NULL UNIQUE,
        email TEXT NOT NULL UNIQUE,
        password_hash TEXT NOT NULL,
        totp_secret TEXT,
        totp_pending_secret TEXT,
        totp_enabled BOOLEAN NOT NULL DEFAULT FALSE,
        is_admin BOOLEAN NOT NULL DEFAULT FALSE,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    f"""
    CREATE UNIQUE INDEX IF NOT EXISTS {SINGLE_ADMIN_INDEX}
        ON app_user (is_admin) WHERE is_admin
    """,
    """
    CREATE TABLE IF NOT EXISTS auth_session (
        id UUID PRIMARY KEY,
        user_id UUID NOT NULL REFERENCES app_user(id) ON DELETE CASCADE,
        device_id TEXT NOT NULL,
        refresh_token TEXT NOT NULL UNIQUE,
        expires_at TIMESTAMPTZ NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS auth_session_user_idx ON auth_session (user_id)
    """,
    """
    CREATE INDEX IF NOT EXISTS auth_session_expires_idx ON auth_session (expires_at)
    """,
)


class PostgresStore:
    """Postgres-backed users and session ledger.

    Atomicity comes from single statements: the admin flag is decided inside
    the insert and rotation is an ``UPDATE`` guarded by the expected token.
    """

    def __init__(self, dsn: str, *, cipher: Optional[SecretCipher] = None) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self._cipher = cipher
        self.pool = ConnectionPool(
            self.dsn,
            min_size=1,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._ensure_schema()

    def _connect(self):
        return self.pool.connection()

    def _ensure_schema(self) -> None:
        """Create the ``app_user`` and ``auth_session`` tables if they are missing."""

        with self._connect() as conn:
            for statement in _SCHEMA_STATEMENTS:
                conn.execute(statement)

    def close(self) -> None:
        self.pool.close()

    def _seal(self, secret: Optional[str]) -> Optional[str]:
        if not secret or not self._cipher:
            return secret
        return self._cipher.encrypt(secret)

    def _unseal(self, secret: Optional[str]) -> Optional[str]:
        if not secret or not self._cipher:
            return secret
        return self._cipher.decrypt(secret)

    def _row_to_user(self, row: Mapping[str, Any]) -> User:
        return User(
            id=str(row["id"]),
            username=row["username"],
            email=row["email"],
            password_hash=row["password_hash"],
            totp_secret=self._unseal(row.get("totp_secret")),
            totp_pending_secret=self._unseal(row.get("totp_pending_secret")),
            totp_enabled=bool(row.get("totp_enabled", False)),
            is_admin=bool(row.get("is_admin", False)),
            created_at=row.get("created_at") or datetime.now(timezone.utc),
            updated_at=row.get("updated_at") or datetime.now(timezone.utc),
        )

    @staticmethod
    def _row_to_session(row: Mapping[str, Any]) -> Session:
        return Session(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            device_id=row["device_id"],
            refresh_token=row["refresh_token"],
            expires_at=row["expires_at"],
            created_at=row.get("created_at") or datetime.now(timezone.utc),
        )

    # users
    def create_user(self, username: str, email: str, password_hash: str) -> User:
        try:
            return self._insert_user(username, email, password_hash, claim_admin=True)
        except errors.UniqueViolation as exc:
            if self._constraint_name(exc) != SINGLE_ADMIN_INDEX:
                raise self._unique_violation(exc) from exc
            # Another insert claimed admin first; this one is a regular user
            self.logger.info("admin_claim_lost", username=username)
        try:
            return self._insert_user(username, email, password_hash, claim_admin=False)
        except errors.UniqueViolation as exc:
            raise self._unique_violation(exc) from exc

    def _insert_user(
        self, username: str, email: str, password_hash: str, *, claim_admin: bool
    ) -> User:
        user_id = str(uuid.uuid4())
        admin_expr = "NOT EXISTS (SELECT 1 FROM app_user WHERE is_admin)" if claim_admin else "FALSE"
        with self._connect() as conn:
            row = conn.execute(
                f"""
                INSERT INTO app_user (id, username, email, password_hash, is_admin)
                SELECT %s, %s, %s, %s, {admin_expr}
                RETURNING *
                """,
                (user_id, username, email, password_hash),
            ).fetchone()
        return self._row_to_user(row)

    @staticmethod
    def _constraint_name(exc: errors.UniqueViolation) -> Optional[str]:
        diag = getattr(exc, "diag", None)
        return getattr(diag, "constraint_name", None) if diag else None

    def _unique_violation(self, exc: errors.UniqueViolation) -> UniqueViolation:
        constraint = self._constraint_name(exc) or ""
        field = "email" if "email" in constraint else "username"
        return UniqueViolation(f"{field} already exists", {"field": field})

    def get_user(self, user_id: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE id = %s", (user_id,)
            ).fetchone()
        return self._row_to_user(row) if row else None

    def get_user_by_login(self, identifier: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE username = %s OR email = %s LIMIT 1",
                (identifier, identifier),
            ).fetchone()
        return self._row_to_user(row) if row else None

    def admin_exists(self) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT EXISTS (SELECT 1 FROM app_user WHERE is_admin) AS present"
            ).fetchone()
        return bool(row and row["present"])

    def set_pending_totp_secret(self, user_id: str, secret: str) -> None:
        with self._connect() as conn:
            cur = conn.execute(
                """
                UPDATE app_user SET totp_pending_secret = %s, updated_at = now()
                WHERE id = %s
                """,
                (self._seal(secret), user_id),
            )
            if cur.rowcount == 0:
                raise ConstraintViolation("user not found for totp", {"user_id": user_id})

    def confirm_totp(self, user_id: str, secret: str) -> Optional[User]:
        # Sealed values carry a random nonce; compare unsealed under a row lock
        with self._connect() as conn:
            current = conn.execute(
                "SELECT totp_pending_secret FROM app_user WHERE id = %s FOR UPDATE",
                (user_id,),
            ).fetchone()
            if not current or self._unseal(current["totp_pending_secret"]) != secret:
                return None
            row = conn.execute(
                """
                UPDATE app_user
                SET totp_secret = %s, totp_pending_secret = NULL,
                    totp_enabled = TRUE, updated_at = now()
                WHERE id = %s
                RETURNING *
                """,
                (self._seal(secret), user_id),
            ).fetchone()
        return self._row_to_user(row) if row else None

    def delete_user(self, user_id: str) -> bool:
        # auth_session rows go with the user via ON DELETE CASCADE
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM app_user WHERE id = %s", (user_id,))
            return cur.rowcount > 0

    # session ledger
    def create_session(
        self, user_id: str, device_id: str, refresh_token: str, expires_at: datetime
    ) -> Session:
        sess = Session.new(user_id, device_id, refresh_token, expires_at)
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO auth_session (id, user_id, device_id, refresh_token, expires_at, created_at)
                    VALUES (%s, %s, %s, %s, %s, %s)
                    """,
                    (
                        sess.id,
                        sess.user_id,
                        sess.device_id,
                        sess.refresh_token,
                        sess.expires_at,
                        sess.created_at,
                    ),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("session user missing", {"user_id": user_id})
        return sess

    def find_active_session(
        self, refresh_token: str, device_id: str, now: datetime
    ) -> Optional[Session]:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT * FROM auth_session
                WHERE refresh_token = %s AND device_id = %s AND expires_at > %s
                """,
                (refresh_token, device_id, now),
            ).fetchone()
        return self._row_to_session(row) if row else None

    def rotate_session(
        self,
        session_id: str,
        expected_refresh_token: str,
        new_refresh_token: str,
        new_expires_at: datetime,
    ) -> bool:
        with self._connect() as conn:
            cur = conn.execute(
                """
                UPDATE auth_session
                SET refresh_token = %s, expires_at = %s
                WHERE id = %s AND refresh_token = %s AND expires_at > now()
                """,
                (new_refresh_token, new_expires_at, session_id, expected_refresh_token),
            )
            return cur.rowcount == 1

    def delete_session(self, refresh_token: str, device_id: str) -> bool:
        with self._connect() as conn:
            cur = conn.execute(
                "DELETE FROM auth_session WHERE refresh_token = %s AND device_id = %s",
                (refresh_token, device_id),
            )
            return cur.rowcount > 0

    def prune_expired_sessions(self, now: datetime) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                "DELETE FROM auth_session WHERE expires_at <= %s", (now,)
            )
            removed = cur.rowcount
        if removed:
            self.logger.info("sessions_pruned", count=removed)
        return removed
