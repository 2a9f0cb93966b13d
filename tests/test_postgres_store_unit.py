from datetime import datetime, timedelta, timezone
from types import SimpleNamespace

import pytest
from psycopg import errors

from homestead.logging import get_logger
from homestead.service.crypto import SecretCipher
from homestead.storage.errors import UniqueViolation
from homestead.storage.postgres import SINGLE_ADMIN_INDEX, PostgresStore


class _AdminClash(errors.UniqueViolation):
    diag = SimpleNamespace(constraint_name=SINGLE_ADMIN_INDEX)


class _EmailClash(errors.UniqueViolation):
    diag = SimpleNamespace(constraint_name="app_user_email_key")


class FakeCursor:
    def __init__(self, row=None, rowcount=0):
        self.row = row
        self.rowcount = rowcount

    def fetchone(self):
        return self.row


class FakeConnection:
    """Replays scripted results for each ``execute`` and records the SQL."""

    def __init__(self, script):
        self.script = list(script)
        self.statements = []

    def execute(self, sql, params=None):
        self.statements.append((" ".join(sql.split()), params))
        outcome = self.script.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False


class FakePool:
    def __init__(self, script):
        self.conn = FakeConnection(script)

    def connection(self):
        return self.conn


def _store(script, cipher=None) -> PostgresStore:
    store: PostgresStore = PostgresStore.__new__(PostgresStore)
    store.dsn = "postgresql://unused"
    store.pool = FakePool(script)
    store.logger = get_logger(__name__)
    store._cipher = cipher
    return store


def _user_row(**overrides):
    row = {
        "id": "6f1c1b0e-0000-4000-8000-000000000001",
        "username": "bob",
        "email": "bob@example.com",
        "password_hash": "h",
        "totp_secret": None,
        "totp_pending_secret": None,
        "totp_enabled": False,
        "is_admin": False,
        "created_at": datetime(2024, 1, 1, tzinfo=timezone.utc),
        "updated_at": datetime(2024, 1, 1, tzinfo=timezone.utc),
    }
    row.update(overrides)
    return row


class TestCreateUser:
    def test_admin_is_decided_inside_the_insert(self):
        store = _store([FakeCursor(row=_user_row(username="alice", is_admin=True))])
        user = store.create_user("alice", "alice@example.com", "h")

        assert user.is_admin is True
        sql, _ = store.pool.conn.statements[0]
        assert sql.startswith("INSERT INTO app_user")
        assert "NOT EXISTS (SELECT 1 FROM app_user WHERE is_admin)" in sql

    def test_lost_admin_race_retries_as_regular_user(self):
        store = _store([_AdminClash("duplicate key"), FakeCursor(row=_user_row())])
        user = store.create_user("bob", "bob@example.com", "h")

        assert user.is_admin is False
        statements = store.pool.conn.statements
        assert len(statements) == 2
        assert "SELECT %s, %s, %s, %s, FALSE" in statements[1][0]

    def test_username_or_email_clash_maps_to_storage_error(self):
        store = _store([_EmailClash("duplicate key")])
        with pytest.raises(UniqueViolation) as excinfo:
            store.create_user("bob", "bob@example.com", "h")
        assert excinfo.value.detail == {"field": "email"}
        assert len(store.pool.conn.statements) == 1


class TestSessions:
    def test_rotate_guards_on_expected_token_and_expiry(self):
        store = _store([FakeCursor(rowcount=1), FakeCursor(rowcount=0)])
        new_exp = datetime.now(timezone.utc) + timedelta(days=7)

        assert store.rotate_session("sid", "old", "new", new_exp) is True
        assert store.rotate_session("sid", "old", "newer", new_exp) is False

        sql, params = store.pool.conn.statements[0]
        assert "WHERE id = %s AND refresh_token = %s AND expires_at > now()" in sql
        assert params == ("new", new_exp, "sid", "old")

    def test_find_active_session_filters_on_now(self):
        now = datetime.now(timezone.utc)
        row = {
            "id": "sid",
            "user_id": "uid",
            "device_id": "laptop",
            "refresh_token": "tok",
            "expires_at": now + timedelta(days=1),
            "created_at": now,
        }
        store = _store([FakeCursor(row=row), FakeCursor(row=None)])

        found = store.find_active_session("tok", "laptop", now)
        assert found.user_id == "uid"
        assert store.find_active_session("tok", "phone", now) is None
        _, params = store.pool.conn.statements[0]
        assert params == ("tok", "laptop", now)

    def test_delete_session_reports_rowcount(self):
        store = _store([FakeCursor(rowcount=1), FakeCursor(rowcount=0)])
        assert store.delete_session("tok", "laptop") is True
        assert store.delete_session("tok", "laptop") is False


def test_totp_secrets_are_sealed_and_unsealed():
    cipher = SecretCipher("1" * 64)
    sealed = cipher.encrypt("TOTPSECRET")
    store = _store(
        [FakeCursor(rowcount=1), FakeCursor(row=_user_row(totp_secret=sealed, totp_enabled=True))],
        cipher=cipher,
    )

    store.set_pending_totp_secret("uid", "TOTPSECRET")
    _, params = store.pool.conn.statements[0]
    assert params[0] != "TOTPSECRET"
    assert cipher.decrypt(params[0]) == "TOTPSECRET"

    user = store.get_user("uid")
    assert user.totp_secret == "TOTPSECRET"


class TestConfirmTotp:
    def test_promotes_under_row_lock_when_pending_matches(self):
        cipher = SecretCipher("1" * 64)
        store = _store(
            [
                FakeCursor(row={"totp_pending_secret": cipher.encrypt("PENDING")}),
                FakeCursor(row=_user_row(totp_secret=cipher.encrypt("PENDING"), totp_enabled=True)),
            ],
            cipher=cipher,
        )

        user = store.confirm_totp("uid", "PENDING")

        assert user.totp_enabled is True
        assert user.totp_secret == "PENDING"
        lock_sql, _ = store.pool.conn.statements[0]
        assert lock_sql.endswith("FOR UPDATE")
        assert store.pool.conn.statements[1][0].startswith("UPDATE app_user")

    def test_replaced_pending_secret_is_left_alone(self):
        cipher = SecretCipher("1" * 64)
        store = _store(
            [FakeCursor(row={"totp_pending_secret": cipher.encrypt("NEWER")})], cipher=cipher
        )

        assert store.confirm_totp("uid", "PENDING") is None
        assert len(store.pool.conn.statements) == 1

    def test_missing_user(self):
        store = _store([FakeCursor(row=None)])
        assert store.confirm_totp("uid", "PENDING") is None
