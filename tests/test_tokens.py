"""Tests for access/refresh token issuance and verification."""

import base64
import json
import time
from datetime import timedelta

import pytest

from homestead.service import tokens as tokens_module
from homestead.service.tokens import TokenIssuer

ACCESS_KEY = "a" * 64
REFRESH_KEY = "b" * 64


@pytest.fixture
def issuer():
    return TokenIssuer(
        ACCESS_KEY,
        REFRESH_KEY,
        issuer="homestead",
        audience="homestead-clients",
    )


def _segment(data: dict) -> str:
    return base64.urlsafe_b64encode(json.dumps(data).encode()).decode().rstrip("=")


def _claims(token: str) -> dict:
    payload = token.split(".")[1]
    return json.loads(base64.urlsafe_b64decode(payload + "=" * (-len(payload) % 4)))


class TestIssue:
    def test_access_token_claims(self, issuer):
        issued = issuer.issue_access("user-1")
        claims = _claims(issued.token)
        assert claims["sub"] == "user-1"
        assert claims["token_type"] == "access"
        assert claims["iss"] == "homestead"
        assert claims["aud"] == "homestead-clients"
        assert claims["jti"] == issued.token_id
        assert claims["exp"] - claims["iat"] == 15 * 60

    def test_refresh_token_lives_seven_days(self, issuer):
        claims = _claims(issuer.issue_refresh("user-1").token)
        assert claims["token_type"] == "refresh"
        assert claims["exp"] - claims["iat"] == 7 * 24 * 3600

    def test_tokens_issued_in_same_second_differ(self, issuer):
        first = issuer.issue_refresh("user-1")
        second = issuer.issue_refresh("user-1")
        assert first.token != second.token
        assert first.token_id != second.token_id

    def test_issue_pair_carries_refresh_expiry(self, issuer):
        pair = issuer.issue_pair("user-1")
        assert pair.refresh_expires_at.timestamp() == _claims(pair.refresh_token)["exp"]

    def test_missing_keys_rejected(self):
        with pytest.raises(ValueError):
            TokenIssuer("", REFRESH_KEY, issuer="i", audience="a")


class TestVerify:
    def test_round_trip(self, issuer):
        access = issuer.issue_access("user-1").token
        refresh = issuer.issue_refresh("user-1").token
        assert issuer.verify_access(access)["sub"] == "user-1"
        assert issuer.verify_refresh(refresh)["sub"] == "user-1"

    def test_token_types_are_not_interchangeable(self, issuer):
        """Separate keys and a type claim keep refresh tokens out of the access path."""
        access = issuer.issue_access("user-1").token
        refresh = issuer.issue_refresh("user-1").token
        assert issuer.verify_access(refresh) is None
        assert issuer.verify_refresh(access) is None

    def test_tampered_payload_rejected(self, issuer):
        header, _, signature = issuer.issue_access("user-1").token.split(".")
        forged = _segment(
            {
                "sub": "admin",
                "token_type": "access",
                "jti": "x",
                "iss": "homestead",
                "aud": "homestead-clients",
                "exp": int(time.time()) + 600,
            }
        )
        assert issuer.verify_access(f"{header}.{forged}.{signature}") is None

    def test_alg_none_rejected(self, issuer):
        _, payload, _ = issuer.issue_access("user-1").token.split(".")
        header = _segment({"alg": "none", "typ": "JWT"})
        assert issuer.verify_access(f"{header}.{payload}.") is None

    @pytest.mark.parametrize("token", [None, "", "garbage", "a.b", "a.b.c.d", "!!.??.**"])
    def test_malformed_tokens_rejected(self, issuer, token):
        assert issuer.verify_access(token) is None

    def test_wrong_audience_rejected(self, issuer):
        other = TokenIssuer(ACCESS_KEY, REFRESH_KEY, issuer="homestead", audience="elsewhere")
        assert issuer.verify_access(other.issue_access("user-1").token) is None

    def test_wrong_key_rejected(self, issuer):
        other = TokenIssuer("c" * 64, REFRESH_KEY, issuer="homestead", audience="homestead-clients")
        assert issuer.verify_access(other.issue_access("user-1").token) is None

    def test_expiry_is_strict(self, issuer, monkeypatch):
        issued = issuer.issue_access("user-1")
        exp = _claims(issued.token)["exp"]
        monkeypatch.setattr(tokens_module.time, "time", lambda: exp - 1)
        assert issuer.verify_access(issued.token) is not None
        monkeypatch.setattr(tokens_module.time, "time", lambda: exp)
        assert issuer.verify_access(issued.token) is None

    def test_already_expired_token(self):
        short = TokenIssuer(
            ACCESS_KEY,
            REFRESH_KEY,
            issuer="homestead",
            audience="homestead-clients",
            access_ttl=timedelta(seconds=-1),
        )
        assert short.verify_access(short.issue_access("user-1").token) is None
