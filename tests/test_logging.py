from homestead.logging import (
    _add_correlation_id,
    _redact_credentials,
    correlation_id_var,
    set_correlation_id,
)


def test_credential_keys_are_masked():
    event = _redact_credentials(
        None,
        "info",
        {
            "event": "login_succeeded",
            "password": "hunter2",
            "refresh_token": "eyJhbGciOiJIUzI1NiJ9.payload.sig",
            "totp_code": "123456",
            "user_id": "u-1",
            "secrets_source": "file",
        },
    )

    assert event["event"] == "login_succeeded"
    assert event["password"] == "***"
    assert event["totp_code"] == "***"
    assert event["refresh_token"].startswith("ey***")
    assert "payload" not in event["refresh_token"]
    assert event["user_id"] == "u-1"
    assert event["secrets_source"] == "file"


def test_non_string_values_pass_through():
    event = _redact_credentials(None, "info", {"token_count": 3})
    assert event["token_count"] == 3


def test_correlation_id_is_attached():
    token = correlation_id_var.set(None)
    try:
        assert "correlation_id" not in _add_correlation_id(None, "info", {})
        cid = set_correlation_id("req-42")
        assert _add_correlation_id(None, "info", {})["correlation_id"] == cid == "req-42"
        assert len(set_correlation_id()) == 36
    finally:
        correlation_id_var.reset(token)
