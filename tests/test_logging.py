from mira.logging import (
    _mask_secret_fields,
    _scrub_text_fields,
    get_correlation_id,
    sanitize_error_message,
    scrub_credentials,
    set_correlation_id,
)


def test_masks_keys_and_vault_material():
    event = _mask_secret_fields(
        None,
        "info",
        {
            "event": "credential_saved",
            "api_key": "sk-abcdefghijkl",
            "ciphertext": "QUJDREVGRw==",
            "provider": "openai",
        },
    )
    assert event["api_key"] == "sk***kl"
    assert event["ciphertext"] == "QU***=="
    assert event["provider"] == "openai"


def test_short_or_non_string_secrets_fully_masked():
    event = _mask_secret_fields(None, "info", {"token": "abc", "secret": 1234, "password": None})
    assert event["token"] == "***"
    assert event["secret"] == "***"
    assert event["password"] is None


def test_error_text_is_scrubbed():
    event = _scrub_text_fields(
        None,
        "warning",
        {
            "event": "provider_connect_error",
            "error": "Incorrect API key provided: sk-proj-abcdef123456",
            "attempt": 1,
        },
    )
    assert "abcdef123456" not in event["error"]
    assert event["attempt"] == 1


def test_scrub_credentials_patterns():
    assert scrub_credentials("key AIzaSyA1234567890abcdefghijk") == "key AIza***"
    assert scrub_credentials("redis://:hunter2@cache:6379/0") == "redis://:***@cache:6379/0"
    assert scrub_credentials("api_key=abc123; retry") == "api_key=***; retry"
    assert scrub_credentials("nothing to see") == "nothing to see"


def test_sanitize_error_message_strips_keys_and_paths():
    message = "failed with key sk-live1234567890abcdef reading /srv/mira/state.json"
    cleaned = sanitize_error_message(message)
    assert "sk-live" not in cleaned
    assert "/srv/mira" not in cleaned


def test_sanitize_error_message_handles_empty_and_long():
    assert sanitize_error_message("") == "An error occurred"
    assert len(sanitize_error_message("x" * 2000)) == 500


def test_correlation_id_generated_when_absent():
    cid = set_correlation_id()
    assert cid and get_correlation_id() == cid
    assert set_correlation_id("req-1") == "req-1"
