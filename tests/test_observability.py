from __future__ import annotations

from storeassist.metrics.observability import (
    _redact_secrets,
    bind_correlation_id,
    clear_correlation_id,
    get_correlation_id,
)


def test_secret_values_are_masked_in_log_events():
    event = {"event": "embedding.request", "api_key": "sk-live-123", "Authorization": "Bearer x", "model": "m"}
    redacted = _redact_secrets(None, "info", dict(event))
    assert redacted["api_key"] == "***"
    assert redacted["Authorization"] == "***"
    assert redacted["model"] == "m"


def test_empty_secret_values_are_left_alone():
    assert _redact_secrets(None, "info", {"token": ""})["token"] == ""


def test_correlation_id_is_bound_and_cleared():
    bind_correlation_id("req-1")
    assert get_correlation_id() == "req-1"
    clear_correlation_id()
    assert get_correlation_id() is None
