"""Tests for log context binding and secret redaction."""

from structlog.contextvars import get_contextvars, unbind_contextvars

from sessionguard.logging import (
    _redact_secrets,
    flow_log_context,
    get_correlation_id,
    set_correlation_id,
)
from sessionguard.storage.models import LoginContext


def test_flow_context_binds_and_unbinds_fields():
    with flow_log_context(actor_id=3, actor_kind="standard") as cid:
        bound = get_contextvars()
        assert bound["actor_id"] == 3
        assert bound["actor_kind"] == "standard"
        assert bound["correlation_id"] == cid
    assert get_correlation_id() is None
    assert "actor_id" not in get_contextvars()


def test_flow_context_keeps_outer_correlation_id():
    outer = set_correlation_id("req-7")
    try:
        with flow_log_context(actor_id=3) as cid:
            assert cid == outer
        assert get_correlation_id() == "req-7"
    finally:
        unbind_contextvars("correlation_id")


def test_secrets_are_masked_at_any_depth():
    event = {
        "event": "login_success",
        "jwt_secret": "short",
        "details": {"tokenPreview": "eyJhbGciOiJIUzI1NiJ9...", "ip": "10.0.0.1"},
        "items": [{"authorization": "Bearer abcdefghijkl"}],
    }
    redacted = _redact_secrets(None, "info", event)
    assert redacted["jwt_secret"] == "***"
    assert redacted["details"]["tokenPreview"] == "eyJh***"
    assert redacted["details"]["ip"] == "10.0.0.1"
    assert redacted["items"][0]["authorization"] == "Bear***"
    assert event["details"]["tokenPreview"].startswith("eyJhbGci")


def test_device_info_must_be_a_mapping():
    assert LoginContext(device_info="iPhone").device_info_or_default == {}
    assert LoginContext.coerce({"deviceInfo": ["x"]}).device_info_or_default == {}
    assert LoginContext(device_info={"os": "iOS"}).device_info_or_default == {"os": "iOS"}
