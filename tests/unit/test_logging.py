"""Tests for structured logging processors."""

import pytest
from structlog import DropEvent

from parksim.infrastructure.logging import (
    CleanConsoleRenderer,
    censor_secrets,
    configure_logging,
    filter_noise,
    get_logger,
)


def test_censor_secrets_nested():
    event = {"event": "Connect", "api_key": "abc", "db": {"password": "hunter2", "host": "x"}}
    censored = censor_secrets(None, "info", event)
    assert censored["api_key"] == "[REDACTED]"
    assert censored["db"] == {"password": "[REDACTED]", "host": "x"}


def test_filter_noise_drops_debug_and_chatter():
    with pytest.raises(DropEvent):
        filter_noise(None, "debug", {"event": "Session created"})
    with pytest.raises(DropEvent):
        filter_noise(None, "info", {"event": "Timer armed"})
    assert filter_noise(None, "info", {"event": "Session created"}) == {"event": "Session created"}


def test_clean_renderer_tags_lifecycle_events():
    renderer = CleanConsoleRenderer()

    line = renderer(None, "info", {"event": "Session completed", "session_id": "park:1", "level": "info"})
    assert "[OK ]" in line
    assert line.endswith("Session completed park:1")

    error = renderer(None, "error", {"event": "Refund failed", "error": "rejected", "level": "error"})
    assert "[ERR] Refund failed: rejected" in error


@pytest.mark.parametrize("log_format", ["json", "text", "clean"])
def test_configure_logging_formats(log_format):
    configure_logging(log_level="INFO", log_format=log_format)
    get_logger("parksim.test").info("Session created", session_id="park:1")
