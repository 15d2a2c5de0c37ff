"""Tests for log redaction."""

from __future__ import annotations

import json

import pytest
import structlog

from flixor.logging_setup import REDACTED, configure_logging, redact_secrets


@pytest.fixture(autouse=True)
def _reset_structlog():
    yield
    structlog.reset_defaults()


def test_redact_secrets_processor():
    event = {
        "event": "login",
        "user_id": "u1",
        "plex_token": "abc",
        "Authorization": "Bearer xyz",
        "session_cookie": "sid.mac",
        "password": "hunter2",
        "client_secret": "s",
    }

    result = redact_secrets(None, "info", event)

    assert result["event"] == "login"
    assert result["user_id"] == "u1"
    for key in ("plex_token", "Authorization", "session_cookie", "password", "client_secret"):
        assert result[key] == REDACTED


def test_event_name_is_never_redacted():
    result = redact_secrets(None, "info", {"event": "secret_store_degraded"})
    assert result["event"] == "secret_store_degraded"


def test_configured_pipeline_redacts_before_rendering(capsys):
    configure_logging("INFO", json=True)

    structlog.get_logger().info("upstream_call", url="http://pms/library", token="plain-token")

    line = capsys.readouterr().out.strip().splitlines()[-1]
    record = json.loads(line)
    assert record["event"] == "upstream_call"
    assert record["token"] == REDACTED
    assert record["level"] == "info"
    assert "timestamp" in record
    assert "plain-token" not in line


def test_level_filtering(capsys):
    configure_logging("WARNING", json=True)

    structlog.get_logger().info("quiet")
    structlog.get_logger().warning("loud")

    out = capsys.readouterr().out
    assert "quiet" not in out
    assert "loud" in out
