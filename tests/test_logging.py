"""
Tests for the structured logging pipeline.
"""
import json
import logging
from typing import Any, Generator

import pytest
import structlog

from quote_payments.config import Settings
from quote_payments.monitoring.audit import StructlogAuditSink
from quote_payments.monitoring.logging import setup_logging


@pytest.fixture
def configured_logging(
    test_settings: Settings, capsys: pytest.CaptureFixture
) -> Generator[None, Any, None]:
    """Restore logging defaults after a test applies the application setup.

    Each test calls ``setup_logging`` in its own body so the stdout handler
    binds to the call-phase stream that ``capsys`` reads.
    """
    yield
    root_logger = logging.getLogger()
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)
    structlog.reset_defaults()


def log_lines(output: str) -> list:
    return [json.loads(line) for line in output.splitlines() if line.strip()]


class TestLoggingSetup:
    """Test suite for setup_logging."""

    @pytest.mark.unit
    def test_event_rendered_as_one_flat_json_object(
        self, configured_logging: None, capsys: pytest.CaptureFixture, test_settings: Settings
    ) -> None:
        setup_logging(test_settings)
        structlog.get_logger("quote_payments.tests").info(
            "quote_created", quote_id=7, total=132550
        )

        entry = log_lines(capsys.readouterr().out)[-1]

        assert entry["message"] == "quote_created"
        assert entry["quote_id"] == 7
        assert entry["total"] == 132550
        assert entry["level"] == "INFO"
        assert entry["logger"] == "quote_payments.tests"
        assert entry["app_name"] == test_settings.app_name
        assert "@timestamp" in entry

    @pytest.mark.unit
    def test_context_variables_merged(
        self, configured_logging: None, capsys: pytest.CaptureFixture, test_settings: Settings
    ) -> None:
        setup_logging(test_settings)
        structlog.contextvars.bind_contextvars(request_id="req-123")
        try:
            structlog.get_logger("quote_payments.tests").warning("webhook_rejected")
        finally:
            structlog.contextvars.clear_contextvars()

        entry = log_lines(capsys.readouterr().out)[-1]

        assert entry["message"] == "webhook_rejected"
        assert entry["request_id"] == "req-123"
        assert entry["level"] == "WARNING"

    @pytest.mark.unit
    def test_security_events_logged(
        self, configured_logging: None, capsys: pytest.CaptureFixture, test_settings: Settings
    ) -> None:
        setup_logging(test_settings)
        StructlogAuditSink().record(
            "signature_invalid", detail="No valid signature found", reason="mismatch"
        )

        entry = log_lines(capsys.readouterr().out)[-1]

        assert entry["message"] == "security_event"
        assert entry["security_event"] == "signature_invalid"
        assert entry["detail"] == "No valid signature found"
        assert entry["logger"] == "quote_payments.security"
