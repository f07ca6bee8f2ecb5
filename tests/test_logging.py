"""
Tests for logging configuration and audit events.
"""

import logging

import pytest
import structlog
from structlog.testing import capture_logs

from recetra.logging import AUDIT_LOGGER, configure_logging, log_audit_event
from recetra.settings import LogLevel, Settings


@pytest.fixture
def restore_logging():
    root = logging.getLogger()
    handlers, level = root.handlers[:], root.level
    yield
    structlog.reset_defaults()
    root.handlers[:] = handlers
    root.setLevel(level)


@pytest.mark.unit
class TestConfigureLogging:
    """Test structlog configuration from settings."""

    def test_json_format(self, restore_logging):
        """Test JSON rendering at the configured level."""
        configure_logging(Settings.ObservabilitySettings(log_level=LogLevel.WARNING))

        processors = structlog.get_config()["processors"]
        assert isinstance(processors[-1], structlog.processors.JSONRenderer)
        assert processors[0] is structlog.contextvars.merge_contextvars
        assert logging.getLogger().level == logging.WARNING

    def test_console_format(self, restore_logging):
        """Test the console renderer is used outside JSON mode."""
        configure_logging(Settings.ObservabilitySettings(log_format="console"))

        processors = structlog.get_config()["processors"]
        assert isinstance(processors[-1], structlog.dev.ConsoleRenderer)


@pytest.mark.unit
class TestAuditEvents:
    """Test audit entries."""

    def test_audit_event_fields(self):
        """Test an audit entry names the actor and the receipt."""
        with capture_logs() as logs:
            log_audit_event(
                "receipt.issued",
                user_id="user-encoder",
                organization="Computer Science Society",
                receipt_id="r-1",
                amount="500.00",
            )

        assert logs == [
            {
                "event": "receipt.issued",
                "log_level": "info",
                "audit": True,
                "user_id": "user-encoder",
                "organization": "Computer Science Society",
                "receipt_id": "r-1",
                "amount": "500.00",
            }
        ]

    def test_audit_logger_name(self, restore_logging):
        """Test audit entries go to the dedicated logger."""
        configure_logging(Settings.ObservabilitySettings())

        logger = structlog.get_logger(AUDIT_LOGGER)
        assert logger.bind().name == AUDIT_LOGGER
