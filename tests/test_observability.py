"""
Tests for structured logging setup.
"""

import json
import logging

import pytest
import structlog

from conduit.observability import setup_logging


@pytest.fixture(autouse=True)
def restore_logging():
    root = logging.getLogger()
    level = root.level
    yield
    root.setLevel(level)
    structlog.reset_defaults()


class TestSetupLogging:
    """Tests for setup_logging."""

    def test_json_events(self, caplog):
        """Test events render as JSON with their fields."""
        setup_logging(log_level="info", log_format="json")
        logger = structlog.get_logger("conduit.test")

        with caplog.at_level(logging.INFO):
            logger.info("execution_started", execution_id="exec-1")

        record = json.loads(caplog.records[-1].getMessage())
        assert record["event"] == "execution_started"
        assert record["execution_id"] == "exec-1"
        assert record["level"] == "info"
        assert record["logger"] == "conduit.test"
        assert "timestamp" in record

    def test_level_filtering(self, caplog):
        """Test events below the configured level are dropped."""
        setup_logging(log_level="WARNING", log_format="console")
        logger = structlog.get_logger("conduit.test")

        logger.info("step_started")
        logger.warning("step_retry_scheduled", attempt=2)

        messages = [r.getMessage() for r in caplog.records]
        assert not any("step_started" in m for m in messages)
        assert any("step_retry_scheduled" in m for m in messages)
