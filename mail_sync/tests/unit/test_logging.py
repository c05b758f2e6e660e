"""Unit tests for logging setup."""

import pytest
import structlog

from mail_sync.core.logging import bind_context, clear_context, configure_logging


@pytest.fixture(autouse=True)
def reset_structlog():
    """Leave structlog unconfigured and context-free for other tests."""
    clear_context()
    yield
    clear_context()
    structlog.reset_defaults()


class TestConfigureLogging:
    """Tests for renderer selection."""

    def test_json_output(self):
        configure_logging(log_level="DEBUG", json_output=True)

        processors = structlog.get_config()["processors"]
        assert isinstance(processors[-1], structlog.processors.JSONRenderer)
        assert structlog.contextvars.merge_contextvars in processors

    def test_console_output(self):
        configure_logging(log_level="info", json_output=False)

        processors = structlog.get_config()["processors"]
        assert isinstance(processors[-1], structlog.dev.ConsoleRenderer)


class TestContext:
    """Tests for per-pass context binding."""

    def test_bind_and_clear(self):
        """Test bound company context is visible until cleared."""
        bind_context(company_id="company-1")

        assert structlog.contextvars.get_contextvars() == {"company_id": "company-1"}

        clear_context()

        assert structlog.contextvars.get_contextvars() == {}

    def test_sync_company_clears_context(self, seeded_store, mock_gmail, mock_tokens):
        """Test a company pass leaves no company context behind."""
        from mail_sync.processors.sync import SyncProcessor

        processor = SyncProcessor(store=seeded_store, client=mock_gmail, tokens=mock_tokens)

        processor.sync_company("company-1", "user-1")

        assert structlog.contextvars.get_contextvars() == {}