"""Tests for logging and Sentry setup."""

import logging
from unittest.mock import patch

import pytest
import structlog

from ahura_context.observability import add_sentry_context, configure_logging, init_sentry


class TestInitSentry:
    """Test Sentry initialization."""

    def test_no_dsn_skips_init(self, monkeypatch):
        monkeypatch.delenv("SENTRY_DSN", raising=False)

        with patch("ahura_context.observability.sentry_sdk.init") as mock_init:
            assert init_sentry("ahura-cli") is False

        mock_init.assert_not_called()

    def test_dsn_initializes_sdk(self, monkeypatch):
        monkeypatch.setenv("ENVIRONMENT", "production")

        with (
            patch("ahura_context.observability.sentry_sdk.init") as mock_init,
            patch("ahura_context.observability.sentry_sdk.set_tag") as mock_set_tag,
        ):
            assert init_sentry("ahura-cli", dsn="https://key@sentry.example.com/1") is True

        kwargs = mock_init.call_args.kwargs
        assert kwargs["dsn"] == "https://key@sentry.example.com/1"
        assert kwargs["environment"] == "production"
        assert kwargs["traces_sample_rate"] == 0.2
        assert kwargs["send_default_pii"] is False
        mock_set_tag.assert_called_once_with("service", "ahura-cli")


class TestSentryProcessor:
    """Test the structlog-to-Sentry processor."""

    def test_passthrough_without_sentry(self):
        event = {"event": "Compaction complete", "level": "info", "tokens_saved": 10}

        with patch("ahura_context.observability.sentry_sdk.is_initialized", return_value=False):
            assert add_sentry_context(None, "info", event) is event

    def test_breadcrumb_for_info(self):
        event = {"event": "Compaction complete", "level": "info", "tokens_saved": 10}

        with (
            patch("ahura_context.observability.sentry_sdk.is_initialized", return_value=True),
            patch("ahura_context.observability.sentry_sdk.add_breadcrumb") as mock_breadcrumb,
            patch("ahura_context.observability.sentry_sdk.capture_message") as mock_capture,
        ):
            add_sentry_context(None, "info", event)

        mock_breadcrumb.assert_called_once_with(
            message="Compaction complete",
            category="log",
            level="info",
            data={"tokens_saved": 10},
        )
        mock_capture.assert_not_called()

    def test_exception_captured(self):
        error = ConnectionError("network unreachable")
        event = {"event": "Summarization failed", "level": "error", "exc_info": error}

        with (
            patch("ahura_context.observability.sentry_sdk.is_initialized", return_value=True),
            patch("ahura_context.observability.sentry_sdk.add_breadcrumb"),
            patch("ahura_context.observability.sentry_sdk.capture_exception") as mock_capture,
        ):
            add_sentry_context(None, "exception", event)

        mock_capture.assert_called_once_with(error)


class TestConfigureLogging:
    """Test logging configuration."""

    @pytest.fixture(autouse=True)
    def restore_root_logger(self):
        root = logging.getLogger()
        handlers, level = root.handlers[:], root.level
        yield
        root.handlers[:] = handlers
        root.setLevel(level)
        structlog.reset_defaults()

    def test_configure_logging(self):
        logger = configure_logging("ahura-cli", log_level="DEBUG", json_format=True)

        assert logger is not None
        assert logging.getLogger().level == logging.DEBUG

    def test_invalid_level_defaults_to_info(self):
        configure_logging("ahura-cli", log_level="LOUD", json_format=False)

        assert logging.getLogger().level == logging.INFO
