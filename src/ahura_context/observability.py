"""Logging and Sentry setup for the context engine."""

from __future__ import annotations

import logging
import os
import sys
from typing import Any, cast

import sentry_sdk
import structlog
from sentry_sdk.integrations.asyncio import AsyncioIntegration
from sentry_sdk.integrations.httpx import HttpxIntegration
from sentry_sdk.integrations.logging import LoggingIntegration

from ahura_context.config import settings

# Sample rates
DEFAULT_TRACES_SAMPLE_RATE = 0.2
DEV_TRACES_SAMPLE_RATE = 1.0

# Keys structlog adds to every event; everything else is event context
_STANDARD_KEYS = frozenset({"event", "level", "timestamp", "logger", "filename", "lineno"})


def configure_logging(
    service_name: str = "ahura-context",
    log_level: int | str | None = None,
    json_format: bool | None = None,
) -> structlog.stdlib.BoundLogger:
    """
    Configure structlog on top of the standard library logger.

    Call this once at process start, after init_sentry() if Sentry is used.

    Args:
        service_name: Name bound to the returned logger
        log_level: Minimum log level (default: settings.LOG_LEVEL)
        json_format: Use JSON output (True) or console format (False).
                     If None (default), auto-detect based on ENVIRONMENT:
                     - development: console format with colors
                     - anything else: JSON format

    Returns:
        Configured structlog logger

    Example:
        from ahura_context.observability import configure_logging, init_sentry

        init_sentry("ahura-cli")
        logger = configure_logging("ahura-cli")
        logger.info("Context engine ready", model="anthropic/claude-sonnet-4")
    """
    if log_level is None:
        log_level = settings.LOG_LEVEL
    if isinstance(log_level, str):
        log_level = logging.getLevelName(log_level.upper())
        if not isinstance(log_level, int):
            log_level = logging.INFO

    if json_format is None:
        environment = os.environ.get("ENVIRONMENT", settings.ENVIRONMENT)
        json_format = environment != "development"

    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)

    # Remove existing handlers to avoid duplicates on reconfiguration
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    handler = logging.StreamHandler(sys.stderr)
    handler.setLevel(log_level)
    handler.setFormatter(logging.Formatter("%(message)s"))
    root_logger.addHandler(handler)

    processors: list[Any] = [
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
        structlog.processors.CallsiteParameterAdder(
            [
                structlog.processors.CallsiteParameter.FILENAME,
                structlog.processors.CallsiteParameter.LINENO,
            ]
        ),
        add_sentry_context,
    ]

    if json_format:
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=True))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    return cast("structlog.stdlib.BoundLogger", structlog.get_logger(service_name))


def add_sentry_context(
    _logger: Any,
    method_name: str,
    event_dict: dict[str, Any],
) -> dict[str, Any]:
    """Forward structlog events to Sentry as breadcrumbs, and errors as events.

    Does nothing when Sentry has not been initialised.
    """
    if not sentry_sdk.is_initialized():
        return event_dict

    level = event_dict.get("level", "info")
    message = event_dict.get("event", "")
    extra_data = {k: v for k, v in event_dict.items() if k not in _STANDARD_KEYS}

    sentry_sdk.add_breadcrumb(
        message=str(message),
        category="log",
        level=level,
        data=extra_data if extra_data else None,
    )

    if method_name in ("error", "exception", "critical"):
        exc_info = event_dict.get("exc_info")
        if isinstance(exc_info, tuple):
            sentry_sdk.capture_exception(exc_info[1])
        elif isinstance(exc_info, BaseException):
            sentry_sdk.capture_exception(exc_info)
        else:
            with sentry_sdk.isolation_scope() as scope:
                for key, value in extra_data.items():
                    scope.set_extra(key, value)
                sentry_sdk.capture_message(
                    str(message),
                    level="error" if method_name == "error" else "fatal",
                )

    return event_dict


def init_sentry(service_name: str, dsn: str | None = None) -> bool:
    """
    Initialize Sentry for a process hosting context engines.

    Args:
        service_name: Tag attached to every event
        dsn: Sentry DSN (default: settings.SENTRY_DSN, then the SENTRY_DSN env var)

    Returns:
        True if Sentry was initialized, False if no DSN was provided
    """
    effective_dsn = dsn or settings.SENTRY_DSN or os.environ.get("SENTRY_DSN")
    if not effective_dsn:
        return False

    environment = os.environ.get("ENVIRONMENT", settings.ENVIRONMENT)
    traces_sample_rate = (
        DEV_TRACES_SAMPLE_RATE if environment == "development" else DEFAULT_TRACES_SAMPLE_RATE
    )

    sentry_sdk.init(
        dsn=effective_dsn,
        environment=environment,
        release=f"ahura-context@{settings.VERSION}",
        traces_sample_rate=traces_sample_rate,
        integrations=[
            HttpxIntegration(),
            AsyncioIntegration(),
            LoggingIntegration(level=logging.INFO, event_level=logging.ERROR),
        ],
        send_default_pii=False,
    )
    sentry_sdk.set_tag("service", service_name)

    structlog.get_logger().info(
        "Sentry initialized",
        service=service_name,
        environment=environment,
    )
    return True
