"""Structured logging configuration.

JSON output for production, colored console for development/testing.
Call configure_logging() once at application startup (e.g. in FastAPI lifespan).

Two processors keep credentials out of the logs: values under sensitive
keys are replaced outright, and any full API key that slips into another
field is cut down to its preview.
"""

import logging
import re
import sys

import structlog

from waveorder.auth.keys import make_preview

SENSITIVE_KEYS: frozenset[str] = frozenset(
    {
        "api_key",
        "plain_key",
        "key_hash",
        "password",
        "secret",
        "token",
        "admin_token",
        "authorization",
        "x-api-key",
    }
)

REDACTED = "***REDACTED***"

_PLAIN_KEY_RE = re.compile(r"wo_(?:live|int)_[A-Za-z0-9_-]{16,}")


def _redact_sensitive_keys(
    logger: logging.Logger,
    method_name: str,
    event_dict: structlog.types.EventDict,
) -> structlog.types.EventDict:
    """Redact values of sensitive keys in log events."""
    for key in event_dict:
        if key.lower() in SENSITIVE_KEYS:
            event_dict[key] = REDACTED
    return event_dict


def _mask_plain_keys(
    logger: logging.Logger,
    method_name: str,
    event_dict: structlog.types.EventDict,
) -> structlog.types.EventDict:
    """Replace full ``wo_live_``/``wo_int_`` keys in string values by previews."""
    for key, value in event_dict.items():
        if isinstance(value, str) and "wo_" in value:
            event_dict[key] = _PLAIN_KEY_RE.sub(
                lambda m: make_preview(m.group(0)), value
            )
    return event_dict


def configure_logging(
    environment: str = "development",
    log_level: str = "INFO",
) -> None:
    """Configure structlog processor chain and stdlib root logger.

    Args:
        environment: 'production' for JSON output, anything else
            for colored console output.
        log_level: Python log level name (DEBUG, INFO, WARNING, etc.).
    """
    shared_processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
        _redact_sensitive_keys,
        _mask_plain_keys,
    ]

    if environment == "production":
        renderer: structlog.types.Processor = structlog.processors.JSONRenderer()
        shared_processors.append(structlog.processors.format_exc_info)
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=True)

    structlog.configure(
        processors=[
            *shared_processors,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    formatter = structlog.stdlib.ProcessorFormatter(
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            renderer,
        ],
    )

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.addHandler(handler)
    root_logger.setLevel(log_level.upper())

    # Quiet noisy libraries
    for noisy in ("uvicorn.access", "sqlalchemy.engine", "redis"):
        logging.getLogger(noisy).setLevel(logging.WARNING)
