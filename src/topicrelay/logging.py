from __future__ import annotations

import contextlib
import errno
import logging
import re
import sys
from collections.abc import Mapping
from typing import Any

import structlog

# (pattern, replacement), applied in order; gateway URLs before bare tokens
_REDACTIONS: tuple[tuple[re.Pattern[str], str], ...] = (
    (re.compile(r"bot\d+:[A-Za-z0-9_-]+"), "bot[REDACTED]"),
    (re.compile(r"\b\d+:[A-Za-z0-9_-]{10,}\b"), "[REDACTED_TOKEN]"),
)

_QUIET_LOGGERS = ("httpx", "httpcore")


def redact_token(value: str) -> str:
    for pattern, replacement in _REDACTIONS:
        value = pattern.sub(replacement, value)
    return value


def _redact_value(value: Any) -> Any:
    if isinstance(value, str):
        return redact_token(value)
    if isinstance(value, Mapping):
        return {key: _redact_value(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return type(value)(_redact_value(item) for item in value)
    return value


def redact_token_processor(_, __, event_dict):
    """Scrub bot tokens from every field, including nested gateway payloads."""
    for key in list(event_dict):
        event_dict[key] = _redact_value(event_dict[key])
    return event_dict


class SafeStreamHandler(logging.StreamHandler):
    """Stops writing once stdout goes away instead of printing tracebacks."""

    def handleError(self, record: logging.LogRecord) -> None:
        exc = sys.exc_info()[1]
        if isinstance(exc, OSError) and exc.errno == errno.EPIPE:
            with contextlib.suppress(OSError):
                self.stream.close()
            return
        super().handleError(record)


def get_logger(name: str | None = None) -> Any:
    return structlog.get_logger(name)


def _renderer(debug: bool) -> Any:
    if debug:
        return structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty())
    return structlog.processors.JSONRenderer()


def setup_logging(
    *, debug: bool = False, cache_logger_on_first_use: bool = True
) -> None:
    """Route structlog events through stdlib logging to stdout.

    Production output is one JSON object per line; ``debug`` switches to the
    console renderer and lowers the level. Tokens are redacted in both modes.
    """
    structlog.configure(
        processors=[
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            redact_token_processor,
            _renderer(debug),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=cache_logger_on_first_use,
    )

    handler = SafeStreamHandler(sys.stdout)
    handler.setFormatter(logging.Formatter("%(message)s"))
    logging.basicConfig(
        level=logging.DEBUG if debug else logging.INFO,
        handlers=[handler],
        force=True,
    )
    # request lines from the gateway client would leak the token in the URL
    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
