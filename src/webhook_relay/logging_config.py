"""Structured key=value logging for the relay."""
from __future__ import annotations

import logging
import sys

import structlog

# event keys whose values never reach the log output
_REDACTED_KEYS = frozenset({"authorization", "sink_token", "token"})

_ESCAPES = str.maketrans({"\\": "\\\\", "\n": "\\n", "\r": "\\r", "\t": "\\t"})


def _flatten(value):
    if isinstance(value, str):
        return value.translate(_ESCAPES)
    if isinstance(value, (list, tuple)):
        return [_flatten(item) for item in value]
    if isinstance(value, dict):
        return {k: _flatten(v) for k, v in value.items()}
    return value


def redact_secrets_processor(logger, method_name, event_dict):
    for key in event_dict.keys() & _REDACTED_KEYS:
        event_dict[key] = "***"
    return event_dict


def replace_newlines_processor(logger, method_name, event_dict):
    """Keep every rendered entry on one line, tracebacks included."""
    for key, value in event_dict.items():
        event_dict[key] = _flatten(value)
    return event_dict


class SingleLineFormatter(logging.Formatter):
    def format(self, record):
        return super().format(record).translate(_ESCAPES)


def configure_logging(level: int | str = logging.INFO) -> None:
    """Route stdlib and structlog output through one key=value stdout handler."""
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(SingleLineFormatter("%(message)s"))

    root_logger = logging.getLogger()
    root_logger.handlers = [handler]
    root_logger.setLevel(level)

    # aiohttp access log and asyncpg go through the root handler
    for name in ("aiohttp.access", "asyncpg"):
        lib_logger = logging.getLogger(name)
        lib_logger.propagate = True
        lib_logger.handlers = []

    # timestamp=... level=info logger=webhook_relay.services.dispatcher event='delivery resolved' request_id=...
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.add_log_level,
            structlog.stdlib.add_logger_name,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            redact_secrets_processor,
            # after format_exc_info so tracebacks are flattened too
            replace_newlines_processor,
            structlog.processors.KeyValueRenderer(
                key_order=["timestamp", "level", "logger", "event", "request_id", "record_id"],
                drop_missing=True,
            ),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )
