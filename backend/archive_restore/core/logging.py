import logging
import sys
from typing import TextIO

import structlog

_REDACTED_KEYS = {"password", "installation_password", "secret", "token"}


def _redact_secrets(_logger, _method_name, event_dict):  # noqa: ANN001, ANN202
    for key in list(event_dict):
        if key in _REDACTED_KEYS:
            event_dict[key] = "***"
    return event_dict


_restore_processors = [
    structlog.contextvars.merge_contextvars,
    _redact_secrets,
    structlog.processors.TimeStamper(fmt="iso"),
    structlog.processors.add_log_level,
    structlog.processors.StackInfoRenderer(),
    structlog.processors.format_exc_info,
    structlog.processors.JSONRenderer(),
]


def configure_logging(level: int = logging.INFO, stream: TextIO | None = None) -> None:
    stream = stream or sys.stdout
    logging.basicConfig(level=level, stream=stream, format="%(message)s")
    structlog.configure(
        processors=_restore_processors,
        wrapper_class=structlog.make_filtering_bound_logger(level),
        logger_factory=structlog.PrintLoggerFactory(file=stream),
        cache_logger_on_first_use=True,
    )


def bind_restore_context(restore_id: str) -> None:
    structlog.contextvars.bind_contextvars(restore_id=restore_id)


def clear_restore_context() -> None:
    structlog.contextvars.unbind_contextvars("restore_id")
