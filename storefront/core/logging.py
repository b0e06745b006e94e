"""structlog setup for the payments service.

Everything (our loggers plus uvicorn, httpx and SQLAlchemy through the
stdlib bridge) renders through one ProcessorFormatter: JSON in production,
coloured console output when ``debug`` is on. Each entry carries the
request's X-Request-ID and has credential-like fields masked, since
gateway tokens and webhook signatures flow through the same code paths
that log.
"""

import logging
import logging.config

import structlog
from asgi_correlation_id.context import correlation_id

# Keys whose values never reach log output
SENSITIVE_KEYS = frozenset({
    "access_token",
    "authorization",
    "client_secret",
    "refresh_token",
    "signature",
    "webhook_secret",
    "x-zoho-signature",
})
REDACTED = "[redacted]"

_QUIET_LOGGERS = ("uvicorn.access", "httpx", "httpcore", "sqlalchemy.engine")


def add_correlation_id(logger, method, event_dict):
    cid = correlation_id.get(None)
    if cid:
        event_dict["correlation_id"] = cid
    return event_dict


def redact_secrets(logger, method, event_dict):
    for key in event_dict.keys() & SENSITIVE_KEYS:
        event_dict[key] = REDACTED
    return event_dict


def _shared_processors() -> list:
    return [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        add_correlation_id,
        redact_secrets,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
    ]


def configure_structlog(log_level: str = "INFO", json_logs: bool = True) -> None:
    """Install the logging pipeline.

    Must run before any module calls ``structlog.get_logger`` and logs,
    because loggers cache their processor chain on first use.

    Args:
        log_level: Root log level
        json_logs: JSON lines when True, ConsoleRenderer otherwise
    """
    shared = _shared_processors()
    renderer = structlog.processors.JSONRenderer() if json_logs else structlog.dev.ConsoleRenderer()

    logging.config.dictConfig({
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "structured": {
                "()": structlog.stdlib.ProcessorFormatter,
                "processors": [
                    structlog.stdlib.ProcessorFormatter.remove_processors_meta,
                    renderer,
                ],
                "foreign_pre_chain": shared,
            },
        },
        "handlers": {
            "stdout": {
                "class": "logging.StreamHandler",
                "formatter": "structured",
                "stream": "ext://sys.stdout",
            },
        },
        "root": {"handlers": ["stdout"], "level": log_level},
        "loggers": {name: {"level": "WARNING"} for name in _QUIET_LOGGERS},
    })

    structlog.configure(
        processors=shared + [structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )
