"""
Structured logging for broker-sync.

Every event goes through structlog with stdlib integration. Events emitted
during a sync pass carry `sync_session_id` and `trading_day` from
contextvars, so all lines of one pass can be grepped together. Credentials
are removed by the redaction processor before rendering.
"""
import logging
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import List, Optional

import structlog

from brokersync.monitoring.redaction import structlog_redaction_processor

SERVICE_NAME = "broker-sync"
LOG_FILE_MAX_BYTES = 10 * 1024 * 1024
LOG_FILE_BACKUPS = 5


def _add_service(_logger, _method_name: str, event_dict: dict) -> dict:
    event_dict.setdefault("service", SERVICE_NAME)
    return event_dict


def build_processors(log_format: str) -> List:
    """Processor chain ending in the JSON or console renderer."""
    renderer = structlog.processors.JSONRenderer() if log_format == "json" else structlog.dev.ConsoleRenderer()
    return [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        _add_service,
        # Must run after merge_contextvars so bound values are redacted too
        structlog_redaction_processor,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        renderer,
    ]


def setup_logging(log_level: str = "INFO", log_format: str = "json", log_file: Optional[str] = None) -> None:
    """
    Configure structlog and the stdlib root logger.

    Args:
        log_level: DEBUG/INFO/WARNING/ERROR/CRITICAL
        log_format: json or text
        log_file: optional path; gets a rotating handler next to stdout
    """
    level = logging.getLevelName(log_level.upper())
    if not isinstance(level, int):
        raise ValueError(f"Unknown log level {log_level!r}")

    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=level)
    logging.getLogger().setLevel(level)

    structlog.configure(
        processors=build_processors(log_format),
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    if log_file:
        path = Path(log_file)
        path.parent.mkdir(parents=True, exist_ok=True)
        handler = RotatingFileHandler(path, maxBytes=LOG_FILE_MAX_BYTES, backupCount=LOG_FILE_BACKUPS)
        handler.setLevel(level)
        handler.setFormatter(logging.Formatter("%(message)s"))
        logging.getLogger().addHandler(handler)
        get_logger(__name__).info("LOGGING_FILE_ENABLED", log_file=str(path), log_level=log_level)


def bind_sync_context(session_id: str, trading_day: Optional[str] = None) -> None:
    """Attach the pass identity to every event logged from this task."""
    structlog.contextvars.bind_contextvars(sync_session_id=session_id)
    if trading_day is not None:
        structlog.contextvars.bind_contextvars(trading_day=trading_day)


def clear_sync_context() -> None:
    structlog.contextvars.unbind_contextvars("sync_session_id", "trading_day")


def get_logger(name: str) -> structlog.BoundLogger:
    return structlog.get_logger(name)
