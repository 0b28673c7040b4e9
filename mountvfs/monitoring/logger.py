"""
Structured JSON logger for mountvfs.

Modules log through structlog with an event name and key/value fields:

    logger = structlog.get_logger(__name__)
    logger.info("sftp_connected", host=self.host)

``configure_logging`` renders those events as JSON lines (or colored console
output for local work) and injects the current operation context.
"""
import logging
from typing import Any, Dict, Optional

import structlog

from mountvfs.config import settings


def get_operation_context():
    # Import lazily to avoid import cycles
    from mountvfs.monitoring.context import get_operation_context as _g
    return _g()


def add_operation_context(logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    """Fill operation_id/operation/mount_path from contextvars when unset."""
    for key, value in get_operation_context().items():
        if value is not None:
            event_dict.setdefault(key, value)
    return event_dict


def configure_logging(level: Optional[str] = None, json_output: Optional[bool] = None) -> None:
    level_name = (level or settings.LOG_LEVEL).upper()
    numeric_level = getattr(logging, level_name, logging.INFO)
    use_json = settings.LOG_JSON if json_output is None else json_output

    renderer = structlog.processors.JSONRenderer() if use_json else structlog.dev.ConsoleRenderer()

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            add_operation_context,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(numeric_level),
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=False,
    )
