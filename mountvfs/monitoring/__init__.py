"""Structured logging and operation context for mountvfs."""

from mountvfs.monitoring.context import get_operation_context, operation_context
from mountvfs.monitoring.logger import configure_logging

__all__ = [
    "configure_logging",
    "get_operation_context",
    "operation_context",
]
