"""Utility modules."""
from topic_sync.utils.logging import LogContext, get_logger, log_error, setup_logging

__all__ = ["LogContext", "get_logger", "log_error", "setup_logging"]
