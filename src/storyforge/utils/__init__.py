"""Shared utilities."""

from .logging import get_log_path, get_logger, set_debug_logging, setup_logging

__all__ = ["setup_logging", "set_debug_logging", "get_logger", "get_log_path"]
