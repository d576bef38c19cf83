"""Logging configuration."""

from microflow.observability.logger import bind_symbol, get_logger, setup_logging

__all__ = ["bind_symbol", "get_logger", "setup_logging"]
