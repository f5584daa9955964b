"""Configuration package for mcp-relay."""

from .logging import configure_logging, get_logger, sanitize_log_data
from .settings import RelaySettings, load_settings

__all__ = [
    "RelaySettings",
    "configure_logging",
    "get_logger",
    "load_settings",
    "sanitize_log_data",
]
