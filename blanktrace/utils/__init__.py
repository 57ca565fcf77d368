"""
BlankTrace utilities module.
"""

from blanktrace.utils.config import RotationMode, Settings, get_settings, load_settings
from blanktrace.utils.errors import BlankTraceError, ConfigurationError, StorageError
from blanktrace.utils.logging import (
    LogContext,
    bind_context,
    configure_logging,
    get_logger,
    unbind_context,
)

__all__ = [
    # Config
    "RotationMode",
    "Settings",
    "get_settings",
    "load_settings",
    # Errors
    "BlankTraceError",
    "ConfigurationError",
    "StorageError",
    # Logging
    "get_logger",
    "configure_logging",
    "bind_context",
    "unbind_context",
    "LogContext",
]
