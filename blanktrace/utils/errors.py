"""
Error taxonomy for BlankTrace.

- ConfigurationError: malformed or missing policy values. Fatal at startup.
- StorageError: I/O or query failure in the persistent store. Callers decide
  whether to fail open or fail closed.
"""

from typing import Any


class BlankTraceError(Exception):
    """Base exception for BlankTrace errors."""

    def __init__(self, message: str, *, details: dict[str, Any] | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        """Convert error to a loggable dict."""
        result: dict[str, Any] = {
            "error_type": type(self).__name__,
            "error": self.message,
        }
        if self.details:
            result["details"] = self.details
        return result


class ConfigurationError(BlankTraceError):
    """Configuration could not be loaded or failed validation."""


class StorageError(BlankTraceError):
    """A persistent store operation failed."""

    def __init__(
        self,
        operation: str,
        message: str,
        *,
        details: dict[str, Any] | None = None,
    ):
        super().__init__(f"{operation}: {message}", details=details)
        self.operation = operation
