"""Error types raised by the knowledge base core.

Every error carries the operation that failed and a mapping of extra
details (document id, batch number, HTTP status, ...) so callers can
report it without parsing the message.
"""
from typing import Any, Dict, Optional


class KnowbaseError(Exception):
    """Base class for all knowledge base errors."""

    def __init__(
        self,
        message: str,
        operation: Optional[str] = None,
        **details: Any,
    ):
        super().__init__(message)
        self.message = message
        self.operation = operation
        self.details: Dict[str, Any] = details

    def to_dict(self) -> Dict[str, Any]:
        """Serialize the error for an API response or a log line."""
        data: Dict[str, Any] = {"error": self.message, "error_type": type(self).__name__}
        if self.operation:
            data["operation"] = self.operation
        if self.details:
            data["details"] = self.details
        return data


class InputError(KnowbaseError):
    """Invalid caller input, rejected before any network or storage call."""


class ProviderError(KnowbaseError):
    """The external embedding provider failed or returned a malformed payload."""

    def __init__(
        self,
        message: str,
        operation: Optional[str] = None,
        status_code: Optional[int] = None,
        **details: Any,
    ):
        if status_code is not None:
            details["status_code"] = status_code
        super().__init__(message, operation, **details)
        self.status_code = status_code


class StorageError(KnowbaseError):
    """The local database is unavailable, closed, or rejected a write."""
