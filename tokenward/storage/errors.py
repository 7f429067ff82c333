from __future__ import annotations

from typing import Any, Dict, Optional


class ConstraintViolation(Exception):
    """Raised when a storage-layer uniqueness constraint is violated."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class StoreUnavailable(Exception):
    """The credential store could not be reached or timed out.

    Never retried inside the service layer; the HTTP boundary maps it to 503.
    """

    def __init__(self, operation: str, cause: Optional[BaseException] = None):
        super().__init__(f"credential store unavailable during {operation}")
        self.operation = operation
        self.cause = cause


class CacheUnavailable(Exception):
    """The cache layer failed (connection, timeout or protocol error)."""

    def __init__(self, operation: str, cause: Optional[BaseException] = None):
        super().__init__(f"cache unavailable during {operation}")
        self.operation = operation
        self.cause = cause


__all__ = ["ConstraintViolation", "StoreUnavailable", "CacheUnavailable"]
