from __future__ import annotations

from typing import Any, Dict, Optional


class StoreError(Exception):
    """Raised when the backing store fails for reasons unrelated to the caller."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class ConstraintViolation(StoreError):
    """Raised when a storage-layer uniqueness or FK constraint is violated."""


class StoreTimeout(StoreError):
    """Raised when a store call runs past the active operation deadline."""


__all__ = ["ConstraintViolation", "StoreError", "StoreTimeout"]
