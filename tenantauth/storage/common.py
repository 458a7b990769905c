"""Common storage utilities shared between memory and postgres implementations.

Both backends honour a per-task operation deadline. Callers open one with
``operation_deadline(seconds)``; store methods ask ``remaining_time()`` how
long they may block and call ``check_deadline()`` before doing work.
"""

from __future__ import annotations

import time
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any, Iterator, Optional

from tenantauth.storage.errors import StoreTimeout

# Absolute time.monotonic() value after which store calls must give up
_deadline_var: ContextVar[Optional[float]] = ContextVar("store_deadline", default=None)


@contextmanager
def operation_deadline(seconds: float) -> Iterator[float]:
    """Bound every store call made inside the block to ``seconds`` from now.

    A deadline already active in the current context wins when it is earlier,
    so nested scopes can only tighten the budget.

    Yields:
        The effective absolute deadline (``time.monotonic()`` based)
    """
    deadline = time.monotonic() + seconds
    current = _deadline_var.get()
    if current is not None and current < deadline:
        deadline = current
    token = _deadline_var.set(deadline)
    try:
        yield deadline
    finally:
        _deadline_var.reset(token)


def remaining_time() -> Optional[float]:
    """Seconds left before the active deadline, or None when unbounded."""
    deadline = _deadline_var.get()
    if deadline is None:
        return None
    return max(0.0, deadline - time.monotonic())


def check_deadline(operation: str) -> Optional[float]:
    """Raise StoreTimeout if the active deadline has passed.

    Returns:
        Remaining seconds (None when no deadline is active)
    """
    remaining = remaining_time()
    if remaining is not None and remaining <= 0:
        raise StoreTimeout(
            "store deadline exceeded", {"operation": operation}
        )
    return remaining


def normalize_email(email: str) -> str:
    """Emails are stored and compared in lower case with surrounding space removed."""
    return (email or "").strip().lower()


def ensure_aware(value: Any) -> Any:
    """Attach UTC to naive datetimes read back from storage."""
    if isinstance(value, datetime) and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def safe_row_value(row: Any, key: str, default: Optional[Any] = None) -> Optional[Any]:
    """Safely extract value from row dict or object.

    Works with both dict-like objects and objects with attribute access.
    """
    if hasattr(row, "get"):
        return row.get(key, default)
    try:
        return row[key]
    except (KeyError, TypeError, AttributeError):
        return default
