"""structlog setup for the credential service.

Log events are snake_case names with keyword fields. Every entry gets the
request correlation id when one is set, and credential material is masked
before rendering: passwords, secrets and tokens are replaced outright, email
addresses keep only their first character and domain, and authorization
values keep only their scheme.
"""

from __future__ import annotations

import logging
import os
import uuid
from contextvars import ContextVar
from typing import Any, Dict, Optional

import structlog

# Per-request correlation id, set by the HTTP adapter
correlation_id_var: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)

REDACTED = "[REDACTED]"
_SECRET_KEYS = ("password", "secret", "token", "credential")
_MAX_REDACT_DEPTH = 5
_TRUTHY = {"1", "true", "yes", "on"}


def get_correlation_id() -> Optional[str]:
    return correlation_id_var.get()


def set_correlation_id(correlation_id: Optional[str] = None) -> str:
    """Set the correlation id for the current context, generating one if absent."""
    cid = correlation_id or str(uuid.uuid4())
    correlation_id_var.set(cid)
    return cid


def mask_email(value: str) -> str:
    """``alice@example.com`` -> ``a***@example.com``."""
    local, sep, domain = value.partition("@")
    if not sep:
        return REDACTED
    return f"{local[:1]}***@{domain}"


def _mask_authorization(value: str) -> str:
    scheme, _, rest = value.partition(" ")
    return f"{scheme} {REDACTED}" if rest else REDACTED


def _redact_value(key: str, value: Any, depth: int = 0) -> Any:
    lower_key = key.lower()
    if isinstance(value, dict):
        if depth >= _MAX_REDACT_DEPTH:
            return REDACTED
        return {k: _redact_value(str(k), v, depth + 1) for k, v in value.items()}
    if value is None or not isinstance(value, str):
        return value
    if "authorization" in lower_key:
        return _mask_authorization(value)
    if any(marker in lower_key for marker in _SECRET_KEYS):
        return REDACTED
    if "email" in lower_key:
        return mask_email(value)
    return value


def _add_correlation_id(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    cid = get_correlation_id()
    if cid:
        event_dict["correlation_id"] = cid
    return event_dict


def _redact_credentials(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    for key in list(event_dict.keys()):
        if key == "event":
            continue
        event_dict[key] = _redact_value(key, event_dict[key])
    return event_dict


def configure_logging(
    log_level: Optional[str] = None,
    json_output: Optional[bool] = None,
    development_mode: Optional[bool] = None,
) -> None:
    """Configure structlog processors and rendering.

    Arguments left as None fall back to ``LOG_LEVEL`` (INFO), ``LOG_JSON``
    (true) and ``LOG_DEV_MODE`` (false). Console rendering is used in
    development mode or when JSON output is off.
    """
    if log_level is None:
        log_level = os.getenv("LOG_LEVEL", "INFO")
    if json_output is None:
        json_output = os.getenv("LOG_JSON", "true").lower() in _TRUTHY
    if development_mode is None:
        development_mode = os.getenv("LOG_DEV_MODE", "false").lower() in _TRUTHY

    shared_processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        _add_correlation_id,
        _redact_credentials,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]
    if development_mode or not json_output:
        renderers = [structlog.dev.ConsoleRenderer(colors=development_mode)]
    else:
        renderers = [
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ]

    structlog.configure(
        processors=shared_processors + renderers,
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, log_level.upper(), logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


configure_logging()


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)
