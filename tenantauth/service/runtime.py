from __future__ import annotations

import threading
from typing import Optional
from urllib.parse import urlparse, urlunparse

from tenantauth.config import Settings, get_settings, reset_settings_cache
from tenantauth.logging import get_logger
from tenantauth.service.auth import AuthService, AuthStore
from tenantauth.service.cleanup import SessionSweeper
from tenantauth.storage.memory import MemoryStore
from tenantauth.storage.postgres import PostgresStore

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password in a DSN for safe logging.

    Example: postgresql://app:secret@db:5432/auth -> postgresql://app:***@db:5432/auth
    """
    if not url:
        return url
    try:
        parsed = urlparse(url)
    except ValueError:
        return "***url_parse_error***"
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    netloc = f"{parsed.username or ''}:***@{netloc}"
    return urlunparse(
        (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
    )


def build_store(settings: Settings) -> AuthStore:
    """Construct the credential store selected by settings."""
    store_type = "memory" if settings.use_memory_store else "postgres"
    try:
        if settings.use_memory_store:
            store: AuthStore = MemoryStore(fs_root=settings.memory_store_path)
        else:
            store = PostgresStore(
                settings.database_url,
                min_size=settings.db_pool_min_size,
                max_size=settings.db_pool_max_size,
            )
    except Exception as exc:
        logger.error(
            "runtime_store_init_failed",
            store_type=store_type,
            database_url=_mask_url_password(settings.database_url),
            error_type=type(exc).__name__,
            error=str(exc),
        )
        raise
    logger.info("runtime_store_initialized", store_type=store_type)
    return store


class Runtime:
    """Holds the process-wide settings, store, engine and sweeper."""

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )
        self.store = build_store(self.settings)
        self.auth = AuthService(self.store, self.settings)
        self.sweeper = SessionSweeper(
            self.store,
            interval_seconds=self.settings.session_sweep_interval_seconds,
            timeout_seconds=self.settings.session_sweep_timeout_seconds,
        )
        logger.info(
            "runtime_initialized",
            store_backend=type(self.store).__name__,
            session_sweep_enabled=self.settings.session_sweep_enabled,
            access_token_ttl_minutes=self.settings.access_token_ttl_minutes,
            refresh_token_ttl_minutes=self.settings.refresh_token_ttl_minutes,
        )

    def close(self) -> None:
        if isinstance(self.store, PostgresStore):
            self.store.close()


runtime: Runtime | None = None
# Thread-safe singleton pattern using a lock
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton in a thread-safe manner.

    Uses double-checked locking: the fast path skips the lock once the
    runtime exists.
    """
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""

    global runtime

    with _runtime_lock:
        if runtime is not None:
            runtime.close()
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime(settings)
        return runtime
