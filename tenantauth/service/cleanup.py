"""Background sweeper that purges expired sessions.

Expired sessions are already invisible to the read paths, so the sweep is
housekeeping only. Each tick deletes every expired row in one store call under
its own deadline; failures are logged and the next tick tries again.
"""

from __future__ import annotations

import asyncio
import time
from typing import TYPE_CHECKING, Optional

from tenantauth.logging import get_logger
from tenantauth.storage.common import operation_deadline

if TYPE_CHECKING:
    from tenantauth.service.auth import AuthStore

logger = get_logger(__name__)

DEFAULT_SWEEP_INTERVAL_SECONDS = 60 * 60
DEFAULT_SWEEP_TIMEOUT_SECONDS = 30.0


class SessionSweeper:
    """Runs ``delete_expired_sessions`` on a fixed interval.

    ``stop()`` signals the loop and waits for a sweep that is already running
    to finish; it never cancels one halfway.
    """

    def __init__(
        self,
        store: "AuthStore",
        *,
        interval_seconds: float = DEFAULT_SWEEP_INTERVAL_SECONDS,
        timeout_seconds: float = DEFAULT_SWEEP_TIMEOUT_SECONDS,
    ) -> None:
        self.store = store
        self.interval_seconds = interval_seconds
        self.timeout_seconds = timeout_seconds
        self._running = False
        self._task: Optional[asyncio.Task] = None
        self._stop_event: Optional[asyncio.Event] = None

    @property
    def running(self) -> bool:
        return self._running

    async def start(self) -> None:
        """Start the background sweeper."""
        if self._running:
            logger.warning("session_sweeper_already_running")
            return

        self._running = True
        self._stop_event = asyncio.Event()
        self._task = asyncio.create_task(self._run_loop())
        logger.info(
            "session_sweeper_started",
            interval_seconds=self.interval_seconds,
            timeout_seconds=self.timeout_seconds,
        )

    async def stop(self) -> None:
        """Stop the sweeper, letting an in-flight sweep complete."""
        if not self._running:
            return
        self._running = False
        if self._stop_event is not None:
            self._stop_event.set()
        if self._task is not None:
            await self._task
            self._task = None
        logger.info("session_sweeper_stopped")

    async def _run_loop(self) -> None:
        assert self._stop_event is not None
        while self._running:
            try:
                await asyncio.wait_for(
                    self._stop_event.wait(), timeout=self.interval_seconds
                )
            except asyncio.TimeoutError:
                pass
            if not self._running:
                break
            await self.sweep_once()

    def _sweep(self) -> int:
        with operation_deadline(self.timeout_seconds):
            return self.store.delete_expired_sessions()

    async def sweep_once(self) -> int:
        """Delete expired sessions once; returns the count removed (0 on failure)."""
        started = time.monotonic()
        try:
            removed = await asyncio.to_thread(self._sweep)
        except Exception as exc:
            logger.error(
                "session_sweep_failed",
                error=str(exc),
                error_type=type(exc).__name__,
            )
            return 0
        logger.info(
            "session_sweep_completed",
            removed=removed,
            duration_ms=int((time.monotonic() - started) * 1000),
        )
        return removed
