"""Tests for the expired-session sweeper."""

import asyncio
import threading
import time
from datetime import timedelta

import pytest

from tenantauth.service.cleanup import SessionSweeper
from tenantauth.storage.common import remaining_time
from tenantauth.storage.errors import StoreError
from tenantauth.storage.models import Session, User, utcnow


class SlowStore:
    """Store double whose purge blocks long enough to observe shutdown."""

    def __init__(self, delay: float = 0.2):
        self.delay = delay
        self.started = threading.Event()
        self.finished = threading.Event()
        self.calls = 0
        self.deadlines = []

    def delete_expired_sessions(self) -> int:
        self.calls += 1
        self.deadlines.append(remaining_time())
        self.started.set()
        time.sleep(self.delay)
        self.finished.set()
        return 2


class FailingStore:
    def delete_expired_sessions(self) -> int:
        raise StoreError("database unavailable")


@pytest.fixture
def seeded_store(memory_store, client_app):
    alice = memory_store.create_user(User.new("alice", "alice@x.com", "hash", "c1"))
    bob = memory_store.create_user(User.new("bob", "bob@x.com", "hash", "c1"))
    expired = Session.new(alice.id, "c1", "old")
    expired.expires_at = utcnow() - timedelta(minutes=1)
    memory_store.upsert_session(expired)
    memory_store.upsert_session(Session.new(bob.id, "c1", "live"))
    return memory_store


async def test_sweep_once_removes_only_expired(seeded_store):
    sweeper = SessionSweeper(seeded_store)

    removed = await sweeper.sweep_once()

    assert removed == 1
    assert len(seeded_store.sessions) == 1
    assert seeded_store.get_session_by_refresh_token("live") is not None


async def test_sweep_runs_under_deadline():
    store = SlowStore(delay=0)
    sweeper = SessionSweeper(store, timeout_seconds=7.5)

    assert await sweeper.sweep_once() == 2
    assert store.deadlines[0] is not None
    assert 0 < store.deadlines[0] <= 7.5


async def test_sweep_failure_is_logged_and_returns_zero():
    sweeper = SessionSweeper(FailingStore())
    assert await sweeper.sweep_once() == 0


async def test_start_and_stop():
    store = SlowStore(delay=0)
    sweeper = SessionSweeper(store, interval_seconds=0.01)

    await sweeper.start()
    assert sweeper.running is True
    await asyncio.sleep(0.1)
    await sweeper.stop()

    assert sweeper.running is False
    assert store.calls >= 1


async def test_double_start_is_noop():
    sweeper = SessionSweeper(SlowStore(delay=0), interval_seconds=60)

    await sweeper.start()
    first_task = sweeper._task
    await sweeper.start()

    assert sweeper._task is first_task
    await sweeper.stop()


async def test_stop_before_start_is_noop():
    sweeper = SessionSweeper(SlowStore(delay=0))
    await sweeper.stop()
    assert sweeper.running is False


async def test_stop_waits_for_inflight_sweep():
    store = SlowStore(delay=0.2)
    sweeper = SessionSweeper(store, interval_seconds=0.01)

    await sweeper.start()
    while not store.started.is_set():
        await asyncio.sleep(0.005)
    await sweeper.stop()

    assert store.finished.is_set()
    assert store.calls == 1


async def test_failed_tick_does_not_stop_loop():
    calls = []

    class FlakyStore:
        def delete_expired_sessions(self):
            calls.append(1)
            if len(calls) == 1:
                raise StoreError("transient")
            return 0

    sweeper = SessionSweeper(FlakyStore(), interval_seconds=0.01)
    await sweeper.start()
    await asyncio.sleep(0.15)
    await sweeper.stop()

    assert len(calls) >= 2
