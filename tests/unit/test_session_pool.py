import time

import pytest

from connections.models import ConnectionConfig
from execution.models import CancellationToken, ExecutionCancelled
from execution.pool import PoolManager, SessionPool
from utils.errors import DatabaseConnectionError


def _config(**options):
    return ConnectionConfig(id="fake-1", name="fake", driver="fake", database="x", options=options)


def test_released_session_is_reused(fake_adapter):
    pool = SessionPool(fake_adapter, max_sessions=2, idle_timeout_ms=60_000, acquire_timeout_ms=1_000)
    first = pool.acquire(_config())
    pool.release(first)
    second = pool.acquire(_config())
    assert second is first
    assert fake_adapter.connect_calls == 1
    pool.release(second)
    assert pool.stats() == {"in_use": 0, "idle": 1, "waiting": 0, "max_sessions": 2}


def test_poisoned_session_is_closed_on_release(fake_adapter):
    pool = SessionPool(fake_adapter, max_sessions=1, idle_timeout_ms=60_000, acquire_timeout_ms=1_000)
    session = pool.acquire(_config())
    session.poisoned = True
    pool.release(session)
    assert session.closed is True
    assert fake_adapter.open_sessions == 0
    assert pool.acquire(_config()) is not session


def test_acquire_times_out_when_exhausted(fake_adapter):
    pool = SessionPool(fake_adapter, max_sessions=1, idle_timeout_ms=60_000, acquire_timeout_ms=100)
    held = pool.acquire(_config())
    started = time.monotonic()
    with pytest.raises(DatabaseConnectionError, match="max_sessions=1"):
        pool.acquire(_config())
    assert time.monotonic() - started >= 0.09
    pool.release(held)


def test_acquire_stops_waiting_when_cancelled(fake_adapter):
    pool = SessionPool(fake_adapter, max_sessions=1, idle_timeout_ms=60_000, acquire_timeout_ms=10_000)
    held = pool.acquire(_config())
    token = CancellationToken()
    token.cancel("user")
    with pytest.raises(ExecutionCancelled):
        pool.acquire(_config(), token)
    pool.release(held)
    assert pool.stats()["in_use"] == 0


def test_idle_sessions_past_timeout_are_evicted(fake_adapter):
    pool = SessionPool(fake_adapter, max_sessions=1, idle_timeout_ms=1, acquire_timeout_ms=1_000)
    stale = pool.acquire(_config())
    pool.release(stale)
    time.sleep(0.01)
    fresh = pool.acquire(_config())
    assert fresh is not stale
    assert stale.closed is True
    pool.release(fresh)


def test_slots_are_granted_in_request_order(fake_adapter):
    pool = SessionPool(fake_adapter, max_sessions=1, idle_timeout_ms=60_000, acquire_timeout_ms=1_000)
    ready = []
    first = pool.request_slot(on_ready=lambda: ready.append("first"))
    second = pool.request_slot(on_ready=lambda: ready.append("second"))
    third = pool.request_slot(on_ready=lambda: ready.append("third"))
    assert first.granted is True
    assert ready == ["first"]
    assert pool.stats()["waiting"] == 2

    assert pool.withdraw(second) is True
    assert pool.withdraw(first) is False
    session = pool.open_session(_config())
    pool.release(session)
    assert ready == ["first", "third"]
    assert third.granted is True
    assert second.granted is False
    assert pool.stats() == {"in_use": 1, "idle": 1, "waiting": 0, "max_sessions": 1}

    pool.release_slot()
    assert pool.stats()["in_use"] == 0


def test_failed_connect_gives_the_slot_back(fake_adapter):
    pool = SessionPool(fake_adapter, max_sessions=1, idle_timeout_ms=60_000, acquire_timeout_ms=1_000)
    pool.request_slot()
    with pytest.raises(DatabaseConnectionError):
        pool.open_session(_config(unreachable=True))
    assert pool.stats()["in_use"] == 0


def test_invalidate_keeps_checked_out_sessions_counted(fake_adapter):
    manager = PoolManager(max_sessions=3, idle_timeout_ms=60_000, acquire_timeout_ms=100)
    config = _config(max_sessions=2)
    pool = manager.pool_for(config, fake_adapter)
    assert pool.max_sessions == 2
    idle = pool.acquire(config)
    checked_out = pool.acquire(config)
    pool.release(idle)

    manager.invalidate(config.id)
    assert idle.closed is True
    same = manager.pool_for(config, fake_adapter)
    assert same is pool
    fresh = same.acquire(config)
    with pytest.raises(DatabaseConnectionError, match="max_sessions=2"):
        same.acquire(config)

    same.release(checked_out)
    assert checked_out.closed is True
    same.release(fresh)
    assert fresh.closed is False
    assert same.stats() == {"in_use": 0, "idle": 1, "waiting": 0, "max_sessions": 2}
    manager.close_all()
    assert fake_adapter.open_sessions == 0


def test_changed_max_sessions_applies_after_invalidate(fake_adapter):
    manager = PoolManager(max_sessions=3, idle_timeout_ms=60_000, acquire_timeout_ms=1_000)
    pool = manager.pool_for(_config(max_sessions=1), fake_adapter)
    held = pool.acquire(_config(max_sessions=1))
    waiter = pool.request_slot()
    assert waiter.granted is False

    manager.invalidate("fake-1")
    manager.pool_for(_config(max_sessions=2), fake_adapter)
    assert waiter.granted is True
    assert pool.stats()["in_use"] == 2

    pool.release(held)
    pool.release_slot()
    manager.close_all()
