"""Per-connection session pools.

A pool hands each checkout a session nobody else holds. ``max_sessions``
bounds concurrent checkouts per connection; with ``max_sessions=1`` every
execution on that connection waits for the previous one to give its session
back. Idle sessions past ``idle_timeout_ms`` are closed on the next checkout.

Checkout is two steps. ``request_slot`` reserves one of the ``max_sessions``
slots, queueing FIFO behind earlier requests when all are taken, and calls
``on_ready`` once the slot is granted. ``open_session`` then turns a granted
slot into a session. The executor only hands an execution to a worker thread
from ``on_ready``, so waiting for a busy connection never occupies a worker.
"""

from __future__ import annotations

import logging
import threading
import time
from collections import deque
from typing import Callable, Deque, Dict, List, Optional, Tuple

from adapters.base import DriverAdapter, Session
from connections.models import ConnectionConfig
from execution.models import CancellationToken
from utils.errors import DatabaseConnectionError

logger = logging.getLogger(__name__)

WAIT_SLICE_SECONDS = 0.05

SLOT_WAITING = "waiting"
SLOT_GRANTED = "granted"
SLOT_WITHDRAWN = "withdrawn"


class SlotRequest:
    def __init__(self, on_ready: Optional[Callable[[], None]] = None) -> None:
        self.state = SLOT_WAITING
        self._on_ready = on_ready
        self._granted = threading.Event()

    @property
    def granted(self) -> bool:
        return self.state == SLOT_GRANTED

    def wait(self, timeout: Optional[float] = None) -> bool:
        return self._granted.wait(timeout)

    def _fire(self) -> None:
        self._granted.set()
        if self._on_ready is not None:
            self._on_ready()


class SessionPool:
    def __init__(
        self,
        adapter: DriverAdapter,
        max_sessions: int,
        idle_timeout_ms: int,
        acquire_timeout_ms: int,
    ) -> None:
        self.adapter = adapter
        self.max_sessions = max_sessions
        self.idle_timeout_ms = idle_timeout_ms
        self.acquire_timeout_ms = acquire_timeout_ms
        self._idle: Deque[Session] = deque()
        self._waiters: Deque[SlotRequest] = deque()
        self._checked_out: Dict[str, Tuple[int, DriverAdapter]] = {}
        self._lock = threading.Lock()
        self._in_use = 0
        self._generation = 0
        self.retired = False

    # -- slots -----------------------------------------------------------------

    def request_slot(self, on_ready: Optional[Callable[[], None]] = None) -> SlotRequest:
        """Reserve a slot now if one is free, otherwise queue behind earlier requests."""
        request = SlotRequest(on_ready)
        with self._lock:
            self._waiters.append(request)
            granted = self._grant_locked()
        for ready in granted:
            ready._fire()
        return request

    def withdraw(self, request: SlotRequest) -> bool:
        """Drop a queued request. False when the slot was already granted."""
        with self._lock:
            if request.state != SLOT_WAITING:
                return False
            request.state = SLOT_WITHDRAWN
            self._waiters.remove(request)
        return True

    def release_slot(self) -> None:
        with self._lock:
            self._in_use -= 1
            granted = self._grant_locked()
        for ready in granted:
            ready._fire()

    def _grant_locked(self) -> List[SlotRequest]:
        granted = []
        while self._waiters and self._in_use < self.max_sessions:
            request = self._waiters.popleft()
            request.state = SLOT_GRANTED
            self._in_use += 1
            granted.append(request)
        return granted

    def _wait_timeout(self, config: ConnectionConfig) -> DatabaseConnectionError:
        return DatabaseConnectionError(
            f"Timed out waiting for a free session on connection {config.id} "
            f"(max_sessions={self.max_sessions})"
        )

    # -- sessions --------------------------------------------------------------

    def open_session(self, config: ConnectionConfig) -> Session:
        """Turn a granted slot into a session: an idle one if any, else a new one."""
        with self._lock:
            session = self._pop_idle()
            generation, adapter = self._generation, self.adapter
        if session is None:
            try:
                session = adapter.connect(config)
            except BaseException:
                self.release_slot()
                raise
        else:
            session.touch()
        with self._lock:
            self._checked_out[session.id] = (generation, adapter)
        return session

    def acquire(self, config: ConnectionConfig, token: Optional[CancellationToken] = None) -> Session:
        """Blocking checkout for callers that already run on their own thread."""
        request = self.request_slot()
        deadline = time.monotonic() + self.acquire_timeout_ms / 1000.0
        while not request.wait(WAIT_SLICE_SECONDS):
            cancelled = token is not None and token.cancelled
            if not cancelled and time.monotonic() < deadline:
                continue
            if not self.withdraw(request):
                break
            if token is not None:
                token.raise_if_cancelled()
            raise self._wait_timeout(config)
        return self.open_session(config)

    def _pop_idle(self) -> Optional[Session]:
        now = time.monotonic()
        while self._idle:
            session = self._idle.pop()
            idle_ms = (now - session.last_used_at) * 1000.0
            if session.closed or session.poisoned:
                continue
            if self.idle_timeout_ms and idle_ms > self.idle_timeout_ms:
                logger.debug("Evicting idle session %s after %.0fms", session.id, idle_ms)
                self.adapter.close(session)
                continue
            return session
        return None

    def release(self, session: Session, discard: bool = False) -> None:
        with self._lock:
            generation, adapter = self._checked_out.pop(session.id, (self._generation, self.adapter))
            stale = generation != self._generation
        keep = not (discard or stale or session.poisoned or session.closed or self.retired)
        if keep:
            session.touch()
        else:
            adapter.close(session)
        with self._lock:
            if keep:
                self._idle.append(session)
        self.release_slot()

    def close_idle(self) -> int:
        with self._lock:
            idle = list(self._idle)
            self._idle.clear()
        for session in idle:
            self.adapter.close(session)
        return len(idle)

    def reset(self, adapter: DriverAdapter, max_sessions: int) -> None:
        """Start a new generation after a config change.

        Idle sessions are closed now. Sessions checked out under the old
        generation keep their slots and are closed, not pooled, on release.
        """
        with self._lock:
            idle = list(self._idle)
            self._idle.clear()
            old_adapter = self.adapter
            self._generation += 1
            self.adapter = adapter
            self.max_sessions = max_sessions
            granted = self._grant_locked()
        for session in idle:
            old_adapter.close(session)
        for ready in granted:
            ready._fire()

    def retire(self) -> None:
        """Stop reusing sessions: close idle ones now, checked-out ones on release."""
        self.retired = True
        self.close_idle()

    def stats(self) -> Dict[str, int]:
        with self._lock:
            return {
                "in_use": self._in_use,
                "idle": len(self._idle),
                "waiting": len(self._waiters),
                "max_sessions": self.max_sessions,
            }


class PoolManager:
    def __init__(self, max_sessions: int, idle_timeout_ms: int, acquire_timeout_ms: int) -> None:
        self.default_max_sessions = max_sessions
        self.idle_timeout_ms = idle_timeout_ms
        self.acquire_timeout_ms = acquire_timeout_ms
        self._pools: Dict[str, SessionPool] = {}
        self._stale: set = set()
        self._lock = threading.Lock()

    def _max_sessions(self, config: ConnectionConfig) -> int:
        return int(config.option("max_sessions", self.default_max_sessions))

    def pool_for(self, config: ConnectionConfig, adapter: DriverAdapter) -> SessionPool:
        with self._lock:
            pool = self._pools.get(config.id)
            if pool is None:
                pool = SessionPool(
                    adapter=adapter,
                    max_sessions=self._max_sessions(config),
                    idle_timeout_ms=self.idle_timeout_ms,
                    acquire_timeout_ms=self.acquire_timeout_ms,
                )
                self._pools[config.id] = pool
                return pool
            reset = config.id in self._stale
            self._stale.discard(config.id)
        if reset:
            pool.reset(adapter, self._max_sessions(config))
        return pool

    def invalidate(self, connection_id: str) -> None:
        """Drop idle sessions of a changed or deleted connection.

        The pool object stays so that sessions still checked out keep counting
        against ``max_sessions``; the next ``pool_for`` picks up the new config.
        """
        with self._lock:
            pool = self._pools.get(connection_id)
            if pool is not None:
                self._stale.add(connection_id)
        if pool is not None:
            closed = pool.close_idle()
            logger.info("Invalidated session pool for connection %s (%d idle closed)", connection_id, closed)

    def close_all(self) -> None:
        with self._lock:
            pools = list(self._pools.values())
            self._pools.clear()
            self._stale.clear()
        for pool in pools:
            pool.retire()

    def stats(self) -> Dict[str, Dict[str, int]]:
        with self._lock:
            return {connection_id: pool.stats() for connection_id, pool in self._pools.items()}
