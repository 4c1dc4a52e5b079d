from __future__ import annotations

import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional
from uuid import uuid4

from utils.errors import CoreError


class ExecutionState(str, Enum):
    QUEUED = "queued"
    RUNNING = "running"
    STREAMING = "streaming"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_STATES = {ExecutionState.COMPLETED, ExecutionState.FAILED, ExecutionState.CANCELLED}

ALLOWED_TRANSITIONS = {
    ExecutionState.QUEUED: {ExecutionState.RUNNING, ExecutionState.FAILED, ExecutionState.CANCELLED},
    ExecutionState.RUNNING: {
        ExecutionState.STREAMING,
        ExecutionState.COMPLETED,
        ExecutionState.FAILED,
        ExecutionState.CANCELLED,
    },
    ExecutionState.STREAMING: {ExecutionState.COMPLETED, ExecutionState.FAILED, ExecutionState.CANCELLED},
}

MODES = ("preview", "download")

REASON_USER = "user"
REASON_TIMEOUT = "timeout"
REASON_CLIENT_GONE = "client_disconnect"
REASON_SHUTDOWN = "shutdown"


class ExecutionCancelled(Exception):
    """Raised at a suspension point once the execution's token is set."""

    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason


@dataclass(frozen=True)
class QueryRequest:
    sql: str
    connection_id: str
    mode: str = "preview"
    limit: Optional[int] = None
    timeout_ms: Optional[int] = None
    principal: Optional[str] = None


class CancellationToken:
    def __init__(self) -> None:
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._callbacks: List[Callable[[str], None]] = []
        self.reason: Optional[str] = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def add_callback(self, callback: Callable[[str], None]) -> None:
        with self._lock:
            if not self._event.is_set():
                self._callbacks.append(callback)
                return
            reason = self.reason or "cancelled"
        callback(reason)

    def cancel(self, reason: str = "cancelled") -> bool:
        """Set the token. Only the first call runs the callbacks; later calls return False."""
        with self._lock:
            if self._event.is_set():
                return False
            self.reason = reason
            self._event.set()
            callbacks = list(self._callbacks)
            self._callbacks.clear()
        for callback in callbacks:
            callback(reason)
        return True

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise ExecutionCancelled(self.reason or "cancelled")

    def wait(self, timeout: Optional[float] = None) -> bool:
        return self._event.wait(timeout)


@dataclass
class QueryExecution:
    request: QueryRequest
    id: str = field(default_factory=lambda: uuid4().hex)
    state: ExecutionState = ExecutionState.QUEUED
    submitted_at: float = field(default_factory=time.time)
    started_at: Optional[float] = None
    finished_at: Optional[float] = None
    error: Optional[CoreError] = None
    result: Any = None
    stream: Any = None
    session: Any = None
    token: CancellationToken = field(default_factory=CancellationToken)
    # Held while a driver call is in flight on ``session``.
    session_lock: threading.Lock = field(default_factory=threading.Lock, repr=False)
    _cond: threading.Condition = field(default_factory=threading.Condition, repr=False)

    @property
    def terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    def transition(self, new_state: ExecutionState, error: Optional[CoreError] = None) -> bool:
        """Move to ``new_state``. Returns False when already terminal; raises on illegal moves."""
        with self._cond:
            if self.state in TERMINAL_STATES:
                return False
            if new_state not in ALLOWED_TRANSITIONS[self.state]:
                raise RuntimeError(f"Illegal execution transition {self.state.value} -> {new_state.value}")
            self.state = new_state
            if new_state == ExecutionState.RUNNING:
                self.started_at = time.time()
            if new_state in TERMINAL_STATES:
                self.finished_at = time.time()
                if error is not None:
                    self.error = error
            self._cond.notify_all()
            return True

    def wait_for(self, states, timeout: Optional[float] = None) -> bool:
        deadline = None if timeout is None else time.monotonic() + timeout
        with self._cond:
            while self.state not in states:
                remaining = None if deadline is None else deadline - time.monotonic()
                if remaining is not None and remaining <= 0:
                    return False
                self._cond.wait(remaining)
            return True

    def status(self) -> Dict[str, Any]:
        duration_ms = None
        if self.started_at is not None:
            end = self.finished_at or time.time()
            duration_ms = round((end - self.started_at) * 1000.0, 2)
        payload: Dict[str, Any] = {
            "id": self.id,
            "connection_id": self.request.connection_id,
            "mode": self.request.mode,
            "state": self.state.value,
            "duration_ms": duration_ms,
            "error": self.error.to_dict() if self.error is not None else None,
        }
        if self.token.cancelled:
            payload["cancel_reason"] = self.token.reason
        if self.result is not None:
            payload["row_count"] = self.result.row_count
            payload["truncated"] = self.result.truncated
        if self.stream is not None:
            payload["rows_delivered"] = self.stream.rows_delivered
            payload["chunks_delivered"] = self.stream.chunks_delivered
            payload["truncated"] = self.stream.truncated
        return payload
