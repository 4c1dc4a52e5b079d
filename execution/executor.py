"""Query executor.

``submit`` resolves the connection and queues for a slot in the connection's
session pool. Only once the slot is granted does the execution get a worker
thread, which opens the session and runs the query. An execution still
queued after ``pool_acquire_timeout_ms`` fails with a retryable
``ConnectionError``. Preview executions materialize a
bounded ``ResultSet``; download executions hand a ``ResultStreamer`` to the
caller, which pulls chunks at its own pace.

Cancellation goes through the execution's ``CancellationToken``. The first
``cancel`` (user, deadline, client disconnect or shutdown) asks the adapter to
interrupt the session exactly once. Whichever side ends up holding the session
afterwards (the worker, the consumer, or the canceller when nobody is mid-call)
returns it to the pool and releases the registry reference.
"""

from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterator, List, Optional

from adapters.base import DriverAdapter, ResultSet, Session
from adapters.factory import get_adapter
from connections.models import ConnectionConfig
from connections.registry import ConnectionRegistry
from execution.guard import strip_sql, validate_read_only
from execution.models import (
    MODES,
    REASON_CLIENT_GONE,
    REASON_SHUTDOWN,
    REASON_TIMEOUT,
    REASON_USER,
    ExecutionCancelled,
    ExecutionState,
    QueryExecution,
    QueryRequest,
)
from execution.pool import PoolManager, SessionPool, SlotRequest
from execution.streamer import (
    OUTCOME_CANCELLED,
    OUTCOME_CLOSED,
    OUTCOME_ERROR,
    OUTCOME_EXHAUSTED,
    ResultStreamer,
    cap_result_bytes,
)
from utils.errors import (
    CoreError,
    DatabaseConnectionError,
    NotFound,
    QueryError,
    QueryTimeoutError,
    ValidationError,
)
from utils.settings import Settings, get_settings

logger = logging.getLogger(__name__)

FINISHED_RETENTION_SECONDS = 600.0


@dataclass
class _Scope:
    config: ConnectionConfig
    adapter: DriverAdapter
    sql: str
    timeout_ms: int
    pool: Optional[SessionPool] = None
    slot: Optional[SlotRequest] = None
    timer: Optional[threading.Timer] = None
    slot_timer: Optional[threading.Timer] = None
    session_released: bool = False
    cleaned_up: bool = False
    cancel_lock: threading.Lock = field(default_factory=threading.Lock)


class QueryExecutor:
    def __init__(
        self,
        registry: ConnectionRegistry,
        settings: Optional[Settings] = None,
        adapter_lookup: Callable[[str], DriverAdapter] = get_adapter,
    ) -> None:
        self.registry = registry
        self.settings = settings or get_settings()
        self._adapter_lookup = adapter_lookup
        self.pools = PoolManager(
            max_sessions=self.settings.pool_max_sessions,
            idle_timeout_ms=self.settings.pool_idle_timeout_ms,
            acquire_timeout_ms=self.settings.pool_acquire_timeout_ms,
        )
        self._workers = ThreadPoolExecutor(
            max_workers=self.settings.executor_workers,
            thread_name_prefix="query-exec",
        )
        self._executions: Dict[str, QueryExecution] = {}
        self._scopes: Dict[str, _Scope] = {}
        self._lock = threading.Lock()
        registry.add_listener(self.pools.invalidate)

    # -- public API ----------------------------------------------------------

    def submit(self, request: QueryRequest) -> QueryExecution:
        self._validate(request)
        self._evict_finished()
        config = self.registry.acquire_reference(request.connection_id)
        try:
            sql = validate_read_only(request.sql) if config.read_only else strip_sql(request.sql)
            adapter = self._adapter_lookup(config.driver)
        except BaseException:
            self.registry.release_reference(config.id)
            raise

        execution = QueryExecution(request=request)
        scope = _Scope(
            config=config,
            adapter=adapter,
            sql=sql,
            timeout_ms=int(request.timeout_ms or self.settings.default_timeout_ms),
        )
        with self._lock:
            self._executions[execution.id] = execution
            self._scopes[execution.id] = scope

        execution.token.add_callback(lambda reason: self._on_cancel(execution, scope, reason))
        scope.timer = threading.Timer(scope.timeout_ms / 1000.0, execution.token.cancel, args=(REASON_TIMEOUT,))
        scope.timer.daemon = True
        scope.timer.start()

        logger.info(
            "Submitted %s execution %s on connection %s (principal=%s)",
            request.mode,
            execution.id,
            config.id,
            request.principal or "-",
        )
        scope.pool = self.pools.pool_for(config, adapter)
        scope.slot = scope.pool.request_slot(on_ready=lambda: self._dispatch(execution, scope))
        if not scope.slot.granted:
            scope.slot_timer = threading.Timer(
                self.settings.pool_acquire_timeout_ms / 1000.0,
                self._slot_wait_expired,
                args=(execution, scope),
            )
            scope.slot_timer.daemon = True
            scope.slot_timer.start()
        return execution

    def get(self, execution_id: str) -> QueryExecution:
        with self._lock:
            execution = self._executions.get(execution_id)
        if execution is None:
            raise NotFound(f"Unknown execution id: {execution_id}")
        return execution

    def poll(self, execution_id: str) -> Dict[str, Any]:
        return self.get(execution_id).status()

    def wait(self, execution_id: str, timeout: Optional[float] = None) -> QueryExecution:
        """Block until the execution is terminal, or streaming for downloads."""
        execution = self.get(execution_id)
        settled = {ExecutionState.COMPLETED, ExecutionState.FAILED, ExecutionState.CANCELLED}
        if execution.request.mode == "download":
            settled.add(ExecutionState.STREAMING)
        execution.wait_for(settled, timeout)
        return execution

    def result(self, execution_id: str, timeout: Optional[float] = None) -> Optional[ResultSet]:
        """Preview result, the execution's error, or None when cancelled by a caller."""
        execution = self.wait(execution_id, timeout)
        if execution.state == ExecutionState.COMPLETED:
            return execution.result
        if execution.error is not None:
            raise execution.error
        return None

    def stream(self, execution_id: str, timeout: Optional[float] = None) -> Optional[ResultStreamer]:
        execution = self.wait(execution_id, timeout)
        if execution.request.mode != "download":
            raise ValidationError(f"Execution {execution_id} is not a download")
        if execution.stream is not None:
            return execution.stream
        if execution.error is not None:
            raise execution.error
        return None

    def cancel(self, execution_id: str, reason: str = REASON_USER) -> bool:
        execution = self.get(execution_id)
        if execution.terminal:
            return False
        return execution.token.cancel(reason)

    def discard(self, execution_id: str) -> None:
        execution = self.get(execution_id)
        if not execution.terminal:
            execution.token.cancel(REASON_USER)
        with self._lock:
            self._executions.pop(execution_id, None)
            self._scopes.pop(execution_id, None)

    def active_count(self) -> int:
        with self._lock:
            return sum(1 for e in self._executions.values() if not e.terminal)

    @contextmanager
    def checkout(self, connection_id: str) -> Iterator[tuple]:
        """Borrow a pooled session outside of an execution (schema reads, tests)."""
        config = self.registry.acquire_reference(connection_id)
        try:
            adapter = self._adapter_lookup(config.driver)
            pool = self.pools.pool_for(config, adapter)
            session = pool.acquire(config)
            discard = True
            try:
                yield adapter, session
                discard = session.poisoned
            finally:
                pool.release(session, discard=discard)
        finally:
            self.registry.release_reference(config.id)

    def test_connection(self, connection_id: str) -> Dict[str, Any]:
        config = self.registry.get(connection_id)
        return self._adapter_lookup(config.driver).test_connection(config)

    def shutdown(self, wait: bool = True) -> None:
        with self._lock:
            live = [e for e in self._executions.values() if not e.terminal]
        for execution in live:
            execution.token.cancel(REASON_SHUTDOWN)
        self._workers.shutdown(wait=wait)
        self.pools.close_all()

    # -- internals -----------------------------------------------------------

    def _validate(self, request: QueryRequest) -> None:
        if request.mode not in MODES:
            raise ValidationError(f"mode must be one of: {', '.join(MODES)}")
        if not request.connection_id:
            raise ValidationError("connection_id is required")
        strip_sql(request.sql)
        for name in ("limit", "timeout_ms"):
            value = getattr(request, name)
            if value is None:
                continue
            if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
                raise ValidationError(f"{name} must be a positive integer")

    def _preview_limit(self, request: QueryRequest) -> int:
        cap = self.settings.preview_max_rows
        return min(request.limit or cap, cap)

    def _dispatch(self, execution: QueryExecution, scope: _Scope) -> None:
        try:
            self._workers.submit(self._run, execution, scope)
        except RuntimeError:
            # Workers already shut down.
            scope.pool.release_slot()
            self._end_cancelled(execution, scope)

    def _slot_wait_expired(self, execution: QueryExecution, scope: _Scope) -> None:
        if scope.slot is None or not scope.pool.withdraw(scope.slot):
            return
        error = DatabaseConnectionError(
            f"Timed out waiting for a free session on connection {scope.config.id} "
            f"(max_sessions={scope.pool.max_sessions})"
        )
        self._end_failed(execution, scope, error)

    def _run(self, execution: QueryExecution, scope: _Scope) -> None:
        if not execution.transition(ExecutionState.RUNNING):
            scope.pool.release_slot()
            self._cleanup(execution, scope)
            return
        request = execution.request
        adapter = scope.adapter
        row_stream = None
        result = None
        try:
            session = scope.pool.open_session(scope.config)
            with execution.session_lock:
                execution.session = session
                execution.token.raise_if_cancelled()
                if request.mode == "preview":
                    result = adapter.execute_query(
                        session,
                        scope.sql,
                        limit=self._preview_limit(request),
                        timeout_ms=scope.timeout_ms,
                    )
                    result = cap_result_bytes(result, self.settings.preview_max_bytes)
                else:
                    row_stream = adapter.stream_query(
                        session,
                        scope.sql,
                        fetch_size=self.settings.stream_chunk_size,
                        timeout_ms=scope.timeout_ms,
                    )
        except ExecutionCancelled:
            self._end_cancelled(execution, scope)
            return
        except Exception as exc:
            if execution.token.cancelled:
                self._end_cancelled(execution, scope)
                return
            error = exc if isinstance(exc, CoreError) else QueryError(str(exc) or type(exc).__name__)
            if not isinstance(exc, CoreError):
                logger.exception("Unexpected error in execution %s", execution.id)
            self._end_failed(execution, scope, error)
            return

        if request.mode == "preview":
            execution.result = result
            self._release_session(execution, scope, discard=False)
            if execution.transition(ExecutionState.COMPLETED):
                logger.info(
                    "Execution %s completed: %d rows (truncated=%s)",
                    execution.id,
                    result.row_count,
                    result.truncated,
                )
            self._cleanup(execution, scope)
            return

        streamer = ResultStreamer(
            row_stream,
            chunk_size=self.settings.stream_chunk_size,
            max_rows=request.limit,
            token=execution.token,
            pull_guard=lambda: self._pull_guard(execution),
            on_finish=lambda outcome, err: self._on_stream_finish(execution, scope, outcome, err),
            before_close=lambda outcome: self._before_stream_close(execution, outcome),
        )
        execution.stream = streamer
        if not execution.transition(ExecutionState.STREAMING):
            # Cancelled between the query starting and the stream being handed out.
            streamer.close()

    @contextmanager
    def _pull_guard(self, execution: QueryExecution):
        with execution.session_lock:
            yield

    def _before_stream_close(self, execution: QueryExecution, outcome: str) -> None:
        # An unfinished cursor may still have rows in flight; closing the
        # session is cheaper than draining them.
        if outcome != OUTCOME_EXHAUSTED and execution.session is not None:
            execution.session.poisoned = True

    def _on_cancel(self, execution: QueryExecution, scope: _Scope, reason: str) -> None:
        error = None
        if reason == REASON_TIMEOUT:
            error = QueryTimeoutError(f"Query exceeded its {scope.timeout_ms}ms deadline and was cancelled")
        withdrawn = scope.slot is not None and scope.pool.withdraw(scope.slot)
        # Held across the check and the driver call so a released session,
        # possibly checked out again by another execution, is never interrupted.
        with scope.cancel_lock:
            session = execution.session
            if session is not None and not scope.session_released:
                scope.adapter.cancel(session)
        if execution.transition(ExecutionState.CANCELLED, error):
            logger.info("Execution %s cancelled (%s)", execution.id, reason)
        if withdrawn:
            self._cleanup(execution, scope)
            return
        # If no driver call is in flight, nobody else will come back for the session.
        if execution.session_lock.acquire(blocking=False):
            try:
                if execution.session is not None:
                    self._release_session(execution, scope, discard=True, locked=True)
                    self._cleanup(execution, scope)
            finally:
                execution.session_lock.release()

    def _on_stream_finish(self, execution: QueryExecution, scope: _Scope, outcome: str, error: Optional[BaseException]) -> None:
        if outcome == OUTCOME_CLOSED and not execution.terminal:
            execution.token.cancel(REASON_CLIENT_GONE)
        if outcome in (OUTCOME_CANCELLED, OUTCOME_CLOSED):
            self._release_session(execution, scope, discard=True)
            self._cleanup(execution, scope)
            return
        if outcome == OUTCOME_ERROR:
            wrapped = error if isinstance(error, CoreError) else QueryError(str(error))
            self._end_failed(execution, scope, wrapped)
            return
        streamer = execution.stream
        self._release_session(execution, scope, discard=False)
        if execution.transition(ExecutionState.COMPLETED) and streamer is not None:
            logger.info(
                "Download %s completed: %d rows in %d chunks (truncated=%s)",
                execution.id,
                streamer.rows_delivered,
                streamer.chunks_delivered,
                streamer.truncated,
            )
        self._cleanup(execution, scope)

    def _end_cancelled(self, execution: QueryExecution, scope: _Scope) -> None:
        self._release_session(execution, scope, discard=True)
        execution.transition(ExecutionState.CANCELLED)
        self._cleanup(execution, scope)

    def _end_failed(self, execution: QueryExecution, scope: _Scope, error: CoreError) -> None:
        self._release_session(execution, scope, discard=True)
        if execution.transition(ExecutionState.FAILED, error):
            logger.warning("Execution %s failed: %s: %s", execution.id, error.kind, error.message)
        self._cleanup(execution, scope)

    def _release_session(self, execution: QueryExecution, scope: _Scope, discard: bool, locked: bool = False) -> None:
        if locked:
            self._release_locked(execution, scope, discard)
            return
        with execution.session_lock:
            self._release_locked(execution, scope, discard)

    def _release_locked(self, execution: QueryExecution, scope: _Scope, discard: bool) -> None:
        session: Optional[Session] = execution.session
        with scope.cancel_lock:
            if session is None or scope.session_released:
                return
            scope.session_released = True
        scope.pool.release(session, discard=discard)

    def _cleanup(self, execution: QueryExecution, scope: _Scope) -> None:
        with self._lock:
            if scope.cleaned_up:
                return
            scope.cleaned_up = True
        for timer in (scope.timer, scope.slot_timer):
            if timer is not None:
                timer.cancel()
        self.registry.release_reference(scope.config.id)

    def _evict_finished(self) -> None:
        cutoff = time.time() - FINISHED_RETENTION_SECONDS
        with self._lock:
            stale: List[str] = [
                execution_id
                for execution_id, execution in self._executions.items()
                if execution.terminal and (execution.finished_at or 0) < cutoff and self._scopes[execution_id].cleaned_up
            ]
            for execution_id in stale:
                self._executions.pop(execution_id, None)
                self._scopes.pop(execution_id, None)
