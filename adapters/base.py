"""Driver adapter contract.

An adapter turns a ``ConnectionConfig`` into live ``Session`` values and runs
SQL over them. Each ``Session`` wraps exactly one DB-API connection; the
executor's pool makes sure a session is only ever used by one execution at a
time. Errors leaving an adapter are always ``CoreError`` subclasses.
"""

from __future__ import annotations

import datetime as dt
import decimal
import logging
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterator, List, Optional, Sequence, Tuple
from uuid import uuid4

from connections.credentials import resolve_secret
from connections.models import ConnectionConfig
from utils.errors import CoreError, DatabaseConnectionError, QueryError, scrub_secret

logger = logging.getLogger(__name__)

Row = List[Any]


@dataclass(frozen=True)
class ColumnInfo:
    name: str
    type: str = "unknown"

    def to_dict(self) -> Dict[str, str]:
        return {"name": self.name, "type": self.type}


@dataclass
class ResultSet:
    columns: List[ColumnInfo]
    rows: List[Row]
    truncated: bool = False

    @property
    def row_count(self) -> int:
        return len(self.rows)

    @property
    def column_names(self) -> List[str]:
        return [c.name for c in self.columns]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "columns": self.column_names,
            "column_types": [c.type for c in self.columns],
            "rows": self.rows,
            "row_count": self.row_count,
            "truncated": self.truncated,
        }


@dataclass
class Session:
    connection_id: str
    driver: str
    raw: Any
    id: str = field(default_factory=lambda: uuid4().hex)
    created_at: float = field(default_factory=time.monotonic)
    last_used_at: float = field(default_factory=time.monotonic)
    extra: Dict[str, Any] = field(default_factory=dict, repr=False)
    closed: bool = False
    # Set when the session's server-side state is unknown (after cancel or a
    # driver error); such sessions are closed instead of going back to a pool.
    poisoned: bool = False
    secret: Optional[str] = field(default=None, repr=False)

    def touch(self) -> None:
        self.last_used_at = time.monotonic()


@dataclass
class RowStream:
    columns: List[ColumnInfo]
    batches: Iterator[List[Row]]
    on_close: Optional[Callable[[], None]] = None

    def close(self) -> None:
        close = getattr(self.batches, "close", None)
        if close is not None:
            close()
        # A generator that never started skips its finally block on close().
        if self.on_close is not None:
            self.on_close()


def infer_value_type(value: Any) -> str:
    if value is None:
        return "unknown"
    if isinstance(value, bool):
        return "boolean"
    if isinstance(value, int):
        return "integer"
    if isinstance(value, (float, decimal.Decimal)):
        return "number"
    if isinstance(value, dt.datetime):
        return "datetime"
    if isinstance(value, dt.date):
        return "date"
    if isinstance(value, (bytes, bytearray, memoryview)):
        return "binary"
    return "string"


def infer_columns(names: Sequence[str], types: Sequence[Optional[str]], sample: Sequence[Row]) -> List[ColumnInfo]:
    """Use driver-reported types where present, otherwise the first non-null value in the sample."""
    columns: List[ColumnInfo] = []
    for idx, name in enumerate(names):
        col_type = types[idx] if idx < len(types) else None
        if not col_type:
            col_type = "unknown"
            for row in sample:
                if idx < len(row) and row[idx] is not None:
                    col_type = infer_value_type(row[idx])
                    break
        columns.append(ColumnInfo(name=name, type=col_type))
    return columns


class DriverAdapter(ABC):
    engine: str = "unknown"
    network: bool = True
    # Closing the preview cursor would read every remaining row off the wire.
    unbuffered_preview: bool = False

    def __init__(self) -> None:
        self._open_sessions = 0
        self._count_lock = threading.Lock()

    @property
    def open_sessions(self) -> int:
        with self._count_lock:
            return self._open_sessions

    def _track(self, delta: int) -> None:
        with self._count_lock:
            self._open_sessions += delta

    # -- lifecycle ---------------------------------------------------------

    def connect(self, config: ConnectionConfig) -> Session:
        secret = resolve_secret(config.credential_ref)
        try:
            raw = self._open(config, secret)
        except CoreError:
            raise
        except Exception as exc:
            target = f"{config.host or ''}:{config.port or ''}/{config.database or ''}"
            message = scrub_secret(str(exc), secret)
            logger.warning("Connect failed for %s (%s): %s", config.id, self.engine, message)
            raise DatabaseConnectionError(f"Could not connect to {self.engine} at {target}: {message}") from None
        session = Session(connection_id=config.id, driver=self.engine, raw=raw, secret=secret)
        self._after_connect(session)
        self._track(1)
        logger.debug("Opened %s session %s for connection %s", self.engine, session.id, config.id)
        return session

    def close(self, session: Session) -> None:
        if session.closed:
            return
        session.closed = True
        self._track(-1)
        try:
            session.raw.close()
        except Exception as exc:
            logger.debug("Ignoring error while closing %s session %s: %s", self.engine, session.id, exc)

    def test_connection(self, config: ConnectionConfig) -> Dict[str, Any]:
        started = time.perf_counter()
        session = self.connect(config)
        try:
            result = self.execute_query(session, "SELECT 1", limit=1)
        finally:
            self.close(session)
        return {
            "ok": result.row_count == 1,
            "driver": self.engine,
            "latency_ms": round((time.perf_counter() - started) * 1000.0, 2),
        }

    # -- querying ----------------------------------------------------------

    def execute_query(self, session: Session, sql: str, limit: int, timeout_ms: Optional[int] = None) -> ResultSet:
        session.touch()
        try:
            cur, cleanup = self._preview_cursor(session, sql)
        except Exception as exc:
            raise self._wrap_error(session, exc) from exc
        finish = _StreamFinisher(self, session, cur, cleanup)
        try:
            self._apply_timeout(session, cur, timeout_ms)
            cur.execute(sql)
            if cur.description is None:
                finish()
                return ResultSet(columns=[], rows=[], truncated=False)
            fetched = [list(row) for row in cur.fetchmany(limit + 1)]
            names, types = self._describe(session, cur.description)
        except CoreError:
            finish()
            raise
        except Exception as exc:
            error = self._wrap_error(session, exc)
            finish()
            raise error from exc
        truncated = len(fetched) > limit
        if truncated and self.unbuffered_preview:
            session.poisoned = True
        finish()
        rows = fetched[:limit]
        return ResultSet(columns=infer_columns(names, types, rows), rows=rows, truncated=truncated)

    def stream_query(self, session: Session, sql: str, fetch_size: int = 500, timeout_ms: Optional[int] = None) -> RowStream:
        session.touch()
        try:
            cur, cleanup = self._stream_cursor(session)
        except Exception as exc:
            raise self._wrap_error(session, exc) from exc
        finish = _StreamFinisher(self, session, cur, cleanup)
        try:
            self._apply_timeout(session, cur, timeout_ms)
            cur.execute(sql)
            description = cur.description
            if description is None:
                names: List[str] = []
                types: List[Optional[str]] = []
                first: List[Row] = []
            else:
                names, types = self._describe(session, description)
                first = [list(row) for row in cur.fetchmany(fetch_size)]
        except CoreError:
            finish()
            raise
        except Exception as exc:
            error = self._wrap_error(session, exc)
            finish()
            raise error from exc
        columns = infer_columns(names, types, first)
        batches = self._iter_batches(session, cur, finish, first, fetch_size)
        return RowStream(columns=columns, batches=batches, on_close=finish)

    def _iter_batches(self, session: Session, cur: Any, finish, first: List[Row], fetch_size: int) -> Iterator[List[Row]]:
        try:
            batch = first
            while batch:
                yield batch
                if len(batch) < fetch_size:
                    return
                session.touch()
                try:
                    batch = [list(row) for row in cur.fetchmany(fetch_size)]
                except Exception as exc:
                    raise self._wrap_error(session, exc) from exc
        finally:
            finish()

    def _close_cursor(self, session: Session, cur: Any) -> None:
        try:
            cur.close()
        except Exception as exc:
            session.poisoned = True
            logger.debug("Cursor close failed on session %s: %s", session.id, exc)

    def _wrap_error(self, session: Session, exc: Exception) -> CoreError:
        session.poisoned = True
        message = scrub_secret(str(exc).strip() or type(exc).__name__, session.secret)
        if self._is_connection_error(exc):
            return DatabaseConnectionError(f"{self.engine} connection failed: {message}")
        return QueryError(message, native_message=message)

    # -- engine hooks --------------------------------------------------------

    @abstractmethod
    def _open(self, config: ConnectionConfig, secret: Optional[str]) -> Any:
        raise NotImplementedError

    def _after_connect(self, session: Session) -> None:
        return None

    def _cursor(self, session: Session) -> Any:
        return session.raw.cursor()

    def _preview_cursor(self, session: Session, sql: str) -> Tuple[Any, Any]:
        """Cursor for a bounded read; only ``limit + 1`` rows are ever fetched from it."""
        return self._cursor(session), None

    def _stream_cursor(self, session: Session) -> Tuple[Any, Any]:
        return session.raw.cursor(), None

    def _apply_timeout(self, session: Session, cur: Any, timeout_ms: Optional[int]) -> None:
        return None

    def _describe(self, session: Session, description: Sequence[Sequence[Any]]) -> Tuple[List[str], List[Optional[str]]]:
        return [str(d[0]) for d in description], [None for _ in description]

    def _is_connection_error(self, exc: Exception) -> bool:
        return False

    @abstractmethod
    def cancel(self, session: Session) -> None:
        raise NotImplementedError

    @abstractmethod
    def list_schemas(self, session: Session, schema_name: Optional[str] = None) -> List[Dict[str, Any]]:
        raise NotImplementedError


class _StreamFinisher:
    """Closes a preview or streaming cursor once, whichever exit path gets there first."""

    def __init__(self, adapter: DriverAdapter, session: Session, cur: Any, cleanup: Optional[Callable[[], None]]):
        self.adapter = adapter
        self.session = session
        self.cur = cur
        self.cleanup = cleanup
        self.done = False
        self._lock = threading.Lock()

    def __call__(self) -> None:
        with self._lock:
            if self.done:
                return
            self.done = True
        session = self.session
        if session.poisoned or session.closed:
            # Draining an interrupted cursor can block; closing the session
            # releases it instead.
            return
        self.adapter._close_cursor(session, self.cur)
        if self.cleanup is not None:
            try:
                self.cleanup()
            except Exception as exc:
                session.poisoned = True
                logger.debug("Stream cleanup failed on session %s: %s", session.id, exc)
