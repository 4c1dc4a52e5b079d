import itertools
import sqlite3
import threading

import pytest

from adapters.base import DriverAdapter
from adapters.factory import get_adapter, register_adapter, unregister_adapter
from connections.registry import ConnectionRegistry
from execution.executor import QueryExecutor
from utils.settings import Settings


class FakeInterrupted(Exception):
    pass


class FakeCursor:
    """Understands a tiny command language instead of SQL.

    ``rows:N[:delay]`` yields N rows of (id, label), sleeping ``delay`` seconds per fetch.
    ``sleep:S`` blocks for S seconds unless interrupted. ``fail:msg`` raises.
    """

    def __init__(self, conn):
        self.conn = conn
        self.description = None
        self._rows = iter(())
        self._delay = 0.0

    def execute(self, sql, params=None):
        self.conn.executed.append(sql)
        kind, _, arg = sql.partition(":")
        if kind == "sleep":
            if self.conn.interrupted.wait(float(arg)):
                raise FakeInterrupted("canceling statement due to user request")
            self.description = [("slept",)]
            self._rows = iter([(1,)])
            return
        if kind == "fail":
            raise RuntimeError(arg or "boom")
        if kind == "rows":
            count, _, delay = arg.partition(":")
            self._delay = float(delay or 0)
            self.description = [("id",), ("label",)]
            self._rows = ((i, f"row-{i}") for i in range(int(count)))
            return
        if kind == "noop":
            self.description = None
            return
        raise RuntimeError(f"syntax error at or near {sql!r}")

    def fetchmany(self, size):
        self.conn.fetches += 1
        if self._delay and self.conn.interrupted.wait(self._delay):
            raise FakeInterrupted("interrupted")
        return list(itertools.islice(self._rows, size))

    def close(self):
        return None


class FakeConnection:
    def __init__(self):
        self.interrupted = threading.Event()
        self.executed = []
        self.fetches = 0
        self.closed = False

    def cursor(self):
        return FakeCursor(self)

    def close(self):
        self.closed = True


class FakeAdapter(DriverAdapter):
    engine = "fake"
    network = False

    def __init__(self):
        super().__init__()
        self.cancel_calls = 0
        self.connect_calls = 0
        self.schema_calls = 0
        self.schema_rows = [
            {"table_schema": "public", "table_name": "users", "column_name": "id", "data_type": "integer", "ordinal_position": 1},
            {"table_schema": "public", "table_name": "users", "column_name": "email", "data_type": "text", "ordinal_position": 2},
        ]
        self._calls_lock = threading.Lock()

    def _open(self, config, secret):
        with self._calls_lock:
            self.connect_calls += 1
        if config.option("unreachable"):
            raise OSError(f"could not reach server with password {secret}")
        return FakeConnection()

    def cancel(self, session):
        with self._calls_lock:
            self.cancel_calls += 1
        session.poisoned = True
        session.raw.interrupted.set()

    def list_schemas(self, session, schema_name=None):
        with self._calls_lock:
            self.schema_calls += 1
        return [dict(row) for row in self.schema_rows]


@pytest.fixture
def fake_adapter():
    register_adapter("fake", FakeAdapter)
    try:
        yield get_adapter("fake")
    finally:
        unregister_adapter("fake")


@pytest.fixture
def settings():
    return Settings(
        connection_store="memory",
        pool_max_sessions=4,
        pool_acquire_timeout_ms=5_000,
        default_timeout_ms=10_000,
        stream_chunk_size=10,
        schema_cache_ttl_seconds=60.0,
        executor_workers=8,
    )


@pytest.fixture
def registry():
    return ConnectionRegistry()


@pytest.fixture
def executor(registry, settings):
    executor = QueryExecutor(registry, settings=settings)
    try:
        yield executor
    finally:
        executor.shutdown(wait=True)


@pytest.fixture
def sqlite_db(tmp_path):
    db_path = tmp_path / "sample.db"
    conn = sqlite3.connect(str(db_path))
    try:
        conn.execute("CREATE TABLE records (id INTEGER PRIMARY KEY, country TEXT, amount REAL, event_date TEXT)")
        conn.executemany(
            "INSERT INTO records(country, amount, event_date) VALUES (?, ?, ?)",
            [(f"C{i % 3}", float(i), f"2024-01-{(i % 28) + 1:02d}") for i in range(1, 26)],
        )
        conn.execute("CREATE VIEW big_spenders AS SELECT country, amount FROM records WHERE amount > 20")
        conn.commit()
    finally:
        conn.close()
    return db_path
