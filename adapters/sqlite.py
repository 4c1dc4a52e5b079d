from __future__ import annotations

import sqlite3
from pathlib import Path
from typing import Any, Dict, List, Optional

from adapters.base import DriverAdapter, Session
from connections.models import ConnectionConfig
from utils.errors import DatabaseConnectionError


def _quote_ident(name: str) -> str:
    return '"' + str(name).replace('"', '""') + '"'


class SQLiteAdapter(DriverAdapter):
    engine = "sqlite"
    network = False

    def _db_path(self, config: ConnectionConfig) -> str:
        raw = config.database
        if not raw:
            raise DatabaseConnectionError("sqlite connections need a database file path")
        if raw == ":memory:":
            return raw
        db_path = Path(str(raw))
        if not db_path.exists() and not config.option("create", False):
            raise DatabaseConnectionError(f"SQLite database file does not exist: {db_path}")
        return str(db_path)

    def _open(self, config: ConnectionConfig, secret: Optional[str]) -> Any:
        # interrupt() is called from the deadline thread and pooled sessions
        # move between worker threads, so thread affinity checks are off.
        conn = sqlite3.connect(
            self._db_path(config),
            timeout=float(config.option("busy_timeout_ms", 5000)) / 1000.0,
            isolation_level=None,
            check_same_thread=False,
        )
        if config.read_only:
            conn.execute("PRAGMA query_only = ON")
        return conn

    def _apply_timeout(self, session: Session, cur: Any, timeout_ms: Optional[int]) -> None:
        if timeout_ms:
            cur.execute(f"PRAGMA busy_timeout = {int(timeout_ms)}")

    def _is_connection_error(self, exc: Exception) -> bool:
        return isinstance(exc, sqlite3.ProgrammingError) and "closed" in str(exc).lower()

    def cancel(self, session: Session) -> None:
        if session.closed:
            return
        session.poisoned = True
        try:
            session.raw.interrupt()
        except sqlite3.Error:
            return

    def list_schemas(self, session: Session, schema_name: Optional[str] = None) -> List[Dict[str, Any]]:
        conn = session.raw
        out: List[Dict[str, Any]] = []
        try:
            databases = [row[1] for row in conn.execute("PRAGMA database_list").fetchall()]
            for database in databases:
                if schema_name and database != schema_name:
                    continue
                if database == "temp":
                    continue
                tables = conn.execute(
                    f"""
                    SELECT name, type
                    FROM {_quote_ident(database)}.sqlite_master
                    WHERE type IN ('table', 'view')
                      AND name NOT LIKE 'sqlite_%'
                    ORDER BY name
                    """
                ).fetchall()
                for table_name, table_type in tables:
                    pragma = f"PRAGMA {_quote_ident(database)}.table_info({_quote_ident(table_name)})"
                    for cid, name, declared_type, notnull, _default, pk in conn.execute(pragma).fetchall():
                        out.append(
                            {
                                "database": database,
                                "table": table_name,
                                "kind": table_type,
                                "cid": int(cid),
                                "name": name,
                                "type": declared_type or "",
                                "notnull": bool(notnull),
                                "pk": bool(pk),
                            }
                        )
        except sqlite3.Error as exc:
            raise self._wrap_error(session, exc) from exc
        return out
