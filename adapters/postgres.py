from __future__ import annotations

from typing import Any, Dict, List, Optional, Sequence, Tuple
from uuid import uuid4

from adapters.base import DriverAdapter, Session
from connections.models import ConnectionConfig

SYSTEM_SCHEMAS = ("pg_catalog", "information_schema", "pg_toast")
CANCEL_TIMEOUT_SECONDS = 5.0
# Statements DECLARE ... CURSOR FOR accepts.
CURSOR_STATEMENTS = ("select", "with", "values", "table", "(")


class PostgresAdapter(DriverAdapter):
    engine = "postgres"

    def _db_params(self, config: ConnectionConfig, secret: Optional[str]) -> Dict[str, Any]:
        params: Dict[str, Any] = {
            "host": config.host,
            "port": int(config.port or 5432),
            "dbname": config.database,
            "connect_timeout": int(config.option("connect_timeout", 10)),
            "application_name": str(config.option("application_name", "query-core")),
            "autocommit": True,
        }
        if config.username:
            params["user"] = config.username
        if secret is not None:
            params["password"] = secret
        if config.option("sslmode"):
            params["sslmode"] = str(config.option("sslmode"))
        return params

    def _open(self, config: ConnectionConfig, secret: Optional[str]) -> Any:
        import psycopg  # type: ignore

        return psycopg.connect(**self._db_params(config, secret))

    def _apply_timeout(self, session: Session, cur: Any, timeout_ms: Optional[int]) -> None:
        # Runs on the connection, not the cursor: named cursors only accept queries.
        session.raw.execute(f"SET statement_timeout = '{int(timeout_ms or 0)}ms'")

    def _preview_cursor(self, session: Session, sql: str) -> Tuple[Any, Any]:
        # FETCH on a server-side cursor only moves limit + 1 rows to the client.
        if sql.lstrip().lower().startswith(CURSOR_STATEMENTS):
            return self._stream_cursor(session)
        return session.raw.cursor(), None

    def _stream_cursor(self, session: Session) -> Tuple[Any, Any]:
        conn = session.raw
        # Named (server-side) cursors only live inside a transaction block.
        conn.autocommit = False
        cur = conn.cursor(name=f"stream_{uuid4().hex[:12]}")

        def _end_transaction() -> None:
            conn.rollback()
            conn.autocommit = True

        return cur, _end_transaction

    def _describe(self, session: Session, description: Sequence[Any]) -> Tuple[List[str], List[Optional[str]]]:
        names: List[str] = []
        types: List[Optional[str]] = []
        registry = getattr(session.raw, "adapters", None)
        for col in description:
            names.append(str(col.name))
            info = registry.types.get(col.type_code) if registry is not None else None
            types.append(info.name if info is not None else None)
        return names, types

    def _is_connection_error(self, exc: Exception) -> bool:
        import psycopg  # type: ignore

        if isinstance(exc, psycopg.OperationalError) and not isinstance(exc, psycopg.errors.QueryCanceled):
            return True
        return isinstance(exc, psycopg.InterfaceError)

    def cancel(self, session: Session) -> None:
        if session.closed:
            return
        session.poisoned = True
        conn = session.raw
        cancel_safe = getattr(conn, "cancel_safe", None)
        try:
            if cancel_safe is not None:
                cancel_safe(timeout=CANCEL_TIMEOUT_SECONDS)
            else:
                conn.cancel()
        except Exception:
            # Best-effort; the executor closes the poisoned session anyway.
            return

    def list_schemas(self, session: Session, schema_name: Optional[str] = None) -> List[Dict[str, Any]]:
        params: List[Any] = [list(SYSTEM_SCHEMAS)]
        schema_filter = ""
        if schema_name:
            schema_filter = "AND c.table_schema = %s"
            params.append(schema_name)
        cur = session.raw.cursor()
        try:
            cur.execute(
                f"""
                SELECT
                    c.table_schema,
                    c.table_name,
                    t.table_type,
                    c.column_name,
                    c.data_type,
                    c.udt_name,
                    c.ordinal_position
                FROM information_schema.columns c
                JOIN information_schema.tables t
                  ON t.table_schema = c.table_schema
                 AND t.table_name = c.table_name
                WHERE c.table_schema <> ALL(%s)
                  {schema_filter}
                ORDER BY c.table_schema, c.table_name, c.ordinal_position
                """,
                tuple(params),
            )
            rows = cur.fetchall()
        except Exception as exc:
            raise self._wrap_error(session, exc) from exc
        finally:
            cur.close()
        return [
            {
                "table_schema": schema,
                "table_name": table,
                "table_type": table_type,
                "column_name": column,
                "data_type": data_type,
                "udt_name": udt_name,
                "ordinal_position": int(ordinal),
            }
            for schema, table, table_type, column, data_type, udt_name, ordinal in rows
        ]
