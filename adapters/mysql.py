from __future__ import annotations

from typing import Any, Dict, List, Optional, Sequence, Tuple

from adapters.base import DriverAdapter, Session
from connections.models import ConnectionConfig

SYSTEM_SCHEMAS = ("mysql", "information_schema", "performance_schema", "sys")
CONNECTION_ERROR_CODES = {2003, 2006, 2013, 2055, 1045, 1049}
KILL_CONNECT_TIMEOUT_SECONDS = 5


def _field_type_names() -> Dict[int, str]:
    from pymysql.constants import FIELD_TYPE  # type: ignore

    return {
        value: name.lower()
        for name, value in vars(FIELD_TYPE).items()
        if name.isupper() and isinstance(value, int)
    }


class MySQLAdapter(DriverAdapter):
    engine = "mysql"
    unbuffered_preview = True

    def __init__(self) -> None:
        super().__init__()
        self._type_names: Optional[Dict[int, str]] = None

    def _db_params(self, config: ConnectionConfig, secret: Optional[str]) -> Dict[str, Any]:
        params: Dict[str, Any] = {
            "host": config.host,
            "port": int(config.port or 3306),
            "database": config.database,
            "connect_timeout": int(config.option("connect_timeout", 10)),
            "autocommit": True,
            "charset": str(config.option("charset", "utf8mb4")),
        }
        if config.username:
            params["user"] = config.username
        if secret is not None:
            params["password"] = secret
        return params

    def _open(self, config: ConnectionConfig, secret: Optional[str]) -> Any:
        import pymysql  # type: ignore

        return pymysql.connect(**self._db_params(config, secret))

    def _after_connect(self, session: Session) -> None:
        # KILL QUERY needs the server thread id and a second connection.
        session.extra["thread_id"] = session.raw.thread_id()
        session.extra["kill_params"] = {
            "host": session.raw.host,
            "port": session.raw.port,
            "user": session.raw.user,
            "connect_timeout": KILL_CONNECT_TIMEOUT_SECONDS,
        }

    def _apply_timeout(self, session: Session, cur: Any, timeout_ms: Optional[int]) -> None:
        cur.execute(f"SET SESSION MAX_EXECUTION_TIME={int(timeout_ms or 0)}")

    def _preview_cursor(self, session: Session, sql: str) -> Tuple[Any, Any]:
        # Unbuffered, so the driver stops reading after limit + 1 rows.
        return self._stream_cursor(session)

    def _stream_cursor(self, session: Session) -> Tuple[Any, Any]:
        import pymysql.cursors  # type: ignore

        return session.raw.cursor(pymysql.cursors.SSCursor), None

    def _describe(self, session: Session, description: Sequence[Any]) -> Tuple[List[str], List[Optional[str]]]:
        if self._type_names is None:
            self._type_names = _field_type_names()
        names = [str(col[0]) for col in description]
        types = [self._type_names.get(col[1]) for col in description]
        return names, types

    def _is_connection_error(self, exc: Exception) -> bool:
        import pymysql  # type: ignore

        if isinstance(exc, pymysql.err.InterfaceError):
            return True
        if isinstance(exc, pymysql.err.OperationalError) and exc.args:
            return exc.args[0] in CONNECTION_ERROR_CODES
        return False

    def cancel(self, session: Session) -> None:
        if session.closed:
            return
        session.poisoned = True
        thread_id = session.extra.get("thread_id")
        if thread_id is None:
            return
        import pymysql  # type: ignore

        try:
            killer = pymysql.connect(password=session.secret or "", **session.extra["kill_params"])
        except Exception:
            return
        try:
            with killer.cursor() as cur:
                cur.execute(f"KILL QUERY {int(thread_id)}")
        except Exception:
            return
        finally:
            killer.close()

    def list_schemas(self, session: Session, schema_name: Optional[str] = None) -> List[Dict[str, Any]]:
        import pymysql.cursors  # type: ignore

        params: List[Any] = list(SYSTEM_SCHEMAS)
        placeholders = ", ".join(["%s"] * len(SYSTEM_SCHEMAS))
        schema_filter = ""
        if schema_name:
            schema_filter = "AND c.TABLE_SCHEMA = %s"
            params.append(schema_name)
        cur = session.raw.cursor(pymysql.cursors.DictCursor)
        try:
            cur.execute(
                f"""
                SELECT
                    c.TABLE_SCHEMA,
                    c.TABLE_NAME,
                    t.TABLE_TYPE,
                    c.COLUMN_NAME,
                    c.COLUMN_TYPE,
                    c.ORDINAL_POSITION,
                    c.COLUMN_KEY
                FROM information_schema.COLUMNS c
                JOIN information_schema.TABLES t
                  ON t.TABLE_SCHEMA = c.TABLE_SCHEMA
                 AND t.TABLE_NAME = c.TABLE_NAME
                WHERE c.TABLE_SCHEMA NOT IN ({placeholders})
                  {schema_filter}
                ORDER BY c.TABLE_SCHEMA, c.TABLE_NAME, c.ORDINAL_POSITION
                """,
                tuple(params),
            )
            rows = cur.fetchall()
        except Exception as exc:
            raise self._wrap_error(session, exc) from exc
        finally:
            cur.close()
        return [dict(row) for row in rows]
