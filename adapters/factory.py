from __future__ import annotations

import threading
from typing import Dict, List, Optional, Type

from adapters.base import DriverAdapter
from adapters.mysql import MySQLAdapter
from adapters.postgres import PostgresAdapter
from adapters.sqlite import SQLiteAdapter
from utils.errors import ValidationError

ADAPTERS: Dict[str, Type[DriverAdapter]] = {
    "postgres": PostgresAdapter,
    "mysql": MySQLAdapter,
    "sqlite": SQLiteAdapter,
}

DRIVER_ALIASES: Dict[str, str] = {
    "postgresql": "postgres",
    "pg": "postgres",
    "mariadb": "mysql",
    "sqlite3": "sqlite",
}

_instances: Dict[str, DriverAdapter] = {}
_instances_lock = threading.Lock()


def normalize_driver(kind: Optional[str]) -> Optional[str]:
    engine = (kind or "").strip().lower()
    engine = DRIVER_ALIASES.get(engine, engine)
    return engine if engine in ADAPTERS else None


def registered_drivers() -> List[str]:
    return sorted(ADAPTERS)


def is_network_driver(kind: str) -> bool:
    return ADAPTERS[kind].network


def get_adapter(kind: Optional[str]) -> DriverAdapter:
    """Return the shared adapter instance for a driver kind.

    One instance per kind keeps the open-session count meaningful across
    executions.
    """
    engine = normalize_driver(kind)
    if engine is None:
        raise ValidationError(f"Unsupported driver: {kind}")
    with _instances_lock:
        adapter = _instances.get(engine)
        if adapter is None:
            adapter = ADAPTERS[engine]()
            _instances[engine] = adapter
        return adapter


def register_adapter(kind: str, adapter_cls: Type[DriverAdapter]) -> None:
    with _instances_lock:
        ADAPTERS[kind] = adapter_cls
        _instances.pop(kind, None)


def unregister_adapter(kind: str) -> None:
    with _instances_lock:
        ADAPTERS.pop(kind, None)
        _instances.pop(kind, None)
