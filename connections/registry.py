"""Connection registry: validated CRUD over stored connection configs.

Reads are shared, writes are exclusive. Configs are immutable values, so a
reader holding one never sees a half-applied update. Executions pin a config
with ``acquire_reference`` so ``delete`` can refuse with ``InUse``.
"""

from __future__ import annotations

import logging
import threading
from collections import Counter
from contextlib import contextmanager
from typing import Any, Callable, Dict, List, Mapping, Optional
from uuid import uuid4

from adapters.factory import is_network_driver, normalize_driver, registered_drivers
from connections.credentials import validate_credential_ref
from connections.models import PATCHABLE_FIELDS, ConnectionConfig
from connections.store import ConnectionStore, MemoryConnectionStore
from utils.errors import InUse, NotFound, ValidationError

logger = logging.getLogger(__name__)

ChangeListener = Callable[[str], None]


class ReadWriteLock:
    def __init__(self) -> None:
        self._cond = threading.Condition(threading.Lock())
        self._readers = 0
        self._writer = False

    @contextmanager
    def read(self):
        with self._cond:
            while self._writer:
                self._cond.wait()
            self._readers += 1
        try:
            yield
        finally:
            with self._cond:
                self._readers -= 1
                if self._readers == 0:
                    self._cond.notify_all()

    @contextmanager
    def write(self):
        with self._cond:
            while self._writer or self._readers:
                self._cond.wait()
            self._writer = True
        try:
            yield
        finally:
            with self._cond:
                self._writer = False
                self._cond.notify_all()


def _coerce_port(value: Any) -> Optional[int]:
    if value in (None, ""):
        return None
    if isinstance(value, bool):
        raise ValidationError("port must be an integer")
    try:
        port = int(value)
    except (TypeError, ValueError) as exc:
        raise ValidationError(f"port must be an integer, got: {value!r}") from exc
    if not 1 <= port <= 65535:
        raise ValidationError(f"port must be between 1 and 65535, got: {port}")
    return port


def validate_config(payload: Mapping[str, Any]) -> Dict[str, Any]:
    name = str(payload.get("name") or "").strip()
    if not name:
        raise ValidationError("name is required")

    raw_driver = str(payload.get("driver") or "").strip()
    driver = normalize_driver(raw_driver)
    if driver is None:
        known = ", ".join(registered_drivers())
        raise ValidationError(f"Unsupported driver: {raw_driver or '<empty>'} (registered: {known})")

    options = payload.get("options") or {}
    if not isinstance(options, Mapping):
        raise ValidationError("options must be a mapping")

    host = payload.get("host")
    database = payload.get("database")
    if is_network_driver(driver):
        if not host:
            raise ValidationError(f"host is required for {driver} connections")
        if not database:
            raise ValidationError(f"database is required for {driver} connections")
    elif not database:
        raise ValidationError(f"database (file path) is required for {driver} connections")

    max_sessions = options.get("max_sessions")
    if max_sessions is not None and (isinstance(max_sessions, bool) or not isinstance(max_sessions, int) or max_sessions < 1):
        raise ValidationError("options.max_sessions must be a positive integer")

    credential_ref = payload.get("credential_ref")
    validate_credential_ref(credential_ref)

    return {
        "name": name,
        "driver": driver,
        "host": host,
        "port": _coerce_port(payload.get("port")),
        "database": database,
        "username": payload.get("username"),
        "credential_ref": credential_ref,
        "options": dict(options),
    }


class ConnectionRegistry:
    def __init__(self, store: Optional[ConnectionStore] = None) -> None:
        self._store = store or MemoryConnectionStore()
        self._lock = ReadWriteLock()
        self._configs: Dict[str, ConnectionConfig] = {c.id: c for c in self._store.load_all()}
        self._refs: Counter = Counter()
        self._refs_lock = threading.Lock()
        self._listeners: List[ChangeListener] = []

    def add_listener(self, listener: ChangeListener) -> None:
        self._listeners.append(listener)

    def _notify(self, connection_id: str) -> None:
        for listener in list(self._listeners):
            listener(connection_id)

    def create(self, payload: Mapping[str, Any]) -> str:
        fields = validate_config(payload)
        config = ConnectionConfig(id=str(payload.get("id") or uuid4()), **fields)
        with self._lock.write():
            if config.id in self._configs:
                raise ValidationError(f"Connection id already exists: {config.id}")
            self._store.save(config)
            self._configs[config.id] = config
        logger.info("Created connection %s (%s)", config.id, config.driver)
        return config.id

    def get(self, connection_id: str) -> ConnectionConfig:
        with self._lock.read():
            config = self._configs.get(connection_id)
        if config is None:
            raise NotFound(f"Unknown connection id: {connection_id}")
        return config

    def list(self) -> List[ConnectionConfig]:
        with self._lock.read():
            items = list(self._configs.values())
        return sorted(items, key=lambda c: c.created_at)

    def update(self, connection_id: str, patch: Mapping[str, Any]) -> ConnectionConfig:
        unknown = set(patch) - PATCHABLE_FIELDS
        if unknown:
            raise ValidationError(f"Fields cannot be updated: {', '.join(sorted(unknown))}")
        with self._lock.write():
            current = self._configs.get(connection_id)
            if current is None:
                raise NotFound(f"Unknown connection id: {connection_id}")
            merged = current.to_dict()
            merged.update(patch)
            fields = validate_config(merged)
            updated = current.with_patch(fields)
            self._store.save(updated)
            self._configs[connection_id] = updated
            # Listeners run under the write lock so no reader sees the new
            # config paired with stale derived state.
            self._notify(connection_id)
        logger.info("Updated connection %s", connection_id)
        return updated

    def delete(self, connection_id: str) -> None:
        with self._lock.write():
            if connection_id not in self._configs:
                raise NotFound(f"Unknown connection id: {connection_id}")
            with self._refs_lock:
                in_flight = self._refs[connection_id]
            if in_flight:
                raise InUse(f"Connection {connection_id} is referenced by {in_flight} running execution(s)")
            self._store.remove(connection_id)
            del self._configs[connection_id]
            self._notify(connection_id)
        logger.info("Deleted connection %s", connection_id)

    def acquire_reference(self, connection_id: str) -> ConnectionConfig:
        with self._lock.read():
            config = self._configs.get(connection_id)
            if config is None:
                raise NotFound(f"Unknown connection id: {connection_id}")
            with self._refs_lock:
                self._refs[connection_id] += 1
        return config

    def release_reference(self, connection_id: str) -> None:
        with self._refs_lock:
            remaining = self._refs.get(connection_id, 0) - 1
            if remaining > 0:
                self._refs[connection_id] = remaining
            else:
                self._refs.pop(connection_id, None)

    def reference_count(self, connection_id: str) -> int:
        with self._refs_lock:
            return self._refs.get(connection_id, 0)
