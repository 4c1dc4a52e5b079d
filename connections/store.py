import json
import os
import threading
from pathlib import Path
from typing import Dict, List, Optional

from connections.models import ConnectionConfig


class ConnectionStore:
    def load_all(self) -> List[ConnectionConfig]:
        raise NotImplementedError

    def save(self, config: ConnectionConfig) -> None:
        raise NotImplementedError

    def remove(self, connection_id: str) -> None:
        raise NotImplementedError


class MemoryConnectionStore(ConnectionStore):
    def __init__(self) -> None:
        self._items: Dict[str, ConnectionConfig] = {}

    def load_all(self) -> List[ConnectionConfig]:
        return list(self._items.values())

    def save(self, config: ConnectionConfig) -> None:
        self._items[config.id] = config

    def remove(self, connection_id: str) -> None:
        self._items.pop(connection_id, None)


class FileConnectionStore(ConnectionStore):
    """JSON array on disk, rewritten through a temp file on every change."""

    def __init__(self, path: str) -> None:
        self.path = Path(path)
        self._lock = threading.Lock()

    def _ensure_file(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        if not self.path.exists():
            self.path.write_text("[]", encoding="utf-8")

    def _read(self) -> List[Dict]:
        self._ensure_file()
        return json.loads(self.path.read_text(encoding="utf-8") or "[]")

    def _write(self, items: List[Dict]) -> None:
        self._ensure_file()
        tmp_path = self.path.with_suffix(self.path.suffix + ".tmp")
        tmp_path.write_text(json.dumps(items, indent=2), encoding="utf-8")
        os.replace(tmp_path, self.path)

    def load_all(self) -> List[ConnectionConfig]:
        with self._lock:
            return [ConnectionConfig.from_dict(item) for item in self._read()]

    def save(self, config: ConnectionConfig) -> None:
        with self._lock:
            items = [item for item in self._read() if item.get("id") != config.id]
            items.append(config.to_dict())
            items.sort(key=lambda item: item.get("created_at") or "")
            self._write(items)

    def remove(self, connection_id: str) -> None:
        with self._lock:
            items = self._read()
            kept = [item for item in items if item.get("id") != connection_id]
            if len(kept) != len(items):
                self._write(kept)


def build_store(kind: str, path: Optional[str] = None) -> ConnectionStore:
    if kind == "memory":
        return MemoryConnectionStore()
    if kind == "file":
        if not path:
            raise ValueError("CONNECTIONS_FILE is required for the file connection store")
        return FileConnectionStore(path)
    raise ValueError(f"Unsupported connection store: {kind}")
