"""Schema browsing for the UI.

Trees are cached per connection for a short TTL so autocomplete does not hit
the metadata views on every keystroke. Connection updates and deletes drop
the cached tree; a generation counter keeps a fetch that was in flight during
the invalidation from repopulating the cache with the old schema.
"""

from __future__ import annotations

import logging
import threading
import time
from collections import defaultdict
from typing import Callable, Dict, Optional, Tuple

from execution.executor import QueryExecutor
from schema.introspector.normalize import SchemaTree, normalize_rows

logger = logging.getLogger(__name__)


class SchemaIntrospector:
    def __init__(
        self,
        executor: QueryExecutor,
        ttl_seconds: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.executor = executor
        self.ttl_seconds = executor.settings.schema_cache_ttl_seconds if ttl_seconds is None else ttl_seconds
        self._clock = clock
        self._cache: Dict[str, Tuple[float, SchemaTree]] = {}
        self._generations: Dict[str, int] = defaultdict(int)
        self._lock = threading.Lock()
        self._fetch_locks: Dict[str, threading.Lock] = defaultdict(threading.Lock)
        executor.registry.add_listener(self.invalidate)

    def _cached(self, connection_id: str) -> Optional[SchemaTree]:
        with self._lock:
            entry = self._cache.get(connection_id)
            if entry is None:
                return None
            expires_at, tree = entry
            if self._clock() >= expires_at:
                del self._cache[connection_id]
                return None
            return tree

    def get_schema(self, connection_id: str, reload: bool = False) -> SchemaTree:
        if not reload:
            tree = self._cached(connection_id)
            if tree is not None:
                return tree

        with self._lock:
            fetch_lock = self._fetch_locks[connection_id]
        with fetch_lock:
            if not reload:
                tree = self._cached(connection_id)
                if tree is not None:
                    return tree
            tree, generation = self._fetch(connection_id)
            with self._lock:
                if self._generations[connection_id] == generation:
                    self._cache[connection_id] = (self._clock() + self.ttl_seconds, tree)
            return tree

    def _fetch(self, connection_id: str) -> Tuple[SchemaTree, int]:
        with self._lock:
            generation = self._generations[connection_id]
        config = self.executor.registry.get(connection_id)
        started = time.perf_counter()
        with self.executor.checkout(connection_id) as (adapter, session):
            rows = adapter.list_schemas(session, schema_name=config.option("schema"))
        tree = normalize_rows(rows, default_database=config.database or "main")
        logger.info(
            "Loaded schema for connection %s: %d tables, %d columns in %.0fms",
            connection_id,
            tree.table_count,
            tree.column_count,
            (time.perf_counter() - started) * 1000.0,
        )
        return tree, generation

    def invalidate(self, connection_id: str) -> None:
        with self._lock:
            self._generations[connection_id] += 1
            self._cache.pop(connection_id, None)
