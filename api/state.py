from dataclasses import dataclass
from functools import lru_cache
from typing import Optional

from connections.registry import ConnectionRegistry
from connections.store import build_store
from execution.executor import QueryExecutor
from schema.introspector.service import SchemaIntrospector
from utils.settings import Settings, get_settings


@dataclass
class Core:
    registry: ConnectionRegistry
    executor: QueryExecutor
    introspector: SchemaIntrospector

    def shutdown(self) -> None:
        self.executor.shutdown(wait=False)


def build_core(settings: Optional[Settings] = None) -> Core:
    settings = settings or get_settings()
    registry = ConnectionRegistry(build_store(settings.connection_store, settings.connections_file))
    executor = QueryExecutor(registry, settings=settings)
    introspector = SchemaIntrospector(executor)
    return Core(registry=registry, executor=executor, introspector=introspector)


@lru_cache(maxsize=1)
def get_core() -> Core:
    return build_core()
