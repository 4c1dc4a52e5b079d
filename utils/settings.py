from __future__ import annotations

import os
from dataclasses import dataclass
from functools import lru_cache

from utils.env_loader import env_float, env_int, env_str, load_environments

APP_VERSION = "0.1.0"


@dataclass(frozen=True)
class Settings:
    connection_store: str = "file"
    connections_file: str = "metadata/connections.json"
    pool_max_sessions: int = 5
    pool_idle_timeout_ms: int = 300_000
    pool_acquire_timeout_ms: int = 30_000
    default_timeout_ms: int = 60_000
    preview_max_rows: int = 10_000
    preview_max_bytes: int = 20 * 1024 * 1024
    stream_chunk_size: int = 500
    schema_cache_ttl_seconds: float = 60.0
    executor_workers: int = 8
    log_level: str = "INFO"


def load_settings(env_path: str = "") -> Settings:
    load_environments(env_path or os.getenv("QUERY_CORE_ENV_FILE", ".env"))
    store = env_str("CONNECTION_STORE", "file").lower()
    if store not in {"file", "memory"}:
        raise ValueError(f"CONNECTION_STORE must be 'file' or 'memory', got: {store}")
    return Settings(
        connection_store=store,
        connections_file=env_str("CONNECTIONS_FILE", "metadata/connections.json"),
        pool_max_sessions=env_int("POOL_MAX_SESSIONS", 5, minimum=1),
        pool_idle_timeout_ms=env_int("POOL_IDLE_TIMEOUT_MS", 300_000, minimum=0),
        pool_acquire_timeout_ms=env_int("POOL_ACQUIRE_TIMEOUT_MS", 30_000, minimum=1),
        default_timeout_ms=env_int("DEFAULT_TIMEOUT_MS", 60_000, minimum=1),
        preview_max_rows=env_int("PREVIEW_MAX_ROWS", 10_000, minimum=1),
        preview_max_bytes=env_int("PREVIEW_MAX_BYTES", 20 * 1024 * 1024, minimum=1),
        stream_chunk_size=env_int("STREAM_CHUNK_SIZE", 500, minimum=1),
        schema_cache_ttl_seconds=env_float("SCHEMA_CACHE_TTL_SECONDS", 60.0),
        executor_workers=env_int("EXECUTOR_WORKERS", 8, minimum=1),
        log_level=env_str("LOG_LEVEL", "INFO").upper(),
    )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return load_settings()
