from __future__ import annotations

from dataclasses import asdict, dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, Dict, Optional

PATCHABLE_FIELDS = {"name", "driver", "host", "port", "database", "username", "credential_ref", "options"}


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass(frozen=True)
class ConnectionConfig:
    """Stored connection settings. ``credential_ref`` points at the secret, it is never the secret."""

    id: str
    name: str
    driver: str
    host: Optional[str] = None
    port: Optional[int] = None
    database: Optional[str] = None
    username: Optional[str] = None
    credential_ref: Optional[str] = None
    options: Dict[str, Any] = field(default_factory=dict)
    created_at: str = field(default_factory=_now_iso)
    updated_at: str = field(default_factory=_now_iso)

    def option(self, key: str, default: Any = None) -> Any:
        return self.options.get(key, default)

    @property
    def read_only(self) -> bool:
        return bool(self.options.get("read_only", False))

    def to_dict(self) -> Dict[str, Any]:
        payload = asdict(self)
        payload["options"] = dict(self.options)
        return payload

    def redacted(self) -> Dict[str, Any]:
        payload = self.to_dict()
        if payload.get("credential_ref"):
            scheme = str(payload["credential_ref"]).split(":", 1)[0]
            payload["credential_ref"] = f"{scheme}:***" if scheme == "literal" else payload["credential_ref"]
        return payload

    def with_patch(self, patch: Dict[str, Any]) -> "ConnectionConfig":
        changes = {k: v for k, v in patch.items() if k in PATCHABLE_FIELDS}
        if "options" in changes:
            changes["options"] = dict(changes["options"] or {})
        return replace(self, updated_at=_now_iso(), **changes)

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> "ConnectionConfig":
        port = payload.get("port")
        return cls(
            id=str(payload["id"]),
            name=str(payload.get("name") or ""),
            driver=str(payload.get("driver") or ""),
            host=payload.get("host"),
            port=int(port) if port not in (None, "") else None,
            database=payload.get("database"),
            username=payload.get("username"),
            credential_ref=payload.get("credential_ref"),
            options=dict(payload.get("options") or {}),
            created_at=payload.get("created_at") or _now_iso(),
            updated_at=payload.get("updated_at") or _now_iso(),
        )
