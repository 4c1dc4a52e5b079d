"""Error taxonomy shared by the registry, adapters and executor.

Every error that leaves the core is a ``CoreError`` carrying a ``kind`` string
and a ``retryable`` flag, so handlers can render ``{kind, message, retryable}``
without inspecting driver exceptions.
"""

from __future__ import annotations

from typing import Any, Dict


class CoreError(Exception):
    kind: str = "InternalError"
    retryable: bool = False

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_dict(self) -> Dict[str, Any]:
        return {"kind": self.kind, "message": self.message, "retryable": self.retryable}


class ValidationError(CoreError):
    kind = "ValidationError"


class NotFound(CoreError):
    kind = "NotFound"


class InUse(CoreError):
    kind = "InUse"


class DatabaseConnectionError(CoreError):
    kind = "ConnectionError"
    retryable = True


class QueryError(CoreError):
    kind = "QueryError"

    def __init__(self, message: str, native_message: str | None = None):
        super().__init__(message)
        self.native_message = native_message or message


class QueryTimeoutError(CoreError):
    kind = "TimeoutError"
    retryable = True


def scrub_secret(text: str, secret: str | None) -> str:
    if not secret:
        return text
    return text.replace(secret, "***")
