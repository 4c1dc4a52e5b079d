import re

from utils.errors import ValidationError

_DENYLIST = (
    "insert",
    "update",
    "delete",
    "merge",
    "drop",
    "alter",
    "create",
    "truncate",
    "grant",
    "revoke",
    "copy",
    "call",
    "do",
    "vacuum",
    "comment",
    "attach",
    "detach",
    "pragma",
    "set",
    "lock",
)


def _normalize_sql(sql: str) -> str:
    return re.sub(r"\s+", " ", sql.strip()).lower()


def strip_sql(sql: str) -> str:
    candidate = (sql or "").strip()
    if not candidate:
        raise ValidationError("SQL is empty")
    return candidate


def validate_read_only(sql: str) -> str:
    """Accept a single SELECT/CTE statement, for connections flagged ``read_only``."""
    candidate = strip_sql(sql)

    semicolons = candidate.count(";")
    if semicolons > 1:
        raise ValidationError("Multiple SQL statements are not allowed on a read-only connection")
    if semicolons == 1 and not candidate.endswith(";"):
        raise ValidationError("Semicolon is only allowed at the end of SQL")

    normalized = _normalize_sql(candidate.rstrip(";"))
    if not (normalized.startswith("select ") or normalized.startswith("with ")):
        raise ValidationError("Only SELECT/CTE queries are allowed on a read-only connection")

    for keyword in _DENYLIST:
        if re.search(rf"\b{keyword}\b", normalized):
            raise ValidationError(f"Blocked SQL keyword detected: {keyword}")

    return candidate.rstrip(";")
