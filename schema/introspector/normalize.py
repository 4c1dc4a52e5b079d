from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple

DATABASE_KEYS = ("table_schema", "database", "schema", "table_catalog")
TABLE_KEYS = ("table_name", "table")
COLUMN_KEYS = ("column_name", "name")
TYPE_KEYS = ("column_type", "data_type", "type")
OPAQUE_PG_TYPES = {"USER-DEFINED", "ARRAY"}


@dataclass(frozen=True)
class ColumnDescriptor:
    name: str
    type: str

    def to_dict(self) -> Dict[str, str]:
        return {"name": self.name, "type": self.type}


@dataclass
class SchemaTree:
    databases: Dict[str, Dict[str, List[ColumnDescriptor]]] = field(default_factory=dict)

    @property
    def table_count(self) -> int:
        return sum(len(tables) for tables in self.databases.values())

    @property
    def column_count(self) -> int:
        return sum(len(cols) for tables in self.databases.values() for cols in tables.values())

    def tables(self, database: str) -> List[str]:
        return list(self.databases.get(database, {}))

    def columns(self, database: str, table: str) -> List[ColumnDescriptor]:
        return list(self.databases.get(database, {}).get(table, []))

    def to_dict(self) -> Dict[str, Dict[str, List[Dict[str, str]]]]:
        return {
            database: {table: [c.to_dict() for c in cols] for table, cols in tables.items()}
            for database, tables in self.databases.items()
        }


def _first(row: Mapping[str, Any], keys: Iterable[str]) -> Optional[Any]:
    for key in keys:
        value = row.get(key)
        if value not in (None, ""):
            return value
    return None


def _column_type(row: Mapping[str, Any]) -> str:
    data_type = _first(row, TYPE_KEYS)
    # information_schema reports arrays and enums generically; udt_name is specific.
    if data_type in OPAQUE_PG_TYPES and row.get("udt_name"):
        return str(row["udt_name"])
    return str(data_type) if data_type is not None else "unknown"


def _ordinal(row: Mapping[str, Any], fallback: int) -> int:
    if row.get("ordinal_position") is not None:
        return int(row["ordinal_position"])
    if row.get("cid") is not None:
        return int(row["cid"]) + 1
    return fallback


def normalize_rows(rows: Iterable[Mapping[str, Any]], default_database: str = "main") -> SchemaTree:
    """Fold driver metadata rows (any key casing, any engine's column names) into a SchemaTree."""
    staged: Dict[str, Dict[str, List[Tuple[int, ColumnDescriptor]]]] = {}
    for idx, raw in enumerate(rows):
        row = {str(k).lower(): v for k, v in raw.items()}
        table = _first(row, TABLE_KEYS)
        column = _first(row, COLUMN_KEYS)
        if table is None or column is None:
            continue
        database = str(_first(row, DATABASE_KEYS) or default_database)
        descriptor = ColumnDescriptor(name=str(column), type=_column_type(row))
        staged.setdefault(database, {}).setdefault(str(table), []).append((_ordinal(row, idx), descriptor))

    tree = SchemaTree()
    for database, tables in staged.items():
        tree.databases[database] = {
            table: [descriptor for _, descriptor in sorted(cols, key=lambda item: item[0])]
            for table, cols in tables.items()
        }
    return tree
