import csv
import datetime as dt
import decimal
import io
import json
from typing import Any, Callable, Dict, Iterable, Iterator, List

from adapters.base import ColumnInfo
from execution.streamer import Chunk

CONTENT_TYPES = {
    "csv": "text/csv; charset=utf-8",
    "json": "application/json",
    "ndjson": "application/x-ndjson",
}


def _json_default(value: Any) -> Any:
    if isinstance(value, (dt.datetime, dt.date, dt.time)):
        return value.isoformat()
    if isinstance(value, decimal.Decimal):
        return str(value)
    if isinstance(value, (bytes, bytearray, memoryview)):
        return bytes(value).hex()
    return str(value)


def _csv_cell(value: Any) -> Any:
    if value is None:
        return ""
    if isinstance(value, (dt.datetime, dt.date, dt.time)):
        return value.isoformat()
    if isinstance(value, (bytes, bytearray, memoryview)):
        return bytes(value).hex()
    return value


def encode_csv(columns: List[ColumnInfo], chunks: Iterable[Chunk]) -> Iterator[bytes]:
    buffer = io.StringIO()
    writer = csv.writer(buffer)
    writer.writerow([c.name for c in columns])
    yield buffer.getvalue().encode("utf-8")
    for chunk in chunks:
        buffer.seek(0)
        buffer.truncate(0)
        writer.writerows([[_csv_cell(v) for v in row] for row in chunk.rows])
        yield buffer.getvalue().encode("utf-8")


def _record(names: List[str], row: List[Any]) -> Dict[str, Any]:
    return {names[i]: row[i] for i in range(len(names))}


def encode_json(columns: List[ColumnInfo], chunks: Iterable[Chunk]) -> Iterator[bytes]:
    names = [c.name for c in columns]
    first = True
    yield b"["
    for chunk in chunks:
        parts = []
        for row in chunk.rows:
            prefix = "" if first else ","
            first = False
            parts.append(prefix + json.dumps(_record(names, row), default=_json_default))
        if parts:
            yield "".join(parts).encode("utf-8")
    yield b"]"


def encode_ndjson(columns: List[ColumnInfo], chunks: Iterable[Chunk]) -> Iterator[bytes]:
    names = [c.name for c in columns]
    for chunk in chunks:
        lines = [json.dumps(_record(names, row), default=_json_default) + "\n" for row in chunk.rows]
        if lines:
            yield "".join(lines).encode("utf-8")


ENCODERS: Dict[str, Callable[[List[ColumnInfo], Iterable[Chunk]], Iterator[bytes]]] = {
    "csv": encode_csv,
    "json": encode_json,
    "ndjson": encode_ndjson,
}
