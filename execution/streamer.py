"""Chunked, pull-driven delivery of a driver row stream.

Nothing is fetched from the driver until the consumer asks for the next
chunk, so a slow consumer holds the driver cursor where it is. The
cancellation token is checked at every chunk boundary.
"""

from __future__ import annotations

import json
import logging
from contextlib import contextmanager, nullcontext
from dataclasses import dataclass
from typing import Any, Callable, ContextManager, Iterator, List, Optional

from adapters.base import ColumnInfo, ResultSet, Row, RowStream
from execution.models import REASON_TIMEOUT, CancellationToken, ExecutionCancelled
from utils.errors import QueryTimeoutError

logger = logging.getLogger(__name__)

OUTCOME_EXHAUSTED = "exhausted"
OUTCOME_TRUNCATED = "truncated"
OUTCOME_CLOSED = "closed"
OUTCOME_CANCELLED = "cancelled"
OUTCOME_ERROR = "error"


@dataclass(frozen=True)
class Chunk:
    index: int
    rows: List[Row]

    def __len__(self) -> int:
        return len(self.rows)


def row_size_bytes(row: Row) -> int:
    return len(json.dumps(row, default=str, separators=(",", ":")).encode("utf-8"))


def cap_result_bytes(result: ResultSet, max_bytes: Optional[int]) -> ResultSet:
    """Trim a materialized preview to ``max_bytes``; trimming marks it truncated."""
    if not max_bytes:
        return result
    total = 0
    for idx, row in enumerate(result.rows):
        total += row_size_bytes(row)
        if total > max_bytes:
            return ResultSet(columns=result.columns, rows=result.rows[:idx], truncated=True)
    return result


class ResultStreamer:
    def __init__(
        self,
        stream: RowStream,
        chunk_size: int = 500,
        max_rows: Optional[int] = None,
        max_bytes: Optional[int] = None,
        token: Optional[CancellationToken] = None,
        pull_guard: Optional[Callable[[], ContextManager[Any]]] = None,
        on_finish: Optional[Callable[[str, Optional[BaseException]], None]] = None,
        before_close: Optional[Callable[[str], None]] = None,
    ) -> None:
        if chunk_size < 1:
            raise ValueError("chunk_size must be positive")
        self._stream = stream
        self._batches = iter(stream.batches)
        self.chunk_size = chunk_size
        self.max_rows = max_rows
        self.max_bytes = max_bytes
        self.token = token or CancellationToken()
        self._pull_guard = pull_guard or nullcontext
        self._on_finish = on_finish
        self._before_close = before_close
        self._buffer: List[Row] = []
        self._source_done = False
        self._finished = False
        self._iterating = False
        self.truncated = False
        self.rows_delivered = 0
        self.bytes_delivered = 0
        self.chunks_delivered = 0
        self.outcome: Optional[str] = None

    @property
    def columns(self) -> List[ColumnInfo]:
        return self._stream.columns

    def _pull(self) -> bool:
        """Fetch one driver batch into the buffer. False once the source is exhausted."""
        with self._pull_guard():
            self.token.raise_if_cancelled()
            try:
                batch = next(self._batches)
            except StopIteration:
                self._source_done = True
                return False
        self._buffer.extend(batch)
        return True

    def _fill(self, wanted: int) -> None:
        while len(self._buffer) < wanted and not self._source_done:
            self._pull()

    def _has_more(self) -> bool:
        if self._buffer:
            return True
        while not self._source_done:
            if self._pull() and self._buffer:
                return True
        return False

    def _take_chunk(self) -> List[Row]:
        wanted = self.chunk_size
        if self.max_rows is not None:
            wanted = min(wanted, self.max_rows - self.rows_delivered)
        self._fill(wanted)
        rows = self._buffer[:wanted]
        del self._buffer[:wanted]
        if self.max_bytes is not None:
            kept: List[Row] = []
            for row in rows:
                size = row_size_bytes(row)
                if self.bytes_delivered + size > self.max_bytes:
                    self.truncated = True
                    break
                self.bytes_delivered += size
                kept.append(row)
            rows = kept
        return rows

    def __iter__(self) -> Iterator[Chunk]:
        if self._iterating or self._finished:
            raise RuntimeError("ResultStreamer can only be iterated once")
        self._iterating = True
        return self._generate()

    def _generate(self) -> Iterator[Chunk]:
        outcome = OUTCOME_CLOSED
        error: Optional[BaseException] = None
        try:
            while True:
                self.token.raise_if_cancelled()
                if self.max_rows is not None and self.rows_delivered >= self.max_rows:
                    self.truncated = self._has_more()
                    break
                rows = self._take_chunk()
                if rows:
                    chunk = Chunk(index=self.chunks_delivered, rows=rows)
                    self.rows_delivered += len(rows)
                    self.chunks_delivered += 1
                    yield chunk
                if self.truncated:
                    break
                if not rows and not self._buffer and self._source_done:
                    break
            outcome = OUTCOME_TRUNCATED if self.truncated else OUTCOME_EXHAUSTED
        except ExecutionCancelled as exc:
            outcome = OUTCOME_CANCELLED
            error = exc
        except GeneratorExit:
            outcome = OUTCOME_CLOSED
            raise
        except Exception as exc:
            error = exc
            if not self.token.cancelled:
                outcome = OUTCOME_ERROR
                raise
            # The driver call was interrupted by our own cancel.
            outcome = OUTCOME_CANCELLED
        finally:
            self._finish(outcome, error)
        if outcome == OUTCOME_CANCELLED and self.token.reason == REASON_TIMEOUT:
            raise QueryTimeoutError("Query exceeded its deadline and was cancelled")

    def _finish(self, outcome: str, error: Optional[BaseException] = None) -> None:
        if self._finished:
            return
        self._finished = True
        self.outcome = outcome
        if self._before_close is not None:
            self._before_close(outcome)
        try:
            with self._pull_guard():
                self._stream.close()
        except Exception as exc:
            logger.debug("Ignoring error while closing row stream: %s", exc)
        if self._on_finish is not None:
            self._on_finish(outcome, error)

    def close(self) -> None:
        """Stop consuming. An unfinished stream counts as abandoned by the client."""
        self._finish(OUTCOME_CLOSED)

    def collect(self) -> ResultSet:
        rows: List[Row] = []
        for chunk in self:
            rows.extend(chunk.rows)
        return ResultSet(columns=self.columns, rows=rows, truncated=self.truncated)

    @contextmanager
    def closing(self):
        try:
            yield self
        finally:
            self.close()
