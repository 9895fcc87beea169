"""Lightweight, in-memory database for tests and prototypes.

This database does not parse SQL. Statements must be primed with canned
columns and rows first; preparing an unknown statement fails the same way a
syntax error would on a real database. Rows may be exception instances, which
are raised when fetched to simulate a row that cannot be decoded.
"""

from __future__ import annotations

import threading
from collections import Counter
from dataclasses import dataclass, field
from typing import Any, Sequence


@dataclass(slots=True)
class CannedResult:
    columns: list[str]
    rows: list[Sequence[Any] | Exception] = field(default_factory=list)
    error: Exception | None = None
    close_error: Exception | None = None


@dataclass(slots=True)
class InMemoryCursor:
    """Cursor over a canned result that records when it is closed."""

    result: CannedResult
    closed: threading.Event = field(default_factory=threading.Event)
    fetched: int = 0

    def columns(self) -> list[str]:
        return list(self.result.columns)

    def fetchone(self) -> Sequence[Any] | None:
        if self.closed.is_set():
            raise RuntimeError("Cursor is closed")
        if self.fetched >= len(self.result.rows):
            return None
        item = self.result.rows[self.fetched]
        self.fetched += 1
        if isinstance(item, Exception):
            raise item
        return item

    def close(self) -> None:
        self.closed.set()
        if self.result.close_error is not None:
            raise self.result.close_error


@dataclass(slots=True)
class InMemoryStatement:
    database: InMemoryDatabase
    sql: str

    def query(self, *args: Any, **kwargs: Any) -> InMemoryCursor:
        return self.database._open(self.sql, args, kwargs)


@dataclass(slots=True)
class InMemoryDatabase:
    """Mapping-based database that satisfies the `Database` protocol."""

    canned_results: dict[str, CannedResult] = field(default_factory=dict)
    prepare_calls: Counter[str] = field(default_factory=Counter)
    queries: list[tuple[str, tuple[Any, ...], dict[str, Any]]] = field(default_factory=list)
    cursors: list[InMemoryCursor] = field(default_factory=list)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    def prime(
        self,
        statement: str,
        columns: list[str],
        rows: list[Sequence[Any] | Exception] | None = None,
        *,
        error: Exception | None = None,
        close_error: Exception | None = None,
    ) -> None:
        """Register a canned response for future queries of *statement*."""

        self.canned_results[statement] = CannedResult(
            columns=list(columns),
            rows=list(rows or []),
            error=error,
            close_error=close_error,
        )

    def prepare(self, sql: str) -> InMemoryStatement:
        with self._lock:
            self.prepare_calls[sql] += 1
        if sql not in self.canned_results:
            raise LookupError(f"Unknown statement: {sql!r}")
        return InMemoryStatement(database=self, sql=sql)

    def _open(self, sql: str, args: tuple[Any, ...], kwargs: dict[str, Any]) -> InMemoryCursor:
        result = self.canned_results[sql]
        with self._lock:
            self.queries.append((sql, args, dict(kwargs)))
        if result.error is not None:
            raise result.error
        cursor = InMemoryCursor(result=result)
        with self._lock:
            self.cursors.append(cursor)
        return cursor
