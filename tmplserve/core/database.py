"""Statement caching and query execution for template functions.

`QueryExecutor` prepares a statement through `StatementCache`, runs it, and
hands back the column names together with a lazily-filled row `Stream`. The
rows are produced by a `RowProducer` worker (see `tmplserve.core.producer`),
so a template can start rendering before the whole result set is fetched.

Only failures discovered before the stream is returned are raised; anything
that goes wrong while rows are being produced is logged and simply ends the
stream early, so a row-level failure never crashes a page mid-render.
"""

from __future__ import annotations

import logging
import threading
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Callable, Protocol, Sequence

from tmplserve.core.group import group
from tmplserve.core.observability import QueryObservationSink
from tmplserve.core.producer import RowProducer
from tmplserve.core.results import ResultSet, Row
from tmplserve.core.streams import Channel, Stream, new_token, spawn

LOGGER = logging.getLogger(__name__)

DEFAULT_QUERY_TIMEOUT_S = 60.0


class Cursor(Protocol):
    """Open result of a single statement execution."""

    def columns(self) -> list[str]:  # pragma: no cover - interface
        """Return the result column names in order."""

    def fetchone(self) -> Sequence[Any] | None:  # pragma: no cover - interface
        """Return the next raw row, or None once exhausted."""

    def close(self) -> None:  # pragma: no cover - interface
        """Release the underlying database resources."""


class Statement(Protocol):
    """Reusable compiled statement handle."""

    def query(self, *args: Any, **kwargs: Any) -> Cursor:  # pragma: no cover - interface
        """Execute the statement with bound arguments."""


class Database(Protocol):
    """Abstracts the relational database used by template queries."""

    def prepare(self, sql: str) -> Statement:  # pragma: no cover - interface
        """Compile *sql* into a reusable statement."""


class QueryError(Exception):
    """Base class for failures surfaced by `QueryExecutor.execute`."""

    def __init__(self, sql: str, message: str) -> None:
        super().__init__(f"{message}: {sql!r}")
        self.sql = sql


class PreparationError(QueryError):
    """The SQL text could not be compiled against the database."""

    def __init__(self, sql: str) -> None:
        super().__init__(sql, "Failed to prepare statement")


class ExecutionError(QueryError):
    """The statement was prepared but the initial query call failed."""

    def __init__(self, sql: str) -> None:
        super().__init__(sql, "Failed to execute statement")


class _CacheEntry:
    __slots__ = ("lock", "statement")

    def __init__(self) -> None:
        self.lock = threading.Lock()
        self.statement: Statement | None = None


class StatementCache:
    """Thread-safe map from SQL text to prepared statements.

    The map itself is guarded by a short-lived lock, while each entry carries
    its own lock for the prepare call: concurrent requests for the same text
    prepare once, and a slow prepare never blocks other statements. Failed
    prepares are not cached. With *max_size* set, least recently used entries
    are evicted; by default the cache lives as long as its executor.
    """

    def __init__(self, database: Database, max_size: int | None = None) -> None:
        if max_size is not None and max_size < 1:
            raise ValueError("max_size must be positive when provided")
        self._database = database
        self._max_size = max_size
        self._entries: OrderedDict[str, _CacheEntry] = OrderedDict()
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return sum(1 for entry in self._entries.values() if entry.statement is not None)

    def __contains__(self, sql: str) -> bool:
        with self._lock:
            entry = self._entries.get(sql)
            return entry is not None and entry.statement is not None

    def prepare(self, sql: str) -> Statement:
        with self._lock:
            entry = self._entries.get(sql)
            if entry is None:
                entry = _CacheEntry()
                self._entries[sql] = entry
            else:
                self._entries.move_to_end(sql)

        with entry.lock:
            if entry.statement is None:
                try:
                    entry.statement = self._database.prepare(sql)
                except Exception:
                    self._forget(sql, entry)
                    raise
                LOGGER.debug("Prepared statement %r", sql)
                self._evict()
            return entry.statement

    def _forget(self, sql: str, entry: _CacheEntry) -> None:
        with self._lock:
            if self._entries.get(sql) is entry and entry.statement is None:
                del self._entries[sql]

    def _evict(self) -> None:
        if self._max_size is None:
            return
        with self._lock:
            while len(self._entries) > self._max_size:
                evicted, _ = self._entries.popitem(last=False)
                LOGGER.debug("Evicted prepared statement %r", evicted)


class QueryExecutor:
    """Runs template queries and streams their rows back lazily."""

    def __init__(
        self,
        database: Database,
        *,
        debug: bool = False,
        timeout: float | None = DEFAULT_QUERY_TIMEOUT_S,
        cache_size: int | None = None,
        observer: QueryObservationSink | None = None,
    ) -> None:
        self.database = database
        self.debug = debug
        self.timeout = timeout
        self.observer = observer
        self.statements = StatementCache(database, max_size=cache_size)

    def execute(self, sql: str, *args: Any, **kwargs: Any) -> tuple[list[str], Stream[Row]]:
        """Run *sql* and return its column names and a lazy row stream."""

        try:
            statement = self.statements.prepare(sql)
        except Exception as exc:
            raise PreparationError(sql) from exc

        try:
            cursor = statement.query(*args, **kwargs)
        except Exception as exc:
            raise ExecutionError(sql) from exc

        try:
            columns = list(cursor.columns())
        except Exception as exc:
            _close_quietly(cursor, sql)
            raise ExecutionError(sql) from exc

        channel: Channel[Row] = Channel(new_token(self.timeout))
        producer = RowProducer(
            sql=sql,
            cursor=cursor,
            width=len(columns),
            channel=channel,
            debug=self.debug,
            observer=self.observer,
        )
        spawn(producer.run, name="tmplserve-rows")
        return columns, Stream(channel)

    def rows(self, sql: str, *args: Any, **kwargs: Any) -> Stream[Row]:
        """Like `execute`, discarding the column names."""

        _, stream = self.execute(sql, *args, **kwargs)
        return stream

    def result_set(self, sql: str, *args: Any, **kwargs: Any) -> ResultSet:
        """Like `execute`, bundling columns and rows into a `ResultSet`."""

        columns, stream = self.execute(sql, *args, **kwargs)
        return ResultSet(columns=columns, records=stream)


def _close_quietly(cursor: Cursor, sql: str) -> None:
    try:
        cursor.close()
    except Exception as exc:
        LOGGER.warning("Error on close: %s Query: %r", exc, sql)


def sql_function(
    database: Database,
    *,
    debug: bool = False,
    timeout: float | None = DEFAULT_QUERY_TIMEOUT_S,
) -> Callable[..., Stream[Row]]:
    """Return a template function issuing queries on *database* as row tuples."""

    return QueryExecutor(database, debug=debug, timeout=timeout).rows


def sql_result_function(
    database: Database,
    *,
    debug: bool = False,
    timeout: float | None = DEFAULT_QUERY_TIMEOUT_S,
) -> Callable[..., ResultSet]:
    """Return a template function issuing queries on *database* as `ResultSet`s."""

    return QueryExecutor(database, debug=debug, timeout=timeout).result_set


@dataclass(slots=True)
class TemplateFunctions:
    """The query helpers exposed to templates for a single executor."""

    executor: QueryExecutor

    def as_globals(self) -> dict[str, Callable[..., Any]]:
        return {
            "sql": self.executor.rows,
            "sqlr": self.executor.result_set,
            "group": group,
        }
