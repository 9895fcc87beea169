"""SQLAlchemy-backed implementation of the template `Database` protocol.

Calls without keyword arguments send the SQL text to the DB-API driver
unchanged, with positional arguments in the driver's own paramstyle (``?``
for SQLite, ``%s`` for psycopg). Only keyword arguments go through a
`text()` clause, which binds its ``:name`` placeholders; a colon inside a
string literal is therefore left alone unless names are passed.

Each query checks out its own pooled connection, which is returned to the
pool when the cursor is closed by the row producer.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

from sqlalchemy import create_engine, text
from sqlalchemy.engine import Connection, CursorResult, Engine, make_url
from sqlalchemy.pool import StaticPool
from sqlalchemy.sql.elements import TextClause

LOGGER = logging.getLogger(__name__)


@dataclass(slots=True)
class SQLAlchemyCursor:
    """Open query result bound to the connection that produced it."""

    connection: Connection
    result: CursorResult[Any]
    _columns: list[str] = field(init=False, default_factory=list)

    def __post_init__(self) -> None:
        if self.result.returns_rows:
            self._columns = [str(name) for name in self.result.keys()]

    def columns(self) -> list[str]:
        return list(self._columns)

    def fetchone(self) -> tuple[Any, ...] | None:
        if not self.result.returns_rows:
            return None
        row = self.result.fetchone()
        return None if row is None else tuple(row)

    def close(self) -> None:
        try:
            self.result.close()
        finally:
            self.connection.close()


@dataclass(slots=True)
class SQLAlchemyStatement:
    """Prepared handle for a single SQL text."""

    engine: Engine
    sql: str
    clause: TextClause

    def query(self, *args: Any, **kwargs: Any) -> SQLAlchemyCursor:
        if args and kwargs:
            raise TypeError("Pass query arguments either positionally or by name, not both")

        connection = self.engine.connect()
        try:
            if kwargs:
                result = connection.execute(self.clause, kwargs)
            else:
                result = connection.exec_driver_sql(self.sql, tuple(args))
        except Exception:
            connection.close()
            raise
        return SQLAlchemyCursor(connection=connection, result=result)


@dataclass(slots=True)
class SQLAlchemyDatabase:
    """Adapts a SQLAlchemy `Engine` to the template `Database` protocol."""

    engine: Engine

    def prepare(self, sql: str) -> SQLAlchemyStatement:
        return SQLAlchemyStatement(engine=self.engine, sql=sql, clause=text(sql))

    def dispose(self) -> None:
        self.engine.dispose()


def create_database(url: str, **engine_kwargs: Any) -> SQLAlchemyDatabase:
    """Create an engine for *url* suitable for threaded row production.

    Rows are fetched on worker threads, so SQLite connections are opened with
    ``check_same_thread`` disabled, and in-memory SQLite databases share one
    connection so every thread sees the same data.
    """

    parsed = make_url(url)
    options = dict(engine_kwargs)
    if parsed.get_backend_name() == "sqlite":
        connect_args = dict(options.pop("connect_args", {}))
        connect_args.setdefault("check_same_thread", False)
        options["connect_args"] = connect_args
        if parsed.database in (None, "", ":memory:"):
            options.setdefault("poolclass", StaticPool)

    LOGGER.info("Connecting to database %s", parsed.render_as_string(hide_password=True))
    return SQLAlchemyDatabase(engine=create_engine(parsed, **options))
