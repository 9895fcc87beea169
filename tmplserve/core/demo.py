"""Demo server: seeds a throwaway SQLite database and serves templates over it."""

from __future__ import annotations

import argparse
import logging
from pathlib import Path

from sqlalchemy.engine import Engine

from tmplserve.core.database import QueryExecutor, TemplateFunctions
from tmplserve.core.templates import TemplateHandler
from tmplserve.core.webapp import _configure_logging, build_app
from tmplserve.integrations.sqlalchemy_database import create_database

LOGGER = logging.getLogger(__name__)

DEMO_ROWS = 100
DEMO_GROUPS = 10


def seed_database(engine: Engine, rows: int = DEMO_ROWS) -> None:
    """Create table ``foo`` and fill it with *rows* grouped records."""

    with engine.begin() as connection:
        connection.exec_driver_sql("drop table if exists foo")
        connection.exec_driver_sql(
            "create table foo (id integer not null primary key, grp integer, name text)"
        )
        connection.exec_driver_sql(
            "insert into foo(id, grp, name) values(?, ?, ?)",
            [(i, i % DEMO_GROUPS, f"foo-{i:03d}") for i in range(rows)],
        )
    LOGGER.info("Seeded %s rows into table foo", rows)


def main() -> None:
    parser = argparse.ArgumentParser(description="Run the template server demo")
    parser.add_argument("--host", default="127.0.0.1", help="Interface to bind the server")
    parser.add_argument("--port", type=int, default=6060, help="Port to serve http on")
    parser.add_argument(
        "--templates",
        default="./assets/templates/*.html",
        help="Glob pattern of the template webpages",
    )
    parser.add_argument("--db", default="./foo.db", help="Path of the throwaway SQLite database")
    args = parser.parse_args()

    _configure_logging(debug=True)

    db_path = Path(args.db)
    db_path.unlink(missing_ok=True)
    database = create_database(f"sqlite:///{db_path}")
    try:
        seed_database(database.engine)

        executor = QueryExecutor(database, debug=True)
        handler = TemplateHandler(args.templates, functions=TemplateFunctions(executor).as_globals())
        app = build_app(handler, title="Template Server Demo")

        try:
            import uvicorn
        except ImportError as exc:  # pragma: no cover - defensive
            raise SystemExit("uvicorn must be installed to run the demo") from exc

        LOGGER.info("Starting demo on %s:%s", args.host, args.port)
        uvicorn.run(app, host=args.host, port=args.port)
    finally:
        database.dispose()
        db_path.unlink(missing_ok=True)


if __name__ == "__main__":
    main()
