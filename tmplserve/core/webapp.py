"""FastAPI application serving database-backed HTML templates."""

from __future__ import annotations

import argparse
import logging
from pathlib import Path
from typing import Any, Callable, Mapping

from fastapi import FastAPI, Request
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.responses import Response

from tmplserve.core.config import Settings, load_settings
from tmplserve.core.database import Database, QueryExecutor, TemplateFunctions
from tmplserve.core.observability import JSONLQueryLogger, QueryObservationSink
from tmplserve.core.templates import TemplateHandler
from tmplserve.integrations.in_memory_database import InMemoryDatabase
from tmplserve.integrations.sqlalchemy_database import create_database


LOGGER = logging.getLogger(__name__)

TEMPLATE_METHODS = ["GET", "POST", "PUT"]


def build_app(
    handler: TemplateHandler,
    *,
    gzip: bool = True,
    gzip_minimum_size: int = 500,
    title: str = "Template Server",
) -> FastAPI:
    """Wrap *handler* in an application, optionally gzipping responses."""

    app = FastAPI(title=title, version="0.1.0")
    app.state.template_handler = handler
    if gzip:
        app.add_middleware(GZipMiddleware, minimum_size=gzip_minimum_size)

    @app.get("/api/health")
    def healthcheck() -> dict[str, str]:  # pragma: no cover - trivial
        return {"status": "ok"}

    @app.api_route("/{path:path}", methods=TEMPLATE_METHODS, include_in_schema=False)
    async def serve_template(request: Request) -> Response:
        LOGGER.debug("%s %s", request.method, request.url.path)
        return await handler.serve(request)

    return app


def build_database(settings: Settings) -> Database:
    if settings.database is None:
        LOGGER.warning("No database configured; template queries will fail to prepare")
        return InMemoryDatabase()
    return create_database(settings.database.resolve_url())


def build_executor(settings: Settings, database: Database) -> QueryExecutor:
    observer: QueryObservationSink | None = None
    if settings.paths is not None and settings.paths.query_logs_dir:
        observer = JSONLQueryLogger(base_dir=Path(settings.paths.query_logs_dir).expanduser())

    db_settings = settings.database
    return QueryExecutor(
        database,
        debug=bool(db_settings and db_settings.debug),
        timeout=db_settings.query_timeout_s if db_settings else 60.0,
        cache_size=db_settings.statement_cache_size if db_settings else None,
        observer=observer,
    )


def create_app(
    config_path: str = "configs/dev.yaml",
    *,
    debug: bool = False,
    functions: Mapping[str, Callable[..., Any]] | None = None,
    database: Database | None = None,
) -> FastAPI:
    LOGGER.info("Initialising template server with config '%s'", config_path)
    settings = load_settings(config_path)
    if debug and settings.database is not None:
        settings.database.debug = True

    executor = build_executor(settings, database if database is not None else build_database(settings))
    template_functions = TemplateFunctions(executor).as_globals()
    template_functions.update(functions or {})
    handler = TemplateHandler(settings.templates.pattern, functions=template_functions)

    app = build_app(
        handler,
        gzip=settings.server.gzip,
        gzip_minimum_size=settings.server.gzip_minimum_size,
    )
    app.state.settings = settings
    app.state.executor = executor
    return app


def _configure_logging(debug: bool) -> None:
    root_logger = logging.getLogger()
    if root_logger.handlers:
        if debug:
            root_logger.setLevel(logging.DEBUG)
        return
    logging.basicConfig(
        level=logging.DEBUG if debug else logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s - %(message)s",
    )


def main() -> None:
    parser = argparse.ArgumentParser(description="Serve HTML templates backed by SQL queries")
    parser.add_argument("--config", default="configs/dev.yaml", help="Path to configuration file")
    parser.add_argument("--host", default=None, help="Interface to bind the server")
    parser.add_argument("--port", type=int, default=None, help="Port to bind the server")
    parser.add_argument(
        "--debug",
        action="store_true",
        help="Log per-query timings and debug messages",
    )
    args = parser.parse_args()

    _configure_logging(debug=args.debug)
    app = create_app(config_path=args.config, debug=args.debug)
    settings: Settings = app.state.settings
    host = args.host or settings.server.host
    port = args.port or settings.server.port

    try:
        import uvicorn
    except ImportError as exc:  # pragma: no cover - defensive
        raise SystemExit("uvicorn must be installed to run the template server") from exc

    LOGGER.info("Starting uvicorn on %s:%s (debug=%s)", host, port, args.debug)
    uvicorn.run(app, host=host, port=port)


if __name__ == "__main__":
    main()
