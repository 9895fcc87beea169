"""Utilities for loading server settings from YAML configuration files."""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import yaml

DEFAULT_TEMPLATE_PATTERN = "./*.html"


@dataclass(slots=True)
class ServerSettings:
    host: str = "127.0.0.1"
    port: int = 6060
    gzip: bool = True
    gzip_minimum_size: int = 500


@dataclass(slots=True)
class TemplateSettings:
    pattern: str = DEFAULT_TEMPLATE_PATTERN


@dataclass(slots=True)
class DatabaseSettings:
    url: str | None = None
    url_env: str | None = None
    debug: bool = False
    query_timeout_s: float | None = 60.0
    statement_cache_size: int | None = None

    def resolve_url(self) -> str:
        if self.url_env:
            value = os.getenv(self.url_env)
            if value:
                return value
        if self.url:
            return self.url
        if self.url_env:
            raise OSError(f"Environment variable '{self.url_env}' is required for the database")
        raise ValueError("Database settings need either 'url' or 'url_env'")


@dataclass(slots=True)
class PathsSettings:
    query_logs_dir: str | None = None


@dataclass(slots=True)
class Settings:
    server: ServerSettings
    templates: TemplateSettings
    database: DatabaseSettings | None
    paths: PathsSettings | None


def _load_yaml(path: Path) -> dict[str, Any]:
    with path.open("r", encoding="utf-8") as handle:
        return yaml.safe_load(handle) or {}


def _optional_int(value: Any) -> int | None:
    return None if value is None else int(value)


def _optional_float(value: Any) -> float | None:
    return None if value is None else float(value)


def load_settings(path: str | Path) -> Settings:
    """Read configuration from *path* and return structured settings."""

    config_path = Path(path)
    raw = _load_yaml(config_path)

    server_raw = raw.get("server") or {}
    server = ServerSettings(
        host=str(server_raw.get("host", "127.0.0.1")),
        port=int(server_raw.get("port", 6060)),
        gzip=bool(server_raw.get("gzip", True)),
        gzip_minimum_size=int(server_raw.get("gzip_minimum_size", 500)),
    )

    templates_raw = raw.get("templates") or {}
    pattern = os.path.expanduser(str(templates_raw.get("pattern", DEFAULT_TEMPLATE_PATTERN)))
    templates = TemplateSettings(pattern=pattern)

    database_raw = raw.get("database")
    database = None
    if database_raw:
        url = database_raw.get("url")
        url_env = database_raw.get("url_env")
        database = DatabaseSettings(
            url=str(url) if url else None,
            url_env=str(url_env) if url_env else None,
            debug=bool(database_raw.get("debug", False)),
            query_timeout_s=_optional_float(database_raw.get("query_timeout_s", 60.0)),
            statement_cache_size=_optional_int(database_raw.get("statement_cache_size")),
        )

    paths_raw: dict[str, Any] | None = raw.get("paths")
    paths = None
    if paths_raw:
        query_logs_dir = paths_raw.get("query_logs_dir")
        paths = PathsSettings(
            query_logs_dir=str(query_logs_dir) if query_logs_dir else None,
        )

    return Settings(
        server=server,
        templates=templates,
        database=database,
        paths=paths,
    )
