"""Serve a glob of HTML templates, recompiling them when the files change.

Every file matching the pattern becomes a Jinja2 template named after its
basename, so templates can ``{% include %}`` or ``{% extends %}`` each other
by file name. The whole set is recompiled when any file is newer than the
last compile; until a compile succeeds again every request gets a 500.

The handler does not check permissions: every template, including partials,
is reachable by name. That makes it easy to fetch a fragment of a page on its
own, but callers must guard the route themselves when that matters.
"""

from __future__ import annotations

import glob
import logging
import os
import posixpath
import threading
import time
from pathlib import Path
from typing import Any, Callable, Mapping

from jinja2 import DictLoader, Environment, Template, TemplateError
from starlette.concurrency import run_in_threadpool
from starlette.requests import Request
from starlette.responses import HTMLResponse, PlainTextResponse, Response

from tmplserve.core.args import ArgGetter
from tmplserve.core.args import get_args as default_get_args
from tmplserve.core.streams import render_scope

LOGGER = logging.getLogger(__name__)

INDEX_NAME = "index"

_INDEX = Environment(autoescape=True).from_string(
    """<!DOCTYPE HTML PUBLIC "-//IETF//DTD HTML 2.0//EN">
<html>
<head>
	<meta charset="utf-8">
	<title>Templates</title>
</head>
<body>
<ul>
{% for name in names %}<li><a href="{{ name }}">{{ name }}</a></li>
{% else %}<li>No templates found!</li>
{% endfor %}</ul>
</body>
"""
)


class TemplateCompileError(Exception):
    """The template files could not be turned into a template set."""


def last_modified(pattern: str) -> float:
    """Return the newest modification time among files matching *pattern*."""

    newest = 0.0
    for path in glob.glob(pattern):
        newest = max(newest, os.stat(path).st_mtime)
    return newest


def compile_templates(pattern: str, functions: Mapping[str, Callable[..., Any]]) -> dict[str, Template]:
    paths = sorted(path for path in glob.glob(pattern) if os.path.isfile(path))
    if not paths:
        raise TemplateCompileError(f"pattern matches no files: {pattern!r}")

    try:
        sources = {os.path.basename(path): Path(path).read_text(encoding="utf-8") for path in paths}
        environment = Environment(loader=DictLoader(sources), autoescape=True)
        environment.globals.update(functions)
        return {name: environment.get_template(name) for name in sources}
    except (OSError, UnicodeDecodeError, TemplateError) as exc:
        raise TemplateCompileError(str(exc)) from exc


def template_name(url_path: str) -> str:
    """Return the template named by the last component of *url_path*."""

    stripped = url_path.rstrip("/")
    if not stripped:
        return INDEX_NAME
    return posixpath.basename(stripped)


def template_context(args: Any) -> dict[str, Any]:
    """Expose mapping arguments as top-level names, and always as ``args``."""

    context: dict[str, Any] = {}
    if isinstance(args, Mapping):
        context.update((str(key), value) for key, value in args.items())
    context.setdefault("args", args)
    return context


class TemplateHandler:
    """Serves the templates named by the files matching a glob pattern.

    *get_args* turns a request into the template arguments; it defaults to
    `tmplserve.core.args.get_args`. Its error message is rendered in the 400
    response, so it must not leak sensitive state. *functions* become template
    globals, for instance the ``sql`` and ``group`` query helpers.
    """

    def __init__(
        self,
        pattern: str,
        get_args: ArgGetter | None = None,
        functions: Mapping[str, Callable[..., Any]] | None = None,
    ) -> None:
        self.pattern = pattern
        self.get_args: ArgGetter = get_args or default_get_args
        self.functions = dict(functions or {})
        self._lock = threading.Lock()
        self._last_parsed = 0.0
        self._templates: dict[str, Template] | None = None
        self._error: TemplateCompileError | None = None
        self.recompile_if_older_than(0.0)

    @property
    def error(self) -> TemplateCompileError | None:
        with self._lock:
            return self._error

    def names(self) -> list[str]:
        with self._lock:
            return sorted(self._templates or {})

    def last_modified(self) -> float:
        return last_modified(self.pattern)

    def recompile_if_older_than(
        self, timestamp: float
    ) -> tuple[dict[str, Template] | None, TemplateCompileError | None]:
        """Recompile unless the last compile happened after *timestamp*."""

        with self._lock:
            if self._last_parsed > timestamp:
                return self._templates, self._error
            self._last_parsed = time.time()
            try:
                self._templates = compile_templates(self.pattern, self.functions)
                self._error = None
            except TemplateCompileError as exc:
                self._templates = None
                self._error = exc
                LOGGER.error("Compiling templates %r: %s", self.pattern, exc)
            else:
                LOGGER.info("Compiled templates %r: %s", self.pattern, sorted(self._templates))
            return self._templates, self._error

    def lookup(self, name: str) -> Template | None:
        with self._lock:
            return _lookup(self._templates or {}, name)

    def render(self, name: str, template: Template, args: Any) -> tuple[int, str]:
        """Render *template*, returning the status code and the body.

        Every stream opened by the template is cancelled once rendering ends.
        An error before any output is a 500; after that the partial page is
        kept and the error is only logged.
        """

        chunks: list[str] = []
        written = 0
        with render_scope():
            try:
                for chunk in template.generate(template_context(args)):
                    chunks.append(chunk)
                    written += len(chunk)
            except Exception:
                LOGGER.exception("Executing template %r", name)
                if written == 0:
                    return 500, "Error rendering template."
        return 200, "".join(chunks)

    async def serve(self, request: Request) -> Response:
        """Serve the template named by the last component of the request path.

        ``/`` serves the ``index`` template, or a synthesized list of all
        template names when there is none.
        """

        try:
            modified = await run_in_threadpool(self.last_modified)
        except OSError as exc:
            LOGGER.error("Stat templates: %s", exc)
            return PlainTextResponse("Missing templates?", status_code=500)

        templates, error = await run_in_threadpool(self.recompile_if_older_than, modified)
        if error is not None or templates is None:
            return PlainTextResponse("Miscompiled templates.", status_code=500)

        name = template_name(request.url.path)
        template = _lookup(templates, name)
        if template is None:
            if name != INDEX_NAME:
                return PlainTextResponse("404 page not found", status_code=404)
            return HTMLResponse(_INDEX.render(names=sorted(templates)))

        try:
            args = await self.get_args(request)
        except Exception as exc:
            LOGGER.info("Rejected arguments for template %r: %s", name, exc)
            return PlainTextResponse(str(exc), status_code=400)

        status, body = await run_in_threadpool(self.render, name, template, args)
        if status != 200:
            return PlainTextResponse(body, status_code=status)
        return HTMLResponse(body)


def _lookup(templates: Mapping[str, Template], name: str) -> Template | None:
    template = templates.get(name)
    if template is None and not name.endswith(".html"):
        template = templates.get(f"{name}.html")
    return template
