"""Default extraction of template arguments from an HTTP request."""

from __future__ import annotations

import json
import logging
from typing import Any, Awaitable, Callable

from starlette.requests import Request

LOGGER = logging.getLogger(__name__)

MAX_JSON_BODY = 64 << 10

ArgGetter = Callable[[Request], Awaitable[Any]]


class ArgumentError(ValueError):
    """The request could not be turned into template arguments."""


def media_type(header: str | None) -> str:
    value = (header or "").split(";", 1)[0].strip().lower()
    return value or "application/octet-stream"


async def read_limited(request: Request, limit: int = MAX_JSON_BODY) -> bytes:
    """Read at most *limit* bytes of the request body."""

    buffer = bytearray()
    async for chunk in request.stream():
        buffer.extend(chunk)
        if len(buffer) >= limit:
            break
    return bytes(buffer[:limit])


async def get_args(request: Request) -> dict[str, Any]:
    """Build the template argument mapping for *request*.

    Sources are merged in order, later ones overwriting earlier keys:

    - For POST and PUT requests with a JSON content type, the members of the
      JSON object in the body (at most 64 KiB is read; an empty body or
      ``null`` adds nothing).
    - Form values from the query string and, for url-encoded POST and PUT
      bodies, the submitted fields. These are always lists of strings, with
      body values ahead of query-string values.
    - The path parameters matched by the route.

    Error messages end up in the 400 response, so they only describe the
    request itself.
    """

    args: dict[str, Any] = {}
    content_type = media_type(request.headers.get("content-type"))
    has_body = request.method in ("POST", "PUT")

    if has_body and content_type == "application/json":
        body = await read_limited(request)
        if body.strip():
            try:
                payload = json.loads(body)
            except ValueError as exc:
                raise ArgumentError(f"Invalid JSON body: {exc}") from exc
            if payload is not None:
                if not isinstance(payload, dict):
                    raise ArgumentError("JSON body must be an object")
                args.update(payload)

    form: dict[str, list[str]] = {}
    if has_body and content_type == "application/x-www-form-urlencoded":
        try:
            submitted = await request.form()
        except Exception as exc:
            raise ArgumentError(f"Invalid form body: {exc}") from exc
        for key in submitted.keys():
            form[key] = [value for value in submitted.getlist(key) if isinstance(value, str)]
    for key in request.query_params.keys():
        form.setdefault(key, []).extend(request.query_params.getlist(key))
    args.update(form)

    args.update(request.path_params)
    return args
