"""Tests for the template handler, request arguments and gzip wrapping."""

from __future__ import annotations

import os
import time
from pathlib import Path
from typing import Any

import pytest

pytest.importorskip("fastapi")
from fastapi.testclient import TestClient

from tmplserve.core.args import media_type
from tmplserve.core.templates import TemplateHandler, template_context, template_name
from tmplserve.core.webapp import build_app


def _write(directory: Path, name: str, content: str, *, bump: bool = False) -> Path:
    target = directory / name
    target.write_text(content, encoding="utf-8")
    if bump:
        future = time.time() + 10
        os.utime(target, (future, future))
    return target


def _client(handler: TemplateHandler, **kwargs: Any) -> TestClient:
    return TestClient(build_app(handler, **kwargs))


@pytest.fixture()
def template_dir(tmp_path: Path) -> Path:
    directory = tmp_path / "templates"
    directory.mkdir()
    _write(directory, "hello.html", "Hello {{ name[0] if name else 'nobody' }}!")
    _write(directory, "echo.html", "{{ a }}|{{ b[0] }}|{{ path }}")
    return directory


def test_template_name_uses_last_path_component() -> None:
    assert template_name("/") == "index"
    assert template_name("") == "index"
    assert template_name("/a/b/hello") == "hello"
    assert template_name("/hello/") == "hello"


def test_template_context_exposes_mapping_and_args() -> None:
    context = template_context({"x": 1})

    assert context == {"x": 1, "args": {"x": 1}}
    assert template_context(["raw"]) == {"args": ["raw"]}


def test_media_type_defaults_to_octet_stream() -> None:
    assert media_type(None) == "application/octet-stream"
    assert media_type("Application/JSON; charset=utf-8") == "application/json"


def test_serves_template_with_query_arguments(template_dir: Path) -> None:
    handler = TemplateHandler(str(template_dir / "*.html"))

    with _client(handler) as client:
        by_stem = client.get("/hello", params={"name": "world"})
        by_file = client.get("/nested/path/hello.html")

    assert by_stem.status_code == 200
    assert by_stem.text == "Hello world!"
    assert by_stem.headers["content-type"] == "text/html; charset=utf-8"
    assert by_file.text == "Hello nobody!"


def test_output_is_autoescaped(template_dir: Path) -> None:
    handler = TemplateHandler(str(template_dir / "*.html"))

    with _client(handler) as client:
        response = client.get("/hello", params={"name": "<b>"})

    assert response.text == "Hello &lt;b&gt;!"


def test_unknown_template_is_not_found(template_dir: Path) -> None:
    handler = TemplateHandler(str(template_dir / "*.html"))

    with _client(handler) as client:
        response = client.get("/missing")

    assert response.status_code == 404


def test_index_is_synthesized_from_template_names(template_dir: Path) -> None:
    handler = TemplateHandler(str(template_dir / "*.html"))

    with _client(handler) as client:
        response = client.get("/")

    assert response.status_code == 200
    assert '<a href="echo.html">echo.html</a>' in response.text
    assert '<a href="hello.html">hello.html</a>' in response.text


def test_index_template_takes_precedence(template_dir: Path) -> None:
    _write(template_dir, "index.html", "Welcome")
    handler = TemplateHandler(str(template_dir / "*.html"))

    with _client(handler) as client:
        response = client.get("/")

    assert response.text == "Welcome"


def test_changed_files_are_recompiled(template_dir: Path) -> None:
    handler = TemplateHandler(str(template_dir / "*.html"))

    with _client(handler) as client:
        assert client.get("/hello").text == "Hello nobody!"
        _write(template_dir, "hello.html", "Goodbye", bump=True)
        assert client.get("/hello").text == "Goodbye"

    assert handler.names() == ["echo.html", "hello.html"]


def test_miscompiled_templates_return_500_until_fixed(template_dir: Path) -> None:
    _write(template_dir, "broken.html", "{% for x in %}")
    handler = TemplateHandler(str(template_dir / "*.html"))
    assert handler.error is not None

    with _client(handler) as client:
        failing = client.get("/hello")
        _write(template_dir, "broken.html", "fixed", bump=True)
        fixed = client.get("/broken")

    assert failing.status_code == 500
    assert failing.text == "Miscompiled templates."
    assert fixed.status_code == 200
    assert fixed.text == "fixed"


def test_pattern_without_matches_is_a_compile_error(tmp_path: Path) -> None:
    handler = TemplateHandler(str(tmp_path / "*.html"))

    with _client(handler) as client:
        response = client.get("/")

    assert response.status_code == 500
    assert "pattern matches no files" in str(handler.error)


def test_render_error_before_output_is_500(template_dir: Path) -> None:
    def fail() -> str:
        raise RuntimeError("boom")

    _write(template_dir, "early.html", "{{ fail() }}")
    _write(template_dir, "late.html", "partial {{ fail() }}")
    handler = TemplateHandler(str(template_dir / "*.html"), functions={"fail": fail})

    with _client(handler) as client:
        early = client.get("/early")
        late = client.get("/late")

    assert early.status_code == 500
    assert early.text == "Error rendering template."
    assert late.status_code == 200
    assert late.text == "partial "


def test_arguments_merge_json_form_and_path(template_dir: Path) -> None:
    handler = TemplateHandler(str(template_dir / "*.html"))

    with _client(handler) as client:
        response = client.post(
            "/echo",
            params={"b": "query"},
            json={"a": "json", "b": "json", "path": "json"},
        )

    assert response.status_code == 200
    assert response.text == "json|query|echo"


def test_form_body_values_are_lists(template_dir: Path) -> None:
    handler = TemplateHandler(str(template_dir / "*.html"))

    with _client(handler) as client:
        response = client.post("/hello", data={"name": "form"})

    assert response.text == "Hello form!"


def test_invalid_json_is_a_bad_request(template_dir: Path) -> None:
    handler = TemplateHandler(str(template_dir / "*.html"))

    with _client(handler) as client:
        malformed = client.post(
            "/hello", content=b"{not json", headers={"Content-Type": "application/json"}
        )
        not_object = client.put("/hello", json=[1, 2])
        empty = client.post("/hello", content=b"", headers={"Content-Type": "application/json"})
        null = client.post(
            "/hello",
            params={"name": "query"},
            content=b"null",
            headers={"Content-Type": "application/json"},
        )

    assert null.status_code == 200
    assert null.text == "Hello query!"
    assert malformed.status_code == 400
    assert "Invalid JSON body" in malformed.text
    assert not_object.status_code == 400
    assert empty.status_code == 200


def test_custom_argument_getter_errors_are_rendered(template_dir: Path) -> None:
    async def reject(request: Any) -> Any:
        raise ValueError("missing session")

    handler = TemplateHandler(str(template_dir / "*.html"), get_args=reject)

    with _client(handler) as client:
        response = client.get("/hello")

    assert response.status_code == 400
    assert response.text == "missing session"


def test_responses_are_gzipped_when_accepted(template_dir: Path) -> None:
    handler = TemplateHandler(str(template_dir / "*.html"))

    with _client(handler, gzip_minimum_size=0) as client:
        compressed = client.get("/hello", headers={"Accept-Encoding": "gzip"})
        plain = client.get("/hello", headers={"Accept-Encoding": "identity"})

    assert compressed.headers.get("content-encoding") == "gzip"
    assert compressed.text == "Hello nobody!"
    assert "content-encoding" not in plain.headers


def test_bundled_demo_templates_compile() -> None:
    pattern = Path(__file__).resolve().parents[2] / "assets" / "templates" / "*.html"

    handler = TemplateHandler(str(pattern))

    assert handler.error is None
    assert handler.names() == ["groups.html", "index.html", "layout.html", "named.html", "rows.html"]
