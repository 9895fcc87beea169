"""Tests for the JSONL query event sink."""

from __future__ import annotations

import json
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from tmplserve.core.observability import JSONLQueryLogger, log_file_name


def _load_events(path: Path) -> list[dict[str, Any]]:
    with path.open("r", encoding="utf-8") as handle:
        return [json.loads(line) for line in handle]


def test_jsonl_query_logger_appends_events(tmp_path: Path) -> None:
    logger = JSONLQueryLogger(base_dir=tmp_path)

    logger.log_event("query_finished", {"query": "select 1", "rows": 1, "outcome": "completed"})
    logger.log_event("query_finished", {"query": "select 2", "rows": 0, "error": None})

    files = sorted(tmp_path.glob("*.jsonl"))
    assert files == [logger.path]
    assert files[0].name.endswith("-queries.jsonl")
    events = _load_events(files[0])
    assert [event["query"] for event in events] == ["select 1", "select 2"]
    assert events[0]["event"] == "query_finished"
    assert "timestamp" in events[0]
    assert "error" not in events[1]


def test_non_json_values_are_stringified(tmp_path: Path) -> None:
    logger = JSONLQueryLogger(base_dir=tmp_path / "nested", name="odd values")

    logger.log_event("query_finished", {"elapsed": Path("x")})

    (target,) = (tmp_path / "nested").glob("*-odd-values.jsonl")
    assert _load_events(target)[0]["elapsed"] == "x"


def test_log_file_name_is_sortable() -> None:
    started = datetime(2024, 1, 2, 3, 4, 5, 678000, tzinfo=UTC)

    assert log_file_name("queries", started) == "20240102T030405678-queries.jsonl"
    assert log_file_name("  ", started) == "20240102T030405678-queries.jsonl"
