"""JSONL-backed observability helpers for template queries.

Each `JSONLQueryLogger` writes to one file per process, named
``<UTC timestamp>-<name>.jsonl`` under its base directory, so restarts never
append to an older run's log.
"""

from __future__ import annotations

import json
import re
import threading
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Protocol


class QueryObservationSink(Protocol):
    """Records lifecycle events emitted by query workers."""

    def log_event(self, event: str, payload: dict[str, Any]) -> None:  # pragma: no cover - interface
        ...


def utc_now_iso() -> str:
    return datetime.now(UTC).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def log_file_name(name: str, started: datetime | None = None) -> str:
    """Return a sortable, filesystem-safe file name for the log stream *name*."""

    stamp = (started or datetime.now(UTC)).strftime("%Y%m%dT%H%M%S%f")[:-3]
    safe = re.sub(r"[^A-Za-z0-9_-]+", "-", name.strip()) or "queries"
    return f"{stamp}-{safe}.jsonl"


def _build_event(event: str, payload: dict[str, Any]) -> dict[str, Any]:
    enriched = {key: value for key, value in payload.items() if value is not None}
    enriched.setdefault("event", event)
    enriched.setdefault("timestamp", utc_now_iso())
    return enriched


@dataclass(slots=True)
class JSONLQueryLogger(QueryObservationSink):
    """Persists query events under a dedicated logs directory."""

    base_dir: Path
    name: str = "queries"
    _lock: threading.Lock = field(init=False, default_factory=threading.Lock, repr=False)
    _target: Path | None = field(init=False, default=None, repr=False)

    @property
    def path(self) -> Path:
        if self._target is None:
            directory = Path(self.base_dir).expanduser()
            directory.mkdir(parents=True, exist_ok=True)
            self._target = directory / log_file_name(self.name)
        return self._target

    def log_event(self, event: str, payload: dict[str, Any]) -> None:  # type: ignore[override]
        record = _build_event(event, payload)
        with self._lock:
            with self.path.open("a", encoding="utf-8") as handle:
                json.dump(record, handle, ensure_ascii=False, default=str)
                handle.write("\n")
