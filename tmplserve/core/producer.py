"""Background worker draining a database cursor into a row channel."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Sequence

from tmplserve.core.observability import QueryObservationSink
from tmplserve.core.streams import Channel

if TYPE_CHECKING:
    from tmplserve.core.database import Cursor
    from tmplserve.core.results import Row

LOGGER = logging.getLogger(__name__)


def normalize_value(value: Any) -> Any:
    """Decode binary column values to text; leave everything else alone."""

    if isinstance(value, (bytes, bytearray, memoryview)):
        return bytes(value).decode("utf-8", errors="replace")
    return value


@dataclass(slots=True)
class RowProducer:
    """Moves rows from *cursor* into *channel* until done, failed or cancelled.

    The channel's token carries the query deadline. It is fixed at query start
    and never renewed, so a consumer that keeps the worker waiting past it gets
    a truncated stream. The cursor and the channel are always closed on exit.
    """

    sql: str
    cursor: Cursor
    width: int
    channel: Channel[Row]
    debug: bool = False
    observer: QueryObservationSink | None = None

    def run(self) -> None:
        started = time.perf_counter()
        outcome = "completed"
        count = 0
        try:
            while True:
                try:
                    raw = self.cursor.fetchone()
                    row = None if raw is None else self._convert(raw)
                except Exception as exc:
                    LOGGER.error("Error on scan: %s Query: %r", exc, self.sql)
                    outcome = "scan_error"
                    break
                if row is None:
                    break
                if not self.channel.send(row):
                    if self.channel.token.expired:
                        LOGGER.warning("Query timed out: %r", self.sql)
                        outcome = "timeout"
                    else:
                        LOGGER.debug("Query cancelled: %r", self.sql)
                        outcome = "cancelled"
                    break
                count += 1
        finally:
            try:
                self.cursor.close()
            except Exception as exc:
                LOGGER.warning("Error on close: %s Query: %r", exc, self.sql)
            self._report(outcome, count, time.perf_counter() - started)
            self.channel.close()

    def _convert(self, raw: Sequence[Any]) -> Row:
        values = [normalize_value(value) for value in raw]
        if len(values) != self.width:
            raise ValueError(f"Row has {len(values)} values for {self.width} columns")
        return tuple(values)

    def _report(self, outcome: str, count: int, elapsed: float) -> None:
        if self.debug:
            LOGGER.info("%.6fs %r", elapsed, self.sql)
        if self.observer is None:
            return
        try:
            self.observer.log_event(
                "query_finished",
                {
                    "query": self.sql,
                    "outcome": outcome,
                    "rows": count,
                    "elapsed_ms": round(elapsed * 1000, 3),
                },
            )
        except Exception:
            LOGGER.exception("Failed to record query observation")
