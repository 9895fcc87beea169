"""Row and result-set types handed to templates."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from tmplserve.core.streams import Stream, relay

Row = tuple[Any, ...]


@dataclass(slots=True)
class ResultSet:
    """Column names paired with the lazily-produced rows of one query."""

    columns: list[str]
    records: Stream[Row]

    def named(self) -> Stream[dict[str, Any]]:
        """Return the records as mappings from column name to value."""

        columns = list(self.columns)
        return relay(self.records, lambda row: dict(zip(columns, row)), name="named")
