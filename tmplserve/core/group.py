"""Nested grouping of row streams for hierarchical rendering.

`group` splits a flat stream of rows into an outer stream of `Group` records,
each carrying the leading key columns and an inner stream with the remaining
columns of every consecutive row sharing that key. A template can then do::

    {% for g in group(1, sql("select grp, id, name from foo order by grp")) %}
      <h2>{{ g.key[0] }}</h2>
      {% for id, name in g.inner %}<li>{{ id }} {{ name }}</li>{% endfor %}
    {% endfor %}

Group boundaries are detected against the previous row only, so the input
must already be ordered by the key columns; a key that reappears later
starts another group.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import date, datetime, time
from decimal import Decimal
from typing import Any, Iterable

from tmplserve.core.streams import Channel, Stream, spawn, token_for

LOGGER = logging.getLogger(__name__)

KEY_TYPES: tuple[type, ...] = (
    type(None),
    bool,
    int,
    float,
    str,
    Decimal,
    date,
    time,
    datetime,
    uuid.UUID,
)


class UnsupportedKeyError(TypeError):
    """A key column holds a value that cannot be compared for grouping."""


@dataclass(frozen=True, slots=True)
class Group:
    key: tuple[Any, ...]
    inner: Stream[tuple[Any, ...]]


def check_key(key: tuple[Any, ...]) -> None:
    for value in key:
        if type(value) not in KEY_TYPES:
            raise UnsupportedKeyError(
                f"Cannot group on value of type {type(value).__name__}: {value!r}"
            )


def keys_equal(left: tuple[Any, ...] | None, right: tuple[Any, ...]) -> bool:
    """Compare keys column by column; values of different types never match."""

    if left is None or len(left) != len(right):
        return False
    for a, b in zip(left, right):
        if type(a) is not type(b) or a != b:
            return False
    return True


def group(width: int, rows: Iterable[tuple[Any, ...]]) -> Stream[Group]:
    """Group consecutive *rows* by their first *width* columns."""

    if width < 0:
        raise ValueError("Group width must be non-negative")

    token = token_for(rows)
    outer: Channel[Group] = Channel(token)

    def run() -> None:
        current: tuple[Any, ...] | None = None
        inner: Channel[tuple[Any, ...]] | None = None
        try:
            for row in rows:
                row = tuple(row)
                n = min(width, len(row))
                key, rest = row[:n], row[n:]
                if not keys_equal(current, key):
                    check_key(key)
                    if inner is not None:
                        inner.close()
                    current = key
                    inner = Channel(token)
                    if not outer.send(Group(key=key, inner=Stream(inner))):
                        break
                if not inner.send(rest):
                    break
        except UnsupportedKeyError as exc:
            LOGGER.error("Grouping stopped: %s", exc)
            token.cancel()
        except Exception:
            LOGGER.exception("Grouping worker failed")
            token.cancel()
        finally:
            if inner is not None:
                inner.close()
            outer.close()

    spawn(run, name="tmplserve-group")
    return Stream(outer)
