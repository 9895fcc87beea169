"""Tests for the demo database seeding."""

from __future__ import annotations

from pathlib import Path

import pytest

pytest.importorskip("sqlalchemy")

from tmplserve.core.database import QueryExecutor
from tmplserve.core.demo import DEMO_ROWS, seed_database
from tmplserve.core.group import group
from tmplserve.integrations.sqlalchemy_database import create_database


def test_seed_database_creates_grouped_rows(tmp_path: Path) -> None:
    database = create_database(f"sqlite:///{tmp_path / 'demo.db'}")
    try:
        seed_database(database.engine)
        seed_database(database.engine)
        executor = QueryExecutor(database)

        rows = list(executor.rows("select id, grp, name from foo order by id"))
        groups = [
            (item.key, len(list(item.inner)))
            for item in group(1, executor.rows("select grp, id from foo order by grp, id"))
        ]
    finally:
        database.dispose()

    assert len(rows) == DEMO_ROWS
    assert rows[42] == (42, 2, "foo-042")
    assert groups == [((grp,), 10) for grp in range(10)]
