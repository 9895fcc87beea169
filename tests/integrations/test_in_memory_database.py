"""Unit tests for the in-memory template database."""

from __future__ import annotations

import pytest

from tmplserve.integrations.in_memory_database import InMemoryDatabase


def test_query_returns_canned_rows() -> None:
    database = InMemoryDatabase()
    database.prime("SELECT * FROM accounts WHERE id = ?", ["id", "name"], [("123", "Acme")])

    cursor = database.prepare("SELECT * FROM accounts WHERE id = ?").query("123")

    assert cursor.columns() == ["id", "name"]
    assert cursor.fetchone() == ("123", "Acme")
    assert cursor.fetchone() is None
    assert database.queries == [("SELECT * FROM accounts WHERE id = ?", ("123",), {})]


def test_unknown_statement_fails_to_prepare() -> None:
    database = InMemoryDatabase()

    with pytest.raises(LookupError):
        database.prepare("SELECT * FROM opportunities")

    assert database.prepare_calls["SELECT * FROM opportunities"] == 1


def test_closed_cursor_refuses_to_fetch() -> None:
    database = InMemoryDatabase()
    database.prime("SELECT * FROM leads", ["id"], [("L1",)])
    cursor = database.prepare("SELECT * FROM leads").query()

    cursor.close()

    assert cursor.closed.is_set()
    with pytest.raises(RuntimeError):
        cursor.fetchone()


def test_primed_query_error_is_raised() -> None:
    database = InMemoryDatabase()
    database.prime("SELECT 1", ["x"], error=ConnectionError("down"))
    statement = database.prepare("SELECT 1")

    with pytest.raises(ConnectionError):
        statement.query()

    assert database.cursors == []
