"""Unit tests for the Database transaction helper."""

from __future__ import annotations

import pytest

from task_escrow_service.core.exceptions import InvalidStateTransition
from task_escrow_service.services.database import Database, StaleStateError, retry_once_on_stale


@pytest.fixture
def db(db_path):
    database = Database(db_path)
    database.ensure_schema("CREATE TABLE IF NOT EXISTS items (name TEXT PRIMARY KEY);")
    yield database
    database.close()


def _names(db) -> list[str]:
    return [row["name"] for row in db.fetchall("SELECT name FROM items ORDER BY name")]


@pytest.mark.unit
def test_transaction_commits_and_rolls_back(db) -> None:
    with db.transaction() as conn:
        conn.execute("INSERT INTO items (name) VALUES ('a')")

    with pytest.raises(RuntimeError), db.transaction() as conn:
        conn.execute("INSERT INTO items (name) VALUES ('b')")
        raise RuntimeError("boom")

    assert _names(db) == ["a"]
    assert not db.in_transaction


@pytest.mark.unit
def test_failed_inner_block_rolls_back_only_itself(db) -> None:
    """Nested blocks are savepoints; the outer block still commits its own writes."""
    with db.transaction() as conn:
        conn.execute("INSERT INTO items (name) VALUES ('outer')")
        with pytest.raises(ValueError), db.transaction() as inner:
            inner.execute("INSERT INTO items (name) VALUES ('inner')")
            raise ValueError("inner failed")
        assert db.in_transaction

    assert _names(db) == ["outer"]


@pytest.mark.unit
def test_writes_are_visible_to_a_second_connection(db, db_path) -> None:
    other = Database(db_path)
    try:
        with db.transaction() as conn:
            conn.execute("INSERT INTO items (name) VALUES ('shared')")
        assert [row["name"] for row in other.fetchall("SELECT name FROM items")] == ["shared"]
    finally:
        other.close()


@pytest.mark.unit
def test_retry_once_on_stale_succeeds_on_second_attempt() -> None:
    attempts = []

    def operation() -> str:
        attempts.append(1)
        if len(attempts) == 1:
            raise StaleStateError("task-1")
        return "done"

    assert retry_once_on_stale(operation, "lost race") == "done"
    assert len(attempts) == 2


@pytest.mark.unit
def test_retry_once_on_stale_gives_up_after_two_losses() -> None:
    def operation() -> str:
        raise StaleStateError("task-1")

    with pytest.raises(InvalidStateTransition) as exc_info:
        retry_once_on_stale(operation, "Task changed concurrently")

    assert exc_info.value.message == "Task changed concurrently"
