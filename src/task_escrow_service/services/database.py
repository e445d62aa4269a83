"""SQLite connection shared by the ledger and task stores."""

from __future__ import annotations

import contextlib
import sqlite3
from contextlib import contextmanager
from pathlib import Path
from threading import RLock
from typing import TYPE_CHECKING, Any, TypeVar

from task_escrow_service.core.exceptions import InvalidStateTransition

if TYPE_CHECKING:
    from collections.abc import Callable, Iterator

T = TypeVar("T")


class StaleStateError(Exception):
    """A version-guarded write found the row changed since it was read."""


class Database:
    """
    One SQLite connection plus a transaction helper.

    The outermost ``transaction()`` runs ``BEGIN IMMEDIATE``, which takes the
    database write lock, so compound mutations are serialized across every
    connection to the same file, not just within this process. Nested calls
    become savepoints: a failing inner block rolls back only its own writes
    and the enclosing transaction decides whether to commit.
    """

    def __init__(self, db_path: str, busy_timeout_ms: int = 5000) -> None:
        self._lock = RLock()
        self._depth = 0
        if db_path != ":memory:":
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self._db = sqlite3.connect(
            db_path,
            check_same_thread=False,
            isolation_level=None,
            timeout=busy_timeout_ms / 1000,
        )
        self._db.row_factory = sqlite3.Row
        self._db.execute("PRAGMA journal_mode=WAL")
        self._db.execute("PRAGMA foreign_keys=ON")
        self._db.execute(f"PRAGMA busy_timeout={int(busy_timeout_ms)}")

    def ensure_schema(self, script: str) -> None:
        """Create tables and indexes if they don't exist."""
        with self._lock:
            self._db.executescript(script)

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Run a block atomically; commits on success, rolls back on any exception."""
        with self._lock:
            if self._depth > 0:
                savepoint = f"sp_{self._depth}"
                self._db.execute(f"SAVEPOINT {savepoint}")
                self._depth += 1
                try:
                    yield self._db
                except BaseException:
                    self._db.execute(f"ROLLBACK TO {savepoint}")
                    self._db.execute(f"RELEASE {savepoint}")
                    raise
                else:
                    self._db.execute(f"RELEASE {savepoint}")
                finally:
                    self._depth -= 1
                return

            self._db.execute("BEGIN IMMEDIATE")
            self._depth = 1
            try:
                yield self._db
            except BaseException:
                with contextlib.suppress(sqlite3.Error):
                    self._db.execute("ROLLBACK")
                raise
            else:
                try:
                    self._db.execute("COMMIT")
                except sqlite3.Error:
                    with contextlib.suppress(sqlite3.Error):
                        self._db.execute("ROLLBACK")
                    raise
            finally:
                self._depth = 0

    @property
    def in_transaction(self) -> bool:
        return self._depth > 0

    def fetchone(self, sql: str, params: tuple[Any, ...] | list[Any] = ()) -> sqlite3.Row | None:
        with self._lock:
            row: sqlite3.Row | None = self._db.execute(sql, params).fetchone()
        return row

    def fetchall(self, sql: str, params: tuple[Any, ...] | list[Any] = ()) -> list[sqlite3.Row]:
        with self._lock:
            return self._db.execute(sql, params).fetchall()

    def close(self) -> None:
        """Close the database connection."""
        with self._lock:
            self._db.close()


def retry_once_on_stale(operation: Callable[[], T], message: str) -> T:
    """
    Run an optimistic read-then-write operation, retrying once with fresh
    state when its version guard loses a race.

    Raises:
        InvalidStateTransition: when the retry loses as well.
    """
    try:
        return operation()
    except StaleStateError:
        pass
    try:
        return operation()
    except StaleStateError as exc:
        raise InvalidStateTransition(message) from exc
