"""SQLite-backed storage for tasks and executions."""

from __future__ import annotations

from decimal import Decimal
from typing import TYPE_CHECKING, Any

from task_escrow_service.models import (
    CancellationRecord,
    Execution,
    ExecutionStatus,
    Task,
    TaskStatus,
    TaskType,
    UserLevel,
    VerificationMode,
    from_minor,
    to_minor,
)

if TYPE_CHECKING:
    import sqlite3

    from task_escrow_service.services.database import Database

_SCHEMA = """
CREATE TABLE IF NOT EXISTS tasks (
    task_id TEXT PRIMARY KEY,
    creator_id TEXT NOT NULL,
    type TEXT NOT NULL,
    title TEXT NOT NULL,
    description TEXT NOT NULL,
    target TEXT,
    reward INTEGER NOT NULL CHECK (reward > 0),
    target_count INTEGER NOT NULL CHECK (target_count > 0),
    completed_count INTEGER NOT NULL DEFAULT 0
        CHECK (completed_count >= 0 AND completed_count <= target_count),
    status TEXT NOT NULL DEFAULT 'active',
    min_executor_level TEXT NOT NULL,
    verification_mode TEXT NOT NULL,
    auto_approve_hours INTEGER NOT NULL,
    expires_at TEXT,
    escrowed_amount INTEGER NOT NULL CHECK (escrowed_amount >= 0),
    commission_rate TEXT NOT NULL,
    is_boosted INTEGER NOT NULL DEFAULT 0,
    priority INTEGER NOT NULL DEFAULT 0,
    version INTEGER NOT NULL DEFAULT 1,
    created_at TEXT NOT NULL,
    completed_at TEXT,
    expired_at TEXT,
    cancellation_reason TEXT,
    refund_amount INTEGER,
    forfeited_amount INTEGER,
    cancelled_at TEXT
);

CREATE INDEX IF NOT EXISTS ix_tasks_creator_created ON tasks(creator_id, created_at);

CREATE INDEX IF NOT EXISTS ix_tasks_feed
    ON tasks(status, is_boosted DESC, priority DESC, created_at DESC, task_id DESC);

CREATE INDEX IF NOT EXISTS ix_tasks_expiry ON tasks(status, expires_at);

CREATE TABLE IF NOT EXISTS executions (
    execution_id TEXT PRIMARY KEY,
    task_id TEXT NOT NULL REFERENCES tasks(task_id),
    executor_id TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'pending',
    reward_amount_snapshot INTEGER NOT NULL,
    executor_level_snapshot TEXT NOT NULL,
    final_reward INTEGER,
    submitted_at TEXT NOT NULL,
    verified_at TEXT,
    verifier_id TEXT,
    proof_ref TEXT,
    rejection_reason TEXT,
    appeal_deadline TEXT,
    appeal_count INTEGER NOT NULL DEFAULT 0 CHECK (appeal_count <= 1),
    appeal_text TEXT,
    auto_approve_at TEXT,
    claimed_by TEXT,
    claimed_at TEXT
);

CREATE UNIQUE INDEX IF NOT EXISTS ux_executions_open_per_executor
    ON executions(task_id, executor_id)
    WHERE status != 'rejected';

CREATE INDEX IF NOT EXISTS ix_executions_due
    ON executions(auto_approve_at)
    WHERE status = 'pending';

CREATE INDEX IF NOT EXISTS ix_executions_task_status ON executions(task_id, status);
"""

_TASK_COLUMNS: tuple[str, ...] = (
    "task_id",
    "creator_id",
    "type",
    "title",
    "description",
    "target",
    "reward",
    "target_count",
    "completed_count",
    "status",
    "min_executor_level",
    "verification_mode",
    "auto_approve_hours",
    "expires_at",
    "escrowed_amount",
    "commission_rate",
    "is_boosted",
    "priority",
    "version",
    "created_at",
    "completed_at",
    "expired_at",
    "cancellation_reason",
    "refund_amount",
    "forfeited_amount",
    "cancelled_at",
)
_TASK_COLUMNS_SQL = ", ".join(_TASK_COLUMNS)
_TASK_SELECT_SQL = f"SELECT {_TASK_COLUMNS_SQL} FROM tasks"  # nosec B608

_EXECUTION_COLUMNS: tuple[str, ...] = (
    "execution_id",
    "task_id",
    "executor_id",
    "status",
    "reward_amount_snapshot",
    "executor_level_snapshot",
    "final_reward",
    "submitted_at",
    "verified_at",
    "verifier_id",
    "proof_ref",
    "rejection_reason",
    "appeal_deadline",
    "appeal_count",
    "appeal_text",
    "auto_approve_at",
    "claimed_by",
    "claimed_at",
)
_EXECUTION_COLUMNS_SQL = ", ".join(_EXECUTION_COLUMNS)
_EXECUTION_SELECT_SQL = f"SELECT {_EXECUTION_COLUMNS_SQL} FROM executions"  # nosec B608

# Columns callers may set through the generic update helpers
_TASK_MUTABLE = frozenset(
    {
        "status",
        "completed_at",
        "expired_at",
        "escrowed_amount",
        "cancellation_reason",
        "refund_amount",
        "forfeited_amount",
        "cancelled_at",
    }
)
_EXECUTION_MUTABLE = frozenset(
    {
        "status",
        "final_reward",
        "verified_at",
        "verifier_id",
        "rejection_reason",
        "appeal_deadline",
        "appeal_count",
        "appeal_text",
        "auto_approve_at",
        "claimed_by",
        "claimed_at",
    }
)


def row_to_task(row: sqlite3.Row) -> Task:
    cancellation = None
    if row["cancelled_at"] is not None:
        cancellation = CancellationRecord(
            reason=row["cancellation_reason"],
            refund_amount=from_minor(row["refund_amount"]),
            forfeited_amount=from_minor(row["forfeited_amount"]),
            cancelled_at=row["cancelled_at"],
        )
    return Task(
        task_id=row["task_id"],
        creator_id=row["creator_id"],
        type=TaskType(row["type"]),
        title=row["title"],
        description=row["description"],
        target=row["target"],
        reward=from_minor(row["reward"]),
        target_count=row["target_count"],
        completed_count=row["completed_count"],
        status=TaskStatus(row["status"]),
        min_executor_level=UserLevel(row["min_executor_level"]),
        verification_mode=VerificationMode(row["verification_mode"]),
        auto_approve_hours=row["auto_approve_hours"],
        expires_at=row["expires_at"],
        escrowed_amount=from_minor(row["escrowed_amount"]),
        commission_rate=Decimal(row["commission_rate"]),
        is_boosted=bool(row["is_boosted"]),
        priority=row["priority"],
        version=row["version"],
        created_at=row["created_at"],
        completed_at=row["completed_at"],
        expired_at=row["expired_at"],
        cancellation=cancellation,
    )


def row_to_execution(row: sqlite3.Row) -> Execution:
    final_reward = row["final_reward"]
    return Execution(
        execution_id=row["execution_id"],
        task_id=row["task_id"],
        executor_id=row["executor_id"],
        status=ExecutionStatus(row["status"]),
        reward_amount_snapshot=from_minor(row["reward_amount_snapshot"]),
        executor_level_snapshot=UserLevel(row["executor_level_snapshot"]),
        submitted_at=row["submitted_at"],
        auto_approve_at=row["auto_approve_at"],
        proof_ref=row["proof_ref"],
        final_reward=None if final_reward is None else from_minor(final_reward),
        verified_at=row["verified_at"],
        verifier_id=row["verifier_id"],
        rejection_reason=row["rejection_reason"],
        appeal_deadline=row["appeal_deadline"],
        appeal_count=row["appeal_count"],
        appeal_text=row["appeal_text"],
        claimed_by=row["claimed_by"],
        claimed_at=row["claimed_at"],
    )


def _set_clause(updates: dict[str, Any], allowed: frozenset[str]) -> str:
    if any(column not in allowed for column in updates):
        msg = "Attempted to update unknown or immutable column"
        raise ValueError(msg)
    return ", ".join(f"{column} = ?" for column in updates)


class TaskStore:
    """
    Row storage for tasks and executions.

    Methods taking a ``conn`` run inside a transaction opened by the caller;
    the others are lock-free snapshot reads.
    """

    def __init__(self, database: Database) -> None:
        self._db = database
        self._db.ensure_schema(_SCHEMA)

    # ------------------------------------------------------------------
    # Tasks
    # ------------------------------------------------------------------

    def insert_task(self, conn: sqlite3.Connection, task: Task) -> None:
        placeholders = ", ".join("?" for _ in _TASK_COLUMNS)
        conn.execute(
            f"INSERT INTO tasks ({_TASK_COLUMNS_SQL}) VALUES ({placeholders})",  # nosec B608
            (
                task.task_id,
                task.creator_id,
                task.type.value,
                task.title,
                task.description,
                task.target,
                to_minor(task.reward),
                task.target_count,
                task.completed_count,
                task.status.value,
                task.min_executor_level.value,
                task.verification_mode.value,
                task.auto_approve_hours,
                task.expires_at,
                to_minor(task.escrowed_amount),
                str(task.commission_rate),
                int(task.is_boosted),
                task.priority,
                task.version,
                task.created_at,
                None,
                None,
                None,
                None,
                None,
                None,
            ),
        )

    def get_task(self, task_id: str) -> Task | None:
        row = self._db.fetchone(f"{_TASK_SELECT_SQL} WHERE task_id = ?", (task_id,))
        return None if row is None else row_to_task(row)

    def get_task_for_update(self, conn: sqlite3.Connection, task_id: str) -> Task | None:
        row = conn.execute(f"{_TASK_SELECT_SQL} WHERE task_id = ?", (task_id,)).fetchone()
        return None if row is None else row_to_task(row)

    def update_task(
        self,
        conn: sqlite3.Connection,
        task_id: str,
        updates: dict[str, Any],
        *,
        expected_version: int | None = None,
        expected_statuses: tuple[TaskStatus, ...] | None = None,
    ) -> int:
        """Apply updates and bump the version. Returns the number of affected rows."""
        set_clause = _set_clause(updates, _TASK_MUTABLE)
        query = (
            f"UPDATE tasks SET {set_clause}, version = version + 1 "  # nosec B608
            "WHERE task_id = ?"
        )
        params: list[object] = [*updates.values(), task_id]
        if expected_version is not None:
            query += " AND version = ?"
            params.append(expected_version)
        if expected_statuses is not None:
            query += f" AND status IN ({', '.join('?' for _ in expected_statuses)})"
            params.extend(status.value for status in expected_statuses)
        return int(conn.execute(query, params).rowcount)

    def record_completion(self, conn: sqlite3.Connection, task_id: str, reward: Decimal) -> int:
        """
        Count one approved completion against the task's capacity.

        The update only applies while a slot is free and the task is open,
        so two approvals racing for the last slot cannot both succeed.
        """
        cursor = conn.execute(
            "UPDATE tasks SET completed_count = completed_count + 1, "
            "escrowed_amount = escrowed_amount - ?, version = version + 1 "
            "WHERE task_id = ? AND completed_count < target_count "
            "AND status IN ('active', 'paused')",
            (to_minor(reward), task_id),
        )
        return int(cursor.rowcount)

    def count_tasks_created_since(
        self, conn: sqlite3.Connection, creator_id: str, since: str
    ) -> int:
        row = conn.execute(
            "SELECT COUNT(*) FROM tasks WHERE creator_id = ? AND created_at >= ?",
            (creator_id, since),
        ).fetchone()
        return int(row[0]) if row is not None else 0

    def list_tasks(
        self,
        creator_id: str | None,
        status: TaskStatus | None,
        limit: int | None,
        offset: int | None,
    ) -> list[Task]:
        query = _TASK_SELECT_SQL
        clauses: list[str] = []
        params: list[object] = []

        if creator_id is not None:
            clauses.append("creator_id = ?")
            params.append(creator_id)
        if status is not None:
            clauses.append("status = ?")
            params.append(status.value)

        if len(clauses) > 0:
            query += " WHERE " + " AND ".join(clauses)

        query += " ORDER BY created_at DESC, task_id DESC"

        if limit is not None:
            query += " LIMIT ?"
            params.append(limit)
            if offset is not None:
                query += " OFFSET ?"
                params.append(offset)

        return [row_to_task(row) for row in self._db.fetchall(query, params)]

    def list_eligible(
        self,
        executor_id: str,
        levels: tuple[UserLevel, ...],
        task_type: TaskType | None,
        now: str,
        after: tuple[int, int, str, str] | None,
        limit: int,
    ) -> list[Task]:
        """
        Active tasks an executor may take, in feed order.

        ``after`` is the (is_boosted, priority, created_at, task_id) key of
        the last row of the previous page.
        """
        level_marks = ", ".join("?" for _ in levels)
        query = (
            f"{_TASK_SELECT_SQL} AS t WHERE t.status = 'active' "
            "AND t.completed_count < t.target_count "
            "AND t.creator_id != ? "
            f"AND t.min_executor_level IN ({level_marks}) "
            "AND (t.expires_at IS NULL OR t.expires_at > ?) "
            "AND NOT EXISTS (SELECT 1 FROM executions e WHERE e.task_id = t.task_id "
            "AND e.executor_id = ? AND e.status != 'rejected')"
        )
        params: list[object] = [executor_id, *(level.value for level in levels), now, executor_id]
        if task_type is not None:
            query += " AND t.type = ?"
            params.append(task_type.value)
        if after is not None:
            query += " AND (t.is_boosted, t.priority, t.created_at, t.task_id) < (?, ?, ?, ?)"
            params.extend(after)
        query += (
            " ORDER BY t.is_boosted DESC, t.priority DESC, t.created_at DESC, t.task_id DESC"
            " LIMIT ?"
        )
        params.append(limit)
        return [row_to_task(row) for row in self._db.fetchall(query, params)]

    def list_expired_open_tasks(self, now: str, limit: int) -> list[Task]:
        """Open tasks past their expiry that have no pending execution left to resolve."""
        rows = self._db.fetchall(
            f"{_TASK_SELECT_SQL} AS t WHERE t.status IN ('active', 'paused') "
            "AND t.expires_at IS NOT NULL AND t.expires_at <= ? "
            "AND NOT EXISTS (SELECT 1 FROM executions e WHERE e.task_id = t.task_id "
            "AND e.status = 'pending') "
            "ORDER BY t.expires_at LIMIT ?",
            (now, limit),
        )
        return [row_to_task(row) for row in rows]

    def count_tasks(self) -> int:
        row = self._db.fetchone("SELECT COUNT(*) FROM tasks")
        return int(row[0]) if row is not None else 0

    def count_tasks_by_status(self) -> dict[str, int]:
        rows = self._db.fetchall("SELECT status, COUNT(*) FROM tasks GROUP BY status")
        return {str(row[0]): int(row[1]) for row in rows}

    # ------------------------------------------------------------------
    # Executions
    # ------------------------------------------------------------------

    def insert_execution(self, conn: sqlite3.Connection, execution: Execution) -> None:
        """Insert a new execution. Raises sqlite3.IntegrityError on a duplicate open execution."""
        placeholders = ", ".join("?" for _ in _EXECUTION_COLUMNS)
        conn.execute(
            f"INSERT INTO executions ({_EXECUTION_COLUMNS_SQL}) "  # nosec B608
            f"VALUES ({placeholders})",
            (
                execution.execution_id,
                execution.task_id,
                execution.executor_id,
                execution.status.value,
                to_minor(execution.reward_amount_snapshot),
                execution.executor_level_snapshot.value,
                None,
                execution.submitted_at,
                None,
                None,
                execution.proof_ref,
                None,
                None,
                execution.appeal_count,
                None,
                execution.auto_approve_at,
                None,
                None,
            ),
        )

    def get_execution(self, execution_id: str) -> Execution | None:
        row = self._db.fetchone(
            f"{_EXECUTION_SELECT_SQL} WHERE execution_id = ?",
            (execution_id,),
        )
        return None if row is None else row_to_execution(row)

    def get_execution_for_update(
        self, conn: sqlite3.Connection, execution_id: str
    ) -> Execution | None:
        row = conn.execute(
            f"{_EXECUTION_SELECT_SQL} WHERE execution_id = ?",
            (execution_id,),
        ).fetchone()
        return None if row is None else row_to_execution(row)

    def transition_execution(
        self,
        conn: sqlite3.Connection,
        execution_id: str,
        expected_status: ExecutionStatus,
        updates: dict[str, Any],
    ) -> int:
        """Compare-and-set an execution out of ``expected_status``. Returns affected rows."""
        set_clause = _set_clause(updates, _EXECUTION_MUTABLE)
        query = (
            f"UPDATE executions SET {set_clause} "  # nosec B608
            "WHERE execution_id = ? AND status = ?"
        )
        params: list[object] = [*updates.values(), execution_id, expected_status.value]
        return int(conn.execute(query, params).rowcount)

    def reject_pending_for_task(
        self,
        conn: sqlite3.Connection,
        task_id: str,
        reason: str,
        verifier_id: str,
        now: str,
    ) -> list[str]:
        """Reject every pending execution of a task without opening an appeal window."""
        rows = conn.execute(
            "SELECT execution_id FROM executions WHERE task_id = ? AND status = 'pending' "
            "ORDER BY submitted_at, execution_id",
            (task_id,),
        ).fetchall()
        conn.execute(
            "UPDATE executions SET status = 'rejected', rejection_reason = ?, verifier_id = ?, "
            "verified_at = ?, appeal_deadline = NULL, auto_approve_at = NULL "
            "WHERE task_id = ? AND status = 'pending'",
            (reason, verifier_id, now, task_id),
        )
        return [row["execution_id"] for row in rows]

    def count_pending_executions(self, conn: sqlite3.Connection, task_id: str) -> int:
        row = conn.execute(
            "SELECT COUNT(*) FROM executions WHERE task_id = ? AND status = 'pending'",
            (task_id,),
        ).fetchone()
        return int(row[0]) if row is not None else 0

    def list_executions(self, task_id: str, status: ExecutionStatus | None) -> list[Execution]:
        query = f"{_EXECUTION_SELECT_SQL} WHERE task_id = ?"
        params: list[object] = [task_id]
        if status is not None:
            query += " AND status = ?"
            params.append(status.value)
        query += " ORDER BY submitted_at, execution_id"
        return [row_to_execution(row) for row in self._db.fetchall(query, params)]

    def list_pending_for_creator(self, creator_id: str, limit: int) -> list[Execution]:
        rows = self._db.fetchall(
            f"SELECT {', '.join('e.' + c for c in _EXECUTION_COLUMNS)} "  # nosec B608
            "FROM executions e JOIN tasks t ON t.task_id = e.task_id "
            "WHERE t.creator_id = ? AND e.status = 'pending' "
            "ORDER BY e.submitted_at, e.execution_id LIMIT ?",
            (creator_id, limit),
        )
        return [row_to_execution(row) for row in rows]

    def list_due_executions(self, now: str, stale_before: str, limit: int) -> list[Execution]:
        """Pending executions past their auto-approve time that no live worker has claimed."""
        rows = self._db.fetchall(
            f"{_EXECUTION_SELECT_SQL} WHERE status = 'pending' "
            "AND auto_approve_at IS NOT NULL AND auto_approve_at <= ? "
            "AND (claimed_at IS NULL OR claimed_at < ?) "
            "ORDER BY auto_approve_at, execution_id LIMIT ?",
            (now, stale_before, limit),
        )
        return [row_to_execution(row) for row in rows]

    def claim_execution(
        self,
        conn: sqlite3.Connection,
        execution_id: str,
        worker_id: str,
        now: str,
        stale_before: str,
    ) -> bool:
        cursor = conn.execute(
            "UPDATE executions SET claimed_by = ?, claimed_at = ? "
            "WHERE execution_id = ? AND status = 'pending' "
            "AND (claimed_at IS NULL OR claimed_at < ?)",
            (worker_id, now, execution_id, stale_before),
        )
        return cursor.rowcount == 1

    def execution_stats(self, task_id: str) -> dict[str, int]:
        """Counts per status and the summed verification latency of resolved executions."""
        rows = self._db.fetchall(
            "SELECT status, COUNT(*) AS n, COALESCE(SUM(final_reward), 0) AS paid "
            "FROM executions WHERE task_id = ? GROUP BY status",
            (task_id,),
        )
        stats: dict[str, int] = {"pending": 0, "approved": 0, "rejected": 0, "paid": 0}
        for row in rows:
            stats[row["status"]] = int(row["n"])
            stats["paid"] += int(row["paid"])
        return stats

    def list_verification_pairs(self, task_id: str) -> list[tuple[str, str]]:
        """(submitted_at, verified_at) for every resolved execution of a task."""
        rows = self._db.fetchall(
            "SELECT submitted_at, verified_at FROM executions "
            "WHERE task_id = ? AND verified_at IS NOT NULL",
            (task_id,),
        )
        return [(row["submitted_at"], row["verified_at"]) for row in rows]
