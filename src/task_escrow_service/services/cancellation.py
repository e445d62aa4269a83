"""Terminal task transitions that return escrow to the creator."""

from __future__ import annotations

from typing import TYPE_CHECKING

from task_escrow_service.core.exceptions import (
    InvalidStateTransition,
    NotFound,
    Unauthorized,
    ValidationError,
)
from task_escrow_service.logging import get_logger
from task_escrow_service.models import (
    OPEN_TASK_STATUSES,
    SYSTEM_ACTOR,
    CancellationRecord,
    CancellationResult,
    Task,
    TaskStatus,
    now_utc,
    to_iso,
    to_minor,
)
from task_escrow_service.services import events as ev
from task_escrow_service.services.database import StaleStateError, retry_once_on_stale
from task_escrow_service.services.rewards import cancellation_refund, escrow_amount

if TYPE_CHECKING:
    from datetime import datetime

    from task_escrow_service.services.database import Database
    from task_escrow_service.services.events import DomainEventPort
    from task_escrow_service.services.ledger import EscrowLedger
    from task_escrow_service.services.notifications import NotificationDispatcher
    from task_escrow_service.services.task_store import TaskStore


class CancellationEngine:
    """
    Cancels tasks on the creator's request and expires overdue ones.

    Cancellation fences the task with a version-guarded status flip in the
    same transaction that rejects its pending executions and books the
    refund, so no approval can land between the two.
    """

    def __init__(
        self,
        database: Database,
        store: TaskStore,
        ledger: EscrowLedger,
        event_port: DomainEventPort,
        notifications: NotificationDispatcher,
        platform_account_id: str,
        max_reason_length: int,
    ) -> None:
        self._db = database
        self._store = store
        self._ledger = ledger
        self._events = event_port
        self._notifications = notifications
        self._platform_account_id = platform_account_id
        self._max_reason_length = max_reason_length
        self._logger = get_logger(__name__)

    async def cancel(self, task_id: str, creator_id: str, reason: str) -> CancellationResult:
        """
        Cancel an active or paused task.

        The creator gets back 90% of the remaining budget rounded down to a
        whole unit; the rest is forfeited to the platform account.

        Error precedence:
        1. INVALID_REASON
        2. TASK_NOT_FOUND
        3. Unauthorized: caller is not the creator
        4. InvalidStateTransition: task already terminal, or lost a race twice
        """
        reason = reason.strip()
        if len(reason) == 0 or len(reason) > self._max_reason_length:
            raise ValidationError(
                "INVALID_REASON",
                f"Reason must be between 1 and {self._max_reason_length} characters",
            )

        result = retry_once_on_stale(
            lambda: self._cancel_once(task_id, creator_id, reason),
            "Task changed concurrently, cancellation aborted",
        )

        self._logger.info(
            "Task cancelled",
            extra={
                "task_id": task_id,
                "refund_amount": str(result.record.refund_amount),
                "forfeited_amount": str(result.record.forfeited_amount),
                "rejected_executions": len(result.rejected_execution_ids),
            },
        )
        ev.publish_safely(
            self._events,
            ev.TASK_CANCELLED,
            {
                "task_id": task_id,
                "reason": reason,
                "refund_amount": str(result.record.refund_amount),
                "forfeited_amount": str(result.record.forfeited_amount),
            },
        )
        for execution_id in result.rejected_execution_ids:
            ev.publish_safely(
                self._events,
                ev.EXECUTION_REJECTED,
                {
                    "execution_id": execution_id,
                    "task_id": task_id,
                    "reason": "Task cancelled",
                    "appealable": False,
                },
            )
        self._notifications.dispatch(
            creator_id,
            "task_cancelled",
            {"task_id": task_id, "refund_amount": str(result.record.refund_amount)},
        )
        return result

    def _cancel_once(self, task_id: str, creator_id: str, reason: str) -> CancellationResult:
        task = self._store.get_task(task_id)
        if task is None:
            raise NotFound("TASK_NOT_FOUND", "Task not found")
        if task.creator_id != creator_id:
            raise Unauthorized("Only the task creator can cancel it")
        if task.status not in OPEN_TASK_STATUSES:
            raise InvalidStateTransition(
                f"Cannot cancel task in '{task.status.value}' status",
                {"status": task.status.value},
            )

        remaining = task.remaining_budget
        refund = cancellation_refund(remaining)
        forfeited = remaining - refund
        if refund > escrow_amount(task.reward, task.target_count):
            msg = f"Refund {refund} for task {task_id} exceeds its original escrow"
            raise RuntimeError(msg)
        now = to_iso(now_utc())

        with self._db.transaction() as conn:
            changed = self._store.update_task(
                conn,
                task_id,
                {
                    "status": TaskStatus.CANCELLED.value,
                    "escrowed_amount": 0,
                    "cancellation_reason": reason,
                    "refund_amount": to_minor(refund),
                    "forfeited_amount": to_minor(forfeited),
                    "cancelled_at": now,
                },
                expected_version=task.version,
                expected_statuses=tuple(OPEN_TASK_STATUSES),
            )
            if changed == 0:
                raise StaleStateError(task_id)

            rejected_ids = self._store.reject_pending_for_task(
                conn, task_id, f"Task cancelled: {reason}", SYSTEM_ACTOR, now
            )
            if refund > 0:
                self._ledger.refund(
                    creator_id,
                    refund,
                    task_id=task_id,
                    reason=f"Cancellation refund for task {task_id}",
                )
            if forfeited > 0:
                self._ledger.record_penalty(
                    self._platform_account_id,
                    forfeited,
                    task_id=task_id,
                    reason=f"Cancellation forfeiture for task {task_id}",
                )

        cancelled = self._require_task(task_id)
        record = CancellationRecord(
            reason=reason,
            refund_amount=refund,
            forfeited_amount=forfeited,
            cancelled_at=now,
        )
        return CancellationResult(
            task=cancelled, record=record, rejected_execution_ids=rejected_ids
        )

    async def expire_task(self, task_id: str, now: datetime | None = None) -> Task | None:
        """
        Expire an overdue open task and refund its remaining escrow in full.

        Returns None when the task is not (or no longer) eligible: not open,
        not past its expiry, or still holding pending executions.
        """
        at = now or now_utc()
        at_iso = to_iso(at)

        with self._db.transaction() as conn:
            task = self._store.get_task_for_update(conn, task_id)
            if task is None or task.status not in OPEN_TASK_STATUSES or not task.is_expired(at):
                return None
            if self._store.count_pending_executions(conn, task_id) > 0:
                return None

            refund = task.escrowed_amount
            self._store.update_task(
                conn,
                task_id,
                {
                    "status": TaskStatus.EXPIRED.value,
                    "expired_at": at_iso,
                    "escrowed_amount": 0,
                },
                expected_version=task.version,
            )
            if refund > 0:
                self._ledger.refund(
                    task.creator_id,
                    refund,
                    task_id=task_id,
                    reason=f"Expiry refund for task {task_id}",
                )

        self._logger.info(
            "Task expired",
            extra={"task_id": task_id, "refund_amount": str(refund)},
        )
        ev.publish_safely(
            self._events,
            ev.TASK_EXPIRED,
            {"task_id": task_id, "refund_amount": str(refund)},
        )
        self._notifications.dispatch(
            task.creator_id,
            "task_expired",
            {"task_id": task_id, "refund_amount": str(refund)},
        )
        return self._require_task(task_id)

    def _require_task(self, task_id: str) -> Task:
        task = self._store.get_task(task_id)
        if task is None:
            msg = f"Task {task_id} not found after update"
            raise RuntimeError(msg)
        return task
