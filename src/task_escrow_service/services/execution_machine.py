"""Execution lifecycle: submission, verification, moderation and appeal."""

from __future__ import annotations

import asyncio
import sqlite3
import uuid
from datetime import timedelta
from typing import TYPE_CHECKING, Any

from task_escrow_service.core.exceptions import (
    AlreadyProcessed,
    ExternalVerifierTimeout,
    InvalidStateTransition,
    NotFound,
    ServiceError,
    Unauthorized,
    ValidationError,
)
from task_escrow_service.logging import get_logger
from task_escrow_service.models import (
    OPEN_TASK_STATUSES,
    SYSTEM_ACTOR,
    Execution,
    ExecutionStatus,
    Task,
    TaskStatus,
    VerificationMode,
    from_iso,
    now_utc,
    to_iso,
    to_minor,
)
from task_escrow_service.services import events as ev
from task_escrow_service.services.rewards import apply_multiplier, meets_level

if TYPE_CHECKING:
    from task_escrow_service.clients.verifier_client import Verifier
    from task_escrow_service.config import ModerationConfig
    from task_escrow_service.services.database import Database
    from task_escrow_service.services.events import DomainEventPort
    from task_escrow_service.services.ledger import EscrowLedger
    from task_escrow_service.services.notifications import NotificationDispatcher
    from task_escrow_service.services.task_store import TaskStore

CAPACITY_REACHED_REASON = "Task capacity reached"


class ExecutionStateMachine:
    """
    Drives executions through PENDING -> APPROVED | REJECTED.

    Every approval runs the status compare-and-set, the executor credit,
    the completion counter and the possible task completion in a single
    database transaction. The task's status is re-read inside that
    transaction, so an approval racing a cancellation either commits first
    or fails without touching the ledger.
    """

    def __init__(
        self,
        database: Database,
        store: TaskStore,
        ledger: EscrowLedger,
        event_port: DomainEventPort,
        notifications: NotificationDispatcher,
        moderation: ModerationConfig,
        verifier: Verifier | None,
        verifier_timeout_seconds: float,
    ) -> None:
        self._db = database
        self._store = store
        self._ledger = ledger
        self._events = event_port
        self._notifications = notifications
        self._moderation = moderation
        self._verifier = verifier
        self._verifier_timeout = verifier_timeout_seconds
        self._logger = get_logger(__name__)

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    def _load_execution(self, execution_id: str) -> Execution:
        execution = self._store.get_execution(execution_id)
        if execution is None:
            raise NotFound("EXECUTION_NOT_FOUND", "Execution not found")
        return execution

    def _load_task(self, task_id: str) -> Task:
        task = self._store.get_task(task_id)
        if task is None:
            raise NotFound("TASK_NOT_FOUND", "Task not found")
        return task

    def _authorize_moderator(self, actor: str, task: Task) -> None:
        if actor == SYSTEM_ACTOR or actor == task.creator_id:
            return
        if actor in self._moderation.moderator_ids:
            return
        raise Unauthorized("Only the task creator or a moderator can resolve this execution")

    def _validate_text(self, value: str, field_name: str) -> str:
        text = value.strip()
        if len(text) == 0:
            raise ValidationError("INVALID_REASON", f"{field_name} must be a non-empty string")
        if len(text) > self._moderation.max_reason_length:
            raise ValidationError(
                "INVALID_REASON",
                f"{field_name} must not exceed {self._moderation.max_reason_length} characters",
            )
        return text

    def _reload(self, execution_id: str) -> Execution:
        execution = self._store.get_execution(execution_id)
        if execution is None:
            msg = f"Execution {execution_id} not found after update"
            raise RuntimeError(msg)
        return execution

    def _emit(self, name: str, payload: dict[str, Any]) -> None:
        ev.publish_safely(self._events, name, payload)

    # ------------------------------------------------------------------
    # Submission
    # ------------------------------------------------------------------

    async def submit(
        self,
        executor_id: str,
        task_id: str,
        proof_ref: str | None = None,
    ) -> Execution:
        """
        Record a completion claim.

        AUTO tasks are checked with the verifier straight away; a timeout or
        an unreachable verifier leaves the execution PENDING for moderation
        or the auto-approve sweep.

        Error precedence:
        1. TASK_NOT_FOUND / ACCOUNT_NOT_FOUND
        2. SELF_EXECUTION: the executor created the task
        3. InvalidStateTransition: task not active, expired or full
        4. EXECUTOR_INELIGIBLE: level below the task minimum
        5. InvalidStateTransition: an open execution already exists
        """
        self._load_task(task_id)
        executor = self._ledger.require_account(executor_id)
        now = now_utc()
        execution_id = f"exec-{uuid.uuid4()}"

        try:
            with self._db.transaction() as conn:
                task = self._store.get_task_for_update(conn, task_id)
                if task is None:
                    raise NotFound("TASK_NOT_FOUND", "Task not found")
                if task.creator_id == executor_id:
                    raise ValidationError(
                        "SELF_EXECUTION", "Creators cannot execute their own tasks"
                    )
                if task.status is not TaskStatus.ACTIVE:
                    raise InvalidStateTransition(
                        f"Task is '{task.status.value}' and not accepting submissions",
                        {"status": task.status.value},
                    )
                if task.is_expired(now):
                    raise InvalidStateTransition("Task has expired")
                if task.completed_count >= task.target_count:
                    raise InvalidStateTransition(CAPACITY_REACHED_REASON)
                if not meets_level(executor.level, task.min_executor_level):
                    raise ValidationError(
                        "EXECUTOR_INELIGIBLE",
                        f"Task requires level {task.min_executor_level.value} or higher",
                        {
                            "required_level": task.min_executor_level.value,
                            "executor_level": executor.level.value,
                        },
                    )

                execution = Execution(
                    execution_id=execution_id,
                    task_id=task_id,
                    executor_id=executor_id,
                    status=ExecutionStatus.PENDING,
                    reward_amount_snapshot=task.reward,
                    executor_level_snapshot=executor.level,
                    submitted_at=to_iso(now),
                    auto_approve_at=to_iso(now + timedelta(hours=task.auto_approve_hours)),
                    proof_ref=proof_ref,
                )
                self._store.insert_execution(conn, execution)
        except sqlite3.IntegrityError as exc:
            raise InvalidStateTransition(
                "Executor already has an open execution for this task",
                {"reason": "EXECUTION_EXISTS"},
            ) from exc

        self._logger.info(
            "Execution submitted",
            extra={"execution_id": execution_id, "task_id": task_id, "executor_id": executor_id},
        )
        self._emit(
            ev.EXECUTION_SUBMITTED,
            {"execution_id": execution_id, "task_id": task_id, "executor_id": executor_id},
        )
        self._notifications.dispatch(
            task.creator_id,
            "execution_submitted",
            {"execution_id": execution_id, "task_id": task_id},
        )

        if task.verification_mode is VerificationMode.AUTO and self._verifier is not None:
            return await self._auto_verify(execution, task)
        return execution

    async def _auto_verify(self, execution: Execution, task: Task) -> Execution:
        verifier = self._verifier
        if verifier is None:
            return execution
        try:
            result = await asyncio.wait_for(
                verifier.verify_completion(execution.executor_id, task),
                timeout=self._verifier_timeout,
            )
        except (TimeoutError, ExternalVerifierTimeout):
            self._logger.warning(
                "Verifier timed out, execution left pending",
                extra={"execution_id": execution.execution_id, "task_id": task.task_id},
            )
            return execution
        except ServiceError as exc:
            self._logger.warning(
                "Verifier unavailable, execution left pending",
                extra={"execution_id": execution.execution_id, "error": exc.error},
            )
            return execution

        try:
            if result.success:
                return await self.approve(execution.execution_id, SYSTEM_ACTOR)
            return await self.reject(execution.execution_id, SYSTEM_ACTOR, result.reason)
        except (AlreadyProcessed, InvalidStateTransition) as exc:
            # A moderator or cancellation got there first
            self._logger.info(
                "Verifier outcome not applied",
                extra={"execution_id": execution.execution_id, "error": exc.error},
            )
            return self._reload(execution.execution_id)

    # ------------------------------------------------------------------
    # Moderation
    # ------------------------------------------------------------------

    async def approve(self, execution_id: str, actor: str) -> Execution:
        """
        Approve a pending execution and pay the executor.

        The credit is the submission-time base reward times the multiplier
        of the executor's level at submission.

        Raises:
            NotFound: EXECUTION_NOT_FOUND
            Unauthorized: actor is neither creator, moderator nor system
            InvalidStateTransition: task no longer active or paused, or full
            AlreadyProcessed: execution is not pending
        """
        execution = self._load_execution(execution_id)
        self._authorize_moderator(actor, self._load_task(execution.task_id))
        now = to_iso(now_utc())
        rejected_ids: list[str] = []

        with self._db.transaction() as conn:
            task = self._store.get_task_for_update(conn, execution.task_id)
            if task is None:
                raise NotFound("TASK_NOT_FOUND", "Task not found")
            if task.status not in OPEN_TASK_STATUSES:
                raise InvalidStateTransition(
                    f"Cannot approve executions of a '{task.status.value}' task",
                    {"status": task.status.value},
                )

            current = self._store.get_execution_for_update(conn, execution_id)
            if current is None:
                raise NotFound("EXECUTION_NOT_FOUND", "Execution not found")
            if current.status is not ExecutionStatus.PENDING:
                raise AlreadyProcessed(execution_id, current.status.value)

            final_reward = apply_multiplier(
                current.reward_amount_snapshot, current.executor_level_snapshot
            )
            changed = self._store.transition_execution(
                conn,
                execution_id,
                ExecutionStatus.PENDING,
                {
                    "status": ExecutionStatus.APPROVED.value,
                    "final_reward": to_minor(final_reward),
                    "verified_at": now,
                    "verifier_id": actor,
                    "appeal_deadline": None,
                    "auto_approve_at": None,
                },
            )
            if changed != 1:
                raise AlreadyProcessed(execution_id, "processed")

            self._ledger.credit(
                current.executor_id,
                final_reward,
                f"Reward for execution {execution_id}",
                task_id=task.task_id,
                execution_id=execution_id,
            )

            # Escrow is released at the base reward; the level bonus is not escrowed
            if self._store.record_completion(conn, task.task_id, task.reward) != 1:
                raise InvalidStateTransition(CAPACITY_REACHED_REASON)

            task = self._store.get_task_for_update(conn, task.task_id)
            if task is None:
                msg = f"Task {execution.task_id} disappeared during approval"
                raise RuntimeError(msg)
            completed = task.completed_count == task.target_count
            if completed:
                if task.escrowed_amount != 0:
                    msg = (
                        f"Task {task.task_id} completed with {task.escrowed_amount} "
                        "still in escrow"
                    )
                    raise RuntimeError(msg)
                self._store.update_task(
                    conn,
                    task.task_id,
                    {"status": TaskStatus.COMPLETED.value, "completed_at": now},
                )
                rejected_ids = self._store.reject_pending_for_task(
                    conn, task.task_id, CAPACITY_REACHED_REASON, SYSTEM_ACTOR, now
                )

        self._logger.info(
            "Execution approved",
            extra={
                "execution_id": execution_id,
                "task_id": task.task_id,
                "actor": actor,
                "final_reward": str(final_reward),
            },
        )
        self._emit(
            ev.EXECUTION_APPROVED,
            {
                "execution_id": execution_id,
                "task_id": task.task_id,
                "executor_id": current.executor_id,
                "final_reward": str(final_reward),
                "verifier_id": actor,
            },
        )
        self._notifications.dispatch(
            current.executor_id,
            "execution_approved",
            {"execution_id": execution_id, "task_id": task.task_id, "reward": str(final_reward)},
        )
        if completed:
            self._announce_completion(task, rejected_ids)
        return self._reload(execution_id)

    def _announce_completion(self, task: Task, rejected_ids: list[str]) -> None:
        self._logger.info(
            "Task completed",
            extra={"task_id": task.task_id, "auto_rejected": len(rejected_ids)},
        )
        self._emit(
            ev.TASK_COMPLETED,
            {"task_id": task.task_id, "completed_count": task.completed_count},
        )
        self._notifications.dispatch(task.creator_id, "task_completed", {"task_id": task.task_id})
        for rejected_id in rejected_ids:
            self._emit(
                ev.EXECUTION_REJECTED,
                {
                    "execution_id": rejected_id,
                    "task_id": task.task_id,
                    "reason": CAPACITY_REACHED_REASON,
                    "appealable": False,
                },
            )

    async def reject(self, execution_id: str, actor: str, reason: str) -> Execution:
        """
        Reject a pending execution. No money moves.

        A first rejection opens an appeal window; rejecting an appealed
        execution is final.

        Raises:
            NotFound: EXECUTION_NOT_FOUND
            ValidationError: INVALID_REASON
            Unauthorized: actor is neither creator, moderator nor system
            AlreadyProcessed: execution is not pending
        """
        reason = self._validate_text(reason, "Reason")
        execution = self._load_execution(execution_id)
        task = self._load_task(execution.task_id)
        self._authorize_moderator(actor, task)
        now = now_utc()

        with self._db.transaction() as conn:
            current = self._store.get_execution_for_update(conn, execution_id)
            if current is None:
                raise NotFound("EXECUTION_NOT_FOUND", "Execution not found")
            if current.status is not ExecutionStatus.PENDING:
                raise AlreadyProcessed(execution_id, current.status.value)

            appeal_deadline = None
            if current.appeal_count == 0:
                appeal_deadline = to_iso(
                    now + timedelta(hours=self._moderation.appeal_window_hours)
                )
            changed = self._store.transition_execution(
                conn,
                execution_id,
                ExecutionStatus.PENDING,
                {
                    "status": ExecutionStatus.REJECTED.value,
                    "rejection_reason": reason,
                    "verified_at": to_iso(now),
                    "verifier_id": actor,
                    "appeal_deadline": appeal_deadline,
                    "auto_approve_at": None,
                },
            )
            if changed != 1:
                raise AlreadyProcessed(execution_id, "processed")

        self._logger.info(
            "Execution rejected",
            extra={"execution_id": execution_id, "actor": actor, "reason": reason},
        )
        self._emit(
            ev.EXECUTION_REJECTED,
            {
                "execution_id": execution_id,
                "task_id": task.task_id,
                "reason": reason,
                "appealable": appeal_deadline is not None,
            },
        )
        self._notifications.dispatch(
            current.executor_id,
            "execution_rejected",
            {"execution_id": execution_id, "reason": reason, "appeal_deadline": appeal_deadline},
        )
        return self._reload(execution_id)

    async def appeal(self, execution_id: str, executor_id: str, text: str) -> Execution:
        """
        Send a rejected execution back to moderation once.

        Raises:
            NotFound: EXECUTION_NOT_FOUND
            ValidationError: INVALID_REASON
            Unauthorized: caller is not the executor
            InvalidStateTransition: not rejected, already appealed, window
                closed, task no longer open, or a newer open execution exists
        """
        text = self._validate_text(text, "Appeal text")
        execution = self._load_execution(execution_id)
        if execution.executor_id != executor_id:
            raise Unauthorized("Only the executor can appeal this execution")
        now = now_utc()

        try:
            with self._db.transaction() as conn:
                current = self._store.get_execution_for_update(conn, execution_id)
                if current is None:
                    raise NotFound("EXECUTION_NOT_FOUND", "Execution not found")
                if current.status is not ExecutionStatus.REJECTED:
                    raise InvalidStateTransition(
                        "Only rejected executions can be appealed",
                        {"status": current.status.value},
                    )
                if current.appeal_count > 0:
                    raise InvalidStateTransition("Execution has already been appealed")
                if current.appeal_deadline is None:
                    raise InvalidStateTransition("Execution is not appealable")
                if now > from_iso(current.appeal_deadline):
                    raise InvalidStateTransition(
                        "Appeal window has closed",
                        {"appeal_deadline": current.appeal_deadline},
                    )

                task = self._store.get_task_for_update(conn, current.task_id)
                if task is None:
                    raise NotFound("TASK_NOT_FOUND", "Task not found")
                if task.status not in OPEN_TASK_STATUSES:
                    raise InvalidStateTransition(
                        f"Cannot appeal executions of a '{task.status.value}' task",
                        {"status": task.status.value},
                    )

                self._store.transition_execution(
                    conn,
                    execution_id,
                    ExecutionStatus.REJECTED,
                    {
                        "status": ExecutionStatus.PENDING.value,
                        "appeal_count": current.appeal_count + 1,
                        "appeal_text": text,
                        "appeal_deadline": None,
                        "verified_at": None,
                        "verifier_id": None,
                        "auto_approve_at": to_iso(now + timedelta(hours=task.auto_approve_hours)),
                        "claimed_by": None,
                        "claimed_at": None,
                    },
                )
        except sqlite3.IntegrityError as exc:
            raise InvalidStateTransition(
                "Executor already has an open execution for this task",
                {"reason": "EXECUTION_EXISTS"},
            ) from exc

        self._logger.info(
            "Execution appealed",
            extra={"execution_id": execution_id, "task_id": task.task_id},
        )
        self._emit(
            ev.EXECUTION_APPEALED,
            {"execution_id": execution_id, "task_id": task.task_id, "executor_id": executor_id},
        )
        self._notifications.dispatch(
            task.creator_id,
            "execution_appealed",
            {"execution_id": execution_id, "task_id": task.task_id},
        )
        return self._reload(execution_id)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def get_execution(self, execution_id: str) -> Execution:
        return self._load_execution(execution_id)

    async def list_task_executions(
        self,
        task_id: str,
        status: ExecutionStatus | None = None,
    ) -> list[Execution]:
        self._load_task(task_id)
        return self._store.list_executions(task_id, status)

    async def list_pending_for_creator(self, creator_id: str, limit: int = 100) -> list[Execution]:
        """Moderation queue for a creator, oldest submission first."""
        return self._store.list_pending_for_creator(creator_id, limit)
