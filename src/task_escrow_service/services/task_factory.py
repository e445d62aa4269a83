"""Task creation, the executor feed, and creator-side task management."""

from __future__ import annotations

import base64
import binascii
import json
import uuid
from datetime import UTC, datetime, timedelta
from decimal import Decimal
from typing import TYPE_CHECKING

from task_escrow_service.core.exceptions import (
    InvalidStateTransition,
    NotFound,
    QuotaExceeded,
    Unauthorized,
    ValidationError,
)
from task_escrow_service.logging import get_logger
from task_escrow_service.models import (
    EligiblePage,
    EligibleTask,
    Task,
    TaskStatistics,
    TaskStatus,
    VerificationMode,
    from_iso,
    from_minor,
    now_utc,
    quantize,
    to_iso,
)
from task_escrow_service.services import events as ev
from task_escrow_service.services.database import StaleStateError, retry_once_on_stale
from task_escrow_service.services.rewards import (
    TASK_TYPE_RULES,
    apply_multiplier,
    commission_rate,
    daily_creation_quota,
    escrow_amount,
    levels_up_to,
    task_cost,
)

if TYPE_CHECKING:
    from task_escrow_service.config import TasksConfig
    from task_escrow_service.models import TaskSpec, TaskType, UserLevel
    from task_escrow_service.services.database import Database
    from task_escrow_service.services.events import DomainEventPort
    from task_escrow_service.services.ledger import EscrowLedger
    from task_escrow_service.services.task_store import TaskStore

MAX_PAGE_SIZE = 100


def _day_window(now: datetime) -> tuple[datetime, datetime]:
    """Start of the current UTC day and the moment the quota resets."""
    start = now.astimezone(UTC).replace(hour=0, minute=0, second=0, microsecond=0)
    return start, start + timedelta(days=1)


def encode_cursor(task: Task) -> str:
    key = [int(task.is_boosted), task.priority, task.created_at, task.task_id]
    return base64.urlsafe_b64encode(json.dumps(key).encode("utf-8")).decode("ascii")


def decode_cursor(cursor: str) -> tuple[int, int, str, str]:
    """
    Raises:
        ValidationError: INVALID_CURSOR for anything not produced by encode_cursor.
    """
    try:
        key = json.loads(base64.urlsafe_b64decode(cursor.encode("ascii")))
    except (ValueError, binascii.Error, UnicodeError) as exc:
        raise ValidationError("INVALID_CURSOR", "Cursor is malformed") from exc
    if (
        not isinstance(key, list)
        or len(key) != 4
        or not isinstance(key[0], int)
        or not isinstance(key[1], int)
        or not isinstance(key[2], str)
        or not isinstance(key[3], str)
    ):
        raise ValidationError("INVALID_CURSOR", "Cursor is malformed")
    return key[0], key[1], key[2], key[3]


class TaskFactory:
    """
    Creates tasks against the creator's escrow and answers feed queries.

    Creation runs the quota count, the escrow reservation, the commission
    booking and the task insert in one transaction, so concurrent requests
    from the same creator cannot slip past the daily quota and a failed
    insert never leaves funds reserved.
    """

    def __init__(
        self,
        database: Database,
        store: TaskStore,
        ledger: EscrowLedger,
        event_port: DomainEventPort,
        config: TasksConfig,
        platform_account_id: str,
    ) -> None:
        self._db = database
        self._store = store
        self._ledger = ledger
        self._events = event_port
        self._config = config
        self._platform_account_id = platform_account_id
        self._logger = get_logger(__name__)

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    def _validate_spec(self, spec: TaskSpec, now: datetime) -> tuple[VerificationMode, int]:
        """
        Check a task spec against configured and per-type bounds.

        Returns the effective verification mode and auto-approve window.
        """
        rule = TASK_TYPE_RULES[spec.type]

        title = spec.title.strip()
        if len(title) == 0:
            raise ValidationError("INVALID_TITLE", "Title must be a non-empty string")
        if len(title) > self._config.max_title_length:
            raise ValidationError(
                "INVALID_TITLE",
                f"Title must not exceed {self._config.max_title_length} characters",
            )
        if len(spec.description) > self._config.max_description_length:
            raise ValidationError(
                "INVALID_DESCRIPTION",
                f"Description must not exceed {self._config.max_description_length} characters",
            )

        reward = spec.reward
        if not isinstance(reward, Decimal) or not reward.is_finite():
            raise ValidationError("INVALID_REWARD", "Reward must be a finite decimal")
        if reward != quantize(reward):
            raise ValidationError("INVALID_REWARD", "Reward must have at most two decimal places")
        low = max(self._config.min_reward, rule.min_reward)
        high = min(self._config.max_reward, rule.max_reward)
        if reward < low or reward > high:
            raise ValidationError(
                "INVALID_REWARD",
                f"Reward for {spec.type.value} tasks must be between {low} and {high}",
                {"min_reward": str(low), "max_reward": str(high)},
            )

        if (
            isinstance(spec.target_count, bool)
            or spec.target_count < self._config.min_target_count
            or spec.target_count > self._config.max_target_count
        ):
            raise ValidationError(
                "INVALID_TARGET_COUNT",
                f"Target count must be between {self._config.min_target_count} "
                f"and {self._config.max_target_count}",
            )

        if (
            isinstance(spec.priority, bool)
            or spec.priority < 0
            or spec.priority > self._config.max_priority
        ):
            raise ValidationError(
                "INVALID_PRIORITY",
                f"Priority must be between 0 and {self._config.max_priority}",
                {"max_priority": self._config.max_priority},
            )

        mode = spec.verification_mode
        if mode is None:
            mode = VerificationMode.AUTO if rule.auto_verifiable else VerificationMode.MANUAL
        elif mode is VerificationMode.AUTO and not rule.auto_verifiable:
            raise ValidationError(
                "INVALID_VERIFICATION_MODE",
                f"{spec.type.value} tasks cannot be verified automatically",
            )

        hours = spec.auto_approve_hours
        if hours is None:
            hours = self._config.default_auto_approve_hours
        if hours < 1 or hours > self._config.max_auto_approve_hours:
            raise ValidationError(
                "INVALID_AUTO_APPROVE_WINDOW",
                f"Auto-approve window must be between 1 and "
                f"{self._config.max_auto_approve_hours} hours",
            )

        if spec.expires_at is not None:
            if spec.expires_at.tzinfo is None:
                raise ValidationError("INVALID_EXPIRY", "Expiry must be timezone-aware")
            if spec.expires_at <= now:
                raise ValidationError("INVALID_EXPIRY", "Expiry must be in the future")

        return mode, hours

    # ------------------------------------------------------------------
    # Public methods
    # ------------------------------------------------------------------

    async def create_task(self, creator_id: str, spec: TaskSpec) -> Task:
        """
        Create a task and reserve its cost from the creator.

        Error precedence:
        1. ValidationError: spec out of bounds
        2. ACCOUNT_NOT_FOUND: creator has no ledger account
        3. QuotaExceeded: daily creation limit for the creator's level
        4. InsufficientFunds: balance below reward x count x (1 + commission)
        """
        now = now_utc()
        mode, auto_approve_hours = self._validate_spec(spec, now)
        day_start, resets_at = _day_window(now)
        task_id = f"task-{uuid.uuid4()}"

        with self._db.transaction() as conn:
            creator = self._ledger.require_account(creator_id)

            quota = daily_creation_quota(creator.level)
            if quota is not None:
                created_today = self._store.count_tasks_created_since(
                    conn, creator_id, to_iso(day_start)
                )
                if created_today >= quota:
                    raise QuotaExceeded(quota, to_iso(resets_at))

            rate = commission_rate(creator.level)
            cost = task_cost(spec.reward, spec.target_count, rate)
            escrow = escrow_amount(spec.reward, spec.target_count)
            commission = cost - escrow

            self._ledger.reserve(
                creator_id,
                cost,
                task_id=task_id,
                reason=f"Escrow for task {task_id}",
            )
            if commission > 0:
                self._ledger.credit(
                    self._platform_account_id,
                    commission,
                    f"Commission for task {task_id}",
                    task_id=task_id,
                )

            task = Task(
                task_id=task_id,
                creator_id=creator_id,
                type=spec.type,
                title=spec.title.strip(),
                description=spec.description,
                target=spec.target,
                reward=spec.reward,
                target_count=spec.target_count,
                completed_count=0,
                status=TaskStatus.ACTIVE,
                min_executor_level=spec.min_executor_level,
                verification_mode=mode,
                auto_approve_hours=auto_approve_hours,
                expires_at=None if spec.expires_at is None else to_iso(spec.expires_at),
                escrowed_amount=escrow,
                commission_rate=rate,
                is_boosted=spec.is_boosted,
                priority=spec.priority,
                version=1,
                created_at=to_iso(now),
            )
            self._store.insert_task(conn, task)

        self._logger.info(
            "Task created",
            extra={
                "task_id": task_id,
                "creator_id": creator_id,
                "cost": str(cost),
                "escrow": str(escrow),
                "commission": str(commission),
            },
        )
        ev.publish_safely(
            self._events,
            ev.TASK_CREATED,
            {
                "task_id": task_id,
                "creator_id": creator_id,
                "type": spec.type.value,
                "reward": str(spec.reward),
                "target_count": spec.target_count,
                "escrowed_amount": str(escrow),
            },
        )
        return await self.get_task(task_id)

    async def list_eligible(
        self,
        executor_id: str,
        level: UserLevel,
        type_filter: TaskType | None = None,
        limit: int = 20,
        cursor: str | None = None,
    ) -> EligiblePage:
        """
        Active tasks the executor may take, boosted first, then by priority,
        then newest.

        Pages are keyed on the last row seen rather than an offset, so rows
        inserted or removed between requests never shift later pages.
        """
        if limit < 1 or limit > MAX_PAGE_SIZE:
            raise ValidationError("INVALID_LIMIT", f"Limit must be between 1 and {MAX_PAGE_SIZE}")
        after = None if cursor is None else decode_cursor(cursor)

        rows = self._store.list_eligible(
            executor_id=executor_id,
            levels=levels_up_to(level),
            task_type=type_filter,
            now=to_iso(now_utc()),
            after=after,
            limit=limit + 1,
        )
        has_more = len(rows) > limit
        rows = rows[:limit]
        items = [
            EligibleTask(task=task, reward_with_multiplier=apply_multiplier(task.reward, level))
            for task in rows
        ]
        next_cursor = encode_cursor(rows[-1]) if has_more else None
        return EligiblePage(items=items, next_cursor=next_cursor)

    async def get_task(self, task_id: str) -> Task:
        """
        Raises:
            NotFound: TASK_NOT_FOUND
        """
        task = self._store.get_task(task_id)
        if task is None:
            raise NotFound("TASK_NOT_FOUND", "Task not found")
        return task

    async def list_creator_tasks(
        self,
        creator_id: str,
        status: TaskStatus | None = None,
        limit: int | None = None,
        offset: int | None = None,
    ) -> list[Task]:
        return self._store.list_tasks(
            creator_id=creator_id,
            status=status,
            limit=limit,
            offset=offset,
        )

    async def pause_task(self, task_id: str, creator_id: str) -> Task:
        """Hide an active task from the feed. Pending executions can still be resolved."""
        return retry_once_on_stale(
            lambda: self._set_status(task_id, creator_id, TaskStatus.ACTIVE, TaskStatus.PAUSED),
            "Task changed concurrently, pause aborted",
        )

    async def resume_task(self, task_id: str, creator_id: str) -> Task:
        return retry_once_on_stale(
            lambda: self._set_status(task_id, creator_id, TaskStatus.PAUSED, TaskStatus.ACTIVE),
            "Task changed concurrently, resume aborted",
        )

    def _set_status(
        self,
        task_id: str,
        creator_id: str,
        expected: TaskStatus,
        target: TaskStatus,
    ) -> Task:
        task = self._store.get_task(task_id)
        if task is None:
            raise NotFound("TASK_NOT_FOUND", "Task not found")
        if task.creator_id != creator_id:
            raise Unauthorized("Only the task creator can change its status")
        if task.status != expected:
            raise InvalidStateTransition(
                f"Cannot move task from '{task.status.value}' to '{target.value}'",
                {"status": task.status.value},
            )
        if target is TaskStatus.ACTIVE and task.is_expired(now_utc()):
            raise InvalidStateTransition("Task has expired")

        with self._db.transaction() as conn:
            changed = self._store.update_task(
                conn,
                task_id,
                {"status": target.value},
                expected_version=task.version,
            )
            if changed == 0:
                raise StaleStateError(task_id)

        updated = self._store.get_task(task_id)
        if updated is None:
            msg = f"Task {task_id} not found after update"
            raise RuntimeError(msg)
        self._logger.info(
            "Task status changed",
            extra={"task_id": task_id, "from": expected.value, "to": target.value},
        )
        return updated

    async def get_task_statistics(self, task_id: str) -> TaskStatistics:
        task = await self.get_task(task_id)
        stats = self._store.execution_stats(task_id)
        approved = stats["approved"]
        rejected = stats["rejected"]
        pending = stats["pending"]
        resolved = approved + rejected

        pairs = self._store.list_verification_pairs(task_id)
        if pairs:
            total_ms = sum(
                (from_iso(verified) - from_iso(submitted)) / timedelta(milliseconds=1)
                for submitted, verified in pairs
            )
            average_ms = int(total_ms / len(pairs))
        else:
            average_ms = 0

        return TaskStatistics(
            task_id=task_id,
            total_executions=resolved + pending,
            approved_executions=approved,
            rejected_executions=rejected,
            pending_executions=pending,
            approval_rate=approved / resolved if resolved else 0.0,
            completion_rate=task.completed_count / task.target_count,
            average_verification_ms=average_ms,
            spent_amount=from_minor(stats["paid"]),
            remaining_budget=task.escrowed_amount,
        )
