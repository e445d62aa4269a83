"""Periodic worker that auto-approves overdue executions and expires tasks."""

from __future__ import annotations

import asyncio
import uuid
from dataclasses import dataclass, field
from datetime import timedelta
from typing import TYPE_CHECKING

from task_escrow_service.core.exceptions import (
    AlreadyProcessed,
    InvalidStateTransition,
    ServiceError,
)
from task_escrow_service.logging import get_logger
from task_escrow_service.models import SYSTEM_ACTOR, now_utc, to_iso

if TYPE_CHECKING:
    from datetime import datetime

    from task_escrow_service.config import SweeperConfig
    from task_escrow_service.services.cancellation import CancellationEngine
    from task_escrow_service.services.database import Database
    from task_escrow_service.services.execution_machine import ExecutionStateMachine
    from task_escrow_service.services.task_store import TaskStore

logger = get_logger(__name__)


@dataclass
class SweepReport:
    approved: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    expired_tasks: list[str] = field(default_factory=list)


class AutoApprovalSweeper:
    """
    Polls the due-time index on pending executions.

    An unmoderated execution is trusted once its auto-approve time passes.
    Each due execution is claimed with a conditional update before it is
    approved, so sweepers running in several processes against the same
    database do not approve the same execution twice; a claim older than
    the TTL is treated as abandoned and can be taken over.
    """

    def __init__(
        self,
        database: Database,
        store: TaskStore,
        machine: ExecutionStateMachine,
        cancellation: CancellationEngine,
        config: SweeperConfig,
        worker_id: str | None = None,
    ) -> None:
        self._db = database
        self._store = store
        self._machine = machine
        self._cancellation = cancellation
        self._config = config
        self._worker_id = worker_id or f"sweeper-{uuid.uuid4()}"
        self._running = True
        self._sweeps = 0

    @property
    def worker_id(self) -> str:
        return self._worker_id

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def run(self) -> None:
        """Sweep every interval until stopped."""
        logger.info("Sweeper starting", extra={"worker_id": self._worker_id})

        while self._running:
            try:
                report = await self.sweep_once()
                if report.approved or report.expired_tasks:
                    logger.info(
                        "Sweep finished",
                        extra={
                            "approved": len(report.approved),
                            "skipped": len(report.skipped),
                            "expired_tasks": len(report.expired_tasks),
                        },
                    )
                await asyncio.sleep(self._config.interval_seconds)
            except asyncio.CancelledError:
                logger.info("Sweeper cancelled, shutting down")
                self._running = False
            except Exception:
                logger.exception("Unhandled error in sweep cycle")
                await asyncio.sleep(self._config.interval_seconds)

        logger.info("Sweeper stopped", extra={"sweeps": self._sweeps})

    def stop(self) -> None:
        """Signal the loop to stop after the current cycle."""
        self._running = False

    async def sweep_once(self, now: datetime | None = None) -> SweepReport:
        """Run one pass over due executions and overdue tasks."""
        at = now or now_utc()
        report = SweepReport()
        self._sweeps += 1

        await self._approve_due(at, report)
        await self._expire_overdue(at, report)
        return report

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    async def _approve_due(self, at: datetime, report: SweepReport) -> None:
        at_iso = to_iso(at)
        stale_before = to_iso(at - timedelta(seconds=self._config.claim_ttl_seconds))
        due = self._store.list_due_executions(at_iso, stale_before, self._config.batch_size)

        for execution in due:
            with self._db.transaction() as conn:
                claimed = self._store.claim_execution(
                    conn, execution.execution_id, self._worker_id, at_iso, stale_before
                )
            if not claimed:
                report.skipped.append(execution.execution_id)
                continue

            try:
                await self._machine.approve(execution.execution_id, SYSTEM_ACTOR)
            except (AlreadyProcessed, InvalidStateTransition) as exc:
                logger.info(
                    "Auto-approval skipped",
                    extra={"execution_id": execution.execution_id, "error": exc.error},
                )
                report.skipped.append(execution.execution_id)
                continue
            except ServiceError as exc:
                # The claim stays until its TTL passes, then a later sweep retries
                logger.warning(
                    "Auto-approval failed",
                    extra={
                        "execution_id": execution.execution_id,
                        "error": exc.error,
                        "error_message": exc.message,
                    },
                )
                report.skipped.append(execution.execution_id)
                continue
            report.approved.append(execution.execution_id)

    async def _expire_overdue(self, at: datetime, report: SweepReport) -> None:
        for task in self._store.list_expired_open_tasks(to_iso(at), self._config.batch_size):
            expired = await self._cancellation.expire_task(task.task_id, at)
            if expired is not None:
                report.expired_tasks.append(task.task_id)
