"""Application state management."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from task_escrow_service.clients.verifier_client import Verifier
    from task_escrow_service.services.cancellation import CancellationEngine
    from task_escrow_service.services.database import Database
    from task_escrow_service.services.events import DomainEventPort
    from task_escrow_service.services.execution_machine import ExecutionStateMachine
    from task_escrow_service.services.ledger import EscrowLedger
    from task_escrow_service.services.notifications import NotificationDispatcher
    from task_escrow_service.services.sweeper import AutoApprovalSweeper
    from task_escrow_service.services.task_factory import TaskFactory
    from task_escrow_service.services.task_store import TaskStore


@dataclass
class AppState:
    """Runtime application state."""

    start_time: datetime = field(default_factory=lambda: datetime.now(UTC))
    database: Database | None = None
    ledger: EscrowLedger | None = None
    task_store: TaskStore | None = None
    task_factory: TaskFactory | None = None
    execution_machine: ExecutionStateMachine | None = None
    cancellation: CancellationEngine | None = None
    sweeper: AutoApprovalSweeper | None = None
    sweeper_task: asyncio.Task[None] | None = None
    event_port: DomainEventPort | None = None
    notifications: NotificationDispatcher | None = None
    verifier: Verifier | None = None

    @property
    def uptime_seconds(self) -> float:
        """Calculate uptime in seconds."""
        return (datetime.now(UTC) - self.start_time).total_seconds()

    @property
    def started_at(self) -> str:
        """ISO format start time."""
        return self.start_time.isoformat(timespec="seconds").replace("+00:00", "Z")


# Global application state container
_state_container: dict[str, AppState | None] = {"app_state": None}


def get_app_state() -> AppState:
    """Get the current application state."""
    app_state = _state_container["app_state"]
    if app_state is None:
        msg = "Application state not initialized"
        raise RuntimeError(msg)
    return app_state


def init_app_state() -> AppState:
    """Initialize application state. Called during startup."""
    app_state = AppState()
    _state_container["app_state"] = app_state
    return app_state


def reset_app_state() -> None:
    """Reset application state. Used in testing."""
    _state_container["app_state"] = None
