"""Shared test helpers: config text and a fully wired service stack."""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import TYPE_CHECKING, Any
from unittest.mock import AsyncMock

from task_escrow_service.config import ModerationConfig, SweeperConfig, TasksConfig
from task_escrow_service.models import TaskSpec, TaskType, UserLevel, VerificationMode, to_iso
from task_escrow_service.services.cancellation import CancellationEngine
from task_escrow_service.services.database import Database
from task_escrow_service.services.events import InMemoryEventPublisher
from task_escrow_service.services.execution_machine import ExecutionStateMachine
from task_escrow_service.services.ledger import EscrowLedger
from task_escrow_service.services.notifications import NotificationDispatcher
from task_escrow_service.services.sweeper import AutoApprovalSweeper
from task_escrow_service.services.task_factory import TaskFactory
from task_escrow_service.services.task_store import TaskStore

if TYPE_CHECKING:
    from datetime import datetime

    from task_escrow_service.clients.verifier_client import Verifier

PLATFORM_ACCOUNT_ID = "platform"
MODERATOR_ID = "mod-1"


def config_yaml(
    db_path: str, *, sweeper_enabled: bool = False, max_body_size: int = 1048576
) -> str:
    """A complete config file pointing at ``db_path``."""
    return f"""\
service:
  name: "task-escrow"
  version: "0.1.0"
server:
  host: "0.0.0.0"
  port: 8010
  log_level: "info"
logging:
  level: "WARNING"
  directory: "data/logs"
database:
  path: "{db_path}"
  busy_timeout_ms: 5000
platform:
  account_id: "{PLATFORM_ACCOUNT_ID}"
tasks:
  min_reward: "0.01"
  max_reward: "10000"
  min_target_count: 1
  max_target_count: 10000
  max_title_length: 200
  max_description_length: 10000
  default_auto_approve_hours: 24
  max_auto_approve_hours: 720
  max_priority: 100
moderation:
  moderator_ids: ["{MODERATOR_ID}"]
  appeal_window_hours: 24
  max_reason_length: 2000
sweeper:
  enabled: {"true" if sweeper_enabled else "false"}
  interval_seconds: 30
  batch_size: 100
  claim_ttl_seconds: 300
verifier:
  base_url: null
  verify_path: "/verify"
  timeout_seconds: 10
notifications:
  base_url: null
  notify_path: "/notifications"
  timeout_seconds: 5
request:
  max_body_size: {max_body_size}
"""


def tasks_config() -> TasksConfig:
    return TasksConfig(
        min_reward=Decimal("0.01"),
        max_reward=Decimal(10000),
        min_target_count=1,
        max_target_count=10000,
        max_title_length=200,
        max_description_length=10000,
        default_auto_approve_hours=24,
        max_auto_approve_hours=720,
        max_priority=100,
    )


def moderation_config() -> ModerationConfig:
    return ModerationConfig(
        moderator_ids=[MODERATOR_ID],
        appeal_window_hours=24,
        max_reason_length=2000,
    )


def sweeper_config() -> SweeperConfig:
    return SweeperConfig(
        enabled=False,
        interval_seconds=0.01,
        batch_size=100,
        claim_ttl_seconds=300,
    )


def make_spec(
    *,
    task_type: TaskType = TaskType.SUBSCRIBE,
    reward: Decimal | int | str = 100,
    target_count: int = 10,
    title: str = "Subscribe to the channel",
    **kwargs: Any,
) -> TaskSpec:
    """A valid spec; MANUAL unless a verification mode is given."""
    kwargs.setdefault("verification_mode", VerificationMode.MANUAL)
    return TaskSpec(
        type=task_type,
        title=title,
        reward=Decimal(reward),
        target_count=target_count,
        **kwargs,
    )


@dataclass
class Stack:
    """All domain services wired over one database file."""

    database: Database
    ledger: EscrowLedger
    store: TaskStore
    events: InMemoryEventPublisher
    notifier: AsyncMock
    notifications: NotificationDispatcher
    factory: TaskFactory
    machine: ExecutionStateMachine
    cancellation: CancellationEngine
    sweeper: AutoApprovalSweeper

    def open(
        self,
        account_id: str,
        balance: Decimal | int = 0,
        level: UserLevel = UserLevel.BRONZE,
    ) -> None:
        self.ledger.open_account(account_id, level, Decimal(balance))

    def balance(self, account_id: str) -> Decimal:
        return self.ledger.require_account(account_id).balance

    def close(self) -> None:
        self.database.close()


def build_stack(
    db_path: str,
    *,
    verifier: Verifier | None = None,
    verifier_timeout_seconds: float = 1.0,
    worker_id: str | None = None,
) -> Stack:
    """Wire every service the way the app lifespan does, with in-memory adapters."""
    database = Database(db_path)
    ledger = EscrowLedger(database)
    ledger.ensure_account(PLATFORM_ACCOUNT_ID)
    store = TaskStore(database)
    events = InMemoryEventPublisher()
    notifier = AsyncMock()
    notifications = NotificationDispatcher(notifier)

    factory = TaskFactory(
        database=database,
        store=store,
        ledger=ledger,
        event_port=events,
        config=tasks_config(),
        platform_account_id=PLATFORM_ACCOUNT_ID,
    )
    machine = ExecutionStateMachine(
        database=database,
        store=store,
        ledger=ledger,
        event_port=events,
        notifications=notifications,
        moderation=moderation_config(),
        verifier=verifier,
        verifier_timeout_seconds=verifier_timeout_seconds,
    )
    cancellation = CancellationEngine(
        database=database,
        store=store,
        ledger=ledger,
        event_port=events,
        notifications=notifications,
        platform_account_id=PLATFORM_ACCOUNT_ID,
        max_reason_length=2000,
    )
    sweeper = AutoApprovalSweeper(
        database=database,
        store=store,
        machine=machine,
        cancellation=cancellation,
        config=sweeper_config(),
        worker_id=worker_id,
    )
    return Stack(
        database=database,
        ledger=ledger,
        store=store,
        events=events,
        notifier=notifier,
        notifications=notifications,
        factory=factory,
        machine=machine,
        cancellation=cancellation,
        sweeper=sweeper,
    )


def force_due(stack: Stack, execution_id: str, due_at: datetime) -> None:
    """Move an execution's auto-approve time, as if its window had elapsed."""
    with stack.database.transaction() as conn:
        conn.execute(
            "UPDATE executions SET auto_approve_at = ? WHERE execution_id = ?",
            (to_iso(due_at), execution_id),
        )


def force_expiry(stack: Stack, task_id: str, expires_at: datetime) -> None:
    """Backdate a task's expiry, which the API only accepts in the future."""
    with stack.database.transaction() as conn:
        conn.execute(
            "UPDATE tasks SET expires_at = ? WHERE task_id = ?",
            (to_iso(expires_at), task_id),
        )
