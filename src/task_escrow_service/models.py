"""Domain records shared by the ledger, task factory, state machine and sweeper."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from decimal import ROUND_HALF_UP, Decimal
from enum import StrEnum

SYSTEM_ACTOR = "system"

CENT = Decimal("0.01")
_MINOR_UNITS = 100


class UserLevel(StrEnum):
    BRONZE = "bronze"
    SILVER = "silver"
    GOLD = "gold"
    PREMIUM = "premium"


class TaskType(StrEnum):
    SUBSCRIBE = "subscribe"
    JOIN_GROUP = "join_group"
    VIEW_POST = "view_post"
    REACT_POST = "react_post"
    USE_BOT = "use_bot"
    PREMIUM_BOOST = "premium_boost"


class TaskStatus(StrEnum):
    ACTIVE = "active"
    PAUSED = "paused"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    EXPIRED = "expired"


# Statuses in which escrow is still held and executions may be resolved
OPEN_TASK_STATUSES = frozenset({TaskStatus.ACTIVE, TaskStatus.PAUSED})


class VerificationMode(StrEnum):
    AUTO = "auto"
    MANUAL = "manual"


class ExecutionStatus(StrEnum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class TransactionKind(StrEnum):
    RESERVE = "reserve"
    CREDIT = "credit"
    REFUND = "refund"
    PENALTY = "penalty"


def now_utc() -> datetime:
    return datetime.now(UTC)


def to_iso(value: datetime) -> str:
    """Fixed-width ISO 8601 with Z suffix, so stored timestamps sort lexicographically."""
    return value.astimezone(UTC).isoformat(timespec="microseconds").replace("+00:00", "Z")


def from_iso(value: str) -> datetime:
    return datetime.fromisoformat(value.replace("Z", "+00:00"))


def quantize(amount: Decimal) -> Decimal:
    """Round a money amount to cents."""
    return amount.quantize(CENT, rounding=ROUND_HALF_UP)


def to_minor(amount: Decimal) -> int:
    """Decimal amount -> integer cents for storage."""
    return int(quantize(amount) * _MINOR_UNITS)


def from_minor(value: int) -> Decimal:
    """Integer cents from storage -> Decimal amount."""
    return quantize(Decimal(value) / _MINOR_UNITS)


@dataclass(frozen=True)
class Account:
    account_id: str
    level: UserLevel
    balance: Decimal
    created_at: str


@dataclass(frozen=True)
class Transaction:
    """One immutable ledger row; signed_amount is from the account's point of view."""

    tx_id: str
    account_id: str
    kind: TransactionKind
    signed_amount: Decimal
    balance_after: Decimal
    reason: str
    related_task_id: str | None
    related_execution_id: str | None
    created_at: str


@dataclass(frozen=True)
class LedgerReconciliation:
    account_id: str
    balance: Decimal
    ledger_sum: Decimal

    @property
    def consistent(self) -> bool:
        return self.balance == self.ledger_sum


@dataclass(frozen=True)
class CancellationRecord:
    reason: str
    refund_amount: Decimal
    forfeited_amount: Decimal
    cancelled_at: str


@dataclass(frozen=True)
class TaskSpec:
    """Creator-supplied parameters for a new task."""

    type: TaskType
    title: str
    reward: Decimal
    target_count: int
    description: str = ""
    target: str | None = None
    min_executor_level: UserLevel = UserLevel.BRONZE
    verification_mode: VerificationMode | None = None
    auto_approve_hours: int | None = None
    expires_at: datetime | None = None
    is_boosted: bool = False
    priority: int = 0


@dataclass(frozen=True)
class Task:
    task_id: str
    creator_id: str
    type: TaskType
    title: str
    description: str
    target: str | None
    reward: Decimal
    target_count: int
    completed_count: int
    status: TaskStatus
    min_executor_level: UserLevel
    verification_mode: VerificationMode
    auto_approve_hours: int
    expires_at: str | None
    escrowed_amount: Decimal
    commission_rate: Decimal
    is_boosted: bool
    priority: int
    version: int
    created_at: str
    completed_at: str | None = None
    expired_at: str | None = None
    cancellation: CancellationRecord | None = None

    @property
    def remaining_slots(self) -> int:
        return self.target_count - self.completed_count

    @property
    def remaining_budget(self) -> Decimal:
        return quantize(self.reward * self.remaining_slots)

    def is_expired(self, at: datetime) -> bool:
        return self.expires_at is not None and from_iso(self.expires_at) <= at


@dataclass(frozen=True)
class Execution:
    execution_id: str
    task_id: str
    executor_id: str
    status: ExecutionStatus
    reward_amount_snapshot: Decimal
    executor_level_snapshot: UserLevel
    submitted_at: str
    auto_approve_at: str | None
    proof_ref: str | None = None
    final_reward: Decimal | None = None
    verified_at: str | None = None
    verifier_id: str | None = None
    rejection_reason: str | None = None
    appeal_deadline: str | None = None
    appeal_count: int = 0
    appeal_text: str | None = None
    claimed_by: str | None = None
    claimed_at: str | None = None


@dataclass(frozen=True)
class VerificationResult:
    success: bool
    reason: str


@dataclass(frozen=True)
class EligibleTask:
    """A task an executor may take, with the reward they would actually earn."""

    task: Task
    reward_with_multiplier: Decimal


@dataclass(frozen=True)
class EligiblePage:
    items: list[EligibleTask]
    next_cursor: str | None


@dataclass(frozen=True)
class CancellationResult:
    task: Task
    record: CancellationRecord
    rejected_execution_ids: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class TaskStatistics:
    task_id: str
    total_executions: int
    approved_executions: int
    rejected_executions: int
    pending_executions: int
    approval_rate: float
    completion_rate: float
    average_verification_ms: int
    spent_amount: Decimal
    remaining_budget: Decimal
