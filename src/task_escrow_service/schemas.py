"""Pydantic request/response models for the API."""

from __future__ import annotations

from datetime import datetime  # noqa: TC003
from decimal import Decimal  # noqa: TC003
from typing import TYPE_CHECKING, Literal

from pydantic import BaseModel, ConfigDict, Field

from task_escrow_service.models import (  # noqa: TC001
    ExecutionStatus,
    TaskStatus,
    TaskType,
    TransactionKind,
    UserLevel,
    VerificationMode,
)

if TYPE_CHECKING:
    from task_escrow_service.models import (
        Account,
        CancellationResult,
        EligiblePage,
        Execution,
        Task,
        TaskStatistics,
        Transaction,
    )

# ---------------------------------------------------------------------------
# Requests
# ---------------------------------------------------------------------------


class OpenAccountRequest(BaseModel):
    """Body of POST /accounts."""

    model_config = ConfigDict(extra="forbid")
    account_id: str = Field(min_length=1, max_length=128)
    level: UserLevel = UserLevel.BRONZE
    initial_balance: Decimal = Field(default=Decimal(0), ge=0)


class CreditRequest(BaseModel):
    """Body of POST /accounts/{account_id}/credit."""

    model_config = ConfigDict(extra="forbid")
    amount: Decimal = Field(gt=0)
    reason: str = Field(min_length=1, max_length=500)


class SetLevelRequest(BaseModel):
    """Body of PUT /accounts/{account_id}/level."""

    model_config = ConfigDict(extra="forbid")
    level: UserLevel


class CreateTaskRequest(BaseModel):
    """Body of POST /tasks."""

    model_config = ConfigDict(extra="forbid")
    creator_id: str = Field(min_length=1)
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


class CreatorActionRequest(BaseModel):
    """Body of POST /tasks/{task_id}/pause and /resume."""

    model_config = ConfigDict(extra="forbid")
    creator_id: str = Field(min_length=1)


class CancelTaskRequest(BaseModel):
    """Body of POST /tasks/{task_id}/cancel."""

    model_config = ConfigDict(extra="forbid")
    creator_id: str = Field(min_length=1)
    reason: str


class SubmitExecutionRequest(BaseModel):
    """Body of POST /tasks/{task_id}/executions."""

    model_config = ConfigDict(extra="forbid")
    executor_id: str = Field(min_length=1)
    proof_ref: str | None = None


class ApproveRequest(BaseModel):
    """Body of POST /executions/{execution_id}/approve."""

    model_config = ConfigDict(extra="forbid")
    actor_id: str = Field(min_length=1)


class RejectRequest(BaseModel):
    """Body of POST /executions/{execution_id}/reject."""

    model_config = ConfigDict(extra="forbid")
    actor_id: str = Field(min_length=1)
    reason: str


class AppealRequest(BaseModel):
    """Body of POST /executions/{execution_id}/appeal."""

    model_config = ConfigDict(extra="forbid")
    executor_id: str = Field(min_length=1)
    text: str


# ---------------------------------------------------------------------------
# Responses
# ---------------------------------------------------------------------------


class HealthResponse(BaseModel):
    """Response model for GET /health."""

    model_config = ConfigDict(extra="forbid")
    status: Literal["ok"]
    uptime_seconds: float
    started_at: str
    total_tasks: int
    tasks_by_status: dict[str, int]
    total_accounts: int
    ledger_consistent: bool
    inconsistent_accounts: list[str]


class ErrorResponse(BaseModel):
    """Standard error response model."""

    model_config = ConfigDict(extra="forbid")
    error: str
    message: str
    details: dict[str, object]


class AccountResponse(BaseModel):
    model_config = ConfigDict(extra="forbid")
    account_id: str
    level: UserLevel
    balance: Decimal
    created_at: str

    @classmethod
    def from_account(cls, account: Account) -> AccountResponse:
        return cls(
            account_id=account.account_id,
            level=account.level,
            balance=account.balance,
            created_at=account.created_at,
        )


class TransactionResponse(BaseModel):
    model_config = ConfigDict(extra="forbid")
    tx_id: str
    account_id: str
    kind: TransactionKind
    signed_amount: Decimal
    balance_after: Decimal
    reason: str
    related_task_id: str | None
    related_execution_id: str | None
    created_at: str

    @classmethod
    def from_transaction(cls, tx: Transaction) -> TransactionResponse:
        return cls(
            tx_id=tx.tx_id,
            account_id=tx.account_id,
            kind=tx.kind,
            signed_amount=tx.signed_amount,
            balance_after=tx.balance_after,
            reason=tx.reason,
            related_task_id=tx.related_task_id,
            related_execution_id=tx.related_execution_id,
            created_at=tx.created_at,
        )


class TransactionListResponse(BaseModel):
    model_config = ConfigDict(extra="forbid")
    account_id: str
    transactions: list[TransactionResponse]


class CancellationRecordResponse(BaseModel):
    model_config = ConfigDict(extra="forbid")
    reason: str
    refund_amount: Decimal
    forfeited_amount: Decimal
    cancelled_at: str


class TaskResponse(BaseModel):
    """Full task detail response model."""

    model_config = ConfigDict(extra="forbid")
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
    completed_at: str | None
    expired_at: str | None
    cancellation: CancellationRecordResponse | None

    @classmethod
    def from_task(cls, task: Task) -> TaskResponse:
        cancellation = None
        if task.cancellation is not None:
            cancellation = CancellationRecordResponse(
                reason=task.cancellation.reason,
                refund_amount=task.cancellation.refund_amount,
                forfeited_amount=task.cancellation.forfeited_amount,
                cancelled_at=task.cancellation.cancelled_at,
            )
        return cls(
            task_id=task.task_id,
            creator_id=task.creator_id,
            type=task.type,
            title=task.title,
            description=task.description,
            target=task.target,
            reward=task.reward,
            target_count=task.target_count,
            completed_count=task.completed_count,
            status=task.status,
            min_executor_level=task.min_executor_level,
            verification_mode=task.verification_mode,
            auto_approve_hours=task.auto_approve_hours,
            expires_at=task.expires_at,
            escrowed_amount=task.escrowed_amount,
            commission_rate=task.commission_rate,
            is_boosted=task.is_boosted,
            priority=task.priority,
            version=task.version,
            created_at=task.created_at,
            completed_at=task.completed_at,
            expired_at=task.expired_at,
            cancellation=cancellation,
        )


class TaskListResponse(BaseModel):
    model_config = ConfigDict(extra="forbid")
    tasks: list[TaskResponse]


class EligibleTaskResponse(BaseModel):
    model_config = ConfigDict(extra="forbid")
    task: TaskResponse
    reward_with_multiplier: Decimal


class EligiblePageResponse(BaseModel):
    """Response model for GET /tasks/eligible."""

    model_config = ConfigDict(extra="forbid")
    items: list[EligibleTaskResponse]
    next_cursor: str | None

    @classmethod
    def from_page(cls, page: EligiblePage) -> EligiblePageResponse:
        return cls(
            items=[
                EligibleTaskResponse(
                    task=TaskResponse.from_task(item.task),
                    reward_with_multiplier=item.reward_with_multiplier,
                )
                for item in page.items
            ],
            next_cursor=page.next_cursor,
        )


class TaskStatisticsResponse(BaseModel):
    model_config = ConfigDict(extra="forbid")
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

    @classmethod
    def from_statistics(cls, stats: TaskStatistics) -> TaskStatisticsResponse:
        return cls(
            task_id=stats.task_id,
            total_executions=stats.total_executions,
            approved_executions=stats.approved_executions,
            rejected_executions=stats.rejected_executions,
            pending_executions=stats.pending_executions,
            approval_rate=stats.approval_rate,
            completion_rate=stats.completion_rate,
            average_verification_ms=stats.average_verification_ms,
            spent_amount=stats.spent_amount,
            remaining_budget=stats.remaining_budget,
        )


class CancellationResponse(BaseModel):
    """Response model for POST /tasks/{task_id}/cancel."""

    model_config = ConfigDict(extra="forbid")
    task: TaskResponse
    refund_amount: Decimal
    forfeited_amount: Decimal
    rejected_execution_ids: list[str]

    @classmethod
    def from_result(cls, result: CancellationResult) -> CancellationResponse:
        return cls(
            task=TaskResponse.from_task(result.task),
            refund_amount=result.record.refund_amount,
            forfeited_amount=result.record.forfeited_amount,
            rejected_execution_ids=result.rejected_execution_ids,
        )


class ExecutionResponse(BaseModel):
    model_config = ConfigDict(extra="forbid")
    execution_id: str
    task_id: str
    executor_id: str
    status: ExecutionStatus
    reward_amount_snapshot: Decimal
    executor_level_snapshot: UserLevel
    final_reward: Decimal | None
    submitted_at: str
    verified_at: str | None
    verifier_id: str | None
    proof_ref: str | None
    rejection_reason: str | None
    appeal_deadline: str | None
    appeal_count: int
    auto_approve_at: str | None

    @classmethod
    def from_execution(cls, execution: Execution) -> ExecutionResponse:
        return cls(
            execution_id=execution.execution_id,
            task_id=execution.task_id,
            executor_id=execution.executor_id,
            status=execution.status,
            reward_amount_snapshot=execution.reward_amount_snapshot,
            executor_level_snapshot=execution.executor_level_snapshot,
            final_reward=execution.final_reward,
            submitted_at=execution.submitted_at,
            verified_at=execution.verified_at,
            verifier_id=execution.verifier_id,
            proof_ref=execution.proof_ref,
            rejection_reason=execution.rejection_reason,
            appeal_deadline=execution.appeal_deadline,
            appeal_count=execution.appeal_count,
            auto_approve_at=execution.auto_approve_at,
        )


class ExecutionListResponse(BaseModel):
    model_config = ConfigDict(extra="forbid")
    executions: list[ExecutionResponse]
