"""Service layer components."""

from task_escrow_service.services.cancellation import CancellationEngine
from task_escrow_service.services.database import Database
from task_escrow_service.services.execution_machine import ExecutionStateMachine
from task_escrow_service.services.ledger import EscrowLedger
from task_escrow_service.services.sweeper import AutoApprovalSweeper
from task_escrow_service.services.task_factory import TaskFactory
from task_escrow_service.services.task_store import TaskStore

__all__ = [
    "AutoApprovalSweeper",
    "CancellationEngine",
    "Database",
    "EscrowLedger",
    "ExecutionStateMachine",
    "TaskFactory",
    "TaskStore",
]
