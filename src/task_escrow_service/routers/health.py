"""Health check endpoint."""

from __future__ import annotations

from fastapi import APIRouter

from task_escrow_service.core.state import get_app_state
from task_escrow_service.models import TaskStatus
from task_escrow_service.schemas import HealthResponse

router = APIRouter()


@router.get("/health", response_model=HealthResponse)
async def health_check() -> HealthResponse:
    """Check service health, task counts and ledger consistency."""
    state = get_app_state()
    tasks_by_status = {status.value: 0 for status in TaskStatus}
    total_tasks = 0
    total_accounts = 0
    inconsistent: list[str] = []

    if state.task_store is not None:
        tasks_by_status.update(state.task_store.count_tasks_by_status())
        total_tasks = state.task_store.count_tasks()
    if state.ledger is not None:
        total_accounts = state.ledger.count_accounts()
        inconsistent = [r.account_id for r in state.ledger.find_inconsistent_accounts()]

    return HealthResponse(
        status="ok",
        uptime_seconds=state.uptime_seconds,
        started_at=state.started_at,
        total_tasks=total_tasks,
        tasks_by_status=tasks_by_status,
        total_accounts=total_accounts,
        ledger_consistent=len(inconsistent) == 0,
        inconsistent_accounts=inconsistent,
    )
