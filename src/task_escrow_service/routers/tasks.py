"""Task lifecycle endpoints."""

from __future__ import annotations

from fastapi import APIRouter, Query, Request

from task_escrow_service.core.state import get_app_state
from task_escrow_service.models import (
    ExecutionStatus,
    TaskSpec,
    TaskStatus,
    TaskType,
    UserLevel,
)
from task_escrow_service.routers.validation import read_body
from task_escrow_service.schemas import (
    CancellationResponse,
    CancelTaskRequest,
    CreateTaskRequest,
    CreatorActionRequest,
    EligiblePageResponse,
    ExecutionListResponse,
    ExecutionResponse,
    TaskListResponse,
    TaskResponse,
    TaskStatisticsResponse,
)
from task_escrow_service.services.cancellation import CancellationEngine
from task_escrow_service.services.execution_machine import ExecutionStateMachine
from task_escrow_service.services.task_factory import MAX_PAGE_SIZE, TaskFactory

router = APIRouter()


def _factory() -> TaskFactory:
    state = get_app_state()
    if state.task_factory is None:
        msg = "TaskFactory not initialized"
        raise RuntimeError(msg)
    return state.task_factory


def _cancellation() -> CancellationEngine:
    state = get_app_state()
    if state.cancellation is None:
        msg = "CancellationEngine not initialized"
        raise RuntimeError(msg)
    return state.cancellation


def _machine() -> ExecutionStateMachine:
    state = get_app_state()
    if state.execution_machine is None:
        msg = "ExecutionStateMachine not initialized"
        raise RuntimeError(msg)
    return state.execution_machine


# ---------------------------------------------------------------------------
# Collection routes (MUST be before GET /tasks/{task_id})
# ---------------------------------------------------------------------------


@router.post("/tasks", status_code=201, response_model=TaskResponse)
async def create_task(request: Request) -> TaskResponse:
    """Create a task and reserve its cost from the creator."""
    body = await read_body(await request.body(), CreateTaskRequest)
    spec = TaskSpec(
        type=body.type,
        title=body.title,
        reward=body.reward,
        target_count=body.target_count,
        description=body.description,
        target=body.target,
        min_executor_level=body.min_executor_level,
        verification_mode=body.verification_mode,
        auto_approve_hours=body.auto_approve_hours,
        expires_at=body.expires_at,
        is_boosted=body.is_boosted,
        priority=body.priority,
    )
    task = await _factory().create_task(body.creator_id, spec)
    return TaskResponse.from_task(task)


@router.get("/tasks", response_model=TaskListResponse)
async def list_creator_tasks(
    creator_id: str,
    status: TaskStatus | None = None,
    limit: int | None = Query(default=None, ge=1, le=MAX_PAGE_SIZE),
    offset: int | None = Query(default=None, ge=0),
) -> TaskListResponse:
    """A creator's tasks, newest first."""
    tasks = await _factory().list_creator_tasks(creator_id, status, limit, offset)
    return TaskListResponse(tasks=[TaskResponse.from_task(task) for task in tasks])


@router.get("/tasks/eligible", response_model=EligiblePageResponse)
async def list_eligible(
    executor_id: str,
    level: UserLevel,
    type: TaskType | None = None,  # noqa: A002
    limit: int = Query(default=20, ge=1, le=MAX_PAGE_SIZE),
    cursor: str | None = None,
) -> EligiblePageResponse:
    """Feed of tasks the executor may take."""
    page = await _factory().list_eligible(executor_id, level, type, limit, cursor)
    return EligiblePageResponse.from_page(page)


# ---------------------------------------------------------------------------
# Creator actions
# ---------------------------------------------------------------------------


@router.post("/tasks/{task_id}/pause", response_model=TaskResponse)
async def pause_task(task_id: str, request: Request) -> TaskResponse:
    body = await read_body(await request.body(), CreatorActionRequest)
    return TaskResponse.from_task(await _factory().pause_task(task_id, body.creator_id))


@router.post("/tasks/{task_id}/resume", response_model=TaskResponse)
async def resume_task(task_id: str, request: Request) -> TaskResponse:
    body = await read_body(await request.body(), CreatorActionRequest)
    return TaskResponse.from_task(await _factory().resume_task(task_id, body.creator_id))


@router.post("/tasks/{task_id}/cancel", response_model=CancellationResponse)
async def cancel_task(task_id: str, request: Request) -> CancellationResponse:
    """Cancel a task; the response reports the refund and the forfeited share."""
    body = await read_body(await request.body(), CancelTaskRequest)
    result = await _cancellation().cancel(task_id, body.creator_id, body.reason)
    return CancellationResponse.from_result(result)


# ---------------------------------------------------------------------------
# Task sub-resources
# ---------------------------------------------------------------------------


@router.get("/tasks/{task_id}/statistics", response_model=TaskStatisticsResponse)
async def get_task_statistics(task_id: str) -> TaskStatisticsResponse:
    stats = await _factory().get_task_statistics(task_id)
    return TaskStatisticsResponse.from_statistics(stats)


@router.get("/tasks/{task_id}/executions", response_model=ExecutionListResponse)
async def list_task_executions(
    task_id: str,
    status: ExecutionStatus | None = None,
) -> ExecutionListResponse:
    executions = await _machine().list_task_executions(task_id, status)
    return ExecutionListResponse(
        executions=[ExecutionResponse.from_execution(e) for e in executions]
    )


# ---------------------------------------------------------------------------
# GET /tasks/{task_id} (MUST be LAST, parameterized catch-all)
# ---------------------------------------------------------------------------


@router.get("/tasks/{task_id}", response_model=TaskResponse)
async def get_task(task_id: str) -> TaskResponse:
    """Get full task details."""
    return TaskResponse.from_task(await _factory().get_task(task_id))
