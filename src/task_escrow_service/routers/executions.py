"""Execution submission and moderation endpoints."""

from __future__ import annotations

from fastapi import APIRouter, Query, Request

from task_escrow_service.core.state import get_app_state
from task_escrow_service.routers.validation import read_body, reject_reserved_actor
from task_escrow_service.schemas import (
    AppealRequest,
    ApproveRequest,
    ExecutionListResponse,
    ExecutionResponse,
    RejectRequest,
    SubmitExecutionRequest,
)
from task_escrow_service.services.execution_machine import ExecutionStateMachine

router = APIRouter()


def _machine() -> ExecutionStateMachine:
    state = get_app_state()
    if state.execution_machine is None:
        msg = "ExecutionStateMachine not initialized"
        raise RuntimeError(msg)
    return state.execution_machine


@router.post("/tasks/{task_id}/executions", status_code=201, response_model=ExecutionResponse)
async def submit_execution(task_id: str, request: Request) -> ExecutionResponse:
    """Submit a completion. AUTO tasks may come back already approved or rejected."""
    body = await read_body(await request.body(), SubmitExecutionRequest)
    execution = await _machine().submit(body.executor_id, task_id, body.proof_ref)
    return ExecutionResponse.from_execution(execution)


@router.post("/executions/{execution_id}/approve", response_model=ExecutionResponse)
async def approve_execution(execution_id: str, request: Request) -> ExecutionResponse:
    body = await read_body(await request.body(), ApproveRequest)
    reject_reserved_actor(body.actor_id)
    execution = await _machine().approve(execution_id, body.actor_id)
    return ExecutionResponse.from_execution(execution)


@router.post("/executions/{execution_id}/reject", response_model=ExecutionResponse)
async def reject_execution(execution_id: str, request: Request) -> ExecutionResponse:
    body = await read_body(await request.body(), RejectRequest)
    reject_reserved_actor(body.actor_id)
    execution = await _machine().reject(execution_id, body.actor_id, body.reason)
    return ExecutionResponse.from_execution(execution)


@router.post("/executions/{execution_id}/appeal", response_model=ExecutionResponse)
async def appeal_execution(execution_id: str, request: Request) -> ExecutionResponse:
    body = await read_body(await request.body(), AppealRequest)
    execution = await _machine().appeal(execution_id, body.executor_id, body.text)
    return ExecutionResponse.from_execution(execution)


@router.get("/executions/{execution_id}", response_model=ExecutionResponse)
async def get_execution(execution_id: str) -> ExecutionResponse:
    return ExecutionResponse.from_execution(await _machine().get_execution(execution_id))


@router.get("/moderation/{creator_id}/pending", response_model=ExecutionListResponse)
async def list_pending(
    creator_id: str,
    limit: int = Query(default=100, ge=1, le=500),
) -> ExecutionListResponse:
    """Moderation queue for a creator, oldest submission first."""
    executions = await _machine().list_pending_for_creator(creator_id, limit)
    return ExecutionListResponse(
        executions=[ExecutionResponse.from_execution(e) for e in executions]
    )
