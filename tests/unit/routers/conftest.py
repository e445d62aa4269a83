"""Router test fixtures: a real app over a temp database."""

from __future__ import annotations

import os
from typing import TYPE_CHECKING, Any

import pytest
from httpx import ASGITransport, AsyncClient

from task_escrow_service.app import create_app
from task_escrow_service.config import clear_settings_cache
from task_escrow_service.core.lifespan import lifespan
from task_escrow_service.core.state import reset_app_state
from tests.helpers import config_yaml

if TYPE_CHECKING:
    from collections.abc import AsyncIterator
    from pathlib import Path

# ---------------------------------------------------------------------------
# Fixed account IDs
# ---------------------------------------------------------------------------
ALICE = "alice"
BOB = "bob"
CAROL = "carol"


# ---------------------------------------------------------------------------
# App + client fixtures
# ---------------------------------------------------------------------------
@pytest.fixture
async def app(tmp_path: Path) -> AsyncIterator[Any]:
    """Create a test app with a temp database and the sweeper disabled."""
    config_path = tmp_path / "config.yaml"
    config_path.write_text(config_yaml(str(tmp_path / "test.db")))

    old_config = os.environ.get("CONFIG_PATH")
    os.environ["CONFIG_PATH"] = str(config_path)

    clear_settings_cache()
    reset_app_state()

    test_app = create_app()
    async with lifespan(test_app):
        yield test_app

    reset_app_state()
    clear_settings_cache()
    if old_config is None:
        os.environ.pop("CONFIG_PATH", None)
    else:
        os.environ["CONFIG_PATH"] = old_config


@pytest.fixture
async def client(app: Any) -> AsyncIterator[AsyncClient]:
    """Create an async HTTP client for the test app."""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as c:
        yield c


# ---------------------------------------------------------------------------
# Request helper functions
# ---------------------------------------------------------------------------
async def open_account(
    client: AsyncClient,
    account_id: str,
    balance: int | str = 0,
    level: str = "bronze",
) -> Any:
    """Open an account via POST /accounts and return the response."""
    return await client.post(
        "/accounts",
        json={"account_id": account_id, "level": level, "initial_balance": balance},
    )


async def create_task(
    client: AsyncClient,
    creator_id: str = ALICE,
    *,
    task_type: str = "subscribe",
    title: str = "Subscribe to the channel",
    reward: int | str = 100,
    target_count: int = 10,
    **extra: Any,
) -> Any:
    """Create a MANUAL task via POST /tasks and return the response."""
    payload: dict[str, Any] = {
        "creator_id": creator_id,
        "type": task_type,
        "title": title,
        "reward": reward,
        "target_count": target_count,
        "verification_mode": "manual",
    }
    payload.update(extra)
    return await client.post("/tasks", json=payload)


async def submit_execution(
    client: AsyncClient,
    task_id: str,
    executor_id: str = BOB,
    proof_ref: str | None = None,
) -> Any:
    """Submit an execution via POST /tasks/{task_id}/executions."""
    return await client.post(
        f"/tasks/{task_id}/executions",
        json={"executor_id": executor_id, "proof_ref": proof_ref},
    )


async def funded_task(client: AsyncClient, **task_fields: Any) -> dict[str, Any]:
    """Open alice (funded) and bob, create a task, and return its JSON."""
    assert (await open_account(client, ALICE, 100000)).status_code == 201
    assert (await open_account(client, BOB)).status_code == 201
    response = await create_task(client, ALICE, **task_fields)
    assert response.status_code == 201
    return response.json()
