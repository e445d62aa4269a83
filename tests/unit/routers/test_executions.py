"""Execution submission and moderation endpoint tests."""

from __future__ import annotations

from decimal import Decimal

import pytest

from tests.helpers import MODERATOR_ID
from tests.unit.routers.conftest import (
    ALICE,
    BOB,
    CAROL,
    funded_task,
    open_account,
    submit_execution,
)


@pytest.mark.unit
async def test_submit_returns_201_pending(client):
    task = await funded_task(client)

    response = await submit_execution(client, task["task_id"], BOB, proof_ref="shot-1")

    assert response.status_code == 201
    data = response.json()
    assert data["status"] == "pending"
    assert data["executor_level_snapshot"] == "bronze"
    assert Decimal(data["reward_amount_snapshot"]) == Decimal(100)
    assert data["final_reward"] is None
    assert data["proof_ref"] == "shot-1"
    assert data["auto_approve_at"] is not None


@pytest.mark.unit
async def test_submit_errors(client):
    task = await funded_task(client)
    task_id = task["task_id"]

    own = await submit_execution(client, task_id, ALICE)
    assert own.status_code == 400
    assert own.json()["error"] == "SELF_EXECUTION"

    ghost = await submit_execution(client, task_id, "ghost")
    assert ghost.status_code == 404

    assert (await submit_execution(client, task_id, BOB)).status_code == 201
    duplicate = await submit_execution(client, task_id, BOB)
    assert duplicate.status_code == 409
    assert duplicate.json()["details"] == {"reason": "EXECUTION_EXISTS"}


@pytest.mark.unit
async def test_ineligible_executor_returns_400(client):
    task = await funded_task(client, min_executor_level="silver")

    response = await submit_execution(client, task["task_id"], BOB)

    assert response.status_code == 400
    assert response.json()["error"] == "EXECUTOR_INELIGIBLE"


@pytest.mark.unit
async def test_approve_pays_executor_once(client):
    task = await funded_task(client)
    await client.put(f"/accounts/{BOB}/level", json={"level": "gold"})
    execution = (await submit_execution(client, task["task_id"])).json()
    execution_id = execution["execution_id"]

    response = await client.post(
        f"/executions/{execution_id}/approve", json={"actor_id": ALICE}
    )

    assert response.status_code == 200
    data = response.json()
    assert data["status"] == "approved"
    assert Decimal(data["final_reward"]) == Decimal(135)
    assert data["verifier_id"] == ALICE

    retry = await client.post(
        f"/executions/{execution_id}/approve", json={"actor_id": MODERATOR_ID}
    )
    assert retry.status_code == 409
    assert retry.json()["error"] == "ALREADY_PROCESSED"

    bob = (await client.get(f"/accounts/{BOB}")).json()
    assert Decimal(bob["balance"]) == Decimal(135)


@pytest.mark.unit
async def test_system_actor_is_reserved(client):
    task = await funded_task(client)
    execution = (await submit_execution(client, task["task_id"])).json()

    for action, body in (
        ("approve", {"actor_id": "system"}),
        ("reject", {"actor_id": "system", "reason": "nope"}),
    ):
        response = await client.post(
            f"/executions/{execution['execution_id']}/{action}", json=body
        )
        assert response.status_code == 400
        assert response.json()["error"] == "INVALID_ACTOR"


@pytest.mark.unit
async def test_stranger_cannot_moderate(client):
    task = await funded_task(client)
    execution = (await submit_execution(client, task["task_id"])).json()

    response = await client.post(
        f"/executions/{execution['execution_id']}/approve", json={"actor_id": CAROL}
    )

    assert response.status_code == 403


@pytest.mark.unit
async def test_reject_then_appeal_then_approve(client):
    task = await funded_task(client)
    execution_id = (await submit_execution(client, task["task_id"])).json()["execution_id"]

    rejected = await client.post(
        f"/executions/{execution_id}/reject",
        json={"actor_id": ALICE, "reason": "Screenshot missing"},
    )
    assert rejected.status_code == 200
    assert rejected.json()["status"] == "rejected"
    assert rejected.json()["appeal_deadline"] is not None

    wrong_user = await client.post(
        f"/executions/{execution_id}/appeal", json={"executor_id": CAROL, "text": "Mine"}
    )
    assert wrong_user.status_code == 403

    appealed = await client.post(
        f"/executions/{execution_id}/appeal",
        json={"executor_id": BOB, "text": "Screenshot attached now"},
    )
    assert appealed.status_code == 200
    assert appealed.json()["status"] == "pending"
    assert appealed.json()["appeal_count"] == 1

    approved = await client.post(
        f"/executions/{execution_id}/approve", json={"actor_id": MODERATOR_ID}
    )
    assert approved.status_code == 200
    assert approved.json()["verifier_id"] == MODERATOR_ID


@pytest.mark.unit
async def test_second_appeal_is_refused(client):
    task = await funded_task(client)
    execution_id = (await submit_execution(client, task["task_id"])).json()["execution_id"]
    reject = {"actor_id": ALICE, "reason": "No proof"}
    appeal = {"executor_id": BOB, "text": "Proof attached"}

    await client.post(f"/executions/{execution_id}/reject", json=reject)
    await client.post(f"/executions/{execution_id}/appeal", json=appeal)
    final = await client.post(f"/executions/{execution_id}/reject", json=reject)
    assert final.json()["appeal_deadline"] is None

    response = await client.post(f"/executions/{execution_id}/appeal", json=appeal)

    assert response.status_code == 409
    assert response.json()["error"] == "INVALID_STATE_TRANSITION"


@pytest.mark.unit
async def test_get_execution_and_moderation_queue(client):
    task = await funded_task(client)
    await open_account(client, CAROL)
    first = (await submit_execution(client, task["task_id"], BOB)).json()
    second = (await submit_execution(client, task["task_id"], CAROL)).json()

    fetched = await client.get(f"/executions/{first['execution_id']}")
    assert fetched.status_code == 200
    assert fetched.json() == first

    queue = (await client.get(f"/moderation/{ALICE}/pending")).json()
    assert [e["execution_id"] for e in queue["executions"]] == [
        first["execution_id"],
        second["execution_id"],
    ]

    assert (await client.get("/executions/exec-missing")).status_code == 404
    assert (await client.get(f"/moderation/{ALICE}/pending?limit=0")).status_code == 400
