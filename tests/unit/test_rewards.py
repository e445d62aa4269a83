"""Unit tests for the reward and commission tables."""

from __future__ import annotations

from decimal import Decimal

import pytest

from task_escrow_service.models import TaskType, UserLevel
from task_escrow_service.services.rewards import (
    TASK_TYPE_RULES,
    apply_multiplier,
    cancellation_refund,
    commission_rate,
    daily_creation_quota,
    escrow_amount,
    level_multiplier,
    levels_up_to,
    meets_level,
    task_cost,
)


@pytest.mark.unit
@pytest.mark.parametrize(
    ("level", "multiplier", "rate", "quota"),
    [
        (UserLevel.BRONZE, Decimal("1.0"), Decimal("0.07"), 5),
        (UserLevel.SILVER, Decimal("1.2"), Decimal("0.06"), 15),
        (UserLevel.GOLD, Decimal("1.35"), Decimal("0.05"), 30),
        (UserLevel.PREMIUM, Decimal("1.5"), Decimal("0.03"), None),
    ],
)
def test_level_tables(level, multiplier, rate, quota) -> None:
    assert level_multiplier(level) == multiplier
    assert commission_rate(level) == rate
    assert daily_creation_quota(level) == quota


@pytest.mark.unit
def test_creation_cost_includes_commission_on_top() -> None:
    """100 x 10 at the bronze rate debits 1070, of which 1000 is escrowed."""
    assert task_cost(Decimal(100), 10, commission_rate(UserLevel.BRONZE)) == Decimal("1070.00")
    assert escrow_amount(Decimal(100), 10) == Decimal("1000.00")


@pytest.mark.unit
def test_gold_executor_earns_multiplied_reward() -> None:
    assert apply_multiplier(Decimal(100), UserLevel.GOLD) == Decimal("135.00")
    assert apply_multiplier(Decimal(100), UserLevel.BRONZE) == Decimal("100.00")


@pytest.mark.unit
def test_multiplier_rounds_half_up_to_cents() -> None:
    # 0.15 * 1.35 = 0.2025
    assert apply_multiplier(Decimal("0.15"), UserLevel.GOLD) == Decimal("0.20")
    # 0.25 * 1.5 = 0.375
    assert apply_multiplier(Decimal("0.25"), UserLevel.PREMIUM) == Decimal("0.38")


@pytest.mark.unit
def test_cancellation_refund_is_ninety_percent_floored() -> None:
    assert cancellation_refund(Decimal(400)) == Decimal("360.00")
    # 90% of 55 is 49.5, floored to a whole unit
    assert cancellation_refund(Decimal(55)) == Decimal("49.00")
    assert cancellation_refund(Decimal(0)) == Decimal("0.00")


@pytest.mark.unit
def test_level_ordering() -> None:
    assert levels_up_to(UserLevel.BRONZE) == (UserLevel.BRONZE,)
    assert levels_up_to(UserLevel.GOLD) == (UserLevel.BRONZE, UserLevel.SILVER, UserLevel.GOLD)
    assert meets_level(UserLevel.GOLD, UserLevel.SILVER)
    assert meets_level(UserLevel.SILVER, UserLevel.SILVER)
    assert not meets_level(UserLevel.BRONZE, UserLevel.SILVER)


@pytest.mark.unit
def test_every_task_type_has_a_rule() -> None:
    assert set(TASK_TYPE_RULES) == set(TaskType)
    assert TASK_TYPE_RULES[TaskType.SUBSCRIBE].auto_verifiable
    assert not TASK_TYPE_RULES[TaskType.USE_BOT].auto_verifiable
    for rule in TASK_TYPE_RULES.values():
        assert rule.min_reward < rule.max_reward
