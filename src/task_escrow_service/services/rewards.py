"""
Reward and commission tables.

Pure lookups with no state: level multipliers applied to executor rewards,
commission rates charged to creators at task creation, daily creation
quotas, and the task-type catalogue.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from decimal import Decimal

from task_escrow_service.models import TaskType, UserLevel, quantize

LEVEL_ORDER: tuple[UserLevel, ...] = (
    UserLevel.BRONZE,
    UserLevel.SILVER,
    UserLevel.GOLD,
    UserLevel.PREMIUM,
)

_LEVEL_MULTIPLIERS: dict[UserLevel, Decimal] = {
    UserLevel.BRONZE: Decimal("1.0"),
    UserLevel.SILVER: Decimal("1.2"),
    UserLevel.GOLD: Decimal("1.35"),
    UserLevel.PREMIUM: Decimal("1.5"),
}

_COMMISSION_RATES: dict[UserLevel, Decimal] = {
    UserLevel.BRONZE: Decimal("0.07"),
    UserLevel.SILVER: Decimal("0.06"),
    UserLevel.GOLD: Decimal("0.05"),
    UserLevel.PREMIUM: Decimal("0.03"),
}

# None means unlimited
_DAILY_CREATION_QUOTA: dict[UserLevel, int | None] = {
    UserLevel.BRONZE: 5,
    UserLevel.SILVER: 15,
    UserLevel.GOLD: 30,
    UserLevel.PREMIUM: None,
}

CANCELLATION_REFUND_RATE = Decimal("0.9")


@dataclass(frozen=True)
class TaskTypeRule:
    min_reward: Decimal
    max_reward: Decimal
    auto_verifiable: bool


TASK_TYPE_RULES: dict[TaskType, TaskTypeRule] = {
    TaskType.SUBSCRIBE: TaskTypeRule(Decimal(50), Decimal(500), auto_verifiable=True),
    TaskType.JOIN_GROUP: TaskTypeRule(Decimal(75), Decimal(750), auto_verifiable=True),
    TaskType.VIEW_POST: TaskTypeRule(Decimal(25), Decimal(200), auto_verifiable=True),
    TaskType.REACT_POST: TaskTypeRule(Decimal(30), Decimal(150), auto_verifiable=True),
    TaskType.USE_BOT: TaskTypeRule(Decimal(100), Decimal(1500), auto_verifiable=False),
    TaskType.PREMIUM_BOOST: TaskTypeRule(Decimal(500), Decimal(2000), auto_verifiable=False),
}


def level_multiplier(level: UserLevel) -> Decimal:
    return _LEVEL_MULTIPLIERS[level]


def commission_rate(level: UserLevel) -> Decimal:
    return _COMMISSION_RATES[level]


def daily_creation_quota(level: UserLevel) -> int | None:
    return _DAILY_CREATION_QUOTA[level]


def level_rank(level: UserLevel) -> int:
    return LEVEL_ORDER.index(level)


def levels_up_to(level: UserLevel) -> tuple[UserLevel, ...]:
    """All levels a task may require for an executor of the given level to see it."""
    return LEVEL_ORDER[: level_rank(level) + 1]


def meets_level(level: UserLevel, required: UserLevel) -> bool:
    return level_rank(level) >= level_rank(required)


def apply_multiplier(base_reward: Decimal, level: UserLevel) -> Decimal:
    """Executor credit for one approved completion."""
    return quantize(base_reward * level_multiplier(level))


def escrow_amount(reward: Decimal, target_count: int) -> Decimal:
    return quantize(reward * target_count)


def task_cost(reward: Decimal, target_count: int, rate: Decimal) -> Decimal:
    """Total debit at creation: the escrowed budget plus commission on top."""
    return quantize(reward * target_count * (1 + rate))


def cancellation_refund(remaining: Decimal) -> Decimal:
    """Creator refund on cancellation: 90% of the remaining budget, floored to a whole unit."""
    return quantize(Decimal(math.floor(remaining * CANCELLATION_REFUND_RATE)))
