"""Unit test fixtures — auto-clear caches between tests."""

from __future__ import annotations

from typing import TYPE_CHECKING

import pytest

from task_escrow_service.config import clear_settings_cache
from task_escrow_service.core.state import reset_app_state
from tests.helpers import Stack, build_stack

if TYPE_CHECKING:
    from collections.abc import Iterator
    from pathlib import Path


@pytest.fixture(autouse=True)
def _clear_caches():
    """Clear settings cache and app state between tests."""
    clear_settings_cache()
    reset_app_state()
    yield
    clear_settings_cache()
    reset_app_state()


@pytest.fixture
def db_path(tmp_path: Path) -> str:
    return str(tmp_path / "task-escrow.db")


@pytest.fixture
def stack(db_path: str) -> Iterator[Stack]:
    """Every domain service over a fresh database, with in-memory events."""
    services = build_stack(db_path)
    yield services
    services.close()
