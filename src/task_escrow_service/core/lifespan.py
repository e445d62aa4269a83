"""Application lifecycle management."""

from __future__ import annotations

import asyncio
import contextlib
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

from task_escrow_service.clients.notification_client import (
    HttpNotificationClient,
    LoggingNotifier,
    Notifier,
)
from task_escrow_service.clients.verifier_client import HttpVerifierClient
from task_escrow_service.config import get_safe_config, get_settings
from task_escrow_service.core.state import AppState, init_app_state
from task_escrow_service.logging import get_logger, setup_logging
from task_escrow_service.services.cancellation import CancellationEngine
from task_escrow_service.services.database import Database
from task_escrow_service.services.events import LoggingEventPublisher
from task_escrow_service.services.execution_machine import ExecutionStateMachine
from task_escrow_service.services.ledger import EscrowLedger
from task_escrow_service.services.notifications import NotificationDispatcher
from task_escrow_service.services.sweeper import AutoApprovalSweeper
from task_escrow_service.services.task_factory import TaskFactory
from task_escrow_service.services.task_store import TaskStore

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from fastapi import FastAPI

    from task_escrow_service.config import Settings


def build_services(settings: Settings, state: AppState) -> None:
    """Wire the database, ledger, and domain services into ``state``."""
    database = Database(settings.database.path, settings.database.busy_timeout_ms)
    state.database = database

    ledger = EscrowLedger(database)
    ledger.ensure_account(settings.platform.account_id)
    state.ledger = ledger

    store = TaskStore(database)
    state.task_store = store

    state.event_port = LoggingEventPublisher()

    notifier: Notifier
    if settings.notifications.base_url is None:
        notifier = LoggingNotifier()
    else:
        notifier = HttpNotificationClient(
            base_url=settings.notifications.base_url,
            notify_path=settings.notifications.notify_path,
            timeout_seconds=settings.notifications.timeout_seconds,
        )
    state.notifications = NotificationDispatcher(notifier)

    if settings.verifier.base_url is not None:
        state.verifier = HttpVerifierClient(
            base_url=settings.verifier.base_url,
            verify_path=settings.verifier.verify_path,
            timeout_seconds=settings.verifier.timeout_seconds,
        )

    state.task_factory = TaskFactory(
        database=database,
        store=store,
        ledger=ledger,
        event_port=state.event_port,
        config=settings.tasks,
        platform_account_id=settings.platform.account_id,
    )
    state.execution_machine = ExecutionStateMachine(
        database=database,
        store=store,
        ledger=ledger,
        event_port=state.event_port,
        notifications=state.notifications,
        moderation=settings.moderation,
        verifier=state.verifier,
        verifier_timeout_seconds=settings.verifier.timeout_seconds,
    )
    state.cancellation = CancellationEngine(
        database=database,
        store=store,
        ledger=ledger,
        event_port=state.event_port,
        notifications=state.notifications,
        platform_account_id=settings.platform.account_id,
        max_reason_length=settings.moderation.max_reason_length,
    )
    state.sweeper = AutoApprovalSweeper(
        database=database,
        store=store,
        machine=state.execution_machine,
        cancellation=state.cancellation,
        config=settings.sweeper,
    )


@asynccontextmanager
async def lifespan(_app: FastAPI) -> AsyncIterator[None]:
    """Manage application lifecycle."""
    # === STARTUP ===
    settings = get_settings()

    setup_logging(settings.logging.level, settings.service.name, settings.logging.directory)
    logger = get_logger(__name__)

    state = init_app_state()
    build_services(settings, state)

    if settings.sweeper.enabled and state.sweeper is not None:
        state.sweeper_task = asyncio.create_task(state.sweeper.run())

    logger.info("Service starting", extra={"config": get_safe_config()})

    yield  # Application runs here

    # === SHUTDOWN ===
    logger.info("Service shutting down", extra={"uptime_seconds": state.uptime_seconds})

    if state.sweeper is not None:
        state.sweeper.stop()
    if state.sweeper_task is not None:
        state.sweeper_task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await state.sweeper_task

    if state.notifications is not None:
        await state.notifications.close()
    if state.verifier is not None:
        await state.verifier.close()
    if state.database is not None:
        state.database.close()
