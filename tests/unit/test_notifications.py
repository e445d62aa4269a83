"""Unit tests for notification dispatch and domain event publishing."""

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from task_escrow_service.services import events as ev
from task_escrow_service.services.notifications import NotificationDispatcher


@pytest.mark.unit
async def test_dispatch_delivers_in_background() -> None:
    notifier = AsyncMock()
    dispatcher = NotificationDispatcher(notifier)

    dispatcher.dispatch("bob", "execution_approved", {"execution_id": "exec-1"})
    assert dispatcher.pending_count == 1

    await dispatcher.drain()

    assert dispatcher.pending_count == 0
    notifier.notify.assert_awaited_once_with(
        "bob", "execution_approved", {"execution_id": "exec-1"}
    )


@pytest.mark.unit
async def test_failed_delivery_is_logged_not_raised() -> None:
    notifier = AsyncMock()
    notifier.notify = AsyncMock(side_effect=ConnectionError("unreachable"))
    dispatcher = NotificationDispatcher(notifier)

    with patch("task_escrow_service.services.notifications.get_logger") as get_logger:
        dispatcher.dispatch("bob", "task_completed", {"task_id": "task-1"})
        await dispatcher.drain()

    get_logger.return_value.exception.assert_called_once()
    assert dispatcher.pending_count == 0


@pytest.mark.unit
async def test_dispatch_does_not_wait_for_slow_notifier() -> None:
    release = asyncio.Event()

    async def _slow(*_args) -> None:
        await release.wait()

    notifier = AsyncMock()
    notifier.notify = AsyncMock(side_effect=_slow)
    dispatcher = NotificationDispatcher(notifier)

    dispatcher.dispatch("bob", "execution_rejected", {})
    await asyncio.sleep(0)
    assert dispatcher.pending_count == 1

    release.set()
    await dispatcher.drain()
    assert dispatcher.pending_count == 0


@pytest.mark.unit
async def test_close_drains_then_closes_notifier() -> None:
    notifier = AsyncMock()
    dispatcher = NotificationDispatcher(notifier)
    dispatcher.dispatch("bob", "task_cancelled", {})

    await dispatcher.close()

    notifier.notify.assert_awaited_once()
    notifier.close.assert_awaited_once()


@pytest.mark.unit
def test_in_memory_publisher_records_events() -> None:
    port = ev.InMemoryEventPublisher()

    ev.publish_safely(port, ev.TASK_CREATED, {"task_id": "task-1"})
    ev.publish_safely(port, ev.TASK_CANCELLED, {"task_id": "task-1"})

    assert port.names() == ["task:created", "task:cancelled"]
    assert port.of(ev.TASK_CREATED)[0].payload == {"task_id": "task-1"}
    assert port.events[0].occurred_at.endswith("Z")


@pytest.mark.unit
def test_publish_safely_swallows_sink_errors() -> None:
    port = MagicMock(spec=ev.DomainEventPort)
    port.publish.side_effect = RuntimeError("sink down")

    with patch("task_escrow_service.services.events.get_logger") as get_logger:
        ev.publish_safely(port, ev.TASK_EXPIRED, {"task_id": "task-1"})

    port.publish.assert_called_once()
    get_logger.return_value.exception.assert_called_once()


@pytest.mark.unit
def test_logging_publisher_writes_event() -> None:
    event = ev.DomainEvent(name=ev.TASK_COMPLETED, payload={"task_id": "task-1"})

    with patch("task_escrow_service.services.events.get_logger") as get_logger:
        ev.LoggingEventPublisher().publish(event)

    get_logger.return_value.info.assert_called_once()
    assert get_logger.return_value.info.call_args.kwargs["extra"]["event"] == "task:completed"
