"""Fire-and-forget delivery of user notifications."""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING, Any

from task_escrow_service.logging import get_logger

if TYPE_CHECKING:
    from task_escrow_service.clients.notification_client import Notifier


class NotificationDispatcher:
    """
    Schedules notifications as background tasks.

    Delivery never blocks the caller and a failed delivery is logged, not
    raised: the state change it reports has already committed.
    """

    def __init__(self, notifier: Notifier) -> None:
        self._notifier = notifier
        self._pending: set[asyncio.Task[None]] = set()

    def dispatch(self, user_id: str, event_type: str, payload: dict[str, Any]) -> None:
        """Schedule one delivery on the running event loop."""
        task = asyncio.get_running_loop().create_task(
            self._deliver(user_id, event_type, payload)
        )
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _deliver(self, user_id: str, event_type: str, payload: dict[str, Any]) -> None:
        try:
            await self._notifier.notify(user_id, event_type, payload)
        except asyncio.CancelledError:
            raise
        except Exception:
            get_logger(__name__).exception(
                "Notification delivery failed",
                extra={"user_id": user_id, "event_type": event_type},
            )

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    async def drain(self) -> None:
        """Wait for all scheduled deliveries to finish."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    async def close(self) -> None:
        await self.drain()
        await self._notifier.close()
