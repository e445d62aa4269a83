"""Async HTTP client for user notifications."""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any

import httpx

from task_escrow_service.core.exceptions import ServiceError
from task_escrow_service.logging import get_logger


class Notifier(ABC):
    """Delivers a message about a domain change to one user."""

    @abstractmethod
    async def notify(self, user_id: str, event_type: str, payload: dict[str, Any]) -> None:
        """Deliver one notification."""

    async def close(self) -> None:
        """Release any held resources."""


class LoggingNotifier(Notifier):
    """Notifier used when no endpoint is configured: deliveries are only logged."""

    async def notify(self, user_id: str, event_type: str, payload: dict[str, Any]) -> None:
        get_logger(__name__).info(
            "Notification",
            extra={"user_id": user_id, "event_type": event_type, "payload": payload},
        )


class HttpNotificationClient(Notifier):
    """Notifier that POSTs {user_id, event_type, payload} to an HTTP endpoint."""

    def __init__(self, base_url: str, notify_path: str, timeout_seconds: float) -> None:
        self._base_url = base_url
        self._notify_path = notify_path
        self._client = httpx.AsyncClient(
            base_url=base_url,
            timeout=httpx.Timeout(timeout_seconds),
        )

    async def notify(self, user_id: str, event_type: str, payload: dict[str, Any]) -> None:
        """
        Raises:
            ServiceError: NOTIFICATION_FAILED on transport errors or a non-2xx answer.
        """
        try:
            response = await self._client.post(
                self._notify_path,
                json={"user_id": user_id, "event_type": event_type, "payload": payload},
            )
        except httpx.HTTPError as exc:
            raise ServiceError(
                error="NOTIFICATION_FAILED",
                message="Cannot reach notification endpoint",
                status_code=502,
                details={"base_url": self._base_url},
            ) from exc

        if not response.is_success:
            raise ServiceError(
                error="NOTIFICATION_FAILED",
                message="Notification endpoint returned unexpected status",
                status_code=502,
                details={"status_code": response.status_code},
            )

    async def close(self) -> None:
        """Close the underlying HTTP client."""
        await self._client.aclose()
