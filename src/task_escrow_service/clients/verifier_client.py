"""Async HTTP client for the external completion verifier."""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Any

import httpx

from task_escrow_service.core.exceptions import ExternalVerifierTimeout, ServiceError
from task_escrow_service.logging import get_logger
from task_escrow_service.models import VerificationResult

if TYPE_CHECKING:
    from task_escrow_service.models import Task


class Verifier(ABC):
    """Checks on the messaging platform whether an executor really completed a task."""

    @abstractmethod
    async def verify_completion(self, executor_id: str, task: Task) -> VerificationResult:
        """
        Raises:
            ExternalVerifierTimeout: the platform did not answer in time.
            ServiceError: VERIFIER_UNAVAILABLE for any other transport failure.
        """

    async def close(self) -> None:
        """Release any held resources."""


class HttpVerifierClient(Verifier):
    """
    Verifier backed by an HTTP endpoint.

    POSTs {executor_id, task_id, task_type, target} and expects
    {success: bool, reason: str} back.
    """

    def __init__(self, base_url: str, verify_path: str, timeout_seconds: float) -> None:
        self._base_url = base_url
        self._verify_path = verify_path
        self._client = httpx.AsyncClient(
            base_url=base_url,
            timeout=httpx.Timeout(timeout_seconds),
        )

    async def verify_completion(self, executor_id: str, task: Task) -> VerificationResult:
        logger = get_logger(__name__)

        try:
            response = await self._client.post(
                self._verify_path,
                json={
                    "executor_id": executor_id,
                    "task_id": task.task_id,
                    "task_type": task.type.value,
                    "target": task.target,
                },
            )
        except httpx.TimeoutException as exc:
            logger.warning(
                "Verifier timed out",
                extra={"error": str(exc), "base_url": self._base_url, "task_id": task.task_id},
            )
            raise ExternalVerifierTimeout from exc
        except httpx.HTTPError as exc:
            logger.warning(
                "Verifier connection failed",
                extra={"error": str(exc), "base_url": self._base_url},
            )
            raise ServiceError(
                error="VERIFIER_UNAVAILABLE",
                message="Cannot connect to verifier",
                status_code=502,
                details={},
            ) from exc

        if response.status_code != 200:
            logger.warning(
                "Verifier unexpected status",
                extra={"status_code": response.status_code, "base_url": self._base_url},
            )
            raise ServiceError(
                error="VERIFIER_UNAVAILABLE",
                message="Verifier returned unexpected status",
                status_code=502,
                details={"status_code": response.status_code},
            )

        result: dict[str, Any] = response.json()
        success = result.get("success")
        if not isinstance(success, bool):
            raise ServiceError(
                error="VERIFIER_UNAVAILABLE",
                message="Verifier returned a malformed response",
                status_code=502,
                details={},
            )
        reason = str(result.get("reason") or ("verified" if success else "verification failed"))
        return VerificationResult(success=success, reason=reason)

    async def close(self) -> None:
        """Close the underlying HTTP client."""
        await self._client.aclose()
