"""Domain event port and its adapters."""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any

from task_escrow_service.logging import get_logger
from task_escrow_service.models import now_utc, to_iso

TASK_CREATED = "task:created"
TASK_COMPLETED = "task:completed"
TASK_CANCELLED = "task:cancelled"
TASK_EXPIRED = "task:expired"
EXECUTION_SUBMITTED = "execution:submitted"
EXECUTION_APPROVED = "execution:approved"
EXECUTION_REJECTED = "execution:rejected"
EXECUTION_APPEALED = "execution:appealed"


@dataclass(frozen=True)
class DomainEvent:
    """A fact about a committed state change."""

    name: str
    payload: dict[str, Any]
    occurred_at: str = field(default_factory=lambda: to_iso(now_utc()))


class DomainEventPort(ABC):
    """Outbound sink for domain events. Called only after the change has committed."""

    @abstractmethod
    def publish(self, event: DomainEvent) -> None:
        """Publish one event."""


class LoggingEventPublisher(DomainEventPort):
    """Writes every event to the service log."""

    def publish(self, event: DomainEvent) -> None:
        get_logger(__name__).info(
            "Domain event",
            extra={"event": event.name, "payload": event.payload, "occurred_at": event.occurred_at},
        )


class InMemoryEventPublisher(DomainEventPort):
    """Keeps published events in a list. Used in testing."""

    def __init__(self) -> None:
        self.events: list[DomainEvent] = []

    def publish(self, event: DomainEvent) -> None:
        self.events.append(event)

    def names(self) -> list[str]:
        return [event.name for event in self.events]

    def of(self, name: str) -> list[DomainEvent]:
        return [event for event in self.events if event.name == name]


def publish_safely(port: DomainEventPort, name: str, payload: dict[str, Any]) -> None:
    """
    Publish an event without letting a sink failure escape.

    The state change has already committed, so a broken sink must not turn
    a successful operation into an error for the caller.
    """
    try:
        port.publish(DomainEvent(name=name, payload=payload))
    except Exception:
        get_logger(__name__).exception("Failed to publish domain event", extra={"event": name})
