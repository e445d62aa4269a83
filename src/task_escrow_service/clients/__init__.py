"""HTTP clients for the verifier and notification endpoints."""

from task_escrow_service.clients.notification_client import (
    HttpNotificationClient,
    LoggingNotifier,
    Notifier,
)
from task_escrow_service.clients.verifier_client import HttpVerifierClient, Verifier

__all__ = [
    "HttpNotificationClient",
    "HttpVerifierClient",
    "LoggingNotifier",
    "Notifier",
    "Verifier",
]
