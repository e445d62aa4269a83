"""API routers."""

from task_escrow_service.routers import accounts, executions, health, tasks

__all__ = ["accounts", "executions", "health", "tasks"]
