"""Task Escrow Service - task rewards, executions and the escrow ledger."""

__version__ = "0.1.0"
