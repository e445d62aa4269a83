"""Unit tests for EscrowLedger."""

from __future__ import annotations

import sqlite3
from datetime import timedelta
from decimal import Decimal

import pytest
from freezegun import freeze_time

from task_escrow_service.core.exceptions import (
    InsufficientFunds,
    NotFound,
    ServiceError,
    ValidationError,
)
from task_escrow_service.models import TransactionKind, UserLevel
from task_escrow_service.services.database import Database
from task_escrow_service.services.ledger import EscrowLedger


@pytest.fixture
def ledger(db_path):
    database = Database(db_path)
    yield EscrowLedger(database)
    database.close()


@pytest.mark.unit
def test_open_account_books_initial_balance(ledger) -> None:
    """A starting balance is a CREDIT row, so balance equals the log sum from the start."""
    account = ledger.open_account("alice", UserLevel.SILVER, Decimal(500))

    assert account.balance == Decimal("500.00")
    assert account.level is UserLevel.SILVER
    transactions = ledger.get_transactions("alice")
    assert len(transactions) == 1
    assert transactions[0].kind is TransactionKind.CREDIT
    assert transactions[0].balance_after == Decimal("500.00")
    assert ledger.reconcile("alice").consistent


@pytest.mark.unit
def test_open_account_twice_conflicts(ledger) -> None:
    ledger.open_account("alice")

    with pytest.raises(ServiceError) as exc_info:
        ledger.open_account("alice")

    assert exc_info.value.error == "ACCOUNT_EXISTS"
    assert exc_info.value.status_code == 409


@pytest.mark.unit
def test_ensure_account_is_idempotent(ledger) -> None:
    first = ledger.ensure_account("platform")
    second = ledger.ensure_account("platform")

    assert first == second
    assert ledger.count_accounts() == 1


@pytest.mark.unit
def test_reserve_debits_and_records_negative_amount(ledger) -> None:
    ledger.open_account("alice", initial_balance=Decimal(1500))

    tx = ledger.reserve("alice", Decimal(1070), task_id="task-1", reason="Escrow for task-1")

    assert tx.kind is TransactionKind.RESERVE
    assert tx.signed_amount == Decimal("-1070.00")
    assert tx.balance_after == Decimal("430.00")
    assert ledger.require_account("alice").balance == Decimal("430.00")


@pytest.mark.unit
def test_reserve_beyond_balance_raises_and_leaves_no_trace(ledger) -> None:
    ledger.open_account("alice", initial_balance=Decimal(100))

    with pytest.raises(InsufficientFunds) as exc_info:
        ledger.reserve("alice", Decimal("100.01"), task_id="task-1", reason="Escrow")

    assert exc_info.value.status_code == 402
    assert exc_info.value.details["available"] == "100.00"
    assert ledger.require_account("alice").balance == Decimal("100.00")
    assert len(ledger.get_transactions("alice")) == 1


@pytest.mark.unit
def test_booking_unknown_account_raises_not_found(ledger) -> None:
    with pytest.raises(NotFound) as exc_info:
        ledger.credit("ghost", Decimal(10), "deposit")

    assert exc_info.value.error == "ACCOUNT_NOT_FOUND"


@pytest.mark.unit
@pytest.mark.parametrize("amount", [Decimal(0), Decimal(-5), Decimal("1.001"), Decimal("NaN")])
def test_invalid_amounts_rejected(ledger, amount) -> None:
    ledger.open_account("alice", initial_balance=Decimal(100))

    with pytest.raises(ValidationError) as exc_info:
        ledger.credit("alice", amount, "deposit")

    assert exc_info.value.error == "INVALID_AMOUNT"


@pytest.mark.unit
def test_execution_credit_is_idempotent(ledger) -> None:
    """Replaying a reward credit returns the original row and moves no money."""
    ledger.open_account("bob")

    first = ledger.credit(
        "bob", Decimal(135), "Reward", task_id="task-1", execution_id="exec-1"
    )
    second = ledger.credit(
        "bob", Decimal(135), "Reward", task_id="task-1", execution_id="exec-1"
    )

    assert second.tx_id == first.tx_id
    assert ledger.require_account("bob").balance == Decimal("135.00")
    assert [tx.tx_id for tx in ledger.get_execution_transactions("exec-1")] == [first.tx_id]


@pytest.mark.unit
def test_replay_with_different_amount_is_payload_mismatch(ledger) -> None:
    ledger.open_account("bob")
    ledger.credit("bob", Decimal(135), "Reward", task_id="task-1", execution_id="exec-1")

    with pytest.raises(ValidationError) as exc_info:
        ledger.credit("bob", Decimal(100), "Reward", task_id="task-1", execution_id="exec-1")

    assert exc_info.value.error == "PAYLOAD_MISMATCH"
    assert ledger.require_account("bob").balance == Decimal("135.00")


@pytest.mark.unit
def test_task_refund_is_idempotent_per_account(ledger) -> None:
    ledger.open_account("alice")

    first = ledger.refund("alice", Decimal(360), task_id="task-1", reason="Refund")
    second = ledger.refund("alice", Decimal(360), task_id="task-1", reason="Refund")

    assert first.tx_id == second.tx_id
    assert ledger.require_account("alice").balance == Decimal("360.00")


@pytest.mark.unit
def test_plain_deposits_are_never_deduplicated(ledger) -> None:
    ledger.open_account("alice")

    ledger.credit("alice", Decimal(10), "deposit")
    ledger.credit("alice", Decimal(10), "deposit")

    assert ledger.require_account("alice").balance == Decimal("20.00")


@pytest.mark.unit
def test_booking_rolls_back_with_enclosing_transaction(db_path) -> None:
    """A booking made inside an outer transaction disappears if the outer block fails."""
    database = Database(db_path)
    ledger = EscrowLedger(database)
    ledger.open_account("alice", initial_balance=Decimal(100))

    with pytest.raises(RuntimeError), database.transaction():
        ledger.reserve("alice", Decimal(40), task_id="task-1", reason="Escrow")
        raise RuntimeError("insert failed")

    assert ledger.require_account("alice").balance == Decimal("100.00")
    assert len(ledger.get_transactions("alice")) == 1
    database.close()


@pytest.mark.unit
def test_transactions_are_append_only(db_path) -> None:
    database = Database(db_path)
    ledger = EscrowLedger(database)
    ledger.open_account("alice", initial_balance=Decimal(100))

    with pytest.raises(sqlite3.IntegrityError), database.transaction() as conn:
        conn.execute("DELETE FROM transactions")
    with pytest.raises(sqlite3.IntegrityError), database.transaction() as conn:
        conn.execute("UPDATE transactions SET signed_amount = 1")

    assert ledger.reconcile("alice").consistent
    database.close()


@pytest.mark.unit
def test_history_is_oldest_first_and_paginates(ledger) -> None:
    with freeze_time("2026-03-01 12:00:00") as frozen:
        ledger.open_account("alice", initial_balance=Decimal(100))
        for amount in (1, 2, 3):
            frozen.tick(timedelta(seconds=1))
            ledger.credit("alice", Decimal(amount), f"deposit {amount}")

    history = ledger.get_transactions("alice")
    assert [tx.signed_amount for tx in history] == [
        Decimal("100.00"),
        Decimal("1.00"),
        Decimal("2.00"),
        Decimal("3.00"),
    ]
    assert history[0].created_at == "2026-03-01T12:00:00.000000Z"

    page = ledger.get_transactions("alice", limit=2, offset=1)
    assert [tx.reason for tx in page] == ["deposit 1", "deposit 2"]


@pytest.mark.unit
def test_history_for_unknown_account_raises(ledger) -> None:
    with pytest.raises(NotFound):
        ledger.get_transactions("ghost")


@pytest.mark.unit
def test_reconciliation_detects_tampered_balance(db_path) -> None:
    database = Database(db_path)
    ledger = EscrowLedger(database)
    ledger.open_account("alice", initial_balance=Decimal(100))
    ledger.open_account("bob", initial_balance=Decimal(50))
    assert ledger.find_inconsistent_accounts() == []

    with database.transaction() as conn:
        conn.execute("UPDATE accounts SET balance = balance + 1 WHERE account_id = 'bob'")

    inconsistent = ledger.find_inconsistent_accounts()
    assert [r.account_id for r in inconsistent] == ["bob"]
    assert inconsistent[0].balance == Decimal("50.01")
    assert inconsistent[0].ledger_sum == Decimal("50.00")
    assert not ledger.reconcile("bob").consistent
    database.close()


@pytest.mark.unit
def test_set_level(ledger) -> None:
    ledger.open_account("alice")

    assert ledger.set_level("alice", UserLevel.GOLD).level is UserLevel.GOLD
    with pytest.raises(NotFound):
        ledger.set_level("ghost", UserLevel.GOLD)
