"""Escrow ledger: accounts, balances and the append-only transaction log."""

from __future__ import annotations

import sqlite3
import uuid
from decimal import Decimal
from typing import TYPE_CHECKING

from task_escrow_service.core.exceptions import (
    InsufficientFunds,
    NotFound,
    ServiceError,
    ValidationError,
)
from task_escrow_service.models import (
    Account,
    LedgerReconciliation,
    Transaction,
    TransactionKind,
    UserLevel,
    from_minor,
    now_utc,
    quantize,
    to_iso,
    to_minor,
)

if TYPE_CHECKING:
    from task_escrow_service.services.database import Database

_SCHEMA = """
CREATE TABLE IF NOT EXISTS accounts (
    account_id TEXT PRIMARY KEY,
    level TEXT NOT NULL,
    balance INTEGER NOT NULL DEFAULT 0 CHECK (balance >= 0),
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS transactions (
    tx_id TEXT PRIMARY KEY,
    account_id TEXT NOT NULL REFERENCES accounts(account_id),
    kind TEXT NOT NULL,
    signed_amount INTEGER NOT NULL CHECK (signed_amount != 0),
    balance_after INTEGER NOT NULL,
    reason TEXT NOT NULL,
    related_task_id TEXT,
    related_execution_id TEXT,
    created_at TEXT NOT NULL
);

CREATE UNIQUE INDEX IF NOT EXISTS ux_transactions_execution_kind
    ON transactions(related_execution_id, kind)
    WHERE related_execution_id IS NOT NULL;

CREATE UNIQUE INDEX IF NOT EXISTS ux_transactions_task_kind
    ON transactions(account_id, related_task_id, kind)
    WHERE related_task_id IS NOT NULL AND related_execution_id IS NULL;

CREATE INDEX IF NOT EXISTS ix_transactions_account_created
    ON transactions(account_id, created_at, tx_id);

CREATE TRIGGER IF NOT EXISTS tr_transactions_no_update
    BEFORE UPDATE ON transactions
    BEGIN SELECT RAISE(ABORT, 'transactions are append-only'); END;

CREATE TRIGGER IF NOT EXISTS tr_transactions_no_delete
    BEFORE DELETE ON transactions
    BEGIN SELECT RAISE(ABORT, 'transactions are append-only'); END;
"""

_TX_COLUMNS_SQL = (
    "tx_id, account_id, kind, signed_amount, balance_after, reason, "
    "related_task_id, related_execution_id, created_at"
)


def _validate_amount(amount: Decimal) -> None:
    if not isinstance(amount, Decimal) or not amount.is_finite():
        raise ValidationError("INVALID_AMOUNT", "Amount must be a finite decimal")
    if amount <= 0:
        raise ValidationError("INVALID_AMOUNT", "Amount must be positive")
    if amount != quantize(amount):
        raise ValidationError("INVALID_AMOUNT", "Amount must have at most two decimal places")


def _row_to_transaction(row: sqlite3.Row) -> Transaction:
    return Transaction(
        tx_id=row["tx_id"],
        account_id=row["account_id"],
        kind=TransactionKind(row["kind"]),
        signed_amount=from_minor(row["signed_amount"]),
        balance_after=from_minor(row["balance_after"]),
        reason=row["reason"],
        related_task_id=row["related_task_id"],
        related_execution_id=row["related_execution_id"],
        created_at=row["created_at"],
    )


def _row_to_account(row: sqlite3.Row) -> Account:
    return Account(
        account_id=row["account_id"],
        level=UserLevel(row["level"]),
        balance=from_minor(row["balance"]),
        created_at=row["created_at"],
    )


class EscrowLedger:
    """
    Manages accounts and their transaction log.

    Every booking updates the cached balance and appends its log row inside
    one database transaction, so no reader ever sees one without the other.
    When called from inside an enclosing transaction (approval, cancellation,
    task creation) the booking joins it and commits or rolls back with it.

    Bookings tied to an execution are unique per (execution, kind); bookings
    tied only to a task are unique per (account, task, kind). A replay
    returns the original transaction instead of moving money twice.
    """

    def __init__(self, database: Database) -> None:
        self._db = database
        self._db.ensure_schema(_SCHEMA)

    def _new_tx_id(self) -> str:
        return f"tx-{uuid.uuid4()}"

    # ------------------------------------------------------------------
    # Accounts
    # ------------------------------------------------------------------

    def open_account(
        self,
        account_id: str,
        level: UserLevel = UserLevel.BRONZE,
        initial_balance: Decimal = Decimal(0),
    ) -> Account:
        """
        Create a new account.

        A positive initial balance is booked as a CREDIT so the balance
        equals the sum of the log from the very first row.

        Raises:
            ServiceError: ACCOUNT_EXISTS if the account already exists.
            ValidationError: INVALID_AMOUNT if initial_balance is negative.
        """
        if initial_balance < 0:
            raise ValidationError("INVALID_AMOUNT", "Initial balance must be non-negative")

        now = to_iso(now_utc())
        try:
            with self._db.transaction() as conn:
                conn.execute(
                    "INSERT INTO accounts (account_id, level, balance, created_at) "
                    "VALUES (?, ?, 0, ?)",
                    (account_id, level.value, now),
                )
                if initial_balance > 0:
                    self._book(
                        conn,
                        account_id,
                        TransactionKind.CREDIT,
                        initial_balance,
                        "initial_balance",
                        task_id=None,
                        execution_id=None,
                    )
        except sqlite3.IntegrityError as exc:
            raise ServiceError(
                "ACCOUNT_EXISTS",
                "Account already exists",
                409,
                {"account_id": account_id},
            ) from exc

        return self.require_account(account_id)

    def ensure_account(self, account_id: str, level: UserLevel = UserLevel.BRONZE) -> Account:
        """Return the account, creating an empty one if missing."""
        existing = self.get_account(account_id)
        if existing is not None:
            return existing
        with self._db.transaction() as conn:
            conn.execute(
                "INSERT OR IGNORE INTO accounts (account_id, level, balance, created_at) "
                "VALUES (?, ?, 0, ?)",
                (account_id, level.value, to_iso(now_utc())),
            )
        return self.require_account(account_id)

    def get_account(self, account_id: str) -> Account | None:
        """Look up an account by ID. Returns None if not found."""
        row = self._db.fetchone(
            "SELECT account_id, level, balance, created_at FROM accounts WHERE account_id = ?",
            (account_id,),
        )
        if row is None:
            return None
        return _row_to_account(row)

    def require_account(self, account_id: str) -> Account:
        account = self.get_account(account_id)
        if account is None:
            raise NotFound("ACCOUNT_NOT_FOUND", f"Account {account_id} not found")
        return account

    def set_level(self, account_id: str, level: UserLevel) -> Account:
        with self._db.transaction() as conn:
            cursor = conn.execute(
                "UPDATE accounts SET level = ? WHERE account_id = ?",
                (level.value, account_id),
            )
            if cursor.rowcount == 0:
                raise NotFound("ACCOUNT_NOT_FOUND", f"Account {account_id} not found")
        return self.require_account(account_id)

    def count_accounts(self) -> int:
        row = self._db.fetchone("SELECT COUNT(*) FROM accounts")
        return int(row[0]) if row is not None else 0

    # ------------------------------------------------------------------
    # Bookings
    # ------------------------------------------------------------------

    def reserve(
        self, account_id: str, amount: Decimal, *, task_id: str, reason: str
    ) -> Transaction:
        """
        Debit funds into escrow for a task.

        Raises:
            InsufficientFunds: when the balance does not cover the amount.
            NotFound: ACCOUNT_NOT_FOUND.
        """
        _validate_amount(amount)
        return self._booking(account_id, TransactionKind.RESERVE, -amount, reason, task_id, None)

    def credit(
        self,
        account_id: str,
        amount: Decimal,
        reason: str,
        *,
        task_id: str | None = None,
        execution_id: str | None = None,
    ) -> Transaction:
        """Add funds to an account (rewards, commission, deposits)."""
        _validate_amount(amount)
        return self._booking(
            account_id, TransactionKind.CREDIT, amount, reason, task_id, execution_id
        )

    def refund(
        self, account_id: str, amount: Decimal, *, task_id: str, reason: str
    ) -> Transaction:
        """Return escrowed funds to a task's creator."""
        _validate_amount(amount)
        return self._booking(account_id, TransactionKind.REFUND, amount, reason, task_id, None)

    def record_penalty(
        self,
        account_id: str,
        amount: Decimal,
        *,
        task_id: str,
        reason: str,
    ) -> Transaction:
        """Book a forfeiture penalty collected into account_id."""
        _validate_amount(amount)
        return self._booking(account_id, TransactionKind.PENALTY, amount, reason, task_id, None)

    def _booking(
        self,
        account_id: str,
        kind: TransactionKind,
        signed_amount: Decimal,
        reason: str,
        task_id: str | None,
        execution_id: str | None,
    ) -> Transaction:
        with self._db.transaction() as conn:
            existing = self._find_existing(conn, account_id, kind, task_id, execution_id)
            if existing is not None:
                return self._check_replay(existing, account_id, signed_amount)
            try:
                with self._db.transaction() as inner:
                    return self._book(
                        inner,
                        account_id,
                        kind,
                        signed_amount,
                        reason,
                        task_id=task_id,
                        execution_id=execution_id,
                    )
            except sqlite3.IntegrityError as exc:
                existing = self._find_existing(conn, account_id, kind, task_id, execution_id)
                if existing is None:
                    msg = "Duplicate booking detected but could not load existing transaction"
                    raise RuntimeError(msg) from exc
                return self._check_replay(existing, account_id, signed_amount)

    def _book(
        self,
        conn: sqlite3.Connection,
        account_id: str,
        kind: TransactionKind,
        signed_amount: Decimal,
        reason: str,
        *,
        task_id: str | None,
        execution_id: str | None,
    ) -> Transaction:
        """
        Apply a signed amount and append its log row.

        Expects to be called inside an open DB transaction.
        """
        delta = to_minor(signed_amount)
        cursor = conn.execute(
            "UPDATE accounts SET balance = balance + ? WHERE account_id = ? AND balance + ? >= 0",
            (delta, account_id, delta),
        )
        if cursor.rowcount == 0:
            row = conn.execute(
                "SELECT balance FROM accounts WHERE account_id = ?",
                (account_id,),
            ).fetchone()
            if row is None:
                raise NotFound("ACCOUNT_NOT_FOUND", f"Account {account_id} not found")
            raise InsufficientFunds(
                account_id,
                required=str(-signed_amount),
                available=str(from_minor(row["balance"])),
            )

        row = conn.execute(
            "SELECT balance FROM accounts WHERE account_id = ?",
            (account_id,),
        ).fetchone()
        if row is None:
            msg = "Account not found after update"
            raise RuntimeError(msg)

        tx_id = self._new_tx_id()
        now = to_iso(now_utc())
        conn.execute(
            f"INSERT INTO transactions ({_TX_COLUMNS_SQL}) "  # nosec B608
            "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)",
            (
                tx_id,
                account_id,
                kind.value,
                delta,
                row["balance"],
                reason,
                task_id,
                execution_id,
                now,
            ),
        )
        return Transaction(
            tx_id=tx_id,
            account_id=account_id,
            kind=kind,
            signed_amount=from_minor(delta),
            balance_after=from_minor(row["balance"]),
            reason=reason,
            related_task_id=task_id,
            related_execution_id=execution_id,
            created_at=now,
        )

    def _find_existing(
        self,
        conn: sqlite3.Connection,
        account_id: str,
        kind: TransactionKind,
        task_id: str | None,
        execution_id: str | None,
    ) -> Transaction | None:
        if execution_id is not None:
            row = conn.execute(
                f"SELECT {_TX_COLUMNS_SQL} FROM transactions "  # nosec B608
                "WHERE related_execution_id = ? AND kind = ?",
                (execution_id, kind.value),
            ).fetchone()
        elif task_id is not None:
            row = conn.execute(
                f"SELECT {_TX_COLUMNS_SQL} FROM transactions "  # nosec B608
                "WHERE account_id = ? AND related_task_id = ? AND kind = ? "
                "AND related_execution_id IS NULL",
                (account_id, task_id, kind.value),
            ).fetchone()
        else:
            return None
        return None if row is None else _row_to_transaction(row)

    @staticmethod
    def _check_replay(
        existing: Transaction,
        account_id: str,
        signed_amount: Decimal,
    ) -> Transaction:
        if existing.account_id != account_id or existing.signed_amount != signed_amount:
            raise ValidationError(
                "PAYLOAD_MISMATCH",
                "Duplicate booking reference used with a different account or amount",
                {"tx_id": existing.tx_id},
            )
        return existing

    # ------------------------------------------------------------------
    # Read side
    # ------------------------------------------------------------------

    def get_transactions(
        self,
        account_id: str,
        limit: int | None = None,
        offset: int | None = None,
    ) -> list[Transaction]:
        """
        Get transaction history for an account, oldest first.

        Raises:
            NotFound: ACCOUNT_NOT_FOUND.
        """
        self.require_account(account_id)
        query = (
            f"SELECT {_TX_COLUMNS_SQL} FROM transactions "  # nosec B608
            "WHERE account_id = ? ORDER BY created_at, tx_id"
        )
        params: list[object] = [account_id]
        if limit is not None:
            query += " LIMIT ?"
            params.append(limit)
            if offset is not None:
                query += " OFFSET ?"
                params.append(offset)
        return [_row_to_transaction(row) for row in self._db.fetchall(query, params)]

    def get_execution_transactions(self, execution_id: str) -> list[Transaction]:
        rows = self._db.fetchall(
            f"SELECT {_TX_COLUMNS_SQL} FROM transactions "  # nosec B608
            "WHERE related_execution_id = ? ORDER BY created_at, tx_id",
            (execution_id,),
        )
        return [_row_to_transaction(row) for row in rows]

    def reconcile(self, account_id: str) -> LedgerReconciliation:
        """Compare the cached balance with the sum of the account's log."""
        row = self._db.fetchone(
            "SELECT a.balance AS balance, "
            "COALESCE((SELECT SUM(t.signed_amount) FROM transactions t "
            "WHERE t.account_id = a.account_id), 0) AS ledger_sum "
            "FROM accounts a WHERE a.account_id = ?",
            (account_id,),
        )
        if row is None:
            raise NotFound("ACCOUNT_NOT_FOUND", f"Account {account_id} not found")
        return LedgerReconciliation(
            account_id=account_id,
            balance=from_minor(row["balance"]),
            ledger_sum=from_minor(row["ledger_sum"]),
        )

    def find_inconsistent_accounts(self) -> list[LedgerReconciliation]:
        rows = self._db.fetchall(
            "SELECT a.account_id AS account_id, a.balance AS balance, "
            "COALESCE(SUM(t.signed_amount), 0) AS ledger_sum "
            "FROM accounts a LEFT JOIN transactions t ON t.account_id = a.account_id "
            "GROUP BY a.account_id, a.balance "
            "HAVING a.balance != COALESCE(SUM(t.signed_amount), 0)"
        )
        return [
            LedgerReconciliation(
                account_id=row["account_id"],
                balance=from_minor(row["balance"]),
                ledger_sum=from_minor(row["ledger_sum"]),
            )
            for row in rows
        ]
