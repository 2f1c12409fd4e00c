"""Ledger business logic: accounts, coin balances, and the transaction log."""

from __future__ import annotations

import sqlite3
import uuid
from typing import TYPE_CHECKING, Any

from microtask_service.core.exceptions import ServiceError
from microtask_service.logging import get_logger
from microtask_service.models import STARTING_BALANCES, AccountRole
from microtask_service.services.storage import to_iso, utc_now

if TYPE_CHECKING:
    from microtask_service.services.storage import Clock, Storage


def is_positive_int(value: object) -> bool:
    """Check if value is a positive integer (not float, not bool)."""
    return isinstance(value, int) and not isinstance(value, bool) and value > 0


def _require_positive_amount(amount: object) -> None:
    if not is_positive_int(amount):
        raise ServiceError(
            "INVALID_AMOUNT",
            "Amount must be a positive integer",
            400,
            {},
        )


class Ledger:
    """
    Manages accounts and coin balances.

    Every balance mutation and its transaction log entry are written in
    the same storage transaction. Debits use a conditional update
    (balance >= amount) so concurrent debits can never overdraw.
    """

    def __init__(self, storage: Storage, clock: Clock | None = None) -> None:
        self._storage = storage
        self._clock = clock or utc_now
        self._logger = get_logger(__name__)

    def _now(self) -> str:
        return to_iso(self._clock())

    @staticmethod
    def _new_tx_id() -> str:
        return f"tx-{uuid.uuid4()}"

    def create_account(self, account_id: str, role: AccountRole) -> dict[str, Any]:
        """
        Create an account seeded with the role's starting balance.

        Raises:
            ServiceError: ACCOUNT_EXISTS if the account already exists.
        """
        initial_balance = STARTING_BALANCES[role]
        now = self._now()

        try:
            with self._storage.transaction() as db:
                db.execute(
                    "INSERT INTO accounts (account_id, role, balance, created_at) "
                    "VALUES (?, ?, ?, ?)",
                    (account_id, str(role), initial_balance, now),
                )
                if initial_balance > 0:
                    db.execute(
                        "INSERT INTO transactions "
                        "(tx_id, account_id, type, amount, balance_after, reference, timestamp) "
                        "VALUES (?, ?, ?, ?, ?, ?, ?)",
                        (
                            self._new_tx_id(),
                            account_id,
                            "credit",
                            initial_balance,
                            initial_balance,
                            "initial_balance",
                            now,
                        ),
                    )
        except sqlite3.IntegrityError as exc:
            raise ServiceError(
                "ACCOUNT_EXISTS",
                "Account already exists for this identity",
                409,
                {},
            ) from exc

        self._logger.info(
            "Account created",
            extra={"account_id": account_id, "role": str(role), "initial_balance": initial_balance},
        )
        return {
            "account_id": account_id,
            "role": str(role),
            "balance": initial_balance,
            "created_at": now,
        }

    def get_account(self, account_id: str) -> dict[str, Any] | None:
        """Look up an account by ID. Returns None if not found."""
        return self._storage.fetch_one(
            "SELECT account_id, role, balance, created_at FROM accounts WHERE account_id = ?",
            (account_id,),
        )

    def require_account(self, account_id: str) -> dict[str, Any]:
        """Look up an account by ID, raising ACCOUNT_NOT_FOUND if absent."""
        account = self.get_account(account_id)
        if account is None:
            raise ServiceError("ACCOUNT_NOT_FOUND", "Account not found", 404, {})
        return account

    def list_accounts(self, role: AccountRole | None = None) -> list[dict[str, Any]]:
        """List accounts, optionally filtered by role, oldest first."""
        query = "SELECT account_id, role, balance, created_at FROM accounts"
        params: list[object] = []
        if role is not None:
            query += " WHERE role = ?"
            params.append(str(role))
        query += " ORDER BY created_at, account_id"
        return self._storage.fetch_all(query, params)

    def credit(self, account_id: str, amount: int, reference: str) -> dict[str, Any]:
        """
        Add coins to an account.

        Replaying a reference with the same amount returns the original
        transaction instead of crediting twice.

        Returns:
            {"tx_id": "...", "balance_after": N}

        Raises:
            ServiceError: ACCOUNT_NOT_FOUND, INVALID_AMOUNT, PAYLOAD_MISMATCH.
        """
        _require_positive_amount(amount)

        with self._storage.transaction() as db:
            existing = db.execute(
                "SELECT tx_id, amount, balance_after FROM transactions "
                "WHERE account_id = ? AND type = 'credit' AND reference = ?",
                (account_id, reference),
            ).fetchone()
            if existing is not None:
                if existing["amount"] != amount:
                    raise ServiceError(
                        "PAYLOAD_MISMATCH",
                        "Duplicate credit reference used with a different amount",
                        400,
                        {},
                    )
                return {"tx_id": existing["tx_id"], "balance_after": existing["balance_after"]}

            cursor = db.execute(
                "UPDATE accounts SET balance = balance + ? WHERE account_id = ?",
                (amount, account_id),
            )
            if cursor.rowcount == 0:
                raise ServiceError("ACCOUNT_NOT_FOUND", "Account not found", 404, {})

            result = self._record(db, account_id, "credit", amount, reference)

        self._logger.info(
            "Account credited",
            extra={"account_id": account_id, "amount": amount, "reference": reference},
        )
        return result

    def debit(self, account_id: str, amount: int, reference: str) -> dict[str, Any]:
        """
        Remove coins from an account.

        Returns:
            {"tx_id": "...", "balance_after": N}

        Raises:
            ServiceError: ACCOUNT_NOT_FOUND, INVALID_AMOUNT, INSUFFICIENT_FUNDS.
        """
        _require_positive_amount(amount)

        with self._storage.transaction() as db:
            cursor = db.execute(
                "UPDATE accounts SET balance = balance - ? WHERE account_id = ? AND balance >= ?",
                (amount, account_id, amount),
            )
            if cursor.rowcount == 0:
                # Distinguish between not found and insufficient funds
                row = db.execute(
                    "SELECT balance FROM accounts WHERE account_id = ?",
                    (account_id,),
                ).fetchone()
                if row is None:
                    raise ServiceError("ACCOUNT_NOT_FOUND", "Account not found", 404, {})
                raise ServiceError(
                    "INSUFFICIENT_FUNDS",
                    "Insufficient coins for this operation",
                    402,
                    {"balance": row["balance"], "required": amount},
                )

            result = self._record(db, account_id, "debit", amount, reference)

        self._logger.info(
            "Account debited",
            extra={"account_id": account_id, "amount": amount, "reference": reference},
        )
        return result

    def transfer(
        self,
        from_account_id: str,
        to_account_id: str,
        amount: int,
        reference: str,
    ) -> dict[str, Any]:
        """
        Move coins between two accounts.

        The debit and the credit share one storage transaction: if the
        credit fails, rolling back the transaction refunds the debit
        before the error reaches the caller.

        Raises:
            ServiceError: ACCOUNT_NOT_FOUND, INVALID_AMOUNT, INSUFFICIENT_FUNDS.
        """
        try:
            with self._storage.transaction() as db:
                used = db.execute(
                    "SELECT 1 FROM transactions WHERE account_id = ? AND type = 'credit' "
                    "AND reference = ?",
                    (to_account_id, reference),
                ).fetchone()
                if used is not None:
                    raise ServiceError(
                        "PAYLOAD_MISMATCH",
                        "Transfer reference has already been used",
                        400,
                        {},
                    )
                debit = self.debit(from_account_id, amount, reference)
                credit = self.credit(to_account_id, amount, reference)
        except ServiceError:
            self._logger.warning(
                "Transfer rolled back",
                extra={"from": from_account_id, "to": to_account_id, "amount": amount},
            )
            raise
        return {"debit": debit, "credit": credit}

    def _record(
        self,
        db: sqlite3.Connection,
        account_id: str,
        tx_type: str,
        amount: int,
        reference: str,
    ) -> dict[str, Any]:
        """Append a transaction log row. Expects an open storage transaction."""
        row = db.execute(
            "SELECT balance FROM accounts WHERE account_id = ?",
            (account_id,),
        ).fetchone()
        if row is None:
            msg = "Account not found after update"
            raise RuntimeError(msg)
        new_balance = int(row["balance"])

        tx_id = self._new_tx_id()
        db.execute(
            "INSERT INTO transactions "
            "(tx_id, account_id, type, amount, balance_after, reference, timestamp) "
            "VALUES (?, ?, ?, ?, ?, ?, ?)",
            (tx_id, account_id, tx_type, amount, new_balance, reference, self._now()),
        )
        return {"tx_id": tx_id, "balance_after": new_balance}

    def get_transactions(self, account_id: str) -> list[dict[str, Any]]:
        """
        Get transaction history for an account, oldest first.

        Raises:
            ServiceError: ACCOUNT_NOT_FOUND.
        """
        self.require_account(account_id)
        return self._storage.fetch_all(
            "SELECT tx_id, type, amount, balance_after, reference, timestamp "
            "FROM transactions WHERE account_id = ? ORDER BY timestamp, rowid",
            (account_id,),
        )

    def count_accounts(self) -> int:
        """Count total accounts."""
        return self._storage.fetch_value("SELECT COUNT(*) FROM accounts")

    def count_accounts_by_role(self) -> dict[str, int]:
        """Count accounts grouped by role."""
        rows = self._storage.fetch_all(
            "SELECT role, COUNT(*) AS total FROM accounts GROUP BY role"
        )
        return {str(row["role"]): int(row["total"]) for row in rows}

    def total_coins(self) -> int:
        """Sum of all account balances."""
        return self._storage.fetch_value("SELECT COALESCE(SUM(balance), 0) FROM accounts")
