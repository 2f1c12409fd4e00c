"""Withdrawal requests and their settlement into payment records."""

from __future__ import annotations

import sqlite3
import uuid
from typing import TYPE_CHECKING, Any

from microtask_service.core.exceptions import ServiceError
from microtask_service.logging import get_logger
from microtask_service.models import AccountRole, WithdrawalStatus, require_transition
from microtask_service.services.ledger import is_positive_int
from microtask_service.services.storage import to_iso, utc_now

if TYPE_CHECKING:
    from collections.abc import Iterable

    from microtask_service.services.ledger import Ledger
    from microtask_service.services.storage import Clock, Storage

_WITHDRAWAL_SELECT_SQL = (
    "SELECT withdrawal_id, worker_id, coin_amount, currency_amount, payment_system, "
    "account_number, status, requested_at, resolved_at FROM withdrawals"
)

_PAYMENT_SELECT_SQL = (
    "SELECT payment_id, withdrawal_id, worker_id, coin_amount, currency_amount, "
    "payment_system, account_number, payout_confirmation, paid_at FROM payments"
)

# Coins a worker earned through approved submissions
_EARNED_SQL = (
    "SELECT COALESCE(SUM(amount), 0) FROM transactions "
    "WHERE account_id = ? AND type = 'credit' AND reference LIKE 'task_payout:%'"
)

# Coins already claimed by requests that were not rejected
_COMMITTED_SQL = (
    "SELECT COALESCE(SUM(coin_amount), 0) FROM withdrawals "
    "WHERE worker_id = ? AND status IN ('pending', 'approved', 'paid') "
    "AND withdrawal_id != ?"
)


def _require_field(value: object, field_name: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ServiceError(
            "VALIDATION_ERROR",
            f"Field '{field_name}' must be a non-empty string",
            400,
            {"field": field_name},
        )
    return value


class WithdrawalWorkflow:
    """
    Turns worker coins into recorded external payouts.

    Only coins earned through approved submissions can be withdrawn; the
    registration bonus stays on the platform. A request reserves part of
    those earnings, and the debit happens at settlement inside the same
    transaction that records the payment and marks the request paid.
    """

    def __init__(
        self,
        storage: Storage,
        ledger: Ledger,
        coins_per_currency_unit: int,
        minimum_coins: int,
        admin_ids: Iterable[str],
        clock: Clock | None = None,
    ) -> None:
        self._storage = storage
        self._ledger = ledger
        self._coins_per_currency_unit = coins_per_currency_unit
        self._minimum_coins = minimum_coins
        self._admin_ids = frozenset(admin_ids)
        self._clock = clock or utc_now
        self._logger = get_logger(__name__)

    def is_admin(self, account_id: str) -> bool:
        """Check whether an account is a platform administrator."""
        return account_id in self._admin_ids

    def _require_admin(self, account_id: str) -> None:
        if not self.is_admin(account_id):
            raise ServiceError(
                "FORBIDDEN",
                "Only platform administrators can do this",
                403,
                {},
            )

    def currency_amount(self, coin_amount: int) -> int:
        """Convert coins to minor currency units (cents), rounding down."""
        return coin_amount * 100 // self._coins_per_currency_unit

    @staticmethod
    def _load(db: sqlite3.Connection, withdrawal_id: str) -> dict[str, Any]:
        row = db.execute(
            _WITHDRAWAL_SELECT_SQL + " WHERE withdrawal_id = ?", (withdrawal_id,)
        ).fetchone()
        if row is None:
            raise ServiceError("WITHDRAWAL_NOT_FOUND", "Withdrawal request not found", 404, {})
        return dict(row)

    @staticmethod
    def _withdrawable(db: sqlite3.Connection, worker_id: str, excluding: str = "") -> int:
        earned = db.execute(_EARNED_SQL, (worker_id,)).fetchone()[0]
        committed = db.execute(_COMMITTED_SQL, (worker_id, excluding)).fetchone()[0]
        return int(earned) - int(committed)

    @staticmethod
    def _require_earnings(available: int, amount: int) -> None:
        if available < amount:
            raise ServiceError(
                "INSUFFICIENT_FUNDS",
                "Withdrawals are limited to coins earned through approved work",
                402,
                {"withdrawable": max(available, 0), "required": amount},
            )

    def request_withdrawal(
        self,
        worker_id: str,
        coin_amount: Any,
        payment_system: object,
        account_number: object,
    ) -> dict[str, Any]:
        """
        Create a pending withdrawal request. No coins move yet.

        Error precedence:
        1. INVALID_AMOUNT / VALIDATION_ERROR: malformed fields
        2. ACCOUNT_NOT_FOUND / FORBIDDEN: caller is not a worker
        3. INSUFFICIENT_FUNDS: balance below the requested amount
        4. VALIDATION_ERROR: amount below the configured minimum
        5. INSUFFICIENT_FUNDS: amount above the withdrawable earnings
        """
        if not is_positive_int(coin_amount):
            raise ServiceError(
                "INVALID_AMOUNT",
                "coin_amount must be a positive integer",
                400,
                {"field": "coin_amount"},
            )
        amount = int(coin_amount)
        method = _require_field(payment_system, "payment_system")
        payout_account = _require_field(account_number, "account_number")

        worker = self._ledger.require_account(worker_id)
        if worker["role"] != AccountRole.WORKER:
            raise ServiceError("FORBIDDEN", "Only workers can request withdrawals", 403, {})

        balance = int(worker["balance"])
        if balance < amount:
            raise ServiceError(
                "INSUFFICIENT_FUNDS",
                "Insufficient coins for this withdrawal",
                402,
                {"balance": balance, "required": amount},
            )
        if amount < self._minimum_coins:
            raise ServiceError(
                "VALIDATION_ERROR",
                f"Minimum withdrawal is {self._minimum_coins} coins",
                400,
                {"field": "coin_amount", "minimum": self._minimum_coins},
            )

        withdrawal_id = f"wd-{uuid.uuid4()}"
        with self._storage.transaction() as db:
            self._require_earnings(self._withdrawable(db, worker_id), amount)
            db.execute(
                "INSERT INTO withdrawals (withdrawal_id, worker_id, coin_amount, currency_amount, "
                "payment_system, account_number, status, requested_at) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    withdrawal_id,
                    worker_id,
                    amount,
                    self.currency_amount(amount),
                    method,
                    payout_account,
                    str(WithdrawalStatus.PENDING),
                    to_iso(self._clock()),
                ),
            )
            withdrawal = self._load(db, withdrawal_id)

        self._logger.info(
            "Withdrawal requested",
            extra={"withdrawal_id": withdrawal_id, "worker_id": worker_id, "coin_amount": amount},
        )
        return withdrawal

    def approve_withdrawal(self, withdrawal_id: str, admin_id: str) -> dict[str, Any]:
        """Mark a pending request as reviewed. No coins move."""
        return self._resolve(withdrawal_id, admin_id, WithdrawalStatus.APPROVED)

    def reject_withdrawal(self, withdrawal_id: str, admin_id: str) -> dict[str, Any]:
        """Reject a pending or approved request. No coins move."""
        return self._resolve(withdrawal_id, admin_id, WithdrawalStatus.REJECTED)

    def _resolve(
        self,
        withdrawal_id: str,
        admin_id: str,
        target: WithdrawalStatus,
    ) -> dict[str, Any]:
        self._require_admin(admin_id)
        now = to_iso(self._clock())
        with self._storage.transaction() as db:
            withdrawal = self._load(db, withdrawal_id)
            current = WithdrawalStatus(withdrawal["status"])
            require_transition(current, target)
            resolved_at = now if target is WithdrawalStatus.REJECTED else None
            db.execute(
                "UPDATE withdrawals SET status = ?, resolved_at = ? "
                "WHERE withdrawal_id = ? AND status = ?",
                (str(target), resolved_at, withdrawal_id, str(current)),
            )
            withdrawal = self._load(db, withdrawal_id)

        self._logger.info(
            "Withdrawal status changed",
            extra={"withdrawal_id": withdrawal_id, "status": str(target), "admin_id": admin_id},
        )
        return withdrawal

    def settle(
        self,
        withdrawal_id: str,
        payout_confirmation: object,
        admin_id: str,
    ) -> dict[str, Any]:
        """
        Pay out a withdrawal request.

        In one storage transaction: debit the worker, insert the payment
        record and mark the request paid. If the worker can no longer
        cover the amount, from balance or from earnings, the request is
        left as it was.

        Raises:
            ServiceError: FORBIDDEN, WITHDRAWAL_NOT_FOUND, ALREADY_RESOLVED,
                VALIDATION_ERROR, INSUFFICIENT_FUNDS (in that order).
        """
        self._require_admin(admin_id)
        now = to_iso(self._clock())
        payment_id = f"pay-{uuid.uuid4()}"

        try:
            with self._storage.transaction() as db:
                withdrawal = self._load(db, withdrawal_id)
                current = WithdrawalStatus(withdrawal["status"])
                require_transition(current, WithdrawalStatus.PAID)
                confirmation = _require_field(payout_confirmation, "payout_confirmation")
                self._require_earnings(
                    self._withdrawable(db, withdrawal["worker_id"], excluding=withdrawal_id),
                    int(withdrawal["coin_amount"]),
                )

                self._ledger.debit(
                    withdrawal["worker_id"],
                    int(withdrawal["coin_amount"]),
                    f"withdrawal:{withdrawal_id}",
                )
                cursor = db.execute(
                    "UPDATE withdrawals SET status = 'paid', resolved_at = ? "
                    "WHERE withdrawal_id = ? AND status = ?",
                    (now, withdrawal_id, str(current)),
                )
                if cursor.rowcount != 1:
                    raise ServiceError(
                        "ALREADY_RESOLVED", "Withdrawal request was already resolved", 409, {}
                    )
                db.execute(
                    "INSERT INTO payments (payment_id, withdrawal_id, worker_id, coin_amount, "
                    "currency_amount, payment_system, account_number, payout_confirmation, "
                    "paid_at) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)",
                    (
                        payment_id,
                        withdrawal_id,
                        withdrawal["worker_id"],
                        withdrawal["coin_amount"],
                        withdrawal["currency_amount"],
                        withdrawal["payment_system"],
                        withdrawal["account_number"],
                        confirmation,
                        now,
                    ),
                )
                payment = dict(
                    db.execute(
                        _PAYMENT_SELECT_SQL + " WHERE payment_id = ?", (payment_id,)
                    ).fetchone()
                )
                withdrawal = self._load(db, withdrawal_id)
        except ServiceError as exc:
            if exc.error == "INSUFFICIENT_FUNDS":
                self._logger.warning(
                    "Settlement refused, worker cannot cover the amount",
                    extra={"withdrawal_id": withdrawal_id, "details": exc.details},
                )
            raise
        except sqlite3.IntegrityError as exc:
            raise ServiceError(
                "ALREADY_RESOLVED", "Withdrawal request was already paid", 409, {}
            ) from exc

        self._logger.info(
            "Withdrawal settled",
            extra={
                "withdrawal_id": withdrawal_id,
                "payment_id": payment_id,
                "worker_id": withdrawal["worker_id"],
                "coin_amount": withdrawal["coin_amount"],
                "admin_id": admin_id,
            },
        )
        return {"withdrawal": withdrawal, "payment": payment}

    def get_withdrawal(self, withdrawal_id: str) -> dict[str, Any]:
        """Get a withdrawal request. Raises WITHDRAWAL_NOT_FOUND."""
        row = self._storage.fetch_one(
            _WITHDRAWAL_SELECT_SQL + " WHERE withdrawal_id = ?", (withdrawal_id,)
        )
        if row is None:
            raise ServiceError("WITHDRAWAL_NOT_FOUND", "Withdrawal request not found", 404, {})
        return row

    def list_withdrawals(
        self,
        worker_id: str | None = None,
        status: str | None = None,
    ) -> list[dict[str, Any]]:
        """List withdrawal requests, newest first."""
        query = _WITHDRAWAL_SELECT_SQL
        clauses: list[str] = []
        params: list[object] = []
        if worker_id is not None:
            clauses.append("worker_id = ?")
            params.append(worker_id)
        if status is not None:
            try:
                params.append(str(WithdrawalStatus(status)))
            except ValueError as exc:
                raise ServiceError(
                    "VALIDATION_ERROR",
                    f"Unknown withdrawal status: {status}",
                    400,
                    {"field": "status"},
                ) from exc
            clauses.append("status = ?")
        if clauses:
            query += " WHERE " + " AND ".join(clauses)
        query += " ORDER BY requested_at DESC, rowid DESC"
        return self._storage.fetch_all(query, params)

    def list_payments(self, worker_id: str | None = None) -> list[dict[str, Any]]:
        """List payment records, newest first."""
        if worker_id is None:
            return self._storage.fetch_all(_PAYMENT_SELECT_SQL + " ORDER BY paid_at DESC")
        return self._storage.fetch_all(
            _PAYMENT_SELECT_SQL + " WHERE worker_id = ? ORDER BY paid_at DESC",
            (worker_id,),
        )
