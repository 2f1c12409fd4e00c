"""Read-only summaries for buyers, workers, and administrators."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from microtask_service.core.exceptions import ServiceError
from microtask_service.models import AccountRole

if TYPE_CHECKING:
    from microtask_service.services.ledger import Ledger
    from microtask_service.services.storage import Storage
    from microtask_service.services.task_lifecycle import TaskLifecycle


class Dashboards:
    """Aggregates over the record store. Never mutates anything."""

    def __init__(self, storage: Storage, ledger: Ledger, task_lifecycle: TaskLifecycle) -> None:
        self._storage = storage
        self._ledger = ledger
        self._task_lifecycle = task_lifecycle

    def _require_role(self, account_id: str, role: AccountRole) -> dict[str, Any]:
        account = self._ledger.require_account(account_id)
        if account["role"] != role:
            raise ServiceError(
                "FORBIDDEN",
                f"This dashboard is only available to {role} accounts",
                403,
                {},
            )
        return account

    def buyer_summary(self, buyer_id: str) -> dict[str, Any]:
        """Task count, open slots, and coins paid to workers for one buyer."""
        account = self._require_role(buyer_id, AccountRole.BUYER)
        return {
            "account_id": buyer_id,
            "balance": account["balance"],
            "task_count": self._storage.fetch_value(
                "SELECT COUNT(*) FROM tasks WHERE buyer_id = ?", (buyer_id,)
            ),
            "pending_slots": self._storage.fetch_value(
                "SELECT COALESCE(SUM(remaining_workers), 0) FROM tasks "
                "WHERE buyer_id = ? AND status = 'open'",
                (buyer_id,),
            ),
            "pending_reviews": self._storage.fetch_value(
                "SELECT COUNT(*) FROM submissions s JOIN tasks t ON t.task_id = s.task_id "
                "WHERE t.buyer_id = ? AND s.status = 'pending'",
                (buyer_id,),
            ),
            "total_paid": self._storage.fetch_value(
                "SELECT COALESCE(SUM(t.payable_amount), 0) FROM submissions s "
                "JOIN tasks t ON t.task_id = s.task_id "
                "WHERE t.buyer_id = ? AND s.status = 'approved'",
                (buyer_id,),
            ),
        }

    def worker_summary(self, worker_id: str) -> dict[str, Any]:
        """Balance, earnings, and withdrawal totals for one worker."""
        account = self._require_role(worker_id, AccountRole.WORKER)
        return {
            "account_id": worker_id,
            "balance": account["balance"],
            "total_withdrawals": self._storage.fetch_value(
                "SELECT COUNT(*) FROM withdrawals WHERE worker_id = ?", (worker_id,)
            ),
            "pending_withdrawals": self._storage.fetch_value(
                "SELECT COUNT(*) FROM withdrawals "
                "WHERE worker_id = ? AND status IN ('pending', 'approved')",
                (worker_id,),
            ),
            "total_paid_currency": self._storage.fetch_value(
                "SELECT COALESCE(SUM(currency_amount), 0) FROM payments WHERE worker_id = ?",
                (worker_id,),
            ),
            "approved_submissions": self._storage.fetch_value(
                "SELECT COUNT(*) FROM submissions WHERE worker_id = ? AND status = 'approved'",
                (worker_id,),
            ),
            "total_earned": self._storage.fetch_value(
                "SELECT COALESCE(SUM(t.payable_amount), 0) FROM submissions s "
                "JOIN tasks t ON t.task_id = s.task_id "
                "WHERE s.worker_id = ? AND s.status = 'approved'",
                (worker_id,),
            ),
        }

    def admin_summary(self) -> dict[str, Any]:
        """Platform-wide totals. The caller must already be checked as an admin."""
        by_role = self._ledger.count_accounts_by_role()
        return {
            "workers": by_role.get(str(AccountRole.WORKER), 0),
            "buyers": by_role.get(str(AccountRole.BUYER), 0),
            "total_coins": self._ledger.total_coins(),
            "total_escrowed": self._task_lifecycle.total_escrowed(),
            "total_paid_currency": self._storage.fetch_value(
                "SELECT COALESCE(SUM(currency_amount), 0) FROM payments"
            ),
            "payment_count": self._storage.fetch_value("SELECT COUNT(*) FROM payments"),
            "pending_withdrawals": self._storage.fetch_value(
                "SELECT COUNT(*) FROM withdrawals WHERE status IN ('pending', 'approved')"
            ),
        }
