"""Task lifecycle: escrowed creation, slot accounting, review outcomes, termination."""

from __future__ import annotations

import uuid
from typing import TYPE_CHECKING, Any

from microtask_service.core.exceptions import ServiceError
from microtask_service.logging import get_logger
from microtask_service.models import (
    AccountRole,
    SubmissionStatus,
    TaskStatus,
    require_transition,
)
from microtask_service.services.ledger import is_positive_int
from microtask_service.services.storage import parse_iso, to_iso, utc_now

if TYPE_CHECKING:
    import sqlite3

    from microtask_service.services.ledger import Ledger
    from microtask_service.services.storage import Clock, Storage

_UPDATABLE_FIELDS = ("title", "detail", "submission_info")

_TASK_SELECT_SQL = (
    "SELECT task_id, buyer_id, title, detail, submission_info, required_workers, "
    "remaining_workers, payable_amount, completion_date, status, created_at, updated_at, "
    "closed_at, cancelled_at FROM tasks"
)


def _require_text(data: dict[str, Any], field_name: str, *, allow_empty: bool = False) -> str:
    value = data.get(field_name)
    if not isinstance(value, str) or (not allow_empty and not value.strip()):
        raise ServiceError(
            "VALIDATION_ERROR",
            f"Field '{field_name}' must be a non-empty string",
            400,
            {"field": field_name},
        )
    return value


class TaskLifecycle:
    """
    Owns the task state machine and its coin effects.

    Creation debits the buyer's escrow and inserts the task in one
    storage transaction. Approvals pay one slot to the worker, rejections
    reopen one slot, and termination (close or cancel) refunds the
    unfilled slots to the buyer.
    """

    def __init__(self, storage: Storage, ledger: Ledger, clock: Clock | None = None) -> None:
        self._storage = storage
        self._ledger = ledger
        self._clock = clock or utc_now
        self._logger = get_logger(__name__)

    # ------------------------------------------------------------------
    # Private helper methods
    # ------------------------------------------------------------------

    @staticmethod
    def _task_to_response(row: dict[str, Any]) -> dict[str, Any]:
        """Convert a DB row dict to a task response dict."""
        is_open = row["status"] == TaskStatus.OPEN
        return {
            "task_id": row["task_id"],
            "buyer_id": row["buyer_id"],
            "title": row["title"],
            "detail": row["detail"],
            "submission_info": row["submission_info"],
            "required_workers": row["required_workers"],
            "remaining_workers": row["remaining_workers"],
            "payable_amount": row["payable_amount"],
            "escrow_remaining": row["remaining_workers"] * row["payable_amount"] if is_open else 0,
            "completion_date": row["completion_date"],
            "status": row["status"],
            "created_at": row["created_at"],
            "updated_at": row["updated_at"],
            "closed_at": row["closed_at"],
            "cancelled_at": row["cancelled_at"],
        }

    def _load_task(self, db: sqlite3.Connection, task_id: str) -> dict[str, Any]:
        row = db.execute(_TASK_SELECT_SQL + " WHERE task_id = ?", (task_id,)).fetchone()
        if row is None:
            raise ServiceError("TASK_NOT_FOUND", "Task not found", 404, {})
        return dict(row)

    @staticmethod
    def _load_submission(
        db: sqlite3.Connection,
        task_id: str,
        submission_id: str,
    ) -> dict[str, Any]:
        row = db.execute(
            "SELECT submission_id, task_id, worker_id, content, status, submitted_at, "
            "reviewed_at FROM submissions WHERE submission_id = ? AND task_id = ?",
            (submission_id, task_id),
        ).fetchone()
        if row is None:
            raise ServiceError("SUBMISSION_NOT_FOUND", "Submission not found", 404, {})
        return dict(row)

    @staticmethod
    def _require_owner(task: dict[str, Any], buyer_id: str) -> None:
        if task["buyer_id"] != buyer_id:
            raise ServiceError(
                "FORBIDDEN",
                "Only the buyer who posted this task can do this",
                403,
                {},
            )

    @staticmethod
    def _require_open(task: dict[str, Any]) -> None:
        if TaskStatus(task["status"]) is not TaskStatus.OPEN:
            raise ServiceError(
                "INVALID_STATE",
                f"Task is {task['status']}",
                409,
                {"status": task["status"]},
            )

    def _terminate(
        self,
        db: sqlite3.Connection,
        task: dict[str, Any],
        target: TaskStatus,
        now: str,
    ) -> None:
        """
        Move an open task to a terminal state.

        Still-pending submissions are rejected without reopening slots.
        Expects an open storage transaction.
        """
        require_transition(TaskStatus(task["status"]), target)
        timestamp_column = "closed_at" if target is TaskStatus.CLOSED else "cancelled_at"
        cursor = db.execute(
            f"UPDATE tasks SET status = ?, {timestamp_column} = ?, updated_at = ? "  # nosec B608
            "WHERE task_id = ? AND status = 'open'",
            (str(target), now, now, task["task_id"]),
        )
        if cursor.rowcount != 1:
            raise ServiceError("INVALID_STATE", "Task is no longer open", 409, {})
        db.execute(
            "UPDATE submissions SET status = 'rejected', reviewed_at = ? "
            "WHERE task_id = ? AND status = 'pending'",
            (now, task["task_id"]),
        )

    def _refund_unfilled(self, task: dict[str, Any]) -> int:
        """Credit the buyer for every unfilled slot. Expects an open transaction."""
        refund = int(task["remaining_workers"]) * int(task["payable_amount"])
        if refund > 0:
            self._ledger.credit(task["buyer_id"], refund, f"task_refund:{task['task_id']}")
        return refund

    # ------------------------------------------------------------------
    # Public methods
    # ------------------------------------------------------------------

    def create_task(self, buyer_id: str, data: dict[str, Any]) -> dict[str, Any]:
        """
        Create a task and escrow required_workers * payable_amount from the buyer.

        Error precedence:
        1. VALIDATION_ERROR / INVALID_AMOUNT: malformed fields
        2. ACCOUNT_NOT_FOUND: buyer has no account
        3. FORBIDDEN: caller is not a buyer
        4. INSUFFICIENT_FUNDS: balance cannot cover the escrow
        """
        title = _require_text(data, "title")
        detail = _require_text(data, "detail")
        submission_info = _require_text(data, "submission_info", allow_empty=True)

        required_workers = data.get("required_workers")
        payable_amount = data.get("payable_amount")
        if not is_positive_int(required_workers):
            raise ServiceError(
                "INVALID_AMOUNT",
                "required_workers must be a positive integer",
                400,
                {"field": "required_workers"},
            )
        if not is_positive_int(payable_amount):
            raise ServiceError(
                "INVALID_AMOUNT",
                "payable_amount must be a positive integer",
                400,
                {"field": "payable_amount"},
            )

        raw_deadline = _require_text(data, "completion_date")
        try:
            deadline = parse_iso(raw_deadline)
        except ValueError as exc:
            raise ServiceError(
                "VALIDATION_ERROR",
                "completion_date must be an ISO 8601 timestamp",
                400,
                {"field": "completion_date"},
            ) from exc
        now_dt = self._clock()
        if deadline <= now_dt:
            raise ServiceError(
                "VALIDATION_ERROR",
                "completion_date must be in the future",
                400,
                {"field": "completion_date"},
            )

        buyer = self._ledger.require_account(buyer_id)
        if buyer["role"] != AccountRole.BUYER:
            raise ServiceError("FORBIDDEN", "Only buyers can create tasks", 403, {})

        task_id = f"t-{uuid.uuid4()}"
        escrow = int(required_workers) * int(payable_amount)
        now = to_iso(now_dt)

        with self._storage.transaction() as db:
            self._ledger.debit(buyer_id, escrow, f"task_escrow:{task_id}")
            db.execute(
                "INSERT INTO tasks (task_id, buyer_id, title, detail, submission_info, "
                "required_workers, remaining_workers, payable_amount, completion_date, status, "
                "created_at) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    task_id,
                    buyer_id,
                    title,
                    detail,
                    submission_info,
                    required_workers,
                    required_workers,
                    payable_amount,
                    to_iso(deadline),
                    str(TaskStatus.OPEN),
                    now,
                ),
            )
            task = self._load_task(db, task_id)

        self._logger.info(
            "Task created",
            extra={
                "task_id": task_id,
                "buyer_id": buyer_id,
                "required_workers": required_workers,
                "payable_amount": payable_amount,
                "escrow": escrow,
            },
        )
        return self._task_to_response(task)

    def get_task(self, task_id: str) -> dict[str, Any]:
        """Get task details. Raises TASK_NOT_FOUND."""
        row = self._storage.fetch_one(_TASK_SELECT_SQL + " WHERE task_id = ?", (task_id,))
        if row is None:
            raise ServiceError("TASK_NOT_FOUND", "Task not found", 404, {})
        return self._task_to_response(row)

    def list_tasks(
        self,
        status: str | None = None,
        buyer_id: str | None = None,
        limit: int | None = None,
        offset: int | None = None,
    ) -> list[dict[str, Any]]:
        """List tasks with optional filters, newest first."""
        query = _TASK_SELECT_SQL
        clauses: list[str] = []
        params: list[object] = []

        if status is not None:
            try:
                params.append(str(TaskStatus(status)))
            except ValueError as exc:
                raise ServiceError(
                    "VALIDATION_ERROR",
                    f"Unknown task status: {status}",
                    400,
                    {"field": "status"},
                ) from exc
            clauses.append("status = ?")
        if buyer_id is not None:
            clauses.append("buyer_id = ?")
            params.append(buyer_id)

        if clauses:
            query += " WHERE " + " AND ".join(clauses)
        query += " ORDER BY created_at DESC, task_id"

        if limit is not None:
            query += " LIMIT ?"
            params.append(limit)
            if offset is not None:
                query += " OFFSET ?"
                params.append(offset)
        elif offset is not None:
            query += " LIMIT -1 OFFSET ?"
            params.append(offset)

        return [self._task_to_response(row) for row in self._storage.fetch_all(query, params)]

    def update_task(self, task_id: str, buyer_id: str, updates: dict[str, Any]) -> dict[str, Any]:
        """
        Edit the descriptive fields of an open task.

        Amounts and slot counts are fixed at creation.
        """
        unknown = sorted(set(updates) - set(_UPDATABLE_FIELDS))
        if unknown:
            raise ServiceError(
                "VALIDATION_ERROR",
                f"Fields cannot be updated: {', '.join(unknown)}",
                400,
                {"fields": unknown},
            )
        if not updates:
            raise ServiceError("VALIDATION_ERROR", "No fields to update", 400, {})
        values = {
            name: _require_text(updates, name, allow_empty=name == "submission_info")
            for name in updates
        }

        with self._storage.transaction() as db:
            task = self._load_task(db, task_id)
            self._require_owner(task, buyer_id)
            self._require_open(task)
            set_clause = ", ".join(f"{name} = ?" for name in values)
            db.execute(
                f"UPDATE tasks SET {set_clause}, updated_at = ? WHERE task_id = ?",  # nosec B608
                (*values.values(), to_iso(self._clock()), task_id),
            )
            task = self._load_task(db, task_id)

        self._logger.info("Task updated", extra={"task_id": task_id, "fields": sorted(values)})
        return self._task_to_response(task)

    def approve_submission(
        self,
        task_id: str,
        submission_id: str,
        buyer_id: str,
    ) -> dict[str, Any]:
        """
        Approve a pending submission: pay the worker one slot.

        Closes the task when its last slot is filled.

        Raises:
            ServiceError: TASK_NOT_FOUND, FORBIDDEN, SUBMISSION_NOT_FOUND,
                ALREADY_RESOLVED, INVALID_STATE.
        """
        now = to_iso(self._clock())
        with self._storage.transaction() as db:
            task = self._load_task(db, task_id)
            self._require_owner(task, buyer_id)
            submission = self._load_submission(db, task_id, submission_id)
            require_transition(SubmissionStatus(submission["status"]), SubmissionStatus.APPROVED)
            self._require_open(task)

            cursor = db.execute(
                "UPDATE tasks SET remaining_workers = remaining_workers - 1, updated_at = ? "
                "WHERE task_id = ? AND status = 'open' AND remaining_workers > 0",
                (now, task_id),
            )
            if cursor.rowcount != 1:
                raise ServiceError("INVALID_STATE", "Task has no remaining slots", 409, {})

            cursor = db.execute(
                "UPDATE submissions SET status = 'approved', reviewed_at = ? "
                "WHERE submission_id = ? AND status = 'pending'",
                (now, submission_id),
            )
            if cursor.rowcount != 1:
                raise ServiceError(
                    "ALREADY_RESOLVED", "Submission has already been reviewed", 409, {}
                )

            payout = self._ledger.credit(
                submission["worker_id"],
                int(task["payable_amount"]),
                f"task_payout:{submission_id}",
            )

            task = self._load_task(db, task_id)
            if task["remaining_workers"] == 0:
                self._terminate(db, task, TaskStatus.CLOSED, now)
                task = self._load_task(db, task_id)
            submission = self._load_submission(db, task_id, submission_id)

        self._logger.info(
            "Submission approved",
            extra={
                "task_id": task_id,
                "submission_id": submission_id,
                "worker_id": submission["worker_id"],
                "amount": task["payable_amount"],
                "remaining_workers": task["remaining_workers"],
                "task_status": task["status"],
            },
        )
        return {
            "submission": submission,
            "task": self._task_to_response(task),
            "worker_balance": payout["balance_after"],
        }

    def reject_submission(
        self,
        task_id: str,
        submission_id: str,
        buyer_id: str,
    ) -> dict[str, Any]:
        """
        Reject a pending submission and reopen one slot.

        The slot count never exceeds the task's original required_workers.
        """
        now = to_iso(self._clock())
        with self._storage.transaction() as db:
            task = self._load_task(db, task_id)
            self._require_owner(task, buyer_id)
            submission = self._load_submission(db, task_id, submission_id)
            require_transition(SubmissionStatus(submission["status"]), SubmissionStatus.REJECTED)
            self._require_open(task)

            cursor = db.execute(
                "UPDATE submissions SET status = 'rejected', reviewed_at = ? "
                "WHERE submission_id = ? AND status = 'pending'",
                (now, submission_id),
            )
            if cursor.rowcount != 1:
                raise ServiceError(
                    "ALREADY_RESOLVED", "Submission has already been reviewed", 409, {}
                )
            db.execute(
                "UPDATE tasks "
                "SET remaining_workers = MIN(remaining_workers + 1, required_workers), "
                "updated_at = ? WHERE task_id = ? AND status = 'open'",
                (now, task_id),
            )

            task = self._load_task(db, task_id)
            submission = self._load_submission(db, task_id, submission_id)

        self._logger.info(
            "Submission rejected",
            extra={
                "task_id": task_id,
                "submission_id": submission_id,
                "remaining_workers": task["remaining_workers"],
            },
        )
        return {"submission": submission, "task": self._task_to_response(task)}

    def cancel_task(self, task_id: str, buyer_id: str) -> dict[str, Any]:
        """
        Cancel an open task and refund remaining_workers * payable_amount.

        Raises:
            ServiceError: TASK_NOT_FOUND, FORBIDDEN, INVALID_STATE.
        """
        return self._end_task(task_id, buyer_id, TaskStatus.CANCELLED)

    def close_task(self, task_id: str, buyer_id: str) -> dict[str, Any]:
        """Stop accepting work on an open task; unfilled slots are refunded."""
        return self._end_task(task_id, buyer_id, TaskStatus.CLOSED)

    def _end_task(self, task_id: str, buyer_id: str, target: TaskStatus) -> dict[str, Any]:
        now = to_iso(self._clock())
        with self._storage.transaction() as db:
            task = self._load_task(db, task_id)
            self._require_owner(task, buyer_id)
            require_transition(TaskStatus(task["status"]), target)
            refund = self._refund_unfilled(task)
            self._terminate(db, task, target, now)
            task = self._load_task(db, task_id)

        self._logger.info(
            "Task ended by buyer",
            extra={"task_id": task_id, "status": str(target), "refunded": refund},
        )
        response = self._task_to_response(task)
        response["refunded"] = refund
        return response

    # ------------------------------------------------------------------
    # Statistics
    # ------------------------------------------------------------------

    def count_tasks(self) -> int:
        """Count all tasks."""
        return self._storage.fetch_value("SELECT COUNT(*) FROM tasks")

    def count_tasks_by_status(self) -> dict[str, int]:
        """Count tasks grouped by status."""
        rows = self._storage.fetch_all(
            "SELECT status, COUNT(*) AS total FROM tasks GROUP BY status"
        )
        return {str(row["status"]): int(row["total"]) for row in rows}

    def total_escrowed(self) -> int:
        """Coins still held against unfilled slots of open tasks."""
        return self._storage.fetch_value(
            "SELECT COALESCE(SUM(remaining_workers * payable_amount), 0) "
            "FROM tasks WHERE status = 'open'"
        )
