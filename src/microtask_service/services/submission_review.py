"""Worker submissions and the buyer's review queue."""

from __future__ import annotations

import sqlite3
import uuid
from typing import TYPE_CHECKING, Any

from microtask_service.core.exceptions import ServiceError
from microtask_service.logging import get_logger
from microtask_service.models import AccountRole, SubmissionStatus, TaskStatus
from microtask_service.services.storage import parse_iso, to_iso, utc_now

if TYPE_CHECKING:
    from microtask_service.services.ledger import Ledger
    from microtask_service.services.storage import Clock, Storage
    from microtask_service.services.task_lifecycle import TaskLifecycle

_SUBMISSION_COLUMNS = (
    "s.submission_id, s.task_id, s.worker_id, s.content, s.status, s.submitted_at, s.reviewed_at"
)


def _duplicate_submission() -> ServiceError:
    return ServiceError(
        "DUPLICATE_SUBMISSION",
        "You already have an active submission for this task",
        409,
        {},
    )


class SubmissionReview:
    """
    Accepts work from workers and lists it for review.

    Approve and reject are delegated to the TaskLifecycle, which owns the
    slot counter and the payout.
    """

    def __init__(
        self,
        storage: Storage,
        ledger: Ledger,
        task_lifecycle: TaskLifecycle,
        clock: Clock | None = None,
    ) -> None:
        self._storage = storage
        self._ledger = ledger
        self._task_lifecycle = task_lifecycle
        self._clock = clock or utc_now
        self._logger = get_logger(__name__)

    def submit(self, task_id: str, worker_id: str, content: object) -> dict[str, Any]:
        """
        Record a worker's submission as pending.

        Error precedence:
        1. VALIDATION_ERROR: empty content
        2. ACCOUNT_NOT_FOUND / FORBIDDEN: caller is not a worker
        3. TASK_NOT_FOUND
        4. INVALID_STATE: task not open, no slots left, or deadline passed
        5. DUPLICATE_SUBMISSION
        """
        if not isinstance(content, str) or not content.strip():
            raise ServiceError(
                "VALIDATION_ERROR",
                "Field 'content' must be a non-empty string",
                400,
                {"field": "content"},
            )

        worker = self._ledger.require_account(worker_id)
        if worker["role"] != AccountRole.WORKER:
            raise ServiceError("FORBIDDEN", "Only workers can submit work", 403, {})

        now_dt = self._clock()
        submission_id = f"sub-{uuid.uuid4()}"

        try:
            with self._storage.transaction() as db:
                task = db.execute(
                    "SELECT status, remaining_workers, completion_date FROM tasks "
                    "WHERE task_id = ?",
                    (task_id,),
                ).fetchone()
                if task is None:
                    raise ServiceError("TASK_NOT_FOUND", "Task not found", 404, {})
                if task["status"] != TaskStatus.OPEN or task["remaining_workers"] <= 0:
                    raise ServiceError(
                        "INVALID_STATE",
                        "Task is not accepting submissions",
                        409,
                        {"status": task["status"]},
                    )
                if parse_iso(task["completion_date"]) <= now_dt:
                    raise ServiceError(
                        "INVALID_STATE",
                        "Task completion deadline has passed",
                        409,
                        {"completion_date": task["completion_date"]},
                    )

                existing = db.execute(
                    "SELECT 1 FROM submissions WHERE task_id = ? AND worker_id = ? "
                    "AND status != 'rejected'",
                    (task_id, worker_id),
                ).fetchone()
                if existing is not None:
                    raise _duplicate_submission()

                db.execute(
                    "INSERT INTO submissions "
                    "(submission_id, task_id, worker_id, content, status, submitted_at) "
                    "VALUES (?, ?, ?, ?, ?, ?)",
                    (
                        submission_id,
                        task_id,
                        worker_id,
                        content,
                        str(SubmissionStatus.PENDING),
                        to_iso(now_dt),
                    ),
                )
        except sqlite3.IntegrityError as exc:
            raise _duplicate_submission() from exc

        self._logger.info(
            "Submission received",
            extra={"task_id": task_id, "submission_id": submission_id, "worker_id": worker_id},
        )
        return self.get_submission(submission_id)

    def approve(self, task_id: str, submission_id: str, buyer_id: str) -> dict[str, Any]:
        """Approve a pending submission. See TaskLifecycle.approve_submission."""
        return self._task_lifecycle.approve_submission(task_id, submission_id, buyer_id)

    def reject(self, task_id: str, submission_id: str, buyer_id: str) -> dict[str, Any]:
        """Reject a pending submission. See TaskLifecycle.reject_submission."""
        return self._task_lifecycle.reject_submission(task_id, submission_id, buyer_id)

    def get_submission(self, submission_id: str) -> dict[str, Any]:
        """Get a submission by ID. Raises SUBMISSION_NOT_FOUND."""
        row = self._storage.fetch_one(
            f"SELECT {_SUBMISSION_COLUMNS} FROM submissions s "  # nosec B608
            "WHERE s.submission_id = ?",
            (submission_id,),
        )
        if row is None:
            raise ServiceError("SUBMISSION_NOT_FOUND", "Submission not found", 404, {})
        return row

    def review_queue(self, buyer_id: str) -> list[dict[str, Any]]:
        """All pending submissions across the buyer's tasks, oldest first."""
        return self._storage.fetch_all(
            f"SELECT {_SUBMISSION_COLUMNS}, t.title AS task_title, "  # nosec B608
            "t.payable_amount AS payable_amount "
            "FROM submissions s JOIN tasks t ON t.task_id = s.task_id "
            "WHERE t.buyer_id = ? AND s.status = 'pending' "
            "ORDER BY s.submitted_at, s.rowid",
            (buyer_id,),
        )

    def list_task_submissions(self, task_id: str, buyer_id: str) -> list[dict[str, Any]]:
        """
        List every submission on a task, oldest first.

        Raises:
            ServiceError: TASK_NOT_FOUND, FORBIDDEN (caller is not the owner).
        """
        task = self._task_lifecycle.get_task(task_id)
        if task["buyer_id"] != buyer_id:
            raise ServiceError(
                "FORBIDDEN",
                "Only the buyer who posted this task can view its submissions",
                403,
                {},
            )
        return self._storage.fetch_all(
            f"SELECT {_SUBMISSION_COLUMNS} FROM submissions s "  # nosec B608
            "WHERE s.task_id = ? ORDER BY s.submitted_at, s.rowid",
            (task_id,),
        )

    def list_worker_submissions(
        self,
        worker_id: str,
        status: str | None = None,
    ) -> list[dict[str, Any]]:
        """List a worker's submissions, newest first, optionally filtered by status."""
        query = (
            f"SELECT {_SUBMISSION_COLUMNS}, t.title AS task_title, "  # nosec B608
            "t.payable_amount AS payable_amount "
            "FROM submissions s JOIN tasks t ON t.task_id = s.task_id WHERE s.worker_id = ?"
        )
        params: list[object] = [worker_id]
        if status is not None:
            try:
                params.append(str(SubmissionStatus(status)))
            except ValueError as exc:
                raise ServiceError(
                    "VALIDATION_ERROR",
                    f"Unknown submission status: {status}",
                    400,
                    {"field": "status"},
                ) from exc
            query += " AND s.status = ?"
        query += " ORDER BY s.submitted_at DESC, s.rowid DESC"
        return self._storage.fetch_all(query, params)

    def count_pending(self) -> int:
        """Count submissions awaiting review across all tasks."""
        return self._storage.fetch_value(
            "SELECT COUNT(*) FROM submissions WHERE status = 'pending'"
        )
