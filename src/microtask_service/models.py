"""Account roles and lifecycle states for tasks, submissions, and withdrawals."""

from __future__ import annotations

from enum import StrEnum
from typing import TypeVar

from microtask_service.core.exceptions import ServiceError


class AccountRole(StrEnum):
    """Economic role chosen at registration."""

    BUYER = "buyer"
    WORKER = "worker"
    UNSPECIFIED = "unspecified"


STARTING_BALANCES: dict[AccountRole, int] = {
    AccountRole.BUYER: 50,
    AccountRole.WORKER: 10,
    AccountRole.UNSPECIFIED: 0,
}


class TaskStatus(StrEnum):
    """Task lifecycle state."""

    OPEN = "open"
    CLOSED = "closed"
    CANCELLED = "cancelled"


class SubmissionStatus(StrEnum):
    """Submission review state."""

    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class WithdrawalStatus(StrEnum):
    """Withdrawal settlement state."""

    PENDING = "pending"
    APPROVED = "approved"
    PAID = "paid"
    REJECTED = "rejected"


_State = TypeVar("_State", TaskStatus, SubmissionStatus, WithdrawalStatus)

TASK_TRANSITIONS: dict[TaskStatus, frozenset[TaskStatus]] = {
    TaskStatus.OPEN: frozenset({TaskStatus.CLOSED, TaskStatus.CANCELLED}),
    TaskStatus.CLOSED: frozenset(),
    TaskStatus.CANCELLED: frozenset(),
}

SUBMISSION_TRANSITIONS: dict[SubmissionStatus, frozenset[SubmissionStatus]] = {
    SubmissionStatus.PENDING: frozenset({SubmissionStatus.APPROVED, SubmissionStatus.REJECTED}),
    SubmissionStatus.APPROVED: frozenset(),
    SubmissionStatus.REJECTED: frozenset(),
}

WITHDRAWAL_TRANSITIONS: dict[WithdrawalStatus, frozenset[WithdrawalStatus]] = {
    WithdrawalStatus.PENDING: frozenset(
        {WithdrawalStatus.APPROVED, WithdrawalStatus.PAID, WithdrawalStatus.REJECTED}
    ),
    WithdrawalStatus.APPROVED: frozenset({WithdrawalStatus.PAID, WithdrawalStatus.REJECTED}),
    WithdrawalStatus.PAID: frozenset(),
    WithdrawalStatus.REJECTED: frozenset(),
}


def require_transition(current: _State, target: _State) -> None:
    """
    Check that an entity may move from current to target.

    Tasks report INVALID_STATE; submissions and withdrawals report
    ALREADY_RESOLVED, since the only illegal moves for them start
    from a resolved state.

    Raises:
        ServiceError: INVALID_STATE or ALREADY_RESOLVED.
    """
    match current:
        case TaskStatus():
            allowed: frozenset[object] = frozenset(TASK_TRANSITIONS[current])
            error = "INVALID_STATE"
        case SubmissionStatus():
            allowed = frozenset(SUBMISSION_TRANSITIONS[current])
            error = "ALREADY_RESOLVED"
        case WithdrawalStatus():
            allowed = frozenset(WITHDRAWAL_TRANSITIONS[current])
            error = "ALREADY_RESOLVED"

    if target not in allowed:
        raise ServiceError(
            error,
            f"Cannot move {type(current).__name__} from '{current}' to '{target}'",
            409,
            {"current_status": str(current), "target_status": str(target)},
        )
