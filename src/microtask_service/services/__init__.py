"""Service layer components."""

from microtask_service.services.dashboards import Dashboards
from microtask_service.services.ledger import Ledger
from microtask_service.services.storage import Storage
from microtask_service.services.submission_review import SubmissionReview
from microtask_service.services.task_lifecycle import TaskLifecycle
from microtask_service.services.token_validator import TokenValidator
from microtask_service.services.withdrawals import WithdrawalWorkflow

__all__ = [
    "Dashboards",
    "Ledger",
    "Storage",
    "SubmissionReview",
    "TaskLifecycle",
    "TokenValidator",
    "WithdrawalWorkflow",
]
