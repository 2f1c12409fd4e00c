"""Application state management."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from microtask_service.clients.identity_client import IdentityClient
    from microtask_service.services.dashboards import Dashboards
    from microtask_service.services.ledger import Ledger
    from microtask_service.services.storage import Storage
    from microtask_service.services.submission_review import SubmissionReview
    from microtask_service.services.task_lifecycle import TaskLifecycle
    from microtask_service.services.token_validator import TokenValidator
    from microtask_service.services.withdrawals import WithdrawalWorkflow


@dataclass
class AppState:
    """Runtime application state."""

    start_time: datetime = field(default_factory=lambda: datetime.now(UTC))
    admin_ids: frozenset[str] = frozenset()
    storage: Storage | None = None
    ledger: Ledger | None = None
    task_lifecycle: TaskLifecycle | None = None
    submission_review: SubmissionReview | None = None
    withdrawals: WithdrawalWorkflow | None = None
    dashboards: Dashboards | None = None
    identity_client: IdentityClient | None = None
    token_validator: TokenValidator | None = None

    def __setattr__(self, name: str, value: Any) -> None:
        """Keep the TokenValidator pointed at the current identity client."""
        super().__setattr__(name, value)

        token_validator = self.__dict__.get("token_validator")
        if name == "identity_client" and value is not None and token_validator is not None:
            token_validator._identity_client = value

    @property
    def uptime_seconds(self) -> float:
        """Calculate uptime in seconds."""
        return (datetime.now(UTC) - self.start_time).total_seconds()

    @property
    def started_at(self) -> str:
        """ISO format start time."""
        return self.start_time.isoformat(timespec="seconds").replace("+00:00", "Z")


# Global application state container
_state_container: dict[str, AppState | None] = {"app_state": None}


def get_app_state() -> AppState:
    """Get the current application state."""
    app_state = _state_container["app_state"]
    if app_state is None:
        msg = "Application state not initialized"
        raise RuntimeError(msg)
    return app_state


def init_app_state() -> AppState:
    """Initialize application state. Called during startup."""
    app_state = AppState()
    _state_container["app_state"] = app_state
    return app_state


def reset_app_state() -> None:
    """Reset application state. Used in testing."""
    _state_container["app_state"] = None
