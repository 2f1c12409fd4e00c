"""Unit test fixtures: cache clearing and wired core components."""

from __future__ import annotations

from typing import TYPE_CHECKING

import pytest

from microtask_service.config import clear_settings_cache
from microtask_service.core.state import reset_app_state
from microtask_service.models import AccountRole
from microtask_service.services.dashboards import Dashboards
from microtask_service.services.ledger import Ledger
from microtask_service.services.storage import Storage
from microtask_service.services.submission_review import SubmissionReview
from microtask_service.services.task_lifecycle import TaskLifecycle
from microtask_service.services.withdrawals import WithdrawalWorkflow
from tests.helpers import FakeClock

if TYPE_CHECKING:
    from collections.abc import Iterator
    from pathlib import Path

ADMIN_ID = "a-admin"
BUYER_ID = "a-buyer"
WORKER_ID = "a-worker"
SECOND_WORKER_ID = "a-worker-2"


@pytest.fixture(autouse=True)
def _clear_caches():
    """Clear settings cache and app state between tests."""
    clear_settings_cache()
    reset_app_state()
    yield
    clear_settings_cache()
    reset_app_state()


@pytest.fixture
def clock() -> FakeClock:
    """A clock frozen at the start of 2026."""
    return FakeClock()


@pytest.fixture
def storage(tmp_path: Path) -> Iterator[Storage]:
    """A fresh SQLite store in a temp directory."""
    store = Storage(db_path=str(tmp_path / "microtask-market.db"))
    yield store
    store.close()


@pytest.fixture
def ledger(storage: Storage, clock: FakeClock) -> Ledger:
    return Ledger(storage, clock=clock)


@pytest.fixture
def lifecycle(storage: Storage, ledger: Ledger, clock: FakeClock) -> TaskLifecycle:
    return TaskLifecycle(storage, ledger, clock=clock)


@pytest.fixture
def review(
    storage: Storage,
    ledger: Ledger,
    lifecycle: TaskLifecycle,
    clock: FakeClock,
) -> SubmissionReview:
    return SubmissionReview(storage, ledger, lifecycle, clock=clock)


@pytest.fixture
def withdrawals(storage: Storage, ledger: Ledger, clock: FakeClock) -> WithdrawalWorkflow:
    """Workflow with 20 coins per currency unit and a 1 coin minimum."""
    return WithdrawalWorkflow(
        storage,
        ledger,
        coins_per_currency_unit=20,
        minimum_coins=1,
        admin_ids=[ADMIN_ID],
        clock=clock,
    )


@pytest.fixture
def dashboards(storage: Storage, ledger: Ledger, lifecycle: TaskLifecycle) -> Dashboards:
    return Dashboards(storage, ledger, lifecycle)


@pytest.fixture
def market(ledger: Ledger) -> Ledger:
    """Ledger with one buyer (50 coins) and two workers (10 coins each)."""
    ledger.create_account(BUYER_ID, AccountRole.BUYER)
    ledger.create_account(WORKER_ID, AccountRole.WORKER)
    ledger.create_account(SECOND_WORKER_ID, AccountRole.WORKER)
    return ledger
