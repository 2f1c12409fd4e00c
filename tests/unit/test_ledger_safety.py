"""Ledger safety tests under concurrent access."""

from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor

import pytest

from microtask_service.core.exceptions import ServiceError
from microtask_service.models import AccountRole
from microtask_service.services.ledger import Ledger
from microtask_service.services.storage import Storage

pytestmark = pytest.mark.unit


def _try_debit(ledger: Ledger, account_id: str, amount: int, reference: str) -> str:
    try:
        ledger.debit(account_id, amount, reference)
    except ServiceError as exc:
        return exc.error
    return "ok"


def test_concurrent_debits_never_overdraw_shared_storage(tmp_path):
    """Many threads debiting through one Storage can never go negative."""
    storage = Storage(str(tmp_path / "market.db"))
    ledger = Ledger(storage)
    try:
        ledger.create_account("a-buyer", AccountRole.BUYER)

        with ThreadPoolExecutor(max_workers=8) as pool:
            results = list(
                pool.map(
                    lambda i: _try_debit(ledger, "a-buyer", 7, f"d-{i}"),
                    range(20),
                )
            )

        assert results.count("ok") == 7
        assert results.count("INSUFFICIENT_FUNDS") == 13
        assert ledger.require_account("a-buyer")["balance"] == 1
    finally:
        storage.close()


def test_concurrent_debits_across_connections(tmp_path):
    """Two Storage connections on one database still serialize debits."""
    db_path = str(tmp_path / "market.db")
    first = Storage(db_path)
    second = Storage(db_path)
    try:
        ledgers = [Ledger(first), Ledger(second)]
        ledgers[0].create_account("a-worker", AccountRole.WORKER)

        with ThreadPoolExecutor(max_workers=4) as pool:
            results = list(
                pool.map(
                    lambda i: _try_debit(ledgers[i % 2], "a-worker", 3, f"d-{i}"),
                    range(10),
                )
            )

        assert results.count("ok") == 3
        balance = ledgers[1].require_account("a-worker")["balance"]
        assert balance == 1
        assert balance >= 0
    finally:
        first.close()
        second.close()


def test_concurrent_duplicate_credits_apply_once(tmp_path):
    """Racing credits with the same reference pay out exactly once."""
    storage = Storage(str(tmp_path / "market.db"))
    ledger = Ledger(storage)
    try:
        ledger.create_account("a-worker", AccountRole.WORKER)

        with ThreadPoolExecutor(max_workers=6) as pool:
            list(pool.map(lambda _: ledger.credit("a-worker", 10, "task_payout:s-1"), range(12)))

        assert ledger.require_account("a-worker")["balance"] == 20
    finally:
        storage.close()
