"""SQLite-backed record store shared by every core component."""

from __future__ import annotations

import sqlite3
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path
from threading import RLock
from typing import TYPE_CHECKING, Any

from microtask_service.core.exceptions import ServiceError
from microtask_service.logging import get_logger

if TYPE_CHECKING:
    from collections.abc import Callable, Iterator, Sequence

    Clock = Callable[[], datetime]


def utc_now() -> datetime:
    """Current UTC time."""
    return datetime.now(UTC)


def to_iso(moment: datetime) -> str:
    """Format a datetime as ISO 8601 UTC with a Z suffix."""
    return moment.astimezone(UTC).isoformat(timespec="microseconds").replace("+00:00", "Z")


def parse_iso(value: str) -> datetime:
    """Parse an ISO 8601 timestamp, treating naive values as UTC."""
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


def _storage_unavailable(exc: sqlite3.Error) -> ServiceError:
    return ServiceError(
        "STORAGE_UNAVAILABLE",
        "Record store is temporarily unavailable, retry later",
        503,
        {"reason": str(exc)},
    )


class Storage:
    """
    Owns the SQLite connection and the transaction boundary.

    One instance is created at startup and handed to every component.
    All balance, slot and status mutations of one operation run inside
    a single transaction(); nested transaction() calls join the outer
    one so components can be composed without partial commits.
    """

    def __init__(self, db_path: str) -> None:
        self._lock = RLock()
        self._depth = 0
        Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self._db = sqlite3.connect(db_path, check_same_thread=False)
        self._db.row_factory = sqlite3.Row
        self._db.execute("PRAGMA journal_mode=WAL")
        self._db.execute("PRAGMA foreign_keys=ON")
        self._db.execute("PRAGMA busy_timeout=5000")
        self._init_schema()

    def _init_schema(self) -> None:
        """Create tables if they don't exist."""
        with self._lock:
            self._db.executescript(
                """
                CREATE TABLE IF NOT EXISTS accounts (
                    account_id TEXT PRIMARY KEY,
                    role TEXT NOT NULL,
                    balance INTEGER NOT NULL DEFAULT 0 CHECK (balance >= 0),
                    created_at TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS transactions (
                    tx_id TEXT PRIMARY KEY,
                    account_id TEXT NOT NULL REFERENCES accounts(account_id),
                    type TEXT NOT NULL,
                    amount INTEGER NOT NULL CHECK (amount > 0),
                    balance_after INTEGER NOT NULL CHECK (balance_after >= 0),
                    reference TEXT NOT NULL,
                    timestamp TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS tasks (
                    task_id TEXT PRIMARY KEY,
                    buyer_id TEXT NOT NULL REFERENCES accounts(account_id),
                    title TEXT NOT NULL,
                    detail TEXT NOT NULL,
                    submission_info TEXT NOT NULL,
                    required_workers INTEGER NOT NULL CHECK (required_workers > 0),
                    remaining_workers INTEGER NOT NULL
                        CHECK (remaining_workers >= 0 AND remaining_workers <= required_workers),
                    payable_amount INTEGER NOT NULL CHECK (payable_amount > 0),
                    completion_date TEXT NOT NULL,
                    status TEXT NOT NULL DEFAULT 'open',
                    created_at TEXT NOT NULL,
                    updated_at TEXT,
                    closed_at TEXT,
                    cancelled_at TEXT
                );

                CREATE TABLE IF NOT EXISTS submissions (
                    submission_id TEXT PRIMARY KEY,
                    task_id TEXT NOT NULL REFERENCES tasks(task_id),
                    worker_id TEXT NOT NULL REFERENCES accounts(account_id),
                    content TEXT NOT NULL,
                    status TEXT NOT NULL DEFAULT 'pending',
                    submitted_at TEXT NOT NULL,
                    reviewed_at TEXT
                );

                CREATE TABLE IF NOT EXISTS withdrawals (
                    withdrawal_id TEXT PRIMARY KEY,
                    worker_id TEXT NOT NULL REFERENCES accounts(account_id),
                    coin_amount INTEGER NOT NULL CHECK (coin_amount > 0),
                    currency_amount INTEGER NOT NULL CHECK (currency_amount >= 0),
                    payment_system TEXT NOT NULL,
                    account_number TEXT NOT NULL,
                    status TEXT NOT NULL DEFAULT 'pending',
                    requested_at TEXT NOT NULL,
                    resolved_at TEXT
                );

                CREATE TABLE IF NOT EXISTS payments (
                    payment_id TEXT PRIMARY KEY,
                    withdrawal_id TEXT NOT NULL UNIQUE REFERENCES withdrawals(withdrawal_id),
                    worker_id TEXT NOT NULL REFERENCES accounts(account_id),
                    coin_amount INTEGER NOT NULL CHECK (coin_amount > 0),
                    currency_amount INTEGER NOT NULL,
                    payment_system TEXT NOT NULL,
                    account_number TEXT NOT NULL,
                    payout_confirmation TEXT NOT NULL,
                    paid_at TEXT NOT NULL
                );

                CREATE UNIQUE INDEX IF NOT EXISTS ux_credit_reference
                    ON transactions(account_id, reference)
                    WHERE type = 'credit';

                CREATE UNIQUE INDEX IF NOT EXISTS ux_active_submission
                    ON submissions(task_id, worker_id)
                    WHERE status != 'rejected';

                CREATE INDEX IF NOT EXISTS ix_transactions_account_timestamp_tx_id
                    ON transactions(account_id, timestamp, tx_id);

                CREATE INDEX IF NOT EXISTS ix_tasks_buyer ON tasks(buyer_id);
                CREATE INDEX IF NOT EXISTS ix_submissions_task ON submissions(task_id);
                CREATE INDEX IF NOT EXISTS ix_submissions_worker ON submissions(worker_id);
                CREATE INDEX IF NOT EXISTS ix_withdrawals_worker ON withdrawals(worker_id);
                """
            )
            self._db.commit()

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """
        Run a block inside one write transaction.

        Commits on success and rolls back on any exception. SQLite
        operational failures (locked, busy, disk) surface as
        STORAGE_UNAVAILABLE.
        """
        with self._lock:
            if self._depth > 0:
                self._depth += 1
                try:
                    yield self._db
                finally:
                    self._depth -= 1
                return

            try:
                self._db.execute("BEGIN IMMEDIATE")
            except sqlite3.OperationalError as exc:
                get_logger(__name__).warning(
                    "Could not begin transaction", extra={"error": str(exc)}
                )
                raise _storage_unavailable(exc) from exc

            self._depth = 1
            try:
                yield self._db
                self._db.commit()
            except sqlite3.OperationalError as exc:
                self._db.rollback()
                get_logger(__name__).warning(
                    "Transaction rolled back on storage failure", extra={"error": str(exc)}
                )
                raise _storage_unavailable(exc) from exc
            except BaseException:
                self._db.rollback()
                raise
            finally:
                self._depth = 0

    def fetch_one(self, query: str, params: Sequence[object] = ()) -> dict[str, Any] | None:
        """Run a read query and return the first row as a dict, or None."""
        with self._lock:
            try:
                row = self._db.execute(query, params).fetchone()
            except sqlite3.OperationalError as exc:
                raise _storage_unavailable(exc) from exc
        if row is None:
            return None
        return dict(row)

    def fetch_all(self, query: str, params: Sequence[object] = ()) -> list[dict[str, Any]]:
        """Run a read query and return all rows as dicts."""
        with self._lock:
            try:
                rows = self._db.execute(query, params).fetchall()
            except sqlite3.OperationalError as exc:
                raise _storage_unavailable(exc) from exc
        return [dict(row) for row in rows]

    def fetch_value(self, query: str, params: Sequence[object] = ()) -> int:
        """Run an aggregate query and return its single integer result (0 if NULL)."""
        with self._lock:
            try:
                row = self._db.execute(query, params).fetchone()
            except sqlite3.OperationalError as exc:
                raise _storage_unavailable(exc) from exc
        if row is None or row[0] is None:
            return 0
        return int(row[0])

    def close(self) -> None:
        """Close the database connection."""
        with self._lock:
            self._db.close()
