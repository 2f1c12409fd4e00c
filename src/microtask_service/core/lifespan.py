"""Application lifecycle management."""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

from microtask_service.clients.identity_client import IdentityClient
from microtask_service.config import get_settings
from microtask_service.core.state import init_app_state
from microtask_service.logging import get_logger, setup_logging
from microtask_service.services.dashboards import Dashboards
from microtask_service.services.ledger import Ledger
from microtask_service.services.storage import Storage
from microtask_service.services.submission_review import SubmissionReview
from microtask_service.services.task_lifecycle import TaskLifecycle
from microtask_service.services.token_validator import TokenValidator
from microtask_service.services.withdrawals import WithdrawalWorkflow

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from fastapi import FastAPI


@asynccontextmanager
async def lifespan(_app: FastAPI) -> AsyncIterator[None]:
    """Manage application lifecycle."""
    # === STARTUP ===
    settings = get_settings()

    setup_logging(settings.logging.level, settings.service.name, settings.logging.directory)
    logger = get_logger(__name__)

    state = init_app_state()
    state.admin_ids = frozenset(settings.platform.admin_ids)

    storage = Storage(db_path=settings.database.path)
    state.storage = storage

    ledger = Ledger(storage)
    state.ledger = ledger

    task_lifecycle = TaskLifecycle(storage, ledger)
    state.task_lifecycle = task_lifecycle
    state.submission_review = SubmissionReview(storage, ledger, task_lifecycle)
    state.withdrawals = WithdrawalWorkflow(
        storage,
        ledger,
        coins_per_currency_unit=settings.withdrawals.coins_per_currency_unit,
        minimum_coins=settings.withdrawals.minimum_coins,
        admin_ids=state.admin_ids,
    )
    state.dashboards = Dashboards(storage, ledger, task_lifecycle)

    # Initialize IdentityClient (HTTP client for JWS verification)
    identity_client = IdentityClient(
        base_url=settings.identity.base_url,
        verify_jws_path=settings.identity.verify_jws_path,
        timeout_seconds=settings.identity.timeout_seconds,
    )
    state.token_validator = TokenValidator(identity_client=identity_client)
    state.identity_client = identity_client

    logger.info(
        "Service starting",
        extra={
            "service": settings.service.name,
            "version": settings.service.version,
            "port": settings.server.port,
            "db_path": settings.database.path,
            "identity_base_url": settings.identity.base_url,
            "admin_count": len(state.admin_ids),
        },
    )

    yield  # Application runs here

    # === SHUTDOWN ===
    logger.info("Service shutting down", extra={"uptime_seconds": state.uptime_seconds})

    await identity_client.close()
    storage.close()
