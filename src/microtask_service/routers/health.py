"""Health check endpoint."""

from __future__ import annotations

from fastapi import APIRouter
from starlette.concurrency import run_in_threadpool

from microtask_service.core.state import get_app_state
from microtask_service.schemas import HealthResponse

router = APIRouter()


@router.get("/health", response_model=HealthResponse)
async def health_check() -> HealthResponse:
    """Check service health and return statistics."""
    state = get_app_state()
    total_accounts = 0
    total_coins = 0
    total_escrowed = 0
    tasks_by_status: dict[str, int] = {}
    pending_submissions = 0
    if state.ledger is not None:
        total_accounts = await run_in_threadpool(state.ledger.count_accounts)
        total_coins = await run_in_threadpool(state.ledger.total_coins)
    if state.task_lifecycle is not None:
        total_escrowed = await run_in_threadpool(state.task_lifecycle.total_escrowed)
        tasks_by_status = await run_in_threadpool(state.task_lifecycle.count_tasks_by_status)
    if state.submission_review is not None:
        pending_submissions = await run_in_threadpool(state.submission_review.count_pending)
    return HealthResponse(
        status="ok",
        uptime_seconds=state.uptime_seconds,
        started_at=state.started_at,
        total_accounts=total_accounts,
        total_coins=total_coins,
        total_escrowed=total_escrowed,
        tasks_by_status=tasks_by_status,
        pending_submissions=pending_submissions,
    )
