"""Dashboard endpoints."""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Request
from starlette.concurrency import run_in_threadpool

from microtask_service.core.state import get_app_state
from microtask_service.routers.validation import require_admin, verify_bearer_token
from microtask_service.services.dashboards import Dashboards

router = APIRouter()


def _dashboards() -> Dashboards:
    state = get_app_state()
    if state.dashboards is None:
        msg = "Dashboards not initialized"
        raise RuntimeError(msg)
    return state.dashboards


@router.get("/dashboard/buyer")
async def buyer_dashboard(request: Request) -> dict[str, Any]:
    """Summary for the calling buyer."""
    payload = await verify_bearer_token(request, "buyer_dashboard")
    dashboards = _dashboards()
    return await run_in_threadpool(dashboards.buyer_summary, payload["_signer_id"])


@router.get("/dashboard/worker")
async def worker_dashboard(request: Request) -> dict[str, Any]:
    """Summary for the calling worker."""
    payload = await verify_bearer_token(request, "worker_dashboard")
    dashboards = _dashboards()
    return await run_in_threadpool(dashboards.worker_summary, payload["_signer_id"])


@router.get("/dashboard/admin")
async def admin_dashboard(request: Request) -> dict[str, Any]:
    """Platform-wide totals. Admin only."""
    payload = await verify_bearer_token(request, "admin_dashboard")
    require_admin(payload["_signer_id"])
    dashboards = _dashboards()
    return await run_in_threadpool(dashboards.admin_summary)
