"""Task lifecycle endpoints."""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse
from starlette.concurrency import run_in_threadpool

from microtask_service.core.exceptions import ServiceError
from microtask_service.core.state import get_app_state
from microtask_service.routers.validation import (
    parse_paging,
    require_payload_match,
    verify_body_token,
)
from microtask_service.schemas import TaskListResponse, TaskResponse
from microtask_service.services.task_lifecycle import TaskLifecycle

router = APIRouter()

_ENVELOPE_FIELDS = frozenset({"action", "task_id", "_signer_id"})


def _lifecycle() -> TaskLifecycle:
    state = get_app_state()
    if state.task_lifecycle is None:
        msg = "TaskLifecycle not initialized"
        raise RuntimeError(msg)
    return state.task_lifecycle


# ---------------------------------------------------------------------------
# POST /tasks: create task
# ---------------------------------------------------------------------------


@router.post("/tasks", status_code=201)
async def create_task(request: Request) -> JSONResponse:
    """Create a new task and escrow its full payout from the buyer."""
    payload = await verify_body_token(request, "create_task")
    lifecycle = _lifecycle()
    result = await run_in_threadpool(lifecycle.create_task, payload["_signer_id"], payload)
    return JSONResponse(status_code=201, content=result)


# ---------------------------------------------------------------------------
# GET /tasks: public listing
# ---------------------------------------------------------------------------


@router.get("/tasks", response_model=TaskListResponse)
async def list_tasks(request: Request) -> dict[str, Any]:
    """List tasks with optional status and buyer filters."""
    status = request.query_params.get("status")
    buyer_id = request.query_params.get("buyer_id")
    limit, offset = parse_paging(request)

    lifecycle = _lifecycle()
    tasks = await run_in_threadpool(
        lifecycle.list_tasks,
        status=status,
        buyer_id=buyer_id,
        limit=limit,
        offset=offset,
    )
    return {"tasks": tasks}


@router.get("/tasks/{task_id}", response_model=TaskResponse)
async def get_task(task_id: str) -> dict[str, Any]:
    """Get task details. Public."""
    lifecycle = _lifecycle()
    return await run_in_threadpool(lifecycle.get_task, task_id)


@router.patch("/tasks/{task_id}")
async def update_task(task_id: str, request: Request) -> dict[str, Any]:
    """Edit the title, detail or submission instructions of an open task."""
    payload = await verify_body_token(request, "update_task")
    require_payload_match(payload, "task_id", task_id)
    updates = {key: value for key, value in payload.items() if key not in _ENVELOPE_FIELDS}

    lifecycle = _lifecycle()
    return await run_in_threadpool(
        lifecycle.update_task, task_id, payload["_signer_id"], updates
    )


# ---------------------------------------------------------------------------
# Termination endpoints
# ---------------------------------------------------------------------------


@router.post("/tasks/{task_id}/cancel")
async def cancel_task(task_id: str, request: Request) -> dict[str, Any]:
    """Cancel an open task and refund the unfilled escrow to the buyer."""
    payload = await verify_body_token(request, "cancel_task")
    require_payload_match(payload, "task_id", task_id)
    lifecycle = _lifecycle()
    return await run_in_threadpool(lifecycle.cancel_task, task_id, payload["_signer_id"])


@router.post("/tasks/{task_id}/close")
async def close_task(task_id: str, request: Request) -> dict[str, Any]:
    """Stop accepting work on an open task and refund unfilled slots."""
    payload = await verify_body_token(request, "close_task")
    require_payload_match(payload, "task_id", task_id)
    lifecycle = _lifecycle()
    return await run_in_threadpool(lifecycle.close_task, task_id, payload["_signer_id"])


# ---------------------------------------------------------------------------
# Method-not-allowed: action routes
# ---------------------------------------------------------------------------


@router.api_route(
    "/tasks/{task_id}/cancel",
    methods=["GET", "PUT", "PATCH", "DELETE"],
)
async def cancel_method_not_allowed(task_id: str, request: Request) -> None:
    """Reject wrong methods on /tasks/{task_id}/cancel."""
    _ = (task_id, request)
    raise ServiceError("METHOD_NOT_ALLOWED", "Method not allowed", 405, {})


@router.api_route(
    "/tasks/{task_id}/close",
    methods=["GET", "PUT", "PATCH", "DELETE"],
)
async def close_method_not_allowed(task_id: str, request: Request) -> None:
    """Reject wrong methods on /tasks/{task_id}/close."""
    _ = (task_id, request)
    raise ServiceError("METHOD_NOT_ALLOWED", "Method not allowed", 405, {})
