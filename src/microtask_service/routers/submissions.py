"""Submission and review endpoints."""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse
from starlette.concurrency import run_in_threadpool

from microtask_service.core.state import get_app_state
from microtask_service.routers.validation import (
    require_payload_match,
    verify_bearer_token,
    verify_body_token,
)
from microtask_service.services.submission_review import SubmissionReview

router = APIRouter()


def _review() -> SubmissionReview:
    state = get_app_state()
    if state.submission_review is None:
        msg = "SubmissionReview not initialized"
        raise RuntimeError(msg)
    return state.submission_review


@router.post("/tasks/{task_id}/submissions", status_code=201)
async def submit_work(task_id: str, request: Request) -> JSONResponse:
    """Submit proof of work for a task."""
    payload = await verify_body_token(request, "submit_work")
    require_payload_match(payload, "task_id", task_id)
    review = _review()
    result = await run_in_threadpool(
        review.submit, task_id, payload["_signer_id"], payload.get("content")
    )
    return JSONResponse(status_code=201, content=result)


@router.get("/tasks/{task_id}/submissions")
async def list_submissions(task_id: str, request: Request) -> dict[str, Any]:
    """List all submissions on a task. Owning buyer only."""
    payload = await verify_bearer_token(request, "list_submissions")
    review = _review()
    submissions = await run_in_threadpool(
        review.list_task_submissions, task_id, payload["_signer_id"]
    )
    return {"task_id": task_id, "submissions": submissions}


@router.post("/tasks/{task_id}/submissions/{submission_id}/approve")
async def approve_submission(task_id: str, submission_id: str, request: Request) -> dict[str, Any]:
    """Approve a pending submission and pay the worker."""
    payload = await verify_body_token(request, "approve_submission")
    require_payload_match(payload, "task_id", task_id)
    require_payload_match(payload, "submission_id", submission_id)
    review = _review()
    return await run_in_threadpool(
        review.approve, task_id, submission_id, payload["_signer_id"]
    )


@router.post("/tasks/{task_id}/submissions/{submission_id}/reject")
async def reject_submission(task_id: str, submission_id: str, request: Request) -> dict[str, Any]:
    """Reject a pending submission and reopen its slot."""
    payload = await verify_body_token(request, "reject_submission")
    require_payload_match(payload, "task_id", task_id)
    require_payload_match(payload, "submission_id", submission_id)
    review = _review()
    return await run_in_threadpool(review.reject, task_id, submission_id, payload["_signer_id"])


@router.get("/reviews")
async def review_queue(request: Request) -> dict[str, Any]:
    """Pending submissions across the caller's tasks, oldest first."""
    payload = await verify_bearer_token(request, "review_queue")
    review = _review()
    submissions = await run_in_threadpool(review.review_queue, payload["_signer_id"])
    return {"submissions": submissions}


@router.get("/submissions")
async def list_my_submissions(request: Request) -> dict[str, Any]:
    """The caller's own submissions, optionally filtered by ?status=."""
    payload = await verify_bearer_token(request, "list_my_submissions")
    review = _review()
    submissions = await run_in_threadpool(
        review.list_worker_submissions,
        payload["_signer_id"],
        request.query_params.get("status"),
    )
    return {"submissions": submissions}
