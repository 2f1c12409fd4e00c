"""Withdrawal and payment endpoints."""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse
from starlette.concurrency import run_in_threadpool

from microtask_service.core.exceptions import ServiceError
from microtask_service.core.state import get_app_state
from microtask_service.routers.validation import (
    is_admin,
    require_owner_or_admin,
    require_payload_match,
    verify_bearer_token,
    verify_body_token,
)
from microtask_service.services.withdrawals import WithdrawalWorkflow

router = APIRouter()


def _workflow() -> WithdrawalWorkflow:
    state = get_app_state()
    if state.withdrawals is None:
        msg = "WithdrawalWorkflow not initialized"
        raise RuntimeError(msg)
    return state.withdrawals


@router.post("/withdrawals", status_code=201)
async def request_withdrawal(request: Request) -> JSONResponse:
    """Ask for a payout of coins. No coins move until settlement."""
    payload = await verify_body_token(request, "request_withdrawal")
    workflow = _workflow()
    result = await run_in_threadpool(
        workflow.request_withdrawal,
        payload["_signer_id"],
        payload.get("coin_amount"),
        payload.get("payment_system"),
        payload.get("account_number"),
    )
    return JSONResponse(status_code=201, content=result)


@router.get("/withdrawals")
async def list_withdrawals(request: Request) -> dict[str, Any]:
    """Admins see every request (optionally ?worker_id=); workers see their own."""
    payload = await verify_bearer_token(request, "list_withdrawals")
    signer_id = payload["_signer_id"]
    worker_id = request.query_params.get("worker_id") if is_admin(signer_id) else signer_id

    workflow = _workflow()
    withdrawals = await run_in_threadpool(
        workflow.list_withdrawals,
        worker_id,
        request.query_params.get("status"),
    )
    return {"withdrawals": withdrawals}


@router.get("/withdrawals/{withdrawal_id}")
async def get_withdrawal(withdrawal_id: str, request: Request) -> dict[str, Any]:
    """Get one withdrawal request. The requesting worker or an admin."""
    payload = await verify_bearer_token(request, "get_withdrawal")
    require_payload_match(payload, "withdrawal_id", withdrawal_id)

    workflow = _workflow()
    withdrawal = await run_in_threadpool(workflow.get_withdrawal, withdrawal_id)
    require_owner_or_admin(payload["_signer_id"], withdrawal["worker_id"])
    return withdrawal


@router.post("/withdrawals/{withdrawal_id}/approve")
async def approve_withdrawal(withdrawal_id: str, request: Request) -> dict[str, Any]:
    """Mark a pending withdrawal as reviewed. Admin only."""
    payload = await verify_body_token(request, "approve_withdrawal")
    require_payload_match(payload, "withdrawal_id", withdrawal_id)
    workflow = _workflow()
    return await run_in_threadpool(
        workflow.approve_withdrawal, withdrawal_id, payload["_signer_id"]
    )


@router.post("/withdrawals/{withdrawal_id}/reject")
async def reject_withdrawal(withdrawal_id: str, request: Request) -> dict[str, Any]:
    """Reject a withdrawal that has not been paid. Admin only."""
    payload = await verify_body_token(request, "reject_withdrawal")
    require_payload_match(payload, "withdrawal_id", withdrawal_id)
    workflow = _workflow()
    return await run_in_threadpool(
        workflow.reject_withdrawal, withdrawal_id, payload["_signer_id"]
    )


@router.post("/withdrawals/{withdrawal_id}/settle")
async def settle_withdrawal(withdrawal_id: str, request: Request) -> dict[str, Any]:
    """Debit the worker, record the payment, and mark the request paid. Admin only."""
    payload = await verify_body_token(request, "settle_withdrawal")
    require_payload_match(payload, "withdrawal_id", withdrawal_id)
    workflow = _workflow()
    return await run_in_threadpool(
        workflow.settle,
        withdrawal_id,
        payload.get("payout_confirmation"),
        payload["_signer_id"],
    )


@router.get("/payments")
async def list_payments(request: Request) -> dict[str, Any]:
    """Admins see every payment (optionally ?worker_id=); workers see their own."""
    payload = await verify_bearer_token(request, "list_payments")
    signer_id = payload["_signer_id"]
    worker_id = request.query_params.get("worker_id") if is_admin(signer_id) else signer_id

    workflow = _workflow()
    payments = await run_in_threadpool(workflow.list_payments, worker_id)
    return {"payments": payments}


@router.api_route(
    "/withdrawals/{withdrawal_id}/settle",
    methods=["GET", "PUT", "PATCH", "DELETE"],
)
async def settle_method_not_allowed(withdrawal_id: str, request: Request) -> None:
    """Reject wrong methods on /withdrawals/{withdrawal_id}/settle."""
    _ = (withdrawal_id, request)
    raise ServiceError("METHOD_NOT_ALLOWED", "Method not allowed", 405, {})
