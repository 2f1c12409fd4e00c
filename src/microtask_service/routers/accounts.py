"""Account endpoints."""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse
from starlette.concurrency import run_in_threadpool

from microtask_service.core.exceptions import ServiceError
from microtask_service.core.state import get_app_state
from microtask_service.models import AccountRole
from microtask_service.routers.validation import (
    require_admin,
    require_owner_or_admin,
    require_payload_match,
    verify_bearer_token,
    verify_body_token,
)
from microtask_service.schemas import AccountResponse

router = APIRouter()


def _parse_role(value: object) -> AccountRole:
    if not isinstance(value, str):
        raise ServiceError("VALIDATION_ERROR", "role must be a string", 400, {"field": "role"})
    try:
        return AccountRole(value)
    except ValueError as exc:
        allowed = ", ".join(role.value for role in AccountRole)
        raise ServiceError(
            "VALIDATION_ERROR",
            f"role must be one of: {allowed}",
            400,
            {"field": "role"},
        ) from exc


# === POST /accounts: Register ===


@router.post("/accounts", status_code=201)
async def create_account(request: Request) -> JSONResponse:
    """Create an account for the signer, seeded by role."""
    payload = await verify_body_token(request, "create_account")
    role = _parse_role(payload.get("role", AccountRole.UNSPECIFIED.value))

    state = get_app_state()
    if state.ledger is None:
        msg = "Ledger not initialized"
        raise RuntimeError(msg)

    result = await run_in_threadpool(state.ledger.create_account, payload["_signer_id"], role)
    return JSONResponse(status_code=201, content=result)


# === GET /accounts: User listing (Admin) ===


@router.get("/accounts")
async def list_accounts(request: Request) -> dict[str, list[dict[str, Any]]]:
    """List accounts, optionally filtered by ?role=. Admin only."""
    payload = await verify_bearer_token(request, "list_accounts")
    require_admin(payload["_signer_id"])

    role_raw = request.query_params.get("role")
    role = _parse_role(role_raw) if role_raw is not None else None

    state = get_app_state()
    if state.ledger is None:
        msg = "Ledger not initialized"
        raise RuntimeError(msg)

    accounts = await run_in_threadpool(state.ledger.list_accounts, role)
    return {"accounts": accounts}


# === GET /accounts/{account_id}: Check Balance ===


@router.get("/accounts/{account_id}", response_model=AccountResponse)
async def get_balance(request: Request, account_id: str) -> dict[str, Any]:
    """Get role and balance. Callers see their own account; admins see any."""
    payload = await verify_bearer_token(request, "get_balance")
    require_owner_or_admin(payload["_signer_id"], account_id)
    require_payload_match(payload, "account_id", account_id)

    state = get_app_state()
    if state.ledger is None:
        msg = "Ledger not initialized"
        raise RuntimeError(msg)

    return await run_in_threadpool(state.ledger.require_account, account_id)


# === GET /accounts/{account_id}/transactions: Transaction History ===


@router.get("/accounts/{account_id}/transactions")
async def get_transactions(request: Request, account_id: str) -> dict[str, list[dict[str, Any]]]:
    """Get the coin transaction log of an account, oldest first."""
    payload = await verify_bearer_token(request, "get_transactions")
    require_owner_or_admin(payload["_signer_id"], account_id)
    require_payload_match(payload, "account_id", account_id)

    state = get_app_state()
    if state.ledger is None:
        msg = "Ledger not initialized"
        raise RuntimeError(msg)

    transactions = await run_in_threadpool(state.ledger.get_transactions, account_id)
    return {"transactions": transactions}
