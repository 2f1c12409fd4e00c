"""Shared request validation and authentication helpers for routers."""

from __future__ import annotations

import json
from typing import TYPE_CHECKING, Any

from microtask_service.core.exceptions import ServiceError
from microtask_service.core.state import get_app_state

if TYPE_CHECKING:
    from fastapi import Request


def parse_json_body(raw_body: bytes) -> dict[str, Any]:
    """Parse JSON body, raising ServiceError on failure."""
    try:
        data = json.loads(raw_body)
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        raise ServiceError(
            "INVALID_JSON",
            "Request body is not valid JSON",
            400,
            {},
        ) from exc

    if not isinstance(data, dict):
        raise ServiceError(
            "INVALID_JSON",
            "Request body must be a JSON object",
            400,
            {},
        )

    return data


def extract_token(data: dict[str, Any], field_name: str) -> str:
    """Extract and validate a token field from parsed JSON body."""
    if field_name not in data:
        raise ServiceError(
            "INVALID_JWS",
            f"Missing required field: {field_name}",
            400,
            {},
        )

    value = data[field_name]

    if value is None:
        raise ServiceError(
            "INVALID_JWS",
            f"Field '{field_name}' must not be null",
            400,
            {},
        )

    if not isinstance(value, str):
        raise ServiceError(
            "INVALID_JWS",
            f"Field '{field_name}' must be a string",
            400,
            {},
        )

    if not value:
        raise ServiceError(
            "INVALID_JWS",
            f"Field '{field_name}' must not be empty",
            400,
            {},
        )

    return value


def extract_bearer_token(authorization: str | None) -> str:
    """Extract JWS token from Authorization header."""
    if authorization is None:
        raise ServiceError(
            "INVALID_JWS",
            "Missing Authorization header",
            400,
            {},
        )

    if not authorization.startswith("Bearer "):
        raise ServiceError(
            "INVALID_JWS",
            "Authorization header must use Bearer scheme",
            400,
            {},
        )

    token = authorization[len("Bearer ") :]
    if not token:
        raise ServiceError(
            "INVALID_JWS",
            "Bearer token must not be empty",
            400,
            {},
        )

    return token


async def _validate(token: str, action: str) -> dict[str, Any]:
    state = get_app_state()
    if state.token_validator is None:
        msg = "TokenValidator not initialized"
        raise RuntimeError(msg)
    return await state.token_validator.validate_jws_token(token, action)


async def verify_body_token(request: Request, action: str) -> dict[str, Any]:
    """
    Read {"token": "<JWS>"} from the request body and verify it.

    Returns the signed payload with "_signer_id" set to the caller.
    """
    body = await request.body()
    data = {} if body == b"" else parse_json_body(body)
    token = extract_token(data, "token")
    return await _validate(token, action)


async def verify_bearer_token(request: Request, action: str) -> dict[str, Any]:
    """Verify the Bearer JWS of a read request. Returns the signed payload."""
    token = extract_bearer_token(request.headers.get("authorization"))
    return await _validate(token, action)


def require_payload_match(payload: dict[str, Any], field_name: str, expected: str) -> None:
    """Reject a signed payload whose resource ID disagrees with the URL."""
    value = payload.get(field_name)
    if value is not None and value != expected:
        raise ServiceError(
            "PAYLOAD_MISMATCH",
            f"JWS payload {field_name} does not match URL",
            400,
            {},
        )


def is_admin(account_id: str) -> bool:
    """Check the caller against the administrators loaded at startup."""
    return account_id in get_app_state().admin_ids


def require_admin(account_id: str) -> None:
    """Check that the verified caller is a platform administrator."""
    if not is_admin(account_id):
        raise ServiceError(
            "FORBIDDEN",
            "Only platform administrators can perform this operation",
            403,
            {},
        )


def require_owner_or_admin(signer_id: str, account_id: str) -> None:
    """Check that the caller is the account owner or an administrator."""
    if signer_id != account_id and not is_admin(signer_id):
        raise ServiceError(
            "FORBIDDEN",
            "You can only access your own account",
            403,
            {},
        )


def parse_paging(request: Request) -> tuple[int | None, int | None]:
    """Read optional limit and offset query parameters."""
    offset_raw = request.query_params.get("offset")
    limit_raw = request.query_params.get("limit")

    offset: int | None = None
    limit: int | None = None

    if offset_raw is not None:
        try:
            offset = int(offset_raw)
        except ValueError as exc:
            raise ServiceError("VALIDATION_ERROR", "offset must be an integer", 400, {}) from exc
        if offset < 0:
            raise ServiceError("VALIDATION_ERROR", "offset must be >= 0", 400, {})

    if limit_raw is not None:
        try:
            limit = int(limit_raw)
        except ValueError as exc:
            raise ServiceError("VALIDATION_ERROR", "limit must be an integer", 400, {}) from exc
        if limit <= 0:
            raise ServiceError("VALIDATION_ERROR", "limit must be >= 1", 400, {})

    return limit, offset
