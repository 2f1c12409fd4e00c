"""Verification of signed JWS request tokens."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, cast

from microtask_service.core.exceptions import ServiceError

if TYPE_CHECKING:
    from microtask_service.clients.identity_client import IdentityClient


class TokenValidator:
    """Checks a JWS token with the Identity service and validates its action."""

    def __init__(self, identity_client: IdentityClient) -> None:
        self._identity_client = identity_client

    async def validate_jws_token(
        self,
        token: object,
        expected_action: str | tuple[str, ...],
    ) -> dict[str, Any]:
        """
        Verify a JWS token and check its action field.

        Returns the verified payload dict with "_signer_id" added.

        Error precedence:
        1. INVALID_JWS: token is not a three-part compact JWS
        2. IDENTITY_SERVICE_UNAVAILABLE: Identity service unreachable
        3. FORBIDDEN: signature invalid
        4. INVALID_PAYLOAD: wrong or missing action
        """
        if not isinstance(token, str) or not token:
            raise ServiceError("INVALID_JWS", "Token must be a non-empty string", 400, {})

        if len(token.split(".")) != 3:
            raise ServiceError(
                "INVALID_JWS",
                "Token must be in JWS compact serialization format (header.payload.signature)",
                400,
                {},
            )

        result: Any
        try:
            result = await self._identity_client.verify_jws(token)
        except ServiceError:
            raise
        except Exception as exc:
            raise ServiceError(
                "IDENTITY_SERVICE_UNAVAILABLE",
                "Cannot connect to Identity service",
                502,
                {},
            ) from exc

        if not isinstance(result, dict) or not isinstance(result.get("payload"), dict):
            raise ServiceError(
                "IDENTITY_SERVICE_UNAVAILABLE",
                "Identity service returned an unexpected body",
                502,
                {},
            )
        signer_id = result.get("agent_id")
        if not isinstance(signer_id, str) or not signer_id:
            raise ServiceError("INVALID_JWS", "Token signer is missing", 400, {})
        payload = cast("dict[str, Any]", result["payload"])

        if "action" not in payload:
            raise ServiceError(
                "INVALID_PAYLOAD",
                "JWS payload must include an 'action' field",
                400,
                {},
            )

        allowed_actions = (
            {expected_action} if isinstance(expected_action, str) else set(expected_action)
        )
        action = payload["action"]
        if action not in allowed_actions:
            expected_actions_text = ", ".join(sorted(allowed_actions))
            raise ServiceError(
                "INVALID_PAYLOAD",
                f"Expected action in [{expected_actions_text}], got '{action}'",
                400,
                {},
            )

        payload["_signer_id"] = signer_id
        return payload
