"""Async HTTP client for the Identity service."""

from __future__ import annotations

from typing import Any

import httpx

from microtask_service.core.exceptions import ServiceError
from microtask_service.logging import get_logger


def _unavailable(message: str) -> ServiceError:
    return ServiceError("IDENTITY_SERVICE_UNAVAILABLE", message, 502, {})


class IdentityClient:
    """
    Asks the Identity service who signed a marketplace request.

    The market keeps no key registry; it trusts the verdict and the
    signer id that the Identity service returns.
    """

    def __init__(self, base_url: str, verify_jws_path: str, timeout_seconds: int) -> None:
        self._verify_jws_path = verify_jws_path
        self._logger = get_logger(__name__)
        self._client = httpx.AsyncClient(
            base_url=base_url,
            timeout=httpx.Timeout(timeout_seconds),
        )

    async def verify_jws(self, token: str) -> dict[str, Any]:
        """
        Return the Identity service verdict: {"valid", "agent_id", "payload"}.

        Any answer other than a 200 with a JSON object is treated as the
        service being unavailable (502). A verdict with valid=false is 403.
        """
        try:
            response = await self._client.post(self._verify_jws_path, json={"token": token})
        except httpx.HTTPError as exc:
            self._logger.warning(
                "Identity verification request failed",
                extra={"reason": type(exc).__name__, "path": self._verify_jws_path},
            )
            raise _unavailable("Cannot reach the Identity service") from exc

        verdict = self._read_verdict(response)
        if verdict.get("valid") is not True:
            raise ServiceError("FORBIDDEN", "JWS signature verification failed", 403, {})
        return verdict

    def _read_verdict(self, response: httpx.Response) -> dict[str, Any]:
        if response.status_code != 200:
            self._logger.warning(
                "Identity verification answered with an error status",
                extra={"status_code": response.status_code},
            )
            raise _unavailable(f"Identity service answered {response.status_code}")
        try:
            verdict = response.json()
        except ValueError as exc:
            raise _unavailable("Identity service answer is not JSON") from exc
        if not isinstance(verdict, dict):
            raise _unavailable("Identity service answer is not a JSON object")
        return verdict

    async def close(self) -> None:
        await self._client.aclose()
