"""ASGI middleware guarding the signed-body endpoints."""

from __future__ import annotations

import re
from typing import TYPE_CHECKING

from fastapi.responses import JSONResponse
from starlette.datastructures import Headers

if TYPE_CHECKING:
    from starlette.types import ASGIApp, Message, Receive, Scope, Send


# Routes whose body is {"token": "<JWS>"}
_SIGNED_BODY_ROUTES: dict[str, re.Pattern[str]] = {
    "POST": re.compile(
        r"^/(accounts"
        r"|tasks(/[^/]+/(cancel|close|submissions(/[^/]+/(approve|reject))?))?"
        r"|withdrawals(/[^/]+/(approve|reject|settle))?)$"
    ),
    "PATCH": re.compile(r"^/tasks/[^/]+$"),
}


def _reject(status_code: int, error: str, message: str) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={"error": error, "message": message, "details": {}},
    )


class _BodyTooLarge(Exception):
    pass


async def _read_body(receive: Receive, limit: int) -> bytes:
    """Drain the request body, raising _BodyTooLarge past limit bytes."""
    body = bytearray()
    while True:
        message = await receive()
        body.extend(message.get("body", b""))
        if len(body) > limit:
            raise _BodyTooLarge
        if not message.get("more_body", False):
            return bytes(body)


class RequestValidationMiddleware:
    """
    Check content type and size before a signed-body route runs.

    Non-JSON bodies get 415 and bodies over max_body_size get 413. Other
    paths and methods pass straight through, so the router still answers
    404 and 405 itself.
    """

    def __init__(self, app: ASGIApp, max_body_size: int) -> None:
        self.app = app
        self.max_body_size = max_body_size

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        pattern = None
        if scope["type"] == "http":
            pattern = _SIGNED_BODY_ROUTES.get(scope["method"])
        if pattern is None or pattern.match(scope["path"]) is None:
            await self.app(scope, receive, send)
            return

        content_type = Headers(scope=scope).get("content-type", "").lower()
        if not content_type.startswith("application/json"):
            response = _reject(
                415, "UNSUPPORTED_MEDIA_TYPE", "Content-Type must be application/json"
            )
            await response(scope, receive, send)
            return

        try:
            body = await _read_body(receive, self.max_body_size)
        except _BodyTooLarge:
            response = _reject(
                413, "PAYLOAD_TOO_LARGE", "Request body exceeds maximum allowed size"
            )
            await response(scope, receive, send)
            return

        delivered = False

        async def replay() -> Message:
            nonlocal delivered
            if delivered:
                return {"type": "http.disconnect"}
            delivered = True
            return {"type": "http.request", "body": body, "more_body": False}

        await self.app(scope, replay, send)
