"""Shared test helpers for JWS authentication, clocks and task payloads."""

from __future__ import annotations

import base64
import json
from datetime import UTC, datetime, timedelta
from typing import Any

from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey
from cryptography.hazmat.primitives.serialization import Encoding, PublicFormat
from joserfc import jws
from joserfc.jwk import OKPKey

from microtask_service.core.exceptions import ServiceError

START_TIME = datetime(2026, 1, 1, tzinfo=UTC)
DEFAULT_DEADLINE = "2026-02-01T00:00:00Z"


class FakeClock:
    """Deterministic UTC clock that only moves when told to."""

    def __init__(self, start: datetime = START_TIME) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now += timedelta(**kwargs)


def make_task_data(**overrides: Any) -> dict[str, Any]:
    """Build a valid create_task payload."""
    data: dict[str, Any] = {
        "title": "Label 10 images",
        "detail": "Draw a box around every cat",
        "submission_info": "Paste a link to the annotated archive",
        "required_workers": 5,
        "payable_amount": 10,
        "completion_date": DEFAULT_DEADLINE,
    }
    data.update(overrides)
    return data


def generate_keypair() -> tuple[Ed25519PrivateKey, str]:
    """Generate Ed25519 keypair -> (private_key, 'ed25519:<base64_pub>')."""
    private_key = Ed25519PrivateKey.generate()
    pub_bytes = private_key.public_key().public_bytes(Encoding.Raw, PublicFormat.Raw)
    public_key = f"ed25519:{base64.b64encode(pub_bytes).decode()}"
    return private_key, public_key


def make_jws_token(
    private_key: Ed25519PrivateKey,
    agent_id: str,
    payload: dict[str, Any],
) -> str:
    """Create a real JWS compact token signed by the given key."""
    raw_private = private_key.private_bytes_raw()
    raw_public = private_key.public_key().public_bytes_raw()
    jwk_dict = {
        "kty": "OKP",
        "crv": "Ed25519",
        "d": base64.urlsafe_b64encode(raw_private).rstrip(b"=").decode(),
        "x": base64.urlsafe_b64encode(raw_public).rstrip(b"=").decode(),
    }
    key = OKPKey.import_key(jwk_dict)
    protected = {"alg": "EdDSA", "kid": agent_id}
    payload_bytes = json.dumps(payload, separators=(",", ":"), sort_keys=True).encode()
    return jws.serialize_compact(protected, payload_bytes, key, algorithms=["EdDSA"])


def tamper_jws(token: str) -> str:
    """Alter the payload of a JWS after signing (creates invalid signature)."""
    parts = token.split(".")
    payload = decode_jws_part(parts[1])
    payload["_tampered"] = True
    new_payload = base64.urlsafe_b64encode(json.dumps(payload).encode()).rstrip(b"=").decode()
    return f"{parts[0]}.{new_payload}.{parts[2]}"


def decode_jws_part(part: str) -> dict[str, Any]:
    """Decode one base64url JSON section of a compact JWS."""
    padded = part + "=" * (-len(part) % 4)
    return json.loads(base64.urlsafe_b64decode(padded))


def fake_verify_response(token: str) -> dict[str, Any]:
    """
    Stand-in for the Identity service's verify-jws answer.

    Trusts the kid header as the signer; tokens marked by tamper_jws
    fail the way the real IdentityClient reports a bad signature.
    """
    header_b64, payload_b64, _ = token.split(".")
    payload = decode_jws_part(payload_b64)
    if payload.get("_tampered") is True:
        raise ServiceError("FORBIDDEN", "JWS signature verification failed", 403, {})
    return {
        "valid": True,
        "agent_id": decode_jws_part(header_b64)["kid"],
        "payload": payload,
    }
