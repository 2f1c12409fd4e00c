"""Router test fixtures with a mocked Identity service."""

from __future__ import annotations

import os
from typing import TYPE_CHECKING, Any
from unittest.mock import AsyncMock

import pytest
from httpx import ASGITransport, AsyncClient

from microtask_service.app import create_app
from microtask_service.config import clear_settings_cache
from microtask_service.core.lifespan import lifespan
from microtask_service.core.state import get_app_state, reset_app_state
from tests.helpers import fake_verify_response, generate_keypair, make_jws_token, make_task_data

if TYPE_CHECKING:
    from collections.abc import AsyncIterator
    from pathlib import Path

    import httpx

# ---------------------------------------------------------------------------
# Fixed account IDs
# ---------------------------------------------------------------------------
ADMIN_ID = "a-admin-test"
BUYER_ID = "a-buyer-test"
WORKER_ID = "a-worker-test"
SECOND_WORKER_ID = "a-worker-test-2"

FUTURE_DEADLINE = "2099-01-01T00:00:00Z"

# The Identity mock trusts the kid header, so one key signs for everyone
_SIGNING_KEY, _ = generate_keypair()


def sign(agent_id: str, payload: dict[str, Any]) -> str:
    """Create a JWS for agent_id carrying payload."""
    return make_jws_token(_SIGNING_KEY, agent_id, payload)


def bearer(agent_id: str, action: str, **fields: Any) -> dict[str, str]:
    """Authorization header for a signed read request."""
    return {"Authorization": f"Bearer {sign(agent_id, {'action': action, **fields})}"}


# ---------------------------------------------------------------------------
# App + client fixtures
# ---------------------------------------------------------------------------
@pytest.fixture
async def app(tmp_path: Path) -> AsyncIterator[Any]:
    """Create a test app with temp database and a mocked Identity service."""
    db_path = tmp_path / "test.db"
    config_content = f"""\
service:
  name: "microtask-market"
  version: "0.1.0"
server:
  host: "127.0.0.1"
  port: 8010
  log_level: "info"
logging:
  level: "WARNING"
  directory: "{tmp_path / "logs"}"
database:
  path: "{db_path}"
identity:
  base_url: "http://localhost:8001"
  verify_jws_path: "/agents/verify-jws"
  timeout_seconds: 10
platform:
  admin_ids:
    - "{ADMIN_ID}"
withdrawals:
  coins_per_currency_unit: 20
  minimum_coins: 1
request:
  max_body_size: 4096
"""
    config_path = tmp_path / "config.yaml"
    config_path.write_text(config_content)

    old_config = os.environ.get("CONFIG_PATH")
    os.environ["CONFIG_PATH"] = str(config_path)

    clear_settings_cache()
    reset_app_state()

    test_app = create_app()
    async with lifespan(test_app):
        state = get_app_state()

        # Identity mock: trusts the kid header, rejects tampered payloads
        mock_identity = AsyncMock()
        mock_identity.close = AsyncMock()
        mock_identity.verify_jws = AsyncMock(side_effect=fake_verify_response)
        state.identity_client = mock_identity

        yield test_app

    reset_app_state()
    clear_settings_cache()
    if old_config is None:
        os.environ.pop("CONFIG_PATH", None)
    else:
        os.environ["CONFIG_PATH"] = old_config


@pytest.fixture
async def client(app: Any) -> AsyncIterator[AsyncClient]:
    """Create an async HTTP client for the test app."""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as c:
        yield c


@pytest.fixture
def mock_identity_unavailable(app: Any) -> None:
    """Configure the Identity mock to simulate service unavailability."""
    state = get_app_state()
    state.identity_client.verify_jws = AsyncMock(
        side_effect=ConnectionError("Identity service unreachable")
    )


@pytest.fixture
async def market(client: AsyncClient) -> AsyncClient:
    """A buyer with 50 coins and two workers with 10 coins each."""
    for agent_id, role in (
        (BUYER_ID, "buyer"),
        (WORKER_ID, "worker"),
        (SECOND_WORKER_ID, "worker"),
    ):
        resp = await register(client, agent_id, role)
        assert resp.status_code == 201
    return client


@pytest.fixture
async def earning_market(market: AsyncClient) -> AsyncClient:
    """Both workers have one approved 10 coin submission (balance 20, earned 10)."""
    task = (await create_task(market, required_workers=2, payable_amount=10)).json()
    for worker_id in (WORKER_ID, SECOND_WORKER_ID):
        submission = (await submit_work(market, task["task_id"], worker_id)).json()
        resp = await review_submission(
            market, task["task_id"], submission["submission_id"], "approve"
        )
        assert resp.status_code == 200
    return market


# ---------------------------------------------------------------------------
# Request helpers
# ---------------------------------------------------------------------------
async def post_signed(
    client: AsyncClient,
    path: str,
    agent_id: str,
    payload: dict[str, Any],
) -> httpx.Response:
    """POST {"token": <JWS of payload>} to path."""
    return await client.post(path, json={"token": sign(agent_id, payload)})


async def register(client: AsyncClient, agent_id: str, role: str | None = None) -> httpx.Response:
    """Create an account via POST /accounts."""
    payload: dict[str, Any] = {"action": "create_account"}
    if role is not None:
        payload["role"] = role
    return await post_signed(client, "/accounts", agent_id, payload)


async def create_task(
    client: AsyncClient,
    buyer_id: str = BUYER_ID,
    **overrides: Any,
) -> httpx.Response:
    """Create a task via POST /tasks and return the response."""
    data = make_task_data(**{"completion_date": FUTURE_DEADLINE, **overrides})
    return await post_signed(client, "/tasks", buyer_id, {"action": "create_task", **data})


async def submit_work(
    client: AsyncClient,
    task_id: str,
    worker_id: str = WORKER_ID,
    content: str = "https://example.org/result.zip",
) -> httpx.Response:
    """Submit work via POST /tasks/{task_id}/submissions."""
    return await post_signed(
        client,
        f"/tasks/{task_id}/submissions",
        worker_id,
        {"action": "submit_work", "task_id": task_id, "content": content},
    )


async def review_submission(
    client: AsyncClient,
    task_id: str,
    submission_id: str,
    decision: str,
    buyer_id: str = BUYER_ID,
) -> httpx.Response:
    """Approve or reject a submission."""
    return await post_signed(
        client,
        f"/tasks/{task_id}/submissions/{submission_id}/{decision}",
        buyer_id,
        {
            "action": f"{decision}_submission",
            "task_id": task_id,
            "submission_id": submission_id,
        },
    )


async def request_withdrawal(
    client: AsyncClient,
    coin_amount: Any,
    worker_id: str = WORKER_ID,
) -> httpx.Response:
    """Request a withdrawal via POST /withdrawals."""
    return await post_signed(
        client,
        "/withdrawals",
        worker_id,
        {
            "action": "request_withdrawal",
            "coin_amount": coin_amount,
            "payment_system": "paypal",
            "account_number": "worker@example.org",
        },
    )


async def get_balance(client: AsyncClient, account_id: str) -> int:
    """Read an account balance as its owner."""
    resp = await client.get(f"/accounts/{account_id}", headers=bearer(account_id, "get_balance"))
    assert resp.status_code == 200
    return resp.json()["balance"]
