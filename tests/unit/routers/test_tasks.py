"""Task endpoint tests: creation, listing, editing and termination."""

from __future__ import annotations

from typing import TYPE_CHECKING

import pytest

from tests.helpers import tamper_jws
from tests.unit.routers.conftest import (
    BUYER_ID,
    WORKER_ID,
    create_task,
    get_balance,
    post_signed,
    sign,
    submit_work,
)

if TYPE_CHECKING:
    from httpx import AsyncClient


class TestCreateTask:
    """POST /tasks."""

    @pytest.mark.unit
    async def test_create_escrows_full_payout(self, market: AsyncClient) -> None:
        resp = await create_task(market, required_workers=4, payable_amount=5)

        assert resp.status_code == 201
        task = resp.json()
        assert task["task_id"].startswith("t-")
        assert task["buyer_id"] == BUYER_ID
        assert task["status"] == "open"
        assert task["remaining_workers"] == 4
        assert task["escrow_remaining"] == 20
        assert await get_balance(market, BUYER_ID) == 30

    @pytest.mark.unit
    async def test_create_beyond_balance(self, market: AsyncClient) -> None:
        resp = await create_task(market, required_workers=6, payable_amount=10)

        assert resp.status_code == 402
        assert resp.json()["error"] == "INSUFFICIENT_FUNDS"
        assert await get_balance(market, BUYER_ID) == 50

    @pytest.mark.unit
    async def test_worker_cannot_create(self, market: AsyncClient) -> None:
        resp = await create_task(market, buyer_id=WORKER_ID)

        assert resp.status_code == 403
        assert resp.json()["error"] == "FORBIDDEN"

    @pytest.mark.unit
    @pytest.mark.parametrize("field", ["required_workers", "payable_amount"])
    @pytest.mark.parametrize("value", [0, -3, "5", 1.5])
    async def test_create_rejects_bad_amounts(
        self, market: AsyncClient, field: str, value: object
    ) -> None:
        resp = await create_task(market, **{field: value})

        assert resp.status_code == 400
        assert resp.json()["error"] == "INVALID_AMOUNT"

    @pytest.mark.unit
    async def test_create_rejects_past_deadline(self, market: AsyncClient) -> None:
        resp = await create_task(market, completion_date="2020-01-01T00:00:00Z")

        assert resp.status_code == 400
        assert resp.json()["error"] == "VALIDATION_ERROR"
        assert resp.json()["details"] == {"field": "completion_date"}

    @pytest.mark.unit
    async def test_create_requires_title(self, market: AsyncClient) -> None:
        resp = await create_task(market, title="   ")

        assert resp.status_code == 400
        assert resp.json()["error"] == "VALIDATION_ERROR"


class TestRequestValidation:
    """Content type, body size and token checks ahead of the task routes."""

    @pytest.mark.unit
    async def test_wrong_content_type(self, client: AsyncClient) -> None:
        resp = await client.post(
            "/tasks",
            content=b'{"token": "x"}',
            headers={"Content-Type": "text/plain"},
        )

        assert resp.status_code == 415
        assert resp.json()["error"] == "UNSUPPORTED_MEDIA_TYPE"

    @pytest.mark.unit
    async def test_oversized_body(self, client: AsyncClient) -> None:
        resp = await client.post(
            "/tasks",
            content=b'{"token": "' + b"x" * 5000 + b'"}',
            headers={"Content-Type": "application/json"},
        )

        assert resp.status_code == 413
        assert resp.json()["error"] == "PAYLOAD_TOO_LARGE"

    @pytest.mark.unit
    async def test_tampered_token(self, market: AsyncClient) -> None:
        token = tamper_jws(sign(BUYER_ID, {"action": "create_task", "title": "x"}))
        resp = await market.post("/tasks", json={"token": token})

        assert resp.status_code == 403

    @pytest.mark.unit
    async def test_token_must_be_string(self, client: AsyncClient) -> None:
        resp = await client.post("/tasks", json={"token": 42})

        assert resp.status_code == 400
        assert resp.json()["error"] == "INVALID_JWS"

    @pytest.mark.unit
    @pytest.mark.parametrize(
        ("method", "path"),
        [
            ("DELETE", "/tasks"),
            ("DELETE", "/tasks/t-fake"),
            ("GET", "/tasks/t-fake/cancel"),
            ("PUT", "/tasks/t-fake/close"),
        ],
    )
    async def test_wrong_http_methods(self, client: AsyncClient, method: str, path: str) -> None:
        resp = await client.request(method, path)

        assert resp.status_code == 405
        assert resp.json()["error"] == "METHOD_NOT_ALLOWED"


class TestReadTasks:
    """GET /tasks and GET /tasks/{task_id}."""

    @pytest.mark.unit
    async def test_get_task_is_public(self, market: AsyncClient) -> None:
        task = (await create_task(market)).json()

        resp = await market.get(f"/tasks/{task['task_id']}")

        assert resp.status_code == 200
        assert resp.json() == task

    @pytest.mark.unit
    async def test_get_unknown_task(self, client: AsyncClient) -> None:
        resp = await client.get("/tasks/t-missing")

        assert resp.status_code == 404
        assert resp.json()["error"] == "TASK_NOT_FOUND"

    @pytest.mark.unit
    async def test_list_filters_by_status_and_pages(self, market: AsyncClient) -> None:
        first = (await create_task(market, required_workers=1, title="first")).json()
        await create_task(market, required_workers=1, title="second")
        await create_task(market, required_workers=1, title="third")
        await post_signed(
            market,
            f"/tasks/{first['task_id']}/cancel",
            BUYER_ID,
            {"action": "cancel_task", "task_id": first["task_id"]},
        )

        open_tasks = (await market.get("/tasks?status=open")).json()["tasks"]
        assert [t["title"] for t in open_tasks] == ["third", "second"]

        page = (await market.get("/tasks?limit=1&offset=1")).json()["tasks"]
        assert [t["title"] for t in page] == ["second"]

    @pytest.mark.unit
    @pytest.mark.parametrize("query", ["status=done", "limit=0", "offset=-1", "limit=abc"])
    async def test_list_rejects_bad_query(self, client: AsyncClient, query: str) -> None:
        resp = await client.get(f"/tasks?{query}")

        assert resp.status_code == 400
        assert resp.json()["error"] == "VALIDATION_ERROR"


class TestUpdateTask:
    """PATCH /tasks/{task_id}."""

    @pytest.mark.unit
    async def test_owner_edits_description(self, market: AsyncClient) -> None:
        task = (await create_task(market)).json()
        token = sign(
            BUYER_ID,
            {"action": "update_task", "task_id": task["task_id"], "title": "Label 20 images"},
        )

        resp = await market.patch(f"/tasks/{task['task_id']}", json={"token": token})

        assert resp.status_code == 200
        assert resp.json()["title"] == "Label 20 images"
        assert resp.json()["updated_at"] is not None

    @pytest.mark.unit
    async def test_payout_fields_cannot_change(self, market: AsyncClient) -> None:
        task = (await create_task(market)).json()
        token = sign(
            BUYER_ID,
            {"action": "update_task", "task_id": task["task_id"], "payable_amount": 1},
        )

        resp = await market.patch(f"/tasks/{task['task_id']}", json={"token": token})

        assert resp.status_code == 400
        assert resp.json()["details"] == {"fields": ["payable_amount"]}

    @pytest.mark.unit
    async def test_payload_task_must_match_url(self, market: AsyncClient) -> None:
        task = (await create_task(market)).json()
        token = sign(BUYER_ID, {"action": "update_task", "task_id": "t-other", "title": "x"})

        resp = await market.patch(f"/tasks/{task['task_id']}", json={"token": token})

        assert resp.status_code == 400
        assert resp.json()["error"] == "PAYLOAD_MISMATCH"


class TestTermination:
    """POST /tasks/{task_id}/cancel and /close."""

    @pytest.mark.unit
    async def test_cancel_refunds_escrow(self, market: AsyncClient) -> None:
        task = (await create_task(market, required_workers=3, payable_amount=10)).json()

        resp = await post_signed(
            market,
            f"/tasks/{task['task_id']}/cancel",
            BUYER_ID,
            {"action": "cancel_task", "task_id": task["task_id"]},
        )

        assert resp.status_code == 200
        assert resp.json()["status"] == "cancelled"
        assert resp.json()["refunded"] == 30
        assert resp.json()["escrow_remaining"] == 0
        assert await get_balance(market, BUYER_ID) == 50

    @pytest.mark.unit
    async def test_close_rejects_pending_work(self, market: AsyncClient) -> None:
        task = (await create_task(market, required_workers=2, payable_amount=10)).json()
        await submit_work(market, task["task_id"])

        resp = await post_signed(
            market,
            f"/tasks/{task['task_id']}/close",
            BUYER_ID,
            {"action": "close_task", "task_id": task["task_id"]},
        )

        assert resp.status_code == 200
        assert resp.json()["status"] == "closed"
        assert resp.json()["refunded"] == 20
        submissions = await market.get(
            "/submissions",
            headers={
                "Authorization": f"Bearer {sign(WORKER_ID, {'action': 'list_my_submissions'})}"
            },
        )
        assert [s["status"] for s in submissions.json()["submissions"]] == ["rejected"]

    @pytest.mark.unit
    async def test_only_owner_may_cancel(self, market: AsyncClient) -> None:
        task = (await create_task(market)).json()

        resp = await post_signed(
            market,
            f"/tasks/{task['task_id']}/cancel",
            WORKER_ID,
            {"action": "cancel_task", "task_id": task["task_id"]},
        )

        assert resp.status_code == 403

    @pytest.mark.unit
    async def test_cannot_cancel_twice(self, market: AsyncClient) -> None:
        task = (await create_task(market)).json()
        body = {"action": "cancel_task", "task_id": task["task_id"]}
        await post_signed(market, f"/tasks/{task['task_id']}/cancel", BUYER_ID, body)

        resp = await post_signed(market, f"/tasks/{task['task_id']}/cancel", BUYER_ID, body)

        assert resp.status_code == 409
        assert resp.json()["error"] == "INVALID_STATE"
        assert await get_balance(market, BUYER_ID) == 50
