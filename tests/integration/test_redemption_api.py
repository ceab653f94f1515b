"""Integration tests for reward catalog and redemption endpoints."""

from __future__ import annotations

import pytest
import pytest_asyncio
from httpx import AsyncClient


async def _bonus(client: AsyncClient, student_id: int, amount: int) -> None:
    response = await client.post(
        f"/api/v1/admin/students/{student_id}/adjustments", json={"kind": "bonus", "amount": amount}
    )
    assert response.status_code == 201


@pytest_asyncio.fixture
async def reward(client: AsyncClient) -> dict:
    response = await client.post(
        "/api/v1/admin/rewards",
        json={"name": "Extra recess", "point_cost": 30, "stock_quantity": 2, "category": "privilege"},
    )
    assert response.status_code == 201
    return response.json()


class TestCatalog:
    @pytest.mark.asyncio
    async def test_list_rewards(self, client: AsyncClient, reward: dict):
        response = await client.get("/api/v1/rewards")
        assert response.status_code == 200
        rewards = response.json()["rewards"]
        assert [r["name"] for r in rewards] == ["Extra recess"]
        assert rewards[0]["available_quantity"] == 2

    @pytest.mark.asyncio
    async def test_invalid_cost(self, client: AsyncClient):
        response = await client.post("/api/v1/admin/rewards", json={"name": "Free", "point_cost": 0})
        assert response.status_code == 422


class TestRedemptionFlow:
    """Redeem, cancel, approve, fulfill over HTTP."""

    @pytest.mark.asyncio
    async def test_insufficient_points(self, client: AsyncClient, reward: dict):
        await _bonus(client, 1, 20)

        response = await client.post("/api/v1/redemptions", json={"student_id": 1, "reward_id": reward["id"]})
        assert response.status_code == 409
        assert response.json() == {"detail": "Insufficient points", "requested": 30, "available": 20}

        rewards = (await client.get("/api/v1/rewards")).json()["rewards"]
        assert rewards[0]["available_quantity"] == 2

    @pytest.mark.asyncio
    async def test_redeem_and_cancel(self, client: AsyncClient, reward: dict):
        await _bonus(client, 1, 50)

        created = await client.post("/api/v1/redemptions", json={"student_id": 1, "reward_id": reward["id"]})
        assert created.status_code == 201
        redemption = created.json()
        assert redemption["status"] == "pending"
        assert (await client.get("/api/v1/students/1/account")).json()["available"] == 20

        cancelled = await client.post(
            f"/api/v1/redemptions/{redemption['id']}/cancel", json={"reason": "Picked the wrong reward"}
        )
        assert cancelled.status_code == 200
        assert cancelled.json()["status"] == "cancelled"
        assert cancelled.json()["cancel_reason"] == "Picked the wrong reward"
        assert (await client.get("/api/v1/students/1/account")).json()["available"] == 50

        again = await client.post(f"/api/v1/redemptions/{redemption['id']}/cancel")
        assert again.status_code == 200
        assert (await client.get("/api/v1/students/1/account")).json()["available"] == 50

        approve = await client.post(f"/api/v1/redemptions/{redemption['id']}/approve")
        assert approve.status_code == 409

    @pytest.mark.asyncio
    async def test_approve_and_fulfill(self, client: AsyncClient, reward: dict):
        await _bonus(client, 2, 100)
        redemption = (
            await client.post("/api/v1/redemptions", json={"student_id": 2, "reward_id": reward["id"]})
        ).json()

        early = await client.post(f"/api/v1/redemptions/{redemption['id']}/fulfill")
        assert early.status_code == 409

        approved = await client.post(
            f"/api/v1/redemptions/{redemption['id']}/approve", json={"approved_by": "ms.rivera"}
        )
        assert approved.json()["status"] == "approved"
        assert approved.json()["approved_by"] == "ms.rivera"

        fulfilled = await client.post(
            f"/api/v1/redemptions/{redemption['id']}/fulfill", json={"fulfillment_notes": "Friday afternoon"}
        )
        assert fulfilled.status_code == 200
        assert fulfilled.json()["status"] == "fulfilled"

        listing = await client.get("/api/v1/students/2/redemptions?status=fulfilled")
        assert [r["id"] for r in listing.json()["redemptions"]] == [redemption["id"]]

    @pytest.mark.asyncio
    async def test_request_key_replay(self, client: AsyncClient, reward: dict):
        await _bonus(client, 3, 100)
        body = {"student_id": 3, "reward_id": reward["id"], "request_key": "tap-42"}

        first = await client.post("/api/v1/redemptions", json=body)
        second = await client.post("/api/v1/redemptions", json=body)
        assert first.json()["id"] == second.json()["id"]
        assert (await client.get("/api/v1/students/3/account")).json()["available"] == 70

    @pytest.mark.asyncio
    async def test_out_of_stock(self, client: AsyncClient, reward: dict):
        await _bonus(client, 4, 200)
        for _ in range(2):
            response = await client.post("/api/v1/redemptions", json={"student_id": 4, "reward_id": reward["id"]})
            assert response.status_code == 201

        response = await client.post("/api/v1/redemptions", json={"student_id": 4, "reward_id": reward["id"]})
        assert response.status_code == 409
        assert response.json()["detail"] == "Reward unavailable"

    @pytest.mark.asyncio
    async def test_missing_redemption(self, client: AsyncClient):
        response = await client.post("/api/v1/redemptions/999/cancel")
        assert response.status_code == 404

    @pytest.mark.asyncio
    async def test_unknown_status_filter(self, client: AsyncClient):
        response = await client.get("/api/v1/students/1/redemptions?status=lost")
        assert response.status_code == 400
