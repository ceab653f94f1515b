"""Integration tests for outcome intake, account and ledger endpoints."""

from __future__ import annotations

import pytest
from httpx import AsyncClient

OUTCOME = {
    "student_id": 1,
    "subject": "math",
    "topic": "fractions",
    "is_correct": True,
    "hints_used": 0,
    "is_completed": True,
    "timestamp": "2026-05-04T15:30:00+00:00",
    "event_id": "api-1",
}


class TestOutcomeEndpoint:
    """POST /api/v1/events/outcomes"""

    @pytest.mark.asyncio
    async def test_report_then_replay(self, client: AsyncClient):
        first = await client.post("/api/v1/events/outcomes", json=OUTCOME)
        assert first.status_code == 200
        data = first.json()
        assert data["duplicate"] is False
        assert data["xp_awarded"] == 15
        assert data["badges_earned"] == ["first_steps"]
        assert data["topic"]["subject"] == "math"

        replay = await client.post("/api/v1/events/outcomes", json=OUTCOME)
        assert replay.status_code == 200
        assert replay.json()["duplicate"] is True
        assert replay.json()["ledger_entry_id"] == data["ledger_entry_id"]

        ledger = await client.get("/api/v1/students/1/ledger")
        sources = [e["source"] for e in ledger.json()["entries"]]
        assert sources.count("problem_completion") == 1

    @pytest.mark.asyncio
    async def test_negative_hints_rejected(self, client: AsyncClient):
        response = await client.post("/api/v1/events/outcomes", json={**OUTCOME, "hints_used": -1})
        assert response.status_code == 422


class TestAccountEndpoints:
    """Account summary, levels and stats."""

    @pytest.mark.asyncio
    async def test_levels(self, client: AsyncClient):
        response = await client.get("/api/v1/levels")
        assert response.status_code == 200
        levels = response.json()["levels"]
        assert levels[0] == {"level": 1, "title": "Newcomer", "cumulative": 0}
        assert levels[1]["cumulative"] == 100

    @pytest.mark.asyncio
    async def test_account_after_outcome(self, client: AsyncClient):
        await client.post("/api/v1/events/outcomes", json=OUTCOME)

        response = await client.get("/api/v1/students/1/account")
        assert response.status_code == 200
        data = response.json()
        assert data["available"] == 25  # 15 outcome XP + first_steps
        assert data["level"] == 1
        assert data["current_streak"] == 1
        assert data["badges_earned"] == 1
        assert data["progression"]["xp_to_next_level"] == 75

    @pytest.mark.asyncio
    async def test_unknown_student_has_empty_account(self, client: AsyncClient):
        response = await client.get("/api/v1/students/404/account")
        assert response.status_code == 200
        assert response.json()["total_earned"] == 0

    @pytest.mark.asyncio
    async def test_non_positive_student_id(self, client: AsyncClient):
        assert (await client.get("/api/v1/students/0/account")).status_code == 422

    @pytest.mark.asyncio
    async def test_xp_stats_days_bounds(self, client: AsyncClient):
        assert (await client.get("/api/v1/students/1/xp-stats?days=7")).status_code == 200
        assert (await client.get("/api/v1/students/1/xp-stats?days=31")).status_code == 422


class TestAdminLedger:
    """Manual adjustments, chain verification, period reset."""

    @pytest.mark.asyncio
    async def test_bonus_and_penalty(self, client: AsyncClient):
        bonus = await client.post(
            "/api/v1/admin/students/5/adjustments",
            json={"kind": "bonus", "amount": 120, "description": "Science fair winner"},
        )
        assert bonus.status_code == 201
        assert bonus.json()["kind"] == "bonus"
        assert bonus.json()["balance_after"] == 120

        penalty = await client.post(
            "/api/v1/admin/students/5/adjustments",
            json={"kind": "penalty", "amount": 20, "description": "Duplicate import"},
        )
        assert penalty.status_code == 201
        assert penalty.json()["amount"] == -20

        account = (await client.get("/api/v1/students/5/account")).json()
        assert account["available"] == 100
        assert account["total_earned"] == 120
        assert account["level"] == 2

        verify = await client.get("/api/v1/admin/students/5/ledger/verify")
        assert verify.json()["ok"] is True
        assert verify.json()["entries"] == 2

    @pytest.mark.asyncio
    async def test_bonus_earns_xp_badge(self, client: AsyncClient):
        response = await client.post(
            "/api/v1/admin/students/9/adjustments", json={"kind": "bonus", "amount": 1500}
        )
        assert response.status_code == 201

        badges = {b["badge_id"]: b for b in (await client.get("/api/v1/students/9/badges")).json()["badges"]}
        assert badges["xp_1000"]["is_earned"] is True

        account = (await client.get("/api/v1/students/9/account")).json()
        assert account["total_earned"] == 1500 + 100

    @pytest.mark.asyncio
    async def test_penalty_beyond_balance(self, client: AsyncClient):
        response = await client.post(
            "/api/v1/admin/students/6/adjustments", json={"kind": "penalty", "amount": 10}
        )
        assert response.status_code == 409
        assert response.json() == {"detail": "Insufficient points", "requested": 10, "available": 0}

    @pytest.mark.asyncio
    async def test_period_reset(self, client: AsyncClient):
        await client.post("/api/v1/admin/students/5/adjustments", json={"kind": "bonus", "amount": 40})

        response = await client.post("/api/v1/admin/periods/weekly/reset")
        assert response.status_code == 200
        assert response.json() == {"period": "weekly", "accounts_reset": 1}

        account = (await client.get("/api/v1/students/5/account")).json()
        assert account["weekly_earned"] == 0
        assert account["monthly_earned"] == 40

        assert (await client.post("/api/v1/admin/periods/daily/reset")).status_code == 422
