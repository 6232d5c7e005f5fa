"""Integration tests for the schedule and queue endpoints.

Total: 9 tests
"""

from __future__ import annotations

import pytest
from httpx import ASGITransport, AsyncClient

from reportcast.core.errors import PermissionDenied
from reportcast.core.security.auth import create_access_token
from reportcast.main import app
from reportcast.scheduling.queue import JobHandle
from tests.conftest import TENANT_ID, USER_ID, make_execution, make_schedule


# ── Run now ───────────────────────────────────────────────────────────────────

class TestRunNow:
    @pytest.mark.asyncio
    async def test_run_now_returns_202(self, client, scheduling_engine):
        schedule = make_schedule()
        scheduling_engine.store.get_schedule.return_value = schedule
        scheduling_engine.scanner.trigger_now.return_value = JobHandle(id="job-1", key="schedule-x-1")

        response = await client.post(f"/api/v1/schedules/{schedule.id}/run")

        assert response.status_code == 202
        body = response.json()
        assert body["job_id"] == "job-1"
        assert body["job_key"] == "schedule-x-1"
        scheduling_engine.scanner.trigger_now.assert_awaited_once_with(schedule, USER_ID)

    @pytest.mark.asyncio
    async def test_already_queued_returns_409(self, client, scheduling_engine):
        scheduling_engine.store.get_schedule.return_value = make_schedule()
        scheduling_engine.scanner.trigger_now.return_value = None

        response = await client.post("/api/v1/schedules/s-1/run")

        assert response.status_code == 409
        assert response.json()["detail"] == "This schedule run is already queued"

    @pytest.mark.asyncio
    async def test_unknown_schedule_returns_404(self, client, scheduling_engine):
        scheduling_engine.store.get_schedule.return_value = None

        response = await client.post("/api/v1/schedules/missing/run")

        assert response.status_code == 404
        scheduling_engine.store.get_schedule.assert_awaited_once_with("missing", TENANT_ID)

    @pytest.mark.asyncio
    async def test_disabled_schedule_returns_400(self, client, scheduling_engine):
        scheduling_engine.store.get_schedule.return_value = make_schedule(is_enabled=False)

        response = await client.post("/api/v1/schedules/s-1/run")

        assert response.status_code == 400
        scheduling_engine.scanner.trigger_now.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_permission_denied_returns_403(self, client, scheduling_engine):
        scheduling_engine.service.require_permission.side_effect = PermissionDenied("nope")

        response = await client.post("/api/v1/schedules/s-1/run")

        assert response.status_code == 403


# ── Executions ────────────────────────────────────────────────────────────────

class TestExecutions:
    @pytest.mark.asyncio
    async def test_lists_executions(self, client, scheduling_engine):
        schedule = make_schedule()
        scheduling_engine.store.get_schedule.return_value = schedule
        scheduling_engine.store.list_executions.return_value = [
            make_execution(schedule, sent=2, failed=1),
            make_execution(schedule),
        ]

        response = await client.get(f"/api/v1/schedules/{schedule.id}/executions?limit=10")

        assert response.status_code == 200
        rows = response.json()
        assert len(rows) == 2
        assert rows[0]["error_message"] == "Failed to send 1 of 3 emails"
        scheduling_engine.store.list_executions.assert_awaited_once_with(
            schedule.id, TENANT_ID, limit=10
        )

    @pytest.mark.asyncio
    async def test_limit_out_of_range_returns_422(self, client, scheduling_engine):
        response = await client.get("/api/v1/schedules/s-1/executions?limit=500")
        assert response.status_code == 422


# ── Queue ─────────────────────────────────────────────────────────────────────

class TestQueueStats:
    @pytest.mark.asyncio
    async def test_stats_include_scanner_state(self, client, scheduling_engine):
        scheduling_engine.queue.stats.return_value = {
            "pending": 3,
            "running": 1,
            "completed": 10,
            "failed": 2,
            "in_flight": 1,
        }

        response = await client.get("/api/v1/queue/stats")

        assert response.status_code == 200
        assert response.json() == {
            "pending": 3,
            "running": 1,
            "completed": 10,
            "failed": 2,
            "in_flight": 1,
            "scanner_state": "idle",
        }


# ── Auth ──────────────────────────────────────────────────────────────────────

class TestAuth:
    @pytest.mark.asyncio
    async def test_missing_token_returns_401(self, scheduling_engine):
        app.state.engine = scheduling_engine
        try:
            async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
                response = await ac.get("/api/v1/queue/stats")
                authed = await ac.get(
                    "/api/v1/queue/stats",
                    headers={"Authorization": f"Bearer {create_access_token(USER_ID, TENANT_ID)}"},
                )
        finally:
            app.state.engine = None

        assert response.status_code == 401
        assert authed.status_code == 200
