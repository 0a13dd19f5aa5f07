"""
Tests for the HTTP routers, run against the test database with auth and
the scheduler's remote client replaced.
"""

import uuid
from unittest.mock import AsyncMock, patch

import pytest
from httpx import ASGITransport, AsyncClient

from adops.auth import require_auth
from adops.database import get_db
from adops.mcp_client import TransportError
from adops.main import app
from adops.services.scheduler_service import SyncScheduler

from conftest import FakeAdsClient, client_factory_for


@pytest.fixture
async def client(session_factory, settings):
    async def override_get_db():
        async with session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[require_auth] = lambda: "test"
    app.state.scheduler = SyncScheduler(
        session_factory=session_factory,
        client_factory=client_factory_for(FakeAdsClient()),
        settings=settings,
    )
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as http:
        yield http
    app.dependency_overrides.clear()
    app.state.scheduler = None


async def _create_account(client) -> str:
    response = await client.post("/api/credentials", json={
        "name": "Main account",
        "client_id": "amzn1.application-oa2-client.test",
        "access_token": "Atza|token",
        "profile_id": "123",
    })
    assert response.status_code == 200
    return response.json()["id"]


@pytest.mark.anyio
async def test_credential_secrets_are_not_returned(client):
    await _create_account(client)
    response = await client.get("/api/credentials")
    assert response.status_code == 200
    (cred,) = response.json()
    assert "access_token" not in cred
    assert cred["auto_refresh_enabled"] is False


@pytest.mark.anyio
async def test_successful_credential_test_creates_default_schedule(client):
    account_id = await _create_account(client)
    assert (await client.get(f"/api/scheduler/accounts/{account_id}/schedule")).status_code == 404

    with patch("adops.routers.credentials.get_client_for_account", new_callable=AsyncMock, return_value=FakeAdsClient()):
        response = await client.post(f"/api/credentials/{account_id}/test")
    assert response.status_code == 200
    assert response.json()["status"] == "connected"
    assert response.json()["schedule_created"] is True

    schedule = (await client.get(f"/api/scheduler/accounts/{account_id}/schedule")).json()
    assert schedule["frequency"] == "every_2_hours"
    assert schedule["sync_type"] == "all"
    assert schedule["is_enabled"] is True


@pytest.mark.anyio
async def test_schedule_crud(client):
    account_id = await _create_account(client)
    url = f"/api/scheduler/accounts/{account_id}/schedule"

    response = await client.put(url, json={"frequency": "weekly", "preferred_time": "06:30", "preferred_day_of_week": 1})
    assert response.status_code == 200
    assert response.json()["frequency"] == "weekly"
    assert response.json()["preferred_day_of_week"] == 1

    response = await client.put(url, json={"frequency": "daily", "sync_type": "keywords"})
    assert response.json()["frequency"] == "daily"
    assert response.json()["sync_type"] == "keywords"

    assert (await client.delete(url)).status_code == 200
    assert (await client.get(url)).status_code == 404


@pytest.mark.anyio
async def test_unknown_frequency_is_rejected(client):
    account_id = await _create_account(client)
    response = await client.put(f"/api/scheduler/accounts/{account_id}/schedule", json={"frequency": "fortnightly"})
    assert response.status_code == 400
    assert "fortnightly" in response.json()["detail"]


@pytest.mark.anyio
async def test_bad_preferred_time_is_rejected(client):
    account_id = await _create_account(client)
    response = await client.put(
        f"/api/scheduler/accounts/{account_id}/schedule", json={"frequency": "daily", "preferred_time": "7pm"},
    )
    assert response.status_code == 422


@pytest.mark.anyio
async def test_scheduler_status(client):
    response = await client.get("/api/scheduler/status")
    assert response.status_code == 200
    data = response.json()
    assert data["is_running"] is False
    assert set(data["tier_last_run"]) == {"high", "medium", "low", "full"}


@pytest.mark.anyio
async def test_unknown_tier_is_rejected(client):
    response = await client.post("/api/scheduler/tiers/hourly/run")
    assert response.status_code == 422


@pytest.mark.anyio
async def test_manual_sync_endpoint(client):
    account_id = await _create_account(client)
    response = await client.post(f"/api/scheduler/accounts/{account_id}/sync", json={"sync_types": ["campaigns_status"]})
    assert response.status_code == 200
    assert response.json()["status"] == "completed"

    logs = (await client.get(f"/api/scheduler/accounts/{account_id}/logs")).json()
    assert logs[0]["trigger"] == "manual"


@pytest.mark.anyio
async def test_manual_sync_rejects_unknown_types(client):
    account_id = await _create_account(client)
    response = await client.post(f"/api/scheduler/accounts/{account_id}/sync", json={"sync_types": ["everything"]})
    assert response.status_code == 422


@pytest.mark.anyio
async def test_keyword_config_and_dry_run(client):
    account_id = await _create_account(client)
    base = f"/api/keyword-execution/accounts/{account_id}"

    assert (await client.get(f"{base}/config")).status_code == 404
    response = await client.put(f"{base}/config", json={"is_enabled": True, "acos_threshold": 40})
    assert response.status_code == 200
    assert response.json()["execution_mode"] == "manual"
    assert response.json()["acos_threshold"] == 40

    run = (await client.post(f"{base}/run")).json()
    assert run["status"] == "completed"
    assert run["dry_run"] is True

    history = (await client.get(f"{base}/history")).json()
    assert [h["id"] for h in history] == [run["id"]]

    details = (await client.get(f"/api/keyword-execution/executions/{run['id']}/details")).json()
    assert details["execution"]["id"] == run["id"]
    assert details["rollbacks"] == []

    response = await client.post(f"/api/keyword-execution/executions/{run['id']}/rollback", json={"reason": "test"})
    assert response.status_code == 409


@pytest.mark.anyio
async def test_invalid_config_values_are_rejected(client):
    account_id = await _create_account(client)
    response = await client.put(
        f"/api/keyword-execution/accounts/{account_id}/config", json={"execution_mode": "yolo"},
    )
    assert response.status_code == 422


@pytest.mark.anyio
async def test_safety_rail_settings_round_trip(client):
    account_id = await _create_account(client)
    url = f"/api/keyword-execution/accounts/{account_id}/config"

    created = (await client.put(url, json={"is_enabled": True})).json()
    assert (created["max_daily_pauses"], created["max_daily_enables"]) == (10, 5)
    assert created["exclude_top_performers"] is False
    assert created["rollback_window_hours"] == 24

    response = await client.put(url, json={
        "acos_threshold": 0,
        "max_daily_pauses": 3,
        "exclude_top_performers": True,
        "top_performer_threshold": 15,
        "rollback_window_hours": 48,
    })
    assert response.status_code == 200
    body = response.json()
    assert body["acos_threshold"] == 0
    assert (body["max_daily_pauses"], body["top_performer_threshold"], body["rollback_window_hours"]) == (3, 15, 48)
    assert body["exclude_top_performers"] is True

    assert (await client.put(url, json={"acos_threshold": -1})).status_code == 422
    assert (await client.put(url, json={"max_daily_pauses": -1})).status_code == 422

@pytest.mark.anyio
async def test_rollback_unknown_execution(client):
    response = await client.post(f"/api/keyword-execution/executions/{uuid.uuid4()}/rollback", json={"reason": "x"})
    assert response.status_code == 404


@pytest.mark.anyio
async def test_validation_unknown_account(client):
    response = await client.post(f"/api/validation/accounts/{uuid.uuid4()}")
    assert response.status_code == 404


@pytest.mark.anyio
async def test_validation_transport_failure_is_502(client):
    account_id = await _create_account(client)
    with patch(
        "adops.routers.validation.run_validation",
        new_callable=AsyncMock,
        side_effect=TransportError("MCP server unavailable", status_code=503),
    ):
        response = await client.post(f"/api/validation/accounts/{account_id}")
    assert response.status_code == 502
    assert response.json()["detail"] == "Failed to communicate with Amazon Ads API."
