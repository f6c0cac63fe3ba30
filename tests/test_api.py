"""API endpoint tests."""

from collections.abc import AsyncIterator

import httpx
import pytest
from litestar.status_codes import (
    HTTP_200_OK,
    HTTP_400_BAD_REQUEST,
    HTTP_401_UNAUTHORIZED,
    HTTP_404_NOT_FOUND,
)
from litestar.testing import AsyncTestClient

from garmin_sync_server.app import create_app
from garmin_sync_server.core.config import settings
from garmin_sync_server.services.garmin_client import GarminClient

GARMIN_USER_ID = "garmin-user-001"
LOCAL_USER_ID = "local-user-001"
API = "/api/v1"


@pytest.fixture
async def client(async_engine) -> AsyncIterator[AsyncTestClient]:
    """Create test client bound to the in-memory database."""
    app = create_app(db_engine=async_engine, use_lifespan=False)
    async with AsyncTestClient(app=app) as test_client:
        yield test_client


async def test_health_check(client: AsyncTestClient) -> None:
    """Test health check endpoint."""
    response = await client.get("/health")

    assert response.status_code == HTTP_200_OK
    data = response.json()
    assert data["status"] == "ok"
    assert "version" in data
    assert data["garmin_configured"] is True
    assert data["reconcile"] is None


class TestIntegrationRoutes:
    async def test_connect_and_read_back(self, client: AsyncTestClient) -> None:
        response = await client.put(
            f"{API}/users/{LOCAL_USER_ID}/garmin/integration",
            json={
                "provider_user_id": GARMIN_USER_ID,
                "access_token": "access-token",
                "refresh_token": "refresh-token",
                "expires_in": 86400,
            },
        )

        assert response.status_code == HTTP_200_OK
        data = response.json()
        assert data["provider_user_id"] == GARMIN_USER_ID
        assert data["is_active"] is True
        assert data["reconnect_required"] is False
        assert "access_token" not in data

        response = await client.get(f"{API}/users/{LOCAL_USER_ID}/garmin/integration")
        assert response.status_code == HTTP_200_OK
        assert response.json()["user_id"] == LOCAL_USER_ID

    async def test_connect_completes_activation_step(self, client: AsyncTestClient) -> None:
        await client.put(
            f"{API}/users/{LOCAL_USER_ID}/garmin/integration",
            json={"provider_user_id": GARMIN_USER_ID, "access_token": "access-token"},
        )

        response = await client.post(f"{API}/users/{LOCAL_USER_ID}/activation/connect_device")

        assert response.json()["newly_completed"] is False
        assert response.json()["completed_steps"] == ["connect_device"]

    async def test_missing_integration(self, client: AsyncTestClient) -> None:
        response = await client.get(f"{API}/users/nobody/garmin/integration")

        assert response.status_code == HTTP_404_NOT_FOUND
        assert response.json()["error"] == "integration_not_found"

    async def test_fresh_token_returned(
        self, client: AsyncTestClient, connected_integration
    ) -> None:
        response = await client.post(f"{API}/users/{LOCAL_USER_ID}/garmin/token")

        assert response.status_code == HTTP_200_OK
        data = response.json()
        assert data["access_token"] == "access-token-fresh"
        assert data["expires_at"] is not None

    async def test_rejected_refresh_token_requires_reconnect(
        self, client: AsyncTestClient, integration_store, expiring_integration
    ) -> None:
        await integration_store.mark_refresh_token_invalid(expiring_integration.id)

        response = await client.post(f"{API}/users/{LOCAL_USER_ID}/garmin/token")

        assert response.status_code == HTTP_401_UNAUTHORIZED
        assert response.json()["error"] == "reconnect_required"

        status = await client.get(f"{API}/users/{LOCAL_USER_ID}/garmin/integration")
        assert status.json()["reconnect_required"] is True

    async def test_token_for_unknown_user(self, client: AsyncTestClient) -> None:
        response = await client.post(f"{API}/users/nobody/garmin/token")

        assert response.status_code == HTTP_404_NOT_FOUND


class TestBackfillRoutes:
    async def test_start_and_poll_backfill(
        self, client: AsyncTestClient, connected_integration, monkeypatch
    ) -> None:
        requests: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            return httpx.Response(202)

        monkeypatch.setattr(
            "garmin_sync_server.api.integrations.GarminClient",
            lambda: GarminClient(transport=httpx.MockTransport(handler)),
        )

        response = await client.post(f"{API}/users/{LOCAL_USER_ID}/garmin/backfill?years=1")

        assert response.status_code == HTTP_200_OK
        data = response.json()
        assert data["status"] == "success"
        assert data["reconnect_required"] is False
        assert data["requested"] == 6
        assert len(requests) == 6
        assert requests[0].headers["Authorization"] == "Bearer access-token-fresh"

        progress = await client.get(f"{API}/users/{LOCAL_USER_ID}/garmin/backfill")
        assert progress.status_code == HTTP_200_OK
        assert progress.json()["requested"] == 6
        assert progress.json()["percent_complete"] == 0

    async def test_unauthorized_backfill_is_partial(
        self, client: AsyncTestClient, connected_integration, monkeypatch
    ) -> None:
        monkeypatch.setattr(
            "garmin_sync_server.api.integrations.GarminClient",
            lambda: GarminClient(
                transport=httpx.MockTransport(lambda request: httpx.Response(401))
            ),
        )

        response = await client.post(f"{API}/users/{LOCAL_USER_ID}/garmin/backfill")

        data = response.json()
        assert data["status"] == "partial"
        assert data["reconnect_required"] is True
        assert data["failed"] == 1

        retry = await client.post(f"{API}/users/{LOCAL_USER_ID}/garmin/backfill/retry")
        assert retry.json() == {"user_id": LOCAL_USER_ID, "reset": 1}

    async def test_years_out_of_range(self, client: AsyncTestClient, connected_integration) -> None:
        response = await client.post(f"{API}/users/{LOCAL_USER_ID}/garmin/backfill?years=9")

        assert response.status_code == HTTP_400_BAD_REQUEST

    async def test_reconcile_job(self, client: AsyncTestClient) -> None:
        response = await client.post(f"{API}/jobs/backfill/reconcile")

        assert response.status_code == HTTP_200_OK
        assert response.json() == {
            "marked_received": 0,
            "stale_after_hours": settings.backfill_stale_after_hours,
        }

    async def test_push_retry_job(self, client: AsyncTestClient) -> None:
        response = await client.post(f"{API}/jobs/webhooks/retry")

        assert response.status_code == HTTP_200_OK
        assert response.json() == {
            "due": 0,
            "processed": 0,
            "rescheduled": 0,
            "abandoned": 0,
            "expired": 0,
        }


class TestActivationRoutes:
    async def test_complete_step_is_idempotent(self, client: AsyncTestClient) -> None:
        first = await client.post(f"{API}/users/{LOCAL_USER_ID}/activation/first_route")
        second = await client.post(f"{API}/users/{LOCAL_USER_ID}/activation/first_route")

        assert first.status_code == HTTP_200_OK
        assert first.json()["newly_completed"] is True
        assert second.json()["newly_completed"] is False
        assert second.json()["completed_steps"] == ["first_route"]

    async def test_unknown_step(self, client: AsyncTestClient) -> None:
        response = await client.post(f"{API}/users/{LOCAL_USER_ID}/activation/first_marathon")

        assert response.status_code == HTTP_400_BAD_REQUEST


class TestWebhook:
    async def test_mixed_push(self, client: AsyncTestClient, connected_integration) -> None:
        payload = {
            "dailies": [
                {
                    "userId": GARMIN_USER_ID,
                    "calendarDate": "2025-05-01",
                    "restingHeartRateInBeatsPerMinute": 52,
                },
                {"userId": GARMIN_USER_ID, "calendarDate": "not a date"},
            ],
            "activities": [
                {
                    "userId": GARMIN_USER_ID,
                    "summaryId": "run-1",
                    "activityType": "RUNNING",
                    "startTimeInSeconds": 1717225200,
                    "durationInSeconds": 1800,
                    "distanceInMeters": 5000,
                }
            ],
            "epochs": [{"userId": GARMIN_USER_ID}],
            "deregistrations": {"userId": GARMIN_USER_ID},
        }

        response = await client.post("/webhooks/garmin", json=payload)

        assert response.status_code == HTTP_200_OK
        data = response.json()
        assert data["status"] == "ok"
        assert data["processed"] == 2
        assert data["skipped"] == 2
        assert data["queued"] == 0
        assert data["results"]["dailies"]["processed"] == 1
        assert data["results"]["activities"]["results"] == ["activity run-1: imported"]
        assert data["results"]["epochs"]["skipped"] == 1
        assert "deregistrations" not in data["results"]

        status = await client.get(f"{API}/users/{LOCAL_USER_ID}/garmin/integration")
        assert status.json()["last_synced_at"] is not None

    async def test_push_for_unknown_user_still_ok(self, client: AsyncTestClient) -> None:
        response = await client.post(
            "/webhooks/garmin",
            json={"sleeps": [{"userId": "stranger", "calendarDate": "2025-05-01"}]},
        )

        assert response.status_code == HTTP_200_OK
        assert response.json()["skipped"] == 1


class TestGuards:
    async def test_api_key_required_when_configured(
        self, client: AsyncTestClient, monkeypatch
    ) -> None:
        monkeypatch.setattr(settings, "api_key", "service-key")

        missing = await client.post(f"{API}/jobs/backfill/reconcile")
        wrong = await client.post(
            f"{API}/jobs/backfill/reconcile", headers={"X-API-Key": "nope"}
        )
        header = await client.post(
            f"{API}/jobs/backfill/reconcile", headers={"X-API-Key": "service-key"}
        )
        bearer = await client.post(
            f"{API}/jobs/backfill/reconcile", headers={"Authorization": "Bearer service-key"}
        )

        assert missing.status_code == HTTP_401_UNAUTHORIZED
        assert wrong.status_code == HTTP_401_UNAUTHORIZED
        assert header.status_code == HTTP_200_OK
        assert bearer.status_code == HTTP_200_OK

    async def test_health_is_public(self, client: AsyncTestClient, monkeypatch) -> None:
        monkeypatch.setattr(settings, "api_key", "service-key")

        response = await client.get("/health")

        assert response.status_code == HTTP_200_OK

    async def test_push_client_id_check(self, client: AsyncTestClient, monkeypatch) -> None:
        monkeypatch.setattr(settings, "garmin_verify_push_client_id", True)

        rejected = await client.post("/webhooks/garmin", json={})
        accepted = await client.post(
            "/webhooks/garmin",
            json={},
            headers={"garmin-client-id": settings.garmin_client_id},
        )

        assert rejected.status_code == HTTP_401_UNAUTHORIZED
        assert accepted.status_code == HTTP_200_OK
        assert accepted.json()["processed"] == 0
