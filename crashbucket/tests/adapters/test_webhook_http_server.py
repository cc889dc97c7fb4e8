"""Tests for CrashBucketHTTPServer routing, auth and error mapping.

Each test runs the real threaded server on a free port and talks to it
with httpx, so request parsing and the thread-to-loop handoff are
exercised end to end.
"""

from datetime import UTC, datetime

import httpx
import pytest

from crashbucket.adapters.webhook.http_server import CrashBucketHTTPServer, error_status
from crashbucket.adapters.webhook.receiver import WebhookReceiver
from crashbucket.core.decoding import DecodeCoordinator
from crashbucket.core.errors import (
    AuthenticationError,
    NotFoundError,
    ReconciliationError,
    SubmissionRejectedError,
)
from crashbucket.core.ingestion_service import IngestionService
from crashbucket.core.models import CrashGroup, ReconciliationResult
from crashbucket.core.resolver import GroupResolver
from crashbucket.tests.fakes import (
    FakeAppRegistryPort,
    FakeCrashStorePort,
    FakeDecoderPort,
    FakeManagementPort,
)

T0 = datetime(2024, 1, 1, 12, 0, tzinfo=UTC)
ADMIN_KEY = "admin-secret"

SUBMISSION = {
    "environment": {"package_name": "com.example.shop", "app_version": 1},
    "crashes": [{"timestamp": 1704110400000, "stacktrace": "java.lang.Error: boom"}],
}


@pytest.fixture
def store() -> FakeCrashStorePort:
    return FakeCrashStorePort()


@pytest.fixture
def management() -> FakeManagementPort:
    return FakeManagementPort()


@pytest.fixture
def receiver(store: FakeCrashStorePort, management: FakeManagementPort) -> WebhookReceiver:
    registry = FakeAppRegistryPort()
    registry.add_app("key-1", "app-1", "com.example.shop")
    ingestion = IngestionService(
        store, registry, DecodeCoordinator(FakeDecoderPort()), GroupResolver(store)
    )
    return WebhookReceiver(ingestion=ingestion, management=management)


async def _start(receiver: WebhookReceiver, **kwargs) -> CrashBucketHTTPServer:
    server = CrashBucketHTTPServer(receiver, host="127.0.0.1", port=0, **kwargs)
    await server.start()
    return server


@pytest.fixture
async def client(receiver: WebhookReceiver) -> httpx.AsyncClient:
    server = await _start(receiver)
    base_url = f"http://127.0.0.1:{server.bound_port}"
    async with httpx.AsyncClient(base_url=base_url, trust_env=False) as client:
        yield client
    await server.stop()


@pytest.fixture
async def admin_client(receiver: WebhookReceiver) -> httpx.AsyncClient:
    server = await _start(receiver, admin_api_key=ADMIN_KEY, require_admin_auth=True)
    base_url = f"http://127.0.0.1:{server.bound_port}"
    async with httpx.AsyncClient(base_url=base_url, trust_env=False) as client:
        yield client
    await server.stop()


class TestErrorStatus:
    @pytest.mark.parametrize(
        "error,code",
        [
            (AuthenticationError("Missing API key"), 401),
            (NotFoundError("gone"), 404),
            (SubmissionRejectedError("mismatch"), 400),
            (ValueError("bad"), 400),
            (RuntimeError("db down"), 500),
        ],
    )
    def test_mapping(self, error: Exception, code: int) -> None:
        assert error_status(error) == code


class TestSubmitEndpoint:
    @pytest.mark.asyncio
    async def test_submission_accepted(
        self, client: httpx.AsyncClient, store: FakeCrashStorePort
    ) -> None:
        response = await client.post(
            "/api/crashes/submit", json=SUBMISSION, headers={"X-API-Key": "key-1"}
        )

        assert response.status_code == 200
        assert response.json()["result"]["stored"] == 1
        assert len(store.crashes) == 1

    @pytest.mark.asyncio
    async def test_missing_key_is_unauthorized(self, client: httpx.AsyncClient) -> None:
        response = await client.post("/api/crashes/submit", json=SUBMISSION)
        assert response.status_code == 401
        assert response.json()["message"] == "Missing API key"

    @pytest.mark.asyncio
    async def test_package_mismatch_is_bad_request(self, client: httpx.AsyncClient) -> None:
        body = {**SUBMISSION, "environment": {"package_name": "com.other"}}
        response = await client.post(
            "/api/crashes/submit", json=body, headers={"X-API-Key": "key-1"}
        )
        assert response.status_code == 400

    @pytest.mark.asyncio
    async def test_invalid_json(self, client: httpx.AsyncClient) -> None:
        response = await client.post(
            "/api/crashes/submit", content=b"{not json", headers={"X-API-Key": "key-1"}
        )
        assert response.status_code == 400
        assert response.json()["message"] == "Invalid JSON body"

    @pytest.mark.asyncio
    async def test_schema_violation(self, client: httpx.AsyncClient) -> None:
        response = await client.post(
            "/api/crashes/submit", json={"crashes": []}, headers={"X-API-Key": "key-1"}
        )
        assert response.status_code == 400

    @pytest.mark.asyncio
    async def test_store_failure_is_generic_500(
        self, client: httpx.AsyncClient, store: FakeCrashStorePort
    ) -> None:
        async def broken(*args, **kwargs):
            raise RuntimeError("disk full at /var/lib/crashbucket")

        store.find_group = broken
        response = await client.post(
            "/api/crashes/submit", json=SUBMISSION, headers={"X-API-Key": "key-1"}
        )

        assert response.status_code == 500
        assert response.json()["message"] == "Internal server error"


class TestOperatorEndpoints:
    @pytest.mark.asyncio
    async def test_status_change(
        self, client: httpx.AsyncClient, management: FakeManagementPort
    ) -> None:
        group = CrashGroup.open_new("app-1", "f" * 32, "E", None, T0)
        management.groups[group.id] = group

        response = await client.post(
            "/api/groups/status", json={"group_id": group.id, "status": "ignored"}
        )

        assert response.status_code == 200
        assert response.json()["group"]["status"] == "ignored"

    @pytest.mark.asyncio
    async def test_missing_field(self, client: httpx.AsyncClient) -> None:
        response = await client.post("/api/groups/delete", json={})
        assert response.status_code == 400
        assert response.json()["message"] == "Missing group_id"

    @pytest.mark.asyncio
    async def test_not_found(
        self, client: httpx.AsyncClient, management: FakeManagementPort
    ) -> None:
        management.error = NotFoundError("Crash c-1 not found")
        response = await client.post("/api/crashes/retrace", json={"crash_id": "c-1"})
        assert response.status_code == 404
        assert response.json()["message"] == "Crash c-1 not found"

    @pytest.mark.asyncio
    async def test_partial_reconciliation(
        self, client: httpx.AsyncClient, management: FakeManagementPort
    ) -> None:
        management.error = ReconciliationError(
            "1 partition(s) of app app-1 could not be reconciled; re-run to converge",
            ReconciliationResult(3, 1, 2, partitions_failed=1),
        )

        response = await client.post("/api/apps/reconcile", json={"app_id": "app-1"})

        assert response.status_code == 500
        assert response.json()["result"]["partitions_failed"] == 1

    @pytest.mark.asyncio
    async def test_unknown_route(self, client: httpx.AsyncClient) -> None:
        response = await client.post("/api/nothing", json={})
        assert response.status_code == 404

    @pytest.mark.asyncio
    async def test_health(self, client: httpx.AsyncClient) -> None:
        response = await client.get("/health")
        assert response.json() == {"status": "healthy"}


class TestAdminAuth:
    @pytest.mark.asyncio
    async def test_operator_route_requires_bearer(self, admin_client: httpx.AsyncClient) -> None:
        response = await admin_client.post("/api/apps/reconcile", json={"app_id": "app-1"})
        assert response.status_code == 401

    @pytest.mark.asyncio
    async def test_wrong_bearer(self, admin_client: httpx.AsyncClient) -> None:
        response = await admin_client.post(
            "/api/apps/reconcile",
            json={"app_id": "app-1"},
            headers={"Authorization": "Bearer nope"},
        )
        assert response.status_code == 401

    @pytest.mark.asyncio
    async def test_correct_bearer(
        self, admin_client: httpx.AsyncClient, management: FakeManagementPort
    ) -> None:
        response = await admin_client.post(
            "/api/apps/reconcile",
            json={"app_id": "app-1"},
            headers={"Authorization": f"Bearer {ADMIN_KEY}"},
        )
        assert response.status_code == 200
        assert management.reconciled_apps == ["app-1"]

    @pytest.mark.asyncio
    async def test_sdk_submission_does_not_need_bearer(
        self, admin_client: httpx.AsyncClient
    ) -> None:
        response = await admin_client.post(
            "/api/crashes/submit", json=SUBMISSION, headers={"X-API-Key": "key-1"}
        )
        assert response.status_code == 200
