import asyncio
from unittest.mock import AsyncMock

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from turnstile.api.routes import admin_router, get_user_id, router
from turnstile.config import Settings
from turnstile.core.cache.memory import MemoryCache
from turnstile.core.models import StrategyType
from turnstile.core.service import AdmissionService
from turnstile.core.storage.memory import InMemoryStore
from turnstile.main import create_app

from conftest import FakeClock


def consume(service: AdmissionService, key: str, times: int) -> None:
    async def _run() -> None:
        for _ in range(times):
            await service.increment_limit(key)

    asyncio.run(_run())


@pytest.fixture
def service(clock: FakeClock) -> AdmissionService:
    return AdmissionService(InMemoryStore(), MemoryCache(), clock=clock)


@pytest.fixture
def client(service: AdmissionService) -> TestClient:
    app = FastAPI()
    app.include_router(router)
    app.include_router(admin_router, prefix="/rate-limit")
    app.state.admission_service = service
    return TestClient(app)


# =============================================================================
# Health and Config
# =============================================================================


class TestHealth:
    def test_health(self, client: TestClient) -> None:
        response = client.get("/health")

        assert response.status_code == 200
        assert response.json() == {
            "status": "healthy",
            "strategy": "sliding-window",
            "store": "memory",
            "cache": "memory",
            "cache_available": True,
        }

    def test_uninitialized_service_is_503(self) -> None:
        app = FastAPI()
        app.include_router(router)

        assert TestClient(app).get("/health").status_code == 503


class TestConfig:
    def test_read_config(self, client: TestClient) -> None:
        body = client.get("/rate-limit/config").json()

        assert body["window_ms"] == 60_000
        assert body["max_requests"] == 100
        assert body["strategy"] == "sliding-window"
        assert body["cleanup_enabled"] is False
        assert body["cleanup_interval_ms"] == 300_000

    def test_update_config(self, client: TestClient, service: AdmissionService) -> None:
        response = client.put(
            "/rate-limit/config",
            json={"window_ms": 1000, "max_requests": 5, "strategy": "token-bucket"},
        )

        assert response.status_code == 200
        assert response.json()["strategy"] == "token-bucket"
        assert service.get_defaults().max_requests == 5
        assert service.get_defaults().strategy == StrategyType.TOKEN_BUCKET

    def test_partial_update_keeps_other_values(self, client: TestClient) -> None:
        body = client.put("/rate-limit/config", json={"max_requests": 7}).json()

        assert body["max_requests"] == 7
        assert body["window_ms"] == 60_000

    @pytest.mark.parametrize(
        "payload",
        [
            {"window_ms": -1},
            {"max_requests": 0},
            {"strategy": "leaky-bucket"},
            {"max_requests": "lots"},
            {"cleanup_interval_ms": 0},
            {"cleanup_interval_ms": -5},
        ],
    )
    def test_invalid_update_is_400(
        self,
        client: TestClient,
        service: AdmissionService,
        payload: dict,
    ) -> None:
        response = client.put("/rate-limit/config", json=payload)

        assert response.status_code == 400
        assert response.json()["detail"]
        assert service.get_defaults().max_requests == 100

    def test_cleanup_can_be_switched_on_and_off(self, client: TestClient) -> None:
        with client:
            enabled = client.put("/rate-limit/config", json={"cleanup_enabled": True}).json()
            assert enabled["cleanup_enabled"] is True
            assert client.app.state.cleanup_job.is_running()

            disabled = client.put("/rate-limit/config", json={"cleanup_enabled": False}).json()
            assert disabled["cleanup_enabled"] is False
            assert not client.app.state.cleanup_job.is_running()

    def test_new_interval_restarts_a_running_job(self, client: TestClient) -> None:
        with client:
            client.put("/rate-limit/config", json={"cleanup_enabled": True})
            job = client.app.state.cleanup_job
            first_task = job._task

            body = client.put("/rate-limit/config", json={"cleanup_interval_ms": 1000}).json()

            assert body["cleanup_interval_ms"] == 1000
            assert body["cleanup_enabled"] is True
            assert job._task is not first_task
            client.put("/rate-limit/config", json={"cleanup_enabled": False})

    def test_new_interval_does_not_start_a_stopped_job(self, client: TestClient) -> None:
        body = client.put("/rate-limit/config", json={"cleanup_interval_ms": 1000}).json()

        assert body["cleanup_interval_ms"] == 1000
        assert body["cleanup_enabled"] is False


# =============================================================================
# Status and Clear
# =============================================================================


class TestStatus:
    def test_status_of_a_key(self, client: TestClient, service: AdmissionService) -> None:
        consume(service, "user:1", 3)

        body = client.get("/rate-limit/status/user:1").json()

        assert body["key"] == "user:1"
        assert body["strategy"] == "sliding-window"
        assert body["current"] == 3
        assert body["remaining"] == 97
        assert body["limited"] is False

    def test_status_is_read_only(self, client: TestClient) -> None:
        client.get("/rate-limit/status/user:1")
        body = client.get("/rate-limit/status/user:1").json()

        assert body["current"] == 0

    def test_status_of_the_caller(self, client: TestClient) -> None:
        body = client.get("/rate-limit/status").json()

        assert body["key"] == "ip:testclient"

    def test_status_for_another_strategy(self, client: TestClient) -> None:
        body = client.get("/rate-limit/status/user:1", params={"strategy": "token-bucket"}).json()

        assert body["strategy"] == "token-bucket"
        assert body["remaining"] == 100

    def test_clear(self, client: TestClient, service: AdmissionService) -> None:
        consume(service, "user:1", 3)
        client.app.dependency_overrides[get_user_id] = lambda: "admin"

        response = client.delete("/rate-limit/clear/user:1")

        assert response.status_code == 204
        assert client.get("/rate-limit/status/user:1").json()["current"] == 0

    def test_clear_unknown_key(self, client: TestClient) -> None:
        client.app.dependency_overrides[get_user_id] = lambda: "admin"

        assert client.delete("/rate-limit/clear/nobody").status_code == 204

    def test_clear_requires_a_caller_identity(
        self, client: TestClient, service: AdmissionService
    ) -> None:
        consume(service, "user:1", 3)

        response = client.delete("/rate-limit/clear/user:1")

        assert response.status_code == 401
        assert response.json() == {"detail": "Authentication required"}
        assert client.get("/rate-limit/status/user:1").json()["current"] == 3

    def test_clear_passes_the_caller_to_the_service(self, client: TestClient) -> None:
        mock_service = AsyncMock()
        client.app.state.admission_service = mock_service
        client.app.dependency_overrides[get_user_id] = lambda: "admin"

        assert client.delete("/rate-limit/clear/user:1").status_code == 204
        mock_service.clear_limit.assert_awaited_once_with("user:1", "admin")

    def test_user_id_from_request_state(self, service: AdmissionService) -> None:
        app = FastAPI()
        app.include_router(admin_router, prefix="/rate-limit")
        app.state.admission_service = service

        @app.middleware("http")
        async def authenticate(request, call_next):
            request.state.user_id = "admin"
            return await call_next(request)

        assert TestClient(app).delete("/rate-limit/clear/user:1").status_code == 204


# =============================================================================
# Application
# =============================================================================


class TestApplication:
    def test_lifespan_wires_the_engine(self, tmp_path) -> None:
        settings = Settings(
            database_url=f"sqlite+aiosqlite:///{tmp_path / 'app.db'}",
            rate_limit_cache_type="local",
            rate_limit_cleanup_enabled=False,
            rate_limit_strategy="token-bucket",
            rate_limit_max_requests=5,
            _env_file=None,
        )
        app = create_app(settings)

        with TestClient(app) as client:
            health = client.get("/health").json()
            assert health["store"] == "sql"
            assert health["cache"] == "memory"
            assert health["strategy"] == "token-bucket"

            codes = [client.get("/rate-limit/config").status_code for _ in range(6)]
            assert codes == [200] * 5 + [429]
            assert app.state.cleanup_job.is_running() is False

        assert app.state.admission_service is None
        assert app.state.cleanup_job is None

    def test_gate_follows_the_configured_ceiling(self, tmp_path) -> None:
        settings = Settings(
            database_url=f"sqlite+aiosqlite:///{tmp_path / 'app.db'}",
            rate_limit_cache_type="local",
            rate_limit_cleanup_enabled=False,
            rate_limit_max_requests=1000,
            _env_file=None,
        )

        with TestClient(create_app(settings)) as client:
            responses = [client.get("/rate-limit/config") for _ in range(7)]

        assert [r.status_code for r in responses] == [200] * 7
        assert responses[-1].headers["RateLimit-Limit"] == "1000"

    def test_tiers_can_replace_the_ceiling(self, tmp_path) -> None:
        settings = Settings(
            database_url=f"sqlite+aiosqlite:///{tmp_path / 'app.db'}",
            rate_limit_cache_type="local",
            rate_limit_cleanup_enabled=False,
            rate_limit_tiers_enabled=True,
            _env_file=None,
        )

        with TestClient(create_app(settings)) as client:
            free = client.get("/rate-limit/config")
            vip = client.get("/rate-limit/config", headers={"X-API-Key": "vip_1"})

        assert free.headers["RateLimit-Limit"] == "5"
        assert vip.headers["RateLimit-Limit"] == "500"

    def test_cleanup_job_starts_when_enabled(self, tmp_path) -> None:
        settings = Settings(
            database_url=f"sqlite+aiosqlite:///{tmp_path / 'app.db'}",
            rate_limit_cache_type="local",
            rate_limit_cleanup_enabled=True,
            rate_limit_cleanup_interval_ms=120_000,
            _env_file=None,
        )

        with TestClient(create_app(settings)) as client:
            body = client.get("/rate-limit/config").json()

        assert body["cleanup_enabled"] is True
        assert body["cleanup_interval_ms"] == 120_000

    def test_admin_api_can_be_disabled(self, tmp_path) -> None:
        settings = Settings(
            database_url=f"sqlite+aiosqlite:///{tmp_path / 'app.db'}",
            rate_limit_cache_type="local",
            rate_limit_cleanup_enabled=False,
            rate_limit_api_enabled=False,
            _env_file=None,
        )

        with TestClient(create_app(settings)) as client:
            assert client.get("/rate-limit/config").status_code == 404
