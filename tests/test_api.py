"""
Tests for the HTTP surface: routes, error envelope and status mapping.
"""

import httpx
import pytest

from subject_lookup.api.main import create_app
from subject_lookup.core.config import Config
from subject_lookup.exceptions import LookupFailed, QueueTimeout, UpstreamUnavailable
from subject_lookup.services.registry import LookupServices

from tests.conftest import make_keepalive, make_orchestrator, make_pool, make_resolver, make_session
from tests.fakes import API, FakePortalClient, FakeResponse, combine, login_router

SUBJECT = "0102030405"


def lookup_page(event: str):
    if "/consultation/" not in event:
        return []
    return [
        FakeResponse(f"{API}/ds/crn/client/info/general/new?dni={SUBJECT}", 200,
                     {"id": 7, "dni": SUBJECT, "fullname": "PEREZ ANA", "dateOfBirth": "01/02/1990"}),
        FakeResponse(f"{API}/ds/crn/client/info/contact?dni={SUBJECT}", 200,
                     {"phones": [{"phone": "0991234567", "type": "MOVIL"}]}),
        FakeResponse(f"{API}/ds/crn/client/info/family/new?dni={SUBJECT}", 200,
                     {"family": [{"fullName": "PEREZ LUIS", "dni": "0999999999", "relationship": "hermano"}]}),
    ]


class FailingOrchestrator:
    def __init__(self, error):
        self.error = error

    async def scrape_subject(self, subject_id):
        raise self.error


@pytest.fixture
async def services(clock):
    pool = await make_pool(combine(login_router(), lookup_page))
    http = FakePortalClient()
    session = make_session(pool, http, clock)
    relatives = make_resolver(session, http, clock)
    keepalive = make_keepalive(pool, session, http, clock)
    orchestrator = make_orchestrator(pool, session, relatives, clock, keepalive)
    services = LookupServices(Config(), pool, http, session, relatives, keepalive, orchestrator)
    yield services
    await keepalive.stop()
    await pool.close()


@pytest.fixture
def app(services):
    app = create_app(config=Config())
    app.state.services = services
    return app


@pytest.fixture
async def client(app):
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as client:
        yield client


class TestPing:

    async def test_ping(self, client):
        response = await client.get("/ping")

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "ok"
        assert body["service"] == "subject-lookup-gateway"
        assert body["uptime"] == 0.0

    async def test_request_id_is_echoed(self, client):
        response = await client.get("/ping", headers={"X-Request-ID": "req-42"})

        assert response.headers["X-Request-ID"] == "req-42"

    async def test_request_id_is_generated(self, client):
        response = await client.get("/ping")

        assert response.headers["X-Request-ID"]


class TestLookupRoutes:

    @pytest.mark.parametrize("route", ["/client", "/title"])
    async def test_returns_structured_record(self, client, route):
        response = await client.get(f"{route}/{SUBJECT}")

        assert response.status_code == 200
        record = response.json()
        assert record["id"] == 7
        assert record["identification"] == SUBJECT
        assert record["name"] == "PEREZ ANA"
        assert record["birth"] == "1990-02-01"
        assert record["contacts"][0]["phone_number"] == "0991234567"
        assert record["parents"][0]["type"] == "HERMANO"

    async def test_queue_timeout_is_503_with_retry_after(self, app, client, services):
        services.orchestrator = FailingOrchestrator(QueueTimeout(45.2))

        response = await client.get(f"/client/{SUBJECT}")

        assert response.status_code == 503
        assert response.headers["Retry-After"] == "5"
        error = response.json()["error"]
        assert error["code"] == "SERVICE_UNAVAILABLE"
        assert error["message"] == "Too many lookups in queue"
        assert error["details"]["retry_after"] == 5

    async def test_browser_down_is_503(self, client, services):
        services.orchestrator = FailingOrchestrator(UpstreamUnavailable("Browser is not available"))

        response = await client.get(f"/client/{SUBJECT}")

        assert response.status_code == 503
        assert response.headers["Retry-After"] == "10"

    async def test_failed_lookup_is_generic_500(self, client, services):
        services.orchestrator = FailingOrchestrator(LookupFailed("Lookup failed"))

        response = await client.get(f"/client/{SUBJECT}", headers={"X-Request-ID": "req-7"})

        assert response.status_code == 500
        error = response.json()["error"]
        assert error["code"] == "LOOKUP_ERROR"
        assert error["message"] == "Error processing lookup, please try again"
        assert error["details"] == {"subject_id": SUBJECT}
        assert error["request_id"] == "req-7"

    async def test_overlong_id_is_validation_error(self, client):
        response = await client.get(f"/client/{'1' * 40}")

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "VALIDATION_ERROR"

    @pytest.mark.parametrize("subject_id", ["0123&dni=9", "0123%3Fx", "01 23"])
    async def test_ids_that_would_alter_portal_queries_are_rejected(self, client, services, subject_id):
        response = await client.get(f"/client/{subject_id}")

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "VALIDATION_ERROR"
        assert services.orchestrator.total_requests == 0

    async def test_services_not_started(self, app, client):
        app.state.services = None

        response = await client.get(f"/client/{SUBJECT}")

        assert response.status_code == 503
        assert response.headers["Retry-After"] == "5"

    async def test_unknown_route(self, client):
        response = await client.get("/nope")

        assert response.status_code == 404
        assert response.json()["error"]["code"] == "HTTP_404"


class TestSystemRoutes:

    async def test_sessions(self, client, services):
        await services.session.login()

        response = await client.get("/sessions")

        assert response.status_code == 200
        body = response.json()
        assert body["max_concurrent"] == 2
        assert body["session"]["token_version"] == 1
        assert body["keepalive_active"] is False
        assert body["statistics"]["total_requests"] == 0
        assert body["relatives_cache"]["ttl_seconds"] == 600

    async def test_system_status_without_token(self, client):
        response = await client.get("/system-status")

        assert response.status_code == 200
        token = response.json()["token"]
        assert token == {"exists": False, "minutes_left": 0, "expired": True, "healthy": False}

    async def test_health_check(self, client, services):
        await services.session.login()

        response = await client.get("/health-check")

        assert response.json() == {
            "success": True,
            "session_healthy": True,
            "token_valid": True,
            "browser_active": True,
            "message": "Session healthy",
        }

    async def test_refresh_token(self, client, services):
        await services.session.login()

        response = await client.post("/refresh-token")

        assert response.status_code == 200
        assert response.json()["details"] == {"token": "present", "version": 2, "idle_pages": 2}

    async def test_force_idle_activity_without_token_is_503(self, client):
        response = await client.post("/force-idle-activity")

        assert response.status_code == 503
        assert response.headers["Retry-After"] == "10"

    async def test_force_idle_activity(self, client, services):
        await services.session.login()

        response = await client.post("/force-idle-activity")

        assert response.status_code == 200
        assert response.json()["details"]["regular"] == "ok"


class TestRelativesRoutes:

    async def test_diagnostics_need_a_session(self, client, services):
        for route in ("/test-family", "/debug-family-endpoints", "/diagnose-family"):
            response = await client.get(f"{route}/{SUBJECT}")

            assert response.status_code == 401
            assert response.json()["error"]["code"] == "NO_SESSION"
        assert services.session.login_count == 0

    async def test_test_family_with_session(self, client, services):
        await services.session.login()

        response = await client.get(f"/test-family/{SUBJECT}")

        assert response.status_code == 200
        body = response.json()
        assert body["success"] is True
        assert body["total_members"] == 0
        assert body["cache_used"] is False
        assert set(body["counts"]) == {"family", "data", "results", "relatives", "parentesco"}

    async def test_diagnose_family_recommends_checks(self, client, services):
        await services.session.login()

        response = await client.get(f"/diagnose-family/{SUBJECT}")

        body = response.json()
        assert body["success"] is False
        assert body["token_healthy"] is True
        assert body["recommendations"][0].startswith("No relatives found")

    async def test_family_cache_admin(self, client):
        stats = (await client.get("/family-cache-stats")).json()
        assert stats["cache"]["size"] == 0

        cleared = await client.post("/clear-family-cache")
        assert cleared.json()["success"] is True
        assert cleared.json()["cache_size"] == 0

        retried = await client.post(f"/force-retry-family/{SUBJECT}")
        assert retried.json()["subject_id"] == SUBJECT


class TestHealthAndMetrics:

    async def test_health_degraded_without_session(self, client):
        response = await client.get("/health")

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "degraded"
        assert body["components"]["browser"]["status"] == "healthy"
        assert body["components"]["session"]["status"] == "degraded"

    async def test_health_unhealthy_when_browser_down(self, client, services):
        await services.pool.close()

        response = await client.get("/health")

        assert response.status_code == 503
        assert response.json()["components"]["browser"]["status"] == "unhealthy"

    async def test_metrics(self, client):
        await client.get(f"/client/{SUBJECT}")

        response = await client.get("/metrics")

        assert response.status_code == 200
        assert "subject_lookups_total" in response.text
        assert "browser_idle_pages" in response.text
