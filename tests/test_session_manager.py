"""
Tests for the shared portal session: login, invalidation and health checks.
"""

import asyncio

import pytest

from subject_lookup.exceptions import LoginFailed
from subject_lookup.models.session import SessionStatus
from subject_lookup.services.portal_client import PortalResponse

from tests.conftest import make_pool, make_session
from tests.fakes import FakePortalClient, RotatingPortalClient, network_down, no_traffic

MINUTE = 60.0


def clicks(pool) -> int:
    _, context = pool.launched[-1]
    return sum(len(page.clicks) for page in context.pages)


def answer(status: int, text: str = "{}"):
    return lambda url: PortalResponse(status=status, text=text, data=None)


class TestLogin:
    """Token capture through the login page."""

    async def test_login_captures_token(self, pool, session, clock):
        await session.login()

        assert session.token == "tok-1"
        assert session.version == 1
        assert session.status == SessionStatus.AUTHENTICATED
        assert session.seconds_left == pytest.approx(50 * MINUTE)
        assert clicks(pool) == 1

    async def test_login_fills_credentials_and_closes_page(self, pool, session):
        await session.login()

        _, context = pool.launched[-1]
        login_page = context.pages[-1]
        assert login_page.visits == ["https://datadiverservice.com/auth/login"]
        assert login_page.filled == {"input#mat-input-0": "operator", "input#mat-input-1": "secret"}
        assert login_page.closed

    async def test_concurrent_logins_share_one_attempt(self, pool, session):
        await asyncio.gather(session.login(), session.login(), session.login())

        assert session.token == "tok-1"
        assert session.version == 1
        assert clicks(pool) == 1

    async def test_failed_login_raises_after_three_attempts(self, http, clock):
        pool = await make_pool(no_traffic)
        try:
            session = make_session(pool, http, clock, token_capture_timeout=0.05)

            with pytest.raises(LoginFailed):
                await session.login()

            assert clicks(pool) == 3
            assert not session.is_logging_in
            assert session.token == ""
            assert session.status == SessionStatus.UNAUTHENTICATED
        finally:
            await pool.close()

    async def test_force_refresh_issues_new_version(self, session):
        await session.login()
        await session.force_refresh()

        assert session.token == "tok-1-2"
        assert session.version == 2
        assert session.login_count == 2

    async def test_fresh_headers_logs_in_when_empty(self, session):
        headers = await session.fresh_headers()

        assert headers["Authorization"] == "Bearer tok-1"
        assert headers["X-Token-Version"] == "1"

    async def test_fresh_headers_renews_stale_token(self, session, clock):
        await session.login()
        clock.advance(49 * MINUTE)

        headers = await session.fresh_headers()

        assert headers["Authorization"] == "Bearer tok-1-2"

    async def test_invalidate_clears_token_but_keeps_version(self, session):
        await session.login()
        session.invalidate("test")

        assert session.token == ""
        assert session.version == 1
        assert not session.is_valid

        # Invalidating an empty session is a no-op
        session.invalidate("again")
        assert session.version == 1

    async def test_invalidate_for_replaced_token_is_ignored(self, session):
        await session.login()
        await session.force_refresh()

        session.invalidate("lookup_401", version=1)

        assert session.token == "tok-1-2"
        assert session.version == 2

        session.invalidate("lookup_401", version=2)
        assert session.token == ""


class TestHealthCheck:
    """Local clock first, then an API probe, leaning towards healthy."""

    async def test_no_token_is_unhealthy_without_probe(self, session, http):
        assert await session.check_health() is False
        assert http.calls == []

    async def test_token_near_end_of_life(self, pool, http, clock):
        session = make_session(pool, http, clock, expiry_margin=30)
        await session.login()

        clock.advance(49 * MINUTE)
        assert await session.check_health() is True
        assert len(http.calls) == 1

        clock.advance(2 * MINUTE)
        assert await session.check_health() is False
        assert len(http.calls) == 1
        assert session.token == ""

    async def test_default_margin_renews_two_minutes_early(self, session, http, clock):
        await session.login()

        clock.advance(47 * MINUTE)
        assert await session.check_health() is True
        assert len(http.calls) == 1

        clock.advance(2 * MINUTE)
        assert await session.check_health() is False
        assert len(http.calls) == 1

    async def test_probe_sends_auth_headers(self, session, http):
        await session.login()
        await session.check_health()

        call = http.calls[0]
        assert call["url"] == "https://api.datadiverservice.com/ds/crn/client/info/general/new?dni=0123456789"
        assert call["headers"]["Authorization"] == "Bearer tok-1"

    async def test_probe_rejection_after_relogin_keeps_new_token(self, pool, clock):
        http = RotatingPortalClient()
        session = make_session(pool, http, clock)
        http.session = session
        await session.login()

        await session.check_health()

        assert session.token == "tok-1-2"
        assert session.version == 2

    @pytest.mark.parametrize("status", [401, 403])
    async def test_auth_error_invalidates(self, pool, clock, status):
        session = make_session(pool, FakePortalClient(answer(status)), clock)
        await session.login()

        assert await session.check_health() is False
        assert session.token == ""

    async def test_network_error_with_plenty_of_time_is_healthy(self, pool, clock):
        session = make_session(pool, FakePortalClient(network_down), clock)
        await session.login()

        assert await session.check_health() is True
        assert session.token == "tok-1"

    async def test_network_error_near_expiry_invalidates(self, pool, clock):
        session = make_session(pool, FakePortalClient(network_down), clock)
        await session.login()
        clock.advance(42 * MINUTE)

        assert await session.check_health() is False
        assert session.token == ""

    async def test_expiry_wording_in_body_invalidates(self, pool, clock):
        http = FakePortalClient(answer(500, '{"error": "Token Expired"}'))
        session = make_session(pool, http, clock)
        await session.login()

        assert await session.check_health() is False

    async def test_inconclusive_server_error_is_healthy(self, pool, clock):
        http = FakePortalClient(answer(500, "Internal Server Error"))
        session = make_session(pool, http, clock)
        await session.login()

        assert await session.check_health() is True
        assert session.token == "tok-1"


class TestStrictHealthCheck:
    """Parallel probes across several endpoints."""

    async def test_every_endpoint_rejecting_invalidates(self, pool, clock):
        http = FakePortalClient(answer(401))
        session = make_session(pool, http, clock)
        await session.login()

        assert await session.check_health_strict() is False
        assert len(http.calls) == 3
        assert session.token == ""

    async def test_any_success_is_healthy(self, pool, clock):
        def handler(url):
            if "contact" in url:
                return PortalResponse(status=200, text="{}", data={})
            return PortalResponse(status=401, text="", data=None)

        session = make_session(pool, FakePortalClient(handler), clock)
        await session.login()

        assert await session.check_health_strict() is True

    async def test_mixed_errors_with_time_left_are_transient(self, pool, clock):
        def handler(url):
            if "vehicle" in url:
                return PortalResponse(status=500, text="", data=None)
            return PortalResponse(status=403, text="", data=None)

        session = make_session(pool, FakePortalClient(handler), clock)
        await session.login()

        assert await session.check_health_strict() is True
        assert session.token == "tok-1"

    async def test_network_errors_alone_never_invalidate(self, pool, clock):
        session = make_session(pool, FakePortalClient(network_down), clock)
        await session.login()

        assert await session.check_health_strict() is True
        assert session.token == "tok-1"


async def test_stats_reflect_session(session):
    await session.login()

    stats = session.stats
    assert stats["status"] == "authenticated"
    assert stats["has_token"] is True
    assert stats["minutes_left"] == 50
    assert stats["token_version"] == 1
    assert stats["login_count"] == 1
