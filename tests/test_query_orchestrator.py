"""
Tests for end-to-end lookup orchestration over fake pages.
"""

import asyncio

import pytest
from playwright.async_api import Error as PlaywrightError

from subject_lookup.core.config import SessionConfig
from subject_lookup.exceptions import LookupFailed, QueueTimeout, UpstreamUnavailable
from subject_lookup.models.relatives import RelativesResult

from tests.conftest import make_orchestrator, make_pool, make_session
from tests.fakes import API, FakePortalClient, FakeRelatives, FakeResponse, combine, login_router

SUBJECT = "0102030405"

GENERAL = {"fullname": "PEREZ ANA", "dni": SUBJECT}
CONTACTS = {"phones": [{"number": "0991234567", "type": "MOVIL"}]}
FAMILY = {"family": [{"fullName": "PEREZ LUIS", "dni": "0999999999", "relationship": "hermano"}]}


def api_response(path: str, status: int = 200, payload=None) -> FakeResponse:
    return FakeResponse(f"{API}{path}?dni={SUBJECT}", status, payload)


def full_data():
    return [
        api_response("/ds/crn/client/info/general/new", payload=GENERAL),
        api_response("/ds/crn/client/info/contact", payload=CONTACTS),
        api_response("/ds/crn/client/info/family/new", payload=FAMILY),
    ]


class LookupPages:
    """
    Serves one entry per visit to the lookup page; the last one repeats.

    An entry is either the responses the page sees or an error raised by
    the navigation.
    """

    def __init__(self, *visits):
        self.visits = list(visits)
        self.count = 0

    def __call__(self, event: str):
        if "/consultation/" not in event:
            return []
        self.count += 1
        visit = self.visits[min(self.count, len(self.visits)) - 1]
        if isinstance(visit, Exception):
            raise visit
        return visit


async def build(clock, *visits, relatives=None, **pool_options):
    pages = LookupPages(*visits)
    pool = await make_pool(combine(login_router(), pages), **pool_options)
    session = make_session(pool, FakePortalClient(), clock)
    relatives = relatives or FakeRelatives()
    orchestrator = make_orchestrator(pool, session, relatives, clock)
    return pool, session, relatives, orchestrator, pages


def open_pages(pool):
    _, context = pool.launched[-1]
    return [page for page in context.pages if not page.closed]


class TestLookup:

    async def test_successful_lookup(self, clock):
        pool, session, relatives, orchestrator, pages = await build(clock, full_data())
        try:
            capture = await orchestrator.scrape_subject(SUBJECT)

            assert capture.payloads["general"] == GENERAL
            assert capture.payloads["contacts"] == CONTACTS
            assert capture.payloads["family"] == FAMILY
            assert not capture.partial
            assert capture.attempts == 1
            assert relatives.calls == []

            stats = orchestrator.statistics
            assert stats["total_requests"] == 1
            assert stats["successful_requests"] == 1
            assert stats["success_rate"] == "100.00%"
            assert stats["in_flight"] == 0
        finally:
            await pool.close()

    async def test_navigates_to_lookup_page_and_cleans_up(self, clock):
        pool, session, relatives, orchestrator, pages = await build(clock, full_data())
        try:
            await orchestrator.scrape_subject(SUBJECT)

            assert pool.gate.active == 0
            assert pool.idle_count == 2
            visited = [url for page in open_pages(pool) for url in page.visits]
            assert f"https://datadiverservice.com/consultation/{SUBJECT}/client" in visited
            assert all(not page.listeners["response"] for page in open_pages(pool))
        finally:
            await pool.close()

    async def test_session_loss_restarts_with_new_token(self, clock):
        first_visit = [
            api_response("/ds/crn/client/info/general/new", payload=GENERAL),
            api_response("/ds/crn/client/info/contact", status=401),
        ]
        pool, session, relatives, orchestrator, pages = await build(clock, first_visit, full_data())
        try:
            capture = await orchestrator.scrape_subject(SUBJECT)

            assert capture.attempts == 2
            assert not capture.partial
            assert capture.payloads["contacts"] == CONTACTS
            assert session.version == 2
            assert pages.count == 2
            assert orchestrator.failed_requests == 0
        finally:
            await pool.close()

    async def test_token_expiring_during_lookup_restarts_with_new_login(self, clock):
        visits = []

        def expiring_visit(event: str):
            if "/consultation/" not in event:
                return []
            visits.append(event)
            if len(visits) == 1:
                # Only general arrives and the token drops inside the renewal margin
                clock.advance(SessionConfig().token_lifetime - 60)
                return [api_response("/ds/crn/client/info/general/new", payload=GENERAL)]
            return full_data()

        pool = await make_pool(combine(login_router(), expiring_visit))
        session = make_session(pool, FakePortalClient(), clock)
        orchestrator = make_orchestrator(pool, session, FakeRelatives(), clock)
        try:
            capture = await orchestrator.scrape_subject(SUBJECT)

            assert capture.attempts == 2
            assert session.version == 2
            assert capture.partial is False
            assert capture.payloads["contacts"] == CONTACTS
            assert len(visits) == 2
        finally:
            await pool.close()

    async def test_missing_critical_data_is_partial_with_relatives_top_up(self, clock):
        general_only = [api_response("/ds/crn/client/info/general/new", payload=GENERAL)]
        found = RelativesResult(relatives=[{"dni": "0999999999", "name": "PEREZ LUIS"}])
        pool, session, relatives, orchestrator, pages = await build(
            clock, general_only, relatives=FakeRelatives(found)
        )
        try:
            capture = await orchestrator.scrape_subject(SUBJECT)

            assert capture.partial
            assert capture.missing_critical() == ["contacts"]
            assert relatives.calls == [SUBJECT]
            assert capture.received["family"]
            assert capture.payloads["family"]["relatives"] == [{"dni": "0999999999", "name": "PEREZ LUIS"}]
            assert orchestrator.partial_requests == 1
            assert orchestrator.successful_requests == 1
            assert pool.gate.active == 0
        finally:
            await pool.close()

    async def test_concurrent_lookups_share_one_login(self, clock):
        pool, session, relatives, orchestrator, pages = await build(clock, full_data())
        try:
            captures = await asyncio.gather(*(orchestrator.scrape_subject(SUBJECT) for _ in range(3)))

            assert all(not capture.partial for capture in captures)
            assert session.login_count == 1
            assert orchestrator.successful_requests == 3
            assert pool.gate.active == 0
        finally:
            await pool.close()


class TestLookupFailures:

    async def test_queue_timeout_is_counted_and_raised(self, clock):
        pool, session, relatives, orchestrator, pages = await build(
            clock, full_data(), max_concurrent_pages=1, page_pool_size=1, queue_timeout_seconds=0.05
        )
        try:
            await pool.acquire_slot()

            with pytest.raises(QueueTimeout):
                await orchestrator.scrape_subject(SUBJECT)

            assert orchestrator.failed_requests == 1
            assert orchestrator.statistics["in_flight"] == 0
            pool.release_slot()
        finally:
            await pool.close()

    async def test_persistent_browser_error_fails_lookup(self, clock):
        pool, session, relatives, orchestrator, pages = await build(
            clock, PlaywrightError("net::ERR_CONNECTION_RESET")
        )
        try:
            with pytest.raises(LookupFailed) as exc_info:
                await orchestrator.scrape_subject(SUBJECT)

            assert exc_info.value.message == "Lookup failed"
            # Navigation is tried twice, the lookup is not restarted
            assert pages.count == 2
            assert orchestrator.failed_requests == 1
            assert pool.gate.active == 0
        finally:
            await pool.close()

    async def test_session_errors_give_up_after_max_retries(self, clock):
        pool, session, relatives, orchestrator, pages = await build(
            clock, PlaywrightError("Request failed with status 401")
        )
        try:
            with pytest.raises(LookupFailed):
                await orchestrator.scrape_subject(SUBJECT)

            # A fresh login for each of the three attempts
            assert session.login_count == 3
            assert pages.count == 6
        finally:
            await pool.close()

    async def test_network_error_on_id_with_status_digits_keeps_session(self, clock):
        subject = "1740112345"
        pool, session, relatives, orchestrator, pages = await build(
            clock,
            PlaywrightError(f"net::ERR_CONNECTION_RESET at https://datadiverservice.com/consultation/{subject}/client")
        )
        try:
            with pytest.raises(LookupFailed):
                await orchestrator.scrape_subject(subject)

            assert session.login_count == 1
            assert session.token == "tok-1"
            assert pages.count == 2
        finally:
            await pool.close()

    async def test_browser_down_is_upstream_unavailable(self, clock):
        pool, session, relatives, orchestrator, pages = await build(clock, full_data())
        await session.login()
        await pool.close()

        with pytest.raises(UpstreamUnavailable):
            await orchestrator.scrape_subject(SUBJECT)

        assert orchestrator.failed_requests == 1
