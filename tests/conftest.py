"""
Shared fixtures for the lookup gateway tests.

Every component is built on fake Playwright objects and a fake portal API
client, with a controllable clock and near-zero delays.
"""

import os

import pytest

from subject_lookup.core.config import BrowserConfig, CacheConfig, PortalConfig, SessionConfig
from subject_lookup.services.browser_pool import BrowserPool
from subject_lookup.services.keepalive import KeepAliveScheduler
from subject_lookup.services.query_orchestrator import QueryOrchestrator
from subject_lookup.services.relatives_resolver import RelativesResolver
from subject_lookup.services.retry import ExponentialBackoff
from subject_lookup.services.session_manager import SessionManager

from tests.fakes import FakeBrowser, FakeClock, FakeContext, FakePortalClient, login_router, no_traffic

os.environ['ENVIRONMENT'] = 'test'


def browser_config(**overrides) -> BrowserConfig:
    values = dict(
        max_concurrent_pages=2,
        page_pool_size=2,
        queue_timeout_seconds=0.2,
        stagger_delay_seconds=0,
        relaunch_delay_seconds=0,
    )
    values.update(overrides)
    return BrowserConfig(**values)


def portal_config() -> PortalConfig:
    return PortalConfig(username="operator", password="secret")


async def make_pool(router=no_traffic, **overrides) -> BrowserPool:
    """A started pool whose browser launches return fresh fakes."""
    pool = BrowserPool(browser_config(**overrides))
    pool.launched = []

    async def launch():
        browser, context = FakeBrowser(), FakeContext(router)
        pool.launched.append((browser, context))
        return browser, context

    pool._launch = launch
    await pool.start()
    return pool


def make_session(pool, http, clock, **kwargs) -> SessionManager:
    options = dict(login_poll_interval=0.01, login_retry_delay=0, token_capture_timeout=0.2)
    options.update(kwargs)
    return SessionManager(pool, http, portal_config(), SessionConfig(), clock=clock, **options)


def make_resolver(session, http, clock, **cache) -> RelativesResolver:
    return RelativesResolver(
        session, http,
        portal_config=portal_config(),
        cache_config=CacheConfig(**cache),
        clock=clock,
        second_pass_delay=0,
        third_pass_delay=0,
        endpoint_pauses=(0, 0),
        backoff=ExponentialBackoff(base_delay=0, max_delay=0),
        fetch_retries=1
    )


def make_keepalive(pool, session, http, clock) -> KeepAliveScheduler:
    return KeepAliveScheduler(
        pool, session, http,
        portal_config=portal_config(),
        session_config=SessionConfig(),
        clock=clock,
        pace=0,
        real_query_wait=0.05
    )


def make_orchestrator(pool, session, relatives, clock, keepalive=None) -> QueryOrchestrator:
    return QueryOrchestrator(
        pool, session, relatives, keepalive,
        portal_config=portal_config(),
        session_config=SessionConfig(),
        clock=clock,
        data_wait=0.1,
        scroll_pause=0,
        restart_delay=0,
        session_retry_delay=0,
        navigation_retry_delay=0
    )


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def http():
    return FakePortalClient()


@pytest.fixture
async def pool():
    pool = await make_pool(login_router())
    yield pool
    await pool.close()


@pytest.fixture
def session(pool, http, clock):
    return make_session(pool, http, clock)
