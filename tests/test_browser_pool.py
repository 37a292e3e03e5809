"""
Tests for the admission gate and the page pool.
"""

import asyncio

import pytest

from subject_lookup.exceptions import QueueTimeout, UpstreamUnavailable
from subject_lookup.services.browser_pool import AdmissionGate

from tests.conftest import make_pool


class TestAdmissionGate:
    """Bounded concurrency with a FIFO queue."""

    async def test_grants_up_to_max_without_waiting(self):
        gate = AdmissionGate(max_concurrent=2, queue_timeout=1.0, stagger_delay=0)
        await gate.acquire()
        await gate.acquire()
        assert gate.active == 2
        assert gate.queued == 0

    async def test_queued_callers_are_served_in_arrival_order(self):
        gate = AdmissionGate(max_concurrent=1, queue_timeout=1.0, stagger_delay=0)
        await gate.acquire()
        order = []

        async def waiter(name):
            await gate.acquire()
            order.append(name)

        tasks = [asyncio.create_task(waiter(name)) for name in ("first", "second", "third")]
        await asyncio.sleep(0.01)
        assert gate.queued == 3

        for _ in range(3):
            gate.release()
            await asyncio.sleep(0.01)

        await asyncio.gather(*tasks)
        assert order == ["first", "second", "third"]
        # Slots were handed over, never freed
        assert gate.active == 1

    async def test_active_never_exceeds_max(self):
        gate = AdmissionGate(max_concurrent=3, queue_timeout=2.0, stagger_delay=0)
        peak = 0

        async def work():
            nonlocal peak
            await gate.acquire()
            try:
                peak = max(peak, gate.active)
                await asyncio.sleep(0.01)
            finally:
                gate.release()

        await asyncio.gather(*(work() for _ in range(12)))
        assert peak == 3
        assert gate.active == 0
        assert gate.queued == 0

    async def test_queue_timeout_for_caller_beyond_capacity(self):
        gate = AdmissionGate(max_concurrent=1, queue_timeout=0.05, stagger_delay=0)
        await gate.acquire()

        with pytest.raises(QueueTimeout) as exc_info:
            await gate.acquire()

        assert exc_info.value.message == "Too many lookups in queue"
        assert gate.queued == 0
        assert gate.active == 1

    async def test_cancelled_waiter_leaves_the_queue(self):
        gate = AdmissionGate(max_concurrent=1, queue_timeout=1.0, stagger_delay=0)
        await gate.acquire()

        task = asyncio.create_task(gate.acquire())
        await asyncio.sleep(0.01)
        assert gate.queued == 1

        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        assert gate.queued == 0

        gate.release()
        assert gate.active == 0

    async def test_stagger_delays_later_starts(self):
        gate = AdmissionGate(max_concurrent=3, queue_timeout=1.0, stagger_delay=0.05)
        loop = asyncio.get_running_loop()

        started = loop.time()
        await gate.acquire()
        first = loop.time() - started
        await gate.acquire()
        second = loop.time() - started

        assert first < 0.05
        assert second >= 0.05


class TestBrowserPool:
    """Page reuse on the shared context."""

    async def test_start_warms_up_idle_pages(self):
        pool = await make_pool(page_pool_size=3, max_concurrent_pages=3)
        try:
            assert pool.is_ready
            assert pool.idle_count == 3
            _, context = pool.launched[0]
            page = context.pages[0]
            assert page.routes == ["**/*"]
            assert page.timeouts["navigation"] == pool.config.navigation_timeout_ms
        finally:
            await pool.close()

    async def test_borrow_reuses_idle_pages_then_creates_new_ones(self):
        pool = await make_pool(page_pool_size=1, max_concurrent_pages=2)
        try:
            _, context = pool.launched[0]
            first = await pool.borrow_page()
            assert first is context.pages[0]
            assert pool.idle_count == 0

            second = await pool.borrow_page()
            assert second is context.pages[1]
        finally:
            await pool.close()

    async def test_return_resets_page_and_closes_overflow(self):
        pool = await make_pool(page_pool_size=1, max_concurrent_pages=2)
        try:
            first = await pool.borrow_page()
            second = await pool.borrow_page()

            await pool.return_page(first)
            assert first.visits[-1] == "about:blank"
            assert pool.idle_count == 1

            await pool.return_page(second)
            assert second.closed
            assert pool.idle_count == 1
        finally:
            await pool.close()

    async def test_closed_idle_pages_are_skipped(self):
        pool = await make_pool(page_pool_size=2, max_concurrent_pages=2)
        try:
            _, context = pool.launched[0]
            await context.pages[1].close()

            page = await pool.borrow_page()
            assert page is context.pages[0]
        finally:
            await pool.close()

    async def test_refresh_replaces_idle_pages(self):
        pool = await make_pool(page_pool_size=2)
        try:
            _, context = pool.launched[0]
            old_pages = list(context.pages)

            await pool.refresh_pool()

            assert all(page.closed for page in old_pages)
            assert pool.idle_count == 2
            assert len(context.pages) == 4
            assert all(not page.closed for page in context.pages[2:])
        finally:
            await pool.close()

    async def test_borrow_without_browser_raises_upstream_unavailable(self):
        pool = await make_pool()
        await pool.close()

        with pytest.raises(UpstreamUnavailable):
            await pool.borrow_page()

    async def test_disconnect_drops_pages_and_relaunches(self):
        pool = await make_pool(page_pool_size=2)
        try:
            browser, _ = pool.launched[0]
            browser.disconnect()

            assert not pool.is_ready
            assert pool.idle_count == 0

            await pool._relaunch_task
            assert pool.is_ready
            assert pool.relaunch_count == 1
            assert len(pool.launched) == 2
            assert pool.idle_count == 2
        finally:
            await pool.close()

    async def test_slots_update_stats(self):
        pool = await make_pool(max_concurrent_pages=2)
        try:
            await pool.acquire_slot()
            assert pool.stats["active_pages"] == 1
            pool.release_slot()
            assert pool.stats["active_pages"] == 0
            assert pool.stats["max_concurrent"] == 2
        finally:
            await pool.close()

    async def test_close_closes_idle_pages_and_browser(self):
        pool = await make_pool(page_pool_size=2)
        browser, context = pool.launched[0]
        await pool.close()

        assert browser.closed
        assert all(page.closed for page in context.pages)
        assert not pool.is_ready
