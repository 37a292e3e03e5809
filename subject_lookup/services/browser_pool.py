"""
Browser pool for reusing Playwright pages against the portal, plus the
admission gate bounding how many lookups run at once.
"""

import asyncio
import logging
import time
from collections import deque
from typing import Any, Deque, Dict, List, Optional, Tuple

from playwright.async_api import (
    async_playwright,
    Browser,
    BrowserContext,
    Error as PlaywrightError,
    Page,
    Route,
)
from playwright_stealth import Stealth

from subject_lookup.api.monitoring.metrics import update_admission, update_idle_pages
from subject_lookup.core.config import BrowserConfig
from subject_lookup.exceptions import QueueTimeout, UpstreamUnavailable

logger = logging.getLogger(__name__)
stealth = Stealth()

BLOCKED_RESOURCE_TYPES = frozenset({"image", "stylesheet", "font", "media", "websocket"})


async def block_non_essential(route: Route):
    """Abort requests for resource types the lookups never need."""
    if route.request.resource_type in BLOCKED_RESOURCE_TYPES:
        await route.abort()
    else:
        await route.continue_()


class AdmissionGate:
    """
    Counting gate with a FIFO wait queue.

    A released slot is handed directly to the oldest waiter, so `active`
    only drops when nobody is queued. Waiters give up after
    `queue_timeout` seconds with `QueueTimeout`.
    """

    def __init__(
        self,
        max_concurrent: int = 6,
        queue_timeout: float = 45.0,
        stagger_delay: float = 0.5
    ):
        """
        Initialize the admission gate.

        Args:
            max_concurrent: Maximum lookups holding a slot
            queue_timeout: Seconds a queued caller waits before giving up
            stagger_delay: Extra start delay per additional active slot
        """
        self.max_concurrent = max_concurrent
        self.queue_timeout = queue_timeout
        self.stagger_delay = stagger_delay
        self.active = 0
        self._waiters: Deque[asyncio.Future] = deque()

    @property
    def queued(self) -> int:
        return sum(1 for waiter in self._waiters if not waiter.done())

    async def acquire(self):
        """
        Wait for a slot.

        Raises:
            QueueTimeout: When no slot was granted within the queue timeout
        """
        if self.active < self.max_concurrent and not self.queued:
            self.active += 1
        else:
            await self._wait_in_queue()

        delay = (self.active - 1) * self.stagger_delay
        if delay > 0:
            logger.debug(f"Staggering start by {delay:.2f}s (active={self.active})")
            try:
                await asyncio.sleep(delay)
            except asyncio.CancelledError:
                self.release()
                raise

    async def _wait_in_queue(self):
        waiter = asyncio.get_running_loop().create_future()
        self._waiters.append(waiter)
        started = time.monotonic()
        logger.debug(f"Admission gate full, queued (position={len(self._waiters)})")

        try:
            await asyncio.wait_for(asyncio.shield(waiter), timeout=self.queue_timeout)
        except asyncio.TimeoutError:
            if waiter.done() and not waiter.cancelled():
                # Granted exactly as the deadline fired; keep the slot
                return
            self._discard(waiter)
            raise QueueTimeout(time.monotonic() - started)
        except asyncio.CancelledError:
            if waiter.done() and not waiter.cancelled():
                self.release()
            else:
                self._discard(waiter)
            raise

    def _discard(self, waiter: asyncio.Future):
        try:
            self._waiters.remove(waiter)
        except ValueError:
            pass
        if not waiter.done():
            waiter.cancel()

    def release(self):
        """Hand the slot to the oldest waiter, or free it."""
        while self._waiters:
            waiter = self._waiters.popleft()
            if not waiter.done():
                waiter.set_result(True)
                return
        if self.active > 0:
            self.active -= 1


class BrowserPool:
    """
    Pool of idle portal pages on a single shared browser context.

    All pages share one context so the portal login carries over to every
    page. The pool owns the admission gate as well.

    Features:
    - Pre-warmed pages with non-essential resources blocked
    - Bounded idle pool; extra pages are created on demand and closed on return
    - Automatic relaunch and rewarm when the browser disconnects
    - Graceful shutdown
    """

    def __init__(self, config: Optional[BrowserConfig] = None, user_agent: Optional[str] = None):
        """
        Initialize browser pool.

        Args:
            config: Browser configuration (defaults from environment)
            user_agent: User agent for the shared context
        """
        self.config = config or BrowserConfig()
        self.pool_size = self.config.page_pool_size
        self.user_agent = user_agent or "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36"

        self.gate = AdmissionGate(
            max_concurrent=self.config.max_concurrent_pages,
            queue_timeout=self.config.queue_timeout_seconds,
            stagger_delay=self.config.stagger_delay_seconds
        )

        self.playwright = None
        self.browser: Optional[Browser] = None
        self.context: Optional[BrowserContext] = None
        self.is_closed = False
        self.relaunch_count = 0

        self._idle: List[Page] = []
        self._lock = asyncio.Lock()
        self._relaunch_task: Optional[asyncio.Task] = None

        logger.info(
            f"BrowserPool initialized: pool_size={self.pool_size}, "
            f"max_concurrent={self.config.max_concurrent_pages}"
        )

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> bool:
        """
        Launch the browser and warm up the page pool.

        A failed launch is retried in the background after
        `relaunch_delay_seconds`.

        Returns:
            True if the browser is up
        """
        if self.is_closed:
            return False

        try:
            self.browser, self.context = await self._launch()
        except Exception as e:
            logger.error(f"Failed to launch browser: {e}", exc_info=True)
            self._schedule_relaunch()
            return False

        self.browser.on("disconnected", self._on_disconnected)
        logger.info("Browser launched")
        await self.warm_up()
        return True

    async def _launch(self) -> Tuple[Browser, BrowserContext]:
        """Start Chromium and create the shared stealth context."""
        if self.playwright is None:
            self.playwright = await async_playwright().start()

        browser = await self.playwright.chromium.launch(
            headless=self.config.headless,
            executable_path=self.config.executable_path,
            args=self.config.launch_args
        )
        context = await browser.new_context(
            user_agent=self.user_agent,
            viewport={"width": 1366, "height": 768}
        )

        await stealth.apply_stealth_async(context)
        await context.add_init_script("""
            Object.defineProperty(navigator, 'webdriver', { get: () => undefined });
            window.chrome = { runtime: {} };
        """)

        return browser, context

    def _on_disconnected(self, browser: Any = None):
        """Browser process went away: drop pages and relaunch."""
        if self.is_closed:
            return

        logger.error("Browser disconnected unexpectedly, relaunching")
        self._idle.clear()
        update_idle_pages(0)
        self.browser = None
        self.context = None
        self._schedule_relaunch(delay=0)

    def _schedule_relaunch(self, delay: Optional[float] = None):
        if self.is_closed:
            return
        if self._relaunch_task and not self._relaunch_task.done():
            return
        wait = self.config.relaunch_delay_seconds if delay is None else delay
        self._relaunch_task = asyncio.create_task(self._relaunch(wait))

    async def _relaunch(self, delay: float):
        if delay > 0:
            await asyncio.sleep(delay)
        self.relaunch_count += 1
        logger.info(f"Relaunching browser (attempt {self.relaunch_count})")
        await self.start()

    async def warm_up(self):
        """Pre-create pages until the idle pool is full."""
        created = 0
        try:
            for _ in range(self.pool_size):
                page = await self._create_page()
                async with self._lock:
                    if len(self._idle) < self.pool_size:
                        self._idle.append(page)
                        created += 1
                        page = None
                if page is not None:
                    await self.close_page(page)
        except (PlaywrightError, UpstreamUnavailable) as e:
            logger.error(f"Error warming up page pool: {e}")

        update_idle_pages(len(self._idle))
        logger.info(f"Page pool ready: created={created}, idle={len(self._idle)}")

    async def refresh_pool(self):
        """Close every idle page and warm up fresh ones."""
        async with self._lock:
            old_pages = list(self._idle)
            self._idle.clear()

        logger.info(f"Refreshing page pool: closing {len(old_pages)} pages")
        for page in old_pages:
            await self.close_page(page)

        await self.warm_up()

    async def close(self):
        """Close all pages, the browser and Playwright."""
        if self.is_closed:
            return

        logger.info("Closing browser pool...")
        self.is_closed = True

        if self._relaunch_task:
            self._relaunch_task.cancel()
            try:
                await self._relaunch_task
            except asyncio.CancelledError:
                pass

        async with self._lock:
            pages = list(self._idle)
            self._idle.clear()
        for page in pages:
            await self.close_page(page)

        if self.browser:
            try:
                await self.browser.close()
            except PlaywrightError as e:
                logger.warning(f"Error closing browser: {e}")
        self.browser = None
        self.context = None

        if self.playwright:
            await self.playwright.stop()
            self.playwright = None

        logger.info("Browser pool closed")

    # ------------------------------------------------------------------
    # Pages
    # ------------------------------------------------------------------

    async def _create_page(self) -> Page:
        if self.context is None:
            raise UpstreamUnavailable("Browser is not available")

        page = await self.context.new_page()
        page.set_default_timeout(self.config.navigation_timeout_ms)
        page.set_default_navigation_timeout(self.config.navigation_timeout_ms)
        await page.route("**/*", block_non_essential)
        return page

    async def new_page(self) -> Page:
        """Create a disposable page outside the pool (login, keep-alive)."""
        try:
            return await self._create_page()
        except PlaywrightError as e:
            raise UpstreamUnavailable(f"Could not open page: {e}") from e

    async def borrow_page(self) -> Page:
        """
        Take an idle page, or create one when the pool is empty.

        Raises:
            UpstreamUnavailable: When the browser is down
        """
        if self.context is None:
            raise UpstreamUnavailable("Browser is not available")

        page = None
        async with self._lock:
            while self._idle:
                candidate = self._idle.pop()
                if not candidate.is_closed():
                    page = candidate
                    break
            idle = len(self._idle)

        update_idle_pages(idle)
        if page is not None:
            logger.debug(f"Using pooled page (idle={idle})")
            return page

        logger.debug("Pool empty, creating new page")
        return await self.new_page()

    async def return_page(self, page: Page):
        """Reset a page to blank and put it back, or close it if the pool is full."""
        if page.is_closed():
            return

        async with self._lock:
            full = len(self._idle) >= self.pool_size
        if full or self.is_closed or self.context is None:
            logger.debug("Pool full, closing page")
            await self.close_page(page)
            return

        try:
            await page.goto("about:blank", timeout=5000)
        except PlaywrightError as e:
            logger.warning(f"Error resetting page, discarding it: {e}")
            await self.close_page(page)
            return

        async with self._lock:
            if len(self._idle) < self.pool_size:
                self._idle.append(page)
                page = None
            idle = len(self._idle)
        if page is not None:
            await self.close_page(page)

        update_idle_pages(idle)

    async def close_page(self, page: Page):
        try:
            await page.close()
        except PlaywrightError as e:
            logger.debug(f"Error closing page: {e}")

    # ------------------------------------------------------------------
    # Admission
    # ------------------------------------------------------------------

    async def acquire_slot(self):
        """Wait for an admission slot (see `AdmissionGate.acquire`)."""
        try:
            await self.gate.acquire()
        finally:
            update_admission(self.gate.active, self.gate.queued)

    def release_slot(self):
        self.gate.release()
        update_admission(self.gate.active, self.gate.queued)

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    @property
    def idle_count(self) -> int:
        return len(self._idle)

    @property
    def is_ready(self) -> bool:
        return self.context is not None and not self.is_closed

    @property
    def stats(self) -> Dict[str, Any]:
        return {
            "active_pages": self.gate.active,
            "queued_requests": self.gate.queued,
            "page_pool_size": len(self._idle),
            "pool_capacity": self.pool_size,
            "max_concurrent": self.gate.max_concurrent,
            "is_ready": self.is_ready,
            "relaunch_count": self.relaunch_count,
        }
