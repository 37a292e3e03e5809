"""
Background jobs that keep the portal session from being reclaimed for inactivity.

Four independent APScheduler interval jobs share state with foreground
lookups only through SessionManager and BrowserPool:

1. token maintenance: renew the token when it is missing, near expiry or
   fails a health check
2. smart activity: human-like navigation on a dedicated page, with an
   intensive burst when no caller request arrived recently
3. heartbeat: a short authenticated API probe
4. real query: open a real lookup page for a synthetic subject id

Navigation and timeout errors are logged and swallowed. Only authentication
failures change session state.
"""

import asyncio
import logging
import random
import time
from datetime import datetime
from typing import Any, Callable, Dict, Optional

from apscheduler.events import EVENT_JOB_ERROR, EVENT_JOB_MISSED
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger
from playwright.async_api import Error as PlaywrightError, Page, TimeoutError as PlaywrightTimeoutError

from subject_lookup.core.config import PortalConfig, SessionConfig
from subject_lookup.exceptions import PortalRequestError, UpstreamUnavailable
from subject_lookup.services.browser_pool import BrowserPool
from subject_lookup.services.portal_client import PortalApiClient
from subject_lookup.services.session_manager import GENERAL_PATH, SessionManager

logger = logging.getLogger(__name__)

ACTIVITY_PATHS = ("/dashboard", "/consultation", "/reports")

SYNTHETIC_SUBJECT_IDS = (
    "0123456789", "0987654321", "0111111111", "0222222222", "0333333333",
    "0444444444", "0555555555", "0666666666", "0777777777", "0888888888",
)

MOUSEMOVE_SCRIPT = """
() => {
    if (document.body) {
        const event = new MouseEvent('mousemove', {
            bubbles: true,
            cancelable: true,
            clientX: Math.random() * window.innerWidth,
            clientY: Math.random() * window.innerHeight
        });
        document.dispatchEvent(event);
        if (Math.random() < 0.3) {
            document.body.click();
        }
    }
}
"""


class KeepAliveScheduler:
    """Runs the session keep-alive jobs on an AsyncIOScheduler."""

    def __init__(
        self,
        pool: BrowserPool,
        session: SessionManager,
        http: PortalApiClient,
        portal_config: Optional[PortalConfig] = None,
        session_config: Optional[SessionConfig] = None,
        clock: Callable[[], float] = time.monotonic,
        pace: float = 1.0,
        real_query_wait: float = 4.0
    ):
        """
        Initialize the scheduler.

        Args:
            pool: Browser pool for activity and query pages
            session: Session manager (the only path to session state)
            http: Portal API client for heartbeats
            portal_config: Portal endpoints
            session_config: Job intervals and idle threshold
            clock: Monotonic time source in seconds
            pace: Multiplier applied to the human-like pauses
            real_query_wait: Seconds to wait for API traffic on the real query page
        """
        self.pool = pool
        self.session = session
        self.http = http
        self.portal = portal_config or PortalConfig()
        self.settings = session_config or SessionConfig()
        self.clock = clock
        self.pace = pace
        self.real_query_wait = real_query_wait

        self.scheduler: Optional[AsyncIOScheduler] = None
        self._init_task: Optional[asyncio.Task] = None
        self.activity_page: Optional[Page] = None
        self.is_idle = False
        self.last_request_time = clock()
        self.last_activity_time = clock()
        self.last_activity_at: Optional[datetime] = None
        self._activity_running = False
        self._subject_index = 0
        self.run_counts: Dict[str, int] = {
            "token_maintenance": 0,
            "smart_activity": 0,
            "heartbeat": 0,
            "real_query": 0,
        }

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self):
        """Register the four jobs and start the scheduler."""
        if self.scheduler and self.scheduler.running:
            return

        self.scheduler = AsyncIOScheduler()
        self.scheduler.add_listener(self._job_listener, EVENT_JOB_ERROR | EVENT_JOB_MISSED)

        jobs = (
            ("token_maintenance", self.token_maintenance, self.settings.token_refresh_interval),
            ("smart_activity", self.smart_activity, self.settings.activity_interval),
            ("heartbeat", self.heartbeat, self.settings.heartbeat_interval),
            ("real_query", self.real_query, self.settings.real_query_interval),
        )
        for job_id, func, seconds in jobs:
            self.scheduler.add_job(
                func,
                IntervalTrigger(seconds=seconds),
                id=job_id,
                replace_existing=True,
                max_instances=1,
                coalesce=True,
            )

        self.scheduler.start()
        self._init_task = asyncio.get_running_loop().create_task(self._init_activity_page())

        logger.info(
            f"Keep-alive started: token={self.settings.token_refresh_interval}s, "
            f"activity={self.settings.activity_interval}s, "
            f"heartbeat={self.settings.heartbeat_interval}s, "
            f"real_query={self.settings.real_query_interval}s"
        )

    async def stop(self):
        """Stop the jobs and close the activity page."""
        if self.scheduler and self.scheduler.running:
            self.scheduler.shutdown(wait=False)
        self.scheduler = None
        if self._init_task and not self._init_task.done():
            self._init_task.cancel()
            try:
                await self._init_task
            except asyncio.CancelledError:
                pass
        await self._close_activity_page()
        logger.info("Keep-alive stopped")

    def _job_listener(self, event: Any) -> None:
        if getattr(event, 'exception', None):
            logger.error(f"Keep-alive job {event.job_id} failed: {event.exception}")
        else:
            logger.warning(f"Keep-alive job {event.job_id} missed its run time")

    @property
    def is_active(self) -> bool:
        return bool(self.scheduler and self.scheduler.running)

    def record_request(self):
        """Note caller activity so idle detection stays accurate."""
        self.last_request_time = self.clock()

    async def _pause(self, seconds: float):
        if self.pace > 0:
            await asyncio.sleep(seconds * self.pace)

    # ------------------------------------------------------------------
    # Activity page
    # ------------------------------------------------------------------

    async def _close_activity_page(self):
        page, self.activity_page = self.activity_page, None
        if page is not None:
            await self.pool.close_page(page)

    async def _init_activity_page(self):
        """(Re)create the dedicated activity page on the dashboard."""
        await self._close_activity_page()
        try:
            page = await self.pool.new_page()
            page.set_default_timeout(12000)
            page.set_default_navigation_timeout(12000)
            self.activity_page = page
            await page.goto(
                f"{self.portal.base_url}/dashboard",
                wait_until="domcontentloaded",
                timeout=12000
            )
            logger.info("Activity page initialized")
        except (PlaywrightError, UpstreamUnavailable) as e:
            logger.error(f"Error initializing activity page: {e}")

    async def _ensure_activity_page(self) -> Optional[Page]:
        page = self.activity_page
        if page is None or page.is_closed():
            await self._init_activity_page()
            return self.activity_page

        try:
            await page.evaluate("() => typeof window !== 'undefined' && typeof document !== 'undefined'")
        except PlaywrightError:
            logger.debug("Activity page detached, recreating")
            await self._init_activity_page()
        return self.activity_page

    # ------------------------------------------------------------------
    # Job 1: token maintenance
    # ------------------------------------------------------------------

    async def token_maintenance(self):
        """Renew the token if it is missing, near expiry, or unhealthy."""
        if not self.pool.is_ready or self.session.is_logging_in:
            return
        self.run_counts["token_maintenance"] += 1

        try:
            if not self.session.token or self.session.seconds_left <= self.session.expiry_margin:
                reason = "no token" if not self.session.token else "near expiry"
                logger.info(f"Token maintenance: renewing ({reason})")
                await self.session.login()
                await self._init_activity_page()
            elif await self.session.check_health():
                logger.info(f"Token maintenance: session healthy ({self.session.minutes_left} min left)")
            else:
                logger.info("Token maintenance: session unhealthy, renewing")
                await self.session.login()
                await self._init_activity_page()
        except Exception as e:
            logger.error(f"Error in token maintenance: {e}")
            self.session.invalidate("maintenance_error")

    # ------------------------------------------------------------------
    # Job 2: smart activity
    # ------------------------------------------------------------------

    async def smart_activity(self):
        """Regular activity while busy, an intensive burst while idle."""
        if (
            not self.pool.is_ready
            or self.session.is_logging_in
            or not self.session.token
            or self._activity_running
        ):
            return

        self._activity_running = True
        self.run_counts["smart_activity"] += 1
        try:
            idle_for = self.clock() - self.last_request_time
            self.is_idle = idle_for > self.settings.max_idle_time

            if self.is_idle:
                logger.debug(f"System idle for {int(idle_for)}s, running intensive activity")
                await self._intensive_activity()
            else:
                await self._regular_activity()

            self._mark_activity()
        except PlaywrightError as e:
            logger.debug(f"Error in smart activity, recreating activity page: {e}")
            await self._init_activity_page()
        finally:
            self._activity_running = False

    def _mark_activity(self):
        self.last_activity_time = self.clock()
        self.last_activity_at = datetime.utcnow()

    async def _regular_activity(self):
        """Navigate between portal pages with bounded mouse and scroll motion."""
        page = await self._ensure_activity_page()
        if page is None:
            return

        target = f"{self.portal.base_url}{random.choice(ACTIVITY_PATHS)}"
        try:
            await page.goto(target, wait_until="domcontentloaded", timeout=10000)
        except PlaywrightTimeoutError:
            logger.debug(f"Activity navigation timed out: {target}")
            return

        await self._pause(0.8)
        for _ in range(2):
            await page.mouse.move(random.uniform(200, 800), random.uniform(150, 550))
            await self._pause(0.4)
            await page.evaluate("() => window.scrollBy(0, Math.random() * 200 + 100)")
            await self._pause(0.3)
        await page.evaluate("() => window.scrollTo(0, 0)")
        logger.debug("Regular activity completed")

    async def _simulate_interaction(self):
        page = self.activity_page
        if page is None or page.is_closed():
            return
        await page.evaluate(MOUSEMOVE_SCRIPT)
        await self._pause(0.2)

    async def _quick_navigation(self):
        page = await self.pool.new_page()
        try:
            await page.goto(
                f"{self.portal.base_url}/dashboard",
                wait_until="domcontentloaded",
                timeout=8000
            )
            await self._pause(0.5)
            await page.evaluate("() => window.scrollBy(0, 100)")
        finally:
            await self.pool.close_page(page)

    async def _intensive_activity(self) -> Dict[str, str]:
        """Run all activity kinds concurrently; one failing does not cancel the others."""
        names = ("regular", "interaction", "quick_navigation")
        results = await asyncio.gather(
            self._regular_activity(),
            self._simulate_interaction(),
            self._quick_navigation(),
            return_exceptions=True
        )

        outcome = {}
        for name, result in zip(names, results):
            if isinstance(result, Exception):
                logger.debug(f"Intensive activity part '{name}' failed: {result}")
                outcome[name] = "failed"
            else:
                outcome[name] = "ok"

        if outcome["regular"] == "failed":
            await self._init_activity_page()
        logger.debug(f"Intensive activity completed: {outcome}")
        return outcome

    async def force_idle_activity(self) -> Dict[str, str]:
        """Run an intensive activity burst now."""
        if not self.pool.is_ready or not self.session.token:
            raise UpstreamUnavailable("Browser or token not available")

        logger.info("Forcing idle activity")
        outcome = await self._intensive_activity()
        self._mark_activity()
        return outcome

    # ------------------------------------------------------------------
    # Job 3: heartbeat
    # ------------------------------------------------------------------

    async def heartbeat(self):
        """Short authenticated probe; 401/403 invalidates the session at once."""
        if not self.pool.is_ready or not self.session.token:
            return
        self.run_counts["heartbeat"] += 1

        url = self.session.probe_url(GENERAL_PATH, self.portal.heartbeat_subject_id)
        seen = self.session.version
        try:
            response = await self.http.get(url, headers=self.session.auth_headers, timeout=3.0)
        except PortalRequestError as e:
            logger.debug(f"Heartbeat failed (not critical): {e}")
            response = None

        if response is not None:
            if response.is_auth_error:
                logger.warning(f"Session expired according to heartbeat (status={response.status})")
                self.session.invalidate(f"heartbeat_{response.status}", version=seen)
            else:
                logger.debug("Heartbeat ok")

        page = self.activity_page
        if page is not None and not page.is_closed():
            try:
                await page.evaluate("() => document.dispatchEvent(new Event('mousemove'))")
            except PlaywrightError as e:
                logger.debug(f"Heartbeat page activity failed: {e}")

    # ------------------------------------------------------------------
    # Job 4: real query
    # ------------------------------------------------------------------

    def next_synthetic_subject(self) -> str:
        subject_id = SYNTHETIC_SUBJECT_IDS[self._subject_index]
        self._subject_index = (self._subject_index + 1) % len(SYNTHETIC_SUBJECT_IDS)
        return subject_id

    async def real_query(self):
        """Load a real lookup page and watch how the portal API answers."""
        if not self.pool.is_ready or not self.session.token or self._activity_running:
            return
        self.run_counts["real_query"] += 1

        confirmed = asyncio.Event()
        api_host = self.portal.api_host
        seen = self.session.version

        def on_response(response):
            if api_host not in response.url:
                return
            if response.status == 200:
                confirmed.set()
            elif response.status in (401, 403):
                logger.warning(f"Session expired according to real query (status={response.status})")
                self.session.invalidate(f"real_query_{response.status}", version=seen)
                confirmed.set()

        page = None
        try:
            page = await self.pool.new_page()
            page.set_default_timeout(10000)
            page.on("response", on_response)

            subject_id = self.next_synthetic_subject()
            await page.goto(
                f"{self.portal.base_url}/consultation/{subject_id}/client",
                wait_until="domcontentloaded",
                timeout=10000
            )
            await self._pause(0.8)
            await page.evaluate("() => window.scrollBy(0, 150)")
            await self._pause(0.4)

            try:
                await asyncio.wait_for(confirmed.wait(), timeout=self.real_query_wait)
            except asyncio.TimeoutError:
                logger.debug("Real query saw no API response in time")
        except (PlaywrightError, UpstreamUnavailable) as e:
            logger.debug(f"Error in real query (not critical): {e}")
        finally:
            if page is not None:
                await self.pool.close_page(page)

    # ------------------------------------------------------------------

    @property
    def stats(self) -> Dict[str, Any]:
        return {
            "is_active": self.is_active,
            "is_idle": self.is_idle,
            "seconds_since_last_request": int(self.clock() - self.last_request_time),
            "seconds_since_last_activity": int(self.clock() - self.last_activity_time),
            "last_activity_at": self.last_activity_at.isoformat() if self.last_activity_at else None,
            "token_minutes_left": max(self.session.minutes_left, 0),
            "activity_page_ready": self.activity_page is not None,
            "runs": dict(self.run_counts),
        }
