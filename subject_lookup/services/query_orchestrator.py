"""
Per-request lookup orchestration.

One lookup goes ADMISSION_WAIT -> TOKEN_ENSURE -> NAVIGATE and then either
succeeds, restarts after a session loss, or times out with partial data,
before the relatives top-up and the return to the caller. Callers only see
a failure once every retry is used up.
"""

import asyncio
import itertools
import logging
import time
from datetime import datetime
from typing import Any, Callable, Dict, Optional, Tuple

from playwright.async_api import Error as PlaywrightError, Page, TimeoutError as PlaywrightTimeoutError

from subject_lookup.api.monitoring.metrics import record_lookup, record_lookup_retry
from subject_lookup.core.config import PortalConfig, SessionConfig
from subject_lookup.exceptions import (
    AuthExpired,
    LookupFailed,
    NavigationTimeout,
    PartialData,
    QueueTimeout,
    SubjectLookupError,
    UpstreamUnavailable,
    is_session_error,
)
from subject_lookup.models.capture import SubjectCapture, match_category
from subject_lookup.models.relatives import RelativesResult
from subject_lookup.services.browser_pool import BrowserPool
from subject_lookup.services.keepalive import KeepAliveScheduler
from subject_lookup.services.relatives_resolver import RelativesResolver
from subject_lookup.services.relatives_shapes import merge_relatives
from subject_lookup.services.retry import retry_fixed
from subject_lookup.services.session_manager import SessionManager

logger = logging.getLogger(__name__)


class QueryOrchestrator:
    """Serves subject lookups end to end over the shared session."""

    def __init__(
        self,
        pool: BrowserPool,
        session: SessionManager,
        relatives: RelativesResolver,
        keepalive: Optional[KeepAliveScheduler] = None,
        portal_config: Optional[PortalConfig] = None,
        session_config: Optional[SessionConfig] = None,
        clock: Callable[[], float] = time.monotonic,
        data_wait: float = 3.5,
        scroll_pause: float = 0.5,
        restart_delay: float = 1.0,
        session_retry_delay: float = 1.5,
        navigation_retry_delay: float = 1.0,
        health_sample_interval: float = 120.0,
        renew_margin: float = 300.0
    ):
        """
        Initialize the orchestrator.

        Args:
            pool: Browser pool (admission slots and pages)
            session: Session manager
            relatives: Relatives resolver for the top-up
            keepalive: Scheduler notified of caller activity (optional)
            portal_config: Portal endpoints
            session_config: Retry bound (`max_retries`)
            clock: Monotonic time source in seconds
            data_wait: Seconds to wait for the critical categories
            scroll_pause: Pause between scrolling down and back up
            restart_delay: Wait before restarting after a session loss
            session_retry_delay: Wait before retrying after a session error
            navigation_retry_delay: Wait between navigation attempts
            health_sample_interval: Minimum seconds between health checks
            renew_margin: Renew the token when fewer seconds than this remain
        """
        self.pool = pool
        self.session = session
        self.relatives = relatives
        self.keepalive = keepalive
        self.portal = portal_config or PortalConfig()
        settings = session_config or SessionConfig()
        self.max_retries = settings.max_retries
        self.clock = clock
        self.data_wait = data_wait
        self.scroll_pause = scroll_pause
        self.restart_delay = restart_delay
        self.session_retry_delay = session_retry_delay
        self.navigation_retry_delay = navigation_retry_delay
        self.health_sample_interval = health_sample_interval
        self.renew_margin = renew_margin

        self.total_requests = 0
        self.successful_requests = 0
        self.failed_requests = 0
        self.partial_requests = 0
        self.average_response_time = 0.0
        self.last_request_time = clock()
        self.concurrent_requests: Dict[str, Dict[str, Any]] = {}
        self._last_health_check: Optional[float] = None
        self._sequence = itertools.count(1)

    async def scrape_subject(self, subject_id: str) -> SubjectCapture:
        """
        Look up one subject.

        Args:
            subject_id: National id of the subject

        Returns:
            SubjectCapture (with `partial=True` if critical data never arrived)

        Raises:
            QueueTimeout: No admission slot within the queue timeout
            UpstreamUnavailable: The browser is down
            LookupFailed: Any other failure, once retries are exhausted
        """
        started = self.clock()
        request_key = f"{subject_id}-{next(self._sequence)}"

        self.total_requests += 1
        self.last_request_time = started
        if self.keepalive is not None:
            self.keepalive.record_request()
        self.concurrent_requests[request_key] = {
            "subject_id": subject_id,
            "started_at": datetime.utcnow().isoformat(),
        }
        logger.info(f"Lookup started for {subject_id}")

        try:
            capture = await self._run_with_retries(subject_id, started)
        except QueueTimeout:
            self.failed_requests += 1
            record_lookup('queue_timeout')
            logger.warning(f"Lookup for {subject_id} rejected: admission queue timeout")
            raise
        except SubjectLookupError:
            self.failed_requests += 1
            record_lookup('failed', self.clock() - started)
            raise
        finally:
            self.concurrent_requests.pop(request_key, None)

        elapsed = self.clock() - started
        self.successful_requests += 1
        if capture.partial:
            self.partial_requests += 1
        self._update_average_response_time(elapsed * 1000)
        record_lookup('partial' if capture.partial else 'success', elapsed)
        logger.info(
            f"Lookup completed for {subject_id} in {int(elapsed * 1000)}ms "
            f"(attempts={capture.attempts}, partial={capture.partial})"
        )
        return capture

    async def _run_with_retries(self, subject_id: str, started: float) -> SubjectCapture:
        attempt = 0
        while True:
            attempt += 1
            try:
                capture, session_lost = await self._attempt(subject_id, attempt)
            except (QueueTimeout, UpstreamUnavailable):
                raise
            except (SubjectLookupError, PlaywrightError) as e:
                elapsed_ms = int((self.clock() - started) * 1000)
                if is_session_error(e) and attempt <= self.max_retries:
                    logger.warning(
                        f"Session error during lookup for {subject_id} "
                        f"(attempt {attempt}/{self.max_retries + 1}, {elapsed_ms}ms), retrying: {e}"
                    )
                    record_lookup_retry()
                    await asyncio.sleep(self.session_retry_delay)
                    continue

                logger.error(
                    f"Lookup failed for {subject_id} "
                    f"(attempt {attempt}/{self.max_retries + 1}, {elapsed_ms}ms): {e}"
                )
                if isinstance(e, PlaywrightError) and not self.pool.is_ready:
                    raise UpstreamUnavailable("Browser is not available") from e
                raise LookupFailed("Lookup failed") from e

            if not session_lost:
                return capture

            if attempt <= self.max_retries:
                logger.warning(
                    f"Session expired during lookup for {subject_id}, restarting "
                    f"(attempt {attempt}/{self.max_retries + 1})"
                )
                record_lookup_retry()
                await asyncio.sleep(self.restart_delay)
                continue

            self._mark_partial(capture, attempt)
            return capture

    async def _attempt(self, subject_id: str, attempt: int) -> Tuple[SubjectCapture, bool]:
        """
        One navigation attempt while holding a slot and a page.

        Returns:
            (capture, session_lost) where session_lost asks for a restart
        """
        await self.pool.acquire_slot()
        page = None
        seen = None
        try:
            await self._ensure_token()
            seen = self.session.version
            page = await self.pool.borrow_page()

            capture = SubjectCapture(subject_id=subject_id, attempts=attempt)
            await self._capture(page, capture, seen)

            if not capture.has_critical():
                if not self.session.token or self.session.seconds_left < self.session.expiry_margin:
                    self.session.invalidate("lookup_missing_data", version=seen)
                    return capture, True
                self._mark_partial(capture, attempt)

            await self._top_up_relatives(capture)
            return capture, False
        except (SubjectLookupError, PlaywrightError) as e:
            if seen is not None and is_session_error(e):
                self.session.invalidate("lookup_session_error", version=seen)
            raise
        finally:
            if page is not None:
                await self.pool.return_page(page)
            self.pool.release_slot()

    async def _ensure_token(self):
        """Log in when the token is missing or close to expiry; sample health now and then."""
        if not self.session.token or self.session.seconds_left < self.renew_margin:
            reason = "no token" if not self.session.token else "near expiry"
            logger.info(f"Renewing token before lookup ({reason})")
            await self.session.login()
        else:
            now = self.clock()
            if self._last_health_check is None or now - self._last_health_check > self.health_sample_interval:
                self._last_health_check = now
                if not await self.session.check_health():
                    logger.warning("Unhealthy session detected before lookup, renewing")
                    await self.session.login()

        if not self.session.token:
            raise AuthExpired("No valid token available")

    async def _capture(self, page: Page, capture: SubjectCapture, seen: int):
        """Navigate to the lookup page and harvest the portal's own API responses."""
        data_ready = asyncio.Event()
        api_host = self.portal.api_host

        async def on_response(response):
            status = response.status
            if status in (401, 403):
                logger.warning(f"Auth error during lookup for {capture.subject_id} (status={status})")
                self.session.invalidate(f"lookup_{status}", version=seen)
                data_ready.set()
                return

            category = match_category(response.url, api_host)
            if category is None:
                return
            try:
                payload = await response.json()
            except (PlaywrightError, ValueError) as e:
                logger.debug(f"Unreadable {category} response for {capture.subject_id}: {e}")
                return

            capture.record(category, payload)
            logger.debug(f"Captured {category} for {capture.subject_id}")
            if capture.has_critical():
                data_ready.set()

        page.on("response", on_response)
        try:
            await self._navigate(page, capture.subject_id)
            try:
                await asyncio.wait_for(data_ready.wait(), timeout=self.data_wait)
            except asyncio.TimeoutError:
                logger.debug(f"Data wait elapsed for {capture.subject_id}: missing {capture.missing_critical()}")
        finally:
            page.remove_listener("response", on_response)

    async def _navigate(self, page: Page, subject_id: str):
        url = f"{self.portal.base_url}/consultation/{subject_id}/client"
        try:
            await retry_fixed(
                page.goto, url,
                retries=1,
                delay=self.navigation_retry_delay,
                exceptions=(PlaywrightError,),
                label="lookup navigation",
                wait_until="domcontentloaded",
                timeout=20000
            )
        except PlaywrightTimeoutError as e:
            raise NavigationTimeout("Portal did not load the lookup page in time") from e

        # Scrolling triggers the lazily loaded sections
        try:
            await page.evaluate("() => window.scrollTo(0, document.body.scrollHeight)")
            await asyncio.sleep(self.scroll_pause)
            await page.evaluate("() => window.scrollTo(0, 0)")
        except PlaywrightError as e:
            logger.debug(f"Scroll failed for {subject_id}: {e}")

    async def _top_up_relatives(self, capture: SubjectCapture):
        existing = RelativesResult.from_payload(capture.payloads["family"])
        if capture.received["family"] or existing.total_members > 0:
            return

        try:
            resolved = await self.relatives.resolve(capture.subject_id)
        except SubjectLookupError as e:
            logger.error(f"Relatives top-up failed for {capture.subject_id}: {e}")
            return

        if resolved.total_members:
            capture.payloads["family"] = merge_relatives(capture.payloads["family"], resolved)
            capture.received["family"] = True
            logger.info(f"Relatives top-up for {capture.subject_id}: {resolved.total_members} members")

    def _mark_partial(self, capture: SubjectCapture, attempt: int):
        capture.partial = True
        warning = PartialData(
            f"Critical categories missing for {capture.subject_id}",
            details={"missing": capture.missing_critical(), "attempt": attempt}
        )
        logger.warning(f"{warning.message}: {warning.details}")

    def _update_average_response_time(self, response_ms: float):
        n = self.successful_requests
        self.average_response_time = (self.average_response_time * (n - 1) + response_ms) / n

    @property
    def statistics(self) -> Dict[str, Any]:
        total = self.total_requests
        success_rate = (self.successful_requests / total * 100) if total else 0.0
        return {
            "total_requests": total,
            "successful_requests": self.successful_requests,
            "failed_requests": self.failed_requests,
            "partial_requests": self.partial_requests,
            "success_rate": f"{success_rate:.2f}%",
            "average_response_time_ms": round(self.average_response_time),
            "in_flight": len(self.concurrent_requests),
            "concurrent_requests": list(self.concurrent_requests.values()),
            "seconds_since_last_request": int(self.clock() - self.last_request_time),
            "pool": self.pool.stats,
            "session_minutes_left": max(self.session.minutes_left, 0),
        }
