"""
Owner of the single shared portal session: login, health checks and auth headers.
"""

import asyncio
import logging
import time
from typing import Any, Callable, Dict, Optional

from playwright.async_api import Error as PlaywrightError

from subject_lookup.api.monitoring.metrics import record_login, record_session_invalidation
from subject_lookup.core.config import PortalConfig, SessionConfig
from subject_lookup.core.sentry_config import add_breadcrumb
from subject_lookup.exceptions import AuthExpired, LoginFailed, PortalRequestError, UpstreamUnavailable
from subject_lookup.models.session import SessionState, SessionStatus
from subject_lookup.services.browser_pool import BrowserPool
from subject_lookup.services.portal_client import PortalApiClient, PortalResponse
from subject_lookup.services.retry import retry_fixed

logger = logging.getLogger(__name__)

USERNAME_SELECTOR = "input#mat-input-0"
PASSWORD_SELECTOR = "input#mat-input-1"
SUBMIT_SELECTOR = "button#kt_login_signin_submit"

GENERAL_PATH = "/ds/crn/client/info/general/new"
CONTACT_PATH = "/ds/crn/client/info/contact"
VEHICLE_PATH = "/ds/crm/client/vehicle"

AUTH_EXPIRY_INDICATORS = ("unauthorized", "expired", "invalid token", "authentication required")


class SessionManager:
    """
    Single source of truth for the portal bearer token.

    State machine: UNAUTHENTICATED -> LOGGING_IN -> AUTHENTICATED ->
    UNAUTHENTICATED. Only `_store_token` and `invalidate` change the token.

    Health checks lean towards "healthy" on inconclusive outcomes to keep
    login churn against the portal low.
    """

    def __init__(
        self,
        pool: BrowserPool,
        http: PortalApiClient,
        portal_config: Optional[PortalConfig] = None,
        session_config: Optional[SessionConfig] = None,
        clock: Callable[[], float] = time.monotonic,
        expiry_margin: float = 120.0,
        login_poll_interval: float = 0.5,
        login_retry_delay: float = 2.0,
        token_capture_timeout: float = 8.0
    ):
        """
        Initialize the session manager.

        Args:
            pool: Browser pool used for the login page
            http: Portal API client used for health probes
            portal_config: Portal endpoints and credentials
            session_config: Session lifetime settings
            clock: Monotonic time source in seconds
            expiry_margin: Seconds before expiry at which the token counts as stale
            login_poll_interval: Poll interval while waiting on another login
            login_retry_delay: Fixed backoff between login attempts
            token_capture_timeout: Seconds to wait for the login response
        """
        self.pool = pool
        self.http = http
        self.portal = portal_config or PortalConfig()
        self.settings = session_config or SessionConfig()
        self.clock = clock
        self.token_lifetime = float(self.settings.token_lifetime)
        self.expiry_margin = expiry_margin
        self.login_poll_interval = login_poll_interval
        self.login_retry_delay = login_retry_delay
        self.token_capture_timeout = token_capture_timeout

        self.state = SessionState()
        self.login_count = 0
        self.last_login_at: Optional[float] = None

    # ------------------------------------------------------------------
    # Read-only views
    # ------------------------------------------------------------------

    @property
    def token(self) -> str:
        return self.state.token

    @property
    def version(self) -> int:
        return self.state.version

    @property
    def status(self) -> SessionStatus:
        return self.state.status

    @property
    def is_logging_in(self) -> bool:
        return self.state.logging_in

    @property
    def is_valid(self) -> bool:
        return self.state.is_valid(self.clock())

    @property
    def seconds_left(self) -> float:
        return self.state.seconds_left(self.clock())

    @property
    def minutes_left(self) -> int:
        return int(self.seconds_left // 60)

    @property
    def auth_headers(self) -> Dict[str, str]:
        return {
            "Accept": "application/json",
            "Authorization": f"Bearer {self.state.token}",
            "User-Agent": self.portal.user_agent,
            "Referer": self.portal.base_url,
            "X-Token-Version": str(self.state.version),
        }

    def probe_url(self, path: str = GENERAL_PATH, subject_id: Optional[str] = None) -> str:
        return f"{self.portal.api_url}{path}?dni={subject_id or self.portal.probe_subject_id}"

    # ------------------------------------------------------------------
    # Login
    # ------------------------------------------------------------------

    async def wait_for_login(self, max_polls: int = 30) -> bool:
        """
        Wait for an in-flight login to finish.

        Returns:
            True if no login is in progress any more
        """
        polls = 0
        while self.state.logging_in and polls < max_polls:
            await asyncio.sleep(self.login_poll_interval)
            polls += 1
        return not self.state.logging_in

    async def login(self):
        """
        Log in through the portal's login page and capture the bearer token.

        Concurrent callers share one login: a caller arriving while a login
        is in flight waits for it instead of starting another.

        Raises:
            LoginFailed: When no token was captured after all retries
            AuthExpired: When another login is still running after the wait
        """
        if self.state.logging_in:
            logger.info("Login in progress, waiting for it")
            await self.wait_for_login()
            if self.state.token:
                logger.info("Token obtained by concurrent login")
                return
            if self.state.logging_in:
                raise AuthExpired("Login still in progress")

        self.state.logging_in = True
        logger.info(f"Starting portal login (user={self.portal.username})")
        add_breadcrumb("portal login started", category="session")

        try:
            await retry_fixed(
                self._login_once,
                retries=2,
                delay=self.login_retry_delay,
                exceptions=(LoginFailed, PlaywrightError, UpstreamUnavailable),
                label="portal login"
            )
        except (PlaywrightError, UpstreamUnavailable) as e:
            record_login(False)
            raise LoginFailed(f"Login failed: {e}") from e
        except LoginFailed:
            record_login(False)
            raise
        finally:
            self.state.logging_in = False

    async def _login_once(self):
        page = await self.pool.new_page()
        captured = asyncio.Event()
        login_marker = f"{self.portal.api_host}/login"

        async def on_response(response):
            if login_marker not in response.url:
                return
            try:
                data = await response.json()
            except (PlaywrightError, ValueError) as e:
                logger.error(f"Error reading login response: {e}")
                return
            token = data.get("accessToken") if isinstance(data, dict) else None
            if token:
                self._store_token(token)
                captured.set()

        page.on("response", on_response)
        try:
            await page.goto(
                f"{self.portal.base_url}/auth/login",
                wait_until="domcontentloaded",
                timeout=20000
            )
            await page.wait_for_selector(USERNAME_SELECTOR, timeout=8000)
            await page.fill(USERNAME_SELECTOR, self.portal.username)
            await page.fill(PASSWORD_SELECTOR, self.portal.password)
            await page.click(SUBMIT_SELECTOR)

            try:
                await asyncio.wait_for(captured.wait(), timeout=self.token_capture_timeout)
            except asyncio.TimeoutError:
                raise LoginFailed("Token was not captured from the login response")

            logger.info("Login completed successfully")
        finally:
            await self.pool.close_page(page)

    def _store_token(self, token: str):
        now = self.clock()
        self.state.token = token
        self.state.expires_at = now + self.token_lifetime
        self.state.captured_at = now
        self.state.version += 1
        self.login_count += 1
        self.last_login_at = now
        record_login(True)
        logger.info(
            f"Token captured (version={self.state.version}, "
            f"lifetime={int(self.token_lifetime // 60)} min)"
        )

    def invalidate(self, reason: str, version: Optional[int] = None):
        """
        Empty the session. The next caller that needs a token logs in.

        Args:
            reason: Short label for logs and metrics
            version: Token version the failing call was made with. When a
                newer token has been issued since, the call is ignored.
        """
        if not self.state.token:
            return
        if version is not None and version != self.state.version:
            logger.info(
                f"Ignoring {reason} for token version {version} "
                f"(current version {self.state.version})"
            )
            return
        logger.warning(f"Invalidating portal session: {reason}")
        self.state.clear()
        record_session_invalidation(reason)
        add_breadcrumb("session invalidated", category="session", level="warning", data={"reason": reason})

    async def force_refresh(self):
        """Drop the current token and log in again."""
        self.invalidate("forced_refresh")
        await self.login()

    async def fresh_headers(self) -> Dict[str, str]:
        """Auth headers for an outgoing call, logging in first if the token is stale."""
        if not self.state.token or self.seconds_left < self.expiry_margin:
            await self.login()
        return self.auth_headers

    # ------------------------------------------------------------------
    # Health
    # ------------------------------------------------------------------

    async def check_health(self) -> bool:
        """
        Three-tier health check: local clock, API probe, clock fallback.

        Returns:
            True if the session should be usable
        """
        if not self.state.token or self.state.logging_in:
            return False

        left = self.seconds_left
        if left < self.expiry_margin:
            logger.warning(f"Token close to local expiry ({int(left // 60)} min left)")
            self.invalidate("local_expiry")
            return False

        seen = self.state.version
        try:
            response = await self.http.get(self.probe_url(), headers=self.auth_headers, timeout=8.0)
        except PortalRequestError as e:
            if left > 600:
                logger.debug(f"Health probe failed but token should be valid: {e}")
                return True
            logger.warning(f"Health probe failed and token near expiry, renewing: {e}")
            self.invalidate("probe_network_error", version=seen)
            return False

        if response.is_auth_error:
            logger.warning(f"Session expired according to API (status={response.status})")
            self.invalidate(f"probe_{response.status}", version=seen)
            return False

        if response.ok:
            logger.debug("Session confirmed healthy by API")
            return True

        body = response.text.lower()
        if any(indicator in body for indicator in AUTH_EXPIRY_INDICATORS):
            logger.warning("Session expiry detected in probe response body")
            self.invalidate("probe_body", version=seen)
            return False

        logger.debug(f"Inconclusive health probe (status={response.status}), assuming valid")
        return True

    async def _probe(self, url: str) -> Optional[PortalResponse]:
        try:
            return await self.http.get(url, headers=self.auth_headers, timeout=4.0)
        except PortalRequestError as e:
            logger.debug(f"Network error probing {url}: {e}")
            return None

    async def check_health_strict(self) -> bool:
        """
        Probe several endpoints in parallel.

        Expiry is only declared when every endpoint that answered reported an
        auth error. Server, client and network errors alone never invalidate.
        """
        if not self.state.token or self.state.logging_in:
            return False

        seen = self.state.version
        urls = [self.probe_url(path) for path in (GENERAL_PATH, CONTACT_PATH, VEHICLE_PATH)]
        responses = await asyncio.gather(*(self._probe(url) for url in urls))

        total = len(responses)
        network_errors = sum(1 for r in responses if r is None)
        auth_errors = sum(1 for r in responses if r is not None and r.is_auth_error)
        successes = sum(1 for r in responses if r is not None and r.ok)
        other_errors = total - network_errors - auth_errors - successes

        if successes:
            return True

        if auth_errors and auth_errors + network_errors == total:
            logger.warning(
                f"Session expiry confirmed by {auth_errors}/{total} endpoints "
                f"({network_errors} network errors)"
            )
            self.invalidate("strict_probe_auth", version=seen)
            return False

        if auth_errors:
            if self.seconds_left > 300:
                logger.debug("Partial auth errors but token should be valid, assuming transient")
                return True
            self.invalidate("strict_probe_mixed", version=seen)
            return False

        if other_errors or network_errors:
            return True

        return self.seconds_left > 300

    async def is_session_healthy(self) -> bool:
        return await self.check_health()

    @property
    def stats(self) -> Dict[str, Any]:
        return {
            "status": self.status.value,
            "has_token": bool(self.state.token),
            "is_valid": self.is_valid,
            "minutes_left": max(self.minutes_left, 0),
            "token_version": self.state.version,
            "is_logging_in": self.state.logging_in,
            "login_count": self.login_count,
        }
