"""
Construction and lifecycle of the lookup services.

One `LookupServices` instance owns the shared browser, the session and every
component built on them. The FastAPI lifespan starts it and stops it.
"""

import asyncio
import logging
from typing import Any, Dict, Optional

from subject_lookup.core.config import Config
from subject_lookup.exceptions import SubjectLookupError
from subject_lookup.services.browser_pool import BrowserPool
from subject_lookup.services.health_checker import HealthChecker
from subject_lookup.services.keepalive import KeepAliveScheduler
from subject_lookup.services.portal_client import PortalApiClient
from subject_lookup.services.query_orchestrator import QueryOrchestrator
from subject_lookup.services.relatives_resolver import RelativesResolver
from subject_lookup.services.session_manager import SessionManager

logger = logging.getLogger(__name__)


class LookupServices:
    """Owns and wires the gateway components."""

    def __init__(
        self,
        config: Config,
        pool: BrowserPool,
        http: PortalApiClient,
        session: SessionManager,
        relatives: RelativesResolver,
        keepalive: KeepAliveScheduler,
        orchestrator: QueryOrchestrator
    ):
        self.config = config
        self.pool = pool
        self.http = http
        self.session = session
        self.relatives = relatives
        self.keepalive = keepalive
        self.orchestrator = orchestrator
        self.health = HealthChecker(pool, session, keepalive, relatives)
        self._stats_task: Optional[asyncio.Task] = None

    @classmethod
    def from_config(cls, config: Config) -> "LookupServices":
        """Build every component from configuration."""
        pool = BrowserPool(config.browser, user_agent=config.portal.user_agent)
        http = PortalApiClient()
        session = SessionManager(pool, http, config.portal, config.session)
        relatives = RelativesResolver(session, http, config.portal, config.cache)
        keepalive = KeepAliveScheduler(pool, session, http, config.portal, config.session)
        orchestrator = QueryOrchestrator(
            pool, session, relatives, keepalive,
            portal_config=config.portal,
            session_config=config.session
        )
        return cls(config, pool, http, session, relatives, keepalive, orchestrator)

    async def start(self):
        """
        Launch the browser, log in and start the keep-alive jobs.

        A failed initial login is not fatal: the first lookup or the token
        maintenance job logs in again.
        """
        logger.info("Starting lookup services")
        await self.pool.start()

        if self.pool.is_ready:
            try:
                await self.session.login()
            except SubjectLookupError as e:
                logger.error(f"Initial login failed, will retry on demand: {e}")

        self.keepalive.start()
        self._stats_task = asyncio.create_task(self._log_stats_periodically())
        logger.info("Lookup services started")

    async def stop(self):
        """Stop the jobs and release the browser and HTTP session."""
        logger.info("Stopping lookup services")
        if self._stats_task and not self._stats_task.done():
            self._stats_task.cancel()
            try:
                await self._stats_task
            except asyncio.CancelledError:
                pass
        self._stats_task = None

        await self.keepalive.stop()
        await self.pool.close()
        await self.http.close()
        logger.info("Lookup services stopped")

    async def _log_stats_periodically(self):
        interval = self.config.monitoring.stats_log_interval
        while True:
            await asyncio.sleep(interval)
            self.log_stats()

    def log_stats(self) -> bool:
        """Log a one-line summary when lookups have been served."""
        stats = self.orchestrator.statistics
        if not stats["total_requests"]:
            return False
        logger.info(
            f"Stats: {stats['total_requests']} lookups, "
            f"{stats['success_rate']} success, "
            f"avg {stats['average_response_time_ms']}ms, "
            f"{stats['in_flight']} in flight, "
            f"{self.pool.idle_count}/{self.pool.pool_size} idle pages, "
            f"session {self.session.minutes_left}min left"
        )
        return True

    def system_status(self) -> Dict[str, Any]:
        return {
            "orchestrator": self.orchestrator.statistics,
            "pool": self.pool.stats,
            "session": self.session.stats,
            "keepalive": self.keepalive.stats,
            "relatives_cache": self.relatives.cache_stats(),
        }
