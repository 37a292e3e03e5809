"""
Health checker service for system monitoring.
"""

import logging
from typing import Dict, Any, Optional
from datetime import datetime

from subject_lookup import __version__
from subject_lookup.models.session import SessionStatus
from subject_lookup.services.browser_pool import BrowserPool
from subject_lookup.services.keepalive import KeepAliveScheduler
from subject_lookup.services.relatives_resolver import RelativesResolver
from subject_lookup.services.session_manager import SessionManager

logger = logging.getLogger(__name__)


class ComponentHealth:
    """Health status for a component."""

    def __init__(self, status: str, message: Optional[str] = None, details: Optional[Dict] = None):
        self.status = status  # healthy, degraded, unhealthy
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        result = {'status': self.status}
        if self.message:
            result['message'] = self.message
        if self.details:
            result['details'] = self.details
        return result


class HealthChecker:
    """
    Component health for the lookup gateway.

    Reads local state only; it never calls the portal, so it is safe to
    poll from a load balancer.
    """

    def __init__(
        self,
        pool: Optional[BrowserPool] = None,
        session: Optional[SessionManager] = None,
        keepalive: Optional[KeepAliveScheduler] = None,
        relatives: Optional[RelativesResolver] = None
    ):
        self.pool = pool
        self.session = session
        self.keepalive = keepalive
        self.relatives = relatives

    async def check_health(self) -> Dict[str, Any]:
        """
        Perform comprehensive health check.

        Returns:
            Dictionary with overall status and component statuses
        """
        components = {
            'browser': self.check_browser().to_dict(),
            'session': self.check_session().to_dict(),
            'scheduler': self.check_scheduler().to_dict(),
            'relatives_cache': self.check_relatives_cache().to_dict(),
        }

        return {
            'status': self._determine_overall_status(components),
            'timestamp': datetime.utcnow().isoformat(),
            'version': __version__,
            'components': components
        }

    def check_browser(self) -> ComponentHealth:
        """Check that the shared browser is up."""
        if self.pool is None:
            return ComponentHealth('unhealthy', 'Browser pool not configured')

        stats = self.pool.stats
        if not self.pool.is_ready:
            return ComponentHealth('unhealthy', 'Browser not available', stats)
        if stats['queued_requests'] > 0:
            return ComponentHealth('degraded', 'Lookups are queueing for a slot', stats)
        return ComponentHealth('healthy', 'Browser ready', stats)

    def check_session(self) -> ComponentHealth:
        """Check the portal session from local state."""
        if self.session is None:
            return ComponentHealth('unhealthy', 'Session manager not configured')

        details = {
            'status': self.session.status.value,
            'minutes_left': max(self.session.minutes_left, 0),
            'version': self.session.version,
        }
        status = self.session.status
        if status == SessionStatus.AUTHENTICATED and self.session.is_valid:
            return ComponentHealth('healthy', 'Session authenticated', details)
        if status == SessionStatus.LOGGING_IN:
            return ComponentHealth('degraded', 'Login in progress', details)
        # The next lookup logs in again
        return ComponentHealth('degraded', 'No valid session token', details)

    def check_scheduler(self) -> ComponentHealth:
        """Check that the keep-alive jobs are running."""
        if self.keepalive is None:
            return ComponentHealth('degraded', 'Keep-alive scheduler not configured')
        if not self.keepalive.is_active:
            return ComponentHealth('degraded', 'Keep-alive scheduler stopped', self.keepalive.stats)
        return ComponentHealth('healthy', 'Keep-alive scheduler running')

    def check_relatives_cache(self) -> ComponentHealth:
        if self.relatives is None:
            return ComponentHealth('degraded', 'Relatives resolver not configured')
        stats = self.relatives.cache_stats()
        return ComponentHealth(
            'healthy',
            details={
                'cache_size': stats['cache']['size'],
                'failed_size': stats['failed_attempts']['size'],
                'hits': stats['hits'],
                'misses': stats['misses'],
            }
        )

    def _determine_overall_status(self, components: Dict[str, Dict]) -> str:
        """
        Determine overall system status based on component statuses.

        Args:
            components: Dictionary of component health statuses

        Returns:
            Overall status (healthy, degraded, unhealthy)
        """
        statuses = [comp['status'] for comp in components.values()]

        if 'unhealthy' in statuses:
            return 'unhealthy'
        if 'degraded' in statuses:
            return 'degraded'
        return 'healthy'
