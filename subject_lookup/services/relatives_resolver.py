"""
Resolution of a subject's associated persons across the portal's relatives endpoints.
"""

import asyncio
import logging
import time
from typing import Any, Callable, Dict, List, Optional, Tuple

from subject_lookup.api.monitoring.metrics import record_relatives_cache
from subject_lookup.core.config import CacheConfig, PortalConfig
from subject_lookup.exceptions import AuthExpired, PortalRequestError
from subject_lookup.models.relatives import FailedAttemptRecord, FamilyCacheEntry, RelativesResult
from subject_lookup.services.portal_client import PortalApiClient, PortalResponse
from subject_lookup.services.relatives_shapes import deduplicate, extract_relatives
from subject_lookup.services.retry import ExponentialBackoff, retry_async
from subject_lookup.services.session_manager import SessionManager

logger = logging.getLogger(__name__)

PRIMARY_PATHS = (
    "/ds/crn/client/info/family/new",
    "/ds/crn/client/info/family",
    "/ds/crm/client/family",
    "/ds/crn/client/genoma",
    "/ds/crn/client/info/relatives",
    "/ds/crm/client/relatives",
)

ALTERNATIVE_PATHS = (
    "/ds/crn/client/family",
    "/ds/crm/client/info/family",
    "/ds/crn/client/relatives/new",
    "/ds/crm/client/genoma",
    "/ds/crn/client/info/parentesco",
    "/ds/crm/client/parentesco",
)

STALE_RECORD_AGE = 300.0


class RelativesResolver:
    """
    Multi-pass relatives lookup with a TTL cache and failed-attempt cooldown.

    The first pass hits the primary endpoints, which also makes the portal
    populate its data lazily. Thin results trigger a delayed second pass over
    primary and alternative endpoints, and an empty result a third one.
    """

    def __init__(
        self,
        session: SessionManager,
        http: PortalApiClient,
        portal_config: Optional[PortalConfig] = None,
        cache_config: Optional[CacheConfig] = None,
        clock: Callable[[], float] = time.monotonic,
        second_pass_delay: float = 2.0,
        third_pass_delay: float = 3.0,
        endpoint_pauses: Tuple[float, float] = (0.15, 0.3),
        backoff: Optional[ExponentialBackoff] = None,
        fetch_retries: int = 3
    ):
        """
        Initialize the resolver.

        Args:
            session: Source of fresh auth headers
            http: Portal API client
            portal_config: Portal endpoints
            cache_config: Cache TTL and failed-attempt cooldown
            clock: Monotonic time source in seconds
            second_pass_delay: Wait before the second pass
            third_pass_delay: Wait before the third pass
            endpoint_pauses: Pause between endpoints on the first and later passes
            backoff: Backoff between retries of one endpoint (0.5s, 1s, 2s)
            fetch_retries: Retries per endpoint on transport errors
        """
        self.session = session
        self.http = http
        self.portal = portal_config or PortalConfig()
        cache_config = cache_config or CacheConfig()
        self.ttl = float(cache_config.family_ttl)
        self.failed_cooldown = float(cache_config.failed_attempt_cooldown)
        self.clock = clock
        self.second_pass_delay = second_pass_delay
        self.third_pass_delay = third_pass_delay
        self.endpoint_pauses = endpoint_pauses
        self.backoff = backoff or ExponentialBackoff(base_delay=0.5, max_delay=2.0)
        self.fetch_retries = fetch_retries

        self._cache: Dict[str, FamilyCacheEntry] = {}
        self._failed: Dict[str, FailedAttemptRecord] = {}
        self.cache_hits = 0
        self.cache_misses = 0

    def _fresh_entry(self, subject_id: str) -> Optional[FamilyCacheEntry]:
        entry = self._cache.get(subject_id)
        if entry and self.clock() - entry.captured_at < self.ttl:
            return entry
        return None

    def is_cached(self, subject_id: str) -> bool:
        return self._fresh_entry(subject_id) is not None

    def _recent_failure(self, subject_id: str) -> Optional[FailedAttemptRecord]:
        record = self._failed.get(subject_id)
        if record and self.clock() - record.failed_at < self.failed_cooldown:
            return record
        return None

    async def resolve(self, subject_id: str) -> RelativesResult:
        """
        Resolve the associated persons of a subject.

        Args:
            subject_id: National id of the subject

        Returns:
            Deduplicated members (empty when nothing was found)
        """
        entry = self._fresh_entry(subject_id)
        if entry:
            self.cache_hits += 1
            record_relatives_cache('hit')
            logger.debug(f"Relatives cache hit for {subject_id}")
            return entry.result.copy()

        if self._recent_failure(subject_id):
            record_relatives_cache('cooldown')
            logger.debug(f"Relatives lookup for {subject_id} failed recently, skipping")
            return RelativesResult()

        self.cache_misses += 1
        record_relatives_cache('miss')
        started = self.clock()

        first = await self._run_pass(subject_id, 1)
        combined = first
        logger.info(f"Relatives pass 1 for {subject_id}: {first.total_members} members")

        if first.total_members < 2:
            await asyncio.sleep(self.second_pass_delay)
            second = await self._run_pass(subject_id, 2)
            logger.info(f"Relatives pass 2 for {subject_id}: {second.total_members} members")

            if second.total_members > first.total_members:
                combined = second
            else:
                combined = first.copy()
                combined.extend(second)
                combined = deduplicate(combined)

        if combined.total_members < 1:
            await asyncio.sleep(self.third_pass_delay)
            third = await self._run_pass(subject_id, 3)
            logger.info(f"Relatives pass 3 for {subject_id}: {third.total_members} members")
            if third.total_members > combined.total_members:
                combined = third

        combined = deduplicate(combined)
        total = combined.total_members
        elapsed_ms = int((self.clock() - started) * 1000)

        if total > 0:
            self._cache[subject_id] = FamilyCacheEntry(result=combined, captured_at=self.clock())
            self._failed.pop(subject_id, None)
            self._sweep()
            logger.info(
                f"Relatives resolved for {subject_id}: {total} members "
                f"{combined.counts()} in {elapsed_ms}ms"
            )
        else:
            self._cache.pop(subject_id, None)
            self._failed[subject_id] = FailedAttemptRecord(failed_at=self.clock(), attempts=3)
            logger.warning(f"No relatives found for {subject_id} after all passes ({elapsed_ms}ms)")

        return combined.copy()

    def _paths_for_pass(self, attempt: int) -> Tuple[str, ...]:
        if attempt == 1:
            return PRIMARY_PATHS
        return PRIMARY_PATHS + ALTERNATIVE_PATHS

    def _url(self, path: str, subject_id: str) -> str:
        return f"{self.portal.api_url}{path}?dni={subject_id}"

    async def _fetch(self, url: str) -> Tuple[int, PortalResponse]:
        headers = await self.session.fresh_headers()
        seen = self.session.version
        headers = {**headers, "Cache-Control": "no-cache", "Pragma": "no-cache"}
        return seen, await self.http.get(url, headers=headers, timeout=10.0)

    async def _run_pass(self, subject_id: str, attempt: int) -> RelativesResult:
        """Query every endpoint of a pass and collect what they return."""
        combined = RelativesResult()
        pause = self.endpoint_pauses[0] if attempt == 1 else self.endpoint_pauses[1]
        successful = 0

        for path in self._paths_for_pass(attempt):
            url = self._url(path, subject_id)
            try:
                seen, response = await retry_async(
                    self._fetch, url,
                    max_retries=self.fetch_retries,
                    backoff=self.backoff,
                    exceptions=(PortalRequestError,),
                    label=f"relatives {path}"
                )
            except PortalRequestError as e:
                logger.debug(f"Relatives endpoint {path} unreachable for {subject_id}: {e}")
                continue
            except AuthExpired as e:
                logger.warning(f"No session for relatives pass {attempt} of {subject_id}: {e}")
                break

            if response.is_auth_error:
                logger.warning(f"Auth error on relatives endpoint {path} (status={response.status})")
                self.session.invalidate(f"relatives_{response.status}", version=seen)
                break

            if response.ok and response.data is not None:
                successful += 1
                combined.extend(extract_relatives(response.data))
            else:
                logger.debug(f"Relatives endpoint {path} answered {response.status}")

            if pause > 0:
                await asyncio.sleep(pause)

        logger.debug(
            f"Relatives pass {attempt} for {subject_id} done: "
            f"{successful} endpoints answered, {combined.total_members} members"
        )
        return combined

    def _sweep(self):
        now = self.clock()
        for subject_id in [k for k, v in self._cache.items() if now - v.captured_at >= self.ttl]:
            del self._cache[subject_id]
        for subject_id in [k for k, v in self._failed.items() if now - v.failed_at > STALE_RECORD_AGE]:
            del self._failed[subject_id]

    async def probe_endpoints(self, subject_id: str) -> Dict[str, Any]:
        """
        Call each primary endpoint once with the current headers and report.

        Diagnostic only: it never logs in and never touches the cache.
        """
        results: List[Dict[str, Any]] = []
        for path in PRIMARY_PATHS:
            report: Dict[str, Any] = {"endpoint": path}
            try:
                response = await self.http.get(
                    self._url(path, subject_id),
                    headers=self.session.auth_headers,
                    timeout=10.0
                )
            except PortalRequestError as e:
                report.update(ok=False, error=str(e))
                results.append(report)
                continue

            data = response.data
            report.update(
                status=response.status,
                ok=response.ok,
                keys=list(data.keys()) if isinstance(data, dict) else [],
                is_array=isinstance(data, list),
                members=extract_relatives(data).total_members if response.ok else 0
            )
            results.append(report)

        return {
            "subject_id": subject_id,
            "token_valid": self.session.is_valid,
            "endpoints": results,
        }

    def force_retry(self, subject_id: str):
        """Forget the cache entry and failed record of one subject."""
        self._cache.pop(subject_id, None)
        self._failed.pop(subject_id, None)
        logger.info(f"Relatives cache and failed attempts cleared for {subject_id}")

    def clear_cache(self) -> Dict[str, int]:
        cleared = {"cache_size": len(self._cache), "failed_size": len(self._failed)}
        self._cache.clear()
        self._failed.clear()
        logger.info(f"Relatives cache cleared: {cleared}")
        return cleared

    def cache_stats(self) -> Dict[str, Any]:
        now = self.clock()
        return {
            "cache": {
                "size": len(self._cache),
                "ttl_seconds": self.ttl,
                "entries": [
                    {
                        "subject_id": subject_id,
                        "age_seconds": round(now - entry.captured_at, 1),
                        "total_members": entry.result.total_members,
                    }
                    for subject_id, entry in self._cache.items()
                ],
            },
            "failed_attempts": {
                "size": len(self._failed),
                "cooldown_seconds": self.failed_cooldown,
                "entries": [
                    {
                        "subject_id": subject_id,
                        "age_seconds": round(now - record.failed_at, 1),
                        "attempts": record.attempts,
                    }
                    for subject_id, record in self._failed.items()
                ],
            },
            "hits": self.cache_hits,
            "misses": self.cache_misses,
        }
