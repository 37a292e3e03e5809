"""
Direct HTTP access to the portal API (health probes, heartbeats, relatives endpoints).
"""

import asyncio
import json
import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

import aiohttp

from subject_lookup.exceptions import PortalRequestError

logger = logging.getLogger(__name__)


@dataclass
class PortalResponse:
    """Status and body of one portal API call."""
    status: int
    text: str = ""
    data: Any = None

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300

    @property
    def is_auth_error(self) -> bool:
        return self.status in (401, 403)


class PortalApiClient:
    """
    Thin aiohttp wrapper returning `PortalResponse` objects.

    Transport failures and timeouts are raised as `PortalRequestError`;
    any HTTP status, including 401/403, is returned to the caller.
    """

    def __init__(self, default_timeout: float = 10.0):
        self.default_timeout = default_timeout
        self._session: Optional[aiohttp.ClientSession] = None

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
        return self._session

    async def get(
        self,
        url: str,
        headers: Optional[Dict[str, str]] = None,
        timeout: Optional[float] = None
    ) -> PortalResponse:
        """
        Issue a GET request against the portal API.

        Args:
            url: Absolute URL
            headers: Request headers (auth headers included by the caller)
            timeout: Total timeout in seconds

        Returns:
            PortalResponse with the parsed JSON body when there is one
        """
        client_timeout = aiohttp.ClientTimeout(total=timeout or self.default_timeout)
        try:
            async with self._get_session().get(url, headers=headers, timeout=client_timeout) as response:
                text = await response.text()
                data = None
                if text:
                    try:
                        data = json.loads(text)
                    except ValueError:
                        data = None
                return PortalResponse(status=response.status, text=text, data=data)
        except asyncio.TimeoutError as e:
            raise PortalRequestError(f"Timeout after {timeout or self.default_timeout}s: {url}") from e
        except aiohttp.ClientError as e:
            raise PortalRequestError(f"Request to portal failed: {e}") from e

    async def close(self):
        """Close the underlying HTTP session."""
        if self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None
