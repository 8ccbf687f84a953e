"""
HTTP fetcher for definition pages.

GET only, redirects followed, a fixed browser-like User-Agent. Anything other
than a 2xx reply is a FetchFailed, as is any transport error or timeout.
"""

import asyncio
import logging
from typing import Optional

import aiohttp

from ventricle.errors import FetchFailed

logger = logging.getLogger("ventricle.fetcher")

USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/122.0.0.0 Safari/537.36"
)
ACCEPT = "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8"


class HttpFetcher:
    """Fetches page bodies over one shared aiohttp session."""

    def __init__(self, timeout_seconds: float = 300, user_agent: str = USER_AGENT):
        self.timeout_seconds = timeout_seconds
        self.headers = {"User-Agent": user_agent, "Accept": ACCEPT}
        self._session: Optional[aiohttp.ClientSession] = None

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                headers=self.headers,
                timeout=aiohttp.ClientTimeout(total=self.timeout_seconds),
            )
        return self._session

    async def fetch(self, url: str) -> str:
        """Return the decoded body of ``url``."""
        session = await self._get_session()
        try:
            async with session.get(url, allow_redirects=True) as resp:
                if not 200 <= resp.status < 300:
                    raise FetchFailed(url, f"HTTP {resp.status}", status=resp.status)
                body = await resp.text(errors="replace")
        except aiohttp.ClientError as e:
            raise FetchFailed(url, f"{type(e).__name__}: {e}") from e
        except asyncio.TimeoutError as e:
            raise FetchFailed(url, f"timed out after {self.timeout_seconds}s") from e
        logger.debug(f"Fetched {url} ({len(body)} chars)")
        return body

    async def close(self):
        if self._session and not self._session.closed:
            await self._session.close()
