"""
Item webhook: forwards newly emitted pulse items to an HTTP endpoint.

Optional. When ``notify.webhook_url`` is set the daemon subscribes notify() to
NEW_PULSE_ITEM; delivery failures are logged and never retried.
"""

import asyncio
import logging
from typing import Optional

import aiohttp

from ventricle.core.config import VentricleConfig
from ventricle.storage import PulseItem

logger = logging.getLogger("ventricle.webhook")


class ItemWebhook:
    """POSTs PulseItem JSON to the configured URL."""

    def __init__(self, config: VentricleConfig):
        self.url = config.notify.webhook_url
        self.token = config.notify.webhook_token
        self._session: Optional[aiohttp.ClientSession] = None

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
        return self._session

    async def notify(self, item: PulseItem) -> bool:
        """Deliver one item. Returns True on any 2xx reply."""
        session = await self._get_session()

        headers = {"Content-Type": "application/json"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"

        try:
            async with session.post(
                self.url,
                json={"event": "new_pulse_item", "item": item.to_dict()},
                headers=headers,
                timeout=aiohttp.ClientTimeout(total=10),
            ) as resp:
                if 200 <= resp.status < 300:
                    logger.info(f"Webhook accepted item {item.id} ({resp.status})")
                    return True
                body = await resp.text()
                logger.warning(f"Webhook returned {resp.status}: {body[:200]}")
                return False
        except aiohttp.ClientError as e:
            logger.error(f"Webhook connection error: {e}")
            return False
        except asyncio.TimeoutError:
            logger.error(f"Webhook timed out for item {item.id}")
            return False

    async def close(self):
        if self._session and not self._session.closed:
            await self._session.close()
