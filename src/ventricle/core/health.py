"""
Status endpoint: lightweight local HTTP server.

GET /health  -> 200 + uptime, registered pulses, in-flight ids
GET /pulses  -> stored PulseRecords
GET /items   -> stored PulseItems, newest first (?unseen=1 to filter)

Read-only and bound to 127.0.0.1.
"""

import logging
import time
from typing import TYPE_CHECKING

from aiohttp import web

from ventricle import __version__

if TYPE_CHECKING:
    from ventricle.core.daemon import VentricleDaemon

logger = logging.getLogger("ventricle.health")

DEFAULT_PORT = 9730


class HealthServer:
    """Minimal HTTP status endpoint."""

    def __init__(self, daemon: "VentricleDaemon", port: int = DEFAULT_PORT):
        self.daemon = daemon
        self.port = port
        self._app = web.Application()
        self._app.router.add_get("/health", self._handle_health)
        self._app.router.add_get("/pulses", self._handle_pulses)
        self._app.router.add_get("/items", self._handle_items)
        self._runner: web.AppRunner | None = None

    @property
    def app(self) -> web.Application:
        return self._app

    async def start(self):
        """Start the status server."""
        self._runner = web.AppRunner(self._app)
        await self._runner.setup()
        site = web.TCPSite(self._runner, "127.0.0.1", self.port)
        try:
            await site.start()
            logger.info(f"Status endpoint listening on http://127.0.0.1:{self.port}/health")
        except OSError as e:
            logger.warning(f"Could not start status endpoint on port {self.port}: {e}")

    async def stop(self):
        """Stop the status server."""
        if self._runner:
            await self._runner.cleanup()

    async def _handle_health(self, request: web.Request) -> web.Response:
        """Liveness plus registry counters."""
        uptime = time.time() - self.daemon.start_time if self.daemon.start_time else 0
        ventricle = self.daemon.ventricle
        return web.json_response({
            "status": "alive",
            "uptime_seconds": round(uptime),
            "pulses": len(ventricle.definitions),
            "in_flight": sorted(ventricle.in_flight),
            "tick_in_progress": ventricle.tick_in_progress,
            "version": __version__,
        })

    async def _handle_pulses(self, request: web.Request) -> web.Response:
        records = self.daemon.store.load_records()
        return web.json_response([r.to_dict() for r in records])

    async def _handle_items(self, request: web.Request) -> web.Response:
        items = self.daemon.store.load_items()
        if request.query.get("unseen") in ("1", "true"):
            items = [i for i in items if not i.seen]
        return web.json_response([i.to_dict() for i in items])
