"""
Ventricle Daemon: process lifecycle around the registry.

Builds the store, fetcher and registry from config, wires the new-item
callback to the event bus, and keeps the event loop alive until SIGINT or
SIGTERM.
"""

import asyncio
import logging
import signal
import time
from typing import Optional

from ventricle.core.config import VentricleConfig
from ventricle.core.events import NEW_PULSE_ITEM, EventBus
from ventricle.core.health import HealthServer
from ventricle.core.webhook import ItemWebhook
from ventricle.fetcher import HttpFetcher
from ventricle.registry import Ventricle
from ventricle.storage import PulseItem, PulseStore

logger = logging.getLogger("ventricle")


class VentricleDaemon:
    """Runs the registry, its timers and the optional side services."""

    def __init__(self, config: Optional[VentricleConfig] = None, config_path: Optional[str] = None):
        self.config = config or VentricleConfig.load(config_path)
        self.running = False
        self.start_time: Optional[float] = None
        self._stop_event: Optional[asyncio.Event] = None
        self._notify_tasks: set = set()

        self.bus = EventBus()
        self.store = PulseStore(
            self.config.state_dir,
            records_file=self.config.state.records_file,
            items_file=self.config.state.items_file,
        )
        self.fetcher = HttpFetcher(
            timeout_seconds=self.config.http.timeout_seconds,
            user_agent=self.config.http.user_agent,
        )
        self.ventricle = Ventricle(
            self.config.pulses_dir,
            self.store,
            self.fetcher,
            on_new_pulse_item=self._on_new_pulse_item,
            extension=self.config.pulses.extension,
            tick_seconds=self.config.scheduler.tick_seconds,
            settle_seconds=self.config.scheduler.event_settle_seconds,
        )
        self.health = HealthServer(self, port=self.config.health.port) if self.config.health.enabled else None
        self.webhook = ItemWebhook(self.config) if self.config.notify.webhook_url else None

        self.bus.on(NEW_PULSE_ITEM, self._log_item)
        if self.webhook:
            self.bus.on(NEW_PULSE_ITEM, self._forward_item)

    def _on_new_pulse_item(self, item: PulseItem):
        self.bus.emit(NEW_PULSE_ITEM, item=item)

    def _log_item(self, item: PulseItem, **kwargs):
        logger.info(f"📬 {item.title} ({item.url or 'no url'})")

    def _forward_item(self, item: PulseItem, **kwargs):
        task = asyncio.get_running_loop().create_task(self.webhook.notify(item))
        self._notify_tasks.add(task)
        task.add_done_callback(self._notify_tasks.discard)

    def run(self):
        """Start the daemon. Blocks until shutdown."""
        self.running = True
        self.start_time = time.time()

        logger.info("🫀 Ventricle starting")
        logger.info(f"   Pulses: {self.config.pulses_dir} (*{self.config.pulses.extension})")
        logger.info(f"   State: {self.config.state_dir}")
        logger.info(f"   Tick interval: {self.config.scheduler.tick_seconds}s")

        try:
            asyncio.run(self._main())
        except KeyboardInterrupt:
            logger.info("Ventricle interrupted, shutting down")
        finally:
            self.running = False
            logger.info("🫀 Ventricle stopped")

    async def _main(self):
        self._stop_event = asyncio.Event()
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, self._handle_shutdown)

        if self.health:
            await self.health.start()
        await self.ventricle.start(run_now=self.config.scheduler.run_on_start)

        try:
            await self._stop_event.wait()
        finally:
            logger.info("Shutting down async resources...")
            await self.ventricle.stop()
            if self._notify_tasks:
                await asyncio.gather(*self._notify_tasks, return_exceptions=True)
            await self.fetcher.close()
            if self.webhook:
                self.bus.off(NEW_PULSE_ITEM, self._forward_item)
                await self.webhook.close()
            if self.health:
                await self.health.stop()

    def _handle_shutdown(self):
        """Handle shutdown signal from asyncio loop."""
        logger.info("Received shutdown signal, initiating shutdown")
        if self._stop_event:
            self._stop_event.set()
