"""
Ventricle: the pulse registry and scheduler.

Owns the in-memory ``id -> (file, definition)`` map, keeps one persisted
PulseRecord per id in step with the definitions directory, and decides when
each pulse runs:

    file added/changed  -> register, then run that pulse once right away
    file removed        -> forget it, disable (never delete) its record
    scheduler tick      -> run every enabled pulse whose heartbeat is due

A run reads the anchor first. Only when the anchor differs from the stored
one does the full flow run and, unless ``(pulse id, anchor)`` was already
emitted, a new PulseItem get stored and announced.
"""

import asyncio
import logging
import os
import uuid
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Optional, Set

from ventricle.definition import PulseDefinition, heartbeat_seconds, load_definition
from ventricle.errors import VentricleError
from ventricle.flow import Fetcher, FlowResult, resolve_anchor, run_flow
from ventricle.storage import (
    PulseItem, PulseRecord, PulseStore, as_iso, parse_timestamp, to_iso, utc_now,
)
from ventricle.watcher import REMOVED, DefinitionWatcher, FileEvent, is_definition_file

logger = logging.getLogger("ventricle.registry")

TITLE_KEYS = ("title", "headline")
CONTENT_KEYS = ("content", "summary")
URL_KEYS = ("url", "latest_link")
EXPIRY_KEYS = ("expiresAt", "expires_at", "expiry", "expiration", "event_date")


@dataclass(frozen=True)
class RegistryEntry:
    file_path: str
    definition: PulseDefinition


def _path_key(path) -> str:
    return os.path.normpath(os.path.abspath(os.path.expanduser(str(path))))


def first_non_empty(*values: Optional[str]) -> Optional[str]:
    for value in values:
        if isinstance(value, str) and value.strip():
            return value
    return None


class Ventricle:
    """Registry and scheduler for pulse definitions."""

    def __init__(
        self,
        definitions_dir,
        store: PulseStore,
        fetcher: Fetcher,
        on_new_pulse_item: Optional[Callable[[PulseItem], None]] = None,
        extension: str = ".pulse",
        tick_seconds: float = 60,
        settle_seconds: float = 0.25,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.definitions_dir = Path(definitions_dir).expanduser()
        self.store = store
        self.fetcher = fetcher
        self.on_new_pulse_item = on_new_pulse_item
        self.extension = extension
        self.tick_seconds = tick_seconds
        self.settle_seconds = settle_seconds
        self._clock = clock

        self._definitions: Dict[str, RegistryEntry] = {}
        self._in_flight: Set[str] = set()
        self._tick_in_progress = False

        self._watcher: Optional[DefinitionWatcher] = None
        self._loops: List[asyncio.Task] = []
        self._tasks: Set[asyncio.Task] = set()

    # ── Introspection ─────────────────────────────────────────────────────────

    @property
    def definitions(self) -> Dict[str, RegistryEntry]:
        return dict(self._definitions)

    @property
    def in_flight(self) -> Set[str]:
        return set(self._in_flight)

    @property
    def tick_in_progress(self) -> bool:
        return self._tick_in_progress

    # ── Reconciliation ────────────────────────────────────────────────────────

    def _definition_files(self) -> List[Path]:
        if not self.definitions_dir.is_dir():
            return []
        return sorted(
            p for p in self.definitions_dir.iterdir()
            if p.is_file() and is_definition_file(p.name, self.extension)
        )

    def _load(self, path) -> Optional[PulseDefinition]:
        try:
            return load_definition(path)
        except (VentricleError, OSError, UnicodeDecodeError) as e:
            logger.warning(f"Failed to load pulse file {path}: {e}")
            return None

    def _apply_upsert(self, records: List[PulseRecord], definition: PulseDefinition,
                      file_path: str):
        for record in records:
            if record.id == definition.id:
                record.name = definition.name
                record.heartbeat = definition.heartbeat
                record.file_path = file_path
                record.enabled = True
                return
        records.append(PulseRecord(
            id=definition.id,
            name=definition.name,
            heartbeat=definition.heartbeat,
            added_at=to_iso(self._clock()),
            file_path=file_path,
        ))
        logger.info(f"New pulse registered: {definition.id} ({definition.name})")

    def _disable(self, pulse_ids: Iterable[str]):
        targets = set(pulse_ids)
        if not targets:
            return
        def _apply(records: List[PulseRecord]) -> bool:
            changed = False
            for record in records:
                if record.id in targets and record.enabled:
                    record.enabled = False
                    changed = True
                    logger.info(f"Pulse disabled: {record.id}")
            return changed

        self.store.modify_records(_apply)

    def reconcile(self) -> List[str]:
        """Rebuild the registry from the definitions directory.

        Every parsed file gets an enabled record; every known record whose id
        was not seen in this pass is disabled. Returns the registered ids.
        """
        loaded: Dict[str, RegistryEntry] = {}
        for path in self._definition_files():
            definition = self._load(path)
            if definition is None:
                continue
            loaded[definition.id] = RegistryEntry(_path_key(path), definition)

        self._definitions = loaded

        def _sync(records: List[PulseRecord]) -> bool:
            for entry in loaded.values():
                self._apply_upsert(records, entry.definition, entry.file_path)
            for record in records:
                if record.id not in loaded and record.enabled:
                    record.enabled = False
                    logger.info(f"Pulse disabled: {record.id} (no definition file)")
            return True

        self.store.modify_records(_sync)

        logger.info(f"Reconciled {len(loaded)} pulse definitions from {self.definitions_dir}")
        return list(loaded)

    # ── Incremental file events ───────────────────────────────────────────────

    def register_file(self, path) -> Optional[str]:
        """Parse an added or changed file and register it. Returns its id.

        When the file used to carry a different id, the old id is dropped and
        its record disabled before the new one is registered.
        """
        if not is_definition_file(str(path), self.extension):
            return None
        definition = self._load(path)
        if definition is None:
            return None

        key = _path_key(path)
        stale = [
            pulse_id for pulse_id, entry in self._definitions.items()
            if entry.file_path == key and pulse_id != definition.id
        ]
        for pulse_id in stale:
            del self._definitions[pulse_id]
            logger.info(f"{key} no longer defines '{pulse_id}' (now '{definition.id}')")
        self._disable(stale)

        self._definitions[definition.id] = RegistryEntry(key, definition)
        def _upsert(records: List[PulseRecord]) -> bool:
            self._apply_upsert(records, definition, key)
            return True

        self.store.modify_records(_upsert)
        return definition.id

    def unregister_file(self, path) -> Optional[str]:
        """Forget the pulse defined by a removed file and disable its record."""
        if not is_definition_file(str(path), self.extension):
            return None
        key = _path_key(path)
        for pulse_id, entry in list(self._definitions.items()):
            if entry.file_path == key:
                del self._definitions[pulse_id]
                self._disable([pulse_id])
                return pulse_id
        return None

    async def handle_event(self, event: FileEvent):
        if event.kind == REMOVED:
            self.unregister_file(event.path)
            return
        pulse_id = self.register_file(event.path)
        if pulse_id:
            await self.execute_pulse(pulse_id)

    # ── Scheduling ────────────────────────────────────────────────────────────

    def is_due(self, record: PulseRecord, now: datetime) -> bool:
        last_checked = parse_timestamp(record.last_checked)
        if last_checked is None:
            return True
        return (now - last_checked).total_seconds() >= heartbeat_seconds(record.heartbeat)

    async def tick(self) -> List[str]:
        """Run every enabled, due pulse once. Returns the ids that were executed.

        Skipped if a tick is already running; ids already in flight (for
        example from a file event) are left to that run and not reported.
        """
        if self._tick_in_progress:
            logger.debug("Tick already in progress; skipping")
            return []

        self._tick_in_progress = True
        ran: List[str] = []
        try:
            now = self._clock()
            for record in self.store.load_records():
                if not record.enabled or not self.is_due(record, now):
                    continue
                if record.id in self._in_flight:
                    logger.debug(f"[{record.id}] already running; left out of this tick")
                    continue
                await self.execute_pulse(record.id)
                ran.append(record.id)
        except Exception as e:
            logger.error(f"Heartbeat tick failed: {e}", exc_info=True)
        finally:
            self._tick_in_progress = False
        if ran:
            logger.debug(f"Tick ran {len(ran)} pulses: {', '.join(ran)}")
        return ran

    # ── Execution ─────────────────────────────────────────────────────────────

    async def execute_pulse(self, pulse_id: str) -> Optional[PulseItem]:
        """Check one pulse and emit an item if its anchor moved.

        Never raises. A second call for an id that is already running returns
        immediately. Returns the new item, if one was created.
        """
        if pulse_id in self._in_flight:
            logger.debug(f"[{pulse_id}] already running; skipped")
            return None

        self._in_flight.add(pulse_id)
        try:
            return await self._execute(pulse_id)
        except Exception as e:
            logger.error(
                f"Failed executing pulse '{pulse_id}': {e}",
                exc_info=not isinstance(e, VentricleError),
                extra={"event": "pulse_failed", "pulse_id": pulse_id},
            )
            return None
        finally:
            self._in_flight.discard(pulse_id)

    async def _execute(self, pulse_id: str) -> Optional[PulseItem]:
        entry = self._definitions.get(pulse_id)
        if entry is None:
            return None
        record = self.store.get_record(pulse_id)
        if record is None or not record.enabled:
            return None

        # lastChecked is persisted before the anchor is read, even if the run fails later
        checked_at = to_iso(self._clock())
        self.store.update_record(pulse_id, lambda r: setattr(r, "last_checked", checked_at))

        definition = entry.definition
        anchor = await resolve_anchor(definition, self.fetcher)
        if not anchor or anchor == record.last_anchor_value:
            logger.debug(f"[{pulse_id}] unchanged (anchor={anchor!r})")
            return None

        logger.info(
            f"[{pulse_id}] anchor changed: {record.last_anchor_value!r} -> {anchor!r}",
            extra={"event": "anchor_changed", "pulse_id": pulse_id, "anchor": anchor},
        )
        result = await run_flow(definition, self.fetcher, {"anchor": anchor, "anchorValue": anchor})

        item = None
        if self.store.find_item(pulse_id, anchor) is None:
            item = self._build_item(record, definition, anchor, result)
            self.store.prepend_item(item)
            logger.info(
                f"[{pulse_id}] new item: {item.title}",
                extra={"event": "new_item", "pulse_id": pulse_id, "item_id": item.id, "url": item.url},
            )
            self._notify(item)
        else:
            logger.info(f"[{pulse_id}] anchor {anchor!r} already emitted; no new item")

        self.store.update_record(pulse_id, lambda r: setattr(r, "last_anchor_value", anchor))
        return item

    def _build_item(self, record: PulseRecord, definition: PulseDefinition,
                    anchor: str, result: FlowResult) -> PulseItem:
        variables = result.variables
        last_visited = result.visited_urls[-1] if result.visited_urls else None
        expiry = first_non_empty(*(variables.get(k) for k in EXPIRY_KEYS))
        return PulseItem(
            id=str(uuid.uuid4()),
            pulse_id=record.id,
            title=first_non_empty(*(variables.get(k) for k in TITLE_KEYS), record.name) or record.id,
            content=first_non_empty(*(variables.get(k) for k in CONTENT_KEYS), anchor) or "",
            url=first_non_empty(*(variables.get(k) for k in URL_KEYS), last_visited, definition.anchor.url),
            created_at=to_iso(self._clock()),
            expires_at=as_iso(expiry),
            anchor_value=anchor,
        )

    def _notify(self, item: PulseItem):
        if self.on_new_pulse_item is None:
            return
        try:
            self.on_new_pulse_item(item)
        except Exception as e:
            logger.error(f"New item listener failed: {e}", exc_info=True)

    # ── Lifecycle ─────────────────────────────────────────────────────────────

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _tick_loop(self):
        while True:
            await asyncio.sleep(self.tick_seconds)
            self._spawn(self.tick())

    async def _event_loop(self):
        while True:
            await asyncio.sleep(self.settle_seconds)
            for event in self._watcher.drain():
                logger.debug(f"File {event.kind}: {event.path}")
                self._spawn(self.handle_event(event))

    async def start(self, watch: bool = True, run_now: bool = True):
        """Reconcile, start watching the directory and the heartbeat timer.

        With ``run_now`` every registered pulse is executed once right away,
        due or not, the same as a file that was just added.
        """
        self.definitions_dir.mkdir(parents=True, exist_ok=True)
        self.reconcile()

        if watch:
            self._watcher = DefinitionWatcher(self.definitions_dir, self.extension)
            self._watcher.start()
            self._loops.append(asyncio.create_task(self._event_loop()))
        self._loops.append(asyncio.create_task(self._tick_loop()))

        if run_now:
            for pulse_id in list(self._definitions):
                self._spawn(self.execute_pulse(pulse_id))
        logger.info(f"Ventricle started ({len(self._definitions)} pulses, tick every {self.tick_seconds}s)")

    async def stop(self):
        pending = self._loops + list(self._tasks)
        for task in pending:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)
        self._loops = []
        self._tasks.clear()

        if self._watcher:
            self._watcher.stop()
            self._watcher = None

        self._definitions.clear()
        self._in_flight.clear()
        logger.info("Ventricle stopped")
