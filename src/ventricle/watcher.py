"""
Definitions directory watcher.

watchdog delivers events on its own observer thread; the handler only buffers
them. The daemon drains the buffer on the event loop every few hundred
milliseconds, which also lets an editor finish writing before the file is
parsed. Only the last event per path survives a drain.
"""

import logging
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

logger = logging.getLogger("ventricle.watcher")

CREATED = "created"
MODIFIED = "modified"
REMOVED = "removed"


@dataclass(frozen=True)
class FileEvent:
    kind: str
    path: str


def is_definition_file(path: str, extension: str) -> bool:
    return path.lower().endswith(extension.lower())


class _DefinitionEventHandler(FileSystemEventHandler):
    """Collects definition file events into a thread-safe buffer."""

    def __init__(self, extension: str):
        super().__init__()
        self._extension = extension
        self._lock = threading.Lock()
        self._buffer: List[FileEvent] = []

    def _push(self, kind: str, path: str):
        if not is_definition_file(path, self._extension):
            return
        with self._lock:
            self._buffer.append(FileEvent(kind, str(Path(path))))

    def on_any_event(self, event: FileSystemEvent):
        if event.is_directory:
            return
        src = event.src_path
        if isinstance(src, bytes):
            src = src.decode()
        if event.event_type == "created":
            self._push(CREATED, src)
        elif event.event_type in ("modified", "closed"):
            self._push(MODIFIED, src)
        elif event.event_type == "deleted":
            self._push(REMOVED, src)
        elif event.event_type == "moved":
            dest = event.dest_path
            if isinstance(dest, bytes):
                dest = dest.decode()
            self._push(REMOVED, src)
            self._push(CREATED, dest)

    def drain(self) -> List[FileEvent]:
        """Drain buffered events, keeping the last one per path."""
        with self._lock:
            events = self._buffer
            self._buffer = []
        latest: Dict[str, FileEvent] = {}
        for e in events:
            latest.pop(e.path, None)
            latest[e.path] = e
        return list(latest.values())


class DefinitionWatcher:
    """Watches one directory, non-recursively, for definition files."""

    def __init__(self, directory, extension: str = ".pulse"):
        self.directory = Path(directory).expanduser()
        self.extension = extension
        self._handler = _DefinitionEventHandler(extension)
        self._observer: Optional[Observer] = None

    def start(self):
        self.directory.mkdir(parents=True, exist_ok=True)
        self._observer = Observer()
        self._observer.schedule(self._handler, str(self.directory), recursive=False)
        self._observer.daemon = True
        self._observer.start()
        logger.info(f"Watching {self.directory} for *{self.extension} files")

    def drain(self) -> List[FileEvent]:
        return self._handler.drain()

    def stop(self):
        if self._observer:
            self._observer.stop()
            self._observer.join(timeout=5)
            self._observer = None
            logger.info("Definition watcher stopped")
