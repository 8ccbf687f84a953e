"""
Persistence for pulse records and emitted items.

Two JSON arrays live in the state directory:

    pulses.json       one PulseRecord per definition id (schedule state)
    pulse-items.json  emitted PulseItems, newest first

Both are rewritten whole on every save. Field names on disk are camelCase so
the surrounding application can read the same files. Loading normalizes what
it finds (drops entries without ids, repairs heartbeats and timestamps, prunes
expired items) and writes the repaired collection back if anything changed.
"""

import fcntl
import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple

from ventricle.definition import normalize_heartbeat

logger = logging.getLogger("ventricle.storage")

RECORDS_FILE = "pulses.json"
ITEMS_FILE = "pulse-items.json"
DEFAULT_ITEM_TITLE = "Pulse Update"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(moment: datetime) -> str:
    return moment.astimezone(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Parse ISO 8601 or RFC 2822 dates. Naive values are taken as UTC."""
    if not isinstance(value, str) or not value.strip():
        return None
    text = value.strip()
    try:
        parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
    except ValueError:
        try:
            parsed = parsedate_to_datetime(text)
        except (TypeError, ValueError, IndexError):
            return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def as_iso(value: Any) -> Optional[str]:
    parsed = parse_timestamp(value)
    return to_iso(parsed) if parsed else None


@dataclass
class PulseRecord:
    id: str
    name: str
    heartbeat: str = "1h"
    last_checked: Optional[str] = None
    last_anchor_value: Optional[str] = None
    enabled: bool = True
    added_at: str = field(default_factory=lambda: to_iso(utc_now()))
    file_path: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "heartbeat": self.heartbeat,
            "lastChecked": self.last_checked,
            "lastAnchorValue": self.last_anchor_value,
            "enabled": self.enabled,
            "addedAt": self.added_at,
            "filePath": self.file_path,
        }

    @classmethod
    def from_dict(cls, raw: Any) -> Optional["PulseRecord"]:
        if not isinstance(raw, dict):
            return None
        pulse_id = raw.get("id").strip() if isinstance(raw.get("id"), str) else ""
        if not pulse_id:
            return None
        name = raw.get("name")
        file_path = raw.get("filePath")
        return cls(
            id=pulse_id,
            name=name.strip() if isinstance(name, str) and name.strip() else pulse_id,
            heartbeat=normalize_heartbeat(raw.get("heartbeat")),
            last_checked=as_iso(raw.get("lastChecked")),
            last_anchor_value=raw.get("lastAnchorValue") if isinstance(raw.get("lastAnchorValue"), str) else None,
            enabled=raw.get("enabled") if isinstance(raw.get("enabled"), bool) else True,
            added_at=as_iso(raw.get("addedAt")) or to_iso(utc_now()),
            file_path=file_path if isinstance(file_path, str) and file_path.strip() else None,
        )


@dataclass
class PulseItem:
    id: str
    pulse_id: str
    title: str
    content: str
    anchor_value: Optional[str] = None
    url: Optional[str] = None
    seen: bool = False
    created_at: str = field(default_factory=lambda: to_iso(utc_now()))
    expires_at: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "pulseId": self.pulse_id,
            "title": self.title,
            "content": self.content,
            "url": self.url,
            "seen": self.seen,
            "createdAt": self.created_at,
            "expiresAt": self.expires_at,
            "anchorValue": self.anchor_value,
        }

    @classmethod
    def from_dict(cls, raw: Any) -> Optional["PulseItem"]:
        if not isinstance(raw, dict):
            return None
        item_id = raw.get("id").strip() if isinstance(raw.get("id"), str) else ""
        pulse_id = raw.get("pulseId").strip() if isinstance(raw.get("pulseId"), str) else ""
        if not item_id or not pulse_id:
            return None
        title = raw.get("title")
        # older files used "isSeen"
        seen = raw.get("seen", raw.get("isSeen", False))
        return cls(
            id=item_id,
            pulse_id=pulse_id,
            title=title if isinstance(title, str) and title.strip() else DEFAULT_ITEM_TITLE,
            content=raw.get("content") if isinstance(raw.get("content"), str) else "",
            url=raw.get("url") if isinstance(raw.get("url"), str) else None,
            seen=bool(seen),
            created_at=as_iso(raw.get("createdAt")) or to_iso(utc_now()),
            expires_at=as_iso(raw.get("expiresAt")),
            anchor_value=raw.get("anchorValue") if isinstance(raw.get("anchorValue"), str) else None,
        )

    def is_expired(self, now: datetime) -> bool:
        expires = parse_timestamp(self.expires_at)
        return expires is not None and expires <= now


class PulseStore:
    """JSON-file backed store for records and items.

    The daemon and the CLI may both write. Every read-modify-write holds an
    exclusive flock on the file from the read to the write, so a save from one
    process never replaces entries another process added in between.
    """

    def __init__(self, state_dir, records_file: str = RECORDS_FILE,
                 items_file: str = ITEMS_FILE,
                 clock: Callable[[], datetime] = utc_now):
        self.state_dir = Path(state_dir).expanduser()
        self.records_path = self.state_dir / records_file
        self.items_path = self.state_dir / items_file
        self._clock = clock

    # ── Raw file access ───────────────────────────────────────────────────────

    def _decode(self, path: Path, raw: str) -> List[Any]:
        if not raw.strip():
            return []
        try:
            data = json.loads(raw)
        except json.JSONDecodeError as e:
            logger.error(f"Failed to read {path.name}: {e}")
            return []
        if not isinstance(data, list):
            logger.warning(f"{path.name} does not hold a list; ignoring it")
            return []
        return data

    def _read_list(self, path: Path) -> List[Any]:
        if not path.exists():
            return []
        try:
            with open(path, "r", encoding="utf-8") as f:
                fcntl.flock(f, fcntl.LOCK_SH)
                try:
                    raw = f.read()
                finally:
                    fcntl.flock(f, fcntl.LOCK_UN)
        except OSError as e:
            logger.error(f"Failed to read {path.name}: {e}")
            return []
        return self._decode(path, raw)

    def _modify_list(self, path: Path,
                     mutate: Callable[[List[Any]], Optional[List[Dict[str, Any]]]]):
        """Read, mutate and rewrite ``path`` under one exclusive lock.

        ``mutate`` gets the decoded entries and returns the entries to write,
        or None to leave the file as it is.
        """
        self.state_dir.mkdir(parents=True, exist_ok=True)
        with open(path, "a+", encoding="utf-8") as f:
            fcntl.flock(f, fcntl.LOCK_EX)
            try:
                f.seek(0)
                updated = mutate(self._decode(path, f.read()))
                if updated is not None:
                    f.seek(0)
                    f.truncate()
                    f.write(json.dumps(updated, indent=2, ensure_ascii=False))
                    f.flush()
            finally:
                fcntl.flock(f, fcntl.LOCK_UN)

    # ── Records ───────────────────────────────────────────────────────────────

    @staticmethod
    def _normalize_records(raw_entries: List[Any]) -> Tuple[List[PulseRecord], bool]:
        records: List[PulseRecord] = []
        modified = False
        for raw in raw_entries:
            record = PulseRecord.from_dict(raw)
            if record is None:
                modified = True
                continue
            if record.to_dict() != raw:
                modified = True
            records.append(record)
        return records, modified

    def modify_records(self, mutate: Callable[[List[PulseRecord]], bool]) -> List[PulseRecord]:
        """Apply ``mutate`` to the current records while holding the write lock.

        ``mutate`` edits the list in place and returns True when it changed
        something. The file is rewritten if it did, or if normalization did.
        """
        result: List[PulseRecord] = []

        def _apply(raw_entries):
            records, modified = self._normalize_records(raw_entries)
            changed = mutate(records)
            result.extend(records)
            return [r.to_dict() for r in records] if modified or changed else None

        self._modify_list(self.records_path, _apply)
        return result

    def load_records(self) -> List[PulseRecord]:
        records, modified = self._normalize_records(self._read_list(self.records_path))
        if modified:
            logger.info(f"Normalized {self.records_path.name}")
            records = self.modify_records(lambda _: False)
        return records

    def save_records(self, records: List[PulseRecord]):
        self._modify_list(self.records_path, lambda _: [r.to_dict() for r in records])

    def get_record(self, pulse_id: str) -> Optional[PulseRecord]:
        for record in self.load_records():
            if record.id == pulse_id:
                return record
        return None

    def update_record(self, pulse_id: str,
                      mutate: Callable[[PulseRecord], None]) -> Optional[PulseRecord]:
        """Apply ``mutate`` to one record under the write lock. None if absent."""
        found: List[PulseRecord] = []

        def _apply(records: List[PulseRecord]) -> bool:
            for record in records:
                if record.id == pulse_id:
                    mutate(record)
                    found.append(record)
                    return True
            return False

        self.modify_records(_apply)
        return found[0] if found else None

    # ── Items ─────────────────────────────────────────────────────────────────

    def _normalize_items(self, raw_entries: List[Any]) -> Tuple[List[PulseItem], bool]:
        """Parse items, dropping broken and expired ones."""
        now = self._clock()
        items: List[PulseItem] = []
        modified = False
        for raw in raw_entries:
            item = PulseItem.from_dict(raw)
            if item is None or item.is_expired(now):
                modified = True
                continue
            if item.to_dict() != raw:
                modified = True
            items.append(item)
        return items, modified

    def modify_items(self, mutate: Callable[[List[PulseItem]], bool]) -> List[PulseItem]:
        """Same contract as modify_records, for the items file."""
        result: List[PulseItem] = []

        def _apply(raw_entries):
            items, modified = self._normalize_items(raw_entries)
            changed = mutate(items)
            result.extend(items)
            return [i.to_dict() for i in items] if modified or changed else None

        self._modify_list(self.items_path, _apply)
        return result

    def load_items(self) -> List[PulseItem]:
        items, modified = self._normalize_items(self._read_list(self.items_path))
        if modified:
            logger.info(f"Normalized {self.items_path.name}")
            items = self.modify_items(lambda _: False)
        return items

    def save_items(self, items: List[PulseItem]):
        self._modify_list(self.items_path, lambda _: [i.to_dict() for i in items])

    def find_item(self, pulse_id: str, anchor_value: str) -> Optional[PulseItem]:
        """The stored item for the ``(pulse_id, anchor_value)`` dedup key."""
        for item in self.load_items():
            if item.pulse_id == pulse_id and item.anchor_value == anchor_value:
                return item
        return None

    def prepend_item(self, item: PulseItem):
        def _apply(items: List[PulseItem]) -> bool:
            items.insert(0, item)
            return True

        self.modify_items(_apply)

    def mark_seen(self, item_id: str) -> bool:
        found: List[PulseItem] = []

        def _apply(items: List[PulseItem]) -> bool:
            for item in items:
                if item.id == item_id:
                    found.append(item)
                    if item.seen:
                        return False
                    item.seen = True
                    return True
            return False

        self.modify_items(_apply)
        return bool(found)
