"""Shared fixtures: an in-memory fetcher and a temp definitions/state layout."""

import asyncio
import json
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from ventricle.errors import FetchFailed
from ventricle.storage import PulseStore


class FakeFetcher:
    """Serves canned HTML by URL and records every request."""

    def __init__(self, pages=None):
        self.pages = dict(pages or {})
        self.calls = []

    async def fetch(self, url: str) -> str:
        self.calls.append(url)
        # yield once so concurrent callers interleave like real I/O
        await asyncio.sleep(0)
        if url not in self.pages:
            raise FetchFailed(url, "HTTP 404", status=404)
        return self.pages[url]


class Clock:
    """Settable clock for schedule tests."""

    def __init__(self, start=None):
        self.now = start or datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now = self.now + timedelta(**kwargs)


@pytest.fixture
def fetcher():
    return FakeFetcher()


@pytest.fixture
def clock():
    return Clock()


@pytest.fixture
def pulses_dir(tmp_path) -> Path:
    d = tmp_path / "pulses"
    d.mkdir()
    return d


@pytest.fixture
def store(tmp_path, clock) -> PulseStore:
    return PulseStore(tmp_path / "state", clock=clock)


@pytest.fixture
def write_pulse(pulses_dir):
    """Write a definition dict as JSON into the pulses dir, return its path."""
    def _write(definition: dict, filename: str = None) -> Path:
        path = pulses_dir / (filename or f"{definition['id']}.pulse")
        path.write_text(json.dumps(definition))
        return path
    return _write


def counter_definition(pulse_id: str = "counter", **overrides) -> dict:
    definition = {
        "id": pulse_id,
        "name": "Counter",
        "heartbeat": "1h",
        "anchor": {"url": "https://example.com/count", "select": "#count"},
        "flow": [
            {
                "step": 1,
                "action": "fetch",
                "url": "https://example.com/detail/{{ anchor }}",
                "extract": {
                    "title": {"select": "h1"},
                    "summary": {"select": ".summary", "required": False},
                },
            }
        ],
    }
    definition.update(overrides)
    return definition


@pytest.fixture
def counter():
    return counter_definition
