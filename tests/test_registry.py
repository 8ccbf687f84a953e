"""Tests for the registry: file lifecycle, scheduling, execution and dedup."""

import asyncio

import pytest

from ventricle.registry import Ventricle
from ventricle.storage import PulseItem, PulseRecord
from ventricle.watcher import CREATED, MODIFIED, REMOVED, FileEvent

COUNT_URL = "https://example.com/count"


def serve(fetcher, count, summary=None):
    fetcher.pages[COUNT_URL] = f'<div><span id="count">{count}</span></div>'
    body = f"<h1>Build {count}</h1>"
    if summary:
        body += f'<p class="summary">{summary}</p>'
    fetcher.pages[f"https://example.com/detail/{count}"] = body


@pytest.fixture
def emitted():
    return []


@pytest.fixture
def ventricle(pulses_dir, store, fetcher, clock, emitted):
    return Ventricle(pulses_dir, store, fetcher, on_new_pulse_item=emitted.append, clock=clock)


class TestFileLifecycle:
    def test_added_file_registers_and_runs_once(self, ventricle, write_pulse, counter,
                                                 fetcher, store, emitted):
        path = write_pulse(counter())
        serve(fetcher, 5)

        asyncio.run(ventricle.handle_event(FileEvent(CREATED, str(path))))

        assert set(ventricle.definitions) == {"counter"}
        record = store.get_record("counter")
        assert record.enabled is True
        assert record.last_anchor_value == "5"
        assert record.last_checked == "2026-03-01T12:00:00.000Z"
        assert fetcher.calls == [COUNT_URL, "https://example.com/detail/5"]
        assert len(emitted) == 1
        assert [i.id for i in store.load_items()] == [emitted[0].id]

    def test_invalid_file_is_ignored(self, ventricle, pulses_dir, store, fetcher):
        path = pulses_dir / "broken.pulse"
        path.write_text('{"id": "x"}')
        asyncio.run(ventricle.handle_event(FileEvent(CREATED, str(path))))
        assert ventricle.definitions == {}
        assert store.load_records() == []
        assert fetcher.calls == []

    def test_other_extensions_are_ignored(self, ventricle, pulses_dir, counter):
        path = pulses_dir / "notes.txt"
        path.write_text("{}")
        assert ventricle.register_file(path) is None

    def test_id_change_disables_old_record(self, ventricle, write_pulse, counter, store):
        path = write_pulse(counter("old-id"), filename="thing.pulse")
        ventricle.register_file(path)
        write_pulse(counter("new-id"), filename="thing.pulse")

        assert ventricle.register_file(path) == "new-id"

        assert set(ventricle.definitions) == {"new-id"}
        assert store.get_record("old-id").enabled is False
        assert store.get_record("new-id").enabled is True

    def test_removed_file_disables_record_and_keeps_items(self, ventricle, write_pulse,
                                                          counter, fetcher, store):
        path = write_pulse(counter())
        serve(fetcher, 5)
        asyncio.run(ventricle.handle_event(FileEvent(CREATED, str(path))))
        path.unlink()

        asyncio.run(ventricle.handle_event(FileEvent(REMOVED, str(path))))

        assert ventricle.definitions == {}
        record = store.get_record("counter")
        assert record is not None
        assert record.enabled is False
        assert len(store.load_items()) == 1

    def test_modified_file_reenables_and_updates(self, ventricle, write_pulse, counter,
                                                 fetcher, store):
        path = write_pulse(counter())
        ventricle.register_file(path)
        ventricle.unregister_file(path)
        serve(fetcher, 1)

        write_pulse(counter(name="Counter v2", heartbeat="15m"))
        asyncio.run(ventricle.handle_event(FileEvent(MODIFIED, str(path))))

        record = store.get_record("counter")
        assert record.enabled is True
        assert record.name == "Counter v2"
        assert record.heartbeat == "15m"


class TestReconcile:
    def test_registers_files_and_disables_strays(self, ventricle, write_pulse, counter,
                                                 pulses_dir, store):
        store.save_records([PulseRecord(id="gone", name="Gone")])
        write_pulse(counter("a"))
        write_pulse(counter("b"))
        (pulses_dir / "bad.pulse").write_text("")

        assert sorted(ventricle.reconcile()) == ["a", "b"]

        assert store.get_record("gone").enabled is False
        assert store.get_record("a").enabled is True
        assert store.get_record("a").file_path.endswith("a.pulse")

    def test_keeps_existing_schedule_state(self, ventricle, write_pulse, counter, store):
        store.save_records([PulseRecord(
            id="a", name="Old name", last_anchor_value="3",
            last_checked="2026-03-01T11:00:00.000Z", enabled=False,
        )])
        write_pulse(counter("a"))

        ventricle.reconcile()

        record = store.get_record("a")
        assert record.enabled is True
        assert record.name == "Counter"
        assert record.last_anchor_value == "3"
        assert record.last_checked == "2026-03-01T11:00:00.000Z"


class TestExecute:
    @pytest.fixture(autouse=True)
    def registered(self, ventricle, write_pulse, counter):
        ventricle.register_file(write_pulse(counter()))

    def test_anchor_change_emits_exactly_one_item(self, ventricle, fetcher, store, emitted):
        serve(fetcher, 5)
        first = asyncio.run(ventricle.execute_pulse("counter"))
        serve(fetcher, 6, summary="Six is out")
        second = asyncio.run(ventricle.execute_pulse("counter"))

        assert first.anchor_value == "5"
        assert second.anchor_value == "6"
        assert second.title == "Build 6"
        assert second.content == "Six is out"
        assert second.url == "https://example.com/detail/6"
        assert [i.anchor_value for i in store.load_items()] == ["6", "5"]
        assert emitted == [first, second]
        assert store.get_record("counter").last_anchor_value == "6"

    def test_unchanged_anchor_skips_flow(self, ventricle, fetcher, store, clock):
        serve(fetcher, 5)
        asyncio.run(ventricle.execute_pulse("counter"))
        fetcher.calls.clear()
        clock.advance(hours=2)

        assert asyncio.run(ventricle.execute_pulse("counter")) is None

        assert fetcher.calls == [COUNT_URL]
        assert store.get_record("counter").last_checked == "2026-03-01T14:00:00.000Z"
        assert len(store.load_items()) == 1

    def test_returning_to_an_emitted_anchor_is_deduplicated(self, ventricle, fetcher, store, emitted):
        for count in (5, 6, 5):
            serve(fetcher, count)
            asyncio.run(ventricle.execute_pulse("counter"))

        assert [i.anchor_value for i in store.load_items()] == ["6", "5"]
        assert len(emitted) == 2
        assert store.get_record("counter").last_anchor_value == "5"

    def test_empty_anchor_does_nothing(self, ventricle, fetcher, store):
        fetcher.pages[COUNT_URL] = "<p>maintenance</p>"
        assert asyncio.run(ventricle.execute_pulse("counter")) is None
        assert fetcher.calls == [COUNT_URL]
        record = store.get_record("counter")
        assert record.last_anchor_value is None
        assert record.last_checked is not None

    def test_fallbacks_when_flow_extracts_nothing_useful(self, ventricle, write_pulse, counter,
                                                         fetcher, store):
        ventricle.register_file(write_pulse(counter(flow=[])))
        serve(fetcher, 9)

        item = asyncio.run(ventricle.execute_pulse("counter"))

        assert item.title == "Counter"
        assert item.content == "9"
        assert item.url == COUNT_URL
        assert item.seen is False

    def test_expiry_taken_from_variables(self, ventricle, write_pulse, counter, fetcher):
        ventricle.register_file(write_pulse(counter(flow=[{
            "action": "fetch",
            "url": "https://example.com/detail/{{ anchor }}",
            "extract": {"event_date": {"select": "time", "attribute": "datetime"}},
        }])))
        fetcher.pages[COUNT_URL] = '<span id="count">1</span>'
        fetcher.pages["https://example.com/detail/1"] = '<time datetime="2026-12-31T18:00:00Z">NYE</time>'

        item = asyncio.run(ventricle.execute_pulse("counter"))

        assert item.expires_at == "2026-12-31T18:00:00.000Z"

    def test_flow_failure_keeps_anchor_for_retry(self, ventricle, fetcher, store, emitted):
        fetcher.pages[COUNT_URL] = '<span id="count">5</span>'
        fetcher.pages["https://example.com/detail/5"] = "<p>no heading</p>"

        assert asyncio.run(ventricle.execute_pulse("counter")) is None

        assert store.get_record("counter").last_anchor_value is None
        assert store.load_items() == []
        assert emitted == []
        assert ventricle.in_flight == set()

    def test_disabled_record_is_not_run(self, ventricle, fetcher, store):
        store.update_record("counter", lambda r: setattr(r, "enabled", False))
        serve(fetcher, 5)
        assert asyncio.run(ventricle.execute_pulse("counter")) is None
        assert fetcher.calls == []

    def test_unknown_id_is_not_run(self, ventricle, fetcher):
        assert asyncio.run(ventricle.execute_pulse("nope")) is None
        assert fetcher.calls == []

    def test_concurrent_calls_run_one_fetch_sequence(self, ventricle, fetcher, store):
        serve(fetcher, 5)

        async def _both():
            return await asyncio.gather(
                ventricle.execute_pulse("counter"),
                ventricle.execute_pulse("counter"),
            )

        results = asyncio.run(_both())

        assert sum(1 for r in results if isinstance(r, PulseItem)) == 1
        assert fetcher.calls == [COUNT_URL, "https://example.com/detail/5"]
        assert len(store.load_items()) == 1

    def test_listener_failure_does_not_lose_the_item(self, ventricle, fetcher, store):
        def _boom(item):
            raise RuntimeError("listener down")

        ventricle.on_new_pulse_item = _boom
        serve(fetcher, 5)

        assert asyncio.run(ventricle.execute_pulse("counter")) is not None
        assert store.get_record("counter").last_anchor_value == "5"
        assert len(store.load_items()) == 1


class TestSchedule:
    def test_is_due(self, ventricle, clock):
        record = PulseRecord(id="a", name="A", heartbeat="30m")
        assert ventricle.is_due(record, clock.now)
        record.last_checked = "2026-03-01T11:45:00.000Z"
        assert not ventricle.is_due(record, clock.now)
        record.last_checked = "2026-03-01T11:30:00.000Z"
        assert ventricle.is_due(record, clock.now)

    def test_tick_runs_only_enabled_due_pulses(self, ventricle, write_pulse, counter,
                                               fetcher, store, clock):
        ventricle.register_file(write_pulse(counter("fresh")))
        ventricle.register_file(write_pulse(counter("stale")))
        ventricle.register_file(write_pulse(counter("off")))
        store.update_record("fresh", lambda r: setattr(r, "last_checked", "2026-03-01T11:59:00.000Z"))
        store.update_record("off", lambda r: setattr(r, "enabled", False))
        serve(fetcher, 5)

        assert asyncio.run(ventricle.tick()) == ["stale"]

        clock.advance(hours=1)
        assert asyncio.run(ventricle.tick()) == ["fresh", "stale"]

    def test_failing_pulse_does_not_block_others(self, ventricle, write_pulse, counter,
                                                 fetcher, store, emitted):
        ventricle.register_file(write_pulse(counter("broken", anchor={
            "url": "https://example.com/missing", "select": "#count",
        })))
        ventricle.register_file(write_pulse(counter("good")))
        serve(fetcher, 5)

        assert asyncio.run(ventricle.tick()) == ["broken", "good"]

        assert [i.pulse_id for i in emitted] == ["good"]
        assert store.get_record("broken").last_checked is not None
        assert ventricle.tick_in_progress is False

    def test_overlapping_tick_is_skipped(self, ventricle, write_pulse, counter, fetcher):
        ventricle.register_file(write_pulse(counter()))
        serve(fetcher, 5)

        async def _overlap():
            gate = asyncio.Event()
            original = fetcher.fetch

            async def _slow_fetch(url):
                await gate.wait()
                return await original(url)

            fetcher.fetch = _slow_fetch
            first = asyncio.create_task(ventricle.tick())
            while not ventricle.tick_in_progress:
                await asyncio.sleep(0)
            second = await ventricle.tick()
            gate.set()
            return await first, second

        first, second = asyncio.run(_overlap())

        assert first == ["counter"]
        assert second == []


    def test_tick_leaves_out_pulse_already_in_flight(self, ventricle, write_pulse, counter,
                                                     fetcher, clock):
        ventricle.register_file(write_pulse(counter()))
        serve(fetcher, 5)

        async def _run():
            gate = asyncio.Event()
            original = fetcher.fetch

            async def _slow_fetch(url):
                await gate.wait()
                return await original(url)

            fetcher.fetch = _slow_fetch
            running = asyncio.create_task(ventricle.execute_pulse("counter"))
            while "counter" not in ventricle.in_flight:
                await asyncio.sleep(0)
            # due again while the first run is still waiting on the network
            clock.advance(hours=2)
            ran = await ventricle.tick()
            gate.set()
            await running
            return ran

        assert asyncio.run(_run()) == []
        assert fetcher.calls == [COUNT_URL, "https://example.com/detail/5"]


class TestLifecycle:
    def test_start_runs_recently_checked_pulse_whose_anchor_moved(self, ventricle, write_pulse, counter,
                                                                  fetcher, store):
        write_pulse(counter())
        store.save_records([PulseRecord(
            id="counter", name="Counter", last_anchor_value="5",
            last_checked="2026-03-01T11:59:00.000Z",
        )])
        serve(fetcher, 6)

        async def _run():
            await ventricle.start(watch=False, run_now=True)
            for _ in range(200):
                if store.load_items():
                    break
                await asyncio.sleep(0.01)
            await ventricle.stop()

        asyncio.run(_run())

        assert fetcher.calls == [COUNT_URL, "https://example.com/detail/6"]
        assert [i.anchor_value for i in store.load_items()] == ["6"]
        assert store.get_record("counter").last_anchor_value == "6"

    def test_start_without_run_now_fetches_nothing(self, ventricle, write_pulse, counter, fetcher):
        write_pulse(counter())
        serve(fetcher, 5)

        async def _run():
            await ventricle.start(watch=False, run_now=False)
            await asyncio.sleep(0.05)
            await ventricle.stop()

        asyncio.run(_run())
        assert fetcher.calls == []

    def test_start_runs_due_pulses_and_stop_clears(self, ventricle, write_pulse, counter,
                                                   fetcher, store):
        write_pulse(counter())
        serve(fetcher, 5)

        async def _run():
            await ventricle.start(watch=False, run_now=True)
            for _ in range(200):
                if store.load_items():
                    break
                await asyncio.sleep(0.01)
            await ventricle.stop()

        asyncio.run(_run())

        assert len(store.load_items()) == 1
        assert ventricle.definitions == {}
        assert store.get_record("counter").enabled is True

    def test_start_creates_missing_directory(self, tmp_path, store, fetcher):
        ventricle = Ventricle(tmp_path / "not-yet", store, fetcher)

        async def _run():
            await ventricle.start(watch=False, run_now=False)
            await ventricle.stop()

        asyncio.run(_run())
        assert (tmp_path / "not-yet").is_dir()
