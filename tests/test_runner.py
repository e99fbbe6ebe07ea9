import datetime as dt
import json

import pytest
import requests

from gasprices.db import PriceStore
from gasprices.errors import FetchError, FetchErrorKind, StoreError
from gasprices.fetcher import FeedFetcher
from gasprices.models import CycleState, CycleStatus
from gasprices.runner import RefreshCycle, always_eligible, background_data_gate

FEED_BODY = 'X{"gasprices":[{"city_id":5,"name":"A"},{"city_id":7,"name":"B"}]}'


class RecordingScheduler:
    def __init__(self):
        self.calls = []

    def schedule(self, trigger_time, func):
        self.calls.append((trigger_time, func))


class DummyResponse:
    def __init__(self, text: str):
        self.text = text
        self.encoding = "utf-8"
        self.headers = {}

    def raise_for_status(self):
        pass

    @property
    def apparent_encoding(self):
        return "utf-8"


class DummySession:
    def __init__(self, text: str):
        self.text = text
        self.headers = {}

    def get(self, url, timeout=None):
        return DummyResponse(self.text)


def fixed_clock(moment: dt.datetime):
    return lambda: moment


def build_cycle(tmp_path, fetcher=None, gate=always_eligible, now=dt.datetime(2025, 1, 10, 18, 30)):
    store = PriceStore(path=tmp_path / "cycle.db")
    cycle = RefreshCycle(
        store=store,
        scheduler=RecordingScheduler(),
        fetcher=fetcher or FeedFetcher(session=DummySession(FEED_BODY)),
        gate=gate,
        clock=fixed_clock(now),
    )
    cycle.init()
    return cycle


def test_cycle_fetches_decomposes_commits_and_schedules(tmp_path):
    cycle = build_cycle(tmp_path)
    changes = []
    cycle.store.subscribe(lambda: changes.append(True))

    result = cycle.run()

    store = cycle.store
    assert result.status is CycleStatus.SUCCESS
    assert result.city_count == 2
    assert json.loads(store.get_city_record(5)) == {"city_id": 5, "name": "A"}
    assert json.loads(store.get_city_record(7)) == {"city_id": 7, "name": "B"}
    raw = json.loads(store.get_raw_snapshot())
    assert [entry["city_id"] for entry in raw["gasprices"]] == [5, 7]
    assert store.get_last_updated() == dt.datetime(2025, 1, 10, 18, 30)
    assert changes == [True]

    assert result.next_refresh == dt.datetime(2025, 1, 10, 20, 0)
    assert cycle.scheduler.calls == [(dt.datetime(2025, 1, 10, 20, 0), cycle.run)]
    metadata = store.get_metadata()
    assert metadata.next_refresh == dt.datetime(2025, 1, 10, 20, 0)
    assert metadata.last_status is CycleStatus.SUCCESS
    assert cycle.state is CycleState.IDLE


def test_closed_gate_skips_fetch_and_keeps_store(tmp_path):
    def fetcher():
        raise AssertionError("fetch must not run when the gate is closed")

    cycle = build_cycle(
        tmp_path,
        fetcher=fetcher,
        gate=background_data_gate(False),
        now=dt.datetime(2025, 1, 10, 9, 15),
    )
    changes = []
    cycle.store.subscribe(lambda: changes.append(True))

    result = cycle.run()

    assert result.status is CycleStatus.SKIPPED
    assert cycle.store.get_raw_snapshot() is None
    assert cycle.store.get_last_updated() is None
    assert changes == []
    assert cycle.scheduler.calls == [(dt.datetime(2025, 1, 10, 17, 0), cycle.run)]
    assert cycle.store.get_metadata().last_status is CycleStatus.SKIPPED


def test_fetch_failure_still_schedules_from_current_time(tmp_path, caplog):
    def fetcher():
        raise FetchError(FetchErrorKind.NETWORK, "connection refused")

    cycle = build_cycle(tmp_path, fetcher=fetcher, now=dt.datetime(2025, 1, 10, 21, 5))

    with caplog.at_level("ERROR"):
        result = cycle.run()

    assert result.status is CycleStatus.FETCH_FAILED
    assert "connection refused" in result.error
    assert "connection refused" in caplog.text
    assert cycle.store.get_raw_snapshot() is None
    assert cycle.scheduler.calls[0][0] == dt.datetime(2025, 1, 11, 0, 0)
    executed_at, status, notes = list(cycle.store.recent_runs())[0]
    assert status == "fetch_failed"
    assert "connection refused" in notes


def test_network_error_from_real_fetcher_is_not_fatal(tmp_path):
    class FailingSession:
        headers = {}

        def get(self, url, timeout=None):
            raise requests.ConnectionError("unreachable")

    cycle = build_cycle(tmp_path, fetcher=FeedFetcher(session=FailingSession()))

    result = cycle.run()

    assert result.status is CycleStatus.FETCH_FAILED
    assert len(cycle.scheduler.calls) == 1


def test_decode_failure_keeps_previous_snapshot(tmp_path):
    cycle = build_cycle(tmp_path)
    cycle.run()
    previous = cycle.store.read_snapshot_view()

    cycle.fetcher = lambda: '{"gasprices":[{"name":"missing id"}]}'
    result = cycle.run()

    assert result.status is CycleStatus.DECODE_FAILED
    assert cycle.store.read_snapshot_view() == previous
    assert len(cycle.scheduler.calls) == 2
    assert cycle.store.get_metadata().last_status is CycleStatus.DECODE_FAILED


def test_listeners_receive_result_every_cycle(tmp_path):
    cycle = build_cycle(tmp_path, gate=background_data_gate(False))
    received = []

    def broken(result):
        raise RuntimeError("boom")

    cycle.add_listener(broken)
    cycle.add_listener(received.append)

    first = cycle.run()
    cycle.gate = always_eligible
    second = cycle.run()

    assert received == [first, second]
    assert [result.status for result in received] == [CycleStatus.SKIPPED, CycleStatus.SUCCESS]


def test_concurrent_trigger_is_dropped(tmp_path):
    nested_results = []

    def fetcher():
        nested_results.append(cycle.run())
        return FEED_BODY[1:]

    cycle = build_cycle(tmp_path, fetcher=fetcher)

    result = cycle.run()

    assert nested_results == [None]
    assert result.status is CycleStatus.SUCCESS
    assert len(cycle.scheduler.calls) == 1
    assert len(list(cycle.store.recent_runs())) == 1


def test_store_failure_propagates(tmp_path):
    cycle = build_cycle(tmp_path)

    def broken_commit(snapshot):
        raise StoreError("disk full")

    cycle.store.commit_snapshot = broken_commit

    with pytest.raises(StoreError):
        cycle.run()

    assert cycle.scheduler.calls == []
    assert cycle.state is CycleState.IDLE
