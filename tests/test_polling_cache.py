from __future__ import annotations

import threading
from datetime import timedelta
from typing import Iterator

import pytest

from conftest import FakeTelemetry, ManualClock, ManualScheduler, drain, unreachable
from datastore.history import HistoryStore
from models.errors import CacheNotReady, StaleData
from models.records import Domain
from services.polling_cache import PollingCache


@pytest.fixture
def cache(
    telemetry: FakeTelemetry,
    scheduler: ManualScheduler,
    clock: ManualClock,
    history: HistoryStore,
) -> Iterator[PollingCache]:
    polling = PollingCache(
        telemetry=telemetry,
        scheduler=scheduler,
        intervals={
            Domain.sensors: 30.0,
            Domain.fans: 30.0,
            Domain.power: 30.0,
            Domain.pid: 60.0,
            Domain.system: 300.0,
        },
        ttls={
            Domain.sensors: 60.0,
            Domain.fans: 60.0,
            Domain.power: 60.0,
            Domain.pid: 120.0,
            Domain.system: 600.0,
        },
        history=history,
        clock=clock.now,
        monotonic=clock.monotonic,
    )
    yield polling
    polling.shutdown()


def test_read_before_first_poll_is_not_ready(cache: PollingCache) -> None:
    result = cache.read(Domain.fans)

    assert result.ready is False
    assert result.data is None
    assert result.stale is False
    assert result.error is None
    with pytest.raises(CacheNotReady):
        result.require()


def test_start_polls_every_domain_immediately(
    cache: PollingCache, scheduler: ManualScheduler, telemetry: FakeTelemetry
) -> None:
    cache.start()
    scheduler.advance(0)
    drain(cache)

    for domain in Domain:
        assert telemetry.calls[domain] == 1
        assert cache.read(domain).ready is True
    assert cache.read(Domain.fans).require().fans[0].speed == 40.0


def test_domains_follow_their_own_interval(
    cache: PollingCache, scheduler: ManualScheduler, telemetry: FakeTelemetry
) -> None:
    cache.start()
    scheduler.advance(0)
    drain(cache)

    scheduler.advance(30)
    drain(cache)

    assert telemetry.calls[Domain.sensors] == 2
    assert telemetry.calls[Domain.pid] == 1

    scheduler.advance(30)
    drain(cache)

    assert telemetry.calls[Domain.sensors] == 3
    assert telemetry.calls[Domain.pid] == 2


def test_failed_poll_keeps_last_good_data(
    cache: PollingCache, scheduler: ManualScheduler, telemetry: FakeTelemetry
) -> None:
    cache.start()
    scheduler.advance(0)
    drain(cache)
    first = cache.read(Domain.power)

    telemetry.failures[Domain.power] = unreachable()
    scheduler.advance(30)
    drain(cache)
    second = cache.read(Domain.power)

    assert second.data == first.data
    assert second.fetched_at == first.fetched_at
    assert second.error == "controller offline"
    assert cache.read(Domain.sensors).error is None


def test_failing_domain_does_not_block_others(
    cache: PollingCache, scheduler: ManualScheduler, telemetry: FakeTelemetry
) -> None:
    telemetry.failures[Domain.pid] = unreachable()

    cache.start()
    scheduler.advance(0)
    drain(cache)

    assert cache.read(Domain.pid).ready is False
    assert cache.read(Domain.pid).error == "controller offline"
    assert cache.read(Domain.fans).ready is True


def test_entry_goes_stale_after_ttl(
    cache: PollingCache, scheduler: ManualScheduler, clock: ManualClock, telemetry: FakeTelemetry
) -> None:
    cache.start()
    scheduler.advance(0)
    drain(cache)
    cache.shutdown()

    clock.advance(59)
    assert cache.read(Domain.fans).stale is False
    clock.advance(2)
    assert cache.read(Domain.fans).stale is True


def test_concurrent_force_refresh_coalesces(cache: PollingCache, telemetry: FakeTelemetry) -> None:
    gate = threading.Event()
    telemetry.gate = gate

    first = cache.force_refresh(Domain.sensors)
    assert telemetry.entered.wait(timeout=5)
    second = cache.force_refresh(Domain.sensors)
    gate.set()

    assert first is second
    assert first.result(timeout=5).data is not None
    assert telemetry.calls[Domain.sensors] == 1


def test_poll_started_before_invalidation_is_discarded(
    cache: PollingCache, telemetry: FakeTelemetry
) -> None:
    cache.force_refresh(Domain.fans).result(timeout=5)

    gate = threading.Event()
    telemetry.gate = gate
    telemetry.entered.clear()
    old_poll = cache.force_refresh(Domain.fans)
    assert telemetry.entered.wait(timeout=5)

    cache.invalidate(Domain.fans)
    telemetry.fan_speeds = {"Fan 1": 80.0, "Fan 2": 80.0}
    follow_up = cache.force_refresh(Domain.fans)
    assert follow_up is not old_poll
    gate.set()

    old_entry = old_poll.result(timeout=5)
    new_entry = follow_up.result(timeout=5)

    assert old_entry.invalidated is True
    assert [fan.speed for fan in new_entry.data.fans] == [80.0, 80.0]
    assert new_entry.invalidated is False
    assert telemetry.calls[Domain.fans] == 3


def test_invalidate_marks_stale_without_polling(
    cache: PollingCache, telemetry: FakeTelemetry, scheduler: ManualScheduler
) -> None:
    cache.force_refresh(Domain.fans).result(timeout=5)

    cache.invalidate(Domain.fans, hold=2.0)
    result = cache.read(Domain.fans)

    assert result.stale is True
    assert result.data is not None
    assert telemetry.calls[Domain.fans] == 1


def test_scheduled_tick_is_held_during_settle(
    cache: PollingCache, scheduler: ManualScheduler, telemetry: FakeTelemetry
) -> None:
    cache.start()
    scheduler.advance(0)
    drain(cache)

    scheduler.advance(29)
    cache.invalidate(Domain.fans, hold=5.0)
    scheduler.advance(1)
    drain(cache)

    assert telemetry.calls[Domain.fans] == 1
    assert telemetry.calls[Domain.sensors] == 2


def test_fetched_at_never_moves_backwards(cache: PollingCache, clock: ManualClock) -> None:
    clock.advance(100)
    first = cache.force_refresh(Domain.power).result(timeout=5)

    clock.advance(-50)
    second = cache.force_refresh(Domain.power).result(timeout=5)

    assert second.fetched_at >= first.fetched_at


def test_successful_poll_appends_history(
    cache: PollingCache, history: HistoryStore, clock: ManualClock
) -> None:
    cache.force_refresh(Domain.sensors).result(timeout=5)
    clock.advance(30)
    cache.force_refresh(Domain.sensors).result(timeout=5)

    points = history.range(Domain.sensors)

    assert len(points) == 2
    assert points[1].timestamp - points[0].timestamp == timedelta(seconds=30)


def test_failed_poll_is_logged(cache: PollingCache, telemetry: FakeTelemetry, caplog) -> None:
    telemetry.failures[Domain.sensors] = unreachable("connection refused")

    with caplog.at_level("WARNING"):
        cache.force_refresh(Domain.sensors).result(timeout=5)

    record = next(r for r in caplog.records if r.getMessage().startswith("Poll failed"))
    assert record.domain == "sensors"
    assert record.error == "connection refused"


def test_entries_carry_the_generation_they_were_polled_in(cache: PollingCache) -> None:
    before = cache.force_refresh(Domain.fans).result(timeout=5)
    cache.invalidate(Domain.fans)
    after = cache.force_refresh(Domain.fans).result(timeout=5)

    assert before.generation == 0
    assert cache.generation(Domain.fans) == 1
    assert after.generation == 1
    assert cache.read(Domain.fans).generation == 1


def test_require_warns_when_data_is_stale(cache: PollingCache) -> None:
    cache.force_refresh(Domain.fans).result(timeout=5)
    cache.invalidate(Domain.fans)

    result = cache.read(Domain.fans)
    with pytest.warns(StaleData, match="'fans'"):
        snapshot = result.require()

    assert snapshot.fans[0].speed == 40.0
    assert isinstance(result.advisory(), StaleData)


def test_fresh_read_has_no_advisory(cache: PollingCache) -> None:
    cache.force_refresh(Domain.fans).result(timeout=5)

    assert cache.read(Domain.fans).advisory() is None
