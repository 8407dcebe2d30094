from __future__ import annotations

from datetime import timedelta

from conftest import BASE_TIME, FakeTelemetry, ManualClock
from models.records import Domain, OverrideKind
from services.overrides import OverrideLedger


def test_sensor_override_replaces_reading_and_recomputes_status(
    clock: ManualClock, telemetry: FakeTelemetry
) -> None:
    ledger = OverrideLedger(clock=clock.now)
    snapshot = telemetry.fetch(Domain.sensors)

    ledger.record("01-Inlet Ambient", OverrideKind.sensor, 44.0)
    merged = ledger.apply(Domain.sensors, snapshot)

    inlet = next(r for r in merged.readings if r.name == "01-Inlet Ambient")
    cpu = next(r for r in merged.readings if r.name == "02-CPU 1")
    assert inlet.reading == 44.0
    assert inlet.status == "Warning"
    assert cpu.reading == 45.0
    assert snapshot.readings[0].reading == 22.0


def test_sensor_override_above_fatal_is_critical(clock: ManualClock, telemetry: FakeTelemetry) -> None:
    ledger = OverrideLedger(clock=clock.now)
    ledger.record("02-CPU 1", OverrideKind.sensor, 100.0)

    merged = ledger.apply(Domain.sensors, telemetry.fetch(Domain.sensors))

    assert merged.readings[1].status == "Critical"


def test_override_survives_new_snapshots_until_reset(clock: ManualClock, telemetry: FakeTelemetry) -> None:
    ledger = OverrideLedger(clock=clock.now)
    ledger.record("02-CPU 1", OverrideKind.sensor, 90.0)

    for live in (45.0, 50.0, 55.0):
        telemetry.sensor_values["02-CPU 1"] = live
        clock.advance(30)
        merged = ledger.apply(Domain.sensors, telemetry.fetch(Domain.sensors))
        assert merged.readings[1].reading == 90.0

    assert ledger.reset(Domain.sensors) == 1
    merged = ledger.apply(Domain.sensors, telemetry.fetch(Domain.sensors))
    assert merged.readings[1].reading == 55.0


def test_newer_override_supersedes_older(clock: ManualClock, telemetry: FakeTelemetry) -> None:
    ledger = OverrideLedger(clock=clock.now)
    ledger.record("02-CPU 1", OverrideKind.sensor, 60.0)
    clock.advance(1)
    ledger.record("02-CPU 1", OverrideKind.sensor, 65.0)

    assert len(ledger.active()) == 1
    merged = ledger.apply(Domain.sensors, telemetry.fetch(Domain.sensors))
    assert merged.readings[1].reading == 65.0


def test_fan_lock_ignores_snapshots_polled_before_lock(
    clock: ManualClock, telemetry: FakeTelemetry
) -> None:
    ledger = OverrideLedger(clock=clock.now)
    snapshot = telemetry.fetch(Domain.fans)
    ledger.record("Fan 1", OverrideKind.fan_lock, 80.0, generation=1)

    assert ledger.apply(Domain.fans, snapshot, generation=0) is snapshot
    assert ledger.apply(Domain.fans, snapshot).fans[0].speed == 40.0

    after = ledger.apply(Domain.fans, snapshot, generation=1)
    assert after.fans[0].speed == 80.0
    assert after.fans[1].speed == 40.0
    assert ledger.apply(Domain.fans, snapshot, generation=2).fans[0].speed == 80.0


def test_fan_lock_without_generation_always_applies(clock: ManualClock, telemetry: FakeTelemetry) -> None:
    ledger = OverrideLedger(clock=clock.now)
    ledger.record("Fan 2", OverrideKind.fan_lock, 70.0)

    merged = ledger.apply(Domain.fans, telemetry.fetch(Domain.fans), generation=0)

    assert merged.fans[1].speed == 70.0


def test_fan_speed_override_applies_immediately(clock: ManualClock, telemetry: FakeTelemetry) -> None:
    ledger = OverrideLedger(clock=clock.now)
    snapshot = telemetry.fetch(Domain.fans)
    clock.advance(1)
    ledger.record("Fan 2", OverrideKind.fan_speed, 55.0)

    merged = ledger.apply(Domain.fans, snapshot)

    assert merged.fans[1].speed == 55.0


def test_latest_fan_override_wins(clock: ManualClock, telemetry: FakeTelemetry) -> None:
    ledger = OverrideLedger(clock=clock.now)
    ledger.record("Fan 1", OverrideKind.fan_lock, 80.0)
    clock.advance(1)
    ledger.record("Fan 1", OverrideKind.fan_speed, 30.0)
    clock.advance(1)

    merged = ledger.apply(Domain.fans, telemetry.fetch(Domain.fans))

    assert merged.fans[0].speed == 30.0


def test_record_many_is_atomic(clock: ManualClock) -> None:
    ledger = OverrideLedger(clock=clock.now)

    created = ledger.record_many(
        [("Fan 1", OverrideKind.fan_lock, 70.0), ("Fan 2", OverrideKind.fan_lock, 70.0)]
    )

    assert {item.target for item in created} == {"Fan 1", "Fan 2"}
    assert all(item.applied_at == BASE_TIME for item in created)
    assert len(ledger.active(Domain.fans)) == 2


def test_reset_by_kind_keeps_other_overrides(clock: ManualClock) -> None:
    ledger = OverrideLedger(clock=clock.now)
    ledger.record("Fan 1", OverrideKind.fan_lock, 70.0)
    ledger.record("Fan 2", OverrideKind.fan_speed, 50.0)
    ledger.record("02-CPU 1", OverrideKind.sensor, 90.0)

    removed = ledger.reset(Domain.fans, kinds={OverrideKind.fan_lock})

    assert removed == 1
    assert {(item.target, item.kind) for item in ledger.active()} == {
        ("Fan 2", OverrideKind.fan_speed),
        ("02-CPU 1", OverrideKind.sensor),
    }


def test_expired_override_no_longer_applies(clock: ManualClock, telemetry: FakeTelemetry) -> None:
    ledger = OverrideLedger(clock=clock.now)
    ledger.record("02-CPU 1", OverrideKind.sensor, 90.0, ttl=timedelta(seconds=10))

    clock.advance(11)

    assert ledger.active() == []
    merged = ledger.apply(Domain.sensors, telemetry.fetch(Domain.sensors))
    assert merged.readings[1].reading == 45.0


def test_reset_everything(clock: ManualClock) -> None:
    ledger = OverrideLedger(clock=clock.now)
    ledger.record("Fan 1", OverrideKind.fan_lock, 70.0)
    ledger.record("02-CPU 1", OverrideKind.sensor, 90.0)

    assert ledger.reset() == 2
    assert ledger.active() == []


def test_override_for_unknown_sensor_leaves_snapshot_untouched(
    clock: ManualClock, telemetry: FakeTelemetry
) -> None:
    ledger = OverrideLedger(clock=clock.now)
    snapshot = telemetry.fetch(Domain.sensors)
    ledger.record("99-Missing", OverrideKind.sensor, 80.0)

    assert ledger.apply(Domain.sensors, snapshot) is snapshot


def test_override_for_unknown_fan_leaves_snapshot_untouched(
    clock: ManualClock, telemetry: FakeTelemetry
) -> None:
    ledger = OverrideLedger(clock=clock.now)
    snapshot = telemetry.fetch(Domain.fans)
    ledger.record("Fan 9", OverrideKind.fan_speed, 80.0)

    assert ledger.apply(Domain.fans, snapshot) is snapshot
