"""Shared fakes so no test touches the network or waits on wall-clock time."""

from __future__ import annotations

import heapq
import itertools
import threading
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Iterator, List, Optional, Tuple

import pytest

from datastore.history import HistoryStore
from models.errors import RemoteUnreachable
from models.records import (
    Domain,
    FanReading,
    FanSnapshot,
    PidRecord,
    PidSnapshot,
    PowerSnapshot,
    SensorReading,
    SensorSnapshot,
    Snapshot,
    SystemSnapshot,
)
from services.engine import SyncEngine
from services.polling_cache import PollingCache
from services.scheduler import ScheduledTask

BASE_TIME = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)


class ManualClock:
    """Wall and monotonic time that only move when a test says so."""

    def __init__(self, start: datetime = BASE_TIME) -> None:
        self._start = start
        self.offset = 0.0
        self._lock = threading.Lock()

    def now(self) -> datetime:
        with self._lock:
            return self._start + timedelta(seconds=self.offset)

    def monotonic(self) -> float:
        with self._lock:
            return self.offset

    def advance(self, seconds: float) -> None:
        with self._lock:
            self.offset += seconds


class ManualScheduler:
    """Scheduler whose due tasks run on the test thread during ``advance``."""

    def __init__(self, clock: ManualClock) -> None:
        self.clock = clock
        self._queue: List[Tuple[float, int, ScheduledTask]] = []
        self._counter = itertools.count()
        self._lock = threading.Lock()
        self.started = False
        self.stopped = False

    def call_later(
        self, delay: float, callback: Callable[..., Any], *args: Any, name: Optional[str] = None
    ) -> ScheduledTask:
        if self.stopped:
            raise RuntimeError("Scheduler has been shut down.")
        task = ScheduledTask(self.clock.monotonic() + max(delay, 0.0), callback, args, name)
        with self._lock:
            heapq.heappush(self._queue, (task.when, next(self._counter), task))
        return task

    def start(self) -> None:
        self.started = True

    def shutdown(self, wait: bool = True) -> None:
        self.stopped = True
        with self._lock:
            for _, _, task in self._queue:
                task.cancel()
            self._queue.clear()

    def pending(self, name: Optional[str] = None) -> List[ScheduledTask]:
        with self._lock:
            return [
                task
                for _, _, task in sorted(self._queue)
                if not task.cancelled and (name is None or task.name == name)
            ]

    def advance(self, seconds: float = 0.0) -> None:
        """Move time forward, running every task that falls due on the way."""
        target = self.clock.monotonic() + seconds
        while True:
            with self._lock:
                if not self._queue or self._queue[0][0] > target:
                    break
                when, _, task = heapq.heappop(self._queue)
            step = when - self.clock.monotonic()
            if step > 0:
                self.clock.advance(step)
            task.run()
        remaining = target - self.clock.monotonic()
        if remaining > 0:
            self.clock.advance(remaining)


class FakeTelemetry:
    """Returns snapshots built from mutable per-domain state.

    ``gate`` lets a test hold a fetch in flight after it has read its values.
    """

    def __init__(self, clock: ManualClock) -> None:
        self.clock = clock
        self.fan_speeds: Dict[str, float] = {"Fan 1": 40.0, "Fan 2": 40.0}
        self.sensor_values: Dict[str, float] = {"01-Inlet Ambient": 22.0, "02-CPU 1": 45.0}
        self.present_power = 120.0
        self.failures: Dict[Domain, Exception] = {}
        self.calls: Dict[Domain, int] = {domain: 0 for domain in Domain}
        self.gate: Optional[threading.Event] = None
        self.entered = threading.Event()
        self.queries: List[str] = []
        self.closed = False
        self._lock = threading.Lock()

    def fetch(self, domain: Domain) -> Snapshot:
        with self._lock:
            self.calls[domain] += 1
            failure = self.failures.get(domain)
            snapshot = None if failure else self._build(domain)
        self.entered.set()
        if self.gate is not None:
            self.gate.wait(timeout=5)
        if failure is not None:
            raise failure
        return snapshot

    def query(self, command: str) -> str:
        with self._lock:
            self.queries.append(command)
        return f"{command}\nFan 1: 40%\n"

    def close(self) -> None:
        self.closed = True

    def _build(self, domain: Domain) -> Snapshot:
        now = self.clock.now()
        if domain is Domain.sensors:
            return SensorSnapshot(
                readings=tuple(
                    SensorReading(
                        name=name,
                        context="Intake" if "Inlet" in name else "CPU",
                        reading=value,
                        critical=42.0 if "Inlet" in name else 70.0,
                        fatal=46.0 if "Inlet" in name else 100.0,
                        status="OK",
                        timestamp=now,
                    )
                    for name, value in self.sensor_values.items()
                ),
                timestamp=now,
            )
        if domain is Domain.fans:
            return FanSnapshot(
                fans=tuple(
                    FanReading(name=name, speed=speed, status="Enabled", health="OK", timestamp=now)
                    for name, speed in self.fan_speeds.items()
                ),
                timestamp=now,
            )
        if domain is Domain.power:
            return PowerSnapshot(present_power=self.present_power, average_power=110.0, timestamp=now)
        if domain is Domain.system:
            return SystemSnapshot(
                model="ProLiant DL380p Gen8",
                serial_number="CZ1234ABCD",
                ilo_generation="iLO 4",
                system_rom="P70 (02/14/2014)",
                ilo_firmware="2.82 (Feb 06 2023)",
                timestamp=now,
            )
        return PidSnapshot(
            records=(PidRecord(number=1, setpoint=40.0, low_limit=10.0, output=35.0, is_active=True),),
            timestamp=now,
        )


class FakeChannel:
    """Records commands and the peak number executing at once."""

    def __init__(self) -> None:
        self.commands: List[str] = []
        self.failures: Dict[str, Exception] = {}
        self.gate: Optional[threading.Event] = None
        self.entered = threading.Event()
        self.in_flight = 0
        self.max_in_flight = 0
        self.resets = 0
        self.closed = False
        self._lock = threading.Lock()

    def run(self, command: str, timeout: Optional[float] = None) -> str:
        with self._lock:
            self.in_flight += 1
            self.max_in_flight = max(self.max_in_flight, self.in_flight)
            self.commands.append(command)
        try:
            self.entered.set()
            if self.gate is not None:
                self.gate.wait(timeout=5)
            failure = self.failures.get(command)
            if failure is not None:
                raise failure
            return "status=0\nstatus_tag=COMMAND COMPLETED\n"
        finally:
            with self._lock:
                self.in_flight -= 1

    def reset(self) -> None:
        self.resets += 1

    def close(self) -> None:
        self.closed = True


def drain(cache: PollingCache, timeout: float = 5.0) -> None:
    """Wait for every poll currently in flight to finish."""
    for poller in cache._pollers.values():
        while True:
            with poller.lock:
                future = poller.in_flight
                follow_up = poller.follow_up
            if future is None or future.done():
                if follow_up is None or follow_up.done():
                    break
                follow_up.result(timeout=timeout)
                continue
            future.result(timeout=timeout)


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock()


@pytest.fixture
def scheduler(clock: ManualClock) -> ManualScheduler:
    return ManualScheduler(clock)


@pytest.fixture
def telemetry(clock: ManualClock) -> FakeTelemetry:
    return FakeTelemetry(clock)


@pytest.fixture
def channel() -> FakeChannel:
    return FakeChannel()


@pytest.fixture
def history(tmp_path, clock: ManualClock) -> Iterator[HistoryStore]:
    store = HistoryStore(path=tmp_path / "history.db", clock=clock.now)
    yield store
    store.close()


@pytest.fixture
def engine(
    telemetry: FakeTelemetry,
    channel: FakeChannel,
    history: HistoryStore,
    scheduler: ManualScheduler,
    clock: ManualClock,
) -> Iterator[SyncEngine]:
    sync = SyncEngine(
        telemetry=telemetry,
        channel=channel,
        history=history,
        scheduler=scheduler,
        intervals={
            Domain.sensors: 30.0,
            Domain.fans: 30.0,
            Domain.power: 30.0,
            Domain.pid: 60.0,
            Domain.system: 300.0,
        },
        settle_delay=2.0,
        clock=clock.now,
        monotonic=clock.monotonic,
    )
    yield sync
    sync.shutdown()


def unreachable(message: str = "controller offline") -> RemoteUnreachable:
    return RemoteUnreachable(message)
