"""Domain models shared across services."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import ClassVar, Iterator, Optional, Tuple, Type, Union

from pydantic import BaseModel, ConfigDict, Field


class Domain(str, Enum):
    """Telemetry categories polled and cached independently."""

    sensors = "sensors"
    fans = "fans"
    power = "power"
    pid = "pid-info"
    system = "system-info"


class OverrideKind(str, Enum):
    sensor = "sensor"
    fan_speed = "fanSpeed"
    fan_lock = "fanLock"


OVERRIDE_DOMAINS = {
    OverrideKind.sensor: Domain.sensors,
    OverrideKind.fan_speed: Domain.fans,
    OverrideKind.fan_lock: Domain.fans,
}


class _Frozen(BaseModel):
    model_config = ConfigDict(frozen=True)


@dataclass(frozen=True, slots=True)
class Sample:
    """A single numeric point of a named series."""

    series: str
    timestamp_ms: int
    value: float


class SensorReading(_Frozen):
    name: str
    context: Optional[str] = None
    reading: float
    critical: Optional[float] = None
    fatal: Optional[float] = None
    status: str = "Unknown"
    timestamp: datetime


class FanReading(_Frozen):
    name: str
    speed: float = Field(..., ge=0, le=100)
    status: str = "Unknown"
    health: Optional[str] = None
    timestamp: datetime


class PidRecord(_Frozen):
    number: int
    kp: Optional[float] = None
    ki: Optional[float] = None
    kd: Optional[float] = None
    setpoint: Optional[float] = None
    low_limit: Optional[float] = None
    high_limit: Optional[float] = None
    current_reading: Optional[float] = None
    prev_drive: Optional[float] = None
    output: Optional[float] = None
    is_active: bool = False


class SensorSnapshot(_Frozen):
    domain: ClassVar[Domain] = Domain.sensors

    readings: Tuple[SensorReading, ...] = ()
    timestamp: datetime

    def samples(self, timestamp_ms: int) -> Iterator[Sample]:
        for reading in self.readings:
            yield Sample(reading.name, timestamp_ms, reading.reading)


class FanSnapshot(_Frozen):
    domain: ClassVar[Domain] = Domain.fans

    fans: Tuple[FanReading, ...] = ()
    timestamp: datetime

    def names(self) -> list[str]:
        return [fan.name for fan in self.fans]

    def samples(self, timestamp_ms: int) -> Iterator[Sample]:
        for fan in self.fans:
            yield Sample(fan.name, timestamp_ms, fan.speed)


class PowerSnapshot(_Frozen):
    domain: ClassVar[Domain] = Domain.power

    present_power: float = 0.0
    average_power: float = 0.0
    min_power: float = 0.0
    max_power: float = 0.0
    power_cap: float = 0.0
    regulation_mode: str = ""
    warning_type: str = ""
    warning_threshold: float = 0.0
    warning_duration: float = 0.0
    supply_capacity: float = 0.0
    firmware_version: str = ""
    auto_power_restore: str = ""
    timestamp: datetime

    _SERIES: ClassVar[Tuple[str, ...]] = (
        "present_power",
        "average_power",
        "min_power",
        "max_power",
    )

    def samples(self, timestamp_ms: int) -> Iterator[Sample]:
        for name in self._SERIES:
            yield Sample(name, timestamp_ms, float(getattr(self, name)))


class PidSnapshot(_Frozen):
    domain: ClassVar[Domain] = Domain.pid

    records: Tuple[PidRecord, ...] = ()
    timestamp: datetime

    def samples(self, timestamp_ms: int) -> Iterator[Sample]:
        for record in self.records:
            if record.output is not None:
                yield Sample(f"pid{record.number}", timestamp_ms, record.output)


class SystemSnapshot(_Frozen):
    """Identity of the managed server and its controller."""

    domain: ClassVar[Domain] = Domain.system

    model: str = "Unknown"
    serial_number: str = "Unknown"
    ilo_generation: str = "Unknown"
    system_rom: str = "Unknown"
    ilo_firmware: str = "Unknown"
    timestamp: datetime

    def samples(self, timestamp_ms: int) -> Iterator[Sample]:
        return iter(())


Snapshot = Union[SensorSnapshot, FanSnapshot, PowerSnapshot, PidSnapshot, SystemSnapshot]

SNAPSHOT_TYPES: dict[Domain, Type[BaseModel]] = {
    Domain.sensors: SensorSnapshot,
    Domain.fans: FanSnapshot,
    Domain.power: PowerSnapshot,
    Domain.pid: PidSnapshot,
    Domain.system: SystemSnapshot,
}


def snapshot_from_payload(domain: Domain, payload: dict) -> Snapshot:
    return SNAPSHOT_TYPES[domain].model_validate(payload)  # type: ignore[return-value]


class Override(_Frozen):
    """A manually forced value that supersedes live telemetry."""

    target: str
    kind: OverrideKind
    value: float
    applied_at: datetime
    expires_at: Optional[datetime] = None
    # Fan locks apply only to cache entries polled at or after this generation.
    generation: Optional[int] = None

    @property
    def key(self) -> tuple[str, OverrideKind]:
        return (self.target, self.kind)

    @property
    def domain(self) -> Domain:
        return OVERRIDE_DOMAINS[self.kind]

    def is_active(self, now: datetime) -> bool:
        return self.expires_at is None or now < self.expires_at


@dataclass(frozen=True)
class HistoryPoint:
    """One persisted snapshot; never mutated after it is written."""

    timestamp: datetime
    domain: Domain
    payload: Snapshot
