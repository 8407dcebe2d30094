"""Serialized execution of mutating controller commands."""

from __future__ import annotations

import itertools
import logging
import math
import time
from collections import deque
from concurrent.futures import CancelledError, Future, ThreadPoolExecutor
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from enum import Enum
from threading import Lock
from typing import Callable, Deque, Iterable, List, Optional, Sequence, Tuple

from controller import commands
from controller.shell import CommandChannel
from models.errors import CommandBusy, RemoteUnreachable, ValidationError
from models.records import Domain, FanSnapshot, OverrideKind, SensorSnapshot
from services.invalidation import CacheInvalidationCoordinator
from services.overrides import OverrideLedger
from services.polling_cache import PollingCache

logger = logging.getLogger(__name__)

MIN_FAN_PERCENT = 10
MAX_FAN_PERCENT = 100
MIN_LIMIT_PERCENT = 1
MAX_LIMIT_PERCENT = 100

# Sensor low limits are refused for anything whose name matches one of these.
PROTECTED_SENSOR_KEYWORDS = ("cpu", "ram", "memory", "power", "pwr", "supply", "dimm")


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class CommandState(str, Enum):
    queued = "queued"
    executing = "executing"
    completed = "completed"
    failed = "failed"


@dataclass(frozen=True)
class CommandRecord:
    """Outcome and timing of one submitted command."""

    id: int
    name: str
    lines: Tuple[str, ...]
    state: CommandState
    submitted_at: datetime
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    error: Optional[str] = None
    outputs: Tuple[str, ...] = field(default_factory=tuple)

    @property
    def duration_ms(self) -> Optional[int]:
        if self.started_at is None or self.finished_at is None:
            return None
        return int((self.finished_at - self.started_at).total_seconds() * 1000)


@dataclass(frozen=True)
class _Job:
    name: str
    lines: Tuple[str, ...]
    on_success: Optional[Callable[[], None]]
    domains: Tuple[Domain, ...]


def is_protected_sensor(name: str) -> bool:
    lowered = name.lower()
    return any(keyword in lowered for keyword in PROTECTED_SENSOR_KEYWORDS)


def _require_number(label: str, value: float) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)) or not math.isfinite(value):
        raise ValidationError(f"{label} must be a finite number.")
    return float(value)


def _require_range(label: str, value: float, low: float, high: float) -> float:
    number = _require_number(label, value)
    if not low <= number <= high:
        raise ValidationError(f"{label} must be between {low:g} and {high:g}, got {number:g}.")
    return number


def _require_index(label: str, value: int) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or value < 0:
        raise ValidationError(f"{label} must be a non-negative integer.")
    return value


class CommandExecutor:
    """FIFO command queue with exactly one command on the channel at a time.

    Every public operation validates its input, enqueues a job and blocks until
    that job finishes, returning the final ``CommandRecord`` or raising the
    error the channel reported. Override-only operations pass through the same
    queue so their ordering relative to device commands is preserved.
    """

    def __init__(
        self,
        channel: CommandChannel,
        ledger: OverrideLedger,
        coordinator: CacheInvalidationCoordinator,
        cache: PollingCache,
        fan_count: Optional[int] = None,
        queue_limit: int = 16,
        clock: Callable[[], datetime] = _utc_now,
        history_size: int = 50,
    ) -> None:
        self.channel = channel
        self.ledger = ledger
        self.coordinator = coordinator
        self.cache = cache
        self.fan_count = fan_count
        self.queue_limit = queue_limit
        self._clock = clock
        self._worker = ThreadPoolExecutor(max_workers=1, thread_name_prefix="command")
        self._ids = itertools.count(1)
        self._records: Deque[CommandRecord] = deque(maxlen=history_size)
        self._lock = Lock()
        self._outstanding = 0

    def override_sensor(
        self, sensor_id: str, value: float, ttl: Optional[timedelta] = None
    ) -> CommandRecord:
        if not sensor_id or not sensor_id.strip():
            raise ValidationError("Sensor id is required.")
        reading = _require_number("Sensor value", value)
        return self._run(
            "overrideSensor",
            (),
            lambda: self.ledger.record(sensor_id, OverrideKind.sensor, reading, ttl=ttl),
            (Domain.sensors,),
        )

    def override_fan(self, fan_name: str, speed: float, ttl: Optional[timedelta] = None) -> CommandRecord:
        """Display-only speed override; nothing is sent to the controller."""
        if not fan_name or not fan_name.strip():
            raise ValidationError("Fan name is required.")
        percent = _require_range("Fan speed", speed, 0, MAX_FAN_PERCENT)
        return self._run(
            "overrideFan",
            (),
            lambda: self.ledger.record(fan_name, OverrideKind.fan_speed, percent, ttl=ttl),
            (Domain.fans,),
        )

    def reset_overrides(self, domain: Optional[Domain] = None) -> CommandRecord:
        domains = (domain,) if domain is not None else (Domain.sensors, Domain.fans)
        return self._run("resetOverrides", (), lambda: self.ledger.reset(domain), domains)

    def set_all_fan_speeds(self, percent: float) -> CommandRecord:
        speed = _require_range("Fan speed", percent, MIN_FAN_PERCENT, MAX_FAN_PERCENT)
        names = self._fan_names()
        lines = (commands.FAN_UNLOCK,) + tuple(
            commands.fan_lock(index, speed) for index in range(len(names))
        )

        def record() -> None:
            self.ledger.record_many(
                [(name, OverrideKind.fan_lock, speed) for name in names],
                generation=self.cache.generation(Domain.fans),
            )

        return self._run("setAllFanSpeeds", lines, record, (Domain.fans,))

    def lock_fan_at_speed(self, index: int, percent: float) -> CommandRecord:
        fan_index = _require_index("Fan index", index)
        speed = _require_range("Fan speed", percent, MIN_FAN_PERCENT, MAX_FAN_PERCENT)
        name = self._fan_name(fan_index)
        return self._run(
            "lockFanAtSpeed",
            (commands.fan_lock(fan_index, speed),),
            lambda: self.ledger.record(
                name, OverrideKind.fan_lock, speed, generation=self.cache.generation(Domain.fans)
            ),
            (Domain.fans,),
        )

    def unlock_fan_control(self) -> CommandRecord:
        return self._run(
            "unlockFanControl",
            (commands.FAN_UNLOCK,),
            lambda: self.ledger.reset(Domain.fans, kinds={OverrideKind.fan_lock}),
            (Domain.fans,),
        )

    def set_sensor_low_limit(self, sensor_id: int, percent: float) -> CommandRecord:
        """Set the low limit of the PID loop driven by sensor ``sensor_id``.

        ``sensor_id`` is the controller's 0-based sensor number; the PID table
        numbers its loops from 1.
        """
        index = _require_index("Sensor id", sensor_id)
        limit = _require_range("Low limit", percent, MIN_LIMIT_PERCENT, MAX_LIMIT_PERCENT)
        name = self._sensor_name(index)
        if name is not None and is_protected_sensor(name):
            raise ValidationError(f"Low limit changes are not allowed for sensor {name!r}.")
        return self._run(
            "setSensorLowLimit",
            (commands.pid_low_limit(index + 1, limit),),
            None,
            (Domain.pid,),
        )

    def set_pid_low_limit(self, pid_id: int, percent: float) -> CommandRecord:
        number = _require_index("PID id", pid_id)
        limit = _require_range("Low limit", percent, MIN_LIMIT_PERCENT, MAX_LIMIT_PERCENT)
        return self._run(
            "setPidLowLimit",
            (commands.pid_low_limit(number, limit),),
            None,
            (Domain.pid,),
        )

    def recent(self) -> List[CommandRecord]:
        with self._lock:
            return list(self._records)

    def outstanding(self) -> int:
        with self._lock:
            return self._outstanding

    def shutdown(self) -> None:
        self._worker.shutdown(wait=False, cancel_futures=True)

    def submit(
        self,
        name: str,
        lines: Sequence[str],
        on_success: Optional[Callable[[], None]] = None,
        domains: Iterable[Domain] = (),
    ) -> "Future[CommandRecord]":
        job = _Job(name=name, lines=tuple(lines), on_success=on_success, domains=tuple(domains))
        with self._lock:
            if self._outstanding >= self.queue_limit:
                raise CommandBusy(
                    f"Command queue is full ({self.queue_limit} pending); try again shortly."
                )
            record = CommandRecord(
                id=next(self._ids),
                name=name,
                lines=job.lines,
                state=CommandState.queued,
                submitted_at=self._clock(),
            )
            self._records.append(record)
            self._outstanding += 1
            try:
                future = self._worker.submit(self._execute, job, record)
            except RuntimeError as exc:
                self._outstanding -= 1
                self._records.pop()
                raise RemoteUnreachable("Command rejected: the engine is stopping.") from exc
        future.add_done_callback(lambda done, queued=record: self._release_cancelled(done, queued))
        logger.info(
            "Command queued",
            extra={"command": name, "command_id": record.id, "state": record.state.value},
        )
        return future

    def _run(
        self,
        name: str,
        lines: Sequence[str],
        on_success: Optional[Callable[[], None]],
        domains: Iterable[Domain],
    ) -> CommandRecord:
        try:
            return self.submit(name, lines, on_success, domains).result()
        except CancelledError:
            raise RemoteUnreachable(f"Command {name} cancelled: the engine is stopping.") from None

    def _release_cancelled(self, future: "Future[CommandRecord]", record: CommandRecord) -> None:
        # Cancelled jobs never reach _execute, so account for them here.
        if not future.cancelled():
            return
        with self._lock:
            self._outstanding -= 1
        self._update(record, state=CommandState.failed, finished_at=self._clock(), error="cancelled")
        logger.warning("Command cancelled", extra={"command": record.name, "command_id": record.id})

    def _execute(self, job: _Job, record: CommandRecord) -> CommandRecord:
        record = self._update(record, state=CommandState.executing, started_at=self._clock())
        started = time.perf_counter()
        outputs: List[str] = []
        notified = False
        try:
            for line in job.lines:
                outputs.append(self.channel.run(line))
            # Invalidate before recording so fan locks carry the new generation.
            if job.domains:
                self.coordinator.notify(job.domains)
                notified = True
            if job.on_success is not None:
                job.on_success()
        except Exception as exc:
            record = self._update(
                record,
                state=CommandState.failed,
                finished_at=self._clock(),
                error=str(exc) or type(exc).__name__,
                outputs=tuple(outputs),
            )
            if outputs and not notified:
                # Part of the sequence reached the device; re-read real state.
                self.coordinator.notify(job.domains)
            logger.warning(
                "Command failed",
                extra={
                    "command": job.name,
                    "command_id": record.id,
                    "error": record.error,
                    "elapsed_ms": _elapsed_ms(started),
                },
            )
            raise
        finally:
            with self._lock:
                self._outstanding -= 1

        record = self._update(
            record,
            state=CommandState.completed,
            finished_at=self._clock(),
            outputs=tuple(outputs),
        )
        logger.info(
            "Command completed",
            extra={"command": job.name, "command_id": record.id, "elapsed_ms": _elapsed_ms(started)},
        )
        return record

    def _update(self, record: CommandRecord, **changes) -> CommandRecord:
        updated = replace(record, **changes)
        with self._lock:
            for position, existing in enumerate(self._records):
                if existing.id == record.id:
                    self._records[position] = updated
                    break
        return updated

    def _fan_snapshot(self) -> Optional[FanSnapshot]:
        data = self.cache.read(Domain.fans).data
        return data if isinstance(data, FanSnapshot) else None

    def _fan_names(self) -> List[str]:
        snapshot = self._fan_snapshot()
        if snapshot is not None and snapshot.fans:
            return snapshot.names()
        if self.fan_count:
            return [f"Fan {index + 1}" for index in range(self.fan_count)]
        raise ValidationError("Fan count unknown: no fan data has been fetched and FAN_COUNT is unset.")

    def _fan_name(self, index: int) -> str:
        snapshot = self._fan_snapshot()
        if snapshot is not None and index < len(snapshot.fans):
            return snapshot.fans[index].name
        if snapshot is not None and snapshot.fans:
            raise ValidationError(f"Fan index {index} out of range (0-{len(snapshot.fans) - 1}).")
        return f"Fan {index + 1}"

    def _sensor_name(self, index: int) -> Optional[str]:
        data = self.cache.read(Domain.sensors).data
        if isinstance(data, SensorSnapshot) and index < len(data.readings):
            return data.readings[index].name
        return None


def _elapsed_ms(started: float) -> int:
    return int((time.perf_counter() - started) * 1000)
