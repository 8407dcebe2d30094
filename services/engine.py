"""Explicit owner of every piece of synchronization state."""

from __future__ import annotations

import logging
import time
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from functools import lru_cache
from typing import Any, Callable, Dict, Mapping, Optional

from controller.shell import CommandChannel, build_default_channel
from controller.telemetry import TelemetrySource, build_default_telemetry_client
from datastore.history import HistoryStore, build_default_history_store
from models.records import Domain, Snapshot
from services.executor import CommandExecutor
from services.invalidation import CacheInvalidationCoordinator
from services.overrides import OverrideLedger
from services.polling_cache import CacheEntry, PollingCache
from services.scheduler import ScheduledTask, Scheduler, TaskScheduler
from settings import Settings, get_settings

logger = logging.getLogger(__name__)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class MergedRead:
    """Override-merged view of one domain as served to callers."""

    domain: Domain
    data: Optional[Snapshot]
    ready: bool
    stale: bool
    error: Optional[str]
    fetched_at: Optional[datetime]
    overridden: bool
    warning: Optional[str] = None


@dataclass(frozen=True)
class Diagnostic:
    command: str
    output: str
    fetched_at: datetime


def intervals_from_settings(settings: Settings) -> Dict[Domain, float]:
    return {
        Domain.sensors: settings.sensors_poll_interval,
        Domain.fans: settings.fans_poll_interval,
        Domain.power: settings.power_poll_interval,
        Domain.pid: settings.pid_poll_interval,
        Domain.system: settings.system_poll_interval,
    }


class SyncEngine:
    """Wires the cache, ledger, coordinator, executor and history together."""

    def __init__(
        self,
        telemetry: TelemetrySource,
        channel: CommandChannel,
        history: Optional[HistoryStore],
        scheduler: Scheduler,
        intervals: Mapping[Domain, float],
        ttl_factor: float = 2.0,
        settle_delay: float = 2.0,
        fan_count: Optional[int] = None,
        queue_limit: int = 16,
        poll_workers: int = 4,
        retention: timedelta = timedelta(hours=72),
        sweep_interval: float = 3600.0,
        clock: Callable[[], datetime] = _utc_now,
        monotonic: Callable[[], float] = time.monotonic,
    ) -> None:
        self.telemetry = telemetry
        self.channel = channel
        self.history = history
        self.scheduler = scheduler
        self.retention = retention
        self.sweep_interval = sweep_interval
        self._clock = clock
        self.ledger = OverrideLedger(clock=clock)
        self.cache = PollingCache(
            telemetry=telemetry,
            scheduler=scheduler,
            intervals=intervals,
            ttls={domain: interval * ttl_factor for domain, interval in intervals.items()},
            history=history,
            clock=clock,
            monotonic=monotonic,
            workers=poll_workers,
        )
        self.coordinator = CacheInvalidationCoordinator(self.cache, scheduler, settle_delay)
        self.executor = CommandExecutor(
            channel=channel,
            ledger=self.ledger,
            coordinator=self.coordinator,
            cache=self.cache,
            fan_count=fan_count,
            queue_limit=queue_limit,
            clock=clock,
        )
        self._maintenance = ThreadPoolExecutor(max_workers=1, thread_name_prefix="retention")
        self._sweep: Optional[ScheduledTask] = None
        self._started_at: Optional[datetime] = None

    def start(self) -> None:
        self.scheduler.start()
        self.cache.start()
        if self.history is not None:
            self._sweep = self.scheduler.call_later(0.0, self._schedule_sweep, name="retention")
        self._started_at = self._clock()
        logger.info("Engine started")

    def shutdown(self) -> None:
        self.coordinator.cancel_all()
        self.cache.shutdown()
        if self._sweep is not None:
            self._sweep.cancel()
        self.scheduler.shutdown(wait=False)
        self.executor.shutdown()
        self._maintenance.shutdown(wait=True, cancel_futures=True)
        self.channel.close()
        self.telemetry.close()
        if self.history is not None:
            self.history.close()
        logger.info("Engine stopped")

    def read(self, domain: Domain) -> MergedRead:
        """Cached snapshot with active overrides applied; no remote I/O."""
        cached = self.cache.read(domain)
        data = cached.data
        merged = self.ledger.apply(domain, data, cached.generation) if data is not None else None
        advisory = cached.advisory()
        return MergedRead(
            domain=domain,
            data=merged,
            ready=cached.ready,
            stale=cached.stale,
            error=cached.error,
            fetched_at=cached.fetched_at,
            overridden=merged is not data,
            warning=str(advisory) if advisory is not None else None,
        )

    def diagnostic(self, command: str) -> Diagnostic:
        """Run a read-only query directly against the controller."""
        started = time.perf_counter()
        output = self.telemetry.query(command)
        logger.info(
            "Diagnostic query finished",
            extra={"command": command, "elapsed_ms": int((time.perf_counter() - started) * 1000)},
        )
        return Diagnostic(command=command, output=output, fetched_at=self._clock())

    def refresh(self, domain: Domain) -> "Future[CacheEntry]":
        return self.cache.force_refresh(domain)

    def invalidate(self, domain: Domain, settle_delay: Optional[float] = None) -> None:
        self.coordinator.notify([domain], settle_delay=settle_delay)

    def prune_history(self) -> int:
        if self.history is None:
            return 0
        return self.history.prune(self._clock() - self.retention)

    def status(self) -> Dict[str, Any]:
        domains: Dict[str, Any] = {}
        for domain in self.cache.domains:
            entry = self.cache.entry(domain)
            domains[domain.value] = {
                "ready": entry.data is not None,
                "stale": entry.is_stale(self._clock()),
                "fetched_at": entry.fetched_at,
                "last_error": entry.last_error,
                "last_error_at": entry.last_error_at,
                "ttl_seconds": entry.ttl.total_seconds(),
            }
        return {
            "running": self.cache.running,
            "started_at": self._started_at,
            "domains": domains,
            "pending_settle": [domain.value for domain in self.coordinator.pending()],
            "queued_commands": self.executor.outstanding(),
            "active_overrides": len(self.ledger.active()),
        }

    def _schedule_sweep(self) -> None:
        self._maintenance.submit(self._run_sweep)
        self._sweep = self.scheduler.call_later(
            self.sweep_interval, self._schedule_sweep, name="retention"
        )

    def _run_sweep(self) -> None:
        try:
            self.prune_history()
        except Exception:  # noqa: BLE001 - the next sweep retries
            logger.exception("Retention sweep failed")


def build_engine(
    settings: Settings,
    telemetry: Optional[TelemetrySource] = None,
    channel: Optional[CommandChannel] = None,
    history: Optional[HistoryStore] = None,
    scheduler: Optional[Scheduler] = None,
) -> SyncEngine:
    return SyncEngine(
        telemetry=telemetry or build_default_telemetry_client(),
        channel=channel or build_default_channel(),
        history=history if history is not None else build_default_history_store(),
        scheduler=scheduler or TaskScheduler(),
        intervals=intervals_from_settings(settings),
        ttl_factor=settings.cache_ttl_factor,
        settle_delay=settings.settle_delay,
        fan_count=settings.fan_count,
        queue_limit=settings.command_queue_limit,
        poll_workers=settings.poll_workers,
        retention=timedelta(hours=settings.history_retention_hours),
        sweep_interval=settings.history_sweep_interval,
    )


@lru_cache
def build_default_engine() -> SyncEngine:
    return build_engine(get_settings())
