"""Background polling and in-memory cache of controller telemetry."""

from __future__ import annotations

import logging
import time
import warnings
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, replace
from datetime import datetime, timedelta, timezone
from threading import RLock
from typing import Callable, Dict, Generic, Mapping, Optional, TypeVar

from controller.telemetry import TelemetrySource
from datastore.history import HistoryStore
from models.errors import CacheNotReady, StaleData
from models.records import Domain, Snapshot
from services.scheduler import ScheduledTask, Scheduler

logger = logging.getLogger(__name__)

T = TypeVar("T")


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class CacheEntry(Generic[T]):
    """Latest snapshot for one domain; replaced, never patched."""

    data: Optional[T] = None
    fetched_at: Optional[datetime] = None
    ttl: timedelta = timedelta(seconds=30)
    last_error: Optional[str] = None
    last_error_at: Optional[datetime] = None
    invalidated: bool = False
    generation: int = 0

    def is_stale(self, now: datetime) -> bool:
        if self.data is None or self.fetched_at is None:
            return False
        return self.invalidated or now - self.fetched_at > self.ttl


@dataclass(frozen=True)
class CacheRead(Generic[T]):
    """What a caller sees: data plus freshness, never an exception."""

    domain: Domain
    data: Optional[T]
    ready: bool
    stale: bool
    error: Optional[str]
    fetched_at: Optional[datetime]
    generation: int = 0

    def advisory(self) -> Optional[StaleData]:
        if not self.stale:
            return None
        return StaleData(self.domain.value, self.fetched_at)

    def require(self) -> T:
        if self.data is None:
            raise CacheNotReady(self.domain.value)
        advisory = self.advisory()
        if advisory is not None:
            warnings.warn(advisory, stacklevel=2)
        return self.data


class _DomainPoller:
    """Scheduling state for one domain. All fields guarded by ``lock``."""

    def __init__(self, domain: Domain, interval: float) -> None:
        self.domain = domain
        self.interval = interval
        self.lock = RLock()
        self.generation = 0
        self.in_flight: Optional[Future] = None
        self.in_flight_generation = -1
        self.follow_up: Optional[Future] = None
        self.hold_until = 0.0
        self.timer: Optional[ScheduledTask] = None


class PollingCache:
    """Independent fixed-interval pollers, one cache entry per domain.

    Reads are answered from memory only. Entries are written by their own
    poller; each write swaps in a new ``CacheEntry``.
    """

    def __init__(
        self,
        telemetry: TelemetrySource,
        scheduler: Scheduler,
        intervals: Mapping[Domain, float],
        ttls: Optional[Mapping[Domain, float]] = None,
        history: Optional[HistoryStore] = None,
        clock: Callable[[], datetime] = _utc_now,
        monotonic: Callable[[], float] = time.monotonic,
        workers: int = 4,
    ) -> None:
        self.telemetry = telemetry
        self.scheduler = scheduler
        self.history = history
        self._clock = clock
        self._monotonic = monotonic
        self.executor = ThreadPoolExecutor(max_workers=workers, thread_name_prefix="poller")
        self._pollers: Dict[Domain, _DomainPoller] = {
            domain: _DomainPoller(domain, interval) for domain, interval in intervals.items()
        }
        ttl_map = ttls or {}
        self._entries: Dict[Domain, CacheEntry] = {
            domain: CacheEntry(ttl=timedelta(seconds=ttl_map.get(domain, interval)))
            for domain, interval in intervals.items()
        }
        self._running = False

    @property
    def domains(self) -> list[Domain]:
        return list(self._pollers)

    @property
    def running(self) -> bool:
        return self._running

    def start(self) -> None:
        """Begin polling every domain, first fetch immediately."""
        self._running = True
        for poller in self._pollers.values():
            with poller.lock:
                if poller.timer is None:
                    poller.timer = self.scheduler.call_later(
                        0.0, self._tick, poller.domain, name=f"poll-{poller.domain.value}"
                    )
        logger.info("Polling started", extra={"domain": ",".join(d.value for d in self._pollers)})

    def shutdown(self) -> None:
        self._running = False
        for poller in self._pollers.values():
            with poller.lock:
                if poller.timer is not None:
                    poller.timer.cancel()
                    poller.timer = None
        self.executor.shutdown(wait=False, cancel_futures=True)

    def entry(self, domain: Domain) -> CacheEntry:
        return self._entries[domain]

    def read(self, domain: Domain) -> CacheRead:
        entry = self._entries[domain]
        return CacheRead(
            domain=domain,
            data=entry.data,
            ready=entry.data is not None,
            stale=entry.is_stale(self._clock()),
            error=entry.last_error,
            fetched_at=entry.fetched_at,
            generation=entry.generation,
        )

    def generation(self, domain: Domain) -> int:
        """Current invalidation generation; polls started now carry it."""
        poller = self._pollers[domain]
        with poller.lock:
            return poller.generation

    def force_refresh(self, domain: Domain) -> "Future[CacheEntry]":
        """Poll out of cycle; concurrent requests share one fetch."""
        poller = self._pollers[domain]
        with poller.lock:
            if not _busy(poller):
                return self._submit_locked(poller)
            if poller.in_flight_generation == poller.generation:
                return poller.in_flight
            # The running fetch predates an invalidation; queue one more.
            if poller.follow_up is None:
                poller.follow_up = Future()
            return poller.follow_up

    def invalidate(self, domain: Domain, hold: float = 0.0) -> None:
        """Mark the entry stale and ignore fetches already under way.

        Scheduled ticks are suppressed for ``hold`` seconds so the device has
        time to apply the change before the next read.
        """
        poller = self._pollers[domain]
        with poller.lock:
            poller.generation += 1
            poller.hold_until = max(poller.hold_until, self._monotonic() + hold)
            entry = self._entries[domain]
            self._entries[domain] = replace(entry, invalidated=True)
            generation = poller.generation
        logger.info("Cache entry invalidated", extra={"domain": domain.value, "generation": generation})

    def _tick(self, domain: Domain) -> None:
        poller = self._pollers[domain]
        with poller.lock:
            poller.timer = None
            if not self._running:
                return
            held = self._monotonic() < poller.hold_until
            if not held and not _busy(poller):
                self._submit_locked(poller)
            elif held:
                logger.debug("Scheduled poll held for settle", extra={"domain": domain.value})
            poller.timer = self.scheduler.call_later(
                poller.interval, self._tick, domain, name=f"poll-{domain.value}"
            )

    def _submit_locked(self, poller: _DomainPoller) -> "Future[CacheEntry]":
        generation = poller.generation
        future = self.executor.submit(self._poll, poller.domain, generation)
        poller.in_flight = future
        poller.in_flight_generation = generation
        future.add_done_callback(lambda done, p=poller: self._finish(p, done))
        return future

    def _finish(self, poller: _DomainPoller, finished: Future) -> None:
        with poller.lock:
            if poller.in_flight is finished:
                poller.in_flight = None
            follow_up = poller.follow_up
            if follow_up is None:
                return
            poller.follow_up = None
            if _busy(poller):
                # A newer poll already started; it serves the follow-up.
                chained = poller.in_flight
            else:
                try:
                    chained = self._submit_locked(poller)
                except RuntimeError:
                    # Executor already shut down.
                    follow_up.cancel()
                    return
        chained.add_done_callback(lambda done, target=follow_up: _transfer(done, target))

    def _poll(self, domain: Domain, generation: int) -> CacheEntry:
        started = time.perf_counter()
        try:
            snapshot: Snapshot = self.telemetry.fetch(domain)
        except Exception as exc:  # noqa: BLE001 - a failing domain must not stop its poller
            return self._record_failure(domain, exc, started)

        poller = self._pollers[domain]
        with poller.lock:
            previous = self._entries[domain]
            if generation != poller.generation:
                logger.info(
                    "Discarding poll started before invalidation",
                    extra={"domain": domain.value, "generation": generation},
                )
                return previous
            now = self._clock()
            fetched_at = now
            if previous.fetched_at is not None and previous.fetched_at > now:
                fetched_at = previous.fetched_at
            entry = CacheEntry(
                data=snapshot, fetched_at=fetched_at, ttl=previous.ttl, generation=generation
            )
            self._entries[domain] = entry

        logger.debug(
            "Poll succeeded",
            extra={"domain": domain.value, "elapsed_ms": _elapsed_ms(started)},
        )
        if self.history is not None:
            try:
                self.history.append(domain, snapshot, fetched_at)
            except Exception:  # noqa: BLE001 - history is best effort for the poller
                logger.exception("Failed to append history point", extra={"domain": domain.value})
        return entry

    def _record_failure(self, domain: Domain, exc: Exception, started: float) -> CacheEntry:
        poller = self._pollers[domain]
        with poller.lock:
            previous = self._entries[domain]
            entry = replace(previous, last_error=str(exc) or type(exc).__name__, last_error_at=self._clock())
            self._entries[domain] = entry
        logger.warning(
            "Poll failed; keeping last good data",
            extra={"domain": domain.value, "error": str(exc), "elapsed_ms": _elapsed_ms(started)},
        )
        return entry


def _transfer(source: Future, target: Future) -> None:
    if source.cancelled():
        target.cancel()
        return
    exc = source.exception()
    if exc is not None:
        target.set_exception(exc)
    else:
        target.set_result(source.result())


def _elapsed_ms(started: float) -> int:
    return int((time.perf_counter() - started) * 1000)


def _busy(poller: _DomainPoller) -> bool:
    return poller.in_flight is not None and not poller.in_flight.done()
