"""Marks cache entries stale after a mutation and schedules the settle refresh."""

from __future__ import annotations

import logging
from concurrent.futures import Future
from threading import Lock
from typing import Dict, Iterable, Optional

from models.records import Domain
from services.polling_cache import PollingCache
from services.scheduler import ScheduledTask, Scheduler

logger = logging.getLogger(__name__)


class CacheInvalidationCoordinator:
    """At most one pending settle refresh per domain; a newer notify replaces it."""

    def __init__(self, cache: PollingCache, scheduler: Scheduler, settle_delay: float = 2.0) -> None:
        self.cache = cache
        self.scheduler = scheduler
        self.settle_delay = settle_delay
        self._pending: Dict[Domain, ScheduledTask] = {}
        self._lock = Lock()

    def notify(self, domains: Iterable[Domain], settle_delay: Optional[float] = None) -> None:
        delay = self.settle_delay if settle_delay is None else max(settle_delay, 0.0)
        for domain in dict.fromkeys(domains):
            self.cache.invalidate(domain, hold=delay)
            with self._lock:
                previous = self._pending.pop(domain, None)
                if previous is not None:
                    previous.cancel()
                self._pending[domain] = self.scheduler.call_later(
                    delay, self._settled, domain, name=f"settle-{domain.value}"
                )

    def pending(self) -> list[Domain]:
        with self._lock:
            return [domain for domain, task in self._pending.items() if not (task.done or task.cancelled)]

    def cancel_all(self) -> None:
        with self._lock:
            for task in self._pending.values():
                task.cancel()
            self._pending.clear()

    def _settled(self, domain: Domain) -> None:
        with self._lock:
            task = self._pending.get(domain)
            if task is not None and task.done:
                del self._pending[domain]
        try:
            future = self.cache.force_refresh(domain)
        except RuntimeError:
            logger.warning("Settle refresh skipped; poller stopped", extra={"domain": domain.value})
            return
        future.add_done_callback(lambda done: _log_settle(domain, done))


def _log_settle(domain: Domain, done: Future) -> None:
    if done.cancelled():
        return
    entry = done.result()
    if entry.last_error is not None and entry.invalidated:
        # The next scheduled tick retries.
        logger.warning(
            "Settle refresh failed",
            extra={"domain": domain.value, "error": entry.last_error},
        )
    else:
        logger.info("Settle refresh completed", extra={"domain": domain.value})
