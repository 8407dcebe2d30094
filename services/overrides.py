"""Manually forced values merged over live telemetry."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from threading import Lock
from typing import Callable, Dict, Iterable, List, Mapping, Optional, Set, Tuple

from controller.parsers import classify_reading
from models.records import (
    Domain,
    FanSnapshot,
    Override,
    OverrideKind,
    SensorSnapshot,
    Snapshot,
)

logger = logging.getLogger(__name__)

_Key = Tuple[str, OverrideKind]


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class OverrideLedger:
    """Holds overrides keyed by (target, kind).

    The backing map is replaced on every write so readers never take the
    lock.
    """

    def __init__(self, clock: Callable[[], datetime] = _utc_now) -> None:
        self._clock = clock
        self._overrides: Mapping[_Key, Override] = {}
        self._write_lock = Lock()

    def record(
        self,
        target: str,
        kind: OverrideKind,
        value: float,
        ttl: Optional[timedelta] = None,
        generation: Optional[int] = None,
    ) -> Override:
        return self.record_many([(target, kind, value)], ttl=ttl, generation=generation)[0]

    def record_many(
        self,
        entries: Iterable[Tuple[str, OverrideKind, float]],
        ttl: Optional[timedelta] = None,
        generation: Optional[int] = None,
    ) -> List[Override]:
        """Record several overrides in one atomic swap."""
        now = self._clock()
        expires_at = now + ttl if ttl is not None else None
        created = [
            Override(
                target=target,
                kind=kind,
                value=value,
                applied_at=now,
                expires_at=expires_at,
                generation=generation,
            )
            for target, kind, value in entries
        ]
        with self._write_lock:
            updated: Dict[_Key, Override] = {
                key: item for key, item in self._overrides.items() if item.is_active(now)
            }
            for override in created:
                updated[override.key] = override
            self._overrides = updated
        for override in created:
            logger.info(
                "Override recorded",
                extra={"target": override.target, "state": override.kind.value},
            )
        return created

    def reset(self, domain: Optional[Domain] = None, kinds: Optional[Set[OverrideKind]] = None) -> int:
        """Drop every override for ``domain`` (all domains when omitted)."""
        with self._write_lock:
            kept: Dict[_Key, Override] = {}
            for key, override in self._overrides.items():
                matches_domain = domain is None or override.domain == domain
                matches_kind = kinds is None or override.kind in kinds
                if not (matches_domain and matches_kind):
                    kept[key] = override
            removed = len(self._overrides) - len(kept)
            self._overrides = kept
        logger.info(
            "Overrides reset",
            extra={"domain": domain.value if domain else "all", "row_count": removed},
        )
        return removed

    def active(self, domain: Optional[Domain] = None) -> List[Override]:
        now = self._clock()
        return sorted(
            (
                item
                for item in self._overrides.values()
                if item.is_active(now) and (domain is None or item.domain == domain)
            ),
            key=lambda item: item.applied_at,
        )

    def apply(self, domain: Domain, snapshot: Snapshot, generation: Optional[int] = None) -> Snapshot:
        """Merge active overrides into ``snapshot``.

        ``generation`` is the cache generation the snapshot was polled in. A
        fan lock recorded with a generation only applies once a snapshot from
        that generation or later arrives. The input is returned unchanged when
        no override touches it.
        """
        overrides = self.active(domain)
        if not overrides:
            return snapshot
        if domain is Domain.sensors and isinstance(snapshot, SensorSnapshot):
            return self._apply_sensors(snapshot, overrides)
        if domain is Domain.fans and isinstance(snapshot, FanSnapshot):
            return self._apply_fans(snapshot, overrides, generation)
        return snapshot

    @staticmethod
    def _apply_sensors(snapshot: SensorSnapshot, overrides: List[Override]) -> SensorSnapshot:
        forced = {item.target: item.value for item in overrides if item.kind is OverrideKind.sensor}
        if not any(reading.name in forced for reading in snapshot.readings):
            return snapshot
        readings = []
        for reading in snapshot.readings:
            value = forced.get(reading.name)
            if value is None:
                readings.append(reading)
                continue
            readings.append(
                reading.model_copy(
                    update={
                        "reading": value,
                        "status": classify_reading(
                            value, reading.critical, reading.fatal, fallback=reading.status
                        ),
                    }
                )
            )
        return snapshot.model_copy(update={"readings": tuple(readings)})

    @staticmethod
    def _apply_fans(
        snapshot: FanSnapshot, overrides: List[Override], generation: Optional[int]
    ) -> FanSnapshot:
        forced: Dict[str, float] = {}
        # Sorted by applied_at, so the newest override for a fan wins.
        for item in overrides:
            if item.kind is OverrideKind.fan_lock and not _lock_visible(item, generation):
                continue
            forced[item.target] = item.value
        if not any(fan.name in forced for fan in snapshot.fans):
            return snapshot
        fans = [
            fan.model_copy(update={"speed": forced[fan.name]}) if fan.name in forced else fan
            for fan in snapshot.fans
        ]
        return snapshot.model_copy(update={"fans": tuple(fans)})


def _lock_visible(lock: Override, generation: Optional[int]) -> bool:
    if lock.generation is None:
        return True
    # Polled before the lock reached the device.
    return generation is not None and generation >= lock.generation
