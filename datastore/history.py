"""Append-only telemetry history persisted in SQLite."""

from __future__ import annotations

import csv
import io
import json
import logging
import sqlite3
import threading
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from functools import lru_cache
from pathlib import Path
from threading import Lock
from typing import Any, Callable, Dict, Iterable, Iterator, List, Optional, Sequence, Tuple
from uuid import uuid4

from models.errors import ValidationError
from models.records import (
    Domain,
    FanReading,
    FanSnapshot,
    HistoryPoint,
    Sample,
    SensorReading,
    SensorSnapshot,
    Snapshot,
    snapshot_from_payload,
)
from services.aggregator import Aggregator, BucketSummary
from settings import get_settings

logger = logging.getLogger(__name__)

_SCHEMA = (
    """CREATE TABLE IF NOT EXISTS history_points (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        timestamp INTEGER NOT NULL,
        domain TEXT NOT NULL,
        payload TEXT NOT NULL
    )""",
    """CREATE TABLE IF NOT EXISTS sensor_readings (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        timestamp INTEGER NOT NULL,
        sensor_name TEXT NOT NULL,
        reading REAL NOT NULL,
        status TEXT NOT NULL,
        context TEXT,
        critical REAL,
        fatal REAL
    )""",
    """CREATE TABLE IF NOT EXISTS fan_readings (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        timestamp INTEGER NOT NULL,
        fan_name TEXT NOT NULL,
        speed REAL NOT NULL,
        status TEXT NOT NULL,
        health TEXT
    )""",
    "CREATE INDEX IF NOT EXISTS idx_history_points_domain_ts ON history_points(domain, timestamp)",
    "CREATE INDEX IF NOT EXISTS idx_sensor_readings_ts_name ON sensor_readings(timestamp, sensor_name)",
    "CREATE INDEX IF NOT EXISTS idx_fan_readings_ts_name ON fan_readings(timestamp, fan_name)",
)

EXPORT_COLUMNS: Dict[str, Tuple[str, ...]] = {
    "sensor_readings": ("timestamp", "sensor_name", "reading", "status", "context", "critical", "fatal"),
    "fan_readings": ("timestamp", "fan_name", "speed", "status", "health"),
    "history_points": ("timestamp", "domain", "payload"),
    "all": ("table_type", "timestamp", "name", "value", "status", "context"),
}
EXPORT_FORMATS = ("csv", "json", "txt")
MEDIA_TYPES = {"csv": "text/csv", "json": "application/json", "txt": "text/plain"}

_UNION_QUERY = """
    SELECT 'sensor' AS table_type, timestamp, sensor_name AS name, reading AS value, status, context
    FROM sensor_readings WHERE timestamp >= ?
    UNION ALL
    SELECT 'fan' AS table_type, timestamp, fan_name AS name, speed AS value, status, health AS context
    FROM fan_readings WHERE timestamp >= ?
    UNION ALL
    SELECT 'history' AS table_type, timestamp, domain AS name, payload AS value, 'stored' AS status, NULL AS context
    FROM history_points WHERE timestamp >= ?
    ORDER BY timestamp DESC
"""

_EXPORT_CHUNK_ROWS = 500


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def to_ms(value: datetime) -> int:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return int(value.timestamp() * 1000)


def from_ms(value: int) -> datetime:
    return datetime.fromtimestamp(value / 1000, tz=timezone.utc)


class HistoryStore:
    """Durable time series of snapshots.

    Every connection runs in autocommit mode and reads open an explicit
    transaction, so a retention sweep on another connection never changes the
    rows a running query or export sees.
    """

    def __init__(
        self,
        path: Optional[Path] = None,
        clock: Callable[[], datetime] = _utc_now,
        aggregator: Optional[Aggregator] = None,
    ) -> None:
        self.path = path
        self._clock = clock
        self.aggregator = aggregator or Aggregator()
        if path is not None:
            path.parent.mkdir(parents=True, exist_ok=True)
            self._target = str(path)
            self._uri = False
        else:
            self._target = f"file:history-{uuid4().hex}?mode=memory&cache=shared"
            self._uri = True
        self._local = threading.local()
        self._connections: List[sqlite3.Connection] = []
        self._connections_lock = Lock()
        self._write_lock = Lock()
        self._last_timestamps: Dict[Domain, int] = {}
        # Keeps a shared in-memory database alive for the store's lifetime.
        self._keeper = self._connection()
        for statement in _SCHEMA:
            self._keeper.execute(statement)

    def append(self, domain: Domain, snapshot: Snapshot, timestamp: datetime) -> HistoryPoint:
        ts = to_ms(timestamp)
        payload = json.dumps(snapshot.model_dump(mode="json"), sort_keys=True)
        with self._write_lock:
            last = self._last_timestamp(domain)
            if last is not None and ts <= last:
                ts = last + 1
            conn = self._connection()
            with _transaction(conn, "BEGIN IMMEDIATE"):
                conn.execute(
                    "INSERT INTO history_points (timestamp, domain, payload) VALUES (?, ?, ?)",
                    (ts, domain.value, payload),
                )
                if isinstance(snapshot, SensorSnapshot):
                    conn.executemany(
                        "INSERT INTO sensor_readings (timestamp, sensor_name, reading, status, context, critical, fatal)"
                        " VALUES (?, ?, ?, ?, ?, ?, ?)",
                        [
                            (ts, r.name, r.reading, r.status, r.context, r.critical, r.fatal)
                            for r in snapshot.readings
                        ],
                    )
                elif isinstance(snapshot, FanSnapshot):
                    conn.executemany(
                        "INSERT INTO fan_readings (timestamp, fan_name, speed, status, health)"
                        " VALUES (?, ?, ?, ?, ?)",
                        [(ts, f.name, f.speed, f.status, f.health) for f in snapshot.fans],
                    )
            self._last_timestamps[domain] = ts
        return HistoryPoint(timestamp=from_ms(ts), domain=domain, payload=snapshot)

    def range(
        self,
        domain: Domain,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> List[HistoryPoint]:
        """Points for ``domain`` with ``start <= timestamp <= end``, ascending."""
        sql, params = self._range_query(domain, start, end)
        conn = self._connection()
        with _transaction(conn, "BEGIN"):
            rows = conn.execute(sql, params).fetchall()
        return [self._to_point(domain, row) for row in rows]

    def latest(self, domain: Domain) -> Optional[HistoryPoint]:
        conn = self._connection()
        row = conn.execute(
            "SELECT timestamp, payload FROM history_points WHERE domain = ? ORDER BY timestamp DESC LIMIT 1",
            (domain.value,),
        ).fetchone()
        return self._to_point(domain, row) if row else None

    def sensor_readings(self, range_minutes: float, sensor_name: Optional[str] = None) -> List[SensorReading]:
        """Stored per-sensor rows from the last ``range_minutes``, ascending."""
        rows = self._readings(
            "SELECT timestamp, sensor_name, reading, status, context, critical, fatal FROM sensor_readings",
            "sensor_name",
            range_minutes,
            sensor_name,
        )
        return [
            SensorReading(
                name=name,
                reading=reading,
                status=status,
                context=context,
                critical=critical,
                fatal=fatal,
                timestamp=from_ms(timestamp),
            )
            for timestamp, name, reading, status, context, critical, fatal in rows
        ]

    def fan_readings(self, range_minutes: float, fan_name: Optional[str] = None) -> List[FanReading]:
        rows = self._readings(
            "SELECT timestamp, fan_name, speed, status, health FROM fan_readings",
            "fan_name",
            range_minutes,
            fan_name,
        )
        return [
            FanReading(name=name, speed=speed, status=status, health=health, timestamp=from_ms(timestamp))
            for timestamp, name, speed, status, health in rows
        ]

    def aggregate(
        self,
        domain: Domain,
        range_minutes: float,
        bucket_minutes: float,
        series: Optional[str] = None,
    ) -> List[BucketSummary]:
        if range_minutes <= 0 or bucket_minutes <= 0:
            raise ValidationError("Range and bucket sizes must be positive.")
        bucket_ms = int(bucket_minutes * 60 * 1000)
        if bucket_ms < 1:
            raise ValidationError("Bucket size must be at least one millisecond.")
        start = self._clock() - timedelta(minutes=range_minutes)
        sql, params = self._range_query(domain, start, None)
        conn = self._connection()
        with _transaction(conn, "BEGIN"):
            cursor = conn.execute(sql, params)
            samples = self._samples(domain, cursor, series)
            return self.aggregator.aggregate(samples, bucket_ms)

    def export(
        self,
        table: str,
        fmt: str,
        range_minutes: Optional[float] = None,
    ) -> Iterator[bytes]:
        """Stream a table as csv, json or txt without buffering it whole."""
        if table not in EXPORT_COLUMNS:
            raise ValidationError(f"Unknown table {table!r}.")
        if fmt not in EXPORT_FORMATS:
            raise ValidationError(f"Unsupported export format {fmt!r}.")
        if range_minutes is not None and range_minutes <= 0:
            raise ValidationError("Export range must be positive.")
        since = 0
        if range_minutes is not None:
            since = to_ms(self._clock() - timedelta(minutes=range_minutes))
        return self._stream_export(table, fmt, since)

    def prune(self, older_than: datetime) -> int:
        cutoff = to_ms(older_than)
        removed = 0
        with self._write_lock:
            conn = self._connection()
            with _transaction(conn, "BEGIN IMMEDIATE"):
                for table in ("history_points", "sensor_readings", "fan_readings"):
                    cursor = conn.execute(f"DELETE FROM {table} WHERE timestamp < ?", (cutoff,))
                    removed += cursor.rowcount
        logger.info("History pruned", extra={"row_count": removed})
        return removed

    def stats(self) -> Dict[str, Any]:
        conn = self._connection()
        with _transaction(conn, "BEGIN"):
            counts = {
                table: conn.execute(f"SELECT COUNT(*) FROM {table}").fetchone()[0]
                for table in ("sensor_readings", "fan_readings", "history_points")
            }
            oldest, newest = conn.execute(
                "SELECT MIN(timestamp), MAX(timestamp) FROM history_points"
            ).fetchone()
        size = self.path.stat().st_size if self.path is not None and self.path.exists() else None
        return {
            "total_records": sum(counts.values()),
            "sensor_records": counts["sensor_readings"],
            "fan_records": counts["fan_readings"],
            "history_records": counts["history_points"],
            "oldest_record": from_ms(oldest) if oldest is not None else None,
            "newest_record": from_ms(newest) if newest is not None else None,
            "database_bytes": size,
        }

    def close(self) -> None:
        with self._connections_lock:
            connections, self._connections = self._connections, []
        for conn in connections:
            conn.close()
        self._local = threading.local()

    def _connection(self) -> sqlite3.Connection:
        conn: Optional[sqlite3.Connection] = getattr(self._local, "connection", None)
        if conn is None:
            conn = self._open()
            self._local.connection = conn
            with self._connections_lock:
                self._connections.append(conn)
        return conn

    def _open(self) -> sqlite3.Connection:
        conn = sqlite3.connect(
            self._target,
            uri=self._uri,
            isolation_level=None,
            check_same_thread=False,
            timeout=5.0,
        )
        if not self._uri:
            conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA busy_timeout=5000")
        return conn

    def _last_timestamp(self, domain: Domain) -> Optional[int]:
        if domain not in self._last_timestamps:
            row = self._connection().execute(
                "SELECT MAX(timestamp) FROM history_points WHERE domain = ?", (domain.value,)
            ).fetchone()
            if row[0] is None:
                return None
            self._last_timestamps[domain] = int(row[0])
        return self._last_timestamps[domain]

    def _readings(
        self, select: str, name_column: str, range_minutes: float, name: Optional[str]
    ) -> List[Tuple[Any, ...]]:
        if range_minutes <= 0:
            raise ValidationError("Range must be positive.")
        sql = f"{select} WHERE timestamp >= ?"
        params: List[Any] = [to_ms(self._clock() - timedelta(minutes=range_minutes))]
        if name:
            sql += f" AND {name_column} = ?"
            params.append(name)
        sql += " ORDER BY timestamp ASC, id ASC"
        conn = self._connection()
        with _transaction(conn, "BEGIN"):
            return conn.execute(sql, params).fetchall()

    @staticmethod
    def _range_query(
        domain: Domain, start: Optional[datetime], end: Optional[datetime]
    ) -> Tuple[str, List[Any]]:
        sql = "SELECT timestamp, payload FROM history_points WHERE domain = ?"
        params: List[Any] = [domain.value]
        if start is not None:
            sql += " AND timestamp >= ?"
            params.append(to_ms(start))
        if end is not None:
            sql += " AND timestamp <= ?"
            params.append(to_ms(end))
        sql += " ORDER BY timestamp ASC"
        return sql, params

    @staticmethod
    def _to_point(domain: Domain, row: Sequence[Any]) -> HistoryPoint:
        timestamp, payload = row
        return HistoryPoint(
            timestamp=from_ms(timestamp),
            domain=domain,
            payload=snapshot_from_payload(domain, json.loads(payload)),
        )

    @staticmethod
    def _samples(domain: Domain, rows: Iterable[Sequence[Any]], series: Optional[str]) -> Iterator[Sample]:
        for timestamp, payload in rows:
            snapshot = snapshot_from_payload(domain, json.loads(payload))
            for sample in snapshot.samples(int(timestamp)):
                if series is None or sample.series == series:
                    yield sample

    def _stream_export(self, table: str, fmt: str, since: int) -> Iterator[bytes]:
        # A dedicated connection: the consumer may pull chunks from any thread.
        conn = self._open()
        try:
            with _transaction(conn, "BEGIN"):
                if table == "all":
                    cursor = conn.execute(_UNION_QUERY, (since, since, since))
                else:
                    columns = ", ".join(EXPORT_COLUMNS[table])
                    cursor = conn.execute(
                        f"SELECT {columns} FROM {table} WHERE timestamp >= ? ORDER BY timestamp DESC",
                        (since,),
                    )
                rows = (_export_row(table, EXPORT_COLUMNS[table], row) for row in cursor)
                if fmt == "csv":
                    yield from _csv_chunks(EXPORT_COLUMNS[table], rows)
                elif fmt == "json":
                    yield from _json_chunks(rows)
                else:
                    yield from _txt_chunks(table, rows)
        finally:
            conn.close()


def _export_row(table: str, columns: Sequence[str], row: Sequence[Any]) -> Dict[str, Any]:
    record = dict(zip(columns, row))
    record["timestamp"] = from_ms(record["timestamp"]).isoformat()
    if table == "history_points":
        record["payload"] = json.loads(record["payload"])
    elif table == "all" and record.get("table_type") == "history":
        record["value"] = json.loads(record["value"])
    return record


def _csv_cell(value: Any) -> Any:
    if isinstance(value, (dict, list)):
        return json.dumps(value, sort_keys=True)
    return "" if value is None else value


def _csv_chunks(columns: Sequence[str], rows: Iterable[Dict[str, Any]]) -> Iterator[bytes]:
    buffer = io.StringIO()
    writer = csv.writer(buffer)
    writer.writerow(columns)
    pending = 0
    for row in rows:
        writer.writerow([_csv_cell(row.get(column)) for column in columns])
        pending += 1
        if pending >= _EXPORT_CHUNK_ROWS:
            yield buffer.getvalue().encode("utf-8")
            buffer.seek(0)
            buffer.truncate()
            pending = 0
    if buffer.tell():
        yield buffer.getvalue().encode("utf-8")


def _json_chunks(rows: Iterable[Dict[str, Any]]) -> Iterator[bytes]:
    yield b"["
    first = True
    for row in rows:
        prefix = "\n" if first else ",\n"
        first = False
        yield (prefix + json.dumps(row, sort_keys=True)).encode("utf-8")
    yield b"\n]" if not first else b"]"


def _txt_line(table: str, row: Dict[str, Any]) -> str:
    kind = row.get("table_type")
    if table == "sensor_readings" or kind == "sensor":
        name = row.get("sensor_name") or row.get("name")
        value = row.get("reading", row.get("value"))
        return f"{row['timestamp']} | SENSOR | {name} | {value}°C | {row.get('status')}"
    if table == "fan_readings" or kind == "fan":
        name = row.get("fan_name") or row.get("name")
        value = row.get("speed", row.get("value"))
        return f"{row['timestamp']} | FAN | {name} | {value}% | {row.get('status')}"
    domain = row.get("domain") or row.get("name")
    payload = row.get("payload", row.get("value"))
    return f"{row['timestamp']} | {str(domain).upper()} | {json.dumps(payload, sort_keys=True)}"


def _txt_chunks(table: str, rows: Iterable[Dict[str, Any]]) -> Iterator[bytes]:
    empty = True
    for row in rows:
        empty = False
        yield (_txt_line(table, row) + "\n").encode("utf-8")
    if empty:
        yield b"No data found\n"


@contextmanager
def _transaction(conn: sqlite3.Connection, begin: str) -> Iterator[sqlite3.Connection]:
    conn.execute(begin)
    try:
        yield conn
    except BaseException:
        conn.execute("ROLLBACK")
        raise
    conn.execute("COMMIT")


@lru_cache
def build_default_history_store(path: Optional[str] = None) -> HistoryStore:
    settings = get_settings()
    history_path = settings.history_path if path is None else path
    return HistoryStore(path=Path(history_path) if history_path else None)
