"""History query, aggregation and export routes."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from fastapi.responses import StreamingResponse

from app.api import get_engine, raise_http_error
from app.schemas import BucketResponse, HistoryPointResponse, HistoryStats, TimeRange
from datastore.history import MEDIA_TYPES, HistoryStore
from models.errors import EngineError
from models.records import Domain, FanReading, HistoryPoint, SensorReading
from services.engine import SyncEngine

router = APIRouter(prefix="/history", tags=["history"])

TIME_RANGES = (
    TimeRange(label="5 minutes", minutes=5),
    TimeRange(label="15 minutes", minutes=15),
    TimeRange(label="30 minutes", minutes=30),
    TimeRange(label="1 hour", minutes=60),
    TimeRange(label="2 hours", minutes=120),
    TimeRange(label="24 hours", minutes=1440),
)


def get_history(engine: SyncEngine = Depends(get_engine)) -> HistoryStore:
    if engine.history is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="History storage is disabled.",
        )
    return engine.history


def _point_response(point: HistoryPoint) -> HistoryPointResponse:
    return HistoryPointResponse(
        timestamp=point.timestamp,
        domain=point.domain,
        payload=point.payload.model_dump(mode="json"),
    )


@router.get("", response_model=List[HistoryPointResponse], summary="Stored snapshots in a time window.")
def history_range(
    domain: Domain,
    minutes: Optional[float] = Query(default=None, gt=0),
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    history: HistoryStore = Depends(get_history),
) -> List[HistoryPointResponse]:
    if minutes is not None:
        if start is not None:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail="Pass either minutes or start, not both.",
            )
        start = datetime.now(timezone.utc) - timedelta(minutes=minutes)
    if start is not None and end is not None and start > end:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="start must not be after end.",
        )
    return [_point_response(point) for point in history.range(domain, start, end)]


@router.get("/aggregated", response_model=List[BucketResponse], summary="Bucketed min/max/mean per series.")
def history_aggregated(
    domain: Domain,
    range_minutes: float = Query(default=60, alias="range"),
    bucket_minutes: float = Query(default=5, alias="bucket"),
    series: Optional[str] = None,
    history: HistoryStore = Depends(get_history),
) -> List[BucketResponse]:
    try:
        buckets = history.aggregate(domain, range_minutes, bucket_minutes, series=series)
    except EngineError as exc:
        raise_http_error(exc)
    return [
        BucketResponse(
            series=bucket.series,
            bucket_start=bucket.bucket_start,
            sample_count=bucket.sample_count,
            min_value=bucket.min_value,
            max_value=bucket.max_value,
            mean_value=bucket.mean_value,
        )
        for bucket in buckets
    ]


@router.get("/sensors", response_model=List[SensorReading], summary="Stored sensor rows, optionally one sensor.")
def history_sensors(
    range_minutes: float = Query(default=15, alias="range", gt=0),
    sensor_name: Optional[str] = Query(default=None, alias="sensorName"),
    history: HistoryStore = Depends(get_history),
) -> List[SensorReading]:
    try:
        return history.sensor_readings(range_minutes, sensor_name)
    except EngineError as exc:
        raise_http_error(exc)


@router.get("/fans", response_model=List[FanReading], summary="Stored fan rows, optionally one fan.")
def history_fans(
    range_minutes: float = Query(default=15, alias="range", gt=0),
    fan_name: Optional[str] = Query(default=None, alias="fanName"),
    history: HistoryStore = Depends(get_history),
) -> List[FanReading]:
    try:
        return history.fan_readings(range_minutes, fan_name)
    except EngineError as exc:
        raise_http_error(exc)


@router.get("/latest/{domain}", response_model=HistoryPointResponse, summary="Most recent stored snapshot.")
def history_latest(domain: Domain, history: HistoryStore = Depends(get_history)) -> HistoryPointResponse:
    point = history.latest(domain)
    if point is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"No history stored for {domain.value!r}.",
        )
    return _point_response(point)


@router.get("/export", summary="Stream a history table as csv, json or txt.")
def history_export(
    table: str = "all",
    fmt: str = Query(default="csv", alias="format"),
    range_minutes: Optional[float] = Query(default=None, alias="range"),
    history: HistoryStore = Depends(get_history),
) -> StreamingResponse:
    try:
        chunks = history.export(table, fmt, range_minutes=range_minutes)
    except EngineError as exc:
        raise_http_error(exc)
    stamp = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%SZ")
    return StreamingResponse(
        chunks,
        media_type=MEDIA_TYPES[fmt],
        headers={"Content-Disposition": f'attachment; filename="ilo_{table}_{stamp}.{fmt}"'},
    )


@router.get("/time-ranges", response_model=List[TimeRange], summary="Preset history windows.")
async def history_time_ranges() -> List[TimeRange]:
    return list(TIME_RANGES)


@router.get("/stats", response_model=HistoryStats, summary="Row counts and storage size.")
def history_stats(history: HistoryStore = Depends(get_history)) -> HistoryStats:
    return HistoryStats(**history.stats())
