"""Pydantic schemas for the HTTP API layer."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

from models.records import (
    Domain,
    FanSnapshot,
    OverrideKind,
    PidSnapshot,
    PowerSnapshot,
    SensorSnapshot,
    SystemSnapshot,
)


class _Request(BaseModel):
    """Accepts both the camelCase names clients send and snake_case."""

    model_config = ConfigDict(populate_by_name=True)


class SensorOverrideRequest(_Request):
    sensor_id: str = Field(..., alias="sensorId", min_length=1)
    value: float
    ttl_seconds: Optional[float] = Field(default=None, alias="ttlSeconds", gt=0)


class FanOverrideRequest(_Request):
    fan_name: str = Field(..., alias="fanName", min_length=1)
    speed: float
    ttl_seconds: Optional[float] = Field(default=None, alias="ttlSeconds", gt=0)


class FanSpeedRequest(_Request):
    speed: float


class FanLockRequest(_Request):
    fan_id: int = Field(..., alias="fanId")
    speed: float


class LowLimitRequest(_Request):
    id: int = Field(..., alias="sensorId")
    limit: float = Field(..., alias="lowLimit")


class PidLowLimitRequest(_Request):
    id: int = Field(..., alias="pidId")
    limit: float = Field(..., alias="lowLimit")


class InvalidateRequest(_Request):
    settle_seconds: float = Field(default=0.0, alias="settleSeconds", ge=0)


class DomainResponse(BaseModel):
    """Override-merged snapshot plus its freshness."""

    domain: Domain
    ready: bool
    stale: bool
    error: Optional[str] = None
    fetched_at: Optional[datetime] = None
    overridden: bool = False
    warning: Optional[str] = None
    data: Optional[Union[SensorSnapshot, FanSnapshot, PowerSnapshot, PidSnapshot, SystemSnapshot]] = None


class DiagnosticResponse(BaseModel):
    """Raw output of a read-only controller query."""

    command: str
    output: str
    fetched_at: datetime


class CommandResponse(BaseModel):
    id: int
    name: str
    state: str
    lines: List[str] = Field(default_factory=list)
    submitted_at: datetime
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    duration_ms: Optional[int] = None
    error: Optional[str] = None


class OverrideResponse(BaseModel):
    target: str
    kind: OverrideKind
    value: float
    applied_at: datetime
    expires_at: Optional[datetime] = None


class RefreshResponse(BaseModel):
    domain: Domain
    ready: bool
    fetched_at: Optional[datetime] = None
    error: Optional[str] = None


class HistoryPointResponse(BaseModel):
    timestamp: datetime
    domain: Domain
    payload: Dict[str, Any]


class BucketResponse(BaseModel):
    series: str
    bucket_start: datetime
    sample_count: int = Field(..., ge=0)
    min_value: Optional[float] = None
    max_value: Optional[float] = None
    mean_value: Optional[float] = None


class TimeRange(BaseModel):
    label: str
    minutes: int = Field(..., gt=0)


class HistoryStats(BaseModel):
    total_records: int = Field(..., ge=0)
    sensor_records: int = Field(..., ge=0)
    fan_records: int = Field(..., ge=0)
    history_records: int = Field(..., ge=0)
    oldest_record: Optional[datetime] = None
    newest_record: Optional[datetime] = None
    database_bytes: Optional[int] = None
