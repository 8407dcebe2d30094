"""HTTP route definitions for the service."""

from __future__ import annotations

from concurrent.futures import TimeoutError as FutureTimeout
from datetime import timedelta
from typing import Callable, List, NoReturn, Optional

from fastapi import APIRouter, Depends, HTTPException, status

from app.schemas import (
    CommandResponse,
    DiagnosticResponse,
    DomainResponse,
    FanLockRequest,
    FanOverrideRequest,
    FanSpeedRequest,
    InvalidateRequest,
    LowLimitRequest,
    OverrideResponse,
    PidLowLimitRequest,
    RefreshResponse,
    SensorOverrideRequest,
)
from controller.commands import FAN_GROUP_QUERY, FAN_INFO_QUERY
from models.errors import (
    CommandBusy,
    CommandRejected,
    CommandTimeout,
    EngineError,
    RemoteUnreachable,
    ValidationError,
)
from models.records import Domain
from services.engine import SyncEngine, build_default_engine
from services.executor import CommandRecord
from settings import get_settings

router = APIRouter()

_ERROR_STATUS = (
    (ValidationError, status.HTTP_400_BAD_REQUEST),
    (CommandBusy, status.HTTP_409_CONFLICT),
    (CommandRejected, status.HTTP_502_BAD_GATEWAY),
    (RemoteUnreachable, status.HTTP_503_SERVICE_UNAVAILABLE),
    (CommandTimeout, status.HTTP_504_GATEWAY_TIMEOUT),
)


def get_engine() -> SyncEngine:
    return build_default_engine()


def raise_http_error(exc: EngineError) -> NoReturn:
    for error_type, code in _ERROR_STATUS:
        if isinstance(exc, error_type):
            raise HTTPException(status_code=code, detail=str(exc)) from exc
    raise HTTPException(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        detail=str(exc),
    ) from exc


def _execute(call: Callable[[], CommandRecord]) -> CommandResponse:
    try:
        record = call()
    except EngineError as exc:
        raise_http_error(exc)
    return command_response(record)


def command_response(record: CommandRecord) -> CommandResponse:
    return CommandResponse(
        id=record.id,
        name=record.name,
        state=record.state.value,
        lines=list(record.lines),
        submitted_at=record.submitted_at,
        started_at=record.started_at,
        finished_at=record.finished_at,
        duration_ms=record.duration_ms,
        error=record.error,
    )


def _ttl(seconds: Optional[float]) -> Optional[timedelta]:
    return timedelta(seconds=seconds) if seconds is not None else None


def _domain_response(engine: SyncEngine, domain: Domain) -> DomainResponse:
    merged = engine.read(domain)
    return DomainResponse(
        domain=domain,
        ready=merged.ready,
        stale=merged.stale,
        error=merged.error,
        fetched_at=merged.fetched_at,
        overridden=merged.overridden,
        warning=merged.warning,
        data=merged.data,
    )


@router.get("/sensors", response_model=DomainResponse, summary="Current sensor readings.")
async def get_sensors(engine: SyncEngine = Depends(get_engine)) -> DomainResponse:
    return _domain_response(engine, Domain.sensors)


@router.get("/fans", response_model=DomainResponse, summary="Current fan speeds.")
async def get_fans(engine: SyncEngine = Depends(get_engine)) -> DomainResponse:
    return _domain_response(engine, Domain.fans)


@router.get("/power", response_model=DomainResponse, summary="Current power metering.")
async def get_power(engine: SyncEngine = Depends(get_engine)) -> DomainResponse:
    return _domain_response(engine, Domain.power)


@router.get("/pid-info", response_model=DomainResponse, summary="Current PID loop table.")
async def get_pid_info(engine: SyncEngine = Depends(get_engine)) -> DomainResponse:
    return _domain_response(engine, Domain.pid)


@router.get("/system-info", response_model=DomainResponse, summary="Server model, serial and firmware.")
async def get_system_info(engine: SyncEngine = Depends(get_engine)) -> DomainResponse:
    return _domain_response(engine, Domain.system)


def _diagnostic(engine: SyncEngine, command: str) -> DiagnosticResponse:
    try:
        result = engine.diagnostic(command)
    except EngineError as exc:
        raise_http_error(exc)
    return DiagnosticResponse(command=result.command, output=result.output, fetched_at=result.fetched_at)


@router.get("/fans/info", response_model=DiagnosticResponse, summary="Raw fan controller summary.")
def get_fan_info(engine: SyncEngine = Depends(get_engine)) -> DiagnosticResponse:
    return _diagnostic(engine, FAN_INFO_QUERY)


@router.get("/fans/group-info", response_model=DiagnosticResponse, summary="Raw fan group table.")
def get_fan_group_info(engine: SyncEngine = Depends(get_engine)) -> DiagnosticResponse:
    return _diagnostic(engine, FAN_GROUP_QUERY)


@router.post(
    "/refresh/{domain}",
    response_model=RefreshResponse,
    summary="Poll a domain out of cycle and wait for the result.",
)
def refresh_domain(domain: Domain, engine: SyncEngine = Depends(get_engine)) -> RefreshResponse:
    wait = get_settings().remote_timeout * 2
    try:
        entry = engine.refresh(domain).result(timeout=wait)
    except FutureTimeout as exc:
        raise HTTPException(
            status_code=status.HTTP_504_GATEWAY_TIMEOUT,
            detail=f"Refresh of {domain.value!r} did not finish within {wait:g}s.",
        ) from exc
    except RuntimeError as exc:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Polling is not running.",
        ) from exc
    return RefreshResponse(
        domain=domain,
        ready=entry.data is not None,
        fetched_at=entry.fetched_at,
        error=entry.last_error,
    )


@router.post("/sensors/override", response_model=CommandResponse, summary="Force a sensor reading.")
def override_sensor(
    request: SensorOverrideRequest, engine: SyncEngine = Depends(get_engine)
) -> CommandResponse:
    return _execute(
        lambda: engine.executor.override_sensor(
            request.sensor_id, request.value, ttl=_ttl(request.ttl_seconds)
        )
    )


@router.post("/sensors/reset", response_model=CommandResponse, summary="Clear sensor overrides.")
def reset_sensor_overrides(engine: SyncEngine = Depends(get_engine)) -> CommandResponse:
    return _execute(lambda: engine.executor.reset_overrides(Domain.sensors))


@router.post("/reset", response_model=CommandResponse, summary="Clear every override.")
def reset_overrides(engine: SyncEngine = Depends(get_engine)) -> CommandResponse:
    return _execute(lambda: engine.executor.reset_overrides())


@router.post("/fans/override", response_model=CommandResponse, summary="Force a displayed fan speed.")
def override_fan(
    request: FanOverrideRequest, engine: SyncEngine = Depends(get_engine)
) -> CommandResponse:
    return _execute(
        lambda: engine.executor.override_fan(
            request.fan_name, request.speed, ttl=_ttl(request.ttl_seconds)
        )
    )


@router.post("/fans/reset", response_model=CommandResponse, summary="Clear fan overrides.")
def reset_fan_overrides(engine: SyncEngine = Depends(get_engine)) -> CommandResponse:
    return _execute(lambda: engine.executor.reset_overrides(Domain.fans))


@router.post("/fans/set-all", response_model=CommandResponse, summary="Lock every fan at one speed.")
def set_all_fans(request: FanSpeedRequest, engine: SyncEngine = Depends(get_engine)) -> CommandResponse:
    return _execute(lambda: engine.executor.set_all_fan_speeds(request.speed))


@router.post("/fans/lock", response_model=CommandResponse, summary="Lock one fan at a speed.")
def lock_fan(request: FanLockRequest, engine: SyncEngine = Depends(get_engine)) -> CommandResponse:
    return _execute(lambda: engine.executor.lock_fan_at_speed(request.fan_id, request.speed))


@router.post("/fans/unlock", response_model=CommandResponse, summary="Return fans to automatic control.")
def unlock_fans(engine: SyncEngine = Depends(get_engine)) -> CommandResponse:
    return _execute(engine.executor.unlock_fan_control)


@router.post(
    "/fans/invalidate-cache",
    status_code=status.HTTP_202_ACCEPTED,
    summary="Mark fan data stale and schedule a refresh.",
)
def invalidate_fans(
    request: Optional[InvalidateRequest] = None, engine: SyncEngine = Depends(get_engine)
) -> dict[str, str]:
    settle = request.settle_seconds if request is not None else 0.0
    engine.invalidate(Domain.fans, settle_delay=settle)
    return {"status": "invalidated", "domain": Domain.fans.value}


@router.post(
    "/sensors/set-low-limit",
    response_model=CommandResponse,
    summary="Set the low limit of a sensor's PID loop.",
)
def set_sensor_low_limit(
    request: LowLimitRequest, engine: SyncEngine = Depends(get_engine)
) -> CommandResponse:
    return _execute(lambda: engine.executor.set_sensor_low_limit(request.id, request.limit))


@router.post(
    "/fans/pid-low-limit",
    response_model=CommandResponse,
    summary="Set the low limit of a PID loop.",
)
def set_pid_low_limit(
    request: PidLowLimitRequest, engine: SyncEngine = Depends(get_engine)
) -> CommandResponse:
    return _execute(lambda: engine.executor.set_pid_low_limit(request.id, request.limit))


@router.get("/overrides", response_model=List[OverrideResponse], summary="Active overrides.")
async def list_overrides(
    domain: Optional[Domain] = None, engine: SyncEngine = Depends(get_engine)
) -> List[OverrideResponse]:
    return [
        OverrideResponse(
            target=item.target,
            kind=item.kind,
            value=item.value,
            applied_at=item.applied_at,
            expires_at=item.expires_at,
        )
        for item in engine.ledger.active(domain)
    ]


@router.get("/commands", response_model=List[CommandResponse], summary="Recent commands, newest first.")
async def list_commands(engine: SyncEngine = Depends(get_engine)) -> List[CommandResponse]:
    return [command_response(record) for record in reversed(engine.executor.recent())]


@router.get("/status", summary="Poller, queue and override state.")
async def engine_status(engine: SyncEngine = Depends(get_engine)) -> dict:
    return engine.status()


@router.get(
    "/health",
    summary="Health check endpoint.",
    status_code=status.HTTP_200_OK,
)
async def healthcheck() -> dict[str, str]:
    return {"status": "ok"}


@router.get(
    "/",
    summary="Root endpoint mirrors health information.",
    status_code=status.HTTP_200_OK,
)
async def root() -> dict[str, str]:
    return {"status": "ok", "detail": "See /health for service status."}
