from __future__ import annotations

import os
from dataclasses import dataclass
from functools import lru_cache
from typing import Optional


_CONTROLLER_HOST_ENV = "ILO_HOST"
_CONTROLLER_USERNAME_ENV = "ILO_USERNAME"
_CONTROLLER_PASSWORD_ENV = "ILO_PASSWORD"
_VERIFY_TLS_ENV = "ILO_VERIFY_TLS"
_THERMAL_PATH_ENV = "REDFISH_THERMAL_PATH"
_REMOTE_TIMEOUT_ENV = "REMOTE_TIMEOUT_SECONDS"
_COMMAND_TIMEOUT_ENV = "COMMAND_TIMEOUT_SECONDS"
_COMMAND_QUEUE_LIMIT_ENV = "COMMAND_QUEUE_LIMIT"
_SENSORS_INTERVAL_ENV = "SENSORS_POLL_INTERVAL"
_FANS_INTERVAL_ENV = "FANS_POLL_INTERVAL"
_POWER_INTERVAL_ENV = "POWER_POLL_INTERVAL"
_PID_INTERVAL_ENV = "PID_POLL_INTERVAL"
_SYSTEM_INTERVAL_ENV = "SYSTEM_POLL_INTERVAL"
_CACHE_TTL_FACTOR_ENV = "CACHE_TTL_FACTOR"
_SETTLE_DELAY_ENV = "SETTLE_DELAY_SECONDS"
_POLL_WORKERS_ENV = "POLL_WORKER_COUNT"
_FAN_COUNT_ENV = "FAN_COUNT"
_HISTORY_PATH_ENV = "HISTORY_DB_PATH"
_RETENTION_HOURS_ENV = "HISTORY_RETENTION_HOURS"
_RETENTION_SWEEP_ENV = "HISTORY_SWEEP_INTERVAL"
_AUTOSTART_ENV = "ENGINE_AUTOSTART"
_LOG_LEVEL_ENV = "LOG_LEVEL"


@dataclass(frozen=True)
class Settings:
    controller_host: Optional[str]
    controller_username: Optional[str]
    controller_password: Optional[str]
    verify_tls: bool
    thermal_path: str
    remote_timeout: float
    command_timeout: float
    command_queue_limit: int
    sensors_poll_interval: float
    fans_poll_interval: float
    power_poll_interval: float
    pid_poll_interval: float
    system_poll_interval: float
    cache_ttl_factor: float
    settle_delay: float
    poll_workers: int
    fan_count: Optional[int]
    history_path: Optional[str]
    history_retention_hours: float
    history_sweep_interval: float
    autostart: bool
    log_level: str

    @property
    def controller_configured(self) -> bool:
        return bool(
            self.controller_host and self.controller_username and self.controller_password
        )


def _read_str_env(name: str, default: str) -> str:
    value = os.getenv(name)
    if value is None:
        return default
    candidate = value.strip()
    return candidate or default


def _read_optional_env(name: str, default: Optional[str]) -> Optional[str]:
    value = os.getenv(name)
    if value is None:
        return default
    candidate = value.strip()
    return candidate or None


def _read_positive_int(name: str, default: Optional[int]) -> Optional[int]:
    value = os.getenv(name)
    if value is None:
        return default
    candidate = value.strip()
    if not candidate:
        return default
    try:
        parsed = int(candidate)
    except ValueError:
        return default
    return parsed if parsed > 0 else default


def _read_float(name: str, default: float, allow_zero: bool = False) -> float:
    value = os.getenv(name)
    if value is None:
        return default
    candidate = value.strip()
    if not candidate:
        return default
    try:
        parsed = float(candidate)
    except ValueError:
        return default
    if parsed > 0 or (allow_zero and parsed == 0):
        return parsed
    return default


def _read_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    candidate = value.strip().lower()
    if candidate in {"1", "true", "yes", "on"}:
        return True
    if candidate in {"0", "false", "no", "off"}:
        return False
    return default


def _read_log_level(default: str) -> str:
    value = os.getenv(_LOG_LEVEL_ENV)
    if value is None:
        return default
    candidate = value.strip()
    if not candidate:
        return default
    return candidate.upper()


@lru_cache
def get_settings() -> Settings:
    return Settings(
        controller_host=_read_optional_env(_CONTROLLER_HOST_ENV, None),
        controller_username=_read_optional_env(_CONTROLLER_USERNAME_ENV, None),
        controller_password=_read_optional_env(_CONTROLLER_PASSWORD_ENV, None),
        verify_tls=_read_bool(_VERIFY_TLS_ENV, False),
        thermal_path=_read_str_env(_THERMAL_PATH_ENV, "/redfish/v1/Chassis/1/Thermal/"),
        remote_timeout=_read_float(_REMOTE_TIMEOUT_ENV, 10.0),
        command_timeout=_read_float(_COMMAND_TIMEOUT_ENV, 15.0),
        command_queue_limit=_read_positive_int(_COMMAND_QUEUE_LIMIT_ENV, 16) or 16,
        sensors_poll_interval=_read_float(_SENSORS_INTERVAL_ENV, 30.0),
        fans_poll_interval=_read_float(_FANS_INTERVAL_ENV, 30.0),
        power_poll_interval=_read_float(_POWER_INTERVAL_ENV, 30.0),
        pid_poll_interval=_read_float(_PID_INTERVAL_ENV, 60.0),
        system_poll_interval=_read_float(_SYSTEM_INTERVAL_ENV, 300.0),
        cache_ttl_factor=_read_float(_CACHE_TTL_FACTOR_ENV, 2.0),
        settle_delay=_read_float(_SETTLE_DELAY_ENV, 2.0, allow_zero=True),
        poll_workers=_read_positive_int(_POLL_WORKERS_ENV, 4) or 4,
        fan_count=_read_positive_int(_FAN_COUNT_ENV, None),
        history_path=_read_optional_env(_HISTORY_PATH_ENV, "./tmp/history.db"),
        history_retention_hours=_read_float(_RETENTION_HOURS_ENV, 72.0),
        history_sweep_interval=_read_float(_RETENTION_SWEEP_ENV, 3600.0),
        autostart=_read_bool(_AUTOSTART_ENV, True),
        log_level=_read_log_level("INFO"),
    )
