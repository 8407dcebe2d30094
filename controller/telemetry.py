"""Read-only telemetry queries against the management controller."""

from __future__ import annotations

from datetime import datetime, timezone
from functools import lru_cache
from typing import Callable, Dict, Optional, Protocol

from controller.commands import ILO_FIRMWARE_QUERY, PID_QUERY, POWER_QUERY, ROM_QUERY, SYSTEM_QUERY
from controller.parsers import (
    fans_from_thermal,
    parse_pid_table,
    parse_power,
    parse_system_info,
    sensors_from_thermal,
)
from controller.redfish import RedfishClient
from controller.shell import ShellQueryRunner
from models.errors import RemoteUnreachable
from models.records import (
    Domain,
    FanSnapshot,
    PidSnapshot,
    PowerSnapshot,
    SensorSnapshot,
    Snapshot,
    SystemSnapshot,
)
from settings import get_settings


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class TelemetrySource(Protocol):
    def fetch(self, domain: Domain) -> Snapshot:
        ...

    def query(self, command: str) -> str:
        ...

    def close(self) -> None:
        ...


class RemoteTelemetryClient:
    """Stateless facade returning one validated snapshot per domain."""

    def __init__(
        self,
        redfish: RedfishClient,
        shell: ShellQueryRunner,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.redfish = redfish
        self.shell = shell
        self._clock = clock
        self._fetchers: Dict[Domain, Callable[[], Snapshot]] = {
            Domain.sensors: self.fetch_sensors,
            Domain.fans: self.fetch_fans,
            Domain.power: self.fetch_power,
            Domain.pid: self.fetch_pid,
            Domain.system: self.fetch_system,
        }

    def fetch(self, domain: Domain) -> Snapshot:
        return self._fetchers[domain]()

    def fetch_sensors(self) -> SensorSnapshot:
        return sensors_from_thermal(self.redfish.get_thermal(), self._clock())

    def fetch_fans(self) -> FanSnapshot:
        return fans_from_thermal(self.redfish.get_thermal(), self._clock())

    def fetch_power(self) -> PowerSnapshot:
        return parse_power(self.shell.query(POWER_QUERY), self._clock())

    def fetch_pid(self) -> PidSnapshot:
        return parse_pid_table(self.shell.query(PID_QUERY), self._clock())

    def fetch_system(self) -> SystemSnapshot:
        return parse_system_info(
            self.shell.query(SYSTEM_QUERY),
            self.shell.query(ILO_FIRMWARE_QUERY),
            self.shell.query(ROM_QUERY),
            self._clock(),
        )

    def query(self, command: str) -> str:
        """Raw output of a read-only shell command."""
        return self.shell.query(command)

    def close(self) -> None:
        self.redfish.close()


_UNCONFIGURED = "Controller not configured. Set ILO_HOST, ILO_USERNAME and ILO_PASSWORD."


class UnconfiguredTelemetry:
    """Stands in for the controller until connection details are provided."""

    def fetch(self, domain: Domain) -> Snapshot:
        raise RemoteUnreachable(_UNCONFIGURED)

    def query(self, command: str) -> str:
        raise RemoteUnreachable(_UNCONFIGURED)

    def close(self) -> None:
        return None


@lru_cache
def build_default_telemetry_client(host: Optional[str] = None) -> TelemetrySource:
    settings = get_settings()
    target = settings.controller_host if host is None else host
    if not (target and settings.controller_username and settings.controller_password):
        return UnconfiguredTelemetry()
    redfish = RedfishClient(
        host=target,
        username=settings.controller_username,
        password=settings.controller_password,
        thermal_path=settings.thermal_path,
        timeout=settings.remote_timeout,
        verify=settings.verify_tls,
    )
    shell = ShellQueryRunner(
        host=target,
        username=settings.controller_username,
        password=settings.controller_password,
        timeout=settings.remote_timeout,
    )
    return RemoteTelemetryClient(redfish=redfish, shell=shell)
