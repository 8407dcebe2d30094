"""Translate raw controller output into domain snapshots."""

from __future__ import annotations

import logging
import re
from datetime import datetime
from typing import Dict, List, Optional

from controller.redfish import ThermalPayload
from models.records import (
    FanReading,
    FanSnapshot,
    PidRecord,
    PidSnapshot,
    PowerSnapshot,
    SensorReading,
    SensorSnapshot,
    SystemSnapshot,
)

logger = logging.getLogger(__name__)

_NUMBER_RE = re.compile(r"(-?\d+(?:\.\d+)?)")


def classify_reading(
    reading: float,
    critical: Optional[float],
    fatal: Optional[float],
    fallback: str = "OK",
) -> str:
    """Status for a sensor value against its thresholds.

    Live and overridden readings both go through here so their statuses
    stay comparable.
    """
    if fatal is not None and reading >= fatal:
        return "Critical"
    if critical is not None and reading >= critical:
        return "Warning"
    if critical is None and fatal is None:
        return fallback
    return "OK"


def sensors_from_thermal(payload: ThermalPayload, timestamp: datetime) -> SensorSnapshot:
    readings: list[SensorReading] = []
    for temp in payload.temperatures:
        if temp.status.state != "Enabled" or temp.reading_celsius is None:
            continue
        readings.append(
            SensorReading(
                name=temp.name,
                context=temp.physical_context,
                reading=temp.reading_celsius,
                critical=temp.upper_threshold_critical,
                fatal=temp.upper_threshold_fatal,
                status=classify_reading(
                    temp.reading_celsius,
                    temp.upper_threshold_critical,
                    temp.upper_threshold_fatal,
                    fallback=temp.status.health or "Unknown",
                ),
                timestamp=timestamp,
            )
        )
    return SensorSnapshot(readings=tuple(readings), timestamp=timestamp)


def fans_from_thermal(payload: ThermalPayload, timestamp: datetime) -> FanSnapshot:
    fans: list[FanReading] = []
    for fan in payload.fans:
        if fan.status.state == "Absent":
            continue
        speed = fan.current_reading if fan.current_reading is not None else 0.0
        fans.append(
            FanReading(
                name=fan.name,
                speed=min(max(speed, 0.0), 100.0),
                status=fan.status.state,
                health=fan.status.health,
                timestamp=timestamp,
            )
        )
    return FanSnapshot(fans=tuple(fans), timestamp=timestamp)


def _property(output: str, name: str) -> str:
    match = re.search(rf"{re.escape(name)}=(.+)", output)
    return match.group(1).strip() if match else ""


def _numeric_property(output: str, name: str) -> float:
    match = _NUMBER_RE.search(_property(output, name))
    return float(match.group(1)) if match else 0.0


def parse_power(output: str, timestamp: datetime) -> PowerSnapshot:
    """Parse ``show /system1/oemhp_power1`` output."""
    return PowerSnapshot(
        present_power=_numeric_property(output, "oemhp_PresentPower"),
        average_power=_numeric_property(output, "oemhp_AvgPower"),
        min_power=_numeric_property(output, "oemhp_MinPower"),
        max_power=_numeric_property(output, "oemhp_MaxPower"),
        power_cap=_numeric_property(output, "oemhp_pwrcap"),
        regulation_mode=_property(output, "oemhp_powerreg"),
        warning_type=_property(output, "warning_type"),
        warning_threshold=_numeric_property(output, "warning_threshold"),
        warning_duration=_numeric_property(output, "warning_duration"),
        supply_capacity=_numeric_property(output, "oemhp_powersupplycapacity"),
        firmware_version=_property(output, "oemhp_power_micro_ver"),
        auto_power_restore=_property(output, "oemhp_auto_pwr"),
        timestamp=timestamp,
    )


_PID_COLUMNS: Dict[str, str] = {
    "kp": "kp",
    "ki": "ki",
    "kd": "kd",
    "setp": "setpoint",
    "setpoint": "setpoint",
    "set_point": "setpoint",
    "lo": "low_limit",
    "low": "low_limit",
    "hi": "high_limit",
    "high": "high_limit",
    "reading": "current_reading",
    "cur": "current_reading",
    "current": "current_reading",
    "prev_drive": "prev_drive",
    "output": "output",
}

# Column layout used when the header carries no recognisable names.
_PID_POSITIONAL = {3: "setpoint", 4: "current_reading", 6: "output"}


def _to_float(token: str) -> Optional[float]:
    try:
        return float(token)
    except ValueError:
        return None


def parse_pid_table(output: str, timestamp: datetime) -> PidSnapshot:
    """Parse the algorithm table printed by ``fan info a``."""
    lines = output.splitlines()
    header_index = -1
    for index, line in enumerate(lines):
        if "No." in line and "prev_drive" in line and "output" in line:
            header_index = index
            break

    if header_index == -1:
        logger.warning("PID header not found in fan info output")
        return PidSnapshot(records=(), timestamp=timestamp)

    header = lines[header_index].split()
    columns: Dict[int, str] = {}
    for position, token in enumerate(header):
        name = _PID_COLUMNS.get(token.strip(":").lower())
        if name is not None:
            columns[position] = name
    if not {"setpoint", "output"} <= set(columns.values()):
        columns = dict(_PID_POSITIONAL)

    records: List[PidRecord] = []
    for line in lines[header_index + 1 :]:
        stripped = line.strip()
        if not stripped or stripped.startswith("--") or "===" in stripped:
            continue
        parts = stripped.split()
        if len(parts) < 8:
            continue
        try:
            number = int(parts[0])
        except ValueError:
            continue
        values: Dict[str, Optional[float]] = {}
        for position, name in columns.items():
            if position < len(parts):
                values[name] = _to_float(parts[position])
        records.append(
            PidRecord(
                number=number,
                is_active=any(part == "Active" for part in parts[1:3]),
                **values,
            )
        )
    return PidSnapshot(records=tuple(records), timestamp=timestamp)


def _field(output: str, key: str) -> str:
    """Value of the first ``key=value`` line, quotes removed."""
    prefix = f"{key}="
    for line in output.splitlines():
        stripped = line.strip()
        if stripped.startswith(prefix):
            return stripped[len(prefix) :].strip().strip("\"'")
    return ""


def _versioned(output: str) -> str:
    version = _field(output, "version")
    date = _field(output, "date")
    if version and date:
        return f"{version} ({date})"
    return version or date or "Unknown"


def parse_system_info(system: str, ilo_firmware: str, rom: str, timestamp: datetime) -> SystemSnapshot:
    """Combine ``show system1``, ``show /map1/firmware1`` and ``show system1/firmware1``."""
    return SystemSnapshot(
        model=_field(system, "name") or "Unknown",
        serial_number=_field(system, "number") or "Unknown",
        ilo_generation=_field(ilo_firmware, "name") or "Unknown",
        system_rom=_versioned(rom),
        ilo_firmware=_versioned(ilo_firmware),
        timestamp=timestamp,
    )
