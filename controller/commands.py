"""Text of the shell commands understood by the controller."""

from __future__ import annotations

POWER_QUERY = "show /system1/oemhp_power1"
PID_QUERY = "fan info a"
FAN_INFO_QUERY = "fan info"
FAN_GROUP_QUERY = "fan info g"
SYSTEM_QUERY = "show system1"
ILO_FIRMWARE_QUERY = "show /map1/firmware1"
ROM_QUERY = "show system1/firmware1"
FAN_UNLOCK = "fan p global unlock"

MIN_PWM = 25
MAX_PWM = 255


def percent_to_pwm(percent: float) -> int:
    """Convert a fan speed percentage to the controller's PWM scale."""
    return max(MIN_PWM, min(MAX_PWM, round(percent / 100 * MAX_PWM)))


def fan_lock(index: int, percent: float) -> str:
    return f"fan p {index} lock {percent_to_pwm(percent)}"


def pid_low_limit(pid_id: int, percent: float) -> str:
    # Limits are expressed in hundredths of a percent.
    return f"fan pid {pid_id} lo {round(percent * 100)}"
