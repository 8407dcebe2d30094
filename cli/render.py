from __future__ import annotations

from typing import Any, Dict, Iterable, List

import typer


def echo_heading(text: str) -> None:
    typer.secho(text, bold=True)


def echo_key_values(pairs: Iterable[tuple[str, Any]]) -> None:
    for key, value in pairs:
        typer.echo(f"{key}: {value}")


def _freshness(payload: Dict[str, Any]) -> None:
    if not payload.get("ready"):
        typer.secho("Waiting for device: no data fetched yet.", fg=typer.colors.YELLOW)
        return
    echo_key_values([("fetched_at", payload.get("fetched_at"))])
    if payload.get("stale"):
        typer.secho(payload.get("warning") or "Data is stale.", fg=typer.colors.YELLOW)
    if payload.get("error"):
        typer.secho(f"Last error: {payload['error']}", fg=typer.colors.RED)


def render_sensors(payload: Dict[str, Any]) -> None:
    echo_heading("Sensors")
    _freshness(payload)
    for reading in (payload.get("data") or {}).get("readings", []):
        typer.echo(
            f"  - {reading.get('name')}: {reading.get('reading')}°C"
            f" ({reading.get('status')}, critical={reading.get('critical')})"
        )


def render_fans(payload: Dict[str, Any]) -> None:
    echo_heading("Fans")
    _freshness(payload)
    for fan in (payload.get("data") or {}).get("fans", []):
        typer.echo(f"  - {fan.get('name')}: {fan.get('speed')}% ({fan.get('status')})")


def render_power(payload: Dict[str, Any]) -> None:
    echo_heading("Power")
    _freshness(payload)
    data = payload.get("data") or {}
    if data:
        echo_key_values(
            [
                ("present_power", data.get("present_power")),
                ("average_power", data.get("average_power")),
                ("min_power", data.get("min_power")),
                ("max_power", data.get("max_power")),
                ("power_cap", data.get("power_cap")),
                ("regulation_mode", data.get("regulation_mode")),
            ]
        )


def render_pid(payload: Dict[str, Any]) -> None:
    echo_heading("PID loops")
    _freshness(payload)
    for record in (payload.get("data") or {}).get("records", []):
        marker = "*" if record.get("is_active") else " "
        typer.echo(
            f" {marker} #{record.get('number')}: setpoint={record.get('setpoint')}"
            f" lo={record.get('low_limit')} hi={record.get('high_limit')} output={record.get('output')}"
        )


def render_system(payload: Dict[str, Any]) -> None:
    echo_heading("System")
    _freshness(payload)
    data = payload.get("data") or {}
    if data:
        echo_key_values(
            [
                ("model", data.get("model")),
                ("serial_number", data.get("serial_number")),
                ("ilo_generation", data.get("ilo_generation")),
                ("system_rom", data.get("system_rom")),
                ("ilo_firmware", data.get("ilo_firmware")),
            ]
        )


def render_diagnostic(payload: Dict[str, Any]) -> None:
    echo_heading(f"$ {payload.get('command')}")
    typer.echo(payload.get("output") or "")


def render_command(payload: Dict[str, Any]) -> None:
    echo_heading("Command")
    echo_key_values(
        [
            ("id", payload.get("id")),
            ("name", payload.get("name")),
            ("state", payload.get("state")),
            ("duration_ms", payload.get("duration_ms")),
        ]
    )
    lines = payload.get("lines") or []
    if lines:
        typer.echo("lines:")
        for line in lines:
            typer.echo(f"  - {line}")


def render_status(payload: Dict[str, Any], overrides: List[Dict[str, Any]]) -> None:
    echo_heading("Engine")
    echo_key_values(
        [
            ("running", payload.get("running")),
            ("started_at", payload.get("started_at")),
            ("queued_commands", payload.get("queued_commands")),
            ("pending_settle", ", ".join(payload.get("pending_settle") or []) or "-"),
        ]
    )
    typer.echo()
    echo_heading("Domains")
    for name, info in (payload.get("domains") or {}).items():
        state = "ready" if info.get("ready") else "pending"
        if info.get("stale"):
            state += ", stale"
        typer.echo(f"  - {name}: {state} (fetched_at={info.get('fetched_at')})")
        if info.get("last_error"):
            typer.echo(f"      last_error: {info['last_error']}")

    typer.echo()
    echo_heading("Overrides")
    if overrides:
        for item in overrides:
            typer.echo(f"  - {item.get('target')} [{item.get('kind')}] = {item.get('value')}")
    else:
        typer.echo("No active overrides.")
