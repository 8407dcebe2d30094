from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Optional

import typer

from cli.client import ApiClient
from cli.config import CLIConfig, load_config
from cli.render import (
    render_command,
    render_diagnostic,
    render_fans,
    render_pid,
    render_power,
    render_sensors,
    render_status,
    render_system,
)


@dataclass
class CLIState:
    config: CLIConfig
    client: ApiClient


app = typer.Typer(
    help="Utilities for monitoring and adjusting an iLO controller through the sync service.",
    context_settings={"help_option_names": ["-h", "--help"]},
)


def _get_state(ctx: typer.Context) -> CLIState:
    state = ctx.obj
    if not isinstance(state, CLIState):
        raise typer.Exit(code=1, message="CLI state is uninitialized.")
    return state


@app.callback()
def main(
    ctx: typer.Context,
    base_url: Optional[str] = typer.Option(
        None,
        "--base-url",
        "-b",
        help="Sync service base URL (defaults to API_BASE_URL env or http://localhost:8000).",
    ),
    poll_interval: Optional[float] = typer.Option(
        None,
        "--poll-interval",
        help="Seconds between checks when waiting for fresh data.",
    ),
    timeout: Optional[float] = typer.Option(
        None,
        "--timeout",
        help="Maximum seconds to wait for fresh data.",
    ),
) -> None:
    """Entry point for the CLI."""
    config = load_config(
        base_url=base_url,
        poll_interval=poll_interval,
        poll_timeout=timeout,
    )
    client = ApiClient(config)
    ctx.obj = CLIState(config=config, client=client)
    ctx.call_on_close(client.close)


@app.command("status")
def status_command(ctx: typer.Context) -> None:
    """Show poller freshness, queued commands and active overrides."""
    state = _get_state(ctx)
    render_status(state.client.get_status(), state.client.get_overrides())


@app.command("sensors")
def sensors_command(
    ctx: typer.Context,
    refresh: bool = typer.Option(False, "--refresh", help="Poll the controller before showing data."),
) -> None:
    """Show temperature sensors."""
    state = _get_state(ctx)
    if refresh:
        state.client.refresh("sensors")
    render_sensors(state.client.get_domain("sensors"))


@app.command("fans")
def fans_command(
    ctx: typer.Context,
    refresh: bool = typer.Option(False, "--refresh", help="Poll the controller before showing data."),
) -> None:
    """Show fan speeds."""
    state = _get_state(ctx)
    if refresh:
        state.client.refresh("fans")
    render_fans(state.client.get_domain("fans"))


@app.command("power")
def power_command(ctx: typer.Context) -> None:
    """Show power metering."""
    state = _get_state(ctx)
    render_power(state.client.get_domain("power"))


@app.command("pid")
def pid_command(ctx: typer.Context) -> None:
    """Show the PID loop table."""
    state = _get_state(ctx)
    render_pid(state.client.get_domain("pid-info"))


@app.command("system")
def system_command(ctx: typer.Context) -> None:
    """Show the server model, serial number and firmware versions."""
    state = _get_state(ctx)
    render_system(state.client.get_domain("system-info"))


@app.command("fan-info")
def fan_info_command(
    ctx: typer.Context,
    groups: bool = typer.Option(False, "--groups", help="Show the fan group table instead."),
) -> None:
    """Print raw fan controller output."""
    state = _get_state(ctx)
    render_diagnostic(state.client.get_fan_info(groups))


@app.command("set-fans")
def set_fans_command(
    ctx: typer.Context,
    speed: float = typer.Argument(..., help="Target speed in percent (10-100)."),
    wait: bool = typer.Option(
        False,
        "--wait/--no-wait",
        help="Wait for the settle refresh and display the new fan speeds.",
    ),
) -> None:
    """Lock every fan at the same speed."""
    state = _get_state(ctx)
    render_command(state.client.set_all_fans(speed))
    if wait:
        _wait_for_fans(state)


@app.command("lock-fan")
def lock_fan_command(
    ctx: typer.Context,
    fan_id: int = typer.Argument(..., help="Zero-based fan index."),
    speed: float = typer.Argument(..., help="Target speed in percent (10-100)."),
    wait: bool = typer.Option(False, "--wait/--no-wait", help="Wait for fresh fan data."),
) -> None:
    """Lock one fan at a speed."""
    state = _get_state(ctx)
    render_command(state.client.lock_fan(fan_id, speed))
    if wait:
        _wait_for_fans(state)


@app.command("unlock")
def unlock_command(ctx: typer.Context) -> None:
    """Return every fan to automatic control."""
    state = _get_state(ctx)
    render_command(state.client.unlock_fans())


@app.command("override")
def override_command(
    ctx: typer.Context,
    sensor_id: str = typer.Argument(..., help="Sensor name as reported by the controller."),
    value: float = typer.Argument(..., help="Reading to display instead of the live value."),
) -> None:
    """Override a sensor reading."""
    state = _get_state(ctx)
    render_command(state.client.override_sensor(sensor_id, value))


@app.command("reset")
def reset_command(
    ctx: typer.Context,
    domain: Optional[str] = typer.Option(
        None,
        "--domain",
        help="Only clear overrides for 'sensors' or 'fans'.",
    ),
) -> None:
    """Clear overrides."""
    state = _get_state(ctx)
    if domain is not None and domain not in {"sensors", "fans"}:
        raise typer.BadParameter("Domain must be 'sensors' or 'fans'.", param_hint="--domain")
    render_command(state.client.reset_overrides(domain))


@app.command("pid-low-limit")
def pid_low_limit_command(
    ctx: typer.Context,
    pid_id: int = typer.Argument(..., help="PID loop number."),
    limit: float = typer.Argument(..., help="Low limit in percent (1-100)."),
) -> None:
    """Set the low limit of a PID loop."""
    state = _get_state(ctx)
    render_command(state.client.set_pid_low_limit(pid_id, limit))


@app.command("export")
def export_command(
    ctx: typer.Context,
    destination: Path = typer.Argument(..., dir_okay=False, help="File to write."),
    table: str = typer.Option("all", "--table", help="sensor_readings, fan_readings, history_points or all."),
    fmt: str = typer.Option("csv", "--format", help="csv, json or txt."),
    range_minutes: Optional[float] = typer.Option(None, "--range", help="Only the last N minutes."),
) -> None:
    """Download stored history."""
    state = _get_state(ctx)
    written = state.client.export(destination, table, fmt, range_minutes)
    typer.secho(f"Wrote {written} bytes to {destination}", fg=typer.colors.GREEN)


def _wait_for_fans(state: CLIState) -> None:
    typer.echo(
        f"Waiting for fresh fan data (interval={state.config.poll_interval}s, "
        f"timeout={state.config.poll_timeout}s)..."
    )
    payload = state.client.wait_until_fresh(
        "fans", interval=state.config.poll_interval, timeout=state.config.poll_timeout
    )
    typer.echo()
    render_fans(payload)
