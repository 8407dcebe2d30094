from __future__ import annotations

from pathlib import Path
from typing import Any, Dict, List, Optional

import httpx
import pytest
from typer.testing import CliRunner

from cli.app import app
from cli.client import ApiClient
from cli.config import CLIConfig, load_config


def _command(name: str, lines: List[str]) -> Dict[str, Any]:
    return {"id": 1, "name": name, "state": "completed", "lines": lines, "duration_ms": 12}


class StubClient:
    def __init__(self, config) -> None:
        self.config = config
        self.calls: List[tuple] = []
        self.wait_calls: List[tuple[str, float, float]] = []
        self.fans_payload: Dict[str, Any] = {
            "domain": "fans",
            "ready": True,
            "stale": False,
            "fetched_at": "2024-01-01T00:00:00Z",
            "data": {"fans": [{"name": "Fan 1", "speed": 80.0, "status": "Enabled"}]},
        }
        self.closed = False

    def get_domain(self, domain: str) -> Dict[str, Any]:
        self.calls.append(("get", domain))
        if domain == "fans":
            return self.fans_payload
        if domain == "system-info":
            return {
                "domain": domain,
                "ready": True,
                "stale": True,
                "warning": "Data for 'system-info' fetched at 2024-01-01T00:00:00+00:00 is stale.",
                "fetched_at": "2024-01-01T00:00:00Z",
                "data": {
                    "model": "ProLiant DL380p Gen8",
                    "serial_number": "CZ1234ABCD",
                    "ilo_generation": "iLO 4",
                    "system_rom": "P70",
                    "ilo_firmware": "2.82 (Feb 06 2023)",
                },
            }
        return {"domain": domain, "ready": False, "stale": False, "data": None}

    def get_fan_info(self, groups: bool = False) -> Dict[str, Any]:
        self.calls.append(("fan-info", groups))
        command = "fan info g" if groups else "fan info"
        return {"command": command, "output": "GROUP 0: fans 1 2", "fetched_at": "2024-01-01T00:00:00Z"}

    def refresh(self, domain: str) -> Dict[str, Any]:
        self.calls.append(("refresh", domain))
        return {"domain": domain, "ready": True}

    def get_status(self) -> Dict[str, Any]:
        return {
            "running": True,
            "started_at": "2024-01-01T00:00:00Z",
            "queued_commands": 0,
            "pending_settle": ["fans"],
            "domains": {
                "fans": {"ready": True, "stale": True, "fetched_at": "2024-01-01T00:00:00Z"},
                "pid-info": {"ready": False, "stale": False, "last_error": "controller offline"},
            },
        }

    def get_overrides(self) -> List[Dict[str, Any]]:
        return [{"target": "Fan 1", "kind": "fanLock", "value": 80.0}]

    def set_all_fans(self, speed: float) -> Dict[str, Any]:
        self.calls.append(("set-all", speed))
        return _command("setAllFanSpeeds", ["fan p global unlock", "fan p 0 lock 204"])

    def lock_fan(self, fan_id: int, speed: float) -> Dict[str, Any]:
        self.calls.append(("lock", fan_id, speed))
        return _command("lockFanAtSpeed", [f"fan p {fan_id} lock 204"])

    def unlock_fans(self) -> Dict[str, Any]:
        self.calls.append(("unlock",))
        return _command("unlockFanControl", ["fan p global unlock"])

    def override_sensor(self, sensor_id: str, value: float) -> Dict[str, Any]:
        self.calls.append(("override", sensor_id, value))
        return _command("overrideSensor", [])

    def reset_overrides(self, domain: Optional[str] = None) -> Dict[str, Any]:
        self.calls.append(("reset", domain))
        return _command("resetOverrides", [])

    def set_pid_low_limit(self, pid_id: int, limit: float) -> Dict[str, Any]:
        self.calls.append(("pid-low-limit", pid_id, limit))
        return _command("setPidLowLimit", [f"fan pid {pid_id} lo {round(limit * 100)}"])

    def export(self, destination: Path, table: str, fmt: str, range_minutes: Optional[float]) -> int:
        self.calls.append(("export", table, fmt, range_minutes))
        destination.write_text("timestamp\n")
        return 10

    def wait_until_fresh(self, domain: str, interval: float, timeout: float) -> Dict[str, Any]:
        self.wait_calls.append((domain, interval, timeout))
        return self.fans_payload

    def close(self) -> None:
        self.closed = True


@pytest.fixture()
def runner() -> CliRunner:
    return CliRunner()


@pytest.fixture()
def stub(monkeypatch) -> StubClient:
    client = StubClient(config=None)

    def factory(config):
        client.config = config
        return client

    monkeypatch.setattr("cli.app.ApiClient", factory)
    return client


def test_set_fans_without_wait(runner: CliRunner, stub: StubClient) -> None:
    result = runner.invoke(app, ["set-fans", "80"])

    assert result.exit_code == 0
    assert "setAllFanSpeeds" in result.stdout
    assert "fan p 0 lock 204" in result.stdout
    assert stub.calls == [("set-all", 80.0)]
    assert not stub.wait_calls
    assert stub.closed is True


def test_set_fans_with_wait(runner: CliRunner, stub: StubClient) -> None:
    result = runner.invoke(app, ["--poll-interval", "0.1", "--timeout", "5", "set-fans", "80", "--wait"])

    assert result.exit_code == 0
    assert "Fan 1: 80.0%" in result.stdout
    assert stub.wait_calls == [("fans", 0.1, 5.0)]


def test_fans_refresh_then_show(runner: CliRunner, stub: StubClient) -> None:
    result = runner.invoke(app, ["fans", "--refresh"])

    assert result.exit_code == 0
    assert stub.calls == [("refresh", "fans"), ("get", "fans")]
    assert "Fan 1: 80.0% (Enabled)" in result.stdout


def test_pending_domain_is_reported(runner: CliRunner, stub: StubClient) -> None:
    result = runner.invoke(app, ["pid"])

    assert result.exit_code == 0
    assert "Waiting for device" in result.stdout


def test_system_shows_identity_and_stale_warning(runner: CliRunner, stub: StubClient) -> None:
    result = runner.invoke(app, ["system"])

    assert result.exit_code == 0
    assert stub.calls == [("get", "system-info")]
    assert "model: ProLiant DL380p Gen8" in result.stdout
    assert "ilo_firmware: 2.82 (Feb 06 2023)" in result.stdout
    assert "is stale." in result.stdout


def test_fan_info_groups(runner: CliRunner, stub: StubClient) -> None:
    result = runner.invoke(app, ["fan-info", "--groups"])

    assert result.exit_code == 0
    assert stub.calls == [("fan-info", True)]
    assert "$ fan info g" in result.stdout
    assert "GROUP 0: fans 1 2" in result.stdout

def test_status_lists_domains_and_overrides(runner: CliRunner, stub: StubClient) -> None:
    result = runner.invoke(app, ["status"])

    assert result.exit_code == 0
    assert "fans: ready, stale" in result.stdout
    assert "last_error: controller offline" in result.stdout
    assert "Fan 1 [fanLock] = 80.0" in result.stdout


def test_lock_unlock_override_reset(runner: CliRunner, stub: StubClient) -> None:
    assert runner.invoke(app, ["lock-fan", "2", "80"]).exit_code == 0
    assert runner.invoke(app, ["unlock"]).exit_code == 0
    assert runner.invoke(app, ["override", "02-CPU 1", "90"]).exit_code == 0
    assert runner.invoke(app, ["reset", "--domain", "sensors"]).exit_code == 0
    assert runner.invoke(app, ["pid-low-limit", "3", "25"]).exit_code == 0

    assert stub.calls == [
        ("lock", 2, 80.0),
        ("unlock",),
        ("override", "02-CPU 1", 90.0),
        ("reset", "sensors"),
        ("pid-low-limit", 3, 25.0),
    ]


def test_reset_rejects_unknown_domain(runner: CliRunner, stub: StubClient) -> None:
    result = runner.invoke(app, ["reset", "--domain", "power"])

    assert result.exit_code != 0
    assert stub.calls == []


def test_export_writes_file(runner: CliRunner, stub: StubClient, tmp_path) -> None:
    target = tmp_path / "out.csv"

    result = runner.invoke(app, ["export", str(target), "--table", "fan_readings", "--range", "60"])

    assert result.exit_code == 0
    assert "Wrote 10 bytes" in result.stdout
    assert stub.calls == [("export", "fan_readings", "csv", 60.0)]


def test_api_client_reports_http_errors(capsys) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(409, json={"detail": "Command queue is full"})

    client = ApiClient(CLIConfig(base_url="http://sync.test"))
    client._client = httpx.Client(base_url="http://sync.test", transport=httpx.MockTransport(handler))
    try:
        with pytest.raises(Exception) as excinfo:
            client.set_all_fans(80)
    finally:
        client.close()

    assert getattr(excinfo.value, "exit_code", None) == 1
    assert "status 409: Command queue is full" in capsys.readouterr().err


def test_load_config_reads_environment(monkeypatch) -> None:
    monkeypatch.setenv("API_BASE_URL", "http://ilo-sync:9000/")
    monkeypatch.setenv("CLI_POLL_INTERVAL", "not-a-number")

    config = load_config()

    assert config.base_url == "http://ilo-sync:9000"
    assert config.poll_interval == 1.0


def test_load_config_normalises_url_and_keeps_one_check(monkeypatch) -> None:
    monkeypatch.delenv("API_BASE_URL", raising=False)
    monkeypatch.setenv("CLI_REQUEST_TIMEOUT", "-3")

    config = load_config(base_url=" ilo-sync:9000/ ", poll_interval=5, poll_timeout=2)

    assert config.base_url == "http://ilo-sync:9000"
    assert config.poll_interval == 5
    assert config.poll_timeout == 5
    assert config.request_timeout == 45.0
