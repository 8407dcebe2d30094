from __future__ import annotations

import time
from pathlib import Path
from typing import Any, Dict, List, Optional

import httpx
import typer

from cli.config import CLIConfig


class ApiClient:
    """Minimal HTTP client for the sync service."""

    def __init__(self, config: CLIConfig) -> None:
        self._config = config
        self._client = httpx.Client(base_url=config.base_url, timeout=config.request_timeout)

    def close(self) -> None:
        self._client.close()

    def get_domain(self, domain: str) -> Dict[str, Any]:
        return self._request("GET", f"/{domain}")

    def get_status(self) -> Dict[str, Any]:
        return self._request("GET", "/status")

    def get_overrides(self) -> List[Dict[str, Any]]:
        return self._request("GET", "/overrides")

    def get_fan_info(self, groups: bool = False) -> Dict[str, Any]:
        return self._request("GET", "/fans/group-info" if groups else "/fans/info")

    def refresh(self, domain: str) -> Dict[str, Any]:
        return self._request("POST", f"/refresh/{domain}")

    def set_all_fans(self, speed: float) -> Dict[str, Any]:
        return self._request("POST", "/fans/set-all", json={"speed": speed})

    def lock_fan(self, fan_id: int, speed: float) -> Dict[str, Any]:
        return self._request("POST", "/fans/lock", json={"fanId": fan_id, "speed": speed})

    def unlock_fans(self) -> Dict[str, Any]:
        return self._request("POST", "/fans/unlock")

    def override_sensor(self, sensor_id: str, value: float) -> Dict[str, Any]:
        return self._request("POST", "/sensors/override", json={"sensorId": sensor_id, "value": value})

    def reset_overrides(self, domain: Optional[str] = None) -> Dict[str, Any]:
        path = f"/{domain}/reset" if domain else "/reset"
        return self._request("POST", path)

    def set_pid_low_limit(self, pid_id: int, limit: float) -> Dict[str, Any]:
        return self._request("POST", "/fans/pid-low-limit", json={"pidId": pid_id, "lowLimit": limit})

    def export(self, destination: Path, table: str, fmt: str, range_minutes: Optional[float]) -> int:
        params: Dict[str, Any] = {"table": table, "format": fmt}
        if range_minutes is not None:
            params["range"] = range_minutes
        written = 0
        try:
            with self._client.stream("GET", "/history/export", params=params) as response:
                if response.is_error:
                    response.read()
                response.raise_for_status()
                with destination.open("wb") as handle:
                    for chunk in response.iter_bytes():
                        handle.write(chunk)
                        written += len(chunk)
        except httpx.HTTPStatusError as exc:
            self._handle_http_error(exc)
        return written

    def wait_until_fresh(self, domain: str, interval: float, timeout: float) -> Dict[str, Any]:
        deadline = time.monotonic() + timeout
        last_payload: Dict[str, Any] | None = None
        while time.monotonic() <= deadline:
            last_payload = self.get_domain(domain)
            if last_payload.get("ready") and not last_payload.get("stale"):
                return last_payload
            time.sleep(interval)
        typer.secho(
            f"Timed out waiting for fresh {domain} data.",
            fg=typer.colors.RED,
            err=True,
        )
        raise typer.Exit(code=1)

    def _request(self, method: str, path: str, **kwargs: Any) -> Any:
        try:
            response = self._client.request(method, path, **kwargs)
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            self._handle_http_error(exc)
        except httpx.TransportError as exc:
            typer.secho(f"Cannot reach {self._config.base_url}: {exc}", fg=typer.colors.RED, err=True)
            raise typer.Exit(code=1) from exc
        return response.json()

    @staticmethod
    def _handle_http_error(exc: httpx.HTTPStatusError) -> None:
        detail: str | None = None
        try:
            data = exc.response.json()
            detail = data.get("detail")
        except Exception:  # noqa: BLE001 - best effort parsing
            detail = exc.response.text.strip()
        message = (
            f"Request failed with status {exc.response.status_code}: {detail or 'no detail provided.'}"
        )
        typer.secho(message, fg=typer.colors.RED, err=True)
        raise typer.Exit(code=1)
