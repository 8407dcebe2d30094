"""Where the CLI finds the sync service and how long it waits for it."""

from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Optional

DEFAULT_BASE_URL = "http://localhost:8000"

_BASE_URL_ENV = "API_BASE_URL"
_POLL_INTERVAL_ENV = "CLI_POLL_INTERVAL"
_TIMEOUT_ENV = "CLI_POLL_TIMEOUT"
_REQUEST_TIMEOUT_ENV = "CLI_REQUEST_TIMEOUT"


@dataclass(frozen=True)
class CLIConfig:
    base_url: str = DEFAULT_BASE_URL
    # Fresh-data waits follow a settle delay of a few seconds plus one poll.
    poll_interval: float = 1.0
    poll_timeout: float = 30.0
    # Mutating routes block until the controller answers the whole sequence.
    request_timeout: float = 45.0


def _positive_env(name: str, default: float) -> float:
    try:
        value = float((os.getenv(name) or "").strip())
    except ValueError:
        return default
    return value if value > 0 else default


def _service_url(raw: str) -> str:
    url = raw.strip().rstrip("/")
    if "://" not in url:
        url = f"http://{url}"
    return url


def load_config(
    base_url: Optional[str] = None,
    poll_interval: Optional[float] = None,
    poll_timeout: Optional[float] = None,
) -> CLIConfig:
    defaults = CLIConfig()
    interval = poll_interval or _positive_env(_POLL_INTERVAL_ENV, defaults.poll_interval)
    timeout = poll_timeout or _positive_env(_TIMEOUT_ENV, defaults.poll_timeout)
    return CLIConfig(
        base_url=_service_url(base_url or os.getenv(_BASE_URL_ENV) or DEFAULT_BASE_URL),
        poll_interval=interval,
        # At least one check happens before giving up.
        poll_timeout=max(timeout, interval),
        request_timeout=_positive_env(_REQUEST_TIMEOUT_ENV, defaults.request_timeout),
    )
