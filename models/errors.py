"""Error kinds raised by the synchronization engine."""

from __future__ import annotations

from datetime import datetime
from typing import Optional


class EngineError(Exception):
    """Base class for every engine failure surfaced to callers."""


class ValidationError(EngineError, ValueError):
    """Input rejected before any remote I/O took place."""


class RemoteUnreachable(EngineError):
    """The controller could not be reached or refused the credentials."""


class CommandTimeout(EngineError):
    """The command channel did not answer within its timeout."""


class CommandRejected(EngineError):
    """The controller reported an error for a well-formed command."""

    def __init__(self, message: str, output: str = "") -> None:
        super().__init__(message)
        self.output = output


class CommandBusy(EngineError):
    """The command queue is full; nothing was sent."""


class CacheNotReady(EngineError):
    """No poll has completed for the domain yet."""

    def __init__(self, domain: str) -> None:
        super().__init__(f"No data has been fetched for {domain!r} yet.")
        self.domain = domain


class StaleData(UserWarning):
    """Advisory attached to data that is past its time-to-live or invalidated.

    Issued through :mod:`warnings`, never raised: stale data is still served.
    """

    def __init__(self, domain: str, fetched_at: Optional[datetime]) -> None:
        when = fetched_at.isoformat() if fetched_at is not None else "an unknown time"
        super().__init__(f"Data for {domain!r} fetched at {when} is stale.")
        self.domain = domain
        self.fetched_at = fetched_at
