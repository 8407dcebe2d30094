"""SSH access to the controller's command shell."""

from __future__ import annotations

import logging
import re
import socket
import time
from functools import lru_cache
from threading import Lock
from typing import Callable, Optional, Protocol

import paramiko

from models.errors import CommandRejected, CommandTimeout, RemoteUnreachable
from settings import get_settings

logger = logging.getLogger(__name__)

_STATUS_RE = re.compile(r"^\s*status=(\d+)\s*$", re.MULTILINE)
_ERROR_TAG_RE = re.compile(r"^\s*error_tag=(.+)$", re.MULTILINE)
_READ_CHUNK = 32768
_POLL_PAUSE = 0.01

ClientFactory = Callable[[], paramiko.SSHClient]


class CommandChannel(Protocol):
    """An ordered session that executes one textual command at a time."""

    def run(self, command: str, timeout: Optional[float] = None) -> str:
        ...

    def reset(self) -> None:
        ...

    def close(self) -> None:
        ...


def _check_output(command: str, stdout: str, stderr: str) -> str:
    if stderr.strip():
        raise CommandRejected(stderr.strip(), output=stdout)
    status = _STATUS_RE.search(stdout)
    if status and status.group(1) != "0":
        tag = _ERROR_TAG_RE.search(stdout)
        detail = tag.group(1).strip() if tag else f"status={status.group(1)}"
        raise CommandRejected(f"Controller rejected {command!r}: {detail}", output=stdout)
    return stdout


class _SSHSession:
    """Connection parameters shared by the command channel and query runner."""

    def __init__(
        self,
        host: str,
        username: str,
        password: str,
        connect_timeout: float,
        client_factory: ClientFactory,
    ) -> None:
        self.host = host
        self.username = username
        self.password = password
        self.connect_timeout = connect_timeout
        self._client_factory = client_factory

    def open(self) -> paramiko.SSHClient:
        client = self._client_factory()
        client.set_missing_host_key_policy(paramiko.AutoAddPolicy())
        try:
            client.connect(
                self.host,
                username=self.username,
                password=self.password,
                timeout=self.connect_timeout,
                banner_timeout=self.connect_timeout,
                auth_timeout=self.connect_timeout,
                look_for_keys=False,
                allow_agent=False,
            )
        except paramiko.AuthenticationException as exc:
            client.close()
            raise RemoteUnreachable(f"Authentication to {self.host} failed.") from exc
        except (paramiko.SSHException, OSError) as exc:
            client.close()
            raise RemoteUnreachable(f"Cannot connect to {self.host}: {exc}") from exc
        return client

    @staticmethod
    def execute(client: paramiko.SSHClient, command: str, timeout: float) -> tuple[str, str]:
        """Run ``command`` and collect stdout and stderr as they arrive.

        Both streams are read in one loop until the remote side exits.
        """
        _stdin, stdout, _stderr = client.exec_command(command, timeout=timeout)
        channel = stdout.channel
        deadline = time.monotonic() + timeout
        out = bytearray()
        err = bytearray()
        while True:
            received = False
            while channel.recv_ready():
                out += channel.recv(_READ_CHUNK)
                received = True
            while channel.recv_stderr_ready():
                err += channel.recv_stderr(_READ_CHUNK)
                received = True
            if channel.exit_status_ready() and not (channel.recv_ready() or channel.recv_stderr_ready()):
                break
            if not received:
                if time.monotonic() >= deadline:
                    raise socket.timeout(f"No exit status after {timeout}s.")
                time.sleep(_POLL_PAUSE)
        return out.decode("utf-8", errors="replace"), err.decode("utf-8", errors="replace")


class SSHCommandChannel:
    """Single persistent session used for every mutating command.

    The session lock is held for the whole command so two commands can never
    interleave on the wire. A timeout tears the session down before the lock
    is released; the next command reconnects.
    """

    def __init__(
        self,
        host: str,
        username: str,
        password: str,
        timeout: float = 15.0,
        connect_timeout: float = 10.0,
        client_factory: ClientFactory = paramiko.SSHClient,
    ) -> None:
        self.timeout = timeout
        self._session = _SSHSession(host, username, password, connect_timeout, client_factory)
        self._client: Optional[paramiko.SSHClient] = None
        self._lock = Lock()

    def run(self, command: str, timeout: Optional[float] = None) -> str:
        limit = self.timeout if timeout is None else timeout
        with self._lock:
            client = self._ensure_client()
            started = time.perf_counter()
            try:
                out, err = self._session.execute(client, command, limit)
            except socket.timeout as exc:
                self._drop_client()
                logger.warning(
                    "Command timed out; session reset",
                    extra={"command": command, "elapsed_ms": _elapsed_ms(started)},
                )
                raise CommandTimeout(f"Command {command!r} timed out after {limit}s.") from exc
            except (paramiko.SSHException, OSError, EOFError) as exc:
                self._drop_client()
                raise RemoteUnreachable(f"Command session failed: {exc}") from exc
            logger.debug(
                "Command finished",
                extra={"command": command, "elapsed_ms": _elapsed_ms(started)},
            )
            return _check_output(command, out, err)

    def reset(self) -> None:
        with self._lock:
            self._drop_client()

    def close(self) -> None:
        self.reset()

    def _ensure_client(self) -> paramiko.SSHClient:
        client = self._client
        if client is not None:
            transport = client.get_transport()
            if transport is not None and transport.is_active():
                return client
            self._drop_client()
        self._client = self._session.open()
        return self._client

    def _drop_client(self) -> None:
        if self._client is not None:
            try:
                self._client.close()
            finally:
                self._client = None


class ShellQueryRunner:
    """Runs read-only shell queries, each on its own short-lived session."""

    def __init__(
        self,
        host: str,
        username: str,
        password: str,
        timeout: float = 10.0,
        client_factory: ClientFactory = paramiko.SSHClient,
    ) -> None:
        self.timeout = timeout
        self._session = _SSHSession(host, username, password, timeout, client_factory)

    def query(self, command: str) -> str:
        client = self._session.open()
        try:
            out, err = self._session.execute(client, command, self.timeout)
        except socket.timeout as exc:
            raise RemoteUnreachable(f"Query {command!r} timed out.") from exc
        except (paramiko.SSHException, OSError, EOFError) as exc:
            raise RemoteUnreachable(f"Query {command!r} failed: {exc}") from exc
        finally:
            client.close()
        try:
            return _check_output(command, out, err)
        except CommandRejected as exc:
            raise RemoteUnreachable(str(exc)) from exc


class UnconfiguredChannel:
    """Rejects every command until controller credentials are configured."""

    def run(self, command: str, timeout: Optional[float] = None) -> str:
        raise RemoteUnreachable(
            "Controller not configured. Set ILO_HOST, ILO_USERNAME and ILO_PASSWORD."
        )

    def reset(self) -> None:
        return None

    def close(self) -> None:
        return None


@lru_cache
def build_default_channel() -> CommandChannel:
    settings = get_settings()
    if not settings.controller_configured:
        return UnconfiguredChannel()
    return SSHCommandChannel(
        host=settings.controller_host or "",
        username=settings.controller_username or "",
        password=settings.controller_password or "",
        timeout=settings.command_timeout,
        connect_timeout=settings.remote_timeout,
    )


def _elapsed_ms(started: float) -> int:
    return int((time.perf_counter() - started) * 1000)
