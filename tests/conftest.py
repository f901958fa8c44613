"""Shared fakes: a scripted SSH channel, transport and guest shell."""

from __future__ import annotations

from pathlib import Path
from unittest.mock import MagicMock, patch

import paramiko
import pytest

from vmcomm.config import SSHSettings
from vmcomm.machine import StaticMachine
from vmcomm.transcript import CMD_GARBAGE_MARKER

MARKER = CMD_GARBAGE_MARKER


class FakeChannel:
    """Stands in for paramiko.Channel with pre-scripted reads.

    ``responder`` (if given) is called with the script once the client
    sends EOF and returns ``(stdout, stderr, exit_status)`` for it.
    """

    def __init__(
        self,
        stdout=(),
        stderr=(),
        exit_status=-1,
        error: BaseException | None = None,
        transport=None,
        responder=None,
        pty_ok: bool = True,
    ) -> None:
        self._stdout = list(stdout)
        self._stderr = list(stderr)
        self.exit_status = exit_status
        self._error = error
        self._responder = responder
        self._pty_ok = pty_ok
        self.transport = transport if transport is not None else FakeTransport()
        self.sent = bytearray()
        self.exec_commands: list[str] = []
        self.pty_requested = False
        self.environment: dict | None = None
        self.eof_sent = False
        self.closed = False
        self.timeout = None

    # request side
    def get_pty(self, term="vt100", **kwargs):
        self.pty_requested = True
        if not self._pty_ok:
            raise paramiko.SSHException("pty request denied")

    def exec_command(self, command: str) -> None:
        self.exec_commands.append(command)

    def update_environment(self, env: dict) -> None:
        self.environment = env

    def settimeout(self, timeout) -> None:
        self.timeout = timeout

    def sendall(self, data: bytes) -> None:
        self.sent.extend(data)

    def shutdown_write(self) -> None:
        self.eof_sent = True
        if self._responder is not None:
            out, err, status = self._responder(self.sent.decode())
            self._stdout.append(MARKER + out)
            self._stderr.append(MARKER + err)
            self.exit_status = status

    # read side
    def exit_status_ready(self) -> bool:
        return True

    def recv_ready(self) -> bool:
        return bool(self._stdout) or self._error is not None

    def recv(self, size: int) -> bytes:
        if self._stdout:
            return self._stdout.pop(0)
        if self._error is not None:
            error, self._error = self._error, None
            raise error
        return b""

    def recv_stderr_ready(self) -> bool:
        return bool(self._stderr)

    def recv_stderr(self, size: int) -> bytes:
        return self._stderr.pop(0) if self._stderr else b""

    def get_transport(self):
        return self.transport

    def close(self) -> None:
        self.closed = True


class FakeTransport:
    """Hands out FakeChannels, either pre-built or backed by a shell."""

    def __init__(self, channels=(), shell=None, active: bool = True) -> None:
        self.channels = list(channels)
        self.shell = shell
        self.active = active
        self.opened: list[FakeChannel] = []
        self.keepalive = None
        self.server_extensions: dict = {}

    def is_active(self) -> bool:
        return self.active

    def set_keepalive(self, interval) -> None:
        self.keepalive = interval

    def open_session(self, timeout=None) -> FakeChannel:
        if self.channels:
            channel = self.channels.pop(0)
            channel.transport = self
        else:
            channel = FakeChannel(transport=self, responder=self.shell)
        self.opened.append(channel)
        return channel


def command_from_script(script: str) -> str:
    """Recover the user command from a raw-mode script."""
    marker = MARKER.decode()
    head = f"(>&2 printf '{marker}')\n"
    body = script.split(head, 1)[1]
    return body[: -len("\nexit\n")]


class ScriptedShell:
    """A guest shell answering commands from a table of substrings.

    Commands seen are recorded in ``commands``; the empty liveness probe
    channel never calls in here since it sends no script.
    """

    def __init__(self, responses: dict | None = None) -> None:
        self.responses = dict(responses or {})
        self.commands: list[str] = []

    def __call__(self, script: str):
        command = command_from_script(script)
        self.commands.append(command)
        for needle, response in self.responses.items():
            if needle and needle in command:
                return response
        return self.responses.get(command, (b"", b"", 0))


@pytest.fixture
def settings(tmp_path: Path) -> SSHSettings:
    # Key rotation has its own tests; keep it out of the way elsewhere.
    return SSHSettings(
        insecure_key_dir=tmp_path / "insecure",
        insert_key=False,
        connect_retries=1,
        connect_retry_delay=0,
    )


@pytest.fixture
def guest_shell() -> ScriptedShell:
    return ScriptedShell()


@pytest.fixture
def transport(guest_shell: ScriptedShell) -> FakeTransport:
    return FakeTransport(shell=guest_shell)


@pytest.fixture
def mock_ssh(transport: FakeTransport):
    """Patch paramiko.SSHClient so every client uses the fake transport."""
    with patch("vmcomm.connection.paramiko.SSHClient") as MockSSHClient:
        MockSSHClient.return_value.get_transport.return_value = transport
        yield MockSSHClient


@pytest.fixture
def machine(tmp_path: Path, settings: SSHSettings) -> StaticMachine:
    return StaticMachine(
        "default",
        {"host": "10.0.0.5", "port": 22, "username": "vagrant", "password": "secret"},
        settings=settings,
        data_dir=tmp_path / "data",
        ui=MagicMock(),
    )
