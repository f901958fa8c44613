"""Remote command execution over an SSH channel."""

from __future__ import annotations

import logging
import os
import queue
import threading
import time
from contextlib import closing
from dataclasses import dataclass
from typing import Callable, Iterable, Iterator, Union

import paramiko
from paramiko.agent import AgentRequestHandler

from vmcomm.config import SSHSettings
from vmcomm.connection import ConnectionManager
from vmcomm.errors import (
    CommunicatorError,
    SSHBadExitStatus,
    SSHChannelOpenFail,
    SSHDisconnected,
    SSHNoExitStatus,
)
from vmcomm.transcript import (
    CMD_GARBAGE_MARKER,
    PTY_DELIM_END,
    PTY_DELIM_START,
    MarkerMatcher,
    extract_pty_output,
    strip_ansi,
)

log = logging.getLogger(__name__)

_CHUNK_SIZE = 32768
_POLL_INTERVAL = 0.01


# ── events and results ────────────────────────────────────────────────


@dataclass(frozen=True)
class StdoutChunk:
    data: bytes


@dataclass(frozen=True)
class StderrChunk:
    data: bytes


@dataclass(frozen=True)
class ExitStatus:
    code: int


Event = Union[StdoutChunk, StderrChunk, ExitStatus]


class _StreamClosed(Exception):
    """The consumer of a stream stopped reading."""


@dataclass
class CommandResult:
    """Result of a remote command execution."""

    exit_status: int
    stdout: bytes = b""
    stderr: bytes = b""


# ── script construction ───────────────────────────────────────────────


def environment_export(settings: SSHSettings, key: str, value: str) -> str:
    """Render one ``export`` line from the configured template."""
    template = settings.export_command_template
    return template.replace("%ENV_KEY%", key, 1).replace("%ENV_VALUE%", value, 1) + "\n"


def shell_command(settings: SSHSettings, shell: str | None = None, sudo: bool = False) -> str:
    """The command the channel execs; the script is fed to it on stdin."""
    cmd = shell if shell else settings.shell
    if sudo:
        cmd = settings.sudo_command.replace("%c", cmd)
    return cmd


def build_script(
    command: str,
    settings: SSHSettings,
    pty: bool,
    auth_socket: str | None = None,
) -> bytes:
    """Wrap ``command`` in the framing that lets output be told from noise."""
    script = environment_export(settings, "TERM", "vt100")
    if auth_socket:
        script += environment_export(settings, "SSH_AUTH_SOCK", auth_socket)

    if pty:
        start = PTY_DELIM_START.decode()
        end = PTY_DELIM_END.decode()
        script += "stty raw -echo\n"
        script += environment_export(settings, "PS1", "")
        script += environment_export(settings, "PS2", "")
        script += environment_export(settings, "PROMPT_COMMAND", "")
        script += f"printf {start}\n"
        script += f"{command}\n"
        script += "exitcode=$?\n"
        script += f"printf {end}\n"
        script += "exit $exitcode\n"
    else:
        marker = CMD_GARBAGE_MARKER.decode()
        script += f"printf '{marker}'\n(>&2 printf '{marker}')\n{command}\n"
        # Remember to exit or this channel will hang open
        script += "exit\n"
    return script.encode()


# ── channel demultiplexing ────────────────────────────────────────────


def pump_channel(
    channel: paramiko.Channel,
    script: bytes,
    pty: bool,
    emit: Callable[[Event], None],
) -> int:
    """Send ``script`` and relay the channel's output until it finishes.

    Returns the exit status. A channel torn down with the connection (the
    guest rebooting mid-script) counts as success with any pty transcript
    dropped.

    Raises:
        SSHNoExitStatus: The channel closed normally without an exit status.
        SSHInvalidShell: The transcript framing was not found.
    """
    stdout_marker = MarkerMatcher()
    stderr_marker = MarkerMatcher()
    pty_stdout = bytearray()
    reset = False

    def on_stdout(data: bytes) -> None:
        data = strip_ansi(data)
        if pty:
            pty_stdout.extend(data)
            return
        data = stdout_marker.feed(data)
        if data:
            emit(StdoutChunk(data))

    def on_stderr(data: bytes) -> None:
        data = strip_ansi(data)
        log.debug("stderr: %r", data)
        data = stderr_marker.feed(data)
        if data:
            emit(StderrChunk(data))

    try:
        channel.sendall(script)
        channel.shutdown_write()

        while True:
            # Sampled before draining: output sent ahead of the exit status
            # is already buffered once the status is visible.
            finished = channel.exit_status_ready()
            received = False
            if channel.recv_ready():
                received = True
                data = channel.recv(_CHUNK_SIZE)
                if data:
                    on_stdout(data)
            if channel.recv_stderr_ready():
                received = True
                data = channel.recv_stderr(_CHUNK_SIZE)
                if data:
                    on_stderr(data)
            if finished and not received:
                break
            if not received:
                time.sleep(_POLL_INTERVAL)
    except (EOFError, OSError) as exc:
        log.debug("Channel I/O failed: %r", exc)
        reset = True

    exit_status = channel.exit_status
    if exit_status == -1 and not reset:
        transport = channel.get_transport()
        reset = transport is not None and not transport.is_active()

    if reset:
        log.info("SSH connection unexpectedly closed. Assuming reboot or something.")
        emit(ExitStatus(0))
        return 0

    if pty:
        log.debug("PTY stdout: %r", bytes(pty_stdout))
        data = extract_pty_output(bytes(pty_stdout))
        log.debug("PTY stdout parsed: %r", data)
        if data:
            emit(StdoutChunk(data))

    if exit_status == -1:
        log.debug("Exit status: None")
        raise SSHNoExitStatus()

    log.debug("Exit status: %s", exit_status)
    emit(ExitStatus(exit_status))
    return exit_status


# ── executor ──────────────────────────────────────────────────────────


class CommandExecutor:
    """Runs commands on the guest through the connection manager's session."""

    def __init__(self, connections: ConnectionManager, settings: SSHSettings) -> None:
        self.connections = connections
        self.settings = settings

    def execute(
        self,
        command: str,
        *,
        shell: str | None = None,
        sudo: bool = False,
        force_raw: bool = False,
        error_check: bool = True,
        good_exit: int | Iterable[int] = 0,
        error_key: str = "ssh_bad_exit_status",
        error_class: type[CommunicatorError] = SSHBadExitStatus,
        on_output: Callable[[Event], None] | None = None,
    ) -> CommandResult:
        """Run ``command`` in the configured login shell.

        Output is accumulated into the result and, when ``on_output`` is
        given, relayed chunk by chunk as it arrives.

        Raises:
            SSHBadExitStatus: If ``error_check`` is set and the exit status
                is not in ``good_exit`` (or ``error_class`` when given).
        """
        accepted = {good_exit} if isinstance(good_exit, int) else set(good_exit)
        stdout = bytearray()
        stderr = bytearray()

        def emit(event: Event) -> None:
            if isinstance(event, StdoutChunk):
                stdout.extend(event.data)
            elif isinstance(event, StderrChunk):
                stderr.extend(event.data)
            if on_output is not None:
                on_output(event)

        client = self.connections.connect()
        exit_status = self.shell_execute(
            client, command, shell=shell, sudo=sudo, force_raw=force_raw, emit=emit
        )
        result = CommandResult(exit_status, bytes(stdout), bytes(stderr))

        if error_check and exit_status not in accepted:
            raise error_class(
                exit_status=exit_status,
                command=command,
                stdout=result.stdout.decode(errors="replace"),
                stderr=result.stderr.decode(errors="replace"),
                error_key=error_key,
            )
        return result

    def stream(self, command: str, maxsize: int = 64, **options) -> Iterator[Event]:
        """Yield output events in arrival order, ending with ExitStatus.

        The command runs on a worker thread feeding a bounded queue; errors
        it raises are re-raised here after the last event. Closing the
        generator early stops the worker at its next output and closes
        the channel.
        """
        events: queue.Queue = queue.Queue(maxsize=maxsize)
        cancelled = threading.Event()
        done = object()
        failure: list[BaseException] = []

        def relay(event: Event) -> None:
            if cancelled.is_set():
                raise _StreamClosed()
            events.put(event)

        def worker() -> None:
            try:
                self.execute(command, on_output=relay, **options)
            except BaseException as exc:
                failure.append(exc)
            finally:
                events.put(done)

        thread = threading.Thread(target=worker, name="vmcomm-stream", daemon=True)
        thread.start()
        try:
            while True:
                item = events.get()
                if item is done:
                    break
                yield item
        finally:
            cancelled.set()
            # Keep the queue moving so a blocked put can see the cancel.
            while thread.is_alive():
                try:
                    events.get(timeout=_POLL_INTERVAL)
                except queue.Empty:
                    pass
            thread.join()
        if failure:
            raise failure[0]

    def shell_execute(
        self,
        client: paramiko.SSHClient,
        command: str,
        *,
        shell: str | None = None,
        sudo: bool = False,
        force_raw: bool = False,
        emit: Callable[[Event], None],
    ) -> int:
        """Execute the command on an open session and return its exit status."""
        endpoint = self.connections.endpoint
        log.info("Execute: %s (sudo=%s)", command, sudo)

        # Set SSH_AUTH_SOCK if we are in sudo and forwarding agent, sudo
        # drops it on many boxes.
        auth_socket = None
        if sudo and endpoint is not None and endpoint.forward_agent:
            auth_socket = self._remote_auth_socket()

        transport = client.get_transport()
        if transport is None or not transport.is_active():
            raise SSHDisconnected()
        try:
            channel = transport.open_session()
        except paramiko.ChannelException as exc:
            raise SSHChannelOpenFail() from exc
        except paramiko.SSHException as exc:
            raise SSHDisconnected(error=str(exc)) from exc

        with closing(channel):
            pty = False
            if self.settings.pty and not force_raw:
                try:
                    channel.get_pty(term="vt100")
                    log.debug("pty obtained for connection")
                    pty = command != ""
                except paramiko.SSHException:
                    log.warning("failed to obtain pty, will try to continue anyways")

            if endpoint is not None:
                if endpoint.forward_agent:
                    AgentRequestHandler(channel)
                self._send_environment(channel, endpoint.forward_env)

            channel.exec_command(shell_command(self.settings, shell=shell, sudo=sudo))
            script = build_script(command, self.settings, pty, auth_socket)
            return pump_channel(channel, script, pty, emit)

    def _remote_auth_socket(self) -> str | None:
        result = self.execute("echo; printf $SSH_AUTH_SOCK", error_check=False)
        lines = result.stdout.decode(errors="replace").split("\n")
        auth_socket = lines[-1].strip() if lines else ""
        if not auth_socket:
            log.warning("No SSH_AUTH_SOCK found despite forward_agent being set.")
            return None
        log.info("Setting SSH_AUTH_SOCK remotely: %s", auth_socket)
        return auth_socket

    @staticmethod
    def _send_environment(channel: paramiko.Channel, names: Iterable[str]) -> None:
        env = {name: os.environ[name] for name in names if name in os.environ}
        if not env:
            return
        try:
            channel.update_environment(env)
        except paramiko.SSHException as exc:
            log.warning("Guest refused forwarded environment %s: %s", sorted(env), exc)
