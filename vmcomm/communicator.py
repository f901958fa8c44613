"""SSH communicator: readiness, key rotation and the public command API."""

from __future__ import annotations

import enum
import logging
import threading
import time
from typing import Iterator

from vmcomm.connection import ConnectionManager
from vmcomm.endpoint import Endpoint
from vmcomm.errors import (
    CommunicatorError,
    SSHAuthenticationFailed,
    SSHConnectionAborted,
    SSHConnectionRefused,
    SSHConnectionReset,
    SSHConnectionTimeout,
    SSHDisconnected,
    SSHHostDown,
    SSHInsertKeyUnsupported,
    SSHInvalidShell,
    SSHKeyBadOwner,
    SSHKeyBadPermissions,
    SSHKeyTypeNotSupported,
    SSHKeyTypeNotSupportedByServer,
    SSHNoRoute,
    SSHNotReady,
)
from vmcomm.executor import CommandExecutor, CommandResult, Event, environment_export
from vmcomm.keys import (
    SUPPORTED_KEY_TYPES_COMMAND,
    create_keypair,
    insecure_public_key,
    is_insecure_key,
    key_types_from_options,
    key_types_from_transport,
    parse_sshd_options,
    resolve_key_type,
    write_private_key,
)
from vmcomm.transfer import TransferManager

log = logging.getLogger(__name__)

READY_COMMAND = ""
ADDRESS_POLL_INTERVAL = 0.5
RETRY_INTERVAL = 0.5
MESSAGE_REPEAT_INTERVAL = 10.0

# Readiness failures worth telling the user about while we keep trying.
_RETRY_MESSAGES: dict[type[CommunicatorError], str] = {
    SSHConnectionTimeout: "Connection timeout.",
    SSHAuthenticationFailed: "Authentication failure.",
    SSHDisconnected: "Remote connection disconnect.",
    SSHConnectionRefused: "Connection refused.",
    SSHConnectionReset: "Connection reset.",
    SSHConnectionAborted: "Connection aborted.",
    SSHHostDown: "Host appears down.",
    SSHNoRoute: "Host unreachable.",
}

# Misconfigurations no amount of waiting will fix.
_FATAL_ERRORS = (
    SSHInvalidShell,
    SSHKeyTypeNotSupported,
    SSHKeyTypeNotSupportedByServer,
    SSHKeyBadOwner,
    SSHKeyBadPermissions,
    SSHInsertKeyUnsupported,
)


class ReadyState(enum.Enum):
    WAITING_FOR_ADDRESS = "waiting_for_address"
    CONNECTING = "connecting"
    SHELL_CHECK = "shell_check"
    KEY_ROTATION = "key_rotation"
    READY = "ready"
    TIMED_OUT = "timed_out"


class KeyState(enum.Enum):
    PENDING = "pending"
    ROTATING = "rotating"
    INSERTED = "inserted"
    FAILED = "failed"


_KEY_TRANSITIONS = {
    KeyState.PENDING: {KeyState.ROTATING},
    KeyState.ROTATING: {KeyState.INSERTED, KeyState.FAILED},
}


class KeyRotation:
    """Once-per-communicator key rotation, claimed under a lock.

    Only the caller that moves PENDING -> ROTATING performs the rotation;
    everyone after it sees a non-pending state and skips.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.state = KeyState.PENDING

    @property
    def inserted(self) -> bool:
        return self.state is not KeyState.PENDING

    def claim(self) -> bool:
        with self._lock:
            if self.state is not KeyState.PENDING:
                return False
            self._move(KeyState.ROTATING)
            return True

    def finish(self, succeeded: bool) -> None:
        with self._lock:
            self._move(KeyState.INSERTED if succeeded else KeyState.FAILED)

    def _move(self, new: KeyState) -> None:
        if new not in _KEY_TRANSITIONS.get(self.state, ()):
            raise RuntimeError(f"invalid key rotation transition {self.state.value} -> {new.value}")
        log.debug("Key rotation: %s -> %s", self.state.value, new.value)
        self.state = new


class Communicator:
    """Talks to one machine's guest over SSH."""

    def __init__(self, machine) -> None:
        self.machine = machine
        self.settings = machine.settings
        self.state = ReadyState.WAITING_FOR_ADDRESS
        self.key_rotation = KeyRotation()
        self._ssh_info_notification = False
        self._supported_key_types: list[str] | None = None

        self.connections = ConnectionManager(self._resolve_endpoint, on_replace=self._forget_session_data)
        self.executor = CommandExecutor(self.connections, self.settings)
        self.transfers = TransferManager(self.connections, self.executor)

    # ── readiness ─────────────────────────────────────────────────────

    def wait_for_ready(self, timeout: float) -> bool:
        """Block until the guest is ready or ``timeout`` seconds pass.

        On timeout the in-flight attempt is abandoned, not interrupted: it
        finishes in the background and no further attempt is started.
        Fatal errors raised while waiting are re-raised here.
        """
        stop = threading.Event()
        outcome: dict = {}

        def worker() -> None:
            try:
                outcome["ready"] = self._wait_loop(stop)
            except BaseException as exc:
                outcome["error"] = exc

        thread = threading.Thread(target=worker, name="vmcomm-wait-for-ready", daemon=True)
        thread.start()
        thread.join(timeout)

        if thread.is_alive():
            stop.set()
            self._set_state(ReadyState.TIMED_OUT)
            log.info("SSH not ready after %ss", timeout)
            return False
        if "error" in outcome:
            raise outcome["error"]
        return outcome["ready"]

    def _wait_loop(self, stop: threading.Event) -> bool:
        self._set_state(ReadyState.WAITING_FOR_ADDRESS)
        while True:
            info = self.machine.ssh_info()
            if info:
                break
            if stop.wait(ADDRESS_POLL_INTERVAL):
                return False

        if not self._ssh_info_notification:
            endpoint = Endpoint.from_ssh_info(info, self.settings)
            self.machine.ui.detail(f"SSH address: {endpoint.host}:{endpoint.port}")
            self.machine.ui.detail(f"SSH username: {endpoint.username}")
            self.machine.ui.detail(f"SSH auth method: {endpoint.auth_type}")
            self._ssh_info_notification = True

        previous_messages: dict[str, float] = {}
        while not stop.is_set():
            message = None
            try:
                self._set_state(ReadyState.CONNECTING)
                self.connections.connect(retries=1)
                if self.ready():
                    return True
            except _FATAL_ERRORS as exc:
                log.info("SSH not ready: %r", exc)
                raise
            except CommunicatorError as exc:
                log.info("SSH not ready: %r", exc)
                message = _RETRY_MESSAGES.get(type(exc))

            # Repeated messages are only shown again after 10 seconds.
            if message:
                message_at = time.monotonic()
                last = previous_messages.get(message)
                if last is None or message_at - last > MESSAGE_REPEAT_INTERVAL:
                    self.machine.ui.detail(f"Warning: {message} Retrying...")
                    previous_messages[message] = message_at

            stop.wait(RETRY_INTERVAL)
        return False

    def ready(self) -> bool:
        """Check the guest is reachable with a working shell.

        Performs the one-time key rotation the first time it succeeds.
        """
        log.debug("Checking whether SSH is ready...")
        try:
            self.connections.connect()
            log.info("SSH is ready!")
        except CommunicatorError as exc:
            log.info("SSH not up: %r", exc)
            return False

        self._set_state(ReadyState.SHELL_CHECK)
        if self.execute(READY_COMMAND, error_check=False).exit_status != 0:
            raise SSHInvalidShell()

        # Someone else is already switching out the key, or nobody should.
        if not self.settings.insert_key or not self.key_rotation.claim():
            self._set_state(ReadyState.READY)
            return True

        self._set_state(ReadyState.KEY_ROTATION)
        try:
            rotated = self._rotate_key()
        except BaseException:
            self.key_rotation.finish(False)
            raise
        self.key_rotation.finish(True)

        if rotated:
            self.connections.close()
            return self.ready()

        self._set_state(ReadyState.READY)
        return True

    def reset(self) -> bool:
        """Drop the session and wait briefly for the guest to come back."""
        self.connections.close()
        self._ssh_info_notification = True
        return self.wait_for_ready(5)

    def close(self) -> None:
        self.connections.close()

    # ── commands ──────────────────────────────────────────────────────

    def execute(self, command: str, **options) -> CommandResult:
        """Run a command on the guest; see CommandExecutor.execute."""
        return self.executor.execute(command, **options)

    def sudo(self, command: str, **options) -> CommandResult:
        options.setdefault("sudo", True)
        return self.executor.execute(command, **options)

    def test(self, command: str, **options) -> bool:
        """True if ``command`` exits 0; never raises on exit status."""
        options.setdefault("error_check", False)
        return self.executor.execute(command, **options).exit_status == 0

    def stream(self, command: str, **options) -> Iterator[Event]:
        return self.executor.stream(command, **options)

    def generate_environment_export(self, key: str, value: str) -> str:
        return environment_export(self.settings, key, value)

    # ── file transfer ─────────────────────────────────────────────────

    def upload(self, source, destination: str) -> None:
        self.transfers.upload(source, destination)

    def download(self, source: str, destination) -> None:
        self.transfers.download(source, destination)

    # ── key rotation ──────────────────────────────────────────────────

    def supported_key_types(self) -> list[str]:
        """Key algorithms the guest's sshd accepts, cached per session.

        Raises:
            SSHNotReady: Without an open session.
            ServerDataError: If neither sshd nor the transport tells us.
        """
        if self._supported_key_types is not None:
            return self._supported_key_types

        client = self.connections.client
        if client is None:
            raise SSHNotReady()

        result = self.sudo(SUPPORTED_KEY_TYPES_COMMAND, error_check=False)
        if result.exit_status != 0:
            # sshd -T needs root; fall back to what the handshake revealed
            types = key_types_from_transport(client.get_transport())
        else:
            options = parse_sshd_options(result.stdout.decode(errors="replace"))
            if not options:
                log.warning("failed to determine supported key types from remote inspection")
            types = key_types_from_options(options)

        self._supported_key_types = types
        return types

    def _rotate_key(self) -> bool:
        """Replace the insecure key or password with a generated key.

        Returns False when the current credentials do not call for it.
        """
        info = self.machine.ssh_info()
        if info is None:
            return False
        endpoint = Endpoint.from_ssh_info(info, self.settings)

        insert = bool(endpoint.password) and not endpoint.private_key_paths
        for key_path in endpoint.private_key_paths:
            if is_insecure_key(key_path, self.settings.insecure_key_dir):
                insert = True
                self.machine.ui.detail(
                    "\nInsecure default keypair detected. It will be replaced "
                    "with a newly generated keypair for better security."
                )
                break
        if not insert:
            return False

        guest = self.machine.guest
        if not (guest.has_capability("insert_public_key") and guest.has_capability("remove_public_key")):
            raise SSHInsertKeyUnsupported()

        key_type = resolve_key_type(self.settings.key_type, self.supported_key_types)
        log.info("Creating new ssh keypair (type: %s)", key_type)
        keypair = create_keypair(key_type)

        # The private half must be on disk before the guest trusts the key.
        write_private_key(self.machine.private_key_path, keypair.private)

        log.info("Inserting key to avoid password: %s", keypair.openssh)
        self.machine.ui.detail("\nInserting generated public key within guest...")
        guest.capability("insert_public_key", keypair.openssh)

        self.machine.ui.detail("Removing insecure key from the guest if it's present...")
        guest.capability("remove_public_key", insecure_public_key(self.settings.insecure_key_dir))

        self.machine.ui.detail("Key inserted! Disconnecting and reconnecting using new SSH key...")
        return True

    # ── internal helpers ──────────────────────────────────────────────

    def _resolve_endpoint(self) -> Endpoint:
        info = self.machine.ssh_info()
        if info is None:
            raise SSHNotReady()
        return Endpoint.from_ssh_info(info, self.settings)

    def _forget_session_data(self) -> None:
        self._supported_key_types = None

    def _set_state(self, state: ReadyState) -> None:
        if state is not self.state:
            log.debug("Readiness: %s -> %s", self.state.value, state.value)
            self.state = state
