"""Guest capabilities used by the communicator."""

from __future__ import annotations

import logging
import shlex
from typing import Callable

from vmcomm.errors import GuestCapabilityNotFound
from vmcomm.executor import StdoutChunk

log = logging.getLogger(__name__)

_AUTHORIZED_KEYS = "~/.ssh/authorized_keys"


class Guest:
    """Named capabilities of a guest OS, each called with the machine first."""

    def __init__(self, machine) -> None:
        self.machine = machine
        self._capabilities: dict[str, Callable] = {}

    def register(self, name: str, func: Callable) -> None:
        self._capabilities[name] = func

    def has_capability(self, name: str) -> bool:
        return name in self._capabilities

    def capability(self, name: str, *args):
        """Invoke capability ``name``.

        Raises:
            GuestCapabilityNotFound: If the guest does not provide it.
        """
        func = self._capabilities.get(name)
        if func is None:
            raise GuestCapabilityNotFound(capability=name)
        log.debug("Invoking guest capability %s", name)
        return func(self.machine, *args)


# ---------------------------------------------------------------------------
# Linux capabilities
# ---------------------------------------------------------------------------


def insert_public_key(machine, contents: str) -> None:
    """Append a public key to the login user's authorized_keys once."""
    key = shlex.quote(contents.strip())
    machine.communicate.execute(
        "mkdir -p ~/.ssh && chmod 0700 ~/.ssh"
        f" && touch {_AUTHORIZED_KEYS} && chmod 0600 {_AUTHORIZED_KEYS}"
        f" && (grep -q -x -F {key} {_AUTHORIZED_KEYS}"
        f" || printf '%s\\n' {key} >> {_AUTHORIZED_KEYS})"
    )


def remove_public_key(machine, contents: str) -> None:
    """Drop a public key from authorized_keys; absent files or keys are fine."""
    key = shlex.quote(contents.strip())
    machine.communicate.execute(
        f"if test -f {_AUTHORIZED_KEYS}; then"
        f" grep -v -x -F {key} {_AUTHORIZED_KEYS} > {_AUTHORIZED_KEYS}.tmp || true;"
        f" mv {_AUTHORIZED_KEYS}.tmp {_AUTHORIZED_KEYS} && chmod 0600 {_AUTHORIZED_KEYS};"
        " fi"
    )


def network_interfaces(machine) -> list[str]:
    """Names of the non-loopback interfaces, in kernel order."""
    output = bytearray()

    def collect(event) -> None:
        if isinstance(event, StdoutChunk):
            output.extend(event.data)

    machine.communicate.sudo(
        "/sbin/ip -o -0 addr | grep -v LOOPBACK | awk '{print $2}' | sed 's/://'",
        on_output=collect,
    )
    return [line.strip() for line in output.decode().splitlines() if line.strip()]


class LinuxGuest(Guest):
    """Capabilities for guests with a POSIX shell and OpenSSH."""

    def __init__(self, machine) -> None:
        super().__init__(machine)
        self.register("insert_public_key", insert_public_key)
        self.register("remove_public_key", remove_public_key)
        self.register("network_interfaces", network_interfaces)
