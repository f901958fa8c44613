"""Tests for vmcomm.guest: capability registry and Linux capabilities."""

from __future__ import annotations

from unittest.mock import MagicMock

import pytest

from vmcomm.errors import GuestCapabilityNotFound
from vmcomm.executor import StdoutChunk
from vmcomm.guest import Guest, LinuxGuest, insert_public_key, network_interfaces, remove_public_key

PUBKEY = "ssh-ed25519 AAAAC3Nza vmcomm"


class TestGuestRegistry:

    def test_capability_called_with_machine(self):
        machine = MagicMock()
        guest = Guest(machine)
        func = MagicMock(return_value="ok")
        guest.register("hostname", func)

        assert guest.has_capability("hostname")
        assert guest.capability("hostname", "a", "b") == "ok"
        func.assert_called_once_with(machine, "a", "b")

    def test_missing_capability(self):
        guest = Guest(MagicMock())
        assert not guest.has_capability("nope")
        with pytest.raises(GuestCapabilityNotFound, match="nope"):
            guest.capability("nope")

    def test_linux_guest_capabilities(self):
        guest = LinuxGuest(MagicMock())
        for name in ("insert_public_key", "remove_public_key", "network_interfaces"):
            assert guest.has_capability(name)


class TestLinuxCapabilities:

    def test_insert_public_key(self):
        machine = MagicMock()
        insert_public_key(machine, PUBKEY + "\n")

        command = machine.communicate.execute.call_args.args[0]
        assert "mkdir -p ~/.ssh && chmod 0700 ~/.ssh" in command
        assert f"grep -q -x -F '{PUBKEY}' ~/.ssh/authorized_keys" in command
        assert ">> ~/.ssh/authorized_keys" in command

    def test_remove_public_key(self):
        machine = MagicMock()
        remove_public_key(machine, PUBKEY)

        command = machine.communicate.execute.call_args.args[0]
        assert command.startswith("if test -f ~/.ssh/authorized_keys; then")
        assert f"grep -v -x -F '{PUBKEY}'" in command
        assert command.endswith("fi")

    def test_network_interfaces(self):
        machine = MagicMock()

        def sudo(command, on_output):
            on_output(StdoutChunk(b"eth0\n"))
            on_output(StdoutChunk(b"eth1\n\n"))

        machine.communicate.sudo.side_effect = sudo
        assert network_interfaces(machine) == ["eth0", "eth1"]
        assert "/sbin/ip -o -0 addr" in machine.communicate.sudo.call_args.args[0]
