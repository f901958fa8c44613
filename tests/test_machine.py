"""Tests for vmcomm.machine: machines, data directories and UI output."""

from __future__ import annotations

import io
from pathlib import Path
from unittest.mock import patch

import pytest

from vmcomm.communicator import Communicator
from vmcomm.guest import LinuxGuest
from vmcomm.machine import UI, Machine, StaticMachine, machine_data_dir


class TestMachineDataDir:

    def test_creates_dir(self, tmp_path: Path):
        with patch("vmcomm.machine.Path.home", return_value=tmp_path):
            result = machine_data_dir("web")

        assert result == tmp_path / ".cache" / "vmcomm" / "machines" / "web"
        assert result.is_dir()


class TestUI:

    def test_info_prefixed(self):
        out = io.StringIO()
        UI("web", out=out).info("hello\nworld")
        assert out.getvalue() == "    web: hello\n    web: world\n"

    def test_warn_to_err(self):
        out, err = io.StringIO(), io.StringIO()
        UI("web", out=out, err=err).warn("careful")
        assert out.getvalue() == ""
        assert err.getvalue() == "    web: careful\n"


class TestMachine:

    def test_lazy_collaborators(self, tmp_path: Path):
        machine = StaticMachine("web", {"host": "h"}, data_dir=tmp_path)
        assert isinstance(machine.communicate, Communicator)
        assert machine.communicate is machine.communicate
        assert isinstance(machine.guest, LinuxGuest)

    def test_base_has_no_ssh_info(self, tmp_path: Path):
        with pytest.raises(NotImplementedError):
            Machine("web", data_dir=tmp_path).ssh_info()

    def test_static_info(self, tmp_path: Path):
        machine = StaticMachine(
            "web", {"host": "h", "password": "pw", "private_key_path": []}, data_dir=tmp_path
        )
        assert machine.ssh_info()["password"] == "pw"

    def test_rotated_key_replaces_credentials(self, tmp_path: Path):
        machine = StaticMachine(
            "web",
            {"host": "h", "password": "pw", "private_key_path": ["/insecure"]},
            data_dir=tmp_path,
        )
        machine.private_key_path.write_text("new key")

        info = machine.ssh_info()
        assert info["private_key_path"] == [str(tmp_path / "private_key")]
        assert info["password"] is None
        assert machine.info["password"] == "pw"
