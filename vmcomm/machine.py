"""Collaborator interfaces: the machine being talked to and the progress UI."""

from __future__ import annotations

import sys
from pathlib import Path
from typing import TextIO

from vmcomm.config import SSHSettings


def machine_data_dir(name: str) -> Path:
    """Per-machine data directory at ~/.cache/vmcomm/machines/{name}.

    Creates the directory (and parents) if it doesn't exist.
    """
    d = Path.home() / ".cache" / "vmcomm" / "machines" / name
    d.mkdir(parents=True, exist_ok=True)
    return d


class UI:
    """Fire-and-forget progress output, one prefixed line per message."""

    def __init__(self, name: str, out: TextIO | None = None, err: TextIO | None = None) -> None:
        self.name = name
        self._out = out
        self._err = err

    def _write(self, stream: TextIO | None, fallback: TextIO, message: str) -> None:
        target = stream if stream is not None else fallback
        for line in str(message).splitlines() or [""]:
            print(f"    {self.name}: {line}", file=target)

    def info(self, message: str) -> None:
        self._write(self._out, sys.stdout, message)

    detail = info
    success = info

    def warn(self, message: str) -> None:
        self._write(self._err, sys.stderr, message)

    error = warn


class Machine:
    """A guest the communicator talks to.

    Subclasses provide ``ssh_info`` (None until the provider knows how to
    reach the guest) and may override ``guest``.
    """

    def __init__(
        self,
        name: str,
        settings: SSHSettings | None = None,
        data_dir: Path | None = None,
        ui: UI | None = None,
    ) -> None:
        self.name = name
        self.settings = settings if settings is not None else SSHSettings()
        self._data_dir = data_dir
        self.ui = ui if ui is not None else UI(name)
        self._guest = None
        self._communicator = None

    @property
    def data_dir(self) -> Path:
        if self._data_dir is None:
            self._data_dir = machine_data_dir(self.name)
        return self._data_dir

    @property
    def private_key_path(self) -> Path:
        """Where a rotated private key for this machine is stored."""
        return self.data_dir / "private_key"

    @property
    def communicate(self):
        """The machine's SSH communicator, created on first use."""
        if self._communicator is None:
            from vmcomm.communicator import Communicator

            self._communicator = Communicator(self)
        return self._communicator

    @property
    def guest(self):
        if self._guest is None:
            from vmcomm.guest import LinuxGuest

            self._guest = LinuxGuest(self)
        return self._guest

    @guest.setter
    def guest(self, value) -> None:
        self._guest = value

    def ssh_info(self) -> dict | None:
        raise NotImplementedError


class StaticMachine(Machine):
    """A machine at a fixed, already known address.

    Once a rotated private key exists in the data directory it replaces the
    configured keys, so the next connection uses it.
    """

    def __init__(self, name: str, info: dict, **kwargs) -> None:
        super().__init__(name, **kwargs)
        self.info = dict(info)

    def ssh_info(self) -> dict | None:
        info = dict(self.info)
        if self.private_key_path.is_file():
            info["private_key_path"] = [str(self.private_key_path)]
            info["password"] = None
        return info
