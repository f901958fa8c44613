"""File and directory transfer over the session's SFTP subsystem."""

from __future__ import annotations

import logging
import os
import posixpath
import stat
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator

import paramiko

from vmcomm.connection import ConnectionManager
from vmcomm.errors import CommunicatorError, SCPPermissionDenied, SCPUnavailable
from vmcomm.executor import CommandExecutor

log = logging.getLogger(__name__)


def _contents_only(path: str) -> bool:
    """``dir/.`` means copy what is inside ``dir``, not ``dir`` itself."""
    return path.endswith(os.sep + ".") or path.endswith("/.")


class TransferManager:
    """Recursive upload and download of files and directories."""

    def __init__(self, connections: ConnectionManager, executor: CommandExecutor) -> None:
        self.connections = connections
        self.executor = executor

    # ── public API ────────────────────────────────────────────────────

    def upload(self, source: str | os.PathLike, destination: str) -> None:
        """Copy a local file or directory to the guest.

        A directory is nested under ``destination`` by its own name unless
        ``source`` ends in ``/.``, in which case only its contents are copied.

        Raises:
            SCPPermissionDenied: If the guest refused to write a file.
            SCPUnavailable: If the guest has no SFTP subsystem.
        """
        source = str(source)
        destination = str(destination)
        log.debug("Uploading: %s to %s", source, destination)

        if os.path.isdir(source):
            if _contents_only(source):
                log.debug("Uploading directory contents of: %s", source)
                source = source[:-1]
            else:
                log.debug("Uploading full directory container of: %s", source)
                name = os.path.basename(os.path.abspath(source))
                destination = posixpath.join(destination, name)

        with self._translate_errors(source, destination), self._sftp() as sftp:
            self._upload_path(sftp, source, source, destination)

    def download(self, source: str, destination: str | os.PathLike) -> None:
        """Copy a remote file or directory to the host.

        Raises:
            SCPPermissionDenied: If the guest refused to read a file.
            SCPUnavailable: If the guest has no SFTP subsystem.
        """
        destination = Path(destination)
        log.debug("Downloading: %s to %s", source, destination)

        with self._translate_errors(source, str(destination)), self._sftp() as sftp:
            self._download_path(sftp, source, destination)

    # ── internal helpers ──────────────────────────────────────────────

    @contextmanager
    def _sftp(self) -> Iterator[paramiko.SFTPClient]:
        client = self.connections.connect()
        try:
            sftp = client.open_sftp()
        except paramiko.SSHException as exc:
            raise SCPUnavailable() from exc
        try:
            yield sftp
        finally:
            sftp.close()

    @contextmanager
    def _translate_errors(self, source: str, destination: str) -> Iterator[None]:
        # The SFTP client reports permission problems as plain errors, so
        # the message text is all there is to go on.
        try:
            yield
        except CommunicatorError:
            raise
        except Exception as exc:
            if isinstance(exc, PermissionError) or "Permission denied" in str(exc):
                raise SCPPermissionDenied(source=source, destination=destination) from exc
            if "(127)" in str(exc):
                raise SCPUnavailable() from exc
            raise

    def _create_remote_directory(self, path: str) -> None:
        self.executor.execute(f'mkdir -p "{path}"')

    def _upload_path(
        self,
        sftp: paramiko.SFTPClient,
        root: str,
        path: str,
        destination: str,
        remote_parent: str | None = None,
    ) -> None:
        if os.path.isdir(path):
            relative = os.path.relpath(path, root)
            dest = destination
            if relative != ".":
                dest = posixpath.join(destination, *relative.split(os.sep))
            self._create_remote_directory(dest)
            for entry in sorted(os.listdir(path)):
                self._upload_path(sftp, root, os.path.join(path, entry), destination, dest)
            return

        if remote_parent is not None:
            dest = posixpath.join(remote_parent, os.path.basename(path))
        else:
            dest = destination
            if destination.endswith("/"):
                dest = posixpath.join(destination, os.path.basename(path))
            log.debug("Ensuring remote directory exists for destination upload")
            self._create_remote_directory(posixpath.dirname(dest) or ".")

        log.debug("Uploading file %s to remote %s", path, dest)
        sftp.put(path, dest)

    def _download_path(self, sftp: paramiko.SFTPClient, source: str, destination: Path) -> None:
        attrs = sftp.stat(source)
        if attrs.st_mode is not None and stat.S_ISDIR(attrs.st_mode):
            destination.mkdir(parents=True, exist_ok=True)
            for entry in sftp.listdir_attr(source):
                self._download_path(
                    sftp, posixpath.join(source, entry.filename), destination / entry.filename
                )
            return

        destination.parent.mkdir(parents=True, exist_ok=True)
        log.debug("Downloading file %s to %s", source, destination)
        sftp.get(source, str(destination))
