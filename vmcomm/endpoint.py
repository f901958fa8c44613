"""Connection parameters for one guest."""

from __future__ import annotations

import logging
import os
import stat
from dataclasses import dataclass, field
from pathlib import Path

from vmcomm.config import SSHSettings
from vmcomm.errors import SSHKeyBadOwner, SSHKeyBadPermissions

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class Endpoint:
    """Immutable description of how to reach a guest over SSH.

    Built fresh from the machine's ``ssh_info`` record before every new
    connection, since the guest address can change between the provider
    reporting a boot and the guest network coming up.
    """

    host: str
    port: int = 22
    username: str = "root"
    password: str | None = None
    private_key_paths: tuple[str, ...] = ()
    proxy_command: str | None = None
    verify_host_key: str = "never"
    connect_retries: int = 5
    connect_retry_delay: float = 2
    connect_timeout: float = 15
    forward_agent: bool = False
    forward_env: tuple[str, ...] = ()
    keep_alive: bool = True
    keys_only: bool = True
    remote_user: str | None = None
    settings: SSHSettings = field(default_factory=SSHSettings)

    @classmethod
    def from_ssh_info(cls, info: dict, settings: SSHSettings) -> Endpoint:
        """Combine a provider ``ssh_info`` record with communicator settings.

        Retry values in the record win over the settings defaults.
        """
        keys = info.get("private_key_path") or ()
        if isinstance(keys, (str, os.PathLike)):
            keys = (keys,)
        return cls(
            host=info["host"],
            port=int(info.get("port", 22)),
            username=info.get("username", "root"),
            password=info.get("password"),
            private_key_paths=tuple(str(k) for k in keys),
            proxy_command=info.get("proxy_command"),
            verify_host_key=_host_key_policy(info.get("verify_host_key", "never")),
            connect_retries=int(info.get("connect_retries", settings.connect_retries)),
            connect_retry_delay=info.get("connect_retry_delay", settings.connect_retry_delay),
            connect_timeout=info.get("connect_timeout", settings.connect_timeout),
            forward_agent=bool(info.get("forward_agent", False)),
            forward_env=tuple(info.get("forward_env") or ()),
            keep_alive=settings.keep_alive,
            keys_only=bool(info.get("keys_only", True)),
            remote_user=info.get("remote_user"),
            settings=settings,
        )

    @property
    def auth_methods(self) -> list[str]:
        """Authentication methods to offer, in order."""
        methods = ["none", "hostbased"]
        if self.private_key_paths:
            methods.append("publickey")
        if self.password:
            methods.append("password")
        return methods

    @property
    def auth_type(self) -> str:
        """Human label for the credential in use."""
        return "password" if self.password else "private key"


def _host_key_policy(value) -> str:
    # Accept the boolean spelling used by older ssh_info records.
    if value is True:
        return "always"
    if value is False or value is None:
        return "never"
    if value == "accepts_new":
        return "accept_new"
    return str(value)


def check_key_permissions(key_path: Path) -> None:
    """Make sure a private key is owned by us and not readable by others.

    Tries to tighten the mode to 0600 before giving up. No-op on platforms
    without POSIX ownership.

    Raises:
        SSHKeyBadOwner: If the file belongs to another user.
        SSHKeyBadPermissions: If group/other bits remain set after chmod.
    """
    if not hasattr(os, "getuid"):
        return

    st = key_path.stat()
    if st.st_uid != os.getuid():
        raise SSHKeyBadOwner(key_path=str(key_path))

    if stat.S_IMODE(st.st_mode) & 0o077 == 0:
        return

    log.info("Fixing permissions on private key %s", key_path)
    try:
        key_path.chmod(0o600)
    except OSError as exc:
        log.debug("chmod failed on %s: %s", key_path, exc)

    if stat.S_IMODE(key_path.stat().st_mode) & 0o077:
        raise SSHKeyBadPermissions(key_path=str(key_path))
