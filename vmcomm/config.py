"""Configuration loading for SSH communicator settings and static machines."""

from __future__ import annotations

import tomllib
from dataclasses import dataclass, field, fields
from pathlib import Path


KEY_TYPES = ("auto", "ed25519", "ecdsa521", "ecdsa384", "ecdsa256", "rsa")
HOST_KEY_POLICIES = ("never", "accept_new", "always")

_DEFAULT_INSECURE_KEY_DIR = Path.home() / ".cache" / "vmcomm" / "keys"


@dataclass(frozen=True)
class SSHSettings:
    """Communicator settings shared by every connection to a guest."""

    shell: str = "bash -l"
    sudo_command: str = "sudo -E -H %c"
    export_command_template: str = 'export %ENV_KEY%="%ENV_VALUE%"'
    pty: bool = False
    insert_key: bool = True
    key_type: str = "auto"
    keep_alive: bool = True
    connect_retries: int = 5
    connect_retry_delay: float = 2
    connect_timeout: float = 15
    insecure_key_dir: Path = field(default=_DEFAULT_INSECURE_KEY_DIR)


_SETTING_TYPES = {
    "shell": str,
    "sudo_command": str,
    "export_command_template": str,
    "pty": bool,
    "insert_key": bool,
    "key_type": str,
    "keep_alive": bool,
    "connect_retries": int,
    "connect_retry_delay": (int, float),
    "connect_timeout": (int, float),
    "insecure_key_dir": str,
}

_MACHINE_REQUIRED_FIELDS = ("host", "username")
_MACHINE_DEFAULTS = {
    "port": 22,
    "password": None,
    "private_key_path": [],
    "proxy_command": None,
    "forward_agent": False,
    "forward_env": [],
    "verify_host_key": "never",
    "keys_only": True,
    "remote_user": None,
}


def settings_from_dict(data: dict) -> SSHSettings:
    """Build SSHSettings from an ``[ssh]`` table, applying defaults.

    Raises:
        ValueError: On unknown keys, wrong value types or an unknown key type.
    """
    known = {f.name for f in fields(SSHSettings)}
    unknown = sorted(set(data) - known)
    if unknown:
        raise ValueError(f"Unknown ssh setting(s): {', '.join(unknown)}")

    for key, value in data.items():
        expected = _SETTING_TYPES[key]
        # bool is an int subclass; refuse it for numeric settings
        if isinstance(value, bool) and expected is not bool:
            raise ValueError(f"Invalid value for ssh.{key}: {value!r}")
        if not isinstance(value, expected):
            raise ValueError(f"Invalid value for ssh.{key}: {value!r}")

    if data.get("key_type", "auto") not in KEY_TYPES:
        raise ValueError(
            f"Invalid ssh.key_type {data['key_type']!r} "
            f"(expected one of: {', '.join(KEY_TYPES)})"
        )
    if "%c" not in data.get("sudo_command", "%c"):
        raise ValueError("ssh.sudo_command must contain the %c placeholder")

    values = dict(data)
    if "insecure_key_dir" in values:
        values["insecure_key_dir"] = Path(values["insecure_key_dir"]).expanduser()
    return SSHSettings(**values)


def load_config(path: Path) -> dict:
    """Load and validate a communicator config TOML file.

    Optional sections: [ssh], [machine], [libvirt] (uri, domain_prefix and
    an [libvirt.ssh] table of login details, passed through as-is).
    The [ssh] table is replaced by an SSHSettings instance. When [machine]
    is present it must name host and username; other fields get defaults
    and private_key_path is normalized to a list of expanded paths.

    Raises:
        ValueError: If a section is malformed.
    """
    with open(path, "rb") as f:
        data = tomllib.load(f)

    data["ssh"] = settings_from_dict(data.get("ssh", {}))

    machine = data.get("machine")
    if machine is not None:
        for name in _MACHINE_REQUIRED_FIELDS:
            if name not in machine:
                raise ValueError(f"Missing required machine field: {name}")
        for key, default in _MACHINE_DEFAULTS.items():
            machine.setdefault(key, default)

        keys = machine["private_key_path"]
        if isinstance(keys, str):
            keys = [keys]
        machine["private_key_path"] = [str(Path(k).expanduser()) for k in keys]

        if machine["verify_host_key"] not in HOST_KEY_POLICIES:
            raise ValueError(
                f"Invalid machine.verify_host_key {machine['verify_host_key']!r}"
            )

    return data


def find_config(name: str, search_dirs: list[Path]) -> Path:
    """Find <name>.toml across search directories.

    Returns the path to the first match found.

    Raises:
        FileNotFoundError: If the config is not found in any directory.
    """
    filename = f"{name}.toml"
    for d in search_dirs:
        candidate = d / filename
        if candidate.is_file():
            return candidate
    raise FileNotFoundError(
        f"Config '{filename}' not found in: {', '.join(str(d) for d in search_dirs) or '(no directories)'}"
    )
