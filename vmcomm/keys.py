"""SSH key types, keypair generation and insecure key handling."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Callable

from cryptography.exceptions import UnsupportedAlgorithm
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ec, ed25519, rsa

from vmcomm.errors import SSHKeyTypeNotSupported, SSHKeyTypeNotSupportedByServer

log = logging.getLogger(__name__)

# Server algorithm name -> key type, most preferred first.
PREFER_KEY_TYPES: tuple[tuple[str, str], ...] = (
    ("ssh-ed25519", "ed25519"),
    ("ecdsa-sha2-nistp521", "ecdsa521"),
    ("ecdsa-sha2-nistp384", "ecdsa384"),
    ("ecdsa-sha2-nistp256", "ecdsa256"),
    ("rsa-sha2-512", "rsa"),
    ("rsa-sha2-256", "rsa"),
    ("ssh-rsa", "rsa"),
)

DEFAULT_KEY_TYPE = "rsa"

# pubkeyacceptedkeytypes was renamed to pubkeyacceptedalgorithms in
# OpenSSH 8.5; hostkeyalgorithms is the last resort.
KEY_TYPE_OPTIONS = (
    "pubkeyacceptedalgorithms",
    "pubkeyacceptedkeytypes",
    "hostkeyalgorithms",
)

SUPPORTED_KEY_TYPES_COMMAND = "sshd -T | grep key"

INSECURE_PRIVATE_KEY_GLOB = "insecure_private_key*"
INSECURE_PUBLIC_KEY_NAME = "insecure_public_key.pub"
# Ships the well-known public half of the default box keypair.
BUNDLED_KEY_DIR = Path(__file__).resolve().parent / "data"

_CURVES = {
    "ecdsa256": ec.SECP256R1,
    "ecdsa384": ec.SECP384R1,
    "ecdsa521": ec.SECP521R1,
}


class ServerDataError(Exception):
    """The guest's supported key types could not be determined."""


# ── server support probing ────────────────────────────────────────────


def parse_sshd_options(text: str) -> dict[str, str]:
    """Parse ``sshd -T`` style ``name value`` lines into a dict."""
    options: dict[str, str] = {}
    for line in text.splitlines():
        parts = line.strip().split(" ", 1)
        if len(parts) == 2 and parts[0]:
            options[parts[0].lower()] = parts[1].strip()
    return options


def key_types_from_options(options: dict[str, str]) -> list[str]:
    """Pick the accepted algorithm list from parsed sshd options.

    Raises:
        ServerDataError: If none of the known option names is present.
    """
    for name in KEY_TYPE_OPTIONS:
        if name in options:
            types = [t for t in options[name].split(",") if t]
            log.debug("server supported key type list (using %s): %s", name, types)
            return types
    raise ServerDataError("no data available")


def key_types_from_transport(transport) -> list[str]:
    """Read algorithms from the ``server-sig-algs`` extension of a transport.

    This reaches into paramiko's negotiated state and may break on
    paramiko updates.

    Raises:
        ServerDataError: If the transport carries no such data.
    """
    extensions = getattr(transport, "server_extensions", None)
    if not isinstance(extensions, dict):
        log.warning("No server data available for key type support check")
        raise ServerDataError("no data available")
    algorithms = extensions.get("server-sig-algs")
    if not algorithms:
        raise ServerDataError("no data available")
    if isinstance(algorithms, bytes):
        algorithms = algorithms.decode()
    types = [t for t in algorithms.split(",") if t]
    log.debug("server supported key type list (extracted from transport): %s", types)
    return types


def describe_key_types(types: list[str]) -> str:
    """Format supported types we know how to generate, for error messages."""
    known = dict(PREFER_KEY_TYPES)
    return ", ".join(f"{t} ({known[t]})" for t in types if t in known)


def resolve_key_type(configured: str, supported: Callable[[], list[str]]) -> str:
    """Decide which key type to generate.

    ``auto`` takes the most preferred type the server accepts and falls back
    to rsa when the server cannot be inspected. An explicit type must be
    accepted by the server; if the server cannot be inspected it is used
    as-is.

    Raises:
        SSHKeyTypeNotSupportedByServer: If no usable type is accepted.
    """
    try:
        types = supported()
    except ServerDataError:
        log.warning("failed to load server data for key type check")
        if configured == "auto":
            log.warning("defaulting key type to %s due to failed server data loading", DEFAULT_KEY_TYPE)
            return DEFAULT_KEY_TYPE
        return configured

    if configured == "auto":
        for name, key_type in PREFER_KEY_TYPES:
            if name in types:
                log.debug("Detected key type for new private key: %s", key_type)
                return key_type
        log.debug("Failed to detect supported key type in: %s", ", ".join(types))
        raise SSHKeyTypeNotSupportedByServer(
            requested_key_type=":auto",
            available_key_types=describe_key_types(types),
        )

    names = [name for name, key_type in PREFER_KEY_TYPES if key_type == configured]
    if not any(name in types for name in names):
        raise SSHKeyTypeNotSupportedByServer(
            requested_key_type=f"{names[0] if names else configured} ({configured})",
            available_key_types=describe_key_types(types),
        )
    return configured


# ── keypairs ──────────────────────────────────────────────────────────


@dataclass(frozen=True)
class Keypair:
    """A freshly generated keypair.

    ``private`` is the OpenSSH private key file content, ``openssh`` the
    ``authorized_keys`` line.
    """

    key_type: str
    private: bytes
    openssh: str


def create_keypair(key_type: str = DEFAULT_KEY_TYPE, comment: str = "vmcomm") -> Keypair:
    """Generate a keypair of ``key_type``.

    Raises:
        SSHKeyTypeNotSupported: For a type we cannot generate.
    """
    if key_type == "ed25519":
        private_key = ed25519.Ed25519PrivateKey.generate()
    elif key_type in _CURVES:
        private_key = ec.generate_private_key(_CURVES[key_type]())
    elif key_type == "rsa":
        private_key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    else:
        raise SSHKeyTypeNotSupported()

    private = private_key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.OpenSSH,
        encryption_algorithm=serialization.NoEncryption(),
    )
    public = private_key.public_key().public_bytes(
        encoding=serialization.Encoding.OpenSSH,
        format=serialization.PublicFormat.OpenSSH,
    )
    return Keypair(key_type=key_type, private=private, openssh=f"{public.decode()} {comment}")


def write_private_key(path: Path, data: bytes) -> None:
    """Write a private key readable only by the current user.

    Any existing file or link at ``path`` is removed first and the key is
    written to a newly created file.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    path.unlink(missing_ok=True)
    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
    with os.fdopen(fd, "wb") as f:
        f.write(data)
    path.chmod(0o600)


# ── insecure keys ─────────────────────────────────────────────────────


def _public_key_fields(line: str) -> tuple[str, ...]:
    return tuple(line.split()[:2])


def _load_public_key(path: Path) -> tuple[str, ...] | None:
    """The ``type base64`` fields of a private key file's public half."""
    data = path.read_bytes()
    try:
        try:
            private_key = serialization.load_ssh_private_key(data, password=None)
        except ValueError:
            private_key = serialization.load_pem_private_key(data, password=None)
        public = private_key.public_key().public_bytes(
            encoding=serialization.Encoding.OpenSSH,
            format=serialization.PublicFormat.OpenSSH,
        )
    except (ValueError, TypeError, UnsupportedAlgorithm) as exc:
        log.debug("Could not load public half of %s: %r", path, exc)
        return None
    return _public_key_fields(public.decode())


def insecure_public_keys(insecure_key_dir: Path) -> list[str]:
    """Every known insecure public key line, local overrides first."""
    lines: list[str] = []
    for directory in (insecure_key_dir, BUNDLED_KEY_DIR):
        path = directory / INSECURE_PUBLIC_KEY_NAME
        if path.is_file():
            lines.extend(line.strip() for line in path.read_text().splitlines() if line.strip())
    return lines


def insecure_public_key(insecure_key_dir: Path) -> str:
    """The insecure public key line to remove from the guest.

    A key in ``insecure_key_dir`` takes precedence over the bundled one.
    """
    return insecure_public_keys(insecure_key_dir)[0]


def is_insecure_key(path: str | os.PathLike | None, insecure_key_dir: Path) -> bool:
    """True if the file at ``path`` is one of the well-known insecure keys.

    A key matches when its content equals a private key kept in
    ``insecure_key_dir`` or its public half is a known insecure public key.
    """
    if not path:
        return False
    path = Path(path)
    if not path.is_file():
        return False
    content = path.read_bytes().strip()
    if any(
        content == source.read_bytes().strip()
        for source in sorted(insecure_key_dir.glob(INSECURE_PRIVATE_KEY_GLOB))
        if source.is_file()
    ):
        return True
    fields = _load_public_key(path)
    return fields is not None and any(
        fields == _public_key_fields(line) for line in insecure_public_keys(insecure_key_dir)
    )
