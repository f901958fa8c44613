"""Domain errors for guest communication and transport error classification."""

from __future__ import annotations

import errno
import socket
from dataclasses import dataclass
from typing import Callable

import paramiko
from paramiko.ssh_exception import NoValidConnectionsError


class CommunicatorError(Exception):
    """Base class for every error raised by the communicator.

    Subclasses set ``message`` as a ``str.format`` template filled from the
    keyword details given at raise time, and ``retryable`` to tell the
    connection retry loop whether another attempt may help.
    """

    message = "An error occurred while communicating with the guest."
    retryable = False

    def __init__(self, message: str | None = None, **details) -> None:
        self.details = details
        text = message if message is not None else self.message
        try:
            text = text.format(**details)
        except (KeyError, IndexError):
            pass
        super().__init__(text)

    def __getattr__(self, name: str):
        details = self.__dict__.get("details", {})
        if name in details:
            return details[name]
        raise AttributeError(name)


# ── connection errors ─────────────────────────────────────────────────


class SSHConnectionTimeout(CommunicatorError):
    message = "Connection timeout while waiting for SSH on the guest."
    retryable = True


class SSHAuthenticationFailed(CommunicatorError):
    message = "SSH authentication failed. The guest rejected the credentials."


class SSHDisconnected(CommunicatorError):
    message = "The SSH connection was unexpectedly closed by the remote end."
    retryable = True


class SSHConnectionRefused(CommunicatorError):
    message = "SSH connection was refused."
    retryable = True


class SSHConnectionReset(CommunicatorError):
    message = "SSH connection was reset."
    retryable = True


class SSHConnectionAborted(CommunicatorError):
    message = "SSH connection was aborted."
    retryable = True


class SSHHostDown(CommunicatorError):
    message = "The guest appears to be down."
    retryable = True


class SSHNoRoute(CommunicatorError):
    message = "No route to the guest."
    retryable = True


class SSHConnectEACCES(CommunicatorError):
    message = "Permission denied while opening the SSH socket (EACCES)."
    retryable = True


class SSHNotReady(CommunicatorError):
    message = "The provider has not reported an SSH address for the guest yet."


class NetSSHException(CommunicatorError):
    message = "An error occurred in the SSH library: {error}"


class SSHChannelOpenFail(CommunicatorError):
    message = "Failed to open an SSH channel on the guest."


# ── key errors ────────────────────────────────────────────────────────


class SSHKeyTypeNotSupported(CommunicatorError):
    message = "The private key type is not supported by the SSH library."


class SSHKeyTypeNotSupportedByServer(CommunicatorError):
    message = (
        "The guest SSH server does not support the requested key type "
        "{requested_key_type}. Supported: {available_key_types}"
    )


class SSHKeyBadOwner(CommunicatorError):
    message = "The private key at {key_path} is not owned by the current user."


class SSHKeyBadPermissions(CommunicatorError):
    message = (
        "The private key at {key_path} is readable by other users and its "
        "permissions could not be fixed."
    )


class SSHInsertKeyUnsupported(CommunicatorError):
    message = "The guest cannot insert and remove public keys."


class GuestCapabilityNotFound(CommunicatorError):
    message = "The guest does not provide the '{capability}' capability."


# ── command errors ────────────────────────────────────────────────────


class SSHInvalidShell(CommunicatorError):
    message = "The configured shell on the guest did not behave as expected."


class SSHNoExitStatus(CommunicatorError):
    message = "The SSH channel closed without reporting an exit status."


class SSHBadExitStatus(CommunicatorError):
    message = (
        "The command exited with status {exit_status}, outside the accepted "
        "set.\n\nCommand: {command}\n\nStdout: {stdout}\nStderr: {stderr}"
    )


# ── transfer errors ───────────────────────────────────────────────────


class SCPUnavailable(CommunicatorError):
    message = "The file-copy subsystem is not available on the guest."


class SCPPermissionDenied(CommunicatorError):
    message = "Permission denied copying {source} to {destination}."


# ---------------------------------------------------------------------------
# Transport exception classification
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class _Rule:
    match: Callable[[BaseException], bool]
    error: type[CommunicatorError]


def _errno_in(*codes: int) -> Callable[[BaseException], bool]:
    return lambda exc: isinstance(exc, OSError) and exc.errno in codes


def _is_auth_timeout(exc: BaseException) -> bool:
    return isinstance(exc, paramiko.AuthenticationException) and "timeout" in str(exc).lower()


def _is_banner_timeout(exc: BaseException) -> bool:
    # paramiko wraps the socket error of a stalled banner read in this text.
    return isinstance(exc, paramiko.SSHException) and str(exc).startswith("Error reading SSH protocol banner")


def _is_banner_failure(exc: BaseException) -> bool:
    return isinstance(exc, paramiko.SSHException) and "banner" in str(exc).lower()


def _is_bad_key(exc: BaseException) -> bool:
    if isinstance(exc, NotImplementedError):
        return True
    text = str(exc).lower()
    return isinstance(exc, paramiko.SSHException) and (
        "not a valid" in text or "unknown private key" in text
    )


# Evaluated top to bottom; order matters where exception types overlap.
_RULES: tuple[_Rule, ...] = (
    _Rule(_is_auth_timeout, SSHConnectionTimeout),
    _Rule(lambda e: isinstance(e, paramiko.AuthenticationException), SSHAuthenticationFailed),
    _Rule(lambda e: isinstance(e, paramiko.ChannelException), SSHChannelOpenFail),
    _Rule(_is_bad_key, SSHKeyTypeNotSupported),
    _Rule(_is_banner_timeout, SSHConnectionTimeout),
    _Rule(_is_banner_failure, SSHDisconnected),
    _Rule(lambda e: isinstance(e, EOFError), SSHDisconnected),
    _Rule(lambda e: isinstance(e, (socket.timeout, TimeoutError)), SSHConnectionTimeout),
    _Rule(_errno_in(errno.ETIMEDOUT), SSHConnectionTimeout),
    _Rule(lambda e: isinstance(e, ConnectionRefusedError), SSHConnectionRefused),
    _Rule(_errno_in(errno.ECONNREFUSED), SSHConnectionRefused),
    _Rule(lambda e: isinstance(e, (ConnectionResetError, BrokenPipeError)), SSHConnectionReset),
    _Rule(_errno_in(errno.ECONNRESET, errno.EPIPE), SSHConnectionReset),
    _Rule(lambda e: isinstance(e, ConnectionAbortedError), SSHConnectionAborted),
    _Rule(_errno_in(errno.ECONNABORTED), SSHConnectionAborted),
    _Rule(_errno_in(errno.EHOSTDOWN), SSHHostDown),
    _Rule(_errno_in(errno.EHOSTUNREACH, errno.ENETUNREACH), SSHNoRoute),
    _Rule(_errno_in(errno.EACCES, errno.EADDRINUSE), SSHConnectEACCES),
    _Rule(lambda e: isinstance(e, paramiko.SSHException), NetSSHException),
)


def _unwrap(exc: BaseException) -> BaseException:
    """Return the first underlying socket error of a multi-address failure."""
    if isinstance(exc, NoValidConnectionsError) and exc.errors:
        return next(iter(exc.errors.values()))
    return exc


def classify(exc: BaseException) -> CommunicatorError | None:
    """Map a transport exception to a domain error, or None if unknown.

    Domain errors are returned as-is.
    """
    if isinstance(exc, CommunicatorError):
        return exc
    exc = _unwrap(exc)
    for rule in _RULES:
        if rule.match(exc):
            error = rule.error(error=str(exc))
            error.__cause__ = exc
            return error
    return None
