"""SSH session management: open, reuse, health-check and retry."""

from __future__ import annotations

import logging
import threading
import time
from contextlib import closing
from pathlib import Path
from typing import Callable

import paramiko

from vmcomm.endpoint import Endpoint, check_key_permissions
from vmcomm.errors import CommunicatorError, classify

log = logging.getLogger(__name__)

# Upper bound for the no-op round trip that validates a cached session.
LIVENESS_TIMEOUT = 5
# Applied separately to the banner read, authentication and channel open
# of each attempt.
ATTEMPT_TIMEOUT = 60
KEEPALIVE_INTERVAL = 5


class ConnectionManager:
    """Owns the single SSH session to a guest.

    ``resolve_endpoint`` is called before every fresh connect so the current
    guest address is used; it raises SSHNotReady while the provider has no
    address to offer. ``on_replace`` is called whenever the session is
    dropped or replaced so dependents can invalidate per-session caches.
    """

    def __init__(
        self,
        resolve_endpoint: Callable[[], Endpoint],
        on_replace: Callable[[], None] | None = None,
    ) -> None:
        self._resolve_endpoint = resolve_endpoint
        self._on_replace = on_replace
        self._lock = threading.RLock()
        self._client: paramiko.SSHClient | None = None
        self.endpoint: Endpoint | None = None

    # ── session lifecycle ─────────────────────────────────────────────

    @property
    def client(self) -> paramiko.SSHClient | None:
        return self._client

    def connect(
        self,
        retries: int | None = None,
        retry_delay: float | None = None,
    ) -> paramiko.SSHClient:
        """Return a live session, reusing the cached one when it still works.

        Raises:
            CommunicatorError: Classified connect failure, after retries are
                exhausted for transient kinds or immediately for fatal ones.
        """
        with self._lock:
            if self._client is not None:
                if _is_alive(self._client):
                    log.debug("Re-using SSH connection.")
                    return self._client
                log.info("Connection errored, not re-using. Will reconnect.")
                self._discard()

            endpoint = self._resolve_endpoint()
            if retries is None:
                retries = endpoint.connect_retries
            if retry_delay is None:
                retry_delay = endpoint.connect_retry_delay

            log.info("Attempting SSH connection...")
            client = _connect_with_retries(endpoint, retries, retry_delay)

            self._client = client
            self.endpoint = endpoint
            if self._on_replace is not None:
                self._on_replace()
            return client

    def close(self) -> None:
        """Close the session if open; the next connect opens a new one."""
        with self._lock:
            if self._client is not None:
                self._discard()

    def _discard(self) -> None:
        client, self._client = self._client, None
        self.endpoint = None
        try:
            client.close()
        except Exception as exc:
            log.debug("Error while closing stale SSH session: %r", exc)
        if self._on_replace is not None:
            self._on_replace()


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _is_alive(client: paramiko.SSHClient) -> bool:
    """Run an empty command to prove the socket still carries data."""
    transport = client.get_transport()
    if transport is None or not transport.is_active():
        return False
    try:
        with closing(transport.open_session(timeout=LIVENESS_TIMEOUT)) as channel:
            channel.settimeout(LIVENESS_TIMEOUT)
            channel.exec_command("")
            while channel.recv(1024):
                pass
    except Exception as exc:
        log.debug("SSH liveness probe failed: %r", exc)
        return False
    return True


def _connect_with_retries(
    endpoint: Endpoint, retries: int, retry_delay: float
) -> paramiko.SSHClient:
    """Try up to ``retries`` connects, sleeping between transient failures."""
    tries = max(1, int(retries))
    attempt = 0
    while True:
        attempt += 1
        try:
            return _open(endpoint)
        except CommunicatorError:
            raise
        except Exception as exc:
            error = classify(exc)
            if error is None:
                raise
            if not error.retryable or attempt >= tries:
                raise error from exc
            log.info(
                "SSH connect attempt %d/%d failed: %s; retrying in %ss",
                attempt, tries, type(error).__name__, retry_delay,
            )
            time.sleep(retry_delay)


def connect_kwargs(endpoint: Endpoint) -> dict:
    """Translate an endpoint into ``paramiko.SSHClient.connect`` arguments.

    Only credentials matching the selected auth methods are passed, so
    password authentication is never attempted without a password.
    """
    methods = endpoint.auth_methods
    kwargs: dict = {
        "hostname": endpoint.host,
        "port": endpoint.port,
        "username": endpoint.username,
        "timeout": endpoint.connect_timeout,
        "banner_timeout": ATTEMPT_TIMEOUT,
        "auth_timeout": ATTEMPT_TIMEOUT,
        "channel_timeout": ATTEMPT_TIMEOUT,
        "look_for_keys": False,
        "allow_agent": not endpoint.keys_only,
    }
    if "publickey" in methods:
        kwargs["key_filename"] = list(endpoint.private_key_paths)
    if "password" in methods:
        kwargs["password"] = endpoint.password
    return kwargs


def _open(endpoint: Endpoint) -> paramiko.SSHClient:
    for key in endpoint.private_key_paths:
        path = Path(key)
        if path.is_file():
            check_key_permissions(path)

    client = paramiko.SSHClient()
    if endpoint.verify_host_key == "never":
        client.set_missing_host_key_policy(paramiko.AutoAddPolicy())
    else:
        client.load_system_host_keys()
        if endpoint.verify_host_key == "accept_new":
            client.set_missing_host_key_policy(paramiko.AutoAddPolicy())
        else:
            client.set_missing_host_key_policy(paramiko.RejectPolicy())

    kwargs = connect_kwargs(endpoint)
    if endpoint.proxy_command:
        kwargs["sock"] = paramiko.ProxyCommand(endpoint.proxy_command)
    if endpoint.remote_user:
        log.debug("remote_user %s is not supported by paramiko, ignoring", endpoint.remote_user)

    log.info("Attempting to connect to SSH...")
    log.info("  - Host: %s", endpoint.host)
    log.info("  - Port: %s", endpoint.port)
    log.info("  - Username: %s", endpoint.username)
    log.info("  - Password? %s", bool(endpoint.password))
    log.info("  - Key Path: %s", list(endpoint.private_key_paths))
    log.debug("  - Auth methods: %s", endpoint.auth_methods)

    try:
        client.connect(**kwargs)
    except BaseException:
        client.close()
        raise

    if endpoint.keep_alive:
        transport = client.get_transport()
        if transport is not None:
            transport.set_keepalive(KEEPALIVE_INTERVAL)
    return client
