# Enclave Bridge
# Copyright (C) 2025 Phoenix Link (Pty) Ltd. All Rights Reserved.
#
# This file is part of Enclave Bridge.
#
# Enclave Bridge is dual-licensed:
#
# 1. Open Source: GNU Affero General Public License v3.0 (AGPL-3.0)
#    You may use, modify, and distribute this file under AGPL-3.0.
#    See LICENSE for the full text.
#
# 2. Commercial: Available from Phoenix Link (Pty) Ltd
#    For proprietary use, SaaS deployment, or enterprise licensing.
#    See LICENSE-ENTERPRISE.md or contact info@phoenixlink.co.za
#
# Contributions require a signed CLA. See COPYRIGHT.md and CLA.md.
"""Endpoint addressing for both sides of the bridge.

An endpoint is either a TCP address or a vsock address:

  tcp:HOST:PORT      e.g. tcp:0.0.0.0:443, tcp:127.0.0.1:3000
  vsock:CID:PORT     e.g. vsock:3:8443, vsock:any:8080, vsock:16:3000

The vsock CID may be a number or one of the aliases ``any`` (bind on
every CID) and ``parent`` / ``host`` (the parent instance, CID 3).

Binding uses a bounded retry with exponential backoff. A port that is
still held after the last attempt raises ``PortInUse``; the caller never
has to guess how long the kernel needs to release a socket.
"""

from __future__ import annotations

import errno
import logging
import socket
import time
from dataclasses import dataclass

from .errors import BindFailed, ConfigError, PortInUse

logger = logging.getLogger("enclave_bridge.endpoints")

AF_VSOCK: int = getattr(socket, "AF_VSOCK", 40)
VMADDR_CID_ANY: int = getattr(socket, "VMADDR_CID_ANY", 0xFFFFFFFF)
VSOCK_PARENT_CID = 3

FAMILIES = ("tcp", "vsock")
_CID_ALIASES = {
    "any": VMADDR_CID_ANY,
    "parent": VSOCK_PARENT_CID,
    "host": VSOCK_PARENT_CID,
}

# Upper bound for a single backoff sleep while waiting on a port
_MAX_BACKOFF_S = 2.0


@dataclass(frozen=True)
class Endpoint:
    """One side of a forwarder: where to listen, or where to connect."""

    family: str  # "tcp" or "vsock"
    host: str  # IP/hostname for tcp, CID (or alias) for vsock
    port: int

    def __post_init__(self) -> None:
        if self.family not in FAMILIES:
            raise ConfigError(f"Unknown endpoint family {self.family!r} (expected tcp or vsock)")
        if not isinstance(self.port, int) or not 0 <= self.port <= 65535:
            raise ConfigError(f"Invalid port {self.port!r} for {self.family} endpoint")
        if not str(self.host).strip():
            raise ConfigError(f"Empty host in {self.family} endpoint")
        if self.family == "vsock":
            _resolve_cid(self.host)

    @classmethod
    def parse(cls, text: str) -> Endpoint:
        """Parse ``family:host:port``."""
        try:
            family, rest = text.strip().split(":", 1)
            host, port_str = rest.rsplit(":", 1)
            port = int(port_str)
        except (ValueError, AttributeError) as exc:
            raise ConfigError(f"Invalid endpoint {text!r} (expected family:host:port)") from exc
        return cls(family=family.lower(), host=host.strip("[]"), port=port)

    @classmethod
    def tcp(cls, host: str, port: int) -> Endpoint:
        return cls("tcp", host, port)

    @classmethod
    def vsock(cls, cid: int | str, port: int) -> Endpoint:
        return cls("vsock", str(cid), port)

    def __str__(self) -> str:
        return f"{self.family}:{self.host}:{self.port}"

    @property
    def is_vsock(self) -> bool:
        return self.family == "vsock"

    @property
    def socket_family(self) -> int:
        if self.is_vsock:
            return AF_VSOCK
        return socket.AF_INET6 if ":" in self.host else socket.AF_INET

    @property
    def address(self) -> tuple:
        """Address tuple suitable for ``bind()`` / ``connect()``."""
        if self.is_vsock:
            return (_resolve_cid(self.host), self.port)
        return (self.host, self.port)

    def signature(self) -> str:
        """Protocol + port, the identity of a listener across runs."""
        return f"{self.family}:{self.port}"


def _resolve_cid(value: str) -> int:
    alias = _CID_ALIASES.get(str(value).lower())
    if alias is not None:
        return alias
    try:
        cid = int(value)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"Invalid vsock CID {value!r}") from exc
    if cid < 0:
        raise ConfigError(f"Invalid vsock CID {value!r}")
    return cid


# ---------------------------------------------------------------------------
# Binding
# ---------------------------------------------------------------------------
def bind_with_retry(
    sock: socket.socket,
    endpoint: Endpoint,
    attempts: int = 5,
    backoff_s: float = 0.2,
) -> None:
    """Bind ``sock`` to ``endpoint``, retrying while the port is in use.

    Raises:
        PortInUse: the address was still in use after the last attempt.
        BindFailed: any other bind error (permission, bad address, ...).
    """
    attempts = max(1, attempts)
    delay = backoff_s
    for attempt in range(1, attempts + 1):
        try:
            sock.bind(endpoint.address)
            if attempt > 1:
                logger.info("Bound %s after %d attempts", endpoint, attempt)
            return
        except OSError as exc:
            if exc.errno != errno.EADDRINUSE:
                raise BindFailed(f"Cannot bind {endpoint}: {exc}") from exc
            if attempt == attempts:
                raise PortInUse(
                    f"{endpoint} still in use after {attempts} attempt(s)"
                ) from exc
            logger.debug("%s in use, retrying in %.2fs (%d/%d)", endpoint, delay, attempt, attempts)
            time.sleep(delay)
            delay = min(delay * 2, _MAX_BACKOFF_S)


def bind_retry_window(attempts: int, backoff_s: float) -> float:
    """Total time ``bind_with_retry`` may spend sleeping before it gives up."""
    total, delay = 0.0, backoff_s
    for _ in range(max(1, attempts) - 1):
        total += delay
        delay = min(delay * 2, _MAX_BACKOFF_S)
    return total


def bind_listener(
    endpoint: Endpoint,
    backlog: int = 128,
    attempts: int = 5,
    backoff_s: float = 0.2,
) -> socket.socket:
    """Create, bind and listen on ``endpoint``."""
    try:
        sock = socket.socket(endpoint.socket_family, socket.SOCK_STREAM)
    except OSError as exc:
        raise BindFailed(f"Cannot create {endpoint.family} socket: {exc}") from exc
    try:
        if not endpoint.is_vsock:
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        bind_with_retry(sock, endpoint, attempts=attempts, backoff_s=backoff_s)
        sock.listen(backlog)
    except BaseException:
        sock.close()
        raise
    return sock


def connect(endpoint: Endpoint, timeout: float | None = 10.0) -> socket.socket:
    """Open a blocking stream connection to ``endpoint``."""
    if endpoint.is_vsock:
        sock = socket.socket(AF_VSOCK, socket.SOCK_STREAM)
        try:
            sock.settimeout(timeout)
            sock.connect(endpoint.address)
        except BaseException:
            sock.close()
            raise
    else:
        sock = socket.create_connection(endpoint.address, timeout=timeout)
    sock.settimeout(None)
    return sock


# ---------------------------------------------------------------------------
# Port release checks (used by the reaper)
# ---------------------------------------------------------------------------
def is_port_free(endpoint: Endpoint) -> bool:
    """Return True if ``endpoint`` could be bound right now."""
    try:
        probe = socket.socket(endpoint.socket_family, socket.SOCK_STREAM)
    except OSError:
        # Address family not supported here, nothing can be holding it
        return True
    with probe:
        if not endpoint.is_vsock:
            probe.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        try:
            probe.bind(endpoint.address)
        except OSError as exc:
            return exc.errno != errno.EADDRINUSE
    return True


def wait_port_released(
    endpoint: Endpoint,
    attempts: int = 10,
    backoff_s: float = 0.05,
) -> bool:
    """Poll until ``endpoint`` is bindable, with exponential backoff.

    Returns False if the port is still held after ``attempts`` checks.
    """
    delay = backoff_s
    for attempt in range(max(1, attempts)):
        if is_port_free(endpoint):
            return True
        if attempt < attempts - 1:
            time.sleep(delay)
            delay = min(delay * 2, _MAX_BACKOFF_S)
    return False
