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
"""Bootstrap secret channel.

At boot the guest listens once on the secret port (vsock 7777), accepts
exactly one connection, reads the body to EOF and parses it as a flat
JSON object:

    {"API_KEY": "abc", "REGION": "us-east-1"}

Values are exported into the process environment and never written to
disk or logged. Only the number of keys is logged.

The host side (``send_bundle``) connects once, writes the JSON and
half-closes the connection.
"""

from __future__ import annotations

import json
import logging
import os
import re
import socket
import time
from collections.abc import Mapping, MutableMapping
from typing import Any

from ..endpoints import Endpoint, bind_listener, connect
from ..errors import (
    ForwarderError,
    MalformedSecretPayload,
    SecretChannelError,
    SecretChannelTimeout,
)

logger = logging.getLogger("enclave_bridge.guest.secrets")

DEFAULT_MAX_BYTES = 1024 * 1024
_ENV_NAME = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")
_CHUNK = 65536


def _render(key: str, value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, str):
        return value
    if isinstance(value, (int, float)):
        return json.dumps(value)
    kind = "null" if value is None else type(value).__name__
    raise MalformedSecretPayload(f"Value for {key!r} must be a scalar, got {kind}")


def parse_bundle(body: bytes) -> dict[str, str]:
    """Parse a secret body into environment-ready name/value pairs."""
    try:
        text = body.decode("utf-8")
    except UnicodeDecodeError as exc:
        raise MalformedSecretPayload(f"Secret body is not UTF-8: {exc.reason}") from None
    try:
        data = json.loads(text)
    except json.JSONDecodeError as exc:
        # Position only; the message would echo part of the body
        raise MalformedSecretPayload(
            f"Secret body is not valid JSON (line {exc.lineno}, column {exc.colno})"
        ) from None
    if not isinstance(data, dict):
        raise MalformedSecretPayload(f"Secret body must be a JSON object, got {type(data).__name__}")

    bundle: dict[str, str] = {}
    for key, value in data.items():
        if not _ENV_NAME.match(key):
            raise MalformedSecretPayload(f"Invalid environment variable name {key!r}")
        bundle[key] = _render(key, value)
    return bundle


def _read_body(conn: socket.socket, max_bytes: int) -> bytes:
    chunks: list[bytes] = []
    total = 0
    while True:
        chunk = conn.recv(_CHUNK)
        if not chunk:
            return b"".join(chunks)
        total += len(chunk)
        if total > max_bytes:
            raise MalformedSecretPayload(f"Secret body exceeds {max_bytes} bytes")
        chunks.append(chunk)


def receive_once(
    endpoint: Endpoint,
    timeout: float = 300.0,
    max_bytes: int = DEFAULT_MAX_BYTES,
) -> dict[str, str]:
    """Accept one connection on ``endpoint`` and return its secret bundle.

    Raises:
        SecretChannelTimeout: no connection (or no EOF) within ``timeout``.
        MalformedSecretPayload: the body is not a flat JSON object.
        SecretChannelError: the endpoint could not be bound.
    """
    try:
        listener = bind_listener(endpoint, backlog=1)
    except ForwarderError as exc:
        raise SecretChannelError(f"Cannot listen for secrets on {endpoint}: {exc}") from exc

    logger.info("Waiting up to %.0fs for the secret bundle on %s", timeout, endpoint)
    with listener:
        listener.settimeout(timeout)
        try:
            conn, peer = listener.accept()
        except TimeoutError:
            raise SecretChannelTimeout(
                f"No secret bundle received on {endpoint} within {timeout:.0f}s"
            ) from None

    with conn:
        conn.settimeout(timeout)
        try:
            body = _read_body(conn, max_bytes)
        except TimeoutError:
            raise SecretChannelTimeout(
                f"Secret sender {peer} did not finish within {timeout:.0f}s"
            ) from None

    bundle = parse_bundle(body)
    logger.info("Received secret bundle with %d key(s)", len(bundle))
    return bundle


def materialize(
    bundle: dict[str, str],
    environ: MutableMapping[str, str] | None = None,
) -> list[str]:
    """Export ``bundle`` into ``environ`` and empty it. Returns the exported names."""
    env = os.environ if environ is None else environ
    names = sorted(bundle)
    for name in names:
        env[name] = bundle[name]
    bundle.clear()
    logger.info("Exported %d secret(s) into the environment", len(names))
    return names


def send_bundle(
    endpoint: Endpoint,
    bundle: Mapping[str, Any],
    timeout: float = 10.0,
    attempts: int = 5,
    backoff_s: float = 0.5,
) -> int:
    """Deliver ``bundle`` to a guest waiting in ``receive_once``.

    Retries while the guest is not listening yet. Returns the number of
    bytes sent.
    """
    if not isinstance(bundle, Mapping):
        raise MalformedSecretPayload("Secret bundle must be a JSON object")
    # Fail here rather than on the guest, which would abort its boot
    for key, value in bundle.items():
        if not isinstance(key, str) or not _ENV_NAME.match(key):
            raise MalformedSecretPayload(f"Invalid environment variable name {key!r}")
        _render(key, value)
    payload = json.dumps(dict(bundle)).encode("utf-8")

    delay = backoff_s
    for attempt in range(1, max(1, attempts) + 1):
        try:
            sock = connect(endpoint, timeout=timeout)
            break
        except OSError as exc:
            if attempt >= attempts:
                raise SecretChannelError(f"Cannot reach {endpoint}: {exc}") from exc
            logger.debug("Secret channel %s not ready (%s), retrying in %.1fs", endpoint, exc, delay)
            time.sleep(delay)
            delay = min(delay * 2, 5.0)

    with sock:
        sock.settimeout(timeout)
        try:
            sock.sendall(payload)
            sock.shutdown(socket.SHUT_WR)
        except OSError as exc:
            raise SecretChannelError(f"Sending secret bundle to {endpoint} failed: {exc}") from exc
    logger.info("Delivered secret bundle with %d key(s) to %s", len(bundle), endpoint)
    return len(payload)
