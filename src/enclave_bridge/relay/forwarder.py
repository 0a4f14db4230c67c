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
"""Forwarder process entry point.

One process per mapping, spawned by the Supervisor. The ``--signature``
argument is how the reaper recognises a forwarder left over from a
previous run, so it must stay on the command line.

Usage:
    python -m enclave_bridge.relay.forwarder --listen tcp:0.0.0.0:443 \\
        --target vsock:3:8443 --mapping-id https --signature tcp:443

Exit codes:
    0  stopped by SIGTERM / SIGINT
    2  invalid arguments
    3  listen port still in use after the bind retries
    4  listen endpoint could not be bound for another reason
"""

from __future__ import annotations

import argparse
import logging
import signal
import sys

from ..endpoints import Endpoint
from ..errors import BindFailed, ConfigError, PortInUse
from ..logging import setup_logging
from .events import DEFAULT_MAX_BYTES, RelayEventLog
from .server import DEFAULT_LINGER_S, Forwarder

logger = logging.getLogger("enclave_bridge.relay.forwarder")

MODULE = "enclave_bridge.relay.forwarder"

EXIT_OK = 0
EXIT_USAGE = 2
EXIT_PORT_IN_USE = 3
EXIT_BIND_FAILED = 4


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="enclave-bridge-forwarder",
        description="Relay every connection on one endpoint to another",
    )
    parser.add_argument("--listen", required=True, help="Listen endpoint (tcp:HOST:PORT | vsock:CID:PORT)")
    parser.add_argument("--target", required=True, help="Target endpoint (tcp:HOST:PORT | vsock:CID:PORT)")
    parser.add_argument("--mapping-id", default="", help="Mapping id, used in logs and events")
    parser.add_argument(
        "--signature",
        default=None,
        help="Listener signature (family:port); must match --listen",
    )
    parser.add_argument("--max-connections", type=int, default=256)
    parser.add_argument("--connect-timeout", type=float, default=10.0)
    parser.add_argument(
        "--linger",
        type=float,
        default=DEFAULT_LINGER_S,
        help="Seconds the open direction may idle after the other side closes",
    )
    parser.add_argument("--bind-attempts", type=int, default=5)
    parser.add_argument("--bind-backoff", type=float, default=0.2)
    parser.add_argument("--event-log", default=None, help="JSON Lines file for connection events")
    parser.add_argument(
        "--event-log-max-bytes",
        type=int,
        default=DEFAULT_MAX_BYTES,
        help="Rotate the event log once it reaches this size",
    )
    parser.add_argument("--log-file", default=None, help="Rotating log file")
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
    )
    return parser


def main(argv: list[str] | None = None) -> int:
    """Run one forwarder until signalled. Returns the process exit code."""
    args = build_parser().parse_args(argv)
    setup_logging(args.log_level, args.log_file)

    try:
        listen = Endpoint.parse(args.listen)
        target = Endpoint.parse(args.target)
    except ConfigError as exc:
        logger.error("%s", exc)
        return EXIT_USAGE

    if args.signature and args.signature != listen.signature():
        logger.error("Signature %s does not match listen endpoint %s", args.signature, listen)
        return EXIT_USAGE

    forwarder = Forwarder(
        listen,
        target,
        mapping_id=args.mapping_id,
        max_connections=args.max_connections,
        connect_timeout_s=args.connect_timeout,
        linger_s=args.linger,
        bind_attempts=args.bind_attempts,
        bind_backoff_s=args.bind_backoff,
        event_log=(
            RelayEventLog(args.event_log, max_bytes=args.event_log_max_bytes)
            if args.event_log
            else None
        ),
    )

    def _shutdown(signum, frame):
        logger.info("Received signal %d, stopping forwarder", signum)
        raise SystemExit(EXIT_OK)

    signal.signal(signal.SIGINT, _shutdown)
    signal.signal(signal.SIGTERM, _shutdown)

    try:
        forwarder.serve_forever()
    except PortInUse as exc:
        logger.error("%s", exc)
        return EXIT_PORT_IN_USE
    except BindFailed as exc:
        logger.error("%s", exc)
        return EXIT_BIND_FAILED
    finally:
        forwarder.stop()
    return EXIT_OK


if __name__ == "__main__":
    sys.exit(main())
