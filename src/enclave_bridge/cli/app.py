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
"""enclave-bridge command line entry point.

Usage:
    enclave-bridge expose [--mapping ID ...] [--strict] [--probe]
    enclave-bridge teardown
    enclave-bridge status
    enclave-bridge deliver-secrets --file secrets.json
    enclave-bridge probe [--host HOST] [--port PORT]
    enclave-bridge boot -- APP [ARGS...]
    enclave-bridge mappings [--cid CID]

Exit codes:
    0  success
    1  fatal (no/ambiguous enclave, bad config, secret or redirect failure),
       or a degraded exposure under --strict
    2  invalid arguments
    3  degraded: some forwarders failed, the rest are live
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path

from ..config import BridgeConfig, load_config
from ..endpoints import Endpoint
from ..errors import BridgeError, ConfigError, MalformedSecretPayload
from ..guest.boot import run_boot
from ..guest.secrets import send_bundle
from ..host.discovery import discover
from ..host.exposure import process_states, run_exposure, teardown
from ..host.registry import HandleRegistry
from ..host.supervisor import SupervisorReport
from ..logging import setup_logging
from ..mappings import Direction
from . import summary

logger = logging.getLogger("enclave_bridge.cli.app")

EXIT_OK = 0
EXIT_FATAL = 1
EXIT_USAGE = 2
EXIT_DEGRADED = 3


def exposure_exit_code(report: SupervisorReport, strict: bool) -> int:
    if report.ok:
        return EXIT_OK
    return EXIT_FATAL if strict else EXIT_DEGRADED


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="enclave-bridge",
        description="Bridge TCP traffic into and out of a vsock-only enclave",
    )
    parser.add_argument(
        "--config",
        default=None,
        help="Path to bridge_config.yaml (default: ~/.enclave-bridge/bridge_config.yaml)",
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level (default: INFO)",
    )
    parser.add_argument("--log-file", default=None, help="Also write logs to this rotating file")
    sub = parser.add_subparsers(dest="command", required=True)

    expose = sub.add_parser("expose", help="Discover the enclave and start host-side forwarders")
    expose.add_argument(
        "--mapping",
        action="append",
        dest="mappings",
        metavar="ID",
        help="Only expose this mapping (repeatable, default: all)",
    )
    expose.add_argument("--strict", action="store_true", help="Exit 1 unless every forwarder is live")
    expose.add_argument("--probe", action="store_true", help="GET /health_check afterwards")

    sub.add_parser("teardown", help="Stop every forwarder recorded by the last expose")
    sub.add_parser("status", help="Show recorded forwarders and whether they are running")

    deliver = sub.add_parser("deliver-secrets", help="Send the secret bundle to the booting enclave")
    deliver.add_argument("--file", required=True, help="JSON object file, or - for stdin")
    deliver.add_argument("--timeout", type=float, default=10.0)

    probe = sub.add_parser("probe", help="GET /health_check through the exposed API port")
    probe.add_argument("--host", default="127.0.0.1")
    probe.add_argument("--port", type=int, default=None, help="Default: the host-to-guest mapping port")
    probe.add_argument("--path", default="/health_check")
    probe.add_argument("--timeout", type=float, default=5.0)

    boot = sub.add_parser("boot", help="Guest boot: redirect, secrets, forwarders, exec APP")
    boot.add_argument("app", nargs=argparse.REMAINDER, help="Application command")

    mappings = sub.add_parser("mappings", help="Print the mapping table")
    mappings.add_argument("--cid", default=None, help="Enclave CID for the host-side API target")
    return parser


def _api_port(config: BridgeConfig) -> int:
    for m in config.mappings:
        if m.direction is Direction.HOST_TO_GUEST:
            return m.port
    raise ConfigError("No host-to-guest mapping configured")


def cmd_expose(args: argparse.Namespace, config: BridgeConfig) -> int:
    if args.strict:
        config.strict = True
    result = run_exposure(config, args.mappings)
    summary.render_exposure(result)
    if args.probe and result.report.live:
        summary.render([summary.probe_health("127.0.0.1", _api_port(config))])
    return exposure_exit_code(result.report, config.strict)


def cmd_teardown(args: argparse.Namespace, config: BridgeConfig) -> int:
    report = teardown(config)
    summary.render_teardown(report)
    return EXIT_DEGRADED if report.denied else EXIT_OK


def cmd_status(args: argparse.Namespace, config: BridgeConfig) -> int:
    registry = HandleRegistry(config.registry_path)
    refs = registry.load()
    if not refs:
        print(f"  No forwarders recorded in {registry.path}")
        return EXIT_OK
    summary.render(summary.status_lines(process_states(refs)))
    return EXIT_OK


def cmd_deliver_secrets(args: argparse.Namespace, config: BridgeConfig) -> int:
    text = sys.stdin.read() if args.file == "-" else Path(args.file).read_text(encoding="utf-8")
    try:
        bundle = json.loads(text)
    except json.JSONDecodeError as exc:
        raise MalformedSecretPayload(f"{args.file} is not valid JSON: {exc.msg}") from None

    instance = discover()
    endpoint = Endpoint.vsock(instance.address, config.secret_port)
    send_bundle(endpoint, bundle, timeout=args.timeout)
    print(f"  ✓ Delivered {len(bundle)} secret(s) to {endpoint}")
    return EXIT_OK


def cmd_probe(args: argparse.Namespace, config: BridgeConfig) -> int:
    port = args.port if args.port is not None else _api_port(config)
    line = summary.probe_health(args.host, port, args.path, args.timeout)
    summary.render([line])
    return EXIT_OK if line.status == "pass" else EXIT_FATAL


def cmd_boot(args: argparse.Namespace, config: BridgeConfig) -> int:
    app = list(args.app)
    if app[:1] == ["--"]:
        app = app[1:]
    run_boot(config, app)
    return EXIT_OK


def cmd_mappings(args: argparse.Namespace, config: BridgeConfig) -> int:
    for row in summary.mapping_rows(config.mappings, args.cid):
        print(row)
    return EXIT_OK


_COMMANDS = {
    "expose": cmd_expose,
    "teardown": cmd_teardown,
    "status": cmd_status,
    "deliver-secrets": cmd_deliver_secrets,
    "probe": cmd_probe,
    "boot": cmd_boot,
    "mappings": cmd_mappings,
}


def main(argv: list[str] | None = None) -> int:
    """Entry point for the enclave-bridge CLI."""
    args = build_parser().parse_args(argv)
    setup_logging(args.log_level, args.log_file)

    try:
        config = load_config(args.config)
        return _COMMANDS[args.command](args, config)
    except BridgeError as exc:
        logger.debug("Fatal %s", type(exc).__name__, exc_info=True)
        print(f"  ✗ {exc}", file=sys.stderr)
        return EXIT_FATAL
    except OSError as exc:
        print(f"  ✗ {exc}", file=sys.stderr)
        return EXIT_FATAL


if __name__ == "__main__":
    sys.exit(main())
