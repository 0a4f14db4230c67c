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
"""Traffic redirector -- capture outbound guest traffic into the forwarders.

All rules live in a dedicated ``nat`` chain so installation can replace
them wholesale instead of appending:

    iptables -t nat -N ENCLAVE_BRIDGE                 (if missing)
    iptables -t nat -F ENCLAVE_BRIDGE
    iptables -t nat -A ENCLAVE_BRIDGE -o lo -j RETURN
    iptables -t nat -A ENCLAVE_BRIDGE -d 127.0.0.0/8 -j RETURN
    iptables -t nat -A ENCLAVE_BRIDGE -p tcp --dport 443 -j REDIRECT --to-ports 443
    ...
    iptables -t nat -C OUTPUT -p tcp -j ENCLAVE_BRIDGE || iptables -t nat -I OUTPUT 1 -p tcp -j ENCLAVE_BRIDGE

The loopback RETURN rules come first. Without them the guest forwarder's
own connections to 127.0.0.1 would be redirected back into itself.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass
from pathlib import Path

from ..commands import CommandResult, Runner, run_command
from ..errors import RedirectError
from ..mappings import Direction, Mapping

logger = logging.getLogger("enclave_bridge.guest.redirect")

CHAIN = "ENCLAVE_BRIDGE"
LOOPBACK_EXEMPTIONS: tuple[tuple[str, ...], ...] = (
    ("-o", "lo", "-j", "RETURN"),
    ("-d", "127.0.0.0/8", "-j", "RETURN"),
)
HOSTS_CONTENT = "127.0.0.1   localhost\n::1         localhost\n"


@dataclass(frozen=True)
class RedirectRule:
    """Redirect locally originated traffic for ``dest_port`` to a local port."""

    dest_port: int
    protocol: str = "tcp"
    exempt_loopback: bool = True
    to_port: int | None = None  # defaults to dest_port

    def args(self) -> tuple[str, ...]:
        to_port = self.to_port if self.to_port is not None else self.dest_port
        return (
            "-p", self.protocol,
            "--dport", str(self.dest_port),
            "-j", "REDIRECT",
            "--to-ports", str(to_port),
        )


def rules_for(mappings: Iterable[Mapping]) -> list[RedirectRule]:
    """One redirect per guest-to-host mapping, onto its guest listen port."""
    return [
        RedirectRule(dest_port=m.port)
        for m in mappings
        if m.direction is Direction.GUEST_TO_HOST
    ]


class Redirector:
    """Installs and removes the bridge's NAT rules."""

    def __init__(
        self,
        runner: Runner | None = None,
        iptables: str = "iptables",
        chain: str = CHAIN,
    ) -> None:
        self._runner = runner or run_command
        self._iptables = iptables
        self._chain = chain

    @property
    def chain(self) -> str:
        return self._chain

    def _nat(self, *args: str) -> CommandResult:
        return self._runner([self._iptables, "-t", "nat", *args])

    def _must(self, *args: str) -> CommandResult:
        result = self._nat(*args)
        if not result.ok:
            raise RedirectError(f"Redirect rule failed: {result.describe()}")
        return result

    def _jump(self) -> tuple[str, ...]:
        return ("OUTPUT", "-p", "tcp", "-j", self._chain)

    def install(self, rules: Iterable[RedirectRule]) -> list[tuple[str, ...]]:
        """Replace the chain contents with ``rules``. Safe to re-run.

        Returns the rule specs appended to the chain, in order.
        """
        rules = list(rules)
        if not self._nat("-n", "-L", self._chain).ok:
            self._must("-N", self._chain)
        self._must("-F", self._chain)

        # A rule that opts out of the exemption must precede it to see loopback traffic
        ordered: list[tuple[str, ...]] = [r.args() for r in rules if not r.exempt_loopback]
        if any(r.exempt_loopback for r in rules):
            ordered.extend(LOOPBACK_EXEMPTIONS)
        ordered.extend(r.args() for r in rules if r.exempt_loopback)

        for spec in ordered:
            self._must("-A", self._chain, *spec)

        jump = self._jump()
        if not self._nat("-C", *jump).ok:
            self._must("-I", jump[0], "1", *jump[1:])
        logger.info("Installed %d redirect rule(s) in chain %s", len(rules), self._chain)
        return ordered

    def remove(self) -> None:
        """Delete the OUTPUT jump and the chain. Missing pieces are ignored."""
        while self._nat("-C", *self._jump()).ok:
            self._must("-D", *self._jump())
        if self._nat("-n", "-L", self._chain).ok:
            self._must("-F", self._chain)
            self._must("-X", self._chain)
        logger.info("Removed redirect chain %s", self._chain)

    def current_rules(self) -> list[str]:
        """The chain as ``iptables -S`` prints it (empty if it does not exist)."""
        result = self._nat("-S", self._chain)
        if not result.ok:
            return []
        return [line for line in result.stdout.splitlines() if line.strip()]


def configure_loopback(
    runner: Runner | None = None,
    ip: str = "ip",
    hosts_path: str | Path = "/etc/hosts",
) -> None:
    """Bring ``lo`` up with 127.0.0.1 and make ``localhost`` resolvable.

    An enclave starts with the loopback interface down. An address that
    is already assigned is not an error.
    """
    run = runner or run_command
    result = run([ip, "addr", "add", "127.0.0.1/8", "dev", "lo"])
    if not result.ok and "exists" not in result.stderr.lower():
        raise RedirectError(f"Cannot assign loopback address: {result.describe()}")

    result = run([ip, "link", "set", "dev", "lo", "up"])
    if not result.ok:
        raise RedirectError(f"Cannot bring loopback up: {result.describe()}")

    hosts = Path(hosts_path)
    try:
        existing = hosts.read_text(encoding="utf-8") if hosts.exists() else ""
        if "localhost" not in existing:
            hosts.write_text(existing + HOSTS_CONTENT, encoding="utf-8")
    except OSError as exc:
        logger.warning("Cannot update %s: %s", hosts, exc)
    logger.info("Loopback interface configured")
