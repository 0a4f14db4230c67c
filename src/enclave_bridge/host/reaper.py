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
"""Conflict reaper -- clear stale forwarders before starting new ones.

A forwarder left behind by a crashed or previous run still owns its
listen port, so a fresh start would fail to bind. Before every start the
reaper terminates any process whose command line identifies it as a
listener on the same endpoint:

  - our forwarder, started with ``--signature <family>:<port>``
  - a legacy ``socat`` listener (``TCP4-LISTEN:<port>``,
    ``VSOCK-LISTEN:<port>``, ...) from the old shell scripts

Termination is SIGTERM, a bounded wait, then SIGKILL. A process that is
already gone counts as success. Afterwards the reaper polls each listen
endpoint until it can be bound again (bounded retry with backoff); a
port that stays busy is reported, and the supervisor's own bind retry
decides the mapping's fate.

The reaper is the only component allowed to terminate a forwarder it
did not start itself.
"""

from __future__ import annotations

import logging
import os
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field

import psutil

from ..endpoints import Endpoint, wait_port_released
from ..mappings import ForwarderSpec
from ..relay.forwarder import MODULE as FORWARDER_MODULE
from .registry import ProcessRef

logger = logging.getLogger("enclave_bridge.host.reaper")

_LEGACY_TCP_LISTEN = ("TCP-LISTEN", "TCP4-LISTEN", "TCP6-LISTEN")
_LEGACY_VSOCK_LISTEN = ("VSOCK-LISTEN",)


def forwarder_signature(cmdline: Sequence[str]) -> str | None:
    """Return the ``--signature`` of a forwarder command line, else None."""
    if not any(FORWARDER_MODULE in part for part in cmdline):
        return None
    for i, part in enumerate(cmdline):
        if part == "--signature" and i + 1 < len(cmdline):
            return cmdline[i + 1]
        if part.startswith("--signature="):
            return part.split("=", 1)[1]
    return None


def is_legacy_listener(cmdline: Sequence[str], listen: Endpoint) -> bool:
    """True if ``cmdline`` is a socat process listening on ``listen``'s port."""
    if not cmdline or os.path.basename(cmdline[0]) != "socat":
        return False
    prefixes = _LEGACY_VSOCK_LISTEN if listen.is_vsock else _LEGACY_TCP_LISTEN
    addresses = tuple(f"{p}:{listen.port}" for p in prefixes)
    for arg in cmdline[1:]:
        for address in addresses:
            if arg == address or arg.startswith(address + ","):
                return True
    return False


def matches_listener(cmdline: Sequence[str], listen: Endpoint, include_legacy: bool = True) -> bool:
    if forwarder_signature(cmdline) == listen.signature():
        return True
    return include_legacy and is_legacy_listener(cmdline, listen)


@dataclass
class ReapReport:
    """What ``Reaper.reap`` did."""

    terminated: list[int] = field(default_factory=list)
    busy: list[str] = field(default_factory=list)  # endpoints still held afterwards

    @property
    def clean(self) -> bool:
        return not self.busy


@dataclass
class TerminateReport:
    """What ``Reaper.terminate_pids`` did with a list of persisted refs."""

    stopped: list[int] = field(default_factory=list)
    already_gone: list[int] = field(default_factory=list)
    skipped: list[int] = field(default_factory=list)  # PID reused by something else
    denied: list[int] = field(default_factory=list)  # no permission to inspect or signal


class Reaper:
    """Finds and terminates stale listeners for a set of forwarders."""

    def __init__(
        self,
        terminate_timeout_s: float = 3.0,
        release_attempts: int = 10,
        release_backoff_s: float = 0.05,
        include_legacy: bool = True,
    ) -> None:
        self._terminate_timeout_s = terminate_timeout_s
        self._release_attempts = release_attempts
        self._release_backoff_s = release_backoff_s
        self._include_legacy = include_legacy

    def find(self, listens: Iterable[Endpoint]) -> list[psutil.Process]:
        """Processes (other than this one) listening on any of ``listens``."""
        listens = list(listens)
        own_pid = os.getpid()
        found: list[psutil.Process] = []
        for proc in psutil.process_iter(["pid", "cmdline"]):
            if proc.pid == own_pid:
                continue
            cmdline = proc.info.get("cmdline") or []
            if any(matches_listener(cmdline, ep, self._include_legacy) for ep in listens):
                found.append(proc)
        return found

    def reap(self, specs: Iterable[ForwarderSpec]) -> ReapReport:
        """Terminate stale listeners for ``specs`` and wait for their ports.

        Safe to call when nothing is listening.
        """
        listens: list[Endpoint] = []
        for spec in specs:
            if spec.listen not in listens:
                listens.append(spec.listen)

        victims = self.find(listens)
        report = ReapReport()
        if victims:
            logger.info(
                "Terminating %d stale listener(s): %s",
                len(victims),
                ", ".join(str(p.pid) for p in victims),
            )
            report.terminated, _ = self._terminate(victims)

        for listen in listens:
            if not wait_port_released(
                listen,
                attempts=self._release_attempts,
                backoff_s=self._release_backoff_s,
            ):
                logger.warning("%s is still in use after reaping", listen)
                report.busy.append(str(listen))

        if not victims:
            logger.debug("No stale listeners for %d endpoint(s)", len(listens))
        return report

    def terminate_pids(self, refs: Iterable[ProcessRef]) -> TerminateReport:
        """Stop persisted processes, tolerating ones that already exited.

        A ref that carries a signature is only terminated if the live
        process still looks like that forwarder, so a recycled PID is
        never killed.
        """
        report = TerminateReport()
        targets: list[psutil.Process] = []
        own_pid = os.getpid()

        for ref in refs:
            if ref.pid == own_pid:
                report.skipped.append(ref.pid)
                continue
            try:
                proc = psutil.Process(ref.pid)
                cmdline = proc.cmdline()
            except psutil.NoSuchProcess:
                report.already_gone.append(ref.pid)
                continue
            except psutil.AccessDenied:
                logger.warning("No permission to inspect PID %d -- skipping", ref.pid)
                report.denied.append(ref.pid)
                continue

            if ref.signature and forwarder_signature(cmdline) != ref.signature:
                logger.warning(
                    "PID %d is no longer forwarder %s (%s) -- skipping",
                    ref.pid,
                    ref.mapping_id or ref.signature,
                    " ".join(cmdline)[:120],
                )
                report.skipped.append(ref.pid)
                continue
            targets.append(proc)

        if targets:
            report.stopped, denied = self._terminate(targets)
            report.denied.extend(denied)
        return report

    def _terminate(self, procs: list[psutil.Process]) -> tuple[list[int], list[int]]:
        """SIGTERM, bounded wait, SIGKILL. Returns (stopped PIDs, PIDs we may not signal)."""
        signalled: list[psutil.Process] = []
        denied: list[int] = []
        for proc in procs:
            try:
                proc.terminate()
                signalled.append(proc)
            except psutil.NoSuchProcess:
                signalled.append(proc)
            except psutil.AccessDenied:
                logger.warning("No permission to terminate PID %d", proc.pid)
                denied.append(proc.pid)

        _, alive = psutil.wait_procs(signalled, timeout=self._terminate_timeout_s)
        for proc in alive:
            logger.warning("PID %d ignored SIGTERM -- killing", proc.pid)
            try:
                proc.kill()
            except psutil.NoSuchProcess:
                pass
            except psutil.AccessDenied:
                logger.warning("No permission to kill PID %d", proc.pid)
                denied.append(proc.pid)
        if alive:
            psutil.wait_procs(alive, timeout=self._terminate_timeout_s)

        return [p.pid for p in signalled if p.pid not in denied], denied
