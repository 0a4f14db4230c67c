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
"""
Human-readable summaries for the CLI.

Each mapping gets one line with ✓ (live), ⚠ (degraded) or ✗ (failed),
followed by the details and, on failure, what to inspect next:

    ✓ https  tcp:0.0.0.0:443 -> vsock:16:8443
      PID 4242
    ✗ api    tcp:0.0.0.0:3000 -> vsock:16:3000
      exited with code 3 (listen port already in use)
      · 2025-01-01 12:00:00 [enclave_bridge.relay.forwarder] ERROR: ...
      -> Check what holds port 3000 (ss -ltnp 'sport = :3000'), then see /root/.enclave-bridge/logs/forwarder-api.log
"""

from __future__ import annotations

from collections.abc import Callable, Iterable
from dataclasses import dataclass, field

import httpx

from ..errors import ConfigError
from ..host.exposure import ExposureResult, ProcessState
from ..host.reaper import TerminateReport
from ..host.supervisor import ForwarderHandle, HandleStatus, SupervisorReport, read_log_tail
from ..mappings import Mapping, Side
from ..relay.forwarder import EXIT_PORT_IN_USE

Printer = Callable[[str], None]


@dataclass
class StatusLine:
    """One line of a summary."""

    name: str
    status: str  # "pass", "warn", "fail"
    message: str
    remedy: str = ""
    details: list[str] = field(default_factory=list)

    @property
    def icon(self) -> str:
        return {"pass": "✓", "warn": "⚠", "fail": "✗"}.get(self.status, "?")


def render(lines: Iterable[StatusLine], out: Printer = print) -> None:
    for line in lines:
        out(f"  {line.icon} {line.name}  {line.message}")
        for detail in line.details:
            out(f"      · {detail}")
        if line.remedy:
            out(f"      -> {line.remedy}")


def _remedy(handle: ForwarderHandle) -> str:
    port = handle.listen.rsplit(":", 1)[-1]
    log = handle.log_path or "the forwarder log"
    if handle.returncode == EXIT_PORT_IN_USE:
        if handle.listen.startswith("vsock:"):
            return f"Check what holds vsock port {port} (ss -lp --vsock), then see {log}"
        return f"Check what holds port {port} (ss -ltnp 'sport = :{port}'), then see {log}"
    if handle.pid is None:
        return f"Could not spawn the forwarder: {handle.error}"
    return f"Inspect PID {handle.pid} output in {log}"


def handle_line(handle: ForwarderHandle) -> StatusLine:
    route = f"{handle.listen} -> {handle.target}"
    if handle.status is HandleStatus.LIVE:
        return StatusLine(handle.mapping_id, "pass", route, details=[f"PID {handle.pid}"])
    if handle.status is HandleStatus.FAILED:
        details = [handle.error] if handle.error else []
        details += read_log_tail(handle.log_path, lines=3) if handle.log_path else []
        return StatusLine(handle.mapping_id, "fail", route, remedy=_remedy(handle), details=details)
    return StatusLine(handle.mapping_id, "warn", f"{route} ({handle.status.value})")


def exposure_lines(report: SupervisorReport) -> list[StatusLine]:
    return [handle_line(h) for h in report.handles]


def render_exposure(result: ExposureResult, out: Printer = print) -> None:
    report = result.report
    out(f"\n  Enclave {result.instance.enclave_id or '?'} (CID {result.instance.address})")
    if result.reap.terminated:
        out(f"  Reaped {len(result.reap.terminated)} stale listener(s)")
    out("  " + "─" * 50)
    render(exposure_lines(report), out)
    out("  " + "─" * 50)
    if report.ok:
        out(f"  Summary: {report.live}/{report.expected} forwarders live\n")
    else:
        out(
            f"  Summary: {report.live}/{report.expected} forwarders live, "
            f"failed: {', '.join(report.failed_ids)}\n"
        )


def render_teardown(report: TerminateReport, out: Printer = print) -> None:
    out(
        f"  Stopped {len(report.stopped)}, already gone {len(report.already_gone)}, "
        f"skipped {len(report.skipped)}"
    )
    if report.skipped:
        out(f"  -> PID(s) {', '.join(map(str, report.skipped))} now belong to other processes; left alone")
    if report.denied:
        out(
            f"  -> No permission to stop PID(s) {', '.join(map(str, report.denied))}; "
            "still recorded, re-run teardown as their owner"
        )


def status_lines(states: Iterable[ProcessState]) -> list[StatusLine]:
    lines = []
    for state in states:
        name = state.ref.mapping_id or f"pid {state.ref.pid}"
        detail = [state.ref.signature] if state.ref.signature else []
        if state.alive:
            lines.append(StatusLine(name, "pass", f"PID {state.ref.pid} running", details=detail))
        else:
            lines.append(
                StatusLine(
                    name,
                    "fail",
                    f"PID {state.ref.pid} not running",
                    remedy="Run 'enclave-bridge expose' to restart the bridge",
                    details=detail,
                )
            )
    return lines


def mapping_rows(mappings: Iterable[Mapping], enclave_cid: str | None = None) -> list[str]:
    rows = []
    for m in mappings:
        rows.append(f"  {m.id:<10} {m.direction.value:<14} {m.label}")
        for side in (Side.GUEST, Side.HOST):
            try:
                spec = m.forwarder(side, enclave_cid)
                route = f"{spec.describe()}  [{spec.signature}]"
            except ConfigError:
                route = f"tcp:{m.listen_host}:{m.port} -> vsock:<enclave cid>:{m.bridge_port}"
            rows.append(f"      {side.value:<6} {route}")
    return rows


def probe_health(host: str, port: int, path: str = "/health_check", timeout: float = 5.0) -> StatusLine:
    """GET the application's health endpoint through the exposed API port."""
    url = f"http://{host}:{port}{path}"
    try:
        with httpx.Client(timeout=timeout, trust_env=False) as client:
            resp = client.get(url)
    except httpx.HTTPError as exc:
        return StatusLine(
            "probe",
            "fail",
            f"{url} unreachable",
            remedy="Check the api forwarder and that the application is listening in the enclave",
            details=[str(exc) or type(exc).__name__],
        )
    body = resp.text.strip()[:200]
    if resp.status_code == 200:
        return StatusLine("probe", "pass", f"{url} -> 200", details=[body] if body else [])
    return StatusLine("probe", "warn", f"{url} -> {resp.status_code}", details=[body] if body else [])
