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
"""Forwarder supervisor -- one process per mapping, with explicit handles.

Lifecycle of a handle:

    starting --> live      process still running after the settle delay
    starting --> failed    spawn error, or the process exited
    live     --> stopped   explicit stop (teardown, or a restart of the mapping)

Liveness means "did not crash on startup", not "serviced a connection".
A failure in one mapping never stops the others from being attempted;
the aggregate ``SupervisorReport`` lists exactly which mappings failed.

Each forwarder runs in its own session with stdout/stderr appended to
``<log_dir>/forwarder-<mapping id>.log``.
"""

from __future__ import annotations

import enum
import logging
import subprocess
import time
from collections.abc import Iterable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from ..config import BridgeConfig
from ..endpoints import bind_retry_window
from ..mappings import ForwarderSpec
from ..relay import forwarder as forwarder_main

logger = logging.getLogger("enclave_bridge.host.supervisor")

# Extra wait on top of the bind retry window before the liveness check
_SETTLE_MARGIN_S = 0.5
_LOG_TAIL_LINES = 5

_EXIT_REASONS = {
    forwarder_main.EXIT_USAGE: "invalid forwarder arguments",
    forwarder_main.EXIT_PORT_IN_USE: "listen port already in use",
    forwarder_main.EXIT_BIND_FAILED: "listen endpoint could not be bound",
}


class HandleStatus(enum.Enum):
    STARTING = "starting"
    LIVE = "live"
    FAILED = "failed"
    STOPPED = "stopped"


_TRANSITIONS = {
    HandleStatus.STARTING: {HandleStatus.LIVE, HandleStatus.FAILED},
    HandleStatus.LIVE: {HandleStatus.STOPPED},
}


@dataclass
class ForwarderHandle:
    """A forwarder process started by this supervisor."""

    mapping_id: str
    label: str
    signature: str
    listen: str
    target: str
    pid: int | None = None
    status: HandleStatus = HandleStatus.STARTING
    log_path: str = ""
    returncode: int | None = None
    error: str = ""
    _process: subprocess.Popen | None = field(default=None, repr=False, compare=False)

    def transition(self, status: HandleStatus) -> None:
        if status not in _TRANSITIONS.get(self.status, set()):
            raise ValueError(
                f"Forwarder {self.mapping_id}: illegal transition "
                f"{self.status.value} -> {status.value}"
            )
        self.status = status

    def to_dict(self) -> dict[str, Any]:
        return {
            "mapping_id": self.mapping_id,
            "label": self.label,
            "pid": self.pid,
            "status": self.status.value,
            "signature": self.signature,
            "listen": self.listen,
            "target": self.target,
            "log_path": self.log_path,
            "returncode": self.returncode,
            "error": self.error,
        }


@dataclass
class SupervisorReport:
    """Aggregate outcome of a start + verify run."""

    handles: list[ForwarderHandle]
    expected: int

    @property
    def live(self) -> int:
        return sum(1 for h in self.handles if h.status is HandleStatus.LIVE)

    @property
    def failed(self) -> list[ForwarderHandle]:
        return [h for h in self.handles if h.status is HandleStatus.FAILED]

    @property
    def failed_ids(self) -> list[str]:
        return [h.mapping_id for h in self.failed]

    @property
    def ok(self) -> bool:
        return self.live == self.expected

    @property
    def degraded(self) -> bool:
        return self.live < self.expected

    def to_dict(self) -> dict[str, Any]:
        return {
            "live": self.live,
            "expected": self.expected,
            "failed": self.failed_ids,
            "handles": [h.to_dict() for h in self.handles],
        }


def describe_exit(returncode: int) -> str:
    if returncode < 0:
        return f"killed by signal {-returncode}"
    reason = _EXIT_REASONS.get(returncode)
    return f"exited with code {returncode}" + (f" ({reason})" if reason else "")


def read_log_tail(path: str | Path, lines: int = _LOG_TAIL_LINES) -> list[str]:
    try:
        text = Path(path).read_text(encoding="utf-8", errors="replace")
    except OSError:
        return []
    return [line for line in text.splitlines() if line.strip()][-lines:]


class Supervisor:
    """Starts, verifies and stops forwarder processes."""

    def __init__(self, config: BridgeConfig | None = None, log_level: str = "INFO") -> None:
        self._config = config or BridgeConfig()
        self._log_level = log_level
        self._owned: dict[str, ForwarderHandle] = {}

    @property
    def log_dir(self) -> Path:
        return Path(self._config.log_dir)

    def log_path(self, spec: ForwarderSpec) -> Path:
        return self.log_dir / f"forwarder-{spec.mapping_id}.log"

    def event_log_path(self, spec: ForwarderSpec) -> Path:
        return self.log_dir / f"events-{spec.mapping_id}.jsonl"

    def build_command(self, spec: ForwarderSpec) -> list[str]:
        cfg = self._config
        cmd = [
            cfg.python,
            "-m",
            forwarder_main.MODULE,
            "--listen",
            str(spec.listen),
            "--target",
            str(spec.target),
            "--mapping-id",
            spec.mapping_id,
            "--signature",
            spec.signature,
            "--max-connections",
            str(cfg.max_connections),
            "--connect-timeout",
            str(cfg.connect_timeout_s),
            "--linger",
            str(cfg.linger_s),
            "--bind-attempts",
            str(cfg.bind_attempts),
            "--bind-backoff",
            str(cfg.bind_backoff_s),
            "--log-level",
            self._log_level,
        ]
        if cfg.event_log:
            cmd += [
                "--event-log",
                str(self.event_log_path(spec)),
                "--event-log-max-bytes",
                str(cfg.event_log_max_bytes),
            ]
        return cmd

    def start(self, specs: Iterable[ForwarderSpec]) -> list[ForwarderHandle]:
        """Spawn one forwarder per spec. Every spec is attempted."""
        self.log_dir.mkdir(parents=True, exist_ok=True)
        handles = []
        for spec in specs:
            previous = self._owned.get(spec.mapping_id)
            if previous is not None and previous.status in (HandleStatus.STARTING, HandleStatus.LIVE):
                logger.info(
                    "Replacing forwarder %s (PID %s)", spec.mapping_id, previous.pid
                )
                self.stop([previous])
            handles.append(self._spawn(spec))
        return handles

    def _spawn(self, spec: ForwarderSpec) -> ForwarderHandle:
        log_path = self.log_path(spec)
        handle = ForwarderHandle(
            mapping_id=spec.mapping_id,
            label=spec.label,
            signature=spec.signature,
            listen=str(spec.listen),
            target=str(spec.target),
            log_path=str(log_path),
        )
        cmd = self.build_command(spec)
        try:
            with open(log_path, "ab") as log_file:
                process = subprocess.Popen(
                    cmd,
                    stdin=subprocess.DEVNULL,
                    stdout=log_file,
                    stderr=subprocess.STDOUT,
                    start_new_session=True,
                )
        except OSError as exc:
            handle.error = f"spawn failed: {exc}"
            handle.transition(HandleStatus.FAILED)
            logger.error("Cannot start forwarder %s: %s", spec.mapping_id, exc)
            return handle

        handle.pid = process.pid
        handle._process = process
        self._owned[spec.mapping_id] = handle
        logger.info(
            "Started forwarder %s (%s)",
            spec.mapping_id,
            spec.describe(),
            extra={"fields": {"pid": process.pid, "log": str(log_path)}},
        )
        return handle

    def settle_delay(self, settle_s: float | None = None) -> float:
        """Time to wait before the liveness check.

        Never shorter than the forwarder's own bind retry window, so a
        forwarder still retrying a busy port is not mistaken for live.
        """
        cfg = self._config
        settle = cfg.settle_s if settle_s is None else settle_s
        window = bind_retry_window(cfg.bind_attempts, cfg.bind_backoff_s)
        if window > 0:
            settle = max(settle, window + _SETTLE_MARGIN_S)
        return settle

    def verify(
        self,
        handles: list[ForwarderHandle],
        settle_s: float | None = None,
    ) -> SupervisorReport:
        """Wait the settle delay, then mark each starting handle live or failed."""
        pending = [h for h in handles if h.status is HandleStatus.STARTING]
        delay = self.settle_delay(settle_s)
        if pending and delay > 0:
            time.sleep(delay)

        for handle in pending:
            process = handle._process
            returncode = process.poll() if process is not None else -1
            if returncode is None:
                handle.transition(HandleStatus.LIVE)
                continue
            handle.returncode = returncode
            handle.error = describe_exit(returncode)
            handle.transition(HandleStatus.FAILED)
            tail = read_log_tail(handle.log_path)
            logger.warning(
                "Forwarder %s %s%s",
                handle.mapping_id,
                handle.error,
                (": " + tail[-1]) if tail else "",
                extra={"fields": {"pid": handle.pid, "returncode": returncode}},
            )

        report = SupervisorReport(handles=list(handles), expected=len(handles))
        log = logger.info if report.ok else logger.warning
        log("%d/%d forwarders live", report.live, report.expected)
        return report

    def stop(self, handles: Iterable[ForwarderHandle]) -> None:
        """Terminate the processes behind ``handles``."""
        timeout = self._config.terminate_timeout_s
        for handle in handles:
            process = handle._process
            if process is None or handle.status in (HandleStatus.FAILED, HandleStatus.STOPPED):
                continue
            if process.poll() is None:
                process.terminate()
                try:
                    process.wait(timeout=timeout)
                except subprocess.TimeoutExpired:
                    logger.warning("Forwarder %s ignored SIGTERM -- killing", handle.mapping_id)
                    process.kill()
                    process.wait(timeout=timeout)
            handle.returncode = process.returncode

            if handle.status is HandleStatus.STARTING:
                handle.error = "stopped before the liveness check"
                handle.transition(HandleStatus.FAILED)
            else:
                handle.transition(HandleStatus.STOPPED)
            if self._owned.get(handle.mapping_id) is handle:
                del self._owned[handle.mapping_id]
            logger.info("Stopped forwarder %s (PID %s)", handle.mapping_id, handle.pid)

    def stop_all(self) -> None:
        self.stop(list(self._owned.values()))
