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
"""External command runner (nitro-cli, iptables, ip).

Callers take a ``runner`` argument so tests can substitute a fake that
returns canned ``CommandResult`` objects.
"""

from __future__ import annotations

import logging
import subprocess
from collections.abc import Callable, Sequence
from dataclasses import dataclass

logger = logging.getLogger("enclave_bridge.commands")

# Conventional shell exit codes for "not found" and "timed out"
EXIT_NOT_FOUND = 127
EXIT_TIMEOUT = 124


@dataclass
class CommandResult:
    """Outcome of one external command."""

    args: list[str]
    returncode: int
    stdout: str = ""
    stderr: str = ""

    @property
    def ok(self) -> bool:
        return self.returncode == 0

    def describe(self) -> str:
        detail = self.stderr.strip()[:500] if self.stderr else "no output"
        return f"{' '.join(self.args)} exited {self.returncode}: {detail}"


Runner = Callable[[Sequence[str]], CommandResult]


def run_command(args: Sequence[str], timeout: float = 30.0) -> CommandResult:
    """Run a command and capture its output. Never raises for tool failures."""
    cmd = list(args)
    logger.debug("Running: %s", " ".join(cmd))
    try:
        result = subprocess.run(cmd, capture_output=True, text=True, timeout=timeout)
    except FileNotFoundError:
        return CommandResult(cmd, EXIT_NOT_FOUND, "", f"{cmd[0]}: command not found")
    except subprocess.TimeoutExpired:
        return CommandResult(cmd, EXIT_TIMEOUT, "", f"timed out after {timeout}s")
    except OSError as exc:
        return CommandResult(cmd, EXIT_NOT_FOUND, "", str(exc))
    return CommandResult(cmd, result.returncode, result.stdout or "", result.stderr or "")
