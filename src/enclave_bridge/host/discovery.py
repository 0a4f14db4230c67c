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
"""Enclave discovery.

Finds the single running enclave and its vsock CID. The result is never
cached: every host-side operation calls ``discover()`` again, because a
restarted enclave usually comes back with a different CID.

Priority:
  1. ENCLAVE_CID environment variable (bridge running in a container
     beside the parent, where nitro-cli is not available)
  2. ``nitro-cli describe-enclaves``

Zero running enclaves is ``NoInstance``. More than one is
``AmbiguousInstance``: picking the first would risk delivering secrets
to, or exposing, the wrong enclave.
"""

from __future__ import annotations

import json
import logging
import os
from collections.abc import Mapping
from dataclasses import dataclass

from ..commands import Runner, run_command
from ..errors import AmbiguousInstance, NoInstance

logger = logging.getLogger("enclave_bridge.host.discovery")

DESCRIBE_COMMAND = ["nitro-cli", "describe-enclaves"]
RUNNING_STATE = "RUNNING"


@dataclass(frozen=True)
class InstanceDescriptor:
    """The running enclave, as seen from the parent instance."""

    address: str  # vsock CID
    enclave_id: str = ""
    state: str = RUNNING_STATE
    name: str = ""
    source: str = "nitro-cli"

    @property
    def cid(self) -> int:
        return int(self.address)


def discover(
    runner: Runner | None = None,
    environ: Mapping[str, str] | None = None,
) -> InstanceDescriptor:
    """Return the single running enclave.

    Raises:
        NoInstance: nothing running, no usable CID, or nitro-cli failed.
        AmbiguousInstance: more than one enclave is running.
    """
    env = os.environ if environ is None else environ
    override = env.get("ENCLAVE_CID", "").strip()
    if override:
        if not override.isdigit():
            raise NoInstance(f"Invalid ENCLAVE_CID {override!r} (expected a number)")
        logger.info("Using ENCLAVE_CID from environment: %s", override)
        return InstanceDescriptor(address=override, source="env")

    result = (runner or run_command)(DESCRIBE_COMMAND)
    if not result.ok:
        raise NoInstance(f"Cannot list enclaves: {result.describe()}")

    instance = parse_enclaves(result.stdout)
    logger.info("Found enclave %s with CID %s", instance.enclave_id or "?", instance.address)
    return instance


def parse_enclaves(output: str) -> InstanceDescriptor:
    """Pick the single running enclave out of ``describe-enclaves`` JSON."""
    try:
        data = json.loads(output) if output and output.strip() else []
    except json.JSONDecodeError as exc:
        raise NoInstance(f"Unparsable describe-enclaves output: {exc}") from exc

    if isinstance(data, dict):
        data = [data]
    if not isinstance(data, list):
        raise NoInstance("Unexpected describe-enclaves output (not a list)")

    running = [
        entry
        for entry in data
        if isinstance(entry, dict)
        and str(entry.get("State", RUNNING_STATE)).upper() == RUNNING_STATE
    ]

    if not running:
        raise NoInstance("No enclave running. Start an enclave first.")
    if len(running) > 1:
        raise AmbiguousInstance(
            [str(e.get("EnclaveID") or e.get("EnclaveCID") or "?") for e in running]
        )

    entry = running[0]
    cid = entry.get("EnclaveCID")
    if cid is None or str(cid).strip() in ("", "null"):
        raise NoInstance(f"Enclave {entry.get('EnclaveID', '?')} has no CID")

    return InstanceDescriptor(
        address=str(cid).strip(),
        enclave_id=str(entry.get("EnclaveID", "")),
        state=str(entry.get("State", RUNNING_STATE)),
        name=str(entry.get("EnclaveName", "")),
    )
