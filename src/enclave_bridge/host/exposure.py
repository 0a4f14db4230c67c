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
"""Host-side exposure run: discover, reap, start, verify, persist.

Every step is re-runnable. Running ``expose`` after a crashed or
restarted enclave reaps whatever the previous run left behind and starts
a fresh set of forwarders against the newly discovered CID.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from dataclasses import dataclass

import psutil

from ..commands import Runner
from ..config import BridgeConfig
from ..mappings import Side, forwarder_specs, select_mappings
from .discovery import InstanceDescriptor, discover
from .reaper import Reaper, ReapReport, TerminateReport, forwarder_signature
from .registry import HandleRegistry, ProcessRef
from .supervisor import HandleStatus, Supervisor, SupervisorReport

logger = logging.getLogger("enclave_bridge.host.exposure")


@dataclass
class ExposureResult:
    """Everything one exposure run found and did."""

    instance: InstanceDescriptor
    reap: ReapReport
    report: SupervisorReport
    recorded: list[ProcessRef]


@dataclass
class ProcessState:
    """A registry entry and whether its process is still the forwarder we started."""

    ref: ProcessRef
    alive: bool


def make_reaper(config: BridgeConfig) -> Reaper:
    return Reaper(
        terminate_timeout_s=config.terminate_timeout_s,
        release_attempts=config.reap_release_attempts,
        release_backoff_s=config.reap_release_backoff_s,
    )


def run_exposure(
    config: BridgeConfig,
    mapping_ids: Iterable[str] | None = None,
    *,
    runner: Runner | None = None,
    environ: Mapping[str, str] | None = None,
    supervisor: Supervisor | None = None,
    reaper: Reaper | None = None,
    registry: HandleRegistry | None = None,
) -> ExposureResult:
    """Expose the selected mappings on the host.

    Raises:
        DiscoveryError: no enclave, or more than one.
        ConfigError: unknown mapping id.
    """
    instance = discover(runner=runner, environ=environ)
    mappings = select_mappings(config.mappings, mapping_ids)
    specs = forwarder_specs(mappings, Side.HOST, instance.address)

    reaper = reaper or make_reaper(config)
    reap_report = reaper.reap(specs)

    supervisor = supervisor or Supervisor(config)
    handles = supervisor.start(specs)
    report = supervisor.verify(handles)

    registry = registry or HandleRegistry(config.registry_path)
    selected = {m.id for m in mappings}
    carried = [
        state.ref
        for state in process_states(r for r in registry.load() if r.mapping_id not in selected)
        if state.alive
    ]
    if carried:
        logger.info("Keeping %d forwarder(s) from mappings outside this run", len(carried))
    recorded = registry.persist(
        (h for h in handles if h.status is HandleStatus.LIVE),
        carry=carried,
    )

    return ExposureResult(instance=instance, reap=reap_report, report=report, recorded=recorded)


def teardown(
    config: BridgeConfig,
    *,
    reaper: Reaper | None = None,
    registry: HandleRegistry | None = None,
) -> TerminateReport:
    """Stop every process recorded by the last exposure run."""
    registry = registry or HandleRegistry(config.registry_path)
    refs = registry.load()
    if not refs:
        logger.info("No recorded forwarders in %s", registry.path)
        registry.clear()
        return TerminateReport()

    report = (reaper or make_reaper(config)).terminate_pids(refs)
    if report.denied:
        # Still running and still ours: keep them for a privileged teardown
        kept = [ref for ref in refs if ref.pid in report.denied]
        registry.write(kept)
        logger.warning(
            "Kept %d forwarder(s) in %s: permission denied", len(kept), registry.path
        )
    else:
        registry.clear()
    logger.info(
        "Teardown: %d stopped, %d already gone, %d skipped, %d denied",
        len(report.stopped),
        len(report.already_gone),
        len(report.skipped),
        len(report.denied),
    )
    return report


def process_states(refs: Iterable[ProcessRef]) -> list[ProcessState]:
    """Check which recorded forwarders are still running."""
    states = []
    for ref in refs:
        try:
            cmdline = psutil.Process(ref.pid).cmdline()
        except psutil.NoSuchProcess:
            states.append(ProcessState(ref, False))
            continue
        except psutil.AccessDenied:
            states.append(ProcessState(ref, True))
            continue
        alive = not ref.signature or forwarder_signature(cmdline) == ref.signature
        states.append(ProcessState(ref, alive))
    return states
