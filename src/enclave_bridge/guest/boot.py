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
"""Guest boot sequence.

Order matters and is enforced here, not by locks:

  1. loopback up            (forwarders connect to 127.0.0.1)
  2. redirect rules         (before the application makes any connection)
  3. secret bundle          (before anything that reads the secrets starts)
  4. guest forwarders       (reap leftovers, then egress listeners + the inbound API relay)
  5. CONFIG_PATH, then exec the application

Redirect and secret failures abort the boot. Degraded forwarders are
logged and the application still starts, unless ``strict`` is set.
"""

from __future__ import annotations

import logging
import os
from collections.abc import Callable, MutableMapping, Sequence
from dataclasses import dataclass, field

from ..commands import Runner
from ..config import BridgeConfig
from ..endpoints import Endpoint
from ..errors import ConfigError, ForwarderError
from ..host.exposure import make_reaper
from ..host.reaper import Reaper
from ..host.supervisor import Supervisor, SupervisorReport
from ..mappings import Side, forwarder_specs
from .redirect import Redirector, configure_loopback, rules_for
from .secrets import materialize, receive_once

logger = logging.getLogger("enclave_bridge.guest.boot")


@dataclass
class BootPlan:
    """Hooks for each boot step. Tests replace the ones that need root."""

    runner: Runner | None = None
    loopback: bool = True
    hosts_path: str = "/etc/hosts"
    secret_endpoint: Endpoint | None = None  # defaults to vsock:any:<secret_port>
    receive: Callable[..., dict[str, str]] = receive_once
    execvpe: Callable[[str, Sequence[str], MutableMapping[str, str]], None] = os.execvpe
    environ: MutableMapping[str, str] = field(default_factory=lambda: os.environ)


def run_boot(
    config: BridgeConfig,
    app_argv: Sequence[str],
    plan: BootPlan | None = None,
    supervisor: Supervisor | None = None,
    reaper: Reaper | None = None,
) -> SupervisorReport:
    """Run the boot sequence and exec ``app_argv``.

    Only returns if ``plan.execvpe`` returns (it does not for ``os.execvpe``).
    """
    if not app_argv:
        raise ConfigError("No application command given")
    plan = plan or BootPlan()
    env = plan.environ

    if plan.loopback:
        configure_loopback(plan.runner, hosts_path=plan.hosts_path)

    rules = rules_for(config.mappings)
    Redirector(plan.runner).install(rules)

    endpoint = plan.secret_endpoint or Endpoint.vsock("any", config.secret_port)
    bundle = plan.receive(endpoint, timeout=config.secret_timeout_s, max_bytes=config.secret_max_bytes)
    materialize(bundle, env)

    specs = forwarder_specs(config.mappings, Side.GUEST)
    reap_report = (reaper or make_reaper(config)).reap(specs)
    if reap_report.terminated:
        logger.info("Reaped %d guest forwarder(s) from an earlier boot", len(reap_report.terminated))

    supervisor = supervisor or Supervisor(config)
    handles = supervisor.start(specs)
    report = supervisor.verify(handles)
    if report.degraded:
        failed = ", ".join(report.failed_ids) or "none"
        if config.strict:
            raise ForwarderError(
                f"Only {report.live}/{report.expected} guest forwarders live (failed: {failed})"
            )
        logger.warning(
            "Continuing with %d/%d guest forwarders (failed: %s)",
            report.live,
            report.expected,
            failed,
        )

    env["CONFIG_PATH"] = config.app_config_path
    logger.info("Starting application: %s", " ".join(app_argv))
    plan.execvpe(app_argv[0], list(app_argv), env)
    return report
