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
Enclave Bridge -- logging setup.

Console output for humans running the CLI, plus an optional rotating
file that an operator can tail after the CLI has exited:

    ~/.enclave-bridge/logs/bridge.log      (current)
    ~/.enclave-bridge/logs/bridge.log.1    (previous rotation)

File format: TIMESTAMP | LEVEL | COMPONENT | MESSAGE

    2026-02-09T17:30:45.123Z | INFO  | supervisor   | Forwarder api started | pid=4242

Secret values must never reach a log record. Log key names or counts.
"""

import logging
import logging.handlers
import sys
from datetime import datetime, timezone
from pathlib import Path

MAX_LOG_FILE_BYTES = 10 * 1024 * 1024  # 10 MB per file
LOG_BACKUP_COUNT = 5
CONSOLE_FORMAT = "%(asctime)s [%(name)s] %(levelname)s: %(message)s"
CONSOLE_DATEFMT = "%Y-%m-%d %H:%M:%S"


class BridgeLogFormatter(logging.Formatter):
    """Pipe-delimited formatter for the rotating bridge log.

    The component is the last segment of the logger name. Structured
    ``fields`` passed through ``extra={"fields": {...}}`` are appended as
    ``key=value`` pairs.
    """

    LEVEL_WIDTH = 5
    COMPONENT_WIDTH = 12

    def formatTime(self, record: logging.LogRecord, datefmt: str | None = None) -> str:
        created = datetime.fromtimestamp(record.created, timezone.utc)
        return created.strftime("%Y-%m-%dT%H:%M:%S.") + f"{int(record.msecs):03d}Z"

    def format(self, record: logging.LogRecord) -> str:
        ts = self.formatTime(record)
        component = record.name.rsplit(".", 1)[-1]
        message = record.getMessage()

        fields = getattr(record, "fields", None) or {}
        field_str = ""
        if fields:
            parts = []
            for k, v in fields.items():
                if isinstance(v, str):
                    parts.append(f'{k}="{v}"')
                elif isinstance(v, float):
                    parts.append(f"{k}={v:.3f}")
                else:
                    parts.append(f"{k}={v}")
            field_str = " | " + " ".join(parts)

        line = (
            f"{ts} | {record.levelname:<{self.LEVEL_WIDTH}} | "
            f"{component:<{self.COMPONENT_WIDTH}} | {message}{field_str}"
        )
        if record.exc_info:
            line += "\n" + self.formatException(record.exc_info)
        return line


def setup_logging(
    level: str = "INFO",
    log_file: str | Path | None = None,
    stream=None,
) -> logging.Logger:
    """Configure the ``enclave_bridge`` logger tree.

    Safe to call more than once; previously installed bridge handlers
    are replaced rather than duplicated.
    """
    root = logging.getLogger("enclave_bridge")
    root.setLevel(getattr(logging, level.upper(), logging.INFO))

    for handler in list(root.handlers):
        if getattr(handler, "_bridge_handler", False):
            root.removeHandler(handler)
            handler.close()

    console = logging.StreamHandler(stream or sys.stderr)
    console.setFormatter(logging.Formatter(CONSOLE_FORMAT, datefmt=CONSOLE_DATEFMT))
    console._bridge_handler = True
    root.addHandler(console)

    if log_file:
        path = Path(log_file)
        path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.handlers.RotatingFileHandler(
            path,
            maxBytes=MAX_LOG_FILE_BYTES,
            backupCount=LOG_BACKUP_COUNT,
            encoding="utf-8",
        )
        file_handler.setFormatter(BridgeLogFormatter())
        file_handler._bridge_handler = True
        root.addHandler(file_handler)

    return root
