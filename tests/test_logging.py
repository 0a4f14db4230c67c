# Enclave Bridge
# Copyright (C) 2025 Phoenix Link (Pty) Ltd. All Rights Reserved.
"""Tests for logging setup and the bridge log formatter."""

import io
import logging

import pytest

from enclave_bridge.logging import BridgeLogFormatter, setup_logging


@pytest.fixture(autouse=True)
def _reset_logging():
    yield
    root = logging.getLogger("enclave_bridge")
    for handler in list(root.handlers):
        if getattr(handler, "_bridge_handler", False):
            root.removeHandler(handler)
            handler.close()
    root.setLevel(logging.NOTSET)


def _record(msg, name="enclave_bridge.host.supervisor", **extra):
    record = logging.LogRecord(name, logging.INFO, __file__, 1, msg, (), None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


class TestFormatter:
    """Pipe-delimited file format."""

    def test_component_from_logger_name(self):
        line = BridgeLogFormatter().format(_record("Forwarder api started"))
        ts, level, component, message = [part.strip() for part in line.split(" | ")]
        assert ts.endswith("Z")
        assert level == "INFO"
        assert component == "supervisor"
        assert message == "Forwarder api started"

    def test_fields_appended(self):
        record = _record("closed", fields={"pid": 42, "mapping": "api", "secs": 0.5})
        line = BridgeLogFormatter().format(record)
        assert "| supervisor " in line
        assert line.endswith('closed | pid=42 mapping="api" secs=0.500')

    def test_timestamp_is_record_creation_time(self):
        record = _record("late")
        record.created = 1760000000.25
        record.msecs = 250.0
        line = BridgeLogFormatter().format(record)
        assert line.startswith("2025-10-09T08:53:20.250Z | ")

    def test_supervisor_fields_reach_file(self, tmp_path):
        log_file = tmp_path / "bridge.log"
        setup_logging("INFO", log_file, stream=io.StringIO())
        logging.getLogger("enclave_bridge.host.supervisor").info(
            "Started forwarder %s", "api", extra={"fields": {"pid": 4242}}
        )
        for handler in logging.getLogger("enclave_bridge").handlers:
            handler.flush()
        assert "Started forwarder api | pid=4242" in log_file.read_text(encoding="utf-8")


class TestSetupLogging:
    """Handler installation."""

    def test_repeat_calls_do_not_duplicate_handlers(self):
        setup_logging("INFO", stream=io.StringIO())
        root = setup_logging("DEBUG", stream=io.StringIO())
        bridge_handlers = [h for h in root.handlers if getattr(h, "_bridge_handler", False)]
        assert len(bridge_handlers) == 1
        assert root.level == logging.DEBUG

    def test_file_handler(self, tmp_path):
        log_file = tmp_path / "logs" / "bridge.log"
        stream = io.StringIO()
        setup_logging("INFO", log_file, stream=stream)
        logging.getLogger("enclave_bridge.host.reaper").info("Terminating %d stale listener(s)", 2)
        for handler in logging.getLogger("enclave_bridge").handlers:
            handler.flush()

        assert "Terminating 2 stale listener(s)" in stream.getvalue()
        content = log_file.read_text(encoding="utf-8")
        assert "| reaper " in content
        assert "Terminating 2 stale listener(s)" in content
