"""Pytest configuration for enclave-bridge tests."""

import os
import sys
from pathlib import Path

# Ensure src/enclave_bridge is importable, here and in spawned forwarder processes
src_path = str(Path(__file__).parent.parent / "src")
if src_path not in sys.path:
    sys.path.insert(0, src_path)
os.environ["PYTHONPATH"] = os.pathsep.join(
    p for p in (src_path, os.environ.get("PYTHONPATH", "")) if p
)
