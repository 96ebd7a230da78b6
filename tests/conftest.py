import os
import stat
import sys
from pathlib import Path

os.environ.setdefault("QT_QPA_PLATFORM", "offscreen")

SRC_DIR = Path(__file__).resolve().parent.parent / "src"
if str(SRC_DIR) not in sys.path:
    sys.path.insert(0, str(SRC_DIR))

import pytest

from runner.supervisor import ProcessSupervisor


@pytest.fixture
def script_dir(tmp_path):
    d = tmp_path / "bin"
    d.mkdir()
    return d


@pytest.fixture
def make_script(script_dir):
    """Write a fake backend script into the search directory."""
    def _make(name: str, body: str, executable: bool = False) -> Path:
        path = script_dir / name
        path.write_text("#!/bin/bash\n" + body + "\n", encoding="utf-8")
        if executable:
            path.chmod(path.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
        return path
    return _make


@pytest.fixture
def recorded_args(script_dir):
    """Argument lines a fake script appended to calls.log, one per call."""
    path = script_dir / "calls.log"

    def _read() -> list[str]:
        if not path.exists():
            return []
        return path.read_text(encoding="utf-8").splitlines()
    return _read


@pytest.fixture
def supervisor(qapp, script_dir):
    sup = ProcessSupervisor([str(script_dir)], grace_ms=500)
    yield sup
    sup.shutdown(500)
