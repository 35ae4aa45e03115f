import os as _os
import sys

import pytest

# Ensure project root is importable (so `import main` / `import cli` work without installing)
_project_root = _os.path.dirname(_os.path.dirname(__file__))
if _project_root not in sys.path:
    sys.path.insert(0, _project_root)

from nodecap import db  # noqa: E402
from nodecap.probe import ProbeError  # noqa: E402
from nodecap.resources import Bytes  # noqa: E402
from nodecap.settings import Settings  # noqa: E402


@pytest.fixture(autouse=True)
def journal(tmp_path, monkeypatch):
    """Point the event journal at an isolated sqlite db for every test."""
    cfg = Settings(db_path=str(tmp_path / "events.db"), work_dir=str(tmp_path / "work"))
    monkeypatch.setattr(db, "settings", cfg)
    db.init_db()
    return cfg


class StubProbe:
    """Deterministic HostProbe. A value of None makes that query fail."""

    def __init__(self, cpus=4, mem=Bytes.gigabytes(8), disk=Bytes.gigabytes(20)):
        self.cpus = cpus
        self.mem = mem
        self.disk = disk
        self.calls = []

    def cpu_count(self):
        self.calls.append("cpus")
        if self.cpus is None:
            raise ProbeError("sysconf failed")
        return self.cpus

    def total_memory(self):
        self.calls.append("mem")
        if self.mem is None:
            raise ProbeError("sysinfo failed")
        return self.mem

    def filesystem_size(self, path):
        self.calls.append(("disk", path))
        if self.disk is None:
            raise ProbeError(f"statvfs {path} failed")
        return self.disk


@pytest.fixture
def probe_factory():
    return StubProbe
