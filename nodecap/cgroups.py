from __future__ import annotations

import os
import signal
import subprocess
import sys
from collections.abc import Callable
from pathlib import Path
from typing import Any

from .db import log_event
from .isolators import Isolator, limits_for, terminate, validate_executor_id
from .resources import MB, ResourceSet
from .settings import settings

# Kernel control groups only exist on Linux; decided once at import.
CGROUPS_SUPPORTED = sys.platform.startswith("linux")

CPU_PERIOD_US = 100_000

# Controllers a child group needs for cpu.max and memory.max to exist.
CONTROLLERS = ("cpu", "memory")


def cgroups_supported() -> bool:
    return CGROUPS_SUPPORTED


def cpu_max(cpus: float | None) -> str:
    """cgroup v2 ``cpu.max`` value: "<quota> <period>" or "max <period>"."""
    if cpus is None:
        return f"max {CPU_PERIOD_US}"
    return f"{max(1000, int(cpus * CPU_PERIOD_US))} {CPU_PERIOD_US}"


def memory_max(mem_mb: int | None) -> str:
    return "max" if mem_mb is None else str(mem_mb * MB)


def _join_cgroup(path: Path) -> Callable[[], None]:
    procs = str(path / "cgroup.procs")

    def _join() -> None:
        # Runs in the child before exec, so the command never runs outside the group.
        with open(procs, "w") as f:
            f.write(str(os.getpid()))

    return _join


class CgroupsIsolator(Isolator):
    """One cgroup v2 directory per executor below ``root``."""

    kind = "cgroups"

    def __init__(self, root: str | None = None) -> None:
        super().__init__()
        self.root = Path(root or settings.cgroups_root)
        self._procs: dict[str, subprocess.Popen] = {}
        self._controllers_enabled = False

    def _path(self, executor_id: str) -> Path:
        return self.root / executor_id

    def _enable_controllers(self) -> None:
        """Delegate the cpu and memory controllers to the executor groups under root."""
        if self._controllers_enabled:
            return
        self.root.mkdir(parents=True, exist_ok=True)
        control = self.root / "cgroup.subtree_control"
        # Only a mounted cgroup2 directory has the file; a plain directory has nothing to enable.
        if control.exists():
            control.write_text(" ".join(f"+{c}" for c in CONTROLLERS))
            log_event("INFO", f"Enabled {', '.join(CONTROLLERS)} controllers on {self.root}", backend=self.kind)
        self._controllers_enabled = True

    def _write_limits(self, path: Path, resources: ResourceSet) -> None:
        cpus, mem_mb = limits_for(resources)
        (path / "cpu.max").write_text(cpu_max(cpus))
        (path / "memory.max").write_text(memory_max(mem_mb))

    def launch(self, executor_id: str, resources: ResourceSet, command: list[str]) -> str:
        self._check_open()
        validate_executor_id(executor_id)
        if executor_id in self._procs:
            raise ValueError(f"Executor '{executor_id}' is already running.")

        self._enable_controllers()
        path = self._path(executor_id)
        path.mkdir(exist_ok=True)
        self._write_limits(path, resources)

        proc = subprocess.Popen(command, preexec_fn=_join_cgroup(path), start_new_session=True)
        self._procs[executor_id] = proc
        log_event("INFO", f"Launched executor {executor_id} (pid {proc.pid}) in cgroup {path}", backend=self.kind)
        return str(path)

    def update(self, executor_id: str, resources: ResourceSet) -> None:
        self._check_open()
        if executor_id not in self._procs:
            raise KeyError(executor_id)
        self._write_limits(self._path(executor_id), resources)

    def _pids(self, path: Path) -> list[int]:
        try:
            text = (path / "cgroup.procs").read_text()
        except FileNotFoundError:
            return []
        return [int(line) for line in text.split() if line.strip()]

    def kill(self, executor_id: str) -> None:
        self._check_open()
        proc = self._procs.pop(executor_id)
        path = self._path(executor_id)

        terminate(proc)
        # Anything the executor forked is still in the group.
        for pid in self._pids(path):
            if pid == proc.pid:
                continue
            try:
                os.kill(pid, signal.SIGKILL)
            except ProcessLookupError:
                continue

        try:
            path.rmdir()
        except OSError as e:
            log_event("WARN", f"Could not remove cgroup {path}: {e}", backend=self.kind)
        log_event("INFO", f"Killed executor {executor_id} (exit {proc.returncode})", backend=self.kind)

    def usage(self, executor_id: str) -> dict[str, Any]:
        if executor_id not in self._procs:
            raise KeyError(executor_id)
        path = self._path(executor_id)
        out: dict[str, Any] = {}

        current = path / "memory.current"
        if current.exists():
            out["mem_rss_bytes"] = int(current.read_text().strip())

        stat = path / "cpu.stat"
        if stat.exists():
            for line in stat.read_text().splitlines():
                key, _, value = line.partition(" ")
                if key == "user_usec":
                    out["cpus_user_time_secs"] = int(value) / 1e6
                elif key == "system_usec":
                    out["cpus_system_time_secs"] = int(value) / 1e6
        return out

    def executors(self) -> list[str]:
        return list(self._procs)
