from __future__ import annotations

import re
import subprocess
from abc import ABC, abstractmethod
from collections.abc import Callable
from typing import Any

import psutil

from .db import log_event
from .resources import MB, ResourceSet

EXECUTOR_ID_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.\-]{0,127}$")


def validate_executor_id(executor_id: str) -> None:
    # Executor ids become cgroup directory and container names.
    if not EXECUTOR_ID_RE.match(executor_id):
        raise ValueError(
            "Invalid executor id. Use letters/numbers and -._, starting with a letter or number (max 128 chars)."
        )


def limits_for(resources: ResourceSet) -> tuple[float | None, int | None]:
    """Return (cpus, mem_mb) to enforce for an executor, None where unlimited."""
    cpus = resources.cpus()
    mem = resources.mem()
    return cpus, (int(mem) if mem is not None else None)


class Isolator(ABC):
    """Enforces per-executor resource limits.

    Handles come from ``isolation.create`` and go back through
    ``isolation.destroy``; ``close`` kills whatever is still running.
    """

    kind = "base"

    def __init__(self) -> None:
        self.closed = False

    @abstractmethod
    def launch(self, executor_id: str, resources: ResourceSet, command: list[str]) -> str:
        """Start ``command`` limited to ``resources``; returns a backend-specific handle id."""

    @abstractmethod
    def update(self, executor_id: str, resources: ResourceSet) -> None:
        ...

    @abstractmethod
    def kill(self, executor_id: str) -> None:
        ...

    @abstractmethod
    def usage(self, executor_id: str) -> dict[str, Any]:
        ...

    @abstractmethod
    def executors(self) -> list[str]:
        ...

    def close(self) -> None:
        self._check_open()
        for executor_id in self.executors():
            self.kill(executor_id)
        self.closed = True

    def _check_open(self) -> None:
        if self.closed:
            raise RuntimeError(f"The {self.kind} isolator has already been destroyed.")


class NullIsolator(Isolator):
    """Tracks executors without launching or limiting anything."""

    kind = "null"

    def __init__(self) -> None:
        super().__init__()
        self._resources: dict[str, ResourceSet] = {}

    def launch(self, executor_id: str, resources: ResourceSet, command: list[str]) -> str:
        self._check_open()
        validate_executor_id(executor_id)
        if executor_id in self._resources:
            raise ValueError(f"Executor '{executor_id}' is already running.")
        self._resources[executor_id] = resources
        return executor_id

    def update(self, executor_id: str, resources: ResourceSet) -> None:
        self._check_open()
        if executor_id not in self._resources:
            raise KeyError(executor_id)
        self._resources[executor_id] = resources

    def kill(self, executor_id: str) -> None:
        self._check_open()
        del self._resources[executor_id]

    def usage(self, executor_id: str) -> dict[str, Any]:
        if executor_id not in self._resources:
            raise KeyError(executor_id)
        return {}

    def executors(self) -> list[str]:
        return list(self._resources)


def make_preexec_fn(memory_limit_mb: int | None = None) -> Callable[[], None] | None:
    """Return a preexec_fn that caps the child's address space.

    Returns None if no limit is configured.
    """
    if memory_limit_mb is None:
        return None

    def _apply_limits() -> None:
        import resource

        limit_bytes = memory_limit_mb * MB
        resource.setrlimit(resource.RLIMIT_AS, (limit_bytes, limit_bytes))

    return _apply_limits


def terminate(proc: subprocess.Popen, timeout_s: float = 5.0) -> None:
    if proc.poll() is not None:
        return
    proc.terminate()
    try:
        proc.wait(timeout=timeout_s)
    except subprocess.TimeoutExpired:
        proc.kill()
        proc.wait()


class ProcessIsolator(Isolator):
    """Runs each executor as a child process with an address-space rlimit.

    CPU shares are not enforced by this backend.
    """

    kind = "process"

    def __init__(self) -> None:
        super().__init__()
        self._procs: dict[str, subprocess.Popen] = {}

    def launch(self, executor_id: str, resources: ResourceSet, command: list[str]) -> str:
        self._check_open()
        validate_executor_id(executor_id)
        if executor_id in self._procs:
            raise ValueError(f"Executor '{executor_id}' is already running.")

        _, mem_mb = limits_for(resources)
        proc = subprocess.Popen(command, preexec_fn=make_preexec_fn(mem_mb), start_new_session=True)
        self._procs[executor_id] = proc
        log_event("INFO", f"Launched executor {executor_id} (pid {proc.pid}) with {resources}", backend=self.kind)
        return str(proc.pid)

    def update(self, executor_id: str, resources: ResourceSet) -> None:
        self._check_open()
        proc = self._procs[executor_id]
        _, mem_mb = limits_for(resources)
        if mem_mb is None or proc.poll() is not None:
            return
        limit_bytes = mem_mb * MB
        # prlimit on a running child; only Linux exposes it.
        if hasattr(psutil.Process, "rlimit"):
            psutil.Process(proc.pid).rlimit(psutil.RLIMIT_AS, (limit_bytes, limit_bytes))

    def kill(self, executor_id: str) -> None:
        self._check_open()
        proc = self._procs.pop(executor_id)
        terminate(proc)
        log_event("INFO", f"Killed executor {executor_id} (exit {proc.returncode})", backend=self.kind)

    def usage(self, executor_id: str) -> dict[str, Any]:
        proc = self._procs[executor_id]
        try:
            p = psutil.Process(proc.pid)
            with p.oneshot():
                mem = p.memory_info()
                cpu = p.cpu_times()
            return {
                "mem_rss_bytes": mem.rss,
                "cpus_user_time_secs": cpu.user,
                "cpus_system_time_secs": cpu.system,
            }
        except psutil.NoSuchProcess:
            return {"exited": True, "returncode": proc.poll()}

    def executors(self) -> list[str]:
        return list(self._procs)
