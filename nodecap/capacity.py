from __future__ import annotations

import asyncio
from dataclasses import dataclass

from .db import log_event
from .probe import HostProbe, ProbeError, PsutilHostProbe
from .resources import Bytes, Ranges, ResourceSet, Scalar, parse
from .settings import Settings

# Leave 1 GB of memory free if we have more than 1 GB, otherwise use all of it.
MEM_MARGIN_THRESHOLD = Bytes.gigabytes(1)
MEM_RESERVED = Bytes.gigabytes(1)

# Leave 5 GB of disk free if we have more than 10 GB, otherwise use all of it.
DISK_MARGIN_THRESHOLD = Bytes.gigabytes(10)
DISK_RESERVED = Bytes.gigabytes(5)


@dataclass(frozen=True)
class NodeDefaults:
    """Capacity advertised for a dimension that is neither overridden nor probed."""

    cpus: float = 1.0
    mem: Bytes = Bytes.gigabytes(1)
    disk: Bytes = Bytes.gigabytes(10)
    ports: Ranges = Ranges(((31000, 32000),))


DEFAULTS = NodeDefaults()


def apply_memory_margin(mem: Bytes) -> Bytes:
    if mem > MEM_MARGIN_THRESHOLD:
        return mem - MEM_RESERVED
    return mem


def apply_disk_margin(disk: Bytes) -> Bytes:
    if disk > DISK_MARGIN_THRESHOLD:
        return disk - DISK_RESERVED
    return disk


class CapacityResolver:
    """Fills in the capacity a node advertises.

    Operator overrides always win. Every dimension the overrides leave out is
    probed from the host (ports are never probed), reduced by its margin, and
    falls back to the matching default when the probe fails.
    """

    def __init__(self, probe: HostProbe | None = None, work_dir: str = ".", defaults: NodeDefaults = DEFAULTS):
        self.probe = probe or PsutilHostProbe()
        self.work_dir = work_dir
        self.defaults = defaults

    async def resolve(self, overrides: ResourceSet | None, default_role: str) -> ResourceSet:
        resources = overrides if overrides is not None else ResourceSet()

        detectors = {
            "cpus": self._detect_cpus,
            "mem": self._detect_mem,
            "disk": self._detect_disk,
            "ports": self._detect_ports,
        }
        missing = [name for name in detectors if not resources.has(name)]

        # Each detector only reads host state and returns its own value, plus
        # a warning when it had to fall back to the default.
        results = await asyncio.gather(*(detectors[name]() for name in missing))

        events: list[tuple[str, str, str | None]] = []
        for name, (value, warning) in zip(missing, results):
            if warning is not None:
                events.append(("WARN", warning, name))
            resources = resources + ResourceSet.of(name, value, default_role)
        events.append(("INFO", f"Resolved node capacity: {resources}", None))

        # sqlite writes stay off the event loop, like the probes.
        await asyncio.to_thread(_journal, events)
        return resources

    async def _detect_cpus(self) -> tuple[Scalar, str | None]:
        try:
            cpus = await asyncio.to_thread(self.probe.cpu_count)
        except ProbeError as e:
            warning = f"Failed to auto-detect the number of cpus to use: '{e}'; defaulting to {self.defaults.cpus:g}"
            return Scalar(self.defaults.cpus), warning
        return Scalar(float(cpus)), None

    async def _detect_mem(self) -> tuple[Scalar, str | None]:
        try:
            mem = await asyncio.to_thread(self.probe.total_memory)
        except ProbeError as e:
            warning = f"Failed to auto-detect the size of main memory: '{e}'; defaulting to {self.defaults.mem}"
            return Scalar(self.defaults.mem.to_megabytes()), warning
        return Scalar(apply_memory_margin(mem).to_megabytes()), None

    async def _detect_disk(self) -> tuple[Scalar, str | None]:
        # The filesystem the work directory is mounted on.
        try:
            disk = await asyncio.to_thread(self.probe.filesystem_size, self.work_dir)
        except ProbeError as e:
            warning = f"Failed to auto-detect the disk space of '{self.work_dir}': '{e}'; defaulting to {self.defaults.disk}"
            return Scalar(self.defaults.disk.to_megabytes()), warning
        return Scalar(apply_disk_margin(disk).to_megabytes()), None

    async def _detect_ports(self) -> tuple[Ranges, str | None]:
        return self.defaults.ports, None


def _journal(events: list[tuple[str, str, str | None]]) -> None:
    for level, message, dimension in events:
        log_event(level, message, dimension=dimension)


async def get_resources(settings: Settings, probe: HostProbe | None = None) -> ResourceSet:
    """Resolve the capacity described by ``settings``.

    A malformed ``settings.resources`` or a blank ``settings.default_role``
    raises ConfigParseError before any probe runs.
    """
    overrides = parse(settings.resources or "", settings.default_role)
    resolver = CapacityResolver(probe=probe, work_dir=settings.work_dir)
    return await resolver.resolve(overrides, settings.default_role)
