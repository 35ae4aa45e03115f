from __future__ import annotations

from typing import Protocol

import psutil

from .resources import Bytes


class ProbeError(RuntimeError):
    """A host query failed."""


class HostProbe(Protocol):
    """Host queries used to auto-detect capacity.

    Each call may block on a system query and may raise ProbeError.
    """

    def cpu_count(self) -> int: ...

    def total_memory(self) -> Bytes: ...

    def filesystem_size(self, path: str) -> Bytes: ...


class PsutilHostProbe:
    """HostProbe backed by psutil."""

    def cpu_count(self) -> int:
        try:
            n = psutil.cpu_count(logical=True)
        except (OSError, psutil.Error) as e:
            raise ProbeError(f"{type(e).__name__}: {e}") from e
        if not n:
            raise ProbeError("psutil could not determine the number of logical cpus")
        return int(n)

    def total_memory(self) -> Bytes:
        try:
            return Bytes(int(psutil.virtual_memory().total))
        except (OSError, psutil.Error) as e:
            raise ProbeError(f"{type(e).__name__}: {e}") from e

    def filesystem_size(self, path: str) -> Bytes:
        # Size of the filesystem the path lives on, not the directory's contents.
        try:
            return Bytes(int(psutil.disk_usage(path).total))
        except (OSError, psutil.Error) as e:
            raise ProbeError(f"{type(e).__name__}: {e}") from e
