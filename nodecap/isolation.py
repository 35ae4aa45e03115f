from __future__ import annotations

from collections.abc import Callable

from .cgroups import CgroupsIsolator, cgroups_supported
from .db import log_event
from .docker_ops import DockerIsolator, docker_available
from .isolators import Isolator, NullIsolator, ProcessIsolator


class _Backend:
    def __init__(self, factory: Callable[[], Isolator], available: Callable[[], bool] | None) -> None:
        self.factory = factory
        self.available = available


_BACKENDS: dict[str, _Backend] = {}


def register(kind: str, factory: Callable[[], Isolator], available: Callable[[], bool] | None = None) -> None:
    """Make ``kind`` creatable by name.

    ``available`` is consulted on every ``create``; a kind whose check fails
    is treated as absent on this host.
    """
    _BACKENDS[kind] = _Backend(factory, available)


def registered_kinds() -> list[str]:
    return sorted(_BACKENDS)


def available_kinds() -> list[str]:
    return [k for k in registered_kinds() if _BACKENDS[k].available is None or _BACKENDS[k].available()]


def create(kind: str) -> Isolator | None:
    """Return a new isolator of ``kind``, or None when none is available here.

    Whether a missing backend is fatal is up to the caller.
    """
    backend = _BACKENDS.get(kind)
    if backend is None:
        log_event(
            "WARN",
            f"Unknown isolation backend '{kind}' (registered: {', '.join(registered_kinds())})",
            backend=kind,
        )
        return None
    if backend.available is not None and not backend.available():
        log_event("WARN", f"Isolation backend '{kind}' is not supported on this host", backend=kind)
        return None

    isolator = backend.factory()
    log_event("INFO", f"Created {kind} isolator", backend=kind)
    return isolator


def destroy(isolator: Isolator | None) -> None:
    """Release an isolator returned by ``create``. None is a no-op.

    Destroying the same isolator twice raises RuntimeError.
    """
    if isolator is None:
        return
    isolator.close()
    log_event("INFO", f"Destroyed {isolator.kind} isolator", backend=isolator.kind)


register("null", NullIsolator)
register("process", ProcessIsolator)
register("cgroups", CgroupsIsolator, available=cgroups_supported)
register("docker", DockerIsolator, available=docker_available)
