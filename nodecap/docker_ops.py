from __future__ import annotations

from dataclasses import dataclass
from typing import Any

import docker
from docker.errors import DockerException, NotFound

from .db import log_event
from .isolators import Isolator, limits_for, validate_executor_id
from .resources import ResourceSet
from .settings import settings

EXECUTOR_LABEL = "nodecap.executor"

# Networks every docker daemon ships with; never created by us.
_BUILTIN_NETWORKS = {"bridge", "host", "none"}


@dataclass(frozen=True)
class ContainerRef:
    id: str
    name: str


def _client() -> docker.DockerClient:
    return docker.from_env()


def docker_available() -> bool:
    try:
        c = _client()
        c.ping()
        return True
    except DockerException:
        return False


def ensure_network() -> None:
    if settings.docker_network in _BUILTIN_NETWORKS:
        return
    c = _client()
    try:
        c.networks.get(settings.docker_network)
    except NotFound:
        c.networks.create(settings.docker_network, driver="bridge")
        log_event("INFO", f"Created docker network '{settings.docker_network}'.", backend="docker")


def create_executor_container(
    executor_id: str,
    image: str,
    command: list[str],
    cpus: float | None = None,
    mem_mb: int | None = None,
) -> ContainerRef:
    """Create and start a container for one executor.

    Containers are labeled so they can be found again and cleaned up.
    """
    validate_executor_id(executor_id)
    ensure_network()

    limits: dict[str, Any] = {}
    if cpus is not None:
        limits["nano_cpus"] = int(cpus * 1e9)
    if mem_mb is not None:
        limits["mem_limit"] = f"{mem_mb}m"

    name = f"nodecap-{executor_id}"
    c = _client()
    container = c.containers.run(
        image,
        command=command,
        detach=True,
        name=name,
        network=settings.docker_network,
        labels={EXECUTOR_LABEL: executor_id},
        restart_policy={"Name": "no"},
        **limits,
    )
    return ContainerRef(id=container.id, name=name)


def remove_container(container_id: str, force: bool = True) -> None:
    c = _client()
    try:
        cont = c.containers.get(container_id)
        cont.remove(force=force)
    except NotFound:
        return


class DockerIsolator(Isolator):
    """Runs each executor in its own container with cpu and memory limits."""

    kind = "docker"

    def __init__(self, image: str | None = None) -> None:
        super().__init__()
        self.image = image or settings.docker_image
        self._containers: dict[str, ContainerRef] = {}

    def launch(self, executor_id: str, resources: ResourceSet, command: list[str]) -> str:
        self._check_open()
        if executor_id in self._containers:
            raise ValueError(f"Executor '{executor_id}' is already running.")
        cpus, mem_mb = limits_for(resources)
        ref = create_executor_container(executor_id, self.image, command, cpus=cpus, mem_mb=mem_mb)
        self._containers[executor_id] = ref
        log_event("INFO", f"Started container {ref.name} from image {self.image} with {resources}", backend=self.kind)
        return ref.id

    def update(self, executor_id: str, resources: ResourceSet) -> None:
        self._check_open()
        ref = self._containers[executor_id]
        cpus, mem_mb = limits_for(resources)
        limits: dict[str, Any] = {}
        if cpus is not None:
            # Container.update has no nano_cpus; express it as quota/period.
            limits["cpu_period"] = 100_000
            limits["cpu_quota"] = int(cpus * 100_000)
        if mem_mb is not None:
            limits["mem_limit"] = f"{mem_mb}m"
            limits["memswap_limit"] = -1
        if limits:
            _client().containers.get(ref.id).update(**limits)

    def kill(self, executor_id: str) -> None:
        self._check_open()
        ref = self._containers.pop(executor_id)
        remove_container(ref.id, force=True)
        log_event("INFO", f"Removed container {ref.name}", backend=self.kind)

    def usage(self, executor_id: str) -> dict[str, Any]:
        ref = self._containers[executor_id]
        try:
            stats = _client().containers.get(ref.id).stats(stream=False)
        except NotFound:
            return {"exited": True}
        out: dict[str, Any] = {}
        mem = stats.get("memory_stats", {})
        if "usage" in mem:
            out["mem_rss_bytes"] = mem["usage"]
        cpu = stats.get("cpu_stats", {}).get("cpu_usage", {})
        if "usage_in_kernelmode" in cpu:
            out["cpus_system_time_secs"] = cpu["usage_in_kernelmode"] / 1e9
        if "usage_in_usermode" in cpu:
            out["cpus_user_time_secs"] = cpu["usage_in_usermode"] / 1e9
        return out

    def executors(self) -> list[str]:
        return list(self._containers)
