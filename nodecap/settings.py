from __future__ import annotations

import os
from dataclasses import dataclass


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


@dataclass(frozen=True)
class Settings:
    # Core
    db_path: str = os.getenv("NODECAP_DB_PATH", "nodecap.db")
    work_dir: str = os.getenv("NODECAP_WORK_DIR", "/tmp/nodecap")

    # Capacity advertised to the master
    # Same syntax as the --resources flag, e.g. "cpus:2;mem:4096;ports:[31000-32000]".
    resources: str | None = os.getenv("NODECAP_RESOURCES")
    default_role: str = os.getenv("NODECAP_DEFAULT_ROLE", "*")

    # Isolation
    isolation: str = os.getenv("NODECAP_ISOLATION", "process")
    cgroups_root: str = os.getenv("NODECAP_CGROUPS_ROOT", "/sys/fs/cgroup/nodecap")
    docker_image: str = os.getenv("NODECAP_DOCKER_IMAGE", "busybox:latest")
    docker_network: str = os.getenv("NODECAP_DOCKER_NETWORK", "bridge")

    # Registration (optional)
    master_url: str | None = os.getenv("NODECAP_MASTER_URL")
    register_timeout_s: int = _env_int("NODECAP_REGISTER_TIMEOUT_S", 10)


settings = Settings()
