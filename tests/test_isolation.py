import sys

import pytest
from docker.errors import DockerException, NotFound

from nodecap import cgroups, db, docker_ops, isolation
from nodecap.cgroups import CGROUPS_SUPPORTED, CgroupsIsolator, cpu_max, memory_max
from nodecap.isolators import NullIsolator, ProcessIsolator
from nodecap.resources import parse

SLEEPER = [sys.executable, "-c", "import time; time.sleep(30)"]

posix_only = pytest.mark.skipif(sys.platform == "win32", reason="needs preexec_fn")


def _events_for(kind):
    return [e for e in db.latest_events() if e["backend"] == kind]


def test_process_backend_is_always_available():
    handle = isolation.create("process")
    assert isinstance(handle, ProcessIsolator)
    isolation.destroy(handle)


def test_destroy_twice_is_a_contract_violation():
    handle = isolation.create("process")
    isolation.destroy(handle)
    with pytest.raises(RuntimeError):
        isolation.destroy(handle)


def test_destroy_empty_handle_is_noop():
    isolation.destroy(None)
    handle = isolation.create("does-not-exist")
    isolation.destroy(handle)


def test_unknown_backend_is_absent_and_logged():
    assert isolation.create("unknown-xyz") is None

    events = _events_for("unknown-xyz")
    assert len(events) == 1
    assert events[0]["level"] == "WARN"
    assert "Unknown isolation backend 'unknown-xyz'" in events[0]["message"]


def test_cgroups_follows_platform_flag():
    handle = isolation.create("cgroups")
    assert (handle is not None) == CGROUPS_SUPPORTED
    isolation.destroy(handle)


def test_cgroups_absent_without_kernel_support(monkeypatch):
    monkeypatch.setattr(cgroups, "CGROUPS_SUPPORTED", False)

    assert isolation.create("cgroups") is None
    assert "cgroups" not in isolation.available_kinds()
    assert "not supported" in _events_for("cgroups")[0]["message"]


def test_new_backends_register_in_one_place(monkeypatch):
    monkeypatch.setattr(isolation, "_BACKENDS", dict(isolation._BACKENDS))

    class RecordingIsolator(NullIsolator):
        kind = "recording"

    isolation.register("recording", RecordingIsolator)
    handle = isolation.create("recording")

    assert isinstance(handle, RecordingIsolator)
    assert "recording" in isolation.registered_kinds()
    isolation.destroy(handle)


def test_null_isolator_tracks_executors():
    iso = NullIsolator()
    rs = parse("cpus:1;mem:128", "*")

    assert iso.launch("exec-1", rs, ["true"]) == "exec-1"
    with pytest.raises(ValueError):
        iso.launch("exec-1", rs, ["true"])
    iso.update("exec-1", parse("cpus:2", "*"))
    assert iso.usage("exec-1") == {}
    with pytest.raises(KeyError):
        iso.update("exec-2", rs)

    iso.close()
    assert iso.executors() == []
    with pytest.raises(RuntimeError):
        iso.launch("exec-3", rs, ["true"])


@pytest.mark.parametrize("executor_id", ["", "../escape", "a b", "-leading"])
def test_executor_ids_are_validated(executor_id):
    with pytest.raises(ValueError):
        NullIsolator().launch(executor_id, parse("cpus:1", "*"), ["true"])


@posix_only
def test_process_isolator_launch_usage_kill():
    iso = ProcessIsolator()
    pid = iso.launch("sleeper", parse("cpus:1;mem:512", "*"), SLEEPER)

    assert pid.isdigit()
    assert iso.executors() == ["sleeper"]
    assert "mem_rss_bytes" in iso.usage("sleeper")

    iso.kill("sleeper")
    assert iso.executors() == []
    with pytest.raises(KeyError):
        iso.kill("sleeper")


@posix_only
def test_destroy_kills_remaining_executors():
    iso = isolation.create("process")
    iso.launch("a", parse("cpus:1", "*"), SLEEPER)
    iso.launch("b", parse("cpus:1", "*"), SLEEPER)

    isolation.destroy(iso)
    assert iso.executors() == []
    assert iso.closed


def test_cgroup_limit_values():
    assert cpu_max(None) == "max 100000"
    assert cpu_max(1.5) == "150000 100000"
    assert cpu_max(0.001) == "1000 100000"
    assert memory_max(None) == "max"
    assert memory_max(512) == str(512 * 1024 * 1024)


@pytest.mark.skipif(not sys.platform.startswith("linux"), reason="cgroups are Linux only")
def test_cgroups_isolator_writes_limits(tmp_path):
    iso = CgroupsIsolator(root=str(tmp_path / "cg"))
    path = iso.launch("job-1", parse("cpus:0.5;mem:256", "*"), SLEEPER)
    group = tmp_path / "cg" / "job-1"

    assert path == str(group)
    assert (group / "cpu.max").read_text() == "50000 100000"
    assert (group / "memory.max").read_text() == str(256 * 1024 * 1024)
    assert (group / "cgroup.procs").read_text().strip().isdigit()

    iso.update("job-1", parse("cpus:2;mem:1024", "*"))
    assert (group / "cpu.max").read_text() == "200000 100000"
    assert (group / "memory.max").read_text() == str(1024 * 1024 * 1024)

    (group / "memory.current").write_text("4096\n")
    (group / "cpu.stat").write_text("usage_usec 3000000\nuser_usec 2000000\nsystem_usec 1000000\n")
    assert iso.usage("job-1") == {
        "mem_rss_bytes": 4096,
        "cpus_user_time_secs": 2.0,
        "cpus_system_time_secs": 1.0,
    }

    iso.kill("job-1")
    assert iso.executors() == []


@pytest.mark.skipif(not sys.platform.startswith("linux"), reason="cgroups are Linux only")
def test_cgroups_isolator_delegates_controllers_once(tmp_path):
    root = tmp_path / "cg"
    root.mkdir()
    control = root / "cgroup.subtree_control"
    control.write_text("")

    iso = CgroupsIsolator(root=str(root))
    iso.launch("job-1", parse("cpus:1;mem:128", "*"), SLEEPER)
    assert control.read_text() == "+cpu +memory"

    control.write_text("")
    iso.launch("job-2", parse("cpus:1;mem:128", "*"), SLEEPER)
    assert control.read_text() == ""

    iso.close()
    assert iso.executors() == []


class _FakeContainer:
    def __init__(self, id, name):
        self.id = id
        self.name = name
        self.removed = False
        self.updates = []

    def remove(self, force=False):
        self.removed = True

    def update(self, **kwargs):
        self.updates.append(kwargs)

    def stats(self, stream=True):
        return {
            "memory_stats": {"usage": 2048},
            "cpu_stats": {"cpu_usage": {"usage_in_usermode": 3_000_000_000, "usage_in_kernelmode": 1_000_000_000}},
        }


class _FakeContainers:
    def __init__(self):
        self.by_id = {}
        self.run_kwargs = []

    def run(self, image, **kwargs):
        self.run_kwargs.append({"image": image, **kwargs})
        c = _FakeContainer(f"c{len(self.by_id) + 1}", kwargs["name"])
        self.by_id[c.id] = c
        return c

    def get(self, container_id):
        c = self.by_id.get(container_id)
        if c is None or c.removed:
            raise NotFound(f"No such container: {container_id}")
        return c


class _FakeDocker:
    def __init__(self, up=True):
        self.up = up
        self.containers = _FakeContainers()

    def ping(self):
        if not self.up:
            raise DockerException("Cannot connect to the Docker daemon")
        return True


def test_docker_backend_absent_without_daemon(monkeypatch):
    monkeypatch.setattr(docker_ops, "_client", lambda: _FakeDocker(up=False))
    assert isolation.create("docker") is None


def test_docker_isolator_runs_limited_containers(monkeypatch):
    fake = _FakeDocker()
    monkeypatch.setattr(docker_ops, "_client", lambda: fake)

    iso = isolation.create("docker")
    assert iso is not None

    cid = iso.launch("web-1", parse("cpus:2;mem:256", "*"), ["sleep", "30"])
    kwargs = fake.containers.run_kwargs[0]
    assert kwargs["name"] == "nodecap-web-1"
    assert kwargs["nano_cpus"] == 2_000_000_000
    assert kwargs["mem_limit"] == "256m"
    assert kwargs["labels"] == {docker_ops.EXECUTOR_LABEL: "web-1"}

    iso.update("web-1", parse("cpus:0.5;mem:512", "*"))
    assert fake.containers.by_id[cid].updates == [
        {"cpu_period": 100_000, "cpu_quota": 50_000, "mem_limit": "512m", "memswap_limit": -1}
    ]

    assert iso.usage("web-1") == {
        "mem_rss_bytes": 2048,
        "cpus_user_time_secs": 3.0,
        "cpus_system_time_secs": 1.0,
    }

    isolation.destroy(iso)
    assert fake.containers.by_id[cid].removed
    assert iso.executors() == []
