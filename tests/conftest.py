# Pytest configuration for Hydra workspace tests.
# - Registers "unit" and "docker" markers.
# - Automatically skips tests marked with @pytest.mark.docker when Docker is unavailable.
# - Provides an in-memory runtime adapter so the controller, pipeline and router
#   can be exercised without a Docker Engine.

from __future__ import annotations

import asyncio
import contextlib
import dataclasses
import itertools
import sys
from pathlib import Path
from typing import Dict, List, Optional, Tuple

import pytest


def _add_sys_path(p: Path) -> None:
    """
    Prepend a filesystem path to sys.path if it's not already present.
    Ensures in-repo packages are importable without editable installs.
    """
    rp = str(p.resolve())
    if rp not in sys.path:
        sys.path.insert(0, rp)


_THIS_FILE = Path(__file__).resolve()
_TESTS_DIR = _THIS_FILE.parent
_PROJECT_DIR = _TESTS_DIR.parent
_add_sys_path(_PROJECT_DIR / "src")

from docker.errors import DockerException  # noqa: E402

from hydra_server.app.config import ServerConfig  # noqa: E402
from hydra_server.app.errors import Conflict, NameConflict, NotFound, RuntimeUnavailable  # noqa: E402
from hydra_server.app.security import VerifiedIdentity  # noqa: E402
from hydra_server.app.workspaces.core import LABEL_HELPER_KIND  # noqa: E402
from hydra_server.app.workspaces.lifecycle import WorkspaceController  # noqa: E402
from hydra_server.app.workspaces.runtime import (  # noqa: E402
    ContainerSnapshot,
    ContainerSpec,
    LogStream,
    ServiceSnapshot,
    ServiceSpec,
)


def _docker_available() -> Tuple[bool, str]:
    """
    Check if Docker daemon is reachable.
    Returns (available, reason_if_unavailable).
    """
    import docker

    try:
        with contextlib.closing(docker.from_env()) as client:
            client.ping()
        return True, ""
    except DockerException as e:
        return False, f"Docker daemon not reachable: {e} (ensure the Docker daemon is running; set DOCKER_HOST for remote engines)"


def pytest_configure(config: pytest.Config) -> None:
    config.addinivalue_line("markers", "unit: fast tests against in-memory fakes")
    config.addinivalue_line(
        "markers",
        "docker: mark test as requiring Docker (skipped if Docker is unavailable)",
    )
    available, reason = _docker_available()
    setattr(config, "_hydra_docker_available", available)
    setattr(config, "_hydra_docker_unavailable_reason", reason)


def pytest_collection_modifyitems(config: pytest.Config, items: list[pytest.Item]) -> None:
    if getattr(config, "_hydra_docker_available", False):
        return
    skip_marker = pytest.mark.skip(
        reason=getattr(config, "_hydra_docker_unavailable_reason", "") or "Docker daemon not reachable"
    )
    for item in items:
        if "docker" in item.keywords:
            item.add_marker(skip_marker)


# --------------------------
# Log framing helper
# --------------------------

def frame(stream: int, payload: bytes) -> bytes:
    """One Engine multiplexed-stream frame."""
    return bytes([stream, 0, 0, 0]) + len(payload).to_bytes(4, "big") + payload


# --------------------------
# In-memory runtime
# --------------------------

class EchoExecSession:
    """
    Exec session double that echoes every input chunk back as output.
    """

    def __init__(self, exec_id: str) -> None:
        self.exec_id = exec_id
        self.closed = False
        self._queue: "asyncio.Queue[bytes]" = asyncio.Queue()

    async def send(self, data: bytes) -> None:
        await self._queue.put(data)

    async def recv(self, size: int = 4096) -> bytes:
        if self.closed:
            return b""
        return await self._queue.get()

    async def close(self) -> None:
        if not self.closed:
            self.closed = True
            self._queue.put_nowait(b"")


MUTATING_CALLS = frozenset({
    "create_container",
    "start_container",
    "stop_container",
    "restart_container",
    "remove_container",
    "connect_network",
    "ensure_volume",
    "remove_volume",
    "ensure_network",
    "ensure_image",
    "create_service",
    "update_service",
    "scale_service",
    "force_update_service",
    "remove_service",
    "exec_interactive",
    "exec_run",
})


@dataclasses.dataclass
class _Container:
    id: str
    name: str
    labels: Dict[str, str]
    status: str
    image: str
    command: Optional[List[str]]
    entrypoint: Optional[List[str]]
    environment: List[str]
    host_config: Dict[str, object]
    networks: List[str]

    def snapshot(self) -> ContainerSnapshot:
        return ContainerSnapshot(
            id=self.id,
            name=self.name,
            labels=dict(self.labels),
            status=self.status,
            image=self.image,
            command=self.command,
            entrypoint=self.entrypoint,
            environment=list(self.environment),
            host_config=dict(self.host_config),
            networks=list(self.networks),
        )


@dataclasses.dataclass
class _Service:
    id: str
    name: str
    labels: Dict[str, str]
    image: str
    version: int
    replicas: int
    spec: ServiceSpec
    environment: List[str] = dataclasses.field(default_factory=list)


def _matches(labels: Dict[str, str], filters: Dict[str, List[str]]) -> bool:
    for expr in filters.get("label", []):
        key, _, value = expr.partition("=")
        if labels.get(key) != value:
            return False
    return True


class FakeRuntime:
    """
    In-memory stand-in for DockerRuntime. Every call is recorded in ``calls``.

    Deployment helpers: ``helper_exit[kind]`` sets the exit code of a helper
    kind ("clone", "pull", "read"); ``commit`` is what the read helper prints.
    ``fail_next[call]`` raises once; volumes in ``busy_volumes`` never remove.
    ``programs`` maps supervised program names to their state.
    """

    def __init__(self, swarm: bool = False) -> None:
        self.calls: List[Tuple[str, tuple]] = []
        self.containers: Dict[str, _Container] = {}
        self.services: Dict[str, _Service] = {}
        self.volumes: Dict[str, Dict[str, object]] = {}
        self.networks: Dict[str, Dict[str, object]] = {}
        self.images: List[str] = []
        self.swarm = swarm
        self.helper_exit: Dict[str, int] = {}
        self.helper_output: Dict[str, bytes] = {}
        self.commit = "0123456789abcdef0123456789abcdef01234567"
        self.log_chunks: List[bytes] = []
        self.exec_sessions: List[EchoExecSession] = []
        self.fail_next: Dict[str, Exception] = {}
        self.busy_volumes: set = set()
        self.programs: Optional[Dict[str, str]] = None
        self._ids = itertools.count(1)

    # --------------------------
    # Bookkeeping
    # --------------------------

    def _record(self, name: str, *args) -> None:
        self.calls.append((name, args))
        err = self.fail_next.pop(name, None)
        if err is not None:
            raise err

    def mutations(self) -> List[str]:
        return [name for name, _ in self.calls if name in MUTATING_CALLS]

    def count(self, name: str) -> int:
        return sum(1 for n, _ in self.calls if n == name)

    def by_name(self, name: str) -> Optional[_Container]:
        return next((c for c in self.containers.values() if c.name == name), None)

    def _find(self, ref: str) -> Optional[_Container]:
        return self.containers.get(ref) or self.by_name(ref)

    def helpers(self) -> List[_Container]:
        return [c for c in self.containers.values() if c.name.startswith("hydra-job-")]

    # --------------------------
    # Health
    # --------------------------

    async def ping(self) -> bool:
        self._record("ping")
        return True

    async def swarm_active(self) -> bool:
        self._record("swarm_active")
        return self.swarm

    # --------------------------
    # Containers
    # --------------------------

    async def get_container(self, name: str) -> Optional[ContainerSnapshot]:
        self._record("get_container", name)
        c = self._find(name)
        return c.snapshot() if c else None

    async def list_containers(self, filters: Dict[str, List[str]]) -> List[ContainerSnapshot]:
        self._record("list_containers", filters)
        return [c.snapshot() for c in self.containers.values() if _matches(c.labels, filters)]

    async def create_container(self, spec: ContainerSpec) -> str:
        self._record("create_container", spec)
        if self.by_name(spec.name) is not None:
            raise NameConflict(f"Object '{spec.name}' already exists")
        cid = f"c{next(self._ids):04d}"
        host_config = spec.host_config
        if host_config is None:
            host_config = {
                "NetworkMode": spec.network or "default",
                "NanoCpus": spec.nano_cpus or 0,
                "Memory": spec.mem_bytes or 0,
                "Mounts": [{"Source": spec.volume, "Target": spec.mount_target}] if spec.volume else [],
            }
        network = spec.network or host_config.get("NetworkMode")
        self.containers[cid] = _Container(
            id=cid,
            name=spec.name,
            labels=dict(spec.labels),
            status="created",
            image=spec.image,
            command=spec.command,
            entrypoint=spec.entrypoint,
            environment=list(spec.environment),
            host_config=dict(host_config),
            networks=[network] if network and network != "default" else ["bridge"],
        )
        return cid

    async def start_container(self, container_id: str) -> None:
        self._record("start_container", container_id)
        c = self._find(container_id)
        if c is None:
            raise NotFound("Runtime object not found")
        if c.name.startswith("hydra-job-"):
            c.status = "exited"
        else:
            c.status = "running"

    async def stop_container(self, container_id: str, timeout: int = 10) -> None:
        self._record("stop_container", container_id)
        c = self._find(container_id)
        if c is None:
            raise NotFound("Runtime object not found")
        c.status = "exited"

    async def restart_container(self, container_id: str, timeout: int = 10) -> None:
        self._record("restart_container", container_id)
        c = self._find(container_id)
        if c is None:
            raise NotFound("Runtime object not found")
        c.status = "running"

    async def remove_container(self, container_id: str) -> None:
        self._record("remove_container", container_id)
        c = self._find(container_id)
        if c is not None:
            del self.containers[c.id]

    async def wait_container(self, container_id: str) -> int:
        self._record("wait_container", container_id)
        c = self._find(container_id)
        kind = (c.labels.get(LABEL_HELPER_KIND) if c else None) or ""
        return self.helper_exit.get(kind, 0)

    async def connect_network(self, network: str, container_id: str) -> None:
        self._record("connect_network", network, container_id)
        c = self._find(container_id)
        if c is None:
            raise NotFound("Runtime object not found")
        if network not in c.networks:
            c.networks.append(network)

    async def container_logs(self, container_id: str, *, follow: bool = False, tail=None, timestamps: bool = False) -> LogStream:
        self._record("container_logs", container_id)
        c = self._find(container_id)
        kind = (c.labels.get(LABEL_HELPER_KIND) if c else None) or ""
        if kind == "read":
            return LogStream([frame(1, (self.commit + "\n").encode())])
        if kind:
            return LogStream([frame(2, self.helper_output.get(kind, b""))])
        return LogStream(list(self.log_chunks))

    async def exec_interactive(self, container_id: str, command: List[str]) -> "EchoExecSession":
        self._record("exec_interactive", container_id, tuple(command))
        session = EchoExecSession(f"exec-{len(self.exec_sessions) + 1}")
        self.exec_sessions.append(session)
        return session

    async def exec_run(self, container_id: str, command: List[str]) -> Tuple[int, List[bytes]]:
        """
        One-shot exec double that understands ``supervisorctl``. With
        ``programs`` unset the executable is missing (exit 127).
        """
        self._record("exec_run", container_id, tuple(command))
        if self.programs is None or command[:1] != ["supervisorctl"]:
            return 127, [frame(1, b'exec: "supervisorctl": executable file not found in $PATH\r\n')]
        action = command[1]
        if action == "status":
            text = "".join(f"{name:<24}{state:<10}pid 42, uptime 0:01:00\n" for name, state in self.programs.items())
            code = 0 if all(s == "RUNNING" for s in self.programs.values()) else 3
            return code, [frame(1, text.encode())]
        name = command[2]
        state = self.programs.get(name)
        if state is None:
            return 7, [frame(1, f"{name}: ERROR (no such process)\n".encode())]
        if action == "start":
            if state == "RUNNING":
                return 7, [frame(1, f"{name}: ERROR (already started)\n".encode())]
            self.programs[name] = "RUNNING"
            return 0, [frame(1, f"{name}: started\n".encode())]
        if state != "RUNNING":
            return 7, [frame(1, f"{name}: ERROR (not running)\n".encode())]
        self.programs[name] = "STOPPED"
        return 0, [frame(1, f"{name}: stopped\n".encode())]

    # --------------------------
    # Volumes, networks, images
    # --------------------------

    async def ensure_volume(self, name: str, labels: Dict[str, str], driver_opts=None) -> None:
        self._record("ensure_volume", name)
        self.volumes.setdefault(name, {"labels": dict(labels), "driver_opts": driver_opts})

    async def remove_volume(self, name: str) -> bool:
        self._record("remove_volume", name)
        if name in self.busy_volumes:
            raise RuntimeUnavailable(f"Container runtime error: volume {name} is in use")
        return self.volumes.pop(name, None) is not None

    async def ensure_network(self, name: str, labels: Dict[str, str], driver: str = "bridge") -> None:
        self._record("ensure_network", name)
        self.networks.setdefault(name, {"labels": dict(labels), "driver": driver})

    async def ensure_image(self, image: str) -> None:
        self._record("ensure_image", image)
        if image not in self.images:
            self.images.append(image)

    # --------------------------
    # Services
    # --------------------------

    def _service_snapshot(self, s: _Service) -> ServiceSnapshot:
        return ServiceSnapshot(
            id=s.id,
            name=s.name,
            labels=dict(s.labels),
            image=s.image,
            version=s.version,
            desired_replicas=s.replicas,
            running_tasks=s.replicas,
            environment=list(s.environment),
        )

    def _service(self, ref: str) -> Optional[_Service]:
        return self.services.get(ref) or next((s for s in self.services.values() if s.name == ref), None)

    async def get_service(self, name: str) -> Optional[ServiceSnapshot]:
        self._record("get_service", name)
        s = self._service(name)
        return self._service_snapshot(s) if s else None

    async def list_services(self, filters: Dict[str, List[str]]) -> List[ServiceSnapshot]:
        self._record("list_services", filters)
        return [self._service_snapshot(s) for s in self.services.values() if _matches(s.labels, filters)]

    async def create_service(self, spec: ServiceSpec) -> str:
        self._record("create_service", spec)
        if self._service(spec.name) is not None:
            raise NameConflict(f"Service '{spec.name}' already exists")
        sid = f"s{next(self._ids):04d}"
        self.services[sid] = _Service(sid, spec.name, dict(spec.labels), spec.image, 1, 1, spec, list(spec.environment))
        return sid

    async def update_service(self, service_id: str, version: int, labels: Dict[str, str], environment=None) -> None:
        self._record("update_service", service_id, version)
        s = self._service(service_id)
        if s is None:
            raise NotFound("Runtime object not found")
        if s.version != version:
            raise Conflict("Workspace service changed concurrently; retry")
        s.labels = dict(labels)
        if environment is not None:
            s.environment = list(environment)
        s.version += 1

    async def scale_service(self, service_id: str, replicas: int) -> None:
        self._record("scale_service", service_id, replicas)
        s = self._service(service_id)
        s.replicas = replicas
        s.version += 1

    async def force_update_service(self, service_id: str) -> None:
        self._record("force_update_service", service_id)
        self._service(service_id).version += 1

    async def remove_service(self, service_id: str) -> None:
        self._record("remove_service", service_id)
        s = self._service(service_id)
        if s is not None:
            del self.services[s.id]

    async def service_logs(self, service_id: str, *, follow: bool = False, tail=None) -> LogStream:
        self._record("service_logs", service_id)
        return LogStream(list(self.log_chunks))


# --------------------------
# Fixtures
# --------------------------

TEST_SECRET = "test-identity-secret"


@pytest.fixture
def settings() -> ServerConfig:
    base = ServerConfig.from_env(dotenv=False)
    return dataclasses.replace(
        base,
        identity_secret=TEST_SECRET,
        allowed_roles=[],
        orchestration_mode="container",
        base_path_prefix="/students",
        public_students_base="http://hydra.local/students",
        max_cpu_limit="4",
        max_mem_limit="8g",
        default_cpu_limit="2",
        default_mem_limit="4g",
        nfs_server=None,
        supervisor_programs=["code-server", "jupyter"],
    )


@pytest.fixture
def swarm_settings(settings: ServerConfig) -> ServerConfig:
    return dataclasses.replace(settings, orchestration_mode="swarm")


@pytest.fixture
def fake_runtime() -> FakeRuntime:
    return FakeRuntime()


@pytest.fixture
def controller(fake_runtime: FakeRuntime, settings: ServerConfig) -> WorkspaceController:
    return WorkspaceController(fake_runtime, settings)


@pytest.fixture
def alice() -> VerifiedIdentity:
    return VerifiedIdentity(subject="sub-alice", email="alice@example.edu", roles=("student",))


@pytest.fixture
def mallory() -> VerifiedIdentity:
    return VerifiedIdentity(subject="sub-mallory", email="mallory@example.edu", roles=("student",))
