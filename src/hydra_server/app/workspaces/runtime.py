from __future__ import annotations

"""
Runtime Client Adapter over the Docker SDK (docker-py).

The adapter is the only module that talks to the Docker Engine. It exposes
async methods that run the blocking SDK calls in worker threads, and returns
plain snapshots instead of SDK objects so the rest of the orchestrator can be
exercised against an in-memory fake.

Error policy:
- Absence is a value: ``get_*`` methods return None and ``remove_*`` methods
  treat an already-missing object as success.
- A create that collides on name raises NameConflict.
- Every other Docker failure is raised as RuntimeUnavailable.
"""

import asyncio
import logging
import socket
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, Iterator, List, Optional, Tuple, TypeVar

import docker
from docker import DockerClient
from docker.errors import APIError, DockerException, ImageNotFound, NotFound
from docker.types import DriverConfig, Mount, Resources, RestartPolicy, ServiceMode
from requests.exceptions import RequestException

from hydra_server.app.errors import Conflict, InvalidArgument, NameConflict, RuntimeUnavailable
from hydra_server.app.errors import NotFound as WorkspaceNotFound

logger = logging.getLogger("hydra_workspaces")

T = TypeVar("T")


# --------------------------
# Snapshots and specs
# --------------------------

@dataclass(frozen=True)
class ContainerSnapshot:
    """
    Point-in-time view of a container, complete enough to recreate it.
    """
    id: str
    name: str
    labels: Dict[str, str]
    status: str
    image: str
    command: Optional[List[str]] = None
    entrypoint: Optional[List[str]] = None
    environment: List[str] = field(default_factory=list)
    working_dir: Optional[str] = None
    user: Optional[str] = None
    host_config: Dict[str, Any] = field(default_factory=dict)
    networks: List[str] = field(default_factory=list)

    @property
    def running(self) -> bool:
        return self.status in ("running", "restarting")

    @property
    def primary_network(self) -> Optional[str]:
        mode = self.host_config.get("NetworkMode")
        return mode if mode and mode not in ("default", "bridge") else None

    @property
    def secondary_networks(self) -> List[str]:
        primary = self.primary_network
        return [n for n in self.networks if n != primary and n != "bridge"]


@dataclass(frozen=True)
class ContainerSpec:
    """
    Container create request.

    A fresh workspace describes mounts/limits/network through the individual
    fields; a recreation passes the captured ``host_config`` verbatim.
    """
    name: str
    image: str
    labels: Dict[str, str]
    command: Optional[List[str]] = None
    entrypoint: Optional[List[str]] = None
    environment: List[str] = field(default_factory=list)
    working_dir: Optional[str] = None
    user: Optional[str] = None
    network: Optional[str] = None
    volume: Optional[str] = None
    mount_target: Optional[str] = None
    nano_cpus: Optional[int] = None
    mem_bytes: Optional[int] = None
    restart_policy: Optional[str] = None
    host_config: Optional[Dict[str, Any]] = None


@dataclass(frozen=True)
class ServiceSnapshot:
    id: str
    name: str
    labels: Dict[str, str]
    image: str
    version: int
    desired_replicas: int
    running_tasks: int
    environment: List[str] = field(default_factory=list)

    @property
    def replicas(self) -> str:
        return f"{self.running_tasks}/{self.desired_replicas}"


@dataclass(frozen=True)
class ServiceSpec:
    name: str
    image: str
    labels: Dict[str, str]
    command: Optional[List[str]] = None
    environment: List[str] = field(default_factory=list)
    network: Optional[str] = None
    volume: Optional[str] = None
    mount_target: Optional[str] = None
    volume_driver_opts: Optional[Dict[str, str]] = None
    volume_labels: Dict[str, str] = field(default_factory=dict)
    nano_cpus: Optional[int] = None
    mem_bytes: Optional[int] = None
    reserve_nano_cpus: Optional[int] = None
    reserve_mem_bytes: Optional[int] = None
    constraints: List[str] = field(default_factory=list)
    preferences: List[Tuple[str, str]] = field(default_factory=list)
    generic_resources: Dict[str, int] = field(default_factory=dict)


# --------------------------
# Streams
# --------------------------

class LogStream:
    """
    Raw multiplexed log bytes from the Engine plus a handle to release them.

    Iterating blocks; ``close()`` may be called from another thread to end
    the iteration.
    """

    def __init__(self, chunks: Iterable[bytes], response: Any = None) -> None:
        self._chunks = iter(chunks)
        self._response = response
        self._closed = False

    def __iter__(self) -> Iterator[bytes]:
        return self

    def __next__(self) -> bytes:
        if self._closed:
            raise StopIteration
        try:
            return next(self._chunks)
        except (RequestException, OSError) as e:
            if self._closed:
                raise StopIteration
            raise RuntimeUnavailable(f"Log stream interrupted: {e}")

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        if self._response is not None:
            try:
                self._response.close()
            except OSError as e:
                logger.debug("Log stream close raised: %s", e)


class ExecSession:
    """
    Raw duplex socket of an interactive exec (tty, stdin attached).
    """

    def __init__(self, exec_id: str, sock: Any) -> None:
        self.exec_id = exec_id
        self._wrapper = sock
        self._sock = getattr(sock, "_sock", sock)
        self._closed = False
        # Interactive shells may stay idle far longer than the client timeout
        if hasattr(self._sock, "settimeout"):
            self._sock.settimeout(None)

    @property
    def closed(self) -> bool:
        return self._closed

    async def send(self, data: bytes) -> None:
        if self._closed:
            raise ConnectionError("exec session is closed")
        await asyncio.to_thread(self._sock.sendall, data)

    async def recv(self, size: int = 4096) -> bytes:
        """
        Next chunk of shell output; b"" once the session has ended.
        """
        if self._closed:
            return b""
        try:
            return await asyncio.to_thread(self._sock.recv, size)
        except OSError:
            return b""

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        try:
            self._sock.shutdown(socket.SHUT_RDWR)
        except OSError:
            pass
        for closable in (self._sock, self._wrapper):
            try:
                closable.close()
            except OSError:
                pass


# --------------------------
# Adapter
# --------------------------

def _container_snapshot(c: Any) -> ContainerSnapshot:
    attrs = getattr(c, "attrs", {}) or {}
    cfg = attrs.get("Config") or {}
    nets = ((attrs.get("NetworkSettings") or {}).get("Networks") or {}).keys()
    return ContainerSnapshot(
        id=c.id,
        name=(attrs.get("Name") or c.name or "").lstrip("/"),
        labels=dict(cfg.get("Labels") or {}),
        status=(attrs.get("State") or {}).get("Status") or c.status,
        image=cfg.get("Image") or "",
        command=cfg.get("Cmd"),
        entrypoint=cfg.get("Entrypoint"),
        environment=list(cfg.get("Env") or []),
        working_dir=cfg.get("WorkingDir") or None,
        user=cfg.get("User") or None,
        host_config=dict(attrs.get("HostConfig") or {}),
        networks=list(nets),
    )


class DockerRuntime:
    """
    Async facade over a DockerClient.
    """

    def __init__(self, client: DockerClient) -> None:
        self.client = client

    async def _call(self, fn: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        try:
            return await asyncio.to_thread(fn, *args, **kwargs)
        except NotFound as e:
            raise WorkspaceNotFound(f"Runtime object not found: {e.explanation or e}")
        except (DockerException, RequestException) as e:
            raise RuntimeUnavailable(f"Container runtime error: {e}")

    # --------------------------
    # Health
    # --------------------------

    async def ping(self) -> bool:
        return bool(await self._call(self.client.ping))

    async def swarm_active(self) -> bool:
        info = await self._call(self.client.info)
        return ((info or {}).get("Swarm") or {}).get("LocalNodeState") == "active"

    # --------------------------
    # Containers
    # --------------------------

    async def get_container(self, name: str) -> Optional[ContainerSnapshot]:
        def _get() -> Optional[ContainerSnapshot]:
            try:
                return _container_snapshot(self.client.containers.get(name))
            except NotFound:
                return None

        return await self._call(_get)

    async def list_containers(self, filters: Dict[str, List[str]]) -> List[ContainerSnapshot]:
        def _list() -> List[ContainerSnapshot]:
            out: List[ContainerSnapshot] = []
            for c in self.client.containers.list(all=True, filters=filters):
                try:
                    c.reload()
                except NotFound:
                    continue
                out.append(_container_snapshot(c))
            return out

        return await self._call(_list)

    async def create_container(self, spec: ContainerSpec) -> str:
        api = self.client.api

        def _create() -> str:
            host_config = spec.host_config
            if host_config is None:
                mounts = []
                if spec.volume and spec.mount_target:
                    mounts.append(Mount(target=spec.mount_target, source=spec.volume, type="volume"))
                kwargs: Dict[str, Any] = {"mounts": mounts}
                if spec.network:
                    kwargs["network_mode"] = spec.network
                if spec.nano_cpus:
                    kwargs["nano_cpus"] = spec.nano_cpus
                if spec.mem_bytes:
                    kwargs["mem_limit"] = spec.mem_bytes
                if spec.restart_policy:
                    kwargs["restart_policy"] = {"Name": spec.restart_policy}
                host_config = api.create_host_config(**kwargs)
            networking_config = None
            network = spec.network or host_config.get("NetworkMode")
            if network and network not in ("default", "bridge", "host", "none"):
                networking_config = api.create_networking_config({network: api.create_endpoint_config()})
            try:
                created = api.create_container(
                    image=spec.image,
                    command=spec.command,
                    entrypoint=spec.entrypoint,
                    environment=spec.environment or None,
                    working_dir=spec.working_dir,
                    user=spec.user,
                    labels=spec.labels,
                    name=spec.name,
                    host_config=host_config,
                    networking_config=networking_config,
                )
            except APIError as e:
                if e.status_code == 409:
                    raise NameConflict(f"Object '{spec.name}' already exists")
                raise
            return created["Id"]

        return await self._call(_create)

    async def start_container(self, container_id: str) -> None:
        await self._call(self.client.api.start, container_id)

    async def stop_container(self, container_id: str, timeout: int = 10) -> None:
        await self._call(self.client.api.stop, container_id, timeout=timeout)

    async def restart_container(self, container_id: str, timeout: int = 10) -> None:
        await self._call(self.client.api.restart, container_id, timeout=timeout)

    async def remove_container(self, container_id: str) -> None:
        def _remove() -> None:
            try:
                self.client.api.remove_container(container_id, force=True)
            except NotFound:
                return

        await self._call(_remove)

    async def wait_container(self, container_id: str) -> int:
        result = await self._call(self.client.api.wait, container_id)
        return int((result or {}).get("StatusCode", -1))

    async def connect_network(self, network: str, container_id: str) -> None:
        await self._call(self.client.api.connect_container_to_network, container_id, network)

    async def container_logs(
        self,
        container_id: str,
        *,
        follow: bool = False,
        tail: Optional[int] = None,
        timestamps: bool = False,
    ) -> LogStream:
        return await self._raw_logs("/containers/{0}/logs", container_id, follow, tail, timestamps)

    async def _raw_logs(
        self,
        path: str,
        object_id: str,
        follow: bool,
        tail: Optional[int],
        timestamps: bool,
    ) -> LogStream:
        """
        Open the Engine log endpoint without docker-py's demultiplexing, so
        the 8-byte frame headers (and with them the stdout/stderr split)
        survive for the streaming bridge.
        """
        api = self.client.api
        params = {
            "stdout": 1,
            "stderr": 1,
            "follow": 1 if follow else 0,
            "timestamps": 1 if timestamps else 0,
            "tail": "all" if tail is None else str(max(0, int(tail))),
        }

        def _open() -> LogStream:
            response = api._get(api._url(path, object_id), params=params, stream=True)
            chunks = api._stream_raw_result(response, chunk_size=None, decode=False)
            return LogStream(chunks, response)

        return await self._call(_open)

    async def exec_interactive(self, container_id: str, command: List[str]) -> ExecSession:
        api = self.client.api

        def _open() -> ExecSession:
            created = api.exec_create(
                container_id,
                cmd=command,
                stdin=True,
                stdout=True,
                stderr=True,
                tty=True,
            )
            sock = api.exec_start(created["Id"], socket=True, tty=True)
            return ExecSession(created["Id"], sock)

        return await self._call(_open)

    async def exec_run(self, container_id: str, command: List[str]) -> Tuple[int, List[bytes]]:
        """
        Run a one-shot, non-interactive command; returns the exit code and
        the raw multiplexed output chunks (no tty, so frame headers survive).
        """
        api = self.client.api

        def _run() -> Tuple[int, List[bytes]]:
            created = api.exec_create(
                container_id,
                cmd=command,
                stdin=False,
                stdout=True,
                stderr=True,
                tty=False,
            )
            wrapper = api.exec_start(created["Id"], socket=True, tty=False)
            sock = getattr(wrapper, "_sock", wrapper)
            chunks: List[bytes] = []
            try:
                while True:
                    data = sock.recv(4096)
                    if not data:
                        break
                    chunks.append(data)
            except OSError as e:
                raise RuntimeUnavailable(f"Exec output interrupted: {e}")
            finally:
                for closable in (sock, wrapper):
                    try:
                        closable.close()
                    except OSError:
                        pass
            exit_code = api.exec_inspect(created["Id"]).get("ExitCode")
            return (-1 if exit_code is None else int(exit_code)), chunks

        return await self._call(_run)

    # --------------------------
    # Volumes, networks, images
    # --------------------------

    async def ensure_volume(
        self,
        name: str,
        labels: Dict[str, str],
        driver_opts: Optional[Dict[str, str]] = None,
    ) -> None:
        def _ensure() -> None:
            try:
                self.client.volumes.get(name)
                return
            except NotFound:
                pass
            logger.info("Creating volume %s", name)
            try:
                self.client.volumes.create(name=name, driver="local", driver_opts=driver_opts or {}, labels=labels)
            except APIError as e:
                if e.status_code != 409:
                    raise

        await self._call(_ensure)

    async def remove_volume(self, name: str) -> bool:
        """
        Remove a volume; returns False when it was already gone.
        """
        def _remove() -> bool:
            try:
                self.client.volumes.get(name).remove(force=True)
                return True
            except NotFound:
                return False

        return await self._call(_remove)

    async def ensure_network(self, name: str, labels: Dict[str, str], driver: str = "bridge") -> None:
        def _ensure() -> None:
            if self.client.networks.list(names=[name]):
                return
            logger.info("Creating %s network %s", driver, name)
            try:
                self.client.networks.create(
                    name,
                    driver=driver,
                    labels=labels,
                    attachable=True if driver == "overlay" else None,
                )
            except APIError as e:
                if e.status_code != 409:
                    raise

        await self._call(_ensure)

    async def ensure_image(self, image: str) -> None:
        def _ensure() -> None:
            try:
                self.client.images.get(image)
                return
            except ImageNotFound:
                pass
            logger.info("Pulling image %s", image)
            try:
                self.client.images.pull(image)
            except NotFound:
                raise InvalidArgument(f"Image '{image}' could not be pulled")

        await self._call(_ensure)

    # --------------------------
    # Swarm services
    # --------------------------

    def _service_snapshot(self, svc: Any) -> ServiceSnapshot:
        attrs = svc.attrs or {}
        spec = attrs.get("Spec") or {}
        replicated = (spec.get("Mode") or {}).get("Replicated") or {}
        container_spec = (spec.get("TaskTemplate") or {}).get("ContainerSpec") or {}
        tasks = svc.tasks(filters={"desired-state": "running"})
        running = sum(1 for t in tasks if (t.get("Status") or {}).get("State") == "running")
        return ServiceSnapshot(
            id=svc.id,
            name=spec.get("Name") or svc.name,
            labels=dict(spec.get("Labels") or {}),
            image=container_spec.get("Image", ""),
            version=int((attrs.get("Version") or {}).get("Index", 0)),
            desired_replicas=int(replicated.get("Replicas", 0)),
            running_tasks=running,
            environment=list(container_spec.get("Env") or []),
        )

    async def get_service(self, name: str) -> Optional[ServiceSnapshot]:
        def _get() -> Optional[ServiceSnapshot]:
            try:
                return self._service_snapshot(self.client.services.get(name))
            except NotFound:
                return None

        return await self._call(_get)

    async def list_services(self, filters: Dict[str, List[str]]) -> List[ServiceSnapshot]:
        def _list() -> List[ServiceSnapshot]:
            return [self._service_snapshot(s) for s in self.client.services.list(filters=filters)]

        return await self._call(_list)

    async def create_service(self, spec: ServiceSpec) -> str:
        def _create() -> str:
            mounts = []
            if spec.volume and spec.mount_target:
                driver = DriverConfig("local", spec.volume_driver_opts) if spec.volume_driver_opts else None
                mounts.append(
                    Mount(
                        target=spec.mount_target,
                        source=spec.volume,
                        type="volume",
                        driver_config=driver,
                        labels=spec.volume_labels or None,
                    )
                )
            try:
                svc = self.client.services.create(
                    spec.image,
                    command=spec.command,
                    name=spec.name,
                    labels=spec.labels,
                    container_labels=spec.labels,
                    env=spec.environment,
                    mounts=mounts,
                    networks=[spec.network] if spec.network else None,
                    resources=Resources(
                        cpu_limit=spec.nano_cpus,
                        mem_limit=spec.mem_bytes,
                        cpu_reservation=spec.reserve_nano_cpus,
                        mem_reservation=spec.reserve_mem_bytes,
                        generic_resources=spec.generic_resources or None,
                    ),
                    restart_policy=RestartPolicy(condition="on-failure", delay=5_000_000_000, max_attempts=3),
                    constraints=spec.constraints or None,
                    preferences=spec.preferences or None,
                    mode=ServiceMode("replicated", replicas=1),
                )
            except APIError as e:
                if e.status_code == 409:
                    raise NameConflict(f"Service '{spec.name}' already exists")
                raise
            return svc.id

        return await self._call(_create)

    async def update_service(
        self,
        service_id: str,
        version: int,
        labels: Dict[str, str],
        environment: Optional[List[str]] = None,
    ) -> None:
        """
        Replace service and container labels (and, when given, the task
        environment), pinned to the inspected spec version. The Engine rolls
        the tasks; a stale version is a Conflict.
        """
        def _update() -> None:
            svc = self.client.services.get(service_id)
            current = int((svc.attrs.get("Version") or {}).get("Index", 0))
            if current != version:
                raise Conflict("Workspace service changed concurrently; retry")
            try:
                changes: Dict[str, Any] = {"labels": labels, "container_labels": labels}
                if environment is not None:
                    changes["env"] = environment
                svc.update(**changes)
            except APIError as e:
                if "out of sequence" in str(e):
                    raise Conflict("Workspace service changed concurrently; retry")
                raise

        await self._call(_update)

    async def scale_service(self, service_id: str, replicas: int) -> None:
        def _scale() -> None:
            self.client.services.get(service_id).scale(replicas)

        await self._call(_scale)

    async def force_update_service(self, service_id: str) -> None:
        def _force() -> None:
            self.client.services.get(service_id).force_update()

        await self._call(_force)

    async def remove_service(self, service_id: str) -> None:
        def _remove() -> None:
            try:
                self.client.services.get(service_id).remove()
            except NotFound:
                return

        await self._call(_remove)

    async def service_logs(
        self,
        service_id: str,
        *,
        follow: bool = False,
        tail: Optional[int] = None,
    ) -> LogStream:
        return await self._raw_logs("/services/{0}/logs", service_id, follow, tail, False)


def docker_runtime_from_env(timeout: int) -> DockerRuntime:
    return DockerRuntime(docker.from_env(timeout=timeout))


__all__ = [
    "ContainerSnapshot",
    "ContainerSpec",
    "ServiceSnapshot",
    "ServiceSpec",
    "LogStream",
    "ExecSession",
    "DockerRuntime",
    "docker_runtime_from_env",
]
