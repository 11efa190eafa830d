from __future__ import annotations

"""
Backing objects for workspaces.

A workspace is backed either by a single container (container mode) or by a
one-replica Swarm service (swarm mode). Both backends expose the same async
surface to the lifecycle controller:

- lookup/list_owned: read the backing object(s) fresh from the runtime
- ensure_networks/ensure_storage: idempotent sub-resource provisioning
- create/start/stop/restart/remove: plain lifecycle
- relabel: replace the object's label set; for containers this is the
  destructive recreation sequence, for services a version-pinned spec update
- logs/exec: raw streams for the streaming bridge
- run: one-shot command with collected (still framed) output

Notes:
- Only this module knows how run state is derived for each object kind.
- Failures while recreating a container leave the workspace absent (and
  re-initializable by ``init``) rather than half-configured.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from hydra_server.app.config import ServerConfig
from hydra_server.app.errors import InvalidArgument, RuntimeUnavailable, WorkspaceError
from hydra_server.app.workspaces.core import (
    LABEL_MANAGED_BY,
    LABEL_OWNER,
    LABEL_PROJECT,
    LABEL_STORAGE_TYPE,
    MANAGED_BY_VALUE,
    RunState,
    managed_label_filters,
)
from hydra_server.app.workspaces.runtime import (
    ContainerSnapshot,
    ContainerSpec,
    DockerRuntime,
    ExecSession,
    LogStream,
    ServiceSnapshot,
    ServiceSpec,
)

logger = logging.getLogger("hydra_workspaces")

_HALF_CPU_NANOS = 500_000_000
_ONE_GIB = 1024**3
GPU_RESOURCE_KIND = "NVIDIA-GPU"


@dataclass(frozen=True)
class BackingObject:
    """
    Runtime object backing a workspace, as read from the runtime.
    """
    kind: str
    id: str
    name: str
    labels: Dict[str, str]
    run_state: RunState
    image: str
    replicas: Optional[str] = None
    version: Optional[int] = None
    snapshot: Any = None

    @property
    def running(self) -> bool:
        return self.run_state is RunState.running


@dataclass(frozen=True)
class ProvisionPlan:
    """
    Everything needed to create a fresh backing object.
    """
    name: str
    owner: str
    project: str
    image: str
    labels: Dict[str, str]
    volume: str
    mount_target: str
    nano_cpus: int
    mem_bytes: int
    command: Optional[List[str]] = None
    environment: Dict[str, str] = field(default_factory=dict)
    gpu: bool = False

    def env_list(self) -> List[str]:
        return [f"{k}={v}" for k, v in sorted(self.environment.items())]


def volume_labels(owner: str, project: str, storage_type: str = "local") -> Dict[str, str]:
    return {
        LABEL_MANAGED_BY: MANAGED_BY_VALUE,
        LABEL_OWNER: owner,
        LABEL_PROJECT: project,
        LABEL_STORAGE_TYPE: storage_type,
    }


def merge_env(current: List[str], overrides: Optional[Dict[str, Optional[str]]]) -> List[str]:
    """
    Apply KEY=VALUE overrides to a Docker env list, keeping the order of
    existing entries and appending new keys. A None value drops the key.
    """
    if not overrides:
        return list(current)
    pending = dict(overrides)
    merged: List[str] = []
    for entry in current:
        key = entry.split("=", 1)[0]
        if key in pending:
            value = pending.pop(key)
            if value is not None:
                merged.append(f"{key}={value}")
        else:
            merged.append(entry)
    merged.extend(f"{k}={v}" for k, v in sorted(pending.items()) if v is not None)
    return merged


class WorkspaceBackend(ABC):
    kind: str = ""
    supports_gpu: bool = False

    def __init__(self, runtime: DockerRuntime, settings: ServerConfig) -> None:
        self.runtime = runtime
        self.settings = settings

    async def require_ready(self) -> None:
        """
        Raise RuntimeUnavailable when the backend cannot accept mutations.
        """
        return None

    @abstractmethod
    async def lookup(self, name: str) -> Optional[BackingObject]: ...

    @abstractmethod
    async def list_owned(self, owner: str) -> List[BackingObject]: ...

    @abstractmethod
    async def ensure_networks(self, owner: str) -> None: ...

    @abstractmethod
    async def ensure_storage(self, owner: str, project: str, volume: str) -> None: ...

    @abstractmethod
    async def create(self, plan: ProvisionPlan) -> str: ...

    @abstractmethod
    async def start(self, obj: BackingObject) -> None: ...

    @abstractmethod
    async def stop(self, obj: BackingObject) -> None: ...

    @abstractmethod
    async def restart(self, obj: BackingObject) -> None: ...

    @abstractmethod
    async def relabel(
        self,
        obj: BackingObject,
        labels: Dict[str, str],
        environment: Optional[Dict[str, Optional[str]]] = None,
    ) -> None: ...

    @abstractmethod
    async def remove(self, obj: BackingObject) -> None: ...

    @abstractmethod
    async def logs(self, obj: BackingObject, *, follow: bool, tail: Optional[int]) -> LogStream: ...

    @abstractmethod
    async def exec(self, obj: BackingObject, command: List[str]) -> ExecSession: ...

    @abstractmethod
    async def run(self, obj: BackingObject, command: List[str]) -> Tuple[int, List[bytes]]: ...


# --------------------------
# Container mode
# --------------------------

def _from_container(snap: ContainerSnapshot) -> BackingObject:
    return BackingObject(
        kind="container",
        id=snap.id,
        name=snap.name,
        labels=snap.labels,
        run_state=RunState.running if snap.running else RunState.stopped,
        image=snap.image,
        snapshot=snap,
    )


class ContainerBackend(WorkspaceBackend):
    kind = "container"

    async def lookup(self, name: str) -> Optional[BackingObject]:
        snap = await self.runtime.get_container(name)
        return _from_container(snap) if snap is not None else None

    async def list_owned(self, owner: str) -> List[BackingObject]:
        snaps = await self.runtime.list_containers(managed_label_filters(owner))
        return [_from_container(s) for s in snaps]

    async def ensure_networks(self, owner: str) -> None:
        managed = {LABEL_MANAGED_BY: MANAGED_BY_VALUE}
        await self.runtime.ensure_network(self.settings.students_network, managed)
        await self.runtime.ensure_network(
            self.settings.owner_network_name(owner),
            {**managed, LABEL_OWNER: owner},
        )

    async def ensure_storage(self, owner: str, project: str, volume: str) -> None:
        await self.runtime.ensure_volume(volume, volume_labels(owner, project))

    async def create(self, plan: ProvisionPlan) -> str:
        container_id = await self.runtime.create_container(
            ContainerSpec(
                name=plan.name,
                image=plan.image,
                labels=plan.labels,
                command=plan.command,
                environment=plan.env_list(),
                network=self.settings.students_network,
                volume=plan.volume,
                mount_target=plan.mount_target,
                nano_cpus=plan.nano_cpus,
                mem_bytes=plan.mem_bytes,
                restart_policy=self.settings.restart_policy,
            )
        )
        await self.runtime.connect_network(self.settings.owner_network_name(plan.owner), container_id)
        return container_id

    async def start(self, obj: BackingObject) -> None:
        await self.runtime.start_container(obj.id)

    async def stop(self, obj: BackingObject) -> None:
        await self.runtime.stop_container(obj.id, timeout=self.settings.stop_timeout_seconds)

    async def restart(self, obj: BackingObject) -> None:
        await self.runtime.restart_container(obj.id, timeout=self.settings.stop_timeout_seconds)

    async def relabel(
        self,
        obj: BackingObject,
        labels: Dict[str, str],
        environment: Optional[Dict[str, Optional[str]]] = None,
    ) -> None:
        """
        Destructive recreation: stop, remove, create from the captured
        snapshot with the new labels (and ``environment`` merged over the
        captured env), reconnect secondary networks and restore the previous
        run state.
        """
        snap: ContainerSnapshot = obj.snapshot
        was_running = snap.running
        logger.info("Recreating container %s (running=%s)", snap.name, was_running)

        if was_running:
            await self.runtime.stop_container(snap.id, timeout=self.settings.stop_timeout_seconds)
        await self.runtime.remove_container(snap.id)

        spec = ContainerSpec(
            name=snap.name,
            image=snap.image,
            labels=labels,
            command=snap.command,
            entrypoint=snap.entrypoint,
            environment=merge_env(snap.environment, environment),
            working_dir=snap.working_dir,
            user=snap.user,
            host_config=snap.host_config,
        )
        try:
            new_id = await self.runtime.create_container(spec)
        except WorkspaceError as e:
            logger.error("Recreating %s failed at create: %s", snap.name, e.message)
            raise RuntimeUnavailable(
                f"Recreating workspace failed ({e.message}); it is now absent and can be re-initialized"
            )

        try:
            for network in snap.secondary_networks:
                await self.runtime.connect_network(network, new_id)
            if was_running:
                await self.runtime.start_container(new_id)
        except WorkspaceError as e:
            logger.error("Recreating %s failed after create: %s", snap.name, e.message)
            try:
                await self.runtime.remove_container(new_id)
            except WorkspaceError as cleanup_err:
                logger.warning("Cleanup of half-recreated %s failed: %s", snap.name, cleanup_err.message)
            raise RuntimeUnavailable(
                f"Recreating workspace failed ({e.message}); it is now absent and can be re-initialized"
            )

    async def remove(self, obj: BackingObject) -> None:
        if obj.running:
            try:
                await self.runtime.stop_container(obj.id, timeout=self.settings.stop_timeout_seconds)
            except WorkspaceError as e:
                logger.warning("Stopping %s before removal failed: %s", obj.name, e.message)
        await self.runtime.remove_container(obj.id)

    async def logs(self, obj: BackingObject, *, follow: bool, tail: Optional[int]) -> LogStream:
        return await self.runtime.container_logs(obj.id, follow=follow, tail=tail)

    async def exec(self, obj: BackingObject, command: List[str]) -> ExecSession:
        if not obj.running:
            raise InvalidArgument("Workspace is not running")
        return await self.runtime.exec_interactive(obj.id, command)

    async def run(self, obj: BackingObject, command: List[str]) -> Tuple[int, List[bytes]]:
        if not obj.running:
            raise InvalidArgument("Workspace is not running")
        return await self.runtime.exec_run(obj.id, command)


# --------------------------
# Swarm mode
# --------------------------

def _from_service(snap: ServiceSnapshot) -> BackingObject:
    return BackingObject(
        kind="service",
        id=snap.id,
        name=snap.name,
        labels=snap.labels,
        run_state=RunState.running if snap.desired_replicas > 0 else RunState.stopped,
        image=snap.image,
        replicas=snap.replicas,
        version=snap.version,
        snapshot=snap,
    )


class ServiceBackend(WorkspaceBackend):
    kind = "service"
    supports_gpu = True

    async def require_ready(self) -> None:
        if not await self.runtime.swarm_active():
            raise RuntimeUnavailable("Docker Swarm is not active")

    async def lookup(self, name: str) -> Optional[BackingObject]:
        await self.require_ready()
        snap = await self.runtime.get_service(name)
        return _from_service(snap) if snap is not None else None

    async def list_owned(self, owner: str) -> List[BackingObject]:
        if not await self.runtime.swarm_active():
            return []
        snaps = await self.runtime.list_services(managed_label_filters(owner))
        return [_from_service(s) for s in snaps]

    async def ensure_networks(self, owner: str) -> None:
        await self.runtime.ensure_network(
            self.settings.students_network,
            {LABEL_MANAGED_BY: MANAGED_BY_VALUE},
            driver="overlay",
        )

    async def ensure_storage(self, owner: str, project: str, volume: str) -> None:
        # Declared locally too, so deployment helpers on this node see the same data.
        opts = self.settings.nfs_driver_opts(owner, project)
        storage = "nfs" if opts else "local"
        await self.runtime.ensure_volume(volume, volume_labels(owner, project, storage), driver_opts=opts)

    async def create(self, plan: ProvisionPlan) -> str:
        opts = self.settings.nfs_driver_opts(plan.owner, plan.project)
        return await self.runtime.create_service(
            ServiceSpec(
                name=plan.name,
                image=plan.image,
                labels=plan.labels,
                command=plan.command,
                environment=plan.env_list(),
                network=self.settings.students_network,
                volume=plan.volume,
                mount_target=plan.mount_target,
                volume_driver_opts=opts,
                volume_labels=volume_labels(plan.owner, plan.project, "nfs" if opts else "local"),
                nano_cpus=plan.nano_cpus,
                mem_bytes=plan.mem_bytes,
                reserve_nano_cpus=min(_HALF_CPU_NANOS, plan.nano_cpus),
                reserve_mem_bytes=min(_ONE_GIB, plan.mem_bytes),
                constraints=self._constraints(plan),
                preferences=self._preferences(),
                generic_resources=self._generic_resources(plan),
            )
        )

    def _constraints(self, plan: ProvisionPlan) -> List[str]:
        constraints = list(self.settings.swarm_constraints)
        if plan.gpu and self.settings.swarm_gpu_constraint not in constraints:
            constraints.append(self.settings.swarm_gpu_constraint)
        return constraints

    def _preferences(self) -> List[Tuple[str, str]]:
        if not self.settings.swarm_spread_label:
            return []
        return [("spread", self.settings.swarm_spread_label)]

    def _generic_resources(self, plan: ProvisionPlan) -> Dict[str, int]:
        # Nodes must advertise NVIDIA-GPU as a generic resource, or the task never schedules.
        if plan.gpu and self.settings.swarm_gpu_resources:
            return {GPU_RESOURCE_KIND: 1}
        return {}

    async def start(self, obj: BackingObject) -> None:
        await self.runtime.scale_service(obj.id, 1)

    async def stop(self, obj: BackingObject) -> None:
        await self.runtime.scale_service(obj.id, 0)

    async def restart(self, obj: BackingObject) -> None:
        await self.runtime.force_update_service(obj.id)

    async def relabel(
        self,
        obj: BackingObject,
        labels: Dict[str, str],
        environment: Optional[Dict[str, Optional[str]]] = None,
    ) -> None:
        logger.info("Updating service %s labels at version %s", obj.name, obj.version)
        env = None
        if environment:
            snap: ServiceSnapshot = obj.snapshot
            env = merge_env(snap.environment, environment)
        await self.runtime.update_service(obj.id, obj.version or 0, labels, env)

    async def remove(self, obj: BackingObject) -> None:
        await self.runtime.remove_service(obj.id)

    async def logs(self, obj: BackingObject, *, follow: bool, tail: Optional[int]) -> LogStream:
        return await self.runtime.service_logs(obj.id, follow=follow, tail=tail)

    async def exec(self, obj: BackingObject, command: List[str]) -> ExecSession:
        raise InvalidArgument("Interactive exec is only available in container mode")

    async def run(self, obj: BackingObject, command: List[str]) -> Tuple[int, List[bytes]]:
        raise InvalidArgument("Service control is only available in container mode")


def backend_for(runtime: DockerRuntime, settings: ServerConfig) -> WorkspaceBackend:
    if settings.swarm_mode:
        return ServiceBackend(runtime, settings)
    return ContainerBackend(runtime, settings)


__all__ = [
    "BackingObject",
    "ProvisionPlan",
    "WorkspaceBackend",
    "ContainerBackend",
    "ServiceBackend",
    "backend_for",
    "volume_labels",
    "merge_env",
]
