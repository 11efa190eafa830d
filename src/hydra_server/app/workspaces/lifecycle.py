from __future__ import annotations

"""
Workspace Lifecycle Controller.

State machine per workspace key (owner, project):

    absent -> created(stopped) -> running <-> stopped -> absent

plus a transient "routes-changing" state during relabels that always resolves
back to the prior run state (or to absent, re-initializable, on failure).

Every operation reads state fresh from the runtime; nothing is cached in
process. Authorization is decided from already-fetched labels before any
mutating runtime call: the caller's owner key must equal the object's owner
label, the caller's email must equal the recorded owner email, and the
managed-by marker must be present.

Same-workspace concurrency is narrowed by a generation label: a relabel
re-reads the object and fails with Conflict if the generation moved since the
request read it. Two requests that read the same generation can still race;
the last recreate wins.
"""

import asyncio
import logging
import shlex
from dataclasses import dataclass, replace
from typing import Dict, List, Optional, Tuple

from hydra_server.app.config import ServerConfig
from hydra_server.app.errors import (
    CommandFailed,
    Conflict,
    Forbidden,
    InvalidArgument,
    NameConflict,
    NotAuthenticated,
    NotFound,
    RuntimeUnavailable,
    WorkspaceError,
)
from hydra_server.app.security import VerifiedIdentity
from hydra_server.app.workspaces.backends import BackingObject, ProvisionPlan, WorkspaceBackend, backend_for
from hydra_server.app.workspaces.core import (
    RunState,
    base_path,
    now_utc_iso,
    public_url,
    validate_project,
    volume_name,
    workspace_name,
)
from hydra_server.app.workspaces.deployment import DeploymentPipeline
from hydra_server.app.workspaces.metadata import ResourceLimits, Workspace, decode, encode, reencode
from hydra_server.app.workspaces.presets import DeploymentSource, Preset
from hydra_server.app.workspaces.route_table import Route, RouteTable, render, strip_proxy_labels
from hydra_server.app.workspaces.runtime import DockerRuntime, ExecSession, LogStream
from hydra_server.app.workspaces.streaming import demux_output
from hydra_server.app.workspaces.supervisor import (
    MISSING_EXECUTABLE_EXIT_CODES,
    ProgramListing,
    ProgramStatus,
    control_command,
    output_text,
    parse_status,
    status_command,
    validate_action,
    validate_program,
)

logger = logging.getLogger("hydra_workspaces")

DEFAULT_SHELL = ["/bin/sh"]


@dataclass(frozen=True)
class WorkspaceView:
    """
    Decoded workspace plus the run state read alongside it.
    """
    project: str
    run_state: RunState
    workspace: Optional[Workspace] = None
    object_id: Optional[str] = None
    image: Optional[str] = None
    replicas: Optional[str] = None

    @staticmethod
    def absent(project: str) -> "WorkspaceView":
        return WorkspaceView(project=project, run_state=RunState.not_created)

    @staticmethod
    def of(obj: BackingObject, workspace: Workspace) -> "WorkspaceView":
        return WorkspaceView(
            project=workspace.project,
            run_state=obj.run_state,
            workspace=workspace,
            object_id=obj.id,
            image=obj.image,
            replicas=obj.replicas,
        )


@dataclass(frozen=True)
class LifecycleResult:
    message: str
    view: Optional[WorkspaceView] = None
    commit: Optional[str] = None
    route: Optional[Route] = None


def parse_shell_command(command: Optional[str]) -> List[str]:
    """
    Split an exec command line; empty input means the default shell.
    """
    if not command or not command.strip():
        return list(DEFAULT_SHELL)
    try:
        return shlex.split(command)
    except ValueError as e:
        raise InvalidArgument(f"Invalid command: {e}")


def _env_changes(
    preset: Preset,
    previous: Optional[DeploymentSource],
    current: Optional[DeploymentSource],
) -> Dict[str, Optional[str]]:
    """
    Env entries to rewrite when a workspace switches deployment source;
    keys the new source no longer sets map to None.
    """
    before = preset.environment(previous)
    after = preset.environment(current)
    changes: Dict[str, Optional[str]] = {k: None for k in before if k not in after}
    changes.update(after)
    return changes


class WorkspaceController:
    volume_release_attempts = 5
    volume_release_delay = 1.0

    def __init__(
        self,
        runtime: DockerRuntime,
        settings: ServerConfig,
        backend: Optional[WorkspaceBackend] = None,
        pipeline: Optional[DeploymentPipeline] = None,
    ) -> None:
        self.runtime = runtime
        self.settings = settings
        self.backend = backend or backend_for(runtime, settings)
        self.pipeline = pipeline or DeploymentPipeline(runtime, settings)

    # --------------------------
    # Helpers
    # --------------------------

    @staticmethod
    def _owner(identity: VerifiedIdentity) -> str:
        owner = identity.owner_key
        if not owner:
            raise NotAuthenticated("Identity carries no usable owner key")
        return owner

    def _volume(self, owner: str, project: str) -> str:
        return volume_name(self.settings.volume_prefix, owner, project)

    def resolve_limits(self, cpus: Optional[float] = None, mem_mb: Optional[int] = None) -> ResourceLimits:
        """
        Requested limits (or defaults), bounded by the configured maxima.
        """
        defaults = self.settings.default_limits()
        maxima = self.settings.max_limits()
        cpu_nanos = defaults["cpu_nanos"] if cpus is None else int(float(cpus) * 1_000_000_000)
        mem_bytes = defaults["mem_bytes"] if mem_mb is None else int(mem_mb) * 1024**2
        if cpu_nanos <= 0 or mem_bytes <= 0:
            raise InvalidArgument("Resource limits must be positive")
        if cpu_nanos > maxima["cpu_nanos"]:
            raise InvalidArgument(f"CPU limit exceeds the maximum of {maxima['cpu_nanos'] / 1e9:g} CPUs")
        if mem_bytes > maxima["mem_bytes"]:
            raise InvalidArgument(f"Memory limit exceeds the maximum of {maxima['mem_bytes'] // 1024**2} MB")
        return ResourceLimits(cpu_nanos=cpu_nanos, mem_bytes=mem_bytes)

    def _proxy_labels(self, workspace: Workspace) -> dict:
        return render(
            workspace.routes,
            router_prefix=workspace.name,
            base_path=workspace.base_path,
            network=self.settings.students_network,
            forward_auth_url=self.settings.forward_auth_url,
            entrypoint=self.settings.traefik_entrypoint,
        )

    def _check_gpu(self, gpu: bool) -> None:
        if gpu and not self.backend.supports_gpu:
            raise InvalidArgument("GPU placement is only available in swarm mode")

    @staticmethod
    def _owns(workspace: Optional[Workspace], owner: str, email: Optional[str]) -> bool:
        """
        Owner key and recorded owner email must both match the caller; a
        workspace without a recorded email belongs to nobody.
        """
        if workspace is None or workspace.owner != owner:
            return False
        recorded = (workspace.owner_email or "").strip().lower()
        return bool(recorded) and recorded == (email or "").strip().lower()

    def _authorize(self, owner: str, email: Optional[str], obj: BackingObject) -> Workspace:
        workspace = decode(obj.labels)
        if not self._owns(workspace, owner, email):
            logger.warning("Denied access to %s for owner %s", obj.name, owner)
            raise Forbidden()
        return workspace

    async def _lookup(self, identity: VerifiedIdentity, project: str) -> Tuple[str, str, Optional[BackingObject]]:
        owner = self._owner(identity)
        project = validate_project(project)
        obj = await self.backend.lookup(workspace_name(owner, project))
        return owner, project, obj

    async def _authorized(self, identity: VerifiedIdentity, project: str) -> Tuple[BackingObject, Workspace]:
        owner, _, obj = await self._lookup(identity, project)
        if obj is None:
            raise NotFound()
        return obj, self._authorize(owner, identity.email, obj)

    async def _relabel(
        self,
        obj: BackingObject,
        read: Workspace,
        updated: Workspace,
        environment: Optional[Dict[str, Optional[str]]] = None,
    ) -> None:
        """
        Replace a workspace's labels (and optionally env entries), failing
        with Conflict when another request relabeled it since ``read`` was
        decoded.
        """
        await self.backend.require_ready()
        fresh = await self.backend.lookup(obj.name)
        if fresh is None:
            raise NotFound()
        current = decode(fresh.labels)
        if current is None or current.owner != read.owner:
            raise Forbidden()
        if current.generation != read.generation:
            raise Conflict("Workspace changed concurrently; retry the request")

        target = updated.next_generation()
        labels = strip_proxy_labels(reencode(fresh.labels, target))
        labels.update(self._proxy_labels(target))
        await self.backend.relabel(fresh, labels, environment)
        logger.info("Relabeled %s to generation %d", fresh.name, target.generation)

    # --------------------------
    # Create
    # --------------------------

    async def init(
        self,
        identity: VerifiedIdentity,
        project: str,
        preset: Preset,
        *,
        cpus: Optional[float] = None,
        mem_mb: Optional[int] = None,
        repository: Optional[DeploymentSource] = None,
        gpu: bool = False,
    ) -> LifecycleResult:
        """
        Create and start a workspace, or report the existing one.
        """
        owner = self._owner(identity)
        project = validate_project(project)
        limits = self.resolve_limits(cpus, mem_mb)
        self._check_gpu(gpu)
        if preset.requires_repository and repository is None:
            raise InvalidArgument("A git-deployed workspace requires a repository")
        if repository is not None and not preset.requires_repository:
            raise InvalidArgument("Only git-deployed workspaces take a repository")

        await self.backend.require_ready()
        existing = await self.backend.lookup(workspace_name(owner, project))
        if existing is not None:
            workspace = self._authorize(owner, identity.email, existing)
            return LifecycleResult("Workspace already exists", WorkspaceView.of(existing, workspace))
        return await self._provision(owner, project, preset, limits, repository, identity.email, gpu, "Workspace created")

    async def _provision(
        self,
        owner: str,
        project: str,
        preset: Preset,
        limits: ResourceLimits,
        repository: Optional[DeploymentSource],
        owner_email: Optional[str],
        gpu: bool,
        message: str,
    ) -> LifecycleResult:
        """
        volume -> networks -> image -> (clone) -> object -> start.

        Sub-resources are ensured idempotently, so a retry after a partial
        failure picks up where the previous attempt stopped.
        """
        name = workspace_name(owner, project)
        volume = self._volume(owner, project)
        path = base_path(self.settings.base_path_prefix, owner, project)

        await self.backend.ensure_storage(owner, project, volume)
        await self.backend.ensure_networks(owner)
        image = preset.image(self.settings)
        await self.runtime.ensure_image(image)

        deployment: Optional[DeploymentSource] = None
        if repository is not None:
            commit = await self.pipeline.clone(name, volume, repository)
            deployment = replace(repository, last_commit=commit)

        workspace = Workspace(
            owner=owner,
            project=project,
            preset=preset,
            base_path=path,
            public_url=public_url(self.settings.public_students_base, owner, project),
            created_at=now_utc_iso(),
            limits=limits,
            routes=RouteTable.with_root(preset.root_route()),
            deployment=deployment,
            owner_email=owner_email,
            gpu=gpu,
        )
        labels = encode(workspace)
        labels.update(self._proxy_labels(workspace))
        plan = ProvisionPlan(
            name=name,
            owner=owner,
            project=project,
            image=image,
            labels=labels,
            volume=volume,
            mount_target=preset.mount_target,
            nano_cpus=limits.cpu_nanos,
            mem_bytes=limits.mem_bytes,
            command=preset.command(path, deployment),
            environment=preset.environment(deployment),
            gpu=gpu,
        )

        try:
            await self.backend.create(plan)
        except NameConflict:
            # Lost an inspect-then-create race on the same name.
            obj = await self.backend.lookup(name)
            if obj is None:
                raise
            return LifecycleResult("Workspace already exists", WorkspaceView.of(obj, self._authorize(owner, owner_email, obj)))

        obj = await self.backend.lookup(name)
        if obj is None:
            raise NotFound("Workspace disappeared during creation")
        if not obj.running:
            await self.backend.start(obj)
            obj = replace(obj, run_state=RunState.running)
        logger.info("Created workspace %s (%s)", name, preset.kind)
        return LifecycleResult(message, WorkspaceView.of(obj, workspace))

    # --------------------------
    # Run state
    # --------------------------

    async def start(self, identity: VerifiedIdentity, project: str) -> LifecycleResult:
        obj, workspace = await self._authorized(identity, project)
        if obj.running:
            return LifecycleResult("Workspace is already running", WorkspaceView.of(obj, workspace))
        await self.backend.start(obj)
        logger.info("Started workspace %s", obj.name)
        return LifecycleResult("Workspace started", WorkspaceView.of(replace(obj, run_state=RunState.running), workspace))

    async def stop(self, identity: VerifiedIdentity, project: str) -> LifecycleResult:
        obj, workspace = await self._authorized(identity, project)
        if not obj.running:
            return LifecycleResult("Workspace is already stopped", WorkspaceView.of(obj, workspace))
        await self.backend.stop(obj)
        logger.info("Stopped workspace %s", obj.name)
        return LifecycleResult("Workspace stopped", WorkspaceView.of(replace(obj, run_state=RunState.stopped), workspace))

    async def restart(self, identity: VerifiedIdentity, project: str) -> LifecycleResult:
        obj, workspace = await self._authorized(identity, project)
        if obj.running:
            await self.backend.restart(obj)
        else:
            await self.backend.start(obj)
        logger.info("Restarted workspace %s", obj.name)
        return LifecycleResult("Workspace restarted", WorkspaceView.of(replace(obj, run_state=RunState.running), workspace))

    # --------------------------
    # Queries
    # --------------------------

    async def status(self, identity: VerifiedIdentity, project: str) -> WorkspaceView:
        owner, project, obj = await self._lookup(identity, project)
        if obj is None:
            return WorkspaceView.absent(project)
        return WorkspaceView.of(obj, self._authorize(owner, identity.email, obj))

    async def list_mine(self, identity: VerifiedIdentity) -> List[WorkspaceView]:
        owner = self._owner(identity)
        views: List[WorkspaceView] = []
        for obj in await self.backend.list_owned(owner):
            workspace = decode(obj.labels)
            if not self._owns(workspace, owner, identity.email):
                continue
            views.append(WorkspaceView.of(obj, workspace))
        return sorted(views, key=lambda v: v.project)

    async def list_routes(self, identity: VerifiedIdentity, project: str) -> Workspace:
        _, workspace = await self._authorized(identity, project)
        return workspace

    # --------------------------
    # Routes
    # --------------------------

    async def add_route(self, identity: VerifiedIdentity, project: str, endpoint: str, port: object) -> LifecycleResult:
        obj, workspace = await self._authorized(identity, project)
        table = workspace.routes.add(endpoint, port)
        updated = workspace.with_routes(table)
        await self._relabel(obj, workspace, updated)
        route = table.routes[-1]
        return LifecycleResult(f"Route '{route.endpoint}' added", WorkspaceView.of(obj, updated), route=route)

    async def remove_route(self, identity: VerifiedIdentity, project: str, endpoint: str) -> LifecycleResult:
        obj, workspace = await self._authorized(identity, project)
        table = workspace.routes.remove(endpoint)
        await self._relabel(obj, workspace, workspace.with_routes(table))
        return LifecycleResult(f"Route '{endpoint.strip().lower()}' removed")

    # --------------------------
    # Teardown
    # --------------------------

    async def _teardown(self, obj: Optional[BackingObject], owner: str, project: str, *, fresh_volume: bool = False) -> None:
        """
        Remove the object, its helpers and its volume.

        Volume removal is best-effort unless ``fresh_volume`` is set: a wipe
        retries while swarm tasks release the volume and fails with
        RuntimeUnavailable rather than re-creating on top of old data.
        """
        name = workspace_name(owner, project)
        if obj is not None:
            await self.backend.remove(obj)
            logger.info("Removed workspace object %s", name)
        await self.pipeline.cleanup_helpers(name)
        volume = self._volume(owner, project)
        attempts = self.volume_release_attempts if fresh_volume else 1
        for attempt in range(1, attempts + 1):
            try:
                if await self.runtime.remove_volume(volume):
                    logger.info("Removed volume %s", volume)
                return
            except WorkspaceError as e:
                logger.warning("Volume %s could not be removed yet (attempt %d/%d): %s", volume, attempt, attempts, e.message)
            if attempt < attempts:
                await asyncio.sleep(self.volume_release_delay)
        if fresh_volume:
            raise RuntimeUnavailable(
                f"Volume {volume} is still in use; the workspace was removed and can be re-created once it is released"
            )

    async def destroy(self, identity: VerifiedIdentity, project: str) -> LifecycleResult:
        owner, project, obj = await self._lookup(identity, project)
        if obj is not None:
            self._authorize(owner, identity.email, obj)
        await self.backend.require_ready()
        await self._teardown(obj, owner, project)
        if obj is None:
            return LifecycleResult("Workspace does not exist")
        return LifecycleResult("Workspace destroyed")

    async def wipe(
        self,
        identity: VerifiedIdentity,
        project: str,
        preset: Optional[Preset] = None,
        *,
        cpus: Optional[float] = None,
        mem_mb: Optional[int] = None,
        repository: Optional[DeploymentSource] = None,
        gpu: Optional[bool] = None,
    ) -> LifecycleResult:
        """
        Destroy then re-create with default routes and a fresh volume.

        Preset, limits, repository and GPU placement default to the captured
        workspace; when the workspace is already gone a preset must be
        supplied.
        """
        owner, project, obj = await self._lookup(identity, project)
        if obj is not None:
            captured = self._authorize(owner, identity.email, obj)
            preset = preset or captured.preset
            if gpu is None:
                gpu = captured.gpu
            if cpus is None and mem_mb is None:
                limits = captured.limits
            else:
                limits = self.resolve_limits(cpus, mem_mb)
            if repository is None and captured.deployment is not None and preset.requires_repository:
                repository = replace(captured.deployment, last_commit=None)
        elif preset is None:
            raise InvalidArgument("Workspace does not exist; a preset is required to re-create it")
        else:
            limits = self.resolve_limits(cpus, mem_mb)

        if preset.requires_repository and repository is None:
            raise InvalidArgument("A git-deployed workspace requires a repository")
        if repository is not None and not preset.requires_repository:
            repository = None
        gpu = bool(gpu)
        self._check_gpu(gpu)

        await self.backend.require_ready()
        await self._teardown(obj, owner, project, fresh_volume=True)
        return await self._provision(owner, project, preset, limits, repository, identity.email, gpu, "Workspace wiped")

    # --------------------------
    # Deployment
    # --------------------------

    async def clone(self, identity: VerifiedIdentity, project: str, source: DeploymentSource) -> LifecycleResult:
        obj, workspace = await self._authorized(identity, project)
        if not workspace.preset.requires_repository:
            raise InvalidArgument("This is not a repository workspace")
        volume = self._volume(workspace.owner, workspace.project)
        commit = await self.pipeline.clone(workspace.name, volume, source)
        deployment = replace(source, last_commit=commit)
        await self._relabel(
            obj,
            workspace,
            workspace.with_deployment(deployment),
            environment=_env_changes(workspace.preset, workspace.deployment, deployment),
        )
        return LifecycleResult(f"Cloned {source.repo_url} at {commit[:12]}", commit=commit)

    async def pull(self, identity: VerifiedIdentity, project: str) -> LifecycleResult:
        obj, workspace = await self._authorized(identity, project)
        source = workspace.deployment
        if not workspace.preset.requires_repository or source is None:
            raise InvalidArgument("This is not a repository workspace")
        volume = self._volume(workspace.owner, workspace.project)
        commit = await self.pipeline.pull(workspace.name, volume, source)
        if commit == source.last_commit:
            return LifecycleResult("Already up to date", commit=commit)
        await self._relabel(obj, workspace, workspace.with_deployment(replace(source, last_commit=commit)))
        return LifecycleResult(f"Updated to {commit[:12]}", commit=commit)

    # --------------------------
    # Supervised programs
    # --------------------------

    async def _supervisorctl(self, obj: BackingObject, command: List[str]) -> Tuple[int, str]:
        exit_code, chunks = await self.backend.run(obj, command)
        text = output_text(demux_output(chunks))
        if exit_code in MISSING_EXECUTABLE_EXIT_CODES:
            raise InvalidArgument("This workspace does not run supervised services")
        return exit_code, text

    async def _program_status(self, obj: BackingObject) -> List[ProgramStatus]:
        exit_code, text = await self._supervisorctl(obj, status_command())
        # status exits 3 while any program is stopped
        if exit_code not in (0, 3):
            raise CommandFailed("Reading service status failed", output=text)
        return parse_status(text, self.settings.supervisor_programs)

    async def list_programs(self, identity: VerifiedIdentity, project: str) -> ProgramListing:
        obj, _ = await self._authorized(identity, project)
        if not obj.running:
            return ProgramListing(workspace_running=False)
        return ProgramListing(workspace_running=True, programs=await self._program_status(obj))

    async def control_program(
        self,
        identity: VerifiedIdentity,
        project: str,
        service: str,
        action: str,
    ) -> ProgramStatus:
        """
        Start or stop one supervised program and return its resulting state.

        Starting a running program (or stopping a stopped one) succeeds.
        """
        action = validate_action(action)
        name = validate_program(service, self.settings.supervisor_programs)
        obj, _ = await self._authorized(identity, project)
        if not obj.running:
            raise InvalidArgument("Workspace is not running")

        exit_code, text = await self._supervisorctl(obj, control_command(action, name))
        lowered = text.lower()
        if "no such process" in lowered:
            raise NotFound(f"Service '{name}' is not configured in this workspace")
        if exit_code != 0 and "already started" not in lowered and "not running" not in lowered:
            raise CommandFailed(f"Failed to {action} {name}", output=text)

        logger.info("%s %s in %s", "Started" if action == "start" else "Stopped", name, obj.name)
        return ProgramListing(True, await self._program_status(obj)).get(name)

    async def start_program(self, identity: VerifiedIdentity, project: str, service: str) -> ProgramStatus:
        return await self.control_program(identity, project, service, "start")

    async def stop_program(self, identity: VerifiedIdentity, project: str, service: str) -> ProgramStatus:
        return await self.control_program(identity, project, service, "stop")

    # --------------------------
    # Streams
    # --------------------------

    async def open_logs(
        self,
        identity: VerifiedIdentity,
        project: str,
        *,
        follow: bool = False,
        tail: Optional[int] = None,
    ) -> LogStream:
        obj, _ = await self._authorized(identity, project)
        return await self.backend.logs(obj, follow=follow, tail=tail)

    async def open_exec(self, identity: VerifiedIdentity, project: str, command: List[str]) -> ExecSession:
        obj, _ = await self._authorized(identity, project)
        return await self.backend.exec(obj, command)


__all__ = [
    "DEFAULT_SHELL",
    "WorkspaceView",
    "LifecycleResult",
    "WorkspaceController",
    "parse_shell_command",
]
