from __future__ import annotations

"""
Pydantic models for the Hydra workspace API.

These models define the API contracts for:
- Workspace creation, wipe and status
- Route CRUD
- Git deployment
- Supervised in-workspace services
- Uniform success/error envelopes

Notes:
- Request validation stays shallow and user-friendly; names, ports and
  repository input are validated again by the workspace modules, which own
  the rules.
- Every response carries ``success`` and a human-readable ``message``.
"""

from typing import List, Optional

from pydantic import BaseModel, Field, field_validator

from hydra_server.app.workspaces.core import RunState
from hydra_server.app.workspaces.lifecycle import WorkspaceView
from hydra_server.app.workspaces.route_table import Route
from hydra_server.app.workspaces.supervisor import ProgramStatus


# -----------------------
# Requests
# -----------------------

class ResourceRequest(BaseModel):
    cpus: Optional[float] = Field(default=None, gt=0, description="CPU limit in cores (e.g. 1.5)")
    mem_mb: Optional[int] = Field(default=None, gt=0, description="Memory limit in MiB")


class RepositoryRequest(BaseModel):
    url: str = Field(..., description="https://, http://, ssh:// or git@host:path")
    branch: Optional[str] = None
    subdir: Optional[str] = None
    start_command: Optional[str] = None

    @field_validator("url")
    def v_url(cls, v: str) -> str:
        v = (v or "").strip()
        if not v:
            raise ValueError("url must not be empty")
        return v


class PresetFields(BaseModel):
    preset: Optional[str] = Field(default=None, description="notebook | static-site | git-deployed | custom")
    runtime: Optional[str] = Field(default=None, description="git-deployed runtime: node | python | static")
    image: Optional[str] = Field(default=None, description="custom preset image")
    port: Optional[int] = Field(default=None, description="custom preset port")
    command: Optional[List[str]] = Field(default=None, description="custom preset command")
    strip_prefix: bool = True
    resources: Optional[ResourceRequest] = None
    repository: Optional[RepositoryRequest] = None
    gpu: Optional[bool] = Field(default=None, description="swarm mode: place on a GPU node")

    @field_validator("preset", "runtime")
    def v_lower(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return None
        v = v.strip().lower()
        return v or None

    @field_validator("image")
    def v_image(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return None
        v = v.strip()
        if not v:
            return None
        if " " in v:
            raise ValueError("image must not contain whitespace")
        return v


class WorkspaceStartRequest(PresetFields):
    project: str = Field(..., description="Project name: 1-40 of a-z, 0-9 and '-'")
    preset: str = Field(default="notebook", description="notebook | static-site | git-deployed | custom")


class WipeRequest(PresetFields):
    """Optional preset override; omitted fields keep the captured workspace."""


class RouteCreateRequest(BaseModel):
    endpoint: str
    port: int


# -----------------------
# Responses
# -----------------------

class ActionResponse(BaseModel):
    success: bool = True
    message: str


class ErrorResponse(BaseModel):
    success: bool = False
    message: str
    output: Optional[str] = None


class RouteModel(BaseModel):
    endpoint: str
    port: int
    path: str
    url: str
    strip_prefix: bool
    root: bool = False

    @staticmethod
    def build(route: Route, base_path: str, workspace_url: str) -> "RouteModel":
        url = workspace_url if route.root else f"{workspace_url}{route.endpoint}/"
        return RouteModel(
            endpoint=route.endpoint,
            port=route.port,
            path=route.path(base_path),
            url=url,
            strip_prefix=route.strip_prefix,
            root=route.root,
        )


class WorkspaceSummary(BaseModel):
    project: str
    status: RunState
    name: Optional[str] = None
    preset: Optional[str] = None
    runtime: Optional[str] = None
    url: Optional[str] = None
    base_path: Optional[str] = None
    created_at: Optional[str] = None
    image: Optional[str] = None
    replicas: Optional[str] = None
    cpus: Optional[float] = None
    mem_mb: Optional[int] = None
    repo_url: Optional[str] = None
    branch: Optional[str] = None
    last_commit: Optional[str] = None
    gpu: bool = False
    routes: List[RouteModel] = Field(default_factory=list)

    @staticmethod
    def from_view(view: WorkspaceView) -> "WorkspaceSummary":
        ws = view.workspace
        if ws is None:
            return WorkspaceSummary(project=view.project, status=view.run_state)
        source = ws.deployment
        return WorkspaceSummary(
            project=ws.project,
            status=view.run_state,
            name=ws.name,
            preset=ws.preset.kind,
            runtime=getattr(getattr(ws.preset, "runtime", None), "value", None),
            url=ws.public_url,
            base_path=ws.base_path,
            created_at=ws.created_at,
            image=view.image,
            replicas=view.replicas,
            cpus=ws.limits.cpu_nanos / 1e9,
            mem_mb=ws.limits.mem_bytes // 1024**2,
            repo_url=source.repo_url if source else None,
            branch=source.branch if source else None,
            last_commit=source.last_commit if source else None,
            gpu=ws.gpu,
            routes=[RouteModel.build(r, ws.base_path, ws.public_url) for r in ws.routes.routes],
        )


class WorkspaceResponse(ActionResponse):
    workspace: WorkspaceSummary


class WorkspaceListResponse(ActionResponse):
    workspaces: List[WorkspaceSummary] = Field(default_factory=list)


class RouteListResponse(ActionResponse):
    routes: List[RouteModel] = Field(default_factory=list)


class RouteResponse(ActionResponse):
    route: RouteModel


class DeploymentResponse(ActionResponse):
    commit: Optional[str] = None


class ProgramModel(BaseModel):
    name: str
    state: str
    running: bool

    @staticmethod
    def build(program: ProgramStatus) -> "ProgramModel":
        return ProgramModel(name=program.name, state=program.state, running=program.running)


class ProgramListResponse(ActionResponse):
    running: bool
    services: List[ProgramModel] = Field(default_factory=list)


class ProgramResponse(ActionResponse):
    service: ProgramModel


__all__ = [
    "ResourceRequest",
    "RepositoryRequest",
    "PresetFields",
    "WorkspaceStartRequest",
    "WipeRequest",
    "RouteCreateRequest",
    "ActionResponse",
    "ErrorResponse",
    "RouteModel",
    "WorkspaceSummary",
    "WorkspaceResponse",
    "WorkspaceListResponse",
    "RouteListResponse",
    "RouteResponse",
    "DeploymentResponse",
    "ProgramModel",
    "ProgramListResponse",
    "ProgramResponse",
]
