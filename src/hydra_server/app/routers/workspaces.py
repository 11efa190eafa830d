from __future__ import annotations

"""
Hydra workspace router: lifecycle, routes, git deployment,
supervised services, logs and exec.

Design:
- Stateless API; every request reads workspace state fresh from Docker.
- Every route requires a verified identity; the owner key derived from it
  scopes all names, and the lifecycle controller enforces ownership.
- Errors are raised as WorkspaceError subclasses and rendered by the app's
  exception handler as {"success": false, "message": ...}.

Notes:
- No lazy imports.
- No guarded imports around third-party packages.
"""

import logging
from typing import AsyncIterator, Optional

from fastapi import APIRouter, Body, Depends, Path, Query, Request, WebSocket, WebSocketDisconnect, status
from fastapi.responses import StreamingResponse
from starlette.websockets import WebSocketState

from hydra_server.app.config import ServerConfig
from hydra_server.app.deps import current_identity, get_controller, get_settings, identity_from_websocket
from hydra_server.app.errors import NotAuthenticated, Forbidden, WorkspaceError
from hydra_server.app.models import (
    ActionResponse,
    DeploymentResponse,
    PresetFields,
    ProgramListResponse,
    ProgramModel,
    ProgramResponse,
    RepositoryRequest,
    RouteCreateRequest,
    RouteListResponse,
    RouteModel,
    RouteResponse,
    WipeRequest,
    WorkspaceListResponse,
    WorkspaceResponse,
    WorkspaceStartRequest,
    WorkspaceSummary,
)
from hydra_server.app.security import VerifiedIdentity
from hydra_server.app.workspaces.deployment import build_source
from hydra_server.app.workspaces.lifecycle import LifecycleResult, WorkspaceController, parse_shell_command
from hydra_server.app.workspaces.presets import DeploymentSource, Preset, parse_preset
from hydra_server.app.workspaces.streaming import LogEvent, bridge_exec, format_sse, stream_log_events

logger = logging.getLogger("hydra_workspaces")

router = APIRouter()

_WS_POLICY_VIOLATION = 1008
_WS_INTERNAL_ERROR = 1011


# --------------------------
# Helpers
# --------------------------

def _preset_from(body: PresetFields, kind: Optional[str]) -> Preset:
    return parse_preset(
        kind or "",
        runtime=body.runtime,
        image=body.image,
        port=body.port,
        command=body.command,
        strip_prefix=body.strip_prefix,
    )


def _repository_from(repo: Optional[RepositoryRequest]) -> Optional[DeploymentSource]:
    if repo is None:
        return None
    return build_source(repo.url, repo.branch, repo.subdir, repo.start_command)


def _workspace_response(result: LifecycleResult) -> WorkspaceResponse:
    assert result.view is not None
    return WorkspaceResponse(message=result.message, workspace=WorkspaceSummary.from_view(result.view))


# --------------------------
# Routes: Lifecycle
# --------------------------

@router.post("/start", response_model=WorkspaceResponse)
async def start_workspace(
    body: WorkspaceStartRequest = Body(...),
    identity: VerifiedIdentity = Depends(current_identity),
    controller: WorkspaceController = Depends(get_controller),
) -> WorkspaceResponse:
    """
    Create and start a workspace; an existing one is reported as-is.
    Git-deployed workspaces clone their repository before the app starts.
    """
    preset = _preset_from(body, body.preset)
    resources = body.resources
    result = await controller.init(
        identity,
        body.project,
        preset,
        cpus=resources.cpus if resources else None,
        mem_mb=resources.mem_mb if resources else None,
        repository=_repository_from(body.repository),
        gpu=bool(body.gpu),
    )
    return _workspace_response(result)


@router.get("/mine", response_model=WorkspaceListResponse)
async def list_my_workspaces(
    identity: VerifiedIdentity = Depends(current_identity),
    controller: WorkspaceController = Depends(get_controller),
) -> WorkspaceListResponse:
    views = await controller.list_mine(identity)
    return WorkspaceListResponse(
        message=f"{len(views)} workspace(s)",
        workspaces=[WorkspaceSummary.from_view(v) for v in views],
    )


@router.get("/{project}", response_model=WorkspaceResponse)
async def get_workspace(
    project: str = Path(...),
    identity: VerifiedIdentity = Depends(current_identity),
    controller: WorkspaceController = Depends(get_controller),
) -> WorkspaceResponse:
    view = await controller.status(identity, project)
    message = "Workspace does not exist" if view.workspace is None else "Workspace found"
    return WorkspaceResponse(message=message, workspace=WorkspaceSummary.from_view(view))


@router.post("/{project}/start", response_model=WorkspaceResponse)
async def start_existing_workspace(
    project: str = Path(...),
    identity: VerifiedIdentity = Depends(current_identity),
    controller: WorkspaceController = Depends(get_controller),
) -> WorkspaceResponse:
    return _workspace_response(await controller.start(identity, project))


@router.post("/{project}/stop", response_model=WorkspaceResponse)
async def stop_workspace(
    project: str = Path(...),
    identity: VerifiedIdentity = Depends(current_identity),
    controller: WorkspaceController = Depends(get_controller),
) -> WorkspaceResponse:
    return _workspace_response(await controller.stop(identity, project))


@router.post("/{project}/restart", response_model=WorkspaceResponse)
async def restart_workspace(
    project: str = Path(...),
    identity: VerifiedIdentity = Depends(current_identity),
    controller: WorkspaceController = Depends(get_controller),
) -> WorkspaceResponse:
    return _workspace_response(await controller.restart(identity, project))


@router.delete("/{project}", response_model=ActionResponse)
async def destroy_workspace(
    project: str = Path(...),
    identity: VerifiedIdentity = Depends(current_identity),
    controller: WorkspaceController = Depends(get_controller),
) -> ActionResponse:
    """
    Remove the workspace object, its helpers and its volume. Succeeds when
    the workspace is already gone.
    """
    result = await controller.destroy(identity, project)
    return ActionResponse(message=result.message)


@router.post("/{project}/wipe", response_model=WorkspaceResponse)
async def wipe_workspace(
    project: str = Path(...),
    body: Optional[WipeRequest] = Body(None),
    identity: VerifiedIdentity = Depends(current_identity),
    controller: WorkspaceController = Depends(get_controller),
) -> WorkspaceResponse:
    body = body or WipeRequest()
    preset = _preset_from(body, body.preset) if body.preset else None
    resources = body.resources
    result = await controller.wipe(
        identity,
        project,
        preset,
        cpus=resources.cpus if resources else None,
        mem_mb=resources.mem_mb if resources else None,
        repository=_repository_from(body.repository),
        gpu=body.gpu,
    )
    return _workspace_response(result)


# --------------------------
# Routes: Route table
# --------------------------

@router.get("/{project}/routes", response_model=RouteListResponse)
async def list_routes(
    project: str = Path(...),
    identity: VerifiedIdentity = Depends(current_identity),
    controller: WorkspaceController = Depends(get_controller),
) -> RouteListResponse:
    ws = await controller.list_routes(identity, project)
    routes = [RouteModel.build(r, ws.base_path, ws.public_url) for r in ws.routes.routes]
    return RouteListResponse(message=f"{len(routes)} route(s)", routes=routes)


@router.post("/{project}/routes", response_model=RouteResponse, status_code=status.HTTP_201_CREATED)
async def add_route(
    project: str = Path(...),
    body: RouteCreateRequest = Body(...),
    identity: VerifiedIdentity = Depends(current_identity),
    controller: WorkspaceController = Depends(get_controller),
) -> RouteResponse:
    result = await controller.add_route(identity, project, body.endpoint, body.port)
    assert result.route is not None and result.view is not None and result.view.workspace is not None
    ws = result.view.workspace
    return RouteResponse(message=result.message, route=RouteModel.build(result.route, ws.base_path, ws.public_url))


@router.delete("/{project}/routes/{endpoint}", response_model=ActionResponse)
async def remove_route(
    project: str = Path(...),
    endpoint: str = Path(...),
    identity: VerifiedIdentity = Depends(current_identity),
    controller: WorkspaceController = Depends(get_controller),
) -> ActionResponse:
    result = await controller.remove_route(identity, project, endpoint)
    return ActionResponse(message=result.message)


# --------------------------
# Routes: Git deployment
# --------------------------

@router.post("/{project}/git-clone", response_model=DeploymentResponse)
async def git_clone(
    project: str = Path(...),
    body: RepositoryRequest = Body(...),
    identity: VerifiedIdentity = Depends(current_identity),
    controller: WorkspaceController = Depends(get_controller),
) -> DeploymentResponse:
    source = build_source(body.url, body.branch, body.subdir, body.start_command)
    result = await controller.clone(identity, project, source)
    return DeploymentResponse(message=result.message, commit=result.commit)


@router.post("/{project}/git-pull", response_model=DeploymentResponse)
async def git_pull(
    project: str = Path(...),
    identity: VerifiedIdentity = Depends(current_identity),
    controller: WorkspaceController = Depends(get_controller),
) -> DeploymentResponse:
    result = await controller.pull(identity, project)
    return DeploymentResponse(message=result.message, commit=result.commit)


# --------------------------
# Routes: Supervised services
# --------------------------

@router.get("/{project}/services", response_model=ProgramListResponse)
async def list_services(
    project: str = Path(...),
    identity: VerifiedIdentity = Depends(current_identity),
    controller: WorkspaceController = Depends(get_controller),
) -> ProgramListResponse:
    """
    Programs supervised inside the workspace; empty while it is stopped.
    """
    listing = await controller.list_programs(identity, project)
    message = f"{len(listing.programs)} service(s)" if listing.workspace_running else "Workspace is not running"
    return ProgramListResponse(
        message=message,
        running=listing.workspace_running,
        services=[ProgramModel.build(p) for p in listing.programs],
    )


@router.post("/{project}/services/{service}/start", response_model=ProgramResponse)
async def start_service(
    project: str = Path(...),
    service: str = Path(...),
    identity: VerifiedIdentity = Depends(current_identity),
    controller: WorkspaceController = Depends(get_controller),
) -> ProgramResponse:
    program = await controller.start_program(identity, project, service)
    return ProgramResponse(message=f"Service {program.name} started", service=ProgramModel.build(program))


@router.post("/{project}/services/{service}/stop", response_model=ProgramResponse)
async def stop_service(
    project: str = Path(...),
    service: str = Path(...),
    identity: VerifiedIdentity = Depends(current_identity),
    controller: WorkspaceController = Depends(get_controller),
) -> ProgramResponse:
    program = await controller.stop_program(identity, project, service)
    return ProgramResponse(message=f"Service {program.name} stopped", service=ProgramModel.build(program))


# --------------------------
# Routes: Streams
# --------------------------

async def _sse_events(events: AsyncIterator[LogEvent], request: Request) -> AsyncIterator[str]:
    try:
        async for event in events:
            if await request.is_disconnected():
                logger.debug("Log subscriber disconnected")
                break
            yield format_sse(event.to_dict())
    except WorkspaceError as e:
        yield format_sse({"message": e.message}, event="error")
    finally:
        await events.aclose()
    yield format_sse({"message": "stream ended"}, event="end")


@router.get("/{project}/logs/stream")
async def stream_logs(
    request: Request,
    project: str = Path(...),
    follow: bool = Query(True),
    tail: int = Query(200, ge=0, le=10000),
    identity: VerifiedIdentity = Depends(current_identity),
    controller: WorkspaceController = Depends(get_controller),
) -> StreamingResponse:
    """
    Server-sent events of {"stream", "line"}, terminated by an ``end`` event.
    """
    log_stream = await controller.open_logs(identity, project, follow=follow, tail=tail)
    return StreamingResponse(
        _sse_events(stream_log_events(log_stream), request),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )


@router.websocket("/{project}/exec")
async def exec_shell(
    websocket: WebSocket,
    project: str,
    command: Optional[str] = None,
    settings: ServerConfig = Depends(get_settings),
    controller: WorkspaceController = Depends(get_controller),
) -> None:
    """
    Interactive shell bridge. Text and binary frames are forwarded to the
    shell's stdin; shell output is sent back as binary frames.

    The caller is verified and the session opened before the upgrade is
    accepted, so no input ever reaches a session opened for someone else.
    """
    try:
        identity = identity_from_websocket(websocket, settings)
        session = await controller.open_exec(identity, project, parse_shell_command(command))
    except (NotAuthenticated, Forbidden) as e:
        await websocket.close(code=_WS_POLICY_VIOLATION, reason=e.message)
        return
    except WorkspaceError as e:
        await websocket.close(code=_WS_INTERNAL_ERROR, reason=e.message)
        return

    await websocket.accept()
    logger.info("Exec session %s opened for %s/%s", session.exec_id, identity.owner_key, project)

    async def receive() -> Optional[bytes]:
        try:
            message = await websocket.receive()
        except WebSocketDisconnect:
            return None
        if message.get("type") == "websocket.disconnect":
            return None
        if message.get("bytes") is not None:
            return message["bytes"]
        text = message.get("text")
        return text.encode("utf-8") if text is not None else b""

    async def send(data: bytes) -> None:
        await websocket.send_bytes(data)

    try:
        await bridge_exec(session, receive, send)
    finally:
        logger.info("Exec session %s closed", session.exec_id)
        if websocket.client_state == WebSocketState.CONNECTED:
            await websocket.close()
