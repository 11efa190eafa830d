from __future__ import annotations

"""
Shared FastAPI dependencies for the Hydra workspace API.

Contents:
- get_settings(): cached accessor for ServerConfig.
- current_identity(): verified identity from header, bearer token or cookie.
- identity_from_websocket(): same, plus a ``token`` query parameter.
- docker_client(): shared Docker client.
- get_runtime() / get_controller(): the runtime adapter and lifecycle controller.

Project policy notes:
- No lazy imports.
- No try/except guards around imports; failures should be explicit.
"""

import logging
from functools import lru_cache
from typing import Optional

import docker
from docker import DockerClient
from docker.errors import DockerException
from fastapi import Depends, Request, WebSocket

from hydra_server.app.config import ServerConfig, get_settings as _config_get_settings
from hydra_server.app.errors import Forbidden, NotAuthenticated, RuntimeUnavailable
from hydra_server.app.security import (
    InvalidTokenError,
    TokenExpiredError,
    VerifiedIdentity,
    parse_and_verify_identity_token,
)
from hydra_server.app.workspaces.lifecycle import WorkspaceController
from hydra_server.app.workspaces.runtime import DockerRuntime

logger = logging.getLogger("hydra_workspaces")


# -------------
# Configuration
# -------------

def get_settings() -> ServerConfig:
    """
    Cached settings accessor. Delegates to the unified ServerConfig provider.
    """
    return _config_get_settings()


# -------------------
# Identity
# -------------------

def verify_identity(token: Optional[str], settings: ServerConfig) -> VerifiedIdentity:
    """
    Verify a presented identity token against the shared secret and the
    optional role allow-list.
    """
    if not settings.identity_secret:
        raise NotAuthenticated("Identity verification is not configured")
    if not token:
        raise NotAuthenticated()
    try:
        identity = parse_and_verify_identity_token(secret=settings.identity_secret, token=token)
    except TokenExpiredError:
        raise NotAuthenticated("Identity token expired")
    except InvalidTokenError as e:
        logger.info("Rejected identity token: %s", e)
        raise NotAuthenticated("Invalid identity token")
    if not identity.owner_key:
        raise NotAuthenticated("Identity carries no usable owner key")
    if settings.allowed_roles and not identity.has_any_role(settings.allowed_roles):
        raise Forbidden("Your role is not permitted to manage workspaces")
    return identity


def _token_from_headers(headers, cookies, settings: ServerConfig) -> Optional[str]:
    value = headers.get(settings.identity_header_name)
    if value:
        return value.strip()
    auth = headers.get("authorization") or ""
    if auth.lower().startswith("bearer "):
        return auth[7:].strip() or None
    return cookies.get(settings.identity_cookie_name) or None


async def current_identity(
    request: Request,
    settings: ServerConfig = Depends(get_settings),
) -> VerifiedIdentity:
    return verify_identity(_token_from_headers(request.headers, request.cookies, settings), settings)


def identity_from_websocket(websocket: WebSocket, settings: ServerConfig) -> VerifiedIdentity:
    """
    WebSocket variant: browsers cannot set headers on the upgrade request,
    so a ``token`` query parameter is accepted as well.
    """
    token = _token_from_headers(websocket.headers, websocket.cookies, settings)
    if not token:
        token = websocket.query_params.get("token")
    return verify_identity(token, settings)


# --------------------------
# Docker client / runtime / controller
# --------------------------

@lru_cache(maxsize=1)
def _shared_client(timeout: int) -> DockerClient:
    return docker.from_env(timeout=timeout)


def docker_client(settings: ServerConfig = Depends(get_settings)) -> DockerClient:
    """
    Provide the process-wide DockerClient configured via environment.
    """
    try:
        return _shared_client(settings.docker_client_timeout)
    except DockerException as e:
        raise RuntimeUnavailable(f"Docker is not reachable: {e}")


def get_runtime(client: DockerClient = Depends(docker_client)) -> DockerRuntime:
    return DockerRuntime(client)


def get_controller(
    runtime: DockerRuntime = Depends(get_runtime),
    settings: ServerConfig = Depends(get_settings),
) -> WorkspaceController:
    return WorkspaceController(runtime, settings)


__all__ = [
    "get_settings",
    "verify_identity",
    "current_identity",
    "identity_from_websocket",
    "docker_client",
    "get_runtime",
    "get_controller",
]
