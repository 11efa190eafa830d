"""
Error taxonomy for the Hydra workspace orchestrator.

Every failure surfaced to a caller is a WorkspaceError subclass carrying the
HTTP status code it maps to and a human-readable message. The FastAPI app
registers a single handler that renders these as:

    {"success": false, "message": "<message>"}

Usage:
    from hydra_server.app.errors import NotFound, Forbidden

    raise NotFound("Workspace does not exist")
    raise Forbidden()
"""

from __future__ import annotations

from typing import Any, Dict, Optional


class WorkspaceError(Exception):
    """
    Base exception for orchestrator failures.

    Attributes:
        message: Human-readable error message.
        status_code: HTTP status code to return.
    """

    status_code: int = 500
    default_message: str = "Workspace operation failed"

    def __init__(self, message: Optional[str] = None) -> None:
        self.message = message or self.default_message
        super().__init__(self.message)

    def to_response(self) -> Dict[str, Any]:
        return {"success": False, "message": self.message}


class NotAuthenticated(WorkspaceError):
    """401 - no verified identity accompanied the request."""

    status_code = 401
    default_message = "Not authenticated"


class Forbidden(WorkspaceError):
    """403 - identity present but not the owner of the target workspace."""

    status_code = 403
    default_message = "Not authorized to access this workspace"


class NotFound(WorkspaceError):
    """404 - workspace or route absent."""

    status_code = 404
    default_message = "Workspace does not exist"


class InvalidArgument(WorkspaceError):
    """400 - malformed project, endpoint, port, preset or repository input."""

    status_code = 400
    default_message = "Invalid argument"


class Conflict(WorkspaceError):
    """409 - the request collides with existing state."""

    status_code = 409
    default_message = "Conflicting workspace state"


class RuntimeUnavailable(WorkspaceError):
    """503 - the container runtime is unreachable or swarm mode is inactive."""

    status_code = 503
    default_message = "Container runtime unavailable"


class CommandFailed(WorkspaceError):
    """500 - a command run inside a workspace exited non-zero; carries its output."""

    status_code = 500
    default_message = "Command failed"

    def __init__(self, message: Optional[str] = None, output: str = "") -> None:
        super().__init__(message)
        self.output = output

    def to_response(self) -> Dict[str, Any]:
        body = super().to_response()
        if self.output:
            body["output"] = self.output
        return body


class DeploymentFailed(CommandFailed):
    """500 - a git helper exited non-zero."""

    default_message = "Deployment failed"


# --------------------------
# Route table failures
# --------------------------

class DuplicateEndpoint(Conflict):
    default_message = "Endpoint already exists"


class PortInUse(Conflict):
    default_message = "Port is already routed"


class ReservedName(InvalidArgument):
    default_message = "Endpoint name is reserved"


class ReservedPort(InvalidArgument):
    default_message = "Port is reserved"


# --------------------------
# Runtime adapter failures
# --------------------------

class NameConflict(Conflict):
    """The runtime refused to create an object because the name is taken."""

    default_message = "An object with this name already exists"


__all__ = [
    "WorkspaceError",
    "NotAuthenticated",
    "Forbidden",
    "NotFound",
    "InvalidArgument",
    "Conflict",
    "RuntimeUnavailable",
    "CommandFailed",
    "DeploymentFailed",
    "DuplicateEndpoint",
    "PortInUse",
    "ReservedName",
    "ReservedPort",
    "NameConflict",
]
