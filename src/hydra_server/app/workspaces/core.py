from __future__ import annotations

"""
Core helpers for workspaces: label keys, deterministic names, input validation,
run states and time.

Everything here is side-effect free. The label set of a runtime object is the
only metadata store, so the keys below are the on-disk schema: changing one is
a migration.
"""

import enum
import re
from datetime import datetime, timezone
from typing import Dict, List

from hydra_server.app.errors import InvalidArgument

# --------------------------
# Labels (public constants)
# --------------------------

MANAGED_BY_VALUE = "hydra-workspaces"

LABEL_MANAGED_BY = "hydra.managed_by"
LABEL_OWNER = "hydra.owner"
LABEL_OWNER_EMAIL = "hydra.owner_email"
LABEL_PROJECT = "hydra.project"
LABEL_PRESET = "hydra.preset"
LABEL_RUNTIME = "hydra.runtime"
LABEL_IMAGE = "hydra.image"
LABEL_PORT = "hydra.port"
LABEL_COMMAND = "hydra.command"
LABEL_STRIP_PREFIX = "hydra.strip_prefix"
LABEL_BASE_PATH = "hydra.base_path"
LABEL_PUBLIC_URL = "hydra.public_url"
LABEL_CREATED_AT = "hydra.created_at"
LABEL_CPU_NANOS = "hydra.cpu_nanos"
LABEL_MEM_BYTES = "hydra.mem_bytes"
LABEL_ROUTES = "hydra.port_routes"
LABEL_REPO_URL = "hydra.repo_url"
LABEL_REPO_BRANCH = "hydra.repo_branch"
LABEL_REPO_SUBDIR = "hydra.repo_subdir"
LABEL_START_COMMAND = "hydra.start_command"
LABEL_LAST_COMMIT = "hydra.last_commit"
LABEL_GENERATION = "hydra.generation"
LABEL_GPU = "hydra.gpu"
LABEL_STORAGE_TYPE = "hydra.storage_type"

# Deployment helper objects
LABEL_HELPER_FOR = "hydra.helper_for"
LABEL_HELPER_KIND = "hydra.helper_kind"

TRAEFIK_PREFIX = "traefik."


class RunState(str, enum.Enum):
    not_created = "not_created"
    stopped = "stopped"
    running = "running"


# --------------------------
# Validation
# --------------------------

_NAME_RE = re.compile(r"^[a-z0-9-]{1,40}$")


def validate_project(project: str) -> str:
    """
    Normalize and validate a project name; raises InvalidArgument.
    """
    value = (project or "").strip().lower()
    if not _NAME_RE.match(value):
        raise InvalidArgument("Invalid project name (use 1-40 of a-z, 0-9 and '-')")
    return value


def validate_endpoint(endpoint: str) -> str:
    value = (endpoint or "").strip().lower()
    if not _NAME_RE.match(value):
        raise InvalidArgument("Invalid endpoint name (use 1-40 of a-z, 0-9 and '-')")
    return value


def validate_port(port: object) -> int:
    try:
        value = int(port)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        raise InvalidArgument("Port must be an integer")
    if isinstance(port, bool) or not 1024 <= value <= 65535:
        raise InvalidArgument("Port must be between 1024 and 65535")
    return value


# --------------------------
# Deterministic names
# --------------------------

def workspace_name(owner: str, project: str) -> str:
    return f"workspace-{owner}-{project}"


def volume_name(prefix: str, owner: str, project: str) -> str:
    return f"{prefix}{owner}-{project}"


def base_path(prefix: str, owner: str, project: str) -> str:
    return f"{prefix.rstrip('/')}/{owner}/{project}"


def public_url(public_base: str, owner: str, project: str, endpoint: str = "") -> str:
    url = f"{public_base.rstrip('/')}/{owner}/{project}/"
    return f"{url}{endpoint}/" if endpoint else url


# --------------------------
# Label filters
# --------------------------

def managed_label_filters(owner: str) -> Dict[str, List[str]]:
    """
    Docker SDK filters for objects managed by this orchestrator for one owner.
    Usage:
        client.containers.list(all=True, filters=managed_label_filters(owner))
    """
    return {"label": [f"{LABEL_MANAGED_BY}={MANAGED_BY_VALUE}", f"{LABEL_OWNER}={owner}"]}


def helper_label_filters(name: str) -> Dict[str, List[str]]:
    return {"label": [f"{LABEL_MANAGED_BY}={MANAGED_BY_VALUE}", f"{LABEL_HELPER_FOR}={name}"]}


# --------------------------
# Time helpers
# --------------------------

def now_utc_iso() -> str:
    """
    Current UTC time in ISO-8601 format with timezone info, second precision.
    """
    return datetime.now(timezone.utc).replace(microsecond=0).isoformat()


__all__ = [
    "MANAGED_BY_VALUE",
    "LABEL_MANAGED_BY",
    "LABEL_OWNER",
    "LABEL_OWNER_EMAIL",
    "LABEL_PROJECT",
    "LABEL_PRESET",
    "LABEL_RUNTIME",
    "LABEL_IMAGE",
    "LABEL_PORT",
    "LABEL_COMMAND",
    "LABEL_STRIP_PREFIX",
    "LABEL_BASE_PATH",
    "LABEL_PUBLIC_URL",
    "LABEL_CREATED_AT",
    "LABEL_CPU_NANOS",
    "LABEL_MEM_BYTES",
    "LABEL_ROUTES",
    "LABEL_REPO_URL",
    "LABEL_REPO_BRANCH",
    "LABEL_REPO_SUBDIR",
    "LABEL_START_COMMAND",
    "LABEL_LAST_COMMIT",
    "LABEL_GENERATION",
    "LABEL_GPU",
    "LABEL_STORAGE_TYPE",
    "LABEL_HELPER_FOR",
    "LABEL_HELPER_KIND",
    "TRAEFIK_PREFIX",
    "RunState",
    "validate_project",
    "validate_endpoint",
    "validate_port",
    "workspace_name",
    "volume_name",
    "base_path",
    "public_url",
    "managed_label_filters",
    "helper_label_filters",
    "now_utc_iso",
]
