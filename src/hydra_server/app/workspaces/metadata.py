from __future__ import annotations

"""
Ownership & Metadata Codec.

A workspace has no record outside its backing runtime object: the object's
label set *is* the record. This module is the only place that reads or writes
the ``hydra.*`` label namespace.

- ``encode(workspace)`` is total and deterministic.
- ``decode(labels)`` fails closed: anything without the managed-by marker, or
  with malformed content, decodes to ``None`` and is treated as unmanaged.
- ``reencode(existing, workspace)`` rewrites only codec-owned keys and keeps
  every other label (runtime-injected, image labels, proxy labels) verbatim.

Invariant: ``decode(encode(w)) == w`` for every valid workspace ``w``.
"""

import json
import logging
from dataclasses import dataclass, replace
from typing import Dict, Optional

from hydra_server.app.errors import InvalidArgument
from hydra_server.app.workspaces.core import (
    LABEL_BASE_PATH,
    LABEL_COMMAND,
    LABEL_CPU_NANOS,
    LABEL_CREATED_AT,
    LABEL_GENERATION,
    LABEL_GPU,
    LABEL_IMAGE,
    LABEL_LAST_COMMIT,
    LABEL_MANAGED_BY,
    LABEL_MEM_BYTES,
    LABEL_OWNER,
    LABEL_OWNER_EMAIL,
    LABEL_PORT,
    LABEL_PRESET,
    LABEL_PROJECT,
    LABEL_PUBLIC_URL,
    LABEL_REPO_BRANCH,
    LABEL_REPO_SUBDIR,
    LABEL_REPO_URL,
    LABEL_ROUTES,
    LABEL_RUNTIME,
    LABEL_START_COMMAND,
    LABEL_STRIP_PREFIX,
    MANAGED_BY_VALUE,
    validate_project,
    workspace_name,
)
from hydra_server.app.workspaces.presets import (
    CustomPreset,
    DeploymentSource,
    GitDeployedPreset,
    Preset,
    parse_preset,
)
from hydra_server.app.workspaces.route_table import RouteTable

logger = logging.getLogger("hydra_workspaces")

CODEC_KEYS = frozenset({
    LABEL_MANAGED_BY,
    LABEL_OWNER,
    LABEL_OWNER_EMAIL,
    LABEL_PROJECT,
    LABEL_PRESET,
    LABEL_RUNTIME,
    LABEL_IMAGE,
    LABEL_PORT,
    LABEL_COMMAND,
    LABEL_STRIP_PREFIX,
    LABEL_BASE_PATH,
    LABEL_PUBLIC_URL,
    LABEL_CREATED_AT,
    LABEL_CPU_NANOS,
    LABEL_MEM_BYTES,
    LABEL_ROUTES,
    LABEL_REPO_URL,
    LABEL_REPO_BRANCH,
    LABEL_REPO_SUBDIR,
    LABEL_START_COMMAND,
    LABEL_LAST_COMMIT,
    LABEL_GENERATION,
    LABEL_GPU,
})


@dataclass(frozen=True)
class ResourceLimits:
    cpu_nanos: int
    mem_bytes: int


@dataclass(frozen=True)
class Workspace:
    """
    Decoded workspace record. Run state is not part of the record; it is
    read from the runtime alongside it.
    """
    owner: str
    project: str
    preset: Preset
    base_path: str
    public_url: str
    created_at: str
    limits: ResourceLimits
    routes: RouteTable
    deployment: Optional[DeploymentSource] = None
    owner_email: Optional[str] = None
    generation: int = 0
    gpu: bool = False

    def __post_init__(self) -> None:
        if not self.owner_email:
            object.__setattr__(self, "owner_email", None)

    @property
    def name(self) -> str:
        return workspace_name(self.owner, self.project)

    def with_routes(self, routes: RouteTable) -> "Workspace":
        return replace(self, routes=routes)

    def with_deployment(self, deployment: Optional[DeploymentSource]) -> "Workspace":
        return replace(self, deployment=deployment)

    def next_generation(self) -> "Workspace":
        return replace(self, generation=self.generation + 1)


# --------------------------
# Encode
# --------------------------

def encode(workspace: Workspace) -> Dict[str, str]:
    labels: Dict[str, str] = {
        LABEL_MANAGED_BY: MANAGED_BY_VALUE,
        LABEL_OWNER: workspace.owner,
        LABEL_PROJECT: workspace.project,
        LABEL_PRESET: workspace.preset.kind,
        LABEL_BASE_PATH: workspace.base_path,
        LABEL_PUBLIC_URL: workspace.public_url,
        LABEL_CREATED_AT: workspace.created_at,
        LABEL_CPU_NANOS: str(workspace.limits.cpu_nanos),
        LABEL_MEM_BYTES: str(workspace.limits.mem_bytes),
        LABEL_ROUTES: workspace.routes.to_json(),
        LABEL_GENERATION: str(workspace.generation),
    }
    if workspace.owner_email:
        labels[LABEL_OWNER_EMAIL] = workspace.owner_email
    if workspace.gpu:
        labels[LABEL_GPU] = "true"

    preset = workspace.preset
    if isinstance(preset, GitDeployedPreset):
        labels[LABEL_RUNTIME] = preset.runtime.value
    elif isinstance(preset, CustomPreset):
        labels[LABEL_IMAGE] = preset.image_ref
        labels[LABEL_PORT] = str(preset.port)
        labels[LABEL_COMMAND] = json.dumps(list(preset.command_args))
        labels[LABEL_STRIP_PREFIX] = "true" if preset.strip else "false"

    source = workspace.deployment
    if source is not None:
        labels[LABEL_REPO_URL] = source.repo_url
        optional = {
            LABEL_REPO_BRANCH: source.branch,
            LABEL_REPO_SUBDIR: source.subdir,
            LABEL_START_COMMAND: source.start_command,
            LABEL_LAST_COMMIT: source.last_commit,
        }
        labels.update({k: v for k, v in optional.items() if v})
    return labels


def reencode(existing: Optional[Dict[str, str]], workspace: Workspace) -> Dict[str, str]:
    """
    Replace codec-owned keys in an existing label set, preserving the rest.
    """
    kept = {k: v for k, v in (existing or {}).items() if k not in CODEC_KEYS}
    kept.update(encode(workspace))
    return kept


# --------------------------
# Decode
# --------------------------

def is_managed(labels: Optional[Dict[str, str]]) -> bool:
    return (labels or {}).get(LABEL_MANAGED_BY) == MANAGED_BY_VALUE


def _decode_preset(labels: Dict[str, str]) -> Preset:
    kind = labels[LABEL_PRESET]
    if kind == CustomPreset.kind:
        command = json.loads(labels.get(LABEL_COMMAND) or "[]")
        if not isinstance(command, list):
            raise ValueError("custom command must be a JSON list")
        return parse_preset(
            kind,
            image=labels.get(LABEL_IMAGE),
            port=int(labels.get(LABEL_PORT, "")),
            command=command,
            strip_prefix=labels.get(LABEL_STRIP_PREFIX, "true") == "true",
        )
    return parse_preset(kind, runtime=labels.get(LABEL_RUNTIME))


def _decode_deployment(labels: Dict[str, str]) -> Optional[DeploymentSource]:
    url = labels.get(LABEL_REPO_URL)
    if not url:
        return None
    return DeploymentSource(
        repo_url=url,
        branch=labels.get(LABEL_REPO_BRANCH) or None,
        subdir=labels.get(LABEL_REPO_SUBDIR) or None,
        start_command=labels.get(LABEL_START_COMMAND) or None,
        last_commit=labels.get(LABEL_LAST_COMMIT) or None,
    )


def decode(labels: Optional[Dict[str, str]]) -> Optional[Workspace]:
    """
    Decode a label set into a Workspace, or None when the object is not a
    (well-formed) managed workspace.
    """
    if not is_managed(labels):
        return None
    assert labels is not None
    try:
        owner = labels[LABEL_OWNER]
        if not owner:
            raise ValueError("empty owner label")
        project = validate_project(labels[LABEL_PROJECT])
        if project != labels[LABEL_PROJECT]:
            raise ValueError("project label is not canonical")
        return Workspace(
            owner=owner,
            project=project,
            preset=_decode_preset(labels),
            base_path=labels[LABEL_BASE_PATH],
            public_url=labels[LABEL_PUBLIC_URL],
            created_at=labels[LABEL_CREATED_AT],
            limits=ResourceLimits(
                cpu_nanos=int(labels[LABEL_CPU_NANOS]),
                mem_bytes=int(labels[LABEL_MEM_BYTES]),
            ),
            routes=RouteTable.from_json(labels[LABEL_ROUTES]),
            deployment=_decode_deployment(labels),
            owner_email=labels.get(LABEL_OWNER_EMAIL) or None,
            generation=int(labels.get(LABEL_GENERATION, "0")),
            gpu=labels.get(LABEL_GPU) == "true",
        )
    except (KeyError, ValueError, InvalidArgument) as e:
        logger.warning(
            "Ignoring object with malformed workspace labels (owner=%s project=%s): %s",
            labels.get(LABEL_OWNER),
            labels.get(LABEL_PROJECT),
            e,
        )
        return None


__all__ = [
    "CODEC_KEYS",
    "ResourceLimits",
    "Workspace",
    "encode",
    "reencode",
    "decode",
    "is_managed",
]
