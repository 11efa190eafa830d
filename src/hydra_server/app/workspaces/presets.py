from __future__ import annotations

"""
Workspace presets: the workload template a workspace runs.

The preset is a closed set of variants resolved once, at creation time:

    NotebookPreset | StaticSitePreset | GitDeployedPreset(runtime) | CustomPreset(image, port, ...)

Every variant answers the same questions (image, container port, command,
mount target, environment, root route), so the lifecycle controller never
branches on preset strings.
"""

import enum
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import ClassVar, Dict, List, Optional, Sequence, Tuple, Union

from hydra_server.app.config import ServerConfig
from hydra_server.app.errors import InvalidArgument
from hydra_server.app.workspaces.route_table import Route

REPO_DIR = "repo"


class GitRuntime(str, enum.Enum):
    node = "node"
    python = "python"
    static = "static"


@dataclass(frozen=True)
class DeploymentSource:
    """
    Where a git-deployed workspace's content comes from, and the last
    revision successfully materialized into its volume.
    """
    repo_url: str
    branch: Optional[str] = None
    subdir: Optional[str] = None
    start_command: Optional[str] = None
    last_commit: Optional[str] = None

    def __post_init__(self) -> None:
        for name in ("branch", "subdir", "start_command", "last_commit"):
            if not getattr(self, name):
                object.__setattr__(self, name, None)

    def app_dir(self, mount_target: str) -> str:
        root = f"{mount_target.rstrip('/')}/{REPO_DIR}"
        return f"{root}/{self.subdir.strip('/')}" if self.subdir else root


class WorkspacePreset(ABC):
    """
    Capability shared by every preset variant.
    """

    kind: ClassVar[str]
    default_endpoint: ClassVar[str]
    mount_target: ClassVar[str] = "/workspace"

    @abstractmethod
    def image(self, settings: ServerConfig) -> str:
        raise NotImplementedError

    @abstractmethod
    def container_port(self) -> int:
        raise NotImplementedError

    def command(self, base_path: str, deployment: Optional[DeploymentSource]) -> Optional[List[str]]:
        """
        Command override for the workload; None keeps the image default.
        """
        return None

    def environment(self, deployment: Optional[DeploymentSource]) -> Dict[str, str]:
        return {}

    def strips_prefix(self) -> bool:
        return True

    def root_route(self) -> Route:
        return Route(
            endpoint=self.default_endpoint,
            port=self.container_port(),
            strip_prefix=self.strips_prefix(),
            root=True,
        )

    @property
    def requires_repository(self) -> bool:
        return False


@dataclass(frozen=True)
class NotebookPreset(WorkspacePreset):
    """Jupyter server; it must know its own base URL, so the prefix is kept."""

    kind: ClassVar[str] = "notebook"
    default_endpoint: ClassVar[str] = "notebook"
    mount_target: ClassVar[str] = "/home/jovyan/work"

    def image(self, settings: ServerConfig) -> str:
        return settings.notebook_image

    def container_port(self) -> int:
        return 8888

    def command(self, base_path: str, deployment: Optional[DeploymentSource]) -> Optional[List[str]]:
        return [
            "start-notebook.sh",
            f"--NotebookApp.base_url={base_path}",
            "--NotebookApp.allow_origin=*",
            "--NotebookApp.token=",
            "--NotebookApp.password=",
        ]

    def strips_prefix(self) -> bool:
        return False


@dataclass(frozen=True)
class StaticSitePreset(WorkspacePreset):
    kind: ClassVar[str] = "static-site"
    default_endpoint: ClassVar[str] = "site"
    mount_target: ClassVar[str] = "/usr/share/nginx/html"

    def image(self, settings: ServerConfig) -> str:
        return settings.static_site_image

    def container_port(self) -> int:
        return 80


_NODE_SCRIPT = 'cd "$HYDRA_APP_DIR" && (npm ci || npm install) && exec sh -c "${HYDRA_START_COMMAND:-npm start}"'
_PYTHON_SCRIPT = (
    'cd "$HYDRA_APP_DIR" && '
    "if [ -f requirements.txt ]; then pip install --no-cache-dir -r requirements.txt; fi && "
    'exec sh -c "${HYDRA_START_COMMAND:-python -m http.server 8000}"'
)
_STATIC_SCRIPT = (
    'rm -rf /usr/share/nginx/html && ln -s "$HYDRA_APP_DIR" /usr/share/nginx/html && '
    "exec nginx -g 'daemon off;'"
)


@dataclass(frozen=True)
class GitDeployedPreset(WorkspacePreset):
    """Application served from a git checkout kept in the workspace volume."""

    runtime: GitRuntime = GitRuntime.node

    kind: ClassVar[str] = "git-deployed"
    default_endpoint: ClassVar[str] = "app"
    mount_target: ClassVar[str] = "/app"

    _PORTS: ClassVar[Dict[GitRuntime, int]] = {
        GitRuntime.node: 3000,
        GitRuntime.python: 8000,
        GitRuntime.static: 80,
    }

    def image(self, settings: ServerConfig) -> str:
        if self.runtime is GitRuntime.node:
            return settings.node_image
        if self.runtime is GitRuntime.python:
            return settings.python_image
        return settings.static_site_image

    def container_port(self) -> int:
        return self._PORTS[self.runtime]

    def command(self, base_path: str, deployment: Optional[DeploymentSource]) -> Optional[List[str]]:
        script = {
            GitRuntime.node: _NODE_SCRIPT,
            GitRuntime.python: _PYTHON_SCRIPT,
            GitRuntime.static: _STATIC_SCRIPT,
        }[self.runtime]
        return ["sh", "-c", script]

    def environment(self, deployment: Optional[DeploymentSource]) -> Dict[str, str]:
        env = {"PORT": str(self.container_port())}
        if deployment is not None:
            env["HYDRA_APP_DIR"] = deployment.app_dir(self.mount_target)
            if deployment.start_command:
                env["HYDRA_START_COMMAND"] = deployment.start_command
        else:
            env["HYDRA_APP_DIR"] = f"{self.mount_target}/{REPO_DIR}"
        return env

    @property
    def requires_repository(self) -> bool:
        return True


@dataclass(frozen=True)
class CustomPreset(WorkspacePreset):
    """Caller-supplied image and port."""

    image_ref: str = ""
    port: int = 8080
    command_args: Tuple[str, ...] = field(default_factory=tuple)
    strip: bool = True

    kind: ClassVar[str] = "custom"
    default_endpoint: ClassVar[str] = "main"

    def image(self, settings: ServerConfig) -> str:
        return self.image_ref

    def container_port(self) -> int:
        return self.port

    def command(self, base_path: str, deployment: Optional[DeploymentSource]) -> Optional[List[str]]:
        return list(self.command_args) or None

    def strips_prefix(self) -> bool:
        return self.strip


Preset = Union[NotebookPreset, StaticSitePreset, GitDeployedPreset, CustomPreset]

_ALIASES = {
    "notebook": "notebook",
    "jupyter": "notebook",
    "static-site": "static-site",
    "static": "static-site",
    "git-deployed": "git-deployed",
    "git": "git-deployed",
    "custom": "custom",
}


def parse_preset(
    kind: str,
    *,
    runtime: Optional[str] = None,
    image: Optional[str] = None,
    port: Optional[int] = None,
    command: Optional[Sequence[str]] = None,
    strip_prefix: bool = True,
) -> Preset:
    """
    Resolve preset input into a variant; raises InvalidArgument.
    """
    canonical = _ALIASES.get((kind or "").strip().lower())
    if canonical is None:
        raise InvalidArgument(f"Unknown preset '{kind}'")

    if canonical == "notebook":
        return NotebookPreset()
    if canonical == "static-site":
        return StaticSitePreset()
    if canonical == "git-deployed":
        try:
            rt = GitRuntime((runtime or "node").strip().lower())
        except ValueError:
            raise InvalidArgument(
                f"Unknown runtime '{runtime}' (expected one of {', '.join(r.value for r in GitRuntime)})"
            )
        return GitDeployedPreset(runtime=rt)

    ref = (image or "").strip()
    if not ref or any(ch.isspace() for ch in ref):
        raise InvalidArgument("Custom preset requires an image without whitespace")
    if port is None or isinstance(port, bool) or not isinstance(port, int) or not 1 <= port <= 65535:
        raise InvalidArgument("Custom preset requires a port between 1 and 65535")
    args = tuple(str(a) for a in (command or ()))
    return CustomPreset(image_ref=ref, port=port, command_args=args, strip=bool(strip_prefix))


__all__ = [
    "REPO_DIR",
    "GitRuntime",
    "DeploymentSource",
    "WorkspacePreset",
    "NotebookPreset",
    "StaticSitePreset",
    "GitDeployedPreset",
    "CustomPreset",
    "Preset",
    "parse_preset",
]
