from __future__ import annotations

"""
Content Deployment Pipeline.

Clones or pulls a git repository into a workspace volume with disposable
helper containers, then reads the resulting commit back:

1. A git helper mounts the volume at /workspace, runs the git operation with
   terminal prompts disabled, and writes ``git rev-parse HEAD`` into
   /workspace/.hydra/commit.
2. A reader helper prints that file; its log stream is demultiplexed to
   recover the raw bytes.

Helpers are named ``hydra-job-<kind>-<8 hex>`` and labeled with the
workspace they serve. They are removed on every path, success or failure.
The repository URL and branch travel as environment variables and are never
interpolated into the shell script.

This module never touches workspace labels: recording ``last_commit`` is the
lifecycle controller's job, and only after a successful run.
"""

import logging
import re
import uuid
from dataclasses import dataclass
from typing import Dict, List, Optional

from hydra_server.app.config import ServerConfig
from hydra_server.app.errors import DeploymentFailed, InvalidArgument, WorkspaceError
from hydra_server.app.workspaces.core import (
    LABEL_HELPER_FOR,
    LABEL_HELPER_KIND,
    LABEL_MANAGED_BY,
    MANAGED_BY_VALUE,
    helper_label_filters,
)
from hydra_server.app.workspaces.presets import REPO_DIR, DeploymentSource
from hydra_server.app.workspaces.runtime import ContainerSpec, DockerRuntime
from hydra_server.app.workspaces.streaming import collect_output

logger = logging.getLogger("hydra_workspaces")

HELPER_MOUNT = "/workspace"
COMMIT_FILE = f"{HELPER_MOUNT}/.hydra/commit"
STAGING_DIR = f"{HELPER_MOUNT}/.hydra/staging"
_OUTPUT_LIMIT = 8000

_URL_RE = re.compile(r"^(?:(?:https?|ssh)://[^\s]+|git@[A-Za-z0-9.-]+:[^\s]+)$")
_BRANCH_RE = re.compile(r"^[A-Za-z0-9._/-]{1,100}$")
_COMMIT_RE = re.compile(r"^(?:[0-9a-f]{40}|[0-9a-f]{64})$")

_GIT_PRELUDE = """set -e
g() { git -c safe.directory='*' "$@"; }
mkdir -p /workspace/.hydra
"""

_CLONE_SCRIPT = _GIT_PRELUDE + f"""rm -rf {STAGING_DIR}
trap 'rm -rf {STAGING_DIR}' EXIT
if [ -n "$HYDRA_REPO_BRANCH" ]; then
  g clone --depth 1 --branch "$HYDRA_REPO_BRANCH" -- "$HYDRA_REPO_URL" {STAGING_DIR}
else
  g clone --depth 1 -- "$HYDRA_REPO_URL" {STAGING_DIR}
fi
if [ -n "$HYDRA_REPO_SUBDIR" ] && [ ! -d "{STAGING_DIR}/$HYDRA_REPO_SUBDIR" ]; then
  echo "subdirectory '$HYDRA_REPO_SUBDIR' not found in repository" >&2
  exit 3
fi
rm -rf /workspace/{REPO_DIR}
mv {STAGING_DIR} /workspace/{REPO_DIR}
g -C /workspace/{REPO_DIR} rev-parse HEAD > {COMMIT_FILE}
"""

_PULL_SCRIPT = _GIT_PRELUDE + f"""cd /workspace/{REPO_DIR}
g fetch --depth 1 origin "${{HYDRA_REPO_BRANCH:-HEAD}}"
g reset --hard FETCH_HEAD
g rev-parse HEAD > {COMMIT_FILE}
"""


@dataclass(frozen=True)
class HelperResult:
    exit_code: int
    stdout: bytes
    stderr: bytes

    @property
    def output(self) -> str:
        text = (self.stdout + self.stderr).decode("utf-8", errors="replace")
        return text[-_OUTPUT_LIMIT:]


# --------------------------
# Input validation
# --------------------------

def build_source(
    repo_url: str,
    branch: Optional[str] = None,
    subdir: Optional[str] = None,
    start_command: Optional[str] = None,
) -> DeploymentSource:
    """
    Validate repository input into a DeploymentSource; raises InvalidArgument.
    """
    url = (repo_url or "").strip()
    if not _URL_RE.match(url):
        raise InvalidArgument("Repository URL must be https://, http://, ssh:// or git@host:path")

    ref = (branch or "").strip() or None
    if ref is not None and (not _BRANCH_RE.match(ref) or ref.startswith("-")):
        raise InvalidArgument("Invalid branch name")

    sub = (subdir or "").strip().strip("/") or None
    if sub is not None and (".." in sub.split("/") or sub.startswith("-")):
        raise InvalidArgument("Subdirectory must be a relative path inside the repository")

    cmd = (start_command or "").strip() or None
    return DeploymentSource(repo_url=url, branch=ref, subdir=sub, start_command=cmd)


# --------------------------
# Pipeline
# --------------------------

class DeploymentPipeline:
    def __init__(self, runtime: DockerRuntime, settings: ServerConfig) -> None:
        self.runtime = runtime
        self.settings = settings

    async def clone(self, workspace: str, volume: str, source: DeploymentSource) -> str:
        """
        Fresh clone into ``<volume>/repo``; returns the checked-out commit.
        """
        logger.info("Cloning %s into %s", source.repo_url, volume)
        return await self._materialize("clone", _CLONE_SCRIPT, workspace, volume, source)

    async def pull(self, workspace: str, volume: str, source: DeploymentSource) -> str:
        logger.info("Pulling %s in %s", source.repo_url, volume)
        return await self._materialize("pull", _PULL_SCRIPT, workspace, volume, source)

    async def cleanup_helpers(self, workspace: str) -> int:
        """
        Remove leftover helpers labeled for a workspace; returns the count.
        """
        removed = 0
        for snap in await self.runtime.list_containers(helper_label_filters(workspace)):
            await self.runtime.remove_container(snap.id)
            removed += 1
        if removed:
            logger.info("Removed %d leftover deployment helper(s) for %s", removed, workspace)
        return removed

    async def _materialize(
        self,
        kind: str,
        script: str,
        workspace: str,
        volume: str,
        source: DeploymentSource,
    ) -> str:
        await self.runtime.ensure_image(self.settings.git_helper_image)
        env = {
            "GIT_TERMINAL_PROMPT": "0",
            "HYDRA_REPO_URL": source.repo_url,
            "HYDRA_REPO_BRANCH": source.branch or "",
            "HYDRA_REPO_SUBDIR": source.subdir or "",
        }
        result = await self._run_helper(kind, workspace, volume, entrypoint=["sh", "-c"], command=[script], env=env)
        if result.exit_code != 0:
            logger.warning("git %s for %s exited with %s", kind, workspace, result.exit_code)
            raise DeploymentFailed(f"git {kind} failed (exit code {result.exit_code})", output=result.output)
        return await self._read_commit(workspace, volume)

    async def _read_commit(self, workspace: str, volume: str) -> str:
        result = await self._run_helper("read", workspace, volume, entrypoint=["cat"], command=[COMMIT_FILE], env={})
        commit = result.stdout.decode("utf-8", errors="replace").strip().lower()
        if result.exit_code != 0 or not _COMMIT_RE.match(commit):
            raise DeploymentFailed("Could not read the deployed commit", output=result.output)
        return commit

    async def _run_helper(
        self,
        kind: str,
        workspace: str,
        volume: str,
        *,
        entrypoint: List[str],
        command: List[str],
        env: Dict[str, str],
    ) -> HelperResult:
        name = f"hydra-job-{kind}-{uuid.uuid4().hex[:8]}"
        spec = ContainerSpec(
            name=name,
            image=self.settings.git_helper_image,
            labels={
                LABEL_MANAGED_BY: MANAGED_BY_VALUE,
                LABEL_HELPER_FOR: workspace,
                LABEL_HELPER_KIND: kind,
            },
            command=command,
            entrypoint=entrypoint,
            environment=[f"{k}={v}" for k, v in env.items()],
            volume=volume,
            mount_target=HELPER_MOUNT,
        )
        container_id: Optional[str] = None
        try:
            container_id = await self.runtime.create_container(spec)
            await self.runtime.start_container(container_id)
            exit_code = await self.runtime.wait_container(container_id)
            streams = await collect_output(await self.runtime.container_logs(container_id))
            return HelperResult(
                exit_code=exit_code,
                stdout=streams.get("stdout", b""),
                stderr=streams.get("stderr", b""),
            )
        finally:
            if container_id is not None:
                try:
                    await self.runtime.remove_container(container_id)
                except WorkspaceError as e:
                    logger.warning("Failed to remove helper %s: %s", name, e.message)


__all__ = [
    "COMMIT_FILE",
    "HELPER_MOUNT",
    "STAGING_DIR",
    "HelperResult",
    "build_source",
    "DeploymentPipeline",
]
