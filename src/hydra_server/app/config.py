"""
Unified server configuration for the Hydra workspace orchestrator (hydra_server).

This module centralizes:
- Defaults for all server settings
- Loading from environment variables
- Optional env-file hydration via python-dotenv (only for allowed keys)
- Helpers for resource parsing and derived values

Usage:
    from hydra_server.app.config import get_settings

    settings = get_settings()
    print(settings.orchestration_mode)

Notes:
- Environment variables always take precedence over the env file.
- Limits accept human-friendly forms: CPU as '1', '1.5', '2c'; memory as
  '512m', '2g', '1073741824'.
"""

from __future__ import annotations

import os
import re
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from typing import Dict, List, Optional

from dotenv import dotenv_values


# ----------------------------
# Helpers: env, parsing, types
# ----------------------------

_ALLOWED_DOTENV_KEYS = {
    # Identity
    "HYDRA_IDENTITY_SECRET",
    "HYDRA_IDENTITY_HEADER",
    "HYDRA_IDENTITY_COOKIE",
    "HYDRA_ALLOWED_ROLES",
    # Orchestration
    "HYDRA_ORCHESTRATION_MODE",
    "HYDRA_STUDENTS_NETWORK",
    "HYDRA_OWNER_NETWORK_PREFIX",
    "HYDRA_VOLUME_PREFIX",
    "HYDRA_RESTART_POLICY",
    "HYDRA_STOP_TIMEOUT_SECONDS",
    "HYDRA_SWARM_CONSTRAINTS",
    "HYDRA_SWARM_ENABLE_GPU_RESOURCES",
    "HYDRA_SWARM_GPU_CONSTRAINT",
    "HYDRA_SWARM_SPREAD_LABEL",
    "HYDRA_NFS_SERVER",
    "HYDRA_NFS_EXPORT_PATH",
    # Routing
    "HYDRA_BASE_PATH_PREFIX",
    "HYDRA_PUBLIC_STUDENTS_BASE",
    "HYDRA_FORWARD_AUTH_URL",
    "HYDRA_TRAEFIK_ENTRYPOINT",
    # Images
    "HYDRA_NOTEBOOK_IMAGE",
    "HYDRA_STATIC_SITE_IMAGE",
    "HYDRA_NODE_IMAGE",
    "HYDRA_PYTHON_IMAGE",
    "HYDRA_GIT_HELPER_IMAGE",
    # In-workspace services
    "HYDRA_SUPERVISOR_PROGRAMS",
    # Limits
    "HYDRA_DEFAULT_CPU",
    "HYDRA_DEFAULT_MEM",
    "HYDRA_MAX_CPU",
    "HYDRA_MAX_MEM",
    # Docker settings
    "DOCKER_CLIENT_TIMEOUT",
    # Server behavior
    "HYDRA_VERSION",
    "LOG_LEVEL",
    "CORS_ALLOW_ORIGINS",
}

_SIZE_RE = re.compile(r"^\s*(\d+(?:\.\d+)?)([kKmMgG]?[bB]?)?\s*$")
_CPU_RE = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*(c|cpu|cpus)?\s*$")

ORCHESTRATION_MODES = ("container", "swarm")


def _split_csv(s: str | None) -> List[str]:
    if not s:
        return []
    return [part.strip() for part in s.split(",") if part.strip()]


def _int_env(name: str, default: int, minimum: int = 0) -> int:
    try:
        value = int(os.getenv(name, str(default)))
    except ValueError:
        value = default
    return max(minimum, value)


def _bool_env(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


def _parse_mem_limit_to_bytes(mem_limit: Optional[str]) -> Optional[int]:
    """
    Parse human-readable memory limit into bytes for Docker (e.g., '512m', '2g', '1024').
    Returns None if not provided or invalid.
    """
    if not mem_limit:
        return None
    m = _SIZE_RE.match(mem_limit.strip())
    if not m:
        return None
    val = float(m.group(1))
    unit = (m.group(2) or "").lower()

    if unit in ("", "b"):
        mult = 1
    elif unit in ("k", "kb"):
        mult = 1024
    elif unit in ("m", "mb"):
        mult = 1024**2
    elif unit in ("g", "gb"):
        mult = 1024**3
    else:
        return None
    return int(val * mult)


def _parse_cpu_limit_to_nano_cpus(cpu_limit: Optional[str]) -> Optional[int]:
    """
    Parse CPU limit into nano_cpus for Docker (1.0 CPU == 1e9 nano_cpus).
    Accepts forms like '1', '1.5', '2c', '0.5cpu'.
    Returns None if not provided or invalid.
    """
    if not cpu_limit:
        return None
    m = _CPU_RE.match(cpu_limit.strip())
    if not m:
        return None
    return int(float(m.group(1)) * 1_000_000_000)


def _load_env_file(dotenv_path: Optional[Path] = None, allowed_keys: Optional[set[str]] = None) -> None:
    """
    Hydrate os.environ from an env file:
    - Defaults to HYDRA_SERVER_ENV_FILE, then ./.env.server
    - Only sets variables from allowed_keys that are not already present
    """
    path = Path(dotenv_path or os.getenv("HYDRA_SERVER_ENV_FILE", ".env.server"))
    if not path.is_file():
        return
    allow = set(allowed_keys or _ALLOWED_DOTENV_KEYS)
    for key, val in dotenv_values(path).items():
        if key in allow and val is not None and key not in os.environ:
            os.environ[key] = val


# ----------------------------
# Unified configuration object
# ----------------------------

@dataclass(frozen=True)
class ServerConfig:
    """
    Unified configuration for the orchestrator.

    All fields are immutable once created. Use from_env() to construct an instance.
    """

    # Identity
    identity_secret: Optional[str]
    identity_header_name: str
    identity_cookie_name: str
    allowed_roles: List[str]

    # Orchestration
    orchestration_mode: str
    students_network: str
    owner_network_prefix: str
    volume_prefix: str
    restart_policy: str
    stop_timeout_seconds: int
    swarm_constraints: List[str]
    swarm_gpu_resources: bool
    swarm_gpu_constraint: str
    swarm_spread_label: str
    nfs_server: Optional[str]
    nfs_export_path: str

    # Routing / proxy labels
    base_path_prefix: str
    public_students_base: str
    forward_auth_url: str
    traefik_entrypoint: str

    # Preset images
    notebook_image: str
    static_site_image: str
    node_image: str
    python_image: str
    git_helper_image: str

    # Programs owners may control through supervisord
    supervisor_programs: List[str]

    # Resource limits
    default_cpu_limit: str
    default_mem_limit: str
    max_cpu_limit: str
    max_mem_limit: str

    # Docker client
    docker_client_timeout: int

    # CORS and service metadata
    cors_allow_origins: List[str]
    service_version: str
    log_level: str

    @staticmethod
    def from_env(dotenv: bool = True, dotenv_path: Optional[str | Path] = None) -> "ServerConfig":
        """
        Construct ServerConfig from the current environment, optionally
        hydrated by an env file if dotenv=True.
        """
        if dotenv:
            _load_env_file(Path(dotenv_path) if dotenv_path else None, _ALLOWED_DOTENV_KEYS)

        mode = os.getenv("HYDRA_ORCHESTRATION_MODE", "container").strip().lower()
        if mode not in ORCHESTRATION_MODES:
            raise ValueError(
                f"HYDRA_ORCHESTRATION_MODE must be one of {', '.join(ORCHESTRATION_MODES)}; got {mode!r}"
            )

        base_prefix = "/" + os.getenv("HYDRA_BASE_PATH_PREFIX", "/students").strip().strip("/")

        return ServerConfig(
            identity_secret=os.getenv("HYDRA_IDENTITY_SECRET") or None,
            identity_header_name=os.getenv("HYDRA_IDENTITY_HEADER", "X-Hydra-Identity"),
            identity_cookie_name=os.getenv("HYDRA_IDENTITY_COOKIE", "hydra_identity"),
            allowed_roles=[r.lower() for r in _split_csv(os.getenv("HYDRA_ALLOWED_ROLES"))],
            orchestration_mode=mode,
            students_network=os.getenv("HYDRA_STUDENTS_NETWORK", "hydra_students_net"),
            owner_network_prefix=os.getenv("HYDRA_OWNER_NETWORK_PREFIX", "hydra-student-"),
            volume_prefix=os.getenv("HYDRA_VOLUME_PREFIX", "hydra-vol-"),
            restart_policy=os.getenv("HYDRA_RESTART_POLICY", "unless-stopped"),
            stop_timeout_seconds=_int_env("HYDRA_STOP_TIMEOUT_SECONDS", 10),
            swarm_constraints=_split_csv(os.getenv("HYDRA_SWARM_CONSTRAINTS")),
            swarm_gpu_resources=_bool_env("HYDRA_SWARM_ENABLE_GPU_RESOURCES"),
            swarm_gpu_constraint=os.getenv("HYDRA_SWARM_GPU_CONSTRAINT", "node.labels.gpu==true").strip(),
            swarm_spread_label=os.getenv("HYDRA_SWARM_SPREAD_LABEL", "node.labels.workload").strip(),
            nfs_server=os.getenv("HYDRA_NFS_SERVER") or None,
            nfs_export_path=os.getenv("HYDRA_NFS_EXPORT_PATH", "/exports/student-volumes").rstrip("/"),
            base_path_prefix=base_prefix,
            public_students_base=os.getenv("HYDRA_PUBLIC_STUDENTS_BASE", "http://hydra.local/students").rstrip("/"),
            forward_auth_url=os.getenv("HYDRA_FORWARD_AUTH_URL", "http://host.docker.internal:6969/auth/verify"),
            traefik_entrypoint=os.getenv("HYDRA_TRAEFIK_ENTRYPOINT", "web"),
            notebook_image=os.getenv("HYDRA_NOTEBOOK_IMAGE", "jupyter/tensorflow-notebook:latest"),
            static_site_image=os.getenv("HYDRA_STATIC_SITE_IMAGE", "nginx:alpine"),
            node_image=os.getenv("HYDRA_NODE_IMAGE", "node:20-alpine"),
            python_image=os.getenv("HYDRA_PYTHON_IMAGE", "python:3.12-slim"),
            git_helper_image=os.getenv("HYDRA_GIT_HELPER_IMAGE", "alpine/git:latest"),
            supervisor_programs=_split_csv(os.getenv("HYDRA_SUPERVISOR_PROGRAMS", "code-server,jupyter")),
            default_cpu_limit=os.getenv("HYDRA_DEFAULT_CPU", "2"),
            default_mem_limit=os.getenv("HYDRA_DEFAULT_MEM", "4g"),
            max_cpu_limit=os.getenv("HYDRA_MAX_CPU", "4"),
            max_mem_limit=os.getenv("HYDRA_MAX_MEM", "8g"),
            docker_client_timeout=_int_env("DOCKER_CLIENT_TIMEOUT", 180, minimum=1),
            cors_allow_origins=_split_csv(os.getenv("CORS_ALLOW_ORIGINS", "*")) or ["*"],
            service_version=os.getenv("HYDRA_VERSION", "0.1.0"),
            log_level=os.getenv("LOG_LEVEL", "INFO"),
        )

    # ----------------------------
    # Derived helpers / utilities
    # ----------------------------

    @property
    def swarm_mode(self) -> bool:
        return self.orchestration_mode == "swarm"

    def default_limits(self) -> Dict[str, int]:
        """
        Default limits as Docker units: {"cpu_nanos": ..., "mem_bytes": ...}.
        """
        return {
            "cpu_nanos": _parse_cpu_limit_to_nano_cpus(self.default_cpu_limit) or 2_000_000_000,
            "mem_bytes": _parse_mem_limit_to_bytes(self.default_mem_limit) or 4 * 1024**3,
        }

    def max_limits(self) -> Dict[str, int]:
        return {
            "cpu_nanos": _parse_cpu_limit_to_nano_cpus(self.max_cpu_limit) or 4_000_000_000,
            "mem_bytes": _parse_mem_limit_to_bytes(self.max_mem_limit) or 8 * 1024**3,
        }

    def owner_network_name(self, owner: str) -> str:
        return f"{self.owner_network_prefix}{owner}"

    def nfs_driver_opts(self, owner: str, project: str) -> Optional[Dict[str, str]]:
        """
        Local-driver options for an NFS-backed workspace volume, or None when
        no NFS server is configured.
        """
        if not self.nfs_server:
            return None
        return {
            "type": "nfs",
            "o": f"addr={self.nfs_server},rw,nolock",
            "device": f":{self.nfs_export_path}/{owner}/{project}",
        }


# ----------------------------
# Cached accessor
# ----------------------------

@lru_cache(maxsize=1)
def get_settings() -> ServerConfig:
    """
    Cached settings accessor. Safe to import and call across the app.
    """
    return ServerConfig.from_env(dotenv=True)


__all__ = [
    "ServerConfig",
    "ORCHESTRATION_MODES",
    "get_settings",
]
