"""
Rotating file logging for the Hydra workspace orchestrator (hydra_server).

A RotatingFileHandler always writes DEBUG and above to a file so lifecycle
transitions and recreation failures can be reconstructed after the fact. The
file location is the first writable candidate from a prioritized list.

Usage (call once during app startup, before creating the FastAPI app):

    from hydra_server.app.logging_setup import initialize_from_env

    log_path = initialize_from_env(service_name="hydra_workspaces")

Environment variables (optional):
- HYDRA_LOG_FILE: Absolute path to the desired log file.
- HYDRA_LOG_DIR:  Directory where the log file should be created.
- HYDRA_LOG_MAX_BYTES: Max file size before rotate (default: 10485760 = 10MB).
- HYDRA_LOG_BACKUP_COUNT: Number of rotated files to keep (default: 5).
- HYDRA_LOG_LEVEL: Level for application and console output (default: INFO).
- LOG_LEVEL: Fallback for HYDRA_LOG_LEVEL when unset.
"""

from __future__ import annotations

import logging
import logging.handlers
import os
import sys
import tempfile
from pathlib import Path
from typing import List, Optional, Union

__all__ = [
    "LOGGER_NAME",
    "initialize_from_env",
    "setup_logging",
    "configure_third_party_loggers",
]

LOGGER_NAME = "hydra_workspaces"

_DEFAULT_MAX_BYTES = 10 * 1024 * 1024
_DEFAULT_BACKUP_COUNT = 5
_FORMAT_FILE = "%(asctime)s %(levelname)s [hydra] %(name)s pid=%(process)d %(filename)s:%(lineno)d - %(message)s"
_FORMAT_CONSOLE = "%(asctime)s %(levelname)s [hydra] %(message)s"
_DATEFMT = "%Y-%m-%d %H:%M:%S"


def _coerce_level(level: Optional[Union[int, str]], default: int = logging.INFO) -> int:
    if isinstance(level, int):
        return level
    if isinstance(level, str):
        return getattr(logging, level.strip().upper(), default)
    return default


def _candidate_paths(service_name: str, log_dir: Optional[Union[str, Path]]) -> List[Path]:
    file_name = f"{service_name}.log"
    candidates: List[Path] = []

    env_file = os.getenv("HYDRA_LOG_FILE")
    if env_file:
        candidates.append(Path(env_file).expanduser())
    if log_dir:
        candidates.append(Path(log_dir).expanduser() / file_name)
    env_dir = os.getenv("HYDRA_LOG_DIR")
    if env_dir:
        candidates.append(Path(env_dir).expanduser() / file_name)

    candidates.append(Path.home() / ".hydra_workspaces" / "logs" / file_name)
    candidates.append(Path(tempfile.gettempdir()) / "hydra_workspaces" / "logs" / file_name)
    return candidates


def _pick_log_path(service_name: str, log_dir: Optional[Union[str, Path]]) -> Path:
    """
    Choose the first writable candidate. Raises RuntimeError if none are writable.
    """
    failures: List[str] = []
    for candidate in _candidate_paths(service_name, log_dir):
        try:
            candidate.parent.mkdir(parents=True, exist_ok=True)
            with open(candidate, mode="a", encoding="utf-8"):
                pass
            return candidate
        except OSError as e:
            failures.append(f"{candidate} -> {e.__class__.__name__}: {e}")
    raise RuntimeError(
        "Failed to initialize hydra_server file logging (no writable paths). Attempts: "
        + ("; ".join(failures) or "none")
    )


def configure_third_party_loggers(base_level: int) -> None:
    """
    Keep library chatter at WARNING unless the service itself runs at DEBUG.
    """
    lib_level = logging.INFO if base_level <= logging.DEBUG else logging.WARNING
    for name in ("uvicorn", "uvicorn.access", "uvicorn.error", "fastapi", "httpx", "docker", "websockets"):
        logging.getLogger(name).setLevel(lib_level)
    for name in ("urllib3", "urllib3.connectionpool", "asyncio"):
        logging.getLogger(name).setLevel(logging.WARNING)


def setup_logging(
    service_name: str = LOGGER_NAME,
    *,
    level: Optional[Union[int, str]] = None,
    log_dir: Optional[Union[str, Path]] = None,
    add_console: bool = False,
) -> Path:
    """
    Attach a rotating file handler (DEBUG+) to the root logger and,
    optionally, a stdout console handler at the service level.

    Calling this more than once is harmless: handlers are only attached for
    paths and streams not already present on the root logger.

    Returns:
        Path to the active log file.
    """
    base_level = _coerce_level(
        level if level is not None else (os.getenv("HYDRA_LOG_LEVEL") or os.getenv("LOG_LEVEL") or "INFO"),
    )
    max_bytes = int(os.getenv("HYDRA_LOG_MAX_BYTES", str(_DEFAULT_MAX_BYTES)))
    backups = int(os.getenv("HYDRA_LOG_BACKUP_COUNT", str(_DEFAULT_BACKUP_COUNT)))

    log_path = _pick_log_path(service_name, log_dir)
    root = logging.getLogger()
    root.setLevel(logging.DEBUG)

    resolved = str(log_path.resolve())
    if not any(str(Path(getattr(h, "baseFilename", "")).resolve()) == resolved for h in root.handlers if hasattr(h, "baseFilename")):
        file_handler = logging.handlers.RotatingFileHandler(
            filename=log_path,
            maxBytes=max(1, max_bytes),
            backupCount=max(1, backups),
            encoding="utf-8",
        )
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(logging.Formatter(_FORMAT_FILE, datefmt=_DATEFMT))
        root.addHandler(file_handler)

    if add_console and not any(
        isinstance(h, logging.StreamHandler) and getattr(h, "stream", None) in (sys.stdout, sys.stderr)
        for h in root.handlers
    ):
        console = logging.StreamHandler(stream=sys.stdout)
        console.setLevel(base_level)
        console.setFormatter(logging.Formatter(_FORMAT_CONSOLE, datefmt=_DATEFMT))
        root.addHandler(console)

    logging.getLogger(LOGGER_NAME).setLevel(base_level)
    configure_third_party_loggers(base_level)

    logging.getLogger(LOGGER_NAME).info(
        "Logging initialized: file=%s level=%s backups=%s",
        log_path,
        logging.getLevelName(base_level),
        backups,
    )
    return log_path


def initialize_from_env(service_name: str = LOGGER_NAME) -> Path:
    """
    Startup initializer: file logging plus a console handler so startup
    INFO lines are visible under uvicorn.
    """
    return setup_logging(service_name=service_name, add_console=True)
