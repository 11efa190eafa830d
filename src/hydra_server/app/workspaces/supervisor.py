from __future__ import annotations

"""
In-workspace program control through supervisord.

Workspace images that run several long-lived programs (code-server, Jupyter)
under supervisord let their owner list, start and stop them. Every command is
a one-shot ``supervisorctl`` exec inside the running workspace; the Engine's
framed output is demultiplexed before parsing.

``supervisorctl status`` exits non-zero whenever some program is not
RUNNING, so the exit code alone is not a failure signal; only the codes the
Engine uses for a missing executable are.
"""

import re
from dataclasses import dataclass, field
from typing import Dict, List, Sequence

from hydra_server.app.errors import InvalidArgument

SUPERVISORCTL = "supervisorctl"
ACTIONS = ("start", "stop")
MISSING_EXECUTABLE_EXIT_CODES = (126, 127)

_STATUS_RE = re.compile(r"^(\S+)\s+(\S+)")
_PROGRAM_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.:-]{0,63}$")


@dataclass(frozen=True)
class ProgramStatus:
    name: str
    state: str

    @property
    def running(self) -> bool:
        return self.state == "RUNNING"


@dataclass(frozen=True)
class ProgramListing:
    """
    Supervised programs of one workspace; empty when the workspace is not
    running.
    """
    workspace_running: bool
    programs: List[ProgramStatus] = field(default_factory=list)

    def get(self, name: str) -> ProgramStatus:
        for program in self.programs:
            if program.name == name:
                return program
        raise InvalidArgument(f"Unknown service '{name}'")


def parse_status(output: str, allowed: Sequence[str] = ()) -> List[ProgramStatus]:
    """
    Parse ``supervisorctl status`` lines ("name  STATE  details").

    When ``allowed`` is non-empty, other programs are hidden.
    """
    programs: List[ProgramStatus] = []
    for line in output.splitlines():
        m = _STATUS_RE.match(line.strip())
        if not m:
            continue
        name, state = m.group(1), m.group(2)
        if allowed and name not in allowed:
            continue
        programs.append(ProgramStatus(name=name, state=state))
    return programs


def validate_program(name: str, allowed: Sequence[str] = ()) -> str:
    name = (name or "").strip()
    if not _PROGRAM_RE.match(name) or (allowed and name not in allowed):
        raise InvalidArgument("Invalid service name")
    return name


def validate_action(action: str) -> str:
    action = (action or "").strip().lower()
    if action not in ACTIONS:
        raise InvalidArgument(f"Action must be one of: {', '.join(ACTIONS)}")
    return action


def status_command() -> List[str]:
    return [SUPERVISORCTL, "status"]


def control_command(action: str, name: str) -> List[str]:
    return [SUPERVISORCTL, action, name]


def output_text(streams: Dict[str, bytes]) -> str:
    data = streams.get("stdout", b"") + streams.get("stderr", b"")
    return data.decode("utf-8", errors="replace")


__all__ = [
    "ACTIONS",
    "MISSING_EXECUTABLE_EXIT_CODES",
    "ProgramStatus",
    "ProgramListing",
    "parse_status",
    "validate_program",
    "validate_action",
    "status_command",
    "control_command",
    "output_text",
]
