import asyncio
import dataclasses

import pytest

from conftest import FakeRuntime
from hydra_server.app.errors import CommandFailed, Forbidden, InvalidArgument, NotFound
from hydra_server.app.workspaces.lifecycle import WorkspaceController
from hydra_server.app.workspaces.presets import NotebookPreset
from hydra_server.app.workspaces.supervisor import (
    ProgramStatus,
    control_command,
    parse_status,
    status_command,
    validate_action,
    validate_program,
)

STATUS_OUTPUT = """\
code-server                      RUNNING   pid 31, uptime 0:04:12
jupyter                          STOPPED   Oct 18 09:12 AM
sshd                             RUNNING   pid 12, uptime 0:04:15

"""


def _init(controller, identity, project="proj1"):
    return asyncio.run(controller.init(identity, project, NotebookPreset()))


# --------------------------
# Parsing and validation
# --------------------------

def test_parse_status_reads_name_and_state():
    programs = parse_status(STATUS_OUTPUT)
    assert programs == [
        ProgramStatus("code-server", "RUNNING"),
        ProgramStatus("jupyter", "STOPPED"),
        ProgramStatus("sshd", "RUNNING"),
    ]
    assert [p.running for p in programs] == [True, False, True]


def test_parse_status_hides_programs_outside_the_allowlist():
    names = [p.name for p in parse_status(STATUS_OUTPUT, ["code-server", "jupyter"])]
    assert names == ["code-server", "jupyter"]


@pytest.mark.parametrize("name", ["", "-rf", "code server", "a;b", "x" * 65])
def test_malformed_program_names_are_rejected(name):
    with pytest.raises(InvalidArgument):
        validate_program(name)


def test_program_must_be_in_the_allowlist():
    assert validate_program(" jupyter ", ["jupyter"]) == "jupyter"
    with pytest.raises(InvalidArgument):
        validate_program("sshd", ["jupyter"])


def test_actions_and_commands():
    assert validate_action("START") == "start"
    with pytest.raises(InvalidArgument):
        validate_action("restart")
    assert status_command() == ["supervisorctl", "status"]
    assert control_command("stop", "jupyter") == ["supervisorctl", "stop", "jupyter"]


# --------------------------
# Controller
# --------------------------

def test_list_programs_of_a_running_workspace(controller, fake_runtime, alice):
    _init(controller, alice)
    fake_runtime.programs = {"code-server": "RUNNING", "jupyter": "STOPPED", "sshd": "RUNNING"}

    listing = asyncio.run(controller.list_programs(alice, "proj1"))

    assert listing.workspace_running is True
    assert [(p.name, p.state) for p in listing.programs] == [("code-server", "RUNNING"), ("jupyter", "STOPPED")]
    _, args = [c for c in fake_runtime.calls if c[0] == "exec_run"][-1]
    assert args[1] == ("supervisorctl", "status")


def test_list_programs_of_a_stopped_workspace_is_empty(controller, fake_runtime, alice):
    _init(controller, alice)
    asyncio.run(controller.stop(alice, "proj1"))
    fake_runtime.programs = {"jupyter": "RUNNING"}

    listing = asyncio.run(controller.list_programs(alice, "proj1"))

    assert listing.workspace_running is False
    assert listing.programs == []
    assert fake_runtime.count("exec_run") == 0


def test_start_and_stop_a_program(controller, fake_runtime, alice):
    _init(controller, alice)
    fake_runtime.programs = {"code-server": "RUNNING", "jupyter": "STOPPED"}

    started = asyncio.run(controller.start_program(alice, "proj1", "jupyter"))
    assert started == ProgramStatus("jupyter", "RUNNING")
    assert fake_runtime.programs["jupyter"] == "RUNNING"

    stopped = asyncio.run(controller.stop_program(alice, "proj1", "jupyter"))
    assert stopped.running is False
    assert fake_runtime.programs["jupyter"] == "STOPPED"


def test_repeated_start_and_stop_succeed(controller, fake_runtime, alice):
    _init(controller, alice)
    fake_runtime.programs = {"code-server": "RUNNING", "jupyter": "STOPPED"}

    assert asyncio.run(controller.start_program(alice, "proj1", "code-server")).running is True
    assert asyncio.run(controller.stop_program(alice, "proj1", "jupyter")).running is False


def test_unconfigured_program_is_not_found(controller, fake_runtime, alice):
    _init(controller, alice)
    fake_runtime.programs = {"code-server": "RUNNING"}
    with pytest.raises(NotFound):
        asyncio.run(controller.start_program(alice, "proj1", "jupyter"))


def test_program_outside_the_allowlist_never_reaches_the_workspace(controller, fake_runtime, alice):
    _init(controller, alice)
    fake_runtime.programs = {"sshd": "RUNNING"}
    with pytest.raises(InvalidArgument):
        asyncio.run(controller.stop_program(alice, "proj1", "sshd"))
    assert fake_runtime.count("exec_run") == 0
    assert fake_runtime.programs["sshd"] == "RUNNING"


def test_workspace_without_supervisor_is_rejected(controller, fake_runtime, alice):
    _init(controller, alice)
    fake_runtime.programs = None
    with pytest.raises(InvalidArgument):
        asyncio.run(controller.list_programs(alice, "proj1"))


def test_program_control_needs_a_running_workspace(controller, fake_runtime, alice):
    _init(controller, alice)
    asyncio.run(controller.stop(alice, "proj1"))
    fake_runtime.programs = {"jupyter": "STOPPED"}
    with pytest.raises(InvalidArgument):
        asyncio.run(controller.start_program(alice, "proj1", "jupyter"))
    assert fake_runtime.count("exec_run") == 0


def test_failed_status_read_carries_the_output(controller, fake_runtime, alice):
    _init(controller, alice)
    fake_runtime.programs = {"jupyter": "RUNNING"}

    async def refused(container_id, command):
        return 2, [b"unix:///var/run/supervisor.sock refused connection\n"]

    fake_runtime.exec_run = refused
    with pytest.raises(CommandFailed) as exc:
        asyncio.run(controller.list_programs(alice, "proj1"))
    assert "refused connection" in exc.value.output
    assert exc.value.to_response()["output"] == exc.value.output


def test_other_owner_cannot_control_programs(controller, fake_runtime, alice, mallory):
    _init(controller, alice)
    fake_runtime.programs = {"jupyter": "RUNNING"}
    fake_runtime.calls.clear()
    # Same owner key as alice, different email
    impostor = dataclasses.replace(mallory, email="alice@elsewhere.edu")
    with pytest.raises(Forbidden):
        asyncio.run(controller.stop_program(impostor, "proj1", "jupyter"))
    assert fake_runtime.mutations() == []
    assert fake_runtime.programs["jupyter"] == "RUNNING"


def test_service_control_is_container_only(swarm_settings, alice):
    fake = FakeRuntime(swarm=True)
    fake.programs = {"jupyter": "RUNNING"}
    controller = WorkspaceController(fake, swarm_settings)
    _init(controller, alice)
    with pytest.raises(InvalidArgument):
        asyncio.run(controller.start_program(alice, "proj1", "jupyter"))
    assert fake.count("exec_run") == 0
