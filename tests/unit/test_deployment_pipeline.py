import asyncio

import pytest

from hydra_server.app.errors import DeploymentFailed, InvalidArgument
from hydra_server.app.workspaces.deployment import COMMIT_FILE, HELPER_MOUNT, STAGING_DIR, build_source
from hydra_server.app.workspaces.metadata import decode
from hydra_server.app.workspaces.presets import GitDeployedPreset, GitRuntime, NotebookPreset

NAME = "workspace-alice-site"
REPO = "https://example.com/alice/site.git"


def _helper_specs(fake):
    return [args[0] for name, args in fake.calls if name == "create_container" and args[0].name.startswith("hydra-job-")]


def _init_git(controller, identity, **source):
    return asyncio.run(
        controller.init(
            identity,
            "site",
            GitDeployedPreset(runtime=GitRuntime.python),
            repository=build_source(REPO, **source),
        )
    )


def test_build_source_normalizes_and_validates():
    src = build_source(f"  {REPO} ", branch=" main ", subdir="/web/", start_command="  ")
    assert (src.repo_url, src.branch, src.subdir, src.start_command) == (REPO, "main", "web", None)
    assert build_source("git@github.com:alice/site.git").repo_url == "git@github.com:alice/site.git"

    for bad in ("file:///etc/passwd", "-uhttps://x", "https://x y", ""):
        with pytest.raises(InvalidArgument):
            build_source(bad)
    with pytest.raises(InvalidArgument):
        build_source(REPO, branch="--upload-pack=evil")
    with pytest.raises(InvalidArgument):
        build_source(REPO, subdir="../outside")


def test_init_clones_with_disposable_helpers(controller, fake_runtime, alice):
    result = _init_git(controller, alice, branch="main", subdir="app")

    assert result.message == "Workspace created"
    helpers = _helper_specs(fake_runtime)
    assert [h.labels["hydra.helper_kind"] for h in helpers] == ["clone", "read"]
    clone, read = helpers
    assert clone.name.startswith("hydra-job-clone-") and len(clone.name) == len("hydra-job-clone-") + 8
    assert clone.labels["hydra.helper_for"] == NAME
    assert "hydra.owner" not in clone.labels
    assert clone.volume == "hydra-vol-alice-site" and clone.mount_target == HELPER_MOUNT
    assert clone.entrypoint == ["sh", "-c"]
    assert "GIT_TERMINAL_PROMPT=0" in clone.environment
    assert f"HYDRA_REPO_URL={REPO}" in clone.environment
    assert "HYDRA_REPO_BRANCH=main" in clone.environment
    assert "HYDRA_REPO_SUBDIR=app" in clone.environment
    assert REPO not in clone.command[0]
    assert read.entrypoint == ["cat"] and read.command == [COMMIT_FILE]
    assert fake_runtime.helpers() == []

    ws = decode(fake_runtime.by_name(NAME).labels)
    assert ws.deployment.last_commit == fake_runtime.commit
    assert ws.deployment.subdir == "app"
    container = fake_runtime.by_name(NAME)
    assert "HYDRA_APP_DIR=/app/repo/app" in container.environment
    assert container.status == "running"


def test_failed_clone_reports_output_and_removes_helpers(controller, fake_runtime, alice):
    fake_runtime.helper_exit["clone"] = 128
    fake_runtime.helper_output["clone"] = b"fatal: repository not found\n"

    with pytest.raises(DeploymentFailed) as exc:
        _init_git(controller, alice)

    assert "exit code 128" in exc.value.message
    assert "repository not found" in exc.value.output
    assert exc.value.to_response()["output"] == exc.value.output
    assert fake_runtime.helpers() == []
    assert fake_runtime.by_name(NAME) is None


def test_unreadable_commit_is_a_failure(controller, fake_runtime, alice):
    fake_runtime.commit = "not-a-commit"
    with pytest.raises(DeploymentFailed):
        _init_git(controller, alice)
    assert fake_runtime.helpers() == []


def test_pull_on_non_repository_workspace(controller, fake_runtime, alice):
    asyncio.run(controller.init(alice, "nb", NotebookPreset()))
    fake_runtime.calls.clear()

    with pytest.raises(InvalidArgument) as exc:
        asyncio.run(controller.pull(alice, "nb"))
    assert exc.value.message == "This is not a repository workspace"
    with pytest.raises(InvalidArgument):
        asyncio.run(controller.clone(alice, "nb", build_source(REPO)))
    assert _helper_specs(fake_runtime) == []


def test_pull_unchanged_commit_is_up_to_date(controller, fake_runtime, alice):
    _init_git(controller, alice)
    container_id = fake_runtime.by_name(NAME).id

    result = asyncio.run(controller.pull(alice, "site"))

    assert result.message == "Already up to date"
    assert result.commit == fake_runtime.commit
    assert fake_runtime.by_name(NAME).id == container_id
    assert [h.labels["hydra.helper_kind"] for h in _helper_specs(fake_runtime)][-2:] == ["pull", "read"]


def test_pull_new_commit_records_it(controller, fake_runtime, alice):
    _init_git(controller, alice)
    fake_runtime.commit = "b" * 40

    result = asyncio.run(controller.pull(alice, "site"))

    assert result.message == f"Updated to {'b' * 12}"
    ws = decode(fake_runtime.by_name(NAME).labels)
    assert ws.deployment.last_commit == "b" * 40
    assert ws.generation == 1
    assert fake_runtime.by_name(NAME).status == "running"


def test_failed_pull_leaves_labels_untouched(controller, fake_runtime, alice):
    _init_git(controller, alice)
    labels = dict(fake_runtime.by_name(NAME).labels)
    fake_runtime.helper_exit["pull"] = 1

    with pytest.raises(DeploymentFailed):
        asyncio.run(controller.pull(alice, "site"))
    assert fake_runtime.by_name(NAME).labels == labels
    assert fake_runtime.helpers() == []


def test_clone_replaces_repository(controller, fake_runtime, alice):
    _init_git(controller, alice)
    other = "https://example.com/alice/other.git"
    fake_runtime.commit = "c" * 64

    result = asyncio.run(controller.clone(alice, "site", build_source(other, branch="dev")))

    assert result.commit == "c" * 64
    ws = decode(fake_runtime.by_name(NAME).labels)
    assert ws.deployment.repo_url == other
    assert ws.deployment.branch == "dev"
    assert ws.deployment.last_commit == "c" * 64


def test_clone_rewrites_app_environment(controller, fake_runtime, alice):
    _init_git(controller, alice, subdir="old", start_command="python old.py")
    env = fake_runtime.by_name(NAME).environment
    assert "HYDRA_APP_DIR=/app/repo/old" in env
    assert "HYDRA_START_COMMAND=python old.py" in env

    asyncio.run(controller.clone(alice, "site", build_source(REPO, subdir="new", start_command="python new.py")))

    env = fake_runtime.by_name(NAME).environment
    assert "HYDRA_APP_DIR=/app/repo/new" in env
    assert "HYDRA_START_COMMAND=python new.py" in env
    assert "HYDRA_APP_DIR=/app/repo/old" not in env
    assert "HYDRA_START_COMMAND=python old.py" not in env
    assert "PORT=8000" in env


def test_clone_without_start_command_drops_the_old_one(controller, fake_runtime, alice):
    _init_git(controller, alice, start_command="python old.py")

    asyncio.run(controller.clone(alice, "site", build_source(REPO)))

    env = fake_runtime.by_name(NAME).environment
    assert not [e for e in env if e.startswith("HYDRA_START_COMMAND=")]
    assert "HYDRA_APP_DIR=/app/repo" in env


def test_clone_script_swaps_checkout_only_after_success(controller, fake_runtime, alice):
    _init_git(controller, alice, subdir="app")
    script = _helper_specs(fake_runtime)[0].command[0]

    clone_at = script.index(f'"$HYDRA_REPO_URL" {STAGING_DIR}')
    subdir_check_at = script.index("exit 3")
    remove_at = script.index("rm -rf /workspace/repo\n")
    move_at = script.index(f"mv {STAGING_DIR} /workspace/repo")
    assert clone_at < subdir_check_at < remove_at < move_at < script.index(COMMIT_FILE)


def test_failed_reclone_leaves_deployment_untouched(controller, fake_runtime, alice):
    _init_git(controller, alice, subdir="app")
    container = fake_runtime.by_name(NAME)
    labels, env = dict(container.labels), list(container.environment)
    fake_runtime.helper_exit["clone"] = 3
    fake_runtime.helper_output["clone"] = b"subdirectory 'missing' not found in repository\n"

    with pytest.raises(DeploymentFailed) as exc:
        asyncio.run(controller.clone(alice, "site", build_source(REPO, subdir="missing")))

    assert "not found in repository" in exc.value.output
    container = fake_runtime.by_name(NAME)
    assert container.labels == labels
    assert container.environment == env
    ws = decode(container.labels)
    assert ws.deployment.subdir == "app"
    assert ws.deployment.last_commit == fake_runtime.commit
    assert fake_runtime.helpers() == []
