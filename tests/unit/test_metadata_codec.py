import dataclasses
import json

from hydra_server.app.workspaces.core import (
    LABEL_GENERATION,
    LABEL_MANAGED_BY,
    LABEL_OWNER,
    LABEL_PROJECT,
    LABEL_ROUTES,
)
from hydra_server.app.workspaces.metadata import ResourceLimits, Workspace, decode, encode, is_managed, reencode
from hydra_server.app.workspaces.presets import (
    CustomPreset,
    DeploymentSource,
    GitDeployedPreset,
    GitRuntime,
    NotebookPreset,
)
from hydra_server.app.workspaces.route_table import RouteTable


def _workspace(preset=None, deployment=None) -> Workspace:
    preset = preset or NotebookPreset()
    return Workspace(
        owner="alice",
        project="proj1",
        preset=preset,
        base_path="/students/alice/proj1",
        public_url="http://hydra.local/students/alice/proj1/",
        created_at="2026-01-01T00:00:00+00:00",
        limits=ResourceLimits(cpu_nanos=1_000_000_000, mem_bytes=2048 * 1024**2),
        routes=RouteTable.with_root(preset.root_route()).add("dash", 5000),
        deployment=deployment,
        owner_email="alice@example.edu",
        generation=3,
    )


def test_round_trip_for_every_preset_variant():
    source = DeploymentSource(
        repo_url="https://example.com/r.git",
        branch="main",
        subdir="web",
        start_command="npm run serve",
        last_commit="a" * 40,
    )
    for ws in (
        _workspace(),
        dataclasses.replace(_workspace(), gpu=True),
        _workspace(GitDeployedPreset(runtime=GitRuntime.python), source),
        _workspace(CustomPreset(image_ref="ghcr.io/x/y:1", port=9000, command_args=("serve", "--x"), strip=False)),
    ):
        assert decode(encode(ws)) == ws


def test_encode_writes_managed_marker_and_json_routes():
    labels = encode(_workspace())
    assert labels[LABEL_MANAGED_BY] == "hydra-workspaces"
    assert labels[LABEL_OWNER] == "alice"
    assert labels[LABEL_GENERATION] == "3"
    routes = json.loads(labels[LABEL_ROUTES])
    assert routes[0] == {"endpoint": "notebook", "port": 8888, "stripPrefix": False, "root": True}


def test_decode_fails_closed():
    good = encode(_workspace())
    assert decode(None) is None
    assert decode({}) is None
    assert decode({k: v for k, v in good.items() if k != LABEL_MANAGED_BY}) is None
    assert decode({**good, LABEL_MANAGED_BY: "someone-else"}) is None
    assert decode({**good, LABEL_ROUTES: "not json"}) is None
    assert decode({**good, LABEL_PROJECT: "Bad Name"}) is None
    assert decode({**good, "hydra.preset": "unknown"}) is None
    assert decode({k: v for k, v in good.items() if k != LABEL_OWNER}) is None
    assert not is_managed({"hydra.owner": "alice"})


def test_reencode_preserves_foreign_labels():
    ws = _workspace()
    existing = {
        **encode(ws),
        "org.opencontainers.image.title": "notebook",
        "traefik.enable": "true",
    }
    updated = ws.with_routes(ws.routes.remove("dash"))
    labels = reencode(existing, updated)
    assert labels["org.opencontainers.image.title"] == "notebook"
    assert labels["traefik.enable"] == "true"
    assert decode(labels) == updated


def test_reencode_drops_stale_optional_keys():
    source = DeploymentSource(repo_url="https://example.com/r.git", branch="dev", last_commit="b" * 40)
    ws = _workspace(GitDeployedPreset(), source)
    labels = reencode(encode(ws), ws.with_deployment(DeploymentSource(repo_url="https://example.com/r.git")))
    assert "hydra.repo_branch" not in labels
    assert "hydra.last_commit" not in labels


def test_empty_optional_strings_normalize_to_none():
    source = DeploymentSource(repo_url="https://example.com/r.git", branch="", subdir="", start_command="", last_commit="")
    ws = dataclasses.replace(_workspace(GitDeployedPreset(), source), owner_email="")

    assert ws.owner_email is None
    assert (source.branch, source.subdir, source.start_command, source.last_commit) == (None, None, None, None)
    assert decode(encode(ws)) == ws
