import pytest

from hydra_server.app.errors import DuplicateEndpoint, InvalidArgument, NotFound, PortInUse, ReservedName, ReservedPort
from hydra_server.app.workspaces.route_table import (
    Route,
    RouteTable,
    render,
    routers_in,
    strip_proxy_labels,
)

BASE = "/students/alice/proj1"


def _table() -> RouteTable:
    return RouteTable.with_root(Route(endpoint="notebook", port=8888, strip_prefix=False, root=True))


def _render(table: RouteTable) -> dict:
    return render(
        table,
        router_prefix="workspace-alice-proj1",
        base_path=BASE,
        network="hydra_students_net",
        forward_auth_url="http://auth/verify",
    )


def test_root_route_is_mounted_at_base_path():
    root = _table().root
    assert root is not None
    assert root.path(BASE) == BASE
    assert Route(endpoint="api2", port=5000).path(BASE) == f"{BASE}/api2"


def test_add_appends_stripping_route_and_leaves_original_untouched():
    table = _table()
    added = table.add("Dash", 5000)
    assert [r.endpoint for r in added.routes] == ["notebook", "dash"]
    assert added.get("dash") == Route(endpoint="dash", port=5000, strip_prefix=True)
    assert len(table.routes) == 1


@pytest.mark.parametrize(
    "endpoint,port,exc",
    [
        ("notebook", 5000, ReservedName),
        ("jupyter", 5000, ReservedName),
        ("vscode", 5000, ReservedName),
        ("dash", 8888, ReservedPort),
        ("dash", 8443, ReservedPort),
        ("bad name", 5000, InvalidArgument),
        ("x" * 41, 5000, InvalidArgument),
        ("dash", 80, InvalidArgument),
        ("dash", 70000, InvalidArgument),
        ("dash", "abc", InvalidArgument),
    ],
)
def test_add_rejects_bad_or_reserved_input(endpoint, port, exc):
    with pytest.raises(exc):
        _table().add(endpoint, port)


def test_add_rejects_collisions():
    table = _table().add("dash", 5000)
    with pytest.raises(DuplicateEndpoint):
        table.add("dash", 5001)
    with pytest.raises(PortInUse):
        table.add("other", 5000)


def test_remove_restores_previous_table():
    table = _table()
    assert table.add("dash", 5000).remove("dash") == table


def test_remove_refuses_root_and_missing():
    table = _table()
    with pytest.raises(ReservedName):
        table.remove("notebook")
    with pytest.raises(NotFound):
        table.remove("missing")


def test_json_round_trip_and_malformed_tables():
    table = _table().add("dash", 5000)
    assert RouteTable.from_json(table.to_json()) == table

    with pytest.raises(ValueError):
        RouteTable.from_json("{}")
    with pytest.raises(ValueError):
        RouteTable.from_json('[{"endpoint": "a", "port": 1}, {"endpoint": "a", "port": 2}]')
    with pytest.raises(ValueError):
        RouteTable.from_json('[{"endpoint": "a", "port": 1, "root": true}, {"endpoint": "b", "port": 2, "root": true}]')
    with pytest.raises(ValueError):
        RouteTable.from_json('[{"endpoint": "a", "port": "1"}]')


def test_render_emits_one_router_per_route():
    labels = _render(_table().add("dash", 5000))
    assert labels["traefik.enable"] == "true"
    assert labels["traefik.docker.network"] == "hydra_students_net"
    assert sorted(routers_in(labels)) == ["workspace-alice-proj1-dash", "workspace-alice-proj1-notebook"]

    nb = "workspace-alice-proj1-notebook"
    assert labels[f"traefik.http.routers.{nb}.rule"] == f"PathPrefix(`{BASE}`)"
    assert labels[f"traefik.http.services.{nb}.loadbalancer.server.port"] == "8888"
    assert labels[f"traefik.http.routers.{nb}.middlewares"] == f"{nb}-auth"
    assert f"traefik.http.middlewares.{nb}-strip.stripprefix.prefixes" not in labels

    dash = "workspace-alice-proj1-dash"
    assert labels[f"traefik.http.routers.{dash}.rule"] == f"PathPrefix(`{BASE}/dash`)"
    assert labels[f"traefik.http.middlewares.{dash}-strip.stripprefix.prefixes"] == f"{BASE}/dash"
    assert labels[f"traefik.http.middlewares.{dash}-auth.forwardauth.address"] == "http://auth/verify"
    assert labels[f"traefik.http.routers.{dash}.middlewares"] == f"{dash}-auth,{dash}-strip"


def test_strip_then_render_leaves_no_orphaned_routers():
    with_dash = _table().add("dash", 5000)
    labels = {"hydra.owner": "alice", "com.example.keep": "1", **_render(with_dash)}

    fresh = strip_proxy_labels(labels)
    assert fresh == {"hydra.owner": "alice", "com.example.keep": "1"}

    fresh.update(_render(with_dash.remove("dash")))
    assert list(routers_in(fresh)) == ["workspace-alice-proj1-notebook"]
    assert not any("dash" in k for k in fresh)
