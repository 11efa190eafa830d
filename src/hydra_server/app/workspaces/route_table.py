from __future__ import annotations

"""
Route Table Manager.

A workspace publishes an ordered table of routes through the reverse proxy.
Exactly one route is the *root* route: it comes from the workspace preset, is
mounted at the workspace base path itself, and cannot be added or removed
through route CRUD. Every other route is mounted at ``basePath/<endpoint>``.

Table operations are pure: they return a new RouteTable and raise before
anything is mutated. ``render`` turns a table into the Traefik label set.
"""

import json
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Tuple

from hydra_server.app.errors import (
    DuplicateEndpoint,
    InvalidArgument,
    NotFound,
    PortInUse,
    ReservedName,
    ReservedPort,
)
from hydra_server.app.workspaces.core import TRAEFIK_PREFIX, validate_endpoint, validate_port

RESERVED_ENDPOINTS = frozenset({"jupyter", "vscode", "auth", "api"})
RESERVED_PORTS = frozenset({8443, 8888})


@dataclass(frozen=True)
class Route:
    endpoint: str
    port: int
    strip_prefix: bool = True
    root: bool = False

    def path(self, base_path: str) -> str:
        return base_path if self.root else f"{base_path}/{self.endpoint}"

    def to_dict(self) -> Dict[str, object]:
        return {
            "endpoint": self.endpoint,
            "port": self.port,
            "stripPrefix": self.strip_prefix,
            "root": self.root,
        }

    @staticmethod
    def from_dict(obj: Dict[str, object]) -> "Route":
        endpoint = obj.get("endpoint")
        port = obj.get("port")
        if not isinstance(endpoint, str) or not endpoint:
            raise ValueError("route endpoint must be a non-empty string")
        if not isinstance(port, int) or isinstance(port, bool):
            raise ValueError("route port must be an integer")
        return Route(
            endpoint=endpoint,
            port=port,
            strip_prefix=bool(obj.get("stripPrefix", True)),
            root=bool(obj.get("root", False)),
        )


@dataclass(frozen=True)
class RouteTable:
    routes: Tuple[Route, ...] = field(default_factory=tuple)

    # --------------------------
    # Queries
    # --------------------------

    @property
    def root(self) -> Optional[Route]:
        return next((r for r in self.routes if r.root), None)

    def get(self, endpoint: str) -> Optional[Route]:
        return next((r for r in self.routes if r.endpoint == endpoint), None)

    def reserved_endpoints(self) -> frozenset:
        return RESERVED_ENDPOINTS | {r.endpoint for r in self.routes if r.root}

    def reserved_ports(self) -> frozenset:
        return RESERVED_PORTS | {r.port for r in self.routes if r.root}

    # --------------------------
    # Mutations (return new tables)
    # --------------------------

    def add(self, endpoint: str, port: object) -> "RouteTable":
        """
        Return a table with a new prefix-stripping route appended.

        Raises InvalidArgument/ReservedName/ReservedPort for bad or reserved
        input and DuplicateEndpoint/PortInUse for collisions.
        """
        name = validate_endpoint(endpoint)
        number = validate_port(port)
        if name in self.reserved_endpoints():
            raise ReservedName(f"Endpoint '{name}' is reserved")
        if number in self.reserved_ports():
            raise ReservedPort(f"Port {number} is reserved")
        if self.get(name) is not None:
            raise DuplicateEndpoint(f"Endpoint '{name}' already exists")
        if any(r.port == number for r in self.routes):
            raise PortInUse(f"Port {number} is already routed")
        return RouteTable(self.routes + (Route(endpoint=name, port=number),))

    def remove(self, endpoint: str) -> "RouteTable":
        """
        Return a table without the given endpoint.

        Raises ReservedName for the root or fixed reserved endpoints and
        NotFound when the endpoint is absent.
        """
        name = (endpoint or "").strip().lower()
        if name in self.reserved_endpoints():
            raise ReservedName(f"Endpoint '{name}' is reserved and cannot be removed")
        if self.get(name) is None:
            raise NotFound(f"Route '{name}' does not exist")
        return RouteTable(tuple(r for r in self.routes if r.endpoint != name))

    # --------------------------
    # Serialization
    # --------------------------

    def to_json(self) -> str:
        return json.dumps([r.to_dict() for r in self.routes], separators=(",", ":"))

    @staticmethod
    def from_json(raw: str) -> "RouteTable":
        """
        Parse the serialized table; raises ValueError on malformed input,
        duplicate endpoints or more than one root.
        """
        data = json.loads(raw)
        if not isinstance(data, list):
            raise ValueError("route table must be a JSON list")
        routes = tuple(Route.from_dict(item) for item in data if isinstance(item, dict))
        if len(routes) != len(data):
            raise ValueError("route table entries must be objects")
        if len({r.endpoint for r in routes}) != len(routes):
            raise ValueError("route table has duplicate endpoints")
        if sum(1 for r in routes if r.root) > 1:
            raise ValueError("route table has more than one root route")
        return RouteTable(routes)

    @staticmethod
    def with_root(route: Route) -> "RouteTable":
        if not route.root:
            raise InvalidArgument("Root route must be flagged as root")
        return RouteTable((route,))


# --------------------------
# Proxy label rendering
# --------------------------

def render(
    table: RouteTable,
    *,
    router_prefix: str,
    base_path: str,
    network: str,
    forward_auth_url: str,
    entrypoint: str = "web",
) -> Dict[str, str]:
    """
    Emit the Traefik label set for a route table.

    Per route: a PathPrefix router, a load-balancer port, a forward-auth
    middleware and, when the route strips its prefix, a stripprefix
    middleware. Stripping is decided by the route's own flag.
    """
    labels: Dict[str, str] = {
        "traefik.enable": "true",
        "traefik.docker.network": network,
    }
    for route in table.routes:
        router = f"{router_prefix}-{route.endpoint}"
        path = route.path(base_path)
        middlewares: List[str] = [f"{router}-auth"]

        labels[f"traefik.http.routers.{router}.rule"] = f"PathPrefix(`{path}`)"
        labels[f"traefik.http.routers.{router}.entrypoints"] = entrypoint
        labels[f"traefik.http.routers.{router}.service"] = router
        labels[f"traefik.http.services.{router}.loadbalancer.server.port"] = str(route.port)
        labels[f"traefik.http.middlewares.{router}-auth.forwardauth.address"] = forward_auth_url
        labels[f"traefik.http.middlewares.{router}-auth.forwardauth.trustForwardHeader"] = "true"
        if route.strip_prefix:
            labels[f"traefik.http.middlewares.{router}-strip.stripprefix.prefixes"] = path
            middlewares.append(f"{router}-strip")
        labels[f"traefik.http.routers.{router}.middlewares"] = ",".join(middlewares)
    return labels


def strip_proxy_labels(labels: Dict[str, str]) -> Dict[str, str]:
    """
    Drop every proxy label so a fresh render leaves no orphaned rules behind.
    """
    return {k: v for k, v in labels.items() if not k.startswith(TRAEFIK_PREFIX)}


def routers_in(labels: Dict[str, str]) -> Iterable[str]:
    """
    Router names declared in a label set.
    """
    prefix = "traefik.http.routers."
    seen: List[str] = []
    for key in labels:
        if key.startswith(prefix) and key.endswith(".rule"):
            seen.append(key[len(prefix):-len(".rule")])
    return seen


__all__ = [
    "RESERVED_ENDPOINTS",
    "RESERVED_PORTS",
    "Route",
    "RouteTable",
    "render",
    "strip_proxy_labels",
    "routers_in",
]
