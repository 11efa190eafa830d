"""
Hydra Workspaces (FastAPI) - README-lite

Overview
- Provisions per-user, per-project workspaces (notebook servers, static sites,
  git-deployed apps, custom images) on a shared Docker Engine and publishes
  them through Traefik with label-based routing.
- Docker is the only source of truth: a workspace's record is the label set
  of its container (or Swarm service). There is no database.

Key Design Points
- Names are deterministic: workspace-{owner}-{project}, volume
  hydra-vol-{owner}-{project}, base path /students/{owner}/{project}.
- Ownership: every object carries hydra.managed_by=hydra-workspaces and
  hydra.owner; the owner key derived from the caller's verified email must
  match before anything is mutated.
- Labels are immutable on a container, so route and deployment changes
  recreate it (stop, remove, create from the captured spec, restore run
  state). Swarm services are updated in place, pinned to the spec version.
- Git deployment runs in disposable helper containers that are always removed.

Quickstart (local)
  $ python -m venv ./venv && source ./venv/bin/activate
  $ pip install .
  $ export HYDRA_IDENTITY_SECRET=change-me
  $ hydra-server            # or: uvicorn hydra_server.app.main:app --port 8080
- Health check (unauthenticated):
  GET http://127.0.0.1:8080/health

Authentication
- The SSO bridge signs identity tokens with HYDRA_IDENTITY_SECRET
  (hydra_server.app.security). Present one as:
  - Header X-Hydra-Identity (configurable via HYDRA_IDENTITY_HEADER)
  - Authorization: Bearer <token>
  - Cookie hydra_identity (configurable via HYDRA_IDENTITY_COOKIE)
  - WebSocket exec only: ?token=<token>
- With HYDRA_IDENTITY_SECRET unset every request is rejected with 401.

Core Endpoints (all under /api/workspaces)
- POST /start                  { project, preset, runtime?, image?, port?, command?, resources?, repository? }
- GET  /mine
- GET  /{project}
- POST /{project}/start | /stop | /restart
- DELETE /{project}
- POST /{project}/wipe         { preset?, ... }
- GET|POST /{project}/routes, DELETE /{project}/routes/{endpoint}
- POST /{project}/git-clone    { url, branch?, subdir?, start_command? }
- POST /{project}/git-pull
- GET  /{project}/logs/stream?follow=true&tail=200   (server-sent events)
- WS   /{project}/exec?command=/bin/sh

Every response is {"success": bool, "message": str, ...}; errors map to
401/403/404/400/409/500/503.

Configuration
- See hydra_server.app.config for every HYDRA_* variable. An optional env
  file (HYDRA_SERVER_ENV_FILE, default .env.server) is read at startup.
"""

__version__ = "0.1.0"

__all__ = ["__version__"]
