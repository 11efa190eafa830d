from __future__ import annotations

import logging
import os
from contextlib import asynccontextmanager
from pathlib import Path

from docker.errors import DockerException
from dotenv import load_dotenv
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

# Load environment from optional .env file before instantiating settings
_SERVER_ENV_FILE = os.getenv("HYDRA_SERVER_ENV_FILE", ".env.server")
if _SERVER_ENV_FILE and Path(_SERVER_ENV_FILE).is_file():
    load_dotenv(_SERVER_ENV_FILE)

from hydra_server.app.config import get_settings

settings = get_settings()
from hydra_server.app.errors import WorkspaceError
from hydra_server.app.logging_setup import initialize_from_env
from hydra_server.app.routers import workspaces
from hydra_server.app.workspaces.runtime import docker_runtime_from_env

logger = logging.getLogger("hydra_workspaces")
_LOG_PATH = initialize_from_env(service_name="hydra_workspaces")
logger.info("Hydra workspaces logging to file: %s", _LOG_PATH)


async def ensure_docker_available_on_startup() -> None:
    """
    Verify Docker Engine is reachable before the API starts serving requests.
    Exits the process with a non-zero status if Docker is unavailable.
    """
    try:
        runtime = docker_runtime_from_env(settings.docker_client_timeout)
    except DockerException as e:
        logger.critical("Docker client could not be created: %s", e)
        raise SystemExit(1)
    try:
        await runtime.ping()
        if settings.swarm_mode and not await runtime.swarm_active():
            logger.warning("Swarm mode configured but this node is not an active swarm member")
    except WorkspaceError as e:
        logger.critical(
            "Docker is not available. Hydra workspaces cannot start without Docker. "
            "Ensure Docker Engine is running and accessible. Details: %s",
            e.message,
        )
        raise SystemExit(1)
    finally:
        runtime.client.close()


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Fail fast if Docker is unavailable
    await ensure_docker_available_on_startup()
    logger.info("Hydra workspaces startup complete (mode=%s).", settings.orchestration_mode)
    try:
        yield
    finally:
        logger.info("Hydra workspaces shutdown complete.")


app = FastAPI(
    title="Hydra Workspaces",
    version=settings.service_version,
    description="Per-user, per-project workspaces on Docker with label-stored metadata.",
    lifespan=lifespan,
)

# CORS: permissive by default; lock down in deployment via env vars if needed
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_allow_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# --------------------------
# Error rendering
# --------------------------

@app.exception_handler(WorkspaceError)
async def workspace_error_handler(request: Request, exc: WorkspaceError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    return JSONResponse(status_code=exc.status_code, content=exc.to_response())


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    details = "; ".join(
        f"{'.'.join(str(p) for p in err.get('loc', ()) if p != 'body')}: {err.get('msg')}" for err in exc.errors()
    )
    return JSONResponse(status_code=400, content={"success": False, "message": f"Invalid request: {details}"})


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse(status_code=500, content={"success": False, "message": "Internal server error"})


app.include_router(workspaces.router, prefix="/api/workspaces", tags=["workspaces"])


@app.get("/health")
async def health() -> dict:
    """
    Basic health check; unauthenticated.
    """
    return {
        "status": "ok",
        "service": "hydra-workspaces",
        "version": app.version,
        "mode": settings.orchestration_mode,
    }
