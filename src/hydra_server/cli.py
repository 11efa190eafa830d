"""Command-line entry point for hydra_server."""

from __future__ import annotations

import os

import uvicorn


def main() -> None:
    """Serve the API with uvicorn.

    HYDRA_HOST and HYDRA_PORT choose the bind address (default
    127.0.0.1:8080); the log level follows HYDRA_LOG_LEVEL / LOG_LEVEL.
    """
    level = (os.getenv("HYDRA_LOG_LEVEL") or os.getenv("LOG_LEVEL") or "info").lower()
    uvicorn.run(
        "hydra_server.app.main:app",
        host=os.getenv("HYDRA_HOST", "127.0.0.1"),
        port=int(os.getenv("HYDRA_PORT", "8080")),
        log_level=level,
    )


if __name__ == "__main__":
    main()
