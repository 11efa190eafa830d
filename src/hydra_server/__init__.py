"""
hydra_server package

This package contains the Hydra workspace orchestrator (FastAPI service) and
its server-side modules. It is intentionally lightweight at import time and
does not import the FastAPI app, so tooling and module discovery stay free of
side effects (env-file loading, logging setup).

Public surface:
- __version__: string version of the server package

To run the service with uvicorn (example):
    uvicorn hydra_server.app.main:app --host 127.0.0.1 --port 8080
"""

from hydra_server.app import __version__

__all__ = ["__version__"]
