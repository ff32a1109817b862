"""
Read-only status API over the provisioning run ledger.

Run standalone with ``uvicorn prov_server.app:app`` (the database path comes
from PROV_DB_PATH), or embedded in the bootstrap process through
``create_status_server``, which shares the bootstrap's repository.
"""

import logging
import os
from contextlib import asynccontextmanager

import uvicorn
from fastapi import Depends, FastAPI, HTTPException

from prov_common.repository import ProvisionRepository
from prov_persistence.sqlite_repository import SQLiteProvisionRepository

logger = logging.getLogger(__name__)

# Global instance (initialized at startup, or injected by the bootstrap process)
repository: ProvisionRepository | None = None


def get_database_path() -> str:
    """
    Get the database path from environment or use default.

    Environment variables:
    - PROV_DB_PATH: Ledger written by the bootstrap run
    """
    return os.environ.get("PROV_DB_PATH", "provision.db")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Open the ledger unless a repository was injected.

    The bootstrap process owns schema initialization; the standalone server
    initializes it too so it can start before the first run.
    """
    global repository

    owned = repository is None
    if owned:
        sqlite_repository = SQLiteProvisionRepository(get_database_path())
        await sqlite_repository.initialize()
        repository = sqlite_repository

    yield

    if owned and repository is not None:
        await repository.close()
        repository = None


app = FastAPI(title="comfy-provision status", lifespan=lifespan)


def get_repository() -> ProvisionRepository:
    """
    Get the global repository instance.

    Raises:
        RuntimeError: If repository is not initialized
    """
    if repository is None:
        raise RuntimeError("Repository not initialized")
    return repository


@app.get("/health")
async def health():
    return {"status": "ok"}


@app.get("/downloads")
async def list_downloads(
    status: str | None = None,
    repo: ProvisionRepository = Depends(get_repository),
):
    return await repo.list_downloads(status=status)


@app.get("/repos")
async def list_repos(repo: ProvisionRepository = Depends(get_repository)):
    return await repo.list_repo_results()


@app.get("/builds")
async def list_builds(repo: ProvisionRepository = Depends(get_repository)):
    return await repo.list_build_attempts()


@app.get("/workers")
async def list_workers(repo: ProvisionRepository = Depends(get_repository)):
    return await repo.list_workers()


@app.get("/workers/{port}")
async def get_worker(port: int, repo: ProvisionRepository = Depends(get_repository)):
    worker = await repo.get_worker(port)
    if worker is None:
        raise HTTPException(status_code=404, detail=f"No worker on port {port}")
    return worker


@app.get("/workers/{port}/events")
async def list_worker_events(port: int, repo: ProvisionRepository = Depends(get_repository)):
    return await repo.list_worker_events(port)


def create_status_server(
    shared_repository: ProvisionRepository, host: str = "0.0.0.0", port: int = 8099
) -> uvicorn.Server:
    """
    Build a uvicorn server for the status API bound to an existing repository.

    The caller runs ``await server.serve()`` in its own event loop and sets
    ``server.should_exit`` to stop it.
    """
    global repository
    repository = shared_repository
    config = uvicorn.Config(app, host=host, port=port, log_level="warning")
    return uvicorn.Server(config)
