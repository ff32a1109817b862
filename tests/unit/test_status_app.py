"""
Unit tests for the status API.

The repository dependency is overridden with an AsyncMock so the endpoints
are tested without a database.
"""

from unittest.mock import AsyncMock

import pytest
from fastapi.testclient import TestClient

from prov_server.app import app, create_status_server, get_repository


@pytest.fixture
def mock_repository():
    repo = AsyncMock()
    repo.list_downloads = AsyncMock(
        return_value=[{"dest": "/m/a.bin", "status": "complete"}]
    )
    repo.list_repo_results = AsyncMock(return_value=[{"name": "Nodes", "state": "cloned"}])
    repo.list_build_attempts = AsyncMock(return_value=[])
    repo.list_workers = AsyncMock(return_value=[{"port": 8188, "health": "live"}])
    repo.get_worker = AsyncMock(return_value=None)
    repo.list_worker_events = AsyncMock(return_value=[{"port": 8188, "kind": "ready"}])
    return repo


@pytest.fixture
def client(mock_repository):
    app.dependency_overrides[get_repository] = lambda: mock_repository
    yield TestClient(app)
    app.dependency_overrides.clear()


class TestStatusApi:
    """Test suite for the read-only ledger endpoints."""

    def test_health(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json() == {"status": "ok"}

    def test_downloads_with_status_filter(self, client, mock_repository):
        response = client.get("/downloads", params={"status": "complete"})

        assert response.status_code == 200
        assert response.json()[0]["dest"] == "/m/a.bin"
        mock_repository.list_downloads.assert_awaited_once_with(status="complete")

    def test_repos(self, client):
        assert client.get("/repos").json() == [{"name": "Nodes", "state": "cloned"}]

    def test_builds(self, client):
        assert client.get("/builds").json() == []

    def test_workers(self, client):
        assert client.get("/workers").json() == [{"port": 8188, "health": "live"}]

    def test_unknown_worker(self, client, mock_repository):
        response = client.get("/workers/9999")

        assert response.status_code == 404
        mock_repository.get_worker.assert_awaited_once_with(9999)

    def test_known_worker(self, client, mock_repository):
        mock_repository.get_worker.return_value = {"port": 8188, "health": "live"}
        assert client.get("/workers/8188").json()["health"] == "live"

    def test_worker_events(self, client, mock_repository):
        assert client.get("/workers/8188/events").json() == [{"port": 8188, "kind": "ready"}]
        mock_repository.list_worker_events.assert_awaited_once_with(8188)


def test_create_status_server_shares_repository(mock_repository):
    import prov_server.app as status_app

    server = create_status_server(mock_repository, host="127.0.0.1", port=18099)
    try:
        assert status_app.repository is mock_repository
        assert server.config.port == 18099
    finally:
        status_app.repository = None
