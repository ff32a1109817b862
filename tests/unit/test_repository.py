"""
Unit tests for the SQLite run ledger.

Tests that downloads, repository results, build attempts and worker state
round-trip through the database with their upsert semantics.
"""

import os
import tempfile
from datetime import UTC, datetime
from pathlib import Path

import pytest
import pytest_asyncio

from prov_common.models import (
    BuildAttempt,
    BuildOutcome,
    DownloadJob,
    DownloadStatus,
    RepoState,
    RepoSyncResult,
    RepoTarget,
    WorkerEvent,
    WorkerHealth,
    WorkerInstance,
)
from prov_controller.launcher import plan_instances
from prov_persistence.sqlite_repository import SQLiteProvisionRepository


@pytest_asyncio.fixture
async def temp_db():
    """Create a temporary database file for testing."""
    fd, path = tempfile.mkstemp(suffix=".db")
    os.close(fd)

    repo = SQLiteProvisionRepository(path)
    await repo.initialize()

    yield repo

    await repo.close()
    if os.path.exists(path):
        os.unlink(path)


@pytest.mark.asyncio
async def test_download_upsert_by_destination(temp_db):
    """Test that a destination has one row holding its latest state."""
    job = DownloadJob(url="https://h/a.bin", dest=Path("/m/a.bin"), section="loras", gid="g1")
    await temp_db.record_download(job)

    job.status = DownloadStatus.COMPLETE
    job.total_length = job.completed_length = 10
    job.updated_at = datetime.now(UTC)
    await temp_db.record_download(job)

    rows = await temp_db.list_downloads()
    assert len(rows) == 1
    assert rows[0]["status"] == "complete"
    assert rows[0]["total_length"] == 10
    assert rows[0]["section"] == "loras"


@pytest.mark.asyncio
async def test_list_downloads_by_status(temp_db):
    """Test filtering downloads by status."""
    ok = DownloadJob(url="https://h/a", dest=Path("/m/a"), status=DownloadStatus.COMPLETE)
    bad = DownloadJob(
        url="https://h/b", dest=Path("/m/b"), status=DownloadStatus.ERROR, error="404"
    )
    await temp_db.record_download(ok)
    await temp_db.record_download(bad)

    errors = await temp_db.list_downloads(status="error")
    assert [row["dest"] for row in errors] == ["/m/b"]
    assert errors[0]["error"] == "404"
    assert len(await temp_db.list_downloads()) == 2


@pytest.mark.asyncio
async def test_repo_results(temp_db):
    """Test that repository results are keyed by directory name."""
    target = RepoTarget.from_url("https://github.com/x/Nodes.git")
    await temp_db.record_repo_result(RepoSyncResult(target=target, state=RepoState.SYNC_FAILED, error="boom"))
    await temp_db.record_repo_result(
        RepoSyncResult(
            target=target,
            state=RepoState.DEPENDENCIES_INSTALLED,
            commit="abc",
            dependencies_ok=True,
            setup_ok=None,
            log_path=Path("/logs/Nodes.log"),
        )
    )

    rows = await temp_db.list_repo_results()
    assert len(rows) == 1
    assert rows[0]["state"] == "dependencies_installed"
    assert rows[0]["commit"] == "abc"
    assert rows[0]["dependencies_ok"] is True
    assert rows[0]["setup_ok"] is None
    assert rows[0]["log_path"] == "/logs/Nodes.log"


@pytest.mark.asyncio
async def test_build_attempts_keep_history(temp_db):
    """Test that every build attempt is kept in order."""
    for revision, outcome in (("main", BuildOutcome.FAILED), ("68de379", BuildOutcome.SUCCEEDED)):
        await temp_db.record_build_attempt(
            BuildAttempt(
                revision=revision,
                flags={"TORCH_CUDA_ARCH_LIST": "8.9"},
                log_path=Path(f"/logs/sage_build_{revision}.log"),
                outcome=outcome,
                returncode=0 if outcome == BuildOutcome.SUCCEEDED else 1,
                finished_at=datetime.now(UTC),
            )
        )

    rows = await temp_db.list_build_attempts()
    assert [row["revision"] for row in rows] == ["main", "68de379"]
    assert rows[0]["outcome"] == "failed"
    assert rows[1]["flags"] == {"TORCH_CUDA_ARCH_LIST": "8.9"}


@pytest.mark.asyncio
async def test_worker_upsert_and_events(temp_db):
    """Test worker health upserts and per-port event lists."""
    specs = plan_instances(Path("/w"), Path("/w/logs"), 1)
    first = WorkerInstance(spec=specs[0])
    second = WorkerInstance(spec=specs[1])
    await temp_db.upsert_worker(first)
    await temp_db.upsert_worker(second)

    first.health = WorkerHealth.READY
    first.was_up = True
    await temp_db.upsert_worker(first)

    worker = await temp_db.get_worker(8188)
    assert worker["health"] == "ready"
    assert worker["was_up"] is True
    assert worker["output_dir"] == "/w/output"
    assert [w["port"] for w in await temp_db.list_workers()] == [8188, 8288]
    assert await temp_db.get_worker(9999) is None

    await temp_db.add_worker_event(WorkerEvent(port=8188, kind="ready", message="up"))
    await temp_db.add_worker_event(WorkerEvent(port=8288, kind="not_ready", message="slow"))

    events = await temp_db.list_worker_events(8188)
    assert [e["kind"] for e in events] == ["ready"]
    assert len(await temp_db.list_worker_events()) == 2
