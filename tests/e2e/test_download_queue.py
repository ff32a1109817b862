"""
End-to-end test of the download queue against a real aria2c daemon.

A local HTTP server serves the model files; the test is skipped when aria2c
is not installed.
"""

import functools
import http.server
import json
import shutil
import socket
import threading

import pytest

from prov_common.errors import TransferBackendError
from prov_common.manifest import Manifest
from prov_common.models import DownloadStatus
from prov_downloads.backend import Aria2Daemon, Aria2RpcBackend
from prov_downloads.fetcher import ArtifactFetcher
from prov_downloads.queue import DownloadQueueManager

pytestmark = pytest.mark.skipif(shutil.which("aria2c") is None, reason="aria2c not installed")


def free_port() -> int:
    with socket.socket() as s:
        s.bind(("127.0.0.1", 0))
        return s.getsockname()[1]


@pytest.fixture
def file_server(tmp_path):
    """Serve tmp_path/served over HTTP on a free port."""
    root = tmp_path / "served"
    root.mkdir()
    (root / "model.bin").write_bytes(b"0123456789")
    handler = functools.partial(http.server.SimpleHTTPRequestHandler, directory=str(root))
    server = http.server.ThreadingHTTPServer(("127.0.0.1", 0), handler)
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()

    yield f"http://127.0.0.1:{server.server_address[1]}"

    server.shutdown()
    server.server_close()


@pytest.fixture
def aria2(tmp_path):
    port = free_port()
    backend = Aria2RpcBackend(port=port, secret="e2e-secret")
    daemon = Aria2Daemon(port=port, secret="e2e-secret", log_path=tmp_path / "logs" / "aria2.log")
    assert daemon.ensure_running(backend)

    yield backend

    try:
        backend._call("aria2.forceShutdown")
    except TransferBackendError:
        pass


def test_manifest_section_downloads(tmp_path, file_server, aria2):
    models = tmp_path / "ComfyUI" / "models"
    manifest = Manifest.parse(
        {
            "paths": {"LORAS": str(models / "loras")},
            "sections": {
                "loras": [[f"{file_server}/model.bin", "{LORAS}/model.bin"]],
                "vae": [f"{file_server}/model.bin"],
            },
        }
    )
    queue = DownloadQueueManager(aria2, ArtifactFetcher(aria2), default_dir=models)

    sections = manifest.enabled_sections({"loras": "true"})
    result = queue.enqueue_manifest(manifest, sections, {})
    assert len(result.handles) == 1

    lines = []
    snapshot = queue.run_progress_loop(interval=0.2, root=tmp_path / "ComfyUI", emit=lines.append)
    assert queue.wait_all(result.handles, poll_interval=0.2)

    dest = models / "loras" / "model.bin"
    assert dest.read_bytes() == b"0123456789"
    assert not dest.with_name("model.bin.aria2").exists()
    assert result.handles[0].status == DownloadStatus.COMPLETE
    assert snapshot.is_idle
    assert [entry.name for entry in snapshot.completed] == ["model.bin"]
    assert "Completed (this session):" in lines[-1]

    # a second pass finds the finished file and enqueues nothing
    again = queue.enqueue_manifest(manifest, sections, {})
    assert again.handles == []
    assert again.skipped == [dest]


def test_missing_file_is_an_error(tmp_path, file_server, aria2):
    queue = DownloadQueueManager(aria2, ArtifactFetcher(aria2), default_dir=tmp_path)

    job = queue.enqueue(f"{file_server}/missing.bin", tmp_path / "missing.bin")

    assert not queue.wait_all([job], poll_interval=0.2)
    assert job.status == DownloadStatus.ERROR
    assert json.dumps(job.to_dict())
