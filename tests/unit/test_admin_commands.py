"""
Unit tests for the admin CLI.

Commands run in-process through click's CliRunner with settings passed as
environment variables; the transfer backend is replaced with the in-memory
double.
"""

import asyncio
import json
from pathlib import Path

import pytest
from click.testing import CliRunner

import prov_admin.cli as admin
from prov_common.models import DownloadStatus, WorkerInstance
from prov_controller.launcher import plan_instances
from prov_downloads.fetcher import ArtifactFetcher
from prov_downloads.queue import DownloadQueueManager
from prov_persistence.sqlite_repository import SQLiteProvisionRepository


@pytest.fixture
def env(tmp_path):
    return {
        "WORKSPACE": str(tmp_path),
        "PROV_DB_PATH": str(tmp_path / "ledger.db"),
        "MODEL_MANIFEST_URL": "",
        "CUSTOM_NODE_LIST_FILE": "",
        "CUSTOM_NODE_LIST": "",
        "HF_REPO_ID": "",
        "BUNDLE_TAG": "",
        "PINS": "",
    }


@pytest.fixture
def runner():
    return CliRunner()


@pytest.fixture
def patched_backend(monkeypatch, fake_backend, no_auth_probe):
    """Route every command to the in-memory backend."""

    def make_queue(config, backend):
        return DownloadQueueManager(
            backend,
            ArtifactFetcher(backend, probe=no_auth_probe),
            default_dir=config.comfy_home / "models",
            tuning_for=config.tuning_for,
        )

    monkeypatch.setattr(admin, "make_backend", lambda config: fake_backend)
    monkeypatch.setattr(admin, "ensure_backend", lambda config, backend: None)
    monkeypatch.setattr(admin, "make_queue", make_queue)
    return fake_backend


def seed_workers(db_path: str):
    async def seed():
        repo = SQLiteProvisionRepository(db_path)
        await repo.initialize()
        try:
            for spec in plan_instances(Path("/w"), Path("/w/logs"), 0):
                await repo.upsert_worker(WorkerInstance(spec=spec))
        finally:
            await repo.close()

    asyncio.run(seed())


class TestStatusCommands:
    """Test suite for ledger listings."""

    @pytest.mark.parametrize(
        "command,empty",
        [
            ("downloads", "No downloads recorded."),
            ("repos", "No repositories recorded."),
            ("builds", "No builds recorded."),
            ("workers", "No workers recorded."),
        ],
    )
    def test_empty_ledger(self, runner, env, command, empty):
        result = runner.invoke(admin.cli, ["status", command], env=env)

        assert result.exit_code == 0
        assert empty in result.output

    def test_workers_table(self, runner, env):
        seed_workers(env["PROV_DB_PATH"])

        result = runner.invoke(admin.cli, ["status", "workers"], env=env)

        assert result.exit_code == 0
        assert "PORT" in result.output
        assert "HEALTH" in result.output
        assert "8188" in result.output
        assert "starting" in result.output

    def test_workers_json(self, runner, env):
        seed_workers(env["PROV_DB_PATH"])

        result = runner.invoke(admin.cli, ["status", "workers", "--json"], env=env)

        assert result.exit_code == 0
        rows = json.loads(result.output)
        assert [row["port"] for row in rows] == [8188]
        assert rows[0]["gpu"] == "all"


class TestNodeCommands:
    def test_list_inline(self, runner, env):
        env["CUSTOM_NODE_LIST"] = (
            "https://github.com/x/NodeA.git https://github.com/kijai/ComfyUI-KJNodes"
        )

        result = runner.invoke(admin.cli, ["nodes", "list", "--json"], env=env)

        assert result.exit_code == 0
        rows = json.loads(result.output)
        assert [row["name"] for row in rows] == ["NodeA", "ComfyUI-KJNodes"]

    def test_list_from_file(self, runner, env, tmp_path):
        list_file = tmp_path / "nodes.txt"
        list_file.write_text("# plugins\nhttps://github.com/x/FromFile\n")
        env["CUSTOM_NODE_LIST_FILE"] = str(list_file)
        env["CUSTOM_NODE_LIST"] = "https://github.com/x/Inline"

        result = runner.invoke(admin.cli, ["nodes", "list"], env=env)

        assert result.exit_code == 0
        assert "FromFile" in result.output
        assert "Inline" not in result.output


class TestBundleCommands:
    def test_signature_from_pins(self, runner, env):
        env["PINS"] = "np1d26d4_cupy13d6d0_cv4d10d0"

        result = runner.invoke(admin.cli, ["bundle", "signature"], env=env)

        assert result.exit_code == 0
        assert result.output.strip() == "np1d26d4_cupy13d6d0_cv4d10d0"

    def test_pull_needs_tag(self, runner, env):
        result = runner.invoke(admin.cli, ["bundle", "pull"], env=env)

        assert result.exit_code == 1
        assert "BUNDLE_TAG is not set" in result.output

    def test_pull_needs_store(self, runner, env):
        result = runner.invoke(admin.cli, ["bundle", "pull", "--tag", "wan"], env=env)

        assert result.exit_code == 1
        assert "HF_REPO_ID is not set" in result.output


class TestDownloadCommands:
    """Test suite for queue commands against the in-memory backend."""

    @pytest.fixture
    def manifest(self, tmp_path):
        path = tmp_path / "manifest.json"
        path.write_text(
            json.dumps(
                {
                    "paths": {"LORAS": str(tmp_path / "loras")},
                    "sections": {
                        "loras": [["https://example.com/a.safetensors", "{LORAS}/a.safetensors"]],
                        "vae": ["https://example.com/vae.safetensors"],
                    },
                }
            )
        )
        return path

    def test_unknown_section(self, runner, env, manifest, patched_backend):
        result = runner.invoke(
            admin.cli, ["downloads", "manifest", str(manifest), "--section", "nope"], env=env
        )

        assert result.exit_code == 1
        assert "Unknown section(s): nope" in result.output
        assert patched_backend.added == []

    def test_no_enabled_sections(self, runner, env, manifest, patched_backend):
        result = runner.invoke(admin.cli, ["downloads", "manifest", str(manifest)], env=env)

        assert result.exit_code == 0
        assert "No sections enabled." in result.output

    def test_enqueue_without_waiting(self, runner, env, manifest, patched_backend, tmp_path):
        result = runner.invoke(
            admin.cli,
            ["downloads", "manifest", str(manifest), "--section", "loras", "--no-wait"],
            env=env,
        )

        assert result.exit_code == 0
        assert "✓ Queued 1, skipped 0, failed 0" in result.output
        url, options = patched_backend.added[0]
        assert url == "https://example.com/a.safetensors"
        assert Path(options["dir"]) / options["out"] == tmp_path / "loras" / "a.safetensors"

    def test_missing_manifest(self, runner, env, patched_backend):
        result = runner.invoke(admin.cli, ["downloads", "manifest"], env=env)

        assert result.exit_code == 1
        assert "MODEL_MANIFEST_URL is not set" in result.output

    def test_stop(self, runner, env, patched_backend):
        patched_backend.add_job("https://h/a", {"dir": "/m", "out": "a"})
        patched_backend.add_job("https://h/b", {"dir": "/m", "out": "b"})
        patched_backend.set_status("g1", DownloadStatus.ACTIVE)

        result = runner.invoke(admin.cli, ["downloads", "stop"], env=env)

        assert result.exit_code == 0
        assert "✓ Removed 2 download(s)" in result.output
        assert patched_backend.paused
        assert patched_backend.jobs == {}

    def test_backend_unreachable(self, runner, env, patched_backend):
        patched_backend.alive = False

        result = runner.invoke(admin.cli, ["downloads", "progress"], env=env)

        assert result.exit_code == 1
        assert "aria2 RPC is not reachable" in result.output
