"""
Unit tests for RepoSyncManager.

Most tests use the scripted runner; TestRealGit drives an actual git
binary against a local origin repository.
"""

import shutil
import subprocess
from pathlib import Path

import pytest

from prov_common.commands import CommandResult
from prov_common.models import RepoState, RepoTarget
from prov_nodes.sync import RepoSyncManager


def make_manager(tmp_path, runner):
    return RepoSyncManager(
        target_dir=tmp_path / "custom_nodes",
        log_dir=tmp_path / "logs",
        python_bin=Path("/venv/bin/python"),
        pip_bin=Path("/venv/bin/pip"),
        git_depth=1,
        runner=runner,
    )


def targets(*names):
    return [RepoTarget.from_url(f"https://github.com/x/{name}.git") for name in names]


class TestSyncAndBuild:
    """Test suite for the bounded sync run."""

    @pytest.mark.asyncio
    async def test_concurrency_is_bounded(self, tmp_path, runner_factory):
        runner = runner_factory(delay=0.01)
        manager = make_manager(tmp_path, runner)

        report = await manager.sync_and_build(targets("a", "b", "c", "d", "e", "f"), 2)

        assert report.peak_active == 2
        assert len(report.results) == 6
        assert report.exit_status == 0

    @pytest.mark.asyncio
    async def test_results_in_target_order(self, tmp_path, runner_factory):
        manager = make_manager(tmp_path, runner_factory(delay=0.001))
        report = await manager.sync_and_build(targets("c", "a", "b"), 3)

        assert [r.target.name for r in report.results] == ["c", "a", "b"]
        assert all(r.state == RepoState.DEPENDENCIES_INSTALLED for r in report.results)
        assert all(r.checkout == RepoState.CLONED for r in report.results)

    @pytest.mark.asyncio
    async def test_one_failure_does_not_stop_others(self, tmp_path, runner_factory):
        def handler(args, cwd, env):
            if args[1] == "clone" and args[-2].endswith("/bad.git"):
                return CommandResult(args, 128, "fatal: repository not found\n")
            return None

        runner = runner_factory(handler)
        manager = make_manager(tmp_path, runner)

        report = await manager.sync_and_build(targets("good", "bad", "other"), 2)

        states = {r.target.name: r.state for r in report.results}
        assert states["bad"] == RepoState.SYNC_FAILED
        assert states["good"] == RepoState.DEPENDENCIES_INSTALLED
        assert states["other"] == RepoState.DEPENDENCIES_INSTALLED
        assert report.failures == 1
        assert report.exit_status == 2
        assert "repository not found" in (tmp_path / "logs" / "bad.log").read_text()


class TestSyncOne:
    """Test suite for a single target."""

    @pytest.mark.asyncio
    async def test_clone_command(self, tmp_path, runner_factory):
        runner = runner_factory()
        manager = make_manager(tmp_path, runner)
        target = RepoTarget.from_url("https://github.com/x/Sub.git", recursive=True)

        await manager.sync_one(target)

        clone = runner.commands()[0]
        assert clone[:3] == ["git", "clone", "--recursive"]
        assert clone[-2:] == [target.url, str(tmp_path / "custom_nodes" / "Sub")]
        assert "--depth" in clone
        assert runner.calls[0]["env"]["GIT_TERMINAL_PROMPT"] == "0"

    @pytest.mark.asyncio
    async def test_non_git_directory_is_left_alone(self, tmp_path, runner_factory):
        runner = runner_factory()
        manager = make_manager(tmp_path, runner)
        dst = tmp_path / "custom_nodes" / "a"
        dst.mkdir(parents=True)
        (dst / "precious.txt").write_text("keep")

        result = await manager.sync_one(targets("a")[0])

        assert result.state == RepoState.SYNC_FAILED
        assert result.hard_failed
        assert (dst / "precious.txt").read_text() == "keep"
        assert runner.calls == []

    @pytest.mark.asyncio
    async def test_update_resets_to_remote_head(self, tmp_path, runner_factory):
        def handler(args, cwd, env):
            if "symbolic-ref" in args:
                return CommandResult(args, 0, "origin/main\n")
            if args[1:3] == ["rev-parse", "HEAD"]:
                return CommandResult(args, 0, "abc123\n")
            return None

        runner = runner_factory(handler)
        manager = make_manager(tmp_path, runner)
        dst = tmp_path / "custom_nodes" / "a"
        (dst / ".git").mkdir(parents=True)

        result = await manager.sync_one(targets("a")[0])

        commands = runner.commands()
        assert commands[0][:2] == ["git", "fetch"]
        assert ["git", "reset", "--hard", "origin/main"] in commands
        assert not any(c[1] == "clone" for c in commands)
        assert result.checkout == RepoState.UPDATED
        assert result.commit == "abc123"

    @pytest.mark.asyncio
    async def test_default_branch_fallback(self, tmp_path, runner_factory):
        def handler(args, cwd, env):
            if "symbolic-ref" in args:
                return 1
            if "refs/remotes/origin/main" in args:
                return 1
            return None

        runner = runner_factory(handler)
        manager = make_manager(tmp_path, runner)
        (tmp_path / "custom_nodes" / "a" / ".git").mkdir(parents=True)

        await manager.sync_one(targets("a")[0])

        assert ["git", "reset", "--hard", "origin/master"] in runner.commands()

    @pytest.mark.asyncio
    async def test_no_default_branch_is_a_sync_failure(self, tmp_path, runner_factory):
        def handler(args, cwd, env):
            if "symbolic-ref" in args or "--verify" in args:
                return 1
            return None

        manager = make_manager(tmp_path, runner_factory(handler))
        (tmp_path / "custom_nodes" / "a" / ".git").mkdir(parents=True)

        result = await manager.sync_one(targets("a")[0])
        assert result.state == RepoState.SYNC_FAILED

    @pytest.mark.asyncio
    async def test_install_steps(self, tmp_path, runner_factory):
        def handler(args, cwd, env):
            if args[0] == "/venv/bin/pip":
                return 1
            return None

        runner = runner_factory(handler)
        manager = make_manager(tmp_path, runner)
        dst = tmp_path / "custom_nodes" / "a"
        (dst / ".git").mkdir(parents=True)
        (dst / "requirements.txt").write_text("numpy\n")
        (dst / "install.py").write_text("print('ok')\n")

        result = await manager.sync_one(targets("a")[0])

        assert result.dependencies_ok is False
        assert result.setup_ok is True
        assert result.state == RepoState.DEPENDENCY_INSTALL_FAILED
        assert not result.hard_failed
        assert [
            "/venv/bin/pip", "install", "--no-cache-dir", "-r", str(dst / "requirements.txt")
        ] in runner.commands()
        assert ["/venv/bin/python", str(dst / "install.py")] in runner.commands()

    @pytest.mark.asyncio
    async def test_log_file_per_target(self, tmp_path, runner_factory):
        manager = make_manager(tmp_path, runner_factory())
        result = await manager.sync_one(targets("a")[0])

        text = result.log_path.read_text()
        assert text.startswith("==> [a] ")
        assert "$ git clone" in text
        assert text.rstrip().endswith("done")

    @pytest.mark.asyncio
    async def test_ensure_application_skips_setup_script(self, tmp_path, runner_factory):
        runner = runner_factory()
        manager = make_manager(tmp_path, runner)
        home = tmp_path / "ComfyUI"
        home.mkdir()
        (home / ".git").mkdir()
        (home / "install.py").write_text("")

        result = await manager.ensure_application("https://github.com/x/ComfyUI", home)

        assert result.target.name == "ComfyUI"
        assert result.setup_ok is None
        assert not any(str(home / "install.py") in c for c in runner.commands())


def git(*args, cwd):
    subprocess.run(
        ["git", "-c", "user.name=t", "-c", "user.email=t@example.com", *args],
        cwd=cwd,
        check=True,
        capture_output=True,
    )


@pytest.mark.skipif(shutil.which("git") is None, reason="git not installed")
class TestRealGit:
    """Clone, diverge locally, re-sync: the remote wins and .git is kept."""

    @pytest.fixture
    def origin(self, tmp_path):
        path = tmp_path / "origin" / "Plugin"
        path.mkdir(parents=True)
        git("init", "-b", "main", cwd=path)
        (path / "node.py").write_text("v1\n")
        git("add", "node.py", cwd=path)
        git("commit", "-m", "v1", cwd=path)
        return path

    @pytest.mark.asyncio
    async def test_resync_keeps_checkout_and_takes_remote(self, tmp_path, origin):
        manager = RepoSyncManager(
            target_dir=tmp_path / "custom_nodes",
            log_dir=tmp_path / "logs",
            python_bin=Path("/nonexistent/python"),
            pip_bin=Path("/nonexistent/pip"),
        )
        target = RepoTarget(url=origin.as_uri(), name="Plugin")
        dst = tmp_path / "custom_nodes" / "Plugin"

        first = await manager.sync_one(target)
        assert first.checkout == RepoState.CLONED
        assert (dst / "node.py").read_text() == "v1\n"
        marker = dst / ".git" / "kept-marker"
        marker.write_text("x")

        (dst / "node.py").write_text("local edit\n")
        (origin / "node.py").write_text("v2\n")
        git("commit", "-am", "v2", cwd=origin)

        second = await manager.sync_one(target)

        assert second.checkout == RepoState.UPDATED
        assert (dst / "node.py").read_text() == "v2\n"
        assert marker.exists()
