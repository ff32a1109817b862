"""
Repository sync manager.

Clones or updates each repository target with remote-wins semantics, then
runs its dependency install and setup script. Targets run concurrently up
to a limit; one target failing never stops the others.
"""

import asyncio
import logging
from datetime import UTC, datetime
from pathlib import Path

from prov_common.commands import CommandRunner
from prov_common.models import RepoState, RepoSyncResult, RepoTarget, SyncReport

logger = logging.getLogger(__name__)

GIT_ENV = {"GIT_TERMINAL_PROMPT": "0", "GIT_ASKPASS": "/bin/echo"}
FALLBACK_BRANCHES = ("main", "master")


class RepoSyncManager:
    """
    Keeps plugin repositories checked out and built.

    ``peak_active`` records the largest number of targets observed in flight
    at once, which is what the concurrency limit bounds.
    """

    def __init__(
        self,
        target_dir: Path,
        log_dir: Path,
        python_bin: Path,
        pip_bin: Path,
        git_depth: int = 1,
        runner: CommandRunner | None = None,
    ):
        self.target_dir = Path(target_dir)
        self.log_dir = Path(log_dir)
        self.python_bin = Path(python_bin)
        self.pip_bin = Path(pip_bin)
        self.git_depth = git_depth
        self.runner = runner or CommandRunner()
        self.active = 0
        self.peak_active = 0

    async def sync_and_build(
        self, targets: list[RepoTarget], concurrency_limit: int
    ) -> SyncReport:
        """
        Sync and build every target with at most ``concurrency_limit`` in flight.

        Returns:
            SyncReport with one result per target, in target order
        """
        limit = max(1, concurrency_limit)
        semaphore = asyncio.Semaphore(limit)
        self.target_dir.mkdir(parents=True, exist_ok=True)
        self.log_dir.mkdir(parents=True, exist_ok=True)
        logger.info(f"Syncing {len(targets)} repositories with concurrency {limit}")

        async def _bounded(target: RepoTarget) -> RepoSyncResult:
            async with semaphore:
                self.active += 1
                self.peak_active = max(self.peak_active, self.active)
                try:
                    return await self.sync_one(target)
                finally:
                    self.active -= 1

        results = await asyncio.gather(*(_bounded(t) for t in targets))
        report = SyncReport(results=list(results), peak_active=self.peak_active)

        if report.failures:
            logger.error(
                f"Repository sync finished with {report.failures} error(s); "
                f"check logs in {self.log_dir}"
            )
        else:
            logger.info(f"All {len(targets)} repositories synced")
        return report

    async def ensure_application(self, url: str, home: Path) -> RepoSyncResult:
        """Sync the served application checkout itself, then install its requirements."""
        home = Path(home)
        target = RepoTarget(url=url, name=home.name, setup_script=None)
        return await self.sync_one(target, dst=home)

    async def sync_one(self, target: RepoTarget, dst: Path | None = None) -> RepoSyncResult:
        dst = dst or self.target_dir / target.name
        log_path = self.log_dir / f"{target.name}.log"
        log_path.parent.mkdir(parents=True, exist_ok=True)
        log_path.write_text(f"==> [{target.name}] {datetime.now(UTC).isoformat()} start\n")

        try:
            checkout = await self.checkout(target, dst, log_path)
        except RuntimeError as e:
            logger.error(f"Sync failed for {target.name}: {e}")
            return RepoSyncResult(
                target=target, state=RepoState.SYNC_FAILED, error=str(e), log_path=log_path
            )

        commit = await self.head_commit(dst)
        deps_ok = await self.install_dependencies(target, dst, log_path)
        setup_ok = await self.run_setup(target, dst, log_path)

        if deps_ok is False or setup_ok is False:
            state = RepoState.DEPENDENCY_INSTALL_FAILED
            logger.warning(f"Install steps failed for {target.name} (see {log_path})")
        else:
            state = RepoState.DEPENDENCIES_INSTALLED
            logger.info(f"Completed install for {target.name}")

        with open(log_path, "a") as f:
            f.write(f"==> [{target.name}] {datetime.now(UTC).isoformat()} done\n")

        return RepoSyncResult(
            target=target,
            state=state,
            checkout=checkout,
            commit=commit,
            dependencies_ok=deps_ok,
            setup_ok=setup_ok,
            log_path=log_path,
        )

    async def _git(self, *args: str, cwd: Path | None = None, log_path: Path | None = None):
        return await self.runner.run("git", *args, cwd=cwd, env=GIT_ENV, log_path=log_path)

    async def checkout(self, target: RepoTarget, dst: Path, log_path: Path) -> RepoState:
        """
        Clone an absent target or reset an existing one to the remote branch.

        Raises:
            RuntimeError: If git fails, or if the directory holds something
                that is not a git checkout (it is never deleted)
        """
        if (dst / ".git").exists():
            result = await self._git(
                "fetch", "--all", "--prune", "--tags", f"--depth={self.git_depth}",
                cwd=dst, log_path=log_path,
            )
            if not result.ok:
                raise RuntimeError(f"git fetch failed (exit {result.returncode})")

            ref = await self.remote_default_ref(dst, log_path)
            result = await self._git("reset", "--hard", ref, cwd=dst, log_path=log_path)
            if not result.ok:
                raise RuntimeError(f"git reset to {ref} failed (exit {result.returncode})")

            if target.recursive:
                await self._git(
                    "submodule", "update", "--init", "--recursive",
                    cwd=dst, log_path=log_path,
                )
            logger.info(f"Updated {target.name} to {ref}")
            return RepoState.UPDATED

        if dst.exists() and any(dst.iterdir()):
            raise RuntimeError(f"{dst} exists but is not a git checkout; leaving it untouched")

        dst.parent.mkdir(parents=True, exist_ok=True)
        args = ["clone"]
        if target.recursive:
            args.append("--recursive")
        args += ["--depth", str(self.git_depth), target.url, str(dst)]
        result = await self._git(*args, log_path=log_path)
        if not result.ok:
            raise RuntimeError(f"git clone failed (exit {result.returncode})")
        logger.info(f"Cloned {target.name}")
        return RepoState.CLONED

    async def remote_default_ref(self, dst: Path, log_path: Path | None = None) -> str:
        """
        The remote's default branch: origin/HEAD, else origin/main, else origin/master.

        Raises:
            RuntimeError: If none of them exists
        """
        result = await self._git(
            "symbolic-ref", "--quiet", "--short", "refs/remotes/origin/HEAD", cwd=dst
        )
        if result.ok and result.output.strip():
            return result.output.strip().splitlines()[-1]

        for branch in FALLBACK_BRANCHES:
            result = await self._git(
                "rev-parse", "--verify", "--quiet", f"refs/remotes/origin/{branch}", cwd=dst
            )
            if result.ok:
                return f"origin/{branch}"
        raise RuntimeError("cannot determine the remote default branch")

    async def head_commit(self, dst: Path) -> str | None:
        result = await self._git("rev-parse", "HEAD", cwd=dst)
        return result.output.strip() if result.ok else None

    async def install_dependencies(
        self, target: RepoTarget, dst: Path, log_path: Path
    ) -> bool | None:
        if not target.requirements_file:
            return None
        requirements = dst / target.requirements_file
        if not requirements.is_file():
            return None
        result = await self.runner.run(
            str(self.pip_bin), "install", "--no-cache-dir", "-r", str(requirements),
            cwd=dst, log_path=log_path,
        )
        return result.ok

    async def run_setup(self, target: RepoTarget, dst: Path, log_path: Path) -> bool | None:
        if not target.setup_script:
            return None
        script = dst / target.setup_script
        if not script.is_file():
            return None
        result = await self.runner.run(
            str(self.python_bin), str(script), cwd=dst, log_path=log_path
        )
        return result.ok
