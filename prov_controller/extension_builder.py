"""
Native extension builder for SageAttention.

The build runs in the background while models download and plugins sync.
Each candidate revision is tried in a fresh clone with flags chosen for the
detected GPU architecture; the first revision that installs wins.
"""

import asyncio
import logging
import shutil
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path

from prov_common.commands import CommandRunner
from prov_common.models import BuildAttempt, BuildOutcome

logger = logging.getLogger(__name__)

NO_GPU = "0.0"

CC_PROBE = (
    "import torch\n"
    "if torch.cuda.is_available():\n"
    "    major, minor = torch.cuda.get_device_capability(0)\n"
    "    print(f'{major}.{minor}')\n"
    "else:\n"
    "    print('0.0')\n"
)


@dataclass
class ArchProfile:
    compute_capability: str
    torch_cuda_arch_list: str
    gencode: list[str]
    revisions: list[str] = field(default_factory=list)

    @property
    def nvcc_flags(self) -> str:
        return " ".join(self.gencode)


def _gencode(sm: str) -> str:
    return f"-gencode arch=compute_{sm},code=sm_{sm}"


def select_arch_profile(compute_capability: str) -> ArchProfile:
    """Build flags and revision order for a ``major.minor`` compute capability."""
    cc = compute_capability.strip()
    if cc == "9.0":
        return ArchProfile(cc, "9.0;8.9;8.6;8.0", [_gencode("90")], ["main", "68de379"])
    if cc == "8.9":
        return ArchProfile(cc, "8.9;8.6;8.0", [_gencode("89")], ["68de379", "main"])
    if cc.startswith("8."):
        return ArchProfile(
            cc, "8.6;8.0", [_gencode("86"), _gencode("80")], ["main", "68de379"]
        )
    return ArchProfile(cc, "8.0", [_gencode("80")], ["main", "68de379"])


async def detect_compute_capability(
    python_bin: Path, runner: CommandRunner | None = None
) -> str:
    """``major.minor`` of GPU 0 as seen by torch, or ``0.0`` without CUDA."""
    runner = runner or CommandRunner()
    result = await runner.run(str(python_bin), "-c", CC_PROBE, timeout=120)
    if not result.ok:
        return NO_GPU
    lines = result.output.strip().splitlines()
    return lines[-1].strip() if lines else NO_GPU


class BuildHandle:
    """A background build that is joined only when its result is needed."""

    def __init__(self, task: asyncio.Task):
        self.task = task

    async def join(self, timeout: float, poll_interval: float = 5.0) -> bool:
        """
        Wait for the build with a bounded poll.

        Returns:
            True if the build finished and succeeded; False if it failed,
            raised, or is still running when ``timeout`` elapses
        """
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while not self.task.done():
            remaining = deadline - loop.time()
            if remaining <= 0:
                logger.warning(
                    f"Extension build still running after {timeout:.0f}s; continuing without it"
                )
                return False
            await asyncio.sleep(min(poll_interval, remaining))

        if self.task.cancelled():
            return False
        error = self.task.exception()
        if error is not None:
            logger.error(f"Extension build crashed: {error}")
            return False
        return bool(self.task.result())


class NativeExtensionBuilder:
    """
    Builds the extension at the first revision that compiles.

    Args:
        repo_url: Extension source repository
        work_root: Parent of the per-attempt checkout
        log_dir: One ``sage_build_<revision>.log`` per attempt is written here
        pip_bin: Installer of the target environment
        runner: Command runner
        on_attempt: Called with every finished attempt
    """

    def __init__(
        self,
        repo_url: str,
        work_root: Path,
        log_dir: Path,
        pip_bin: Path,
        runner: CommandRunner | None = None,
        max_jobs: int = 32,
        ext_parallel: int = 4,
        nvcc_append_flags: str = "--threads 8",
        on_attempt: Callable[[BuildAttempt], Awaitable[None]] | None = None,
    ):
        self.repo_url = repo_url
        self.work_root = Path(work_root)
        self.log_dir = Path(log_dir)
        self.pip_bin = Path(pip_bin)
        self.runner = runner or CommandRunner()
        self.max_jobs = max_jobs
        self.ext_parallel = ext_parallel
        self.nvcc_append_flags = nvcc_append_flags
        self.on_attempt = on_attempt
        self.attempts: list[BuildAttempt] = []

    @property
    def checkout_dir(self) -> Path:
        return self.work_root / "SageAttention"

    def build_env(self, profile: ArchProfile) -> dict[str, str]:
        return {
            "MAX_JOBS": str(self.max_jobs),
            "EXT_PARALLEL": str(self.ext_parallel),
            "NVCC_APPEND_FLAGS": self.nvcc_append_flags,
            "FORCE_CUDA": "1",
            "TORCH_CUDA_ARCH_LIST": profile.torch_cuda_arch_list,
            "EXTRA_NVCCFLAGS": profile.nvcc_flags,
            "GIT_TERMINAL_PROMPT": "0",
        }

    async def build_revision(self, revision: str, profile: ArchProfile) -> BuildAttempt:
        """One isolated attempt: fresh clone, pin, editable install."""
        env = self.build_env(profile)
        log_path = self.log_dir / f"sage_build_{revision}.log"
        self.log_dir.mkdir(parents=True, exist_ok=True)
        log_path.write_text(
            f"==> SageAttention {revision} (cc {profile.compute_capability}) "
            f"{datetime.now(UTC).isoformat()}\n"
            f"TORCH_CUDA_ARCH_LIST={profile.torch_cuda_arch_list}\n"
            f"EXTRA_NVCCFLAGS={profile.nvcc_flags}\n"
        )
        attempt = BuildAttempt(revision=revision, flags=env, log_path=log_path)

        dst = self.checkout_dir
        shutil.rmtree(dst, ignore_errors=True)
        self.work_root.mkdir(parents=True, exist_ok=True)

        steps = [
            (["git", "clone", self.repo_url, str(dst)], None),
            (["git", "-C", str(dst), "reset", "--hard", revision], None),
            ([str(self.pip_bin), "install", "--no-build-isolation", "-e", "."], dst),
        ]
        result = None
        for args, cwd in steps:
            result = await self.runner.run(*args, cwd=cwd, env=env, log_path=log_path)
            if not result.ok:
                break

        attempt.returncode = result.returncode if result else None
        attempt.outcome = BuildOutcome.SUCCEEDED if result and result.ok else BuildOutcome.FAILED
        attempt.finished_at = datetime.now(UTC)
        with open(log_path, "a") as f:
            f.write(f"==> {attempt.outcome.value}\n")

        self.attempts.append(attempt)
        if self.on_attempt is not None:
            await self.on_attempt(attempt)
        return attempt

    async def build_with_fallback(self, revisions: list[str], profile: ArchProfile) -> bool:
        """Try revisions in order; stop at the first success."""
        for revision in revisions:
            logger.info(f"Building SageAttention at {revision}")
            attempt = await self.build_revision(revision, profile)
            if attempt.succeeded:
                logger.info(f"SageAttention {revision} installed")
                return True
            logger.warning(
                f"SageAttention {revision} failed (exit {attempt.returncode}); "
                f"see {attempt.log_path}"
            )
        logger.warning("All SageAttention builds failed; continuing without it")
        return False

    def start(self, revisions: list[str], profile: ArchProfile) -> BuildHandle:
        """Run ``build_with_fallback`` as a background task."""
        task = asyncio.create_task(self.build_with_fallback(revisions, profile))
        return BuildHandle(task)
