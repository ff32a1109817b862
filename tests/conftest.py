"""
Shared test doubles: an in-memory transfer backend and a scripted command runner.
"""

import asyncio
from pathlib import Path

import pytest

from prov_common.commands import CommandResult
from prov_common.errors import TransferBackendError
from prov_common.models import DownloadStatus, TransferStatus
from prov_downloads.backend import TransferBackend


class FakeTransferBackend(TransferBackend):
    """Keeps jobs in a dict; tests move them between states by hand."""

    def __init__(self):
        self.jobs: dict[str, TransferStatus] = {}
        self.added: list[tuple[str, dict[str, str]]] = []
        self.refuse: set[str] = set()
        self.paused = False
        self.purged = False
        self.alive = True

    def add_job(self, url: str, options: dict[str, str]) -> str:
        if url in self.refuse:
            raise TransferBackendError("refused", raw_error={"code": 1})
        gid = f"g{len(self.added) + 1}"
        self.added.append((url, options))
        self.jobs[gid] = TransferStatus(
            gid=gid,
            status=DownloadStatus.WAITING,
            path=str(Path(options["dir"]) / options["out"]),
        )
        return gid

    def set_status(self, gid: str, status: DownloadStatus, size: int = 0, message=None):
        job = self.jobs[gid]
        job.status = status
        job.total_length = size
        job.completed_length = size if status == DownloadStatus.COMPLETE else 0
        job.error_message = message

    def query_status(self, gid: str) -> TransferStatus:
        if gid not in self.jobs:
            raise TransferBackendError(f"GID {gid} is not found")
        return self.jobs[gid]

    def _with(self, *statuses):
        return [s for s in self.jobs.values() if s.status in statuses]

    def list_active(self):
        return self._with(DownloadStatus.ACTIVE)

    def list_waiting(self, offset=0, limit=1000):
        return self._with(DownloadStatus.WAITING, DownloadStatus.PAUSED)

    def list_stopped(self, offset=0, limit=1000):
        return self._with(DownloadStatus.COMPLETE, DownloadStatus.ERROR, DownloadStatus.REMOVED)

    def cancel_job(self, gid: str) -> None:
        self.jobs[gid].status = DownloadStatus.REMOVED

    def pause_all(self) -> None:
        self.paused = True

    def purge_results(self) -> None:
        self.purged = True
        for gid in [g for g, s in self.jobs.items() if s.status.is_terminal]:
            del self.jobs[gid]

    def ping(self) -> bool:
        return self.alive


class ScriptedRunner:
    """
    Command runner double.

    ``handler(args, cwd, env)`` returns a CommandResult, an int exit code or
    None (success). Every call is recorded in ``calls``; ``delay`` makes each
    call yield to the event loop.
    """

    def __init__(self, handler=None, delay: float = 0.0):
        self.handler = handler
        self.delay = delay
        self.calls: list[dict] = []

    async def run(self, *args, cwd=None, env=None, log_path=None, timeout=None):
        self.calls.append({"args": list(args), "cwd": cwd, "env": env, "log_path": log_path})
        if self.delay:
            await asyncio.sleep(self.delay)
        outcome = self.handler(list(args), cwd, env) if self.handler else None
        if isinstance(outcome, CommandResult):
            result = outcome
        else:
            result = CommandResult(list(args), outcome or 0, "")
        if log_path is not None:
            log_path.parent.mkdir(parents=True, exist_ok=True)
            with open(log_path, "a") as f:
                f.write(f"$ {' '.join(result.args)}\n{result.output}[exit {result.returncode}]\n")
        return result

    def commands(self) -> list[list[str]]:
        return [call["args"] for call in self.calls]


class NoAuthProbe:
    """Auth probe that never asks for credentials."""

    def __init__(self, required: bool = False):
        self.required = required
        self.urls: list[str] = []

    def requires_auth(self, url: str) -> bool:
        self.urls.append(url)
        return self.required


@pytest.fixture
def fake_backend():
    return FakeTransferBackend()


@pytest.fixture
def runner_factory():
    return ScriptedRunner


@pytest.fixture
def no_auth_probe():
    return NoAuthProbe()
