"""
Session backends for long-running worker processes.

A session is a named, detached process that outlives the bootstrap run's
own stdout. Tmux is preferred so operators can attach; a plain detached
process group is used when tmux is not installed.
"""

import asyncio
import logging
import os
import shlex
import shutil
import subprocess
from abc import ABC, abstractmethod
from pathlib import Path

from prov_common.errors import SessionError

logger = logging.getLogger(__name__)


def shell_command(command: list[str], env: dict[str, str], cwd: Path, log_file: Path) -> str:
    """Single shell line that runs ``command`` with ``env`` in ``cwd``, appending output to ``log_file``."""
    assignments = " ".join(f"{k}={shlex.quote(v)}" for k, v in env.items())
    prefix = f"env {assignments} " if assignments else ""
    return (
        f"cd {shlex.quote(str(cwd))} && "
        f"{prefix}{shlex.join(command)} >> {shlex.quote(str(log_file))} 2>&1"
    )


class SessionBackend(ABC):
    @abstractmethod
    async def start(
        self, name: str, command: list[str], env: dict[str, str], cwd: Path, log_file: Path
    ) -> None:
        """
        Start a detached session, replacing any existing session of that name.

        Raises:
            SessionError: If the session cannot be started
        """
        pass

    @abstractmethod
    async def exists(self, name: str) -> bool:
        pass

    @abstractmethod
    async def kill(self, name: str) -> None:
        pass


class TmuxSessionBackend(SessionBackend):
    """Runs each worker in its own tmux session via the tmux CLI."""

    def __init__(self, binary: str = "tmux"):
        self.binary = binary

    async def _tmux(self, *args: str) -> tuple[int, str]:
        proc = await asyncio.create_subprocess_exec(
            self.binary,
            *args,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        _, stderr = await proc.communicate()
        return proc.returncode, stderr.decode(errors="replace")

    async def start(
        self, name: str, command: list[str], env: dict[str, str], cwd: Path, log_file: Path
    ) -> None:
        if await self.exists(name):
            logger.info(f"Replacing existing tmux session {name}")
            await self.kill(name)

        log_file.parent.mkdir(parents=True, exist_ok=True)
        line = shell_command(command, env, cwd, log_file)
        returncode, stderr = await self._tmux(
            "new-session", "-d", "-s", name, f"bash -lc {shlex.quote(line)}"
        )
        if returncode != 0:
            raise SessionError(f"Failed to start tmux session {name}: {stderr}")

    async def exists(self, name: str) -> bool:
        returncode, _ = await self._tmux("has-session", "-t", name)
        return returncode == 0

    async def kill(self, name: str) -> None:
        await self._tmux("kill-session", "-t", name)


class DetachedProcessBackend(SessionBackend):
    """Runs each worker as its own process group when tmux is unavailable."""

    def __init__(self):
        self._processes: dict[str, subprocess.Popen] = {}

    async def start(
        self, name: str, command: list[str], env: dict[str, str], cwd: Path, log_file: Path
    ) -> None:
        if await self.exists(name):
            await self.kill(name)

        log_file.parent.mkdir(parents=True, exist_ok=True)
        full_env = dict(os.environ)
        full_env.update(env)
        try:
            with open(log_file, "ab") as log:
                self._processes[name] = subprocess.Popen(
                    command,
                    cwd=str(cwd),
                    env=full_env,
                    stdout=log,
                    stderr=subprocess.STDOUT,
                    stdin=subprocess.DEVNULL,
                    start_new_session=True,
                )
        except OSError as e:
            raise SessionError(f"Failed to start {name}: {e}") from e

    async def exists(self, name: str) -> bool:
        proc = self._processes.get(name)
        return proc is not None and proc.poll() is None

    async def kill(self, name: str) -> None:
        proc = self._processes.pop(name, None)
        if proc is None or proc.poll() is not None:
            return
        proc.terminate()
        try:
            await asyncio.to_thread(proc.wait, 10)
        except subprocess.TimeoutExpired:
            proc.kill()


def default_session_backend() -> SessionBackend:
    if shutil.which("tmux"):
        return TmuxSessionBackend()
    logger.warning("tmux not found; running workers as detached processes")
    return DetachedProcessBackend()
