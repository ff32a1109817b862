"""
Async runner for external commands (git, pip, tmux, nvidia-smi, ...).

Every provisioning step that shells out goes through CommandRunner so the
components can be tested with a fake runner.
"""

import asyncio
import os
from dataclasses import dataclass
from pathlib import Path


@dataclass
class CommandResult:
    args: list[str]
    returncode: int
    output: str = ""

    @property
    def ok(self) -> bool:
        return self.returncode == 0


class CommandRunner:
    """Runs commands with asyncio subprocesses, stderr merged into stdout."""

    async def run(
        self,
        *args: str,
        cwd: Path | None = None,
        env: dict[str, str] | None = None,
        log_path: Path | None = None,
        timeout: float | None = None,
    ) -> CommandResult:
        """
        Run a command to completion.

        Args:
            *args: Program and arguments
            cwd: Working directory
            env: Variables added on top of the current environment
            log_path: If set, the combined output is appended to this file
            timeout: Seconds before the process is killed

        Returns:
            CommandResult; a missing executable is reported as returncode 127
            and a timeout as returncode 124, never as an exception
        """
        full_env = None
        if env:
            full_env = dict(os.environ)
            full_env.update(env)

        try:
            proc = await asyncio.create_subprocess_exec(
                *args,
                cwd=str(cwd) if cwd else None,
                env=full_env,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
            )
        except FileNotFoundError as e:
            result = CommandResult(list(args), 127, f"{e}\n")
            self._append_log(log_path, result)
            return result

        try:
            stdout, _ = await asyncio.wait_for(proc.communicate(), timeout=timeout)
        except TimeoutError:
            proc.kill()
            await proc.wait()
            result = CommandResult(list(args), 124, f"timed out after {timeout}s\n")
            self._append_log(log_path, result)
            return result

        result = CommandResult(
            list(args), proc.returncode, stdout.decode(errors="replace") if stdout else ""
        )
        self._append_log(log_path, result)
        return result

    @staticmethod
    def _append_log(log_path: Path | None, result: CommandResult) -> None:
        if log_path is None:
            return
        log_path.parent.mkdir(parents=True, exist_ok=True)
        with open(log_path, "a") as f:
            f.write(f"$ {' '.join(result.args)}\n")
            f.write(result.output)
            if result.output and not result.output.endswith("\n"):
                f.write("\n")
            f.write(f"[exit {result.returncode}]\n")
