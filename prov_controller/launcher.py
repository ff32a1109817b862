"""
Worker instance planning and command lines.
"""

import logging
from pathlib import Path

from prov_common.commands import CommandRunner
from prov_common.models import WorkerSpec

logger = logging.getLogger(__name__)

# (port, gpu, suffix, minimum GPUs); suffix names the output/cache dirs
INSTANCE_LAYOUT = [
    (8188, "all", "", 0),
    (8288, "0", "_gpu0", 1),
    (8388, "1", "_gpu1", 2),
]


def plan_instances(
    workspace: Path,
    logs_dir: Path,
    gpu_count: int,
    extra_args: list[str] | None = None,
) -> list[WorkerSpec]:
    """
    Worker layout for the detected GPU count.

    Port 8188 sees every GPU, 8288 is pinned to GPU 0 and 8388 to GPU 1.
    The pinned instances are only planned when their GPU exists.
    """
    specs = []
    for port, gpu, suffix, min_gpus in INSTANCE_LAYOUT:
        if gpu_count < min_gpus:
            continue
        label = f"ComfyUI-{port}" if gpu == "all" else f"ComfyUI-{port} (GPU{gpu})"
        specs.append(
            WorkerSpec(
                name=label,
                session=f"comfy-{port}",
                port=port,
                gpu=gpu,
                output_dir=Path(workspace) / f"output{suffix}",
                cache_dir=Path(workspace) / f"cache{suffix}",
                log_file=Path(logs_dir) / f"comfyui-{port}.log",
                extra_args=list(extra_args or []),
            )
        )
    return specs


def validate_isolation(specs: list[WorkerSpec]) -> None:
    """
    Raises:
        ValueError: If two instances share a port, session, output or cache directory
    """
    for attr in ("port", "session", "output_dir", "cache_dir"):
        seen = set()
        for spec in specs:
            value = getattr(spec, attr)
            if value in seen:
                raise ValueError(f"Worker instances share {attr}: {value}")
            seen.add(value)
    overlap = {s.output_dir for s in specs} & {s.cache_dir for s in specs}
    if overlap:
        raise ValueError(f"Directory used as both output and cache: {overlap.pop()}")


async def detect_gpu_count(runner: CommandRunner | None = None) -> int:
    runner = runner or CommandRunner()
    result = await runner.run("nvidia-smi", "--query-gpu=name", "--format=csv,noheader")
    if not result.ok:
        logger.warning("nvidia-smi unavailable; assuming no GPUs")
        return 0
    return len([line for line in result.output.splitlines() if line.strip()])


def worker_command(
    spec: WorkerSpec, app_dir: Path, python_bin: Path, use_sage: bool
) -> list[str]:
    command = [
        str(python_bin),
        str(Path(app_dir) / "main.py"),
        "--listen", "0.0.0.0",
        "--port", str(spec.port),
        "--output-directory", str(spec.output_dir),
        "--temp-directory", str(spec.cache_dir),
    ]
    if use_sage:
        command.append("--use-sage-attention")
    command.extend(spec.extra_args)
    return command


def worker_env(spec: WorkerSpec) -> dict[str, str]:
    env = {"XDG_CACHE_HOME": str(spec.cache_dir), "PYTHONUNBUFFERED": "1"}
    if spec.gpu != "all":
        env["CUDA_VISIBLE_DEVICES"] = spec.gpu
    return env
