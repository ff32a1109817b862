"""
Unit tests for worker planning and command lines.
"""

from pathlib import Path

import pytest

from prov_common.commands import CommandResult
from prov_controller.launcher import (
    detect_gpu_count,
    plan_instances,
    validate_isolation,
    worker_command,
    worker_env,
)


class TestPlanInstances:
    def test_no_gpu(self):
        specs = plan_instances(Path("/w"), Path("/w/logs"), 0)
        assert [s.port for s in specs] == [8188]

    def test_two_gpus(self):
        specs = plan_instances(Path("/w"), Path("/w/logs"), 2)

        assert [s.port for s in specs] == [8188, 8288, 8388]
        assert [s.gpu for s in specs] == ["all", "0", "1"]
        assert specs[1].name == "ComfyUI-8288 (GPU0)"
        assert specs[1].session == "comfy-8288"
        assert specs[1].output_dir == Path("/w/output_gpu0")
        assert specs[2].cache_dir == Path("/w/cache_gpu1")
        assert specs[0].log_file == Path("/w/logs/comfyui-8188.log")
        validate_isolation(specs)

    def test_one_gpu(self):
        assert len(plan_instances(Path("/w"), Path("/w/logs"), 1)) == 2


class TestValidateIsolation:
    def test_shared_output_dir(self):
        specs = plan_instances(Path("/w"), Path("/w/logs"), 1)
        specs[1].output_dir = specs[0].output_dir

        with pytest.raises(ValueError, match="output_dir"):
            validate_isolation(specs)

    def test_output_used_as_cache(self):
        specs = plan_instances(Path("/w"), Path("/w/logs"), 1)
        specs[1].cache_dir = specs[0].output_dir

        with pytest.raises(ValueError, match="both output and cache"):
            validate_isolation(specs)


class TestWorkerCommand:
    def test_command(self):
        spec = plan_instances(Path("/w"), Path("/w/logs"), 1, extra_args=["--lowvram"])[1]
        command = worker_command(spec, Path("/w/ComfyUI"), Path("/venv/bin/python"), use_sage=True)

        assert command[:2] == ["/venv/bin/python", "/w/ComfyUI/main.py"]
        assert command[command.index("--port") + 1] == "8288"
        assert command[command.index("--output-directory") + 1] == "/w/output_gpu0"
        assert command[command.index("--temp-directory") + 1] == "/w/cache_gpu0"
        assert "--use-sage-attention" in command
        assert command[-1] == "--lowvram"

    def test_without_sage(self):
        spec = plan_instances(Path("/w"), Path("/w/logs"), 0)[0]
        command = worker_command(spec, Path("/app"), Path("/py"), use_sage=False)
        assert "--use-sage-attention" not in command

    def test_env(self):
        all_gpus, gpu0 = plan_instances(Path("/w"), Path("/w/logs"), 1)
        assert "CUDA_VISIBLE_DEVICES" not in worker_env(all_gpus)
        assert worker_env(gpu0)["CUDA_VISIBLE_DEVICES"] == "0"
        assert worker_env(gpu0)["XDG_CACHE_HOME"] == "/w/cache_gpu0"


@pytest.mark.asyncio
async def test_detect_gpu_count(runner_factory):
    runner = runner_factory(
        lambda args, cwd, env: CommandResult(args, 0, "NVIDIA A100\nNVIDIA A100\n\n")
    )
    assert await detect_gpu_count(runner) == 2
    assert await detect_gpu_count(runner_factory(lambda args, cwd, env: 127)) == 0
