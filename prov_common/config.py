"""
Provisioning configuration.

All settings come from the process environment (optionally overlaid on a
``.env`` style file) and are collected into one ProvisionConfig value that
is passed explicitly to every component.
"""

import logging
import os
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path
from urllib.parse import urlparse

from .errors import ConfigurationError

logger = logging.getLogger(__name__)

TRUTHY = {"1", "true"}


def env_flag(value: str | None) -> bool:
    """Boolean environment flags are enabled by "true" or "1"."""
    return value is not None and value.strip().lower() in TRUTHY


def load_env_file(path: str | Path) -> dict[str, str]:
    """
    Read KEY=VALUE lines from an env file.

    Comment and blank lines are ignored, an ``export `` prefix is allowed and
    matching surrounding quotes are stripped from values.

    Raises:
        ConfigurationError: If the file cannot be read
    """
    try:
        content = Path(path).read_text()
    except OSError as e:
        raise ConfigurationError(f"Cannot read env file {path}: {e}") from e

    values: dict[str, str] = {}
    for line in content.splitlines():
        line = line.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        if line.startswith("export "):
            line = line[len("export ") :].lstrip()
        key, value = line.split("=", 1)
        value = value.strip()
        if len(value) >= 2 and value[0] == value[-1] and value[0] in "\"'":
            value = value[1:-1]
        values[key.strip()] = value
    return values


def _get_int(env: Mapping[str, str], name: str, default: int, minimum: int = 0) -> int:
    raw = env.get(name)
    if raw is None or raw == "":
        return default
    try:
        value = int(raw)
    except ValueError:
        logger.warning(f"Invalid {name} value: {raw}, using default {default}")
        return default
    if value < minimum:
        logger.warning(f"{name} must be >= {minimum}, using default {default}")
        return default
    return value


def _get_float(env: Mapping[str, str], name: str, default: float) -> float:
    raw = env.get(name)
    if raw is None or raw == "":
        return default
    try:
        value = float(raw)
    except ValueError:
        logger.warning(f"Invalid {name} value: {raw}, using default {default}")
        return default
    if value <= 0:
        logger.warning(f"{name} must be positive, using default {default}")
        return default
    return value


@dataclass
class ConnectionTuning:
    """Segmented transfer settings for one host (or the default)."""

    segments: int = 16
    max_connections_per_host: int = 16
    min_segment_size: str = "1M"

    @classmethod
    def from_env(
        cls, env: Mapping[str, str], prefix: str, fallback: "ConnectionTuning"
    ) -> "ConnectionTuning":
        return cls(
            segments=_get_int(env, f"{prefix}SPLIT", fallback.segments, minimum=1),
            max_connections_per_host=_get_int(
                env,
                f"{prefix}MAX_CONN_PER_SERVER",
                fallback.max_connections_per_host,
                minimum=1,
            ),
            min_segment_size=env.get(f"{prefix}MIN_SPLIT_SIZE")
            or fallback.min_segment_size,
        )


@dataclass
class ProvisionConfig:
    """
    Settings for one provisioning run.

    Built with ``from_env``; nothing in the codebase reads the environment
    directly except the manifest placeholder and section-flag lookups, which
    receive ``environ`` from here.
    """

    workspace: Path
    comfy_home: Path
    custom_dir: Path
    cache_dir: Path
    custom_log_dir: Path
    bundles_dir: Path
    logs_dir: Path
    output_dir: Path
    python_bin: Path
    pip_bin: Path

    repo_url: str = "https://github.com/comfyanonymous/ComfyUI"
    git_depth: int = 1
    max_node_jobs: int = 8
    node_list_file: Path | None = None
    node_list_inline: list[str] = field(default_factory=list)

    hf_api_base: str = "https://huggingface.co"
    hf_repo_id: str | None = None
    hf_repo_type: str = "dataset"
    hf_token: str | None = None
    hf_branch: str = "main"
    bundle_tag: str | None = None
    pins: str | None = None
    push_bundle: bool = False

    aria2_host: str = "127.0.0.1"
    aria2_port: int = 6969
    aria2_secret: str = ""
    aria2_max_concurrent: int = 8
    progress_interval: float = 5.0
    progress_bar_width: int = 40
    min_plausible_bytes: int = 1
    tuning: ConnectionTuning = field(default_factory=ConnectionTuning)
    host_tuning: dict[str, ConnectionTuning] = field(default_factory=dict)

    model_manifest_url: str | None = None
    default_download_dir: Path | None = None

    civitai_token: str | None = None
    lora_ids: str = ""
    checkpoint_ids: str = ""

    telegram_token: str | None = None
    telegram_chat_id: str | None = None

    sage_repo_url: str = "https://github.com/thu-ml/SageAttention"
    sage_revisions: list[str] = field(default_factory=list)
    max_jobs: int = 32
    ext_parallel: int = 4
    nvcc_append_flags: str = "--threads 8"
    sage_join_timeout: float = 3600.0

    readiness_timeout: float = 60.0
    readiness_interval: float = 1.0
    monitor_interval: float = 10.0

    db_path: Path | None = None
    environ: dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "ProvisionConfig":
        env = dict(os.environ if environ is None else environ)

        workspace = Path(env.get("WORKSPACE", "/workspace"))
        comfy_home = Path(env.get("COMFY_HOME") or env.get("COMFY") or workspace / "ComfyUI")
        logs_dir = Path(env.get("COMFY_LOGS", workspace / "logs"))
        custom_dir = Path(env.get("CUSTOM_DIR", comfy_home / "custom_nodes"))
        cache_dir = Path(env.get("CACHE_DIR", workspace / ".provision"))

        default_tuning = ConnectionTuning.from_env(env, "ARIA2_", ConnectionTuning())
        host_tuning = {
            "huggingface.co": ConnectionTuning.from_env(env, "HF_ARIA2_", default_tuning),
            "civitai.com": ConnectionTuning.from_env(
                env,
                "CIVITAI_ARIA2_",
                ConnectionTuning(
                    segments=4,
                    max_connections_per_host=4,
                    min_segment_size=default_tuning.min_segment_size,
                ),
            ),
        }

        node_list_file = env.get("CUSTOM_NODE_LIST_FILE")
        default_dir = env.get("DEFAULT_DOWNLOAD_DIR")
        revisions = [r.strip() for r in env.get("SAGE_COMMITS", "").split(",") if r.strip()]

        return cls(
            workspace=workspace,
            comfy_home=comfy_home,
            custom_dir=custom_dir,
            cache_dir=cache_dir,
            custom_log_dir=Path(env.get("CUSTOM_LOG_DIR", cache_dir / "custom_logs")),
            bundles_dir=Path(env.get("BUNDLES_DIR", cache_dir / "bundles")),
            logs_dir=logs_dir,
            output_dir=Path(env.get("OUTPUT_DIR", workspace / "output")),
            python_bin=Path(env.get("PY", "/opt/venv/bin/python")),
            pip_bin=Path(env.get("PIP", "/opt/venv/bin/pip")),
            repo_url=env.get("REPO_URL", cls.repo_url),
            git_depth=_get_int(env, "GIT_DEPTH", 1, minimum=1),
            max_node_jobs=_get_int(env, "MAX_NODE_JOBS", 8, minimum=1),
            node_list_file=Path(node_list_file) if node_list_file else None,
            node_list_inline=env.get("CUSTOM_NODE_LIST", "").split(),
            hf_api_base=env.get("HF_API_BASE", cls.hf_api_base).rstrip("/"),
            hf_repo_id=env.get("HF_REPO_ID") or None,
            hf_repo_type=env.get("HF_REPO_TYPE", "dataset"),
            hf_token=env.get("HF_TOKEN") or None,
            hf_branch=env.get("CN_BRANCH", "main"),
            bundle_tag=env.get("BUNDLE_TAG") or None,
            pins=env.get("PINS") or None,
            push_bundle=env_flag(env.get("PUSH_BUNDLE")),
            aria2_host=env.get("ARIA2_HOST", "127.0.0.1"),
            aria2_port=_get_int(env, "ARIA2_PORT", 6969, minimum=1),
            aria2_secret=env.get("ARIA2_SECRET", ""),
            aria2_max_concurrent=_get_int(env, "ARIA2_MAX_CONC", 8, minimum=1),
            progress_interval=_get_float(env, "ARIA2_PROGRESS_INTERVAL", 5.0),
            progress_bar_width=_get_int(env, "ARIA2_PROGRESS_BAR_WIDTH", 40, minimum=10),
            min_plausible_bytes=_get_int(env, "ARIA2_MIN_PLAUSIBLE_BYTES", 1, minimum=1),
            tuning=default_tuning,
            host_tuning=host_tuning,
            model_manifest_url=env.get("MODEL_MANIFEST_URL") or None,
            default_download_dir=(
                Path(default_dir) if default_dir else comfy_home / "models"
            ),
            civitai_token=env.get("CIVITAI_TOKEN") or None,
            lora_ids=env.get("LORAS_IDS_TO_DOWNLOAD", ""),
            checkpoint_ids=env.get("CHECKPOINT_IDS_TO_DOWNLOAD", ""),
            telegram_token=env.get("TELEGRAM_TOKEN") or env.get("TELEGRAM_BOT_TOKEN") or None,
            telegram_chat_id=env.get("TELEGRAM_CHAT_ID") or None,
            sage_repo_url=env.get("SAGE_REPO_URL", cls.sage_repo_url),
            sage_revisions=revisions,
            max_jobs=_get_int(env, "MAX_JOBS", 32, minimum=1),
            ext_parallel=_get_int(env, "EXT_PARALLEL", 4, minimum=1),
            nvcc_append_flags=env.get("NVCC_APPEND_FLAGS", "--threads 8"),
            sage_join_timeout=_get_float(env, "SAGE_JOIN_TIMEOUT", 3600.0),
            readiness_timeout=_get_float(env, "READINESS_TIMEOUT", 60.0),
            monitor_interval=_get_float(env, "MONITOR_INTERVAL", 10.0),
            db_path=Path(env.get("PROV_DB_PATH", logs_dir / "provision.db")),
            environ=env,
        )

    def validate_runtime(self) -> None:
        """
        Check the hard preconditions of a bootstrap run.

        Raises:
            ConfigurationError: If the interpreter or package installer is not
                an executable file
        """
        for label, path in (("PY", self.python_bin), ("PIP", self.pip_bin)):
            if not path.is_file() or not os.access(path, os.X_OK):
                raise ConfigurationError(f"{label} is not executable: {path}")

    def tuning_for(self, url: str) -> ConnectionTuning:
        """Connection tuning for the URL's host, matching parent domains too."""
        host = (urlparse(url).hostname or "").lower()
        for domain, tuning in self.host_tuning.items():
            if host == domain or host.endswith("." + domain):
                return tuning
        return self.tuning

    def host_tokens(self) -> dict[str, str]:
        """Bearer tokens keyed by host, for hosts that may require auth."""
        tokens = {}
        if self.hf_token:
            tokens["huggingface.co"] = self.hf_token
        if self.civitai_token:
            tokens["civitai.com"] = self.civitai_token
        return tokens

    def directories(self) -> list[Path]:
        """Directories a bootstrap run creates up front."""
        return [
            self.comfy_home.parent,
            self.cache_dir,
            self.custom_log_dir,
            self.bundles_dir,
            self.logs_dir,
            self.output_dir,
        ]
