"""
Plugin repository lists.

The list of clone URLs comes from, in order of precedence: an override file,
an inline whitespace-separated override, or the built-in defaults.
"""

import logging
from pathlib import Path

from prov_common.models import RepoTarget

logger = logging.getLogger(__name__)

DEFAULT_NODES = [
    "https://github.com/ssitu/ComfyUI_UltimateSDUpscale.git",
    "https://github.com/kijai/ComfyUI-KJNodes.git",
    "https://github.com/rgthree/rgthree-comfy.git",
    "https://github.com/JPS-GER/ComfyUI_JPS-Nodes.git",
    "https://github.com/Suzie1/ComfyUI_Comfyroll_CustomNodes.git",
    "https://github.com/Jordach/comfy-plasma.git",
    "https://github.com/Kosinkadink/ComfyUI-VideoHelperSuite.git",
    "https://github.com/bash-j/mikey_nodes.git",
    "https://github.com/ltdrdata/ComfyUI-Impact-Pack.git",
    "https://github.com/Fannovel16/comfyui_controlnet_aux.git",
    "https://github.com/yolain/ComfyUI-Easy-Use.git",
    "https://github.com/kijai/ComfyUI-Florence2.git",
    "https://github.com/ShmuelRonen/ComfyUI-LatentSyncWrapper.git",
    "https://github.com/WASasquatch/was-node-suite-comfyui.git",
    "https://github.com/theUpsider/ComfyUI-Logic.git",
    "https://github.com/cubiq/ComfyUI_essentials.git",
    "https://github.com/chrisgoringe/cg-image-picker.git",
    "https://github.com/chflame163/ComfyUI_LayerStyle.git",
    "https://github.com/chrisgoringe/cg-use-everywhere.git",
    "https://github.com/kijai/ComfyUI-segment-anything-2.git",
    "https://github.com/ClownsharkBatwing/RES4LYF",
    "https://github.com/welltop-cn/ComfyUI-TeaCache.git",
    "https://github.com/Fannovel16/ComfyUI-Frame-Interpolation.git",
    "https://github.com/Jonseed/ComfyUI-Detail-Daemon.git",
    "https://github.com/kijai/ComfyUI-WanVideoWrapper.git",
    "https://github.com/chflame163/ComfyUI_LayerStyle_Advance.git",
    "https://github.com/BadCafeCode/masquerade-nodes-comfyui.git",
    "https://github.com/1038lab/ComfyUI-RMBG.git",
    "https://github.com/M1kep/ComfyLiterals.git",
    "https://github.com/wildminder/ComfyUI-VibeVoice.git",
    "https://github.com/kijai/ComfyUI-WanAnimatePreprocess.git",
]

# Repositories that ship git submodules
RECURSIVE_MARKERS = ("ComfyUI_UltimateSDUpscale",)


def needs_recursive(url: str) -> bool:
    return any(marker in url for marker in RECURSIVE_MARKERS)


def parse_node_list(text: str) -> list[str]:
    """One URL per line; blank lines and ``#`` comments are dropped."""
    urls = []
    for line in text.splitlines():
        line = line.strip()
        if line and not line.startswith("#"):
            urls.append(line)
    return urls


def resolve_node_list(
    list_file: Path | None,
    inline: list[str] | None,
    defaults: list[str] | None = None,
) -> list[str]:
    """
    Resolve the repository URL list.

    Args:
        list_file: Override file; used only if it exists and is non-empty
        inline: Inline override list
        defaults: Fallback list (DEFAULT_NODES if None)
    """
    if list_file is not None and list_file.is_file() and list_file.stat().st_size > 0:
        urls = parse_node_list(list_file.read_text())
        logger.info(f"Using node list file {list_file} ({len(urls)} entries)")
        return urls
    if inline:
        logger.info(f"Using inline node list ({len(inline)} entries)")
        return list(inline)
    return list(DEFAULT_NODES if defaults is None else defaults)


def build_targets(urls: list[str]) -> list[RepoTarget]:
    """Targets in list order; a repeated directory name keeps the first URL."""
    targets: list[RepoTarget] = []
    seen: set[str] = set()
    for url in urls:
        target = RepoTarget.from_url(url, recursive=needs_recursive(url))
        if target.name in seen:
            logger.warning(f"Duplicate repository directory '{target.name}', ignoring {url}")
            continue
        seen.add(target.name)
        targets.append(target)
    return targets
