"""
CivitAI model-version downloads.

Version IDs come from comma/space separated environment lists; each ID is
resolved to a filename through the public API and then queued like any
other download. Some versions are delivered as ZIP archives, which
``postprocess_zip_dir`` unpacks after the queue drains.
"""

import logging
import re
import shutil
import tempfile
import zipfile
from pathlib import Path
from typing import Any

import requests

from prov_common.errors import TransferBackendError
from prov_common.models import DownloadJob

from .queue import DownloadQueueManager

logger = logging.getLogger(__name__)

API_BASE = "https://civitai.com/api"
TINY_ARCHIVE_BYTES = 64 * 1024


def tokenize_ids(text: str | None) -> list[str]:
    """Parse ``"1,2  3,,x4"`` into ``["1", "2", "3", "4"]``."""
    return re.findall(r"[0-9]+", text or "")


def sanitize_basename(name: str) -> str:
    if not name:
        return "model.safetensors"
    base = Path(name).name
    stem, dot, ext = base.rpartition(".")
    if not dot:
        stem, ext = base, ""
    stem = re.sub(r"['‘’]", "", stem)
    stem = re.sub(r"\s+", "_", stem)
    stem = re.sub(r"[(){}\[\]]+", "__", stem)
    stem = re.sub(r"[^A-Za-z0-9._-]+", "_", stem)
    stem = re.sub(r"_+", "_", stem).strip("_") or "model"
    return f"{stem}.{ext.lower()}" if ext else stem


def unique_destination(directory: Path, name: str) -> Path:
    path = directory / name
    stem, suffix = path.stem, path.suffix
    i = 1
    while path.exists():
        path = directory / f"{stem}_{i}{suffix}"
        i += 1
    return path


class CivitaiClient:
    def __init__(
        self,
        token: str | None = None,
        session: requests.Session | None = None,
        timeout: float = 20.0,
    ):
        self.token = token
        self.session = session or requests.Session()
        self.timeout = timeout

    def download_url(self, version_id: str) -> str:
        return f"{API_BASE}/download/models/{version_id}"

    def version_info(self, version_id: str) -> dict[str, Any]:
        """
        Raises:
            RuntimeError: If the version metadata cannot be fetched
        """
        headers = {"Authorization": f"Bearer {self.token}"} if self.token else {}
        try:
            response = self.session.get(
                f"{API_BASE}/v1/model-versions/{version_id}",
                headers=headers,
                timeout=self.timeout,
            )
            response.raise_for_status()
            return response.json()
        except requests.exceptions.RequestException as e:
            raise RuntimeError(f"Failed to fetch CivitAI version {version_id}: {e}") from e

    @staticmethod
    def pick_filename(info: dict[str, Any]) -> str | None:
        """Prefer the first .safetensors file, else the first file."""
        files = info.get("files") or []
        safetensors = [f for f in files if str(f.get("name", "")).lower().endswith(".safetensors")]
        chosen = (safetensors or files or [{}])[0]
        return chosen.get("name") or None


def enqueue_versions(
    queue: DownloadQueueManager,
    client: CivitaiClient,
    version_ids: list[str],
    dest_dir: Path,
    section: str = "civitai",
) -> list[DownloadJob]:
    """Queue each version; IDs that cannot be resolved are logged and skipped."""
    jobs = []
    for version_id in version_ids:
        try:
            name = client.pick_filename(client.version_info(version_id))
        except RuntimeError as e:
            logger.error(str(e))
            continue
        if not name:
            logger.error(f"CivitAI version {version_id} lists no files")
            continue

        dest = Path(dest_dir) / sanitize_basename(name)
        try:
            job = queue.enqueue(client.download_url(version_id), dest, section=section)
        except TransferBackendError as e:
            logger.error(f"Backend refused CivitAI version {version_id}: {e}")
            continue
        if job is not None:
            jobs.append(job)
    return jobs


def _safetensors_members(archive: zipfile.ZipFile) -> list[zipfile.ZipInfo]:
    return [
        info
        for info in archive.infolist()
        if not info.is_dir() and info.filename.lower().endswith(".safetensors")
    ]


def postprocess_zip_dir(dest_dir: Path) -> list[Path]:
    """
    Unpack downloaded ZIP archives in a model directory.

    Each archive is moved to ``_incoming/``. Tiny archives and archives
    without ``.safetensors`` members go to ``_incoming/_junk/``; otherwise
    the safetensors members are extracted next to the other models and the
    archive is deleted.

    Returns:
        Paths of the extracted model files
    """
    dest_dir = Path(dest_dir)
    incoming = dest_dir / "_incoming"
    junk = incoming / "_junk"
    extracted: list[Path] = []

    zips = sorted(dest_dir.glob("*.zip"), key=lambda p: p.stat().st_mtime)
    if not zips:
        return extracted
    junk.mkdir(parents=True, exist_ok=True)

    for path in zips:
        moved = incoming / path.name
        shutil.move(str(path), moved)

        if moved.stat().st_size <= TINY_ARCHIVE_BYTES:
            logger.warning(f"{moved.name} is tiny ({moved.stat().st_size} B), quarantining")
            shutil.move(str(moved), junk / moved.name)
            continue

        try:
            with zipfile.ZipFile(moved) as archive:
                members = _safetensors_members(archive)
                if not members:
                    logger.warning(f"No .safetensors found in {moved.name}, quarantining")
                    shutil.move(str(moved), junk / moved.name)
                    continue
                with tempfile.TemporaryDirectory(dir=dest_dir) as tmp:
                    for info in members:
                        source = Path(archive.extract(info, tmp))
                        target = unique_destination(dest_dir, sanitize_basename(source.name))
                        shutil.move(str(source), target)
                        extracted.append(target)
        except zipfile.BadZipFile:
            logger.warning(f"{moved.name} is not a valid ZIP, quarantining")
            shutil.move(str(moved), junk / moved.name)
            continue

        logger.info(f"Extracted {len(members)} file(s) from {moved.name}")
        moved.unlink()
    return extracted
