"""
Bundle cache for the plugin directory.

A bundle is a ``.tgz`` of the whole plugin directory published to a Hugging
Face repository together with a JSON manifest of the installed repositories,
a consolidated requirements file and a sha256 sidecar. Bundles are keyed by
a logical tag and an environment signature built from the versions of the
libraries that plugins compile against, so a bundle is only reused on a box
with a matching toolchain.

Remote layout::

    bundles/custom_nodes_bundle_<tag>_<signature>_<YYYYmmdd-HHMM>.tgz
    bundles/custom_nodes_bundle_<tag>_<signature>_<YYYYmmdd-HHMM>.sha256
    meta/custom_nodes_manifest_<tag>.json
    requirements/consolidated_requirements_<tag>.txt
    custom_nodes.txt
"""

import asyncio
import hashlib
import json
import logging
import re
import shutil
import tarfile
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path

from huggingface_hub import CommitOperationAdd, HfApi, hf_hub_download
from huggingface_hub.errors import EntryNotFoundError, HfHubHTTPError

from prov_common.commands import CommandRunner
from prov_common.errors import BundleError
from prov_common.models import (
    BUNDLE_TIMESTAMP_FORMAT,
    BundleManifest,
    BundleNode,
    BundleRef,
)

logger = logging.getLogger(__name__)

MISSING_VERSION = "0.0.0"
NODE_LIST_FILE = "custom_nodes.txt"

# Pinned separately by the base image; never part of a consolidated list
HEAVY_REQUIREMENT_RE = re.compile(
    r"^(torch|torchvision|torchaudio|opencv(-python|-contrib-python|-headless)?|cupy(-cuda\S*)?|numpy)\b",
    re.IGNORECASE,
)

SIGNATURE_PROBE = """
import importlib
for name in ("numpy", "cupy", "cv2"):
    try:
        print(getattr(importlib.import_module(name), "__version__", "0.0.0"))
    except Exception:
        print("0.0.0")
"""


def manifest_name(tag: str) -> str:
    return f"custom_nodes_manifest_{tag}.json"


def requirements_name(tag: str) -> str:
    return f"consolidated_requirements_{tag}.txt"


def bundle_timestamp(now: datetime | None = None) -> str:
    return (now or datetime.now(UTC)).strftime(BUNDLE_TIMESTAMP_FORMAT)


def normalize_version(version: str) -> str:
    """``1.26.4`` -> ``1d26d4``; anything that is not a digit or dot becomes ``-``."""
    return re.sub(r"[^0-9.]+", "-", version).replace(".", "d")


def format_signature(numpy_version: str, cupy_version: str, opencv_version: str) -> str:
    return (
        f"np{normalize_version(numpy_version)}"
        f"_cupy{normalize_version(cupy_version)}"
        f"_cv{normalize_version(opencv_version)}"
    )


async def compute_signature(python_bin: Path, runner: CommandRunner | None = None) -> str:
    """Signature of the numpy/cupy/opencv versions importable by ``python_bin``."""
    runner = runner or CommandRunner()
    result = await runner.run(str(python_bin), "-c", SIGNATURE_PROBE)
    versions = result.output.split() if result.ok else []
    while len(versions) < 3:
        versions.append(MISSING_VERSION)
    return format_signature(*versions[:3])


def sha256_file(path: Path) -> str:
    digest = hashlib.sha256()
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(1024 * 1024), b""):
            digest.update(chunk)
    return digest.hexdigest()


def restore_entries(swapped: list[tuple[Path, Path | None]]) -> None:
    """Undo a partial swap: drop what was moved in and put the parked entries back."""
    for target, saved in reversed(swapped):
        if target.is_dir() and not target.is_symlink():
            shutil.rmtree(target)
        elif target.exists() or target.is_symlink():
            target.unlink()
        if saved is not None:
            saved.rename(target)


def consolidate_requirements(custom_dir: Path) -> list[str]:
    """Merged, sorted requirement lines of every plugin, minus comments and pinned libraries."""
    lines: set[str] = set()
    for requirements in sorted(Path(custom_dir).glob("*/requirements.txt")):
        for line in requirements.read_text(errors="replace").splitlines():
            line = line.strip()
            if not line or line.startswith("#") or HEAVY_REQUIREMENT_RE.match(line):
                continue
            lines.add(line)
    return sorted(lines)


async def build_nodes_manifest(
    custom_dir: Path, tag: str, runner: CommandRunner | None = None
) -> BundleManifest:
    """Name, origin, branch and commit of every git checkout in the plugin directory."""
    runner = runner or CommandRunner()
    manifest = BundleManifest(tag=tag)
    if not Path(custom_dir).is_dir():
        return manifest
    for path in sorted(Path(custom_dir).iterdir()):
        if not (path / ".git").exists():
            continue

        async def _git(*args: str) -> str:
            result = await runner.run("git", "-C", str(path), *args)
            return result.output.strip() if result.ok else ""

        manifest.nodes.append(
            BundleNode(
                name=path.name,
                path=str(path),
                origin=await _git("config", "--get", "remote.origin.url"),
                branch=await _git("rev-parse", "--abbrev-ref", "HEAD"),
                commit=await _git("rev-parse", "HEAD"),
            )
        )
    return manifest


class BundleStore(ABC):
    """Remote blob store holding bundles."""

    @abstractmethod
    def list_files(self) -> list[str]:
        """
        Raises:
            BundleError: If the listing fails
        """
        pass

    @abstractmethod
    def download(self, path_in_repo: str, local_dir: Path) -> Path:
        """
        Raises:
            BundleError: If the file is missing or cannot be fetched
        """
        pass

    @abstractmethod
    def upload(self, files: dict[str, Path], message: str) -> None:
        """
        Upload several files in one commit.

        Args:
            files: Local file per path in the repository
            message: Commit message
        """
        pass


class HuggingFaceBundleStore(BundleStore):
    def __init__(
        self,
        repo_id: str,
        repo_type: str = "dataset",
        token: str | None = None,
        revision: str = "main",
        endpoint: str | None = None,
    ):
        self.repo_id = repo_id
        self.repo_type = repo_type
        self.token = token
        self.revision = revision
        self.endpoint = endpoint
        self.api = HfApi(endpoint=endpoint, token=token)

    def list_files(self) -> list[str]:
        try:
            return self.api.list_repo_files(
                self.repo_id, repo_type=self.repo_type, revision=self.revision
            )
        except (HfHubHTTPError, OSError) as e:
            raise BundleError(f"Cannot list {self.repo_id}: {e}") from e

    def download(self, path_in_repo: str, local_dir: Path) -> Path:
        try:
            return Path(
                hf_hub_download(
                    self.repo_id,
                    path_in_repo,
                    repo_type=self.repo_type,
                    revision=self.revision,
                    token=self.token,
                    endpoint=self.endpoint,
                    local_dir=str(local_dir),
                )
            )
        except (EntryNotFoundError, HfHubHTTPError, OSError) as e:
            raise BundleError(f"Cannot download {path_in_repo} from {self.repo_id}: {e}") from e

    def upload(self, files: dict[str, Path], message: str) -> None:
        operations = [
            CommitOperationAdd(path_in_repo=path_in_repo, path_or_fileobj=str(local))
            for path_in_repo, local in files.items()
        ]
        try:
            self.api.create_commit(
                self.repo_id,
                operations=operations,
                commit_message=message,
                repo_type=self.repo_type,
                revision=self.revision,
            )
        except (HfHubHTTPError, OSError) as e:
            raise BundleError(f"Cannot upload to {self.repo_id}: {e}") from e


@dataclass
class BundleArtifacts:
    ref: BundleRef
    archive: Path
    checksum: Path
    manifest: Path
    requirements: Path

    def uploads(self) -> dict[str, Path]:
        return {
            f"bundles/{self.archive.name}": self.archive,
            f"bundles/{self.checksum.name}": self.checksum,
            f"meta/{self.manifest.name}": self.manifest,
            f"requirements/{self.requirements.name}": self.requirements,
        }


class BundleCache:
    """
    Pull-or-build cache for the plugin directory.

    Args:
        store: Remote bundle store
        custom_dir: Plugin directory the bundle replaces
        cache_dir: Where metadata and downloads are kept
        bundles_dir: Where built archives are written
        runner: Command runner for git metadata
    """

    def __init__(
        self,
        store: BundleStore,
        custom_dir: Path,
        cache_dir: Path,
        bundles_dir: Path | None = None,
        runner: CommandRunner | None = None,
    ):
        self.store = store
        self.custom_dir = Path(custom_dir)
        self.cache_dir = Path(cache_dir)
        self.bundles_dir = Path(bundles_dir) if bundles_dir else self.cache_dir / "bundles"
        self.runner = runner or CommandRunner()

    @staticmethod
    def find_latest(files: list[str], tag: str, signature: str) -> BundleRef | None:
        """Newest archive whose name matches tag and signature exactly."""
        refs = []
        for path in files:
            directory, _, name = path.rpartition("/")
            if directory != "bundles":
                continue
            ref = BundleRef.parse(name, tag, signature)
            if ref is not None:
                refs.append(ref)
        if not refs:
            return None
        return max(refs, key=lambda r: r.timestamp)

    async def resolve(self, tag: str, signature: str) -> bool:
        """
        Install the newest matching bundle, if there is one.

        Returns:
            True if a bundle was installed. False when there is no match or
            anything failed; the plugin directory is then left as it was.
        """
        logger.info(f"Looking for bundle tag={tag} signature={signature}")
        try:
            files = await asyncio.to_thread(self.store.list_files)
        except BundleError as e:
            logger.warning(f"Bundle lookup failed: {e}")
            return False

        ref = self.find_latest(files, tag, signature)
        if ref is None:
            logger.info("No matching bundle")
            return False

        download_dir = self.cache_dir / "bundle_downloads"
        try:
            archive = await asyncio.to_thread(
                self.store.download, f"bundles/{ref.archive_name}", download_dir
            )
            if f"bundles/{ref.checksum_name}" in files:
                sidecar = await asyncio.to_thread(
                    self.store.download, f"bundles/{ref.checksum_name}", download_dir
                )
                fields = sidecar.read_text().split()
                expected = fields[0] if fields else ""
                actual = await asyncio.to_thread(sha256_file, archive)
                if expected != actual:
                    raise BundleError(
                        f"Checksum mismatch for {ref.archive_name}: expected {expected}, got {actual}"
                    )
            await asyncio.to_thread(self.install_archive, archive)
        except BundleError as e:
            logger.error(f"Bundle {ref.archive_name} not installed: {e}")
            return False

        logger.info(f"Installed bundle {ref.archive_name}")
        return True

    def install_archive(self, archive: Path) -> None:
        """
        Extract into a staging directory, then move each entry into place.

        Nothing in the plugin directory changes unless the whole archive
        extracted cleanly. Replaced entries are parked in the staging
        directory and put back if any move fails.

        Raises:
            BundleError: If the archive cannot be extracted or moved into place
        """
        parent = self.custom_dir.parent
        parent.mkdir(parents=True, exist_ok=True)
        staging = parent / f".{self.custom_dir.name}.staging-{uuid.uuid4().hex[:8]}"
        staging.mkdir()

        try:
            try:
                with tarfile.open(archive, "r:gz") as tar:
                    tar.extractall(staging, filter="data")
            except (tarfile.TarError, OSError) as e:
                raise BundleError(f"Cannot extract {archive.name}: {e}") from e

            roots = [p for p in staging.iterdir() if p.is_dir()]
            if len(roots) != 1 or any(p.is_file() for p in staging.iterdir()):
                raise BundleError(f"{archive.name} must contain exactly one top-level directory")
            extracted = roots[0]

            previous = staging / ".previous"
            previous.mkdir()
            swapped: list[tuple[Path, Path | None]] = []
            try:
                self.custom_dir.mkdir(parents=True, exist_ok=True)
                for entry in extracted.iterdir():
                    target = self.custom_dir / entry.name
                    saved = None
                    if target.exists() or target.is_symlink():
                        saved = previous / entry.name
                        target.rename(saved)
                    swapped.append((target, saved))
                    entry.rename(target)
            except OSError as e:
                try:
                    restore_entries(swapped)
                except OSError as restore_error:
                    logger.error(f"Could not restore {self.custom_dir}: {restore_error}")
                raise BundleError(f"Cannot install {archive.name}: {e}") from e
        finally:
            shutil.rmtree(staging, ignore_errors=True)

    async def build(self, tag: str, signature: str, now: datetime | None = None) -> BundleArtifacts:
        """Write manifest, requirements, archive and checksum for the current plugin directory."""
        ref = BundleRef(tag=tag, signature=signature, timestamp=bundle_timestamp(now))
        self.cache_dir.mkdir(parents=True, exist_ok=True)
        self.bundles_dir.mkdir(parents=True, exist_ok=True)

        manifest = await build_nodes_manifest(self.custom_dir, tag, self.runner)
        manifest_path = self.cache_dir / manifest_name(tag)
        manifest_path.write_text(json.dumps(manifest.to_dict(), indent=2))

        requirements_path = self.cache_dir / requirements_name(tag)
        requirements = consolidate_requirements(self.custom_dir)
        requirements_path.write_text("\n".join(requirements) + ("\n" if requirements else ""))

        archive = self.bundles_dir / ref.archive_name
        await asyncio.to_thread(self._write_archive, archive)
        checksum = self.bundles_dir / ref.checksum_name
        checksum.write_text(f"{await asyncio.to_thread(sha256_file, archive)}  {archive.name}\n")

        logger.info(f"Built bundle {archive} ({len(manifest.nodes)} repositories)")
        return BundleArtifacts(
            ref=ref,
            archive=archive,
            checksum=checksum,
            manifest=manifest_path,
            requirements=requirements_path,
        )

    def _write_archive(self, archive: Path) -> None:
        def _skip_bytecode(info: tarfile.TarInfo) -> tarfile.TarInfo | None:
            return None if "__pycache__" in Path(info.name).parts else info

        with tarfile.open(archive, "w:gz") as tar:
            tar.add(self.custom_dir, arcname=self.custom_dir.name, filter=_skip_bytecode)

    async def publish(self, tag: str, signature: str) -> BundleArtifacts:
        """
        Build a bundle and upload it with its metadata.

        Raises:
            BundleError: If the upload fails
        """
        artifacts = await self.build(tag, signature)
        await asyncio.to_thread(
            self.store.upload, artifacts.uploads(), f"bundle {artifacts.ref.base_name}"
        )
        logger.info(f"Published {artifacts.ref.archive_name}")
        return artifacts

    async def fetch_node_list(self) -> Path | None:
        """Download the shared repository list, or None if the store has none."""
        try:
            return await asyncio.to_thread(self.store.download, NODE_LIST_FILE, self.cache_dir)
        except BundleError as e:
            logger.info(f"No remote node list: {e}")
            return None
