"""
Download queue manager.

Expands a manifest into (url, destination) jobs, enqueues them through the
artifact fetcher and offers blocking waits and a live progress loop. The
transfer backend bounds how many jobs run at once; the manager only polls.
"""

import logging
import threading
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from pathlib import Path

from prov_common.config import ConnectionTuning
from prov_common.errors import ManifestError, TransferBackendError
from prov_common.manifest import Manifest, ManifestEntry, resolve_placeholders
from prov_common.models import DownloadJob, DownloadStatus

from .backend import TransferBackend
from .fetcher import ArtifactFetcher, FetchOptions
from .progress import ProgressSnapshot, build_snapshot

logger = logging.getLogger(__name__)

IDLE_POLLS_TO_EXIT = 2


def url_basename(url: str) -> str:
    return url.split("?", 1)[0].split("#", 1)[0].rstrip("/").rsplit("/", 1)[-1]


@dataclass
class EnqueueResult:
    handles: list[DownloadJob] = field(default_factory=list)
    skipped: list[Path] = field(default_factory=list)
    failed: list[tuple[str, str]] = field(default_factory=list)  # (url, reason)


class DownloadQueueManager:
    """
    Bounded, idempotent download queue on top of a transfer backend.

    Args:
        backend: Transfer backend (aria2 RPC in production)
        fetcher: Artifact fetcher bound to the same backend
        default_dir: Destination directory for entries without a path
        tuning_for: Returns connection tuning for a URL
        sleep: Sleep function used by the polling loops (default: waits on
            ``stopping`` so a cancel wakes them at once)
    """

    def __init__(
        self,
        backend: TransferBackend,
        fetcher: ArtifactFetcher,
        default_dir: Path,
        tuning_for: Callable[[str], ConnectionTuning] | None = None,
        sleep: Callable[[float], object] | None = None,
    ):
        self.backend = backend
        self.fetcher = fetcher
        self.default_dir = Path(default_dir)
        self.tuning_for = tuning_for or (lambda url: ConnectionTuning())
        self.stopping = threading.Event()
        self.sleep = sleep or self.stopping.wait
        self._inflight: dict[str, DownloadJob] = {}
        self.history: list[DownloadJob] = []

    def enqueue(
        self, url: str, dest: Path, section: str | None = None, checksum: str | None = None
    ) -> DownloadJob | None:
        """
        Enqueue a single download.

        Returns:
            The job, or None if the destination is already satisfied or
            already has a job in flight

        Raises:
            TransferBackendError: If the backend refuses the job
        """
        dest = Path(dest)
        if self.fetcher.is_satisfied(dest):
            logger.info(f"Already present, skipping: {dest}")
            return None

        existing = self._inflight.get(str(dest))
        if existing is not None and not existing.status.is_terminal:
            logger.info(f"Already queued, skipping: {dest}")
            return None

        tuning = self.tuning_for(url)
        options = FetchOptions(
            segments=tuning.segments,
            max_connections_per_host=tuning.max_connections_per_host,
            min_segment_size=tuning.min_segment_size,
            checksum=checksum,
        )
        job = self.fetcher.fetch(url, dest, options)
        job.section = section
        self._inflight[job.key] = job
        self.history.append(job)
        logger.info(f"Queued {url} -> {dest} (gid {job.gid})")
        return job

    def destination_for(self, entry: ManifestEntry, variables: Mapping[str, str]) -> Path:
        """
        Raises:
            ManifestError: If the path has an unresolved placeholder
        """
        if entry.path:
            return Path(resolve_placeholders(entry.path, variables))
        return self.default_dir / url_basename(entry.url)

    def enqueue_manifest(
        self,
        manifest: Manifest,
        enabled_sections: list[str],
        environ: Mapping[str, str],
    ) -> EnqueueResult:
        """
        Enqueue every entry of the enabled sections, in declaration order.

        Entries that cannot be resolved or are refused by the backend are
        reported in ``failed`` and do not stop the remaining entries.
        """
        result = EnqueueResult()
        variables = manifest.variable_map(environ)
        wanted = set(enabled_sections)

        for name, entries in manifest.sections.items():
            if name not in wanted:
                continue
            logger.info(f"Enqueuing section '{name}' ({len(entries)} entries)")
            for entry in entries:
                try:
                    dest = self.destination_for(entry, variables)
                except ManifestError as e:
                    logger.warning(f"Skipping {entry.url}: {e}")
                    result.failed.append((entry.url, str(e)))
                    continue

                try:
                    job = self.enqueue(entry.url, dest, section=name)
                except TransferBackendError as e:
                    logger.error(f"Backend refused {entry.url}: {e.raw_error or e}")
                    result.failed.append((entry.url, str(e)))
                    continue

                if job is None:
                    result.skipped.append(dest)
                else:
                    result.handles.append(job)
        return result

    def refresh(self, handles: list[DownloadJob]) -> list[DownloadJob]:
        """
        Update non-terminal handles from the backend.

        Returns:
            Handles that became terminal during this refresh
        """
        finished = []
        for job in handles:
            if job.status.is_terminal or job.gid is None:
                continue
            try:
                status = self.backend.query_status(job.gid)
            except TransferBackendError as e:
                logger.warning(f"Lost track of {job.dest}: {e}")
                job.status = DownloadStatus.ERROR
                job.error = str(e)
                finished.append(job)
                continue
            if job.apply_status(status) and job.status.is_terminal:
                finished.append(job)

        for job in finished:
            if job.status == DownloadStatus.COMPLETE:
                logger.info(f"Completed: {job.dest}")
            else:
                logger.error(f"Download {job.status.value}: {job.dest} ({job.error})")
        return finished

    def wait_all(self, handles: list[DownloadJob], poll_interval: float = 5.0) -> bool:
        """
        Block until every handle is terminal or the queue is stopped.

        Returns:
            True only if every handle completed successfully
        """
        try:
            while not self.stopping.is_set():
                self.refresh(handles)
                if all(job.status.is_terminal for job in handles):
                    break
                self.sleep(poll_interval)
        except KeyboardInterrupt:
            logger.warning("Interrupted, cancelling all downloads")
            self.cancel_all()
            raise
        return all(job.status == DownloadStatus.COMPLETE for job in handles)

    def render_progress(self, handles: list[DownloadJob] | None = None) -> ProgressSnapshot:
        gids = {job.gid for job in handles if job.gid} if handles is not None else None
        return build_snapshot(self.backend, gids=gids)

    def run_progress_loop(
        self,
        interval: float = 5.0,
        bar_width: int = 40,
        log_path: Path | None = None,
        root: Path | None = None,
        emit: Callable[[str], None] | None = None,
    ) -> ProgressSnapshot:
        """
        Print progress snapshots until the queue has been idle twice in a row.

        Args:
            interval: Seconds between snapshots
            bar_width: Width of the per-item progress bar
            log_path: Snapshots are also appended here
            root: Destination directories are shown relative to this path
            emit: Output function (default: logger.info)

        Returns:
            The last snapshot taken
        """
        emit = emit or logger.info
        idle_polls = 0
        try:
            while True:
                snapshot = self.render_progress()
                text = snapshot.render(bar_width=bar_width, root=root)
                emit(text)
                if log_path:
                    log_path.parent.mkdir(parents=True, exist_ok=True)
                    with open(log_path, "a") as f:
                        f.write(text + "\n")

                idle_polls = idle_polls + 1 if snapshot.is_idle else 0
                if idle_polls >= IDLE_POLLS_TO_EXIT or self.stopping.is_set():
                    return snapshot
                self.sleep(interval)
        except KeyboardInterrupt:
            logger.warning("Interrupted, cancelling all downloads")
            self.cancel_all()
            raise

    def cancel_all(self) -> int:
        """
        Remove every active and waiting job, pause the queue and purge results.

        Also sets ``stopping``, which ends any running wait or progress loop.

        Returns:
            Number of jobs removed
        """
        removed = 0
        for status in self.backend.list_active() + self.backend.list_waiting():
            try:
                self.backend.cancel_job(status.gid)
                removed += 1
            except TransferBackendError as e:
                logger.warning(f"Could not remove {status.gid}: {e}")
        try:
            self.backend.pause_all()
            self.backend.purge_results()
        except TransferBackendError as e:
            logger.warning(f"Could not pause/purge the queue: {e}")

        for job in self._inflight.values():
            if not job.status.is_terminal:
                job.status = DownloadStatus.REMOVED
        self.stopping.set()
        logger.info(f"Cancelled {removed} download(s)")
        return removed
