"""
Data models for the provisioning run.

These models represent the domain objects used throughout the application,
independent of the transfer backend, the process supervisor or the storage
mechanism.
"""

import re
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from pathlib import Path
from typing import Any


def utcnow() -> datetime:
    return datetime.now(UTC)


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


class DownloadStatus(str, Enum):
    """Lifecycle of a download job, named after the backend's own states."""

    WAITING = "waiting"
    ACTIVE = "active"
    PAUSED = "paused"
    COMPLETE = "complete"
    ERROR = "error"
    REMOVED = "removed"

    @property
    def is_terminal(self) -> bool:
        return self in (
            DownloadStatus.COMPLETE,
            DownloadStatus.ERROR,
            DownloadStatus.REMOVED,
        )

    @classmethod
    def from_backend(cls, value: str) -> "DownloadStatus":
        try:
            return cls(value)
        except ValueError:
            return cls.ERROR


@dataclass
class DownloadJob:
    """
    One remote file headed for one destination path.

    The destination path is the identity of the job: at most one job per
    destination is in flight during a session. Once a job reaches a terminal
    status it is never updated again.
    """

    url: str
    dest: Path
    checksum: str | None = None
    segments: int = 16
    max_connections_per_host: int = 16
    min_segment_size: str = "1M"
    section: str | None = None
    gid: str | None = None  # Backend handle, set once enqueued
    status: DownloadStatus = DownloadStatus.WAITING
    total_length: int = 0
    completed_length: int = 0
    error: str | None = None
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def key(self) -> str:
        return str(self.dest)

    def apply_status(self, status: "TransferStatus") -> bool:
        """
        Copy a backend status row onto the job.

        Returns:
            False if the job was already terminal and has not been touched
        """
        if self.status.is_terminal:
            return False
        self.status = status.status
        self.total_length = status.total_length
        self.completed_length = status.completed_length
        if status.status == DownloadStatus.ERROR:
            self.error = status.error_message or f"error code {status.error_code}"
        self.updated_at = utcnow()
        return True

    def to_dict(self) -> dict[str, Any]:
        """Convert job to dictionary format (for JSON serialization)."""
        return {
            "url": self.url,
            "dest": str(self.dest),
            "section": self.section,
            "gid": self.gid,
            "status": self.status.value,
            "total_length": self.total_length,
            "completed_length": self.completed_length,
            "error": self.error,
            "updated_at": _iso(self.updated_at),
        }


@dataclass
class TransferStatus:
    """A single status row reported by the transfer backend."""

    gid: str
    status: DownloadStatus
    total_length: int = 0
    completed_length: int = 0
    download_speed: int = 0
    path: str = ""
    error_code: str | None = None
    error_message: str | None = None

    @property
    def name(self) -> str:
        return Path(self.path).name if self.path else self.gid

    @property
    def directory(self) -> str:
        return str(Path(self.path).parent) if self.path else ""

    @classmethod
    def from_rpc(cls, data: dict[str, Any]) -> "TransferStatus":
        """Create status from an aria2 ``tellStatus`` style dictionary."""
        files = data.get("files") or []
        path = files[0].get("path", "") if files else ""
        return cls(
            gid=data.get("gid", ""),
            status=DownloadStatus.from_backend(data.get("status", "error")),
            total_length=int(data.get("totalLength") or 0),
            completed_length=int(data.get("completedLength") or 0),
            download_speed=int(data.get("downloadSpeed") or 0),
            path=path,
            error_code=data.get("errorCode"),
            error_message=data.get("errorMessage"),
        )


class RepoState(str, Enum):
    CLONED = "cloned"
    UPDATED = "updated"
    DEPENDENCIES_INSTALLED = "dependencies_installed"
    DEPENDENCY_INSTALL_FAILED = "dependency_install_failed"
    SYNC_FAILED = "sync_failed"


@dataclass
class RepoTarget:
    """
    A source repository to keep checked out under the plugin directory.

    The local directory name is derived from the clone URL and is the
    identity of the target.
    """

    url: str
    name: str
    recursive: bool = False
    requirements_file: str | None = "requirements.txt"
    setup_script: str | None = "install.py"

    @staticmethod
    def dir_name_for(url: str) -> str:
        base = url.rstrip("/").rsplit("/", 1)[-1]
        return base[:-4] if base.endswith(".git") else base

    @classmethod
    def from_url(cls, url: str, recursive: bool = False) -> "RepoTarget":
        return cls(url=url, name=cls.dir_name_for(url), recursive=recursive)


@dataclass
class RepoSyncResult:
    """Outcome of syncing and building one repository target."""

    target: RepoTarget
    state: RepoState
    checkout: RepoState | None = None  # CLONED or UPDATED when the checkout step succeeded
    commit: str | None = None
    dependencies_ok: bool | None = None  # None when there was nothing to install
    setup_ok: bool | None = None
    error: str | None = None
    log_path: Path | None = None
    finished_at: datetime = field(default_factory=utcnow)

    @property
    def hard_failed(self) -> bool:
        return self.state == RepoState.SYNC_FAILED

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.target.name,
            "url": self.target.url,
            "state": self.state.value,
            "checkout": self.checkout.value if self.checkout else None,
            "commit": self.commit,
            "dependencies_ok": self.dependencies_ok,
            "setup_ok": self.setup_ok,
            "error": self.error,
            "log_path": str(self.log_path) if self.log_path else None,
            "finished_at": _iso(self.finished_at),
        }


@dataclass
class SyncReport:
    """Per-target results of one bounded sync run."""

    results: list[RepoSyncResult] = field(default_factory=list)
    peak_active: int = 0

    @property
    def failures(self) -> int:
        return sum(1 for r in self.results if r.hard_failed)

    @property
    def exit_status(self) -> int:
        return 2 if self.failures else 0


BUNDLE_PREFIX = "custom_nodes_bundle"
BUNDLE_TIMESTAMP_FORMAT = "%Y%m%d-%H%M"


@dataclass(frozen=True)
class BundleRef:
    """
    Identity of one published plugin bundle.

    (tag, signature) selects compatible bundles; the timestamp orders the
    versions published for the same key.
    """

    tag: str
    signature: str
    timestamp: str

    @property
    def base_name(self) -> str:
        return f"{BUNDLE_PREFIX}_{self.tag}_{self.signature}_{self.timestamp}"

    @property
    def archive_name(self) -> str:
        return f"{self.base_name}.tgz"

    @property
    def checksum_name(self) -> str:
        return f"{self.base_name}.sha256"

    @staticmethod
    def name_pattern(tag: str, signature: str) -> re.Pattern[str]:
        return re.compile(
            rf"^{BUNDLE_PREFIX}_{re.escape(tag)}_{re.escape(signature)}"
            r"_(\d{8}-\d{4})\.tgz$"
        )

    @classmethod
    def parse(cls, archive_name: str, tag: str, signature: str) -> "BundleRef | None":
        """Return the ref if the archive name matches tag and signature exactly."""
        match = cls.name_pattern(tag, signature).match(archive_name)
        if not match:
            return None
        return cls(tag=tag, signature=signature, timestamp=match.group(1))


@dataclass
class BundleNode:
    name: str
    path: str
    origin: str
    branch: str
    commit: str

    def to_dict(self) -> dict[str, str]:
        return {
            "name": self.name,
            "path": self.path,
            "origin": self.origin,
            "branch": self.branch,
            "commit": self.commit,
        }


@dataclass
class BundleManifest:
    """Installed-repository metadata published next to a bundle archive."""

    tag: str
    nodes: list[BundleNode] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {"tag": self.tag, "nodes": [n.to_dict() for n in self.nodes]}


class BuildOutcome(str, Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"


@dataclass
class BuildAttempt:
    """One isolated attempt at compiling the native extension."""

    revision: str
    flags: dict[str, str]
    log_path: Path
    outcome: BuildOutcome | None = None
    returncode: int | None = None
    started_at: datetime = field(default_factory=utcnow)
    finished_at: datetime | None = None

    @property
    def succeeded(self) -> bool:
        return self.outcome == BuildOutcome.SUCCEEDED

    def to_dict(self) -> dict[str, Any]:
        return {
            "revision": self.revision,
            "flags": dict(self.flags),
            "log_path": str(self.log_path),
            "outcome": self.outcome.value if self.outcome else None,
            "returncode": self.returncode,
            "started_at": _iso(self.started_at),
            "finished_at": _iso(self.finished_at),
        }


class WorkerHealth(str, Enum):
    STARTING = "starting"
    READY = "ready"
    LIVE = "live"
    DEGRADED = "degraded"
    DEAD = "dead"


class HealthEvent(str, Enum):
    PROBE_OK = "probe_ok"  # Readiness probe answered within the window
    PROBE_TIMEOUT = "probe_timeout"
    HTTP_UP = "http_up"
    HTTP_DOWN = "http_down"
    SESSION_LOST = "session_lost"


@dataclass
class WorkerSpec:
    """
    Static assignment of one worker instance.

    The port is the identity of an instance; output and cache directories
    are never shared between instances.
    """

    name: str
    session: str
    port: int
    gpu: str  # "all" or a device index
    output_dir: Path
    cache_dir: Path
    log_file: Path
    extra_args: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "session": self.session,
            "port": self.port,
            "gpu": self.gpu,
            "output_dir": str(self.output_dir),
            "cache_dir": str(self.cache_dir),
            "log_file": str(self.log_file),
            "extra_args": list(self.extra_args),
        }


@dataclass
class WorkerInstance:
    spec: WorkerSpec
    health: WorkerHealth = WorkerHealth.STARTING
    was_up: bool = False
    started_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def port(self) -> int:
        return self.spec.port

    def to_dict(self) -> dict[str, Any]:
        result = self.spec.to_dict()
        result.update(
            {
                "health": self.health.value,
                "was_up": self.was_up,
                "started_at": _iso(self.started_at),
                "updated_at": _iso(self.updated_at),
            }
        )
        return result


@dataclass
class WorkerEvent:
    """A notification-worthy event emitted for a worker instance."""

    port: int
    kind: str  # "launched", "ready", "not_ready", "unresponsive", "session_exited"
    message: str
    timestamp: datetime = field(default_factory=utcnow)

    def to_dict(self) -> dict[str, Any]:
        return {
            "port": self.port,
            "kind": self.kind,
            "message": self.message,
            "timestamp": _iso(self.timestamp),
        }
