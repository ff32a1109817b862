"""
Progress snapshots of the transfer backend's queue.
"""

import os
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path

from prov_common.models import DownloadStatus, TransferStatus

from .backend import TransferBackend

UNITS = ("Bytes", "KB", "MB", "GB", "TB", "PB")


def human_bytes(n: int) -> str:
    value = float(max(n, 0))
    for unit in UNITS[:-1]:
        if value < 1024:
            return f"{int(value)} Bytes" if unit == "Bytes" else f"{value:.1f} {unit}"
        value /= 1024
    return f"{value:.1f} {UNITS[-1]}"


def format_eta(seconds: float | None) -> str:
    if seconds is None:
        return "--:--"
    seconds = int(seconds)
    minutes, secs = divmod(seconds, 60)
    if minutes >= 60:
        hours, minutes = divmod(minutes, 60)
        return f"{hours}:{minutes:02d}:{secs:02d}"
    return f"{minutes:02d}:{secs:02d}"


@dataclass
class ProgressItem:
    name: str
    directory: str
    total: int
    done: int
    speed: int

    @property
    def percent(self) -> int:
        if self.total <= 0:
            return 0
        return min(100, self.done * 100 // self.total)

    def bar(self, width: int) -> str:
        filled = width * self.percent // 100
        return "#" * filled + "-" * (width - filled)


@dataclass
class LedgerEntry:
    name: str
    path: str
    size: int = 0
    error: str | None = None


@dataclass
class ProgressSnapshot:
    """One poll of the backend: active items, queue depth, recent results."""

    active: list[ProgressItem] = field(default_factory=list)
    waiting: int = 0
    completed: list[LedgerEntry] = field(default_factory=list)
    failed: list[LedgerEntry] = field(default_factory=list)
    taken_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    @property
    def is_idle(self) -> bool:
        return not self.active and self.waiting == 0

    @property
    def total_bytes(self) -> int:
        return sum(item.total for item in self.active)

    @property
    def done_bytes(self) -> int:
        return sum(item.done for item in self.active)

    @property
    def speed(self) -> int:
        return sum(item.speed for item in self.active)

    @property
    def eta_seconds(self) -> float | None:
        remaining = self.total_bytes - self.done_bytes
        if self.speed <= 0 or remaining <= 0:
            return None
        return remaining / self.speed

    def render(self, bar_width: int = 40, root: Path | None = None) -> str:
        """Render the snapshot as the multi-line text block that gets logged."""

        def _where(directory: str) -> str:
            if root and directory:
                try:
                    return os.path.relpath(directory, root)
                except ValueError:
                    return directory
            return directory

        lines = [f"=== Downloads @ {self.taken_at.strftime('%H:%M:%S')} ==="]
        for item in self.active:
            lines.append(
                f"{item.percent:3d}% [{item.bar(bar_width)}] "
                f"{human_bytes(item.speed)}/s "
                f"{human_bytes(item.done)}/{human_bytes(item.total)} "
                f"{_where(item.directory)}/{item.name}"
            )
        lines.append(
            f"Group: {len(self.active)} active, {self.waiting} waiting, "
            f"{human_bytes(self.done_bytes)}/{human_bytes(self.total_bytes)} "
            f"@ {human_bytes(self.speed)}/s ETA {format_eta(self.eta_seconds)}"
        )
        if self.completed:
            lines.append("Completed (this session):")
            for entry in self.completed:
                lines.append(f"  ✓ {entry.name} ({human_bytes(entry.size)}) -> {_where(str(Path(entry.path).parent))}")
        if self.failed:
            lines.append("Failed:")
            for entry in self.failed:
                lines.append(f"  ✗ {entry.name}: {entry.error or 'unknown error'}")
        return "\n".join(lines)


def _item(status: TransferStatus) -> ProgressItem:
    return ProgressItem(
        name=status.name,
        directory=status.directory,
        total=status.total_length,
        done=status.completed_length,
        speed=status.download_speed,
    )


def build_snapshot(
    backend: TransferBackend,
    gids: set[str] | None = None,
    ledger_limit: int = 20,
) -> ProgressSnapshot:
    """
    Poll the backend once.

    Args:
        backend: Transfer backend to query
        gids: Restrict the snapshot to these handles, or everything if None
        ledger_limit: How many recent completed/failed rows to keep
    """

    def _wanted(status: TransferStatus) -> bool:
        return gids is None or status.gid in gids

    active = [s for s in backend.list_active() if _wanted(s)]
    waiting = [s for s in backend.list_waiting() if _wanted(s)]
    stopped = [s for s in backend.list_stopped() if _wanted(s)]

    completed = [
        LedgerEntry(name=s.name, path=s.path, size=s.total_length)
        for s in stopped
        if s.status == DownloadStatus.COMPLETE
    ]
    failed = [
        LedgerEntry(
            name=s.name,
            path=s.path,
            size=s.total_length,
            error=s.error_message or (f"error code {s.error_code}" if s.error_code else None),
        )
        for s in stopped
        if s.status == DownloadStatus.ERROR
    ]

    return ProgressSnapshot(
        active=[_item(s) for s in active],
        waiting=len(waiting),
        completed=completed[-ledger_limit:],
        failed=failed[-ledger_limit:],
    )
