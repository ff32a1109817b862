"""
Unit tests for progress snapshots and their text rendering.
"""

from prov_common.models import DownloadStatus
from prov_downloads.progress import (
    LedgerEntry,
    ProgressItem,
    ProgressSnapshot,
    build_snapshot,
    format_eta,
    human_bytes,
)


def test_human_bytes():
    assert human_bytes(0) == "0 Bytes"
    assert human_bytes(1023) == "1023 Bytes"
    assert human_bytes(1024) == "1.0 KB"
    assert human_bytes(1536) == "1.5 KB"
    assert human_bytes(5 * 1024**3) == "5.0 GB"
    assert human_bytes(1024**5) == "1.0 PB"
    assert human_bytes(-5) == "0 Bytes"


def test_format_eta():
    assert format_eta(None) == "--:--"
    assert format_eta(65) == "01:05"
    assert format_eta(3661) == "1:01:01"


class TestProgressSnapshot:
    """Test suite for ProgressSnapshot."""

    def test_item_percent_and_bar(self):
        item = ProgressItem(name="a", directory="/m", total=200, done=100, speed=0)
        assert item.percent == 50
        assert item.bar(10) == "#####-----"
        assert ProgressItem(name="a", directory="", total=0, done=0, speed=0).percent == 0

    def test_totals_and_eta(self):
        snapshot = ProgressSnapshot(
            active=[
                ProgressItem("a", "/m", total=100, done=50, speed=10),
                ProgressItem("b", "/m", total=100, done=50, speed=10),
            ]
        )
        assert snapshot.total_bytes == 200
        assert snapshot.done_bytes == 100
        assert snapshot.speed == 20
        assert snapshot.eta_seconds == 5
        assert not snapshot.is_idle

    def test_idle_without_active_or_waiting(self):
        assert ProgressSnapshot().is_idle
        assert not ProgressSnapshot(waiting=1).is_idle
        assert ProgressSnapshot().eta_seconds is None

    def test_render(self):
        snapshot = ProgressSnapshot(
            active=[ProgressItem("a.bin", "/w/models/loras", total=1024, done=512, speed=256)],
            waiting=2,
            completed=[LedgerEntry(name="b.bin", path="/w/models/vae/b.bin", size=2048)],
            failed=[LedgerEntry(name="c.bin", path="/w/c.bin", error="404")],
        )
        text = snapshot.render(bar_width=10, root="/w")

        assert " 50% [#####-----]" in text
        assert "models/loras/a.bin" in text
        assert "Group: 1 active, 2 waiting" in text
        assert "Completed (this session):" in text
        assert "✓ b.bin (2.0 KB) -> models/vae" in text
        assert "Failed:" in text
        assert "✗ c.bin: 404" in text


class TestBuildSnapshot:
    """Test suite for polling the backend."""

    def test_groups_statuses(self, fake_backend):
        a = fake_backend.add_job("https://h/a", {"dir": "/m", "out": "a"})
        b = fake_backend.add_job("https://h/b", {"dir": "/m", "out": "b"})
        c = fake_backend.add_job("https://h/c", {"dir": "/m", "out": "c"})
        fake_backend.add_job("https://h/d", {"dir": "/m", "out": "d"})
        fake_backend.jobs[a].status = DownloadStatus.ACTIVE
        fake_backend.set_status(b, DownloadStatus.COMPLETE, size=3)
        fake_backend.set_status(c, DownloadStatus.ERROR, message="boom")

        snapshot = build_snapshot(fake_backend)

        assert [item.name for item in snapshot.active] == ["a"]
        assert snapshot.waiting == 1
        assert [entry.name for entry in snapshot.completed] == ["b"]
        assert snapshot.failed[0].error == "boom"

    def test_restricted_to_handles(self, fake_backend):
        a = fake_backend.add_job("https://h/a", {"dir": "/m", "out": "a"})
        fake_backend.add_job("https://h/b", {"dir": "/m", "out": "b"})

        snapshot = build_snapshot(fake_backend, gids={a})
        assert snapshot.waiting == 1

    def test_ledger_limit(self, fake_backend):
        for n in range(5):
            gid = fake_backend.add_job(f"https://h/{n}", {"dir": "/m", "out": str(n)})
            fake_backend.set_status(gid, DownloadStatus.COMPLETE, size=1)

        snapshot = build_snapshot(fake_backend, ledger_limit=2)
        assert [entry.name for entry in snapshot.completed] == ["3", "4"]
