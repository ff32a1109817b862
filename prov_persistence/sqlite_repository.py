"""
SQLite implementation of the provisioning run ledger.

Uses aiosqlite for async operations. The ledger is written by the bootstrap
run and read by the status API and the admin CLI.
"""

import json

import aiosqlite

from prov_common.models import (
    BuildAttempt,
    DownloadJob,
    RepoSyncResult,
    WorkerEvent,
    WorkerInstance,
)
from prov_common.repository import ProvisionRepository


class SQLiteProvisionRepository(ProvisionRepository):
    """
    SQLite-based run ledger.

    Uses a single database file with multiple tables:
    - downloads: Latest state per destination path
    - repo_syncs: Latest sync result per repository directory
    - build_attempts: Every native extension build attempt
    - workers: Latest health per worker port
    - worker_events: Notifications emitted for workers
    """

    def __init__(self, db_path: str = "provision.db"):
        """
        Initialize the SQLite repository.

        Args:
            db_path: Path to the SQLite database file
        """
        self.db_path = db_path
        self._connection: aiosqlite.Connection | None = None

    async def _get_connection(self) -> aiosqlite.Connection:
        """Get or create database connection."""
        if self._connection is None:
            self._connection = await aiosqlite.connect(self.db_path)
            await self._connection.execute("PRAGMA foreign_keys = ON")
        return self._connection

    async def initialize(self) -> None:
        """Create database tables if they don't exist."""
        conn = await self._get_connection()

        await conn.execute("""
            CREATE TABLE IF NOT EXISTS downloads (
                dest TEXT PRIMARY KEY,
                url TEXT NOT NULL,
                section TEXT,
                gid TEXT,
                status TEXT NOT NULL,
                total_length INTEGER NOT NULL DEFAULT 0,
                completed_length INTEGER NOT NULL DEFAULT 0,
                error TEXT,
                updated_at TEXT NOT NULL
            )
        """)

        await conn.execute("""
            CREATE TABLE IF NOT EXISTS repo_syncs (
                name TEXT PRIMARY KEY,
                url TEXT NOT NULL,
                state TEXT NOT NULL,
                commit_sha TEXT,
                dependencies_ok INTEGER,
                setup_ok INTEGER,
                error TEXT,
                log_path TEXT,
                finished_at TEXT NOT NULL
            )
        """)

        await conn.execute("""
            CREATE TABLE IF NOT EXISTS build_attempts (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                revision TEXT NOT NULL,
                flags TEXT NOT NULL,
                log_path TEXT NOT NULL,
                outcome TEXT,
                returncode INTEGER,
                started_at TEXT NOT NULL,
                finished_at TEXT
            )
        """)

        await conn.execute("""
            CREATE TABLE IF NOT EXISTS workers (
                port INTEGER PRIMARY KEY,
                name TEXT NOT NULL,
                session TEXT NOT NULL,
                gpu TEXT NOT NULL,
                output_dir TEXT NOT NULL,
                cache_dir TEXT NOT NULL,
                log_file TEXT NOT NULL,
                health TEXT NOT NULL,
                was_up INTEGER NOT NULL DEFAULT 0,
                started_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
        """)

        await conn.execute("""
            CREATE TABLE IF NOT EXISTS worker_events (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                port INTEGER NOT NULL,
                kind TEXT NOT NULL,
                message TEXT NOT NULL,
                timestamp TEXT NOT NULL
            )
        """)

        await conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_worker_events_port
            ON worker_events(port)
        """)

        await conn.commit()

    async def close(self) -> None:
        """Close the database connection."""
        if self._connection:
            await self._connection.close()
            self._connection = None

    async def record_download(self, job: DownloadJob) -> None:
        conn = await self._get_connection()
        await conn.execute(
            """
            INSERT OR REPLACE INTO downloads
                (dest, url, section, gid, status, total_length, completed_length, error, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                str(job.dest),
                job.url,
                job.section,
                job.gid,
                job.status.value,
                job.total_length,
                job.completed_length,
                job.error,
                job.updated_at.isoformat(),
            ),
        )
        await conn.commit()

    async def list_downloads(self, status: str | None = None) -> list[dict]:
        conn = await self._get_connection()
        query = (
            "SELECT dest, url, section, gid, status, total_length, completed_length, "
            "error, updated_at FROM downloads"
        )
        params: tuple = ()
        if status:
            query += " WHERE status = ?"
            params = (status,)
        query += " ORDER BY updated_at DESC"

        cursor = await conn.execute(query, params)
        rows = await cursor.fetchall()

        downloads = []
        for row in rows:
            (
                dest,
                url,
                section,
                gid,
                row_status,
                total_length,
                completed_length,
                error,
                updated_at,
            ) = row
            downloads.append(
                {
                    "dest": dest,
                    "url": url,
                    "section": section,
                    "gid": gid,
                    "status": row_status,
                    "total_length": total_length,
                    "completed_length": completed_length,
                    "error": error,
                    "updated_at": updated_at,
                }
            )
        return downloads

    async def record_repo_result(self, result: RepoSyncResult) -> None:
        conn = await self._get_connection()
        await conn.execute(
            """
            INSERT OR REPLACE INTO repo_syncs
                (name, url, state, commit_sha, dependencies_ok, setup_ok, error, log_path, finished_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                result.target.name,
                result.target.url,
                result.state.value,
                result.commit,
                result.dependencies_ok,
                result.setup_ok,
                result.error,
                str(result.log_path) if result.log_path else None,
                result.finished_at.isoformat(),
            ),
        )
        await conn.commit()

    async def list_repo_results(self) -> list[dict]:
        conn = await self._get_connection()
        cursor = await conn.execute(
            "SELECT name, url, state, commit_sha, dependencies_ok, setup_ok, error, "
            "log_path, finished_at FROM repo_syncs ORDER BY name"
        )
        rows = await cursor.fetchall()

        def _optional_bool(value):
            return bool(value) if value is not None else None

        return [
            {
                "name": name,
                "url": url,
                "state": state,
                "commit": commit,
                "dependencies_ok": _optional_bool(deps_ok),
                "setup_ok": _optional_bool(setup_ok),
                "error": error,
                "log_path": log_path,
                "finished_at": finished_at,
            }
            for name, url, state, commit, deps_ok, setup_ok, error, log_path, finished_at in rows
        ]

    async def record_build_attempt(self, attempt: BuildAttempt) -> None:
        conn = await self._get_connection()
        await conn.execute(
            """
            INSERT INTO build_attempts
                (revision, flags, log_path, outcome, returncode, started_at, finished_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (
                attempt.revision,
                json.dumps(attempt.flags, sort_keys=True),
                str(attempt.log_path),
                attempt.outcome.value if attempt.outcome else None,
                attempt.returncode,
                attempt.started_at.isoformat(),
                attempt.finished_at.isoformat() if attempt.finished_at else None,
            ),
        )
        await conn.commit()

    async def list_build_attempts(self) -> list[dict]:
        conn = await self._get_connection()
        cursor = await conn.execute(
            "SELECT revision, flags, log_path, outcome, returncode, started_at, finished_at "
            "FROM build_attempts ORDER BY id"
        )
        rows = await cursor.fetchall()
        return [
            {
                "revision": revision,
                "flags": json.loads(flags),
                "log_path": log_path,
                "outcome": outcome,
                "returncode": returncode,
                "started_at": started_at,
                "finished_at": finished_at,
            }
            for revision, flags, log_path, outcome, returncode, started_at, finished_at in rows
        ]

    async def upsert_worker(self, instance: WorkerInstance) -> None:
        conn = await self._get_connection()
        spec = instance.spec
        await conn.execute(
            """
            INSERT INTO workers
                (port, name, session, gpu, output_dir, cache_dir, log_file, health, was_up, started_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(port) DO UPDATE SET
                name = excluded.name,
                session = excluded.session,
                gpu = excluded.gpu,
                output_dir = excluded.output_dir,
                cache_dir = excluded.cache_dir,
                log_file = excluded.log_file,
                health = excluded.health,
                was_up = excluded.was_up,
                started_at = excluded.started_at,
                updated_at = excluded.updated_at
            """,
            (
                spec.port,
                spec.name,
                spec.session,
                spec.gpu,
                str(spec.output_dir),
                str(spec.cache_dir),
                str(spec.log_file),
                instance.health.value,
                1 if instance.was_up else 0,
                instance.started_at.isoformat(),
                instance.updated_at.isoformat(),
            ),
        )
        await conn.commit()

    _WORKER_COLUMNS = (
        "port, name, session, gpu, output_dir, cache_dir, log_file, health, was_up, "
        "started_at, updated_at"
    )

    @staticmethod
    def _worker_row(row) -> dict:
        (
            port,
            name,
            session,
            gpu,
            output_dir,
            cache_dir,
            log_file,
            health,
            was_up,
            started_at,
            updated_at,
        ) = row
        return {
            "port": port,
            "name": name,
            "session": session,
            "gpu": gpu,
            "output_dir": output_dir,
            "cache_dir": cache_dir,
            "log_file": log_file,
            "health": health,
            "was_up": bool(was_up),
            "started_at": started_at,
            "updated_at": updated_at,
        }

    async def get_worker(self, port: int) -> dict | None:
        conn = await self._get_connection()
        cursor = await conn.execute(
            f"SELECT {self._WORKER_COLUMNS} FROM workers WHERE port = ?", (port,)
        )
        row = await cursor.fetchone()
        if row is None:
            return None
        return self._worker_row(row)

    async def list_workers(self) -> list[dict]:
        conn = await self._get_connection()
        cursor = await conn.execute(
            f"SELECT {self._WORKER_COLUMNS} FROM workers ORDER BY port"
        )
        rows = await cursor.fetchall()
        return [self._worker_row(row) for row in rows]

    async def add_worker_event(self, event: WorkerEvent) -> None:
        conn = await self._get_connection()
        await conn.execute(
            "INSERT INTO worker_events (port, kind, message, timestamp) VALUES (?, ?, ?, ?)",
            (event.port, event.kind, event.message, event.timestamp.isoformat()),
        )
        await conn.commit()

    async def list_worker_events(self, port: int | None = None) -> list[dict]:
        conn = await self._get_connection()
        query = "SELECT port, kind, message, timestamp FROM worker_events"
        params: tuple = ()
        if port is not None:
            query += " WHERE port = ?"
            params = (port,)
        query += " ORDER BY id"

        cursor = await conn.execute(query, params)
        rows = await cursor.fetchall()
        return [
            {"port": p, "kind": kind, "message": message, "timestamp": timestamp}
            for p, kind, message, timestamp in rows
        ]
