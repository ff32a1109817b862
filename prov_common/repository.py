"""
Abstract repository interface for the provisioning run ledger.

This module defines the contract that any database implementation must follow,
allowing the ledger to live in SQLite or anywhere else.
"""

from abc import ABC, abstractmethod

from .models import (
    BuildAttempt,
    DownloadJob,
    RepoSyncResult,
    WorkerEvent,
    WorkerInstance,
)


class ProvisionRepository(ABC):
    """
    Abstract base class for run ledger storage.

    Implementations must provide async-safe access and handle their own
    connection management.
    """

    @abstractmethod
    async def record_download(self, job: DownloadJob) -> None:
        """
        Insert or replace the ledger row for a download.

        Args:
            job: Download job; its destination path is the key
        """
        pass

    @abstractmethod
    async def list_downloads(self, status: str | None = None) -> list[dict]:
        """
        List recorded downloads, newest first.

        Args:
            status: Optional status filter ("complete", "error", ...)
        """
        pass

    @abstractmethod
    async def record_repo_result(self, result: RepoSyncResult) -> None:
        """Insert or replace the latest sync result for a repository."""
        pass

    @abstractmethod
    async def list_repo_results(self) -> list[dict]:
        pass

    @abstractmethod
    async def record_build_attempt(self, attempt: BuildAttempt) -> None:
        """Append a native extension build attempt."""
        pass

    @abstractmethod
    async def list_build_attempts(self) -> list[dict]:
        pass

    @abstractmethod
    async def upsert_worker(self, instance: WorkerInstance) -> None:
        """
        Create or update a worker instance row.

        Args:
            instance: Worker instance; its port is the key
        """
        pass

    @abstractmethod
    async def get_worker(self, port: int) -> dict | None:
        """
        Retrieve a worker instance by port.

        Returns:
            Worker dictionary if found, None otherwise
        """
        pass

    @abstractmethod
    async def list_workers(self) -> list[dict]:
        pass

    @abstractmethod
    async def add_worker_event(self, event: WorkerEvent) -> None:
        pass

    @abstractmethod
    async def list_worker_events(self, port: int | None = None) -> list[dict]:
        """
        List worker events in the order they happened.

        Args:
            port: Only events for this worker, or all events if None
        """
        pass
