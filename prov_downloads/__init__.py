"""
Provisioning downloads module.

Artifact fetcher, download queue manager and progress reporting on top of
an aria2 transfer backend controlled over JSON-RPC.
"""

from .backend import Aria2Daemon, Aria2RpcBackend, TransferBackend
from .fetcher import ArtifactFetcher, AuthProbe, FetchOptions
from .progress import ProgressSnapshot, human_bytes
from .queue import DownloadQueueManager, EnqueueResult

__all__ = [
    "ArtifactFetcher",
    "Aria2Daemon",
    "Aria2RpcBackend",
    "AuthProbe",
    "DownloadQueueManager",
    "EnqueueResult",
    "FetchOptions",
    "ProgressSnapshot",
    "TransferBackend",
    "human_bytes",
]
