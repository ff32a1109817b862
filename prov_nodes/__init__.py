"""
Provisioning nodes module.

Plugin repository lists, the repository sync manager and the bundle cache
that can replace a full sync with a prebuilt archive.
"""

from .bundle import BundleCache, HuggingFaceBundleStore, compute_signature
from .sync import RepoSyncManager
from .targets import build_targets, resolve_node_list

__all__ = [
    "BundleCache",
    "HuggingFaceBundleStore",
    "RepoSyncManager",
    "build_targets",
    "compute_signature",
    "resolve_node_list",
]
