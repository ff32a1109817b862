"""
Provisioning common module.

This module contains shared domain models, configuration and interfaces used
across the provisioning components (downloads, nodes, controller, server).

The common module has no dependencies on other prov_* modules, making it
a pure domain layer that can be imported by any component.
"""

from .config import ConnectionTuning, ProvisionConfig
from .errors import ConfigurationError, ProvisionError
from .models import DownloadJob, RepoTarget, WorkerInstance, WorkerSpec
from .repository import ProvisionRepository

__all__ = [
    "ConfigurationError",
    "ConnectionTuning",
    "DownloadJob",
    "ProvisionConfig",
    "ProvisionError",
    "ProvisionRepository",
    "RepoTarget",
    "WorkerInstance",
    "WorkerSpec",
]
