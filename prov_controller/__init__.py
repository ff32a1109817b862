"""
Provisioning controller module.

This module contains the native extension builder, the worker launcher and
health supervisor, and the Bootstrapper that runs a whole provisioning pass.
It runs as its own process (``comfy-prov``) and stays alive to monitor the
workers it started.
"""

from .bootstrap import Bootstrapper
from .extension_builder import NativeExtensionBuilder, select_arch_profile
from .health import WorkerHealthStateMachine
from .supervisor import WorkerSupervisor

__all__ = [
    "Bootstrapper",
    "NativeExtensionBuilder",
    "WorkerHealthStateMachine",
    "WorkerSupervisor",
    "select_arch_profile",
]
