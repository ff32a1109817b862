"""
Provisioning persistence module.

This module contains the database implementation of the run ledger.
Currently supports SQLite.

The persistence layer depends on prov_common for domain models and
interfaces, and is used by the controller, the status server and the
admin CLI.
"""

from .sqlite_repository import SQLiteProvisionRepository

__all__ = ["SQLiteProvisionRepository"]
