"""
Exception types shared by the provisioning components.

Only ConfigurationError is meant to abort a bootstrap run; the others are
raised by a single component and handled by its caller.
"""


class ProvisionError(Exception):
    """Base class for provisioning failures."""


class ConfigurationError(ProvisionError):
    """A runtime precondition is not met (missing interpreter, bad setting)."""


class ManifestError(ProvisionError):
    """A download manifest or one of its entries cannot be used."""


class TransferBackendError(ProvisionError):
    """The transfer backend rejected a request or could not be reached."""

    def __init__(self, message: str, raw_error: object | None = None):
        super().__init__(message)
        self.raw_error = raw_error


class BundleError(ProvisionError):
    """A plugin bundle could not be fetched, verified, built or installed."""


class SessionError(ProvisionError):
    """A worker session could not be started or controlled."""
