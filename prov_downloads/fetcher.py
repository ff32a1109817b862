"""
Artifact fetcher: hands one URL/destination pair to the transfer backend.

The fetcher decides three things before the backend sees a job: whether the
existing partial state at the destination is resumable, whether the host
needs a bearer token, and which segmented-transfer options to use.
"""

import logging
from dataclasses import dataclass
from pathlib import Path
from urllib.parse import urlparse

import requests

from prov_common.models import DownloadJob

from .backend import TransferBackend

logger = logging.getLogger(__name__)

CONTROL_SUFFIX = ".aria2"
AUTH_STATUS_CODES = (401, 403)


@dataclass
class FetchOptions:
    segments: int = 16
    max_connections_per_host: int = 16
    min_segment_size: str = "1M"
    auth_header: str | None = None  # Explicit header; skips the auth probe
    checksum: str | None = None  # "sha-256=<hex>" style, passed through


def control_file(dest: Path) -> Path:
    return dest.with_name(dest.name + CONTROL_SUFFIX)


def host_of(url: str) -> str:
    return (urlparse(url).hostname or "").lower()


class AuthProbe:
    """
    Detects whether a URL needs credentials.

    An unauthenticated HEAD answering 401/403 means auth is required. Hosts
    that reject HEAD get a one-byte ranged GET instead. A host that demanded
    credentials once is remembered; a public answer only covers its own URL.
    """

    def __init__(self, session: requests.Session | None = None, timeout: float = 15.0):
        self.session = session or requests.Session()
        self.timeout = timeout
        self._auth_hosts: set[str] = set()
        self._public_urls: set[str] = set()

    def requires_auth(self, url: str) -> bool:
        host = host_of(url)
        if host in self._auth_hosts:
            return True
        if url in self._public_urls:
            return False

        try:
            response = self.session.head(url, allow_redirects=True, timeout=self.timeout)
            if response.status_code in (405, 501):
                response = self.session.get(
                    url,
                    headers={"Range": "bytes=0-0"},
                    stream=True,
                    allow_redirects=True,
                    timeout=self.timeout,
                )
                response.close()
        except requests.exceptions.RequestException as e:
            # Unknown; let the transfer itself report the failure
            logger.debug(f"Auth probe for {host} failed: {e}")
            return False

        if response.status_code in AUTH_STATUS_CODES:
            self._auth_hosts.add(host)
            return True
        self._public_urls.add(url)
        return False


class ArtifactFetcher:
    """Turns (url, dest, options) into a backend job."""

    def __init__(
        self,
        backend: TransferBackend,
        tokens: dict[str, str] | None = None,
        probe: AuthProbe | None = None,
        min_plausible_bytes: int = 1,
    ):
        """
        Args:
            backend: Transfer backend that performs the download
            tokens: Bearer tokens keyed by host; a key also matches subdomains
            probe: Auth probe, created on demand if omitted
            min_plausible_bytes: Smallest size a finished file can have
        """
        self.backend = backend
        self.tokens = tokens or {}
        self.probe = probe or AuthProbe()
        self.min_plausible_bytes = min_plausible_bytes

    def is_satisfied(self, dest: Path) -> bool:
        """A destination is done when it has plausible size and no control file."""
        if control_file(dest).exists():
            return False
        return dest.is_file() and dest.stat().st_size >= self.min_plausible_bytes

    def prepare_destination(self, dest: Path) -> bool:
        """
        Classify partial state at the destination, discarding invalid state.

        A destination plus its control file is a resumable partial. A control
        file alone, or an undersized destination without a control file, is
        removed so the transfer starts over.

        Returns:
            True if an existing partial will be resumed
        """
        dest.parent.mkdir(parents=True, exist_ok=True)
        ctrl = control_file(dest)

        if ctrl.exists() and dest.exists():
            logger.info(f"Resuming partial download: {dest}")
            return True
        if ctrl.exists():
            logger.warning(f"Discarding orphan control file: {ctrl}")
            ctrl.unlink()
        elif dest.exists() and dest.stat().st_size < self.min_plausible_bytes:
            logger.warning(f"Discarding undersized file: {dest}")
            dest.unlink()
        return False

    def token_for(self, url: str) -> str | None:
        host = host_of(url)
        for domain, token in self.tokens.items():
            if host == domain or host.endswith("." + domain):
                return token
        return None

    def auth_header(self, url: str, options: FetchOptions) -> str | None:
        if options.auth_header:
            return options.auth_header
        if not self.probe.requires_auth(url):
            return None
        token = self.token_for(url)
        if token is None:
            logger.warning(
                f"{host_of(url)} requires authentication but no token is configured; "
                "fetching without credentials"
            )
            return None
        return f"Authorization: Bearer {token}"

    def build_options(self, url: str, dest: Path, options: FetchOptions) -> dict[str, str]:
        backend_options = {
            "dir": str(dest.parent),
            "out": dest.name,
            "split": str(options.segments),
            "max-connection-per-server": str(options.max_connections_per_host),
            "min-split-size": options.min_segment_size,
            "continue": "true",
            "allow-overwrite": "true",
            "auto-file-renaming": "false",
        }
        if options.checksum:
            backend_options["checksum"] = options.checksum
        header = self.auth_header(url, options)
        if header:
            backend_options["header"] = header
        return backend_options

    def fetch(self, url: str, dest: Path, options: FetchOptions | None = None) -> DownloadJob:
        """
        Start a transfer without waiting for it.

        Returns:
            DownloadJob carrying the backend handle

        Raises:
            TransferBackendError: If the backend refuses the job
        """
        options = options or FetchOptions()
        dest = Path(dest)
        self.prepare_destination(dest)
        gid = self.backend.add_job(url, self.build_options(url, dest, options))
        return DownloadJob(
            url=url,
            dest=dest,
            checksum=options.checksum,
            segments=options.segments,
            max_connections_per_host=options.max_connections_per_host,
            min_segment_size=options.min_segment_size,
            gid=gid,
        )
