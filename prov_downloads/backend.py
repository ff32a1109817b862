"""
Transfer backend used by the download queue.

The queue talks to the backend only through the narrow TransferBackend
interface; Aria2RpcBackend implements it over aria2's JSON-RPC control
protocol and Aria2Daemon makes sure an aria2 process is listening.
"""

import itertools
import logging
import subprocess
import time
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any

import requests

from prov_common.errors import TransferBackendError
from prov_common.models import TransferStatus

logger = logging.getLogger(__name__)

STATUS_KEYS = [
    "gid",
    "status",
    "totalLength",
    "completedLength",
    "downloadSpeed",
    "files",
    "errorCode",
    "errorMessage",
]


class TransferBackend(ABC):
    """Operations the download queue needs from a transfer engine."""

    @abstractmethod
    def add_job(self, url: str, options: dict[str, str]) -> str:
        """
        Queue one URL.

        Returns:
            Backend handle (gid)

        Raises:
            TransferBackendError: With the raw backend error if rejected
        """
        pass

    @abstractmethod
    def query_status(self, gid: str) -> TransferStatus:
        pass

    @abstractmethod
    def list_active(self) -> list[TransferStatus]:
        pass

    @abstractmethod
    def list_waiting(self, offset: int = 0, limit: int = 1000) -> list[TransferStatus]:
        pass

    @abstractmethod
    def list_stopped(self, offset: int = 0, limit: int = 1000) -> list[TransferStatus]:
        pass

    @abstractmethod
    def cancel_job(self, gid: str) -> None:
        pass

    @abstractmethod
    def pause_all(self) -> None:
        pass

    @abstractmethod
    def purge_results(self) -> None:
        pass

    @abstractmethod
    def ping(self) -> bool:
        """Return True if the backend answers."""
        pass


class Aria2RpcBackend(TransferBackend):
    """aria2 JSON-RPC client using ``token:<secret>`` authorization."""

    def __init__(
        self,
        host: str = "127.0.0.1",
        port: int = 6969,
        secret: str = "",
        timeout: float = 10.0,
        session: requests.Session | None = None,
    ):
        self.url = f"http://{host}:{port}/jsonrpc"
        self.secret = secret
        self.timeout = timeout
        self.session = session or requests.Session()
        self._ids = itertools.count(1)

    def _call(self, method: str, *params: Any) -> Any:
        payload_params: list[Any] = []
        if self.secret:
            payload_params.append(f"token:{self.secret}")
        payload_params.extend(params)
        payload = {
            "jsonrpc": "2.0",
            "id": str(next(self._ids)),
            "method": method,
            "params": payload_params,
        }
        try:
            response = self.session.post(self.url, json=payload, timeout=self.timeout)
            data = response.json()
        except requests.exceptions.RequestException as e:
            raise TransferBackendError(f"aria2 RPC {method} failed: {e}", raw_error=e) from e
        except ValueError as e:
            raise TransferBackendError(
                f"aria2 RPC {method} returned invalid JSON (HTTP {response.status_code})",
                raw_error=response.text,
            ) from e

        if "error" in data:
            error = data["error"]
            message = error.get("message", error) if isinstance(error, dict) else error
            raise TransferBackendError(f"aria2 RPC {method} error: {message}", raw_error=error)
        return data.get("result")

    def add_job(self, url: str, options: dict[str, str]) -> str:
        return self._call("aria2.addUri", [url], options)

    def query_status(self, gid: str) -> TransferStatus:
        return TransferStatus.from_rpc(self._call("aria2.tellStatus", gid, STATUS_KEYS))

    def list_active(self) -> list[TransferStatus]:
        return [TransferStatus.from_rpc(d) for d in self._call("aria2.tellActive", STATUS_KEYS) or []]

    def list_waiting(self, offset: int = 0, limit: int = 1000) -> list[TransferStatus]:
        rows = self._call("aria2.tellWaiting", offset, limit, STATUS_KEYS) or []
        return [TransferStatus.from_rpc(d) for d in rows]

    def list_stopped(self, offset: int = 0, limit: int = 1000) -> list[TransferStatus]:
        rows = self._call("aria2.tellStopped", offset, limit, STATUS_KEYS) or []
        return [TransferStatus.from_rpc(d) for d in rows]

    def cancel_job(self, gid: str) -> None:
        self._call("aria2.forceRemove", gid)

    def pause_all(self) -> None:
        self._call("aria2.forcePauseAll")

    def purge_results(self) -> None:
        self._call("aria2.purgeDownloadResult")

    def ping(self) -> bool:
        try:
            self._call("aria2.getVersion")
        except TransferBackendError:
            return False
        return True


class Aria2Daemon:
    """Starts a local aria2c RPC daemon when none is listening."""

    def __init__(
        self,
        port: int = 6969,
        secret: str = "",
        max_concurrent: int = 8,
        log_path: Path | None = None,
        binary: str = "aria2c",
    ):
        self.port = port
        self.secret = secret
        self.max_concurrent = max_concurrent
        self.log_path = log_path
        self.binary = binary

    def command(self) -> list[str]:
        args = [
            self.binary,
            "--enable-rpc",
            f"--rpc-listen-port={self.port}",
            "--rpc-listen-all=false",
            "--daemon=true",
            f"--max-concurrent-downloads={self.max_concurrent}",
            "--continue=true",
            "--file-allocation=none",
            "--summary-interval=0",
            "--show-console-readout=false",
        ]
        if self.secret:
            args.append(f"--rpc-secret={self.secret}")
        if self.log_path:
            args.append(f"--log={self.log_path}")
        return args

    def ensure_running(
        self, backend: TransferBackend, attempts: int = 20, interval: float = 0.2
    ) -> bool:
        """
        Start the daemon if the backend does not answer, then wait for it.

        Returns:
            True once the backend answers, False if it never does
        """
        if backend.ping():
            return True

        if self.log_path:
            self.log_path.parent.mkdir(parents=True, exist_ok=True)
        logger.info(f"Starting aria2 daemon on port {self.port}")
        try:
            subprocess.run(self.command(), check=True, capture_output=True)
        except FileNotFoundError:
            logger.error(f"{self.binary} not found on PATH")
            return False
        except subprocess.CalledProcessError as e:
            logger.error(f"aria2 daemon failed to start: {e.stderr.decode(errors='replace')}")
            return False

        for _ in range(attempts):
            if backend.ping():
                return True
            time.sleep(interval)
        logger.error(f"aria2 RPC did not come up on port {self.port}")
        return False
