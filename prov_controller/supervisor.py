"""
Worker supervisor: launch, readiness probe and per-instance monitoring.

Each launched instance gets a monitor task that watches session liveness
and HTTP responsiveness. Every state change that matters to an operator
produces exactly one notification; the supervisor never restarts a worker.
"""

import asyncio
import logging
import socket
from collections.abc import Awaitable, Callable
from pathlib import Path

import requests

from prov_common.errors import SessionError
from prov_common.models import (
    HealthEvent,
    WorkerEvent,
    WorkerHealth,
    WorkerInstance,
    WorkerSpec,
    utcnow,
)
from prov_common.repository import ProvisionRepository

from .health import WorkerHealthStateMachine
from .launcher import validate_isolation, worker_command, worker_env
from .notifier import Notifier
from .session_manager import SessionBackend

logger = logging.getLogger(__name__)

Probe = Callable[[int], Awaitable[bool]]


def http_probe(port: int, host: str = "127.0.0.1", timeout: float = 3.0) -> bool:
    """Any response below 400 is up; errors, timeouts and refusals are down."""
    try:
        response = requests.get(f"http://{host}:{port}/", timeout=timeout)
    except requests.exceptions.RequestException:
        return False
    return response.status_code < 400


async def threaded_http_probe(port: int) -> bool:
    return await asyncio.to_thread(http_probe, port)


class WorkerSupervisor:
    """
    Launches worker instances and watches them.

    Args:
        sessions: Session backend that runs the worker processes
        notifier: Outbound notification sink
        app_dir: Checkout of the served application
        python_bin: Interpreter that runs it
        repository: Optional run ledger
        probe: Async HTTP probe taking a port
        readiness_timeout: Seconds to wait for the first successful probe
        readiness_interval: Seconds between readiness probes
        monitor_interval: Seconds between monitor checks
    """

    def __init__(
        self,
        sessions: SessionBackend,
        notifier: Notifier,
        app_dir: Path,
        python_bin: Path,
        repository: ProvisionRepository | None = None,
        probe: Probe | None = None,
        readiness_timeout: float = 60.0,
        readiness_interval: float = 1.0,
        monitor_interval: float = 10.0,
        hostname: str | None = None,
    ):
        self.sessions = sessions
        self.notifier = notifier
        self.app_dir = Path(app_dir)
        self.python_bin = Path(python_bin)
        self.repository = repository
        self.probe = probe or threaded_http_probe
        self.readiness_timeout = readiness_timeout
        self.readiness_interval = readiness_interval
        self.monitor_interval = monitor_interval
        self.hostname = hostname or socket.gethostname()
        self.state_machine = WorkerHealthStateMachine()

        self.instances: dict[int, WorkerInstance] = {}
        self.events: list[WorkerEvent] = []
        self._monitors: dict[int, asyncio.Task] = {}

    async def launch(self, spec: WorkerSpec, use_sage: bool = False) -> WorkerInstance:
        """
        Start one instance, probe it for readiness and start its monitor.

        Readiness failure is reported, never raised.

        Raises:
            ValueError: If the port or a directory collides with a launched instance
        """
        validate_isolation([i.spec for i in self.instances.values()] + [spec])
        spec.output_dir.mkdir(parents=True, exist_ok=True)
        spec.cache_dir.mkdir(parents=True, exist_ok=True)

        instance = WorkerInstance(spec=spec)
        self.instances[spec.port] = instance
        await self._record(instance)

        command = worker_command(spec, self.app_dir, self.python_bin, use_sage)
        logger.info(f"Launching {spec.name} in session {spec.session}: {' '.join(command)}")
        try:
            await self.sessions.start(
                spec.session, command, worker_env(spec), self.app_dir, spec.log_file
            )
        except SessionError as e:
            logger.error(str(e))
            await self._apply(instance, HealthEvent.SESSION_LOST)
            await self._notify(instance, "session_exited", f"❌ {spec.name} failed to start: {e}")
            return instance

        if await self.wait_ready(spec.port):
            instance.was_up = True
            await self._apply(instance, HealthEvent.PROBE_OK)
            await self._notify(
                instance,
                "ready",
                f"🚀 ComfyUI: {spec.name} is UP on {self.hostname} (port {spec.port})",
            )
        else:
            await self._apply(instance, HealthEvent.PROBE_TIMEOUT)
            await self._notify(
                instance,
                "not_ready",
                f"⚠️ {spec.name} did not respond with HTTP 200 within "
                f"{self.readiness_timeout:.0f}s (port {spec.port}). Check logs: {spec.log_file}",
            )

        self._monitors[spec.port] = asyncio.create_task(self._monitor(instance))
        return instance

    async def wait_ready(self, port: int) -> bool:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.readiness_timeout
        while True:
            if await self.probe(port):
                return True
            if loop.time() + self.readiness_interval > deadline:
                return False
            await asyncio.sleep(self.readiness_interval)

    async def check_once(self, instance: WorkerInstance) -> bool:
        """
        One monitor step.

        Returns:
            False once the instance is dead and monitoring should stop
        """
        spec = instance.spec
        if not await self.sessions.exists(spec.session):
            await self._apply(instance, HealthEvent.SESSION_LOST)
            await self._notify(
                instance,
                "session_exited",
                f"❌ {spec.name} session exited (port {spec.port}). Log: {spec.log_file}",
            )
        elif await self.probe(spec.port):
            if instance.health in (WorkerHealth.READY, WorkerHealth.DEGRADED):
                await self._apply(instance, HealthEvent.HTTP_UP)
            instance.was_up = True
        elif instance.was_up:
            await self._apply(instance, HealthEvent.HTTP_DOWN)
            await self._notify(
                instance,
                "unresponsive",
                f"❌ {spec.name} became unresponsive (port {spec.port}). Log: {spec.log_file}",
            )
        return not self.state_machine.is_terminal(instance.health)

    async def _monitor(self, instance: WorkerInstance) -> None:
        while True:
            await asyncio.sleep(self.monitor_interval)
            try:
                if not await self.check_once(instance):
                    logger.info(f"Stopped monitoring {instance.spec.name}")
                    return
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Error monitoring {instance.spec.name}: {e}", exc_info=True)

    async def _apply(self, instance: WorkerInstance, event: HealthEvent) -> None:
        previous = instance.health
        instance.health = self.state_machine.transition(previous, event)
        instance.updated_at = utcnow()
        logger.info(
            f"{instance.spec.name}: {previous.value} -> {instance.health.value} ({event.value})"
        )
        await self._record(instance)

    async def _record(self, instance: WorkerInstance) -> None:
        if self.repository is not None:
            await self.repository.upsert_worker(instance)

    async def _notify(self, instance: WorkerInstance, kind: str, text: str) -> None:
        event = WorkerEvent(port=instance.port, kind=kind, message=text)
        self.events.append(event)
        if self.repository is not None:
            await self.repository.add_worker_event(event)
        await asyncio.to_thread(self.notifier.send, text)

    async def notify(self, text: str) -> bool:
        """Send a run-level notification (not tied to one instance)."""
        return await asyncio.to_thread(self.notifier.send, text)

    async def wait(self) -> None:
        """Block until every monitor has stopped."""
        if self._monitors:
            await asyncio.gather(*self._monitors.values(), return_exceptions=True)

    async def stop(self) -> None:
        """Cancel monitors; worker sessions keep running."""
        for task in self._monitors.values():
            task.cancel()
        for task in self._monitors.values():
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._monitors.clear()
