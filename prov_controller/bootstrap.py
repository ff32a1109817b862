"""
End-to-end provisioning run.

The Bootstrapper wires every component together and runs them in the order
the served application needs: the extension build starts first and runs in
the background, the application checkout comes before plugin sync, model
downloads overlap plugin sync, and both the sync and the build are joined
before any worker is launched.
"""

import asyncio
import logging
from pathlib import Path

from prov_common.commands import CommandRunner
from prov_common.config import ProvisionConfig
from prov_common.errors import BundleError, ManifestError, ProvisionError
from prov_common.manifest import Manifest
from prov_common.models import (
    BuildAttempt,
    DownloadJob,
    DownloadStatus,
    SyncReport,
    WorkerInstance,
)
from prov_common.repository import ProvisionRepository
from prov_downloads.backend import Aria2Daemon, Aria2RpcBackend, TransferBackend
from prov_downloads.civitai import (
    CivitaiClient,
    enqueue_versions,
    postprocess_zip_dir,
    tokenize_ids,
)
from prov_downloads.fetcher import ArtifactFetcher
from prov_downloads.queue import DownloadQueueManager
from prov_nodes.bundle import BundleCache, BundleStore, HuggingFaceBundleStore, compute_signature
from prov_nodes.sync import RepoSyncManager
from prov_nodes.targets import build_targets, resolve_node_list

from .extension_builder import (
    BuildHandle,
    NativeExtensionBuilder,
    detect_compute_capability,
    select_arch_profile,
)
from .launcher import detect_gpu_count, plan_instances, validate_isolation
from .notifier import Notifier, notifier_from_settings
from .session_manager import SessionBackend, default_session_backend
from .supervisor import Probe, WorkerSupervisor

logger = logging.getLogger(__name__)


class Bootstrapper:
    """
    Runs one provisioning pass and then supervises the workers.

    Collaborators default to the production implementations and can be
    replaced for tests.
    """

    def __init__(
        self,
        config: ProvisionConfig,
        repository: ProvisionRepository | None = None,
        runner: CommandRunner | None = None,
        notifier: Notifier | None = None,
        sessions: SessionBackend | None = None,
        backend: TransferBackend | None = None,
        bundle_store: BundleStore | None = None,
        probe: Probe | None = None,
    ):
        self.config = config
        self.repository = repository
        self.runner = runner or CommandRunner()
        self.notifier = notifier or notifier_from_settings(
            config.telegram_token, config.telegram_chat_id
        )

        self.backend = backend or Aria2RpcBackend(
            config.aria2_host, config.aria2_port, config.aria2_secret
        )
        self.daemon = Aria2Daemon(
            port=config.aria2_port,
            secret=config.aria2_secret,
            max_concurrent=config.aria2_max_concurrent,
            log_path=config.logs_dir / "aria2.log",
        )
        self.fetcher = ArtifactFetcher(
            self.backend,
            tokens=config.host_tokens(),
            min_plausible_bytes=config.min_plausible_bytes,
        )
        self.queue = DownloadQueueManager(
            self.backend,
            self.fetcher,
            default_dir=config.default_download_dir or config.comfy_home / "models",
            tuning_for=config.tuning_for,
        )

        self.sync = RepoSyncManager(
            target_dir=config.custom_dir,
            log_dir=config.custom_log_dir,
            python_bin=config.python_bin,
            pip_bin=config.pip_bin,
            git_depth=config.git_depth,
            runner=self.runner,
        )

        if bundle_store is None and config.hf_repo_id:
            bundle_store = HuggingFaceBundleStore(
                config.hf_repo_id,
                repo_type=config.hf_repo_type,
                token=config.hf_token,
                revision=config.hf_branch,
                endpoint=config.hf_api_base,
            )
        self.bundle_cache = (
            BundleCache(
                bundle_store,
                custom_dir=config.custom_dir,
                cache_dir=config.cache_dir,
                bundles_dir=config.bundles_dir,
                runner=self.runner,
            )
            if bundle_store is not None
            else None
        )

        self.builder = NativeExtensionBuilder(
            repo_url=config.sage_repo_url,
            work_root=config.cache_dir / "build",
            log_dir=config.logs_dir,
            pip_bin=config.pip_bin,
            runner=self.runner,
            max_jobs=config.max_jobs,
            ext_parallel=config.ext_parallel,
            nvcc_append_flags=config.nvcc_append_flags,
            on_attempt=self._record_build,
        )

        self.supervisor = WorkerSupervisor(
            sessions=sessions or default_session_backend(),
            notifier=self.notifier,
            app_dir=config.comfy_home,
            python_bin=config.python_bin,
            repository=repository,
            probe=probe,
            readiness_timeout=config.readiness_timeout,
            readiness_interval=config.readiness_interval,
            monitor_interval=config.monitor_interval,
        )
        self._downloads_running = False

    async def run(
        self,
        downloads: bool = True,
        nodes: bool = True,
        build: bool = True,
        launch: bool = True,
    ) -> list[WorkerInstance]:
        """
        Provision the box and launch the workers.

        Raises:
            ConfigurationError: If the interpreter or installer is missing
            ProvisionError: If the application checkout is unusable
        """
        self.config.validate_runtime()
        self.ensure_directories()

        build_handle = await self.start_extension_build() if build else None

        app = await self.sync.ensure_application(self.config.repo_url, self.config.comfy_home)
        if self.repository is not None:
            await self.repository.record_repo_result(app)
        if app.hard_failed and not (self.config.comfy_home / "main.py").is_file():
            raise ProvisionError(f"Application checkout unavailable: {app.error}")
        self.ensure_directories(inside_app=True)

        download_task = None
        if downloads:
            self._downloads_running = True
            download_task = asyncio.create_task(asyncio.to_thread(self.run_downloads))

        if nodes:
            await self.ensure_nodes()

        if download_task is not None:
            jobs = await download_task
            if self.repository is not None:
                for job in jobs:
                    await self.repository.record_download(job)

        use_sage = False
        if build_handle is not None:
            use_sage = await build_handle.join(self.config.sage_join_timeout)

        if not launch:
            return []
        return await self.launch_workers(use_sage)

    def ensure_directories(self, inside_app: bool = False) -> None:
        """Create the run directories; those under the application checkout only once it exists."""
        home = self.config.comfy_home
        for directory in self.config.directories():
            if Path(directory).is_relative_to(home) == inside_app:
                Path(directory).mkdir(parents=True, exist_ok=True)

    async def start_extension_build(self) -> BuildHandle:
        cc = await detect_compute_capability(self.config.python_bin, self.runner)
        profile = select_arch_profile(cc)
        revisions = self.config.sage_revisions or profile.revisions
        logger.info(
            f"GPU compute capability {cc}: TORCH_CUDA_ARCH_LIST={profile.torch_cuda_arch_list}, "
            f"revisions {revisions}"
        )
        return self.builder.start(revisions, profile)

    def run_downloads(self) -> list[DownloadJob]:
        """
        Enqueue manifest and CivitAI downloads and block until the queue drains.

        Runs in a worker thread; everything here is synchronous.
        """
        try:
            return self._run_downloads()
        finally:
            self._downloads_running = False

    def _run_downloads(self) -> list[DownloadJob]:
        config = self.config
        if not config.model_manifest_url and not (config.lora_ids or config.checkpoint_ids):
            logger.info("No downloads configured")
            return []
        if not self.daemon.ensure_running(self.backend):
            logger.error("Transfer backend unavailable; skipping downloads")
            return []

        handles: list[DownloadJob] = []
        if config.model_manifest_url:
            try:
                manifest = Manifest.load(config.model_manifest_url)
            except ManifestError as e:
                logger.error(str(e))
            else:
                sections = manifest.enabled_sections(config.environ)
                logger.info(f"Enabled download sections: {', '.join(sections) or 'none'}")
                result = self.queue.enqueue_manifest(manifest, sections, config.environ)
                handles.extend(result.handles)
                logger.info(
                    f"Queued {len(result.handles)}, skipped {len(result.skipped)}, "
                    f"failed {len(result.failed)}"
                )

        civitai_dirs = []
        client = CivitaiClient(token=config.civitai_token)
        for ids, subdir in (
            (config.lora_ids, "loras"),
            (config.checkpoint_ids, "checkpoints"),
        ):
            version_ids = tokenize_ids(ids)
            if not version_ids:
                continue
            dest_dir = config.comfy_home / "models" / subdir
            handles.extend(enqueue_versions(self.queue, client, version_ids, dest_dir))
            civitai_dirs.append(dest_dir)

        if handles:
            self.queue.run_progress_loop(
                interval=config.progress_interval,
                bar_width=config.progress_bar_width,
                log_path=config.logs_dir / "aria2_progress.log",
                root=config.comfy_home,
            )
            if not self.queue.wait_all(handles, poll_interval=config.progress_interval):
                failed = [j for j in handles if j.status != DownloadStatus.COMPLETE]
                logger.warning(f"{len(failed)} download(s) did not complete")

        for dest_dir in civitai_dirs:
            postprocess_zip_dir(dest_dir)
        return handles

    async def ensure_nodes(self) -> SyncReport | None:
        """
        Install plugins from a matching bundle, else sync them and optionally publish.

        Returns:
            The sync report, or None when a bundle was installed
        """
        config = self.config
        cache = self.bundle_cache
        signature = None

        if cache is not None and config.bundle_tag:
            signature = config.pins or await compute_signature(config.python_bin, self.runner)
            logger.info(f"Environment signature: {signature}")
            if await cache.resolve(config.bundle_tag, signature):
                return None

        list_file = config.node_list_file
        if list_file is None and cache is not None:
            list_file = await cache.fetch_node_list()

        targets = build_targets(resolve_node_list(list_file, config.node_list_inline))
        if not targets:
            logger.error("Repository list is empty")
            return SyncReport()

        report = await self.sync.sync_and_build(targets, config.max_node_jobs)
        if self.repository is not None:
            for result in report.results:
                await self.repository.record_repo_result(result)

        if cache is not None and config.bundle_tag and config.push_bundle:
            if report.failures:
                logger.warning("Not publishing a bundle: repository sync had failures")
            else:
                try:
                    await cache.publish(config.bundle_tag, signature)
                except BundleError as e:
                    logger.error(f"Bundle publish failed: {e}")
        return report

    async def launch_workers(self, use_sage: bool) -> list[WorkerInstance]:
        gpu_count = await detect_gpu_count(self.runner)
        specs = plan_instances(self.config.workspace, self.config.logs_dir, gpu_count)
        validate_isolation(specs)
        logger.info(f"Detected {gpu_count} GPU(s); launching {len(specs)} instance(s)")

        instances = []
        for spec in specs:
            instances.append(await self.supervisor.launch(spec, use_sage=use_sage))

        summary = ", ".join(f"{i.spec.name}: {i.health.value}" for i in instances)
        await self.supervisor.notify(
            f"✅ ComfyUI provisioning finished on {self.supervisor.hostname}; "
            f"all {len(instances)} instance(s) launched ({summary})"
        )
        return instances

    async def supervise(self) -> None:
        await self.supervisor.wait()

    async def stop(self) -> None:
        """Cancel pending downloads and stop monitoring; worker sessions keep running."""
        if self._downloads_running:
            await asyncio.to_thread(self.queue.cancel_all)
        await self.supervisor.stop()

    async def _record_build(self, attempt: BuildAttempt) -> None:
        if self.repository is not None:
            await self.repository.record_build_attempt(attempt)
