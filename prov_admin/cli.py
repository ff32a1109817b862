"""
Admin CLI for running individual provisioning steps and reading the ledger.

Every command reads its settings from the environment (see
prov_common.config) and records what it did in the run ledger.
"""

import asyncio
import json
import sys
from pathlib import Path

import click

from prov_common.commands import CommandRunner
from prov_common.config import ProvisionConfig
from prov_common.errors import BundleError, ManifestError
from prov_common.manifest import Manifest
from prov_downloads.backend import Aria2Daemon, Aria2RpcBackend, TransferBackend
from prov_downloads.civitai import CivitaiClient, enqueue_versions, postprocess_zip_dir, tokenize_ids
from prov_downloads.fetcher import ArtifactFetcher
from prov_downloads.queue import DownloadQueueManager
from prov_nodes.bundle import BundleCache, HuggingFaceBundleStore, compute_signature
from prov_nodes.sync import RepoSyncManager
from prov_nodes.targets import build_targets, resolve_node_list
from prov_controller.extension_builder import (
    NativeExtensionBuilder,
    detect_compute_capability,
    select_arch_profile,
)
from prov_persistence.sqlite_repository import SQLiteProvisionRepository


def get_config() -> ProvisionConfig:
    """Build the configuration from the process environment."""
    return ProvisionConfig.from_env()


def get_repository(config: ProvisionConfig) -> SQLiteProvisionRepository:
    """Get the ledger repository instance."""
    db_path = config.db_path or config.logs_dir / "provision.db"
    db_path.parent.mkdir(parents=True, exist_ok=True)
    return SQLiteProvisionRepository(str(db_path))


def make_backend(config: ProvisionConfig) -> TransferBackend:
    return Aria2RpcBackend(config.aria2_host, config.aria2_port, config.aria2_secret)


def make_queue(config: ProvisionConfig, backend: TransferBackend) -> DownloadQueueManager:
    fetcher = ArtifactFetcher(
        backend, tokens=config.host_tokens(), min_plausible_bytes=config.min_plausible_bytes
    )
    return DownloadQueueManager(
        backend,
        fetcher,
        default_dir=config.default_download_dir or config.comfy_home / "models",
        tuning_for=config.tuning_for,
    )


def make_bundle_cache(config: ProvisionConfig) -> BundleCache:
    if not config.hf_repo_id:
        click.echo("Error: HF_REPO_ID is not set", err=True)
        sys.exit(1)
    store = HuggingFaceBundleStore(
        config.hf_repo_id,
        repo_type=config.hf_repo_type,
        token=config.hf_token,
        revision=config.hf_branch,
        endpoint=config.hf_api_base,
    )
    return BundleCache(
        store,
        custom_dir=config.custom_dir,
        cache_dir=config.cache_dir,
        bundles_dir=config.bundles_dir,
    )


def ensure_backend(config: ProvisionConfig, backend: TransferBackend) -> None:
    daemon = Aria2Daemon(
        port=config.aria2_port,
        secret=config.aria2_secret,
        max_concurrent=config.aria2_max_concurrent,
        log_path=config.logs_dir / "aria2.log",
    )
    if not daemon.ensure_running(backend):
        click.echo("Error: aria2 RPC is not reachable", err=True)
        sys.exit(1)


def run_async(coro):
    """Helper to run async functions in CLI commands."""
    return asyncio.run(coro)


async def record_downloads(config: ProvisionConfig, jobs) -> None:
    repo = get_repository(config)
    await repo.initialize()
    try:
        for job in jobs:
            await repo.record_download(job)
    finally:
        await repo.close()


def drain(config: ProvisionConfig, queue: DownloadQueueManager, jobs) -> bool:
    """Show progress until the queue is idle, then report the outcome."""
    queue.run_progress_loop(
        interval=config.progress_interval,
        bar_width=config.progress_bar_width,
        log_path=config.logs_dir / "aria2_progress.log",
        root=config.comfy_home,
        emit=click.echo,
    )
    ok = queue.wait_all(jobs, poll_interval=config.progress_interval)
    run_async(record_downloads(config, jobs))
    return ok


@click.group()
def cli():
    """Provisioning admin - run individual steps and inspect the run ledger."""
    pass


@cli.group()
def downloads():
    """Model downloads through the aria2 queue."""
    pass


@cli.group()
def nodes():
    """Plugin repositories."""
    pass


@cli.group()
def bundle():
    """Prebuilt plugin bundles."""
    pass


@cli.group()
def build():
    """Native extension builds."""
    pass


@cli.group()
def status():
    """Read the run ledger."""
    pass


# ============================================================================
# Download Commands
# ============================================================================


@downloads.command("manifest")
@click.argument("source", required=False)
@click.option(
    "--section",
    "sections",
    multiple=True,
    help="Section to download (repeatable); default: sections enabled by env flags",
)
@click.option("--no-wait", is_flag=True, help="Enqueue and return immediately")
def downloads_manifest(source: str | None, sections: tuple[str, ...], no_wait: bool):
    """Enqueue the downloads of a manifest (URL or path; default MODEL_MANIFEST_URL)."""
    config = get_config()
    source = source or config.model_manifest_url
    if not source:
        click.echo("Error: No manifest given and MODEL_MANIFEST_URL is not set", err=True)
        sys.exit(1)

    try:
        manifest = Manifest.load(source)
    except ManifestError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)

    enabled = list(sections) or manifest.enabled_sections(config.environ)
    unknown = [s for s in enabled if s not in manifest.sections]
    if unknown:
        click.echo(f"Error: Unknown section(s): {', '.join(unknown)}", err=True)
        sys.exit(1)
    if not enabled:
        click.echo("No sections enabled.")
        return

    backend = make_backend(config)
    ensure_backend(config, backend)
    queue = make_queue(config, backend)
    result = queue.enqueue_manifest(manifest, enabled, config.environ)

    click.echo(
        f"✓ Queued {len(result.handles)}, skipped {len(result.skipped)}, "
        f"failed {len(result.failed)}"
    )
    for url, reason in result.failed:
        click.echo(f"  ✗ {url}: {reason}", err=True)

    if no_wait or not result.handles:
        sys.exit(1 if result.failed else 0)

    ok = drain(config, queue, result.handles)
    sys.exit(0 if ok and not result.failed else 1)


@downloads.command("civitai")
@click.option("--loras", default=None, help="LoRA version IDs (default: LORAS_IDS_TO_DOWNLOAD)")
@click.option(
    "--checkpoints",
    default=None,
    help="Checkpoint version IDs (default: CHECKPOINT_IDS_TO_DOWNLOAD)",
)
def downloads_civitai(loras: str | None, checkpoints: str | None):
    """Download CivitAI model versions into the loras/checkpoints folders."""
    config = get_config()
    plan = [
        (tokenize_ids(loras if loras is not None else config.lora_ids), "loras"),
        (
            tokenize_ids(checkpoints if checkpoints is not None else config.checkpoint_ids),
            "checkpoints",
        ),
    ]
    if not any(ids for ids, _ in plan):
        click.echo("Nothing to enqueue from CivitAI IDs.")
        return

    backend = make_backend(config)
    ensure_backend(config, backend)
    queue = make_queue(config, backend)
    client = CivitaiClient(token=config.civitai_token)

    jobs = []
    dirs = []
    for ids, subdir in plan:
        if not ids:
            continue
        dest_dir = config.comfy_home / "models" / subdir
        click.echo(f"Target ({subdir}): {dest_dir}")
        jobs.extend(enqueue_versions(queue, client, ids, dest_dir))
        dirs.append(dest_dir)

    ok = drain(config, queue, jobs) if jobs else True
    for dest_dir in dirs:
        for path in postprocess_zip_dir(dest_dir):
            click.echo(f"✓ Extracted {path.name}")
    sys.exit(0 if ok else 1)


@downloads.command("progress")
def downloads_progress():
    """Print one snapshot of the transfer queue."""
    config = get_config()
    backend = make_backend(config)
    if not backend.ping():
        click.echo("Error: aria2 RPC is not reachable", err=True)
        sys.exit(1)
    snapshot = make_queue(config, backend).render_progress()
    click.echo(snapshot.render(bar_width=config.progress_bar_width, root=config.comfy_home))


@downloads.command("stop")
def downloads_stop():
    """Remove every active and waiting download and purge results."""
    config = get_config()
    backend = make_backend(config)
    if not backend.ping():
        click.echo("Error: aria2 RPC is not reachable", err=True)
        sys.exit(1)
    removed = make_queue(config, backend).cancel_all()
    click.echo(f"✓ Removed {removed} download(s)")


# ============================================================================
# Node Commands
# ============================================================================


@nodes.command("list")
@click.option("--json", "json_output", is_flag=True, help="Output as JSON")
def nodes_list(json_output: bool):
    """Show the resolved repository list."""
    config = get_config()
    targets = build_targets(resolve_node_list(config.node_list_file, config.node_list_inline))

    if json_output:
        click.echo(
            json.dumps(
                [{"name": t.name, "url": t.url, "recursive": t.recursive} for t in targets],
                indent=2,
            )
        )
        return

    if not targets:
        click.echo("No repositories.")
        return
    for t in targets:
        flag = " (recursive)" if t.recursive else ""
        click.echo(f"{t.name:<40} {t.url}{flag}")


@nodes.command("sync")
@click.option("--jobs", type=int, default=None, help="Parallel syncs (default: MAX_NODE_JOBS)")
def nodes_sync(jobs: int | None):
    """Clone or update every repository and run its install steps."""
    config = get_config()
    targets = build_targets(resolve_node_list(config.node_list_file, config.node_list_inline))
    if not targets:
        click.echo("Error: Repository list is empty", err=True)
        sys.exit(2)

    manager = RepoSyncManager(
        target_dir=config.custom_dir,
        log_dir=config.custom_log_dir,
        python_bin=config.python_bin,
        pip_bin=config.pip_bin,
        git_depth=config.git_depth,
    )

    async def sync():
        report = await manager.sync_and_build(targets, jobs or config.max_node_jobs)
        repo = get_repository(config)
        await repo.initialize()
        try:
            for result in report.results:
                await repo.record_repo_result(result)
        finally:
            await repo.close()
        return report

    report = run_async(sync())
    for result in report.results:
        mark = "✗" if result.hard_failed else "✓"
        click.echo(f"{mark} {result.target.name:<40} {result.state.value}")
    if report.failures:
        click.echo(
            f"Completed with {report.failures} error(s). Check logs: {config.custom_log_dir}",
            err=True,
        )
    sys.exit(report.exit_status)


# ============================================================================
# Bundle Commands
# ============================================================================


def resolve_signature(config: ProvisionConfig) -> str:
    if config.pins:
        return config.pins
    return run_async(compute_signature(config.python_bin))


@bundle.command("signature")
def bundle_signature():
    """Print the environment signature of the target interpreter."""
    click.echo(resolve_signature(get_config()))


@bundle.command("pull")
@click.option("--tag", default=None, help="Bundle tag (default: BUNDLE_TAG)")
def bundle_pull(tag: str | None):
    """Install the newest bundle matching the tag and signature."""
    config = get_config()
    tag = tag or config.bundle_tag
    if not tag:
        click.echo("Error: No tag given and BUNDLE_TAG is not set", err=True)
        sys.exit(1)
    cache = make_bundle_cache(config)
    signature = resolve_signature(config)

    if run_async(cache.resolve(tag, signature)):
        click.echo(f"✓ Installed bundle for {tag} / {signature}")
    else:
        click.echo(f"No usable bundle for {tag} / {signature}", err=True)
        sys.exit(1)


@bundle.command("push")
@click.option("--tag", default=None, help="Bundle tag (default: BUNDLE_TAG)")
def bundle_push(tag: str | None):
    """Build a bundle from the current plugin directory and upload it."""
    config = get_config()
    tag = tag or config.bundle_tag
    if not tag:
        click.echo("Error: No tag given and BUNDLE_TAG is not set", err=True)
        sys.exit(1)
    cache = make_bundle_cache(config)
    signature = resolve_signature(config)

    try:
        artifacts = run_async(cache.publish(tag, signature))
    except BundleError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)
    click.echo(f"✓ Published {artifacts.ref.archive_name}")


# ============================================================================
# Build Commands
# ============================================================================


@build.command("sage")
@click.option("--cc", default=None, help="Compute capability (default: detected with torch)")
@click.option("--revision", "revisions", multiple=True, help="Revision to try (repeatable)")
def build_sage(cc: str | None, revisions: tuple[str, ...]):
    """Build SageAttention with architecture-aware flags and fallback revisions."""
    config = get_config()
    runner = CommandRunner()

    async def run_build():
        repo = get_repository(config)
        await repo.initialize()
        try:
            builder = NativeExtensionBuilder(
                repo_url=config.sage_repo_url,
                work_root=config.cache_dir / "build",
                log_dir=config.logs_dir,
                pip_bin=config.pip_bin,
                runner=runner,
                max_jobs=config.max_jobs,
                ext_parallel=config.ext_parallel,
                nvcc_append_flags=config.nvcc_append_flags,
                on_attempt=repo.record_build_attempt,
            )
            capability = cc or await detect_compute_capability(config.python_bin, runner)
            profile = select_arch_profile(capability)
            order = list(revisions) or config.sage_revisions or profile.revisions
            click.echo(f"Compute capability {capability}; trying {', '.join(order)}")
            ok = await builder.build_with_fallback(order, profile)
            return ok, builder.attempts
        finally:
            await repo.close()

    ok, attempts = run_async(run_build())
    for attempt in attempts:
        mark = "✓" if attempt.succeeded else "✗"
        click.echo(f"{mark} {attempt.revision:<12} {attempt.log_path}")
    sys.exit(0 if ok else 1)


# ============================================================================
# Status Commands
# ============================================================================


def _print_rows(rows: list[dict], columns: list[tuple[str, int]], json_output: bool, empty: str):
    if json_output:
        click.echo(json.dumps(rows, indent=2))
        return
    if not rows:
        click.echo(empty)
        return
    click.echo("\n" + " ".join(f"{name.upper():<{width}}" for name, width in columns))
    click.echo("-" * sum(width + 1 for _, width in columns))
    for row in rows:
        click.echo(" ".join(f"{str(row.get(name, '')):<{width}}" for name, width in columns))
    click.echo()


def _read_ledger(method: str) -> list[dict]:
    config = get_config()

    async def read():
        repo = get_repository(config)
        await repo.initialize()
        try:
            return await getattr(repo, method)()
        finally:
            await repo.close()

    return run_async(read())


@status.command("downloads")
@click.option("--json", "json_output", is_flag=True, help="Output as JSON")
def status_downloads(json_output: bool):
    """List recorded downloads."""
    rows = _read_ledger("list_downloads")
    _print_rows(rows, [("status", 10), ("dest", 70)], json_output, "No downloads recorded.")


@status.command("repos")
@click.option("--json", "json_output", is_flag=True, help="Output as JSON")
def status_repos(json_output: bool):
    """List the latest sync result per repository."""
    rows = _read_ledger("list_repo_results")
    _print_rows(
        rows, [("name", 40), ("state", 28), ("commit", 12)], json_output, "No repositories recorded."
    )


@status.command("builds")
@click.option("--json", "json_output", is_flag=True, help="Output as JSON")
def status_builds(json_output: bool):
    """List extension build attempts."""
    rows = _read_ledger("list_build_attempts")
    _print_rows(
        rows, [("revision", 12), ("outcome", 10), ("log_path", 50)], json_output, "No builds recorded."
    )


@status.command("workers")
@click.option("--json", "json_output", is_flag=True, help="Output as JSON")
def status_workers(json_output: bool):
    """List worker instances and their health."""
    rows = _read_ledger("list_workers")
    _print_rows(
        rows,
        [("port", 6), ("name", 24), ("gpu", 4), ("health", 10)],
        json_output,
        "No workers recorded.",
    )


def main() -> None:
    cli()


if __name__ == "__main__":
    main()
