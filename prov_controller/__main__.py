"""
Entrypoint for a full provisioning run.

Provisions the box (extension build, application checkout, model downloads,
plugin sync or bundle) then launches the worker instances and supervises
them until interrupted.

Usage:
    python -m prov_controller [OPTIONS]
    comfy-prov [OPTIONS]  (after pip install)

Environment Variables:
    See prov_common.config.ProvisionConfig; the most common are
    COMFY_HOME, PY, PIP, MODEL_MANIFEST_URL, HF_REPO_ID, BUNDLE_TAG,
    TELEGRAM_TOKEN, TELEGRAM_CHAT_ID and PROV_DB_PATH.
"""

import argparse
import asyncio
import logging
import os
import signal
import sys
from pathlib import Path
from typing import Any

from prov_common.config import ProvisionConfig, load_env_file
from prov_common.errors import ConfigurationError
from prov_persistence.sqlite_repository import SQLiteProvisionRepository
from prov_server.app import create_status_server

from .bootstrap import Bootstrapper

logger = logging.getLogger(__name__)


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    """
    Parse command-line arguments.

    Returns:
        Parsed arguments
    """
    parser = argparse.ArgumentParser(
        description="ComfyUI provisioning - downloads, plugins, extension build and worker supervision",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Environment Variables:
  COMFY_HOME          Application checkout (default: /workspace/ComfyUI)
  PY, PIP             Interpreter and installer (default: /opt/venv/bin/...)
  MODEL_MANIFEST_URL  Download manifest URL or path
  HF_REPO_ID          Hugging Face repository holding plugin bundles
  BUNDLE_TAG          Bundle tag; enables the bundle cache
  PUSH_BUNDLE         1 to publish a bundle after a fresh sync
  MAX_NODE_JOBS       Parallel repository syncs (default: 8)
  TELEGRAM_TOKEN      Bot token for notifications
  TELEGRAM_CHAT_ID    Chat receiving notifications
  PROV_DB_PATH        Run ledger (default: $COMFY_LOGS/provision.db)

Note: Command-line arguments override environment variables, and real
environment variables override values from --env-file.

Examples:
  # Full run
  comfy-prov

  # Load settings from a file and expose the status API
  comfy-prov --env-file /workspace/.env --status-port 8099

  # Provision only, do not launch workers
  comfy-prov --no-launch
        """,
    )

    parser.add_argument(
        "--env-file",
        type=str,
        default=None,
        help="KEY=VALUE file loaded under the process environment",
    )
    parser.add_argument(
        "--db-path",
        type=str,
        default=None,
        help="Path to the SQLite run ledger (default: PROV_DB_PATH env)",
    )
    parser.add_argument("--skip-downloads", action="store_true", help="Do not download models")
    parser.add_argument("--skip-nodes", action="store_true", help="Do not install plugins")
    parser.add_argument(
        "--skip-build", action="store_true", help="Do not build the attention extension"
    )
    parser.add_argument(
        "--no-launch", action="store_true", help="Provision only; do not start workers"
    )
    parser.add_argument(
        "--status-port",
        type=int,
        default=None,
        help="Serve the status API on this port while supervising",
    )
    parser.add_argument(
        "--log-level",
        type=str,
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Logging level (default: INFO)",
    )

    return parser.parse_args(argv)


def get_environment(args: argparse.Namespace) -> dict[str, str]:
    """
    Merge the env file (if any) under the real environment.

    Raises:
        ConfigurationError: If the env file cannot be read
    """
    env: dict[str, str] = {}
    if args.env_file:
        env.update(load_env_file(args.env_file))
    env.update(os.environ)
    return env


def get_database_path(args: argparse.Namespace, config: ProvisionConfig) -> Path:
    if args.db_path:
        return Path(args.db_path)
    return config.db_path or config.logs_dir / "provision.db"


async def run_bootstrap(args: argparse.Namespace) -> None:
    """
    Provision, launch and supervise until SIGINT/SIGTERM or every worker is dead.

    Args:
        args: Parsed command-line arguments
    """
    config = ProvisionConfig.from_env(get_environment(args))
    db_path = get_database_path(args, config)

    logger.info("Starting provisioning")
    logger.info(f"  Application: {config.comfy_home}")
    logger.info(f"  Interpreter: {config.python_bin}")
    logger.info(f"  Ledger: {db_path}")

    db_path.parent.mkdir(parents=True, exist_ok=True)
    repository = SQLiteProvisionRepository(str(db_path))
    await repository.initialize()

    bootstrapper = Bootstrapper(config, repository=repository)

    shutdown_event = asyncio.Event()
    loop = asyncio.get_running_loop()

    def signal_handler(sig: Any, _frame: Any) -> None:
        """Handle shutdown signals."""
        logger.info(f"Received signal {sig}, initiating graceful shutdown...")
        loop.call_soon_threadsafe(shutdown_event.set)

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    status_server = None
    status_task = None
    if args.status_port:
        status_server = create_status_server(repository, port=args.status_port)
        status_task = asyncio.create_task(status_server.serve())
        logger.info(f"Status API on port {args.status_port}")

    async def _provision_and_supervise() -> None:
        await bootstrapper.run(
            downloads=not args.skip_downloads,
            nodes=not args.skip_nodes,
            build=not args.skip_build,
            launch=not args.no_launch,
        )
        if not args.no_launch:
            await bootstrapper.supervise()

    work = asyncio.create_task(_provision_and_supervise())
    stopper = asyncio.create_task(shutdown_event.wait())
    try:
        await asyncio.wait({work, stopper}, return_when=asyncio.FIRST_COMPLETED)
        if work.done():
            # Re-raise provisioning errors
            work.result()
            logger.info("All workers stopped" if not args.no_launch else "Provisioning finished")
    finally:
        stopper.cancel()
        if not work.done():
            work.cancel()
            try:
                await work
            except asyncio.CancelledError:
                pass
        await bootstrapper.stop()
        if status_server is not None:
            status_server.should_exit = True
            await status_task
        logger.info("Closing database connections...")
        await repository.close()
        logger.info("Provisioning stopped cleanly")


def main(argv: list[str] | None = None) -> int:
    """
    Main entrypoint.

    Returns:
        Exit code (0 for success, 1 for error)
    """
    args = parse_args(argv)

    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    try:
        asyncio.run(run_bootstrap(args))
        return 0
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
        return 130
    except ConfigurationError as e:
        logger.error(f"Configuration error: {e}")
        return 1
    except Exception as e:
        logger.error(f"Fatal error: {e}", exc_info=True)
        return 1


if __name__ == "__main__":
    sys.exit(main())
