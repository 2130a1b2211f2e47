"""Wiki sync daemon: watcher, periodic reconciliation, and CLI entry point.

The daemon keeps one local folder and one wiki space in step:

- local edits are picked up by the ``FolderWatcher`` and pushed by the
  ``SyncEngine`` as they happen;
- remote edits are pulled by a reconciliation pass scheduled every
  ``sync_interval_ms`` with APScheduler.

At most one reconciliation pass runs at a time.  SIGINT/SIGTERM stop the
watcher first, then the scheduler, and wait for any pass still running.
"""

import argparse
import asyncio
import json
import logging
import signal
import sys
from collections.abc import Callable
from pathlib import Path

import yaml
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger
from dotenv import load_dotenv

from .. import __version__
from ..config import Config
from ..config_schema import LoggingConfig
from ..core.client import WikiClient
from ..errors import WikiDaemonError
from ..logger import setup_logging
from ..sync.engine import SyncEngine
from ..sync.models import SyncReport
from ..sync.reporter import format_sync_report, report_to_json
from ..sync.state import StateStore
from ..sync.watcher import FolderWatcher
from .lifespan import _stderr_print, daemon_lifespan, load_file_config

logger = logging.getLogger(__name__)

RECONCILE_JOB_ID = "reconcile-space"


class WikiDaemon:
    """Run the watcher and the periodic reconciliation for one space.

    Args:
        config: Loaded configuration.
        client: WikiClient for the configured wiki.
        state: Loaded StateStore.
        observer_factory: Optional watchdog observer factory (tests).
    """

    def __init__(
        self,
        config: Config,
        client: WikiClient,
        state: StateStore,
        observer_factory: Callable | None = None,
    ) -> None:
        self.config = config
        self.client = client
        self.state = state
        self.engine: SyncEngine | None = None
        self.watcher: FolderWatcher | None = None
        self.scheduler: AsyncIOScheduler | None = None
        self.last_report: SyncReport | None = None
        self.running = False
        self._observer_factory = observer_factory
        self._reconcile_lock = asyncio.Lock()

    def initialize(self) -> None:
        """Build the engine and the watcher and wire them together."""
        self.engine = SyncEngine(
            self.client,
            self.state,
            Path(self.config.watch_folder),
            self.config.space_id,
            conflict_strategy=self.config.conflict_strategy,
        )
        watcher_kwargs = {}
        if self._observer_factory is not None:
            watcher_kwargs["observer_factory"] = self._observer_factory
        self.watcher = FolderWatcher(
            self.engine.watch_root,
            self.engine.handle_event,
            debounce=self.config.debounce_ms / 1000,
            ignore_ttl=self.config.ignore_ttl_ms / 1000,
            exclude=[self.config.state_file],
            **watcher_kwargs,
        )
        self.engine.set_folder_watcher(self.watcher)
        logger.info(
            "Daemon initialized: %s <-> space %s",
            self.engine.watch_root,
            self.config.space_id,
        )

    async def start(self) -> None:
        """Reconcile once, then start watching and schedule further passes."""
        if self.running:
            logger.warning("Daemon is already running")
            return
        if self.engine is None or self.watcher is None:
            self.initialize()

        await self.engine.ensure_watch_folder()
        await self.reconcile()
        await self.watcher.start()

        self.scheduler = AsyncIOScheduler(
            job_defaults={
                "coalesce": True,
                "max_instances": 1,
                "misfire_grace_time": 30,
            }
        )
        self.scheduler.add_job(
            self.reconcile,
            trigger=IntervalTrigger(
                seconds=self.config.sync_interval_ms / 1000
            ),
            id=RECONCILE_JOB_ID,
            name=f"Reconcile space {self.config.space_id}",
            replace_existing=True,
        )
        self.scheduler.start()
        self.running = True
        logger.info(
            "Daemon started, reconciling every %d ms",
            self.config.sync_interval_ms,
        )

    async def reconcile(self) -> SyncReport | None:
        """Run one reconciliation pass; passes never overlap."""
        async with self._reconcile_lock:
            try:
                report = await self.engine.sync_from_space()
            except Exception:
                logger.exception("Reconciliation pass failed")
                return None
            self.last_report = report
            return report

    async def stop(self) -> None:
        """Stop watching, stop scheduling, and wait for in-flight work."""
        if not self.running:
            return
        self.running = False
        logger.info("Stopping daemon...")

        if self.watcher is not None:
            await self.watcher.stop()
        if self.scheduler is not None and self.scheduler.running:
            self.scheduler.shutdown(wait=False)

        # Wait for a pass that is still running.
        async with self._reconcile_lock:
            pass
        logger.info("Daemon stopped")

    async def run_until(self, stop_event: asyncio.Event) -> None:
        """Start, block until *stop_event* is set, then stop."""
        await self.start()
        try:
            await stop_event.wait()
        finally:
            await self.stop()


def _install_signal_handlers(stop_event: asyncio.Event) -> None:
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except NotImplementedError:
            # Windows loops lack add_signal_handler; Ctrl+C still raises
            # KeyboardInterrupt.
            logger.debug("Signal handler for %s not supported", sig)


# ---------------------------------------------------------------------------
# Entry points
# ---------------------------------------------------------------------------


async def main(config_overrides: dict | None = None) -> SyncReport | None:
    """Run the daemon (or a single pass with ``once``).

    Args:
        config_overrides: Optional dict of CLI values.  Besides the
            ``load_config`` keys it may carry ``log_file``, ``log_format``,
            ``once`` and ``json``.

    Returns:
        The report of the single pass in ``once`` mode, else ``None``.
    """
    overrides = dict(config_overrides or {})
    log_file = overrides.pop("log_file", None)
    log_format = overrides.pop("log_format", None)
    once = overrides.pop("once", False)
    as_json = overrides.pop("json", False)

    # Logging is configured before the lifespan so startup is logged too;
    # .env and the config file may both carry logging settings.
    load_dotenv()
    unified, _ = load_file_config()
    file_logging = unified.logging if unified is not None else LoggingConfig()
    setup_logging(
        debug=bool(overrides.get("debug")),
        log_file=log_file or file_logging.file,
        log_format=log_format or file_logging.format,
        level=file_logging.level,
    )

    async with daemon_lifespan(config_overrides=overrides) as ctx:
        config = ctx["config"]
        if config.debug:
            logging.getLogger().setLevel(logging.DEBUG)

        daemon = WikiDaemon(config, ctx["client"], ctx["state"])
        daemon.initialize()

        if once:
            await daemon.engine.ensure_watch_folder()
            report = await daemon.reconcile()
            if report is not None:
                if as_json:
                    print(json.dumps(report_to_json(report), indent=2))
                else:
                    print(format_sync_report(report))
            return report

        stop_event = asyncio.Event()
        _install_signal_handlers(stop_event)
        _stderr_print("Daemon running. Press Ctrl+C to stop.")
        await daemon.run_until(stop_event)
    return None


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Wiki Sync Daemon - mirror a local folder with a wiki space",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Run with default config (from .env or config.yml)
  wiki-daemon

  # Mirror ./notes into space 5 every 10 seconds
  wiki-daemon --watch-folder ./notes --space-id 5 --sync-interval 10000

  # Pull once and print what changed
  wiki-daemon --once

  # Use with insecure SSL (development only)
  wiki-daemon --url https://localhost:3000 --insecure
        """,
    )

    parser.add_argument(
        "--url",
        help="Override wiki base URL (takes precedence over WIKI_URL env var and config files)",
    )
    parser.add_argument(
        "--username",
        help="Override wiki username (takes precedence over WIKI_USERNAME env var and config files)",
    )
    parser.add_argument(
        "--password",
        help="Override wiki password (takes precedence over WIKI_PASSWORD env var and config files)"
        " (visible in process list -- prefer WIKI_PASSWORD env var for security)",
    )
    parser.add_argument(
        "--watch-folder",
        help="Local folder to mirror (default: ./watch)",
    )
    parser.add_argument(
        "--space-id",
        type=int,
        help="Space to mirror (default: 2)",
    )
    parser.add_argument(
        "--sync-interval",
        type=int,
        metavar="MS",
        help="Reconciliation interval in milliseconds (default: 5000)",
    )
    parser.add_argument(
        "--state-file",
        help="Sync state file (default: .wiki_daemon/state.json)",
    )
    parser.add_argument(
        "--insecure",
        action="store_true",
        help="Skip SSL certificate verification (use only for development)",
    )
    parser.add_argument(
        "--debug",
        action="store_true",
        help="Enable debug logging",
    )
    parser.add_argument(
        "--log-file",
        help="Also append log records to this file",
    )
    parser.add_argument(
        "--log-format",
        choices=["text", "json"],
        help="Log output format (default: text)",
    )
    parser.add_argument(
        "--once",
        action="store_true",
        help="Run a single reconciliation pass, print the report and exit",
    )
    parser.add_argument(
        "--json",
        action="store_true",
        help="With --once, print the report as JSON",
    )
    parser.add_argument(
        "--version",
        action="version",
        version=f"wiki-daemon version {__version__}",
    )
    return parser


def overrides_from_args(args: argparse.Namespace) -> dict:
    """Build the config overrides dict from parsed CLI arguments."""
    config_overrides = {}
    if args.url:
        config_overrides["url"] = args.url
    if args.username:
        config_overrides["username"] = args.username
    if args.password:
        config_overrides["password"] = args.password
    if args.watch_folder:
        config_overrides["watch_folder"] = args.watch_folder
    if args.space_id is not None:
        config_overrides["space_id"] = args.space_id
    if args.sync_interval is not None:
        config_overrides["sync_interval_ms"] = args.sync_interval
    if args.state_file:
        config_overrides["state_file"] = args.state_file
    if args.insecure:
        config_overrides["insecure"] = True
    if args.debug:
        config_overrides["debug"] = True
    if args.log_file:
        config_overrides["log_file"] = args.log_file
    if args.log_format:
        config_overrides["log_format"] = args.log_format
    if args.once:
        config_overrides["once"] = True
    if args.json:
        config_overrides["json"] = True
    return config_overrides


def run() -> None:
    """Entry point that handles errors gracefully and parses CLI arguments."""
    args = build_parser().parse_args()
    config_overrides = overrides_from_args(args)

    if config_overrides:
        override_keys = [
            k for k in config_overrides.keys() if k != "password"
        ]
        print(
            f"Config overrides from CLI: {', '.join(override_keys)}",
            file=sys.stderr,
        )

    try:
        report = asyncio.run(
            main(
                config_overrides=config_overrides
                if config_overrides
                else None
            )
        )
    except (WikiDaemonError, ValueError, yaml.YAMLError) as e:
        # Details already printed to stderr by the lifespan manager
        logger.debug("Startup failed: %s", e)
        print(f"Wiki Sync Daemon failed to start: {e}", file=sys.stderr)
        sys.exit(1)
    except KeyboardInterrupt:
        print("\nInterrupted.", file=sys.stderr)
        sys.exit(0)

    if report is not None and report.errors:
        sys.exit(1)


if __name__ == "__main__":
    run()
