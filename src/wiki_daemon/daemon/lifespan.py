"""Lifespan management for daemon startup and shutdown."""

import logging
import sys
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any

from dotenv import load_dotenv

from ..config import load_config
from ..config_loader import load_hierarchical_config
from ..config_schema import UnifiedConfig, build_config, to_fallbacks
from ..core.async_utils import init_semaphore, run_sync
from ..core.client import WikiClient
from ..errors import ConfigurationError, CorruptStateError
from ..sync.state import StateStore

logger = logging.getLogger(__name__)


def _stderr_print(msg: str) -> None:
    """Print message to stderr for user feedback."""
    print(msg, file=sys.stderr, flush=True)


def load_file_config() -> tuple[UnifiedConfig | None, Path | None]:
    """Load the YAML config file, if one is present.

    Returns:
        The validated config and the path of the highest-precedence file,
        or ``(None, None)`` when no file exists.
    """
    sources = load_hierarchical_config()
    if not sources.paths:
        return None, None
    return build_config(sources.data), sources.primary


@asynccontextmanager
async def daemon_lifespan(
    config_overrides: dict[str, Any] | None = None,
) -> AsyncIterator[dict[str, Any]]:
    """
    Manage daemon startup and shutdown lifecycle.

    On startup:
    - Load .env file (so values are available for env var lookups and YAML interpolation)
    - Load YAML config file if present (as fallback values)
    - Merge all sources via load_config(): CLI > env vars > .env > YAML > defaults
    - Create WikiClient and check the connection (a failure only warns;
      the periodic pass retries)
    - Load the persisted sync state

    On shutdown:
    - Log shutdown message

    Args:
        config_overrides: Optional dict with config values from CLI

    Yields:
        Dict with 'config', 'client' and 'state' keys

    Raises:
        ConfigurationError: If configuration is missing or invalid.
        CorruptStateError: If the state file exists but cannot be parsed.
    """
    logger.info("Wiki daemon starting...")
    _stderr_print("Wiki Sync Daemon starting...")

    try:
        # 1. Load .env early (before YAML, so ${VAR} interpolation can use .env values)
        load_dotenv()

        # 2. Load YAML config if present, flatten wiki/daemon sections as fallbacks
        yaml_fallbacks: dict[str, Any] | None = None
        sources = []
        unified, config_path = load_file_config()
        if unified is not None:
            yaml_fallbacks = to_fallbacks(unified)
            sources.append(f"config file: {config_path}")

        # 3. Single call to load_config with all sources merged
        overrides = config_overrides or {}
        config = load_config(overrides=overrides, yaml_fallbacks=yaml_fallbacks)

        if overrides:
            sources.append("CLI arguments")
        sources.append("environment variables")
        source_desc = ", ".join(sources)
        logger.info("Configuration loaded from: %s", source_desc)
        _stderr_print(f"  Configuration loaded from: {source_desc}")
        logger.info("Wiki URL: %s", config.wiki_url)
        _stderr_print(f"  Wiki URL: {config.wiki_url}")
        _stderr_print(f"  Watch folder: {Path(config.watch_folder).resolve()}")
        _stderr_print(f"  Space ID: {config.space_id}")
    except ValueError as e:
        logger.error("Configuration error: %s", e)
        _stderr_print(f"ERROR: Configuration error: {e}")
        _stderr_print(
            "  Ensure WIKI_URL, WIKI_USERNAME, WIKI_PASSWORD are set."
        )
        if isinstance(e, ConfigurationError):
            raise
        raise ConfigurationError(str(e)) from e

    client = WikiClient(config)
    init_semaphore(config.max_parallel_requests)
    _stderr_print(f"  Parallel requests: {config.max_parallel_requests}")

    # Check the wiki; an unreachable server is retried by the periodic pass
    logger.info("Validating wiki connection...")
    _stderr_print("  Validating wiki connection...")
    try:
        space_count = await run_sync(client.validate_connection)
        logger.info("Connected to wiki, %d spaces visible", space_count)
        _stderr_print(f"  Connected to wiki ({space_count} spaces visible)")
    except Exception as e:
        logger.warning("Wiki connection check failed: %s", e)
        _stderr_print(f"WARNING: Wiki connection check failed: {e}")
        _stderr_print("  Will keep retrying on each sync interval.")

    state = StateStore(Path(config.state_file))
    try:
        await run_sync(state.load)
    except CorruptStateError as e:
        logger.error("%s", e)
        _stderr_print(f"ERROR: {e}")
        _stderr_print(
            "  Fix or remove the state file to re-sync from scratch."
        )
        raise
    _stderr_print(f"  Tracking {len(state)} files ({state.state_file})")

    yield {"config": config, "client": client, "state": state}

    logger.info("Wiki daemon shutting down")
    _stderr_print("Wiki Sync Daemon shutting down.")
