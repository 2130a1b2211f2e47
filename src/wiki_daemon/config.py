"""Daemon configuration.

Reads wiki connection and sync settings from CLI args, environment
variables, .env files, and YAML config file fallbacks.

Precedence (highest to lowest):
    CLI args > Environment variables > .env file > YAML config > Built-in defaults

Environment variables:
    WIKI_URL: Wiki base URL (required)
    WIKI_USERNAME: Wiki username (required)
    WIKI_PASSWORD: Wiki password (required)
    WATCH_FOLDER: Local folder to mirror (default: ./watch)
    SHARED_SPACE_ID: Target space identifier (default: 2)
    SYNC_INTERVAL: Reconciliation interval in milliseconds (default: 5000)
    WIKI_STATE_FILE: Sync state file (default: .wiki_daemon/state.json)
    WIKI_INSECURE: Skip SSL verification (optional, default: false)
    WIKI_DEBUG: Enable debug logging (optional, default: false)
    WIKI_MAX_PARALLEL_REQUESTS: Max parallel API requests (default: 4)
    WIKI_DEBOUNCE_MS: Watcher debounce window (default: 500)
    WIKI_IGNORE_TTL_MS: Lifetime of an unconsumed ignore entry (default: 2000)
    WIKI_CONFLICT_STRATEGY: "backup" or "remote-wins" (default: backup)
"""

import logging
import os
from dataclasses import dataclass
from urllib.parse import urlparse

from .errors import ConfigurationError

logger = logging.getLogger(__name__)

CONFLICT_STRATEGIES = ("backup", "remote-wins")


@dataclass
class Config:
    wiki_url: str
    username: str
    password: str
    watch_folder: str = "./watch"
    space_id: int = 2
    sync_interval_ms: int = 5000
    state_file: str = ".wiki_daemon/state.json"
    insecure: bool = False
    debug: bool = False
    max_parallel_requests: int = 4
    debounce_ms: int = 500
    ignore_ttl_ms: int = 2000
    conflict_strategy: str = "backup"


def validate_config(config: Config) -> None:
    """Validate configuration values and raise ConfigurationError if invalid.

    Args:
        config: Config instance to validate.

    Raises:
        ConfigurationError: If URL format is invalid, credentials are empty,
            or a sync setting is out of range.
    """
    config.wiki_url = config.wiki_url.strip()

    if not config.wiki_url.startswith(("http://", "https://")):
        raise ConfigurationError(
            f"Invalid wiki URL '{config.wiki_url}': must start with http:// or https://"
        )

    parsed = urlparse(config.wiki_url)
    if not parsed.hostname:
        raise ConfigurationError(
            f"Invalid wiki URL '{config.wiki_url}': URL must include a hostname"
        )

    config.wiki_url = config.wiki_url.removesuffix("/")

    if not config.username.strip():
        raise ConfigurationError(
            "Wiki username cannot be empty. Set WIKI_USERNAME environment variable."
        )

    if not config.password.strip():
        raise ConfigurationError(
            "Wiki password cannot be empty. Set WIKI_PASSWORD environment variable."
        )

    if not config.watch_folder.strip():
        raise ConfigurationError(
            "Watch folder cannot be empty. Set WATCH_FOLDER environment variable."
        )

    if config.space_id < 1:
        raise ConfigurationError(
            f"Invalid space id {config.space_id}: must be a positive integer"
        )

    if config.sync_interval_ms < 100:
        raise ConfigurationError(
            f"Invalid sync interval {config.sync_interval_ms}ms: must be at least 100ms"
        )

    if config.conflict_strategy not in CONFLICT_STRATEGIES:
        raise ConfigurationError(
            f"Invalid conflict strategy '{config.conflict_strategy}': "
            f"expected one of {', '.join(CONFLICT_STRATEGIES)}"
        )

    if config.insecure:
        logger.warning(
            "WARNING: SSL verification disabled (insecure=True). Use only for development."
        )


def _get_bool_env(key: str) -> bool | None:
    """Return True/False from env var, or None if unset."""
    val = os.getenv(key)
    if val is None:
        return None
    return val.lower() in ("true", "1", "yes", "on")


def _resolve_int(
    cli_value: int | None,
    env_key: str,
    fallbacks: dict,
    fallback_key: str,
    default: int,
    low: int,
    high: int,
) -> int:
    """Resolve an integer setting: CLI > env > YAML > default, range-checked."""
    if cli_value is not None:
        value = cli_value
        source = "command line"
    elif (raw := os.getenv(env_key)) is not None:
        try:
            value = int(raw)
        except ValueError:
            raise ConfigurationError(
                f"Invalid {env_key} '{raw}': must be a number between {low} and {high}"
            ) from None
        source = env_key
    elif fallback_key in fallbacks:
        value = int(fallbacks[fallback_key])
        source = f"config file '{fallback_key}'"
    else:
        return default

    if not (low <= value <= high):
        raise ConfigurationError(
            f"Invalid {source} value {value}: must be a number between {low} and {high}"
        )
    return value


def _resolve_bool(cli_value: bool, env_key: str, fallbacks: dict, key: str) -> bool:
    if cli_value:
        return True
    env_value = _get_bool_env(env_key)
    if env_value is not None:
        return env_value
    return bool(fallbacks.get(key, False))


def load_config(
    overrides: dict | None = None,
    yaml_fallbacks: dict | None = None,
) -> Config:
    """Load configuration with unified precedence.

    Resolution order for each field (highest to lowest):
        CLI override > env var / .env > yaml_fallbacks > built-in default

    The caller is responsible for calling ``load_dotenv()`` before this
    function so that .env values are available via ``os.getenv()``.

    Args:
        overrides: Values from the command line.  Recognised keys: url,
            username, password, watch_folder, space_id, sync_interval_ms,
            state_file, insecure, debug.
        yaml_fallbacks: Flat dict of values from the YAML config file
            (see ``config_schema.to_fallbacks``).

    Returns:
        Validated Config instance.

    Raises:
        ConfigurationError: If required config (URL, username, password) is
            missing after checking all sources, or a value is invalid.
    """
    cli = overrides or {}
    fb = yaml_fallbacks or {}

    # --- Required strings: CLI > env > YAML > error ---

    wiki_url = cli.get("url") or os.getenv("WIKI_URL") or fb.get("url")
    if not wiki_url:
        raise ConfigurationError(
            "Missing required configuration: wiki URL. Set WIKI_URL environment "
            "variable, pass --url, or add 'wiki.url' to config.yml."
        )

    username = (
        cli.get("username") or os.getenv("WIKI_USERNAME") or fb.get("username")
    )
    if not username:
        raise ConfigurationError(
            "Missing required configuration: username. Set WIKI_USERNAME "
            "environment variable, pass --username, or add 'wiki.username' to config.yml."
        )

    password = (
        cli.get("password") or os.getenv("WIKI_PASSWORD") or fb.get("password")
    )
    if not password:
        raise ConfigurationError(
            "Missing required configuration: password. Set WIKI_PASSWORD "
            "environment variable, pass --password, or add 'wiki.password' to config.yml."
        )

    # --- Optional strings: CLI > env > YAML > default ---

    watch_folder = (
        cli.get("watch_folder")
        or os.getenv("WATCH_FOLDER")
        or fb.get("watch_folder")
        or "./watch"
    )
    state_file = (
        cli.get("state_file")
        or os.getenv("WIKI_STATE_FILE")
        or fb.get("state_file")
        or ".wiki_daemon/state.json"
    )
    conflict_strategy = (
        os.getenv("WIKI_CONFLICT_STRATEGY")
        or fb.get("conflict_strategy")
        or "backup"
    )

    config = Config(
        wiki_url=wiki_url.strip(),
        username=username.strip(),
        password=password.strip(),
        watch_folder=watch_folder,
        space_id=_resolve_int(
            cli.get("space_id"), "SHARED_SPACE_ID", fb, "space_id", 2, 1, 10**9
        ),
        sync_interval_ms=_resolve_int(
            cli.get("sync_interval_ms"),
            "SYNC_INTERVAL",
            fb,
            "sync_interval_ms",
            5000,
            100,
            86_400_000,
        ),
        state_file=state_file,
        insecure=_resolve_bool(
            cli.get("insecure", False), "WIKI_INSECURE", fb, "insecure"
        ),
        debug=_resolve_bool(cli.get("debug", False), "WIKI_DEBUG", fb, "debug"),
        max_parallel_requests=_resolve_int(
            None,
            "WIKI_MAX_PARALLEL_REQUESTS",
            fb,
            "max_parallel_requests",
            4,
            1,
            100,
        ),
        debounce_ms=_resolve_int(
            None, "WIKI_DEBOUNCE_MS", fb, "debounce_ms", 500, 0, 60_000
        ),
        ignore_ttl_ms=_resolve_int(
            None, "WIKI_IGNORE_TTL_MS", fb, "ignore_ttl_ms", 2000, 100, 600_000
        ),
        conflict_strategy=conflict_strategy.strip().lower(),
    )

    validate_config(config)

    return config
