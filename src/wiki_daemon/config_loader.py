"""
Discovery and merging of the daemon's YAML config files.

A config file has up to three sections (``wiki``, ``daemon``, ``logging``).
Files are looked up by convention, merged section by section with the
most specific file winning, and every string value may reference the
environment as ``${VAR}`` or ``${VAR:-default}``.

Usage:
    from wiki_daemon.config_loader import load_hierarchical_config

    sources = load_hierarchical_config()
    unified = build_config(sources.data)
"""

import logging
import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

logger = logging.getLogger(__name__)

CONFIG_ENV_VAR = "WIKI_DAEMON_CONFIG"
KNOWN_SECTIONS = ("wiki", "daemon", "logging")

# (section, key) pairs holding filesystem paths; ``~`` is expanded in them.
PATH_KEYS = (
    ("daemon", "watch_folder"),
    ("daemon", "state_file"),
    ("logging", "file"),
)

_ENV_REF = re.compile(r"\$\{(?P<name>[^}:]+?)(?::-(?P<default>.*?))?\}")


@dataclass
class ConfigSources:
    """Merged file contents plus the files they came from.

    ``paths`` is ordered from highest to lowest precedence.
    """

    data: dict[str, Any] = field(default_factory=dict)
    paths: list[Path] = field(default_factory=list)

    @property
    def primary(self) -> Path | None:
        return self.paths[0] if self.paths else None


def interpolate_env_vars(value: str) -> str:
    """Substitute environment references in *value*.

    ``${VAR}`` becomes the value of VAR (empty when unset);
    ``${VAR:-default}`` falls back to *default* when VAR is unset or empty.
    An unterminated ``${`` is kept verbatim.
    """

    def _substitute(match: re.Match) -> str:
        current = os.environ.get(match.group("name"))
        if current:
            return current
        return match.group("default") or ""

    return _ENV_REF.sub(_substitute, value)


def _interpolate_recursive(obj: Any) -> Any:
    if isinstance(obj, str):
        return interpolate_env_vars(obj)
    if isinstance(obj, dict):
        return {key: _interpolate_recursive(val) for key, val in obj.items()}
    if isinstance(obj, list):
        return [_interpolate_recursive(item) for item in obj]
    return obj


def _expand_paths(data: dict[str, Any]) -> None:
    for section, key in PATH_KEYS:
        values = data.get(section)
        if isinstance(values, dict) and isinstance(values.get(key), str):
            values[key] = os.path.expanduser(values[key])


def discover_config_files() -> list[Path]:
    """Return existing config files, highest precedence first.

    Search order:
        1. the file named by ``WIKI_DAEMON_CONFIG``
        2. ``./.wiki_daemon/config.yml`` then ``./.wiki_daemon/config.yaml``
        3. ``~/.config/wiki_daemon/config.yml``
    """
    candidates: list[Path] = []

    explicit = os.environ.get(CONFIG_ENV_VAR)
    if explicit:
        candidates.append(Path(explicit).expanduser().resolve())

    project_dir = Path.cwd() / ".wiki_daemon"
    candidates += [project_dir / "config.yml", project_dir / "config.yaml"]
    candidates.append(Path.home() / ".config" / "wiki_daemon" / "config.yml")

    return [path for path in candidates if path.is_file()]


def _read_file(path: Path) -> dict[str, Any]:
    with open(path, encoding="utf-8") as fh:
        data = yaml.safe_load(fh)

    if data is None:
        return {}
    if not isinstance(data, dict):
        logger.warning(
            "Ignoring %s: expected a mapping of sections, got %s",
            path,
            type(data).__name__,
        )
        return {}

    sections: dict[str, Any] = {}
    for name, body in data.items():
        if name not in KNOWN_SECTIONS:
            logger.warning("Unknown section '%s' in %s", name, path)
            continue
        # An empty section ("wiki:") parses as None.
        sections[name] = body if body is not None else {}
    return sections


def load_hierarchical_config() -> ConfigSources:
    """Read and merge every discovered config file.

    Lower-precedence files are applied first; a section defined in a more
    specific file replaces the whole section from a broader one.  Env
    references are resolved after merging.

    Raises:
        yaml.YAMLError: If a file is not valid YAML.
        OSError: If a discovered file cannot be read.
    """
    paths = discover_config_files()
    if not paths:
        logger.debug("No config file found, using environment and defaults")
        return ConfigSources()

    merged: dict[str, Any] = {}
    for path in reversed(paths):
        logger.debug("Reading config file %s", path)
        try:
            merged.update(_read_file(path))
        except (OSError, yaml.YAMLError):
            logger.error("Could not load config file %s", path)
            raise

    data = _interpolate_recursive(merged)
    _expand_paths(data)
    return ConfigSources(data=data, paths=paths)
