"""Pydantic models for the daemon's YAML config file.

The file has three optional sections::

    wiki:
      url: https://wiki.example.com
      username: ${WIKI_USERNAME}
      password: ${WIKI_PASSWORD}
    daemon:
      watch_folder: ~/wiki
      space_id: 3
      conflict_strategy: backup
    logging:
      level: info
      file: ~/.local/state/wiki_daemon/daemon.log

File values are only fallbacks: ``to_fallbacks`` flattens the ``wiki`` and
``daemon`` sections for ``config.load_config()``, where CLI arguments and
environment variables take precedence.  The ``logging`` section is read
directly by the service entry point.
"""

from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, Field, ValidationError, field_validator

from .errors import ConfigurationError

LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


# ---------------------------------------------------------------------------
# Sections
# ---------------------------------------------------------------------------


class WikiConfig(BaseModel):
    """Where the wiki lives and how to authenticate.

    Every field may be left out; the environment can supply it instead.
    """

    url: str | None = None
    username: str | None = None
    password: str | None = None
    insecure: bool = False
    max_parallel_requests: int = Field(default=4, ge=1, le=100)

    model_config = {"frozen": True}

    @field_validator("url")
    @classmethod
    def _strip_trailing_slash(cls, value: str | None) -> str | None:
        if value is None:
            return None
        value = value.strip().rstrip("/")
        return value or None


class DaemonConfig(BaseModel):
    """What to sync and how often.

    Attributes:
        watch_folder: Local directory mirrored into the space.
        space_id: Identifier of the target space.
        sync_interval_ms: Period of the reconciliation pass.
        state_file: Location of the persisted sync state.
        debounce_ms: Window in which repeated watcher events collapse.
        ignore_ttl_ms: Lifetime of an unconsumed ignore entry.
        conflict_strategy: What to do with local edits that a newer remote
            version would overwrite.
    """

    watch_folder: str | None = None
    space_id: int | None = Field(default=None, ge=1)
    sync_interval_ms: int | None = Field(default=None, ge=100)
    state_file: str | None = None
    debounce_ms: int | None = Field(default=None, ge=0)
    ignore_ttl_ms: int | None = Field(default=None, ge=100)
    conflict_strategy: Literal["backup", "remote-wins"] | None = None
    debug: bool = False

    model_config = {"frozen": True}


class LoggingConfig(BaseModel):
    """Log level, optional log file and record format."""

    level: str = "INFO"
    file: str | None = None
    format: Literal["text", "json"] = "text"

    model_config = {"frozen": True}

    @field_validator("level")
    @classmethod
    def _known_level(cls, value: str) -> str:
        name = value.strip().upper()
        if name == "WARN":
            name = "WARNING"
        if name not in LOG_LEVELS:
            raise ValueError(f"must be one of {', '.join(LOG_LEVELS)}")
        return name


class UnifiedConfig(BaseModel):
    """The whole file; ``UnifiedConfig()`` is the empty file."""

    wiki: WikiConfig = Field(default_factory=WikiConfig)
    daemon: DaemonConfig = Field(default_factory=DaemonConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    model_config = {"frozen": True}


# ---------------------------------------------------------------------------
# Construction and flattening
# ---------------------------------------------------------------------------


def _describe_errors(exc: ValidationError) -> str:
    problems = []
    for error in exc.errors():
        location = ".".join(str(part) for part in error["loc"])
        problems.append(f"{location}: {error['msg']}")
    return "; ".join(problems)


def build_config(raw_data: dict) -> UnifiedConfig:
    """Validate the merged file contents.

    Raises:
        ConfigurationError: If a value has the wrong type or is out of
            range; the message names every offending ``section.key``.
    """
    if not raw_data:
        return UnifiedConfig()
    try:
        return UnifiedConfig.model_validate(raw_data)
    except ValidationError as exc:
        raise ConfigurationError(
            f"Invalid config file: {_describe_errors(exc)}"
        ) from exc


def to_fallbacks(unified: UnifiedConfig) -> dict[str, Any]:
    """Flatten the wiki and daemon sections for ``load_config``.

    Unset values are left out so built-in defaults still apply.
    """
    flat: dict[str, Any] = {}
    for section in (unified.wiki, unified.daemon):
        flat.update(section.model_dump(exclude_none=True))
    return flat
