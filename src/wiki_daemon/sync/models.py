"""Data contracts for the folder <-> space sync engine.

- ``TrackedFile``: last synced state of one local file.
- ``RemoteDocument``: a document as listed by the wiki API.
- ``TextFile`` / ``BinaryFile``: upload category resolved by ``classify()``.
- ``SyncAction``, ``SyncResult``, ``SyncReport``: operation outcomes.

Pydantic models are frozen (immutable).
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path, PurePosixPath
from typing import Any

from pydantic import BaseModel, Field, field_validator

# Files uploaded through the document endpoint; everything else goes through
# the binary upload endpoint.
TEXT_EXTENSIONS: frozenset[str] = frozenset(
    {
        ".md",
        ".markdown",
        ".txt",
        ".json",
        ".xml",
        ".html",
        ".css",
        ".js",
        ".ts",
        ".py",
        ".java",
        ".c",
        ".cpp",
    }
)


def _as_utc(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def sanitize_filename(name: str) -> str:
    """Turn a document title into a safe lowercase file stem.

    >>> sanitize_filename("Release Notes (v2)")
    'release-notes-v2'
    """
    slug = re.sub(r"[^a-z0-9]", "-", name, flags=re.IGNORECASE)
    slug = re.sub(r"-+", "-", slug).strip("-")
    return slug.lower()


# ---------------------------------------------------------------------------
# File category
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class TextFile:
    """A file uploaded as UTF-8 document content."""

    path: Path

    @property
    def title(self) -> str:
        return self.path.stem


@dataclass(frozen=True)
class BinaryFile:
    """A file uploaded as raw bytes through the upload endpoint."""

    path: Path

    @property
    def file_name(self) -> str:
        return self.path.name


FileKind = TextFile | BinaryFile


def classify(path: Path) -> FileKind:
    """Resolve the upload category of *path* from its extension."""
    if path.suffix.lower() in TEXT_EXTENSIONS:
        return TextFile(path)
    return BinaryFile(path)


# ---------------------------------------------------------------------------
# State and remote descriptors
# ---------------------------------------------------------------------------


class TrackedFile(BaseModel):
    """Last synced state of one local file.

    Serialised into the state file keyed by ``local_path`` with the
    remaining fields under their camelCase aliases.

    Attributes:
        local_path: Absolute, normalised local path (unique key).
        remote_path: Watch-root-relative POSIX path of the document.
        content_hash: SHA-256 of the bytes last synced.
        last_sync: UTC time of the last successful transfer.
        remote_updated_at: Remote ``updatedAt`` seen at the last download.
    """

    local_path: str
    remote_path: str = Field(alias="remotePath")
    content_hash: str = Field(alias="hash")
    last_sync: datetime = Field(alias="lastSync")
    remote_updated_at: datetime | None = Field(
        default=None, alias="remoteUpdatedAt"
    )

    model_config = {"frozen": True, "populate_by_name": True}

    @field_validator("last_sync", "remote_updated_at")
    @classmethod
    def _normalise_tz(cls, value: datetime | None) -> datetime | None:
        return _as_utc(value)

    def to_record(self) -> dict[str, Any]:
        """Return the JSON-serialisable value stored under ``local_path``."""
        return self.model_dump(
            mode="json", by_alias=True, exclude={"local_path"}
        )


class RemoteDocument(BaseModel):
    """A document as listed in a space.

    Attributes:
        remote_path: Path of the document inside the space.
        title: Display title.
        updated_at: Last modification time reported by the server.
        is_binary: True when the document is an uploaded binary file.
    """

    remote_path: str
    title: str = ""
    updated_at: datetime | None = None
    is_binary: bool = False

    model_config = {"frozen": True}

    @field_validator("updated_at")
    @classmethod
    def _normalise_tz(cls, value: datetime | None) -> datetime | None:
        return _as_utc(value)

    @classmethod
    def from_api(cls, payload: dict[str, Any]) -> RemoteDocument:
        """Build a descriptor from one entry of ``GET /spaces/{id}/documents``.

        The path is taken from ``filePath``, then ``path``, and finally
        derived from the sanitised title with a ``.md`` suffix.
        """
        title = str(payload.get("title") or "")
        remote_path = (
            payload.get("filePath")
            or payload.get("path")
            or f"{sanitize_filename(title)}.md"
        )
        remote_path = str(remote_path).lstrip("/")
        is_binary = payload.get("isBinary")
        if is_binary is None:
            is_binary = isinstance(
                classify(Path(PurePosixPath(remote_path).name)), BinaryFile
            )
        return cls(
            remote_path=remote_path,
            title=title or PurePosixPath(remote_path).stem,
            updated_at=payload.get("updatedAt") or None,
            is_binary=bool(is_binary),
        )


# ---------------------------------------------------------------------------
# Outcomes
# ---------------------------------------------------------------------------


class SyncAction(str, Enum):
    """Operations the engine performs on one path."""

    SKIP = "skip"
    UPLOAD = "upload"
    DOWNLOAD = "download"
    DELETE_LOCAL = "delete_local"
    DELETE_REMOTE = "delete_remote"


class SyncResult(BaseModel):
    """Result of one engine operation.

    Attributes:
        local_path: Local file path (may be empty when unresolvable).
        remote_path: Document path in the space.
        action: Operation that was performed (or skipped).
        success: Whether the operation succeeded.
        error: Failure reason, or a note explaining a skip.
    """

    local_path: str
    remote_path: str
    action: SyncAction
    success: bool = True
    error: str | None = None

    model_config = {"frozen": True}


class SyncReport(BaseModel):
    """Aggregate outcome of one reconciliation pass.

    Attributes:
        space_id: Space that was reconciled.
        results: Individual results in execution order.
        started_at: ISO 8601 timestamp when the pass started.
        completed_at: ISO 8601 timestamp when the pass completed.
    """

    space_id: int
    results: list[SyncResult] = []
    started_at: str
    completed_at: str | None = None

    model_config = {"frozen": True}

    def _by_action(self, action: SyncAction) -> list[SyncResult]:
        return [
            r for r in self.results if r.action == action and r.success
        ]

    @property
    def downloaded(self) -> list[SyncResult]:
        return self._by_action(SyncAction.DOWNLOAD)

    @property
    def uploaded(self) -> list[SyncResult]:
        return self._by_action(SyncAction.UPLOAD)

    @property
    def deleted_local(self) -> list[SyncResult]:
        return self._by_action(SyncAction.DELETE_LOCAL)

    @property
    def deleted_remote(self) -> list[SyncResult]:
        return self._by_action(SyncAction.DELETE_REMOTE)

    @property
    def skipped(self) -> list[SyncResult]:
        return self._by_action(SyncAction.SKIP)

    @property
    def errors(self) -> list[SyncResult]:
        """Results where success is False."""
        return [r for r in self.results if not r.success]

    @property
    def changed(self) -> bool:
        """True when the pass modified the local tree or the space."""
        return any(
            r.success and r.action != SyncAction.SKIP for r in self.results
        )

    def summary(self) -> str:
        """One-line summary with counts by action."""
        return (
            f"space {self.space_id}: "
            f"{len(self.downloaded)} downloaded, "
            f"{len(self.uploaded)} uploaded, "
            f"{len(self.deleted_local)} deleted locally, "
            f"{len(self.deleted_remote)} deleted remotely, "
            f"{len(self.skipped)} unchanged, "
            f"{len(self.errors)} errors"
        )
