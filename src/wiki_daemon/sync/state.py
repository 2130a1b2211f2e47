"""Sync state persistence layer.

The state file is the sole record of what has already been synced.  It is a
single JSON object keyed by absolute local path::

    {
      "/home/me/watch/notes/a.md": {
        "remotePath": "notes/a.md",
        "hash": "2cf24d...",
        "lastSync": "2026-01-01T12:00:00Z",
        "remoteUpdatedAt": null
      }
    }

Key design choices:

* **Atomic writes** -- every mutation rewrites the file through a temp file
  in the same directory followed by ``os.replace()``, so a crash leaves
  either the old or the new state, never a partial one.
* **Persist before return** -- mutating calls save synchronously, giving
  at-least-once semantics: after a crash a transfer may be repeated but
  never forgotten.
* **No silent reset** -- an unreadable state file raises
  ``CorruptStateError``; starting empty would re-sync everything.
* **Thread-safe** -- the engine mutates state from worker threads, so all
  access goes through one re-entrant lock.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
import threading
from datetime import datetime, timezone
from pathlib import Path

from pydantic import ValidationError

from wiki_daemon.errors import CorruptStateError, TransientIOError
from wiki_daemon.sync.detector import ChangeDetector, ChangeStatus
from wiki_daemon.sync.models import TrackedFile

logger = logging.getLogger(__name__)


def normalize_path(path: str | os.PathLike[str]) -> str:
    """Return the absolute, normalised string form used as state key."""
    return os.path.normpath(os.path.abspath(os.fspath(path)))


class StateStore:
    """Durable map of tracked files.

    Args:
        state_file: Path of the JSON state file.
        detector: Hashing helper (a default ``ChangeDetector`` if omitted).
    """

    def __init__(
        self,
        state_file: Path,
        detector: ChangeDetector | None = None,
    ) -> None:
        self.state_file = Path(state_file)
        self.detector = detector or ChangeDetector()
        self._files: dict[str, TrackedFile] = {}
        self._documents: dict[str, str] = {}
        self._lock = threading.RLock()

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def load(self) -> None:
        """Load state from disk, or start empty when no file exists.

        Raises:
            CorruptStateError: If the file exists but is not a JSON object
                of well-formed entries.
        """
        with self._lock:
            if not self.state_file.exists():
                logger.info(
                    "No existing state file at %s, starting fresh",
                    self.state_file,
                )
                self._files = {}
                self._documents = {}
                return

            try:
                with open(self.state_file, encoding="utf-8") as fh:
                    raw = json.load(fh)
            except (OSError, UnicodeDecodeError, json.JSONDecodeError) as exc:
                raise CorruptStateError(
                    f"State file {self.state_file} is unreadable: {exc}"
                ) from exc

            if not isinstance(raw, dict):
                raise CorruptStateError(
                    f"State file {self.state_file} must contain a JSON object, "
                    f"got {type(raw).__name__}"
                )

            files: dict[str, TrackedFile] = {}
            for local_path, record in raw.items():
                if not isinstance(record, dict):
                    raise CorruptStateError(
                        f"State entry for {local_path!r} is not an object"
                    )
                try:
                    entry = TrackedFile.model_validate(
                        {**record, "local_path": normalize_path(local_path)}
                    )
                except ValidationError as exc:
                    raise CorruptStateError(
                        f"State entry for {local_path!r} is malformed: {exc}"
                    ) from exc
                files[entry.local_path] = entry

            self._files = files
            self._documents = {
                entry.remote_path: key for key, entry in files.items()
            }
            logger.info(
                "Loaded state for %d tracked files from %s",
                len(files),
                self.state_file,
            )

    def save(self) -> None:
        """Persist state to disk atomically.

        Writes to a temporary file in the same directory then atomically
        replaces the target.  Creates the parent directory if needed.
        """
        with self._lock:
            self._write(self._files)

    def _commit(self, files: dict[str, TrackedFile]) -> None:
        # Memory only follows a successful write.
        self._write(files)
        self._files = files
        self._documents = {
            entry.remote_path: key for key, entry in files.items()
        }

    def _write(self, files: dict[str, TrackedFile]) -> None:
        with self._lock:
            payload = {key: entry.to_record() for key, entry in files.items()}
            directory = self.state_file.parent
            directory.mkdir(parents=True, exist_ok=True)

            fd, tmp_path = tempfile.mkstemp(
                dir=str(directory),
                prefix=f".{self.state_file.name}.",
                suffix=".tmp",
            )
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as fh:
                    json.dump(payload, fh, indent=2)
                    fh.flush()
                    os.fsync(fh.fileno())
                os.replace(tmp_path, self.state_file)
            except BaseException:
                # Clean up temp file on any failure.
                try:
                    os.unlink(tmp_path)
                except OSError:
                    pass
                raise

    # ------------------------------------------------------------------
    # Mutations (each persists before returning)
    # ------------------------------------------------------------------

    def track_file(
        self,
        local_path: str | os.PathLike[str],
        remote_path: str,
        content_hash: str | None = None,
        *,
        remote_updated_at: datetime | None = None,
    ) -> TrackedFile:
        """Record that *local_path* is in sync with *remote_path*.

        Args:
            local_path: Local file path.
            remote_path: Document path inside the space.
            content_hash: Hash of the synced bytes; computed from disk when
                omitted.
            remote_updated_at: Remote modification time seen at download.

        Returns:
            The stored ``TrackedFile``.

        Raises:
            TransientIOError: If the hash must be computed but the file
                cannot be read.
        """
        key = normalize_path(local_path)
        if content_hash is None:
            content_hash = self.detector.compute_hash(Path(key))
            if content_hash is None:
                raise TransientIOError(f"Cannot hash {key}: file unavailable")

        entry = TrackedFile(
            local_path=key,
            remote_path=remote_path,
            content_hash=content_hash,
            last_sync=datetime.now(timezone.utc),
            remote_updated_at=remote_updated_at,
        )
        with self._lock:
            files = dict(self._files)
            stale_key = self._documents.get(remote_path)
            if stale_key is not None and stale_key != key:
                files.pop(stale_key, None)
            files[key] = entry
            self._commit(files)
        return entry

    def untrack_document(self, remote_path: str) -> None:
        """Forget the entry for *remote_path*.  No-op if not tracked."""
        with self._lock:
            key = self._documents.get(remote_path)
            if key is None:
                return
            files = dict(self._files)
            files.pop(key, None)
            self._commit(files)

    def untrack_file(self, local_path: str | os.PathLike[str]) -> None:
        """Forget the entry for *local_path*.  No-op if not tracked."""
        with self._lock:
            key = normalize_path(local_path)
            if key not in self._files:
                return
            files = dict(self._files)
            del files[key]
            self._commit(files)

    def clear(self) -> None:
        """Drop all entries and persist the empty state."""
        with self._lock:
            self._commit({})

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_entry(
        self, local_path: str | os.PathLike[str]
    ) -> TrackedFile | None:
        """Return the entry for *local_path*, or ``None`` if absent."""
        with self._lock:
            return self._files.get(normalize_path(local_path))

    def get_document_entry(self, remote_path: str) -> TrackedFile | None:
        """Return the entry for *remote_path*, or ``None`` if absent."""
        with self._lock:
            key = self._documents.get(remote_path)
            return self._files.get(key) if key is not None else None

    def is_file_tracked(self, local_path: str | os.PathLike[str]) -> bool:
        return self.get_entry(local_path) is not None

    def is_document_tracked(self, remote_path: str) -> bool:
        with self._lock:
            return remote_path in self._documents

    def has_file_changed(
        self, local_path: str | os.PathLike[str]
    ) -> ChangeStatus:
        """Recompute the hash of *local_path* and compare with the stored one.

        Returns ``CHANGED`` for untracked files and ``UNKNOWN`` when the
        file cannot be read.
        """
        entry = self.get_entry(local_path)
        stored = entry.content_hash if entry is not None else None
        return self.detector.compare(
            Path(normalize_path(local_path)), stored
        )

    def get_file_path(self, remote_path: str) -> Path | None:
        """Return the local path tracked for *remote_path*."""
        with self._lock:
            key = self._documents.get(remote_path)
        return Path(key) if key is not None else None

    def get_all_tracked_documents(self) -> list[str]:
        """Return the remote paths of all tracked documents."""
        with self._lock:
            return list(self._documents)

    def get_all_tracked_files(self) -> list[TrackedFile]:
        with self._lock:
            return list(self._files.values())

    def __len__(self) -> int:
        with self._lock:
            return len(self._files)
