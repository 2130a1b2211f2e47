"""Content change detection.

Hashes are SHA-256 over the raw file bytes, so text and binary files are
treated alike and no normalisation can hide a real edit.  A file that
disappears or becomes unreadable while being hashed yields ``None``
("unknown"); callers skip the file for this cycle instead of guessing.
"""

from __future__ import annotations

import hashlib
import logging
from enum import Enum
from pathlib import Path

logger = logging.getLogger(__name__)

_CHUNK_SIZE = 64 * 1024


class ChangeStatus(str, Enum):
    """Outcome of comparing a file against its last synced hash."""

    CHANGED = "changed"
    UNCHANGED = "unchanged"
    UNKNOWN = "unknown"


class ChangeDetector:
    """Compute content digests and compare them with stored hashes."""

    @staticmethod
    def hash_bytes(data: bytes) -> str:
        """Return the SHA-256 hex digest of *data*."""
        return hashlib.sha256(data).hexdigest()

    def compute_hash(self, path: Path) -> str | None:
        """Return the SHA-256 hex digest of the file at *path*.

        Returns ``None`` when the file does not exist, is not a regular
        file, or cannot be read.
        """
        digest = hashlib.sha256()
        try:
            with open(path, "rb") as fh:
                while chunk := fh.read(_CHUNK_SIZE):
                    digest.update(chunk)
        except (FileNotFoundError, IsADirectoryError, NotADirectoryError):
            return None
        except OSError as exc:
            logger.warning("Could not hash %s: %s", path, exc)
            return None
        return digest.hexdigest()

    def compare(self, path: Path, stored_hash: str | None) -> ChangeStatus:
        """Compare the current content of *path* with *stored_hash*.

        A missing *stored_hash* (untracked file) counts as ``CHANGED``.
        """
        current = self.compute_hash(path)
        if current is None:
            return ChangeStatus.UNKNOWN
        if stored_hash is None or current != stored_hash:
            return ChangeStatus.CHANGED
        return ChangeStatus.UNCHANGED
