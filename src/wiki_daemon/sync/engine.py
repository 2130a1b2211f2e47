"""Sync engine moving content between the watch folder and a wiki space.

The ``SyncEngine`` owns every transfer in either direction:

* **Local -> remote** -- ``upload_file`` and ``delete_remote_document`` are
  driven by debounced watcher events through ``handle_event``.
* **Remote -> local** -- ``sync_from_space`` lists the space, downloads new,
  missing, or remotely updated documents, and removes local files whose
  documents disappeared.

Every operation on a local path runs under that path's lock, so an upload
and a download of the same file never interleave.  Disk work runs through
``run_sync`` and wiki calls through ``run_sync_limited``; the event loop is
never blocked.

Error handling is per-file: a failure is logged and recorded in the
returned ``SyncResult``, never raised to the caller.
"""

from __future__ import annotations

import logging
import os
import shutil
import tempfile
from collections.abc import Iterator
from datetime import datetime, timezone
from pathlib import Path, PurePosixPath
from typing import TYPE_CHECKING

from wiki_daemon.config import CONFLICT_STRATEGIES
from wiki_daemon.core.async_utils import run_sync, run_sync_limited
from wiki_daemon.errors import (
    NotFoundError,
    TransientIOError,
    WikiDaemonError,
)
from wiki_daemon.sync.locks import PathLocks
from wiki_daemon.sync.models import (
    BinaryFile,
    RemoteDocument,
    SyncAction,
    SyncReport,
    SyncResult,
    TextFile,
    TrackedFile,
    classify,
)
from wiki_daemon.sync.state import StateStore, normalize_path
from wiki_daemon.sync.watcher import WatchEvent, WatchEventKind

if TYPE_CHECKING:
    from wiki_daemon.core.client import WikiClient
    from wiki_daemon.sync.watcher import FolderWatcher

logger = logging.getLogger(__name__)


class SyncEngine:
    """Mirror one wiki space into one local folder.

    Args:
        client: WikiClient for remote operations.
        state: Loaded StateStore.
        watch_root: Local folder mirrored to the space.
        space_id: Target space.
        conflict_strategy: ``"backup"`` keeps a copy of a locally modified
            file before a remote version replaces or removes it;
            ``"remote-wins"`` overwrites with a warning.
    """

    def __init__(
        self,
        client: WikiClient,
        state: StateStore,
        watch_root: Path,
        space_id: int,
        *,
        conflict_strategy: str = "backup",
    ) -> None:
        if conflict_strategy not in CONFLICT_STRATEGIES:
            raise ValueError(
                f"Unknown conflict strategy {conflict_strategy!r}"
            )
        self.client = client
        self.state = state
        self.watch_root = Path(watch_root).resolve()
        self.space_id = space_id
        self.conflict_strategy = conflict_strategy
        self.detector = state.detector
        self.locks = PathLocks()
        self.folder_watcher: FolderWatcher | None = None
        self._space_name: str | None = None

    def set_folder_watcher(self, folder_watcher: FolderWatcher) -> None:
        """Attach the watcher that must ignore the engine's own writes."""
        self.folder_watcher = folder_watcher

    # ------------------------------------------------------------------
    # Path mapping
    # ------------------------------------------------------------------

    def resolve_local_path(self, remote_path: str) -> Path:
        """Map a document path to an absolute path under the watch root.

        Raises:
            ValueError: If the path is empty, absolute, or escapes the root.
        """
        posix = PurePosixPath(remote_path)
        if not remote_path or posix.is_absolute() or ".." in posix.parts:
            raise ValueError(
                f"Document path {remote_path!r} escapes the watch folder"
            )
        local = Path(normalize_path(self.watch_root.joinpath(*posix.parts)))
        local.relative_to(self.watch_root)
        return local

    def remote_path_for(self, local_path: str | os.PathLike[str]) -> str:
        """Return the watch-root-relative POSIX path of *local_path*.

        Raises:
            ValueError: If *local_path* is outside the watch root.
        """
        relative = Path(normalize_path(local_path)).relative_to(self.watch_root)
        return relative.as_posix()

    def _ignore(self, path: Path) -> None:
        if self.folder_watcher is not None:
            self.folder_watcher.ignore_file(path)

    def _unignore(self, path: Path) -> None:
        if self.folder_watcher is not None:
            self.folder_watcher.cancel_ignore(path)

    # ------------------------------------------------------------------
    # Local -> remote
    # ------------------------------------------------------------------

    async def handle_event(self, event: WatchEvent) -> SyncResult:
        """Route a debounced watcher event to the matching operation."""
        match event.kind:
            case WatchEventKind.CREATED | WatchEventKind.MODIFIED:
                return await self.upload_file(event.path)
            case WatchEventKind.DELETED:
                return await self.delete_remote_document(event.path)

    async def upload_file(
        self, local_path: str | os.PathLike[str]
    ) -> SyncResult:
        """Upload *local_path* unless it matches the last synced content."""
        path = Path(normalize_path(local_path))
        try:
            remote_path = self.remote_path_for(path)
        except ValueError:
            logger.error("Refusing to upload %s: outside watch folder", path)
            return SyncResult(
                local_path=str(path),
                remote_path="",
                action=SyncAction.UPLOAD,
                success=False,
                error="outside watch folder",
            )

        async with self.locks.hold(str(path)):
            try:
                return await self._upload_locked(path, remote_path)
            except (WikiDaemonError, OSError) as exc:
                logger.error("Error uploading %s: %s", path, exc)
                return SyncResult(
                    local_path=str(path),
                    remote_path=remote_path,
                    action=SyncAction.UPLOAD,
                    success=False,
                    error=str(exc),
                )

    async def _upload_locked(self, path: Path, remote_path: str) -> SyncResult:
        data = await run_sync(_read_bytes, path)
        if data is None:
            logger.debug("File unavailable, skipping upload: %s", path)
            return _skip(path, remote_path, "file unavailable")

        content_hash = self.detector.hash_bytes(data)
        entry = self.state.get_entry(path)
        if entry is not None and entry.content_hash == content_hash:
            logger.debug("File unchanged, skipping: %s", path)
            return _skip(path, remote_path, "unchanged")

        kind = classify(path)
        text: str | None = None
        if isinstance(kind, TextFile):
            try:
                text = data.decode("utf-8")
            except UnicodeDecodeError:
                logger.warning(
                    "%s is not valid UTF-8, uploading as binary", path
                )
                kind = BinaryFile(path)

        verb = "Updating" if entry is not None else "Creating"
        match kind:
            case TextFile(title=title):
                logger.info("%s text document: %s", verb, remote_path)
                await run_sync_limited(
                    self.client.create_or_update_document,
                    title,
                    text,
                    self.space_id,
                    remote_path,
                )
            case BinaryFile(file_name=file_name):
                folder = PurePosixPath(remote_path).parent.as_posix()
                logger.info("%s binary file: %s", verb, remote_path)
                await run_sync_limited(
                    self.client.upload_binary,
                    data,
                    file_name,
                    self.space_id,
                    "" if folder == "." else folder,
                )

        await run_sync(self.state.track_file, path, remote_path, content_hash)
        logger.info("Uploaded %s", remote_path)
        return SyncResult(
            local_path=str(path),
            remote_path=remote_path,
            action=SyncAction.UPLOAD,
        )

    async def delete_remote_document(
        self, local_path: str | os.PathLike[str]
    ) -> SyncResult:
        """Delete the document tracked for a locally removed file."""
        path = Path(normalize_path(local_path))
        async with self.locks.hold(str(path)):
            entry = self.state.get_entry(path)
            if entry is None:
                logger.debug("Untracked file removed, nothing to do: %s", path)
                return _skip(path, "", "not tracked")

            if await run_sync(path.exists):
                logger.debug("%s exists again, keeping remote copy", path)
                return _skip(path, entry.remote_path, "file exists")

            try:
                await run_sync_limited(
                    self.client.delete_document,
                    entry.remote_path,
                    self.space_id,
                )
            except NotFoundError:
                logger.debug("Document already gone: %s", entry.remote_path)
            except (WikiDaemonError, OSError) as exc:
                logger.error(
                    "Error deleting document %s: %s", entry.remote_path, exc
                )
                return SyncResult(
                    local_path=str(path),
                    remote_path=entry.remote_path,
                    action=SyncAction.DELETE_REMOTE,
                    success=False,
                    error=str(exc),
                )

            await run_sync(self.state.untrack_file, path)
            logger.info("Deleted document %s", entry.remote_path)
            return SyncResult(
                local_path=str(path),
                remote_path=entry.remote_path,
                action=SyncAction.DELETE_REMOTE,
            )

    # ------------------------------------------------------------------
    # Remote -> local
    # ------------------------------------------------------------------

    async def download_document(
        self, document: RemoteDocument, space_name: str
    ) -> SyncResult:
        """Write *document* into the watch folder and record it."""
        try:
            path = self.resolve_local_path(document.remote_path)
        except ValueError as exc:
            logger.error("Refusing to download: %s", exc)
            return SyncResult(
                local_path="",
                remote_path=document.remote_path,
                action=SyncAction.DOWNLOAD,
                success=False,
                error=str(exc),
            )

        async with self.locks.hold(str(path)):
            try:
                return await self._download_locked(document, space_name, path)
            except NotFoundError:
                logger.warning(
                    "Document %s vanished before download",
                    document.remote_path,
                )
                return _skip(path, document.remote_path, "not found")
            except (WikiDaemonError, OSError) as exc:
                logger.error(
                    "Error downloading document %s: %s",
                    document.remote_path,
                    exc,
                )
                return SyncResult(
                    local_path=str(path),
                    remote_path=document.remote_path,
                    action=SyncAction.DOWNLOAD,
                    success=False,
                    error=str(exc),
                )

    async def _download_locked(
        self, document: RemoteDocument, space_name: str, path: Path
    ) -> SyncResult:
        content = await run_sync_limited(
            self.client.get_document_content, document.remote_path, space_name
        )
        new_hash = self.detector.hash_bytes(content)
        current_hash = await run_sync(self.detector.compute_hash, path)

        if current_hash == new_hash:
            await run_sync(
                self.state.track_file,
                path,
                document.remote_path,
                new_hash,
                remote_updated_at=document.updated_at,
            )
            logger.debug("Local copy already current: %s", path)
            return _skip(path, document.remote_path, "already current")

        if current_hash is not None:
            entry = self.state.get_entry(path)
            if entry is None or entry.content_hash != current_hash:
                await self._resolve_conflict(path)

        self._ignore(path)
        try:
            await run_sync(_write_atomic, path, content)
        except OSError:
            self._unignore(path)
            raise

        written_hash = await run_sync(self.detector.compute_hash, path)
        if written_hash is None:
            raise TransientIOError(f"{path} missing after write")

        await run_sync(
            self.state.track_file,
            path,
            document.remote_path,
            written_hash,
            remote_updated_at=document.updated_at,
        )
        logger.info("Downloaded %s (%d bytes)", document.remote_path, len(content))
        return SyncResult(
            local_path=str(path),
            remote_path=document.remote_path,
            action=SyncAction.DOWNLOAD,
        )

    async def delete_local_file(self, remote_path: str) -> SyncResult:
        """Remove the local file tracked for a document gone from the space."""
        path = self.state.get_file_path(remote_path)
        if path is None:
            logger.debug("No local file tracked for document %s", remote_path)
            return SyncResult(
                local_path="",
                remote_path=remote_path,
                action=SyncAction.SKIP,
                error="not tracked",
            )

        async with self.locks.hold(str(path)):
            try:
                entry = self.state.get_entry(path)
                current_hash = await run_sync(self.detector.compute_hash, path)
                if (
                    current_hash is not None
                    and entry is not None
                    and entry.content_hash != current_hash
                ):
                    await self._resolve_conflict(path)

                self._ignore(path)
                try:
                    removed = await run_sync(_unlink, path)
                except OSError:
                    self._unignore(path)
                    raise
                if not removed:
                    # No event will follow to spend the entry.
                    self._unignore(path)
                    logger.debug("File already deleted: %s", path)
                await run_sync(self.state.untrack_document, remote_path)
            except (WikiDaemonError, OSError) as exc:
                logger.error("Error deleting local file %s: %s", path, exc)
                return SyncResult(
                    local_path=str(path),
                    remote_path=remote_path,
                    action=SyncAction.DELETE_LOCAL,
                    success=False,
                    error=str(exc),
                )

        logger.info("Deleted local file %s", path)
        return SyncResult(
            local_path=str(path),
            remote_path=remote_path,
            action=SyncAction.DELETE_LOCAL,
        )

    async def _resolve_conflict(self, path: Path) -> None:
        if self.conflict_strategy == "remote-wins":
            logger.warning(
                "Local changes to %s are replaced by the remote version", path
            )
            return
        backup = _conflict_path(path)
        await run_sync(shutil.copy2, path, backup)
        logger.warning(
            "Local changes to %s conflict with the remote version; "
            "kept a copy at %s",
            path,
            backup,
        )

    # ------------------------------------------------------------------
    # Reconciliation
    # ------------------------------------------------------------------

    async def sync_from_space(self) -> SyncReport:
        """Reconcile the watch folder with the current space listing.

        A failure to list the space or resolve its name aborts the pass
        before anything is downloaded or deleted.
        """
        started_at = datetime.now(timezone.utc)
        logger.info("Syncing from space %s to local folder...", self.space_id)
        results: list[SyncResult] = []

        try:
            documents = await run_sync_limited(
                self.client.list_documents, self.space_id
            )
            space_name = await self._get_space_name()
        except (WikiDaemonError, OSError) as exc:
            logger.error(
                "Failed to list space %s, skipping pass: %s",
                self.space_id,
                exc,
            )
            results.append(
                SyncResult(
                    local_path="",
                    remote_path="",
                    action=SyncAction.SKIP,
                    success=False,
                    error=f"Listing failed: {exc}",
                )
            )
            return self._report(results, started_at)

        listed: set[str] = set()
        for document in documents:
            listed.add(document.remote_path)
            try:
                results.append(
                    await self._reconcile_document(document, space_name)
                )
            except Exception as exc:
                logger.error(
                    "Error syncing document %s: %s", document.remote_path, exc
                )
                results.append(
                    SyncResult(
                        local_path="",
                        remote_path=document.remote_path,
                        action=SyncAction.SKIP,
                        success=False,
                        error=str(exc),
                    )
                )

        for remote_path in self.state.get_all_tracked_documents():
            if remote_path in listed:
                continue
            entry = self.state.get_document_entry(remote_path)
            if entry is None:
                continue
            if entry.last_sync >= started_at:
                logger.debug(
                    "%s synced after the listing was taken, keeping it",
                    remote_path,
                )
                continue
            logger.info(
                "Document %s no longer in space, removing local file",
                remote_path,
            )
            results.append(await self.delete_local_file(remote_path))

        report = self._report(results, started_at)
        logger.info("Space sync completed: %s", report.summary())
        await self.list_watch_folder_contents()
        return report

    async def _reconcile_document(
        self, document: RemoteDocument, space_name: str
    ) -> SyncResult:
        entry = self.state.get_document_entry(document.remote_path)
        if entry is None:
            logger.info("New document, downloading: %s", document.remote_path)
            return await self.download_document(document, space_name)

        if not await run_sync(Path(entry.local_path).exists):
            logger.info("Missing file, downloading: %s", document.remote_path)
            return await self.download_document(document, space_name)

        if _remote_is_newer(document, entry):
            logger.info(
                "Document %s updated on server, downloading",
                document.remote_path,
            )
            return await self.download_document(document, space_name)

        return _skip(Path(entry.local_path), document.remote_path, "unchanged")

    async def _get_space_name(self) -> str:
        if self._space_name is None:
            self._space_name = await run_sync_limited(
                self.client.get_space_name, self.space_id
            )
        return self._space_name

    def _report(
        self, results: list[SyncResult], started_at: datetime
    ) -> SyncReport:
        return SyncReport(
            space_id=self.space_id,
            results=results,
            started_at=started_at.isoformat(),
            completed_at=datetime.now(timezone.utc).isoformat(),
        )

    # ------------------------------------------------------------------
    # Watch folder
    # ------------------------------------------------------------------

    async def ensure_watch_folder(self) -> Path:
        """Create the watch root if it does not exist."""
        await run_sync(self.watch_root.mkdir, parents=True, exist_ok=True)
        return self.watch_root

    def iter_watch_folder(self) -> Iterator[Path]:
        """Yield every non-hidden file under the watch root."""
        for dirpath, dirnames, filenames in os.walk(self.watch_root):
            dirnames[:] = sorted(d for d in dirnames if not d.startswith("."))
            for name in sorted(filenames):
                if not name.startswith("."):
                    yield Path(dirpath) / name

    async def list_watch_folder_contents(self) -> list[Path]:
        """Log and return the files currently in the watch folder."""
        files = await run_sync(lambda: list(self.iter_watch_folder()))
        logger.debug(
            "Watch folder %s contains %d files", self.watch_root, len(files)
        )
        for path in files:
            logger.debug("  %s", path.relative_to(self.watch_root).as_posix())
        return files


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _skip(path: Path, remote_path: str, note: str) -> SyncResult:
    return SyncResult(
        local_path=str(path),
        remote_path=remote_path,
        action=SyncAction.SKIP,
        error=note,
    )


def _remote_is_newer(document: RemoteDocument, entry: TrackedFile) -> bool:
    """Decide whether the listed document changed since it was last synced.

    When the server time of the last download is known the comparison stays
    on the server clock; otherwise it falls back to the local sync time.
    """
    if document.updated_at is None:
        return False
    if entry.remote_updated_at is not None:
        return document.updated_at != entry.remote_updated_at
    return document.updated_at > entry.last_sync


def _conflict_path(path: Path) -> Path:
    stamp = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%SZ")
    return path.with_name(f"{path.stem}.conflict-{stamp}{path.suffix}")


def _read_bytes(path: Path) -> bytes | None:
    try:
        return path.read_bytes()
    except (FileNotFoundError, IsADirectoryError, NotADirectoryError):
        return None


def _unlink(path: Path) -> bool:
    try:
        path.unlink()
    except FileNotFoundError:
        return False
    return True


def _write_atomic(path: Path, data: bytes) -> None:
    # The temp name is a dotfile so the watcher never reports it.
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(
        dir=str(path.parent), prefix=f".{path.name}.", suffix=".tmp"
    )
    try:
        with os.fdopen(fd, "wb") as fh:
            fh.write(data)
            fh.flush()
            os.fsync(fh.fileno())
        os.replace(tmp_path, path)
    except BaseException:
        try:
            os.unlink(tmp_path)
        except OSError:
            pass
        raise
