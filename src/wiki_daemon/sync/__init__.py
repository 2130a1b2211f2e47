"""Folder <-> space sync.

Keeps a local watch folder and one wiki space in step.  Local changes are
observed by the watcher and pushed immediately; remote changes are pulled
by periodic reconciliation passes.

Modules:

- ``models``    -- ``TrackedFile``, ``RemoteDocument``, ``SyncAction``,
  ``SyncResult``, ``SyncReport``, and the ``TextFile`` / ``BinaryFile``
  upload categories.
- ``detector``  -- ``ChangeDetector``: SHA-256 content hashing.
- ``state``     -- ``StateStore``: durable JSON record of synced files.
- ``locks``     -- ``PathLocks``: per-path operation serialisation.
- ``watcher``   -- ``FolderWatcher``: debounced watchdog events with
  single-shot ignore entries.
- ``engine``    -- ``SyncEngine``: uploads, downloads, deletions and
  reconciliation.
- ``reporter``  -- Human-readable and JSON report formatting.

Usage example
-------------
::

    from pathlib import Path
    from wiki_daemon.sync import StateStore, SyncEngine, format_sync_report

    state = StateStore(Path(".wiki_daemon/state.json"))
    state.load()
    engine = SyncEngine(wiki_client, state, Path("./watch"), space_id=2)

    report = await engine.sync_from_space()
    print(format_sync_report(report))
"""

from .models import (
    BinaryFile,
    FileKind,
    RemoteDocument,
    SyncAction,
    SyncReport,
    SyncResult,
    TextFile,
    TrackedFile,
    classify,
)
from .detector import ChangeDetector, ChangeStatus
from .state import StateStore
from .locks import PathLocks
from .watcher import FolderWatcher, WatchEvent, WatchEventKind, WatcherState
from .engine import SyncEngine
from .reporter import format_sync_report, report_to_json

__all__ = [
    "BinaryFile",
    "ChangeDetector",
    "ChangeStatus",
    "FileKind",
    "FolderWatcher",
    "PathLocks",
    "RemoteDocument",
    "StateStore",
    "SyncAction",
    "SyncEngine",
    "SyncReport",
    "SyncResult",
    "TextFile",
    "TrackedFile",
    "WatchEvent",
    "WatchEventKind",
    "WatcherState",
    "classify",
    "format_sync_report",
    "report_to_json",
]
