"""Recursive folder watcher feeding local changes into the event loop.

A ``watchdog`` observer thread reports raw filesystem events; they are
handed to the asyncio loop with ``call_soon_threadsafe`` and processed
there, so all watcher bookkeeping is single-threaded.

Two filters sit between the raw events and the handler:

* **Debounce** -- editors often write a file several times per save.  Raw
  events for one path arriving within ``debounce`` seconds of each other
  collapse into a single handler call carrying the final event kind.
* **Ignore entries** -- before the engine writes or deletes a file itself it
  arms a single-shot entry for that path.  The next raw event for the path
  spends the entry and is dropped; later events are debounced as usual.
  Unconsumed entries expire after ``ignore_ttl`` seconds.  This is what
  keeps a download from being re-observed as a local edit and bounced back
  upstream.
"""

from __future__ import annotations

import asyncio
import logging
import os
import threading
import time
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass
from enum import Enum
from pathlib import Path

from watchdog.events import (
    EVENT_TYPE_CREATED,
    EVENT_TYPE_DELETED,
    EVENT_TYPE_MODIFIED,
    EVENT_TYPE_MOVED,
    FileSystemEvent,
    FileSystemEventHandler,
)
from watchdog.observers import Observer

from wiki_daemon.core.async_utils import run_sync
from wiki_daemon.sync.state import normalize_path

logger = logging.getLogger(__name__)


class WatchEventKind(str, Enum):
    CREATED = "created"
    MODIFIED = "modified"
    DELETED = "deleted"


@dataclass(frozen=True)
class WatchEvent:
    """A debounced local change delivered to the handler."""

    kind: WatchEventKind
    path: Path


class WatcherState(str, Enum):
    STOPPED = "stopped"
    STARTING = "starting"
    WATCHING = "watching"
    STOPPING = "stopping"


EventHandler = Callable[[WatchEvent], Awaitable[None]]


# ---------------------------------------------------------------------------
# Ignore entries
# ---------------------------------------------------------------------------


class IgnoreRegistry:
    """Per-path single-shot tokens with an expiry.

    Arming a path twice yields two tokens; each ``consume()`` spends one.

    Args:
        ttl: Seconds an unconsumed token stays live.
        clock: Monotonic time source (injectable for tests).
    """

    def __init__(
        self, ttl: float, clock: Callable[[], float] = time.monotonic
    ) -> None:
        self.ttl = ttl
        self._clock = clock
        self._tokens: dict[str, list[float]] = {}
        self._lock = threading.Lock()

    def arm(self, path: str | os.PathLike[str]) -> None:
        key = normalize_path(path)
        with self._lock:
            self._tokens.setdefault(key, []).append(self._clock() + self.ttl)

    def consume(self, path: str | os.PathLike[str]) -> bool:
        """Spend one live token for *path*; return whether one existed."""
        key = normalize_path(path)
        with self._lock:
            live = self._live(key)
            if not live:
                return False
            live.pop(0)
            if not live:
                del self._tokens[key]
            return True

    def disarm(self, path: str | os.PathLike[str]) -> bool:
        """Drop the most recently armed live token for *path*."""
        key = normalize_path(path)
        with self._lock:
            live = self._live(key)
            if not live:
                return False
            live.pop()
            if not live:
                del self._tokens[key]
            return True

    def is_armed(self, path: str | os.PathLike[str]) -> bool:
        with self._lock:
            return bool(self._live(normalize_path(path)))

    def clear(self) -> None:
        with self._lock:
            self._tokens.clear()

    def _live(self, key: str) -> list[float]:
        now = self._clock()
        live = [expiry for expiry in self._tokens.get(key, []) if expiry > now]
        if live:
            self._tokens[key] = live
        else:
            self._tokens.pop(key, None)
        return live


# ---------------------------------------------------------------------------
# watchdog bridge
# ---------------------------------------------------------------------------


class _EventBridge(FileSystemEventHandler):
    """Translate watchdog events and post them onto the event loop."""

    def __init__(
        self, watcher: FolderWatcher, loop: asyncio.AbstractEventLoop
    ) -> None:
        self._watcher = watcher
        self._loop = loop

    def on_any_event(self, event: FileSystemEvent) -> None:
        if event.is_directory:
            return
        src = Path(os.fsdecode(event.src_path))
        match event.event_type:
            case t if t == EVENT_TYPE_CREATED:
                self._post(WatchEventKind.CREATED, src)
            case t if t == EVENT_TYPE_MODIFIED:
                self._post(WatchEventKind.MODIFIED, src)
            case t if t == EVENT_TYPE_DELETED:
                self._post(WatchEventKind.DELETED, src)
            case t if t == EVENT_TYPE_MOVED:
                self._post(WatchEventKind.DELETED, src)
                dest = Path(os.fsdecode(event.dest_path))
                self._post(WatchEventKind.CREATED, dest)

    def _post(self, kind: WatchEventKind, path: Path) -> None:
        try:
            self._loop.call_soon_threadsafe(
                self._watcher.notify, WatchEvent(kind, path)
            )
        except RuntimeError:
            # Loop already closed during shutdown.
            pass


# ---------------------------------------------------------------------------
# Watcher
# ---------------------------------------------------------------------------


@dataclass
class _Pending:
    kind: WatchEventKind
    timer: asyncio.TimerHandle | None = None


def _merge_kinds(
    previous: WatchEventKind, new: WatchEventKind
) -> WatchEventKind:
    if new is WatchEventKind.MODIFIED and previous is WatchEventKind.CREATED:
        return previous
    return new


class FolderWatcher:
    """Watch a directory tree and dispatch debounced events to *handler*.

    Args:
        root: Directory to watch recursively.
        handler: Coroutine function called once per debounced event.
        debounce: Seconds during which repeated events for a path collapse.
        ignore_ttl: Seconds an unconsumed ignore entry stays live.
        exclude: Paths never reported (e.g. the state file).
        observer_factory: Callable returning a watchdog observer.
    """

    def __init__(
        self,
        root: Path,
        handler: EventHandler,
        *,
        debounce: float = 0.5,
        ignore_ttl: float = 2.0,
        exclude: Iterable[str | os.PathLike[str]] = (),
        observer_factory: Callable[[], Observer] = Observer,
    ) -> None:
        self.root = Path(root).resolve()
        self.ignores = IgnoreRegistry(ignore_ttl)
        self._handler = handler
        self._debounce = debounce
        self._exclude = {normalize_path(p) for p in exclude}
        self._observer_factory = observer_factory
        self._observer: Observer | None = None
        self._loop: asyncio.AbstractEventLoop | None = None
        self._state = WatcherState.STOPPED
        self._pending: dict[str, _Pending] = {}
        self._tasks: set[asyncio.Task] = set()

    @property
    def state(self) -> WatcherState:
        return self._state

    def ignore_file(self, path: str | os.PathLike[str]) -> None:
        """Swallow the next raw event for *path* (single-shot).

        No-op while the watcher is not running, since no event can follow.
        """
        if self._state not in (WatcherState.STARTING, WatcherState.WATCHING):
            return
        self.ignores.arm(path)
        logger.debug("Ignoring next change for %s", path)

    def cancel_ignore(self, path: str | os.PathLike[str]) -> None:
        """Withdraw an entry armed for a change that never happened."""
        if self.ignores.disarm(path):
            logger.debug("Withdrew ignore entry for %s", path)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        if self._state is not WatcherState.STOPPED:
            logger.warning("Watcher already %s", self._state.value)
            return

        self._state = WatcherState.STARTING
        self._loop = asyncio.get_running_loop()
        logger.info("Starting folder watcher on %s", self.root)
        try:
            await run_sync(self.root.mkdir, parents=True, exist_ok=True)
            observer = self._observer_factory()
            observer.schedule(
                _EventBridge(self, self._loop), str(self.root), recursive=True
            )
            observer.start()
        except Exception:
            self._state = WatcherState.STOPPED
            raise

        self._observer = observer
        self._state = WatcherState.WATCHING
        logger.info("Folder watcher started")

    async def stop(self) -> None:
        """Stop observing, flush queued events, and wait for handlers."""
        if self._state is not WatcherState.WATCHING:
            return

        self._state = WatcherState.STOPPING
        logger.info("Stopping folder watcher...")

        observer, self._observer = self._observer, None
        if observer is not None:
            observer.stop()
            await run_sync(observer.join, 5)

        for key in list(self._pending):
            pending = self._pending[key]
            if pending.timer is not None:
                pending.timer.cancel()
            self._flush(key)

        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)

        self.ignores.clear()
        self._state = WatcherState.STOPPED
        logger.info("Folder watcher stopped")

    # ------------------------------------------------------------------
    # Event processing (event loop thread only)
    # ------------------------------------------------------------------

    def notify(self, event: WatchEvent) -> None:
        """Accept one raw event; called on the loop thread."""
        if self._state is not WatcherState.WATCHING or self._loop is None:
            return

        key = normalize_path(event.path)
        if self._is_excluded(key):
            return

        # A token covers exactly one raw event; whatever follows is real.
        if self.ignores.consume(key):
            logger.debug(
                "Ignoring programmatic %s: %s", event.kind.value, key
            )
            return

        pending = self._pending.get(key)
        if pending is None:
            pending = _Pending(event.kind)
            self._pending[key] = pending
        else:
            if pending.timer is not None:
                pending.timer.cancel()
            pending.kind = _merge_kinds(pending.kind, event.kind)

        pending.timer = self._loop.call_later(self._debounce, self._flush, key)

    def _flush(self, key: str) -> None:
        pending = self._pending.pop(key, None)
        if pending is None:
            return

        event = WatchEvent(pending.kind, Path(key))
        task = asyncio.get_running_loop().create_task(self._dispatch(event))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _dispatch(self, event: WatchEvent) -> None:
        logger.info("File %s: %s", event.kind.value, event.path)
        try:
            await self._handler(event)
        except Exception:
            logger.exception(
                "Error handling %s event for %s",
                event.kind.value,
                event.path,
            )

    def _is_excluded(self, key: str) -> bool:
        if key in self._exclude:
            return True
        try:
            relative = Path(key).relative_to(self.root)
        except ValueError:
            return True
        return any(part.startswith(".") for part in relative.parts)
