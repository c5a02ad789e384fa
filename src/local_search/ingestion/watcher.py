"""Debounced folder watching.

watchdog delivers filesystem events on its observer thread; they are
handed to the asyncio loop and debounced per ``(path, event class)``.
Each watched path moves through ``idle → pending → dispatched → idle``:

* an event arms (or re-arms) a timer and marks the path ``pending``;
* when the timer fires the path is ``dispatched``: one ingestion for
  ``add`` / ``change``, or one chunk removal for ``delete``;
* once the dispatch finishes the entry is dropped.

Timers come from a :class:`Scheduler`, so tests can drive the state
machine with a fake clock.
"""

from __future__ import annotations

import asyncio
import logging
import os
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Protocol

from pydantic import BaseModel
from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

from local_search.config import settings
from local_search.ingestion.loader import is_supported
from local_search.retrieval.base import ChunkStore

logger = logging.getLogger(__name__)

IGNORED_DIRS = frozenset({"node_modules", "__pycache__", ".git"})
IGNORED_NAMES = frozenset({".DS_Store", "Thumbs.db"})
IGNORED_SUFFIXES = (".log", ".tmp", ".cache", "~")


class EventKind(str, Enum):
    ADD = "add"
    CHANGE = "change"
    DELETE = "delete"


class WatchState(str, Enum):
    IDLE = "idle"
    PENDING = "pending"
    DISPATCHED = "dispatched"


class TimerHandle(Protocol):
    def cancel(self) -> None: ...


class Scheduler(Protocol):
    """Minimal timer facility used for debouncing."""

    def call_later(self, delay: float, callback: Callable[[], None]) -> TimerHandle: ...

    def now(self) -> float: ...


class LoopScheduler:
    """:class:`Scheduler` backed by an asyncio event loop."""

    def __init__(self, loop: asyncio.AbstractEventLoop) -> None:
        self._loop = loop

    def call_later(self, delay: float, callback: Callable[[], None]) -> TimerHandle:
        return self._loop.call_later(delay, callback)

    def now(self) -> float:
        return self._loop.time()


@dataclass
class WatchEntry:
    """Debounce state for one ``(path, event class)``."""

    file_path: str
    event_type: EventKind
    timer_handle: TimerHandle | None
    last_event_time: float
    state: WatchState = WatchState.PENDING


class WatcherStatus(BaseModel):
    is_watching: bool
    root: str
    pending: int
    processing: int
    dispatched_total: int


class _EventHandler(FileSystemEventHandler):
    """Forwards watchdog callbacks (observer thread) to the watcher's loop."""

    def __init__(self, watcher: FileWatcher) -> None:
        self._watcher = watcher

    def on_created(self, event: FileSystemEvent) -> None:
        if not event.is_directory:
            self._watcher.notify_threadsafe(event.src_path, EventKind.ADD)

    def on_modified(self, event: FileSystemEvent) -> None:
        if not event.is_directory:
            self._watcher.notify_threadsafe(event.src_path, EventKind.CHANGE)

    def on_deleted(self, event: FileSystemEvent) -> None:
        if not event.is_directory:
            self._watcher.notify_threadsafe(event.src_path, EventKind.DELETE)

    def on_moved(self, event: FileSystemEvent) -> None:
        if not event.is_directory:
            self._watcher.notify_threadsafe(event.src_path, EventKind.DELETE)
            self._watcher.notify_threadsafe(event.dest_path, EventKind.ADD)


class FileWatcher:
    """Watches *root* and keeps the index in sync with it.

    Parameters
    ----------
    root:
        Folder to watch recursively.
    processor:
        Object with an ``async ingest_path(path, event)`` method, normally
        the :class:`~local_search.pipelines.BackgroundProcessor`.
    store:
        Chunk store whose ``delete_file`` handles removals.
    debounce_ms:
        Quiet period before an event is dispatched.
    max_depth:
        Deepest directory level (below *root*) that is watched.
    scheduler:
        Timer source; defaults to the running event loop.
    observer_factory:
        Builds the watchdog observer.
    """

    def __init__(
        self,
        root: str | Path,
        processor: Any,
        store: ChunkStore,
        *,
        debounce_ms: int = settings.watch_debounce_ms,
        max_depth: int = settings.watch_max_depth,
        scheduler: Scheduler | None = None,
        observer_factory: Callable[[], Any] = Observer,
    ) -> None:
        self.root = Path(root).expanduser().resolve()
        self.processor = processor
        self.store = store
        self.delay = debounce_ms / 1000
        self.max_depth = max_depth
        self._scheduler = scheduler
        self._observer_factory = observer_factory
        self._observer: Any = None
        self._loop: asyncio.AbstractEventLoop | None = None
        self._entries: dict[tuple[str, EventKind], WatchEntry] = {}
        self._dispatches: set[asyncio.Task[None]] = set()
        self._chains: dict[str, asyncio.Task[None]] = {}
        self._dispatched_total = 0

    # -- lifecycle ------------------------------------------------------------

    @property
    def is_watching(self) -> bool:
        return self._observer is not None

    async def start(self, *, scan_existing: bool = True) -> None:
        """Begin watching; optionally queue every existing file for ingestion."""
        if self.is_watching:
            return
        self._loop = asyncio.get_running_loop()
        if self._scheduler is None:
            self._scheduler = LoopScheduler(self._loop)
        self.root.mkdir(parents=True, exist_ok=True)

        observer = self._observer_factory()
        observer.schedule(_EventHandler(self), str(self.root), recursive=True)
        observer.start()
        self._observer = observer
        logger.info("Watching %s (debounce %.0fms, depth %d)", self.root, self.delay * 1000, self.max_depth)

        if scan_existing:
            queued = 0
            for path in self._existing_files():
                self.notify(str(path), EventKind.ADD)
                queued += 1
            logger.info("Queued %d existing files under %s", queued, self.root)

    async def stop(self) -> None:
        """Cancel pending timers, stop the observer and wait for running dispatches."""
        for entry in self._entries.values():
            if entry.state is WatchState.PENDING and entry.timer_handle is not None:
                entry.timer_handle.cancel()
        self._entries = {k: e for k, e in self._entries.items() if e.state is WatchState.DISPATCHED}

        observer, self._observer = self._observer, None
        if observer is not None:
            observer.stop()
            await asyncio.to_thread(observer.join, 5)
        await self.drain()
        self._entries.clear()
        logger.info("Stopped watching %s", self.root)

    async def drain(self) -> None:
        """Wait until no dispatch is running."""
        while self._dispatches:
            await asyncio.gather(*list(self._dispatches), return_exceptions=True)

    def get_status(self) -> WatcherStatus:
        return WatcherStatus(
            is_watching=self.is_watching,
            root=str(self.root),
            pending=sum(1 for e in self._entries.values() if e.state is WatchState.PENDING),
            processing=sum(1 for e in self._entries.values() if e.state is WatchState.DISPATCHED),
            dispatched_total=self._dispatched_total,
        )

    def state_of(self, path: str | Path, kind: EventKind) -> WatchState:
        entry = self._entries.get((str(path), kind))
        return entry.state if entry is not None else WatchState.IDLE

    # -- filtering ------------------------------------------------------------

    def should_ignore(self, path: str | Path) -> bool:
        path = Path(path)
        try:
            rel = path.resolve().relative_to(self.root) if path.is_absolute() else path
        except ValueError:
            return True
        parts = rel.parts
        if not parts or len(parts) - 1 > self.max_depth:
            return True
        if any(p.startswith(".") or p in IGNORED_DIRS for p in parts):
            return True
        name = parts[-1]
        if name in IGNORED_NAMES or name.endswith(IGNORED_SUFFIXES):
            return True
        return not is_supported(name)

    def _existing_files(self) -> list[Path]:
        found: list[Path] = []
        for dirpath, dirnames, filenames in os.walk(self.root):
            depth = len(Path(dirpath).relative_to(self.root).parts)
            dirnames[:] = [d for d in dirnames if not d.startswith(".") and d not in IGNORED_DIRS and depth < self.max_depth]
            for name in sorted(filenames):
                path = Path(dirpath) / name
                if not self.should_ignore(path):
                    found.append(path)
        return found

    # -- debouncing -----------------------------------------------------------

    def notify_threadsafe(self, path: str, kind: EventKind) -> None:
        """Entry point for the observer thread."""
        loop = self._loop
        if loop is None or loop.is_closed():
            return
        loop.call_soon_threadsafe(self.notify, path, kind)

    def notify(self, path: str, kind: EventKind) -> None:
        """Record an event for *path*; must run on the event-loop thread."""
        if self._scheduler is None or self.should_ignore(path):
            return
        path = str(Path(path).resolve()) if Path(path).is_absolute() else str(self.root / path)

        # A delete supersedes pending ingests for the path and vice versa.
        opposing = (EventKind.ADD, EventKind.CHANGE) if kind is EventKind.DELETE else (EventKind.DELETE,)
        for other in opposing:
            self._cancel_pending((path, other))

        key = (path, kind)
        self._cancel_pending(key)
        entry = WatchEntry(
            file_path=path,
            event_type=kind,
            timer_handle=None,
            last_event_time=self._scheduler.now(),
        )
        entry.timer_handle = self._scheduler.call_later(self.delay, lambda: self._fire(key, entry))
        self._entries[key] = entry
        logger.debug("%s %s: timer armed", kind.value, path)

    def _cancel_pending(self, key: tuple[str, EventKind]) -> None:
        entry = self._entries.get(key)
        if entry is not None and entry.state is WatchState.PENDING:
            if entry.timer_handle is not None:
                entry.timer_handle.cancel()
            del self._entries[key]

    def _fire(self, key: tuple[str, EventKind], entry: WatchEntry) -> None:
        if self._entries.get(key) is not entry or entry.state is not WatchState.PENDING:
            return
        entry.state = WatchState.DISPATCHED
        entry.timer_handle = None
        previous = self._chains.get(entry.file_path)
        task = asyncio.get_running_loop().create_task(self._dispatch(key, entry, previous))
        self._chains[entry.file_path] = task
        self._dispatches.add(task)
        task.add_done_callback(lambda t, path=entry.file_path: self._dispatch_done(path, t))

    def _dispatch_done(self, path: str, task: asyncio.Task[None]) -> None:
        self._dispatches.discard(task)
        if self._chains.get(path) is task:
            del self._chains[path]

    async def _dispatch(
        self, key: tuple[str, EventKind], entry: WatchEntry, previous: asyncio.Task[None] | None
    ) -> None:
        # Dispatches for one path run one at a time, in firing order.
        if previous is not None and not previous.done():
            await asyncio.wait({previous})
        self._dispatched_total += 1
        try:
            if entry.event_type is EventKind.DELETE:
                removed = await asyncio.to_thread(self.store.delete_file, entry.file_path)
                logger.info("Removed %d chunks for deleted file %s", removed, entry.file_path)
            else:
                job_id = await self.processor.ingest_path(entry.file_path, entry.event_type.value)
                logger.info("Ingested %s (%s) as %s", entry.file_path, entry.event_type.value, job_id)
        except Exception:
            logger.exception("Failed to process %s event for %s", entry.event_type.value, entry.file_path)
        finally:
            entry.state = WatchState.IDLE
            if self._entries.get(key) is entry:
                del self._entries[key]
