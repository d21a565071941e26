"""
Filesystem watching for subscribed projects.

One watchdog observer thread serves every project; each actively
subscribed project gets its own recursive watch on that observer. Events
are filtered to Markdown changes on the observer thread and then handed to
the event loop, where all bookkeeping happens. Scheduling and removing
watches walks the watched tree, so those calls run in worker threads.
"""

import asyncio
import os
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Dict, Optional, Set

from loguru import logger
from watchdog.events import (
    EVENT_TYPE_CREATED,
    EVENT_TYPE_DELETED,
    EVENT_TYPE_MODIFIED,
    EVENT_TYPE_MOVED,
    FileSystemEvent,
    FileSystemEventHandler,
)
from watchdog.observers import Observer

from .errors import ErrorAggregator, ErrorEvent, ErrorSeverity, WatchRegistrationError
from .scanner import is_markdown


RELEVANT_EVENT_TYPES = frozenset({
    EVENT_TYPE_CREATED,
    EVENT_TYPE_DELETED,
    EVENT_TYPE_MODIFIED,
    EVENT_TYPE_MOVED,
})


def _as_str(path) -> str:
    return os.fsdecode(path) if path else ""


def is_relevant_event(event: FileSystemEvent) -> bool:
    """True for content changes to Markdown files (either side of a move)."""
    if event.is_directory or event.event_type not in RELEVANT_EVENT_TYPES:
        return False
    if is_markdown(_as_str(event.src_path)):
        return True
    return is_markdown(_as_str(getattr(event, "dest_path", "")))


def is_root_removed(event: FileSystemEvent, root: str) -> bool:
    """True when the watched root itself was deleted or moved away."""
    if not event.is_directory or event.event_type not in (EVENT_TYPE_DELETED, EVENT_TYPE_MOVED):
        return False
    return os.path.normpath(_as_str(event.src_path)) == os.path.normpath(root)


class MarkdownChangeHandler(FileSystemEventHandler):
    """Forwards Markdown changes under one project root to the event loop."""

    def __init__(
        self,
        project_id: str,
        root: str,
        dispatch: Callable[[str, str], None],
        dispatch_lost: Callable[[str, "MarkdownChangeHandler"], None]
    ):
        super().__init__()
        self.project_id = project_id
        self.root = root
        self._dispatch = dispatch
        self._dispatch_lost = dispatch_lost

    def on_any_event(self, event: FileSystemEvent) -> None:
        if is_root_removed(event, self.root):
            self._dispatch_lost(self.project_id, self)
        elif is_relevant_event(event):
            self._dispatch(self.project_id, _as_str(event.src_path))


@dataclass
class WatchHandle:
    """The registered watch for one project root."""
    project_id: str
    root: str
    watch: object
    handler: MarkdownChangeHandler
    started_at: datetime = field(default_factory=datetime.utcnow)


class WatchSupervisor:
    """
    Owns at most one watch per project id.

    ``on_change(project_id, path)`` runs on the event loop for every
    qualifying change of a watched project. Registration failures are
    logged and recorded and leave the project unwatched. A watch whose root
    disappears is dropped the same way and ``on_lost(project_id)`` is
    called, so the next :meth:`ensure_watching` registers it again.

    Observer mutations are serialized by one lock; bookkeeping stays on the
    event loop.
    """

    def __init__(
        self,
        on_change: Callable[[str, str], None],
        observer_factory: Callable[[], object] = Observer,
        errors: Optional[ErrorAggregator] = None,
        on_lost: Optional[Callable[[str], None]] = None
    ):
        self.on_change = on_change
        self.on_lost = on_lost
        self._observer_factory = observer_factory
        self._observer = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._handles: Dict[str, WatchHandle] = {}
        self._lock = asyncio.Lock()
        self._tasks: Set[asyncio.Task] = set()
        self.errors = errors

    def start(self) -> None:
        """Bind to the running loop and start the observer thread."""
        if self._observer is not None:
            return
        self._loop = asyncio.get_running_loop()
        self._observer = self._observer_factory()
        self._observer.start()
        logger.debug("Watch observer started")

    async def stop(self) -> None:
        """Remove every watch and stop the observer thread."""
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)

        async with self._lock:
            self._handles.clear()
            observer, self._observer = self._observer, None
            if observer is not None:
                await asyncio.to_thread(_shutdown_observer, observer)
                logger.debug("Watch observer stopped")

    async def ensure_watching(self, project_id: str, root: str) -> bool:
        """
        Watch ``root`` recursively for ``project_id`` unless already watched.

        A registered watch whose emitter has died counts as missing and is
        replaced. Returns True if the project is watched after the call.
        """
        async with self._lock:
            handle = self._handles.get(project_id)
            if handle is not None:
                if self._is_alive(handle):
                    return True
                self._drop(handle, "watch emitter stopped")
                await self._detach(handle)

            if self._observer is None:
                self.start()

            try:
                if not os.path.isdir(root):
                    raise WatchRegistrationError(project_id, root, "not a directory")
                handler = MarkdownChangeHandler(project_id, root, self._dispatch, self._dispatch_lost)
                watch = await asyncio.to_thread(
                    self._observer.schedule, handler, root, recursive=True
                )
            except Exception as e:
                logger.warning(f"Failed to watch {root} for project {project_id}: {e}")
                self._record(e, project_id=project_id, root=root)
                return False

            self._handles[project_id] = WatchHandle(project_id, root, watch, handler)
        logger.info(f"Watching {root} for project {project_id}")
        return True

    async def stop_watching(
        self,
        project_id: str,
        keep: Optional[Callable[[], bool]] = None
    ) -> bool:
        """
        Remove the watch for ``project_id``. Returns True if one was removed.

        ``keep`` is evaluated once the lock is held; if it returns True the
        watch is left in place.
        """
        async with self._lock:
            if keep is not None and keep():
                return False
            handle = self._handles.pop(project_id, None)
            if handle is None:
                return False
            await self._detach(handle)
        logger.info(f"Stopped watching {handle.root} for project {project_id}")
        return True

    def is_watching(self, project_id: str) -> bool:
        return project_id in self._handles

    def get_handle(self, project_id: str) -> Optional[WatchHandle]:
        return self._handles.get(project_id)

    def watched_projects(self) -> Dict[str, str]:
        return {pid: handle.root for pid, handle in self._handles.items()}

    def _is_alive(self, handle: WatchHandle) -> bool:
        for emitter in list(self._observer.emitters):
            if emitter.watch == handle.watch:
                return emitter.is_alive()
        return False

    def _drop(self, handle: WatchHandle, reason: str) -> None:
        """Forget a watch that no longer reports changes."""
        self._handles.pop(handle.project_id, None)
        error = WatchRegistrationError(handle.project_id, handle.root, reason)
        logger.warning(str(error))
        self._record(error, project_id=handle.project_id, root=handle.root)

    async def _detach(self, handle: WatchHandle) -> None:
        """Remove ``handle`` from the observer. Must hold the lock."""
        # Projects sharing a root share one watchdog watch; detach only our handler
        shared = any(other.watch == handle.watch for other in self._handles.values())
        try:
            if shared:
                await asyncio.to_thread(
                    self._observer.remove_handler_for_watch, handle.handler, handle.watch
                )
            else:
                await asyncio.to_thread(self._observer.unschedule, handle.watch)
        except Exception as e:
            # The emitter may already be gone if the root was deleted
            logger.debug(f"Unschedule for project {handle.project_id} failed: {e}")

    def _record(self, error: BaseException, **context) -> None:
        if self.errors is not None:
            self.errors.record_error(ErrorEvent.from_exception(
                "watcher", error, ErrorSeverity.MEDIUM, **context
            ))

    def _call_on_loop(self, callback, *args) -> None:
        """Observer thread: run ``callback`` on the event loop."""
        loop = self._loop
        if loop is None or loop.is_closed():
            return
        try:
            loop.call_soon_threadsafe(callback, *args)
        except RuntimeError:
            # Loop shut down between the check and the call
            pass

    def _dispatch(self, project_id: str, path: str) -> None:
        self._call_on_loop(self.handle_change, project_id, path)

    def _dispatch_lost(self, project_id: str, handler: MarkdownChangeHandler) -> None:
        self._call_on_loop(self._spawn_lost, project_id, handler)

    def _spawn_lost(self, project_id: str, handler: MarkdownChangeHandler) -> None:
        task = asyncio.get_running_loop().create_task(self.handle_lost(project_id, handler))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    def handle_change(self, project_id: str, path: str) -> None:
        """Event loop: route one qualifying change to ``on_change``."""
        if project_id not in self._handles:
            return
        try:
            self.on_change(project_id, path)
        except Exception as e:
            logger.exception(f"Change callback failed for project {project_id}")
            self._record(e, project_id=project_id, path=path)

    async def handle_lost(self, project_id: str, handler: MarkdownChangeHandler) -> None:
        """Event loop: drop the watch whose root was removed."""
        async with self._lock:
            handle = self._handles.get(project_id)
            if handle is None or handle.handler is not handler:
                return
            self._drop(handle, "watched root was removed")
            await self._detach(handle)

        if self.on_lost is not None:
            try:
                self.on_lost(project_id)
            except Exception:
                logger.exception(f"Watch-lost callback failed for project {project_id}")


def _shutdown_observer(observer) -> None:
    observer.unschedule_all()
    observer.stop()
    observer.join(timeout=5)
