"""
Live reload for open browser tabs.

The service owns three pieces of per-project state: the subscriber
registry, the watch supervisor and the debounce timers. A project is
watched while it has at least one subscriber; Markdown changes restart the
project's debounce timer, and when the timer fires every current subscriber
gets one reload message.
"""

from typing import Any, Dict, Optional

from loguru import logger
from watchdog.observers import Observer

from .bus import Event, EventBus
from .errors import ErrorAggregator, ProjectNotFoundError
from .metrics import MetricsCollector
from .notifier import DebouncedNotifier
from .projects import ProjectStore
from .subscribers import Subscriber, SubscriberRegistry, SyncMessage
from .watcher import WatchSupervisor


class LiveSyncService:
    """Connects subscribers, watches their projects and pushes reloads."""

    def __init__(
        self,
        projects: ProjectStore,
        debounce_s: float = 0.1,
        event_bus: Optional[EventBus] = None,
        metrics: Optional[MetricsCollector] = None,
        errors: Optional[ErrorAggregator] = None,
        observer_factory=Observer
    ):
        self.projects = projects
        self.event_bus = event_bus
        self.metrics = metrics
        self.errors = errors or ErrorAggregator()

        self.registry = SubscriberRegistry(on_empty=self._on_project_idle)
        self.notifier = DebouncedNotifier(self.broadcast, window=debounce_s)
        self.supervisor = WatchSupervisor(
            on_change=self._on_file_change,
            observer_factory=observer_factory,
            errors=self.errors,
            on_lost=self._on_watch_lost
        )
        self._closed = False

    async def start(self) -> None:
        self.supervisor.start()
        logger.info("Live sync service started")

    async def close(self) -> None:
        """Cancel pending reloads, end every stream and stop watching."""
        if self._closed:
            return
        self._closed = True
        self.notifier.close()
        for subscriber in self.registry.all_subscribers():
            subscriber.close()
        await self.supervisor.stop()
        logger.info("Live sync service stopped")

    async def connect(self, project_id: Optional[str]) -> Subscriber:
        """
        Register a new subscriber for ``project_id`` and make sure the
        project's root is watched.

        Raises ProjectNotFoundError for a missing or unknown project id. A
        root that cannot be watched does not fail the connection; the
        subscriber simply receives no reloads until a later retry succeeds.
        """
        project = self.projects.find_project(project_id)
        if project is None:
            raise ProjectNotFoundError(project_id)

        subscriber = Subscriber(project_id=project.id)
        self.registry.add_subscriber(project.id, subscriber)
        self._count("sync.connected")
        self._emit("sync.subscribed", project_id=project.id, subscriber_id=subscriber.id)

        was_watching = self.supervisor.is_watching(project.id)
        if await self.supervisor.ensure_watching(project.id, project.path):
            if not was_watching:
                self._count("watch.started")
                self._emit("sync.watch_started", project_id=project.id, root=project.path)
        else:
            self._count("watch.failed")
            self._emit("sync.watch_failed", project_id=project.id, root=project.path)

        logger.info(
            f"Subscriber {subscriber.id} connected to project {project.id} "
            f"({self.registry.count(project.id)} open)"
        )
        return subscriber

    async def disconnect(self, subscriber: Subscriber) -> None:
        """
        Unregister ``subscriber``. Safe to call from several cleanup paths.

        The last subscriber of a project releases the project's watch.
        """
        project_id = subscriber.project_id
        removed = self.registry.remove_subscriber(project_id, subscriber)
        subscriber.close()
        if not removed:
            return

        self._count("sync.disconnected")
        self._emit("sync.unsubscribed", project_id=project_id, subscriber_id=subscriber.id)
        logger.info(f"Subscriber {subscriber.id} disconnected from project {project_id}")

        if not self.registry.has_subscribers(project_id):
            await self._release_watch(project_id)

    def broadcast(self, project_id: str) -> int:
        """Push one reload to each current subscriber of ``project_id``."""
        delivered = 0
        for subscriber in self.registry.subscribers_of(project_id):
            if subscriber.push(SyncMessage.RELOAD):
                delivered += 1

        if delivered:
            logger.debug(f"Reload pushed to {delivered} subscriber(s) of project {project_id}")
            self._count("sync.reload")
            self._count("sync.delivered", delivered)
            self._emit("sync.reload", project_id=project_id, delivered=delivered)
        return delivered

    def _on_file_change(self, project_id: str, path: str) -> None:
        logger.debug(f"Change in project {project_id}: {path}")
        self.notifier.notify(project_id)

    def _on_project_idle(self, project_id: str) -> None:
        self.notifier.cancel(project_id)

    async def _release_watch(self, project_id: str) -> None:
        # Re-checked under the supervisor lock; a subscriber may have reconnected
        stopped = await self.supervisor.stop_watching(
            project_id, keep=lambda: self.registry.has_subscribers(project_id)
        )
        if stopped:
            self._count("watch.stopped")
            self._emit("sync.watch_stopped", project_id=project_id)

    def _on_watch_lost(self, project_id: str) -> None:
        self.notifier.cancel(project_id)
        self._count("watch.lost")
        self._emit("sync.watch_lost", project_id=project_id)

    def _count(self, name: str, amount: int = 1) -> None:
        if self.metrics is not None:
            self.metrics.increment_counter(name, amount)

    def _emit(self, event_type: str, **data: Any) -> None:
        if self.event_bus is not None:
            self.event_bus.emit_nowait(Event(type=event_type, data=data, source="livesync"))

    def get_status(self) -> Dict[str, Any]:
        return {
            "subscribers": {
                pid: self.registry.count(pid) for pid in self.registry.project_ids()
            },
            "watching": self.supervisor.watched_projects(),
            "pending_reloads": self.notifier.pending_count()
        }
