"""Live-sync and search services of the mdlive daemon."""

from .livesync import LiveSyncService
from .notifier import DebouncedNotifier
from .paths import is_within
from .scanner import scan_markdown
from .search import MatchType, SearchEngine, SearchResult, search_files
from .subscribers import Subscriber, SubscriberRegistry, SyncMessage
from .watcher import WatchSupervisor

__all__ = [
    "DebouncedNotifier",
    "LiveSyncService",
    "MatchType",
    "SearchEngine",
    "SearchResult",
    "Subscriber",
    "SubscriberRegistry",
    "SyncMessage",
    "WatchSupervisor",
    "is_within",
    "scan_markdown",
    "search_files",
]
