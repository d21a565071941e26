"""Per-project debounce timers that coalesce bursts of file changes."""

import asyncio
from typing import Callable, Dict, Optional

from loguru import logger


class DebouncedNotifier:
    """
    Coalesces change notifications into one broadcast per quiet period.

    Each project has at most one pending timer. A notification that arrives
    while a timer is pending cancels it and schedules a fresh one, so a burst
    of N events closer together than ``window`` seconds fires ``broadcast``
    exactly once, ``window`` seconds after the last event.

    Must be used from the event loop thread.
    """

    def __init__(
        self,
        broadcast: Callable[[str], object],
        window: float = 0.1,
        loop: Optional[asyncio.AbstractEventLoop] = None
    ):
        self._broadcast = broadcast
        self.window = window
        self._loop = loop
        self._pending: Dict[str, asyncio.TimerHandle] = {}

    def notify(self, project_id: str) -> None:
        """Restart the quiet-period timer for ``project_id``."""
        handle = self._pending.pop(project_id, None)
        if handle is not None:
            handle.cancel()

        loop = self._loop or asyncio.get_running_loop()
        self._pending[project_id] = loop.call_later(self.window, self._fire, project_id)

    def _fire(self, project_id: str) -> None:
        # Clear first: a notify() from inside the broadcast must schedule anew
        self._pending.pop(project_id, None)
        try:
            self._broadcast(project_id)
        except Exception:
            logger.exception(f"Reload broadcast failed for project {project_id}")

    def cancel(self, project_id: str) -> bool:
        """Drop the pending timer for ``project_id``. Returns True if one existed."""
        handle = self._pending.pop(project_id, None)
        if handle is None:
            return False
        handle.cancel()
        logger.debug(f"Cancelled pending reload for project {project_id}")
        return True

    def is_pending(self, project_id: str) -> bool:
        return project_id in self._pending

    def pending_count(self) -> int:
        return len(self._pending)

    def close(self) -> None:
        """Cancel every pending timer."""
        for handle in self._pending.values():
            handle.cancel()
        self._pending.clear()
