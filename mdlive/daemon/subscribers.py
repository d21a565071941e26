"""Live-reload subscribers and the per-project registry that tracks them."""

import asyncio
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Callable, Dict, List, Optional

import ulid
from loguru import logger


class SyncMessage(Enum):
    """What an SSE handler should write next."""
    CONNECTED = "connected"
    RELOAD = "reload"
    PING = "ping"
    CLOSE = "close"

    def encode(self) -> bytes:
        """Server-Sent Events frame for this message."""
        if self is SyncMessage.PING:
            return b": ping\n\n"
        return f"data: {self.value}\n\n".encode()


@dataclass(eq=False)
class Subscriber:
    """
    One open live-reload connection bound to one project.

    Messages are queued from the event loop with :meth:`push` and drained by
    the connection's handler with :meth:`next_message`. Equality and hashing
    are by identity.
    """
    project_id: str
    id: str = field(default_factory=lambda: str(ulid.ULID()))
    connected_at: datetime = field(default_factory=datetime.utcnow)
    closed: bool = False
    _queue: asyncio.Queue = field(default_factory=asyncio.Queue, repr=False)

    def push(self, message: SyncMessage) -> bool:
        """Queue a message. Returns False once the subscriber is closed."""
        if self.closed:
            return False
        self._queue.put_nowait(message)
        return True

    def close(self) -> None:
        """Ask the handler to end the stream."""
        if not self.closed:
            self._queue.put_nowait(SyncMessage.CLOSE)
            self.closed = True

    async def next_message(self, timeout: float) -> SyncMessage:
        """Next queued message, or PING if nothing arrives within ``timeout``."""
        try:
            return await asyncio.wait_for(self._queue.get(), timeout)
        except asyncio.TimeoutError:
            return SyncMessage.PING

    @property
    def pending(self) -> int:
        return self._queue.qsize()


class SubscriberRegistry:
    """
    Maps project ids to their open subscribers, in registration order.

    ``on_empty(project_id)`` is called exactly once each time a project goes
    from one subscriber to none; the project key is removed before the call.
    """

    def __init__(self, on_empty: Optional[Callable[[str], None]] = None):
        self._subscribers: Dict[str, Dict[Subscriber, None]] = {}
        self.on_empty = on_empty

    def add_subscriber(self, project_id: str, subscriber: Subscriber) -> bool:
        """Register ``subscriber``. Returns True if it is the project's first."""
        project_subscribers = self._subscribers.setdefault(project_id, {})
        first = not project_subscribers
        project_subscribers[subscriber] = None
        logger.debug(
            f"Subscriber {subscriber.id} added to project {project_id} "
            f"({len(project_subscribers)} open)"
        )
        return first

    def remove_subscriber(self, project_id: str, subscriber: Subscriber) -> bool:
        """
        Unregister ``subscriber``. Safe to call more than once.

        Returns True if this call removed it.
        """
        project_subscribers = self._subscribers.get(project_id)
        if not project_subscribers or subscriber not in project_subscribers:
            return False

        del project_subscribers[subscriber]
        logger.debug(
            f"Subscriber {subscriber.id} removed from project {project_id} "
            f"({len(project_subscribers)} open)"
        )

        if not project_subscribers:
            del self._subscribers[project_id]
            if self.on_empty is not None:
                self.on_empty(project_id)
        return True

    def subscribers_of(self, project_id: str) -> List[Subscriber]:
        return list(self._subscribers.get(project_id, ()))

    def has_subscribers(self, project_id: str) -> bool:
        return bool(self._subscribers.get(project_id))

    def project_ids(self) -> List[str]:
        return list(self._subscribers)

    def count(self, project_id: Optional[str] = None) -> int:
        if project_id is not None:
            return len(self._subscribers.get(project_id, ()))
        return sum(len(s) for s in self._subscribers.values())

    def all_subscribers(self) -> List[Subscriber]:
        return [s for subs in self._subscribers.values() for s in subs]
