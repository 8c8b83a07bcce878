"""Status notifications pushed from the connection worker to the presentation layer."""
import logging
import threading
from collections import deque
from typing import Callable, Deque, List, Optional

from ..core.models import ConnectionState, NotificationLevel, StatusUpdate

logger = logging.getLogger(__name__)

Subscriber = Callable[[StatusUpdate], None]


class NotificationService:
    """In-process publish/subscribe channel for ``StatusUpdate`` messages."""

    def __init__(self, history_size: int = 200):
        self._subscribers: List[Subscriber] = []
        self._history: Deque[StatusUpdate] = deque(maxlen=history_size)
        self._lock = threading.Lock()

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        """Register ``callback``; returns a function that unsubscribes it."""

        with self._lock:
            self._subscribers.append(callback)

        def _unsubscribe() -> None:
            with self._lock:
                if callback in self._subscribers:
                    self._subscribers.remove(callback)

        return _unsubscribe

    def publish(self, update: StatusUpdate) -> None:
        with self._lock:
            self._history.append(update)
            subscribers = list(self._subscribers)

        for callback in subscribers:
            try:
                callback(update)
            except Exception:
                # A broken presentation callback must not fail the connection worker
                logger.exception("Status subscriber %r raised while handling an update", callback)

    def notify(
        self,
        state: ConnectionState,
        message: str,
        *,
        address: Optional[str] = None,
        level: NotificationLevel = NotificationLevel.INFO,
        busy: bool = True,
    ) -> StatusUpdate:
        update = StatusUpdate(state=state, message=message, address=address, level=level, busy=busy)
        self.publish(update)
        return update

    def recent(self, limit: Optional[int] = None) -> List[StatusUpdate]:
        with self._lock:
            items = list(self._history)
        if limit is not None:
            return items[-limit:]
        return items

    def clear(self) -> None:
        with self._lock:
            self._history.clear()


notification_service = NotificationService()
