"""Event bus - asynchronous fan-out of lifecycle events.

`publish()` only enqueues; a single dispatcher thread delivers events to
subscribers in publish order. A subscriber that raises is logged and
skipped, and never blocks the executor or other subscribers.
"""

import logging
import queue
import threading
import time
from typing import Callable, Optional

from .schemas import LifecycleEvent

logger = logging.getLogger(__name__)

Subscriber = Callable[[LifecycleEvent], None]

_STOP = object()


class EventBus:
    """Queue + dispatcher thread delivering events to subscribers."""

    def __init__(self):
        self._subscribers: dict[str, Subscriber] = {}
        self._lock = threading.Lock()
        self._queue: "queue.Queue[object]" = queue.Queue()
        self._sequence = 0
        self._closed = False
        self._thread = threading.Thread(
            target=self._dispatch_loop,
            name="event-dispatcher",
            daemon=True,
        )
        self._thread.start()

    def subscribe(self, name: str, subscriber: Subscriber) -> None:
        """Attach a subscriber under a unique name (replaces an existing one)."""
        with self._lock:
            self._subscribers[name] = subscriber
        logger.debug(f"Subscriber attached: {name}")

    def unsubscribe(self, name: str) -> bool:
        with self._lock:
            removed = self._subscribers.pop(name, None) is not None
        if removed:
            logger.debug(f"Subscriber detached: {name}")
        return removed

    def subscriber_names(self) -> list[str]:
        with self._lock:
            return list(self._subscribers)

    def publish(self, event: LifecycleEvent) -> LifecycleEvent:
        """Stamp the event with its sequence number and enqueue it."""
        with self._lock:
            if self._closed:
                logger.warning(f"Event bus closed, dropping {event.event_type.value} event")
                return event
            self._sequence += 1
            event.sequence = self._sequence
            self._queue.put(event)
        return event

    def flush(self, timeout: Optional[float] = None) -> bool:
        """Block until every event published so far has been delivered.

        Returns False if the timeout expired first.
        """
        deadline = time.monotonic() + timeout if timeout is not None else None
        while self._queue.unfinished_tasks:
            if deadline is not None and time.monotonic() >= deadline:
                return False
            time.sleep(0.01)
        return True

    def close(self, timeout: float = 5.0) -> None:
        """Deliver what is queued, then stop the dispatcher thread."""
        with self._lock:
            if self._closed:
                return
            self._closed = True
            self._queue.put(_STOP)
        self._thread.join(timeout)

    def _dispatch_loop(self) -> None:
        while True:
            item = self._queue.get()
            try:
                if item is _STOP:
                    return
                self._deliver(item)
            finally:
                self._queue.task_done()

    def _deliver(self, event: LifecycleEvent) -> None:
        with self._lock:
            subscribers = list(self._subscribers.items())
        for name, subscriber in subscribers:
            try:
                subscriber(event)
            except Exception as e:
                logger.warning(
                    f"Subscriber {name} failed on {event.event_type.value} "
                    f"for {event.execution_id}: {e}"
                )
