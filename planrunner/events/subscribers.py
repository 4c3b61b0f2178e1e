"""Built-in event subscribers: in-memory log, logging, outbound webhooks."""

import logging
import threading
from collections import deque
from typing import Optional

import httpx

from .bus import EventBus
from .schemas import EventType, LifecycleEvent

logger = logging.getLogger(__name__)


class EventLog:
    """Bounded in-memory history of events.

    Backs polling (`since`), per-execution queries and the SSE stream
    (`wait_since` blocks until something newer arrives).
    """

    def __init__(self, max_events: int = 1000):
        self._events: deque[LifecycleEvent] = deque(maxlen=max_events)
        self._cond = threading.Condition()

    def __call__(self, event: LifecycleEvent) -> None:
        with self._cond:
            self._events.append(event)
            self._cond.notify_all()

    def recent(self, limit: int = 100) -> list[LifecycleEvent]:
        with self._cond:
            events = list(self._events)
        return events[-limit:] if limit > 0 else []

    def since(self, sequence: int) -> list[LifecycleEvent]:
        """Events with a sequence number greater than `sequence`."""
        with self._cond:
            return [e for e in self._events if e.sequence > sequence]

    def for_execution(self, execution_id: str) -> list[LifecycleEvent]:
        with self._cond:
            return [e for e in self._events if e.execution_id == execution_id]

    def wait_since(self, sequence: int, timeout: float) -> list[LifecycleEvent]:
        with self._cond:
            self._cond.wait_for(
                lambda: any(e.sequence > sequence for e in self._events),
                timeout=timeout,
            )
            return [e for e in self._events if e.sequence > sequence]

    @property
    def last_sequence(self) -> int:
        with self._cond:
            return self._events[-1].sequence if self._events else 0

    def __len__(self) -> int:
        with self._cond:
            return len(self._events)


class LoggingSubscriber:
    """Writes every event to the application log."""

    def __call__(self, event: LifecycleEvent) -> None:
        data = event.data
        where = f"{data.document_title} #{data.prompt_number}"
        if data.step_number is not None:
            where += f" step {data.step_number}"

        if event.event_type in (EventType.STEP_FAILED, EventType.EXECUTION_FAILED):
            logger.error(f"[{event.execution_id}] {event.event_type.value}: {where}: {data.error}")
        elif event.event_type == EventType.STATUS_UPDATE:
            logger.debug(
                f"[{event.execution_id}] {where}: {data.progress_percent or 0:.0f}% complete"
            )
        else:
            logger.info(f"[{event.execution_id}] {event.event_type.value}: {where}")


class WebhookSubscriber:
    """POSTs each event as JSON to a set of callback URLs.

    With `execution_id` set, only that execution's events are sent and the
    subscriber detaches itself from `bus` after the terminal event. With
    `document_id` (and optionally `prompt_numbers`) set, only events of those
    prompts are sent; the owner detaches it.
    """

    def __init__(
        self,
        urls: list[str],
        name: str = "webhook",
        client: Optional[httpx.Client] = None,
        execution_id: Optional[str] = None,
        document_id: Optional[str] = None,
        prompt_numbers: Optional[list[int]] = None,
        bus: Optional[EventBus] = None,
        timeout: float = 10.0,
    ):
        self.urls = list(urls)
        self.name = name
        self.execution_id = execution_id
        self.document_id = document_id
        self.prompt_numbers = set(prompt_numbers) if prompt_numbers else None
        self._bus = bus
        self._client = client or httpx.Client(timeout=timeout)

    def accepts(self, event: LifecycleEvent) -> bool:
        if self.execution_id is not None and event.execution_id != self.execution_id:
            return False
        if self.document_id is not None and event.data.document_id != self.document_id:
            return False
        if self.prompt_numbers is not None and event.data.prompt_number not in self.prompt_numbers:
            return False
        return True

    def __call__(self, event: LifecycleEvent) -> None:
        if not self.accepts(event):
            return

        payload = event.model_dump(mode="json")
        for url in self.urls:
            try:
                response = self._client.post(url, json=payload)
                response.raise_for_status()
            except httpx.HTTPStatusError as e:
                logger.warning(
                    f"Webhook {url} rejected {event.event_type.value}: "
                    f"HTTP {e.response.status_code}"
                )
            except httpx.HTTPError as e:
                logger.warning(f"Webhook {url} unreachable for {event.event_type.value}: {e}")

        if self.execution_id is not None and event.is_terminal and self._bus is not None:
            self._bus.unsubscribe(self.name)
