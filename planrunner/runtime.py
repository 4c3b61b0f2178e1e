"""Runtime container - owns every long-lived component of the service.

One PlanRunner is built per process (or per test) and handed to whoever
needs it; nothing reaches for a module-level global.
"""

import logging
import threading
from pathlib import Path
from typing import Optional

import httpx

from planrunner.commands.service import CommandService
from planrunner.config import ExecutorConfig, ServiceSettings
from planrunner.documents.store import DocumentStore
from planrunner.events.bus import EventBus
from planrunner.events.subscribers import EventLog, LoggingSubscriber, WebhookSubscriber
from planrunner.executor.prompt_runner import PromptExecutor
from planrunner.executor.tracker import ExecutionTracker

logger = logging.getLogger(__name__)


class PlanRunner:
    """Store, tracker, event bus, executor and command service, wired together."""

    def __init__(
        self,
        settings: Optional[ServiceSettings] = None,
        http_client: Optional[httpx.Client] = None,
    ):
        self.settings = settings or ServiceSettings()

        documents_dir = Path(self.settings.documents_dir) if self.settings.documents_dir else None
        self.store = DocumentStore(documents_dir)
        self.tracker = ExecutionTracker()

        self.bus = EventBus()
        self.event_log = EventLog(max_events=self.settings.event_history)
        self.bus.subscribe("event-log", self.event_log)
        self.bus.subscribe("logging", LoggingSubscriber())

        self.http_client = http_client or httpx.Client(follow_redirects=False)
        if self.settings.callback_urls:
            self.bus.subscribe(
                "callbacks",
                WebhookSubscriber(self.settings.callback_urls, name="callbacks", client=self.http_client),
            )

        self.executor = PromptExecutor(
            store=self.store,
            tracker=self.tracker,
            bus=self.bus,
            config=self.settings.executor,
            http_client=self.http_client,
        )
        self.commands = CommandService(
            executor=self.executor,
            store=self.store,
            bus=self.bus,
            api_token=self.settings.api_token,
            http_client=self.http_client,
        )
        self._stop = threading.Event()
        self._rescanner: Optional[threading.Thread] = None

    @classmethod
    def from_executor_config(cls, config: ExecutorConfig, **settings) -> "PlanRunner":
        return cls(ServiceSettings(executor=config, **settings))

    def start(self) -> None:
        """Load plan files from the documents directory; rescan it periodically if configured."""
        self.store.load()
        logger.info(
            f"Plan runner ready: {self.store.count()} documents, "
            f"max_concurrent={self.settings.executor.max_concurrent}, "
            f"auth {'enabled' if self.settings.api_token else 'disabled'}"
        )
        if self.settings.rescan_interval and self.store.definitions_dir is not None:
            self._rescanner = threading.Thread(target=self._rescan_loop, name="plan-rescan", daemon=True)
            self._rescanner.start()

    def _rescan_loop(self) -> None:
        while not self._stop.wait(self.settings.rescan_interval):
            try:
                self.store.rescan()
            except Exception as e:
                logger.error(f"Rescan of {self.store.definitions_dir} failed: {e}", exc_info=True)

    def close(self) -> None:
        """Stop the rescan thread, drain pending events and release the HTTP client."""
        self._stop.set()
        if self._rescanner is not None:
            self._rescanner.join(timeout=5.0)
        active = self.tracker.count()
        if active:
            logger.warning(f"Shutting down with {active} execution(s) still in flight")
        self.bus.flush(timeout=5.0)
        self.bus.close()
        self.http_client.close()
