"""Lifecycle event schemas."""

import uuid
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field

from planrunner.documents.schemas import utc_now


class EventType(str, Enum):
    """Lifecycle event kinds."""
    EXECUTION_STARTED = "execution_started"
    STEP_COMPLETED = "step_completed"
    STEP_FAILED = "step_failed"
    EXECUTION_COMPLETED = "execution_completed"
    EXECUTION_FAILED = "execution_failed"
    EXECUTION_CANCELLED = "execution_cancelled"
    STATUS_UPDATE = "status_update"


TERMINAL_EVENT_TYPES = frozenset(
    {
        EventType.EXECUTION_COMPLETED,
        EventType.EXECUTION_FAILED,
        EventType.EXECUTION_CANCELLED,
    }
)


class EventData(BaseModel):
    """Payload carried by every lifecycle event."""

    document_id: str
    document_title: str
    prompt_number: int
    prompt_title: str = ""
    step_number: Optional[int] = None
    step_description: Optional[str] = None
    attempt: Optional[int] = None
    progress_percent: Optional[float] = None
    estimated_remaining_time: Optional[float] = Field(
        default=None,
        description="Seconds, from the prompt estimate scaled by remaining progress",
    )
    output: Optional[str] = None
    error: Optional[str] = None
    metadata: dict[str, Any] = Field(default_factory=dict)


class LifecycleEvent(BaseModel):
    """One published event."""

    event_id: str = Field(default_factory=lambda: f"evt-{uuid.uuid4().hex[:12]}")
    sequence: int = Field(default=0, description="Monotonic number assigned by the bus")
    event_type: EventType
    execution_id: str
    timestamp: str = Field(default_factory=utc_now)
    data: EventData

    @property
    def is_terminal(self) -> bool:
        return self.event_type in TERMINAL_EVENT_TYPES
