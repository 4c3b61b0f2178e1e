"""Executor-side schemas for in-flight executions and sequences.

The document schemas describe plans; these describe what happens while a
prompt (or a run of prompts) is executing.
"""

import uuid
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field

from planrunner.documents.schemas import PromptStatus, StepResult, utc_now


def new_execution_id() -> str:
    return f"exec-{uuid.uuid4().hex[:12]}"


def new_sequence_id() -> str:
    return f"seq-{uuid.uuid4().hex[:12]}"


class ActiveExecution(BaseModel):
    """Tracker row for one in-flight prompt execution.

    A row is registered Pending at admission and stays Pending while the
    execution is queued for a concurrency slot. It turns Running when the
    first step is about to start.
    """

    execution_id: str = Field(default_factory=new_execution_id)
    document_id: str
    prompt_number: int
    started_at: str = Field(default_factory=utc_now)
    current_step: int = Field(default=1, description="1-based cursor into the prompt's steps")
    total_steps: int = 0
    step_results: list[StepResult] = Field(default_factory=list)
    status: PromptStatus = Field(
        default=PromptStatus.PENDING,
        description="Pending: admitted and queued for a concurrency slot. Running: executing steps",
    )
    error: Optional[str] = None

    @property
    def progress_percent(self) -> float:
        if self.total_steps <= 0:
            return 100.0 if self.status == PromptStatus.COMPLETED else 0.0
        done = min(self.current_step - 1, self.total_steps)
        return round(100.0 * done / self.total_steps, 1)


class SequenceStatus(str, Enum):
    """Sequence lifecycle states."""
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    STOPPED = "stopped"


class SequenceOutcome(BaseModel):
    """What happened to one prompt of a sequence."""

    prompt_number: int
    execution_id: Optional[str] = None
    status: PromptStatus = PromptStatus.PENDING
    error: Optional[str] = None


class SequenceRun(BaseModel):
    """A run of several prompts in order."""

    sequence_id: str = Field(default_factory=new_sequence_id)
    document_id: str
    prompt_numbers: list[int]
    stop_on_error: bool = True
    status: SequenceStatus = SequenceStatus.RUNNING
    outcomes: list[SequenceOutcome] = Field(default_factory=list)
    started_at: str = Field(default_factory=utc_now)
    completed_at: Optional[str] = None


# --- Request / response models ---


class StartExecutionRequest(BaseModel):
    """Request to execute one prompt."""

    document_id: str = Field(..., description="Document id or title")
    prompt_number: int = Field(..., ge=1)


class StartSequenceRequest(BaseModel):
    """Request to execute several prompts in order."""

    document_id: str = Field(..., description="Document id or title")
    prompt_numbers: list[int] = Field(..., min_length=1)
    stop_on_error: bool = True


class ExecutionStartedResponse(BaseModel):
    execution_id: str
    document_id: str
    prompt_number: int
    status: PromptStatus


class SequenceStartedResponse(BaseModel):
    sequence_id: str
    document_id: str
    prompt_numbers: list[int]
    status: SequenceStatus
