"""Schemas for prompt documents.

A PromptDocument is the parser collaborator's output: an ordered list of
ExecutablePrompts, each with dependency edges to lower-numbered prompts and
an ordered list of typed ExecutionSteps.

Step payloads are a discriminated union on `action_type` so that a missing
or malformed parameter is rejected when the document is built, not when the
step is dispatched.
"""

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Literal, Optional, Union

from pydantic import BaseModel, Field, model_validator


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


class PromptStatus(str, Enum):
    """Prompt lifecycle states."""
    PENDING = "pending"
    READY = "ready"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"
    CANCELLED = "cancelled"


TERMINAL_PROMPT_STATUSES = frozenset(
    {PromptStatus.COMPLETED, PromptStatus.FAILED, PromptStatus.CANCELLED}
)


class StepStatus(str, Enum):
    """Step execution states."""
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"


# --- Typed step actions ---


class CreateFileAction(BaseModel):
    """Write a file, overwriting it if present."""

    action_type: Literal["create_file"] = "create_file"
    file: str = Field(..., min_length=1)
    content: Optional[str] = Field(
        default=None,
        description="File body; a generated header is written when omitted",
    )


class ModifyFileAction(BaseModel):
    """Mutate an existing file."""

    action_type: Literal["modify_file"] = "modify_file"
    file: str = Field(..., min_length=1)
    mode: Literal["append", "replace"] = "append"
    content: Optional[str] = Field(
        default=None,
        description="Text to append, or the replacement text for mode=replace",
    )
    search: Optional[str] = Field(
        default=None,
        description="Text to replace (mode=replace only)",
    )

    @model_validator(mode="after")
    def _check_replace(self) -> "ModifyFileAction":
        if self.mode == "replace" and not self.search:
            raise ValueError("modify_file with mode=replace requires 'search'")
        return self


class ExecuteCommandAction(BaseModel):
    """Run a command through the platform shell."""

    action_type: Literal["execute_command"] = "execute_command"
    command: str = Field(..., min_length=1)


class CreateDirectoryAction(BaseModel):
    """Create a directory tree (idempotent)."""

    action_type: Literal["create_directory"] = "create_directory"
    directory: str = Field(..., min_length=1)


class GitOperationAction(BaseModel):
    """One git invocation in the working directory."""

    action_type: Literal["git_operation"] = "git_operation"
    operation: Literal["init", "status", "add", "commit"]
    files: str = "."
    message: str = "automated commit"


class ExternalToolAction(BaseModel):
    """Drive an external developer tool (editor CLI)."""

    action_type: Literal["external_tool"] = "external_tool"
    action: Literal["open", "install_extension"]
    path: Optional[str] = None
    extension: Optional[str] = None

    @model_validator(mode="after")
    def _check_action_params(self) -> "ExternalToolAction":
        if self.action == "open" and not self.path:
            raise ValueError("external_tool action 'open' requires 'path'")
        if self.action == "install_extension" and not self.extension:
            raise ValueError("external_tool action 'install_extension' requires 'extension'")
        return self


class APICallAction(BaseModel):
    """HTTP request to a remote endpoint."""

    action_type: Literal["api_call"] = "api_call"
    url: str = Field(..., min_length=1)
    method: str = "GET"
    headers: dict[str, str] = Field(default_factory=dict)
    body: Optional[str] = None

    @model_validator(mode="after")
    def _normalize_method(self) -> "APICallAction":
        self.method = self.method.strip().upper() or "GET"
        if not self.url.startswith(("http://", "https://")):
            raise ValueError(f"api_call url must be http(s): {self.url}")
        return self


class DatabaseOperationAction(BaseModel):
    """SQL against the configured (or step-specified) database."""

    action_type: Literal["database_operation"] = "database_operation"
    operation: Literal["query", "execute", "script", "ping"]
    statement: Optional[str] = None
    database: Optional[str] = Field(
        default=None,
        description="sqlite path or postgres:// URL overriding the executor default",
    )

    @model_validator(mode="after")
    def _check_statement(self) -> "DatabaseOperationAction":
        if self.operation != "ping" and not self.statement:
            raise ValueError(f"database_operation '{self.operation}' requires 'statement'")
        return self


class TestExecutionAction(BaseModel):
    """Run a test command; non-zero exit is a failure."""

    __test__ = False  # not a pytest test class

    action_type: Literal["test_execution"] = "test_execution"
    command: str = Field(..., min_length=1)


class ValidationAction(BaseModel):
    """Check a condition on the host."""

    action_type: Literal["validation"] = "validation"
    validation_type: Literal["file_exists", "directory_exists", "file_contains"] = "file_exists"
    target: str = Field(..., min_length=1)
    expected: Optional[str] = None

    @model_validator(mode="after")
    def _check_expected(self) -> "ValidationAction":
        if self.validation_type == "file_contains" and self.expected is None:
            raise ValueError("validation 'file_contains' requires 'expected'")
        return self


class CustomAction(BaseModel):
    """Extension point: always succeeds, echoing its name and description."""

    action_type: Literal["custom"] = "custom"
    name: str = Field(..., min_length=1)


StepAction = Annotated[
    Union[
        CreateFileAction,
        ModifyFileAction,
        ExecuteCommandAction,
        CreateDirectoryAction,
        GitOperationAction,
        ExternalToolAction,
        APICallAction,
        DatabaseOperationAction,
        TestExecutionAction,
        ValidationAction,
        CustomAction,
    ],
    Field(discriminator="action_type"),
]


# --- Results and history ---


class StepResult(BaseModel):
    """Outcome of one attempt at one step."""

    step_number: int
    attempt: int = Field(default=1, description="1 for the first try, 2+ for retries")
    status: StepStatus
    output: str = ""
    error: Optional[str] = None
    retryable: Optional[bool] = None
    duration_ms: int = 0
    started_at: str = Field(default_factory=utc_now)


class ExecutionRecord(BaseModel):
    """A finished execution, kept on the prompt as history."""

    execution_id: str
    status: PromptStatus
    started_at: str
    completed_at: str = Field(default_factory=utc_now)
    output: str = ""
    error: Optional[str] = None
    step_results: list[StepResult] = Field(default_factory=list)

    @property
    def duration_seconds(self) -> float:
        try:
            start = datetime.fromisoformat(self.started_at)
            end = datetime.fromisoformat(self.completed_at)
        except (ValueError, TypeError):
            return 0.0
        return max((end - start).total_seconds(), 0.0)


class ExecutionSummary(BaseModel):
    """Aggregate of prompt outcomes for a document."""

    total_time: float = Field(default=0.0, description="Seconds spent across finished executions")
    completed_prompts: int = 0
    failed_prompts: int = 0
    success_rate: float = 0.0
    last_run: Optional[str] = None


# --- Document model ---


class ExecutionStep(BaseModel):
    """One typed action within a prompt."""

    step_number: int = Field(..., ge=1)
    description: str = ""
    action: StepAction
    status: StepStatus = StepStatus.PENDING

    @property
    def action_type(self) -> str:
        return self.action.action_type


class ExecutablePrompt(BaseModel):
    """One unit of work within a document."""

    number: int = Field(..., ge=1)
    title: str
    description: str = ""
    requirements: list[str] = Field(default_factory=list)
    dependencies: list[int] = Field(
        default_factory=list,
        description="Prompt numbers that must be Completed before this one runs",
    )
    estimated_time: float = Field(default=0.0, ge=0, description="Estimated duration in seconds")
    tags: list[str] = Field(default_factory=list)
    steps: list[ExecutionStep] = Field(default_factory=list)
    status: PromptStatus = PromptStatus.PENDING
    executions: list[ExecutionRecord] = Field(default_factory=list)

    def ordered_steps(self) -> list[ExecutionStep]:
        return sorted(self.steps, key=lambda s: s.step_number)


class DocumentMetadata(BaseModel):
    """Aggregate document metadata."""

    prompt_count: int = 0
    total_estimated_time: float = Field(default=0.0, description="Sum of prompt estimates (seconds)")
    version: str = "1.0"
    author: Optional[str] = None
    project: Optional[str] = None
    tags: list[str] = Field(default_factory=list)


class PromptDocument(BaseModel):
    """A parsed prompt plan."""

    id: str = Field(default_factory=lambda: f"doc-{uuid.uuid4().hex[:12]}")
    title: str
    source_path: Optional[str] = None
    prompts: list[ExecutablePrompt] = Field(default_factory=list)
    metadata: DocumentMetadata = Field(default_factory=DocumentMetadata)
    created_at: str = Field(default_factory=utc_now)
    last_execution: Optional[ExecutionSummary] = None

    def get_prompt(self, number: int) -> Optional[ExecutablePrompt]:
        for prompt in self.prompts:
            if prompt.number == number:
                return prompt
        return None


class PromptSummary(BaseModel):
    """Lightweight prompt info for listings."""

    number: int
    title: str
    status: PromptStatus
    dependencies: list[int] = Field(default_factory=list)
    unmet_dependencies: list[int] = Field(
        default_factory=list,
        description="Dependencies not yet Completed; the prompt can start once this is empty",
    )
    step_count: int = 0
    estimated_time: float = 0.0
    tags: list[str] = Field(default_factory=list)


class DocumentSummary(BaseModel):
    """Lightweight document info for listings."""

    id: str
    title: str
    prompt_count: int
    completed_prompts: int = 0
    total_estimated_time: float = 0.0
    tags: list[str] = Field(default_factory=list)
    source_path: Optional[str] = None
