"""Inbound command schemas (webhook-style automation requests)."""

import re
from enum import Enum
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, Field, model_validator


class ExecutePromptCommand(BaseModel):
    type: Literal["execute_prompt"] = "execute_prompt"
    document_name: str = Field(..., description="Document id or title")
    prompt_number: int = Field(..., ge=1)


class ExecutePromptSequenceCommand(BaseModel):
    type: Literal["execute_prompt_sequence"] = "execute_prompt_sequence"
    document_name: str
    prompt_numbers: list[int] = Field(..., min_length=1)
    stop_on_error: bool = True


class GetDocumentInfoCommand(BaseModel):
    type: Literal["get_document_info"] = "get_document_info"
    document_name: str


class GetExecutionStatusCommand(BaseModel):
    type: Literal["get_execution_status"] = "get_execution_status"
    execution_id: str


class CancelExecutionCommand(BaseModel):
    type: Literal["cancel_execution"] = "cancel_execution"
    execution_id: str


class ListDocumentsCommand(BaseModel):
    type: Literal["list_documents"] = "list_documents"


class ProcessDocumentCommand(BaseModel):
    """Load a structured plan file into the store."""

    type: Literal["process_document"] = "process_document"
    document_path: str


Command = Annotated[
    Union[
        ExecutePromptCommand,
        ExecutePromptSequenceCommand,
        GetDocumentInfoCommand,
        GetExecutionStatusCommand,
        CancelExecutionCommand,
        ListDocumentsCommand,
        ProcessDocumentCommand,
    ],
    Field(discriminator="type"),
]


def _snake_case(name: str) -> str:
    return re.sub(r"(?<!^)(?=[A-Z])", "_", name).lower()


class CommandRequest(BaseModel):
    """Envelope for one inbound command."""

    request_id: Optional[str] = Field(
        default=None,
        description="Caller's correlation id, echoed in the response",
    )
    workflow_id: Optional[str] = None
    command: Command
    callback_urls: list[str] = Field(
        default_factory=list,
        description="URLs that receive lifecycle events of executions this command starts",
    )
    auth_token: Optional[str] = None

    @model_validator(mode="before")
    @classmethod
    def _normalize_command_type(cls, data: Any) -> Any:
        # Accept "ExecutePrompt" as well as "execute_prompt"
        if isinstance(data, dict) and isinstance(data.get("command"), dict):
            raw = data["command"].get("type")
            if isinstance(raw, str) and raw and raw[0].isupper():
                data = dict(data)
                data["command"] = {**data["command"], "type": _snake_case(raw)}
        return data


class ResponseStatus(str, Enum):
    SUCCESS = "success"
    PROCESSING = "processing"
    ERROR = "error"
    NOT_FOUND = "not_found"
    UNAUTHORIZED = "unauthorized"
    CONFLICT = "conflict"


class CommandResponse(BaseModel):
    """Result of one command."""

    status: ResponseStatus
    message: str
    request_id: Optional[str] = None
    execution_id: Optional[str] = None
    data: Optional[Any] = None
