"""Prompt documents: schemas, builder and in-memory store."""

from .builder import build_document
from .schemas import (
    ExecutablePrompt,
    ExecutionRecord,
    ExecutionStep,
    PromptDocument,
    PromptStatus,
    StepResult,
    StepStatus,
)
from .store import DocumentStore

__all__ = [
    "DocumentStore",
    "ExecutablePrompt",
    "ExecutionRecord",
    "ExecutionStep",
    "PromptDocument",
    "PromptStatus",
    "StepResult",
    "StepStatus",
    "build_document",
]
