"""Dependency gate: a prompt may run only after its prerequisites completed."""

from planrunner.documents.schemas import ExecutablePrompt, PromptDocument, PromptStatus
from planrunner.errors import DocumentIntegrityError, UnsatisfiedDependency


def validate(document: PromptDocument, prompt: ExecutablePrompt) -> None:
    """Raise on the first dependency of `prompt` that is not Completed.

    Dependencies are checked in declaration order. A dependency that names a
    missing prompt, or one that is not lower-numbered, means the document
    was built wrong and raises DocumentIntegrityError instead.
    """
    for dep_number in prompt.dependencies:
        if dep_number >= prompt.number:
            raise DocumentIntegrityError(
                f"Prompt {prompt.number} depends on prompt {dep_number}, "
                f"which is not lower-numbered"
            )
        dep = document.get_prompt(dep_number)
        if dep is None:
            raise DocumentIntegrityError(
                f"Prompt {prompt.number} depends on missing prompt {dep_number}"
            )
        if dep.status != PromptStatus.COMPLETED:
            raise UnsatisfiedDependency(prompt.number, dep_number, dep.status.value)


def unmet_dependencies(document: PromptDocument, prompt: ExecutablePrompt) -> list[int]:
    """All dependency numbers not yet Completed (missing ones included)."""
    unmet = []
    for dep_number in prompt.dependencies:
        dep = document.get_prompt(dep_number)
        if dep is None or dep.status != PromptStatus.COMPLETED:
            unmet.append(dep_number)
    return unmet
