import pytest

from planrunner.documents.schemas import ExecutablePrompt, PromptDocument, PromptStatus
from planrunner.errors import DocumentIntegrityError, UnsatisfiedDependency
from planrunner.executor.dependency_gate import unmet_dependencies, validate

from conftest import document, prompt


def test_prompt_without_dependencies_passes() -> None:
    doc = document(prompt(1, []))
    validate(doc, doc.prompts[0])


def test_unsatisfied_dependency_names_prompt_and_status() -> None:
    doc = document(prompt(1, []), prompt(2, [], [1]))

    with pytest.raises(UnsatisfiedDependency) as exc_info:
        validate(doc, doc.get_prompt(2))

    assert exc_info.value.dep_number == 1
    assert exc_info.value.dep_status == "pending"
    assert str(exc_info.value) == (
        "Dependency not satisfied: Prompt 1 (status: pending) must be completed before Prompt 2"
    )


def test_first_unmet_dependency_is_reported() -> None:
    doc = document(prompt(1, []), prompt(2, []), prompt(3, [], [1, 2]))
    doc.get_prompt(1).status = PromptStatus.COMPLETED
    doc.get_prompt(2).status = PromptStatus.FAILED

    with pytest.raises(UnsatisfiedDependency) as exc_info:
        validate(doc, doc.get_prompt(3))

    assert exc_info.value.dep_number == 2
    assert exc_info.value.dep_status == "failed"


def test_completed_dependencies_pass() -> None:
    doc = document(prompt(1, []), prompt(2, [], [1]))
    doc.get_prompt(1).status = PromptStatus.COMPLETED

    validate(doc, doc.get_prompt(2))
    assert unmet_dependencies(doc, doc.get_prompt(2)) == []


def test_missing_dependency_is_an_integrity_error() -> None:
    # Built directly, bypassing the builder's checks
    doc = PromptDocument(
        title="raw",
        prompts=[ExecutablePrompt(number=2, title="two", dependencies=[1])],
    )

    with pytest.raises(DocumentIntegrityError, match="missing prompt 1"):
        validate(doc, doc.prompts[0])


def test_forward_dependency_is_an_integrity_error() -> None:
    doc = PromptDocument(
        title="raw",
        prompts=[
            ExecutablePrompt(number=1, title="one", dependencies=[2]),
            ExecutablePrompt(number=2, title="two"),
        ],
    )

    with pytest.raises(DocumentIntegrityError, match="not lower-numbered"):
        validate(doc, doc.prompts[0])


def test_unmet_dependencies_lists_all() -> None:
    doc = document(prompt(1, []), prompt(2, []), prompt(3, [], [1, 2]))
    doc.get_prompt(2).status = PromptStatus.COMPLETED

    assert unmet_dependencies(doc, doc.get_prompt(3)) == [1]
