"""Build PromptDocuments from structured plan data.

Accepts a plan parser's output as plain dicts (loaded from YAML,
JSON or an HTTP body) and turns it into a validated PromptDocument.

Two step shapes are accepted:

    {"step_number": 1, "action": {"action_type": "create_file", "file": "a.txt"}}
    {"step_number": 1, "action_type": "CreateFile", "parameters": {"file": "a.txt"}}

The second is the flat "action type + string parameters" form. It is
converted to the typed payload here so a missing parameter fails the build.
"""

import logging
from typing import Any, Optional

from pydantic import TypeAdapter, ValidationError

from planrunner.errors import DocumentValidationError

from .schemas import (
    DocumentMetadata,
    ExecutablePrompt,
    ExecutionStep,
    PromptDocument,
    StepAction,
)

logger = logging.getLogger(__name__)

_action_adapter = TypeAdapter(StepAction)

# Normalized (lowercase, no separators) spelling -> canonical action_type
_ACTION_ALIASES = {
    "createfile": "create_file",
    "modifyfile": "modify_file",
    "executecommand": "execute_command",
    "createdirectory": "create_directory",
    "gitoperation": "git_operation",
    "externaltool": "external_tool",
    "vscodeaction": "external_tool",
    "apicall": "api_call",
    "databaseoperation": "database_operation",
    "testexecution": "test_execution",
    "validation": "validation",
    "custom": "custom",
}

# Flat parameter names that differ from the typed field names
_PARAMETER_RENAMES = {
    "validation": {"type": "validation_type", "file": "target", "path": "target"},
    "database_operation": {"query": "statement", "sql": "statement"},
}


def normalize_action_type(raw: str) -> str:
    """Map any accepted spelling of an action type onto its canonical name.

    `Custom(name)` is accepted and treated as `custom`.
    """
    base = raw.split("(", 1)[0]
    key = base.replace("_", "").replace("-", "").replace(" ", "").lower()
    if key not in _ACTION_ALIASES:
        raise DocumentValidationError(f"Unknown action type: {raw}")
    return _ACTION_ALIASES[key]


def action_from_parameters(
    action_type: str,
    parameters: Optional[dict[str, Any]] = None,
) -> StepAction:
    """Convert the flat {action_type, parameters} form to a typed payload."""
    canonical = normalize_action_type(action_type)
    params = dict(_mapping(parameters, f"{canonical} parameters"))

    renames = _PARAMETER_RENAMES.get(canonical, {})
    for old, new in renames.items():
        if old in params and new not in params:
            params[new] = params.pop(old)

    if canonical == "custom" and "name" not in params:
        # Custom(deploy) carries its name inline
        if "(" in action_type and action_type.endswith(")"):
            params["name"] = action_type[action_type.index("(") + 1:-1]

    params["action_type"] = canonical
    return _validate_action(params)


def _validate_action(data: dict[str, Any]) -> StepAction:
    try:
        return _action_adapter.validate_python(data)
    except ValidationError as e:
        raise DocumentValidationError(
            f"Invalid {data.get('action_type', 'step')} action: {_first_error(e)}"
        ) from e


def _mapping(value: Any, what: str) -> dict[str, Any]:
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise DocumentValidationError(f"{what} must be a mapping, got {type(value).__name__}")
    return value


def _sequence(value: Any, what: str) -> list[Any]:
    if value is None:
        return []
    if not isinstance(value, list):
        raise DocumentValidationError(f"{what} must be a list, got {type(value).__name__}")
    return value


def _first_error(e: ValidationError) -> str:
    errors = e.errors()
    if not errors:
        return str(e)
    err = errors[0]
    loc = ".".join(str(p) for p in err.get("loc", ()) if p)
    return f"{loc}: {err.get('msg')}" if loc else str(err.get("msg"))


def build_step(data: dict[str, Any], index: int) -> ExecutionStep:
    """Build one step. `index` (1-based) is used when step_number is absent."""
    data = _mapping(data, f"Step {index}")
    step_number = data.get("step_number", index)
    description = data.get("description", "")

    if "action" in data and isinstance(data["action"], dict):
        action_data = dict(data["action"])
        raw_type = action_data.get("action_type")
        if not raw_type:
            raise DocumentValidationError(f"Step {step_number}: action has no action_type")
        action_data["action_type"] = normalize_action_type(str(raw_type))
        action = _validate_action(action_data)
    elif "action_type" in data:
        action = action_from_parameters(str(data["action_type"]), data.get("parameters"))
    else:
        raise DocumentValidationError(f"Step {step_number}: no action given")

    try:
        return ExecutionStep(
            step_number=step_number,
            description=description,
            action=action,
        )
    except ValidationError as e:
        raise DocumentValidationError(f"Step {step_number}: {_first_error(e)}") from e


def build_prompt(data: dict[str, Any]) -> ExecutablePrompt:
    """Build one prompt and validate its step numbering."""
    data = _mapping(data, "Prompt")
    number = data.get("number")
    if number is None:
        raise DocumentValidationError("Prompt is missing 'number'")

    raw_steps = _sequence(data.get("steps"), f"Prompt {number} steps")
    steps = [build_step(s, i) for i, s in enumerate(raw_steps, start=1)]
    seen: set[int] = set()
    for step in steps:
        if step.step_number in seen:
            raise DocumentValidationError(
                f"Prompt {number}: duplicate step number {step.step_number}"
            )
        seen.add(step.step_number)

    fields = {k: v for k, v in data.items() if k not in ("steps", "status", "executions")}
    fields.setdefault("title", f"Prompt {number}")
    try:
        prompt = ExecutablePrompt(**fields)
    except ValidationError as e:
        raise DocumentValidationError(f"Prompt {number}: {_first_error(e)}") from e

    prompt.steps = sorted(steps, key=lambda s: s.step_number)
    return prompt


def validate_dependencies(prompts: list[ExecutablePrompt]) -> None:
    """Dependencies must name existing, strictly lower-numbered prompts."""
    numbers = {p.number for p in prompts}
    for prompt in prompts:
        for dep in prompt.dependencies:
            if dep not in numbers:
                raise DocumentValidationError(
                    f"Prompt {prompt.number} depends on unknown prompt {dep}"
                )
            if dep >= prompt.number:
                raise DocumentValidationError(
                    f"Prompt {prompt.number} depends on prompt {dep}; "
                    f"dependencies must be lower-numbered"
                )


def compute_metadata(
    prompts: list[ExecutablePrompt],
    base: Optional[DocumentMetadata] = None,
) -> DocumentMetadata:
    """Recompute prompt_count, total estimate and tag union."""
    metadata = base.model_copy() if base else DocumentMetadata()
    tags = list(metadata.tags)
    for prompt in prompts:
        for tag in prompt.tags:
            if tag not in tags:
                tags.append(tag)
    metadata.tags = tags
    metadata.prompt_count = len(prompts)
    metadata.total_estimated_time = sum(p.estimated_time for p in prompts)
    return metadata


def build_document(
    data: dict[str, Any],
    source_path: Optional[str] = None,
) -> PromptDocument:
    """Build and validate a PromptDocument from a plain dict.

    Raises:
        DocumentValidationError: on any structural problem
    """
    if not isinstance(data, dict):
        raise DocumentValidationError("Document must be a mapping")

    title = data.get("title")
    if not title:
        raise DocumentValidationError("Document is missing 'title'")

    prompts = [build_prompt(p) for p in _sequence(data.get("prompts"), "prompts")]

    seen: set[int] = set()
    for prompt in prompts:
        if prompt.number in seen:
            raise DocumentValidationError(f"Duplicate prompt number {prompt.number}")
        seen.add(prompt.number)

    prompts.sort(key=lambda p: p.number)
    validate_dependencies(prompts)

    try:
        base_meta = DocumentMetadata(**_mapping(data.get("metadata"), "metadata"))
    except ValidationError as e:
        raise DocumentValidationError(f"Invalid metadata: {_first_error(e)}") from e

    kwargs: dict[str, Any] = {
        "title": title,
        "source_path": source_path or data.get("source_path"),
        "prompts": prompts,
        "metadata": compute_metadata(prompts, base_meta),
    }
    if data.get("id"):
        kwargs["id"] = data["id"]

    try:
        document = PromptDocument(**kwargs)
    except ValidationError as e:
        raise DocumentValidationError(f"Invalid document: {_first_error(e)}") from e
    logger.debug(
        f"Built document '{document.title}' ({document.id}) "
        f"with {len(prompts)} prompts"
    )
    return document
