"""Step dispatcher - performs the one operation behind a typed step.

`execute_step(step, context)` returns the step's output text or raises
StepExecutionFailure. Failures carry a `retryable` flag: problems that a
second attempt cannot fix (missing file, unwritable path, 4xx response,
missing executable) are terminal; command exits, failed checks, timeouts
and server/transport errors are retryable.

Relative paths resolve against the context's working directory.
"""

import logging
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Optional

import httpx

from planrunner.documents.schemas import (
    APICallAction,
    CreateDirectoryAction,
    CreateFileAction,
    CustomAction,
    DatabaseOperationAction,
    ExecuteCommandAction,
    ExecutionStep,
    ExternalToolAction,
    GitOperationAction,
    ModifyFileAction,
    TestExecutionAction,
    ValidationAction,
)
from planrunner.errors import ExecutionCancelled, StepExecutionFailure, StepTimeout
from planrunner.executor import db
from planrunner.executor.process_runner import ProcessResult, run_process

logger = logging.getLogger(__name__)

# Cap on response body text carried in step output
MAX_RESPONSE_CHARS = 4000


@dataclass
class StepContext:
    """Everything a step needs besides its own payload."""

    document_title: str = ""
    working_dir: Path = field(default_factory=Path.cwd)
    timeout: Optional[float] = None
    cancel_event: threading.Event = field(default_factory=threading.Event)
    http_client: Optional[httpx.Client] = None
    database_url: str = ""
    tool_command: str = "code"

    def resolve(self, path: str) -> Path:
        p = Path(path).expanduser()
        return p if p.is_absolute() else self.working_dir / p

    def check_cancelled(self) -> None:
        if self.cancel_event.is_set():
            raise ExecutionCancelled()


def _run(args, context: StepContext) -> ProcessResult:
    return run_process(
        args,
        cwd=context.working_dir,
        timeout=context.timeout,
        cancel_event=context.cancel_event,
    )


def _failure_text(result: ProcessResult) -> str:
    text = result.stderr.strip() or result.stdout.strip()
    return text or f"exit status {result.exit_code}"


# --- Handlers ---


def _create_file(step: ExecutionStep, action: CreateFileAction, context: StepContext) -> str:
    path = context.resolve(action.file)
    content = action.content
    if content is None:
        content = f"// Generated for {context.document_title}\n// Step: {step.description}\n"
    try:
        with open(path, "w", encoding="utf-8") as f:
            f.write(content)
    except OSError as e:
        raise StepExecutionFailure(f"Cannot write {path}: {e.strerror or e}", retryable=False)
    return f"Created file: {path}"


def _modify_file(step: ExecutionStep, action: ModifyFileAction, context: StepContext) -> str:
    path = context.resolve(action.file)
    if not path.is_file():
        raise StepExecutionFailure(f"File does not exist: {path}", retryable=False)

    try:
        if action.mode == "replace":
            text = path.read_text(encoding="utf-8")
            if action.search not in text:
                raise StepExecutionFailure(
                    f"Text to replace not found in {path}: {action.search!r}",
                    retryable=False,
                )
            path.write_text(text.replace(action.search, action.content or ""), encoding="utf-8")
            return f"Modified file: {path} (replaced {text.count(action.search)} occurrence(s))"

        addition = action.content
        if addition is None:
            addition = f"\n// Modified: {step.description}\n"
        with open(path, "a", encoding="utf-8") as f:
            f.write(addition)
        return f"Modified file: {path}"
    except OSError as e:
        raise StepExecutionFailure(f"Cannot modify {path}: {e.strerror or e}", retryable=False)


def _execute_command(step: ExecutionStep, action: ExecuteCommandAction, context: StepContext) -> str:
    result = _run(action.command, context)
    if not result.ok:
        raise StepExecutionFailure(_failure_text(result))
    return result.stdout


def _create_directory(step: ExecutionStep, action: CreateDirectoryAction, context: StepContext) -> str:
    path = context.resolve(action.directory)
    try:
        path.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        raise StepExecutionFailure(f"Cannot create directory {path}: {e.strerror or e}", retryable=False)
    return f"Created directory: {path}"


def _git_operation(step: ExecutionStep, action: GitOperationAction, context: StepContext) -> str:
    if action.operation == "init":
        args = ["git", "init"]
    elif action.operation == "status":
        args = ["git", "status"]
    elif action.operation == "add":
        args = ["git", "add", *(action.files.split() or ["."])]
    else:
        args = ["git", "commit", "-m", action.message]

    result = _run(args, context)
    if not result.ok:
        raise StepExecutionFailure(f"git {action.operation} failed: {_failure_text(result)}")
    return result.stdout or f"git {action.operation} completed"


def _external_tool(step: ExecutionStep, action: ExternalToolAction, context: StepContext) -> str:
    if action.action == "open":
        args = [context.tool_command, str(context.resolve(action.path))]
    else:
        args = [context.tool_command, "--install-extension", action.extension]

    result = _run(args, context)
    if not result.ok:
        raise StepExecutionFailure(f"{context.tool_command} {action.action} failed: {_failure_text(result)}")
    if action.action == "open":
        return f"Opened {action.path} with {context.tool_command}"
    return f"Installed extension: {action.extension}"


def _api_call(step: ExecutionStep, action: APICallAction, context: StepContext) -> str:
    context.check_cancelled()
    client = context.http_client
    owns_client = client is None
    if owns_client:
        client = httpx.Client()

    try:
        response = client.request(
            action.method,
            action.url,
            headers=action.headers or None,
            content=action.body,
            timeout=context.timeout,
        )
    except httpx.TimeoutException as e:
        raise StepTimeout(f"{action.method} {action.url} timed out: {e}")
    except httpx.HTTPError as e:
        raise StepExecutionFailure(f"{action.method} {action.url} failed: {e}")
    finally:
        if owns_client:
            client.close()

    status_line = f"HTTP {response.status_code} {response.reason_phrase}"
    body = response.text[:MAX_RESPONSE_CHARS]
    if response.is_success:
        return f"{status_line}\n{body}" if body else status_line

    # 5xx may recover; 4xx and unfollowed redirects will not
    raise StepExecutionFailure(
        f"{action.method} {action.url} returned {status_line}: {body[:500]}",
        retryable=response.status_code >= 500,
    )


def _database_operation(step: ExecutionStep, action: DatabaseOperationAction, context: StepContext) -> str:
    context.check_cancelled()
    url = action.database or context.database_url
    try:
        return db.run_operation(
            action.operation,
            action.statement,
            url,
            base_dir=context.working_dir,
            timeout=context.timeout,
            cancel_event=context.cancel_event,
        )
    except (StepExecutionFailure, ExecutionCancelled):
        raise
    except Exception as e:
        raise StepExecutionFailure(
            f"Database {action.operation} failed: {e}",
            retryable=db.is_retryable(e),
        )


def _test_execution(step: ExecutionStep, action: TestExecutionAction, context: StepContext) -> str:
    result = _run(action.command, context)
    if not result.ok:
        raise StepExecutionFailure(f"Tests failed: {_failure_text(result)}")
    return result.stdout or "Tests passed"


def _validation(step: ExecutionStep, action: ValidationAction, context: StepContext) -> str:
    target = context.resolve(action.target)

    if action.validation_type == "file_exists":
        if not target.is_file():
            raise StepExecutionFailure(f"Validation failed: file {target} does not exist")
        return f"Validation passed: file {target} exists"

    if action.validation_type == "directory_exists":
        if not target.is_dir():
            raise StepExecutionFailure(f"Validation failed: directory {target} does not exist")
        return f"Validation passed: directory {target} exists"

    if not target.is_file():
        raise StepExecutionFailure(f"Validation failed: file {target} does not exist")
    text = target.read_text(encoding="utf-8", errors="replace")
    if action.expected not in text:
        raise StepExecutionFailure(
            f"Validation failed: {target} does not contain {action.expected!r}"
        )
    return f"Validation passed: {target} contains {action.expected!r}"


def _custom(step: ExecutionStep, action: CustomAction, context: StepContext) -> str:
    return f"Custom action '{action.name}' completed: {step.description}"


_HANDLERS: dict[str, Callable[..., str]] = {
    "create_file": _create_file,
    "modify_file": _modify_file,
    "execute_command": _execute_command,
    "create_directory": _create_directory,
    "git_operation": _git_operation,
    "external_tool": _external_tool,
    "api_call": _api_call,
    "database_operation": _database_operation,
    "test_execution": _test_execution,
    "validation": _validation,
    "custom": _custom,
}


def execute_step(step: ExecutionStep, context: StepContext) -> str:
    """Perform one step and return its output.

    Raises:
        StepExecutionFailure: the operation failed (see `retryable`)
        ExecutionCancelled: the cancel token fired before or during the step
    """
    context.check_cancelled()
    handler = _HANDLERS[step.action.action_type]
    logger.debug(f"Dispatching step {step.step_number} ({step.action.action_type}): {step.description}")
    return handler(step, step.action, context)
