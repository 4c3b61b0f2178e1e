import json
import shutil
import threading
from pathlib import Path

import httpx
import pytest

from planrunner.documents.builder import build_step
from planrunner.errors import ExecutionCancelled, StepExecutionFailure, StepTimeout
from planrunner.executor.step_dispatcher import StepContext, execute_step


def make_step(action: dict, description: str = "do the thing"):
    return build_step({"step_number": 1, "description": description, "action": action}, 1)


@pytest.fixture
def context(tmp_path: Path) -> StepContext:
    return StepContext(document_title="Plan", working_dir=tmp_path, timeout=10)


def test_create_file_writes_content(context: StepContext, tmp_path: Path) -> None:
    output = execute_step(make_step({"action_type": "create_file", "file": "a.txt", "content": "hi"}), context)

    assert (tmp_path / "a.txt").read_text() == "hi"
    assert output == f"Created file: {tmp_path / 'a.txt'}"


def test_create_file_default_content_names_document_and_step(context: StepContext, tmp_path: Path) -> None:
    (tmp_path / "a.txt").write_text("old")
    execute_step(make_step({"action_type": "create_file", "file": "a.txt"}, "write header"), context)

    text = (tmp_path / "a.txt").read_text()
    assert "Plan" in text
    assert "write header" in text
    assert "old" not in text


def test_create_file_without_parent_is_terminal(context: StepContext) -> None:
    with pytest.raises(StepExecutionFailure) as exc_info:
        execute_step(make_step({"action_type": "create_file", "file": "missing/dir/a.txt"}), context)
    assert exc_info.value.retryable is False


def test_modify_missing_file_is_terminal(context: StepContext) -> None:
    with pytest.raises(StepExecutionFailure, match="File does not exist") as exc_info:
        execute_step(make_step({"action_type": "modify_file", "file": "nope.txt"}), context)
    assert exc_info.value.retryable is False


def test_modify_file_appends_marker_by_default(context: StepContext, tmp_path: Path) -> None:
    (tmp_path / "a.txt").write_text("line\n")
    execute_step(make_step({"action_type": "modify_file", "file": "a.txt"}, "tweak"), context)

    text = (tmp_path / "a.txt").read_text()
    assert text.startswith("line\n")
    assert "tweak" in text


def test_modify_file_replace(context: StepContext, tmp_path: Path) -> None:
    (tmp_path / "a.txt").write_text("version = 1\n")
    execute_step(
        make_step({"action_type": "modify_file", "file": "a.txt", "mode": "replace", "search": "1", "content": "2"}),
        context,
    )
    assert (tmp_path / "a.txt").read_text() == "version = 2\n"


def test_execute_command_returns_stdout(context: StepContext) -> None:
    assert execute_step(make_step({"action_type": "execute_command", "command": "echo hello"}), context).strip() == "hello"


def test_execute_command_failure_is_retryable_with_stderr(context: StepContext) -> None:
    with pytest.raises(StepExecutionFailure, match="boom") as exc_info:
        execute_step(make_step({"action_type": "execute_command", "command": "echo boom >&2; exit 3"}), context)
    assert exc_info.value.retryable is True


def test_execute_command_runs_in_working_dir(context: StepContext, tmp_path: Path) -> None:
    execute_step(make_step({"action_type": "execute_command", "command": "echo x > made.txt"}), context)
    assert (tmp_path / "made.txt").exists()


def test_command_timeout_kills_process(context: StepContext) -> None:
    context.timeout = 0.3
    with pytest.raises(StepTimeout) as exc_info:
        execute_step(make_step({"action_type": "execute_command", "command": "sleep 5"}), context)
    assert exc_info.value.retryable is True


def test_cancel_kills_running_process(context: StepContext) -> None:
    timer = threading.Timer(0.3, context.cancel_event.set)
    timer.start()
    try:
        with pytest.raises(ExecutionCancelled):
            execute_step(make_step({"action_type": "execute_command", "command": "sleep 5"}), context)
    finally:
        timer.cancel()


def test_cancelled_context_runs_nothing(context: StepContext, tmp_path: Path) -> None:
    context.cancel_event.set()
    with pytest.raises(ExecutionCancelled):
        execute_step(make_step({"action_type": "create_file", "file": "a.txt"}), context)
    assert not (tmp_path / "a.txt").exists()


def test_create_directory_is_idempotent(context: StepContext, tmp_path: Path) -> None:
    action = {"action_type": "create_directory", "directory": "a/b/c"}
    execute_step(make_step(action), context)
    execute_step(make_step(action), context)
    assert (tmp_path / "a" / "b" / "c").is_dir()


def test_validation_checks(context: StepContext, tmp_path: Path) -> None:
    with pytest.raises(StepExecutionFailure, match="does not exist") as exc_info:
        execute_step(make_step({"action_type": "validation", "target": "a.txt"}), context)
    assert exc_info.value.retryable is True

    (tmp_path / "a.txt").write_text("ready=yes")
    assert "passed" in execute_step(make_step({"action_type": "validation", "target": "a.txt"}), context)
    assert "passed" in execute_step(
        make_step({"action_type": "validation", "validation_type": "file_contains", "target": "a.txt", "expected": "ready"}),
        context,
    )
    with pytest.raises(StepExecutionFailure, match="does not contain"):
        execute_step(
            make_step({"action_type": "validation", "validation_type": "file_contains", "target": "a.txt", "expected": "nope"}),
            context,
        )
    with pytest.raises(StepExecutionFailure):
        execute_step(make_step({"action_type": "validation", "validation_type": "directory_exists", "target": "a.txt"}), context)


def test_custom_echoes_name_and_description(context: StepContext) -> None:
    output = execute_step(make_step({"action_type": "custom", "name": "notify"}, "tell the team"), context)
    assert output == "Custom action 'notify' completed: tell the team"


def test_test_execution_failure(context: StepContext) -> None:
    assert execute_step(make_step({"action_type": "test_execution", "command": "true"}), context) == "Tests passed"
    with pytest.raises(StepExecutionFailure, match="Tests failed"):
        execute_step(make_step({"action_type": "test_execution", "command": "false"}), context)


def test_database_operations_on_sqlite(context: StepContext, tmp_path: Path) -> None:
    context.database_url = "steps.db"

    def run(operation: str, statement: str | None = None) -> str:
        action = {"action_type": "database_operation", "operation": operation}
        if statement:
            action["statement"] = statement
        return execute_step(make_step(action), context)

    assert "reachable" in run("ping")
    run("script", "CREATE TABLE items (id INTEGER PRIMARY KEY, name TEXT);")
    assert "1 row(s)" in run("execute", "INSERT INTO items (name) VALUES ('widget')")
    rows = json.loads(run("query", "SELECT name FROM items"))

    assert rows == [{"name": "widget"}]
    assert (tmp_path / "steps.db").exists()


def test_database_error_is_a_step_failure(context: StepContext) -> None:
    context.database_url = "steps.db"
    with pytest.raises(StepExecutionFailure, match="Database query failed"):
        execute_step(
            make_step({"action_type": "database_operation", "operation": "query", "statement": "SELECT * FROM nope"}),
            context,
        )


def test_database_syntax_error_is_terminal(context: StepContext) -> None:
    context.database_url = "steps.db"
    with pytest.raises(StepExecutionFailure, match="syntax error") as excinfo:
        execute_step(make_step({"action_type": "database_operation", "operation": "query", "statement": "SELEC 1"}), context)

    assert excinfo.value.retryable is False


ENDLESS_QUERY = "WITH RECURSIVE c(x) AS (SELECT 1 UNION ALL SELECT x + 1 FROM c) SELECT count(*) FROM c"


def test_database_statement_is_bounded_by_step_timeout(context: StepContext) -> None:
    context.database_url = "steps.db"
    context.timeout = 0.3

    with pytest.raises(StepTimeout, match="timed out after 0.3s"):
        execute_step(make_step({"action_type": "database_operation", "operation": "query", "statement": ENDLESS_QUERY}), context)


def test_cancel_interrupts_database_statement(context: StepContext) -> None:
    context.database_url = "steps.db"
    timer = threading.Timer(0.3, context.cancel_event.set)
    timer.start()
    try:
        with pytest.raises(ExecutionCancelled):
            execute_step(
                make_step({"action_type": "database_operation", "operation": "query", "statement": ENDLESS_QUERY}),
                context,
            )
    finally:
        timer.cancel()


def _client(status_code: int, body: str = "") -> httpx.Client:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(status_code, text=body or f"{request.method} {request.url.path}")

    return httpx.Client(transport=httpx.MockTransport(handler))


def test_api_call_success(context: StepContext) -> None:
    context.http_client = _client(200)
    output = execute_step(make_step({"action_type": "api_call", "url": "https://api.test/ping", "method": "post"}), context)
    assert output == "HTTP 200 OK\nPOST /ping"


@pytest.mark.parametrize("status_code, retryable", [(404, False), (503, True)])
def test_api_call_error_classification(context: StepContext, status_code: int, retryable: bool) -> None:
    context.http_client = _client(status_code)
    with pytest.raises(StepExecutionFailure) as exc_info:
        execute_step(make_step({"action_type": "api_call", "url": "https://api.test/x"}), context)
    assert exc_info.value.retryable is retryable


def test_api_call_transport_error_is_retryable(context: StepContext) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("refused", request=request)

    context.http_client = httpx.Client(transport=httpx.MockTransport(handler))
    with pytest.raises(StepExecutionFailure, match="refused") as exc_info:
        execute_step(make_step({"action_type": "api_call", "url": "https://api.test/x"}), context)
    assert exc_info.value.retryable is True


def test_missing_executable_is_terminal(context: StepContext) -> None:
    context.tool_command = "definitely-not-a-real-editor"
    with pytest.raises(StepExecutionFailure, match="Executable not found") as exc_info:
        execute_step(make_step({"action_type": "external_tool", "action": "install_extension", "extension": "x.y"}), context)
    assert exc_info.value.retryable is False


@pytest.mark.skipif(shutil.which("git") is None, reason="git not installed")
def test_git_init_and_status(context: StepContext, tmp_path: Path) -> None:
    execute_step(make_step({"action_type": "git_operation", "operation": "init"}), context)
    assert (tmp_path / ".git").is_dir()
    execute_step(make_step({"action_type": "git_operation", "operation": "status"}), context)
