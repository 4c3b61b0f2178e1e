import threading
from pathlib import Path

import httpx
import pytest

from planrunner.config import ExecutorConfig, ServiceSettings
from planrunner.documents.schemas import PromptStatus, StepStatus
from planrunner.errors import InvalidState, NotFound, UnsatisfiedDependency
from planrunner.events.schemas import EventType
from planrunner.executor.report import render_record, render_sequence
from planrunner.executor.schemas import SequenceStatus
from planrunner.runtime import PlanRunner

from conftest import document, prompt, step, wait_for


def command(number: int, cmd: str) -> dict:
    return step(number, {"action_type": "execute_command", "command": cmd})


def custom(number: int, name: str = "noop") -> dict:
    return step(number, {"action_type": "custom", "name": name})


@pytest.fixture
def make_runtime(config: ExecutorConfig):
    runners = []

    def factory(**overrides) -> PlanRunner:
        runner = PlanRunner(ServiceSettings(executor=config.model_copy(update=overrides)))
        runners.append(runner)
        return runner

    yield factory
    for runner in runners:
        for execution in runner.tracker.list_active():
            runner.executor.cancel_execution(execution.execution_id)
        runner.close()


def event_types(runtime: PlanRunner, execution_id: str) -> list[EventType]:
    runtime.bus.flush(timeout=5.0)
    return [e.event_type for e in runtime.event_log.for_execution(execution_id)]


def test_prompt_runs_steps_in_order(runtime: PlanRunner, tmp_path: Path) -> None:
    doc = runtime.store.add(
        document(
            prompt(
                1,
                [
                    command(3, "cat out/a.txt"),
                    step(1, {"action_type": "create_directory", "directory": "out"}),
                    step(2, {"action_type": "create_file", "file": "out/a.txt", "content": "payload"}),
                ],
            )
        )
    )

    record = runtime.executor.run_prompt(doc.id, 1)

    assert record.status == PromptStatus.COMPLETED
    assert [r.step_number for r in record.step_results] == [1, 2, 3]
    assert "payload" in record.output
    assert (tmp_path / "out" / "a.txt").exists()

    stored = doc.get_prompt(1)
    assert stored.status == PromptStatus.COMPLETED
    assert all(s.status == StepStatus.COMPLETED for s in stored.steps)
    assert stored.executions == [record]
    assert doc.last_execution.completed_prompts == 1
    assert doc.last_execution.success_rate == 1.0
    assert runtime.tracker.count() == 0

    types = event_types(runtime, record.execution_id)
    assert types[0] == EventType.EXECUTION_STARTED
    assert types.count(EventType.STEP_COMPLETED) == 3
    assert types.count(EventType.STATUS_UPDATE) == 3
    assert types[-1] == EventType.EXECUTION_COMPLETED


def test_status_updates_report_progress(runtime: PlanRunner) -> None:
    doc = runtime.store.add(document(prompt(1, [custom(1), custom(2)], estimated_time=100)))

    record = runtime.executor.run_prompt(doc.id, 1)

    runtime.bus.flush(timeout=5.0)
    updates = [
        e.data for e in runtime.event_log.for_execution(record.execution_id)
        if e.event_type == EventType.STATUS_UPDATE
    ]
    assert [u.progress_percent for u in updates] == [50.0, 100.0]
    assert [u.estimated_remaining_time for u in updates] == [50.0, 0.0]


def test_dependency_gate_blocks_before_any_step(runtime: PlanRunner, tmp_path: Path) -> None:
    doc = runtime.store.add(
        document(
            prompt(1, [custom(1)]),
            prompt(2, [command(1, "touch ran.txt")], [1]),
        )
    )

    with pytest.raises(UnsatisfiedDependency, match="Prompt 1 \\(status: pending\\)"):
        runtime.executor.start_execution(doc.id, 2)

    assert not (tmp_path / "ran.txt").exists()
    assert doc.get_prompt(2).status == PromptStatus.PENDING
    assert runtime.tracker.count() == 0
    runtime.bus.flush(timeout=5.0)
    assert len(runtime.event_log) == 0

    runtime.executor.run_prompt(doc.id, 1)
    assert runtime.executor.run_prompt(doc.id, 2).status == PromptStatus.COMPLETED


def test_unknown_document_or_prompt_raises_not_found(runtime: PlanRunner) -> None:
    doc = runtime.store.add(document(prompt(1, [custom(1)])))

    with pytest.raises(NotFound, match="Document not found"):
        runtime.executor.start_execution("doc-missing", 1)
    with pytest.raises(NotFound, match="Prompt not found"):
        runtime.executor.start_execution(doc.id, 9)


def test_retries_are_exhausted(runtime: PlanRunner) -> None:
    doc = runtime.store.add(document(prompt(1, [command(1, "echo nope >&2; exit 1"), custom(2)])))

    record = runtime.executor.run_prompt(doc.id, 1)

    assert record.status == PromptStatus.FAILED
    assert [r.attempt for r in record.step_results] == [1, 2, 3]
    assert all(r.status == StepStatus.FAILED and r.retryable for r in record.step_results)
    assert record.error == "Step 1 failed after 2 retries: nope"

    stored = doc.get_prompt(1)
    assert stored.status == PromptStatus.FAILED
    assert [s.status for s in stored.ordered_steps()] == [StepStatus.FAILED, StepStatus.SKIPPED]
    assert doc.last_execution.failed_prompts == 1
    assert doc.last_execution.success_rate == 0.0

    assert event_types(runtime, record.execution_id) == [
        EventType.EXECUTION_STARTED,
        EventType.STEP_FAILED,
        EventType.STEP_FAILED,
        EventType.STEP_FAILED,
        EventType.EXECUTION_FAILED,
    ]


def test_retry_recovers_on_second_attempt(runtime: PlanRunner) -> None:
    flaky = "test -f marker || { touch marker; echo first >&2; exit 1; }"
    doc = runtime.store.add(document(prompt(1, [command(1, flaky)])))

    record = runtime.executor.run_prompt(doc.id, 1)

    assert record.status == PromptStatus.COMPLETED
    assert [(r.attempt, r.status) for r in record.step_results] == [
        (1, StepStatus.FAILED),
        (2, StepStatus.COMPLETED),
    ]


def test_terminal_failure_is_not_retried(runtime: PlanRunner) -> None:
    doc = runtime.store.add(document(prompt(1, [step(1, {"action_type": "modify_file", "file": "absent.txt"})])))

    record = runtime.executor.run_prompt(doc.id, 1)

    assert record.status == PromptStatus.FAILED
    assert len(record.step_results) == 1
    assert record.step_results[0].retryable is False
    assert record.error.startswith("Step 1 failed: File does not exist")


def test_auto_retry_disabled_gives_single_attempt(make_runtime) -> None:
    runtime = make_runtime(auto_retry=False)
    doc = runtime.store.add(document(prompt(1, [command(1, "exit 1")])))

    record = runtime.executor.run_prompt(doc.id, 1)

    assert len(record.step_results) == 1
    assert record.error == "Step 1 failed: exit status 1"


def test_prompt_timeout_fails_the_execution(make_runtime) -> None:
    runtime = make_runtime(prompt_timeout=1)
    doc = runtime.store.add(document(prompt(1, [command(1, "sleep 5")])))

    record = runtime.executor.run_prompt(doc.id, 1)

    assert record.status == PromptStatus.FAILED
    assert "timed out" in record.error


def test_cancel_running_execution(runtime: PlanRunner) -> None:
    doc = runtime.store.add(document(prompt(1, [command(1, "sleep 30"), custom(2)])))
    execution_id = runtime.executor.start_execution(doc.id, 1)
    assert wait_for(lambda: runtime.tracker.get(execution_id).status == PromptStatus.RUNNING)

    snapshot = runtime.executor.cancel_execution(execution_id)

    assert snapshot.status == PromptStatus.CANCELLED
    with pytest.raises(NotFound):
        runtime.executor.get_execution_status(execution_id)
    with pytest.raises(NotFound):
        runtime.executor.cancel_execution(execution_id)

    record = runtime.executor.wait(execution_id, timeout=5)
    assert record.status == PromptStatus.CANCELLED
    assert record.step_results == []
    assert doc.get_prompt(1).status == PromptStatus.CANCELLED

    types = event_types(runtime, execution_id)
    assert EventType.EXECUTION_CANCELLED in types
    assert EventType.EXECUTION_FAILED not in types
    assert EventType.STEP_COMPLETED not in types


def test_prompt_cannot_run_twice_at_once(runtime: PlanRunner) -> None:
    doc = runtime.store.add(document(prompt(1, [command(1, "sleep 30")])))
    execution_id = runtime.executor.start_execution(doc.id, 1)

    with pytest.raises(InvalidState, match="already running"):
        runtime.executor.start_execution(doc.id, 1)

    runtime.executor.cancel_execution(execution_id)
    runtime.executor.wait(execution_id, timeout=5)

    # Released once the cancelled run settled
    assert runtime.executor.start_execution(doc.id, 1) != execution_id


def test_wait_on_unknown_execution_raises(runtime: PlanRunner) -> None:
    with pytest.raises(NotFound):
        runtime.executor.wait("exec-missing", timeout=0.1)


def test_concurrency_limit_queues_executions(make_runtime) -> None:
    runtime = make_runtime(max_concurrent=1)
    doc = runtime.store.add(document(prompt(1, [command(1, "sleep 30")]), prompt(2, [custom(1)])))

    first = runtime.executor.start_execution(doc.id, 1)
    assert wait_for(lambda: runtime.tracker.get(first).status == PromptStatus.RUNNING)
    second = runtime.executor.start_execution(doc.id, 2)

    assert not wait_for(lambda: runtime.tracker.get(second).status != PromptStatus.PENDING, timeout=0.5)
    queued = runtime.executor.get_execution_status(second)
    assert queued.status == PromptStatus.PENDING
    assert queued.step_results == []
    assert [e.execution_id for e in runtime.executor.list_active_executions()] == [first, second]

    runtime.executor.cancel_execution(first)
    record = runtime.executor.wait(second, timeout=5)
    assert record.status == PromptStatus.COMPLETED


def test_sequence_stops_on_error(runtime: PlanRunner) -> None:
    doc = runtime.store.add(
        document(prompt(1, [command(1, "exit 1")]), prompt(2, [custom(1)]), prompt(3, [custom(1)]))
    )

    sequence = runtime.executor.run_sequence(doc.id, [1, 2, 3], stop_on_error=True)

    assert sequence.status == SequenceStatus.STOPPED
    assert [o.status for o in sequence.outcomes] == [
        PromptStatus.FAILED,
        PromptStatus.PENDING,
        PromptStatus.PENDING,
    ]
    assert doc.get_prompt(2).status == PromptStatus.PENDING
    assert "prompt 1: failed" in render_sequence(sequence)


def test_sequence_continues_past_errors(runtime: PlanRunner) -> None:
    doc = runtime.store.add(
        document(prompt(1, [command(1, "exit 1")]), prompt(2, [custom(1)]), prompt(3, [custom(1)], [1]))
    )

    sequence = runtime.executor.run_sequence(doc.id, [1, 2, 3], stop_on_error=False)

    assert sequence.status == SequenceStatus.FAILED
    assert [o.status for o in sequence.outcomes] == [
        PromptStatus.FAILED,
        PromptStatus.COMPLETED,
        PromptStatus.SKIPPED,
    ]
    assert "Dependency not satisfied" in sequence.outcomes[2].error


def test_background_sequence_completes(runtime: PlanRunner) -> None:
    doc = runtime.store.add(document(prompt(1, [custom(1)]), prompt(2, [custom(1)], [1])))
    finished = []

    started = runtime.executor.start_sequence(doc.id, [1, 2], on_finished=finished.append)

    assert wait_for(lambda: bool(finished))
    final = runtime.executor.get_sequence(started.sequence_id)
    assert final.status == SequenceStatus.COMPLETED
    assert all(o.execution_id for o in final.outcomes)
    assert finished[0].sequence_id == started.sequence_id


def test_sequence_rejects_unknown_prompts(runtime: PlanRunner) -> None:
    doc = runtime.store.add(document(prompt(1, [custom(1)])))

    with pytest.raises(NotFound):
        runtime.executor.run_sequence(doc.id, [1, 5])
    with pytest.raises(InvalidState):
        runtime.executor.run_sequence(doc.id, [])


def test_render_record(runtime: PlanRunner) -> None:
    doc = runtime.store.add(document(prompt(1, [command(1, "echo hi")])))

    text = render_record(runtime.executor.run_prompt(doc.id, 1), "Prompt 1")

    assert "status:   completed" in text
    assert "step 1: ok - hi" in text


def test_cancel_landing_before_settle_wins(runtime: PlanRunner, monkeypatch: pytest.MonkeyPatch) -> None:
    doc = runtime.store.add(document(prompt(1, [custom(1)])))
    finalize = runtime.tracker.finalize

    def cancel_then_finalize(execution_id, status, error=None):
        runtime.executor.cancel_execution(execution_id)
        return finalize(execution_id, status, error)

    monkeypatch.setattr(runtime.tracker, "finalize", cancel_then_finalize)
    record = runtime.executor.run_prompt(doc.id, 1)

    assert record.status == PromptStatus.CANCELLED
    assert record.error == "Execution cancelled"
    assert doc.get_prompt(1).status == PromptStatus.CANCELLED
    assert doc.get_prompt(1).executions == [record]

    types = event_types(runtime, record.execution_id)
    assert types.count(EventType.EXECUTION_CANCELLED) == 1
    assert EventType.EXECUTION_COMPLETED not in types


def test_cancel_after_settle_is_not_found(runtime: PlanRunner, monkeypatch: pytest.MonkeyPatch) -> None:
    doc = runtime.store.add(document(prompt(1, [custom(1)])))
    finalize = runtime.tracker.finalize
    late_cancels = []

    def finalize_then_cancel(execution_id, status, error=None):
        claimed = finalize(execution_id, status, error)
        try:
            runtime.executor.cancel_execution(execution_id)
        except NotFound as e:
            late_cancels.append(e)
        return claimed

    monkeypatch.setattr(runtime.tracker, "finalize", finalize_then_cancel)
    record = runtime.executor.run_prompt(doc.id, 1)

    assert len(late_cancels) == 1
    assert record.status == PromptStatus.COMPLETED
    assert doc.get_prompt(1).status == PromptStatus.COMPLETED

    types = event_types(runtime, record.execution_id)
    assert EventType.EXECUTION_CANCELLED not in types
    assert types[-1] == EventType.EXECUTION_COMPLETED


def test_finished_history_is_bounded(make_runtime) -> None:
    runtime = make_runtime(record_history=3)
    doc = runtime.store.add(document(prompt(1, [custom(1)])))

    ids = [runtime.executor.run_prompt(doc.id, 1).execution_id for _ in range(5)]

    assert runtime.executor.get_record(ids[0]) is None
    with pytest.raises(NotFound):
        runtime.executor.wait(ids[0], timeout=0.1)
    assert runtime.executor.wait(ids[-1], timeout=1).status == PromptStatus.COMPLETED

    sequences = [runtime.executor.run_sequence(doc.id, [1]) for _ in range(5)]

    kept = [s.sequence_id for s in runtime.executor.list_sequences()]
    assert kept == [s.sequence_id for s in sequences[-3:]]
    with pytest.raises(NotFound):
        runtime.executor.get_sequence(sequences[0].sequence_id)

    # The prompt's own history is not trimmed
    assert len(doc.get_prompt(1).executions) == 10


def test_created_file_passes_validation(runtime: PlanRunner, tmp_path: Path) -> None:
    doc = runtime.store.add(
        document(
            prompt(
                1,
                [
                    step(1, {"action_type": "create_file", "file": "notes.txt", "content": "hello plan"}),
                    step(2, {"action_type": "validation", "validation_type": "file_exists", "target": "notes.txt"}),
                    step(
                        3,
                        {
                            "action_type": "validation",
                            "validation_type": "file_contains",
                            "target": "notes.txt",
                            "expected": "hello",
                        },
                    ),
                ],
            )
        )
    )

    record = runtime.executor.run_prompt(doc.id, 1)

    assert record.status == PromptStatus.COMPLETED
    assert (tmp_path / "notes.txt").read_text() == "hello plan"
    assert "Validation passed" in record.step_results[-1].output


def test_late_http_response_after_cancel_is_dropped(config: ExecutorConfig) -> None:
    in_flight = threading.Event()
    release = threading.Event()

    def handler(request: httpx.Request) -> httpx.Response:
        in_flight.set()
        release.wait(5)
        return httpx.Response(200, text="late")

    client = httpx.Client(transport=httpx.MockTransport(handler))
    runtime = PlanRunner(ServiceSettings(executor=config), http_client=client)
    try:
        doc = runtime.store.add(
            document(prompt(1, [step(1, {"action_type": "api_call", "url": "https://api.test/slow"}), custom(2)]))
        )
        execution_id = runtime.executor.start_execution(doc.id, 1)
        assert in_flight.wait(5)

        runtime.executor.cancel_execution(execution_id)
        release.set()
        record = runtime.executor.wait(execution_id, timeout=5)

        assert record.status == PromptStatus.CANCELLED
        assert record.step_results == []
        assert doc.get_prompt(1).status == PromptStatus.CANCELLED
        assert EventType.STEP_COMPLETED not in event_types(runtime, execution_id)
    finally:
        release.set()
        runtime.close()
