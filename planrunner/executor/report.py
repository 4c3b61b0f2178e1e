"""Plain-text rendering of execution outcomes (CLI and command responses)."""

from planrunner.documents.schemas import ExecutionRecord, PromptDocument, StepStatus
from planrunner.executor.schemas import ActiveExecution, SequenceRun

_STATUS_MARKS = {
    StepStatus.COMPLETED: "ok",
    StepStatus.FAILED: "FAILED",
    StepStatus.SKIPPED: "skipped",
    StepStatus.RUNNING: "running",
    StepStatus.PENDING: "pending",
}


def render_record(record: ExecutionRecord, title: str = "") -> str:
    heading = f"Execution {record.execution_id}"
    if title:
        heading += f" - {title}"
    lines = [
        heading,
        f"  status:   {record.status.value}",
        f"  duration: {record.duration_seconds:.1f}s",
    ]
    for result in record.step_results:
        attempt = f" (attempt {result.attempt})" if result.attempt > 1 else ""
        detail = result.error if result.error else (result.output.strip().splitlines() or [""])[0]
        lines.append(
            f"  step {result.step_number}{attempt}: {_STATUS_MARKS[result.status]}"
            + (f" - {detail}" if detail else "")
        )
    if record.error:
        lines.append(f"  error: {record.error}")
    return "\n".join(lines)


def render_execution(execution: ActiveExecution) -> str:
    return (
        f"Execution {execution.execution_id}: {execution.status.value}, "
        f"prompt {execution.prompt_number}, step {execution.current_step}/{execution.total_steps} "
        f"({execution.progress_percent:.0f}%)"
    )


def render_document(document: PromptDocument) -> str:
    lines = [f"{document.title} ({document.id}): {len(document.prompts)} prompts"]
    for prompt in document.prompts:
        deps = f" after {', '.join(str(d) for d in prompt.dependencies)}" if prompt.dependencies else ""
        lines.append(
            f"  {prompt.number}. {prompt.title} [{prompt.status.value}] "
            f"{len(prompt.steps)} steps{deps}"
        )
    summary = document.last_execution
    if summary is not None:
        lines.append(
            f"  last run: {summary.completed_prompts} completed, "
            f"{summary.failed_prompts} failed, success rate {summary.success_rate:.0%}"
        )
    return "\n".join(lines)


def render_sequence(sequence: SequenceRun) -> str:
    lines = [f"Sequence {sequence.sequence_id}: {sequence.status.value}"]
    for outcome in sequence.outcomes:
        line = f"  prompt {outcome.prompt_number}: {outcome.status.value}"
        if outcome.error:
            line += f" - {outcome.error}"
        lines.append(line)
    return "\n".join(lines)
