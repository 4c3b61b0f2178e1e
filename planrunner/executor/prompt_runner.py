"""Prompt executor - drives prompts through their steps.

For one prompt:
1. Resolves document and prompt, runs the dependency gate
2. Claims the (document, prompt) pair so it cannot run twice at once
3. Registers an ActiveExecution and publishes ExecutionStarted
4. Waits for a concurrency slot, then runs steps in ascending order,
   retrying retryable failures per the ExecutorConfig
5. Settles Completed / Failed / Cancelled, appends an ExecutionRecord to
   the prompt's history and refreshes the document's ExecutionSummary

Admission errors (NotFound, UnsatisfiedDependency, InvalidState) raise
synchronously from start_execution(); everything after admission happens
on a background daemon thread.

Also runs sequences: several prompts of one document in order, optionally
stopping at the first one that does not complete.
"""

import logging
import threading
import time
from collections import OrderedDict
from typing import Callable, Optional

import httpx

from planrunner.config import ExecutorConfig
from planrunner.documents.schemas import (
    TERMINAL_PROMPT_STATUSES,
    ExecutablePrompt,
    ExecutionRecord,
    ExecutionStep,
    ExecutionSummary,
    PromptDocument,
    PromptStatus,
    PromptSummary,
    StepResult,
    StepStatus,
    utc_now,
)
from planrunner.documents.store import DocumentStore
from planrunner.errors import (
    DocumentIntegrityError,
    ExecutionCancelled,
    InvalidState,
    NotFound,
    PromptTimeout,
    RetryExhausted,
    StepExecutionFailure,
    UnsatisfiedDependency,
)
from planrunner.events.bus import EventBus
from planrunner.events.schemas import EventData, EventType, LifecycleEvent
from planrunner.executor import dependency_gate
from planrunner.executor.schemas import (
    ActiveExecution,
    SequenceOutcome,
    SequenceRun,
    SequenceStatus,
)
from planrunner.executor.step_dispatcher import StepContext, execute_step
from planrunner.executor.tracker import ExecutionTracker

logger = logging.getLogger(__name__)

# How often a queued execution re-checks cancellation while waiting for a slot
SLOT_POLL_INTERVAL = 0.2


class PromptExecutor:
    """Runs prompts of stored documents, one background thread per execution."""

    def __init__(
        self,
        store: DocumentStore,
        tracker: ExecutionTracker,
        bus: Optional[EventBus] = None,
        config: Optional[ExecutorConfig] = None,
        http_client: Optional[httpx.Client] = None,
    ):
        self.store = store
        self.tracker = tracker
        self.bus = bus
        self.config = config or ExecutorConfig()
        self.http_client = http_client

        # Guards prompt.status, prompt history and document summaries
        self._lock = threading.RLock()
        self._running_prompts: set[tuple[str, int]] = set()
        self._slots = threading.BoundedSemaphore(self.config.max_concurrent)

        self._done: dict[str, threading.Event] = {}
        self._records: OrderedDict[str, ExecutionRecord] = OrderedDict()
        self._sequences: OrderedDict[str, SequenceRun] = OrderedDict()

    # --- Public operations ---

    def start_execution(
        self,
        document_id: str,
        prompt_number: int,
        execution_id: Optional[str] = None,
    ) -> str:
        """Admit a prompt and run it on a background thread.

        Returns the execution id. Callers that must subscribe to the
        execution's events before it starts can pass their own id.

        Raises:
            NotFound: unknown document or prompt
            UnsatisfiedDependency: a prerequisite is not Completed
            InvalidState: the prompt is already running
        """
        document, prompt, execution = self._admit(document_id, prompt_number, execution_id)
        thread = threading.Thread(
            target=self._execute,
            args=(document, prompt, execution),
            name=f"executor-{execution.execution_id}",
            daemon=True,
        )
        thread.start()
        logger.info(f"Started execution thread for {execution.execution_id}")
        return execution.execution_id

    def run_prompt(self, document_id: str, prompt_number: int) -> ExecutionRecord:
        """Admit and run a prompt on the calling thread. Returns its record."""
        document, prompt, execution = self._admit(document_id, prompt_number)
        return self._execute(document, prompt, execution)

    def wait(self, execution_id: str, timeout: Optional[float] = None) -> Optional[ExecutionRecord]:
        """Block until an execution finishes. None if the timeout expired."""
        with self._lock:
            done = self._done.get(execution_id)
        if done is None:
            raise NotFound("execution", execution_id)
        if not done.wait(timeout):
            return None
        with self._lock:
            return self._records.get(execution_id)

    def get_record(self, execution_id: str) -> Optional[ExecutionRecord]:
        """The record of a finished execution, if this process ran it."""
        with self._lock:
            return self._records.get(execution_id)

    def get_execution_status(self, execution_id: str) -> ActiveExecution:
        """Snapshot of an in-flight execution (NotFound once it finished)."""
        return self.tracker.get(execution_id)

    def list_active_executions(self) -> list[ActiveExecution]:
        return self.tracker.list_active()

    def remove_document(self, document_id: str) -> PromptDocument:
        """Drop a document from the store.

        Raises:
            NotFound: unknown document
            InvalidState: one of its prompts is running
        """
        document = self.store.resolve(document_id)
        with self._lock:
            running = sorted(n for doc_id, n in self._running_prompts if doc_id == document.id)
            if running:
                raise InvalidState(
                    f"Document '{document.title}' has running prompts: {running}"
                )
            self.store.remove(document.id)
        return document

    def prompt_summaries(self, document_id: str) -> list[PromptSummary]:
        """Prompt listing with each prompt's not-yet-Completed dependencies filled in."""
        document = self.store.resolve(document_id)
        with self._lock:
            return [
                summary.model_copy(
                    update={"unmet_dependencies": dependency_gate.unmet_dependencies(document, p)}
                )
                for summary, p in zip(self.store.prompt_summaries(document.id), document.prompts)
            ]

    def cancel_execution(self, execution_id: str) -> ActiveExecution:
        """Cancel an in-flight execution.

        The tracker row disappears immediately and ExecutionCancelled is
        published; the worker thread stops at its next suspension point and
        anything it produces afterwards is discarded.

        Raises:
            NotFound: unknown or already finished execution
        """
        snapshot = self.tracker.cancel(execution_id)

        document = self.store.get(snapshot.document_id)
        prompt = document.get_prompt(snapshot.prompt_number) if document else None
        if document is not None and prompt is not None:
            with self._lock:
                # The worker may already have settled it as Cancelled and
                # released the prompt for a new run
                if not any(r.execution_id == execution_id for r in prompt.executions):
                    prompt.status = PromptStatus.CANCELLED
            self._publish(
                EventType.EXECUTION_CANCELLED,
                execution_id,
                document,
                prompt,
                progress_percent=snapshot.progress_percent,
                error="Execution cancelled",
            )
        return snapshot

    # --- Sequences ---

    def start_sequence(
        self,
        document_id: str,
        prompt_numbers: list[int],
        stop_on_error: bool = True,
        on_finished: Optional[Callable[[SequenceRun], None]] = None,
    ) -> SequenceRun:
        """Run prompts in order on a background thread. Returns the initial snapshot.

        `on_finished` is called with the final snapshot on the sequence thread.
        """
        sequence = self._new_sequence(document_id, prompt_numbers, stop_on_error)
        thread = threading.Thread(
            target=self._run_sequence,
            args=(sequence.sequence_id, on_finished),
            name=f"sequence-{sequence.sequence_id}",
            daemon=True,
        )
        thread.start()
        logger.info(
            f"Started sequence {sequence.sequence_id}: prompts {prompt_numbers} "
            f"(stop_on_error={stop_on_error})"
        )
        return self.get_sequence(sequence.sequence_id)

    def run_sequence(
        self,
        document_id: str,
        prompt_numbers: list[int],
        stop_on_error: bool = True,
    ) -> SequenceRun:
        """Run prompts in order on the calling thread."""
        sequence = self._new_sequence(document_id, prompt_numbers, stop_on_error)
        self._run_sequence(sequence.sequence_id)
        return self.get_sequence(sequence.sequence_id)

    def get_sequence(self, sequence_id: str) -> SequenceRun:
        with self._lock:
            sequence = self._sequences.get(sequence_id)
            if sequence is None:
                raise NotFound("sequence", sequence_id)
            return sequence.model_copy(deep=True)

    def list_sequences(self) -> list[SequenceRun]:
        with self._lock:
            return [s.model_copy(deep=True) for s in self._sequences.values()]

    def _new_sequence(
        self,
        document_id: str,
        prompt_numbers: list[int],
        stop_on_error: bool,
    ) -> SequenceRun:
        document = self.store.resolve(document_id)
        if not prompt_numbers:
            raise InvalidState("A sequence needs at least one prompt number")
        for number in prompt_numbers:
            if document.get_prompt(number) is None:
                raise NotFound("prompt", f"{document.title}#{number}")

        sequence = SequenceRun(
            document_id=document.id,
            prompt_numbers=list(prompt_numbers),
            stop_on_error=stop_on_error,
            outcomes=[SequenceOutcome(prompt_number=n) for n in prompt_numbers],
        )
        with self._lock:
            self._sequences[sequence.sequence_id] = sequence
        return sequence

    def _run_sequence(
        self,
        sequence_id: str,
        on_finished: Optional[Callable[[SequenceRun], None]] = None,
    ) -> None:
        with self._lock:
            sequence = self._sequences[sequence_id]

        stopped = False
        for outcome in sequence.outcomes:
            try:
                document, prompt, execution = self._admit(sequence.document_id, outcome.prompt_number)
            except (NotFound, UnsatisfiedDependency, InvalidState, DocumentIntegrityError) as e:
                logger.warning(f"Sequence {sequence_id}: prompt {outcome.prompt_number} not admitted: {e}")
                with self._lock:
                    outcome.status = PromptStatus.SKIPPED
                    outcome.error = str(e)
                if sequence.stop_on_error:
                    stopped = True
                    break
                continue

            with self._lock:
                outcome.execution_id = execution.execution_id
                outcome.status = PromptStatus.RUNNING

            record = self._execute(document, prompt, execution)

            with self._lock:
                outcome.status = record.status
                outcome.error = record.error

            if record.status != PromptStatus.COMPLETED and sequence.stop_on_error:
                stopped = True
                break

        with self._lock:
            if stopped:
                sequence.status = SequenceStatus.STOPPED
            elif all(o.status == PromptStatus.COMPLETED for o in sequence.outcomes):
                sequence.status = SequenceStatus.COMPLETED
            else:
                sequence.status = SequenceStatus.FAILED
            sequence.completed_at = utc_now()
            self._prune_history()

        logger.info(f"Sequence {sequence_id} finished: {sequence.status.value}")
        if on_finished is not None:
            try:
                on_finished(self.get_sequence(sequence_id))
            except Exception as e:
                logger.warning(f"Sequence {sequence_id} completion callback failed: {e}")

    # --- Admission ---

    def _admit(
        self,
        document_id: str,
        prompt_number: int,
        execution_id: Optional[str] = None,
    ) -> tuple[PromptDocument, ExecutablePrompt, ActiveExecution]:
        document = self.store.resolve(document_id)
        prompt = document.get_prompt(prompt_number)
        if prompt is None:
            raise NotFound("prompt", f"{document.title}#{prompt_number}")

        key = (document.id, prompt.number)
        with self._lock:
            dependency_gate.validate(document, prompt)
            if key in self._running_prompts:
                raise InvalidState(
                    f"Prompt {prompt.number} of '{document.title}' is already running"
                )
            self._running_prompts.add(key)

            row = ActiveExecution(
                document_id=document.id,
                prompt_number=prompt.number,
                total_steps=len(prompt.steps),
            )
            if execution_id:
                row.execution_id = execution_id
            try:
                execution = self.tracker.register(row)
            except InvalidState:
                self._running_prompts.discard(key)
                raise
            prompt.status = PromptStatus.RUNNING
            for step in prompt.steps:
                step.status = StepStatus.PENDING
            self._done[execution.execution_id] = threading.Event()

        self._publish(
            EventType.EXECUTION_STARTED,
            execution.execution_id,
            document,
            prompt,
            progress_percent=0.0,
            estimated_remaining_time=prompt.estimated_time,
        )
        return document, prompt, execution

    # --- Execution ---

    def _execute(
        self,
        document: PromptDocument,
        prompt: ExecutablePrompt,
        execution: ActiveExecution,
    ) -> ExecutionRecord:
        execution_id = execution.execution_id
        cancel = self.tracker.cancel_token(execution_id)
        deadline = time.monotonic() + self.config.prompt_timeout
        results: list[StepResult] = []
        outputs: list[str] = []
        status = PromptStatus.FAILED
        error: Optional[str] = None

        logger.info(
            f"Executing prompt {prompt.number} '{prompt.title}' of '{document.title}' "
            f"as {execution_id} ({len(prompt.steps)} steps)"
        )

        try:
            self._acquire_slot(prompt, cancel, deadline)
            try:
                self.tracker.set_status(execution_id, PromptStatus.RUNNING)
                for step in prompt.ordered_steps():
                    output = self._run_step(document, prompt, step, execution_id, cancel, deadline, results)
                    if output:
                        outputs.append(output)
                status = PromptStatus.COMPLETED
            finally:
                self._slots.release()

        except ExecutionCancelled:
            status = PromptStatus.CANCELLED
            error = "Execution cancelled"
        except (RetryExhausted, PromptTimeout) as e:
            error = str(e)
            logger.error(f"Execution {execution_id} failed: {error}")
        except Exception as e:
            error = str(e)
            logger.error(f"Execution {execution_id} failed: {e}", exc_info=True)

        return self._finish(document, prompt, execution, status, error, results, outputs)

    def _acquire_slot(
        self,
        prompt: ExecutablePrompt,
        cancel: threading.Event,
        deadline: float,
    ) -> None:
        while not self._slots.acquire(timeout=SLOT_POLL_INTERVAL):
            if cancel.is_set():
                raise ExecutionCancelled()
            if time.monotonic() >= deadline:
                raise PromptTimeout(prompt.number, self.config.prompt_timeout)
        if cancel.is_set():
            self._slots.release()
            raise ExecutionCancelled()

    def _run_step(
        self,
        document: PromptDocument,
        prompt: ExecutablePrompt,
        step: ExecutionStep,
        execution_id: str,
        cancel: threading.Event,
        deadline: float,
        results: list[StepResult],
    ) -> str:
        """Run one step with retries. Returns its output.

        Raises:
            RetryExhausted: the step failed terminally or ran out of retries
            PromptTimeout: the prompt deadline passed
            ExecutionCancelled: the execution was cancelled
        """
        max_attempts = 1 + (self.config.max_retries if self.config.auto_retry else 0)
        attempt = 0

        while True:
            attempt += 1
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise PromptTimeout(prompt.number, self.config.prompt_timeout)

            context = StepContext(
                document_title=document.title,
                working_dir=self.config.working_path,
                timeout=min(self.config.step_timeout, remaining),
                cancel_event=cancel,
                http_client=self.http_client,
                database_url=self.config.database_url,
                tool_command=self.config.tool_command,
            )
            self._set_step_status(step, StepStatus.RUNNING)
            started_at = utc_now()
            t0 = time.monotonic()

            try:
                output = execute_step(step, context)
            except ExecutionCancelled:
                raise ExecutionCancelled(execution_id)
            except StepExecutionFailure as e:
                failure = e
            except Exception as e:
                logger.error(f"Step {step.step_number} raised unexpectedly: {e}", exc_info=True)
                failure = StepExecutionFailure(f"Unexpected error: {e}")
            else:
                result = StepResult(
                    step_number=step.step_number,
                    attempt=attempt,
                    status=StepStatus.COMPLETED,
                    output=output,
                    duration_ms=int((time.monotonic() - t0) * 1000),
                    started_at=started_at,
                )
                self._record_result(execution_id, result, results)
                self._set_step_status(step, StepStatus.COMPLETED)
                self._publish(
                    EventType.STEP_COMPLETED,
                    execution_id,
                    document,
                    prompt,
                    step=step,
                    attempt=attempt,
                    output=output,
                )
                snapshot = self.tracker.advance(execution_id)
                if snapshot is not None:
                    progress = snapshot.progress_percent
                    self._publish(
                        EventType.STATUS_UPDATE,
                        execution_id,
                        document,
                        prompt,
                        progress_percent=progress,
                        estimated_remaining_time=prompt.estimated_time * (100.0 - progress) / 100.0,
                    )
                return output

            result = StepResult(
                step_number=step.step_number,
                attempt=attempt,
                status=StepStatus.FAILED,
                error=str(failure),
                retryable=failure.retryable,
                duration_ms=int((time.monotonic() - t0) * 1000),
                started_at=started_at,
            )
            self._record_result(execution_id, result, results)
            self._set_step_status(step, StepStatus.FAILED)
            self._publish(
                EventType.STEP_FAILED,
                execution_id,
                document,
                prompt,
                step=step,
                attempt=attempt,
                error=str(failure),
            )

            if not failure.retryable or attempt >= max_attempts:
                raise RetryExhausted(step.step_number, attempt, failure)

            logger.warning(
                f"Step {step.step_number} of {execution_id} failed "
                f"(attempt {attempt}/{max_attempts}), retrying in "
                f"{self.config.retry_delay:.1f}s: {failure}"
            )
            if cancel.wait(self.config.retry_delay):
                raise ExecutionCancelled(execution_id)

    def _record_result(self, execution_id: str, result: StepResult, results: list[StepResult]) -> None:
        if not self.tracker.record_step_result(execution_id, result):
            # Row gone: cancelled while the step was in flight
            raise ExecutionCancelled(execution_id)
        results.append(result)

    def _set_step_status(self, step: ExecutionStep, status: StepStatus) -> None:
        with self._lock:
            step.status = status

    def _finish(
        self,
        document: PromptDocument,
        prompt: ExecutablePrompt,
        execution: ActiveExecution,
        status: PromptStatus,
        error: Optional[str],
        results: list[StepResult],
        outputs: list[str],
    ) -> ExecutionRecord:
        execution_id = execution.execution_id

        with self._lock:
            # Claiming the row and updating the prompt happen together, so a
            # cancel either lands before (Cancelled) or gets NotFound after
            if not self.tracker.finalize(execution_id, status, error):
                status = PromptStatus.CANCELLED
                error = "Execution cancelled"

            record = ExecutionRecord(
                execution_id=execution_id,
                status=status,
                started_at=execution.started_at,
                output="\n".join(outputs),
                error=error,
                step_results=results,
            )
            prompt.status = status
            prompt.executions.append(record)
            if status != PromptStatus.COMPLETED:
                for step in prompt.steps:
                    if step.status == StepStatus.PENDING:
                        step.status = StepStatus.SKIPPED
            document.last_execution = summarize(document)
            self._running_prompts.discard((document.id, prompt.number))

        if status == PromptStatus.COMPLETED:
            self._publish(
                EventType.EXECUTION_COMPLETED,
                execution_id,
                document,
                prompt,
                progress_percent=100.0,
                estimated_remaining_time=0.0,
                output=record.output,
            )
        elif status == PromptStatus.FAILED:
            self._publish(EventType.EXECUTION_FAILED, execution_id, document, prompt, error=error)

        logger.info(
            f"Execution {execution_id} finished: {status.value} "
            f"({len(results)} step results, {record.duration_seconds:.1f}s)"
        )

        with self._lock:
            self._records[execution_id] = record
            done = self._done.get(execution_id)
            self._prune_history()
        if done is not None:
            done.set()
        return record

    def _prune_history(self) -> None:
        """Forget the oldest finished executions and sequences past the cap."""
        limit = self.config.record_history
        while len(self._records) > limit:
            old_id, _ = self._records.popitem(last=False)
            self._done.pop(old_id, None)

        finished = [s.sequence_id for s in self._sequences.values() if s.completed_at is not None]
        excess = len(self._sequences) - limit
        for sequence_id in finished[:max(excess, 0)]:
            del self._sequences[sequence_id]

    # --- Events ---

    def _publish(
        self,
        event_type: EventType,
        execution_id: str,
        document: PromptDocument,
        prompt: ExecutablePrompt,
        step: Optional[ExecutionStep] = None,
        **fields,
    ) -> None:
        if self.bus is None:
            return
        data = EventData(
            document_id=document.id,
            document_title=document.title,
            prompt_number=prompt.number,
            prompt_title=prompt.title,
            step_number=step.step_number if step else None,
            step_description=step.description if step else None,
            **fields,
        )
        self.bus.publish(LifecycleEvent(event_type=event_type, execution_id=execution_id, data=data))


def summarize(document: PromptDocument) -> ExecutionSummary:
    """Aggregate prompt statuses and execution history of a document."""
    completed = sum(1 for p in document.prompts if p.status == PromptStatus.COMPLETED)
    failed = sum(1 for p in document.prompts if p.status == PromptStatus.FAILED)
    total_time = sum(
        record.duration_seconds
        for p in document.prompts
        for record in p.executions
        if record.status in TERMINAL_PROMPT_STATUSES
    )
    finished = completed + failed
    return ExecutionSummary(
        total_time=round(total_time, 3),
        completed_prompts=completed,
        failed_prompts=failed,
        success_rate=round(completed / finished, 4) if finished else 0.0,
        last_run=utc_now(),
    )
