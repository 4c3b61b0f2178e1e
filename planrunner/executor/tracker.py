"""Execution tracker - in-memory registry of in-flight executions.

Handles:
- Registration of executions (one row per execution_id)
- Step result recording and cursor advancement
- Cancellation (row removed immediately, token signalled)
- Snapshot queries for polling

All state lives in process memory; nothing survives a restart. Readers
get deep copies, so a snapshot never changes under the caller.

Cancellation tokens outlive their rows: the executing thread still needs
to observe the token after `cancel()` removed the row. `finalize()` drops
both and tells the worker whether a cancel got there first.
"""

import logging
import threading
from typing import Optional

from planrunner.documents.schemas import PromptStatus, StepResult
from planrunner.errors import InvalidState, NotFound
from planrunner.executor.schemas import ActiveExecution

logger = logging.getLogger(__name__)


class ExecutionTracker:
    """Thread-safe map of execution_id -> ActiveExecution."""

    def __init__(self):
        self._rows: dict[str, ActiveExecution] = {}
        self._tokens: dict[str, threading.Event] = {}
        self._lock = threading.RLock()

    def register(self, execution: ActiveExecution) -> ActiveExecution:
        """Add a new row and create its cancellation token."""
        with self._lock:
            if execution.execution_id in self._rows or execution.execution_id in self._tokens:
                raise InvalidState(f"Execution {execution.execution_id} is already registered")
            self._rows[execution.execution_id] = execution.model_copy(deep=True)
            self._tokens[execution.execution_id] = threading.Event()
        logger.info(
            f"Registered execution {execution.execution_id} "
            f"(document {execution.document_id}, prompt {execution.prompt_number})"
        )
        return execution.model_copy(deep=True)

    def get(self, execution_id: str) -> ActiveExecution:
        """Snapshot of one row.

        Raises:
            NotFound: unknown (or already finished) execution
        """
        with self._lock:
            row = self._rows.get(execution_id)
            if row is None:
                raise NotFound("execution", execution_id)
            return row.model_copy(deep=True)

    def find(self, execution_id: str) -> Optional[ActiveExecution]:
        with self._lock:
            row = self._rows.get(execution_id)
            return row.model_copy(deep=True) if row else None

    def record_step_result(self, execution_id: str, result: StepResult) -> bool:
        """Append a step result.

        Returns False (result discarded) if the row is gone or no longer
        Running, which is how a late result from a cancelled run is dropped.
        """
        with self._lock:
            row = self._rows.get(execution_id)
            if row is None or row.status != PromptStatus.RUNNING:
                logger.debug(
                    f"Discarding step {result.step_number} result for "
                    f"inactive execution {execution_id}"
                )
                return False
            row.step_results.append(result.model_copy())
            return True

    def advance(self, execution_id: str) -> Optional[ActiveExecution]:
        """Move the step cursor forward by one. Returns the updated snapshot."""
        with self._lock:
            row = self._rows.get(execution_id)
            if row is None:
                return None
            row.current_step += 1
            return row.model_copy(deep=True)

    def set_status(
        self,
        execution_id: str,
        status: PromptStatus,
        error: Optional[str] = None,
    ) -> bool:
        with self._lock:
            row = self._rows.get(execution_id)
            if row is None:
                return False
            row.status = status
            if error is not None:
                row.error = error
        logger.info(
            f"Execution {execution_id} status → {status.value}"
            + (f" (error: {error})" if error else "")
        )
        return True

    def finalize(
        self,
        execution_id: str,
        status: PromptStatus,
        error: Optional[str] = None,
    ) -> bool:
        """Settle an execution: drop its row and token in one step.

        Returns False if a cancel got there first (row already gone or token
        set), in which case the execution counts as Cancelled whatever the
        worker produced. After a True return `cancel()` raises NotFound.
        """
        with self._lock:
            row = self._rows.pop(execution_id, None)
            token = self._tokens.pop(execution_id, None)
            claimed = row is not None and not (token is not None and token.is_set())
        if claimed:
            logger.info(
                f"Execution {execution_id} settled: {status.value}"
                + (f" (error: {error})" if error else "")
            )
        else:
            logger.info(f"Execution {execution_id} settled after cancellation")
        return claimed

    def list_active(self) -> list[ActiveExecution]:
        with self._lock:
            return [row.model_copy(deep=True) for row in self._rows.values()]

    def count(self) -> int:
        with self._lock:
            return len(self._rows)

    # --- Cancellation ---

    def cancel(self, execution_id: str) -> ActiveExecution:
        """Cancel an in-flight execution.

        The row is marked Cancelled and removed at once; the token is set so
        the executing thread stops at its next suspension point.

        Returns the final snapshot.

        Raises:
            NotFound: unknown (or already finished) execution
        """
        with self._lock:
            row = self._rows.pop(execution_id, None)
            if row is None:
                raise NotFound("execution", execution_id)
            row.status = PromptStatus.CANCELLED
            token = self._tokens.get(execution_id)
            if token is not None:
                token.set()
        logger.info(f"Cancelled execution {execution_id}")
        return row

    def cancel_token(self, execution_id: str) -> threading.Event:
        with self._lock:
            token = self._tokens.get(execution_id)
            if token is None:
                raise NotFound("execution", execution_id)
            return token
