"""Error taxonomy for plan execution.

Admission errors (NotFound, UnsatisfiedDependency, InvalidState) are raised
synchronously to whoever asked for a run. Step failures are handled inside
the executor's retry loop and only escape as RetryExhausted when the policy
gives up. API routes map these onto HTTP status codes.
"""

from typing import Optional


class PlanRunnerError(Exception):
    """Base class for all planrunner errors."""


class NotFound(PlanRunnerError):
    """Unknown document, prompt, execution or sequence."""

    def __init__(self, kind: str, key: object):
        self.kind = kind
        self.key = key
        super().__init__(f"{kind.capitalize()} not found: {key}")


class DocumentValidationError(PlanRunnerError):
    """A document failed build-time validation (bad step payload, bad edges)."""


class DocumentIntegrityError(PlanRunnerError):
    """A built document violates an invariant the builder should have enforced."""


class UnsatisfiedDependency(PlanRunnerError):
    """A prerequisite prompt has not reached Completed."""

    def __init__(self, prompt_number: int, dep_number: int, dep_status: str):
        self.prompt_number = prompt_number
        self.dep_number = dep_number
        self.dep_status = dep_status
        super().__init__(
            f"Dependency not satisfied: Prompt {dep_number} (status: {dep_status}) "
            f"must be completed before Prompt {prompt_number}"
        )


class InvalidState(PlanRunnerError):
    """A request conflicts with the current state of an execution or prompt."""


class StepExecutionFailure(PlanRunnerError):
    """The operation behind a step failed.

    `retryable` is False for failures that cannot change on a second attempt
    (missing files, unwritable paths, client-side HTTP errors).
    """

    def __init__(self, message: str, *, retryable: bool = True):
        self.retryable = retryable
        super().__init__(message)


class StepTimeout(StepExecutionFailure):
    """A step ran past its deadline. Always retryable."""

    def __init__(self, message: str):
        super().__init__(message, retryable=True)


class RetryExhausted(PlanRunnerError):
    """A step kept failing past the retry budget (or failed terminally)."""

    def __init__(self, step_number: int, attempts: int, last_error: StepExecutionFailure):
        self.step_number = step_number
        self.attempts = attempts
        self.last_error = last_error
        if attempts > 1:
            message = f"Step {step_number} failed after {attempts - 1} retries: {last_error}"
        else:
            message = f"Step {step_number} failed: {last_error}"
        super().__init__(message)


class PromptTimeout(PlanRunnerError):
    """The prompt as a whole ran past its deadline."""

    def __init__(self, prompt_number: int, timeout: float):
        self.prompt_number = prompt_number
        self.timeout = timeout
        super().__init__(f"Prompt {prompt_number} timed out after {timeout:.0f}s")


class ExecutionCancelled(PlanRunnerError):
    """The execution was cancelled while a step was waiting or running."""

    def __init__(self, execution_id: Optional[str] = None):
        self.execution_id = execution_id
        super().__init__(
            f"Execution {execution_id} cancelled" if execution_id else "Execution cancelled"
        )


class AuthenticationError(PlanRunnerError):
    """Missing or invalid shared token on an inbound request."""
