"""Command service - authenticates and dispatches inbound commands.

Every request is checked against the shared token before anything else
happens. Errors never escape as exceptions: each outcome becomes a
CommandResponse with a status the caller can branch on.
"""

import hmac
import logging
import uuid
from typing import Optional

import httpx

from planrunner.documents.store import DocumentStore
from planrunner.errors import (
    AuthenticationError,
    DocumentValidationError,
    InvalidState,
    NotFound,
    PlanRunnerError,
    UnsatisfiedDependency,
)
from planrunner.events.bus import EventBus
from planrunner.events.subscribers import WebhookSubscriber
from planrunner.executor.prompt_runner import PromptExecutor
from planrunner.executor.report import render_execution
from planrunner.executor.schemas import SequenceRun, new_execution_id

from .schemas import (
    CancelExecutionCommand,
    CommandRequest,
    CommandResponse,
    ExecutePromptCommand,
    ExecutePromptSequenceCommand,
    GetDocumentInfoCommand,
    GetExecutionStatusCommand,
    ListDocumentsCommand,
    ProcessDocumentCommand,
    ResponseStatus,
)

logger = logging.getLogger(__name__)


def verify_token(expected: Optional[str], provided: Optional[str]) -> None:
    """Constant-time check of a shared token. No-op when none is configured.

    Raises:
        AuthenticationError: token missing or wrong
    """
    if not expected:
        return
    if not provided:
        raise AuthenticationError("Missing authentication token")
    if not hmac.compare_digest(expected.encode("utf-8"), provided.encode("utf-8")):
        raise AuthenticationError("Invalid authentication token")


class CommandService:
    """Typed command surface over the executor and the document store."""

    def __init__(
        self,
        executor: PromptExecutor,
        store: DocumentStore,
        bus: Optional[EventBus] = None,
        api_token: Optional[str] = None,
        http_client: Optional[httpx.Client] = None,
    ):
        self.executor = executor
        self.store = store
        self.bus = bus
        self.api_token = api_token
        self.http_client = http_client

    def handle(self, request: CommandRequest, token: Optional[str] = None) -> CommandResponse:
        """Authenticate, then run one command.

        `token` is the transport-level token (e.g. an HTTP header); the
        request's own `auth_token` is used when it is absent.
        """
        try:
            verify_token(self.api_token, token or request.auth_token)
        except AuthenticationError as e:
            logger.warning(f"Rejected command {request.command.type}: {e}")
            return self._respond(request, ResponseStatus.UNAUTHORIZED, str(e))

        command = request.command
        logger.info(
            f"Command {command.type}"
            + (f" (request {request.request_id})" if request.request_id else "")
        )

        try:
            if isinstance(command, ExecutePromptCommand):
                return self._execute_prompt(request, command)
            if isinstance(command, ExecutePromptSequenceCommand):
                return self._execute_sequence(request, command)
            if isinstance(command, GetDocumentInfoCommand):
                return self._document_info(request, command)
            if isinstance(command, GetExecutionStatusCommand):
                return self._execution_status(request, command)
            if isinstance(command, CancelExecutionCommand):
                return self._cancel(request, command)
            if isinstance(command, ListDocumentsCommand):
                return self._list_documents(request)
            if isinstance(command, ProcessDocumentCommand):
                return self._process_document(request, command)
        except NotFound as e:
            return self._respond(request, ResponseStatus.NOT_FOUND, str(e))
        except (UnsatisfiedDependency, InvalidState) as e:
            return self._respond(request, ResponseStatus.CONFLICT, str(e))
        except DocumentValidationError as e:
            return self._respond(request, ResponseStatus.ERROR, f"Invalid document: {e}")
        except PlanRunnerError as e:
            return self._respond(request, ResponseStatus.ERROR, str(e))
        except Exception as e:
            logger.error(f"Command {command.type} failed: {e}", exc_info=True)
            return self._respond(request, ResponseStatus.ERROR, f"Internal error: {e}")

        return self._respond(request, ResponseStatus.ERROR, f"Unsupported command: {command.type}")

    # --- Handlers ---

    def _execute_prompt(self, request: CommandRequest, command: ExecutePromptCommand) -> CommandResponse:
        execution_id = new_execution_id()
        subscriber_name = None
        if request.callback_urls and self.bus is not None:
            subscriber_name = f"callback-{execution_id}"
            self.bus.subscribe(
                subscriber_name,
                WebhookSubscriber(
                    request.callback_urls,
                    name=subscriber_name,
                    client=self.http_client,
                    execution_id=execution_id,
                    bus=self.bus,
                ),
            )

        try:
            self.executor.start_execution(command.document_name, command.prompt_number, execution_id)
        except Exception:
            if subscriber_name:
                self.bus.unsubscribe(subscriber_name)
            raise

        return self._respond(
            request,
            ResponseStatus.PROCESSING,
            f"Executing prompt {command.prompt_number} of '{command.document_name}'",
            execution_id=execution_id,
        )

    def _execute_sequence(
        self,
        request: CommandRequest,
        command: ExecutePromptSequenceCommand,
    ) -> CommandResponse:
        document = self.store.resolve(command.document_name)
        on_finished = None
        if request.callback_urls and self.bus is not None:
            subscriber_name = f"callback-seq-{uuid.uuid4().hex[:12]}"
            self.bus.subscribe(
                subscriber_name,
                WebhookSubscriber(
                    request.callback_urls,
                    name=subscriber_name,
                    client=self.http_client,
                    document_id=document.id,
                    prompt_numbers=command.prompt_numbers,
                ),
            )

            def on_finished(_: SequenceRun, name: str = subscriber_name) -> None:
                # Deliver what is queued before detaching
                self.bus.flush(timeout=5.0)
                self.bus.unsubscribe(name)

        try:
            sequence = self.executor.start_sequence(
                document.id,
                command.prompt_numbers,
                stop_on_error=command.stop_on_error,
                on_finished=on_finished,
            )
        except Exception:
            if on_finished is not None:
                on_finished(None)
            raise

        return self._respond(
            request,
            ResponseStatus.PROCESSING,
            f"Executing {len(command.prompt_numbers)} prompts of '{document.title}'",
            data={"sequence_id": sequence.sequence_id, "prompt_numbers": command.prompt_numbers},
        )

    def _document_info(self, request: CommandRequest, command: GetDocumentInfoCommand) -> CommandResponse:
        document = self.store.resolve(command.document_name)
        return self._respond(
            request,
            ResponseStatus.SUCCESS,
            f"Document '{document.title}' has {len(document.prompts)} prompts",
            data={
                "id": document.id,
                "title": document.title,
                "metadata": document.metadata.model_dump(mode="json"),
                "last_execution": (
                    document.last_execution.model_dump(mode="json")
                    if document.last_execution else None
                ),
                "prompts": [
                    p.model_dump(mode="json")
                    for p in self.executor.prompt_summaries(document.id)
                ],
            },
        )

    def _execution_status(
        self,
        request: CommandRequest,
        command: GetExecutionStatusCommand,
    ) -> CommandResponse:
        active = self.executor.tracker.find(command.execution_id)
        if active is not None:
            return self._respond(
                request,
                ResponseStatus.SUCCESS,
                render_execution(active),
                execution_id=active.execution_id,
                data=active.model_dump(mode="json"),
            )

        record = self.executor.get_record(command.execution_id)
        if record is not None:
            return self._respond(
                request,
                ResponseStatus.SUCCESS,
                f"Execution finished: {record.status.value}",
                execution_id=record.execution_id,
                data=record.model_dump(mode="json"),
            )

        raise NotFound("execution", command.execution_id)

    def _cancel(self, request: CommandRequest, command: CancelExecutionCommand) -> CommandResponse:
        self.executor.cancel_execution(command.execution_id)
        return self._respond(
            request,
            ResponseStatus.SUCCESS,
            f"Execution {command.execution_id} cancelled",
            execution_id=command.execution_id,
        )

    def _list_documents(self, request: CommandRequest) -> CommandResponse:
        summaries = self.store.list_summaries()
        return self._respond(
            request,
            ResponseStatus.SUCCESS,
            f"{len(summaries)} documents available",
            data=[s.model_dump(mode="json") for s in summaries],
        )

    def _process_document(self, request: CommandRequest, command: ProcessDocumentCommand) -> CommandResponse:
        document = self.store.load_file(command.document_path)
        return self._respond(
            request,
            ResponseStatus.SUCCESS,
            f"Loaded '{document.title}' with {len(document.prompts)} prompts",
            data={"id": document.id, "title": document.title, "prompt_count": len(document.prompts)},
        )

    @staticmethod
    def _respond(
        request: CommandRequest,
        status: ResponseStatus,
        message: str,
        execution_id: Optional[str] = None,
        data=None,
    ) -> CommandResponse:
        return CommandResponse(
            status=status,
            message=message,
            request_id=request.request_id,
            execution_id=execution_id,
            data=data,
        )
