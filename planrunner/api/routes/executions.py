"""Execution API routes.

Endpoints:
    POST /v1/executions                        Start executing one prompt
    GET  /v1/executions                        List in-flight executions
    GET  /v1/executions/{execution_id}         Poll an in-flight execution
    GET  /v1/executions/{execution_id}/result  Record of a finished execution
    POST /v1/executions/{execution_id}/cancel  Cancel an in-flight execution
    GET  /v1/executions/{execution_id}/events  Events published for an execution
"""

import logging

from fastapi import APIRouter, Depends, HTTPException

from planrunner.api.deps import get_runtime, require_token
from planrunner.documents.schemas import ExecutionRecord
from planrunner.events.schemas import LifecycleEvent
from planrunner.executor.schemas import (
    ActiveExecution,
    ExecutionStartedResponse,
    StartExecutionRequest,
)
from planrunner.runtime import PlanRunner

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/executions", tags=["executions"], dependencies=[Depends(require_token)])


@router.post("", response_model=ExecutionStartedResponse, status_code=202)
async def start_execution(request: StartExecutionRequest, runtime: PlanRunner = Depends(get_runtime)):
    """Start executing a prompt.

    Dependency and conflict errors are returned synchronously; the
    execution itself runs in the background. Poll
    GET /v1/executions/{execution_id} or follow /v1/events/stream.
    """
    execution_id = runtime.executor.start_execution(request.document_id, request.prompt_number)
    document = runtime.store.resolve(request.document_id)
    active = runtime.tracker.find(execution_id)
    record = runtime.executor.get_record(execution_id)
    if active is not None:
        status = active.status
    elif record is not None:
        status = record.status
    else:
        status = document.get_prompt(request.prompt_number).status
    return ExecutionStartedResponse(
        execution_id=execution_id,
        document_id=document.id,
        prompt_number=request.prompt_number,
        status=status,
    )


@router.get("", response_model=list[ActiveExecution])
async def list_executions(runtime: PlanRunner = Depends(get_runtime)):
    return runtime.executor.list_active_executions()


@router.get("/{execution_id}", response_model=ActiveExecution)
async def get_execution(execution_id: str, runtime: PlanRunner = Depends(get_runtime)):
    """Snapshot of an in-flight execution. 404 once it has finished."""
    return runtime.executor.get_execution_status(execution_id)


@router.get("/{execution_id}/result", response_model=ExecutionRecord)
async def get_execution_result(execution_id: str, runtime: PlanRunner = Depends(get_runtime)):
    record = runtime.executor.get_record(execution_id)
    if record is None:
        if runtime.tracker.find(execution_id) is not None:
            raise HTTPException(status_code=409, detail=f"Execution still running: {execution_id}")
        raise HTTPException(status_code=404, detail=f"Execution not found: {execution_id}")
    return record


@router.post("/{execution_id}/cancel", response_model=ActiveExecution)
async def cancel_execution(execution_id: str, runtime: PlanRunner = Depends(get_runtime)):
    return runtime.executor.cancel_execution(execution_id)


@router.get("/{execution_id}/events", response_model=list[LifecycleEvent])
async def get_execution_events(execution_id: str, runtime: PlanRunner = Depends(get_runtime)):
    return runtime.event_log.for_execution(execution_id)
