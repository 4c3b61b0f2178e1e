"""Sequence API routes.

Endpoints:
    POST /v1/sequences                  Run several prompts in order
    GET  /v1/sequences                  List sequences
    GET  /v1/sequences/{sequence_id}    Sequence progress
"""

from fastapi import APIRouter, Depends

from planrunner.api.deps import get_runtime, require_token
from planrunner.executor.schemas import (
    SequenceRun,
    SequenceStartedResponse,
    StartSequenceRequest,
)
from planrunner.runtime import PlanRunner

router = APIRouter(prefix="/sequences", tags=["sequences"], dependencies=[Depends(require_token)])


@router.post("", response_model=SequenceStartedResponse, status_code=202)
async def start_sequence(request: StartSequenceRequest, runtime: PlanRunner = Depends(get_runtime)):
    sequence = runtime.executor.start_sequence(
        request.document_id,
        request.prompt_numbers,
        stop_on_error=request.stop_on_error,
    )
    return SequenceStartedResponse(
        sequence_id=sequence.sequence_id,
        document_id=sequence.document_id,
        prompt_numbers=sequence.prompt_numbers,
        status=sequence.status,
    )


@router.get("", response_model=list[SequenceRun])
async def list_sequences(runtime: PlanRunner = Depends(get_runtime)):
    return runtime.executor.list_sequences()


@router.get("/{sequence_id}", response_model=SequenceRun)
async def get_sequence(sequence_id: str, runtime: PlanRunner = Depends(get_runtime)):
    return runtime.executor.get_sequence(sequence_id)
