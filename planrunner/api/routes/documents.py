"""Document API routes.

Endpoints:
    GET    /v1/documents                        List documents (summaries)
    POST   /v1/documents                        Build a document from a structured body
    POST   /v1/documents/load                   Load a plan file from the server's disk
    POST   /v1/documents/rescan                 Load new plan files from the documents directory
    GET    /v1/documents/active                 The active document
    GET    /v1/documents/{document_id}          Full document (id or title)
    DELETE /v1/documents/{document_id}          Remove a document (409 while a prompt runs)
    GET    /v1/documents/{document_id}/prompts  Prompt summaries with unmet dependencies
    POST   /v1/documents/{document_id}/activate Make a document the active one
"""

import logging
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Response
from pydantic import BaseModel

from planrunner.api.deps import get_runtime, require_token
from planrunner.documents.schemas import DocumentSummary, PromptDocument, PromptSummary
from planrunner.runtime import PlanRunner

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/documents", tags=["documents"], dependencies=[Depends(require_token)])


class LoadDocumentRequest(BaseModel):
    path: str


@router.get("", response_model=list[DocumentSummary])
async def list_documents(runtime: PlanRunner = Depends(get_runtime)):
    """List all loaded documents."""
    return runtime.store.list_summaries()


@router.post("", response_model=PromptDocument, status_code=201)
async def create_document(body: dict[str, Any], runtime: PlanRunner = Depends(get_runtime)):
    """Build and store a document from its structured form."""
    document = runtime.store.add_from_dict(body)
    return document


@router.post("/load", response_model=PromptDocument, status_code=201)
async def load_document(request: LoadDocumentRequest, runtime: PlanRunner = Depends(get_runtime)):
    """Load a YAML or JSON plan file."""
    return runtime.store.load_file(request.path)


@router.post("/rescan", response_model=list[DocumentSummary])
async def rescan_documents(runtime: PlanRunner = Depends(get_runtime)):
    """Load plan files added to the documents directory since startup."""
    added = {doc.id for doc in runtime.store.rescan()}
    return [s for s in runtime.store.list_summaries() if s.id in added]


@router.get("/active", response_model=PromptDocument)
async def get_active_document(runtime: PlanRunner = Depends(get_runtime)):
    document = runtime.store.active
    if document is None:
        raise HTTPException(status_code=404, detail="No active document")
    return document


@router.get("/{document_id}", response_model=PromptDocument)
async def get_document(document_id: str, runtime: PlanRunner = Depends(get_runtime)):
    """Get a full document by id or title."""
    return runtime.store.resolve(document_id)


@router.delete("/{document_id}", status_code=204)
async def delete_document(document_id: str, runtime: PlanRunner = Depends(get_runtime)):
    runtime.executor.remove_document(document_id)
    return Response(status_code=204)


@router.get("/{document_id}/prompts", response_model=list[PromptSummary])
async def list_prompts(document_id: str, runtime: PlanRunner = Depends(get_runtime)):
    return runtime.executor.prompt_summaries(document_id)


@router.post("/{document_id}/activate", response_model=DocumentSummary)
async def activate_document(document_id: str, runtime: PlanRunner = Depends(get_runtime)):
    document = runtime.store.set_active(document_id)
    return DocumentSummary(
        id=document.id,
        title=document.title,
        prompt_count=len(document.prompts),
        total_estimated_time=document.metadata.total_estimated_time,
        tags=document.metadata.tags,
        source_path=document.source_path,
    )
