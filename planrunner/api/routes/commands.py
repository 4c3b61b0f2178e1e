"""Command webhook route.

    POST /v1/commands   Typed automation command (execute, status, cancel, ...)

The token may arrive as a header or inside the body, so authentication is
done by the command service rather than the router dependency.
"""

from typing import Optional

from fastapi import APIRouter, Depends, Header
from fastapi.responses import JSONResponse

from planrunner.api.deps import extract_token, get_runtime
from planrunner.commands.schemas import CommandRequest, CommandResponse, ResponseStatus
from planrunner.runtime import PlanRunner

router = APIRouter(tags=["commands"])

_HTTP_STATUS = {
    ResponseStatus.SUCCESS: 200,
    ResponseStatus.PROCESSING: 202,
    ResponseStatus.ERROR: 400,
    ResponseStatus.NOT_FOUND: 404,
    ResponseStatus.UNAUTHORIZED: 401,
    ResponseStatus.CONFLICT: 409,
}


@router.post("/commands", response_model=CommandResponse)
def handle_command(
    request: CommandRequest,
    authorization: Optional[str] = Header(default=None),
    x_api_token: Optional[str] = Header(default=None),
    runtime: PlanRunner = Depends(get_runtime),
):
    response = runtime.commands.handle(request, token=extract_token(authorization, x_api_token))
    return JSONResponse(
        status_code=_HTTP_STATUS[response.status],
        content=response.model_dump(mode="json"),
    )
