"""Shared FastAPI dependencies: runtime lookup and token authentication."""

from typing import Optional

from fastapi import Header, HTTPException, Request

from planrunner.commands.service import verify_token
from planrunner.errors import AuthenticationError
from planrunner.runtime import PlanRunner


def get_runtime(request: Request) -> PlanRunner:
    return request.app.state.runtime


def extract_token(
    authorization: Optional[str] = None,
    x_api_token: Optional[str] = None,
) -> Optional[str]:
    if x_api_token:
        return x_api_token
    if authorization and authorization.lower().startswith("bearer "):
        return authorization[len("bearer "):].strip()
    return None


def require_token(
    request: Request,
    authorization: Optional[str] = Header(default=None),
    x_api_token: Optional[str] = Header(default=None),
) -> None:
    """Reject the request unless it carries the configured shared token."""
    runtime = get_runtime(request)
    try:
        verify_token(runtime.settings.api_token, extract_token(authorization, x_api_token))
    except AuthenticationError as e:
        raise HTTPException(
            status_code=401,
            detail=str(e),
            headers={"WWW-Authenticate": "Bearer"},
        )
