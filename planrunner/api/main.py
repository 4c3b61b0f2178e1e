"""Plan Runner API - prompt plan execution service.

Serves:
- Documents (structured prompt plans)
- Executions (start, poll, cancel) and sequences
- Typed automation commands (webhook style)
- Lifecycle events (polling and server-sent events)

Every /v1 route requires the shared token when one is configured.
"""

import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from planrunner import __version__
from planrunner.api.routes import commands, documents, events, executions, sequences
from planrunner.config import ServiceSettings
from planrunner.errors import (
    AuthenticationError,
    DocumentIntegrityError,
    DocumentValidationError,
    InvalidState,
    NotFound,
    PlanRunnerError,
    UnsatisfiedDependency,
)
from planrunner.runtime import PlanRunner

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

_ERROR_STATUS = (
    (NotFound, 404),
    (UnsatisfiedDependency, 409),
    (InvalidState, 409),
    (DocumentValidationError, 422),
    (DocumentIntegrityError, 422),
    (AuthenticationError, 401),
)


async def planrunner_error_handler(request: Request, exc: PlanRunnerError) -> JSONResponse:
    for error_type, status_code in _ERROR_STATUS:
        if isinstance(exc, error_type):
            break
    else:
        status_code = 500
        logger.error(f"Unhandled {type(exc).__name__} on {request.url.path}: {exc}")
    return JSONResponse(status_code=status_code, content={"detail": str(exc)})


def create_app(
    runtime: Optional[PlanRunner] = None,
    settings: Optional[ServiceSettings] = None,
) -> FastAPI:
    """Build the API around a runtime.

    A runtime passed in stays owned by the caller (tests); otherwise one is
    built from settings (or PLANRUNNER_* env vars) and closed on shutdown.
    """
    owns_runtime = runtime is None
    if runtime is None:
        runtime = PlanRunner(settings or ServiceSettings.from_env())

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Application lifespan handler."""
        logger.info("Loading plan documents...")
        runtime.start()
        logger.info("Plan Runner API ready")
        yield
        logger.info("Shutting down Plan Runner API")
        if owns_runtime:
            runtime.close()

    app = FastAPI(
        title="Plan Runner API",
        description="""
## Prompt Plan Execution Service

Executes structured prompt plans (ordered prompts with dependencies and
typed steps) against the local machine.

### Key Endpoints

- `POST /v1/documents` - Add a plan
- `POST /v1/executions` - Execute one prompt
- `GET /v1/executions/{id}` - Poll an execution
- `POST /v1/commands` - Typed automation command
- `GET /v1/events/stream` - Live lifecycle events (SSE)
""",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.runtime = runtime

    # Add CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.add_exception_handler(PlanRunnerError, planrunner_error_handler)

    # Include routers with /v1 prefix
    app.include_router(documents.router, prefix="/v1")
    app.include_router(executions.router, prefix="/v1")
    app.include_router(sequences.router, prefix="/v1")
    app.include_router(commands.router, prefix="/v1")
    app.include_router(events.router, prefix="/v1")

    @app.get("/")
    async def root():
        """Root endpoint with API info."""
        return {
            "service": "Plan Runner API",
            "version": __version__,
            "docs": "/docs",
            "endpoints": {
                "documents": "/v1/documents",
                "executions": "/v1/executions",
                "sequences": "/v1/sequences",
                "commands": "/v1/commands",
                "events": "/v1/events",
            },
        }

    @app.get("/health")
    async def health():
        """Health check endpoint."""
        return {
            "status": "healthy",
            "version": __version__,
            "documents_loaded": runtime.store.count(),
            "active_executions": runtime.tracker.count(),
            "max_concurrent": runtime.settings.executor.max_concurrent,
        }

    return app


if __name__ == "__main__":
    import uvicorn

    env_settings = ServiceSettings.from_env()
    uvicorn.run(
        "planrunner.api.main:create_app",
        factory=True,
        host=env_settings.host,
        port=env_settings.port,
    )
