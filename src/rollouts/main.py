import logging
from contextlib import asynccontextmanager
from textwrap import dedent
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from fastapi.routing import APIRoute

from rollouts.errors import (
    ConflictError,
    LedgerReadError,
    LedgerWriteError,
    RolloutError,
    RolloutNotFoundError,
)
from rollouts.machine import RolloutStateMachine
from rollouts.routers.health import router as health_router
from rollouts.routers.rollouts import router as rollouts_router
from rollouts.settings import Settings, get_settings

logger = logging.getLogger(__name__)

ERROR_STATUS_CODES = {
    ConflictError: 409,
    RolloutNotFoundError: 404,
    LedgerWriteError: 503,
    LedgerReadError: 503,
}


def create_app(settings: Optional[Settings] = None, machine: Optional[RolloutStateMachine] = None) -> FastAPI:
    """Create a FastAPI application embedding a rollout state machine."""
    settings = settings or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        state_machine = app.state.machine
        resumed = await state_machine.resume()
        if resumed:
            logger.info(f"Resumed {len(resumed)} unfinished rollouts")
        yield
        await state_machine.shutdown()

    app = FastAPI(
        title="Rollouts API",
        summary="Blue/green rollouts with canary traffic shifting",
        version="v1",
        description=dedent(
            """\
        Start, inspect and cancel zero-downtime rollouts.

        | Endpoint | Notes |
        | --- | --- |
        | `POST /v1/rollouts` | 409 while the unit has a rollout in flight |
        | `GET /v1/rollouts/{id}/history` | Ledger entries in recorded order |
        """
        ),
        docs_url="/",
        generate_unique_id_function=custom_generate_unique_id,
        lifespan=lifespan,
    )

    app.state.settings = settings
    app.state.machine = machine or RolloutStateMachine.build(settings)

    app.include_router(rollouts_router, prefix="/v1", tags=["rollouts"])
    app.include_router(health_router, tags=["health"])

    app.add_exception_handler(RolloutError, handle_rollout_errors)
    app.add_exception_handler(ValueError, handle_value_errors)

    return app


async def handle_rollout_errors(request: Request, exc: RolloutError) -> JSONResponse:
    status_code = 500
    for error_class, code in ERROR_STATUS_CODES.items():
        if isinstance(exc, error_class):
            status_code = code
            break
    if status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc}")
    return JSONResponse(
        status_code=status_code,
        content={
            "detail": exc.message,
            "rollout_id": exc.rollout_id,
            "state": exc.state,
            "failure_reason": exc.failure_reason.value if exc.failure_reason else None,
        },
    )


async def handle_value_errors(request: Request, exc: ValueError) -> JSONResponse:
    return JSONResponse(status_code=422, content={"detail": str(exc)})


def custom_generate_unique_id(route: APIRoute):
    """
    Generate prettier `operationId`s in the OpenAPI schema.

    These become the function names in generated client SDKs.
    """
    return f"{route.tags[0]}-{route.name}"
