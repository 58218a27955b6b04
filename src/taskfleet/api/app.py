"""FastAPI application factory."""

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI, Request, status
from fastapi.responses import JSONResponse

from taskfleet import __version__
from taskfleet.api.auth import require_token
from taskfleet.api.routes import health_router, machines_router, subagents_router, tasks_router
from taskfleet.config import Settings
from taskfleet.errors import (
    BudgetExceeded,
    ClaimConflict,
    InvalidTransition,
    MachineNotRegistered,
    ProfileNotFound,
    RunNotFound,
    SubagentConcurrencyExceeded,
    TaskfleetError,
    TaskNotFound,
)
from taskfleet.runtime import Runtime, build_runtime

logger = logging.getLogger(__name__)

_STATUS_BY_ERROR: tuple[tuple[type[TaskfleetError], int], ...] = (
    (TaskNotFound, status.HTTP_404_NOT_FOUND),
    (RunNotFound, status.HTTP_404_NOT_FOUND),
    (ProfileNotFound, status.HTTP_404_NOT_FOUND),
    (MachineNotRegistered, status.HTTP_404_NOT_FOUND),
    (BudgetExceeded, status.HTTP_422_UNPROCESSABLE_ENTITY),
    (ClaimConflict, status.HTTP_409_CONFLICT),
    (InvalidTransition, status.HTTP_409_CONFLICT),
    (SubagentConcurrencyExceeded, status.HTTP_429_TOO_MANY_REQUESTS),
)


def create_app(settings: Settings | None = None, *, runtime: Runtime | None = None) -> FastAPI:
    """Build the API around an existing runtime or one built from settings.

    A runtime passed in stays owned by the caller and is not closed on shutdown.
    """

    owns_runtime = runtime is None
    if runtime is None:
        runtime = build_runtime(settings or Settings.from_env())

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        scheduler = None
        if runtime.settings.server.run_background_jobs:
            scheduler = runtime.build_scheduler()
            scheduler.start()
        try:
            yield
        finally:
            if scheduler is not None:
                scheduler.stop()
            if owns_runtime:
                runtime.close()

    app = FastAPI(
        title="taskfleet",
        version=__version__,
        lifespan=lifespan,
        dependencies=[Depends(require_token)],
    )
    app.state.runtime = runtime
    app.add_exception_handler(TaskfleetError, _domain_error_handler)  # type: ignore[arg-type]
    for router in (health_router, machines_router, tasks_router, subagents_router):
        app.include_router(router)
    return app


async def _domain_error_handler(request: Request, error: TaskfleetError) -> JSONResponse:
    code = status.HTTP_400_BAD_REQUEST
    for error_type, mapped in _STATUS_BY_ERROR:
        if isinstance(error, error_type):
            code = mapped
            break
    if code == status.HTTP_400_BAD_REQUEST:
        logger.warning("Unmapped domain error on %s: %s", request.url.path, error)
    return JSONResponse(
        status_code=code,
        content={"detail": str(error), "error": type(error).__name__},
    )
