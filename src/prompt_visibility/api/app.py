"""FastAPI application factory."""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, Response
from fastapi.responses import JSONResponse

from prompt_visibility import __version__
from prompt_visibility.api import routes
from prompt_visibility.api.schemas import ErrorResponse
from prompt_visibility.batch.errors import BatchError
from prompt_visibility.batch.providers import build_provider_clients
from prompt_visibility.batch.repository import BatchRepository
from prompt_visibility.batch.runtime import ClientsFactory, build_runtime
from prompt_visibility.config import Settings

logger = logging.getLogger(__name__)


def create_app(
    settings: Settings,
    *,
    clients_factory: ClientsFactory = build_provider_clients,
) -> FastAPI:
    """Build the API with one repository and service graph per process."""

    repository = BatchRepository(
        settings.db_path,
        busy_timeout_ms=settings.sqlite_busy_timeout_ms,
    )
    repository.init_schema()
    runtime = build_runtime(settings, repository, clients_factory=clients_factory)

    @asynccontextmanager
    async def lifespan(_: FastAPI) -> AsyncIterator[None]:
        yield
        runtime.close()

    app = FastAPI(title="Prompt Visibility Batch API", version=__version__, lifespan=lifespan)
    app.state.settings = settings
    app.state.runtime = runtime

    @app.exception_handler(BatchError)
    async def batch_error_handler(_: Request, error: BatchError) -> JSONResponse:
        logger.warning("Batch request rejected (%s): %s", error.action, error)
        return JSONResponse(
            status_code=200,
            content=ErrorResponse(action=error.action, error=str(error)).model_dump(),
        )

    @app.middleware("http")
    async def catch_unhandled(
        request: Request,
        call_next: Callable[[Request], Awaitable[Response]],
    ) -> Response:
        try:
            return await call_next(request)
        except Exception as error:  # noqa: BLE001
            logger.exception("Unhandled error on %s %s", request.method, request.url.path)
            return JSONResponse(
                status_code=200,
                content=ErrorResponse(error=str(error) or error.__class__.__name__).model_dump(),
            )

    app.include_router(routes.router, tags=["batch"])
    app.include_router(routes.health_router, tags=["health"])
    return app
