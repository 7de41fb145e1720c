"""FastAPI application entrypoint and configuration.

This module provides the application factory that configures logging, sets
up CORS middleware, includes the data router, registers the error handlers
and exposes a health check endpoint for monitoring. Data sources are opened
during the application lifespan and their archives are closed on shutdown.

Example:
    The application can be run with uvicorn:
        $ uvicorn tileserver.main:app --app-dir backend

    Or built programmatically around an existing registry:
        >>> from tileserver import main
        >>> from tileserver.sources import registry
        >>> app = main.create_app(source_registry=registry.SourceRegistry(sources))
"""

import asyncio
import contextlib
import logging
from collections.abc import AsyncIterator

import fastapi
from fastapi import encoders, exceptions, responses
from fastapi.middleware import cors

from tileserver.api import data
from tileserver.core import config, errors, logging_setup
from tileserver.services import tiles
from tileserver.sources import models, registry

logger = logging.getLogger(__name__)


async def _load_sources(
    settings: config.Settings,
) -> dict[str, models.SourceDescriptor]:
    sources_config = config.load_sources_config(settings.config_file)
    logger.info(
        "Loading %d data sources from %s",
        len(sources_config.data),
        settings.config_file,
    )
    return await asyncio.to_thread(registry.open_sources, sources_config, settings)


def create_app(
    settings: config.Settings | None = None,
    source_registry: registry.SourceRegistry | None = None,
) -> fastapi.FastAPI:
    """Create and configure the FastAPI application.

    Args:
        settings: Settings to use instead of ``config.get_settings()``; also
            injected into the routes.
        source_registry: Pre-built registry. When omitted, sources are
            opened from ``settings.config_file`` at startup.

    Returns:
        Configured FastAPI application instance ready for ASGI server.
    """
    injected_settings = settings is not None
    settings = settings or config.get_settings()
    logging_setup.configure_logging(settings.log_level)

    @contextlib.asynccontextmanager
    async def lifespan(app: fastapi.FastAPI) -> AsyncIterator[None]:
        if source_registry is None:
            app.state.registry.replace(await _load_sources(settings))
        yield
        app.state.registry.close()

    app = fastapi.FastAPI(title="Tile Server", version="0.1.0", lifespan=lifespan)
    app.state.registry = source_registry or registry.SourceRegistry()
    app.state.data_decorator = (
        tiles.load_data_decorator(settings.data_decorator)
        if settings.data_decorator
        else None
    )
    if injected_settings:
        app.dependency_overrides[config.get_settings] = lambda: settings

    app.include_router(data.router)

    app.add_middleware(
        cors.CORSMiddleware,  # type: ignore[arg-type]
        allow_origins=settings.allow_origins,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(errors.TileServerError)
    async def tile_server_error(  # type: ignore[misc]
        request: fastapi.Request,
        exc: errors.TileServerError,
    ) -> responses.JSONResponse:
        return responses.JSONResponse(
            status_code=exc.status_code, content={"detail": exc.detail}
        )

    @app.exception_handler(exceptions.RequestValidationError)
    async def request_validation_error(  # type: ignore[misc]
        request: fastapi.Request,
        exc: exceptions.RequestValidationError,
    ) -> responses.JSONResponse:
        return responses.JSONResponse(
            status_code=400,
            content={"detail": encoders.jsonable_encoder(exc.errors())},
        )

    @app.get("/health")
    async def health() -> dict[str, str]:  # type: ignore[misc]
        """Health check endpoint for monitoring and load balancers.

        Returns:
            Dictionary with status "ok" if the service is running.
        """
        return {"status": "ok"}

    return app


app = create_app()
