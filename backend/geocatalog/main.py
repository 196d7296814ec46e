"""FastAPI application entrypoint and configuration.

This module provides the main FastAPI application factory that configures
logging, sets up CORS middleware, includes the API routers for imports,
matches and collections, maps pipeline errors to HTTP responses and exposes
a health check endpoint for monitoring.

Example:
    The application can be run with uvicorn:
        $ uvicorn geocatalog.main:app --reload

    Or imported and used programmatically:
        >>> from geocatalog.main import app
        >>> # Use app in ASGI server
"""

import logging

import fastapi
from fastapi import responses
from fastapi.middleware import cors

from geocatalog.api import collections, imports, matches
from geocatalog.core import config, exceptions, logging_setup

logger = logging.getLogger(__name__)

# most specific first
ERROR_STATUS: tuple[tuple[type[exceptions.GeoCatalogError], int], ...] = (
    (exceptions.NotFoundError, 404),
    (exceptions.InputError, 422),
    (exceptions.QueueFullError, 503),
    (exceptions.TransientProviderError, 503),
    (exceptions.ExternalProviderError, 502),
    (exceptions.InvariantViolation, 500),
)


def status_for(error: exceptions.GeoCatalogError) -> int:
    """HTTP status code of a pipeline error."""
    for error_type, status_code in ERROR_STATUS:
        if isinstance(error, error_type):
            return status_code
    return 500


async def handle_catalog_error(
    request: fastapi.Request,
    exc: Exception,
) -> responses.JSONResponse:
    """Render GeoCatalogError subclasses as JSON error responses."""
    error = (
        exc
        if isinstance(exc, exceptions.GeoCatalogError)
        else exceptions.GeoCatalogError(str(exc))
    )
    status_code = status_for(error)
    if status_code >= 500:
        logger.error(
            "%s %s failed: %s",
            request.method,
            request.url.path,
            error,
        )
    return responses.JSONResponse(
        status_code=status_code,
        content={
            "detail": error.message,
            "context": {
                key: str(value) for key, value in error.context.items()
            },
        },
    )


def create_app() -> fastapi.FastAPI:
    """Create and configure the FastAPI application.

    Configures logging, includes the API routers, registers the error
    handlers and adds a health check endpoint. CORS origins are configured
    from settings, allowing cross-origin requests from specified domains.

    Returns:
        Configured FastAPI application instance ready for ASGI server.

    Example:
        The app can be used with uvicorn or other ASGI servers:
            >>> app = create_app()
            >>> # Or use the module-level app instance:
            >>> from geocatalog.main import app
    """
    settings = config.get_settings()
    logging_setup.setup_logging(settings.log_level, settings.log_json)
    app = fastapi.FastAPI(title="GeoCatalog", version="0.1.0")

    app.include_router(imports.router)
    app.include_router(matches.router)
    app.include_router(collections.router)

    app.add_exception_handler(
        exceptions.GeoCatalogError,
        handle_catalog_error,
    )

    app.add_middleware(
        cors.CORSMiddleware,  # type: ignore[arg-type]
        allow_origins=settings.allow_origins,
        allow_methods=["*"],
        allow_headers=["*"],
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
