"""FastAPI application entrypoint and configuration.

This module provides the application factory that configures logging, sets
up CORS middleware, includes the dataset registration router and exposes a
health check endpoint for monitoring.

Example:
    The application can be run with uvicorn:
        $ uvicorn geoloader.main:app

    Or imported and used programmatically:
        >>> from geoloader.main import create_app
        >>> app = create_app()
"""

import fastapi
from fastapi.middleware import cors

from geoloader.api import register
from geoloader.core import config
from geoloader.core import logging as geoloader_logging


def create_app() -> fastapi.FastAPI:
    """Create and configure the FastAPI application.

    Configures the ``geoloader`` logger from settings, includes the
    registration router and adds a health check endpoint. CORS origins are
    configured from settings.

    Returns:
        Configured FastAPI application instance ready for ASGI server.
    """
    settings = config.get_settings()
    geoloader_logging.configure_logging(settings.log_level)
    app = fastapi.FastAPI(title="GeoLoader", version="0.1.0")

    app.include_router(register.router)

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
