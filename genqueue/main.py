from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware

from genqueue.config.logging import setup_logging
from genqueue.config.settings import settings as default_settings
from genqueue.runtime import Runtime
from genqueue.v1.core.exceptions import (
    GenQueueException,
    RequestContextMiddleware,
    general_exception_handler,
    genqueue_exception_handler,
    http_exception_handler,
)
from genqueue.v1.healthz import router as health_router
from genqueue.v1.jobs.routes import router as jobs_router
from genqueue.v1.polling.routes import router as polling_router
from genqueue.v1.tasks.routes import router as tasks_router


def create_app(runtime: Runtime | None = None) -> FastAPI:
    """Create and configure the FastAPI application."""
    runtime = runtime or Runtime()
    settings = runtime.settings

    # Initialize structured logging
    setup_logging(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await runtime.startup()
        yield
        await runtime.close()

    app = FastAPI(
        title=settings.app_name,
        description="Background job queue and generation task engine",
        version=settings.version,
        debug=settings.debug,
        # All endpoints live under the /v1/ prefix
        openapi_url="/v1/openapi.json" if settings.debug else None,
        docs_url="/v1/docs" if settings.debug else None,
        redoc_url="/v1/redoc" if settings.debug else None,
        lifespan=lifespan,
    )
    app.state.runtime = runtime

    # Add middleware
    app.add_middleware(RequestContextMiddleware)

    # Add CORS middleware for development
    if settings.debug:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=["*"],
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )

    # Add exception handlers
    app.add_exception_handler(GenQueueException, genqueue_exception_handler)
    app.add_exception_handler(HTTPException, http_exception_handler)
    app.add_exception_handler(Exception, general_exception_handler)

    # Include routers with /v1 prefix
    app.include_router(health_router, prefix="/v1", tags=["health"])
    app.include_router(jobs_router, prefix="/v1")
    app.include_router(tasks_router, prefix="/v1")
    app.include_router(polling_router, prefix="/v1")

    # Freeze handler registrations outside development
    if settings.environment != "development":
        runtime.handlers.registry.freeze()

    return app


# Create the app instance
app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "genqueue.main:app",
        host=default_settings.host,
        port=default_settings.port,
        reload=default_settings.debug,
        workers=1 if default_settings.debug else default_settings.workers,
    )
