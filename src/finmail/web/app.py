"""FastAPI application for the finmail JSON API.

Creates the FastAPI app with:
- Lifespan context manager for dependency initialization and the batch worker
- Exception handlers mapping finmail errors to HTTP status codes
- The /api router

The batch worker runs as an asyncio task on the same event loop as
uvicorn, started and stopped by the lifespan.

Usage:
    from finmail.web.app import create_app

    app = create_app()
    # Run with: uvicorn.run(app, host="127.0.0.1", port=8080)
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from functools import partial

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from finmail import __version__
from finmail.core.errors import (
    AuthenticationError,
    BatchJobError,
    ConfigLoadError,
    DatabaseError,
    GmailAPIError,
    RateLimitExceeded,
)
from finmail.core.logging import get_logger

logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Initialize dependencies on startup, clean up on shutdown.

    On startup:
    1. Load config (defaults when config.yaml is missing)
    2. Initialize database
    3. Build the Google OAuth client and Gmail manager factory
    4. Create the engines and start the batch worker

    On shutdown:
    - Stop the batch worker
    """
    from finmail.config import get_config
    from finmail.config_schema import AppConfig
    from finmail.db.store import DatabaseStore
    from finmail.engine.batch import BatchJobTracker
    from finmail.engine.export import ExportEngine
    from finmail.engine.sync import GmailSyncEngine, build_message_manager
    from finmail.gmail.oauth import GoogleOAuth

    # 1. Load config
    try:
        config = get_config()
    except ConfigLoadError as e:
        logger.warning("config_load_failed_using_defaults", error=str(e))
        config = AppConfig()
    app.state.config = config

    # 2. Initialize database
    store = DatabaseStore(config.database.path)
    await store.initialize()
    app.state.store = store

    # 3. Google OAuth and Gmail access
    oauth = GoogleOAuth.from_config(config.google)
    manager_factory = partial(build_message_manager, oauth=oauth)
    app.state.oauth = oauth
    app.state.manager_factory = manager_factory

    # 4. Engines and batch worker
    tracker = BatchJobTracker(store, config, manager_factory)
    app.state.tracker = tracker
    app.state.sync_engine = GmailSyncEngine(store, config, manager_factory)
    app.state.export_engine = ExportEngine(store, config)

    tracker.start()
    logger.info("app_started", database=config.database.path, version=__version__)

    yield

    # Shutdown
    await tracker.stop()


def _validation_errors(exc: RequestValidationError) -> list[dict]:
    return [
        {"loc": [str(part) for part in err["loc"]], "msg": err["msg"], "type": err["type"]}
        for err in exc.errors()
    ]


async def _request_validation_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(
        status_code=400,
        content={"detail": "Invalid request data", "errors": _validation_errors(exc)},
    )


async def _authentication_handler(request: Request, exc: AuthenticationError):
    return JSONResponse(status_code=400, content={"detail": str(exc)})


async def _batch_job_handler(request: Request, exc: BatchJobError):
    return JSONResponse(status_code=400, content={"detail": str(exc)})


async def _gmail_handler(request: Request, exc: GmailAPIError | RateLimitExceeded):
    logger.error("gmail_request_failed", path=request.url.path, error=str(exc))
    return JSONResponse(status_code=500, content={"detail": "Gmail request failed"})


async def _database_handler(request: Request, exc: DatabaseError):
    logger.error("database_request_failed", path=request.url.path, error=str(exc))
    return JSONResponse(status_code=500, content={"detail": "Internal server error"})


def create_app() -> FastAPI:
    """Create and configure the FastAPI application.

    Returns:
        Configured FastAPI instance
    """
    from finmail.web.routes import api_router

    app = FastAPI(
        title="finmail",
        description="Financial email dashboard API for Gmail",
        version=__version__,
        lifespan=lifespan,
    )

    app.add_exception_handler(RequestValidationError, _request_validation_handler)
    app.add_exception_handler(AuthenticationError, _authentication_handler)
    app.add_exception_handler(BatchJobError, _batch_job_handler)
    app.add_exception_handler(GmailAPIError, _gmail_handler)
    app.add_exception_handler(RateLimitExceeded, _gmail_handler)
    app.add_exception_handler(DatabaseError, _database_handler)

    app.include_router(api_router)

    return app
