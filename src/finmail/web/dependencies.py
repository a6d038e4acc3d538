"""FastAPI dependency injection helpers.

Extracts shared dependencies from app.state for use in route handlers.
All dependencies are initialized during the FastAPI lifespan and stored
on app.state, where the batch worker shares them with the routes.

Usage:
    from finmail.web.dependencies import get_store

    @api_router.get("/users/{user_id}/emails")
    async def list_emails(user_id: int, store: DatabaseStore = Depends(get_store)):
        return await store.get_financial_emails(user_id)
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from fastapi import Request

if TYPE_CHECKING:
    from finmail.config_schema import AppConfig
    from finmail.db.store import DatabaseStore
    from finmail.engine.batch import BatchJobTracker
    from finmail.engine.export import ExportEngine
    from finmail.engine.sync import GmailSyncEngine, MessageManagerFactory
    from finmail.gmail.oauth import GoogleOAuth


def get_store(request: Request) -> DatabaseStore:
    """Get the shared DatabaseStore from app state."""
    return request.app.state.store


def get_config(request: Request) -> AppConfig:
    """Get the current AppConfig from app state."""
    return request.app.state.config


def get_tracker(request: Request) -> BatchJobTracker:
    """Get the BatchJobTracker from app state."""
    return request.app.state.tracker


def get_sync_engine(request: Request) -> GmailSyncEngine:
    return request.app.state.sync_engine


def get_export_engine(request: Request) -> ExportEngine:
    return request.app.state.export_engine


def get_oauth(request: Request) -> GoogleOAuth:
    """Get the GoogleOAuth client from app state."""
    return request.app.state.oauth


def get_manager_factory(request: Request) -> MessageManagerFactory:
    """Get the factory that binds a Gmail MessageManager to a user."""
    return request.app.state.manager_factory
