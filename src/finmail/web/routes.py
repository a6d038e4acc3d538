"""JSON API routes for finmail.

All endpoints live on api_router under /api:
- Health and readiness
- Google sign-in and users
- Financial emails, contacts, labels, filters and exports
- Gmail sync and Gmail labels
- Bulk operations and batch job tracking

All routes use FastAPI dependency injection to access shared state. Calls to
the blocking Google clients run in a worker thread.
Missing entities answer 404; request validation errors answer 400.
"""

from __future__ import annotations

import asyncio
from datetime import date, datetime
from typing import Any, Literal

from fastapi import APIRouter, Depends, HTTPException, Query
from fastapi.responses import JSONResponse
from pydantic import Field

from finmail import __version__
from finmail.classifier.categorize import categorize_email
from finmail.config_schema import AppConfig
from finmail.core.logging import get_logger
from finmail.db.models import verify_schema
from finmail.db.store import ContactType, DatabaseStore, EmailCategory, User
from finmail.engine.batch import BatchJobTracker
from finmail.engine.criteria import (
    BulkContactOperation,
    BulkEmailOperation,
    CamelModel,
    DateRange,
)
from finmail.engine.export import ExportEngine
from finmail.engine.filters import run_filter
from finmail.engine.sync import GmailSyncEngine, MessageManagerFactory, persist_refreshed_tokens
from finmail.gmail.labels import LabelManager
from finmail.gmail.oauth import GoogleOAuth
from finmail.web.dependencies import (
    get_config,
    get_export_engine,
    get_manager_factory,
    get_oauth,
    get_store,
    get_sync_engine,
    get_tracker,
)

logger = get_logger(__name__)

api_router = APIRouter(prefix="/api")

HEX_COLOR = r"^#[0-9a-fA-F]{6}$"


# ---------------------------------------------------------------------------
# Pydantic models for API input validation
# ---------------------------------------------------------------------------


class GoogleCallbackRequest(CamelModel):
    """Authorization code returned to the OAuth redirect URI."""

    code: str = Field(min_length=1)


class GoogleAuthRequest(CamelModel):
    """Tokens obtained by the browser client."""

    email: str = Field(min_length=3)
    google_id: str = Field(min_length=1)
    access_token: str = Field(min_length=1)
    refresh_token: str | None = None


class CreateEmailRequest(CamelModel):
    gmail_id: str = Field(min_length=1)
    subject: str
    from_email: str
    date: datetime
    from_name: str = ""
    to_email: str = ""
    thread_id: str | None = None
    category: EmailCategory | None = None
    label_id: int | None = None
    has_attachments: bool = False
    attachment_count: int = Field(default=0, ge=0)
    snippet: str = ""


class CreateContactRequest(CamelModel):
    name: str = Field(min_length=1)
    email: str = Field(min_length=3)
    type: ContactType = "other"
    domain: str | None = None


class CreateLabelRequest(CamelModel):
    name: str = Field(min_length=1)
    description: str | None = None
    color: str = Field(default="#1976D2", pattern=HEX_COLOR)
    is_active: bool = True


class UpdateLabelRequest(CamelModel):
    name: str | None = Field(default=None, min_length=1)
    description: str | None = None
    color: str | None = Field(default=None, pattern=HEX_COLOR)
    is_active: bool | None = None


class CreateGmailLabelRequest(CamelModel):
    """Gmail label to create; optionally tracked as a finance label too."""

    name: str = Field(min_length=1)
    color: str | None = Field(default=None, pattern=HEX_COLOR)
    track: bool = False


class BulkLabelRequest(CamelModel):
    """Apply a Gmail label to Gmail messages."""

    email_ids: list[str] = Field(min_length=1)
    label_id: str = Field(min_length=1)


class FilterConditions(CamelModel):
    from_: list[str] | None = Field(default=None, alias="from")
    subject: list[str] | None = None
    has_attachment: bool | None = None


class FilterActions(CamelModel):
    label_id: int | None = None
    export_to_drive: bool | None = None
    save_attachments: bool | None = None


class CreateFilterRequest(CamelModel):
    name: str = Field(min_length=1)
    conditions: FilterConditions = Field(default_factory=FilterConditions)
    actions: FilterActions = Field(default_factory=FilterActions)
    is_active: bool = True


class UpdateFilterRequest(CamelModel):
    name: str | None = Field(default=None, min_length=1)
    conditions: FilterConditions | None = None
    actions: FilterActions | None = None
    is_active: bool | None = None


class CreateExportRequest(CamelModel):
    type: Literal["metadata", "pdf", "attachments"] = "metadata"
    format: Literal["csv", "json", "xlsx"] | None = None
    category: str | None = None
    date_range: DateRange | None = None


# ---------------------------------------------------------------------------
# Bulk operation templates
# ---------------------------------------------------------------------------

EMAIL_TEMPLATES: dict[str, dict[str, Any]] = {
    "categorizeReceipts": {
        "operation": "categorize",
        "criteria": {
            "category": "receipt",
            "dateRange": {"start": "2024-01-01", "end": "2024-12-31"},
        },
        "actions": {"newCategory": "receipt"},
    },
    "labelByDomain": {
        "operation": "label",
        "criteria": {"fromDomains": ["amazon.com", "paypal.com"]},
        "actions": {"newLabelId": 1},
    },
    "exportAttachments": {
        "operation": "export",
        "criteria": {"hasAttachments": True, "category": "bill"},
        "actions": {"exportType": "attachments"},
    },
}

CONTACT_TEMPLATES: dict[str, dict[str, Any]] = {
    "categorizeVendors": {
        "operation": "categorize",
        "criteria": {"types": ["vendor"]},
        "actions": {"newType": "vendor"},
    },
    "cleanupOldContacts": {
        "operation": "delete",
        "criteria": {"lastEmailBefore": "2023-01-01"},
    },
}


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _public_user(user: User) -> dict[str, Any]:
    """User fields safe to return to the browser (no tokens)."""
    return {
        "id": user.id,
        "email": user.email,
        "google_id": user.google_id,
        "gmail_connected": bool(user.access_token),
        "created_at": user.created_at,
    }


async def _require_user(store: DatabaseStore, user_id: int) -> User:
    user = await store.get_user(user_id)
    if user is None:
        raise HTTPException(status_code=404, detail="User not found")
    return user


# ---------------------------------------------------------------------------
# Health
# ---------------------------------------------------------------------------


@api_router.get("/health")
async def health_check():
    """Liveness check."""
    return {"status": "healthy", "timestamp": datetime.now().astimezone(), "version": __version__}


@api_router.get("/ready")
async def readiness_check(store: DatabaseStore = Depends(get_store)):
    """Readiness check: the database has every table."""
    if not await verify_schema(store.db_path):
        return JSONResponse(status_code=503, content={"status": "not_ready"})
    return {"status": "ready", "timestamp": datetime.now().astimezone()}


# ---------------------------------------------------------------------------
# Auth and users
# ---------------------------------------------------------------------------


@api_router.get("/auth/google/url")
async def google_auth_url(state: str | None = None, oauth: GoogleOAuth = Depends(get_oauth)):
    """Consent screen URL for connecting Gmail."""
    return {"url": oauth.get_authorization_url(state)}


@api_router.post("/auth/google/callback")
async def google_auth_callback(
    body: GoogleCallbackRequest,
    store: DatabaseStore = Depends(get_store),
    oauth: GoogleOAuth = Depends(get_oauth),
):
    """Exchange an authorization code and sign the user in."""
    tokens = await asyncio.to_thread(oauth.exchange_code, body.code)
    profile = await asyncio.to_thread(oauth.get_user_info, tokens["access_token"])
    user = await store.upsert_user(
        email=profile["email"],
        google_id=str(profile["id"]),
        access_token=tokens["access_token"],
        refresh_token=tokens.get("refresh_token"),
    )
    return {"user": _public_user(user)}


@api_router.post("/auth/google")
async def google_auth(body: GoogleAuthRequest, store: DatabaseStore = Depends(get_store)):
    """Create or update a user from tokens obtained by the client."""
    user = await store.upsert_user(
        email=body.email,
        google_id=body.google_id,
        access_token=body.access_token,
        refresh_token=body.refresh_token,
    )
    return {"user": _public_user(user)}


@api_router.get("/user/{user_id}")
async def get_user(user_id: int, store: DatabaseStore = Depends(get_store)):
    return _public_user(await _require_user(store, user_id))


# ---------------------------------------------------------------------------
# Financial emails
# ---------------------------------------------------------------------------


@api_router.get("/users/{user_id}/emails")
async def list_emails(
    user_id: int,
    category: str | None = None,
    limit: int | None = Query(default=None, ge=1, le=1000),
    offset: int = Query(default=0, ge=0),
    store: DatabaseStore = Depends(get_store),
):
    """A user's financial emails, newest first."""
    await _require_user(store, user_id)
    return await store.get_financial_emails(user_id, category=category, limit=limit, offset=offset)


@api_router.post("/users/{user_id}/emails", status_code=201)
async def create_email(
    user_id: int,
    body: CreateEmailRequest,
    store: DatabaseStore = Depends(get_store),
):
    """Store a financial email; the category is derived when not given."""
    await _require_user(store, user_id)
    if await store.get_email_by_gmail_id(body.gmail_id) is not None:
        raise HTTPException(status_code=409, detail=f"Email {body.gmail_id} already exists")
    if body.label_id is not None:
        label = await store.get_finance_label(body.label_id)
        if label is None or label.user_id != user_id:
            raise HTTPException(status_code=404, detail="Label not found")

    fields = body.model_dump()
    fields["category"] = body.category or categorize_email(
        body.subject, body.from_email, body.snippet
    )
    return await store.create_financial_email(user_id=user_id, **fields)


@api_router.get("/users/{user_id}/stats")
async def email_stats(user_id: int, store: DatabaseStore = Depends(get_store)):
    """Counts by category for the dashboard."""
    await _require_user(store, user_id)
    return await store.get_email_stats(user_id)


# ---------------------------------------------------------------------------
# Financial contacts
# ---------------------------------------------------------------------------


@api_router.get("/users/{user_id}/contacts")
async def list_contacts(user_id: int, store: DatabaseStore = Depends(get_store)):
    await _require_user(store, user_id)
    return await store.get_financial_contacts(user_id)


@api_router.post("/users/{user_id}/contacts", status_code=201)
async def create_contact(
    user_id: int,
    body: CreateContactRequest,
    store: DatabaseStore = Depends(get_store),
):
    await _require_user(store, user_id)
    return await store.create_financial_contact(user_id=user_id, **body.model_dump())


# ---------------------------------------------------------------------------
# Finance labels and Gmail labels
# ---------------------------------------------------------------------------


@api_router.get("/users/{user_id}/labels")
async def list_labels(user_id: int, store: DatabaseStore = Depends(get_store)):
    await _require_user(store, user_id)
    return await store.get_finance_labels(user_id)


@api_router.post("/users/{user_id}/labels", status_code=201)
async def create_label(
    user_id: int,
    body: CreateLabelRequest,
    store: DatabaseStore = Depends(get_store),
):
    await _require_user(store, user_id)
    return await store.create_finance_label(user_id=user_id, **body.model_dump())


@api_router.put("/labels/{label_id}")
async def update_label(
    label_id: int,
    body: UpdateLabelRequest,
    store: DatabaseStore = Depends(get_store),
):
    label = await store.update_finance_label(label_id, **body.model_dump(exclude_unset=True))
    if label is None:
        raise HTTPException(status_code=404, detail="Label not found")
    return label


@api_router.delete("/labels/{label_id}")
async def delete_label(label_id: int, store: DatabaseStore = Depends(get_store)):
    if not await store.delete_finance_label(label_id):
        raise HTTPException(status_code=404, detail="Label not found")
    return {"success": True}


@api_router.get("/users/{user_id}/gmail/labels")
async def list_gmail_labels(
    user_id: int,
    store: DatabaseStore = Depends(get_store),
    manager_factory: MessageManagerFactory = Depends(get_manager_factory),
):
    """Labels in the user's Gmail mailbox."""
    user = await _require_user(store, user_id)
    manager = manager_factory(user)
    labels = await asyncio.to_thread(LabelManager(manager.client).list_labels)
    await persist_refreshed_tokens(store, user, manager)
    return labels


@api_router.post("/users/{user_id}/gmail/labels", status_code=201)
async def create_gmail_label(
    user_id: int,
    body: CreateGmailLabelRequest,
    store: DatabaseStore = Depends(get_store),
    manager_factory: MessageManagerFactory = Depends(get_manager_factory),
):
    """Create a Gmail label, optionally tracking it as a finance label."""
    user = await _require_user(store, user_id)
    manager = manager_factory(user)
    gmail_label = await asyncio.to_thread(
        LabelManager(manager.client).create_label, body.name, body.color
    )
    await persist_refreshed_tokens(store, user, manager)

    finance_label = None
    if body.track:
        finance_label = await store.create_finance_label(
            user_id=user_id,
            name=body.name,
            color=body.color or "#1976D2",
            gmail_label_id=gmail_label.get("id"),
        )
    return {"gmail_label": gmail_label, "label": finance_label}


@api_router.post("/users/{user_id}/emails/bulk-label")
async def bulk_label_gmail(
    user_id: int,
    body: BulkLabelRequest,
    store: DatabaseStore = Depends(get_store),
    manager_factory: MessageManagerFactory = Depends(get_manager_factory),
):
    """Add a Gmail label to Gmail messages."""
    user = await _require_user(store, user_id)
    manager = manager_factory(user)
    processed = await asyncio.to_thread(
        manager.add_label_to_messages, body.email_ids, body.label_id
    )
    await persist_refreshed_tokens(store, user, manager)
    return {"success": True, "processed": processed}


# ---------------------------------------------------------------------------
# Filters
# ---------------------------------------------------------------------------


@api_router.get("/users/{user_id}/filters")
async def list_filters(user_id: int, store: DatabaseStore = Depends(get_store)):
    await _require_user(store, user_id)
    return await store.get_email_filters(user_id)


@api_router.post("/users/{user_id}/filters", status_code=201)
async def create_filter(
    user_id: int,
    body: CreateFilterRequest,
    store: DatabaseStore = Depends(get_store),
):
    await _require_user(store, user_id)
    return await store.create_email_filter(
        user_id=user_id,
        name=body.name,
        conditions=body.conditions.to_json(),
        actions=body.actions.to_json(),
        is_active=body.is_active,
    )


@api_router.put("/filters/{filter_id}")
async def update_filter(
    filter_id: int,
    body: UpdateFilterRequest,
    store: DatabaseStore = Depends(get_store),
):
    updates: dict[str, Any] = body.model_dump(exclude_unset=True, exclude={"conditions", "actions"})
    if body.conditions is not None:
        updates["conditions"] = body.conditions.to_json()
    if body.actions is not None:
        updates["actions"] = body.actions.to_json()

    email_filter = await store.update_email_filter(filter_id, **updates)
    if email_filter is None:
        raise HTTPException(status_code=404, detail="Filter not found")
    return email_filter


@api_router.delete("/filters/{filter_id}")
async def delete_filter(filter_id: int, store: DatabaseStore = Depends(get_store)):
    if not await store.delete_email_filter(filter_id):
        raise HTTPException(status_code=404, detail="Filter not found")
    return {"success": True}


@api_router.post("/filters/{filter_id}/run")
async def run_saved_filter(filter_id: int, store: DatabaseStore = Depends(get_store)):
    """Match a filter against stored emails and apply its label."""
    email_filter = await store.get_email_filter(filter_id)
    if email_filter is None:
        raise HTTPException(status_code=404, detail="Filter not found")
    return await run_filter(store, email_filter)


# ---------------------------------------------------------------------------
# Exports
# ---------------------------------------------------------------------------


@api_router.get("/users/{user_id}/exports")
async def list_exports(user_id: int, store: DatabaseStore = Depends(get_store)):
    await _require_user(store, user_id)
    return await store.get_export_jobs(user_id)


@api_router.post("/users/{user_id}/exports", status_code=201)
async def create_export(
    user_id: int,
    body: CreateExportRequest,
    store: DatabaseStore = Depends(get_store),
    export_engine: ExportEngine = Depends(get_export_engine),
):
    """Write an export file now and return its job."""
    await _require_user(store, user_id)
    start: date | None = body.date_range.start if body.date_range else None
    end: date | None = body.date_range.end if body.date_range else None
    return await export_engine.run_export(
        user_id,
        export_type=body.type,
        export_format=body.format,
        category=body.category,
        start=start,
        end=end,
    )


# ---------------------------------------------------------------------------
# Gmail sync
# ---------------------------------------------------------------------------


@api_router.post("/users/{user_id}/sync")
async def sync_gmail(
    user_id: int,
    store: DatabaseStore = Depends(get_store),
    sync_engine: GmailSyncEngine = Depends(get_sync_engine),
):
    """Pull financial emails from Gmail now."""
    user = await _require_user(store, user_id)
    result = await sync_engine.sync_user(user)
    return {
        "success": True,
        "fetched": result.fetched,
        "created": result.created,
        "updated": result.updated,
        "contacts": result.contacts_touched,
        "duration_ms": result.duration_ms,
    }


# ---------------------------------------------------------------------------
# Bulk operations and batch jobs
# ---------------------------------------------------------------------------


@api_router.post("/users/{user_id}/bulk/emails", status_code=202)
async def submit_bulk_email_operation(
    user_id: int,
    body: BulkEmailOperation,
    store: DatabaseStore = Depends(get_store),
    tracker: BatchJobTracker = Depends(get_tracker),
):
    """Start a bulk email operation; poll the returned job for progress."""
    await _require_user(store, user_id)
    return await tracker.submit_email_operation(user_id, body)


@api_router.post("/users/{user_id}/bulk/contacts", status_code=202)
async def submit_bulk_contact_operation(
    user_id: int,
    body: BulkContactOperation,
    store: DatabaseStore = Depends(get_store),
    tracker: BatchJobTracker = Depends(get_tracker),
):
    """Start a bulk contact operation; poll the returned job for progress."""
    await _require_user(store, user_id)
    return await tracker.submit_contact_operation(user_id, body)


@api_router.get("/users/{user_id}/batch-jobs")
async def list_batch_jobs(
    user_id: int,
    active: bool = False,
    tracker: BatchJobTracker = Depends(get_tracker),
):
    return await tracker.list_jobs(user_id, active_only=active)


@api_router.get("/batch-jobs/{job_id}")
async def get_batch_job(job_id: int, store: DatabaseStore = Depends(get_store)):
    job = await store.get_batch_job(job_id)
    if job is None:
        raise HTTPException(status_code=404, detail="Batch job not found")
    return job


@api_router.get("/batch-jobs/{job_id}/status")
async def get_batch_job_status(job_id: int, tracker: BatchJobTracker = Depends(get_tracker)):
    """Job, its operations, and operation counts by status."""
    status = await tracker.status(job_id)
    if status is None:
        raise HTTPException(status_code=404, detail="Batch job not found")
    return status


@api_router.post("/batch-jobs/{job_id}/cancel")
async def cancel_batch_job(job_id: int, tracker: BatchJobTracker = Depends(get_tracker)):
    """Cancel a pending or running job. Terminal jobs answer 400."""
    job = await tracker.cancel(job_id)
    if job is None:
        raise HTTPException(status_code=404, detail="Batch job not found")
    return {"success": True, "message": "Batch job cancelled", "job": job}


@api_router.get("/batch-jobs/{job_id}/operations")
async def list_batch_operations(job_id: int, store: DatabaseStore = Depends(get_store)):
    if await store.get_batch_job(job_id) is None:
        raise HTTPException(status_code=404, detail="Batch job not found")
    return await store.get_batch_operations(job_id)


@api_router.get("/bulk/templates/emails")
async def bulk_email_templates():
    """Example bulk email requests for the dashboard."""
    return EMAIL_TEMPLATES


@api_router.get("/bulk/templates/contacts")
async def bulk_contact_templates():
    """Example bulk contact requests for the dashboard."""
    return CONTACT_TEMPLATES


@api_router.get("/config/summary")
async def config_summary(config: AppConfig = Depends(get_config)):
    """Non-secret settings the dashboard displays."""
    return {
        "financial_queries": config.gmail.financial_queries,
        "max_results": config.gmail.max_results,
        "item_delay_ms": config.batch.item_delay_ms,
        "export_default_format": config.export.default_format,
    }
