"""Gmail sync engine.

Pulls a user's financial emails from Gmail and stores them:
1. Run the configured financial queries (deduplicated by message ID)
2. Insert new emails with their keyword category
3. Refresh stored fields of emails seen before
4. Upsert one contact per sender of a new email
5. Record the sync time in app_state

Usage:
    from finmail.engine.sync import GmailSyncEngine, build_message_manager

    engine = GmailSyncEngine(store, config, partial(build_message_manager, oauth=oauth))
    result = await engine.sync_user(user)
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from finmail.classifier.categorize import classify_contact_type
from finmail.core.errors import AuthenticationError
from finmail.core.logging import get_logger
from finmail.db.store import utcnow
from finmail.gmail.client import GmailClient
from finmail.gmail.messages import MessageManager

if TYPE_CHECKING:
    from finmail.config_schema import AppConfig
    from finmail.db.store import DatabaseStore, User
    from finmail.gmail.messages import ParsedEmail
    from finmail.gmail.oauth import GoogleOAuth

logger = get_logger(__name__)

MessageManagerFactory = Callable[["User"], MessageManager]


def build_message_manager(user: User, oauth: GoogleOAuth | None = None) -> MessageManager:
    """Create a MessageManager bound to a user's stored tokens.

    Raises:
        AuthenticationError: If the user has not connected Gmail
    """
    if not user.access_token:
        raise AuthenticationError(
            f"User {user.id} has no Gmail access token. Connect the Gmail account first."
        )
    return MessageManager(GmailClient(user.access_token, user.refresh_token, oauth))


async def persist_refreshed_tokens(store: DatabaseStore, user: User, manager: MessageManager) -> None:
    """Save the access token if the client had to refresh it."""
    client = manager.client
    if getattr(client, "token_refreshed", False) is True:
        await store.update_user_tokens(user.id, client.access_token, client.refresh_token)
        logger.info("user_tokens_persisted", user_id=user.id)


def email_fields(parsed: ParsedEmail) -> dict[str, Any]:
    """Stored email columns taken from a parsed Gmail message."""
    return {
        "thread_id": parsed.thread_id,
        "subject": parsed.subject,
        "from_email": parsed.from_email,
        "from_name": parsed.from_name,
        "to_email": parsed.to_email,
        "date": parsed.date,
        "has_attachments": parsed.has_attachments,
        "attachment_count": parsed.attachment_count,
        "snippet": parsed.snippet,
        "metadata": {"labels": parsed.labels},
    }


@dataclass
class SyncResult:
    """Counts from one sync run."""

    user_id: int
    fetched: int = 0
    created: int = 0
    updated: int = 0
    contacts_touched: int = 0
    duration_ms: int = 0


class GmailSyncEngine:
    """Fetches financial emails from Gmail into the store.

    Attributes:
        _store: DatabaseStore for persistence
        _config: Application configuration
        _manager_factory: Builds a MessageManager for a user
    """

    def __init__(
        self,
        store: DatabaseStore,
        config: AppConfig,
        manager_factory: MessageManagerFactory = build_message_manager,
    ):
        self._store = store
        self._config = config
        self._manager_factory = manager_factory

    def update_config(self, config: AppConfig) -> None:
        self._config = config

    async def sync_user(self, user: User) -> SyncResult:
        """Run one sync for a user.

        Raises:
            AuthenticationError: If the user has no Gmail token
            GmailAPIError: If Gmail cannot be reached at all
            DatabaseError: If storing fails
        """
        start_time = time.monotonic()
        result = SyncResult(user_id=user.id)
        manager = self._manager_factory(user)

        logger.info("gmail_sync_start", user_id=user.id, max_results=self._config.gmail.max_results)

        parsed_emails = await asyncio.to_thread(
            manager.get_financial_emails,
            self._config.gmail.financial_queries,
            max_results=self._config.gmail.max_results,
        )
        result.fetched = len(parsed_emails)

        for parsed in parsed_emails:
            existing = await self._store.get_email_by_gmail_id(parsed.id)
            if existing is not None:
                await self._store.update_financial_email(existing.id, **email_fields(parsed))
                result.updated += 1
                continue

            fields = email_fields(parsed)
            await self._store.create_financial_email(
                user_id=user.id,
                gmail_id=parsed.id,
                category=parsed.category,
                **fields,
            )
            result.created += 1

            if parsed.from_email:
                await self._store.upsert_financial_contact(
                    user_id=user.id,
                    email=parsed.from_email,
                    name=parsed.from_name,
                    type=classify_contact_type(parsed.from_email, parsed.from_name),
                    last_email_date=parsed.date,
                )
                result.contacts_touched += 1

        await persist_refreshed_tokens(self._store, user, manager)
        await self._store.set_state(f"last_sync:{user.id}", utcnow().isoformat())

        result.duration_ms = int((time.monotonic() - start_time) * 1000)
        logger.info(
            "gmail_sync_complete",
            user_id=user.id,
            fetched=result.fetched,
            created=result.created,
            updated=result.updated,
            contacts_touched=result.contacts_touched,
            duration_ms=result.duration_ms,
        )
        return result
