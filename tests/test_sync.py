"""Tests for the Gmail sync engine."""

import threading
from datetime import UTC, datetime
from unittest.mock import MagicMock

import pytest

from finmail.config_schema import AppConfig
from finmail.core.errors import AuthenticationError
from finmail.db.store import DatabaseStore, User
from finmail.engine.sync import GmailSyncEngine, build_message_manager, persist_refreshed_tokens
from finmail.gmail.messages import ParsedEmail


def _parsed(
    msg_id: str,
    subject: str = "Your receipt",
    from_email: str = "orders@shop.com",
    from_name: str = "Shop",
    date: datetime = datetime(2024, 3, 1, 12, 0, tzinfo=UTC),
) -> ParsedEmail:
    return ParsedEmail(
        id=msg_id,
        thread_id=f"t-{msg_id}",
        subject=subject,
        from_email=from_email,
        from_name=from_name,
        to_email="owner@example.com",
        date=date,
        has_attachments=False,
        attachment_count=0,
        category="receipt",
        labels=["INBOX", "CATEGORY_UPDATES"],
        snippet="Thanks",
    )


def _manager(emails: list[ParsedEmail], token_refreshed: bool = False) -> MagicMock:
    manager = MagicMock()
    manager.get_financial_emails.return_value = emails
    manager.client.token_refreshed = token_refreshed
    manager.client.access_token = "fresh-access"
    manager.client.refresh_token = "refresh-token"
    return manager


async def test_sync_creates_emails_and_contacts(
    store: DatabaseStore, sample_config: AppConfig, user: User
) -> None:
    manager = _manager(
        [
            _parsed("m1"),
            _parsed("m2", date=datetime(2024, 4, 1, tzinfo=UTC)),
            _parsed("m3", from_email="alerts@chase.com", from_name="Chase", subject="Statement"),
        ]
    )
    engine = GmailSyncEngine(store, sample_config, MagicMock(return_value=manager))

    result = await engine.sync_user(user)

    assert result.fetched == 3
    assert result.created == 3
    assert result.updated == 0
    assert result.contacts_touched == 3
    manager.get_financial_emails.assert_called_once_with(
        sample_config.gmail.financial_queries, max_results=sample_config.gmail.max_results
    )

    emails = await store.get_financial_emails(user.id)
    assert {e.gmail_id for e in emails} == {"m1", "m2", "m3"}
    assert emails[0].metadata == {"labels": ["INBOX", "CATEGORY_UPDATES"]}

    contacts = {c.email: c for c in await store.get_financial_contacts(user.id)}
    assert contacts["orders@shop.com"].email_count == 2
    assert contacts["orders@shop.com"].type == "vendor"
    assert contacts["orders@shop.com"].last_email_date == datetime(2024, 4, 1, tzinfo=UTC)
    assert contacts["alerts@chase.com"].type == "bank"

    assert await store.get_state(f"last_sync:{user.id}") is not None


async def test_resync_updates_existing_without_recounting_contacts(
    store: DatabaseStore, sample_config: AppConfig, user: User
) -> None:
    engine = GmailSyncEngine(store, sample_config, MagicMock(return_value=_manager([_parsed("m1")])))
    await engine.sync_user(user)

    email = await store.get_email_by_gmail_id("m1")
    await store.update_financial_email(email.id, category="bill")

    engine = GmailSyncEngine(
        store, sample_config, MagicMock(return_value=_manager([_parsed("m1", subject="Edited")]))
    )
    result = await engine.sync_user(user)

    assert result.created == 0
    assert result.updated == 1
    refreshed = await store.get_email_by_gmail_id("m1")
    assert refreshed.subject == "Edited"
    assert refreshed.category == "bill"
    contacts = await store.get_financial_contacts(user.id)
    assert contacts[0].email_count == 1


async def test_gmail_fetch_runs_off_the_event_loop(
    store: DatabaseStore, sample_config: AppConfig, user: User
) -> None:
    loop_thread = threading.get_ident()
    fetch_threads: list[int] = []

    def fetch(queries, max_results):
        fetch_threads.append(threading.get_ident())
        return []

    manager = _manager([])
    manager.get_financial_emails.side_effect = fetch
    engine = GmailSyncEngine(store, sample_config, MagicMock(return_value=manager))

    await engine.sync_user(user)

    assert fetch_threads and fetch_threads[0] != loop_thread


async def test_refreshed_tokens_are_saved(
    store: DatabaseStore, sample_config: AppConfig, user: User
) -> None:
    manager = _manager([], token_refreshed=True)
    engine = GmailSyncEngine(store, sample_config, MagicMock(return_value=manager))

    await engine.sync_user(user)

    assert (await store.get_user(user.id)).access_token == "fresh-access"


async def test_unrefreshed_tokens_are_left_alone(store: DatabaseStore, user: User) -> None:
    await persist_refreshed_tokens(store, user, _manager([], token_refreshed=False))
    assert (await store.get_user(user.id)).access_token == "access-token"


async def test_build_message_manager_requires_token(store: DatabaseStore) -> None:
    user = await store.upsert_user(email="new@example.com", google_id="g-2")
    with pytest.raises(AuthenticationError, match="Connect the Gmail account"):
        build_message_manager(user)


async def test_build_message_manager_uses_user_tokens(user: User) -> None:
    manager = build_message_manager(user)
    assert manager.client.access_token == "access-token"
    assert manager.client.refresh_token == "refresh-token"
