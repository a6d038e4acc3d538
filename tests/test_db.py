"""Tests for the database layer.

Covers schema creation and the CRUD operations of the 9 tables:
- users
- financial_emails
- financial_contacts
- finance_labels
- email_filters
- export_jobs
- batch_jobs
- batch_operations
- app_state
"""

from datetime import UTC, datetime, timedelta
from pathlib import Path

import aiosqlite
import pytest

from finmail.core.errors import DatabaseError
from finmail.db import (
    REQUIRED_TABLES,
    DatabaseStore,
    User,
    init_database,
    verify_schema,
)


async def _seed_email(store: DatabaseStore, user_id: int, gmail_id: str, **fields):
    fields.setdefault("subject", "Your receipt")
    fields.setdefault("from_email", "billing@shop.com")
    fields.setdefault("date", datetime(2024, 3, 1, 12, 0, tzinfo=UTC))
    return await store.create_financial_email(user_id=user_id, gmail_id=gmail_id, **fields)


class TestDatabaseInitialization:
    """Tests for database initialization."""

    async def test_init_database_creates_file(self, data_dir: Path) -> None:
        db_path = data_dir / "fresh.db"
        assert not db_path.exists()
        await init_database(db_path)
        assert db_path.exists()

    async def test_init_database_enables_wal_mode(self, data_dir: Path) -> None:
        db_path = data_dir / "wal.db"
        await init_database(db_path)

        async with aiosqlite.connect(db_path) as db:
            cursor = await db.execute("PRAGMA journal_mode")
            row = await cursor.fetchone()
            assert row[0].lower() == "wal"

    async def test_init_database_creates_all_tables(self, data_dir: Path) -> None:
        db_path = data_dir / "tables.db"
        await init_database(db_path)

        async with aiosqlite.connect(db_path) as db:
            cursor = await db.execute("SELECT name FROM sqlite_master WHERE type='table'")
            tables = {row[0] for row in await cursor.fetchall()}

        assert set(REQUIRED_TABLES).issubset(tables)
        assert await verify_schema(db_path)

    async def test_init_database_is_idempotent(self, data_dir: Path) -> None:
        db_path = data_dir / "twice.db"
        await init_database(db_path)
        await init_database(db_path)
        assert await verify_schema(db_path)

    async def test_verify_schema_returns_false_for_empty_db(self, data_dir: Path) -> None:
        db_path = data_dir / "empty.db"
        async with aiosqlite.connect(db_path) as db:
            await db.execute("CREATE TABLE dummy (id INTEGER)")
            await db.commit()

        assert not await verify_schema(db_path)

    async def test_read_errors_raise_database_error(self, data_dir: Path) -> None:
        store = DatabaseStore(data_dir / "no_schema.db")
        with pytest.raises(DatabaseError, match="no such table"):
            await store.get_user(1)
        with pytest.raises(DatabaseError, match="no such table"):
            await store.get_financial_emails(1)


class TestUsers:
    async def test_upsert_creates_user(self, store: DatabaseStore, user: User) -> None:
        fetched = await store.get_user(user.id)
        assert fetched is not None
        assert fetched.email == "owner@example.com"
        assert fetched.refresh_token == "refresh-token"
        assert fetched.created_at is not None

    async def test_upsert_keeps_refresh_token_when_omitted(
        self, store: DatabaseStore, user: User
    ) -> None:
        updated = await store.upsert_user(
            email="owner@example.com", google_id="google-123", access_token="new-access"
        )
        assert updated.id == user.id
        assert updated.access_token == "new-access"
        assert updated.refresh_token == "refresh-token"

    async def test_update_user_tokens(self, store: DatabaseStore, user: User) -> None:
        await store.update_user_tokens(user.id, "rotated-access")
        fetched = await store.get_user(user.id)
        assert fetched.access_token == "rotated-access"
        assert fetched.refresh_token == "refresh-token"

    async def test_get_missing_user(self, store: DatabaseStore) -> None:
        assert await store.get_user(999) is None


class TestFinancialEmails:
    async def test_create_and_get(self, store: DatabaseStore, user: User) -> None:
        email = await _seed_email(
            store,
            user.id,
            "gm-1",
            category="receipt",
            has_attachments=True,
            attachment_count=2,
            metadata={"labels": ["INBOX"]},
        )

        fetched = await store.get_financial_email(email.id)
        assert fetched.gmail_id == "gm-1"
        assert fetched.category == "receipt"
        assert fetched.has_attachments is True
        assert fetched.attachment_count == 2
        assert fetched.metadata == {"labels": ["INBOX"]}
        assert fetched.from_domain == "shop.com"
        assert (await store.get_email_by_gmail_id("gm-1")).id == email.id

    async def test_duplicate_gmail_id_raises(self, store: DatabaseStore, user: User) -> None:
        await _seed_email(store, user.id, "gm-dup")
        with pytest.raises(DatabaseError):
            await _seed_email(store, user.id, "gm-dup")

    async def test_list_newest_first_with_filters(self, store: DatabaseStore, user: User) -> None:
        base = datetime(2024, 1, 1, tzinfo=UTC)
        for i, category in enumerate(["receipt", "bill", "receipt"]):
            await _seed_email(
                store, user.id, f"gm-{i}", category=category, date=base + timedelta(days=i)
            )

        emails = await store.get_financial_emails(user.id)
        assert [e.gmail_id for e in emails] == ["gm-2", "gm-1", "gm-0"]

        receipts = await store.get_financial_emails(user.id, category="receipt")
        assert [e.gmail_id for e in receipts] == ["gm-2", "gm-0"]

        page = await store.get_financial_emails(user.id, limit=1, offset=1)
        assert [e.gmail_id for e in page] == ["gm-1"]

    async def test_update_and_delete(self, store: DatabaseStore, user: User) -> None:
        email = await _seed_email(store, user.id, "gm-u")

        updated = await store.update_financial_email(email.id, category="bill", is_exported=True)
        assert updated.category == "bill"
        assert updated.is_exported is True

        assert await store.delete_financial_email(email.id)
        assert await store.get_financial_email(email.id) is None
        assert not await store.delete_financial_email(email.id)

    async def test_update_unknown_field_rejected(self, store: DatabaseStore, user: User) -> None:
        email = await _seed_email(store, user.id, "gm-x")
        with pytest.raises(ValueError):
            await store.update_financial_email(email.id, user_id=42)

    async def test_update_missing_returns_none(self, store: DatabaseStore) -> None:
        assert await store.update_financial_email(999, category="bill") is None

    async def test_emails_from_sender_case_insensitive(
        self, store: DatabaseStore, user: User
    ) -> None:
        await _seed_email(store, user.id, "gm-a", from_email="Billing@Shop.com")
        await _seed_email(store, user.id, "gm-b", from_email="other@bank.com")

        emails = await store.get_emails_from_sender(user.id, "billing@shop.com")
        assert [e.gmail_id for e in emails] == ["gm-a"]

    async def test_mark_exported_and_stats(self, store: DatabaseStore, user: User) -> None:
        a = await _seed_email(store, user.id, "gm-1", category="receipt", has_attachments=True)
        await _seed_email(store, user.id, "gm-2", category="bill")
        await _seed_email(store, user.id, "gm-3", category="statement")

        assert await store.mark_emails_exported([a.id]) == 1
        assert (await store.get_financial_email(a.id)).is_exported is True
        assert await store.mark_emails_exported([]) == 0

        stats = await store.get_email_stats(user.id)
        assert stats == {
            "total_emails": 3,
            "receipts": 1,
            "bills": 1,
            "statements": 1,
            "with_attachments": 1,
        }

    async def test_stats_for_user_without_emails(self, store: DatabaseStore, user: User) -> None:
        stats = await store.get_email_stats(user.id)
        assert stats["total_emails"] == 0
        assert stats["receipts"] == 0


class TestFinancialContacts:
    async def test_create_derives_domain(self, store: DatabaseStore, user: User) -> None:
        contact = await store.create_financial_contact(
            user_id=user.id, name="Shop", email="billing@Shop.com", type="vendor"
        )
        assert contact.domain == "shop.com"
        assert contact.type == "vendor"
        assert contact.email_count == 0

    async def test_upsert_creates_then_increments(self, store: DatabaseStore, user: User) -> None:
        first = datetime(2024, 1, 1, tzinfo=UTC)
        later = datetime(2024, 2, 1, tzinfo=UTC)

        created = await store.upsert_financial_contact(
            user.id, "billing@shop.com", "Shop", "vendor", first
        )
        assert created.email_count == 1

        await store.update_financial_contact(created.id, type="subscription")
        again = await store.upsert_financial_contact(
            user.id, "BILLING@shop.com", "Shop", "vendor", later
        )

        assert again.id == created.id
        assert again.email_count == 2
        assert again.last_email_date == later
        assert again.type == "subscription"
        assert len(await store.get_financial_contacts(user.id)) == 1

    async def test_manual_duplicates_allowed(self, store: DatabaseStore, user: User) -> None:
        await store.create_financial_contact(user_id=user.id, name="A", email="a@shop.com")
        await store.create_financial_contact(user_id=user.id, name="A2", email="a@shop.com")
        assert len(await store.get_financial_contacts(user.id)) == 2

    async def test_delete(self, store: DatabaseStore, user: User) -> None:
        contact = await store.create_financial_contact(user_id=user.id, name="A", email="a@b.com")
        assert await store.delete_financial_contact(contact.id)
        assert await store.get_financial_contact(contact.id) is None


class TestLabelsFiltersExports:
    async def test_label_crud_and_count(self, store: DatabaseStore, user: User) -> None:
        label = await store.create_finance_label(user_id=user.id, name="Taxes")
        assert label.color == "#1976D2"
        assert label.is_active is True

        await store.increment_label_count(label.id, by=3)
        updated = await store.update_finance_label(label.id, name="Tax 2024", is_active=False)
        assert updated.name == "Tax 2024"
        assert updated.email_count == 3
        assert updated.is_active is False

        assert await store.delete_finance_label(label.id)
        assert await store.get_finance_labels(user.id) == []

    async def test_deleting_label_clears_email_reference(
        self, store: DatabaseStore, user: User
    ) -> None:
        label = await store.create_finance_label(user_id=user.id, name="Taxes")
        email = await _seed_email(store, user.id, "gm-l", label_id=label.id)

        await store.delete_finance_label(label.id)
        assert (await store.get_financial_email(email.id)).label_id is None

    async def test_label_count_follows_assignments(self, store: DatabaseStore, user: User) -> None:
        taxes = await store.create_finance_label(user_id=user.id, name="Taxes")
        travel = await store.create_finance_label(user_id=user.id, name="Travel")
        email = await _seed_email(store, user.id, "gm-move", label_id=taxes.id)
        assert (await store.get_finance_label(taxes.id)).email_count == 1

        assert await store.set_email_label(email.id, travel.id)
        assert not await store.set_email_label(email.id, travel.id)
        assert (await store.get_finance_label(taxes.id)).email_count == 0
        assert (await store.get_finance_label(travel.id)).email_count == 1
        assert (await store.get_financial_email(email.id)).label_id == travel.id

        assert await store.delete_financial_email(email.id)
        assert (await store.get_finance_label(travel.id)).email_count == 0

    async def test_unlabel_email(self, store: DatabaseStore, user: User) -> None:
        label = await store.create_finance_label(user_id=user.id, name="Taxes")
        email = await _seed_email(store, user.id, "gm-off", label_id=label.id)

        assert await store.set_email_label(email.id, None)
        assert (await store.get_financial_email(email.id)).label_id is None
        assert (await store.get_finance_label(label.id)).email_count == 0
        assert not await store.set_email_label(9999, label.id)

    async def test_filter_json_round_trip(self, store: DatabaseStore, user: User) -> None:
        email_filter = await store.create_email_filter(
            user_id=user.id,
            name="Amazon",
            conditions={"from": ["amazon.com"], "hasAttachment": True},
            actions={"labelId": 1},
        )
        fetched = await store.get_email_filter(email_filter.id)
        assert fetched.conditions == {"from": ["amazon.com"], "hasAttachment": True}
        assert fetched.actions == {"labelId": 1}
        assert fetched.match_count == 0

    async def test_export_job_lifecycle(self, store: DatabaseStore, user: User) -> None:
        job = await store.create_export_job(user.id, "metadata", "csv", {"category": "bill"})
        assert job.status == "pending"
        assert job.parameters == {"category": "bill"}

        done = await store.update_export_job(
            job.id, status="completed", item_count=4, file_path="/tmp/x.csv"
        )
        assert done.status == "completed"
        assert done.item_count == 4
        assert [j.id for j in await store.get_export_jobs(user.id)] == [job.id]


class TestBatchJobs:
    async def test_create_and_start(self, store: DatabaseStore, user: User) -> None:
        job = await store.create_batch_job(
            user.id, "categorize", "email", {"category": "receipt"}, {"newCategory": "bill"}
        )
        assert job.status == "pending"
        assert job.criteria == {"category": "receipt"}
        assert job.actions == {"newCategory": "bill"}
        assert job.progress == 0

        assert await store.start_batch_job(job.id, total_items=3)
        started = await store.get_batch_job(job.id)
        assert started.status == "in_progress"
        assert started.total_items == 3
        assert started.started_at is not None

        assert not await store.start_batch_job(job.id, total_items=5)

    async def test_finish_does_not_override_cancel(self, store: DatabaseStore, user: User) -> None:
        job = await store.create_batch_job(user.id, "delete", "email", {}, {})
        await store.start_batch_job(job.id, total_items=1)

        assert await store.cancel_batch_job(job.id)
        assert not await store.finish_batch_job(job.id, "completed")
        assert not await store.cancel_batch_job(job.id)
        assert (await store.get_batch_job(job.id)).status == "cancelled"

    async def test_finish_records_error_details(self, store: DatabaseStore, user: User) -> None:
        job = await store.create_batch_job(user.id, "delete", "email", {}, {})
        await store.finish_batch_job(job.id, "failed", error_details={"stage": "enumeration"})

        failed = await store.get_batch_job(job.id)
        assert failed.status == "failed"
        assert failed.error_details == {"stage": "enumeration"}
        assert failed.completed_at is not None
        assert failed.is_terminal

    async def test_active_jobs(self, store: DatabaseStore, user: User) -> None:
        running = await store.create_batch_job(user.id, "sync", "email", {}, {})
        await store.start_batch_job(running.id, 0)
        done = await store.create_batch_job(user.id, "sync", "email", {}, {})
        await store.finish_batch_job(done.id, "completed")

        active = await store.get_active_batch_jobs(user.id)
        assert [j.id for j in active] == [running.id]
        assert len(await store.get_batch_jobs(user.id, limit=10)) == 2

    async def test_operations(self, store: DatabaseStore, user: User) -> None:
        job = await store.create_batch_job(user.id, "delete", "contact", {}, {})
        created = await store.create_batch_operations(
            job.id, [(10, "contact"), (11, "contact"), (12, "contact")], "delete"
        )
        assert created == 3

        operations = await store.get_batch_operations(job.id)
        assert [op.item_id for op in operations] == [10, 11, 12]
        assert all(op.status == "pending" for op in operations)

        await store.complete_batch_operation(
            operations[0].id, "completed", result={"deleted": True}, processing_time=4
        )
        failed = await store.fail_pending_batch_operations(job.id, "stopped")
        assert failed == 2

        counts = await store.count_batch_operations(job.id)
        assert counts == {"completed": 1, "failed": 2}
        first = (await store.get_batch_operations(job.id))[0]
        assert first.result == {"deleted": True}
        assert first.processing_time == 4

    async def test_no_operations_for_empty_items(self, store: DatabaseStore, user: User) -> None:
        job = await store.create_batch_job(user.id, "delete", "email", {}, {})
        assert await store.create_batch_operations(job.id, [], "delete") == 0


class TestAppState:
    async def test_set_and_get(self, store: DatabaseStore) -> None:
        assert await store.get_state("last_sync:1") is None
        await store.set_state("last_sync:1", "2024-01-01T00:00:00+00:00")
        await store.set_state("last_sync:1", "2024-02-01T00:00:00+00:00")
        assert await store.get_state("last_sync:1") == "2024-02-01T00:00:00+00:00"
