"""Database store with CRUD operations for all tables.

This module provides the DatabaseStore class that encapsulates all database
operations for finmail. It uses aiosqlite for async access and returns
dataclasses so callers never see raw rows.

Usage:
    from finmail.db.store import DatabaseStore

    store = DatabaseStore("data/finmail.db")
    await store.initialize()

    user = await store.upsert_user(email="a@example.com", google_id="g-1")
    emails = await store.get_financial_emails(user.id, category="receipt")

    job = await store.create_batch_job(user.id, "categorize", "email", criteria, actions)
    await store.create_batch_operations(job.id, [(1, "email"), (2, "email")], "categorize")
"""

from __future__ import annotations

import json
from collections.abc import AsyncIterator, Iterable
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Literal

import aiosqlite

from finmail.core.errors import DatabaseError
from finmail.core.logging import get_logger
from finmail.db.models import init_database

logger = get_logger(__name__)

# Type aliases
EmailCategory = Literal["receipt", "bill", "statement", "confirmation", "invoice", "other"]
ContactType = Literal["vendor", "bank", "utility", "subscription", "other"]
ItemType = Literal["email", "contact"]
BatchJobStatus = Literal["pending", "in_progress", "completed", "failed", "cancelled"]
BatchOperationStatus = Literal["pending", "completed", "failed"]
ExportStatus = Literal["pending", "in_progress", "completed", "failed"]

_RELEASE_LABEL = "UPDATE finance_labels SET email_count = MAX(email_count - 1, 0) WHERE id = ?"

TERMINAL_JOB_STATUSES: frozenset[str] = frozenset({"completed", "failed", "cancelled"})
ACTIVE_JOB_STATUSES: frozenset[str] = frozenset({"pending", "in_progress"})


def utcnow() -> datetime:
    """Current time as a timezone-aware UTC datetime."""
    return datetime.now(UTC)


def _ts(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def _parse_ts(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


def _dumps(value: Any) -> str | None:
    return json.dumps(value) if value is not None else None


def _loads(value: str | None) -> Any:
    return json.loads(value) if value else None


@dataclass
class User:
    """Google account record."""

    id: int
    email: str
    google_id: str
    access_token: str | None = None
    refresh_token: str | None = None
    created_at: datetime | None = None


@dataclass
class FinancialEmail:
    """Financial email record."""

    id: int
    user_id: int
    gmail_id: str
    subject: str
    from_email: str
    date: datetime
    from_name: str = ""
    to_email: str = ""
    thread_id: str | None = None
    category: str | None = None
    label_id: int | None = None
    has_attachments: bool = False
    attachment_count: int = 0
    is_exported: bool = False
    snippet: str = ""
    metadata: dict[str, Any] | None = None
    created_at: datetime | None = None

    @property
    def from_domain(self) -> str:
        """Lower-cased domain part of the sender address."""
        return self.from_email.rpartition("@")[2].lower()


@dataclass
class FinancialContact:
    """Financial contact (sender) record."""

    id: int
    user_id: int
    name: str
    email: str
    type: str = "other"
    domain: str | None = None
    email_count: int = 0
    last_email_date: datetime | None = None
    is_in_google_contacts: bool = False
    created_at: datetime | None = None


@dataclass
class FinanceLabel:
    """User-defined label record."""

    id: int
    user_id: int
    name: str
    description: str | None = None
    color: str = "#1976D2"
    email_count: int = 0
    is_active: bool = True
    gmail_label_id: str | None = None
    created_at: datetime | None = None


@dataclass
class EmailFilter:
    """Saved filter record."""

    id: int
    user_id: int
    name: str
    conditions: dict[str, Any] = field(default_factory=dict)
    actions: dict[str, Any] = field(default_factory=dict)
    is_active: bool = True
    match_count: int = 0
    last_run: datetime | None = None
    created_at: datetime | None = None


@dataclass
class ExportJob:
    """Export job record."""

    id: int
    user_id: int
    type: str
    format: str = "csv"
    status: ExportStatus = "pending"
    item_count: int = 0
    file_path: str | None = None
    error_message: str | None = None
    parameters: dict[str, Any] | None = None
    created_at: datetime | None = None
    completed_at: datetime | None = None


@dataclass
class BatchJob:
    """Batch job record with aggregate progress."""

    id: int
    user_id: int
    type: str
    item_type: ItemType = "email"
    status: BatchJobStatus = "pending"
    total_items: int = 0
    processed_items: int = 0
    successful_items: int = 0
    failed_items: int = 0
    progress: int = 0
    criteria: dict[str, Any] | None = None
    actions: dict[str, Any] | None = None
    error_details: dict[str, Any] | None = None
    created_at: datetime | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_JOB_STATUSES


@dataclass
class BatchOperation:
    """One item's result within a batch job."""

    id: int
    batch_job_id: int
    item_id: int
    item_type: ItemType
    operation: str
    status: BatchOperationStatus = "pending"
    result: dict[str, Any] | None = None
    error_message: str | None = None
    processing_time: int | None = None
    created_at: datetime | None = None
    completed_at: datetime | None = None


# Columns that generic partial updates may touch, per table.
# Values are the dataclass field name -> column name.
_EMAIL_COLUMNS = {
    "subject": "subject",
    "from_email": "from_email",
    "from_name": "from_name",
    "to_email": "to_email",
    "thread_id": "thread_id",
    "date": "date",
    "category": "category",
    "label_id": "label_id",
    "has_attachments": "has_attachments",
    "attachment_count": "attachment_count",
    "is_exported": "is_exported",
    "snippet": "snippet",
    "metadata": "metadata_json",
}
_CONTACT_COLUMNS = {
    "name": "name",
    "email": "email",
    "domain": "domain",
    "type": "type",
    "email_count": "email_count",
    "last_email_date": "last_email_date",
    "is_in_google_contacts": "is_in_google_contacts",
}
_LABEL_COLUMNS = {
    "name": "name",
    "description": "description",
    "color": "color",
    "email_count": "email_count",
    "is_active": "is_active",
    "gmail_label_id": "gmail_label_id",
}
_FILTER_COLUMNS = {
    "name": "name",
    "conditions": "conditions_json",
    "actions": "actions_json",
    "is_active": "is_active",
    "match_count": "match_count",
    "last_run": "last_run",
}
_EXPORT_COLUMNS = {
    "status": "status",
    "item_count": "item_count",
    "file_path": "file_path",
    "error_message": "error_message",
    "completed_at": "completed_at",
}
_BATCH_JOB_COLUMNS = {
    "status": "status",
    "total_items": "total_items",
    "processed_items": "processed_items",
    "successful_items": "successful_items",
    "failed_items": "failed_items",
    "progress": "progress",
    "error_details": "error_details_json",
    "started_at": "started_at",
    "completed_at": "completed_at",
}


def _to_column_value(value: Any) -> Any:
    """Convert a Python value into what SQLite stores."""
    if isinstance(value, bool):
        return 1 if value else 0
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, (dict, list)):
        return json.dumps(value)
    return value


class DatabaseStore:
    """Database store for all finmail data.

    This class provides async CRUD operations for all database tables.
    It handles connection management, JSON serialization, and type conversion.
    One instance is created at startup and injected where needed.

    Attributes:
        db_path: Path to the SQLite database file
    """

    def __init__(self, db_path: str | Path):
        """Initialize the database store.

        Args:
            db_path: Path to the SQLite database file
        """
        self.db_path = Path(db_path)
        self._initialized = False

    async def initialize(self) -> None:
        """Initialize the database, creating tables if needed.

        This must be called before any other operations.
        """
        await init_database(self.db_path)
        self._initialized = True

    @asynccontextmanager
    async def _db(self) -> AsyncIterator[aiosqlite.Connection]:
        """Get a configured database connection.

        Sets the PRAGMAs every connection needs:
        - busy_timeout: 10s to handle concurrent access from the batch worker + web requests
        - foreign_keys: ON to enforce referential integrity
        - synchronous: NORMAL (safe with WAL, faster writes)
        """
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute("PRAGMA busy_timeout = 10000")
            await db.execute("PRAGMA foreign_keys = ON")
            await db.execute("PRAGMA synchronous = NORMAL")
            db.row_factory = aiosqlite.Row
            yield db

    async def _fetch_one(self, sql: str, params: Iterable[Any] = ()) -> aiosqlite.Row | None:
        try:
            async with self._db() as db:
                cursor = await db.execute(sql, tuple(params))
                return await cursor.fetchone()
        except aiosqlite.Error as e:
            logger.error("Failed to read row", error=str(e))
            raise DatabaseError(f"Failed to read from database: {e}") from e

    async def _fetch_all(self, sql: str, params: Iterable[Any] = ()) -> list[aiosqlite.Row]:
        try:
            async with self._db() as db:
                cursor = await db.execute(sql, tuple(params))
                return list(await cursor.fetchall())
        except aiosqlite.Error as e:
            logger.error("Failed to read rows", error=str(e))
            raise DatabaseError(f"Failed to read from database: {e}") from e

    async def _insert(self, sql: str, params: Iterable[Any], what: str) -> int:
        """Run an INSERT and return the new row ID."""
        try:
            async with self._db() as db:
                cursor = await db.execute(sql, tuple(params))
                await db.commit()
                return cursor.lastrowid
        except aiosqlite.Error as e:
            logger.error("Failed to insert row", table=what, error=str(e))
            raise DatabaseError(f"Failed to create {what}: {e}") from e

    async def _update_columns(
        self,
        table: str,
        row_id: int,
        updates: dict[str, Any],
        allowed: dict[str, str],
    ) -> bool:
        """Apply a partial update restricted to whitelisted columns.

        Returns:
            True if a row was updated

        Raises:
            ValueError: If an unknown field is passed
            DatabaseError: If the UPDATE fails
        """
        unknown = set(updates) - set(allowed)
        if unknown:
            raise ValueError(f"Cannot update {table} fields: {', '.join(sorted(unknown))}")
        if not updates:
            return True

        assignments = ", ".join(f"{allowed[name]} = ?" for name in updates)
        params = [_to_column_value(value) for value in updates.values()]
        params.append(row_id)

        try:
            async with self._db() as db:
                cursor = await db.execute(
                    f"UPDATE {table} SET {assignments} WHERE id = ?",  # noqa: S608
                    params,
                )
                await db.commit()
                return cursor.rowcount > 0
        except aiosqlite.Error as e:
            logger.error("Failed to update row", table=table, row_id=row_id, error=str(e))
            raise DatabaseError(f"Failed to update {table} row {row_id}: {e}") from e

    async def _delete(self, table: str, row_id: int) -> bool:
        try:
            async with self._db() as db:
                cursor = await db.execute(f"DELETE FROM {table} WHERE id = ?", (row_id,))  # noqa: S608
                await db.commit()
                return cursor.rowcount > 0
        except aiosqlite.Error as e:
            logger.error("Failed to delete row", table=table, row_id=row_id, error=str(e))
            raise DatabaseError(f"Failed to delete {table} row {row_id}: {e}") from e

    # =========================================================================
    # User Operations
    # =========================================================================

    async def get_user(self, user_id: int) -> User | None:
        """Get a user by ID."""
        row = await self._fetch_one("SELECT * FROM users WHERE id = ?", (user_id,))
        return self._row_to_user(row) if row else None

    async def get_user_by_google_id(self, google_id: str) -> User | None:
        """Get a user by Google account ID."""
        row = await self._fetch_one("SELECT * FROM users WHERE google_id = ?", (google_id,))
        return self._row_to_user(row) if row else None

    async def upsert_user(
        self,
        email: str,
        google_id: str,
        access_token: str | None = None,
        refresh_token: str | None = None,
    ) -> User:
        """Create a user, or refresh the tokens of an existing one.

        A None refresh token keeps the stored one, because Google only
        returns a refresh token on the first consent.

        Args:
            email: Gmail address
            google_id: Google account ID
            access_token: OAuth access token
            refresh_token: OAuth refresh token

        Returns:
            The created or updated User
        """
        try:
            async with self._db() as db:
                await db.execute(
                    """
                    INSERT INTO users (email, google_id, access_token, refresh_token, created_at)
                    VALUES (?, ?, ?, ?, ?)
                    ON CONFLICT(google_id) DO UPDATE SET
                        email = excluded.email,
                        access_token = excluded.access_token,
                        refresh_token = COALESCE(excluded.refresh_token, users.refresh_token)
                    """,
                    (email, google_id, access_token, refresh_token, utcnow().isoformat()),
                )
                await db.commit()
        except aiosqlite.Error as e:
            logger.error("Failed to upsert user", google_id=google_id, error=str(e))
            raise DatabaseError(f"Failed to save user {email}: {e}") from e

        user = await self.get_user_by_google_id(google_id)
        logger.info("user_upserted", user_id=user.id)
        return user

    async def update_user_tokens(
        self, user_id: int, access_token: str, refresh_token: str | None = None
    ) -> None:
        """Store a refreshed access token (and refresh token if rotated)."""
        updates: dict[str, Any] = {"access_token": access_token}
        if refresh_token:
            updates["refresh_token"] = refresh_token
        await self._update_columns(
            "users",
            user_id,
            updates,
            {"access_token": "access_token", "refresh_token": "refresh_token"},
        )

    # =========================================================================
    # Financial Email Operations
    # =========================================================================

    async def create_financial_email(
        self,
        user_id: int,
        gmail_id: str,
        subject: str,
        from_email: str,
        date: datetime,
        from_name: str = "",
        to_email: str = "",
        thread_id: str | None = None,
        category: str | None = None,
        label_id: int | None = None,
        has_attachments: bool = False,
        attachment_count: int = 0,
        is_exported: bool = False,
        snippet: str = "",
        metadata: dict[str, Any] | None = None,
    ) -> FinancialEmail:
        """Insert a financial email.

        Raises:
            DatabaseError: If the insert fails (including a duplicate gmail_id)
        """
        email_id = await self._insert(
            """
            INSERT INTO financial_emails (
                user_id, gmail_id, thread_id, subject, from_email, from_name,
                to_email, date, category, label_id, has_attachments,
                attachment_count, is_exported, snippet, metadata_json, created_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                user_id,
                gmail_id,
                thread_id,
                subject,
                from_email,
                from_name,
                to_email,
                date.isoformat(),
                category,
                label_id,
                1 if has_attachments else 0,
                attachment_count,
                1 if is_exported else 0,
                snippet,
                _dumps(metadata),
                utcnow().isoformat(),
            ),
            "financial email",
        )
        if label_id is not None:
            await self.increment_label_count(label_id)
        logger.debug("financial_email_created", email_id=email_id, gmail_id=gmail_id)
        return await self.get_financial_email(email_id)

    async def get_financial_email(self, email_id: int) -> FinancialEmail | None:
        """Get a financial email by ID."""
        row = await self._fetch_one("SELECT * FROM financial_emails WHERE id = ?", (email_id,))
        return self._row_to_email(row) if row else None

    async def get_email_by_gmail_id(self, gmail_id: str) -> FinancialEmail | None:
        """Get a financial email by its Gmail message ID."""
        row = await self._fetch_one(
            "SELECT * FROM financial_emails WHERE gmail_id = ?", (gmail_id,)
        )
        return self._row_to_email(row) if row else None

    async def get_financial_emails(
        self,
        user_id: int,
        category: str | None = None,
        limit: int | None = None,
        offset: int = 0,
    ) -> list[FinancialEmail]:
        """List a user's financial emails, newest first.

        Args:
            user_id: Owner
            category: Only emails with this category (None for all)
            limit: Maximum rows (None for all)
            offset: Rows to skip
        """
        sql = "SELECT * FROM financial_emails WHERE user_id = ?"
        params: list[Any] = [user_id]
        if category:
            sql += " AND category = ?"
            params.append(category)
        sql += " ORDER BY date DESC, id DESC"
        if limit is not None:
            sql += " LIMIT ? OFFSET ?"
            params.extend([limit, offset])
        rows = await self._fetch_all(sql, params)
        return [self._row_to_email(r) for r in rows]

    async def get_emails_from_sender(self, user_id: int, from_email: str) -> list[FinancialEmail]:
        """List a user's emails from one sender address (case-insensitive)."""
        rows = await self._fetch_all(
            """
            SELECT * FROM financial_emails
            WHERE user_id = ? AND LOWER(from_email) = LOWER(?)
            ORDER BY date DESC
            """,
            (user_id, from_email),
        )
        return [self._row_to_email(r) for r in rows]

    async def update_financial_email(self, email_id: int, **updates: Any) -> FinancialEmail | None:
        """Apply a partial update to a financial email.

        Returns:
            The updated email, or None if it does not exist
        """
        updated = await self._update_columns("financial_emails", email_id, updates, _EMAIL_COLUMNS)
        if not updated:
            return None
        return await self.get_financial_email(email_id)

    async def delete_financial_email(self, email_id: int) -> bool:
        """Delete a financial email and release its label.

        Returns:
            False if the email did not exist
        """
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    "SELECT label_id FROM financial_emails WHERE id = ?", (email_id,)
                )
                row = await cursor.fetchone()
                if row is None:
                    return False
                await db.execute("DELETE FROM financial_emails WHERE id = ?", (email_id,))
                if row["label_id"] is not None:
                    await db.execute(_RELEASE_LABEL, (row["label_id"],))
                await db.commit()
                return True
        except aiosqlite.Error as e:
            logger.error("Failed to delete row", table="financial_emails", row_id=email_id, error=str(e))
            raise DatabaseError(f"Failed to delete financial email {email_id}: {e}") from e

    async def set_email_label(self, email_id: int, label_id: int | None) -> bool:
        """Move an email to a label (or none), keeping both labels' email_count in step.

        Returns:
            True if the email's label changed
        """
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    "SELECT label_id FROM financial_emails WHERE id = ?", (email_id,)
                )
                row = await cursor.fetchone()
                if row is None or row["label_id"] == label_id:
                    return False
                await db.execute(
                    "UPDATE financial_emails SET label_id = ? WHERE id = ?", (label_id, email_id)
                )
                if row["label_id"] is not None:
                    await db.execute(_RELEASE_LABEL, (row["label_id"],))
                if label_id is not None:
                    await db.execute(
                        "UPDATE finance_labels SET email_count = email_count + 1 WHERE id = ?",
                        (label_id,),
                    )
                await db.commit()
                return True
        except aiosqlite.Error as e:
            raise DatabaseError(f"Failed to set label on email {email_id}: {e}") from e

    async def mark_emails_exported(self, email_ids: list[int]) -> int:
        """Set is_exported on the given emails. Returns the number updated."""
        if not email_ids:
            return 0
        placeholders = ", ".join("?" for _ in email_ids)
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    f"UPDATE financial_emails SET is_exported = 1 WHERE id IN ({placeholders})",  # noqa: S608
                    email_ids,
                )
                await db.commit()
                return cursor.rowcount
        except aiosqlite.Error as e:
            raise DatabaseError(f"Failed to mark {len(email_ids)} emails exported: {e}") from e

    async def get_email_stats(self, user_id: int) -> dict[str, int]:
        """Get category counts for the dashboard."""
        row = await self._fetch_one(
            """
            SELECT
                COUNT(*) AS total_emails,
                SUM(CASE WHEN category = 'receipt' THEN 1 ELSE 0 END) AS receipts,
                SUM(CASE WHEN category = 'bill' THEN 1 ELSE 0 END) AS bills,
                SUM(CASE WHEN category = 'statement' THEN 1 ELSE 0 END) AS statements,
                SUM(CASE WHEN has_attachments = 1 THEN 1 ELSE 0 END) AS with_attachments
            FROM financial_emails WHERE user_id = ?
            """,
            (user_id,),
        )
        return {key: row[key] or 0 for key in row.keys()}

    # =========================================================================
    # Financial Contact Operations
    # =========================================================================

    async def create_financial_contact(
        self,
        user_id: int,
        name: str,
        email: str,
        type: str = "other",
        domain: str | None = None,
        email_count: int = 0,
        last_email_date: datetime | None = None,
        is_in_google_contacts: bool = False,
    ) -> FinancialContact:
        """Insert a financial contact."""
        contact_id = await self._insert(
            """
            INSERT INTO financial_contacts (
                user_id, name, email, domain, type, email_count,
                last_email_date, is_in_google_contacts, created_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                user_id,
                name,
                email,
                domain if domain is not None else email.rpartition("@")[2].lower(),
                type,
                email_count,
                _ts(last_email_date),
                1 if is_in_google_contacts else 0,
                utcnow().isoformat(),
            ),
            "financial contact",
        )
        return await self.get_financial_contact(contact_id)

    async def upsert_financial_contact(
        self,
        user_id: int,
        email: str,
        name: str,
        type: str,
        last_email_date: datetime | None,
    ) -> FinancialContact:
        """Record one more email from a sender.

        Creates the contact on first sight; otherwise increments email_count
        and advances last_email_date. The stored type is kept so manual
        recategorization survives a sync.
        """
        existing = await self._fetch_one(
            """
            SELECT * FROM financial_contacts
            WHERE user_id = ? AND LOWER(email) = LOWER(?)
            ORDER BY id LIMIT 1
            """,
            (user_id, email),
        )
        if existing is None:
            return await self.create_financial_contact(
                user_id=user_id,
                name=name or email,
                email=email,
                type=type,
                email_count=1,
                last_email_date=last_email_date,
            )

        contact = self._row_to_contact(existing)
        latest = contact.last_email_date
        if last_email_date and (latest is None or last_email_date > latest):
            latest = last_email_date
        return await self.update_financial_contact(
            contact.id,
            email_count=contact.email_count + 1,
            last_email_date=latest,
            name=contact.name or name,
        )

    async def get_financial_contact(self, contact_id: int) -> FinancialContact | None:
        """Get a financial contact by ID."""
        row = await self._fetch_one("SELECT * FROM financial_contacts WHERE id = ?", (contact_id,))
        return self._row_to_contact(row) if row else None

    async def get_financial_contacts(self, user_id: int) -> list[FinancialContact]:
        """List a user's contacts in creation order."""
        rows = await self._fetch_all(
            "SELECT * FROM financial_contacts WHERE user_id = ? ORDER BY id", (user_id,)
        )
        return [self._row_to_contact(r) for r in rows]

    async def update_financial_contact(
        self, contact_id: int, **updates: Any
    ) -> FinancialContact | None:
        """Apply a partial update to a contact. Returns None if missing."""
        updated = await self._update_columns(
            "financial_contacts", contact_id, updates, _CONTACT_COLUMNS
        )
        if not updated:
            return None
        return await self.get_financial_contact(contact_id)

    async def delete_financial_contact(self, contact_id: int) -> bool:
        """Delete a contact. Returns False if it did not exist."""
        return await self._delete("financial_contacts", contact_id)

    # =========================================================================
    # Finance Label Operations
    # =========================================================================

    async def create_finance_label(
        self,
        user_id: int,
        name: str,
        description: str | None = None,
        color: str = "#1976D2",
        is_active: bool = True,
        gmail_label_id: str | None = None,
    ) -> FinanceLabel:
        """Insert a finance label."""
        label_id = await self._insert(
            """
            INSERT INTO finance_labels (
                user_id, name, description, color, is_active, gmail_label_id, created_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (
                user_id,
                name,
                description,
                color,
                1 if is_active else 0,
                gmail_label_id,
                utcnow().isoformat(),
            ),
            "finance label",
        )
        return await self.get_finance_label(label_id)

    async def get_finance_label(self, label_id: int) -> FinanceLabel | None:
        row = await self._fetch_one("SELECT * FROM finance_labels WHERE id = ?", (label_id,))
        return self._row_to_label(row) if row else None

    async def get_finance_labels(self, user_id: int) -> list[FinanceLabel]:
        rows = await self._fetch_all(
            "SELECT * FROM finance_labels WHERE user_id = ? ORDER BY id", (user_id,)
        )
        return [self._row_to_label(r) for r in rows]

    async def update_finance_label(self, label_id: int, **updates: Any) -> FinanceLabel | None:
        updated = await self._update_columns("finance_labels", label_id, updates, _LABEL_COLUMNS)
        if not updated:
            return None
        return await self.get_finance_label(label_id)

    async def increment_label_count(self, label_id: int, by: int = 1) -> None:
        """Bump a label's email_count."""
        try:
            async with self._db() as db:
                await db.execute(
                    "UPDATE finance_labels SET email_count = email_count + ? WHERE id = ?",
                    (by, label_id),
                )
                await db.commit()
        except aiosqlite.Error as e:
            raise DatabaseError(f"Failed to update count for label {label_id}: {e}") from e

    async def delete_finance_label(self, label_id: int) -> bool:
        return await self._delete("finance_labels", label_id)

    # =========================================================================
    # Email Filter Operations
    # =========================================================================

    async def create_email_filter(
        self,
        user_id: int,
        name: str,
        conditions: dict[str, Any],
        actions: dict[str, Any],
        is_active: bool = True,
    ) -> EmailFilter:
        """Insert a saved filter."""
        filter_id = await self._insert(
            """
            INSERT INTO email_filters (
                user_id, name, conditions_json, actions_json, is_active, created_at
            ) VALUES (?, ?, ?, ?, ?, ?)
            """,
            (
                user_id,
                name,
                json.dumps(conditions),
                json.dumps(actions),
                1 if is_active else 0,
                utcnow().isoformat(),
            ),
            "email filter",
        )
        return await self.get_email_filter(filter_id)

    async def get_email_filter(self, filter_id: int) -> EmailFilter | None:
        row = await self._fetch_one("SELECT * FROM email_filters WHERE id = ?", (filter_id,))
        return self._row_to_filter(row) if row else None

    async def get_email_filters(self, user_id: int) -> list[EmailFilter]:
        rows = await self._fetch_all(
            "SELECT * FROM email_filters WHERE user_id = ? ORDER BY id", (user_id,)
        )
        return [self._row_to_filter(r) for r in rows]

    async def update_email_filter(self, filter_id: int, **updates: Any) -> EmailFilter | None:
        updated = await self._update_columns("email_filters", filter_id, updates, _FILTER_COLUMNS)
        if not updated:
            return None
        return await self.get_email_filter(filter_id)

    async def delete_email_filter(self, filter_id: int) -> bool:
        return await self._delete("email_filters", filter_id)

    # =========================================================================
    # Export Job Operations
    # =========================================================================

    async def create_export_job(
        self,
        user_id: int,
        type: str,
        format: str,
        parameters: dict[str, Any] | None = None,
    ) -> ExportJob:
        """Insert a pending export job."""
        job_id = await self._insert(
            """
            INSERT INTO export_jobs (user_id, type, format, status, parameters_json, created_at)
            VALUES (?, ?, ?, 'pending', ?, ?)
            """,
            (user_id, type, format, _dumps(parameters), utcnow().isoformat()),
            "export job",
        )
        return await self.get_export_job(job_id)

    async def get_export_job(self, job_id: int) -> ExportJob | None:
        row = await self._fetch_one("SELECT * FROM export_jobs WHERE id = ?", (job_id,))
        return self._row_to_export(row) if row else None

    async def get_export_jobs(self, user_id: int) -> list[ExportJob]:
        rows = await self._fetch_all(
            "SELECT * FROM export_jobs WHERE user_id = ? ORDER BY created_at DESC, id DESC",
            (user_id,),
        )
        return [self._row_to_export(r) for r in rows]

    async def update_export_job(self, job_id: int, **updates: Any) -> ExportJob | None:
        updated = await self._update_columns("export_jobs", job_id, updates, _EXPORT_COLUMNS)
        if not updated:
            return None
        return await self.get_export_job(job_id)

    # =========================================================================
    # Batch Job Operations
    # =========================================================================

    async def create_batch_job(
        self,
        user_id: int,
        type: str,
        item_type: ItemType,
        criteria: dict[str, Any] | None,
        actions: dict[str, Any] | None,
    ) -> BatchJob:
        """Insert a batch job in 'pending' status."""
        job_id = await self._insert(
            """
            INSERT INTO batch_jobs (
                user_id, type, item_type, status, criteria_json, actions_json, created_at
            ) VALUES (?, ?, ?, 'pending', ?, ?, ?)
            """,
            (user_id, type, item_type, _dumps(criteria), _dumps(actions), utcnow().isoformat()),
            "batch job",
        )
        logger.debug("batch_job_created", job_id=job_id, type=type, item_type=item_type)
        return await self.get_batch_job(job_id)

    async def get_batch_job(self, job_id: int) -> BatchJob | None:
        """Get a batch job by ID."""
        row = await self._fetch_one("SELECT * FROM batch_jobs WHERE id = ?", (job_id,))
        return self._row_to_batch_job(row) if row else None

    async def get_batch_jobs(self, user_id: int, limit: int = 10) -> list[BatchJob]:
        """Get a user's most recent batch jobs."""
        rows = await self._fetch_all(
            """
            SELECT * FROM batch_jobs WHERE user_id = ?
            ORDER BY created_at DESC, id DESC LIMIT ?
            """,
            (user_id, limit),
        )
        return [self._row_to_batch_job(r) for r in rows]

    async def get_active_batch_jobs(self, user_id: int) -> list[BatchJob]:
        """Get a user's pending and in-progress batch jobs."""
        rows = await self._fetch_all(
            """
            SELECT * FROM batch_jobs
            WHERE user_id = ? AND status IN ('pending', 'in_progress')
            ORDER BY created_at DESC, id DESC
            """,
            (user_id,),
        )
        return [self._row_to_batch_job(r) for r in rows]

    async def update_batch_job(self, job_id: int, **updates: Any) -> BatchJob | None:
        """Apply a partial update to a batch job. Returns None if missing."""
        updated = await self._update_columns("batch_jobs", job_id, updates, _BATCH_JOB_COLUMNS)
        if not updated:
            return None
        return await self.get_batch_job(job_id)

    async def start_batch_job(self, job_id: int, total_items: int) -> bool:
        """Move a pending job to in_progress with its enumerated item count.

        Returns:
            True if the job was pending and is now in_progress
        """
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    """
                    UPDATE batch_jobs
                    SET status = 'in_progress', total_items = ?, started_at = ?
                    WHERE id = ? AND status = 'pending'
                    """,
                    (total_items, utcnow().isoformat(), job_id),
                )
                await db.commit()
                return cursor.rowcount > 0
        except aiosqlite.Error as e:
            raise DatabaseError(f"Failed to start batch job {job_id}: {e}") from e

    async def record_batch_progress(
        self,
        job_id: int,
        processed_items: int,
        successful_items: int,
        failed_items: int,
        progress: int,
    ) -> None:
        """Write the job-level counters after an item. Status is left untouched."""
        try:
            async with self._db() as db:
                await db.execute(
                    """
                    UPDATE batch_jobs
                    SET processed_items = ?, successful_items = ?, failed_items = ?, progress = ?
                    WHERE id = ?
                    """,
                    (processed_items, successful_items, failed_items, progress, job_id),
                )
                await db.commit()
        except aiosqlite.Error as e:
            raise DatabaseError(f"Failed to record progress for batch job {job_id}: {e}") from e

    async def finish_batch_job(
        self,
        job_id: int,
        status: Literal["completed", "failed"],
        error_details: dict[str, Any] | None = None,
    ) -> bool:
        """Move a non-terminal job to completed or failed.

        A job that was cancelled meanwhile keeps its cancelled status.

        Returns:
            True if the status changed
        """
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    """
                    UPDATE batch_jobs
                    SET status = ?, error_details_json = COALESCE(?, error_details_json),
                        completed_at = ?
                    WHERE id = ? AND status IN ('pending', 'in_progress')
                    """,
                    (status, _dumps(error_details), utcnow().isoformat(), job_id),
                )
                await db.commit()
                return cursor.rowcount > 0
        except aiosqlite.Error as e:
            raise DatabaseError(f"Failed to finish batch job {job_id}: {e}") from e

    async def cancel_batch_job(self, job_id: int) -> bool:
        """Cancel a pending or in-progress job.

        Returns:
            True if the job was cancelled, False if it is missing or already terminal
        """
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    """
                    UPDATE batch_jobs SET status = 'cancelled', completed_at = ?
                    WHERE id = ? AND status IN ('pending', 'in_progress')
                    """,
                    (utcnow().isoformat(), job_id),
                )
                await db.commit()
                return cursor.rowcount > 0
        except aiosqlite.Error as e:
            raise DatabaseError(f"Failed to cancel batch job {job_id}: {e}") from e

    # =========================================================================
    # Batch Operation Operations
    # =========================================================================

    async def create_batch_operations(
        self,
        job_id: int,
        items: list[tuple[int, ItemType]],
        operation: str,
    ) -> int:
        """Create one pending operation per item in a single transaction.

        Args:
            job_id: Owning batch job
            items: (item_id, item_type) pairs in processing order
            operation: Operation name applied to every item

        Returns:
            Number of operations created
        """
        if not items:
            return 0

        now = utcnow().isoformat()
        try:
            async with self._db() as db:
                await db.executemany(
                    """
                    INSERT INTO batch_operations (
                        batch_job_id, item_id, item_type, operation, status, created_at
                    ) VALUES (?, ?, ?, ?, 'pending', ?)
                    """,
                    [(job_id, item_id, item_type, operation, now) for item_id, item_type in items],
                )
                await db.commit()
        except aiosqlite.Error as e:
            logger.error("Failed to create batch operations", job_id=job_id, error=str(e))
            raise DatabaseError(
                f"Failed to create {len(items)} operations for batch job {job_id}: {e}"
            ) from e

        return len(items)

    async def get_batch_operations(self, job_id: int) -> list[BatchOperation]:
        """Get all operations of a job in insertion order."""
        rows = await self._fetch_all(
            "SELECT * FROM batch_operations WHERE batch_job_id = ? ORDER BY id", (job_id,)
        )
        return [self._row_to_batch_operation(r) for r in rows]

    async def complete_batch_operation(
        self,
        operation_id: int,
        status: Literal["completed", "failed"],
        result: dict[str, Any] | None = None,
        error_message: str | None = None,
        processing_time: int | None = None,
    ) -> None:
        """Record the outcome of one item."""
        try:
            async with self._db() as db:
                await db.execute(
                    """
                    UPDATE batch_operations
                    SET status = ?, result_json = ?, error_message = ?,
                        processing_time = ?, completed_at = ?
                    WHERE id = ?
                    """,
                    (
                        status,
                        _dumps(result),
                        error_message,
                        processing_time,
                        utcnow().isoformat(),
                        operation_id,
                    ),
                )
                await db.commit()
        except aiosqlite.Error as e:
            raise DatabaseError(f"Failed to record batch operation {operation_id}: {e}") from e

    async def fail_pending_batch_operations(self, job_id: int, error_message: str) -> int:
        """Mark every still-pending operation of a job as failed.

        Returns:
            Number of operations marked failed
        """
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    """
                    UPDATE batch_operations
                    SET status = 'failed', error_message = ?, completed_at = ?
                    WHERE batch_job_id = ? AND status = 'pending'
                    """,
                    (error_message, utcnow().isoformat(), job_id),
                )
                await db.commit()
                return cursor.rowcount
        except aiosqlite.Error as e:
            raise DatabaseError(f"Failed to fail pending operations of batch job {job_id}: {e}") from e

    async def count_batch_operations(self, job_id: int) -> dict[str, int]:
        """Count a job's operations grouped by status."""
        rows = await self._fetch_all(
            """
            SELECT status, COUNT(*) AS n FROM batch_operations
            WHERE batch_job_id = ? GROUP BY status
            """,
            (job_id,),
        )
        return {row["status"]: row["n"] for row in rows}

    # =========================================================================
    # App State Operations
    # =========================================================================

    async def get_state(self, key: str) -> str | None:
        """Get a value from the app_state table."""
        row = await self._fetch_one("SELECT value FROM app_state WHERE key = ?", (key,))
        return row["value"] if row else None

    async def set_state(self, key: str, value: str) -> None:
        """Set a value in the app_state table."""
        try:
            async with self._db() as db:
                await db.execute(
                    """
                    INSERT INTO app_state (key, value, updated_at)
                    VALUES (?, ?, CURRENT_TIMESTAMP)
                    ON CONFLICT(key) DO UPDATE SET
                        value = excluded.value,
                        updated_at = CURRENT_TIMESTAMP
                    """,
                    (key, value),
                )
                await db.commit()
        except aiosqlite.Error as e:
            raise DatabaseError(f"Failed to set state {key}: {e}") from e

    # =========================================================================
    # Row conversion
    # =========================================================================

    @staticmethod
    def _row_to_user(row: aiosqlite.Row) -> User:
        return User(
            id=row["id"],
            email=row["email"],
            google_id=row["google_id"],
            access_token=row["access_token"],
            refresh_token=row["refresh_token"],
            created_at=_parse_ts(row["created_at"]),
        )

    @staticmethod
    def _row_to_email(row: aiosqlite.Row) -> FinancialEmail:
        return FinancialEmail(
            id=row["id"],
            user_id=row["user_id"],
            gmail_id=row["gmail_id"],
            thread_id=row["thread_id"],
            subject=row["subject"],
            from_email=row["from_email"],
            from_name=row["from_name"] or "",
            to_email=row["to_email"] or "",
            date=datetime.fromisoformat(row["date"]),
            category=row["category"],
            label_id=row["label_id"],
            has_attachments=bool(row["has_attachments"]),
            attachment_count=row["attachment_count"] or 0,
            is_exported=bool(row["is_exported"]),
            snippet=row["snippet"] or "",
            metadata=_loads(row["metadata_json"]),
            created_at=_parse_ts(row["created_at"]),
        )

    @staticmethod
    def _row_to_contact(row: aiosqlite.Row) -> FinancialContact:
        return FinancialContact(
            id=row["id"],
            user_id=row["user_id"],
            name=row["name"],
            email=row["email"],
            domain=row["domain"],
            type=row["type"],
            email_count=row["email_count"] or 0,
            last_email_date=_parse_ts(row["last_email_date"]),
            is_in_google_contacts=bool(row["is_in_google_contacts"]),
            created_at=_parse_ts(row["created_at"]),
        )

    @staticmethod
    def _row_to_label(row: aiosqlite.Row) -> FinanceLabel:
        return FinanceLabel(
            id=row["id"],
            user_id=row["user_id"],
            name=row["name"],
            description=row["description"],
            color=row["color"],
            email_count=row["email_count"] or 0,
            is_active=bool(row["is_active"]),
            gmail_label_id=row["gmail_label_id"],
            created_at=_parse_ts(row["created_at"]),
        )

    @staticmethod
    def _row_to_filter(row: aiosqlite.Row) -> EmailFilter:
        return EmailFilter(
            id=row["id"],
            user_id=row["user_id"],
            name=row["name"],
            conditions=_loads(row["conditions_json"]) or {},
            actions=_loads(row["actions_json"]) or {},
            is_active=bool(row["is_active"]),
            match_count=row["match_count"] or 0,
            last_run=_parse_ts(row["last_run"]),
            created_at=_parse_ts(row["created_at"]),
        )

    @staticmethod
    def _row_to_export(row: aiosqlite.Row) -> ExportJob:
        return ExportJob(
            id=row["id"],
            user_id=row["user_id"],
            type=row["type"],
            format=row["format"],
            status=row["status"],
            item_count=row["item_count"] or 0,
            file_path=row["file_path"],
            error_message=row["error_message"],
            parameters=_loads(row["parameters_json"]),
            created_at=_parse_ts(row["created_at"]),
            completed_at=_parse_ts(row["completed_at"]),
        )

    @staticmethod
    def _row_to_batch_job(row: aiosqlite.Row) -> BatchJob:
        return BatchJob(
            id=row["id"],
            user_id=row["user_id"],
            type=row["type"],
            item_type=row["item_type"],
            status=row["status"],
            total_items=row["total_items"] or 0,
            processed_items=row["processed_items"] or 0,
            successful_items=row["successful_items"] or 0,
            failed_items=row["failed_items"] or 0,
            progress=row["progress"] or 0,
            criteria=_loads(row["criteria_json"]),
            actions=_loads(row["actions_json"]),
            error_details=_loads(row["error_details_json"]),
            created_at=_parse_ts(row["created_at"]),
            started_at=_parse_ts(row["started_at"]),
            completed_at=_parse_ts(row["completed_at"]),
        )

    @staticmethod
    def _row_to_batch_operation(row: aiosqlite.Row) -> BatchOperation:
        return BatchOperation(
            id=row["id"],
            batch_job_id=row["batch_job_id"],
            item_id=row["item_id"],
            item_type=row["item_type"],
            operation=row["operation"],
            status=row["status"],
            result=_loads(row["result_json"]),
            error_message=row["error_message"],
            processing_time=row["processing_time"],
            created_at=_parse_ts(row["created_at"]),
            completed_at=_parse_ts(row["completed_at"]),
        )
