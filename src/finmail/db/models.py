"""SQLite database schema and initialization for finmail.

This module defines the database schema with 9 tables:
- users: Google accounts and their OAuth tokens
- financial_emails: Financial emails pulled from Gmail, with category
- financial_contacts: Senders of financial emails
- finance_labels: User-defined labels (optionally mirrored to Gmail)
- email_filters: Saved match conditions and actions
- export_jobs: Export requests and their output files
- batch_jobs: Bulk operation jobs with aggregate progress
- batch_operations: One row per item within a batch job
- app_state: Key-value state persistence

Usage:
    from finmail.db.models import init_database

    await init_database("data/finmail.db")
"""

import stat
from pathlib import Path

import aiosqlite

from finmail.core.errors import DatabaseError
from finmail.core.logging import get_logger

logger = get_logger(__name__)

# Schema version for migrations (increment when schema changes)
SCHEMA_VERSION = 1

SCHEMA_SQL = """
-- MUST be set before creating tables. Persists across connections.
PRAGMA journal_mode=WAL;

CREATE TABLE IF NOT EXISTS users (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    email TEXT NOT NULL UNIQUE,
    google_id TEXT NOT NULL UNIQUE,
    access_token TEXT,
    refresh_token TEXT,
    created_at DATETIME NOT NULL
);

CREATE TABLE IF NOT EXISTS financial_emails (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id INTEGER NOT NULL REFERENCES users(id) ON DELETE CASCADE,
    gmail_id TEXT NOT NULL UNIQUE,          -- Gmail message ID
    thread_id TEXT,
    subject TEXT NOT NULL,
    from_email TEXT NOT NULL,
    from_name TEXT DEFAULT '',
    to_email TEXT DEFAULT '',
    date DATETIME NOT NULL,
    category TEXT,                          -- 'receipt', 'bill', 'statement', 'confirmation', 'invoice', 'other'
    label_id INTEGER REFERENCES finance_labels(id) ON DELETE SET NULL,
    has_attachments INTEGER DEFAULT 0,
    attachment_count INTEGER DEFAULT 0,
    is_exported INTEGER DEFAULT 0,
    snippet TEXT DEFAULT '',
    metadata_json TEXT,                     -- Gmail label IDs and other message metadata
    created_at DATETIME NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_financial_emails_user_date ON financial_emails(user_id, date DESC);
CREATE INDEX IF NOT EXISTS idx_financial_emails_category ON financial_emails(user_id, category);
CREATE INDEX IF NOT EXISTS idx_financial_emails_from ON financial_emails(user_id, from_email);

CREATE TABLE IF NOT EXISTS financial_contacts (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id INTEGER NOT NULL REFERENCES users(id) ON DELETE CASCADE,
    name TEXT NOT NULL,
    email TEXT NOT NULL,
    domain TEXT,
    type TEXT NOT NULL DEFAULT 'other',     -- 'vendor', 'bank', 'utility', 'subscription', 'other'
    email_count INTEGER DEFAULT 0,
    last_email_date DATETIME,
    is_in_google_contacts INTEGER DEFAULT 0,
    created_at DATETIME NOT NULL
);

-- Not UNIQUE: duplicate addresses can be created manually and are then merged in bulk
CREATE INDEX IF NOT EXISTS idx_financial_contacts_user_email ON financial_contacts(user_id, email);

CREATE TABLE IF NOT EXISTS finance_labels (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id INTEGER NOT NULL REFERENCES users(id) ON DELETE CASCADE,
    name TEXT NOT NULL,
    description TEXT,
    color TEXT NOT NULL DEFAULT '#1976D2',
    email_count INTEGER DEFAULT 0,
    is_active INTEGER DEFAULT 1,
    gmail_label_id TEXT,                    -- Set when the label is mirrored to Gmail
    created_at DATETIME NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_finance_labels_user ON finance_labels(user_id);

CREATE TABLE IF NOT EXISTS email_filters (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id INTEGER NOT NULL REFERENCES users(id) ON DELETE CASCADE,
    name TEXT NOT NULL,
    conditions_json TEXT NOT NULL,          -- {"from": [...], "subject": [...], "hasAttachment": bool}
    actions_json TEXT NOT NULL,             -- {"labelId": int, "exportToDrive": bool, "saveAttachments": bool}
    is_active INTEGER DEFAULT 1,
    match_count INTEGER DEFAULT 0,
    last_run DATETIME,
    created_at DATETIME NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_email_filters_user ON email_filters(user_id);

CREATE TABLE IF NOT EXISTS export_jobs (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id INTEGER NOT NULL REFERENCES users(id) ON DELETE CASCADE,
    type TEXT NOT NULL,                     -- 'metadata', 'pdf', 'attachments'
    format TEXT NOT NULL DEFAULT 'csv',     -- 'csv', 'json', 'xlsx'
    status TEXT NOT NULL DEFAULT 'pending', -- 'pending', 'in_progress', 'completed', 'failed'
    item_count INTEGER DEFAULT 0,
    file_path TEXT,
    error_message TEXT,
    parameters_json TEXT,                   -- Category and date range filters
    created_at DATETIME NOT NULL,
    completed_at DATETIME
);

CREATE INDEX IF NOT EXISTS idx_export_jobs_user ON export_jobs(user_id, created_at DESC);

CREATE TABLE IF NOT EXISTS batch_jobs (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id INTEGER NOT NULL REFERENCES users(id) ON DELETE CASCADE,
    type TEXT NOT NULL,                     -- 'categorize', 'label', 'export', 'delete', 'sync', 'merge'
    item_type TEXT NOT NULL DEFAULT 'email', -- 'email', 'contact'
    status TEXT NOT NULL DEFAULT 'pending', -- 'pending', 'in_progress', 'completed', 'failed', 'cancelled'
    total_items INTEGER DEFAULT 0,
    processed_items INTEGER DEFAULT 0,
    successful_items INTEGER DEFAULT 0,
    failed_items INTEGER DEFAULT 0,
    progress INTEGER DEFAULT 0,             -- Percentage 0-100
    criteria_json TEXT,
    actions_json TEXT,
    error_details_json TEXT,
    created_at DATETIME NOT NULL,
    started_at DATETIME,
    completed_at DATETIME
);

CREATE INDEX IF NOT EXISTS idx_batch_jobs_user ON batch_jobs(user_id, created_at DESC);
CREATE INDEX IF NOT EXISTS idx_batch_jobs_status ON batch_jobs(status);

CREATE TABLE IF NOT EXISTS batch_operations (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    batch_job_id INTEGER NOT NULL REFERENCES batch_jobs(id) ON DELETE CASCADE,
    item_id INTEGER NOT NULL,               -- financial_emails.id or financial_contacts.id
    item_type TEXT NOT NULL,                -- 'email', 'contact'
    operation TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'pending', -- 'pending', 'completed', 'failed'
    result_json TEXT,
    error_message TEXT,
    processing_time INTEGER,                -- Milliseconds
    created_at DATETIME NOT NULL,
    completed_at DATETIME
);

CREATE INDEX IF NOT EXISTS idx_batch_operations_job ON batch_operations(batch_job_id, id);

-- Key-value state persistence (last sync timestamps)
CREATE TABLE IF NOT EXISTS app_state (
    key TEXT PRIMARY KEY,
    value TEXT,
    updated_at DATETIME DEFAULT CURRENT_TIMESTAMP
);
"""

REQUIRED_TABLES = [
    "users",
    "financial_emails",
    "financial_contacts",
    "finance_labels",
    "email_filters",
    "export_jobs",
    "batch_jobs",
    "batch_operations",
    "app_state",
]


async def init_database(db_path: str | Path) -> None:
    """Initialize the SQLite database with schema and WAL mode.

    Creates the database file if it doesn't exist, enables WAL mode for
    concurrent access, and creates all tables and indexes.

    Args:
        db_path: Path to the SQLite database file

    Raises:
        DatabaseError: If database initialization fails
    """
    db_path = Path(db_path)
    db_path.parent.mkdir(parents=True, exist_ok=True)

    try:
        async with aiosqlite.connect(db_path) as db:
            await db.execute("PRAGMA journal_mode=WAL")
            journal_mode = await db.execute("PRAGMA journal_mode")
            mode = await journal_mode.fetchone()
            if mode and mode[0].lower() != "wal":
                logger.warning(
                    "WAL mode not enabled",
                    requested="wal",
                    actual=mode[0],
                    db_path=str(db_path),
                )

            await db.executescript(SCHEMA_SQL)
            await db.commit()

            cursor = await db.execute("SELECT COUNT(*) FROM sqlite_master WHERE type='table'")
            table_count = (await cursor.fetchone())[0]

        # Tokens live in this file (0600 = owner read/write only)
        db_path.chmod(stat.S_IRUSR | stat.S_IWUSR)
        for suffix in ["-wal", "-shm"]:
            wal_file = db_path.with_suffix(db_path.suffix + suffix)
            if wal_file.exists():
                wal_file.chmod(stat.S_IRUSR | stat.S_IWUSR)

        logger.info(
            "Database initialized",
            db_path=str(db_path),
            schema_version=SCHEMA_VERSION,
            tables_created=table_count,
        )

    except aiosqlite.Error as e:
        logger.error("Database initialization failed", db_path=str(db_path), error=str(e))
        raise DatabaseError(
            f"Failed to initialize database at {db_path}: {e}. "
            "Check that the directory is writable and the database file is not corrupted."
        ) from e


async def verify_schema(db_path: str | Path) -> bool:
    """Verify that the database has the expected schema.

    Args:
        db_path: Path to the SQLite database file

    Returns:
        True if all tables exist, False otherwise
    """
    try:
        async with aiosqlite.connect(db_path) as db:
            cursor = await db.execute("SELECT name FROM sqlite_master WHERE type='table'")
            existing_tables = {row[0] for row in await cursor.fetchall()}

            missing = set(REQUIRED_TABLES) - existing_tables
            if missing:
                logger.warning("Missing database tables", missing=sorted(missing), db_path=str(db_path))
                return False

            return True

    except aiosqlite.Error as e:
        logger.error("Schema verification failed", db_path=str(db_path), error=str(e))
        return False
