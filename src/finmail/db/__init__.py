"""Database layer for finmail.

This module provides SQLite database access with async operations.

Usage:
    from finmail.db import DatabaseStore

    store = DatabaseStore("data/finmail.db")
    await store.initialize()

    user = await store.upsert_user(email="me@example.com", google_id="1234")
    email = await store.create_financial_email(
        user_id=user.id,
        gmail_id="18c2f0",
        subject="Your receipt",
        from_email="receipts@stripe.com",
        date=utcnow(),
        category="receipt",
    )
"""

from finmail.db.models import (
    REQUIRED_TABLES,
    SCHEMA_VERSION,
    init_database,
    verify_schema,
)
from finmail.db.store import (
    ACTIVE_JOB_STATUSES,
    TERMINAL_JOB_STATUSES,
    BatchJob,
    BatchOperation,
    DatabaseStore,
    EmailFilter,
    ExportJob,
    FinanceLabel,
    FinancialContact,
    FinancialEmail,
    User,
    utcnow,
)

__all__ = [
    # Models
    "SCHEMA_VERSION",
    "REQUIRED_TABLES",
    "init_database",
    "verify_schema",
    # Store
    "DatabaseStore",
    "ACTIVE_JOB_STATUSES",
    "TERMINAL_JOB_STATUSES",
    "utcnow",
    # Dataclasses
    "User",
    "FinancialEmail",
    "FinancialContact",
    "FinanceLabel",
    "EmailFilter",
    "ExportJob",
    "BatchJob",
    "BatchOperation",
]
