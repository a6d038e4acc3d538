"""Processing engines.

This package provides:
- Bulk operation requests and the criteria that select their items
- Batch job tracker with a queued worker
- Gmail sync engine for pulling financial emails
- Export engine for CSV, JSON and XLSX files
- Saved filter evaluation
"""

from finmail.engine.batch import BatchJobTracker, compute_progress
from finmail.engine.criteria import (
    BulkContactOperation,
    BulkEmailOperation,
    filter_contacts,
    filter_emails,
)
from finmail.engine.export import ExportEngine
from finmail.engine.filters import filter_matches, run_filter
from finmail.engine.sync import GmailSyncEngine, SyncResult, build_message_manager

__all__ = [
    # Batch
    "BatchJobTracker",
    "compute_progress",
    # Criteria
    "BulkContactOperation",
    "BulkEmailOperation",
    "filter_contacts",
    "filter_emails",
    # Export
    "ExportEngine",
    # Filters
    "filter_matches",
    "run_filter",
    # Sync
    "GmailSyncEngine",
    "SyncResult",
    "build_message_manager",
]
