"""Export a user's financial emails to CSV, JSON or XLSX.

Each export request becomes an export job row. Metadata exports write one
row per email into the configured export directory; on success the job is
completed with its file path and item count, and the exported emails are
marked as exported. PDF and attachment exports are recorded as failed.

Usage:
    from finmail.engine.export import ExportEngine

    engine = ExportEngine(store, config)
    job = await engine.run_export(user_id, export_type="metadata", export_format="xlsx")
"""

from __future__ import annotations

import csv
import json
from datetime import date
from pathlib import Path
from typing import TYPE_CHECKING, Any

from openpyxl import Workbook
from openpyxl.styles import Alignment, Font, PatternFill
from openpyxl.utils import get_column_letter

from finmail.core.errors import ExportError
from finmail.core.logging import get_logger
from finmail.db.store import utcnow
from finmail.engine.criteria import DateRange, EmailCriteria, filter_emails

if TYPE_CHECKING:
    from finmail.config_schema import AppConfig
    from finmail.db.store import DatabaseStore, ExportJob, FinanceLabel, FinancialEmail

logger = get_logger(__name__)

EXPORT_COLUMNS = [
    "id",
    "gmail_id",
    "date",
    "from_name",
    "from_email",
    "subject",
    "category",
    "has_attachments",
    "attachment_count",
    "label",
]

HEADER_FILL = "1976D2"
UNSUPPORTED_TYPES = {
    "pdf": "PDF rendering is not supported; export metadata instead.",
    "attachments": "Attachment download is not supported; export metadata instead.",
}


def email_rows(
    emails: list[FinancialEmail], labels: dict[int, FinanceLabel]
) -> list[dict[str, Any]]:
    """Flatten emails into export rows."""
    rows = []
    for email in emails:
        label = labels.get(email.label_id) if email.label_id else None
        rows.append(
            {
                "id": email.id,
                "gmail_id": email.gmail_id,
                "date": email.date.isoformat(),
                "from_name": email.from_name,
                "from_email": email.from_email,
                "subject": email.subject,
                "category": email.category or "",
                "has_attachments": email.has_attachments,
                "attachment_count": email.attachment_count,
                "label": label.name if label else "",
            }
        )
    return rows


def write_csv(rows: list[dict[str, Any]], path: Path) -> None:
    with open(path, "w", newline="", encoding="utf-8") as f:
        writer = csv.DictWriter(f, fieldnames=EXPORT_COLUMNS)
        writer.writeheader()
        writer.writerows(rows)


def write_json(rows: list[dict[str, Any]], path: Path) -> None:
    with open(path, "w", encoding="utf-8") as f:
        json.dump(rows, f, indent=2)


def write_xlsx(rows: list[dict[str, Any]], path: Path) -> None:
    """One sheet, styled header row, widths fitted to content."""
    wb = Workbook()
    ws = wb.active
    ws.title = "Financial Emails"

    ws.append(EXPORT_COLUMNS)
    for cell in ws[1]:
        cell.font = Font(bold=True, color="FFFFFF")
        cell.fill = PatternFill(start_color=HEADER_FILL, end_color=HEADER_FILL, fill_type="solid")
        cell.alignment = Alignment(horizontal="center")

    for row in rows:
        ws.append([row[column] for column in EXPORT_COLUMNS])

    for index, column in enumerate(EXPORT_COLUMNS, start=1):
        longest = max([len(column)] + [len(str(row[column])) for row in rows])
        ws.column_dimensions[get_column_letter(index)].width = min(max(longest + 2, 10), 60)

    ws.freeze_panes = "A2"
    wb.save(path)


WRITERS = {"csv": write_csv, "json": write_json, "xlsx": write_xlsx}


class ExportEngine:
    """Produces export files and tracks them as export jobs."""

    def __init__(self, store: DatabaseStore, config: AppConfig):
        self._store = store
        self._config = config

    def update_config(self, config: AppConfig) -> None:
        self._config = config

    async def run_export(
        self,
        user_id: int,
        export_type: str = "metadata",
        export_format: str | None = None,
        category: str | None = None,
        start: date | None = None,
        end: date | None = None,
    ) -> ExportJob:
        """Create an export job and run it to completion.

        Returns:
            The finished export job (completed or failed)

        Raises:
            DatabaseError: If the job cannot be recorded
        """
        export_format = export_format or self._config.export.default_format
        parameters: dict[str, Any] = {}
        if category:
            parameters["category"] = category
        if start or end:
            parameters["dateRange"] = DateRange(start=start, end=end).to_json()

        job = await self._store.create_export_job(user_id, export_type, export_format, parameters)
        await self._store.update_export_job(job.id, status="in_progress")

        try:
            if export_type in UNSUPPORTED_TYPES:
                raise ExportError(UNSUPPORTED_TYPES[export_type])
            if export_format not in WRITERS:
                raise ExportError(f"Unknown export format '{export_format}'. Use csv, json or xlsx.")

            criteria = EmailCriteria(
                category=category,
                date_range=DateRange(start=start, end=end) if (start or end) else None,
            )
            emails = filter_emails(await self._store.get_financial_emails(user_id), criteria)
            labels = {label.id: label for label in await self._store.get_finance_labels(user_id)}

            path = self._output_path(user_id, job.id, export_format)
            try:
                WRITERS[export_format](email_rows(emails, labels), path)
            except OSError as e:
                raise ExportError(
                    f"Failed to write export file {path}: {e}. "
                    "Check that export.directory is writable."
                ) from e

            await self._store.mark_emails_exported([e.id for e in emails])

        except ExportError as e:
            logger.warning("export_failed", job_id=job.id, export_type=export_type, error=str(e))
            return await self._store.update_export_job(
                job.id, status="failed", error_message=str(e), completed_at=utcnow()
            )

        logger.info("export_completed", job_id=job.id, format=export_format, item_count=len(emails))
        return await self._store.update_export_job(
            job.id,
            status="completed",
            item_count=len(emails),
            file_path=str(path),
            completed_at=utcnow(),
        )

    def _output_path(self, user_id: int, job_id: int, export_format: str) -> Path:
        directory = Path(self._config.export.directory)
        directory.mkdir(parents=True, exist_ok=True)
        stamp = utcnow().strftime("%Y%m%d-%H%M%S")
        return directory / f"financial-emails-{user_id}-{job_id}-{stamp}.{export_format}"
