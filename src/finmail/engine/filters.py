"""Saved email filters.

A filter's conditions are matched against the user's stored emails:
- from: any listed fragment appears in the sender address (case-insensitive)
- subject: any listed fragment appears in the subject (case-insensitive)
- hasAttachment: equals the email's attachment flag

Every condition present must hold. Running a filter records how many emails
matched and when, and applies the filter's label to the matches when
actions.labelId is set.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from finmail.core.logging import get_logger
from finmail.db.store import utcnow

if TYPE_CHECKING:
    from finmail.db.store import DatabaseStore, EmailFilter, FinancialEmail

logger = get_logger(__name__)


def filter_matches(conditions: dict[str, Any], email: FinancialEmail) -> bool:
    """True if the email satisfies every condition given."""
    senders = conditions.get("from") or []
    if senders:
        sender = email.from_email.lower()
        if not any(fragment.lower() in sender for fragment in senders):
            return False

    subjects = conditions.get("subject") or []
    if subjects:
        subject = email.subject.lower()
        if not any(fragment.lower() in subject for fragment in subjects):
            return False

    has_attachment = conditions.get("hasAttachment")
    if has_attachment is not None and email.has_attachments != bool(has_attachment):
        return False

    return True


async def run_filter(store: DatabaseStore, email_filter: EmailFilter) -> dict[str, Any]:
    """Apply a saved filter to its owner's stored emails.

    Inactive filters match nothing.

    Returns:
        {"filter": updated filter, "matched": count, "labeled": count}
    """
    matched: list[FinancialEmail] = []
    if email_filter.is_active:
        emails = await store.get_financial_emails(email_filter.user_id)
        matched = [e for e in emails if filter_matches(email_filter.conditions, e)]

    labeled = 0
    label_id = email_filter.actions.get("labelId")
    if label_id is not None and matched:
        label = await store.get_finance_label(label_id)
        if label is not None and label.user_id == email_filter.user_id:
            for email in matched:
                if await store.set_email_label(email.id, label.id):
                    labeled += 1
        else:
            logger.warning("filter_label_missing", filter_id=email_filter.id, label_id=label_id)

    updated = await store.update_email_filter(
        email_filter.id, match_count=len(matched), last_run=utcnow()
    )
    logger.info(
        "filter_run",
        filter_id=email_filter.id,
        matched=len(matched),
        labeled=labeled,
    )
    return {"filter": updated, "matched": len(matched), "labeled": labeled}
