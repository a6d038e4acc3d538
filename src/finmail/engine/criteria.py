"""Bulk operation requests and the predicates that select their items.

A bulk request names an operation, criteria that select the user's emails
or contacts, and actions that parameterize the operation. Criteria are
evaluated in memory over the user's stored rows; every criterion given
must hold (AND), and an empty criteria object selects everything.

Request bodies use the camelCase keys the dashboard sends
(``dateRange``, ``fromDomains``, ``newCategory``...); snake_case names are
accepted too.

Usage:
    from finmail.engine.criteria import BulkEmailOperation, filter_emails

    request = BulkEmailOperation.model_validate(body)
    matches = filter_emails(emails, request.criteria)
"""

from __future__ import annotations

from collections import Counter
from collections.abc import Iterable
from datetime import UTC, date, datetime, time
from typing import TYPE_CHECKING, Literal

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel

from finmail.db.store import ContactType, EmailCategory

if TYPE_CHECKING:
    from finmail.db.store import FinancialContact, FinancialEmail

EmailOperationName = Literal["categorize", "label", "export", "delete", "sync"]
ContactOperationName = Literal["merge", "categorize", "sync", "delete"]


class CamelModel(BaseModel):
    """Request model accepting camelCase or snake_case keys."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_json(self) -> dict:
        """Plain dict with camelCase keys and unset fields dropped."""
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class DateRange(CamelModel):
    """Inclusive date range. Either bound may be omitted."""

    start: date | None = None
    end: date | None = None

    @model_validator(mode="after")
    def check_order(self) -> DateRange:
        if self.start and self.end and self.start > self.end:
            raise ValueError("dateRange.start must not be after dateRange.end")
        return self


class EmailCriteria(CamelModel):
    date_range: DateRange | None = None
    category: str | None = None
    has_attachments: bool | None = None
    from_domains: list[str] | None = None
    subjects: list[str] | None = None
    label_ids: list[int] | None = None


class EmailActions(CamelModel):
    new_category: EmailCategory | None = None
    new_label_id: int | None = None
    export_type: Literal["metadata", "pdf", "attachments"] | None = None
    export_format: Literal["csv", "json", "xlsx"] | None = None


class BulkEmailOperation(CamelModel):
    """Request to run one operation over a selection of emails."""

    operation: EmailOperationName
    criteria: EmailCriteria = Field(default_factory=EmailCriteria)
    actions: EmailActions = Field(default_factory=EmailActions)

    @model_validator(mode="after")
    def check_required_actions(self) -> BulkEmailOperation:
        if self.operation == "categorize" and not self.actions.new_category:
            raise ValueError("actions.newCategory is required for categorize")
        if self.operation == "label" and self.actions.new_label_id is None:
            raise ValueError("actions.newLabelId is required for label")
        return self


class ContactCriteria(CamelModel):
    types: list[str] | None = None
    email_domains: list[str] | None = None
    last_email_before: date | None = None
    duplicate_emails: bool | None = None


class ContactActions(CamelModel):
    new_type: ContactType | None = None
    merge_into_id: int | None = None


class BulkContactOperation(CamelModel):
    """Request to run one operation over a selection of contacts."""

    operation: ContactOperationName
    criteria: ContactCriteria = Field(default_factory=ContactCriteria)
    actions: ContactActions = Field(default_factory=ContactActions)

    @model_validator(mode="after")
    def check_required_actions(self) -> BulkContactOperation:
        if self.operation == "categorize" and not self.actions.new_type:
            raise ValueError("actions.newType is required for categorize")
        if self.operation == "merge" and self.actions.merge_into_id is None:
            raise ValueError("actions.mergeIntoId is required for merge")
        return self


def _domain(address: str) -> str:
    return address.rpartition("@")[2].lower()


def _lower_set(values: Iterable[str]) -> set[str]:
    return {v.lower().lstrip("@") for v in values}


def _as_utc(value: datetime) -> datetime:
    return value if value.tzinfo else value.replace(tzinfo=UTC)


def email_matches(email: FinancialEmail, criteria: EmailCriteria) -> bool:
    """Check one email against every given criterion."""
    if criteria.date_range:
        sent = _as_utc(email.date)
        if criteria.date_range.start:
            start = datetime.combine(criteria.date_range.start, time.min, tzinfo=UTC)
            if sent < start:
                return False
        if criteria.date_range.end:
            end = datetime.combine(criteria.date_range.end, time.max, tzinfo=UTC)
            if sent > end:
                return False

    if criteria.category is not None and email.category != criteria.category:
        return False

    if criteria.has_attachments is not None and email.has_attachments != criteria.has_attachments:
        return False

    if criteria.from_domains is not None:
        if _domain(email.from_email) not in _lower_set(criteria.from_domains):
            return False

    if criteria.subjects is not None:
        subject = email.subject.lower()
        if not any(s.lower() in subject for s in criteria.subjects):
            return False

    if criteria.label_ids is not None and email.label_id not in set(criteria.label_ids):
        return False

    return True


def filter_emails(emails: list[FinancialEmail], criteria: EmailCriteria) -> list[FinancialEmail]:
    """Emails matching the criteria, in input order."""
    return [e for e in emails if email_matches(e, criteria)]


def filter_contacts(
    contacts: list[FinancialContact], criteria: ContactCriteria
) -> list[FinancialContact]:
    """Contacts matching the criteria, in input order.

    ``duplicateEmails`` keeps only contacts whose address (case-insensitive)
    appears more than once among the user's contacts.
    """
    duplicates: set[str] = set()
    if criteria.duplicate_emails:
        counts = Counter(c.email.lower() for c in contacts)
        duplicates = {address for address, n in counts.items() if n > 1}

    types = set(criteria.types) if criteria.types is not None else None
    domains = _lower_set(criteria.email_domains) if criteria.email_domains is not None else None
    before = (
        datetime.combine(criteria.last_email_before, time.min, tzinfo=UTC)
        if criteria.last_email_before
        else None
    )

    matches = []
    for contact in contacts:
        if types is not None and contact.type not in types:
            continue
        if domains is not None:
            domain = (contact.domain or _domain(contact.email)).lower()
            if domain not in domains:
                continue
        if before is not None:
            if contact.last_email_date is None or _as_utc(contact.last_email_date) >= before:
                continue
        if criteria.duplicate_emails and contact.email.lower() not in duplicates:
            continue
        matches.append(contact)
    return matches
