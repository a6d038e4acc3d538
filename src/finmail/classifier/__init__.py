"""Email and contact classification.

Keyword rules that assign a category to each financial email and a type
to each sender.
"""

from finmail.classifier.categorize import (
    CONTACT_TYPES,
    EMAIL_CATEGORIES,
    categorize_email,
    classify_contact_type,
)

__all__ = [
    "CONTACT_TYPES",
    "EMAIL_CATEGORIES",
    "categorize_email",
    "classify_contact_type",
]
