"""Keyword categorization for financial emails and their senders.

Email categories are decided by case-insensitive substring checks over the
subject, sender address and plain-text body. Rules are evaluated in order
and the first rule with a matching keyword wins, so "invoice" lands in
"bill" before the "invoice" rule is ever reached.

Contact types are decided the same way over the sender's address and
display name.

Usage:
    from finmail.classifier.categorize import categorize_email, classify_contact_type

    category = categorize_email("Your receipt from Stripe", "receipts@stripe.com")
    contact_type = classify_contact_type("alerts@chase.com", "Chase")
"""

from __future__ import annotations

EMAIL_CATEGORIES = ("receipt", "bill", "statement", "confirmation", "invoice", "other")
CONTACT_TYPES = ("vendor", "bank", "utility", "subscription", "other")

# (category, keywords) in evaluation order
EMAIL_CATEGORY_RULES: tuple[tuple[str, tuple[str, ...]], ...] = (
    ("receipt", ("receipt", "your order", "purchase confirmation")),
    ("bill", ("bill", "invoice", "payment due")),
    ("statement", ("statement", "monthly summary", "account summary")),
    ("confirmation", ("payment confirmation", "transaction", "successful payment")),
    ("invoice", ("invoice", "billing")),
)

CONTACT_TYPE_RULES: tuple[tuple[str, tuple[str, ...]], ...] = (
    (
        "bank",
        (
            "bank",
            "chase",
            "wellsfargo",
            "citi",
            "capitalone",
            "amex",
            "americanexpress",
            "schwab",
            "fidelity",
            "credit union",
            "creditunion",
        ),
    ),
    (
        "utility",
        (
            "electric",
            "energy",
            "power",
            "water",
            "gas",
            "utility",
            "utilities",
            "comcast",
            "xfinity",
            "verizon",
            "att.com",
            "t-mobile",
        ),
    ),
    (
        "subscription",
        (
            "netflix",
            "spotify",
            "hulu",
            "disney",
            "patreon",
            "subscription",
            "membership",
            "apple.com",
            "adobe",
        ),
    ),
)


def categorize_email(subject: str, from_email: str, body: str = "") -> str:
    """Categorize an email by keyword.

    Args:
        subject: Subject line
        from_email: Sender address
        body: Plain-text body, if known

    Returns:
        One of EMAIL_CATEGORIES ("other" when nothing matches)
    """
    text = f"{subject} {from_email} {body}".lower()
    for category, keywords in EMAIL_CATEGORY_RULES:
        if any(keyword in text for keyword in keywords):
            return category
    return "other"


def classify_contact_type(email: str, name: str = "") -> str:
    """Derive a contact type from a sender address and display name.

    Returns:
        "bank", "utility" or "subscription" on a keyword match, else "vendor"
    """
    text = f"{email} {name}".lower()
    for contact_type, keywords in CONTACT_TYPE_RULES:
        if any(keyword in text for keyword in keywords):
            return contact_type
    return "vendor"
