"""Tests for keyword categorization of emails and contacts."""

import pytest

from finmail.classifier import categorize_email, classify_contact_type
from finmail.classifier.categorize import CONTACT_TYPES, EMAIL_CATEGORIES


@pytest.mark.parametrize(
    ("subject", "from_email", "expected"),
    [
        ("Your receipt from Stripe", "receipts@stripe.com", "receipt"),
        ("Your order has shipped", "shipping@shop.com", "receipt"),
        ("Your bill is ready", "noreply@power.com", "bill"),
        ("Invoice #1234", "accounts@vendor.com", "bill"),
        ("Payment due on March 3", "noreply@card.com", "bill"),
        ("Your monthly statement", "alerts@bank.com", "statement"),
        ("Transaction alert", "alerts@card.com", "confirmation"),
        ("Lunch on Friday?", "friend@example.com", "other"),
    ],
)
def test_categorize_email(subject: str, from_email: str, expected: str) -> None:
    assert categorize_email(subject, from_email) == expected


def test_first_matching_rule_wins() -> None:
    """A receipt keyword beats a bill keyword appearing in the same text."""
    assert categorize_email("Receipt for your bill payment", "x@y.com") == "receipt"


def test_sender_address_is_searched() -> None:
    assert categorize_email("Hello", "billing@service.com") == "bill"


def test_body_is_searched() -> None:
    assert categorize_email("Hello", "friend@example.com", body="Your account summary") == "statement"


def test_case_insensitive() -> None:
    assert categorize_email("YOUR RECEIPT", "SHOP@EXAMPLE.COM") == "receipt"


def test_results_are_known_categories() -> None:
    for subject in ["receipt", "bill", "statement", "transaction", "random"]:
        assert categorize_email(subject, "a@b.com") in EMAIL_CATEGORIES


@pytest.mark.parametrize(
    ("email", "name", "expected"),
    [
        ("alerts@chase.com", "Chase", "bank"),
        ("noreply@xfinity.com", "", "utility"),
        ("info@netflix.com", "Netflix", "subscription"),
        ("orders@shop.com", "Shop", "vendor"),
        ("team@example.com", "Credit Union Alerts", "bank"),
    ],
)
def test_classify_contact_type(email: str, name: str, expected: str) -> None:
    result = classify_contact_type(email, name)
    assert result == expected
    assert result in CONTACT_TYPES
