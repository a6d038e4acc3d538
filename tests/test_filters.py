"""Tests for saved email filters."""

from datetime import UTC, datetime

from finmail.db.store import DatabaseStore, FinancialEmail, User
from finmail.engine.filters import filter_matches, run_filter


def _email(subject: str = "Your receipt", from_email: str = "orders@amazon.com", **fields) -> FinancialEmail:
    return FinancialEmail(
        id=1,
        user_id=1,
        gmail_id="gm-1",
        subject=subject,
        from_email=from_email,
        date=datetime(2024, 1, 1, tzinfo=UTC),
        **fields,
    )


class TestFilterMatches:
    def test_empty_conditions_match(self) -> None:
        assert filter_matches({}, _email())

    def test_from_fragment(self) -> None:
        assert filter_matches({"from": ["AMAZON.com"]}, _email())
        assert not filter_matches({"from": ["paypal"]}, _email())

    def test_subject_fragment(self) -> None:
        assert filter_matches({"subject": ["receipt", "invoice"]}, _email())
        assert not filter_matches({"subject": ["statement"]}, _email())

    def test_has_attachment(self) -> None:
        assert filter_matches({"hasAttachment": True}, _email(has_attachments=True))
        assert not filter_matches({"hasAttachment": True}, _email())
        assert filter_matches({"hasAttachment": False}, _email())

    def test_all_conditions_must_hold(self) -> None:
        conditions = {"from": ["amazon"], "subject": ["statement"]}
        assert not filter_matches(conditions, _email())


async def _seed(store: DatabaseStore, user_id: int, gmail_id: str, from_email: str, **fields):
    return await store.create_financial_email(
        user_id=user_id,
        gmail_id=gmail_id,
        subject=fields.pop("subject", "Order receipt"),
        from_email=from_email,
        date=datetime(2024, 1, 1, tzinfo=UTC),
        **fields,
    )


async def test_run_filter_labels_matches(store: DatabaseStore, user: User) -> None:
    label = await store.create_finance_label(user_id=user.id, name="Amazon")
    await _seed(store, user.id, "gm-1", "orders@amazon.com")
    await _seed(store, user.id, "gm-2", "auto@amazon.com", label_id=label.id)
    other = await _seed(store, user.id, "gm-3", "me@paypal.com")

    email_filter = await store.create_email_filter(
        user_id=user.id,
        name="Amazon orders",
        conditions={"from": ["amazon.com"]},
        actions={"labelId": label.id},
    )

    outcome = await run_filter(store, email_filter)

    assert outcome["matched"] == 2
    assert outcome["labeled"] == 1
    assert outcome["filter"].match_count == 2
    assert outcome["filter"].last_run is not None
    assert (await store.get_finance_label(label.id)).email_count == 2
    assert (await store.get_financial_email(other.id)).label_id is None


async def test_inactive_filter_matches_nothing(store: DatabaseStore, user: User) -> None:
    await _seed(store, user.id, "gm-1", "orders@amazon.com")
    email_filter = await store.create_email_filter(
        user_id=user.id, name="Off", conditions={}, actions={}, is_active=False
    )

    outcome = await run_filter(store, email_filter)
    assert outcome["matched"] == 0
    assert outcome["filter"].match_count == 0


async def test_filter_with_missing_label_only_counts(store: DatabaseStore, user: User) -> None:
    email = await _seed(store, user.id, "gm-1", "orders@amazon.com")
    email_filter = await store.create_email_filter(
        user_id=user.id, name="Ghost", conditions={}, actions={"labelId": 999}
    )

    outcome = await run_filter(store, email_filter)
    assert outcome["matched"] == 1
    assert outcome["labeled"] == 0
    assert (await store.get_financial_email(email.id)).label_id is None
