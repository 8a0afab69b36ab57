# tests/test_models/test_mail_models.py
"""Tests for mailbox, email and purchase SQLAlchemy models.

Uses the in-memory test database from conftest.py; tables are emptied after
every test.
"""

from datetime import UTC, datetime

import pytest
from sqlalchemy.exc import IntegrityError

import database
from database import get_session
from database.models import MailAccount, Purchase, RawEmail


def test_create_mail_account_defaults():
    """A new account is connected and has no label or sync time yet."""
    with get_session() as session:
        account = MailAccount(
            user_id=7,
            email_address="owner@example.com",
            access_token="encrypted_access_token",
            refresh_token="encrypted_refresh_token",
            token_expires_at=datetime(2025, 2, 15, 12, 0, 0, tzinfo=UTC),
        )
        session.add(account)
        session.commit()

        assert account.id is not None
        assert account.is_connected is True
        assert account.label_id is None
        assert account.last_synced_at is None
        assert account.created_at is not None


def test_mail_account_unique_constraint():
    """Test unique constraint on (user_id, email_address)."""
    with get_session() as session:
        session.add(MailAccount(user_id=7, email_address="dup@example.com"))
        session.commit()

        session.add(MailAccount(user_id=7, email_address="dup@example.com"))
        with pytest.raises(IntegrityError):
            session.commit()


def test_raw_email_is_stored_once_per_message(account_id):
    message = {
        "external_id": "gmail-123",
        "sender": "alerts@chase.com",
        "subject": "Your transaction",
        "body": "$1.00",
        "received_at": datetime(2024, 3, 5, tzinfo=UTC),
    }

    first = database.save_raw_email(account_id, message)
    second = database.save_raw_email(account_id, message)

    assert first is not None
    assert second is None
    assert database.get_raw_email(first)["parse_state"] == "unparsed"


def test_raw_email_rejects_unknown_parse_state(account_id):
    with get_session() as session:
        session.add(RawEmail(account_id=account_id, gmail_message_id="x", parse_state="done"))
        with pytest.raises(IntegrityError):
            session.commit()


def test_purchase_amount_must_be_positive(account_id):
    with pytest.raises(ValueError):
        database.create_purchase(
            account_id=account_id, amount="0", purchase_date=datetime.now(UTC)
        )

    with get_session() as session:
        session.add(
            Purchase(
                account_id=account_id,
                amount=-5,
                purchase_date=datetime.now(UTC),
                date_precision="datetime",
            )
        )
        with pytest.raises(IntegrityError):
            session.commit()


def test_deleting_rule_keeps_emails_and_purchases(
    account_id, make_rule, make_email, make_purchase
):
    rule = make_rule()
    email_id = make_email(account_id, parse_state="parsed_ok", rule_id=rule["id"])
    purchase_id = make_purchase(account_id, raw_email_id=email_id)

    assert database.delete_parsing_rule(rule["id"])

    assert database.get_raw_email(email_id)["parsing_rule_id"] is None
    assert database.get_purchase(purchase_id)["raw_email_id"] == email_id
