"""Core test fixtures.

Provides reusable fixtures for the Flask test client, database cleanup,
HTTP mocking, and factories for accounts, rules, emails and cards.

CRITICAL: All tests run against an in-memory SQLite database. The
environment below is set BEFORE any application module is imported, so the
engine, lock backend and token cipher are all created in test mode.
"""

import base64
import os
import tempfile
from datetime import UTC, datetime, timedelta

from cryptography.fernet import Fernet

# CRITICAL: Set test mode BEFORE importing database modules
os.environ["TESTING"] = "true"
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["LOCK_BACKEND"] = "local"
os.environ["LOG_DIR"] = tempfile.mkdtemp(prefix="mailledger-logs-")
os.environ["GOOGLE_CLIENT_ID"] = "test-client-id"
os.environ["GOOGLE_CLIENT_SECRET"] = "test-client-secret"
os.environ["ENCRYPTION_KEY"] = Fernet.generate_key().decode()
os.environ["CRON_SECRET"] = "test-cron-secret"
os.environ["GMAIL_RATE_LIMIT_DELAY"] = "0"

import pytest  # noqa: E402
import responses  # noqa: E402
from flask import Flask  # noqa: E402

import database  # noqa: E402
from database.base import Base, engine  # noqa: E402
from ingest import gmail_auth, locks  # noqa: E402

database.init_db()

CHASE_SENDER = "Chase <alerts@chase.com>"

# Standard card-alert rule used across tests
CHASE_RULE = {
    "name": "Chase card alert",
    "priority": 10,
    "is_active": True,
    "sender_pattern": r"alerts@chase\.com",
    "amount_pattern": r"\$([\d,]+\.\d{2})",
    "merchant_pattern": r"at ([A-Za-z0-9' ]+?)(?: on |\.|$)",
    "date_pattern": r"on (\w{3} \d{2}, \d{4})",
    "card_last_four_pattern": r"ending in (\d{3,4})",
    "date_format": "MMM dd, yyyy",
}


def chase_body(amount="42.50", merchant="Blue Bottle", day="Mar 05, 2024", card="1234"):
    """Body text of a Chase card alert."""
    return (
        f"A charge of ${amount} at {merchant} on {day} was made "
        f"with your card ending in {card}."
    )


# ============================================================================
# DATABASE FIXTURES
# ============================================================================


@pytest.fixture(autouse=True)
def clean_db():
    """Empty every table and reset lock state after each test.

    Tables are cleared in reverse dependency order (children before parents)
    to avoid FK violations.
    """
    yield
    with engine.begin() as conn:
        for table in reversed(Base.metadata.sorted_tables):
            conn.execute(table.delete())
    locks._local_flags.clear()


@pytest.fixture(autouse=True)
def no_sleep(monkeypatch):
    """Skip real backoff delays in Gmail and token-endpoint retries."""
    monkeypatch.setattr("time.sleep", lambda seconds: None)


# ============================================================================
# FLASK FIXTURES
# ============================================================================


@pytest.fixture(scope="session")
def app() -> Flask:
    """Flask app with test configuration.

    Returns:
        Flask: Configured Flask application instance
    """
    from app import app as flask_app

    flask_app.config["TESTING"] = True
    return flask_app


@pytest.fixture
def client(app: Flask):
    """Flask test client for making HTTP requests.

    Example:
        def test_health_endpoint(client):
            response = client.get('/api/health')
            assert response.status_code == 200
    """
    return app.test_client()


# ============================================================================
# API MOCKING FIXTURES
# ============================================================================


@pytest.fixture
def mock_responses():
    """Enable HTTP request mocking.

    Any request without a registered response fails the test with a
    ConnectionError, so a test can prove that no network call was made.

    Yields:
        RequestsMock: HTTP request mocking context manager
    """
    with responses.RequestsMock(assert_all_requests_are_fired=False) as rsps:
        yield rsps


@pytest.fixture
def gmail_message():
    """Factory for Gmail API message resources (format=full).

    Example:
        message = gmail_message("m1", subject="Your $5.00 transaction", body="...")
    """

    def _build(
        message_id: str,
        subject: str = "Your transaction",
        body: str = "",
        sender: str = CHASE_SENDER,
        internal_date: str = "1709640000000",  # 2024-03-05T12:00:00Z
    ) -> dict:
        return {
            "id": message_id,
            "threadId": f"thread-{message_id}",
            "internalDate": internal_date,
            "payload": {
                "mimeType": "text/plain",
                "headers": [
                    {"name": "From", "value": sender},
                    {"name": "Subject", "value": subject},
                ],
                "body": {"data": base64.urlsafe_b64encode(body.encode()).decode()},
            },
        }

    return _build


# ============================================================================
# TEST DATA FACTORIES
# ============================================================================


@pytest.fixture
def make_account():
    """Factory for connected mail accounts with encrypted tokens.

    Args (of the returned callable):
        email_address: Mailbox address
        expires_in: Access-token lifetime from now
        label_id: Selected source label (None for no label)
        connected: Connected flag

    Returns:
        Callable returning the new account ID
    """
    counter = {"n": 0}

    def _make(
        email_address: str = None,
        expires_in: timedelta = timedelta(hours=1),
        label_id: str = "Label_1",
        connected: bool = True,
    ) -> int:
        counter["n"] += 1
        account_id = database.save_mail_account(
            user_id=1,
            email_address=email_address or f"user{counter['n']}@example.com",
            access_token=gmail_auth.encrypt_token("access-token"),
            refresh_token=gmail_auth.encrypt_token("refresh-token"),
            token_expires_at=datetime.now(UTC) + expires_in,
            scopes=" ".join(gmail_auth.GMAIL_SCOPES),
        )
        if label_id:
            database.set_account_label(account_id, label_id, "Card alerts")
        if not connected:
            database.disconnect_mail_account(account_id)
        return account_id

    return _make


@pytest.fixture
def account_id(make_account) -> int:
    """A connected account with a valid token and a selected label."""
    return make_account()


@pytest.fixture
def chase_rule() -> dict:
    """Fields of the standard card-alert rule, not stored."""
    return dict(CHASE_RULE)


@pytest.fixture
def make_rule():
    """Factory for parsing rules; keyword overrides are applied to CHASE_RULE."""

    def _make(**overrides) -> dict:
        return database.create_parsing_rule({**CHASE_RULE, **overrides})

    return _make


@pytest.fixture
def make_email():
    """Factory for stored emails.

    The email is stored unparsed, then moved to ``parse_state`` when given.
    Returns the raw email ID.
    """
    counter = {"n": 0}

    def _make(
        account_id: int,
        subject: str = "Your $42.50 transaction with Blue Bottle",
        body: str = None,
        sender: str = CHASE_SENDER,
        received_at: datetime = datetime(2024, 3, 6, 9, 30, tzinfo=UTC),
        parse_state: str = "unparsed",
        rule_id: int = None,
    ) -> int:
        counter["n"] += 1
        email_id = database.save_raw_email(
            account_id,
            {
                "external_id": f"msg-{counter['n']}",
                "sender": sender,
                "subject": subject,
                "body": chase_body() if body is None else body,
                "received_at": received_at,
            },
        )
        if parse_state == "parsed_ok":
            database.mark_email_parsed(email_id, rule_id)
        elif parse_state == "parsed_error":
            database.mark_email_error(email_id, "No matching parsing rule found", rule_id)
        return email_id

    return _make


@pytest.fixture
def make_purchase():
    """Factory for purchases linked to an email (or unlinked when raw_email_id is None)."""

    def _make(account_id: int, raw_email_id: int = None, amount="10.00", source="email"):
        return database.create_purchase(
            account_id=account_id,
            amount=amount,
            purchase_date=datetime(2024, 3, 5, tzinfo=UTC),
            date_precision="date",
            merchant="Blue Bottle",
            raw_email_id=raw_email_id,
            source=source,
        )

    return _make
