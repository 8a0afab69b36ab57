"""Integration tests for the OAuth token lifecycle.

Tests critical integration points:
- Refresh inside the five-minute window, and only there
- Single refresh when callers arrive back to back
- Disconnected accounts never reach Google
- Rejected refresh tokens surface as ReauthorizationRequired
- OAuth handshake: state validation, code exchange, encrypted storage
"""

from datetime import UTC, datetime, timedelta
from urllib.parse import parse_qs, urlparse

import pytest
import responses

import database
from database import get_session
from database.models import GmailOAuthState
from ingest import gmail_auth
from ingest.errors import AccountDisconnected, ExternalAPIFailure, ReauthorizationRequired
from ingest.gmail_auth import (
    GOOGLE_REVOKE_URL,
    GOOGLE_TOKEN_URL,
    TokenVault,
    decrypt_token,
    token_vault,
)
from ingest.gmail_client import GMAIL_API_BASE


def add_token_response(rsps, access_token="new-access-token", status=200, **extra):
    body = {"access_token": access_token, "expires_in": 3600, "token_type": "Bearer"}
    body.update(extra)
    if status != 200:
        body = {"error": "invalid_grant"}
    rsps.add(responses.POST, GOOGLE_TOKEN_URL, json=body, status=status)


def test_token_expiring_in_four_minutes_is_refreshed(make_account, mock_responses):
    account_id = make_account(expires_in=timedelta(minutes=4))
    add_token_response(mock_responses)

    token = token_vault.get_valid_token(account_id)

    assert token == "new-access-token"
    assert len(mock_responses.calls) == 1
    assert "grant_type=refresh_token" in mock_responses.calls[0].request.body

    account = database.get_mail_account(account_id)
    assert decrypt_token(account["access_token"]) == "new-access-token"
    # Google did not rotate it, so the stored refresh token is unchanged
    assert decrypt_token(account["refresh_token"]) == "refresh-token"
    assert account["access_token"] != "new-access-token"


def test_token_expiring_in_ten_minutes_is_not_refreshed(make_account, mock_responses):
    account_id = make_account(expires_in=timedelta(minutes=10))

    assert token_vault.get_valid_token(account_id) == "access-token"
    assert len(mock_responses.calls) == 0


def test_already_expired_token_is_refreshed(make_account, mock_responses):
    account_id = make_account(expires_in=timedelta(minutes=-30))
    add_token_response(mock_responses, refresh_token="rotated-refresh-token")

    assert token_vault.get_valid_token(account_id) == "new-access-token"
    account = database.get_mail_account(account_id)
    assert decrypt_token(account["refresh_token"]) == "rotated-refresh-token"


def test_back_to_back_callers_refresh_once(make_account, mock_responses):
    account_id = make_account(expires_in=timedelta(minutes=1))
    add_token_response(mock_responses)

    first = token_vault.get_valid_token(account_id)
    second = token_vault.get_valid_token(account_id)

    assert first == second == "new-access-token"
    assert len(mock_responses.calls) == 1


def test_disconnected_account_never_refreshes(make_account, mock_responses):
    account_id = make_account(expires_in=timedelta(minutes=1), connected=False)

    with pytest.raises(AccountDisconnected):
        token_vault.get_valid_token(account_id)

    assert isinstance(AccountDisconnected(), ReauthorizationRequired)
    assert len(mock_responses.calls) == 0


def test_unknown_account_raises_value_error():
    with pytest.raises(ValueError):
        token_vault.get_valid_token(999999)


def test_rejected_refresh_token_requires_reauthorization(make_account, mock_responses):
    account_id = make_account(expires_in=timedelta(minutes=1))
    add_token_response(mock_responses, status=400)

    with pytest.raises(ReauthorizationRequired):
        token_vault.get_valid_token(account_id)

    account = database.get_mail_account(account_id)
    assert "rejected" in account["last_error"]
    assert len(mock_responses.calls) == 1


def test_token_endpoint_outage_raises_external_api_failure(make_account, mock_responses):
    account_id = make_account(expires_in=timedelta(minutes=1))
    for _ in range(gmail_auth.REFRESH_MAX_RETRIES):
        mock_responses.add(responses.POST, GOOGLE_TOKEN_URL, json={}, status=503)

    with pytest.raises(ExternalAPIFailure):
        token_vault.get_valid_token(account_id)

    assert len(mock_responses.calls) == gmail_auth.REFRESH_MAX_RETRIES


def test_force_refresh_ignores_expiry(make_account, mock_responses):
    account_id = make_account(expires_in=timedelta(hours=1))
    add_token_response(mock_responses, access_token="forced-token")

    assert token_vault.force_refresh(account_id) == "forced-token"


def test_needs_refresh_window():
    vault = TokenVault()
    now = datetime(2024, 3, 5, 12, 0, tzinfo=UTC)

    assert vault.needs_refresh(now + timedelta(minutes=4), now)
    assert vault.needs_refresh(now + timedelta(minutes=5), now)
    assert not vault.needs_refresh(now + timedelta(minutes=10), now)
    assert vault.needs_refresh(None, now)
    # Naive timestamps (SQLite) are read as UTC
    assert not vault.needs_refresh(datetime(2024, 3, 5, 12, 10), now)


def test_tokens_are_encrypted_at_rest():
    encrypted = gmail_auth.encrypt_token("secret-token")

    assert encrypted != "secret-token"
    assert decrypt_token(encrypted) == "secret-token"
    assert gmail_auth.encrypt_token(None) is None


def test_undecryptable_token_requires_reauthorization():
    with pytest.raises(ReauthorizationRequired):
        decrypt_token("not-a-fernet-token")


# ============================================================================
# OAUTH HANDSHAKE
# ============================================================================


def test_authorization_url_requests_offline_consent():
    result = gmail_auth.get_authorization_url(user_id=1)

    query = parse_qs(urlparse(result["auth_url"]).query)
    assert query["access_type"] == ["offline"]
    assert query["prompt"] == ["consent"]
    assert query["state"] == [result["state"]]
    assert query["code_challenge_method"] == ["S256"]
    assert "gmail.readonly" in query["scope"][0]
    assert database.get_gmail_oauth_state(result["state"]) is not None


def test_authorization_url_drops_expired_handshakes():
    with get_session() as session:
        session.add(
            GmailOAuthState(
                user_id=1,
                state="abandoned",
                code_verifier="verifier",
                expires_at=datetime.now(UTC) - timedelta(minutes=1),
            )
        )
        session.commit()

    result = gmail_auth.get_authorization_url(user_id=1)

    with get_session() as session:
        states = [row.state for row in session.query(GmailOAuthState).all()]
    assert states == [result["state"]]


def test_complete_oauth_stores_encrypted_account(mock_responses):
    state = gmail_auth.get_authorization_url(user_id=1)["state"]
    mock_responses.add(
        responses.POST,
        GOOGLE_TOKEN_URL,
        json={
            "access_token": "fresh-access",
            "refresh_token": "fresh-refresh",
            "expires_in": 3600,
            "scope": " ".join(gmail_auth.GMAIL_SCOPES),
        },
        status=200,
    )
    mock_responses.add(
        responses.GET,
        f"{GMAIL_API_BASE}/users/me/profile",
        json={"emailAddress": "owner@example.com"},
        status=200,
    )

    result = gmail_auth.complete_oauth("auth-code", state)

    account = database.get_mail_account(result["account_id"])
    assert result["email_address"] == "owner@example.com"
    assert account["is_connected"]
    assert account["access_token"] != "fresh-access"
    assert decrypt_token(account["refresh_token"]) == "fresh-refresh"
    # State is single use
    assert database.get_gmail_oauth_state(state) is None


def test_complete_oauth_rejects_unknown_state(mock_responses):
    with pytest.raises(ValueError, match="OAuth state"):
        gmail_auth.complete_oauth("auth-code", "forged-state")

    assert len(mock_responses.calls) == 0


def test_disconnect_revokes_and_discards_tokens(account_id, make_email, mock_responses):
    make_email(account_id)
    mock_responses.add(responses.POST, GOOGLE_REVOKE_URL, status=200)

    gmail_auth.disconnect(account_id)

    account = database.get_mail_account(account_id)
    assert not account["is_connected"]
    assert account["access_token"] is None
    assert account["refresh_token"] is None
    # Ingested data is kept
    assert len(database.get_raw_email_ids(account_id)) == 1


def test_disconnect_survives_revoke_failure(account_id, mock_responses):
    mock_responses.add(responses.POST, GOOGLE_REVOKE_URL, status=500)

    assert gmail_auth.disconnect(account_id)["status"] == "disconnected"
    assert not database.get_mail_account(account_id)["is_connected"]
