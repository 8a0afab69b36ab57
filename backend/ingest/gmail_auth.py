"""
Gmail OAuth 2.0 Authentication Module

Handles OAuth 2.0 authorization code flow for connecting to Gmail API.
Manages token storage, refresh, and encryption.

TokenVault hands out access tokens that stay valid for at least the next
five minutes, refreshing under a per-account lock when they do not.
Refresh failures surface as ReauthorizationRequired (refresh token rejected)
or ExternalAPIFailure (Google unreachable after retries).
"""

import base64
import hashlib
import os
import secrets
import time
from datetime import UTC, datetime, timedelta
from urllib.parse import urlencode

import database
import requests
from cryptography.fernet import Fernet, InvalidToken
from dotenv import load_dotenv

from ingest.errors import (
    AccountDisconnected,
    ExternalAPIFailure,
    ReauthorizationRequired,
)
from ingest.gmail_client import GMAIL_API_BASE
from ingest.locks import named_lock, token_refresh_lock_name
from ingest.logging_config import get_logger

# Load environment variables (Docker env vars take precedence)
load_dotenv(override=False)

logger = get_logger(__name__)

# Gmail OAuth Configuration
GMAIL_CLIENT_ID = os.getenv("GOOGLE_CLIENT_ID")
GMAIL_CLIENT_SECRET = os.getenv("GOOGLE_CLIENT_SECRET")
GMAIL_REDIRECT_URI = os.getenv(
    "GOOGLE_REDIRECT_URI", "http://localhost:5000/api/gmail/callback"
)

# Google OAuth URLs
GOOGLE_AUTH_URL = "https://accounts.google.com/o/oauth2/v2/auth"
GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"
GOOGLE_REVOKE_URL = "https://oauth2.googleapis.com/revoke"

# Read messages + list labels
GMAIL_SCOPES = [
    "https://www.googleapis.com/auth/gmail.readonly",
    "https://www.googleapis.com/auth/gmail.labels",
]

# Encryption key for storing tokens
ENCRYPTION_KEY = os.getenv("ENCRYPTION_KEY")
cipher = Fernet(ENCRYPTION_KEY) if ENCRYPTION_KEY else None

# Frontend URL for redirects
FRONTEND_URL = os.getenv("FRONTEND_URL", "http://localhost:5173")

# Refresh when the token expires within this window
REFRESH_WINDOW = timedelta(minutes=5)
OAUTH_TIMEOUT = 10
REFRESH_MAX_RETRIES = 3
BACKOFF_MULTIPLIER = 2


def generate_state() -> str:
    """Generate a random state parameter for OAuth security (CSRF prevention)."""
    return secrets.token_urlsafe(32)


def generate_pkce_challenge() -> tuple:
    """
    Generate PKCE code_verifier and code_challenge.

    PKCE (Proof Key for Code Exchange) requires a code_verifier to be sent
    with the token exchange.
    """
    code_verifier = (
        base64.urlsafe_b64encode(secrets.token_bytes(32)).decode("utf-8").rstrip("=")
    )
    code_challenge = (
        base64.urlsafe_b64encode(hashlib.sha256(code_verifier.encode()).digest())
        .decode("utf-8")
        .rstrip("=")
    )
    return code_verifier, code_challenge


def get_authorization_url(user_id: int) -> dict:
    """
    Generate Google OAuth authorization URL for Gmail access.

    Args:
        user_id: User ID for tracking the OAuth flow

    Returns:
        Dictionary with 'auth_url' (to redirect user to) and 'state'
    """
    if not GMAIL_CLIENT_ID:
        raise ValueError("GOOGLE_CLIENT_ID not configured. Please set it in .env")

    state = generate_state()
    code_verifier, code_challenge = generate_pkce_challenge()

    # Abandoned handshakes leave states behind; drop the expired ones
    database.cleanup_expired_gmail_oauth_states()

    # Store state and code_verifier for callback validation
    database.store_gmail_oauth_state(user_id, state, code_verifier)

    params = {
        "client_id": GMAIL_CLIENT_ID,
        "redirect_uri": GMAIL_REDIRECT_URI,
        "response_type": "code",
        "scope": " ".join(GMAIL_SCOPES),
        "state": state,
        "code_challenge": code_challenge,
        "code_challenge_method": "S256",
        "access_type": "offline",  # Request refresh token
        "prompt": "consent",  # Force consent screen for refresh token
    }

    logger.info(f"Generated Gmail OAuth URL for user {user_id}")
    return {"auth_url": f"{GOOGLE_AUTH_URL}?{urlencode(params)}", "state": state}


def _require_client_config():
    if not GMAIL_CLIENT_ID or not GMAIL_CLIENT_SECRET:
        raise ValueError("GOOGLE_CLIENT_ID or GOOGLE_CLIENT_SECRET not configured")


def exchange_code_for_token(authorization_code: str, code_verifier: str) -> dict:
    """
    Exchange authorization code for access token.

    Args:
        authorization_code: Code received from OAuth callback
        code_verifier: PKCE code verifier

    Returns:
        Dictionary with 'access_token', 'refresh_token', 'expires_at', 'scope'
    """
    _require_client_config()

    data = {
        "grant_type": "authorization_code",
        "client_id": GMAIL_CLIENT_ID,
        "client_secret": GMAIL_CLIENT_SECRET,
        "redirect_uri": GMAIL_REDIRECT_URI,
        "code": authorization_code,
        "code_verifier": code_verifier,
    }

    try:
        response = requests.post(
            GOOGLE_TOKEN_URL,
            data=data,
            headers={"Content-Type": "application/x-www-form-urlencoded"},
            timeout=OAUTH_TIMEOUT,
        )
        response.raise_for_status()
    except requests.RequestException as e:
        logger.error(f"Gmail token exchange failed: {e}")
        raise ExternalAPIFailure(f"Token exchange failed: {e}") from e

    token_data = response.json()
    expires_in = token_data.get("expires_in", 3600)

    return {
        "access_token": token_data.get("access_token"),
        "refresh_token": token_data.get("refresh_token"),
        "expires_at": datetime.now(UTC) + timedelta(seconds=expires_in),
        "token_type": token_data.get("token_type", "Bearer"),
        "scope": token_data.get("scope", " ".join(GMAIL_SCOPES)),
    }


def refresh_access_token(refresh_token: str) -> dict:
    """
    Refresh an access token at Google's token endpoint.

    Transport errors and 5xx responses are retried with backoff; a 400/401
    response means the refresh token is no longer valid.

    Args:
        refresh_token: Refresh token from previous authentication

    Returns:
        Dictionary with new 'access_token', 'refresh_token', 'expires_at'

    Raises:
        ReauthorizationRequired: Google rejected the refresh token
        ExternalAPIFailure: Token endpoint unreachable after retries
    """
    _require_client_config()

    data = {
        "grant_type": "refresh_token",
        "client_id": GMAIL_CLIENT_ID,
        "client_secret": GMAIL_CLIENT_SECRET,
        "refresh_token": refresh_token,
    }

    delay = 1
    last_error = None
    for attempt in range(REFRESH_MAX_RETRIES):
        try:
            response = requests.post(
                GOOGLE_TOKEN_URL,
                data=data,
                headers={"Content-Type": "application/x-www-form-urlencoded"},
                timeout=OAUTH_TIMEOUT,
            )
        except requests.RequestException as e:
            last_error = e
        else:
            if response.status_code in (400, 401):
                detail = response.text[:200]
                logger.warning(f"Refresh token rejected ({response.status_code}): {detail}")
                raise ReauthorizationRequired(
                    f"Refresh token rejected by Google ({response.status_code})"
                )
            if response.ok:
                token_data = response.json()
                expires_in = token_data.get("expires_in", 3600)
                return {
                    "access_token": token_data.get("access_token"),
                    # Google only returns a refresh token when it rotates it
                    "refresh_token": token_data.get("refresh_token", refresh_token),
                    "expires_at": datetime.now(UTC) + timedelta(seconds=expires_in),
                    "token_type": token_data.get("token_type", "Bearer"),
                }
            last_error = requests.HTTPError(
                f"{response.status_code} from token endpoint", response=response
            )

        logger.warning(
            f"Token refresh failed (attempt {attempt + 1}/{REFRESH_MAX_RETRIES}): {last_error}"
        )
        if attempt + 1 < REFRESH_MAX_RETRIES:
            time.sleep(delay)
            delay *= BACKOFF_MULTIPLIER

    raise ExternalAPIFailure(
        f"Token refresh failed after {REFRESH_MAX_RETRIES} attempts: {last_error}"
    ) from last_error


def encrypt_token(token: str) -> str:
    """Encrypt sensitive token for storage."""
    if token is None:
        return None
    if not cipher:
        logger.warning(
            "ENCRYPTION_KEY not set. Storing token unencrypted (NOT recommended for production)"
        )
        return token
    return cipher.encrypt(token.encode()).decode()


def decrypt_token(encrypted_token: str) -> str:
    """Decrypt stored token."""
    if encrypted_token is None:
        return None
    if not cipher:
        return encrypted_token

    try:
        if isinstance(encrypted_token, bytes):
            return cipher.decrypt(encrypted_token).decode()
        return cipher.decrypt(encrypted_token.encode()).decode()
    except InvalidToken as e:
        logger.error("Gmail token decryption failed (ENCRYPTION_KEY changed?)")
        raise ReauthorizationRequired("Stored token could not be decrypted") from e


def _as_aware(value) -> datetime | None:
    if value is None:
        return None
    if isinstance(value, str):
        value = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return value


class TokenVault:
    """Owns the OAuth token lifecycle for connected mailbox accounts.

    Interactive routes and scheduled tasks both go through
    ``get_valid_token``; concurrent callers near expiry are serialized by a
    per-account lock and re-check expiry after acquiring it, so only one of
    them refreshes.
    """

    def __init__(self, refresh_window: timedelta = REFRESH_WINDOW):
        self.refresh_window = refresh_window

    def needs_refresh(self, expires_at, now: datetime = None) -> bool:
        """True when the token is missing an expiry or expires inside the window."""
        expires_at = _as_aware(expires_at)
        now = now or datetime.now(UTC)
        if expires_at is None:
            return True
        return expires_at <= now + self.refresh_window

    def _load_account(self, account_id: int) -> dict:
        account = database.get_mail_account(account_id)
        if not account:
            raise ValueError(f"Mail account {account_id} not found")
        if not account.get("is_connected") or not account.get("refresh_token"):
            raise AccountDisconnected(f"Mail account {account_id} is not connected")
        return account

    def get_valid_token(self, account_id: int, now: datetime = None) -> str:
        """
        Get a valid access token, refreshing it first if it expires soon.

        Args:
            account_id: Mail account ID
            now: Current time (for tests); defaults to datetime.now(UTC)

        Returns:
            Access token string

        Raises:
            AccountDisconnected: Account is disconnected (no refresh attempted)
            ReauthorizationRequired: Refresh token rejected
            ExternalAPIFailure: Token endpoint unreachable
        """
        account = self._load_account(account_id)
        if not self.needs_refresh(account.get("token_expires_at"), now):
            return decrypt_token(account["access_token"])

        with named_lock(token_refresh_lock_name(account_id), timeout=30) as acquired:
            if not acquired:
                raise ExternalAPIFailure(
                    f"Timed out waiting for token refresh lock for account {account_id}"
                )

            # Another caller may have refreshed while we waited
            account = self._load_account(account_id)
            if not self.needs_refresh(account.get("token_expires_at"), now):
                logger.debug(
                    "Token already refreshed by another worker",
                    extra={"account_id": account_id},
                )
                return decrypt_token(account["access_token"])

            return self._refresh(account)

    def force_refresh(self, account_id: int) -> str:
        """Refresh the access token regardless of its expiry."""
        with named_lock(token_refresh_lock_name(account_id), timeout=30) as acquired:
            if not acquired:
                raise ExternalAPIFailure(
                    f"Timed out waiting for token refresh lock for account {account_id}"
                )
            return self._refresh(self._load_account(account_id))

    def _refresh(self, account: dict) -> str:
        account_id = account["id"]
        logger.info("Refreshing Gmail access token", extra={"account_id": account_id})

        refresh_token = decrypt_token(account["refresh_token"])
        try:
            new_tokens = refresh_access_token(refresh_token)
        except ReauthorizationRequired as e:
            database.update_account_error(account_id, str(e))
            raise

        database.update_account_tokens(
            account_id,
            access_token=encrypt_token(new_tokens["access_token"]),
            token_expires_at=new_tokens["expires_at"],
            refresh_token=encrypt_token(new_tokens["refresh_token"]),
        )
        return new_tokens["access_token"]


# Shared default vault
token_vault = TokenVault()


def save_mail_account(user_id: int, email_address: str, token_data: dict) -> dict:
    """
    Save a mailbox connection with encrypted tokens.

    Args:
        user_id: User ID
        email_address: Connected Gmail address
        token_data: Dictionary with tokens and connection info

    Returns:
        Dictionary with account_id and status
    """
    account_id = database.save_mail_account(
        user_id=user_id,
        email_address=email_address,
        access_token=encrypt_token(token_data["access_token"]),
        refresh_token=encrypt_token(token_data.get("refresh_token")),
        token_expires_at=token_data.get("expires_at"),
        scopes=token_data.get("scope"),
    )
    logger.info(
        f"Gmail account saved: {email_address}", extra={"account_id": account_id}
    )
    return {
        "account_id": account_id,
        "status": "connected",
        "email_address": email_address,
    }


def get_gmail_user_email(access_token: str) -> str:
    """
    Fetch the email address of the authenticated Gmail user.

    Args:
        access_token: Valid Gmail API access token

    Returns:
        Email address string
    """
    try:
        response = requests.get(
            f"{GMAIL_API_BASE}/users/me/profile",
            headers={"Authorization": f"Bearer {access_token}"},
            timeout=OAUTH_TIMEOUT,
        )
        response.raise_for_status()
    except requests.RequestException as e:
        raise ExternalAPIFailure(f"Failed to get Gmail user profile: {e}") from e
    return response.json().get("emailAddress")


def complete_oauth(code: str, state: str) -> dict:
    """
    Complete the OAuth handshake: validate state, exchange code, store account.

    Returns:
        Dictionary with account_id, status and email_address

    Raises:
        ValueError: Missing, unknown or expired state
    """
    oauth_state = database.get_gmail_oauth_state(state)
    if not oauth_state:
        raise ValueError("Invalid or expired OAuth state")

    token_data = exchange_code_for_token(code, oauth_state["code_verifier"])
    if not token_data.get("refresh_token"):
        raise ValueError("Google did not return a refresh token")

    email_address = get_gmail_user_email(token_data["access_token"])
    result = save_mail_account(oauth_state["user_id"], email_address, token_data)

    database.delete_gmail_oauth_state(state)
    return result


def handle_oauth_callback(request_args: dict):
    """
    Handle Gmail OAuth callback from Google.

    Args:
        request_args: Flask request.args containing callback parameters

    Returns:
        Flask redirect response to frontend with status
    """
    from flask import redirect

    code = request_args.get("code")
    state = request_args.get("state")
    error = request_args.get("error")

    if error:
        logger.warning(f"Gmail OAuth error: {error}")
        return redirect(f"{FRONTEND_URL}/settings?{urlencode({'gmail_error': error})}")

    if not code or not state:
        return redirect(
            f"{FRONTEND_URL}/settings?{urlencode({'gmail_error': 'Missing code or state'})}"
        )

    try:
        result = complete_oauth(code, state)
    except (ValueError, ExternalAPIFailure) as e:
        logger.error(f"Gmail OAuth callback failed: {e}")
        message = str(e).split("\n")[0]
        return redirect(f"{FRONTEND_URL}/settings?{urlencode({'gmail_error': message})}")

    query = urlencode(
        {
            "gmail_status": "connected",
            "account_id": result["account_id"],
            "email": result["email_address"],
        }
    )
    return redirect(f"{FRONTEND_URL}/settings?{query}")


def disconnect(account_id: int) -> dict:
    """
    Disconnect a mailbox: best-effort revoke at Google, then discard tokens.

    Ingested emails and purchases are kept.

    Args:
        account_id: Mail account ID

    Returns:
        Dictionary with status
    """
    account = database.get_mail_account(account_id)
    if not account:
        raise ValueError(f"Mail account {account_id} not found")

    if account.get("refresh_token"):
        try:
            requests.post(
                GOOGLE_REVOKE_URL,
                params={"token": decrypt_token(account["refresh_token"])},
                headers={"Content-Type": "application/x-www-form-urlencoded"},
                timeout=5,
            )
        except (requests.RequestException, ReauthorizationRequired) as e:
            logger.warning(
                f"Failed to revoke token with Google (continuing): {e}",
                extra={"account_id": account_id},
            )

    database.disconnect_mail_account(account_id)
    logger.info("Gmail account disconnected", extra={"account_id": account_id})
    return {"status": "disconnected", "account_id": account_id}
