"""
Gmail API Client Module

Thin wrapper over the Gmail REST API: list labels, list message IDs under a
label (paginated), and fetch full message content.
Includes rate limiting, bounded timeouts and retry with exponential backoff.
"""

import base64
import os
import re
import time
from datetime import UTC, datetime

import requests
from bs4 import BeautifulSoup
from dotenv import load_dotenv
from google.auth.transport.requests import AuthorizedSession
from google.oauth2.credentials import Credentials

from ingest.errors import ExternalAPIFailure, ReauthorizationRequired
from ingest.logging_config import get_logger

# Load environment variables (Docker env vars take precedence)
load_dotenv(override=False)

logger = get_logger(__name__)

# Rate limiting configuration
RATE_LIMIT_DELAY = float(os.getenv("GMAIL_RATE_LIMIT_DELAY", "0.1"))  # 10 req/sec
MAX_RETRIES = int(os.getenv("GMAIL_MAX_RETRIES", "3"))
BACKOFF_MULTIPLIER = 2
REQUEST_TIMEOUT = int(os.getenv("GMAIL_REQUEST_TIMEOUT", "60"))

RETRYABLE_STATUS = (429, 500, 502, 503, 504)

# Gmail API base URL
GMAIL_API_BASE = "https://gmail.googleapis.com/gmail/v1"

# System labels offered alongside user labels
SELECTABLE_SYSTEM_LABELS = ("INBOX", "STARRED", "IMPORTANT")

PAGE_SIZE = 100


def build_gmail_service(access_token: str) -> AuthorizedSession:
    """
    Build Gmail API session with credentials.

    Uses requests-based AuthorizedSession. Token refresh is owned by
    TokenVault, so the credentials carry only the access token and a 401
    is surfaced instead of triggering a refresh here.

    Args:
        access_token: Valid OAuth access token

    Returns:
        AuthorizedSession object for making Gmail API requests
    """
    credentials = Credentials(token=access_token)
    return AuthorizedSession(credentials, refresh_status_codes=())


def fetch_with_backoff(
    session, method: str, url: str, max_retries: int = MAX_RETRIES, **kwargs
) -> dict:
    """
    Execute Gmail API request with exponential backoff.

    Args:
        session: AuthorizedSession (or requests.Session)
        method: HTTP method ('GET', 'POST', etc.)
        url: Full API URL
        max_retries: Maximum number of attempts
        **kwargs: Additional arguments to pass to session.request()

    Returns:
        Response JSON dict

    Raises:
        ReauthorizationRequired: API rejected the access token (401)
        ExternalAPIFailure: Non-retryable error, or retries exhausted
    """
    delay = 1
    last_error = None
    last_status = None

    for attempt in range(max_retries):
        try:
            # Rate limiting
            time.sleep(RATE_LIMIT_DELAY)

            response = session.request(method, url, timeout=REQUEST_TIMEOUT, **kwargs)
            response.raise_for_status()

            return response.json()

        except requests.HTTPError as e:
            last_error = e
            last_status = e.response.status_code if e.response is not None else None

            if last_status == 401:
                raise ReauthorizationRequired(
                    "Gmail rejected the access token; reconnect the account"
                ) from e

            if last_status in RETRYABLE_STATUS:
                logger.warning(
                    f"Gmail API returned {last_status} "
                    f"(attempt {attempt + 1}/{max_retries}), retrying in {delay}s"
                )
                time.sleep(delay)
                delay *= BACKOFF_MULTIPLIER
            else:
                raise ExternalAPIFailure(
                    f"Gmail API error {last_status}: {e}", status_code=last_status
                ) from e

        except requests.RequestException as e:
            last_error = e
            logger.warning(
                f"Gmail API request failed (attempt {attempt + 1}/{max_retries}), "
                f"retrying in {delay}s: {e}"
            )
            time.sleep(delay)
            delay *= BACKOFF_MULTIPLIER

    raise ExternalAPIFailure(
        f"Gmail API request failed after {max_retries} attempts: {last_error}",
        status_code=last_status,
    ) from last_error


def html_to_text(html: str) -> str:
    """
    Convert HTML to plain text.

    Args:
        html: HTML content

    Returns:
        Plain text content
    """
    if not html:
        return ""

    soup = BeautifulSoup(html, "html.parser")

    # Remove script and style elements
    for element in soup(["script", "style", "head", "meta", "noscript"]):
        element.decompose()

    text = soup.get_text(separator=" ")
    text = re.sub(r"[ \t\r\f\v]+", " ", text)
    text = re.sub(r"\s*\n\s*", "\n", text)
    return text.strip()


def _decode(data: str) -> str:
    # Gmail omits base64url padding on some payloads
    padded = data + "=" * (-len(data) % 4)
    return base64.urlsafe_b64decode(padded).decode("utf-8", errors="ignore")


def extract_body(payload: dict) -> str:
    """
    Extract the message body, preferring text/plain over text/html.

    Walks nested multipart parts; HTML-only messages are converted to text.
    """
    plain_parts = []
    html_parts = []

    def walk(part):
        mime_type = part.get("mimeType", "")
        data = part.get("body", {}).get("data")
        if data and not part.get("filename"):
            if mime_type == "text/html":
                html_parts.append(_decode(data))
            elif mime_type.startswith("text/") or not mime_type:
                plain_parts.append(_decode(data))
        for child in part.get("parts", []) or []:
            walk(child)

    walk(payload)

    if plain_parts:
        return "\n".join(p.strip() for p in plain_parts if p.strip())
    if html_parts:
        return "\n".join(html_to_text(h) for h in html_parts)
    return ""


def parse_message(message: dict) -> dict:
    """
    Convert a Gmail API message resource into the stored message shape.

    Returns:
        Dict with external_id, sender, subject, body, received_at
    """
    payload = message.get("payload", {})
    headers = {h["name"].lower(): h["value"] for h in payload.get("headers", [])}

    # Internal date is a Unix timestamp in ms
    internal_date = message.get("internalDate")
    received_at = None
    if internal_date:
        received_at = datetime.fromtimestamp(int(internal_date) / 1000, tz=UTC)

    return {
        "external_id": message.get("id"),
        "thread_id": message.get("threadId"),
        "sender": headers.get("from", ""),
        "subject": headers.get("subject", ""),
        "body": extract_body(payload),
        "received_at": received_at,
    }


class GmailClient:
    """Gmail API client for one mailbox.

    Takes either a fixed access token or a zero-argument callable returning
    a currently valid one. The callable is consulted before every request,
    and the session is rebuilt whenever it hands back a different token.

    Example:
        client = GmailClient(lambda: vault.get_valid_token(account_id))
        for message_id in client.iter_message_ids("INBOX"):
            message = client.get_message(message_id)
    """

    def __init__(self, access_token, session=None):
        if callable(access_token):
            self._token_provider = access_token
        else:
            self._token_provider = lambda: access_token
        self._fixed_session = session
        self._session = None
        self._session_token = None

    @property
    def session(self) -> AuthorizedSession:
        """Session carrying the provider's current token."""
        if self._fixed_session is not None:
            return self._fixed_session
        token = self._token_provider()
        if self._session is None or token != self._session_token:
            self._session = build_gmail_service(token)
            self._session_token = token
        return self._session

    def list_labels(self) -> list:
        """
        List selectable labels: user labels plus INBOX, STARRED and IMPORTANT.

        Returns:
            List of dicts with id, name and type
        """
        result = fetch_with_backoff(
            self.session, "GET", f"{GMAIL_API_BASE}/users/me/labels"
        )
        labels = []
        for label in result.get("labels", []):
            if label.get("type") == "user" or label.get("id") in SELECTABLE_SYSTEM_LABELS:
                labels.append(
                    {
                        "id": label.get("id"),
                        "name": label.get("name"),
                        "type": label.get("type"),
                    }
                )
        return labels

    def list_message_ids(
        self, label_id: str, page_token: str = None, max_results: int = PAGE_SIZE
    ) -> tuple:
        """
        List one page of message IDs under a label.

        Args:
            label_id: Gmail label ID
            page_token: Token from the previous page
            max_results: Page size (max 500)

        Returns:
            Tuple of (message_ids, next_page_token)
        """
        params = {"labelIds": label_id, "maxResults": min(max_results, 500)}
        if page_token:
            params["pageToken"] = page_token

        result = fetch_with_backoff(
            self.session, "GET", f"{GMAIL_API_BASE}/users/me/messages", params=params
        )
        ids = [m["id"] for m in result.get("messages", []) or []]
        return ids, result.get("nextPageToken")

    def iter_message_ids(
        self, label_id: str, max_messages: int = None, is_cancelled=None
    ):
        """
        Yield message IDs under a label, following pagination to completion.

        Args:
            label_id: Gmail label ID
            max_messages: Stop after this many IDs (None = no cap)
            is_cancelled: Optional callable checked before each page request
        """
        page_token = None
        yielded = 0

        while True:
            if is_cancelled is not None and is_cancelled():
                return

            page_size = PAGE_SIZE
            if max_messages is not None:
                page_size = min(PAGE_SIZE, max_messages - yielded)
                if page_size <= 0:
                    return

            ids, page_token = self.list_message_ids(
                label_id, page_token=page_token, max_results=page_size
            )
            for message_id in ids:
                yield message_id
                yielded += 1
                if max_messages is not None and yielded >= max_messages:
                    return

            if not page_token:
                return

    def get_message(self, message_id: str) -> dict:
        """
        Fetch a full message.

        Returns:
            Dict with external_id, sender, subject, body, received_at
        """
        message = fetch_with_backoff(
            self.session,
            "GET",
            f"{GMAIL_API_BASE}/users/me/messages/{message_id}",
            params={"format": "full"},
        )
        return parse_message(message)
