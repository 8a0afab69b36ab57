"""
Gmail Service - Business Logic

Orchestrates the mailbox connection: OAuth handshake, label selection,
token refresh and sync. Separates business logic from HTTP routing concerns.
"""

import database

from ingest import gmail_auth, gmail_sync
from ingest.gmail_client import GmailClient
from ingest.logging_config import get_logger
from tasks.gmail_tasks import sync_account_task

logger = get_logger(__name__)


def _require_account(account_id: int) -> dict:
    account = database.get_mail_account(account_id)
    if not account:
        raise ValueError(f"Mail account {account_id} not found")
    return account


def get_authorization_url(user_id: int) -> dict:
    """
    Start the OAuth handshake for a user.

    Returns:
        Dict with auth_url and state
    """
    return gmail_auth.get_authorization_url(user_id)


def handle_callback(request_args: dict):
    """Complete the OAuth handshake and redirect back to the frontend."""
    return gmail_auth.handle_oauth_callback(request_args)


def get_connection_status(account_id: int) -> dict:
    """
    Get the connection status of a mailbox account (tokens excluded).

    Returns:
        Dict with connected flag, email address, label and sync timestamps
    """
    account = database.get_mail_account(account_id)
    if not account:
        return {"connected": False, "account": None}

    def _iso(value):
        return value.isoformat() if value else None

    return {
        "connected": bool(account["is_connected"]),
        "account": {
            "id": account["id"],
            "user_id": account["user_id"],
            "email_address": account["email_address"],
            "label_id": account["label_id"],
            "label_name": account["label_name"],
            "last_synced_at": _iso(account["last_synced_at"]),
            "token_expires_at": _iso(account["token_expires_at"]),
            "last_error": account["last_error"],
            "scopes": account["scopes"],
        },
    }


def list_labels(account_id: int) -> list:
    """List the labels a user can select as the transaction source."""
    token = gmail_auth.token_vault.get_valid_token(account_id)
    return GmailClient(token).list_labels()


def select_label(account_id: int, label_id: str, label_name: str = None) -> dict:
    """
    Persist the label that sync reads from.

    Raises:
        ValueError: Missing label or unknown account
    """
    if not label_id:
        raise ValueError("label_id is required")
    _require_account(account_id)
    database.set_account_label(account_id, label_id, label_name)
    logger.info(f"Source label set to {label_name or label_id}", extra={"account_id": account_id})
    return {"account_id": account_id, "label_id": label_id, "label_name": label_name}


def refresh_token(account_id: int) -> dict:
    """Force a token refresh and report the new expiry."""
    gmail_auth.token_vault.force_refresh(account_id)
    account = _require_account(account_id)
    expires_at = account["token_expires_at"]
    return {
        "account_id": account_id,
        "refreshed": True,
        "token_expires_at": expires_at.isoformat() if expires_at else None,
    }


def disconnect(account_id: int) -> dict:
    """Disconnect the mailbox; stored emails and purchases are kept."""
    return gmail_auth.disconnect(account_id)


def sync(account_id: int, max_messages: int = None, run_async: bool = False) -> dict:
    """
    Fetch new messages and quick-parse them.

    Args:
        account_id: Mail account ID
        max_messages: Optional cap on listed messages
        run_async: Queue the sync on a Celery worker instead of running inline

    Returns:
        Fetch and parse summaries, or the queued task ID
    """
    if run_async:
        _require_account(account_id)
        task = sync_account_task.delay(account_id, max_messages)
        logger.info(f"Sync queued: task_id={task.id}", extra={"account_id": account_id})
        return {"account_id": account_id, "status": "queued", "task_id": task.id}

    return gmail_sync.sync_account(account_id, max_messages=max_messages)


def run_scheduled_sync() -> dict:
    """Sync every connected account with the scheduled fetch cap."""
    return gmail_sync.sync_all_accounts(max_messages=gmail_sync.SCHEDULED_FETCH_LIMIT)
