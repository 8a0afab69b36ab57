"""
Gmail Integration - Database Operations

Handles all database operations for connected mailboxes and ingested emails.

Modules:
- Account management (save_mail_account, get_mail_account, update_account_tokens, etc.)
- OAuth state management (store_gmail_oauth_state, get_gmail_oauth_state, etc.)
- Raw email storage (save_raw_email, get_existing_message_ids, etc.)
- Parse state transitions (mark_email_parsed, mark_email_error, reset_emails_to_unparsed)

Every function commits its own unit of work, so a batch that fails midway
keeps everything written before the failure.
"""

from datetime import UTC, datetime, timedelta

from sqlalchemy import exists, func, update
from sqlalchemy.exc import IntegrityError

from .base import get_session
from .models.gmail import GmailOAuthState, MailAccount, RawEmail
from .models.purchases import Purchase

OAUTH_STATE_TTL_MINUTES = 10

# ============================================================================
# ACCOUNT (SYNC STATE) FUNCTIONS
# ============================================================================


def _account_to_dict(account: MailAccount) -> dict:
    return {
        "id": account.id,
        "user_id": account.user_id,
        "email_address": account.email_address,
        "access_token": account.access_token,
        "refresh_token": account.refresh_token,
        "token_expires_at": account.token_expires_at,
        "scopes": account.scopes,
        "label_id": account.label_id,
        "label_name": account.label_name,
        "last_synced_at": account.last_synced_at,
        "is_connected": account.is_connected,
        "last_error": account.last_error,
        "created_at": account.created_at,
        "updated_at": account.updated_at,
    }


def save_mail_account(
    user_id: int,
    email_address: str,
    access_token: str,
    refresh_token: str,
    token_expires_at: datetime,
    scopes: str = None,
) -> int:
    """
    Save or update a mailbox connection.

    Re-connecting an existing (user, address) pair replaces its tokens and
    marks it connected again; the selected label and sync history are kept.

    Args:
        user_id: User ID
        email_address: Connected Gmail address
        access_token: Encrypted access token
        refresh_token: Encrypted refresh token
        token_expires_at: Expiration timestamp
        scopes: OAuth scopes granted

    Returns:
        Account ID
    """
    with get_session() as session:
        account = (
            session.query(MailAccount)
            .filter(
                MailAccount.user_id == user_id,
                MailAccount.email_address == email_address,
            )
            .first()
        )
        if account is None:
            account = MailAccount(user_id=user_id, email_address=email_address)
            session.add(account)

        account.access_token = access_token
        account.refresh_token = refresh_token
        account.token_expires_at = token_expires_at
        account.scopes = scopes
        account.is_connected = True
        account.last_error = None

        session.commit()
        return account.id


def get_mail_account(account_id: int) -> dict:
    """Get a mailbox account by ID (connected or not)."""
    with get_session() as session:
        account = session.get(MailAccount, account_id)
        if not account:
            return None
        return _account_to_dict(account)


def get_connected_accounts() -> list:
    """Get every connected mailbox account, oldest first."""
    with get_session() as session:
        accounts = (
            session.query(MailAccount)
            .filter(MailAccount.is_connected.is_(True))
            .order_by(MailAccount.id)
            .all()
        )
        return [_account_to_dict(a) for a in accounts]


def update_account_tokens(
    account_id: int,
    access_token: str,
    token_expires_at: datetime,
    refresh_token: str = None,
) -> bool:
    """Update OAuth tokens after a refresh (refresh token only when rotated)."""
    with get_session() as session:
        account = session.get(MailAccount, account_id)
        if not account:
            return False
        account.access_token = access_token
        account.token_expires_at = token_expires_at
        if refresh_token:
            account.refresh_token = refresh_token
        account.last_error = None
        session.commit()
        return True


def disconnect_mail_account(account_id: int) -> bool:
    """Discard all tokens and clear the connected flag."""
    with get_session() as session:
        account = session.get(MailAccount, account_id)
        if not account:
            return False
        account.access_token = None
        account.refresh_token = None
        account.token_expires_at = None
        account.is_connected = False
        session.commit()
        return True


def set_account_label(account_id: int, label_id: str, label_name: str = None) -> bool:
    """Select the source label that sync reads from."""
    with get_session() as session:
        account = session.get(MailAccount, account_id)
        if not account:
            return False
        account.label_id = label_id
        account.label_name = label_name
        session.commit()
        return True


def update_last_synced(account_id: int, synced_at: datetime = None) -> bool:
    """Record per-account completion of a sync or parse run."""
    with get_session() as session:
        account = session.get(MailAccount, account_id)
        if not account:
            return False
        account.last_synced_at = synced_at or datetime.now(UTC)
        session.commit()
        return True


def update_account_error(account_id: int, error: str | None) -> bool:
    """Record (or clear) the last account-level error."""
    with get_session() as session:
        account = session.get(MailAccount, account_id)
        if not account:
            return False
        account.last_error = error
        session.commit()
        return True


# ============================================================================
# OAUTH STATE FUNCTIONS
# ============================================================================


def store_gmail_oauth_state(user_id: int, state: str, code_verifier: str) -> bool:
    """Store OAuth state and PKCE verifier (expires after 10 minutes)."""
    with get_session() as session:
        session.add(
            GmailOAuthState(
                user_id=user_id,
                state=state,
                code_verifier=code_verifier,
                expires_at=datetime.now(UTC)
                + timedelta(minutes=OAUTH_STATE_TTL_MINUTES),
            )
        )
        session.commit()
        return True


def get_gmail_oauth_state(state: str) -> dict:
    """Get an unexpired OAuth state record."""
    with get_session() as session:
        record = (
            session.query(GmailOAuthState)
            .filter(GmailOAuthState.state == state)
            .first()
        )
        if not record:
            return None

        expires_at = record.expires_at
        if expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=UTC)
        if expires_at < datetime.now(UTC):
            return None

        return {
            "user_id": record.user_id,
            "state": record.state,
            "code_verifier": record.code_verifier,
            "expires_at": expires_at,
        }


def delete_gmail_oauth_state(state: str) -> bool:
    """Delete OAuth state after use."""
    with get_session() as session:
        deleted = (
            session.query(GmailOAuthState)
            .filter(GmailOAuthState.state == state)
            .delete()
        )
        session.commit()
        return deleted > 0


def cleanup_expired_gmail_oauth_states() -> int:
    """Delete expired OAuth states. Returns number deleted."""
    with get_session() as session:
        deleted = (
            session.query(GmailOAuthState)
            .filter(GmailOAuthState.expires_at < datetime.now(UTC))
            .delete()
        )
        session.commit()
        return deleted


# ============================================================================
# RAW EMAIL FUNCTIONS
# ============================================================================


def _email_to_dict(email: RawEmail) -> dict:
    return {
        "id": email.id,
        "account_id": email.account_id,
        "gmail_message_id": email.gmail_message_id,
        "sender": email.sender,
        "subject": email.subject,
        "body": email.body,
        "received_at": email.received_at,
        "parse_state": email.parse_state,
        "parse_error": email.parse_error,
        "parsing_rule_id": email.parsing_rule_id,
        "created_at": email.created_at,
    }


def get_existing_message_ids(account_id: int, message_ids: list) -> set:
    """Return the subset of external message IDs already stored for the account."""
    if not message_ids:
        return set()
    with get_session() as session:
        rows = (
            session.query(RawEmail.gmail_message_id)
            .filter(
                RawEmail.account_id == account_id,
                RawEmail.gmail_message_id.in_(message_ids),
            )
            .all()
        )
        return {row[0] for row in rows}


def save_raw_email(account_id: int, message: dict) -> int | None:
    """
    Store a fetched message as unparsed.

    Args:
        account_id: Mail account ID
        message: Dict with external_id, sender, subject, body, received_at

    Returns:
        Raw email ID, or None if the message was already stored
    """
    with get_session() as session:
        email = RawEmail(
            account_id=account_id,
            gmail_message_id=message["external_id"],
            sender=message.get("sender"),
            subject=message.get("subject"),
            body=message.get("body"),
            received_at=message.get("received_at"),
            parse_state="unparsed",
        )
        session.add(email)
        try:
            session.commit()
        except IntegrityError:
            # Unique (account_id, gmail_message_id): stored by an earlier run
            session.rollback()
            return None
        return email.id


def get_raw_email(email_id: int) -> dict:
    """Get a raw email by ID."""
    with get_session() as session:
        email = session.get(RawEmail, email_id)
        if not email:
            return None
        return _email_to_dict(email)


def get_raw_email_ids(account_id: int, parse_state: str = None) -> list:
    """Get IDs of an account's emails (optionally by parse state), oldest first."""
    with get_session() as session:
        query = session.query(RawEmail.id).filter(RawEmail.account_id == account_id)
        if parse_state:
            query = query.filter(RawEmail.parse_state == parse_state)
        return [row[0] for row in query.order_by(RawEmail.id).all()]


def get_orphaned_email_ids(account_id: int) -> list:
    """IDs of parsed_ok emails with no purchase referencing them."""
    with get_session() as session:
        rows = (
            session.query(RawEmail.id)
            .filter(
                RawEmail.account_id == account_id,
                RawEmail.parse_state == "parsed_ok",
                ~exists().where(Purchase.raw_email_id == RawEmail.id),
            )
            .order_by(RawEmail.id)
            .all()
        )
        return [row[0] for row in rows]


def get_recent_emails(account_id: int, limit: int = 5) -> list:
    """Most recently received emails for the account."""
    with get_session() as session:
        emails = (
            session.query(RawEmail)
            .filter(RawEmail.account_id == account_id)
            .order_by(RawEmail.received_at.desc(), RawEmail.id.desc())
            .limit(limit)
            .all()
        )
        return [_email_to_dict(e) for e in emails]


def get_emails_by_ids(account_id: int, email_ids: list) -> list:
    """Fetch specific emails of an account, in ID order."""
    if not email_ids:
        return []
    with get_session() as session:
        emails = (
            session.query(RawEmail)
            .filter(RawEmail.account_id == account_id, RawEmail.id.in_(email_ids))
            .order_by(RawEmail.id)
            .all()
        )
        return [_email_to_dict(e) for e in emails]


def mark_email_parsed(email_id: int, rule_id: int | None) -> bool:
    """Mark an email parsed_ok and record the owning rule."""
    with get_session() as session:
        result = session.execute(
            update(RawEmail)
            .where(RawEmail.id == email_id)
            .values(parse_state="parsed_ok", parse_error=None, parsing_rule_id=rule_id)
        )
        session.commit()
        return result.rowcount > 0


def mark_email_error(email_id: int, error: str, rule_id: int | None = None) -> bool:
    """
    Mark an email parsed_error with the failure reason.

    An email that is already parsed_ok is left untouched.

    Returns:
        True if the email was updated, False if it was kept as parsed_ok
    """
    with get_session() as session:
        result = session.execute(
            update(RawEmail)
            .where(RawEmail.id == email_id, RawEmail.parse_state != "parsed_ok")
            .values(parse_state="parsed_error", parse_error=error, parsing_rule_id=rule_id)
        )
        session.commit()
        return result.rowcount > 0


def reset_emails_to_unparsed(account_id: int, email_ids: list = None) -> int:
    """
    Reset emails to unparsed (all of the account's emails when no IDs are given).

    Returns:
        Number of emails reset
    """
    with get_session() as session:
        stmt = update(RawEmail).where(RawEmail.account_id == account_id)
        if email_ids is not None:
            if not email_ids:
                return 0
            stmt = stmt.where(RawEmail.id.in_(email_ids))
        result = session.execute(
            stmt.values(parse_state="unparsed", parse_error=None, parsing_rule_id=None)
        )
        session.commit()
        return result.rowcount


def count_emails_by_state(account_id: int) -> dict:
    """Count an account's emails per parse state."""
    with get_session() as session:
        rows = (
            session.query(RawEmail.parse_state, func.count(RawEmail.id))
            .filter(RawEmail.account_id == account_id)
            .group_by(RawEmail.parse_state)
            .all()
        )
        counts = {"unparsed": 0, "parsed_ok": 0, "parsed_error": 0}
        counts.update({state: count for state, count in rows})
        counts["total"] = sum(counts[s] for s in ("unparsed", "parsed_ok", "parsed_error"))
        return counts
