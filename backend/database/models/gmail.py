"""
Gmail integration models for mailbox sync and message storage.

Maps to:
- mail_accounts table - Connected mailbox + OAuth token state (one per account)
- gmail_oauth_state table - CSRF state + PKCE verifier for the OAuth handshake
- raw_emails table - Ingested messages and their parse state
"""

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.sql import func, true

from database.base import Base

PARSE_STATES = ("unparsed", "parsed_ok", "parsed_error")


class MailAccount(Base):
    """Connected mailbox account (encrypted tokens, selected label, sync state)."""

    __tablename__ = "mail_accounts"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, nullable=False, default=1)
    email_address = Column(String(255), nullable=False)
    access_token = Column(Text, nullable=True)  # Encrypted
    refresh_token = Column(Text, nullable=True)  # Encrypted
    token_expires_at = Column(DateTime(timezone=True), nullable=True)
    scopes = Column(Text, nullable=True)
    label_id = Column(String(255), nullable=True)
    label_name = Column(String(255), nullable=True)
    last_synced_at = Column(DateTime(timezone=True), nullable=True)
    is_connected = Column(Boolean, nullable=False, default=True, server_default=true())
    last_error = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    __table_args__ = (
        UniqueConstraint("user_id", "email_address", name="uq_mail_account_user_email"),
    )

    def __repr__(self) -> str:
        return f"<MailAccount(id={self.id}, email={self.email_address}, connected={self.is_connected})>"


class GmailOAuthState(Base):
    """OAuth state storage for Gmail authorization flow."""

    __tablename__ = "gmail_oauth_state"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, nullable=False)
    state = Column(String(255), nullable=False, unique=True)
    code_verifier = Column(String(255), nullable=False)
    expires_at = Column(DateTime(timezone=True), nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    __table_args__ = (Index("idx_gmail_oauth_state_expires", "expires_at"),)

    def __repr__(self) -> str:
        return f"<GmailOAuthState(id={self.id}, user_id={self.user_id}, state={self.state})>"


class RawEmail(Base):
    """An ingested mailbox message.

    Created once per (account, gmail_message_id); afterwards only
    parse_state, parse_error and parsing_rule_id change.
    """

    __tablename__ = "raw_emails"

    id = Column(Integer, primary_key=True, autoincrement=True)
    account_id = Column(
        Integer, ForeignKey("mail_accounts.id", ondelete="CASCADE"), nullable=False
    )
    gmail_message_id = Column(String(255), nullable=False)
    sender = Column(Text, nullable=True)
    subject = Column(Text, nullable=True)
    body = Column(Text, nullable=True)
    received_at = Column(DateTime(timezone=True), nullable=True)
    parse_state = Column(
        String(20), nullable=False, default="unparsed", server_default="unparsed"
    )
    parse_error = Column(Text, nullable=True)
    parsing_rule_id = Column(
        Integer, ForeignKey("parsing_rules.id", ondelete="SET NULL"), nullable=True
    )
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    __table_args__ = (
        UniqueConstraint(
            "account_id", "gmail_message_id", name="uq_raw_email_account_message"
        ),
        CheckConstraint(
            "parse_state IN ('unparsed', 'parsed_ok', 'parsed_error')",
            name="ck_raw_email_parse_state",
        ),
        Index("idx_raw_emails_account_state", "account_id", "parse_state"),
        Index("idx_raw_emails_received", "received_at"),
    )

    def __repr__(self) -> str:
        return f"<RawEmail(id={self.id}, gmail_id={self.gmail_message_id}, state={self.parse_state})>"
