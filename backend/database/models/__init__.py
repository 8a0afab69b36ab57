# backend/database/models/__init__.py
"""SQLAlchemy models for all database tables."""

from .gmail import GmailOAuthState, MailAccount, RawEmail
from .purchases import Card, Employee, Purchase
from .rules import ParsingRule

__all__ = [
    "MailAccount",
    "GmailOAuthState",
    "RawEmail",
    "ParsingRule",
    "Employee",
    "Card",
    "Purchase",
]
