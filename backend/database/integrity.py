"""
Integrity Checks - Database Operations

Read-only queries over the email <-> purchase relation. Each check returns a
total count plus a bounded sample.
"""

from sqlalchemy import exists, func

from .base import get_session
from .models.gmail import RawEmail
from .models.purchases import Purchase
from .models.rules import ParsingRule


def get_orphaned_emails(account_id: int, limit: int = 50) -> dict:
    """parsed_ok emails with zero purchases."""
    with get_session() as session:
        query = session.query(RawEmail).filter(
            RawEmail.account_id == account_id,
            RawEmail.parse_state == "parsed_ok",
            ~exists().where(Purchase.raw_email_id == RawEmail.id),
        )
        count = query.with_entities(func.count(RawEmail.id)).scalar()
        sample = query.order_by(RawEmail.id).limit(limit).all()
        return {
            "count": count,
            "sample": [
                {
                    "id": e.id,
                    "gmail_message_id": e.gmail_message_id,
                    "subject": e.subject,
                    "received_at": e.received_at,
                    "parsing_rule_id": e.parsing_rule_id,
                }
                for e in sample
            ],
        }


def get_duplicated_emails(account_id: int, limit: int = 50) -> dict:
    """Emails referenced by more than one purchase."""
    with get_session() as session:
        purchase_count = func.count(Purchase.id).label("purchase_count")
        query = (
            session.query(RawEmail.id, RawEmail.subject, purchase_count)
            .join(Purchase, Purchase.raw_email_id == RawEmail.id)
            .filter(RawEmail.account_id == account_id)
            .group_by(RawEmail.id, RawEmail.subject)
            .having(func.count(Purchase.id) > 1)
        )
        rows = query.order_by(RawEmail.id).all()
        return {
            "count": len(rows),
            "sample": [
                {"id": row.id, "subject": row.subject, "purchase_count": row.purchase_count}
                for row in rows[:limit]
            ],
        }


def get_error_emails(account_id: int, limit: int = 50) -> dict:
    """parsed_error emails with their reasons."""
    with get_session() as session:
        query = session.query(RawEmail).filter(
            RawEmail.account_id == account_id,
            RawEmail.parse_state == "parsed_error",
        )
        count = query.with_entities(func.count(RawEmail.id)).scalar()
        sample = query.order_by(RawEmail.id.desc()).limit(limit).all()
        return {
            "count": count,
            "sample": [
                {
                    "id": e.id,
                    "subject": e.subject,
                    "sender": e.sender,
                    "parse_error": e.parse_error,
                }
                for e in sample
            ],
        }


def get_purchases_without_email(account_id: int, limit: int = 50) -> dict:
    """Email-sourced purchases whose email link is missing."""
    with get_session() as session:
        query = session.query(Purchase).filter(
            Purchase.account_id == account_id,
            Purchase.source == "email",
            Purchase.raw_email_id.is_(None),
        )
        count = query.with_entities(func.count(Purchase.id)).scalar()
        sample = query.order_by(Purchase.id).limit(limit).all()
        return {
            "count": count,
            "sample": [
                {
                    "id": p.id,
                    "amount": str(p.amount),
                    "merchant": p.merchant,
                    "purchase_date": p.purchase_date,
                }
                for p in sample
            ],
        }


def get_inactive_rules_referenced(account_id: int, limit: int = 50) -> dict:
    """Inactive rules that historical emails still point at."""
    with get_session() as session:
        email_count = func.count(RawEmail.id).label("email_count")
        rows = (
            session.query(ParsingRule.id, ParsingRule.name, email_count)
            .join(RawEmail, RawEmail.parsing_rule_id == ParsingRule.id)
            .filter(
                RawEmail.account_id == account_id,
                ParsingRule.is_active.is_(False),
            )
            .group_by(ParsingRule.id, ParsingRule.name)
            .order_by(ParsingRule.id)
            .all()
        )
        return {
            "count": len(rows),
            "sample": [
                {"rule_id": r.id, "rule_name": r.name, "email_count": r.email_count}
                for r in rows[:limit]
            ],
        }
