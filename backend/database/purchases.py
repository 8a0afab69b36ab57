"""
Purchases - Database Operations

Creation and lookup of purchases (transactions) derived from emails.
"""

from datetime import UTC, date, datetime
from decimal import Decimal

from sqlalchemy import func

from .base import get_session
from .models.purchases import Purchase


def _as_timestamp(value) -> datetime:
    """Store calendar dates as midnight UTC."""
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=UTC)
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day, tzinfo=UTC)
    raise ValueError(f"Unsupported purchase date: {value!r}")


def _purchase_to_dict(purchase: Purchase) -> dict:
    purchase_date = purchase.purchase_date
    if purchase_date is not None and purchase.date_precision == "date":
        purchase_date = purchase_date.date()
    return {
        "id": purchase.id,
        "account_id": purchase.account_id,
        "amount": purchase.amount,
        "currency": purchase.currency,
        "merchant": purchase.merchant,
        "description": purchase.description,
        "purchase_date": purchase_date,
        "date_precision": purchase.date_precision,
        "card_id": purchase.card_id,
        "employee_id": purchase.employee_id,
        "raw_email_id": purchase.raw_email_id,
        "parsing_rule_id": purchase.parsing_rule_id,
        "source": purchase.source,
        "is_reviewed": purchase.is_reviewed,
        "created_at": purchase.created_at,
    }


def create_purchase(
    account_id: int,
    amount: Decimal,
    purchase_date,
    date_precision: str = "datetime",
    merchant: str = None,
    description: str = None,
    card_id: int = None,
    employee_id: int = None,
    raw_email_id: int = None,
    parsing_rule_id: int = None,
    source: str = "email",
) -> int:
    """
    Create a purchase.

    Args:
        account_id: Mail account ID
        amount: Positive amount
        purchase_date: ``date`` (date precision) or ``datetime``
        date_precision: "date" or "datetime"
        merchant: Merchant name
        description: Free text (email subject for parsed purchases)
        card_id: Resolved card
        employee_id: Card holder at creation time
        raw_email_id: Originating email (None for manual purchases)
        parsing_rule_id: Rule that produced the purchase
        source: "email" or "manual"

    Returns:
        Purchase ID
    """
    if amount is None or Decimal(amount) <= 0:
        raise ValueError("Purchase amount must be positive")

    with get_session() as session:
        purchase = Purchase(
            account_id=account_id,
            amount=Decimal(amount),
            merchant=merchant[:255] if merchant else merchant,
            description=description,
            purchase_date=_as_timestamp(purchase_date),
            date_precision=date_precision,
            card_id=card_id,
            employee_id=employee_id,
            raw_email_id=raw_email_id,
            parsing_rule_id=parsing_rule_id,
            source=source,
        )
        session.add(purchase)
        session.commit()
        return purchase.id


def count_purchases_for_email(raw_email_id: int) -> int:
    """Number of purchases referencing an email."""
    with get_session() as session:
        return (
            session.query(func.count(Purchase.id))
            .filter(Purchase.raw_email_id == raw_email_id)
            .scalar()
        )


def has_purchase_for_email(raw_email_id: int) -> bool:
    """Existing-transaction check used by full reparse."""
    return count_purchases_for_email(raw_email_id) > 0


def get_purchases_for_email(raw_email_id: int) -> list:
    """Purchases referencing an email, oldest first."""
    with get_session() as session:
        purchases = (
            session.query(Purchase)
            .filter(Purchase.raw_email_id == raw_email_id)
            .order_by(Purchase.id)
            .all()
        )
        return [_purchase_to_dict(p) for p in purchases]


def get_purchase(purchase_id: int) -> dict:
    """Get a purchase by ID."""
    with get_session() as session:
        purchase = session.get(Purchase, purchase_id)
        if not purchase:
            return None
        return _purchase_to_dict(purchase)


def count_purchases(account_id: int) -> int:
    """Total purchases for an account."""
    with get_session() as session:
        return (
            session.query(func.count(Purchase.id))
            .filter(Purchase.account_id == account_id)
            .scalar()
        )
