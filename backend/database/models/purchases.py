"""
Purchase, card and employee models.

Maps to:
- employees table - Card holders (purchase owner/assignee)
- cards table - Company cards identified by last four digits
- purchases table - Transactions derived from emails or entered manually
"""

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
)
from sqlalchemy.sql import false, func, true

from database.base import Base


class Employee(Base):
    """Card holder that purchases are assigned to."""

    __tablename__ = "employees"

    id = Column(Integer, primary_key=True, autoincrement=True)
    account_id = Column(
        Integer, ForeignKey("mail_accounts.id", ondelete="CASCADE"), nullable=True
    )
    name = Column(String(255), nullable=False)
    email = Column(String(255), nullable=True)
    is_active = Column(Boolean, nullable=False, default=True, server_default=true())
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    def __repr__(self) -> str:
        return f"<Employee(id={self.id}, name={self.name})>"


class Card(Base):
    """Payment card; purchases are linked by the extracted last four digits."""

    __tablename__ = "cards"

    id = Column(Integer, primary_key=True, autoincrement=True)
    account_id = Column(
        Integer, ForeignKey("mail_accounts.id", ondelete="CASCADE"), nullable=True
    )
    last_four = Column(String(4), nullable=False)
    bank_name = Column(String(255), nullable=True)
    nickname = Column(String(255), nullable=True)
    employee_id = Column(
        Integer, ForeignKey("employees.id", ondelete="SET NULL"), nullable=True
    )
    is_active = Column(Boolean, nullable=False, default=True, server_default=true())
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    __table_args__ = (Index("idx_cards_last_four", "last_four"),)

    def __repr__(self) -> str:
        return f"<Card(id={self.id}, last_four={self.last_four})>"


class Purchase(Base):
    """A financial transaction.

    Email-sourced purchases reference the raw email and rule that produced
    them. employee_id is copied from the card at creation time only.
    """

    __tablename__ = "purchases"

    id = Column(Integer, primary_key=True, autoincrement=True)
    account_id = Column(
        Integer, ForeignKey("mail_accounts.id", ondelete="CASCADE"), nullable=True
    )
    amount = Column(Numeric(12, 2), nullable=False)
    currency = Column(String(3), nullable=True, default="USD", server_default="USD")
    merchant = Column(String(255), nullable=True)
    description = Column(Text, nullable=True)
    purchase_date = Column(DateTime(timezone=True), nullable=False)
    date_precision = Column(
        String(10), nullable=False, default="datetime", server_default="datetime"
    )
    card_id = Column(Integer, ForeignKey("cards.id", ondelete="SET NULL"), nullable=True)
    employee_id = Column(
        Integer, ForeignKey("employees.id", ondelete="SET NULL"), nullable=True
    )
    raw_email_id = Column(
        Integer, ForeignKey("raw_emails.id", ondelete="SET NULL"), nullable=True
    )
    parsing_rule_id = Column(
        Integer, ForeignKey("parsing_rules.id", ondelete="SET NULL"), nullable=True
    )
    source = Column(String(20), nullable=False, default="email", server_default="email")
    is_reviewed = Column(Boolean, nullable=False, default=False, server_default=false())
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    __table_args__ = (
        CheckConstraint("amount > 0", name="ck_purchase_amount_positive"),
        CheckConstraint("source IN ('email', 'manual')", name="ck_purchase_source"),
        CheckConstraint(
            "date_precision IN ('date', 'datetime')", name="ck_purchase_date_precision"
        ),
        Index("idx_purchases_raw_email", "raw_email_id"),
        Index("idx_purchases_account_date", "account_id", "purchase_date"),
    )

    def __repr__(self) -> str:
        return f"<Purchase(id={self.id}, amount={self.amount}, merchant={self.merchant})>"
