"""
Parsing rule model.

Maps to:
- parsing_rules table - User-authored match + extraction patterns
"""

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
)
from sqlalchemy.sql import func, true

from database.base import Base


class ParsingRule(Base):
    """Regex rule that matches notification emails and extracts purchase fields.

    Higher priority is evaluated first; equal priorities fall back to the
    newest rule (highest id).
    """

    __tablename__ = "parsing_rules"

    id = Column(Integer, primary_key=True, autoincrement=True)
    account_id = Column(
        Integer, ForeignKey("mail_accounts.id", ondelete="CASCADE"), nullable=True
    )
    name = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    is_active = Column(Boolean, nullable=False, default=True, server_default=true())
    priority = Column(Integer, nullable=False, default=0, server_default="0")

    # Matching patterns (AND-combined, case-insensitive)
    sender_pattern = Column(Text, nullable=True)
    subject_pattern = Column(Text, nullable=True)
    body_pattern = Column(Text, nullable=True)

    # Extraction patterns (first capture group wins)
    amount_pattern = Column(Text, nullable=False)
    merchant_pattern = Column(Text, nullable=True)
    date_pattern = Column(Text, nullable=True)
    card_last_four_pattern = Column(Text, nullable=True)
    date_format = Column(
        String(100), nullable=True, default="MMM dd, yyyy", server_default="MMM dd, yyyy"
    )

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    __table_args__ = (Index("idx_parsing_rules_priority", "priority", "id"),)

    def __repr__(self) -> str:
        return f"<ParsingRule(id={self.id}, name={self.name}, priority={self.priority})>"
