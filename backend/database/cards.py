"""
Cards and Employees - Database Operations

Card lookup resolves an extracted card suffix to a card and its holder.
"""

from sqlalchemy import func, or_

from .base import get_session
from .models.purchases import Card, Employee


def find_card_by_last_four(last_four: str, account_id: int = None) -> dict:
    """
    Resolve a card suffix to an active card.

    Args:
        last_four: Four-digit card suffix (already normalized)
        account_id: Restrict to the account's cards plus unscoped cards

    Returns:
        Dict with card_id and employee_id, or None if no active card matches
    """
    if not last_four:
        return None

    with get_session() as session:
        query = session.query(Card).filter(
            Card.last_four == last_four, Card.is_active.is_(True)
        )
        if account_id is not None:
            query = query.filter(
                or_(Card.account_id == account_id, Card.account_id.is_(None))
            )
        card = query.order_by(Card.id).first()
        if not card:
            return None
        return {
            "card_id": card.id,
            "employee_id": card.employee_id,
            "last_four": card.last_four,
            "nickname": card.nickname,
        }


def create_employee(name: str, account_id: int = None, email: str = None) -> int:
    """Create an employee (card holder). Returns employee ID."""
    with get_session() as session:
        employee = Employee(name=name, account_id=account_id, email=email)
        session.add(employee)
        session.commit()
        return employee.id


def create_card(
    last_four: str,
    account_id: int = None,
    employee_id: int = None,
    bank_name: str = None,
    nickname: str = None,
    is_active: bool = True,
) -> int:
    """Create a card. Returns card ID."""
    with get_session() as session:
        card = Card(
            last_four=last_four,
            account_id=account_id,
            employee_id=employee_id,
            bank_name=bank_name,
            nickname=nickname,
            is_active=is_active,
        )
        session.add(card)
        session.commit()
        return card.id


def count_cards(account_id: int = None) -> dict:
    """Count active and total cards."""
    with get_session() as session:
        query = session.query(Card)
        if account_id is not None:
            query = query.filter(
                or_(Card.account_id == account_id, Card.account_id.is_(None))
            )
        total = query.with_entities(func.count(Card.id)).scalar()
        active = (
            query.filter(Card.is_active.is_(True))
            .with_entities(func.count(Card.id))
            .scalar()
        )
        return {"total": total, "active": active}
