"""Read-only queries over completed payments.

These build the transaction snapshots the detectors and graph analyzer run
on. Only indexed point and range predicates are used.
"""

from datetime import datetime

from sqlalchemy import and_, func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from fraudguard.db.models import Payment

from .models import TransactionEdge


def _to_edge(row: Payment) -> TransactionEdge:
    return TransactionEdge(
        payer_id=row.payer_id,
        payee_id=row.payee_id,
        amount_minor=row.amount_minor,
        processed_at=row.processed_at,
    )


async def recent_payments_by_payer(
    session: AsyncSession, user_id: str, since: datetime
) -> list[TransactionEdge]:
    """Payments made by ``user_id`` processed at or after ``since``, newest first."""
    stmt = (
        select(Payment)
        .where(
            Payment.payer_id == user_id,
            Payment.processed_at.is_not(None),
            Payment.processed_at >= since,
        )
        .order_by(Payment.processed_at.desc())
    )
    result = await session.execute(stmt)
    return [_to_edge(row) for row in result.scalars().all()]


async def payments_between(
    session: AsyncSession, user_a: str, user_b: str, since: datetime
) -> list[TransactionEdge]:
    """Payments in either direction between two users since ``since``."""
    stmt = select(Payment).where(
        Payment.processed_at.is_not(None),
        Payment.processed_at >= since,
        or_(
            and_(Payment.payer_id == user_a, Payment.payee_id == user_b),
            and_(Payment.payer_id == user_b, Payment.payee_id == user_a),
        ),
    )
    result = await session.execute(stmt)
    return [_to_edge(row) for row in result.scalars().all()]


async def count_payments_since(session: AsyncSession, user_id: str, since: datetime) -> int:
    stmt = select(func.count()).where(
        Payment.payer_id == user_id,
        Payment.processed_at.is_not(None),
        Payment.processed_at >= since,
    )
    result = await session.execute(stmt)
    return result.scalar_one()


async def counterparties(session: AsyncSession, user_ids: set[str]) -> set[str]:
    """Distinct users who paid, or were paid by, anyone in ``user_ids``."""
    if not user_ids:
        return set()
    ids = list(user_ids)
    outgoing = select(Payment.payee_id).where(
        Payment.payer_id.in_(ids),
        Payment.payee_id.is_not(None),
        Payment.processed_at.is_not(None),
    )
    incoming = select(Payment.payer_id).where(
        Payment.payee_id.in_(ids), Payment.processed_at.is_not(None)
    )
    result = await session.execute(outgoing.union(incoming))
    return {row[0] for row in result.fetchall()}


async def edges_among(
    session: AsyncSession, user_ids: set[str], since: datetime
) -> list[TransactionEdge]:
    """Payments whose payer and payee are both in ``user_ids``."""
    if not user_ids:
        return []
    ids = list(user_ids)
    stmt = select(Payment).where(
        Payment.processed_at.is_not(None),
        Payment.processed_at >= since,
        Payment.payer_id.in_(ids),
        Payment.payee_id.in_(ids),
    )
    result = await session.execute(stmt)
    return [_to_edge(row) for row in result.scalars().all()]
