"""
Database helpers for concurrent ingest workers.

Several workers may process different messages for the same booking. They
coordinate through the (platform, platform_booking_id) unique key and row
locks; SQLite has no row locks, so there the helpers fall back to plain reads.
"""

import logging
from typing import List, Optional, TypeVar, Type

from sqlalchemy import func, update
from sqlalchemy.orm import Session

logger = logging.getLogger(__name__)

T = TypeVar('T')


def is_postgres(db: Session) -> bool:
    """True when the session is bound to PostgreSQL"""
    bind = getattr(db, "bind", None)
    return bind is not None and bind.dialect.name == 'postgresql'


def acquire_row_lock(db: Session, model: Type[T], filter_condition) -> Optional[T]:
    """
    Load one row FOR UPDATE so concurrent reconciles of a booking serialize.

    Example:
        booking = acquire_row_lock(db, Booking, Booking.id == booking_id)
    """
    query = db.query(model).filter(filter_condition)
    if is_postgres(db):
        query = query.with_for_update()
    return query.first()


def get_pending_with_skip_locked(
    db: Session,
    model: Type[T],
    filter_condition,
    order_by=None,
    limit: int = 50
) -> List[T]:
    """
    Claim a batch of rows for retry; rows another worker holds are skipped.
    """
    query = db.query(model).filter(filter_condition)
    if order_by is not None:
        query = query.order_by(order_by)
    if is_postgres(db):
        query = query.with_for_update(skip_locked=True)
    return query.limit(limit).all()


class AtomicCounter:
    """
    Counter bumps done in SQL (col = coalesce(col, 0) + n) so two workers
    hitting the same alias never lose an update.

    Example:
        AtomicCounter.increment(db, ProductAlias, ProductAlias.id == alias_id, 'hit_count')
    """

    @staticmethod
    def increment(
        db: Session,
        model: Type[T],
        filter_condition,
        column_name: str,
        increment_by: int = 1,
        **extra_values
    ) -> None:
        # extra_values ride along in the same UPDATE (e.g. last_seen_at)
        column = getattr(model, column_name)
        values = {column_name: func.coalesce(column, 0) + increment_by, **extra_values}
        db.execute(
            update(model)
            .where(filter_condition)
            .values(values)
            .execution_options(synchronize_session="fetch")
        )
