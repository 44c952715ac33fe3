from datetime import date
from decimal import Decimal
from typing import Protocol

import structlog
from sqlalchemy import select
from sqlalchemy.orm import Session

from .database import run_in_transaction
from .models import CustomerScore, DailyKpi, Order, money

logger = structlog.get_logger(__name__)


class KpiStore(Protocol):
    def incr_for_finalized(self, order: Order) -> None: ...

    def apply_refund(self, order: Order, amount) -> None: ...


def average(revenue: Decimal, count: int) -> Decimal:
    return money(revenue / count) if count else money(0)


def upsert_insert(db: Session):
    """The dialect's INSERT construct, which carries ``on_conflict_do_update``."""
    dialect = db.get_bind().dialect.name
    if dialect == "postgresql":
        from sqlalchemy.dialects.postgresql import insert
    elif dialect == "sqlite":
        from sqlalchemy.dialects.sqlite import insert
    else:
        raise NotImplementedError(f"KPI upserts are not implemented for {dialect}")
    return insert


class SqlKpiStore:
    """
    Per-day revenue/order counters and a per-customer revenue leaderboard,
    kept in ``daily_kpis`` and ``customer_scores``.

    Counters are bumped with INSERT ... ON CONFLICT DO UPDATE, so the first
    orders of a day finalized at the same time neither collide on the new
    row nor overwrite each other's increments.
    """

    def __init__(self, session_factory, attempts: int = 3, retry_delay: float = 5.0):
        self.session_factory = session_factory
        self.attempts = attempts
        self.retry_delay = retry_delay

    def _transaction(self, fn):
        return run_in_transaction(self.session_factory, fn, attempts=self.attempts, retry_delay=self.retry_delay)

    @staticmethod
    def _bump_day(db: Session, day: date, revenue: Decimal, orders: int) -> None:
        insert = upsert_insert(db)
        stmt = insert(DailyKpi).values(day=day, revenue=revenue, order_count=orders, avg_order_value=revenue)
        stmt = stmt.on_conflict_do_update(
            index_elements=[DailyKpi.day],
            set_={
                "revenue": DailyKpi.revenue + stmt.excluded.revenue,
                "order_count": DailyKpi.order_count + stmt.excluded.order_count,
            },
        )
        db.execute(stmt)

        # The upsert holds the row's write lock until commit; derive the average from the stored totals.
        row = db.get(DailyKpi, day, populate_existing=True)
        row.avg_order_value = average(Decimal(row.revenue), row.order_count)

    @staticmethod
    def _bump_score(db: Session, customer_id: int, amount: Decimal) -> None:
        insert = upsert_insert(db)
        stmt = insert(CustomerScore).values(customer_id=customer_id, score=amount)
        stmt = stmt.on_conflict_do_update(
            index_elements=[CustomerScore.customer_id],
            set_={"score": CustomerScore.score + stmt.excluded.score},
        )
        db.execute(stmt)

    def incr_for_finalized(self, order: Order) -> None:
        total = money(order.total)
        day, customer_id = order.order_date, order.customer_id

        def apply(db: Session) -> None:
            self._bump_day(db, day, total, 1)
            self._bump_score(db, customer_id, total)

        self._transaction(apply)
        logger.info("kpi_order_recorded", day=day.isoformat(), customer_id=customer_id, total=str(total))

    def apply_refund(self, order: Order, amount) -> None:
        amount = money(amount)
        day, customer_id = order.order_date, order.customer_id

        def apply(db: Session) -> None:
            self._bump_day(db, day, -amount, 0)
            self._bump_score(db, customer_id, -amount)

        self._transaction(apply)
        logger.info("kpi_refund_recorded", day=day.isoformat(), customer_id=customer_id, amount=str(amount))

    def daily(self, day: date) -> dict:
        db = self.session_factory()
        try:
            row = db.get(DailyKpi, day)
            if row is None:
                return {"day": day.isoformat(), "revenue": 0.0, "order_count": 0, "avg_order_value": 0.0}
            return {
                "day": row.day.isoformat(),
                "revenue": float(row.revenue),
                "order_count": row.order_count,
                "avg_order_value": float(row.avg_order_value),
            }
        finally:
            db.close()

    def leaderboard(self, limit: int = 10) -> list[dict]:
        db = self.session_factory()
        try:
            stmt = select(CustomerScore).order_by(CustomerScore.score.desc(), CustomerScore.customer_id).limit(limit)
            return [
                {"rank": rank, "customer_id": row.customer_id, "score": float(row.score)}
                for rank, row in enumerate(db.execute(stmt).scalars(), start=1)
            ]
        finally:
            db.close()
