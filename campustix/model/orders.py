from __future__ import annotations
import uuid
from typing import Optional, Dict, Any, List, Iterable

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from .db import Order, ORDER_PENDING
from ..helpers import now_ts


class OrderStore:
    def __init__(self, *, db: AsyncSession) -> None:
        self.db = db

    async def get(self, order_id: str) -> Optional[Order]:
        if not order_id:
            return None
        return await self.db.get(Order, order_id, populate_existing=True)

    async def create(self, *, user_id: str, event_id: str,
                     ticket_type: Optional[Dict[str, Any]],
                     number_of_ticket: int,
                     total_price: float) -> Order:
        ts = now_ts()
        order = Order(
            id=uuid.uuid4().hex,
            user_id=user_id,
            event_id=event_id,
            ticket_type=ticket_type,
            number_of_ticket=number_of_ticket,
            total_price=total_price,
            status=ORDER_PENDING,
            purchase_date=ts,
            created_at=ts,
        )
        self.db.add(order)
        await self.db.commit()
        return order

    async def update_status(self, order_id: str, status: str,
                            **fields: Any) -> bool:
        return await self.transition(order_id, status, **fields)

    async def transition(self, order_id: str, status: str, *,
                         only_from: Optional[Iterable[str]] = None,
                         not_from: Optional[Iterable[str]] = None,
                         **fields: Any) -> bool:
        """
        Single conditional UPDATE. Returns True if this call changed the row,
        False if the row is missing or its status did not match the guard.
        Two racing callers can never both win the same guarded transition.
        """
        stmt = update(Order).where(Order.id == order_id)
        if only_from is not None:
            stmt = stmt.where(Order.status.in_(tuple(only_from)))
        if not_from is not None:
            stmt = stmt.where(Order.status.not_in(tuple(not_from)))
        result = await self.db.execute(
            stmt.values(status=status, **fields)
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()
        return result.rowcount == 1

    async def find_stale_pending(self, *, older_than: float,
                                 newer_than: float,
                                 limit: int = 500) -> List[Order]:
        """Pending orders created inside (newer_than, older_than)."""
        rows = await self.db.execute(
            select(Order)
            .where(Order.status == ORDER_PENDING)
            .where(Order.created_at <= older_than)
            .where(Order.created_at >= newer_than)
            .order_by(Order.created_at.asc())
            .limit(limit)
        )
        return list(rows.scalars().all())

    async def rollback(self) -> None:
        await self.db.rollback()
