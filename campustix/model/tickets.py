from __future__ import annotations
import math
import uuid
from typing import Optional, Dict, Any, List, Sequence

from sqlalchemy import select, update, func, case, or_
from sqlalchemy.ext.asyncio import AsyncSession

from .db import Ticket
from ..helpers import now_ts


class TicketStore:
    def __init__(self, *, db: AsyncSession) -> None:
        self.db = db

    async def add(self, *, event_id: str, user_id: str, order_id: str,
                  ticket_type: Optional[Dict[str, Any]], price: float,
                  seat_number: str, qr_code: str,
                  purchase_date: float) -> Ticket:
        ticket = Ticket(
            id=uuid.uuid4().hex,
            event_id=event_id,
            user_id=user_id,
            order_id=order_id,
            ticket_type=ticket_type,
            price=price,
            seat_number=seat_number,
            qr_code=qr_code,
            is_used=False,
            purchase_date=purchase_date,
            created_at=now_ts(),
        )
        self.db.add(ticket)
        # caller commits once all seats of an order are staged
        await self.db.flush()
        return ticket

    async def commit(self) -> None:
        await self.db.commit()

    async def rollback(self) -> None:
        await self.db.rollback()

    async def get(self, ticket_id: str,
                  user_id: Optional[str] = None) -> Optional[Ticket]:
        stmt = select(Ticket).where(Ticket.id == ticket_id)
        if user_id is not None:
            stmt = stmt.where(Ticket.user_id == user_id)
        row = await self.db.execute(
            stmt.execution_options(populate_existing=True)
        )
        return row.scalars().first()

    async def find_by_code(self, code: str) -> Optional[Ticket]:
        """
        Exact QR payload, then ticket id, then a substring of the QR payload
        (scanners may hand over a wrapped payload). A substring that matches
        more than one ticket resolves to nothing.
        """
        row = await self.db.execute(
            select(Ticket)
            .where(or_(Ticket.qr_code == code, Ticket.id == code))
            .execution_options(populate_existing=True)
        )
        ticket = row.scalars().first()
        if ticket is not None:
            return ticket
        rows = await self.db.execute(
            select(Ticket)
            .where(Ticket.qr_code.contains(code, autoescape=True))
            .limit(2)
            .execution_options(populate_existing=True)
        )
        matches = rows.scalars().all()
        return matches[0] if len(matches) == 1 else None

    async def for_order(self, order_id: str) -> List[Ticket]:
        rows = await self.db.execute(
            select(Ticket)
            .where(Ticket.order_id == order_id)
            .order_by(Ticket.created_at.asc(), Ticket.seat_number.asc())
        )
        return list(rows.scalars().all())

    async def mark_used(self, ticket_id: str) -> bool:
        """unused -> used; False if someone else got there first."""
        result = await self.db.execute(
            update(Ticket)
            .where(Ticket.id == ticket_id)
            .where(Ticket.is_used.is_(False))
            .values(is_used=True)
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()
        return result.rowcount == 1

    async def count_cancellable(self, ticket_ids: Sequence[str],
                                user_id: str) -> int:
        return (await self.db.execute(
            select(func.count(Ticket.id))
            .where(Ticket.id.in_(tuple(ticket_ids)))
            .where(Ticket.user_id == user_id)
            .where(Ticket.is_used.is_(False))
        )).scalar_one()

    async def cancel(self, ticket_ids: Sequence[str], user_id: str) -> int:
        """
        One bulk write. Rolls back and returns 0 unless every id was owned by
        `user_id` and still unused at write time.
        """
        ids = tuple(ticket_ids)
        result = await self.db.execute(
            update(Ticket)
            .where(Ticket.id.in_(ids))
            .where(Ticket.user_id == user_id)
            .where(Ticket.is_used.is_(False))
            .values(is_used=True, cancelled_at=now_ts())
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != len(ids):
            await self.db.rollback()
            return 0
        await self.db.commit()
        return result.rowcount

    async def paginate(self, filters: Dict[str, Any], *, page: int = 1,
                       limit: int = 10) -> Dict[str, Any]:
        page = max(1, int(page))
        limit = max(1, min(int(limit), 100))

        stmt = select(Ticket)
        if filters.get("user_id"):
            stmt = stmt.where(Ticket.user_id == filters["user_id"])
        if filters.get("event_id"):
            stmt = stmt.where(Ticket.event_id == filters["event_id"])
        status = filters.get("status")
        if status == "used":
            stmt = stmt.where(Ticket.is_used.is_(True))
        elif status == "unused":
            stmt = stmt.where(Ticket.is_used.is_(False))
        if filters.get("search"):
            term = filters["search"]
            stmt = stmt.where(or_(
                Ticket.seat_number.icontains(term, autoescape=True),
                Ticket.id == term,
            ))

        total = (await self.db.execute(
            select(func.count()).select_from(stmt.subquery())
        )).scalar_one()
        rows = await self.db.execute(
            stmt.order_by(Ticket.created_at.desc())
            .offset((page - 1) * limit)
            .limit(limit)
        )
        return {
            "data": list(rows.scalars().all()),
            "total": int(total),
            "page": page,
            "limit": limit,
            "pages": math.ceil(total / limit) if total else 0,
        }

    async def stats_for_event(self, event_id: str) -> Dict[str, Any]:
        row = (await self.db.execute(
            select(
                func.count(Ticket.id),
                func.sum(case((Ticket.is_used.is_(True), 1), else_=0)),
                func.sum(Ticket.price),
            ).where(Ticket.event_id == event_id)
        )).first()
        total = int(row[0] or 0)
        used = int(row[1] or 0)

        by_type: Dict[str, Dict[str, Any]] = {}
        rows = await self.db.execute(
            select(Ticket.ticket_type, Ticket.price, Ticket.is_used)
            .where(Ticket.event_id == event_id)
        )
        for ticket_type, price, is_used in rows.all():
            name = (ticket_type or {}).get("name") or "General"
            bucket = by_type.setdefault(
                name, {"type": name, "count": 0, "used": 0, "revenue": 0.0}
            )
            bucket["count"] += 1
            bucket["used"] += 1 if is_used else 0
            bucket["revenue"] += float(price or 0)

        return {
            "totalTickets": total,
            "usedTickets": used,
            "unusedTickets": total - used,
            "totalRevenue": float(row[2] or 0),
            "ticketTypes": list(by_type.values()),
        }
