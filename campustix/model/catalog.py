from __future__ import annotations
import uuid
from typing import Optional, Dict, Any, List

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from .db import User, Event
from ..errors import BadRequest
from ..helpers import now_ts, is_valid_email


class CatalogStore:
    """Users and events, as far as the checkout pipeline needs them."""

    def __init__(self, *, db: AsyncSession) -> None:
        self.db = db

    async def get_user(self, user_id: str) -> Optional[User]:
        return await self.db.get(User, user_id, populate_existing=True)

    async def get_event(self, event_id: str) -> Optional[Event]:
        return await self.db.get(Event, event_id)

    async def create_user(self, *, email: str, first_name: str = "",
                          last_name: str = "",
                          user_id: Optional[str] = None) -> User:
        if not is_valid_email(email):
            raise BadRequest("A valid email address is required")
        user = User(
            id=user_id or uuid.uuid4().hex,
            email=email,
            first_name=first_name,
            last_name=last_name,
            available_balance=0.0,
            total_earnings=0.0,
            created_at=now_ts(),
        )
        self.db.add(user)
        await self.db.commit()
        return user

    async def create_event(self, *, owner_id: str, title: str,
                           price: Optional[float] = None,
                           ticket_types: Optional[List[Dict[str, Any]]] = None,
                           venue: Optional[str] = None,
                           date: Optional[float] = None,
                           capacity: Optional[int] = None,
                           publication_status: str = "published",
                           event_id: Optional[str] = None) -> Event:
        event = Event(
            id=event_id or uuid.uuid4().hex,
            user_id=owner_id,
            title=title,
            price=price,
            ticket_types=list(ticket_types or []),
            venue=venue,
            date=date,
            capacity=capacity,
            publication_status=publication_status,
            created_at=now_ts(),
        )
        self.db.add(event)
        await self.db.commit()
        return event

    async def set_payment_customer(self, user_id: str,
                                   customer_id: str) -> None:
        await self.db.execute(
            update(User)
            .where(User.id == user_id)
            .values(payment_customer_id=customer_id)
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()

    async def credit_balance(self, user_id: str, amount: float) -> bool:
        # in-place increment; concurrent settlements must not lose updates
        result = await self.db.execute(
            update(User)
            .where(User.id == user_id)
            .values(
                available_balance=User.available_balance + amount,
                total_earnings=User.total_earnings + amount,
            )
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()
        return result.rowcount == 1

    async def get_balances(self, user_id: str) -> Dict[str, float]:
        row = (await self.db.execute(
            select(User.available_balance, User.total_earnings)
            .where(User.id == user_id)
        )).first()
        if row is None:
            return {"available_balance": 0.0, "total_earnings": 0.0}
        return {
            "available_balance": float(row[0]),
            "total_earnings": float(row[1]),
        }
