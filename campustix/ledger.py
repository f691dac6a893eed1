from __future__ import annotations
import logging
from typing import Any, Dict, Optional

from .errors import (
    BadRequest, NotFound, Unauthorized, UnableToComplete, UnprocessableState
)
from .gateway import PaymentAdapter
from .helpers import now_ts, to_amount
from .infra.timings import timeit
from .model.catalog import CatalogStore
from .model.db import Event, Order, User, ORDER_FAILED, ORDER_PENDING
from .model.orders import OrderStore
from .model.transactions import TransactionStore
from .serializers import order_to_dict, transaction_to_dict

logger = logging.getLogger(__name__)


def resolve_ticket_type(event: Event, name: Optional[str]
                        ) -> Optional[Dict[str, Any]]:
    """Copy of the named tier, matched case-insensitively; None if no name."""
    if not name:
        return None
    wanted = name.strip().lower()
    for tier in event.ticket_types or []:
        if str(tier.get("name") or "").strip().lower() == wanted:
            return {
                "name": tier.get("name"),
                "description": tier.get("description"),
                "price": to_amount(tier.get("price")),
            }
    raise NotFound(f"Ticket type '{name}' not found for this event")


def unit_price(event: Event, ticket_type: Optional[Dict[str, Any]]) -> float:
    if ticket_type is not None and ticket_type.get("price") is not None:
        return float(ticket_type["price"])
    if event.price is not None:
        return float(event.price)
    raise UnprocessableState("Event has no price for this ticket")


class OrderLedger:
    def __init__(self, *, orders: OrderStore, transactions: TransactionStore,
                 catalog: CatalogStore, adapter: PaymentAdapter,
                 currency: str = "NGN", expiry_minutes: int = 60) -> None:
        self.orders = orders
        self.transactions = transactions
        self.catalog = catalog
        self.adapter = adapter
        self.currency = currency
        self.expiry_minutes = expiry_minutes

    async def create_order(self, buyer_id: str, event_id: str,
                           ticket_type: Optional[str],
                           quantity: int) -> Dict[str, Any]:
        """
        Price the order, persist it as pending, then mint a virtual account
        for it and record the pending transaction.

        Provider failures after the order row exists leave the order
        `failed` with the reason, and the error propagates.
        """
        if not isinstance(quantity, int) or quantity < 1:
            raise BadRequest("numberOfTicket must be a positive integer")
        buyer = await self.catalog.get_user(buyer_id)
        if buyer is None:
            raise NotFound("User not found")
        event = await self.catalog.get_event(event_id)
        if event is None:
            raise NotFound("Event not found")

        tier = resolve_ticket_type(event, ticket_type)
        total = unit_price(event, tier) * quantity

        order = await self.orders.create(
            user_id=buyer.id,
            event_id=event.id,
            ticket_type=tier,
            number_of_ticket=quantity,
            total_price=total,
        )
        logger.info("order %s created: %d x %s, total %.2f",
                    order.id, quantity, event.id, total)

        try:
            customer_id = await self.ensure_customer(buyer)
            async with timeit("gateway.virtual_account"):
                va = await self.adapter.create_virtual_account(
                    reference=order.id,
                    customer_id=customer_id,
                    amount=total,
                    currency=self.currency,
                    narration=_narration(buyer, quantity),
                    expiry_minutes=self.expiry_minutes,
                )
        except UnableToComplete as e:
            await self.orders.transition(
                order.id, ORDER_FAILED,
                only_from=(ORDER_PENDING,),
                failure_reason=e.message,
                failed_at=now_ts(),
            )
            logger.warning("order %s failed at provider: %s",
                           order.id, e.message)
            raise

        tx = await self.transactions.create(
            order_id=order.id,
            user_id=buyer.id,
            reference=order.id,
            amount=total,
            currency=self.currency,
            payment_method="bank_transfer",
            virtual_account={
                "account_number": va.get("account_number"),
                "bank_name": va.get("account_bank_name"),
                "expiry_date": va.get("account_expiration_datetime"),
            },
            metadata=dict(va),
        )
        return {
            "virtualAccount": dict(va),
            "transaction": transaction_to_dict(tx),
            "order": order_to_dict(order),
        }

    async def ensure_customer(self, user: User) -> str:
        if user.payment_customer_id:
            return user.payment_customer_id
        async with timeit("gateway.customer"):
            customer = await self.adapter.create_customer(
                user.first_name, user.last_name, user.email
            )
        customer_id = customer.get("id")
        if not customer_id:
            raise UnableToComplete("Payment provider returned no customer id")
        await self.catalog.set_payment_customer(user.id, customer_id)
        user.payment_customer_id = customer_id
        return customer_id

    async def get_order(self, order_id: str, buyer_id: str) -> Order:
        order = await self.orders.get(order_id)
        if order is None:
            raise NotFound("Order not found")
        if order.user_id != buyer_id:
            raise Unauthorized("Not your order")
        return order

    async def update_status(self, order_id: str, status: str,
                            **fields: Any) -> bool:
        return await self.orders.update_status(order_id, status, **fields)


def _narration(user: User, quantity: int) -> str:
    noun = "ticket" if quantity == 1 else "tickets"
    return (f"{user.first_name} {user.last_name} payment for "
            f"{quantity} {noun}").strip()
