from __future__ import annotations
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence

from .documents import (
    TicketDocument, TicketPdfRenderer, qr_png, format_money, format_date
)
from .errors import BadRequest, Conflict, NotFound, Unauthorized
from .helpers import full_name
from .infra.timings import timeit
from .mail import Mailer
from .model.catalog import CatalogStore
from .model.db import Event, Ticket, User
from .model.tickets import TicketStore
from .serializers import ticket_to_dict, event_summary, holder_summary

logger = logging.getLogger(__name__)


@dataclass
class IssueResult:
    tickets: List[Ticket] = field(default_factory=list)
    notified: bool = False
    notify_error: Optional[str] = None


def qr_payload(order_id: str, seq: int) -> str:
    return f"{order_id}-{seq}"


class TicketIssuer:
    def __init__(self, *, tickets: TicketStore, catalog: CatalogStore,
                 mailer: Mailer, renderer: TicketPdfRenderer,
                 currency: str = "NGN") -> None:
        self.tickets = tickets
        self.catalog = catalog
        self.mailer = mailer
        self.renderer = renderer
        self.currency = currency

    # ----------------------------
    # issuance
    # ----------------------------
    async def create_tickets_and_notify(
        self, user_id: str, event_id: str, order_id: str,
        ticket_type: Optional[Dict[str, Any]], price: float,
        purchase_date: float, count: int,
    ) -> IssueResult:
        """
        Write `count` tickets for one order, then mail them.

        Rows are staged seat by seat and committed together; any failure
        before the commit rolls all of them back and propagates. Mail runs
        after the commit and never raises: the result says whether it went
        out.
        """
        # both lookups happen before the first write
        event = await self.catalog.get_event(event_id)
        if event is None:
            raise NotFound("Event not found")
        user = await self.catalog.get_user(user_id)
        if user is None:
            raise NotFound("User not found")
        if count < 1:
            raise BadRequest("Ticket count must be at least 1")

        created: List[Ticket] = []
        async with timeit("tickets.issue"):
            try:
                for i in range(1, count + 1):
                    created.append(await self.tickets.add(
                        event_id=event_id,
                        user_id=user_id,
                        order_id=order_id,
                        ticket_type=ticket_type,
                        price=price,
                        seat_number=f"S-{i}",
                        qr_code=qr_payload(order_id, i),
                        purchase_date=purchase_date,
                    ))
                await self.tickets.commit()
            except Exception:
                await self.tickets.rollback()
                raise
        logger.info("issued %d tickets for order %s", len(created), order_id)

        result = IssueResult(tickets=created)
        try:
            async with timeit("tickets.notify"):
                await self._deliver(user, event, order_id, created)
            result.notified = True
        except Exception as e:
            logger.exception("ticket mail for order %s failed", order_id)
            result.notify_error = str(e)
        return result

    async def _organizer_name(self, event: Event) -> str:
        owner = await self.catalog.get_user(event.user_id)
        if owner is None:
            return "Event Platform"
        return full_name(owner.first_name, owner.last_name)

    def _document(self, ticket: Ticket, event: Event, user: User,
                  organizer: str) -> TicketDocument:
        return TicketDocument(
            ticket_id=ticket.id,
            event_name=event.title,
            event_date=event.date,
            venue=event.venue or "TBA",
            ticket_type=(ticket.ticket_type or {}).get("name") or "General",
            seat_number=ticket.seat_number or "N/A",
            price=ticket.price,
            currency=self.currency,
            holder_name=full_name(user.first_name, user.last_name),
            holder_email=user.email,
            order_number=ticket.order_id,
            qr_code=ticket.qr_code,
            organizer_name=organizer,
        )

    def _mail_data(self, ticket: Ticket, event: Event,
                   user: User) -> Dict[str, Any]:
        return {
            "ticketId": ticket.id,
            "eventName": event.title,
            "eventDate": format_date(event.date),
            "venue": event.venue or "TBA",
            "ticketType": (ticket.ticket_type or {}).get("name") or "General",
            "seatNumber": ticket.seat_number or "N/A",
            "price": format_money(ticket.price, self.currency),
            "userName": full_name(user.first_name, user.last_name),
            "qrCode": ticket.qr_code,
        }

    async def _deliver(self, user: User, event: Event, order_id: str,
                       tickets: Sequence[Ticket]) -> None:
        if not tickets:
            return
        organizer = await self._organizer_name(event)
        docs = [self._document(t, event, user, organizer) for t in tickets]
        first = tickets[0]
        await self.mailer.send_ticket_email(
            user.email, self._mail_data(first, event, user),
            qr_png(first.qr_code), pdf=self.renderer.render(docs[0]),
        )
        if len(tickets) > 1:
            bundle = self.renderer.render_bulk(docs)
            await self.mailer.send_bulk_tickets(
                user.email,
                {
                    "userName": full_name(user.first_name, user.last_name),
                    "eventName": event.title,
                    "ticketCount": len(tickets),
                },
                bundle,
                order_id,
            )

    async def resend_ticket_email(self, ticket_id: str,
                                  user_id: str) -> Dict[str, Any]:
        ticket = await self.tickets.get(ticket_id, user_id)
        if ticket is None:
            raise NotFound("Ticket not found")
        event = await self.catalog.get_event(ticket.event_id)
        user = await self.catalog.get_user(ticket.user_id)
        if event is None or user is None:
            raise NotFound("Ticket event or holder not found")
        await self.mailer.send_ticket_email(
            user.email, self._mail_data(ticket, event, user),
            qr_png(ticket.qr_code),
        )
        return {"message": "Ticket email resent successfully",
                "ticket": ticket.id}

    # ----------------------------
    # check-in
    # ----------------------------
    async def verify_ticket(self, code: str) -> Dict[str, Any]:
        code = (code or "").strip()
        if not code:
            raise BadRequest("Ticket code is required")
        ticket = await self.tickets.find_by_code(code)
        if ticket is None:
            raise NotFound("Invalid Ticket: Ticket not found")
        if ticket.is_used:
            raise Conflict("Ticket already used")
        if not await self.tickets.mark_used(ticket.id):
            # lost a race against another scanner
            raise Conflict("Ticket already used")
        ticket = await self.tickets.get(ticket.id)
        event = await self.catalog.get_event(ticket.event_id)
        user = await self.catalog.get_user(ticket.user_id)
        logger.info("ticket %s checked in", ticket.id)
        return {
            "message": "Ticket verified successfully",
            "ticket": ticket_to_dict(ticket),
            "event": event_summary(event),
            "holder": holder_summary(user),
        }

    async def cancel_tickets(self, ticket_ids: Sequence[str],
                             user_id: str) -> Dict[str, Any]:
        ids = list(dict.fromkeys(i for i in ticket_ids if i))
        if not ids:
            raise BadRequest("Ticket IDs array is required")
        if await self.tickets.count_cancellable(ids, user_id) != len(ids):
            raise BadRequest("Some tickets not found or already used")
        cancelled = await self.tickets.cancel(ids, user_id)
        if cancelled != len(ids):
            raise BadRequest("Some tickets not found or already used")
        return {"message": "Tickets cancelled successfully",
                "cancelledTickets": cancelled}

    # ----------------------------
    # reads
    # ----------------------------
    async def get_ticket(self, ticket_id: str,
                         user_id: Optional[str] = None) -> Ticket:
        ticket = await self.tickets.get(ticket_id, user_id)
        if ticket is None:
            raise NotFound("Ticket not found")
        return ticket

    async def render_ticket_pdf(self, ticket_id: str, user_id: str) -> bytes:
        ticket = await self.get_ticket(ticket_id, user_id)
        event = await self.catalog.get_event(ticket.event_id)
        user = await self.catalog.get_user(ticket.user_id)
        if event is None or user is None:
            raise NotFound("Ticket event or holder not found")
        organizer = await self._organizer_name(event)
        return self.renderer.render(
            self._document(ticket, event, user, organizer)
        )

    async def list_tickets_by_user(self, user_id: str, *, page: int = 1,
                            limit: int = 10, status: Optional[str] = None,
                            event_id: Optional[str] = None,
                            search: Optional[str] = None) -> Dict[str, Any]:
        res = await self.tickets.paginate(
            {"user_id": user_id, "event_id": event_id, "status": status,
             "search": search},
            page=page, limit=limit,
        )
        res["data"] = [ticket_to_dict(t) for t in res["data"]]
        return res

    async def list_tickets_by_event(self, event_id: str, owner_id: str, *,
                             page: int = 1, limit: int = 10,
                             status: Optional[str] = None,
                             user_id: Optional[str] = None,
                             search: Optional[str] = None) -> Dict[str, Any]:
        await self._require_owner(event_id, owner_id)
        res = await self.tickets.paginate(
            {"event_id": event_id, "user_id": user_id, "status": status,
             "search": search},
            page=page, limit=limit,
        )
        res["data"] = [ticket_to_dict(t) for t in res["data"]]
        return res

    async def ticket_stats(self, event_id: str,
                           owner_id: str) -> Dict[str, Any]:
        await self._require_owner(event_id, owner_id)
        return await self.tickets.stats_for_event(event_id)

    async def _require_owner(self, event_id: str, owner_id: str) -> Event:
        event = await self.catalog.get_event(event_id)
        if event is None:
            raise NotFound("Event not found")
        if event.user_id != owner_id:
            raise Unauthorized("Only the event organizer can do this")
        return event
