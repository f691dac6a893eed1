from typing import Any, Dict, Optional

from .helpers import to_iso
from .model.db import Order, Ticket, Transaction, Event, User


def order_to_dict(o: Order) -> Dict[str, Any]:
    return {
        "id": o.id,
        "user": o.user_id,
        "event": o.event_id,
        "ticketType": o.ticket_type,
        "numberOfTicket": o.number_of_ticket,
        "totalPrice": o.total_price,
        "status": o.status,
        "purchaseDate": to_iso(o.purchase_date),
        "paymentReference": o.payment_reference,
        "paidAt": to_iso(o.paid_at),
        "failureReason": o.failure_reason,
    }


def transaction_to_dict(t: Transaction) -> Dict[str, Any]:
    return {
        "id": t.id,
        "order": t.order_id,
        "user": t.user_id,
        "reference": t.reference,
        "providerTransactionId": t.provider_transaction_id,
        "amount": t.amount,
        "currency": t.currency,
        "paymentMethod": t.payment_method,
        "status": t.status,
        "virtualAccount": t.virtual_account,
        "initiatedAt": to_iso(t.initiated_at),
        "completedAt": to_iso(t.completed_at),
        "failedAt": to_iso(t.failed_at),
    }


def ticket_to_dict(t: Ticket) -> Dict[str, Any]:
    return {
        "id": t.id,
        "event": t.event_id,
        "user": t.user_id,
        "order": t.order_id,
        "ticketType": t.ticket_type,
        "price": t.price,
        "seatNumber": t.seat_number,
        "qrCode": t.qr_code,
        "isUsed": bool(t.is_used),
        "cancelledAt": to_iso(t.cancelled_at),
        "purchaseDate": to_iso(t.purchase_date),
    }


def event_summary(e: Optional[Event]) -> Dict[str, Any]:
    if e is None:
        return {}
    return {"id": e.id, "name": e.title, "date": to_iso(e.date),
            "venue": e.venue}


def holder_summary(u: Optional[User]) -> Dict[str, Any]:
    if u is None:
        return {}
    name = f"{u.first_name} {u.last_name}".strip()
    return {"name": name, "email": u.email}
