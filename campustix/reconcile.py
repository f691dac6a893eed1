"""
Payment reconciliation: turns provider notifications (webhooks, manual
verification, the pending-order sweep) into order, transaction, ticket and
balance changes.

Every entry point funnels into `process()`, which branches on the
notification kind. The success path claims the order with one conditional
UPDATE before doing anything with side effects, so duplicate or racing
deliveries of the same payment fall through as no-ops.
"""
from __future__ import annotations
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Mapping, Optional

from .errors import BadRequest
from .gateway import PaymentAdapter, PaymentNotification
from .helpers import amounts_match, full_name, now_ts
from .infra.timings import timeit
from .issuer import TicketIssuer
from .mail import Mailer
from .model.catalog import CatalogStore
from .model.db import (
    ORDER_COMPLETED, ORDER_FAILED, ORDER_PENDING,
    ORDER_PAID_FAILED_EMAIL, ORDER_PAID_FAILED_TICKETING, ORDER_SETTLED,
    TX_FAILED, TX_SUCCESSFUL,
)
from .model.orders import OrderStore
from .model.transactions import TransactionStore

logger = logging.getLogger(__name__)

# outcomes reported by process(); the webhook acknowledges all of them
UNKNOWN_ORDER = "unknown-order"
ALREADY_SETTLED = "already-settled"
AMOUNT_MISMATCH = "amount-mismatch"
COMPLETED = ORDER_COMPLETED
PAID_FAILED_TICKETING = ORDER_PAID_FAILED_TICKETING
PAID_FAILED_EMAIL = ORDER_PAID_FAILED_EMAIL
FAILED = ORDER_FAILED
NOT_PENDING = "not-pending"
IGNORED = "ignored"


def _iso_now() -> str:
    return datetime.now(timezone.utc).isoformat()


class Reconciler:
    def __init__(self, *, orders: OrderStore, transactions: TransactionStore,
                 catalog: CatalogStore, issuer: TicketIssuer, mailer: Mailer,
                 adapter: PaymentAdapter, platform_fee_fraction: float = 0.02,
                 frontend_url: str = "", currency: str = "NGN") -> None:
        self.orders = orders
        self.transactions = transactions
        self.catalog = catalog
        self.issuer = issuer
        self.mailer = mailer
        self.adapter = adapter
        self.fee = platform_fee_fraction
        self.frontend_url = frontend_url.rstrip("/")
        self.currency = currency

    # ----------------------------
    # entry points
    # ----------------------------
    async def handle_webhook(self, payload: bytes,
                             headers: Mapping[str, str]) -> str:
        # signature and shape first; nothing is looked up for a forged body
        body = self.adapter.verify_webhook(payload, headers)
        notification = PaymentNotification.from_data(body["data"])
        logger.info("webhook: status=%s reference=%s id=%s",
                    notification.status, notification.reference,
                    notification.transaction_id)
        try:
            async with timeit("webhook.process"):
                return await self.process(notification)
        except Exception as e:
            logger.exception("webhook processing failed for %s",
                             notification.reference)
            await self._alert("Webhook Processing Error", {
                "error": str(e) or e.__class__.__name__,
                "reference": notification.reference,
                "status": notification.status,
                "timestamp": _iso_now(),
            })
            raise

    async def process(self, n: PaymentNotification) -> str:
        if n.kind == "succeeded":
            return await self.handle_success(n)
        if n.kind == "failed":
            return await self.handle_failure(n)
        logger.info("payment status %r for %s: no action taken",
                    n.status, n.reference)
        if n.reference:
            await self.transactions.append_log(n.reference, None, n.raw)
        return IGNORED

    async def verify_payment(self, *, transaction_id: Optional[str] = None,
                             reference: Optional[str] = None
                             ) -> Dict[str, Any]:
        """Poll the provider and run the result through `process()`."""
        lookup = transaction_id or reference
        if not lookup:
            raise BadRequest("Transaction ID or reference is required")
        async with timeit("gateway.verify_transaction"):
            result = await self.adapter.verify_transaction(str(lookup))
        status = result.get("status")
        data = result.get("data") or {}
        if status != "success" or not data:
            return {
                "message": "Payment verification completed",
                "status": status,
                "data": data,
            }
        outcome = await self.process(PaymentNotification.from_data(data))
        return {
            "message": "Payment verified and processed successfully",
            "status": status,
            "outcome": outcome,
            "data": data,
        }

    async def sweep_pending_orders(self, *, grace_minutes: int = 10,
                                   retention_hours: int = 24
                                   ) -> Dict[str, int]:
        now = now_ts()
        stale = await self.orders.find_stale_pending(
            older_than=now - grace_minutes * 60,
            newer_than=now - retention_hours * 3600,
        )
        logger.info("sweep: %d pending orders to check", len(stale))
        summary = {"checked": 0, "changed": 0, "errors": 0}
        # a failed order rolls the session back and expires `stale`
        for order_id in [o.id for o in stale]:
            summary["checked"] += 1
            try:
                res = await self.verify_payment(reference=order_id)
            except Exception:
                logger.exception("sweep: order %s failed", order_id)
                await self.orders.rollback()
                summary["errors"] += 1
                continue
            if res.get("outcome") in (COMPLETED, PAID_FAILED_EMAIL,
                                      PAID_FAILED_TICKETING, FAILED):
                summary["changed"] += 1
                logger.info("sweep: order %s -> %s", order_id,
                            res["outcome"])
        return summary

    # ----------------------------
    # success
    # ----------------------------
    async def handle_success(self, n: PaymentNotification) -> str:
        order = await self.orders.get(n.reference) if n.reference else None
        if order is None:
            logger.error("payment for unknown order %s", n.reference)
            await self._alert("Payment Received for Unknown Order", {
                "reference": n.reference,
                "transactionId": n.transaction_id,
                "amount": n.amount,
                "currency": n.currency,
                "customerEmail": n.customer_email,
                "timestamp": _iso_now(),
            })
            return UNKNOWN_ORDER

        if order.status in ORDER_SETTLED:
            logger.info("order %s already settled (%s)", order.id,
                        order.status)
            await self.transactions.append_log(order.id, None, n.raw)
            return ALREADY_SETTLED

        if not amounts_match(n.amount, order.total_price):
            logger.error("amount mismatch on %s: expected %.2f got %s",
                         order.id, order.total_price, n.amount)
            await self.transactions.append_log(order.id, None, n.raw)
            buyer = await self.catalog.get_user(order.user_id)
            await self._alert("Payment Amount Mismatch", {
                "orderId": order.id,
                "expectedAmount": order.total_price,
                "receivedAmount": n.amount,
                "reference": n.reference,
                "customerEmail": buyer.email if buyer else n.customer_email,
            })
            return AMOUNT_MISMATCH

        paid_at = now_ts()
        won = await self.orders.transition(
            order.id, ORDER_COMPLETED,
            not_from=ORDER_SETTLED,
            payment_reference=n.transaction_id,
            payment_method=self.adapter.name,
            paid_at=paid_at,
        )
        if not won:
            logger.info("order %s claimed by a concurrent delivery", order.id)
            await self.transactions.append_log(order.id, None, n.raw)
            return ALREADY_SETTLED

        # a rollback below expires every loaded instance
        order_id, user_id, event_id = order.id, order.user_id, order.event_id
        total, count = order.total_price, order.number_of_ticket
        ticket_type = order.ticket_type

        await self._record_success(order_id, n, paid_at)

        try:
            issued = await self.issuer.create_tickets_and_notify(
                user_id, event_id, order_id, ticket_type,
                total / count, paid_at, count,
            )
        except Exception as e:
            logger.exception("ticket issuance failed for paid order %s",
                             order_id)
            await self.orders.update_status(
                order_id, ORDER_PAID_FAILED_TICKETING,
                failure_reason=f"Ticket issuance failed: {e}",
            )
            await self._alert("Ticket Issuance Failed", {
                "orderId": order_id,
                "amount": n.amount,
                "error": str(e) or e.__class__.__name__,
                "timestamp": _iso_now(),
            })
            return PAID_FAILED_TICKETING
        ticket_count = len(issued.tickets)

        outcome = COMPLETED
        if not issued.notified:
            await self.orders.update_status(
                order_id, ORDER_PAID_FAILED_EMAIL,
                failure_reason=f"Ticket email failed: {issued.notify_error}",
            )
            outcome = PAID_FAILED_EMAIL

        event = await self.catalog.get_event(event_id)
        buyer = await self.catalog.get_user(user_id)
        owner_id = event.user_id if event else None
        event_name = event.title if event else None
        buyer_email = buyer.email if buyer else None
        buyer_name = (full_name(buyer.first_name, buyer.last_name)
                      if buyer else None)

        await self._credit_creator(order_id, owner_id, float(n.amount))
        if buyer_email:
            await self._send_confirmation(order_id, buyer_email, {
                "orderNumber": order_id,
                "eventName": event_name or "",
                "ticketCount": ticket_count,
                "totalAmount": total,
                "userName": buyer_name,
            })
        await self._alert("Payment Successfully Processed", {
            "orderId": order_id,
            "amount": n.amount,
            "currency": n.currency or self.currency,
            "ticketsCreated": ticket_count,
            "customerEmail": buyer_email,
            "eventName": event_name,
            "timestamp": _iso_now(),
        })
        logger.info("order %s settled: %d tickets, outcome %s",
                    order_id, ticket_count, outcome)
        return outcome

    async def _record_success(self, order_id: str, n: PaymentNotification,
                              paid_at: float) -> None:
        # the order is already claimed; ticketing must still run
        try:
            await self.transactions.update_by_reference(
                order_id, TX_SUCCESSFUL,
                raw_payload=n.raw,
                provider_transaction_id=n.transaction_id,
                completed_at=paid_at,
            )
        except Exception:
            logger.exception("transaction update failed for order %s",
                             order_id)
            await self.orders.rollback()

    async def _credit_creator(self, order_id: str, owner_id: Optional[str],
                              amount: float) -> None:
        if owner_id is None:
            logger.error("cannot credit creator: event for order %s missing",
                         order_id)
            return
        earnings = amount * (1 - self.fee)
        try:
            await self.catalog.credit_balance(owner_id, earnings)
            logger.info("credited %s with %.2f (fee %.2f) for order %s",
                        owner_id, earnings, amount - earnings, order_id)
        except Exception:
            logger.exception("balance credit failed for order %s", order_id)
            await self.orders.rollback()

    async def _send_confirmation(self, order_id: str, email: str,
                                 data: Dict[str, Any]) -> None:
        try:
            await self.mailer.send_order_confirmation(email, data)
        except Exception:
            logger.exception("order confirmation mail failed for %s",
                             order_id)

    # ----------------------------
    # failure
    # ----------------------------
    async def handle_failure(self, n: PaymentNotification) -> str:
        order = await self.orders.get(n.reference) if n.reference else None
        if order is None:
            logger.warning("payment failure for unknown order %s: %s",
                           n.reference, n.failure_reason)
            return UNKNOWN_ORDER

        failed_at = now_ts()
        moved = await self.orders.transition(
            order.id, ORDER_FAILED,
            only_from=(ORDER_PENDING,),
            failure_reason=n.failure_reason,
            failed_at=failed_at,
        )
        await self.transactions.update_by_reference(
            order.id, TX_FAILED,
            raw_payload=n.raw,
            failure_reason=n.failure_reason,
            failed_at=failed_at,
        )
        logger.info("payment failed for %s: %s", order.id, n.failure_reason)
        if not moved:
            return NOT_PENDING

        buyer = await self.catalog.get_user(order.user_id)
        if buyer is not None:
            try:
                await self.mailer.send_payment_failed(buyer.email, {
                    "userName": full_name(buyer.first_name, buyer.last_name),
                    "orderNumber": order.id[:8],
                    "amount": order.total_price,
                    "failureReason": n.failure_reason,
                    "retryLink": f"{self.frontend_url}/checkout/{order.id}",
                })
            except Exception:
                logger.exception("payment-failed mail for %s not sent",
                                 order.id)
        return FAILED

    async def _alert(self, subject: str, data: Dict[str, Any]) -> None:
        try:
            await self.mailer.send_admin_notification(subject, data)
        except Exception:
            logger.exception("admin notification %r not sent", subject)
