from __future__ import annotations
import asyncio
import logging
from typing import List, Optional

import httpx
from fastapi import Depends, FastAPI, Header, Request
from fastapi.responses import ORJSONResponse, Response
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from .config import Settings, configure_logging
from .documents import TicketPdfRenderer
from .errors import (
    AppError, BadRequest, NotFound, PayloadIncorrect, Unauthorized
)
from .flutterwave import FlutterwaveAdapter
from .gateway import PaymentAdapter, SUCCESS_STATUSES, FAILURE_STATUSES
from .infra.sql import make_async_engine, create_schema, dispose
from .infra.timings import snapshot, log_and_reset
from .issuer import TicketIssuer
from .ledger import OrderLedger
from .mail import HttpMailTransport, LogMailTransport, MailTransport, Mailer
from .mockpay import MockPay
from .model.catalog import CatalogStore
from .model.db import Base
from .model.orders import OrderStore
from .model.tickets import TicketStore
from .model.transactions import TransactionStore
from .reconcile import Reconciler
from .serializers import order_to_dict, ticket_to_dict

logger = logging.getLogger(__name__)


# ----------------------------
# Request bodies
# ----------------------------
class CreateOrderBody(BaseModel):
    event: str
    ticketType: Optional[str] = None
    numberOfTicket: int = 1


class VerifyPaymentBody(BaseModel):
    transactionId: Optional[str] = None
    reference: Optional[str] = None


class VerifyTicketBody(BaseModel):
    ticketCode: str


class CancelTicketsBody(BaseModel):
    ticketIds: List[str]


class MockEmitBody(BaseModel):
    status: str = "successful"
    amount: Optional[float] = None
    reason: Optional[str] = None


def create_app(settings: Optional[Settings] = None,
               adapter: Optional[PaymentAdapter] = None,
               mail_transport: Optional[MailTransport] = None) -> FastAPI:
    settings = settings or Settings.from_env()
    configure_logging(settings.log_level)

    app = FastAPI(
        title="CampusTix",
        default_response_class=ORJSONResponse,
    )
    app.state.settings = settings
    app.state.adapter = adapter
    app.state.mail_transport = mail_transport
    app.state.sweep_task = None

    # ---
    # startup / shutdown
    # ---
    @app.on_event("startup")
    async def _db_init():
        engine, SessionAsync = make_async_engine(settings.database_url)
        app.state.engine = engine
        app.state.SessionAsync = SessionAsync
        await create_schema(engine, Base.metadata)

    @app.on_event("startup")
    async def _http_client_start():
        app.state.http = httpx.AsyncClient(
            timeout=settings.http_timeout_seconds,
            limits=httpx.Limits(
                max_connections=64, max_keepalive_connections=32
            ),
        )
        if app.state.adapter is None:
            app.state.adapter = _build_adapter(settings, app.state.http)
        if app.state.mail_transport is None:
            app.state.mail_transport = _build_transport(
                settings, app.state.http
            )
        app.state.mailer = Mailer(
            app.state.mail_transport,
            admin_emails=settings.admin_emails,
            site_name=settings.mail_from_name,
        )
        app.state.renderer = TicketPdfRenderer()
        logger.info("payment provider: %s", app.state.adapter.name)

    @app.on_event("startup")
    async def _sweep_start():
        if settings.sweep_interval_seconds > 0:
            app.state.sweep_task = asyncio.create_task(_sweep_loop(app))

    @app.on_event("shutdown")
    async def _sweep_stop():
        task = app.state.sweep_task
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
            app.state.sweep_task = None

    @app.on_event("shutdown")
    async def _http_client_stop():
        http = getattr(app.state, "http", None)
        if http is not None:
            await http.aclose()
            app.state.http = None

    @app.on_event("shutdown")
    async def _db_stop():
        await dispose(getattr(app.state, "engine", None))
        log_and_reset()

    @app.exception_handler(AppError)
    async def _app_error(request: Request, exc: AppError):
        return ORJSONResponse(exc.to_dict(), status_code=exc.status_code)

    # ---
    # dependencies
    # ---
    async def get_db() -> AsyncSession:
        async with app.state.SessionAsync() as session:
            yield session

    async def current_user(
        x_user_id: Optional[str] = Header(default=None),
    ) -> str:
        if not x_user_id:
            raise Unauthorized("Authentication required")
        return x_user_id

    def issuer(db: AsyncSession = Depends(get_db)) -> TicketIssuer:
        return _issuer(app, db)

    def ledger(db: AsyncSession = Depends(get_db)) -> OrderLedger:
        return OrderLedger(
            orders=OrderStore(db=db),
            transactions=TransactionStore(db=db),
            catalog=CatalogStore(db=db),
            adapter=app.state.adapter,
            currency=settings.currency,
            expiry_minutes=settings.virtual_account_expiry_minutes,
        )

    def reconciler(db: AsyncSession = Depends(get_db)) -> Reconciler:
        return _reconciler(app, db)

    # ----------------------------
    # Payments
    # ----------------------------
    @app.post("/payments/webhook")
    async def payments_webhook(request: Request,
                               svc: Reconciler = Depends(reconciler)):
        payload = await request.body()
        try:
            outcome = await svc.handle_webhook(payload, request.headers)
        except (Unauthorized, PayloadIncorrect):
            raise
        except Exception:
            # already logged and reported to admins
            return ORJSONResponse(
                {"detail": "Webhook processing failed", "code": "error"},
                status_code=500,
            )
        return {"ok": True, "outcome": outcome}

    @app.post("/payments/verify")
    async def payments_verify(body: VerifyPaymentBody,
                              svc: Reconciler = Depends(reconciler)):
        return await svc.verify_payment(
            transaction_id=body.transactionId, reference=body.reference
        )

    # ----------------------------
    # Orders
    # ----------------------------
    @app.post("/api/orders", status_code=201)
    async def create_order(body: CreateOrderBody,
                           user_id: str = Depends(current_user),
                           svc: OrderLedger = Depends(ledger)):
        return await svc.create_order(
            user_id, body.event, body.ticketType, body.numberOfTicket
        )

    @app.get("/api/orders/{order_id}")
    async def get_order(order_id: str,
                        user_id: str = Depends(current_user),
                        svc: OrderLedger = Depends(ledger)):
        return order_to_dict(await svc.get_order(order_id, user_id))

    # ----------------------------
    # Tickets
    # ----------------------------
    @app.post("/api/tickets/verify")
    async def verify_ticket(body: VerifyTicketBody,
                            user_id: str = Depends(current_user),
                            svc: TicketIssuer = Depends(issuer)):
        return await svc.verify_ticket(body.ticketCode)

    @app.patch("/api/tickets/cancel")
    async def cancel_tickets(body: CancelTicketsBody,
                             user_id: str = Depends(current_user),
                             svc: TicketIssuer = Depends(issuer)):
        return await svc.cancel_tickets(body.ticketIds, user_id)

    @app.post("/api/tickets/{ticket_id}/resend-email")
    async def resend_ticket_email(ticket_id: str,
                                  user_id: str = Depends(current_user),
                                  svc: TicketIssuer = Depends(issuer)):
        return await svc.resend_ticket_email(ticket_id, user_id)

    @app.get("/api/tickets")
    async def list_tickets(page: int = 1, limit: int = 10,
                           status: Optional[str] = None,
                           event: Optional[str] = None,
                           search: Optional[str] = None,
                           user_id: str = Depends(current_user),
                           svc: TicketIssuer = Depends(issuer)):
        return await svc.list_tickets_by_user(
            user_id, page=page, limit=limit, status=status,
            event_id=event, search=search,
        )

    @app.get("/api/tickets/{ticket_id}")
    async def get_ticket(ticket_id: str,
                         user_id: str = Depends(current_user),
                         svc: TicketIssuer = Depends(issuer)):
        return ticket_to_dict(await svc.get_ticket(ticket_id, user_id))

    @app.get("/api/tickets/{ticket_id}/download")
    async def download_ticket(ticket_id: str,
                              user_id: str = Depends(current_user),
                              svc: TicketIssuer = Depends(issuer)):
        pdf = await svc.render_ticket_pdf(ticket_id, user_id)
        return Response(
            content=pdf,
            media_type="application/pdf",
            headers={
                "Content-Disposition":
                    f'attachment; filename="ticket-{ticket_id}.pdf"',
            },
        )

    @app.get("/api/events/{event_id}/tickets")
    async def list_event_tickets(event_id: str, page: int = 1,
                                 limit: int = 10,
                                 status: Optional[str] = None,
                                 user: Optional[str] = None,
                                 search: Optional[str] = None,
                                 user_id: str = Depends(current_user),
                                 svc: TicketIssuer = Depends(issuer)):
        return await svc.list_tickets_by_event(
            event_id, user_id, page=page, limit=limit, status=status,
            user_id=user, search=search,
        )

    @app.get("/api/events/{event_id}/tickets/stats")
    async def event_ticket_stats(event_id: str,
                                 user_id: str = Depends(current_user),
                                 svc: TicketIssuer = Depends(issuer)):
        return await svc.ticket_stats(event_id, user_id)

    @app.get("/healthz")
    async def healthz():
        adapter = app.state.adapter
        return {
            "ok": True,
            "provider": adapter.name if adapter else None,
            "sweep": app.state.sweep_task is not None,
            "timings": snapshot(),
        }

    # ----------------------------
    # MockPay: emit a signed webhook for a pending order
    # ----------------------------
    if settings.payment_provider == "mock":
        @app.post("/mockpay/{order_id}/emit")
        async def mockpay_emit(order_id: str, body: MockEmitBody):
            mock = app.state.adapter
            if not isinstance(mock, MockPay):
                raise NotFound("Mock provider is not active")
            status = body.status.lower()
            if status not in SUCCESS_STATUSES | FAILURE_STATUSES:
                raise BadRequest("invalid status")
            data = mock.settle(
                order_id, status, amount=body.amount,
                currency=settings.currency, reason=body.reason,
            )
            payload, headers = mock.build_webhook(data)
            delivered = True
            try:
                r = await app.state.http.post(
                    settings.mock_webhook_url, content=payload,
                    headers=headers,
                )
                r.raise_for_status()
            except httpx.HTTPError as e:
                # the order can still be settled through /payments/verify
                logger.warning("mock webhook delivery failed: %s", e)
                delivered = False
            return {"ok": True, "delivered": delivered, "charge": data}

    return app


# ----------------------------
# wiring
# ----------------------------
def _build_adapter(settings: Settings,
                   http: httpx.AsyncClient) -> PaymentAdapter:
    if settings.payment_provider == "flutterwave":
        return FlutterwaveAdapter(
            client_id=settings.flutterwave_client_id,
            client_secret=settings.flutterwave_client_secret,
            secret_hash=settings.flutterwave_secret_hash,
            base_url=settings.flutterwave_base_url,
            token_url=settings.flutterwave_token_url,
            http=http,
        )
    if settings.payment_provider == "mock":
        return MockPay(settings.mock_secret)
    raise ValueError(f"unknown PAYMENT_PROVIDER {settings.payment_provider!r}")


def _build_transport(settings: Settings,
                     http: httpx.AsyncClient) -> MailTransport:
    if not settings.mail_api_key:
        logger.warning("MAIL_API_KEY not set; mail is logged, not sent")
        return LogMailTransport()
    return HttpMailTransport(
        api_url=settings.mail_api_url,
        api_key=settings.mail_api_key,
        sender_email=settings.mail_from,
        sender_name=settings.mail_from_name,
        http=http,
    )


def _issuer(app: FastAPI, db: AsyncSession) -> TicketIssuer:
    return TicketIssuer(
        tickets=TicketStore(db=db),
        catalog=CatalogStore(db=db),
        mailer=app.state.mailer,
        renderer=app.state.renderer,
        currency=app.state.settings.currency,
    )


def _reconciler(app: FastAPI, db: AsyncSession) -> Reconciler:
    settings: Settings = app.state.settings
    return Reconciler(
        orders=OrderStore(db=db),
        transactions=TransactionStore(db=db),
        catalog=CatalogStore(db=db),
        issuer=_issuer(app, db),
        mailer=app.state.mailer,
        adapter=app.state.adapter,
        platform_fee_fraction=settings.platform_fee_fraction,
        frontend_url=settings.frontend_url,
        currency=settings.currency,
    )


async def _sweep_loop(app: FastAPI) -> None:
    settings: Settings = app.state.settings
    while True:
        await asyncio.sleep(settings.sweep_interval_seconds)
        try:
            async with app.state.SessionAsync() as db:
                summary = await _reconciler(app, db).sweep_pending_orders(
                    grace_minutes=settings.sweep_grace_minutes,
                    retention_hours=settings.sweep_retention_hours,
                )
            logger.info("sweep done: %s", summary)
        except Exception:
            logger.exception("pending-order sweep failed")


app = create_app()
