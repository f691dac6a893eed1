"""
Common fixtures for the service and API tests.

Services run against a throwaway SQLite file through the real async engine,
with MockPay standing in for the payment provider and a recording mail
transport that can be told to fail.
"""
from dataclasses import dataclass

import pytest

from campustix.config import Settings
from campustix.documents import TicketPdfRenderer
from campustix.errors import UnableToComplete
from campustix.infra.sql import make_async_engine, create_schema
from campustix.issuer import TicketIssuer
from campustix.ledger import OrderLedger
from campustix.mail import MailTransport, Mailer
from campustix.mockpay import MockPay
from campustix.model.catalog import CatalogStore
from campustix.model.db import Base
from campustix.model.orders import OrderStore
from campustix.model.tickets import TicketStore
from campustix.model.transactions import TransactionStore
from campustix.reconcile import Reconciler

MOCK_SECRET = "test-secret"
ADMIN = "admin@campustix.test"


class RecordingTransport(MailTransport):
    """Keeps every message; raises for subjects containing `fail_on`."""

    def __init__(self):
        self.sent = []
        self.fail_on = None

    async def send(self, message):
        if self.fail_on and self.fail_on in message.subject:
            raise UnableToComplete("mail api down")
        self.sent.append(message)

    def subjects(self):
        return [m.subject for m in self.sent]

    def to(self, address):
        return [m for m in self.sent if address in m.to]


@dataclass
class Services:
    db: object
    catalog: CatalogStore
    orders: OrderStore
    transactions: TransactionStore
    tickets: TicketStore
    issuer: TicketIssuer
    ledger: OrderLedger
    reconciler: Reconciler


@pytest.fixture
def settings(tmp_path):
    return Settings(
        database_url=f"sqlite:///{tmp_path / 'campustix.db'}",
        payment_provider="mock",
        mock_secret=MOCK_SECRET,
        admin_emails=[ADMIN],
        frontend_url="https://tix.example",
        sweep_interval_seconds=0,
    )


@pytest.fixture
def mock_pay():
    return MockPay(MOCK_SECRET)


@pytest.fixture
def transport():
    return RecordingTransport()


@pytest.fixture
async def sessions(settings):
    """Session factory on a freshly created schema."""
    engine, SessionAsync = make_async_engine(settings.database_url)
    await create_schema(engine, Base.metadata)
    yield SessionAsync
    await engine.dispose()


@pytest.fixture
async def db(sessions):
    async with sessions() as session:
        yield session


def build_services(db, settings, mock_pay, transport):
    mailer = Mailer(transport, admin_emails=settings.admin_emails)
    catalog = CatalogStore(db=db)
    orders = OrderStore(db=db)
    transactions = TransactionStore(db=db)
    tickets = TicketStore(db=db)
    issuer = TicketIssuer(
        tickets=tickets, catalog=catalog, mailer=mailer,
        renderer=TicketPdfRenderer(), currency=settings.currency,
    )
    ledger = OrderLedger(
        orders=orders, transactions=transactions, catalog=catalog,
        adapter=mock_pay, currency=settings.currency,
    )
    reconciler = Reconciler(
        orders=orders, transactions=transactions, catalog=catalog,
        issuer=issuer, mailer=mailer, adapter=mock_pay,
        platform_fee_fraction=settings.platform_fee_fraction,
        frontend_url=settings.frontend_url, currency=settings.currency,
    )
    return Services(db, catalog, orders, transactions, tickets, issuer,
                    ledger, reconciler)


@pytest.fixture
def services(db, settings, mock_pay, transport):
    return build_services(db, settings, mock_pay, transport)


@pytest.fixture
async def other_services(sessions, settings, mock_pay, transport):
    """A second worker: same database, its own session."""
    async with sessions() as session:
        yield build_services(session, settings, mock_pay, transport)


@pytest.fixture
async def owner(services):
    """The event organizer whose balance settlement credits."""
    return await services.catalog.create_user(
        email="organizer@example.com", first_name="Ada", last_name="Obi",
    )


@pytest.fixture
async def buyer(services):
    return await services.catalog.create_user(
        email="buyer@example.com", first_name="Tunde", last_name="Bello",
    )


@pytest.fixture
async def event(services, owner):
    """Flat-priced event: 5000 per ticket."""
    return await services.catalog.create_event(
        owner_id=owner.id, title="Freshers Night", price=5000.0,
        venue="Main Hall", date=1767225600.0, capacity=300,
    )


@pytest.fixture
async def tiered_event(services, owner):
    return await services.catalog.create_event(
        owner_id=owner.id, title="Campus Gala", price=None,
        ticket_types=[
            {"name": "Regular", "description": "Standing", "price": 3000},
            {"name": "VIP", "description": "Front rows", "price": 10000},
        ],
        venue="Senate Building",
    )


@pytest.fixture
def signed_webhook(mock_pay):
    """Signed (payload, headers) for one provider notification."""
    def build(reference, status="successful", amount=None, reason=None):
        data = mock_pay.settle(reference, status, amount=amount,
                               reason=reason)
        return mock_pay.build_webhook(data)
    return build
