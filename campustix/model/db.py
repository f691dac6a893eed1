from sqlalchemy.orm import declarative_base
from sqlalchemy import (
    Column,
    Integer,
    String,
    Float,
    Boolean,
    JSON,
    ForeignKey,
    Index,
)


Base = declarative_base()

# Order lifecycle
ORDER_PENDING = "pending"
ORDER_COMPLETED = "completed"
ORDER_EXPIRED = "expired"
ORDER_FAILED = "failed"
ORDER_CANCELLED = "cancelled"
ORDER_PAID_FAILED_TICKETING = "paid-failed-ticketing"
ORDER_PAID_FAILED_EMAIL = "paid-failed-email"

ORDER_STATUSES = (
    ORDER_PENDING, ORDER_COMPLETED, ORDER_EXPIRED, ORDER_FAILED,
    ORDER_CANCELLED, ORDER_PAID_FAILED_TICKETING, ORDER_PAID_FAILED_EMAIL,
)

# money has been received for these; they must never be completed again
ORDER_SETTLED = (
    ORDER_COMPLETED, ORDER_PAID_FAILED_TICKETING, ORDER_PAID_FAILED_EMAIL,
)

# Transaction lifecycle: pending -> successful | failed | cancelled
TX_PENDING = "pending"
TX_SUCCESSFUL = "successful"
TX_FAILED = "failed"
TX_CANCELLED = "cancelled"

PAYMENT_METHODS = ("card", "bank_transfer", "ussd", "mobile_money")

# Event publication
PUBLICATION_STATUSES = ("draft", "published", "archived", "deleted")


# ----------------------------
# ORM models
# ----------------------------
class User(Base):
    __tablename__ = "users"
    id = Column(String, primary_key=True)
    first_name = Column(String, nullable=False, default="")
    last_name = Column(String, nullable=False, default="")
    email = Column(String, nullable=False, unique=True)

    # payment provider customer, created lazily on first checkout
    payment_customer_id = Column(String, nullable=True)

    # creator settlement; only ever incremented in place
    available_balance = Column(Float, nullable=False, default=0.0)
    total_earnings = Column(Float, nullable=False, default=0.0)
    created_at = Column(Float, nullable=False)


class Event(Base):
    __tablename__ = "events"
    id = Column(String, primary_key=True)
    user_id = Column(String, ForeignKey("users.id"), nullable=False)
    title = Column(String, nullable=False)
    venue = Column(String, nullable=True)
    date = Column(Float, nullable=True)
    capacity = Column(Integer, nullable=True)

    # flat price; events with tiers may leave this empty
    price = Column(Float, nullable=True)
    # [{"name", "description", "price"}]
    ticket_types = Column(JSON, nullable=False, default=list)

    # draft | published | archived | deleted
    publication_status = Column(String, nullable=False, default="draft")
    automatically_publish_at = Column(Float, nullable=True)
    created_at = Column(Float, nullable=False)


class Order(Base):
    __tablename__ = "orders"
    id = Column(String, primary_key=True)
    user_id = Column(String, ForeignKey("users.id"), nullable=False)
    event_id = Column(String, ForeignKey("events.id"), nullable=False)

    # snapshot of the tier at purchase time, not a live reference
    ticket_type = Column(JSON, nullable=True)
    number_of_ticket = Column(Integer, nullable=False, default=1)
    total_price = Column(Float, nullable=False)

    status = Column(String, nullable=False, default=ORDER_PENDING)
    purchase_date = Column(Float, nullable=False)
    created_at = Column(Float, nullable=False)

    payment_reference = Column(String, nullable=True)
    payment_method = Column(String, nullable=True)
    paid_at = Column(Float, nullable=True)
    failure_reason = Column(String, nullable=True)
    failed_at = Column(Float, nullable=True)

    __table_args__ = (
        Index("ix_orders_status_created_at", "status", "created_at"),
    )


class Transaction(Base):
    __tablename__ = "transactions"
    id = Column(String, primary_key=True)
    order_id = Column(String, ForeignKey("orders.id"), nullable=False)
    user_id = Column(String, ForeignKey("users.id"), nullable=False)

    # idempotent, externally visible reference (= order id)
    reference = Column(String, nullable=False, unique=True)
    provider_transaction_id = Column(String, nullable=True)

    amount = Column(Float, nullable=False)
    currency = Column(String, nullable=False, default="NGN")
    payment_method = Column(String, nullable=True)
    status = Column(String, nullable=False, default=TX_PENDING)

    # {"account_number", "bank_name", "expiry_date"}
    virtual_account = Column(JSON, nullable=True)
    metadata_ = Column("metadata", JSON, nullable=True)
    failure_reason = Column(String, nullable=True)

    initiated_at = Column(Float, nullable=False)
    completed_at = Column(Float, nullable=True)
    failed_at = Column(Float, nullable=True)


class TransactionLog(Base):
    """One row per webhook or poll observed for a transaction."""
    __tablename__ = "transaction_logs"
    id = Column(Integer, primary_key=True, autoincrement=True)
    transaction_id = Column(
        String, ForeignKey("transactions.id"), nullable=False, index=True
    )
    amount = Column(Float, nullable=True)
    status = Column(String, nullable=True)
    received_at = Column(Float, nullable=False)
    raw_payload = Column(JSON, nullable=True)


class Ticket(Base):
    __tablename__ = "tickets"
    id = Column(String, primary_key=True)
    event_id = Column(
        String, ForeignKey("events.id"), nullable=False, index=True
    )
    user_id = Column(
        String, ForeignKey("users.id"), nullable=False, index=True
    )
    order_id = Column(String, ForeignKey("orders.id"), nullable=False)

    ticket_type = Column(JSON, nullable=True)
    price = Column(Float, nullable=False)
    seat_number = Column(String, nullable=True)

    # "{order_id}-{n}"; the only artifact used at check-in
    qr_code = Column(String, nullable=False, unique=True)

    # set for both check-in and cancellation; never reset
    is_used = Column(Boolean, nullable=False, default=False)
    cancelled_at = Column(Float, nullable=True)
    purchase_date = Column(Float, nullable=False)
    created_at = Column(Float, nullable=False)
