from sqlalchemy.orm import declarative_base
from sqlalchemy import (
    Column,
    Integer,
    String,
    Float,
    Boolean,
    CheckConstraint,
    ForeignKey,
    Index,
    PrimaryKeyConstraint,
)


Base = declarative_base()

# Hold statuses
HOLD_ACTIVE = "ACTIVE"
HOLD_CONSUMED = "CONSUMED"
HOLD_EXPIRED = "EXPIRED"
HOLD_CANCELED = "CANCELED"

# Payment statuses
PAY_CREATED = "CREATED"
PAY_PENDING = "PENDING"
PAY_PAID = "PAID"
PAY_FAILED = "FAILED"
PAY_CANCELLED = "CANCELLED"
PAYMENT_STATUSES = (
    PAY_CREATED, PAY_PENDING, PAY_PAID, PAY_FAILED, PAY_CANCELLED
)
PAYMENT_OPEN = (PAY_CREATED, PAY_PENDING)

# Ticket statuses
TICKET_VALID = "VALID"
TICKET_USED = "USED"


# ----------------------------
# ORM models
# ----------------------------
class Event(Base):
    __tablename__ = "events"
    id = Column(String, primary_key=True)
    title = Column(String, nullable=False)
    published = Column(Boolean, nullable=False, default=True)
    created_at = Column(Float, nullable=False)


class TicketType(Base):
    __tablename__ = "ticket_types"
    id = Column(String, primary_key=True)
    event_id = Column(String, ForeignKey("events.id"), nullable=False)
    name = Column(String, nullable=False)
    unit_price_minor = Column(Integer, nullable=False)
    capacity = Column(Integer, nullable=False)
    sold = Column(Integer, nullable=False, default=0)
    held = Column(Integer, nullable=False, default=0)

    __table_args__ = (
        CheckConstraint("sold >= 0", name="ck_ticket_types_sold"),
        CheckConstraint("held >= 0", name="ck_ticket_types_held"),
        CheckConstraint("sold + held <= capacity",
                        name="ck_ticket_types_capacity"),
        Index("ix_ticket_types_event", "event_id"),
    )


class Hold(Base):
    __tablename__ = "holds"
    id = Column(String, primary_key=True)
    event_id = Column(String, nullable=False)
    # ACTIVE | CONSUMED | EXPIRED | CANCELED
    status = Column(String, nullable=False, default=HOLD_ACTIVE)
    created_at = Column(Float, nullable=False)
    expires_at = Column(Float, nullable=False)

    __table_args__ = (
        Index("ix_holds_status_expires", "status", "expires_at"),
    )


class HoldItem(Base):
    __tablename__ = "hold_items"
    id = Column(Integer, primary_key=True, autoincrement=True)
    hold_id = Column(String, ForeignKey("holds.id"), nullable=False)
    event_id = Column(String, nullable=False)
    ticket_type_id = Column(String, nullable=False)
    ticket_type_name = Column(String, nullable=False)
    unit_price_minor = Column(Integer, nullable=False)
    qty = Column(Integer, nullable=False)

    __table_args__ = (
        CheckConstraint("qty > 0", name="ck_hold_items_qty"),
        Index("ix_hold_items_hold", "hold_id"),
    )


class Payment(Base):
    __tablename__ = "payments"
    id = Column(String, primary_key=True)
    hold_id = Column(String, nullable=False, unique=True)
    event_id = Column(String, nullable=False)
    event_title = Column(String, nullable=False, default="")
    provider = Column(String, nullable=False)
    provider_ref = Column(String, nullable=True)
    redirect_url = Column(String, nullable=True)
    buyer_name = Column(String, nullable=False)
    buyer_email = Column(String, nullable=False)
    owner_email = Column(String, nullable=True)
    amount_minor = Column(Integer, nullable=False)  # server computed
    currency = Column(String, nullable=False)

    # CREATED | PENDING | PAID | FAILED | CANCELLED
    status = Column(String, nullable=False, default=PAY_CREATED)
    order_id = Column(String, nullable=True)
    created_at = Column(Float, nullable=False)
    updated_at = Column(Float, nullable=False)
    paid_at = Column(Float, nullable=True)

    __table_args__ = (
        Index("ix_payments_provider_ref", "provider", "provider_ref"),
    )


class Order(Base):
    __tablename__ = "orders"
    id = Column(String, primary_key=True)
    hold_id = Column(String, nullable=False, unique=True)
    event_id = Column(String, nullable=False)
    event_title = Column(String, nullable=False, default="")
    buyer_name = Column(String, nullable=False)
    buyer_email = Column(String, nullable=False)
    owner_email = Column(String, nullable=True)
    created_at = Column(Float, nullable=False)


class Ticket(Base):
    __tablename__ = "tickets"
    id = Column(String, primary_key=True)
    order_id = Column(String, ForeignKey("orders.id"), nullable=False)
    event_id = Column(String, nullable=False)
    ticket_type_id = Column(String, nullable=False)
    ticket_type_name = Column(String, nullable=False)
    # VALID | USED
    status = Column(String, nullable=False, default=TICKET_VALID)
    created_at = Column(Float, nullable=False)

    # exclusive send-claim
    emailed_at = Column(Float, nullable=True)
    emailed_to = Column(String, nullable=True)

    __table_args__ = (
        Index("ix_tickets_order", "order_id"),
    )


class WebhookEvent(Base):
    __tablename__ = "webhook_events"
    provider = Column(String, nullable=False)
    event_id = Column(String, nullable=False)
    created_at = Column(Float, nullable=False)

    __table_args__ = (
        PrimaryKeyConstraint("provider", "event_id"),
    )
