"""SQLAlchemy models shared across all services."""
from __future__ import annotations

import uuid
from datetime import date, datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import List, Optional

from sqlalchemy import (
    JSON,
    Boolean,
    Date,
    DateTime,
    Enum as SqlEnum,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .database import Base


def utcnow() -> datetime:
    """Naive UTC timestamp; every datetime column stores UTC without tzinfo."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def new_id() -> str:
    return str(uuid.uuid4())


class RoleEnum(str, Enum):
    TENANT = "TENANT"
    HOST = "HOST"
    ADMIN = "ADMIN"


class PartyRole(str, Enum):
    TENANT = "TENANT"
    HOST = "HOST"

    @property
    def counterpart(self) -> "PartyRole":
        return PartyRole.HOST if self is PartyRole.TENANT else PartyRole.TENANT


class BookingStatus(str, Enum):
    REQUESTED = "REQUESTED"
    PENDING_NEGOTIATION = "PENDING_NEGOTIATION"
    PENDING_PAYMENT = "PENDING_PAYMENT"
    CONFIRMED = "CONFIRMED"
    TENANT_CHECKED_OUT = "TENANT_CHECKED_OUT"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"
    REJECTED = "REJECTED"


TERMINAL_STATUSES = frozenset({BookingStatus.CANCELLED, BookingStatus.COMPLETED, BookingStatus.REJECTED})
CALENDAR_HOLDING_STATUSES = frozenset({BookingStatus.CONFIRMED, BookingStatus.TENANT_CHECKED_OUT})
PRE_PAYMENT_STATUSES = frozenset(
    {BookingStatus.REQUESTED, BookingStatus.PENDING_NEGOTIATION, BookingStatus.PENDING_PAYMENT}
)


class OfferStatus(str, Enum):
    ACTIVE = "ACTIVE"
    SUPERSEDED = "SUPERSEDED"
    ACCEPTED = "ACCEPTED"
    REJECTED = "REJECTED"
    EXPIRED = "EXPIRED"


class IntentStatus(str, Enum):
    ACTIVE = "ACTIVE"
    CONSUMED = "CONSUMED"
    EXPIRED = "EXPIRED"
    INVALIDATED = "INVALIDATED"


class SettlementStatus(str, Enum):
    SUBMITTED = "SUBMITTED"
    SUPERSEDED = "SUPERSEDED"
    FINALIZED = "FINALIZED"


class ReclamationStatus(str, Enum):
    OPEN = "OPEN"
    IN_REVIEW = "IN_REVIEW"
    RESOLVED = "RESOLVED"
    REJECTED = "REJECTED"
    WITHDRAWN = "WITHDRAWN"


BLOCKING_RECLAMATION_STATUSES = frozenset({ReclamationStatus.OPEN, ReclamationStatus.IN_REVIEW})


class ReclamationType(str, Enum):
    ACCESS_ISSUE = "ACCESS_ISSUE"
    NOT_AS_DESCRIBED = "NOT_AS_DESCRIBED"
    CLEANLINESS = "CLEANLINESS"
    SAFETY_HEALTH = "SAFETY_HEALTH"
    PROPERTY_DAMAGE = "PROPERTY_DAMAGE"
    EXTRA_CLEANING = "EXTRA_CLEANING"
    HOUSE_RULE_VIOLATION = "HOUSE_RULE_VIOLATION"
    UNAUTHORIZED_GUESTS_OR_STAY = "UNAUTHORIZED_GUESTS_OR_STAY"


class Severity(str, Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"


Money = Numeric(12, 2)


class Booking(Base):
    __tablename__ = "bookings"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    tenant_id: Mapped[str] = mapped_column(String(64), index=True)
    host_id: Mapped[str] = mapped_column(String(64), index=True)
    property_id: Mapped[str] = mapped_column(String(64), index=True)
    check_in_date: Mapped[date] = mapped_column(Date, index=True)
    check_out_date: Mapped[date] = mapped_column(Date, index=True)
    number_of_guests: Mapped[int] = mapped_column(Integer)

    nightly_price: Mapped[Decimal] = mapped_column(Money)
    base_price: Mapped[Decimal] = mapped_column(Money)
    discount_percent: Mapped[Decimal] = mapped_column(Numeric(5, 2), default=Decimal("0"))
    negotiation_percent_bound: Mapped[Decimal] = mapped_column(Numeric(5, 2), default=Decimal("0"))
    deposit_amount: Mapped[Decimal] = mapped_column(Money, default=Decimal("0"))
    requested_price: Mapped[Optional[Decimal]] = mapped_column(Money, nullable=True)

    status: Mapped[BookingStatus] = mapped_column(SqlEnum(BookingStatus), index=True, default=BookingStatus.REQUESTED)
    tenant_wallet_address: Mapped[Optional[str]] = mapped_column(String(42), nullable=True)
    host_wallet_address: Mapped[Optional[str]] = mapped_column(String(42), nullable=True)
    on_chain_tx_hash: Mapped[Optional[str]] = mapped_column(String(66), nullable=True)

    tenant_checked_out_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    cancelled_by: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)

    offers: Mapped[List["NegotiationOffer"]] = relationship(
        back_populates="booking", order_by="NegotiationOffer.created_at"
    )
    intents: Mapped[List["PaymentIntent"]] = relationship(
        back_populates="booking", order_by="PaymentIntent.created_at"
    )

    @property
    def nights(self) -> int:
        return (self.check_out_date - self.check_in_date).days

    @property
    def final_price(self) -> Decimal:
        return self.requested_price if self.requested_price is not None else self.base_price


class NegotiationOffer(Base):
    __tablename__ = "negotiation_offers"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    booking_id: Mapped[str] = mapped_column(ForeignKey("bookings.id", ondelete="CASCADE"), index=True)
    proposed_price: Mapped[Decimal] = mapped_column(Money)
    proposed_by: Mapped[PartyRole] = mapped_column(SqlEnum(PartyRole))
    proposer_id: Mapped[str] = mapped_column(String(64))
    negotiation_percent_bound: Mapped[Decimal] = mapped_column(Numeric(5, 2))
    status: Mapped[OfferStatus] = mapped_column(SqlEnum(OfferStatus), index=True, default=OfferStatus.ACTIVE)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    expires_at: Mapped[datetime] = mapped_column(DateTime)
    resolved_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    booking: Mapped[Booking] = relationship(back_populates="offers")


class PaymentIntent(Base):
    __tablename__ = "payment_intents"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    booking_id: Mapped[str] = mapped_column(ForeignKey("bookings.id", ondelete="CASCADE"), index=True)
    recipient_address: Mapped[str] = mapped_column(String(42))
    payer_address: Mapped[str] = mapped_column(String(42))
    price: Mapped[Decimal] = mapped_column(Money)
    currency: Mapped[str] = mapped_column(String(8))
    amount_wei: Mapped[str] = mapped_column(String(78))
    conversion_rate: Mapped[Decimal] = mapped_column(Numeric(20, 6))
    rate_captured_at: Mapped[datetime] = mapped_column(DateTime)
    chain_id: Mapped[int] = mapped_column(Integer)
    status: Mapped[IntentStatus] = mapped_column(SqlEnum(IntentStatus), index=True, default=IntentStatus.ACTIVE)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    expires_at: Mapped[datetime] = mapped_column(DateTime)

    booking: Mapped[Booking] = relationship(back_populates="intents")


class SettlementRecord(Base):
    __tablename__ = "settlement_records"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    booking_id: Mapped[str] = mapped_column(ForeignKey("bookings.id", ondelete="CASCADE"), index=True)
    intent_id: Mapped[str] = mapped_column(ForeignKey("payment_intents.id"), index=True)
    tx_hash: Mapped[str] = mapped_column(String(66), unique=True, index=True)
    status: Mapped[SettlementStatus] = mapped_column(
        SqlEnum(SettlementStatus), index=True, default=SettlementStatus.SUBMITTED
    )
    submitted_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    confirmations: Mapped[int] = mapped_column(Integer, default=0)
    finalized_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    needs_review: Mapped[bool] = mapped_column(Boolean, default=False)

    booking: Mapped[Booking] = relationship()


class Reclamation(Base):
    __tablename__ = "reclamations"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    booking_id: Mapped[str] = mapped_column(ForeignKey("bookings.id", ondelete="CASCADE"), index=True)
    complainant_id: Mapped[str] = mapped_column(String(64), index=True)
    complainant_role: Mapped[PartyRole] = mapped_column(SqlEnum(PartyRole))
    respondent_id: Mapped[str] = mapped_column(String(64), index=True)
    type: Mapped[ReclamationType] = mapped_column(SqlEnum(ReclamationType))
    title: Mapped[str] = mapped_column(String(200))
    description: Mapped[str] = mapped_column(Text, default="")
    status: Mapped[ReclamationStatus] = mapped_column(
        SqlEnum(ReclamationStatus), index=True, default=ReclamationStatus.OPEN
    )
    severity: Mapped[Optional[Severity]] = mapped_column(SqlEnum(Severity), nullable=True)
    refund_amount: Mapped[Optional[Decimal]] = mapped_column(Money, nullable=True)
    penalty_points: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    resolution_note: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, index=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    resolved_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)


class ReclamationMessage(Base):
    __tablename__ = "reclamation_messages"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    reclamation_id: Mapped[str] = mapped_column(ForeignKey("reclamations.id", ondelete="CASCADE"), index=True)
    author_id: Mapped[str] = mapped_column(String(64))
    body: Mapped[str] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, index=True)


class BookingEvent(Base):
    __tablename__ = "booking_events"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    booking_id: Mapped[str] = mapped_column(ForeignKey("bookings.id", ondelete="CASCADE"), index=True)
    event_type: Mapped[str] = mapped_column(String(50))
    from_status: Mapped[Optional[BookingStatus]] = mapped_column(SqlEnum(BookingStatus), nullable=True)
    to_status: Mapped[Optional[BookingStatus]] = mapped_column(SqlEnum(BookingStatus), nullable=True)
    actor_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    payload: Mapped[dict] = mapped_column(JSON, default=dict)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, index=True)


class ConversionRate(Base):
    __tablename__ = "conversion_rates"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    currency: Mapped[str] = mapped_column(String(8), index=True)
    rate: Mapped[Decimal] = mapped_column(Numeric(20, 6))
    source: Mapped[str] = mapped_column(String(100), default="admin")
    effective_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, index=True)


class PropertyCalendar(Base):
    """One row per property; writers bump it to serialize calendar checks across processes."""

    __tablename__ = "property_calendars"

    property_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    version: Mapped[int] = mapped_column(Integer, default=0)
