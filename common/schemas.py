"""Pydantic schemas shared across the microservices (camelCase on the wire)."""
from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from .models import (
    BookingStatus,
    IntentStatus,
    OfferStatus,
    PartyRole,
    ReclamationStatus,
    ReclamationType,
    SettlementStatus,
    Severity,
)


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, from_attributes=True)


class BookingCreate(CamelModel):
    property_id: str = Field(..., min_length=1, max_length=64)
    check_in_date: date
    check_out_date: date
    number_of_guests: int = Field(..., gt=0)
    requested_price: Optional[Decimal] = Field(None, gt=0)
    tenant_wallet_address: Optional[str] = None


class BookingUpdate(CamelModel):
    check_in_date: Optional[date] = None
    check_out_date: Optional[date] = None
    number_of_guests: Optional[int] = Field(None, gt=0)
    requested_price: Optional[Decimal] = Field(None, gt=0)
    tenant_wallet_address: Optional[str] = None


class BookingRead(CamelModel):
    id: str
    tenant_id: str
    host_id: str
    property_id: str
    check_in_date: date
    check_out_date: date
    nights: int
    number_of_guests: int
    nightly_price: Decimal
    base_price: Decimal
    discount_percent: Decimal
    negotiation_percent_bound: Decimal
    deposit_amount: Decimal
    requested_price: Optional[Decimal] = None
    final_price: Decimal
    status: BookingStatus
    tenant_wallet_address: Optional[str] = None
    host_wallet_address: Optional[str] = None
    on_chain_tx_hash: Optional[str] = None
    tenant_checked_out_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime


class BookingAwaitRead(CamelModel):
    booking: BookingRead
    matched: bool
    timed_out: bool


class CounterOfferCreate(CamelModel):
    price: Decimal = Field(..., gt=0)


class OfferRead(CamelModel):
    id: str
    booking_id: str
    proposed_price: Decimal
    proposed_by: PartyRole
    negotiation_percent_bound: Decimal
    status: OfferStatus
    created_at: datetime
    expires_at: datetime
    resolved_at: Optional[datetime] = None


class OfferResult(OfferRead):
    booking: BookingRead


class BookingEventRead(CamelModel):
    id: int
    booking_id: str
    event_type: str
    from_status: Optional[BookingStatus] = None
    to_status: Optional[BookingStatus] = None
    actor_id: Optional[str] = None
    payload: dict
    created_at: datetime


class PaymentIntentCreate(CamelModel):
    booking_id: str


class PaymentIntentRead(CamelModel):
    id: str
    booking_id: str
    recipient_address: str
    payer_address: str
    price: Decimal
    currency: str
    amount_wei: str
    conversion_rate: Decimal
    rate_captured_at: datetime
    chain_id: int
    status: IntentStatus
    created_at: datetime
    expires_at: datetime


class PaymentIntentResult(PaymentIntentRead):
    booking: BookingRead


class TxHashSubmit(CamelModel):
    tx_hash: str
    chain_id: Optional[int] = None
    wallet_address: Optional[str] = None


class ChainConfirmation(CamelModel):
    booking_id: str
    tx_hash: str
    confirmations: int = Field(..., ge=0)


class SettlementRead(CamelModel):
    id: str
    booking_id: str
    intent_id: str
    tx_hash: str
    status: SettlementStatus
    submitted_at: datetime
    confirmations: int
    finalized_at: Optional[datetime] = None
    needs_review: bool


class SettlementResult(SettlementRead):
    """A settlement record together with the booking state it produced."""

    booking: BookingRead


class PaymentStatusRead(CamelModel):
    booking_id: str
    booking_status: BookingStatus
    active_intent: Optional[PaymentIntentRead] = None
    latest_settlement: Optional[SettlementRead] = None
    settlements: List[SettlementRead] = Field(default_factory=list)
    stale: bool = False


class WalletAddressUpdate(CamelModel):
    wallet_address: str
    booking_id: Optional[str] = None


class WalletUpdateResult(CamelModel):
    wallet_address: str
    updated_bookings: List[str]


class ConversionRateCreate(CamelModel):
    rate: Decimal = Field(..., gt=0)
    source: str = Field("admin", max_length=100)


class ConversionRateRead(CamelModel):
    currency: str
    rate: Decimal
    source: str
    effective_at: Optional[datetime] = None


class ReclamationCreate(CamelModel):
    booking_id: str
    type: ReclamationType
    title: str = Field(..., min_length=3, max_length=200)
    description: str = Field("", max_length=5000)


class ReclamationUpdate(CamelModel):
    title: Optional[str] = Field(None, min_length=3, max_length=200)
    description: Optional[str] = Field(None, max_length=5000)


class ReclamationRead(CamelModel):
    id: str
    booking_id: str
    complainant_id: str
    complainant_role: PartyRole
    respondent_id: str
    type: ReclamationType
    title: str
    description: str
    status: ReclamationStatus
    severity: Optional[Severity] = None
    refund_amount: Optional[Decimal] = None
    penalty_points: Optional[int] = None
    resolution_note: Optional[str] = None
    created_at: datetime
    updated_at: datetime
    resolved_at: Optional[datetime] = None


class ReclamationMessageCreate(CamelModel):
    message: str = Field(..., min_length=1, max_length=2000)


class ReclamationMessageRead(CamelModel):
    id: str
    reclamation_id: str
    author_id: str
    body: str
    created_at: datetime


class ReclamationStatusUpdate(CamelModel):
    status: ReclamationStatus
    severity: Optional[Severity] = None
    resolution_note: Optional[str] = Field(None, max_length=5000)


class ReclamationBookingStatus(CamelModel):
    booking_id: str
    blocking: bool
    open_reclamations: int


class ReclamationStatistics(CamelModel):
    total: int
    by_status: Dict[str, int]
    by_type: Dict[str, int]
    total_refunded: Decimal
    total_penalty_points: int


class SweepResult(CamelModel):
    expired_offers: int = 0
    rejected_bookings: int = 0
    expired_intents: int = 0
    completed_bookings: int = 0
    blocked_bookings: int = 0
