"""Booking lifecycle: the legal transition table and the operations that drive it.

Every status change goes through `BookingStateMachine.apply`, which appends a
`BookingEvent` row and queues a domain event in the same unit of work.
"""
from __future__ import annotations

import logging
from datetime import date, datetime
from enum import Enum
from typing import Any, Callable, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from common.auth import Identity
from common.clients import PropertyCatalogClient
from common.config import Settings, get_settings
from common.database import transaction
from common.errors import (
    ConflictError,
    ForbiddenError,
    InvalidTransitionError,
    NotFoundError,
    ValidationError,
)
from common.events import DomainEvent, queue_event
from common.models import (
    CALENDAR_HOLDING_STATUSES,
    PRE_PAYMENT_STATUSES,
    TERMINAL_STATUSES,
    Booking,
    BookingEvent,
    BookingStatus,
    IntentStatus,
    OfferStatus,
    PartyRole,
    PaymentIntent,
    SettlementRecord,
    SettlementStatus,
    utcnow,
)
from common.schemas import BookingCreate, BookingUpdate

from .locks import booking_lock, lock_property_calendar, property_lock
from .offers import close_active_offers, store_offer
from .pricing import quote_stay
from .wallets import normalize_address

logger = logging.getLogger(__name__)


class TransitionEvent(str, Enum):
    START_NEGOTIATION = "START_NEGOTIATION"
    PRICE_FIXED = "PRICE_FIXED"
    NEGOTIATION_RESOLVED = "NEGOTIATION_RESOLVED"
    PAYMENT_CONFIRMED = "PAYMENT_CONFIRMED"
    TENANT_CHECKED_OUT = "TENANT_CHECKED_OUT"
    CHECKOUT_CONFIRMED = "CHECKOUT_CONFIRMED"
    REJECTED = "REJECTED"
    CANCELLED = "CANCELLED"


TRANSITIONS: dict[tuple[BookingStatus, TransitionEvent], BookingStatus] = {
    (BookingStatus.REQUESTED, TransitionEvent.START_NEGOTIATION): BookingStatus.PENDING_NEGOTIATION,
    (BookingStatus.REQUESTED, TransitionEvent.PRICE_FIXED): BookingStatus.PENDING_PAYMENT,
    (BookingStatus.PENDING_NEGOTIATION, TransitionEvent.NEGOTIATION_RESOLVED): BookingStatus.PENDING_PAYMENT,
    (BookingStatus.PENDING_PAYMENT, TransitionEvent.PAYMENT_CONFIRMED): BookingStatus.CONFIRMED,
    (BookingStatus.CONFIRMED, TransitionEvent.TENANT_CHECKED_OUT): BookingStatus.TENANT_CHECKED_OUT,
    (BookingStatus.TENANT_CHECKED_OUT, TransitionEvent.CHECKOUT_CONFIRMED): BookingStatus.COMPLETED,
    (BookingStatus.REQUESTED, TransitionEvent.REJECTED): BookingStatus.REJECTED,
    (BookingStatus.PENDING_NEGOTIATION, TransitionEvent.REJECTED): BookingStatus.REJECTED,
}
for _status in BookingStatus:
    if _status not in TERMINAL_STATUSES:
        TRANSITIONS[(_status, TransitionEvent.CANCELLED)] = BookingStatus.CANCELLED


def load_booking(db: Session, booking_id: str, *, for_update: bool = False) -> Booking:
    stmt = select(Booking).where(Booking.id == booking_id).execution_options(populate_existing=True)
    if for_update:
        stmt = stmt.with_for_update()
    booking = db.execute(stmt).scalar_one_or_none()
    if booking is None:
        raise NotFoundError(f"Booking {booking_id} not found")
    return booking


def find_calendar_conflict(
    db: Session,
    property_id: str,
    check_in: date,
    check_out: date,
    exclude_booking_id: Optional[str] = None,
) -> Optional[Booking]:
    """First confirmed stay on the property overlapping [check_in, check_out)."""
    stmt = select(Booking).where(
        Booking.property_id == property_id,
        Booking.status.in_(CALENDAR_HOLDING_STATUSES),
        Booking.check_in_date < check_out,
        Booking.check_out_date > check_in,
    )
    if exclude_booking_id:
        stmt = stmt.where(Booking.id != exclude_booking_id)
    return db.execute(stmt).scalars().first()


def record_event(
    db: Session,
    booking: Booking,
    event_type: str,
    *,
    actor_id: Optional[str] = None,
    from_status: Optional[BookingStatus] = None,
    to_status: Optional[BookingStatus] = None,
    payload: Optional[dict[str, Any]] = None,
    at: Optional[datetime] = None,
) -> BookingEvent:
    data = dict(payload or {})
    row = BookingEvent(
        booking_id=booking.id,
        event_type=event_type,
        from_status=from_status,
        to_status=to_status,
        actor_id=actor_id,
        payload=data,
        created_at=at or utcnow(),
    )
    db.add(row)
    event_data = {"status": booking.status.value, **data}
    if from_status is not None:
        event_data["from_status"] = from_status.value
    queue_event(db, DomainEvent(event_type=event_type, booking_id=booking.id, data=event_data))
    return row


def invalidate_active_intents(db: Session, booking_id: str, status: IntentStatus = IntentStatus.INVALIDATED) -> int:
    stmt = select(PaymentIntent).where(
        PaymentIntent.booking_id == booking_id, PaymentIntent.status == IntentStatus.ACTIVE
    )
    changed = 0
    for intent in db.execute(stmt).scalars():
        intent.status = status
        changed += 1
    return changed


def has_pending_settlement(db: Session, booking_id: str) -> bool:
    stmt = select(SettlementRecord.id).where(
        SettlementRecord.booking_id == booking_id, SettlementRecord.status == SettlementStatus.SUBMITTED
    )
    return db.execute(stmt).first() is not None


def party_role(booking: Booking, user_id: str) -> Optional[PartyRole]:
    if user_id == booking.tenant_id:
        return PartyRole.TENANT
    if user_id == booking.host_id:
        return PartyRole.HOST
    return None


def ensure_participant(booking: Booking, identity: Identity) -> None:
    if identity.is_admin or party_role(booking, identity.user_id) is not None:
        return
    raise ForbiddenError("Only the booking's tenant, host or an admin may access it")


class BookingStateMachine:
    def __init__(
        self,
        db: Session,
        catalog: Optional[PropertyCatalogClient] = None,
        settings: Optional[Settings] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.db = db
        self.catalog = catalog
        self.settings = settings or get_settings()
        self.clock = clock

    def _require_catalog(self) -> PropertyCatalogClient:
        if self.catalog is None:
            raise RuntimeError("BookingStateMachine needs a property catalog for this operation")
        return self.catalog

    def apply(
        self,
        booking: Booking,
        event: TransitionEvent,
        actor_id: Optional[str] = None,
        payload: Optional[dict[str, Any]] = None,
    ) -> Booking:
        """Move a loaded booking along one edge; the caller owns lock and transaction."""
        current = booking.status
        target = TRANSITIONS.get((current, event))
        if target is None:
            raise InvalidTransitionError(f"Cannot apply {event.value} to a booking in {current.value}")
        now = self.clock()
        booking.status = target
        booking.updated_at = now
        record_event(
            self.db,
            booking,
            event.value,
            actor_id=actor_id,
            from_status=current,
            to_status=target,
            payload=payload,
            at=now,
        )
        logger.info("Booking %s: %s -> %s (%s)", booking.id, current.value, target.value, event.value)
        return booking

    def transition(
        self,
        booking_id: str,
        event: TransitionEvent,
        actor_id: Optional[str] = None,
        payload: Optional[dict[str, Any]] = None,
    ) -> Booking:
        with booking_lock(booking_id), transaction(self.db):
            booking = load_booking(self.db, booking_id, for_update=True)
            return self.apply(booking, event, actor_id, payload)

    def create(self, request: BookingCreate, tenant: Identity) -> Booking:
        if request.check_out_date <= request.check_in_date:
            raise ValidationError("checkOutDate must be after checkInDate")
        if request.check_in_date < self.clock().date():
            raise ValidationError("checkInDate cannot be in the past")

        prop = self._require_catalog().get_property(request.property_id)
        if prop.owner_id == tenant.user_id:
            raise ForbiddenError("Hosts cannot book their own property")
        if request.number_of_guests > prop.capacity:
            raise ValidationError(f"Property accepts at most {prop.capacity} guests")

        tenant_wallet = normalize_address(request.tenant_wallet_address, "tenantWalletAddress")
        try:
            host_wallet = normalize_address(prop.owner_wallet_address, "ownerWalletAddress")
        except ValidationError:
            logger.warning("Property %s carries a malformed owner wallet; booking without it", prop.id)
            host_wallet = None

        quote = quote_stay(prop, request.check_in_date, request.check_out_date)
        bound = prop.negotiation_percentage
        negotiate = bound > 0 and request.requested_price is not None and request.requested_price < quote.base_price

        with property_lock(prop.id), transaction(self.db):
            lock_property_calendar(self.db, prop.id)
            if find_calendar_conflict(self.db, prop.id, request.check_in_date, request.check_out_date):
                raise ConflictError("Property is already booked for those dates")
            now = self.clock()
            booking = Booking(
                tenant_id=tenant.user_id,
                host_id=prop.owner_id,
                property_id=prop.id,
                check_in_date=request.check_in_date,
                check_out_date=request.check_out_date,
                number_of_guests=request.number_of_guests,
                nightly_price=quote.nightly_price,
                base_price=quote.base_price,
                discount_percent=quote.discount_percent,
                negotiation_percent_bound=bound,
                deposit_amount=prop.deposit_amount,
                requested_price=None,
                status=BookingStatus.REQUESTED,
                tenant_wallet_address=tenant_wallet,
                host_wallet_address=host_wallet,
                created_at=now,
                updated_at=now,
            )
            self.db.add(booking)
            self.db.flush()
            record_event(
                self.db,
                booking,
                "BOOKING_REQUESTED",
                actor_id=tenant.user_id,
                to_status=BookingStatus.REQUESTED,
                payload={"base_price": str(quote.base_price), "nights": quote.nights},
                at=now,
            )
            if negotiate:
                store_offer(
                    self.db,
                    booking,
                    request.requested_price,
                    PartyRole.TENANT,
                    tenant.user_id,
                    now,
                    self.settings.negotiation_offer_ttl_hours,
                )
                self.apply(
                    booking,
                    TransitionEvent.START_NEGOTIATION,
                    tenant.user_id,
                    {"opening_offer": str(request.requested_price)},
                )
            else:
                self.apply(booking, TransitionEvent.PRICE_FIXED, tenant.user_id)
        return booking

    def cancel(self, booking_id: str, actor: Identity) -> Booking:
        with booking_lock(booking_id), transaction(self.db):
            booking = load_booking(self.db, booking_id, for_update=True)
            ensure_participant(booking, actor)
            if booking.status in TERMINAL_STATUSES and booking.status is not BookingStatus.COMPLETED:
                raise InvalidTransitionError(f"Booking is already {booking.status.value}")
            if booking.status not in PRE_PAYMENT_STATUSES:
                raise ForbiddenError("A booking can no longer be cancelled once payment is confirmed")
            if not actor.is_admin and has_pending_settlement(self.db, booking.id):
                raise ConflictError("A payment transaction is pending; only an admin may cancel now")
            now = self.clock()
            close_active_offers(self.db, booking.id, OfferStatus.REJECTED, now)
            invalidate_active_intents(self.db, booking.id)
            booking.cancelled_by = actor.user_id
            return self.apply(booking, TransitionEvent.CANCELLED, actor.user_id)

    def update(self, booking_id: str, actor: Identity, changes: BookingUpdate) -> Booking:
        data = changes.model_dump(exclude_unset=True)
        snapshot = load_booking(self.db, booking_id)
        if actor.user_id != snapshot.tenant_id and not actor.is_admin:
            raise ForbiddenError("Only the tenant may edit this booking")

        check_in = data.get("check_in_date") or snapshot.check_in_date
        check_out = data.get("check_out_date") or snapshot.check_out_date
        dates_changed = check_in != snapshot.check_in_date or check_out != snapshot.check_out_date
        guests_changed = data.get("number_of_guests") not in (None, snapshot.number_of_guests)
        prop = None
        if dates_changed or guests_changed:
            if check_out <= check_in:
                raise ValidationError("checkOutDate must be after checkInDate")
            if dates_changed and check_in < self.clock().date():
                raise ValidationError("checkInDate cannot be in the past")
            prop = self._require_catalog().get_property(snapshot.property_id)

        with booking_lock(booking_id), property_lock(snapshot.property_id), transaction(self.db):
            booking = load_booking(self.db, booking_id, for_update=True)
            if booking.status not in (BookingStatus.PENDING_NEGOTIATION, BookingStatus.PENDING_PAYMENT):
                raise InvalidTransitionError(f"A booking in {booking.status.value} cannot be edited")
            if has_pending_settlement(self.db, booking.id):
                raise ConflictError("A payment transaction is pending for this booking")
            negotiating = booking.status is BookingStatus.PENDING_NEGOTIATION
            if data.get("requested_price") is not None and not negotiating:
                raise ValidationError("requestedPrice can only change while the price is being negotiated")

            now = self.clock()
            changed: dict[str, Any] = {}
            if prop is not None:
                if dates_changed and not negotiating and booking.requested_price is not None:
                    raise ConflictError("Dates cannot change after a negotiated price was agreed")
                guests = data.get("number_of_guests") or booking.number_of_guests
                if guests > prop.capacity:
                    raise ValidationError(f"Property accepts at most {prop.capacity} guests")
                if dates_changed:
                    lock_property_calendar(self.db, booking.property_id)
                    if find_calendar_conflict(self.db, booking.property_id, check_in, check_out, booking.id):
                        raise ConflictError("Property is already booked for those dates")
                    quote = quote_stay(prop, check_in, check_out)
                    booking.check_in_date = check_in
                    booking.check_out_date = check_out
                    booking.nightly_price = quote.nightly_price
                    booking.base_price = quote.base_price
                    booking.discount_percent = quote.discount_percent
                    changed.update(
                        check_in_date=check_in.isoformat(),
                        check_out_date=check_out.isoformat(),
                        base_price=str(quote.base_price),
                    )
                    if negotiating:
                        close_active_offers(self.db, booking.id, OfferStatus.SUPERSEDED, now)
                    else:
                        invalidate_active_intents(self.db, booking.id)
                booking.number_of_guests = guests
                changed["number_of_guests"] = guests

            if "tenant_wallet_address" in data:
                wallet = normalize_address(data["tenant_wallet_address"], "tenantWalletAddress")
                if wallet != booking.tenant_wallet_address:
                    if self._has_active_intent(booking.id):
                        raise ConflictError("Wallet cannot change while a payment intent is active")
                    booking.tenant_wallet_address = wallet
                    changed["tenant_wallet_address"] = wallet

            if data.get("requested_price") is not None:
                offer = store_offer(
                    self.db,
                    booking,
                    data["requested_price"],
                    PartyRole.TENANT,
                    actor.user_id,
                    now,
                    self.settings.negotiation_offer_ttl_hours,
                )
                changed["offer_id"] = offer.id
                changed["proposed_price"] = str(offer.proposed_price)

            booking.updated_at = now
            record_event(self.db, booking, "BOOKING_UPDATED", actor_id=actor.user_id, payload=changed, at=now)
            return booking

    def _has_active_intent(self, booking_id: str) -> bool:
        stmt = select(PaymentIntent.id).where(
            PaymentIntent.booking_id == booking_id,
            PaymentIntent.status == IntentStatus.ACTIVE,
            PaymentIntent.expires_at > self.clock(),
        )
        return self.db.execute(stmt).first() is not None
