"""Counter-offer exchange between tenant and host within the host's discount bound."""
from __future__ import annotations

import logging
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Callable, List, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from common.auth import Identity
from common.config import Settings, get_settings
from common.database import transaction
from common.errors import (
    ConflictError,
    ExpiredOfferError,
    ForbiddenError,
    InvalidTransitionError,
    NotFoundError,
)
from common.models import Booking, BookingStatus, NegotiationOffer, OfferStatus, utcnow

from .locks import booking_lock
from .offers import active_offer, store_offer
from .state_machine import (
    BookingStateMachine,
    TransitionEvent,
    ensure_participant,
    find_calendar_conflict,
    load_booking,
    party_role,
    record_event,
)

logger = logging.getLogger(__name__)


class NegotiationEngine:
    def __init__(
        self,
        db: Session,
        settings: Optional[Settings] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.db = db
        self.settings = settings or get_settings()
        self.clock = clock
        self.machine = BookingStateMachine(db, settings=self.settings, clock=clock)

    @property
    def grace(self) -> timedelta:
        return timedelta(hours=self.settings.negotiation_grace_hours)

    def list_offers(self, booking_id: str, actor: Identity) -> List[NegotiationOffer]:
        booking = load_booking(self.db, booking_id)
        ensure_participant(booking, actor)
        stmt = (
            select(NegotiationOffer)
            .where(NegotiationOffer.booking_id == booking_id)
            .order_by(NegotiationOffer.created_at)
        )
        return list(self.db.execute(stmt).scalars())

    def propose_counter(self, booking_id: str, actor: Identity, price: Decimal) -> NegotiationOffer:
        self.expire_stale(booking_id)
        with booking_lock(booking_id), transaction(self.db):
            booking = load_booking(self.db, booking_id, for_update=True)
            role = party_role(booking, actor.user_id)
            if role is None:
                raise ForbiddenError("Only the tenant or the host can negotiate this booking")
            if booking.status is not BookingStatus.PENDING_NEGOTIATION:
                raise InvalidTransitionError(f"Booking is {booking.status.value}, not open for negotiation")
            now = self.clock()
            offer = store_offer(
                self.db, booking, price, role, actor.user_id, now, self.settings.negotiation_offer_ttl_hours
            )
            booking.updated_at = now
            record_event(
                self.db,
                booking,
                "OFFER_PROPOSED",
                actor_id=actor.user_id,
                payload={"offer_id": offer.id, "price": str(price), "proposed_by": role.value},
                at=now,
            )
            logger.info("Booking %s: %s proposed %s", booking.id, role.value, price)
            return offer

    def accept(self, booking_id: str, actor: Identity) -> Booking:
        self.expire_stale(booking_id)
        with booking_lock(booking_id), transaction(self.db):
            booking = load_booking(self.db, booking_id, for_update=True)
            offer = self._answerable_offer(booking, actor)
            if find_calendar_conflict(self.db, booking.property_id, booking.check_in_date, booking.check_out_date):
                raise ConflictError("Property has been booked for those dates meanwhile")
            now = self.clock()
            offer.status = OfferStatus.ACCEPTED
            offer.resolved_at = now
            booking.requested_price = offer.proposed_price
            return self.machine.apply(
                booking,
                TransitionEvent.NEGOTIATION_RESOLVED,
                actor.user_id,
                {"offer_id": offer.id, "agreed_price": str(offer.proposed_price)},
            )

    def reject(self, booking_id: str, actor: Identity) -> Booking:
        self.expire_stale(booking_id)
        with booking_lock(booking_id), transaction(self.db):
            booking = load_booking(self.db, booking_id, for_update=True)
            offer = self._answerable_offer(booking, actor)
            offer.status = OfferStatus.REJECTED
            offer.resolved_at = self.clock()
            return self.machine.apply(booking, TransitionEvent.REJECTED, actor.user_id, {"offer_id": offer.id})

    def _answerable_offer(self, booking: Booking, actor: Identity) -> NegotiationOffer:
        if booking.status is not BookingStatus.PENDING_NEGOTIATION:
            raise InvalidTransitionError(f"Booking is {booking.status.value}, not open for negotiation")
        offer = active_offer(self.db, booking.id)
        if offer is None:
            raise NotFoundError("Booking has no active offer")
        role = party_role(booking, actor.user_id)
        if role is None or role is not offer.proposed_by.counterpart:
            raise ForbiddenError("Only the counterpart of the proposer can answer this offer")
        if self.clock() >= offer.expires_at:
            raise ExpiredOfferError("The active offer has expired; propose a new one")
        return offer

    def expire_stale(self, booking_id: str) -> bool:
        """Reject the booking if its negotiation ran past expiry plus grace."""
        with booking_lock(booking_id), transaction(self.db):
            booking = load_booking(self.db, booking_id, for_update=True)
            return self._expire_loaded(booking)

    def _expire_loaded(self, booking: Booking) -> bool:
        if booking.status is not BookingStatus.PENDING_NEGOTIATION:
            return False
        now = self.clock()
        offer = active_offer(self.db, booking.id)
        if offer is not None:
            deadline = offer.expires_at + self.grace
        else:
            # no live offer (e.g. dates changed); the last edit starts the clock
            deadline = booking.updated_at + timedelta(hours=self.settings.negotiation_offer_ttl_hours) + self.grace
        if now < deadline:
            return False
        if offer is not None:
            offer.status = OfferStatus.EXPIRED
            offer.resolved_at = now
        self.machine.apply(
            booking,
            TransitionEvent.REJECTED,
            None,
            {"reason": "negotiation_expired", "offer_id": offer.id if offer else None},
        )
        logger.info("Booking %s rejected after negotiation expired", booking.id)
        return True

    def expire_due(self) -> tuple[int, int]:
        """Sweep every negotiating booking; returns (expired offers, rejected bookings)."""
        stmt = select(Booking.id).where(Booking.status == BookingStatus.PENDING_NEGOTIATION)
        booking_ids = list(self.db.execute(stmt).scalars())
        expired_offers = rejected = 0
        for booking_id in booking_ids:
            with booking_lock(booking_id), transaction(self.db):
                booking = load_booking(self.db, booking_id, for_update=True)
                had_offer = active_offer(self.db, booking_id) is not None
                if self._expire_loaded(booking):
                    rejected += 1
                    expired_offers += int(had_offer)
        return expired_offers, rejected
