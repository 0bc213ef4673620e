"""Storage rules for the negotiation offer slot (last writer wins, history kept)."""
from __future__ import annotations

from datetime import datetime, timedelta
from decimal import Decimal
from typing import Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from common.models import Booking, NegotiationOffer, OfferStatus, PartyRole

from .pricing import validate_offer_price


def active_offer(db: Session, booking_id: str) -> Optional[NegotiationOffer]:
    stmt = (
        select(NegotiationOffer)
        .where(NegotiationOffer.booking_id == booking_id, NegotiationOffer.status == OfferStatus.ACTIVE)
        .order_by(NegotiationOffer.created_at.desc())
    )
    return db.execute(stmt).scalars().first()


def store_offer(
    db: Session,
    booking: Booking,
    price: Decimal,
    proposed_by: PartyRole,
    proposer_id: str,
    now: datetime,
    ttl_hours: int,
) -> NegotiationOffer:
    validate_offer_price(price, booking.base_price, booking.negotiation_percent_bound)
    offer = NegotiationOffer(
        booking_id=booking.id,
        proposed_price=price,
        proposed_by=proposed_by,
        proposer_id=proposer_id,
        negotiation_percent_bound=booking.negotiation_percent_bound,
        status=OfferStatus.ACTIVE,
        created_at=now,
        expires_at=now + timedelta(hours=ttl_hours),
    )
    current = active_offer(db, booking.id)
    if current is not None:
        if current.created_at > now:
            # the slot already holds a later offer; keep this one only as history
            offer.status = OfferStatus.SUPERSEDED
            offer.resolved_at = now
        else:
            current.status = OfferStatus.SUPERSEDED
            current.resolved_at = now
    db.add(offer)
    db.flush()
    return offer


def close_active_offers(db: Session, booking_id: str, status: OfferStatus, now: datetime) -> int:
    stmt = select(NegotiationOffer).where(
        NegotiationOffer.booking_id == booking_id, NegotiationOffer.status == OfferStatus.ACTIVE
    )
    closed = 0
    for offer in db.execute(stmt).scalars():
        offer.status = status
        offer.resolved_at = now
        closed += 1
    return closed
