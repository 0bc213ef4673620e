"""Payment intents: the exact (recipient, payer, amount, chain) a tenant must pay."""
from __future__ import annotations

import logging
from contextlib import ExitStack
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Callable, List, Optional

from sqlalchemy import or_, select
from sqlalchemy.orm import Session

from common.auth import Identity
from common.clients import PropertyCatalogClient
from common.config import Settings, get_settings
from common.database import transaction
from common.errors import (
    ConflictError,
    ForbiddenError,
    InvalidPriceError,
    InvalidTransitionError,
    MissingWalletError,
    ValidationError,
)
from common.models import (
    PRE_PAYMENT_STATUSES,
    Booking,
    BookingStatus,
    ConversionRate,
    IntentStatus,
    PaymentIntent,
    utcnow,
)

from .locks import booking_lock
from .pricing import to_smallest_unit
from .state_machine import ensure_participant, find_calendar_conflict, load_booking, party_role, record_event
from .wallets import normalize_address, same_address

logger = logging.getLogger(__name__)


def current_rate(db: Session, settings: Settings) -> ConversionRate:
    """Latest admin-recorded rate, or an unsaved row carrying the configured default."""
    stmt = (
        select(ConversionRate)
        .where(ConversionRate.currency == settings.fiat_currency)
        .order_by(ConversionRate.effective_at.desc(), ConversionRate.id.desc())
    )
    row = db.execute(stmt).scalars().first()
    if row is not None:
        return row
    return ConversionRate(
        currency=settings.fiat_currency,
        rate=settings.default_conversion_rate,
        source="default",
        effective_at=None,
    )


def set_rate(db: Session, settings: Settings, rate: Decimal, source: str, at: datetime) -> ConversionRate:
    if rate <= 0:
        raise InvalidPriceError("Conversion rate must be greater than zero")
    with transaction(db):
        row = ConversionRate(currency=settings.fiat_currency, rate=rate, source=source, effective_at=at)
        db.add(row)
    logger.info("Conversion rate for %s set to %s by %s", settings.fiat_currency, rate, source)
    return row


def active_intent(db: Session, booking_id: str) -> Optional[PaymentIntent]:
    stmt = (
        select(PaymentIntent)
        .where(PaymentIntent.booking_id == booking_id, PaymentIntent.status == IntentStatus.ACTIVE)
        .order_by(PaymentIntent.created_at.desc())
    )
    return db.execute(stmt).scalars().first()


class PaymentIntentBuilder:
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

    def build(self, booking_id: str, actor: Identity) -> PaymentIntent:
        """Issue (or return the still-valid) payment intent for a booking awaiting payment."""
        snapshot = load_booking(self.db, booking_id)
        if actor.user_id != snapshot.tenant_id and not actor.is_admin:
            raise ForbiddenError("Only the tenant can request a payment intent")
        catalog_wallet = None
        if not snapshot.host_wallet_address and self.catalog is not None:
            catalog_wallet = self.catalog.get_property(snapshot.property_id).owner_wallet_address

        with booking_lock(booking_id), transaction(self.db):
            booking = load_booking(self.db, booking_id, for_update=True)
            if booking.status is not BookingStatus.PENDING_PAYMENT:
                raise InvalidTransitionError(f"Booking is {booking.status.value}, not awaiting payment")
            now = self.clock()
            existing = active_intent(self.db, booking.id)
            if existing is not None:
                if existing.expires_at > now:
                    return existing
                existing.status = IntentStatus.EXPIRED

            if not booking.tenant_wallet_address:
                raise MissingWalletError("Tenant has no wallet address on this booking")
            payer = normalize_address(booking.tenant_wallet_address, "tenantWalletAddress")
            if not booking.host_wallet_address and catalog_wallet:
                booking.host_wallet_address = normalize_address(catalog_wallet, "ownerWalletAddress")
            if not booking.host_wallet_address:
                raise MissingWalletError("Host has no wallet address to receive the payment")
            recipient = normalize_address(booking.host_wallet_address, "hostWalletAddress")
            if same_address(payer, recipient):
                raise ValidationError("Tenant and host wallets must differ")

            if find_calendar_conflict(
                self.db, booking.property_id, booking.check_in_date, booking.check_out_date, booking.id
            ):
                raise ConflictError("Property has been booked for those dates meanwhile")

            price = booking.final_price
            rate = current_rate(self.db, self.settings)
            amount = to_smallest_unit(price, rate.rate, self.settings.native_decimals)
            if amount <= 0:
                raise InvalidPriceError("Price converts to zero in the chain's smallest unit")
            intent = PaymentIntent(
                booking_id=booking.id,
                recipient_address=recipient,
                payer_address=payer,
                price=price,
                currency=self.settings.fiat_currency,
                amount_wei=str(amount),
                conversion_rate=rate.rate,
                rate_captured_at=rate.effective_at or now,
                chain_id=self.settings.chain_id,
                status=IntentStatus.ACTIVE,
                created_at=now,
                expires_at=now + timedelta(minutes=self.settings.payment_intent_ttl_minutes),
            )
            self.db.add(intent)
            self.db.flush()
            record_event(
                self.db,
                booking,
                "PAYMENT_INTENT_ISSUED",
                actor_id=actor.user_id,
                payload={"intent_id": intent.id, "amount_wei": intent.amount_wei, "rate": str(rate.rate)},
                at=now,
            )
            logger.info("Booking %s: intent %s for %s wei", booking.id, intent.id, intent.amount_wei)
            return intent

    def expire_due(self) -> int:
        now = self.clock()
        stmt = select(PaymentIntent).where(
            PaymentIntent.status == IntentStatus.ACTIVE, PaymentIntent.expires_at <= now
        )
        with transaction(self.db):
            expired = list(self.db.execute(stmt).scalars())
            for intent in expired:
                intent.status = IntentStatus.EXPIRED
        return len(expired)

    def register_wallet(
        self, actor: Identity, wallet_address: str, booking_id: Optional[str] = None
    ) -> tuple[str, List[str]]:
        """Attach a wallet to the actor's side of one or all of their unpaid bookings."""
        wallet = normalize_address(wallet_address)
        if wallet is None:
            raise ValidationError("walletAddress is required")
        if booking_id is not None:
            booking = load_booking(self.db, booking_id)
            ensure_participant(booking, actor)
            if party_role(booking, actor.user_id) is None:
                raise ForbiddenError("Only the tenant or the host can set a wallet on this booking")
            booking_ids = [booking_id]
        else:
            stmt = select(Booking.id).where(
                Booking.status.in_(PRE_PAYMENT_STATUSES),
                or_(Booking.tenant_id == actor.user_id, Booking.host_id == actor.user_id),
            )
            booking_ids = sorted(self.db.execute(stmt).scalars())

        updated: List[str] = []
        with ExitStack() as stack:
            for locked_id in booking_ids:
                stack.enter_context(booking_lock(locked_id))
            with transaction(self.db):
                for locked_id in booking_ids:
                    booking = load_booking(self.db, locked_id, for_update=True)
                    if booking.status not in PRE_PAYMENT_STATUSES:
                        raise InvalidTransitionError(f"Booking {booking.id} is already paid for")
                    field = "tenant_wallet_address" if actor.user_id == booking.tenant_id else "host_wallet_address"
                    if same_address(getattr(booking, field), wallet):
                        continue
                    intent = active_intent(self.db, booking.id)
                    if intent is not None and intent.expires_at > self.clock():
                        raise ConflictError(f"Booking {booking.id} has an active payment intent")
                    setattr(booking, field, wallet)
                    booking.updated_at = self.clock()
                    record_event(
                        self.db, booking, "WALLET_UPDATED", actor_id=actor.user_id, payload={field: wallet}
                    )
                    updated.append(booking.id)
        return wallet, updated
