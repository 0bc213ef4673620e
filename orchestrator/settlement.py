"""Reconciles client-reported transactions with chain confirmations.

A tenant reports a tx hash; the chain watcher later reports confirmation depth.
Only the watcher's report can finalize a payment, and only once.
"""
from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Callable, List, Optional

from sqlalchemy import or_, select
from sqlalchemy.orm import Session

from common.auth import Identity
from common.config import Settings, get_settings
from common.database import transaction
from common.errors import (
    ConflictError,
    ForbiddenError,
    InvalidTransitionError,
    NotFoundError,
    ValidationError,
)
from common.models import (
    Booking,
    BookingStatus,
    IntentStatus,
    PaymentIntent,
    SettlementRecord,
    SettlementStatus,
    utcnow,
)
from common.schemas import PaymentIntentRead, PaymentStatusRead, SettlementRead, TxHashSubmit

from .locks import booking_lock, lock_property_calendar, property_lock
from .payment_intents import active_intent
from .state_machine import (
    BookingStateMachine,
    TransitionEvent,
    ensure_participant,
    find_calendar_conflict,
    invalidate_active_intents,
    load_booking,
    record_event,
)
from .wallets import normalize_address, normalize_tx_hash, same_address

logger = logging.getLogger(__name__)


class SettlementReconciler:
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

    def _record_by_hash(self, tx_hash: str) -> Optional[SettlementRecord]:
        stmt = select(SettlementRecord).where(SettlementRecord.tx_hash == tx_hash)
        return self.db.execute(stmt).scalars().first()

    def submit_transaction(self, booking_id: str, actor: Identity, submission: TxHashSubmit) -> SettlementRecord:
        tx_hash = normalize_tx_hash(submission.tx_hash)
        with booking_lock(booking_id), transaction(self.db):
            booking = load_booking(self.db, booking_id, for_update=True)
            if actor.user_id != booking.tenant_id and not actor.is_admin:
                raise ForbiddenError("Only the tenant can report a payment transaction")
            existing = self._record_by_hash(tx_hash)
            if existing is not None:
                if existing.booking_id != booking.id:
                    raise ConflictError("Transaction already reported for another booking")
                return existing
            if booking.status is not BookingStatus.PENDING_PAYMENT:
                raise InvalidTransitionError(f"Booking is {booking.status.value}, not awaiting payment")

            now = self.clock()
            intent = active_intent(self.db, booking.id)
            if intent is None or intent.expires_at <= now:
                raise ConflictError("No active payment intent; request a new one before paying")
            if submission.chain_id is not None and submission.chain_id != intent.chain_id:
                raise ValidationError(f"Transaction is on chain {submission.chain_id}, expected {intent.chain_id}")
            if submission.wallet_address:
                sender = normalize_address(submission.wallet_address)
                if not same_address(sender, intent.payer_address):
                    raise ValidationError("Transaction sender does not match the intent's payer")

            stmt = select(SettlementRecord).where(
                SettlementRecord.booking_id == booking.id,
                SettlementRecord.status == SettlementStatus.SUBMITTED,
            )
            for previous in self.db.execute(stmt).scalars():
                previous.status = SettlementStatus.SUPERSEDED
            record = SettlementRecord(
                booking_id=booking.id,
                intent_id=intent.id,
                tx_hash=tx_hash,
                status=SettlementStatus.SUBMITTED,
                submitted_at=now,
                confirmations=0,
                needs_review=False,
            )
            self.db.add(record)
            booking.on_chain_tx_hash = tx_hash
            booking.updated_at = now
            self.db.flush()
            record_event(
                self.db,
                booking,
                "PAYMENT_SUBMITTED",
                actor_id=actor.user_id,
                payload={"tx_hash": tx_hash, "intent_id": intent.id},
                at=now,
            )
            logger.info("Booking %s: tx %s submitted", booking.id, tx_hash)
            return record

    def confirm(self, booking_id: str, tx_hash: str, confirmations: int) -> SettlementRecord:
        """Apply a chain watcher report; finalizes the booking once the threshold is met."""
        tx_hash = normalize_tx_hash(tx_hash)
        snapshot = load_booking(self.db, booking_id)
        calendar_conflict = False
        with booking_lock(booking_id), property_lock(snapshot.property_id), transaction(self.db):
            booking = load_booking(self.db, booking_id, for_update=True)
            record = self._record_by_hash(tx_hash)
            if record is None or record.booking_id != booking.id:
                raise NotFoundError(f"No submitted transaction {tx_hash} for booking {booking_id}")
            record.confirmations = max(record.confirmations, confirmations)
            if record.status is SettlementStatus.FINALIZED:
                return record
            if record.confirmations < self.settings.required_confirmations:
                return record

            if record.status is SettlementStatus.SUPERSEDED or booking.status is not BookingStatus.PENDING_PAYMENT:
                self._flag_for_review(booking, record, "confirmed transaction does not settle this booking")
                return record
            lock_property_calendar(self.db, booking.property_id)
            if find_calendar_conflict(
                self.db, booking.property_id, booking.check_in_date, booking.check_out_date, booking.id
            ):
                self._flag_for_review(booking, record, "dates were taken before the payment confirmed")
                calendar_conflict = True
            else:
                now = self.clock()
                record.status = SettlementStatus.FINALIZED
                record.finalized_at = now
                # intents re-issued after this one was paid must not invite a second payment
                invalidate_active_intents(self.db, booking.id)
                intent = self.db.get(PaymentIntent, record.intent_id)
                if intent is not None:
                    intent.status = IntentStatus.CONSUMED
                booking.on_chain_tx_hash = tx_hash
                self.machine.apply(
                    booking,
                    TransitionEvent.PAYMENT_CONFIRMED,
                    None,
                    {"tx_hash": tx_hash, "confirmations": record.confirmations},
                )
        if calendar_conflict:
            raise ConflictError("Property was booked for those dates before this payment confirmed")
        return record

    def _flag_for_review(self, booking: Booking, record: SettlementRecord, reason: str) -> None:
        if record.needs_review:
            return
        record.needs_review = True
        record_event(
            self.db,
            booking,
            "PAYMENT_NEEDS_REVIEW",
            payload={"tx_hash": record.tx_hash, "reason": reason},
            at=self.clock(),
        )
        logger.warning("Booking %s: tx %s flagged for review (%s)", booking.id, record.tx_hash, reason)

    def payment_status(self, booking_id: str, actor: Identity) -> PaymentStatusRead:
        booking = load_booking(self.db, booking_id)
        ensure_participant(booking, actor)
        now = self.clock()
        stmt = (
            select(SettlementRecord)
            .where(SettlementRecord.booking_id == booking_id)
            .order_by(SettlementRecord.submitted_at)
        )
        records = list(self.db.execute(stmt).scalars())
        latest = records[-1] if records else None
        intent = active_intent(self.db, booking_id)
        if intent is not None and intent.expires_at <= now:
            intent = None
        timeout = timedelta(minutes=self.settings.settlement_timeout_minutes)
        stale = (
            latest is not None
            and latest.status is SettlementStatus.SUBMITTED
            and latest.submitted_at + timeout <= now
        )
        return PaymentStatusRead(
            booking_id=booking.id,
            booking_status=booking.status,
            active_intent=PaymentIntentRead.model_validate(intent) if intent else None,
            latest_settlement=SettlementRead.model_validate(latest) if latest else None,
            settlements=[SettlementRead.model_validate(item) for item in records],
            stale=stale,
        )

    def lookup_transaction(self, tx_hash: str, actor: Identity) -> SettlementRecord:
        record = self._record_by_hash(normalize_tx_hash(tx_hash))
        if record is None:
            raise NotFoundError("Unknown transaction")
        ensure_participant(load_booking(self.db, record.booking_id), actor)
        return record

    def history(self, actor: Identity) -> List[SettlementRecord]:
        """Reported transactions on every booking the actor rents or hosts, newest first."""
        stmt = (
            select(SettlementRecord)
            .join(Booking, Booking.id == SettlementRecord.booking_id)
            .where(or_(Booking.tenant_id == actor.user_id, Booking.host_id == actor.user_id))
            .order_by(SettlementRecord.submitted_at.desc())
        )
        return list(self.db.execute(stmt).scalars())
