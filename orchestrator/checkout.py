"""Tenant checkout, host confirmation and dispute-gated completion."""
from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Callable, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from common.auth import Identity
from common.config import Settings, get_settings
from common.database import transaction
from common.errors import DependencyUnavailableError, DisputeBlockingError, ForbiddenError
from common.models import Booking, BookingStatus, utcnow

from .locks import booking_lock
from .reclamations import LocalReclamationSource, ReclamationSource, ensure_not_blocked
from .state_machine import BookingStateMachine, TransitionEvent, load_booking

logger = logging.getLogger(__name__)


class CheckoutCoordinator:
    def __init__(
        self,
        db: Session,
        reclamations: Optional[ReclamationSource] = None,
        settings: Optional[Settings] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.db = db
        self.reclamations = reclamations or LocalReclamationSource(db)
        self.settings = settings or get_settings()
        self.clock = clock
        self.machine = BookingStateMachine(db, settings=self.settings, clock=clock)

    def tenant_checkout(self, booking_id: str, actor: Identity) -> Booking:
        with booking_lock(booking_id), transaction(self.db):
            booking = load_booking(self.db, booking_id, for_update=True)
            if actor.user_id != booking.tenant_id:
                raise ForbiddenError("Only the tenant can check out")
            self.machine.apply(booking, TransitionEvent.TENANT_CHECKED_OUT, actor.user_id)
            booking.tenant_checked_out_at = booking.updated_at
            return booking

    def host_confirm_checkout(self, booking_id: str, actor: Identity) -> Booking:
        with booking_lock(booking_id), transaction(self.db):
            booking = load_booking(self.db, booking_id, for_update=True)
            if actor.user_id != booking.host_id and not actor.is_admin:
                raise ForbiddenError("Only the host can confirm the checkout")
            if booking.status is BookingStatus.TENANT_CHECKED_OUT:
                ensure_not_blocked(self.reclamations, booking)
            self.machine.apply(booking, TransitionEvent.CHECKOUT_CONFIRMED, actor.user_id)
            booking.completed_at = booking.updated_at
            return booking

    def auto_complete_due(self, now: Optional[datetime] = None) -> tuple[int, int]:
        """Complete checked-out stays the host never confirmed; returns (completed, blocked)."""
        cutoff = (now or self.clock()) - timedelta(hours=self.settings.checkout_grace_hours)
        stmt = select(Booking.id).where(
            Booking.status == BookingStatus.TENANT_CHECKED_OUT,
            Booking.tenant_checked_out_at <= cutoff,
        )
        completed = blocked = 0
        for booking_id in list(self.db.execute(stmt).scalars()):
            try:
                with booking_lock(booking_id), transaction(self.db):
                    booking = load_booking(self.db, booking_id, for_update=True)
                    if booking.status is not BookingStatus.TENANT_CHECKED_OUT:
                        continue
                    ensure_not_blocked(self.reclamations, booking)
                    self.machine.apply(
                        booking, TransitionEvent.CHECKOUT_CONFIRMED, None, {"reason": "checkout_grace_elapsed"}
                    )
                    booking.completed_at = booking.updated_at
                    completed += 1
            except DisputeBlockingError:
                blocked += 1
            except DependencyUnavailableError as exc:
                logger.warning("Skipping auto-completion of %s: %s", booking_id, exc.message)
                blocked += 1
        if completed or blocked:
            logger.info("Auto-completion: %d completed, %d held back", completed, blocked)
        return completed, blocked
