"""Time-driven housekeeping: offer expiry, intent expiry and checkout auto-completion."""
from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Callable, Optional

from sqlalchemy.orm import Session

from common.config import Settings, get_settings
from common.database import SessionLocal
from common.models import utcnow
from common.schemas import SweepResult

from .checkout import CheckoutCoordinator
from .negotiation import NegotiationEngine
from .payment_intents import PaymentIntentBuilder
from .reclamations import reclamation_source_for

logger = logging.getLogger(__name__)


def run_sweep(
    db: Session,
    settings: Optional[Settings] = None,
    clock: Callable[[], datetime] = utcnow,
) -> SweepResult:
    settings = settings or get_settings()
    expired_offers, rejected = NegotiationEngine(db, settings, clock).expire_due()
    expired_intents = PaymentIntentBuilder(db, settings=settings, clock=clock).expire_due()
    coordinator = CheckoutCoordinator(db, reclamation_source_for(db, settings), settings, clock)
    completed, blocked = coordinator.auto_complete_due()
    return SweepResult(
        expired_offers=expired_offers,
        rejected_bookings=rejected,
        expired_intents=expired_intents,
        completed_bookings=completed,
        blocked_bookings=blocked,
    )


def _sweep_once() -> SweepResult:
    db = SessionLocal()
    try:
        return run_sweep(db)
    finally:
        db.close()


async def sweep_loop(stop_event: asyncio.Event, interval_seconds: float) -> None:
    while not stop_event.is_set():
        try:
            result = await asyncio.to_thread(_sweep_once)
        except Exception:
            logger.exception("Sweep failed")
        else:
            logger.debug("Sweep finished: %s", result.model_dump())
        try:
            await asyncio.wait_for(stop_event.wait(), timeout=interval_seconds)
        except asyncio.TimeoutError:
            continue
