"""Post-stay complaints (reclamations), their refund/penalty policy and dispute gating."""
from __future__ import annotations

import logging
from collections import Counter
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from functools import lru_cache
from typing import Callable, List, Optional, Protocol

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from common.auth import Identity
from common.clients import ServiceClient
from common.config import Settings, get_settings
from common.database import transaction
from common.errors import (
    ConflictError,
    DependencyUnavailableError,
    DisputeBlockingError,
    ForbiddenError,
    InvalidTransitionError,
    NotFoundError,
    ValidationError,
)
from common.models import (
    BLOCKING_RECLAMATION_STATUSES,
    Booking,
    BookingStatus,
    PartyRole,
    Reclamation,
    ReclamationMessage,
    ReclamationStatus,
    ReclamationType,
    Severity,
    utcnow,
)
from common.schemas import (
    ReclamationBookingStatus,
    ReclamationCreate,
    ReclamationStatistics,
    ReclamationStatusUpdate,
    ReclamationUpdate,
)

from .locks import booking_lock
from .state_machine import ensure_participant, load_booking, party_role, record_event

logger = logging.getLogger(__name__)

CENTS = Decimal("0.01")
HOST_SHARE = Decimal("0.9")

GUEST_TYPES = frozenset(
    {
        ReclamationType.ACCESS_ISSUE,
        ReclamationType.NOT_AS_DESCRIBED,
        ReclamationType.CLEANLINESS,
        ReclamationType.SAFETY_HEALTH,
    }
)
HOST_TYPES = frozenset(set(ReclamationType) - GUEST_TYPES)

FILEABLE_STATUSES = frozenset({BookingStatus.CONFIRMED, BookingStatus.TENANT_CHECKED_OUT, BookingStatus.COMPLETED})

# share of the rent (guest complaints) or of the deposit (host complaints), and penalty points
_SEVERITY_TABLE: dict[ReclamationType, dict[Severity, tuple[str, int]]] = {
    ReclamationType.CLEANLINESS: {
        Severity.LOW: ("0.05", 0),
        Severity.MEDIUM: ("0.125", 2),
        Severity.HIGH: ("0.325", 5),
        Severity.CRITICAL: ("0.50", 10),
    },
    ReclamationType.SAFETY_HEALTH: {
        Severity.LOW: ("0.10", 3),
        Severity.MEDIUM: ("0.30", 7),
        Severity.HIGH: ("0.70", 15),
        Severity.CRITICAL: ("1.00", 25),
    },
    ReclamationType.PROPERTY_DAMAGE: {
        Severity.LOW: ("0.075", 2),
        Severity.MEDIUM: ("0.30", 5),
        Severity.HIGH: ("0.70", 10),
        Severity.CRITICAL: ("1.00", 15),
    },
    ReclamationType.EXTRA_CLEANING: {
        Severity.LOW: ("0.075", 1),
        Severity.MEDIUM: ("0.20", 3),
        Severity.HIGH: ("0.40", 5),
        Severity.CRITICAL: ("0.70", 8),
    },
    ReclamationType.HOUSE_RULE_VIOLATION: {
        Severity.LOW: ("0", 2),
        Severity.MEDIUM: ("0.15", 5),
        Severity.HIGH: ("0.50", 10),
        Severity.CRITICAL: ("1.00", 15),
    },
    ReclamationType.UNAUTHORIZED_GUESTS_OR_STAY: {
        Severity.LOW: ("0.10", 3),
        Severity.MEDIUM: ("0.325", 7),
        Severity.HIGH: ("0.70", 12),
        Severity.CRITICAL: ("1.00", 20),
    },
}

_FULL_REFUND_PENALTY = 10


def allowed_types(role: PartyRole) -> frozenset[ReclamationType]:
    return GUEST_TYPES if role is PartyRole.TENANT else HOST_TYPES


def compute_outcome(
    reclamation_type: ReclamationType,
    severity: Severity,
    rent: Decimal,
    deposit: Decimal,
) -> tuple[Decimal, int]:
    """Refund owed to the complainant and penalty points for the respondent.

    Guest refunds are taken from the host's share of the rent (90%); access and
    description failures refund that share in full plus the deposit. Host
    refunds are a share of the deposit.
    """
    if reclamation_type in (ReclamationType.ACCESS_ISSUE, ReclamationType.NOT_AS_DESCRIBED):
        refund = rent * HOST_SHARE + deposit
        return refund.quantize(CENTS, rounding=ROUND_HALF_UP), _FULL_REFUND_PENALTY
    share, points = _SEVERITY_TABLE[reclamation_type][severity]
    if reclamation_type in GUEST_TYPES:
        refund = rent * Decimal(share) * HOST_SHARE
    else:
        refund = deposit * Decimal(share)
    return refund.quantize(CENTS, rounding=ROUND_HALF_UP), points


class ReclamationSource(Protocol):
    def blocking_status(self, booking_id: str) -> ReclamationBookingStatus: ...


class LocalReclamationSource:
    """Reads dispute state from the reclamations table in this database."""

    def __init__(self, db: Session) -> None:
        self.db = db

    def blocking_status(self, booking_id: str) -> ReclamationBookingStatus:
        stmt = select(func.count(Reclamation.id)).where(
            Reclamation.booking_id == booking_id,
            Reclamation.status.in_(BLOCKING_RECLAMATION_STATUSES),
        )
        count = self.db.execute(stmt).scalar_one()
        return ReclamationBookingStatus(booking_id=booking_id, blocking=count > 0, open_reclamations=count)


class HttpReclamationSource:
    """Asks a remote reclamation service; unavailability is reported, never assumed clear."""

    def __init__(self, client: ServiceClient) -> None:
        self.client = client

    def blocking_status(self, booking_id: str) -> ReclamationBookingStatus:
        payload = self.client.get_json(f"/reclamations/booking/{booking_id}/status")
        try:
            return ReclamationBookingStatus.model_validate(payload)
        except ValueError as exc:
            raise DependencyUnavailableError("Reclamation service returned a malformed status") from exc


@lru_cache
def _remote_source(url: str, timeout: float, max_attempts: int, backoff: float, service_key: str) -> HttpReclamationSource:
    client = ServiceClient(
        "reclamations",
        url,
        timeout=timeout,
        max_attempts=max_attempts,
        backoff_seconds=backoff,
        headers={"X-Service-Key": service_key},
    )
    return HttpReclamationSource(client)


def reclamation_source_for(db: Session, settings: Settings) -> ReclamationSource:
    if not settings.reclamations_service_url:
        return LocalReclamationSource(db)
    # one client per configuration so the circuit breaker state survives across requests
    return _remote_source(
        settings.reclamations_service_url,
        settings.dependency_timeout_seconds,
        settings.dependency_max_attempts,
        settings.dependency_backoff_seconds,
        settings.service_api_key,
    )


class ReclamationService:
    def __init__(
        self,
        db: Session,
        settings: Optional[Settings] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.db = db
        self.settings = settings or get_settings()
        self.clock = clock

    def file(self, actor: Identity, payload: ReclamationCreate) -> Reclamation:
        with booking_lock(payload.booking_id), transaction(self.db):
            booking = load_booking(self.db, payload.booking_id, for_update=True)
            role = party_role(booking, actor.user_id)
            if role is None:
                raise ForbiddenError("Only the tenant or the host of a booking can file a reclamation")
            if booking.status not in FILEABLE_STATUSES:
                raise InvalidTransitionError(f"Reclamations cannot be filed on a {booking.status.value} booking")
            if payload.type not in allowed_types(role):
                raise ValidationError(f"A {role.value.lower()} cannot file a {payload.type.value} reclamation")
            stmt = select(Reclamation.id).where(
                Reclamation.booking_id == booking.id,
                Reclamation.complainant_id == actor.user_id,
                Reclamation.status.in_(BLOCKING_RECLAMATION_STATUSES),
            )
            if self.db.execute(stmt).first() is not None:
                raise ConflictError("You already have an open reclamation on this booking")
            now = self.clock()
            reclamation = Reclamation(
                booking_id=booking.id,
                complainant_id=actor.user_id,
                complainant_role=role,
                respondent_id=booking.host_id if role is PartyRole.TENANT else booking.tenant_id,
                type=payload.type,
                title=payload.title,
                description=payload.description,
                status=ReclamationStatus.OPEN,
                created_at=now,
                updated_at=now,
            )
            self.db.add(reclamation)
            self.db.flush()
            record_event(
                self.db,
                booking,
                "RECLAMATION_FILED",
                actor_id=actor.user_id,
                payload={"reclamation_id": reclamation.id, "type": payload.type.value},
                at=now,
            )
            logger.info("Booking %s: %s filed %s", booking.id, role.value, payload.type.value)
            return reclamation

    def _require(self, reclamation_id: str) -> Reclamation:
        reclamation = self.db.get(Reclamation, reclamation_id)
        if reclamation is None:
            raise NotFoundError("Reclamation not found")
        return reclamation

    def get(self, reclamation_id: str, actor: Identity) -> Reclamation:
        reclamation = self._require(reclamation_id)
        if not actor.is_admin and actor.user_id not in (reclamation.complainant_id, reclamation.respondent_id):
            raise ForbiddenError("Access denied")
        return reclamation

    def list_for_booking(self, booking_id: str, actor: Identity) -> List[Reclamation]:
        ensure_participant(load_booking(self.db, booking_id), actor)
        stmt = select(Reclamation).where(Reclamation.booking_id == booking_id).order_by(Reclamation.created_at)
        return list(self.db.execute(stmt).scalars())

    def list_filed_by(self, actor: Identity) -> List[Reclamation]:
        stmt = (
            select(Reclamation)
            .where(Reclamation.complainant_id == actor.user_id)
            .order_by(Reclamation.created_at.desc())
        )
        return list(self.db.execute(stmt).scalars())

    def list_against(self, actor: Identity) -> List[Reclamation]:
        stmt = (
            select(Reclamation)
            .where(Reclamation.respondent_id == actor.user_id)
            .order_by(Reclamation.created_at.desc())
        )
        return list(self.db.execute(stmt).scalars())

    def list_all(self, status: Optional[ReclamationStatus] = None) -> List[Reclamation]:
        stmt = select(Reclamation).order_by(Reclamation.created_at.desc())
        if status is not None:
            stmt = stmt.where(Reclamation.status == status)
        return list(self.db.execute(stmt).scalars())

    def edit(self, reclamation_id: str, actor: Identity, changes: ReclamationUpdate) -> Reclamation:
        """Let the complainant reword a reclamation that nobody has picked up yet."""
        data = changes.model_dump(exclude_none=True)
        if not data:
            raise ValidationError("Provide a title or a description to update")
        reclamation = self._require(reclamation_id)
        with booking_lock(reclamation.booking_id), transaction(self.db):
            booking = load_booking(self.db, reclamation.booking_id, for_update=True)
            self.db.refresh(reclamation)
            if reclamation.complainant_id != actor.user_id:
                raise ForbiddenError("Only the complainant can edit this reclamation")
            if reclamation.status is not ReclamationStatus.OPEN:
                raise InvalidTransitionError(f"A {reclamation.status.value} reclamation can no longer be edited")
            now = self.clock()
            for field, value in data.items():
                setattr(reclamation, field, value)
            reclamation.updated_at = now
            record_event(
                self.db,
                booking,
                "RECLAMATION_UPDATED",
                actor_id=actor.user_id,
                payload={"reclamation_id": reclamation.id, "fields": sorted(data)},
                at=now,
            )
            return reclamation

    def withdraw(self, reclamation_id: str, actor: Identity) -> Reclamation:
        """Close a reclamation at the complainant's request; it stops blocking completion."""
        reclamation = self._require(reclamation_id)
        with booking_lock(reclamation.booking_id), transaction(self.db):
            booking = load_booking(self.db, reclamation.booking_id, for_update=True)
            self.db.refresh(reclamation)
            if reclamation.complainant_id != actor.user_id:
                raise ForbiddenError("Only the complainant can withdraw this reclamation")
            if reclamation.status not in BLOCKING_RECLAMATION_STATUSES:
                raise InvalidTransitionError(f"Reclamation is already {reclamation.status.value}")
            now = self.clock()
            reclamation.status = ReclamationStatus.WITHDRAWN
            reclamation.resolved_at = now
            reclamation.updated_at = now
            record_event(
                self.db,
                booking,
                "RECLAMATION_WITHDRAWN",
                actor_id=actor.user_id,
                payload={"reclamation_id": reclamation.id},
                at=now,
            )
            logger.info("Booking %s: reclamation %s withdrawn", booking.id, reclamation.id)
            return reclamation

    def add_message(self, reclamation_id: str, actor: Identity, body: str) -> ReclamationMessage:
        reclamation = self.get(reclamation_id, actor)
        if reclamation.status not in BLOCKING_RECLAMATION_STATUSES:
            raise InvalidTransitionError(f"Reclamation is {reclamation.status.value}; the thread is closed")
        with transaction(self.db):
            message = ReclamationMessage(
                reclamation_id=reclamation.id,
                author_id=actor.user_id,
                body=body,
                created_at=self.clock(),
            )
            self.db.add(message)
        return message

    def list_messages(self, reclamation_id: str, actor: Identity) -> List[ReclamationMessage]:
        reclamation = self.get(reclamation_id, actor)
        stmt = (
            select(ReclamationMessage)
            .where(ReclamationMessage.reclamation_id == reclamation.id)
            .order_by(ReclamationMessage.created_at)
        )
        return list(self.db.execute(stmt).scalars())

    def update_status(self, reclamation_id: str, actor: Identity, update: ReclamationStatusUpdate) -> Reclamation:
        if not actor.is_admin:
            raise ForbiddenError("Only admins can review reclamations")
        reclamation = self._require(reclamation_id)
        booking_id = reclamation.booking_id
        with booking_lock(booking_id), transaction(self.db):
            booking = load_booking(self.db, booking_id, for_update=True)
            self.db.refresh(reclamation)
            current = reclamation.status
            target = update.status
            if current not in BLOCKING_RECLAMATION_STATUSES:
                raise InvalidTransitionError(f"Reclamation is already {current.value}")
            if target in (ReclamationStatus.OPEN, ReclamationStatus.WITHDRAWN) or target is current:
                raise InvalidTransitionError(f"Cannot move a reclamation from {current.value} to {target.value}")
            now = self.clock()
            if target is ReclamationStatus.RESOLVED:
                if update.severity is None:
                    raise ValidationError("severity is required to resolve a reclamation")
                refund, points = compute_outcome(
                    reclamation.type, update.severity, booking.final_price, booking.deposit_amount
                )
                reclamation.severity = update.severity
                reclamation.refund_amount = refund
                reclamation.penalty_points = points
            if target in (ReclamationStatus.RESOLVED, ReclamationStatus.REJECTED):
                reclamation.resolved_at = now
            if update.resolution_note is not None:
                reclamation.resolution_note = update.resolution_note
            reclamation.status = target
            reclamation.updated_at = now
            record_event(
                self.db,
                booking,
                f"RECLAMATION_{target.value}",
                actor_id=actor.user_id,
                payload={
                    "reclamation_id": reclamation.id,
                    "refund_amount": str(reclamation.refund_amount) if reclamation.refund_amount is not None else None,
                    "penalty_points": reclamation.penalty_points,
                },
                at=now,
            )
            return reclamation

    def statistics(self) -> ReclamationStatistics:
        rows = list(self.db.execute(select(Reclamation)).scalars())
        by_status = Counter(row.status.value for row in rows)
        by_type = Counter(row.type.value for row in rows)
        refunded = sum((row.refund_amount or Decimal("0") for row in rows), Decimal("0"))
        points = sum(row.penalty_points or 0 for row in rows)
        return ReclamationStatistics(
            total=len(rows),
            by_status=dict(by_status),
            by_type=dict(by_type),
            total_refunded=refunded,
            total_penalty_points=points,
        )

    def booking_status(self, booking_id: str) -> ReclamationBookingStatus:
        load_booking(self.db, booking_id)
        return LocalReclamationSource(self.db).blocking_status(booking_id)


def ensure_not_blocked(source: ReclamationSource, booking: Booking) -> None:
    status = source.blocking_status(booking.id)
    if status.blocking:
        raise DisputeBlockingError(
            f"Booking has {status.open_reclamations} open reclamation(s); resolve them before completing"
        )
