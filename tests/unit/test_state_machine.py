"""Unit tests for the booking state machine."""
from datetime import date, timedelta
from decimal import Decimal

import pytest
from sqlalchemy import func, select

from common.auth import Identity
from common.errors import ConflictError, ForbiddenError, InvalidTransitionError, ValidationError
from common.models import (
    TERMINAL_STATUSES,
    Booking,
    BookingEvent,
    BookingStatus,
    OfferStatus,
    RoleEnum,
    SettlementRecord,
    SettlementStatus,
)
from common.schemas import BookingCreate, BookingUpdate
from orchestrator.state_machine import TRANSITIONS, BookingStateMachine, TransitionEvent

TENANT = Identity(user_id="tenant-1", roles=frozenset({RoleEnum.TENANT}))
ADMIN = Identity(user_id="admin-1", roles=frozenset({RoleEnum.ADMIN}))


def booking_request(**overrides) -> BookingCreate:
    check_in = date.today() + timedelta(days=10)
    payload = {
        "property_id": "villa-1",
        "check_in_date": check_in,
        "check_out_date": check_in + timedelta(days=5),
        "number_of_guests": 2,
        "tenant_wallet_address": "0xfB6916095ca1df60bB79Ce92cE3Ea74c37c5d359",
    }
    payload.update(overrides)
    return BookingCreate(**payload)


class TestTransitionTable:
    def test_terminal_states_have_no_exits(self):
        for (source, _event) in TRANSITIONS:
            assert source not in TERMINAL_STATUSES

    def test_every_open_state_can_be_cancelled(self):
        for status in BookingStatus:
            if status not in TERMINAL_STATUSES:
                assert TRANSITIONS[(status, TransitionEvent.CANCELLED)] is BookingStatus.CANCELLED

    def test_rejection_only_before_payment(self):
        assert (BookingStatus.PENDING_PAYMENT, TransitionEvent.REJECTED) not in TRANSITIONS
        assert (BookingStatus.PENDING_NEGOTIATION, TransitionEvent.REJECTED) in TRANSITIONS


class TestCreate:
    def test_fixed_price_goes_to_payment(self, db_session, catalog, clock):
        machine = BookingStateMachine(db_session, catalog, clock=clock)

        booking = machine.create(booking_request(), TENANT)

        assert booking.status is BookingStatus.PENDING_PAYMENT
        assert booking.host_id == "host-1"
        assert booking.final_price == Decimal("3000.00")
        events = db_session.execute(select(BookingEvent.event_type).order_by(BookingEvent.id)).scalars().all()
        assert events == ["BOOKING_REQUESTED", "PRICE_FIXED"]

    def test_lower_price_opens_negotiation(self, db_session, catalog, clock):
        machine = BookingStateMachine(db_session, catalog, clock=clock)

        booking = machine.create(booking_request(requested_price=Decimal("2750")), TENANT)

        assert booking.status is BookingStatus.PENDING_NEGOTIATION
        assert booking.requested_price is None
        db_session.refresh(booking)
        assert [offer.proposed_price for offer in booking.offers] == [Decimal("2750.00")]
        assert booking.offers[0].status is OfferStatus.ACTIVE

    def test_failed_create_persists_nothing(self, db_session, catalog, clock):
        machine = BookingStateMachine(db_session, catalog, clock=clock)

        with pytest.raises(ValidationError):
            machine.create(booking_request(requested_price=Decimal("2600")), TENANT)

        assert db_session.execute(select(func.count(Booking.id))).scalar_one() == 0
        assert db_session.execute(select(func.count(BookingEvent.id))).scalar_one() == 0

    def test_overlap_with_confirmed_stay(self, db_session, catalog, clock):
        machine = BookingStateMachine(db_session, catalog, clock=clock)
        first = machine.create(booking_request(), TENANT)
        machine.transition(first.id, TransitionEvent.PAYMENT_CONFIRMED)

        check_in = first.check_in_date + timedelta(days=4)
        with pytest.raises(ConflictError):
            machine.create(booking_request(check_in_date=check_in, check_out_date=check_in + timedelta(days=2)), TENANT)

        adjacent = machine.create(
            booking_request(check_in_date=first.check_out_date, check_out_date=first.check_out_date + timedelta(days=2)),
            TENANT,
        )
        assert adjacent.status is BookingStatus.PENDING_PAYMENT


class TestTransitions:
    def test_illegal_transition_raises(self, db_session, catalog, clock):
        machine = BookingStateMachine(db_session, catalog, clock=clock)
        booking = machine.create(booking_request(), TENANT)

        with pytest.raises(InvalidTransitionError):
            machine.transition(booking.id, TransitionEvent.CHECKOUT_CONFIRMED)
        with pytest.raises(InvalidTransitionError):
            machine.transition(booking.id, TransitionEvent.REJECTED)

    def test_cancel_requires_participant(self, db_session, catalog, clock):
        machine = BookingStateMachine(db_session, catalog, clock=clock)
        booking = machine.create(booking_request(), TENANT)
        stranger = Identity(user_id="tenant-2", roles=frozenset({RoleEnum.TENANT}))

        with pytest.raises(ForbiddenError):
            machine.cancel(booking.id, stranger)

    def test_pending_transaction_needs_admin_to_cancel(self, db_session, catalog, clock):
        machine = BookingStateMachine(db_session, catalog, clock=clock)
        booking = machine.create(booking_request(), TENANT)
        db_session.add(
            SettlementRecord(
                booking_id=booking.id,
                intent_id="intent-1",
                tx_hash="0x" + "ef" * 32,
                status=SettlementStatus.SUBMITTED,
            )
        )
        db_session.commit()

        with pytest.raises(ConflictError):
            machine.cancel(booking.id, TENANT)
        cancelled = machine.cancel(booking.id, ADMIN)
        assert cancelled.status is BookingStatus.CANCELLED
        assert cancelled.cancelled_by == "admin-1"


class TestUpdate:
    def test_date_change_during_negotiation_supersedes_offer(self, db_session, catalog, clock):
        machine = BookingStateMachine(db_session, catalog, clock=clock)
        booking = machine.create(booking_request(requested_price=Decimal("2750")), TENANT)
        new_in = booking.check_in_date + timedelta(days=30)

        updated = machine.update(
            booking.id,
            TENANT,
            BookingUpdate(check_in_date=new_in, check_out_date=new_in + timedelta(days=4)),
        )

        assert updated.base_price == Decimal("2400.00")
        db_session.refresh(updated)
        assert [offer.status for offer in updated.offers] == [OfferStatus.SUPERSEDED]

    def test_new_requested_price_becomes_counter(self, db_session, catalog, clock):
        machine = BookingStateMachine(db_session, catalog, clock=clock)
        booking = machine.create(booking_request(requested_price=Decimal("2750")), TENANT)
        clock.advance(minutes=1)

        machine.update(booking.id, TENANT, BookingUpdate(requested_price=Decimal("2800")))

        db_session.refresh(booking)
        assert [(o.proposed_price, o.status) for o in booking.offers] == [
            (Decimal("2750.00"), OfferStatus.SUPERSEDED),
            (Decimal("2800.00"), OfferStatus.ACTIVE),
        ]

    def test_agreed_price_locks_dates(self, db_session, catalog, clock):
        machine = BookingStateMachine(db_session, catalog, clock=clock)
        booking = machine.create(booking_request(), TENANT)
        booking.requested_price = Decimal("2800")
        db_session.commit()
        new_in = booking.check_in_date + timedelta(days=1)

        with pytest.raises(ConflictError):
            machine.update(
                booking.id, TENANT, BookingUpdate(check_in_date=new_in, check_out_date=new_in + timedelta(days=5))
            )

    def test_capacity_checked_on_update(self, db_session, catalog, clock):
        machine = BookingStateMachine(db_session, catalog, clock=clock)
        booking = machine.create(booking_request(), TENANT)

        with pytest.raises(ValidationError):
            machine.update(booking.id, TENANT, BookingUpdate(number_of_guests=10))
