import asyncio
import time
from contextlib import asynccontextmanager
from typing import List, Optional

from fastapi import Depends, FastAPI, Query, Request, status
from fastapi.middleware.cors import CORSMiddleware
from prometheus_fastapi_instrumentator import Instrumentator
from sqlalchemy import or_, select
from sqlalchemy.orm import Session

from common.auth import Identity
from common.clients import PropertyCatalogClient
from common.config import get_settings
from common.database import Base, engine, get_db
from common.dependencies import allow_roles, get_current_identity, get_property_catalog
from common.errors import install_error_handlers
from common.events import waiters
from common.logging_middleware import add_audit_middleware
from common.models import TERMINAL_STATUSES, Booking, BookingEvent, BookingStatus, NegotiationOffer, RoleEnum
from common.rate_limit import apply_rate_limiter, limiter
from common.schemas import (
    BookingAwaitRead,
    BookingCreate,
    BookingEventRead,
    BookingRead,
    BookingUpdate,
    CounterOfferCreate,
    OfferRead,
    OfferResult,
    SweepResult,
)
from orchestrator.checkout import CheckoutCoordinator
from orchestrator.negotiation import NegotiationEngine
from orchestrator.reclamations import ReclamationSource, reclamation_source_for
from orchestrator.state_machine import BookingStateMachine, ensure_participant, load_booking
from orchestrator.sweeper import run_sweep, sweep_loop

settings = get_settings()


@asynccontextmanager
async def lifespan(_: FastAPI):
    if settings.run_db_migrations:
        Base.metadata.create_all(bind=engine)
    stop_event = asyncio.Event()
    sweeper = None
    if settings.sweep_interval_seconds > 0:
        sweeper = asyncio.create_task(sweep_loop(stop_event, settings.sweep_interval_seconds))
    yield
    stop_event.set()
    if sweeper is not None:
        await sweeper


def create_app() -> FastAPI:
    fastapi_app = FastAPI(title="Bookings Service", version="1.0.0", lifespan=lifespan)
    fastapi_app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    apply_rate_limiter(fastapi_app)
    add_audit_middleware(fastapi_app, "bookings")
    install_error_handlers(fastapi_app)
    Instrumentator().instrument(fastapi_app).expose(fastapi_app)
    return fastapi_app


app = create_app()


def get_reclamation_source(db: Session = Depends(get_db)) -> ReclamationSource:
    return reclamation_source_for(db, settings)


@app.get("/health", tags=["health"])
def health() -> dict[str, str]:
    return {"status": "ok", "service": "bookings"}


@app.post("/bookings", response_model=BookingRead, status_code=status.HTTP_201_CREATED)
@limiter.limit("20/minute")
def create_booking(
    request: Request,
    booking_in: BookingCreate,
    identity: Identity = Depends(allow_roles(RoleEnum.TENANT, RoleEnum.ADMIN)),
    catalog: PropertyCatalogClient = Depends(get_property_catalog),
    db: Session = Depends(get_db),
) -> Booking:
    return BookingStateMachine(db, catalog).create(booking_in, identity)


@app.get("/bookings", response_model=List[BookingRead])
@limiter.limit("30/minute")
def list_bookings(
    request: Request,
    tenant_id: Optional[str] = Query(None, alias="tenantId"),
    owner_id: Optional[str] = Query(None, alias="ownerId"),
    property_id: Optional[str] = Query(None, alias="propertyId"),
    booking_status: Optional[BookingStatus] = Query(None, alias="status"),
    identity: Identity = Depends(get_current_identity),
    db: Session = Depends(get_db),
) -> List[Booking]:
    stmt = select(Booking).order_by(Booking.created_at.desc())
    if not identity.is_admin:
        stmt = stmt.where(or_(Booking.tenant_id == identity.user_id, Booking.host_id == identity.user_id))
    if tenant_id:
        stmt = stmt.where(Booking.tenant_id == tenant_id)
    if owner_id:
        stmt = stmt.where(Booking.host_id == owner_id)
    if property_id:
        stmt = stmt.where(Booking.property_id == property_id)
    if booking_status:
        stmt = stmt.where(Booking.status == booking_status)
    return list(db.execute(stmt).scalars())


@app.post("/bookings/maintenance/sweep", response_model=SweepResult)
@limiter.limit("10/minute")
def sweep(
    request: Request,
    _: Identity = Depends(allow_roles(RoleEnum.ADMIN)),
    db: Session = Depends(get_db),
) -> SweepResult:
    return run_sweep(db, settings)


@app.get("/bookings/{booking_id}", response_model=BookingRead)
@limiter.limit("60/minute")
def get_booking(
    request: Request,
    booking_id: str,
    identity: Identity = Depends(get_current_identity),
    db: Session = Depends(get_db),
) -> Booking:
    booking = load_booking(db, booking_id)
    ensure_participant(booking, identity)
    if NegotiationEngine(db, settings).expire_stale(booking_id):
        booking = load_booking(db, booking_id)
    return booking


@app.put("/bookings/{booking_id}", response_model=BookingRead)
@limiter.limit("20/minute")
def update_booking(
    request: Request,
    booking_id: str,
    booking_update: BookingUpdate,
    identity: Identity = Depends(get_current_identity),
    catalog: PropertyCatalogClient = Depends(get_property_catalog),
    db: Session = Depends(get_db),
) -> Booking:
    NegotiationEngine(db, settings).expire_stale(booking_id)
    return BookingStateMachine(db, catalog).update(booking_id, identity, booking_update)


@app.delete("/bookings/{booking_id}", response_model=BookingRead)
@limiter.limit("20/minute")
def cancel_booking(
    request: Request,
    booking_id: str,
    identity: Identity = Depends(get_current_identity),
    db: Session = Depends(get_db),
) -> Booking:
    return BookingStateMachine(db).cancel(booking_id, identity)


@app.post("/bookings/{booking_id}/negotiate", response_model=OfferResult, status_code=status.HTTP_201_CREATED)
@limiter.limit("20/minute")
def propose_counter_offer(
    request: Request,
    booking_id: str,
    offer_in: CounterOfferCreate,
    identity: Identity = Depends(get_current_identity),
    db: Session = Depends(get_db),
) -> OfferResult:
    offer = NegotiationEngine(db, settings).propose_counter(booking_id, identity, offer_in.price)
    return OfferResult.model_validate(offer)


@app.post("/bookings/{booking_id}/accept", response_model=BookingRead)
@limiter.limit("20/minute")
def accept_offer(
    request: Request,
    booking_id: str,
    identity: Identity = Depends(get_current_identity),
    db: Session = Depends(get_db),
) -> Booking:
    return NegotiationEngine(db, settings).accept(booking_id, identity)


@app.post("/bookings/{booking_id}/reject", response_model=BookingRead)
@limiter.limit("20/minute")
def reject_offer(
    request: Request,
    booking_id: str,
    identity: Identity = Depends(get_current_identity),
    db: Session = Depends(get_db),
) -> Booking:
    return NegotiationEngine(db, settings).reject(booking_id, identity)


@app.get("/bookings/{booking_id}/offers", response_model=List[OfferRead])
@limiter.limit("60/minute")
def list_offers(
    request: Request,
    booking_id: str,
    identity: Identity = Depends(get_current_identity),
    db: Session = Depends(get_db),
) -> List[NegotiationOffer]:
    return NegotiationEngine(db, settings).list_offers(booking_id, identity)


@app.get("/bookings/{booking_id}/events", response_model=List[BookingEventRead])
@limiter.limit("60/minute")
def list_events(
    request: Request,
    booking_id: str,
    identity: Identity = Depends(get_current_identity),
    db: Session = Depends(get_db),
) -> List[BookingEvent]:
    ensure_participant(load_booking(db, booking_id), identity)
    stmt = select(BookingEvent).where(BookingEvent.booking_id == booking_id).order_by(BookingEvent.id)
    return list(db.execute(stmt).scalars())


@app.get("/bookings/{booking_id}/await", response_model=BookingAwaitRead)
@limiter.limit("60/minute")
def await_booking(
    request: Request,
    booking_id: str,
    target: Optional[BookingStatus] = Query(None, alias="status"),
    timeout: float = Query(10.0, ge=0),
    identity: Identity = Depends(get_current_identity),
    db: Session = Depends(get_db),
) -> BookingAwaitRead:
    """Block until the booking reaches `status` (or changes at all), bounded by max_await_seconds."""
    deadline = time.monotonic() + min(timeout, settings.max_await_seconds)
    booking = load_booking(db, booking_id)
    ensure_participant(booking, identity)
    initial_status = booking.status
    while True:
        version = waiters.version(booking_id)
        db.rollback()
        booking = load_booking(db, booking_id)
        if target is not None:
            matched = booking.status is target
            settled = matched or booking.status in TERMINAL_STATUSES
        else:
            matched = settled = booking.status is not initial_status
        remaining = deadline - time.monotonic()
        if settled or remaining <= 0:
            return BookingAwaitRead(
                booking=BookingRead.model_validate(booking),
                matched=matched,
                timed_out=not settled,
            )
        waiters.wait_for_change(booking_id, version, remaining)


@app.post("/bookings/{booking_id}/checkout/tenant", response_model=BookingRead)
@limiter.limit("20/minute")
def tenant_checkout(
    request: Request,
    booking_id: str,
    identity: Identity = Depends(get_current_identity),
    source: ReclamationSource = Depends(get_reclamation_source),
    db: Session = Depends(get_db),
) -> Booking:
    return CheckoutCoordinator(db, source, settings).tenant_checkout(booking_id, identity)


@app.post("/bookings/{booking_id}/checkout/owner", response_model=BookingRead)
@limiter.limit("20/minute")
def owner_confirm_checkout(
    request: Request,
    booking_id: str,
    identity: Identity = Depends(get_current_identity),
    source: ReclamationSource = Depends(get_reclamation_source),
    db: Session = Depends(get_db),
) -> Booking:
    return CheckoutCoordinator(db, source, settings).host_confirm_checkout(booking_id, identity)
