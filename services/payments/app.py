from contextlib import asynccontextmanager
from typing import List

from fastapi import Depends, FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from prometheus_fastapi_instrumentator import Instrumentator
from sqlalchemy.orm import Session

from common.auth import Identity
from common.clients import PropertyCatalogClient
from common.config import get_settings
from common.database import Base, engine, get_db
from common.dependencies import allow_roles, get_current_identity, get_property_catalog, require_service_key
from common.errors import install_error_handlers
from common.logging_middleware import add_audit_middleware
from common.models import ConversionRate, RoleEnum, SettlementRecord, utcnow
from common.rate_limit import apply_rate_limiter, limiter
from common.schemas import (
    ChainConfirmation,
    ConversionRateCreate,
    ConversionRateRead,
    PaymentIntentCreate,
    PaymentIntentResult,
    PaymentStatusRead,
    SettlementRead,
    SettlementResult,
    TxHashSubmit,
    WalletAddressUpdate,
    WalletUpdateResult,
)
from orchestrator.payment_intents import PaymentIntentBuilder, current_rate, set_rate
from orchestrator.settlement import SettlementReconciler

settings = get_settings()


@asynccontextmanager
async def lifespan(_: FastAPI):
    if settings.run_db_migrations:
        Base.metadata.create_all(bind=engine)
    yield


def create_app() -> FastAPI:
    fastapi_app = FastAPI(title="Payments Service", version="1.0.0", lifespan=lifespan)
    fastapi_app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    apply_rate_limiter(fastapi_app)
    add_audit_middleware(fastapi_app, "payments")
    install_error_handlers(fastapi_app)
    Instrumentator().instrument(fastapi_app).expose(fastapi_app)
    return fastapi_app


app = create_app()


@app.get("/health", tags=["health"])
def health() -> dict[str, str]:
    return {"status": "ok", "service": "payments"}


@app.post("/payments/intent", response_model=PaymentIntentResult, status_code=status.HTTP_201_CREATED)
@limiter.limit("20/minute")
def build_payment_intent(
    request: Request,
    intent_in: PaymentIntentCreate,
    identity: Identity = Depends(get_current_identity),
    catalog: PropertyCatalogClient = Depends(get_property_catalog),
    db: Session = Depends(get_db),
) -> PaymentIntentResult:
    intent = PaymentIntentBuilder(db, catalog, settings).build(intent_in.booking_id, identity)
    return PaymentIntentResult.model_validate(intent)


@app.get("/payments/booking/{booking_id}", response_model=PaymentStatusRead)
@limiter.limit("60/minute")
def payment_status(
    request: Request,
    booking_id: str,
    identity: Identity = Depends(get_current_identity),
    db: Session = Depends(get_db),
) -> PaymentStatusRead:
    return SettlementReconciler(db, settings).payment_status(booking_id, identity)


@app.put("/payments/booking/{booking_id}/tx-hash", response_model=SettlementResult)
@limiter.limit("20/minute")
def submit_transaction(
    request: Request,
    booking_id: str,
    submission: TxHashSubmit,
    identity: Identity = Depends(get_current_identity),
    db: Session = Depends(get_db),
) -> SettlementResult:
    record = SettlementReconciler(db, settings).submit_transaction(booking_id, identity, submission)
    return SettlementResult.model_validate(record)


@app.post("/payments/confirmations", response_model=SettlementRead, dependencies=[Depends(require_service_key)])
@limiter.limit("120/minute")
def record_confirmation(
    request: Request,
    confirmation: ChainConfirmation,
    db: Session = Depends(get_db),
) -> SettlementRecord:
    return SettlementReconciler(db, settings).confirm(
        confirmation.booking_id, confirmation.tx_hash, confirmation.confirmations
    )


@app.get("/payments/tx/{tx_hash}", response_model=SettlementRead)
@limiter.limit("60/minute")
def lookup_transaction(
    request: Request,
    tx_hash: str,
    identity: Identity = Depends(get_current_identity),
    db: Session = Depends(get_db),
) -> SettlementRecord:
    return SettlementReconciler(db, settings).lookup_transaction(tx_hash, identity)


@app.get("/payments/history", response_model=List[SettlementRead])
@limiter.limit("30/minute")
def payment_history(
    request: Request,
    identity: Identity = Depends(get_current_identity),
    db: Session = Depends(get_db),
) -> List[SettlementRecord]:
    return SettlementReconciler(db, settings).history(identity)


@app.put("/payments/wallet-address", response_model=WalletUpdateResult)
@limiter.limit("20/minute")
def register_wallet(
    request: Request,
    wallet_in: WalletAddressUpdate,
    identity: Identity = Depends(get_current_identity),
    db: Session = Depends(get_db),
) -> WalletUpdateResult:
    builder = PaymentIntentBuilder(db, settings=settings)
    wallet, updated = builder.register_wallet(identity, wallet_in.wallet_address, wallet_in.booking_id)
    return WalletUpdateResult(wallet_address=wallet, updated_bookings=updated)


@app.get("/payments/conversion-rate", response_model=ConversionRateRead)
@limiter.limit("60/minute")
def get_conversion_rate(
    request: Request,
    _: Identity = Depends(get_current_identity),
    db: Session = Depends(get_db),
) -> ConversionRate:
    return current_rate(db, settings)


@app.post("/payments/conversion-rate", response_model=ConversionRateRead, status_code=status.HTTP_201_CREATED)
@limiter.limit("10/minute")
def record_conversion_rate(
    request: Request,
    rate_in: ConversionRateCreate,
    _: Identity = Depends(allow_roles(RoleEnum.ADMIN)),
    db: Session = Depends(get_db),
) -> ConversionRate:
    return set_rate(db, settings, rate_in.rate, rate_in.source, utcnow())
