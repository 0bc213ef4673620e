from contextlib import asynccontextmanager
from typing import List, Optional

from fastapi import Depends, FastAPI, Query, Request, status
from fastapi.middleware.cors import CORSMiddleware
from prometheus_fastapi_instrumentator import Instrumentator
from sqlalchemy.orm import Session

from common.auth import Identity
from common.config import get_settings
from common.database import Base, engine, get_db
from common.dependencies import allow_roles, get_current_identity, require_service_key
from common.errors import install_error_handlers
from common.logging_middleware import add_audit_middleware
from common.models import Reclamation, ReclamationMessage, ReclamationStatus, RoleEnum
from common.rate_limit import apply_rate_limiter, limiter
from common.schemas import (
    ReclamationBookingStatus,
    ReclamationCreate,
    ReclamationMessageCreate,
    ReclamationMessageRead,
    ReclamationRead,
    ReclamationStatistics,
    ReclamationStatusUpdate,
    ReclamationUpdate,
)
from orchestrator.reclamations import ReclamationService

settings = get_settings()


@asynccontextmanager
async def lifespan(_: FastAPI):
    if settings.run_db_migrations:
        Base.metadata.create_all(bind=engine)
    yield


def create_app() -> FastAPI:
    fastapi_app = FastAPI(title="Reclamations Service", version="1.0.0", lifespan=lifespan)
    fastapi_app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    apply_rate_limiter(fastapi_app)
    add_audit_middleware(fastapi_app, "reclamations")
    install_error_handlers(fastapi_app)
    Instrumentator().instrument(fastapi_app).expose(fastapi_app)
    return fastapi_app


app = create_app()


@app.get("/health", tags=["health"])
def health() -> dict[str, str]:
    return {"status": "ok", "service": "reclamations"}


@app.post("/reclamations", response_model=ReclamationRead, status_code=status.HTTP_201_CREATED)
@limiter.limit("10/minute")
def file_reclamation(
    request: Request,
    reclamation_in: ReclamationCreate,
    identity: Identity = Depends(get_current_identity),
    db: Session = Depends(get_db),
) -> Reclamation:
    return ReclamationService(db, settings).file(identity, reclamation_in)


@app.get("/reclamations/my-complaints", response_model=List[ReclamationRead])
@limiter.limit("30/minute")
def my_complaints(
    request: Request,
    identity: Identity = Depends(get_current_identity),
    db: Session = Depends(get_db),
) -> List[Reclamation]:
    return ReclamationService(db, settings).list_filed_by(identity)


@app.get("/reclamations/against-me", response_model=List[ReclamationRead])
@limiter.limit("30/minute")
def complaints_against_me(
    request: Request,
    identity: Identity = Depends(get_current_identity),
    db: Session = Depends(get_db),
) -> List[Reclamation]:
    return ReclamationService(db, settings).list_against(identity)


@app.get(
    "/reclamations/booking/{booking_id}/status",
    response_model=ReclamationBookingStatus,
    dependencies=[Depends(require_service_key)],
)
@limiter.limit("120/minute")
def booking_reclamation_status(
    request: Request,
    booking_id: str,
    db: Session = Depends(get_db),
) -> ReclamationBookingStatus:
    return ReclamationService(db, settings).booking_status(booking_id)


@app.get("/reclamations/booking/{booking_id}", response_model=List[ReclamationRead])
@limiter.limit("30/minute")
def booking_reclamations(
    request: Request,
    booking_id: str,
    identity: Identity = Depends(get_current_identity),
    db: Session = Depends(get_db),
) -> List[Reclamation]:
    return ReclamationService(db, settings).list_for_booking(booking_id, identity)


@app.get("/reclamations/{reclamation_id}", response_model=ReclamationRead)
@limiter.limit("60/minute")
def get_reclamation(
    request: Request,
    reclamation_id: str,
    identity: Identity = Depends(get_current_identity),
    db: Session = Depends(get_db),
) -> Reclamation:
    return ReclamationService(db, settings).get(reclamation_id, identity)


@app.put("/reclamations/{reclamation_id}", response_model=ReclamationRead)
@limiter.limit("20/minute")
def edit_reclamation(
    request: Request,
    reclamation_id: str,
    changes: ReclamationUpdate,
    identity: Identity = Depends(get_current_identity),
    db: Session = Depends(get_db),
) -> Reclamation:
    return ReclamationService(db, settings).edit(reclamation_id, identity, changes)


@app.delete("/reclamations/{reclamation_id}", response_model=ReclamationRead)
@limiter.limit("20/minute")
def withdraw_reclamation(
    request: Request,
    reclamation_id: str,
    identity: Identity = Depends(get_current_identity),
    db: Session = Depends(get_db),
) -> Reclamation:
    return ReclamationService(db, settings).withdraw(reclamation_id, identity)


@app.post(
    "/reclamations/{reclamation_id}/messages",
    response_model=ReclamationMessageRead,
    status_code=status.HTTP_201_CREATED,
)
@limiter.limit("30/minute")
def post_reclamation_message(
    request: Request,
    reclamation_id: str,
    message_in: ReclamationMessageCreate,
    identity: Identity = Depends(get_current_identity),
    db: Session = Depends(get_db),
) -> ReclamationMessage:
    return ReclamationService(db, settings).add_message(reclamation_id, identity, message_in.message)


@app.get("/reclamations/{reclamation_id}/messages", response_model=List[ReclamationMessageRead])
@limiter.limit("60/minute")
def reclamation_messages(
    request: Request,
    reclamation_id: str,
    identity: Identity = Depends(get_current_identity),
    db: Session = Depends(get_db),
) -> List[ReclamationMessage]:
    return ReclamationService(db, settings).list_messages(reclamation_id, identity)


@app.get("/admin/reclamations/statistics", response_model=ReclamationStatistics)
@limiter.limit("30/minute")
def reclamation_statistics(
    request: Request,
    _: Identity = Depends(allow_roles(RoleEnum.ADMIN)),
    db: Session = Depends(get_db),
) -> ReclamationStatistics:
    return ReclamationService(db, settings).statistics()


@app.get("/admin/reclamations", response_model=List[ReclamationRead])
@limiter.limit("30/minute")
def list_reclamations(
    request: Request,
    reclamation_status: Optional[ReclamationStatus] = Query(None, alias="status"),
    _: Identity = Depends(allow_roles(RoleEnum.ADMIN)),
    db: Session = Depends(get_db),
) -> List[Reclamation]:
    return ReclamationService(db, settings).list_all(reclamation_status)


@app.put("/admin/reclamations/{reclamation_id}/status", response_model=ReclamationRead)
@limiter.limit("20/minute")
def update_reclamation_status(
    request: Request,
    reclamation_id: str,
    update: ReclamationStatusUpdate,
    identity: Identity = Depends(allow_roles(RoleEnum.ADMIN)),
    db: Session = Depends(get_db),
) -> Reclamation:
    return ReclamationService(db, settings).update_status(reclamation_id, identity, update)
