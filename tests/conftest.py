import os
from datetime import timedelta
from typing import Callable, Generator

import pytest
from fastapi.testclient import TestClient

os.environ.setdefault("DATABASE_URL", "sqlite:///./test.db")
os.environ.setdefault("RATE_LIMITING_ENABLED", "false")
os.environ.setdefault("DEFAULT_CONVERSION_RATE", "30000")
os.environ.setdefault("REQUIRED_CONFIRMATIONS", "3")
os.environ.setdefault("LOG_DIR", "./logs")

from common.config import reset_settings_cache  # noqa: E402

reset_settings_cache()

from common.auth import create_access_token  # noqa: E402
from common.clients import PropertyInfo  # noqa: E402
from common.database import Base, SessionLocal, engine  # noqa: E402
from common.dependencies import get_property_catalog  # noqa: E402
from common.errors import NotFoundError  # noqa: E402
from common.models import RoleEnum, utcnow  # noqa: E402
from services.bookings.app import app as bookings_app  # noqa: E402
from services.payments.app import app as payments_app  # noqa: E402
from services.reclamations.app import app as reclamations_app  # noqa: E402

HOST_WALLET = "0x5aAeb6053F3E94C9b9A09f33669435E7Ef1BeAed"


class FakeCatalog:
    """In-memory stand-in for the property catalog HTTP client."""

    def __init__(self) -> None:
        self.properties: dict[str, dict] = {}
        self.calls = 0

    def add(self, property_id: str, **overrides) -> dict:
        payload = {
            "id": property_id,
            "ownerId": "host-1",
            "dailyPrice": "600",
            "negotiationPercentage": "10",
            "discountEnabled": False,
            "capacity": 4,
            "ownerWalletAddress": HOST_WALLET,
            "depositAmount": "500",
        }
        payload.update(overrides)
        self.properties[property_id] = payload
        return payload

    def get_property(self, property_id: str) -> PropertyInfo:
        self.calls += 1
        if property_id not in self.properties:
            raise NotFoundError(f"Property {property_id} not found")
        return PropertyInfo.model_validate(self.properties[property_id])


class FakeClock:
    def __init__(self) -> None:
        self.now = utcnow()

    def __call__(self):
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


@pytest.fixture(autouse=True, scope="function")
def _create_test_database() -> Generator[None, None, None]:
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)


@pytest.fixture()
def db_session() -> Generator:
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture(autouse=True)
def catalog() -> Generator[FakeCatalog, None, None]:
    fake = FakeCatalog()
    fake.add("villa-1")
    for app in (bookings_app, payments_app):
        app.dependency_overrides[get_property_catalog] = lambda: fake
    yield fake
    for app in (bookings_app, payments_app):
        app.dependency_overrides.pop(get_property_catalog, None)


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def auth_header() -> Callable[..., dict[str, str]]:
    def _header(user_id: str, *roles: RoleEnum) -> dict[str, str]:
        token = create_access_token(user_id, roles or (RoleEnum.TENANT,))
        return {"Authorization": f"Bearer {token}"}

    return _header


@pytest.fixture()
def bookings_client() -> Generator[TestClient, None, None]:
    with TestClient(bookings_app) as client:
        yield client


@pytest.fixture()
def payments_client() -> Generator[TestClient, None, None]:
    with TestClient(payments_app) as client:
        yield client


@pytest.fixture()
def reclamations_client() -> Generator[TestClient, None, None]:
    with TestClient(reclamations_app) as client:
        yield client
