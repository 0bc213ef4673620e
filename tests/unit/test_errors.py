"""Unit tests for error classification and the error response body."""
import pytest
from fastapi import FastAPI, HTTPException
from fastapi.testclient import TestClient
from pydantic import BaseModel

from common.errors import (
    ConflictError,
    DependencyUnavailableError,
    DisputeBlockingError,
    ExpiredOfferError,
    ForbiddenError,
    InvalidPriceError,
    InvalidTransitionError,
    MissingWalletError,
    NotFoundError,
    UnauthorizedError,
    ValidationError,
    install_error_handlers,
)


class Payload(BaseModel):
    count: int


def build_app() -> FastAPI:
    app = FastAPI()
    install_error_handlers(app)

    @app.get("/conflict")
    def conflict():
        raise ConflictError("Dates overlap")

    @app.get("/http")
    def http_error():
        raise HTTPException(status_code=404, detail="Nothing here")

    @app.post("/body")
    def body(payload: Payload):
        return payload

    @app.get("/boom")
    def boom():
        raise RuntimeError("kaput")

    return app


class TestErrorKinds:
    @pytest.mark.parametrize(
        "error, status_code",
        [
            (ValidationError, 400),
            (UnauthorizedError, 401),
            (ForbiddenError, 403),
            (NotFoundError, 404),
            (ConflictError, 409),
            (InvalidTransitionError, 409),
            (DisputeBlockingError, 409),
            (ExpiredOfferError, 410),
            (MissingWalletError, 422),
            (InvalidPriceError, 422),
            (DependencyUnavailableError, 503),
        ],
    )
    def test_status_codes(self, error, status_code):
        exc = error("something happened")

        assert exc.status_code == status_code
        assert exc.to_body() == {"errorKind": error.__name__, "message": "something happened"}


class TestHandlers:
    """Test that every failure path yields an {errorKind, message} body."""

    def setup_method(self):
        self.client = TestClient(build_app(), raise_server_exceptions=False)

    def test_domain_error(self):
        response = self.client.get("/conflict")

        assert response.status_code == 409
        assert response.json() == {"errorKind": "ConflictError", "message": "Dates overlap"}

    def test_http_exception(self):
        response = self.client.get("/http")

        assert response.status_code == 404
        assert response.json()["errorKind"] == "NotFoundError"

    def test_request_validation(self):
        response = self.client.post("/body", json={"count": "many"})

        assert response.status_code == 400
        assert response.json()["errorKind"] == "ValidationError"
        assert "count" in response.json()["message"]

    def test_unhandled_error_is_hidden(self):
        response = self.client.get("/boom")

        assert response.status_code == 500
        assert response.json() == {"errorKind": "InternalError", "message": "Internal server error"}
