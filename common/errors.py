"""Domain error kinds and the handlers that turn them into `{errorKind, message}` bodies."""
from __future__ import annotations

import logging

from fastapi import FastAPI, HTTPException, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

logger = logging.getLogger(__name__)


class OrchestratorError(Exception):
    """Base class for every classified error; subclasses fix kind and HTTP status."""

    status_code: int = status.HTTP_400_BAD_REQUEST

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    @property
    def error_kind(self) -> str:
        return type(self).__name__

    def to_body(self) -> dict[str, str]:
        return {"errorKind": self.error_kind, "message": self.message}


class ValidationError(OrchestratorError):
    status_code = status.HTTP_400_BAD_REQUEST


class ConflictError(OrchestratorError):
    status_code = status.HTTP_409_CONFLICT


class InvalidTransitionError(OrchestratorError):
    status_code = status.HTTP_409_CONFLICT


class ForbiddenError(OrchestratorError):
    status_code = status.HTTP_403_FORBIDDEN


class UnauthorizedError(OrchestratorError):
    status_code = status.HTTP_401_UNAUTHORIZED


class ExpiredOfferError(OrchestratorError):
    status_code = status.HTTP_410_GONE


class MissingWalletError(OrchestratorError):
    status_code = status.HTTP_422_UNPROCESSABLE_ENTITY


class InvalidPriceError(OrchestratorError):
    status_code = status.HTTP_422_UNPROCESSABLE_ENTITY


class DisputeBlockingError(OrchestratorError):
    status_code = status.HTTP_409_CONFLICT


class NotFoundError(OrchestratorError):
    status_code = status.HTTP_404_NOT_FOUND


class DependencyUnavailableError(OrchestratorError):
    status_code = status.HTTP_503_SERVICE_UNAVAILABLE


_HTTP_STATUS_KINDS = {
    status.HTTP_401_UNAUTHORIZED: "UnauthorizedError",
    status.HTTP_403_FORBIDDEN: "ForbiddenError",
    status.HTTP_404_NOT_FOUND: "NotFoundError",
    status.HTTP_405_METHOD_NOT_ALLOWED: "ValidationError",
    status.HTTP_409_CONFLICT: "ConflictError",
}


def _error_response(status_code: int, kind: str, message: str, headers: dict | None = None) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"errorKind": kind, "message": message}, headers=headers)


def orchestrator_error_handler(_: Request, exc: OrchestratorError) -> JSONResponse:
    return _error_response(exc.status_code, exc.error_kind, exc.message)


def request_validation_handler(_: Request, exc: RequestValidationError) -> JSONResponse:
    parts = []
    for err in exc.errors():
        location = ".".join(str(item) for item in err.get("loc", ()) if item != "body")
        parts.append(f"{location}: {err.get('msg')}" if location else str(err.get("msg")))
    return _error_response(status.HTTP_400_BAD_REQUEST, "ValidationError", "; ".join(parts))


def http_exception_handler(_: Request, exc: HTTPException) -> JSONResponse:
    kind = _HTTP_STATUS_KINDS.get(exc.status_code, "ValidationError" if exc.status_code < 500 else "InternalError")
    return _error_response(exc.status_code, kind, str(exc.detail), headers=getattr(exc, "headers", None))


def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return _error_response(status.HTTP_500_INTERNAL_SERVER_ERROR, "InternalError", "Internal server error")


def install_error_handlers(app: FastAPI) -> None:
    """Register the classified error handlers on an app."""

    app.add_exception_handler(OrchestratorError, orchestrator_error_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)
    app.add_exception_handler(HTTPException, http_exception_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)
