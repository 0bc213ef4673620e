"""Per-service audit log of HTTP requests, tagged with a propagated request id."""
from __future__ import annotations

import logging
import uuid
from pathlib import Path
from time import perf_counter

from fastapi import FastAPI, Request

from .config import get_settings

REQUEST_ID_HEADER = "X-Request-Id"


def _build_logger(service_name: str) -> logging.Logger:
    logger = logging.getLogger(f"audit.{service_name}")
    if logger.handlers:
        return logger

    log_dir = Path(get_settings().log_dir)
    log_dir.mkdir(parents=True, exist_ok=True)
    logger.setLevel(logging.INFO)
    handler = logging.FileHandler(log_dir / f"{service_name}.log")
    handler.setFormatter(
        logging.Formatter("%(asctime)s | %(levelname)s | %(message)s", datefmt="%Y-%m-%d %H:%M:%S")
    )
    logger.addHandler(handler)
    return logger


def add_audit_middleware(app: FastAPI, service_name: str) -> None:
    """Write one audit line per request and echo the request id back to the caller."""
    logger = _build_logger(service_name)

    @app.middleware("http")
    async def audit_logger(request: Request, call_next):  # type: ignore[override]
        request_id = request.headers.get(REQUEST_ID_HEADER) or uuid.uuid4().hex
        request.state.request_id = request_id
        start = perf_counter()
        try:
            response = await call_next(request)
        except Exception:
            logger.error(
                "%s %s | status=500 | request_id=%s | duration=%.2fms",
                request.method,
                request.url.path,
                request_id,
                (perf_counter() - start) * 1000,
            )
            raise
        level = logging.WARNING if response.status_code >= 500 else logging.INFO
        logger.log(
            level,
            "%s %s | status=%s | request_id=%s | client=%s | duration=%.2fms",
            request.method,
            request.url.path,
            response.status_code,
            request_id,
            request.client.host if request.client else "unknown",
            (perf_counter() - start) * 1000,
        )
        response.headers[REQUEST_ID_HEADER] = request_id
        return response
