"""Global error handlers ensuring request_id is included in JSON responses."""

from __future__ import annotations

import logging
from typing import Any

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from delguur.moderation.domain.repository import StorageError
from delguur.obs import logging as obs_logging

logger = logging.getLogger(__name__)


def get_request_id(request: Request, default: str = "unknown") -> str:
    rid = getattr(request.state, "request_id", None) or obs_logging.current_request_id()
    return rid or default


def _payload(request: Request, detail: Any) -> dict[str, Any]:
    payload: dict[str, Any] = {"detail": detail, "request_id": get_request_id(request)}
    if isinstance(detail, dict):
        payload.update({key: value for key, value in detail.items() if key not in payload})
    return payload


def install_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(StarletteHTTPException)
    async def http_exc_handler(request: Request, exc: StarletteHTTPException):  # type: ignore[override]
        return JSONResponse(
            status_code=exc.status_code,
            content=_payload(request, exc.detail),
            headers=getattr(exc, "headers", None),
        )

    @app.exception_handler(RequestValidationError)
    async def validation_exc_handler(request: Request, exc: RequestValidationError):  # type: ignore[override]
        payload = {
            "detail": "validation_error",
            "errors": jsonable_encoder(exc.errors()),
            "request_id": get_request_id(request),
        }
        return JSONResponse(status_code=422, content=payload)

    @app.exception_handler(StorageError)
    async def storage_exc_handler(request: Request, exc: StorageError):  # type: ignore[override]
        logger.warning("storage unavailable", extra={"path": request.url.path, "error": str(exc)})
        detail = {"code": "storage_unavailable", "retryable": True}
        return JSONResponse(status_code=503, content=_payload(request, detail))
