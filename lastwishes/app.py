"""
FastAPI application entry point for the patron portal.
"""

from __future__ import annotations

import logging

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from lastwishes.config import get_settings
from lastwishes.dashboard_routes import router as dashboard_router
from lastwishes.errors import ActionError, BackendError, PermissionDenied, PledgeValidationError
from lastwishes.routes import router

logger = logging.getLogger(__name__)


def _message_response(
    text: str, status_code: int, *, errors: dict | None = None
) -> JSONResponse:
    content: dict = {"message": {"type": "error", "text": text}}
    if errors:
        content["errors"] = errors
    return JSONResponse(status_code=status_code, content=content)


async def action_error_handler(request: Request, exc: ActionError) -> JSONResponse:
    return _message_response(exc.message, exc.status_code)


async def pledge_validation_handler(
    request: Request, exc: PledgeValidationError
) -> JSONResponse:
    return _message_response(
        "Please correct the highlighted fields.", 422, errors=exc.errors
    )


async def permission_denied_handler(request: Request, exc: PermissionDenied) -> JSONResponse:
    return _message_response(str(exc), 403)


async def backend_error_handler(request: Request, exc: BackendError) -> JSONResponse:
    logger.error(
        "Backend error on %s %s: %s (code=%s)",
        request.method,
        request.url.path,
        exc.message,
        exc.code,
    )
    return _message_response(exc.message, 502)


async def request_validation_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    errors = {}
    for error in exc.errors():
        field = ".".join(str(loc) for loc in error["loc"] if loc != "body")
        errors[field or "request"] = error["msg"]
    return _message_response("Request validation failed.", 422, errors=errors)


def create_app() -> FastAPI:
    settings = get_settings()
    app = FastAPI(title=f"{settings.site_name} portal", version="0.1.0")
    app.add_exception_handler(ActionError, action_error_handler)
    app.add_exception_handler(PledgeValidationError, pledge_validation_handler)
    app.add_exception_handler(PermissionDenied, permission_denied_handler)
    app.add_exception_handler(BackendError, backend_error_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)
    app.include_router(router, prefix=settings.api_prefix)
    app.include_router(dashboard_router, prefix=settings.api_prefix)
    return app


app = create_app()
