"""Global exception handlers for the FastAPI application.

Every handler funnels through ``_respond`` so the JSON body is always
``{"error", "detail", "request_id"}``.  Unexpected exceptions are logged
with their traceback server-side; the client only sees a generic 500.
"""

import logging
import uuid

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from app.errors import AppError, format_error_response, status_for_pipeline_error
from shipyard.errors import ShipyardError

logger = logging.getLogger(__name__)


def _get_request_id(request: Request) -> str:
    """Request ID set by :class:`RequestIDMiddleware`, or a fresh UUID-4
    when the middleware is not installed (bare test apps).
    """
    return getattr(request.state, "request_id", None) or str(uuid.uuid4())


def _respond(
    request: Request,
    status_code: int,
    error: str,
    detail: object = None,
    *,
    log_detail: object = None,
) -> JSONResponse:
    request_id = _get_request_id(request)
    if status_code >= 500:
        logger.warning(
            "%d on %s %s [request_id=%s]: %s",
            status_code, request.method, request.url.path, request_id, log_detail or error,
        )
    else:
        logger.info(
            "%d on %s %s [request_id=%s]: %s",
            status_code, request.method, request.url.path, request_id, log_detail or error,
        )
    return JSONResponse(
        status_code=status_code,
        content=format_error_response(error=error, detail=detail, request_id=request_id),
    )


# ------------------------------------------------------------------
# Handlers
# ------------------------------------------------------------------

async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all: log the traceback, return a bare 500."""
    request_id = _get_request_id(request)
    logger.error(
        "Unhandled exception on %s %s [request_id=%s]",
        request.method,
        request.url.path,
        request_id,
        exc_info=exc,
    )
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content=format_error_response(
            error="Internal Server Error",
            detail="Internal server error",
            request_id=request_id,
        ),
    )


async def http_exception_handler(
    request: Request, exc: StarletteHTTPException
) -> JSONResponse:
    message = str(exc.detail) if exc.detail else "Error"
    return _respond(request, exc.status_code, message, message)


async def validation_exception_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    errors = exc.errors()
    return _respond(
        request,
        status.HTTP_422_UNPROCESSABLE_ENTITY,
        "Validation failed",
        errors,
        log_detail=errors,
    )


async def app_error_handler(request: Request, exc: AppError) -> JSONResponse:
    """Service-layer errors carry their own status code."""
    return _respond(request, exc.status_code, str(exc), str(exc))


async def shipyard_error_handler(request: Request, exc: ShipyardError) -> JSONResponse:
    """Pipeline errors that escaped a session.

    The body's detail is ``exc.to_dict()`` so clients receive the
    diagnostics, strategy log or deployment category.
    """
    return _respond(
        request,
        status_for_pipeline_error(exc),
        type(exc).__name__,
        exc.to_dict(),
        log_detail=exc,
    )


async def value_error_handler(request: Request, exc: ValueError) -> JSONResponse:
    """``ValueError`` from model validators: 404 when it reads "not found",
    400 otherwise.
    """
    detail = str(exc)
    if "not found" in detail.lower():
        return _respond(request, status.HTTP_404_NOT_FOUND, "Not Found", detail)
    return _respond(request, status.HTTP_400_BAD_REQUEST, "Bad Request", detail)


def setup_exception_handlers(app: FastAPI) -> None:
    """Register the handlers on *app*, most specific first."""
    app.add_exception_handler(RequestValidationError, validation_exception_handler)  # type: ignore[arg-type]
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)  # type: ignore[arg-type]
    app.add_exception_handler(AppError, app_error_handler)  # type: ignore[arg-type]
    app.add_exception_handler(ShipyardError, shipyard_error_handler)  # type: ignore[arg-type]
    app.add_exception_handler(ValueError, value_error_handler)  # type: ignore[arg-type]
    app.add_exception_handler(Exception, global_exception_handler)  # type: ignore[arg-type]
