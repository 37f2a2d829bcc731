"""
Error Handlers

Exception handlers that turn engine and request errors into the
{"error": {code, message, details}} body used across the API.
"""

from typing import Any, Dict, List

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError

from ...domain.errors import DomainError
from ...utils.logger import get_logger, get_correlation_id

logger = get_logger(__name__)


def _headers() -> Dict[str, str]:
    return {"X-Correlation-Id": get_correlation_id() or ""}


def _field_errors(exc: RequestValidationError) -> List[Dict[str, Any]]:
    # Same shape as DefinitionValidationError details; pydantic ctx may hold exceptions
    return [
        {
            "field": ".".join(str(p) for p in err.get("loc", ()) if p != "body"),
            "message": err.get("msg", ""),
            "type": err.get("type", ""),
        }
        for err in exc.errors()
    ]


async def domain_error_handler(request: Request, exc: DomainError) -> JSONResponse:
    """
    Domain errors raised outside a route's own try/except

    Guard, not-found and conflict errors are expected traffic and logged as
    warnings; engine and action failures (5xx) are logged as errors.
    """
    log = logger.error if exc.http_status >= 500 else logger.warning
    log(
        f"{request.method} {request.url.path} failed: {exc.error_code} - {exc.message}",
        extra={"error_code": exc.error_code, "details": exc.details}
    )
    return JSONResponse(status_code=exc.http_status, content=exc.to_dict(), headers=_headers())


async def validation_error_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    """Malformed request bodies and query parameters are a 400, not FastAPI's 422"""
    errors = _field_errors(exc)
    logger.warning(
        f"Request validation failed: {request.method} {request.url.path}",
        extra={"error_code": "VALIDATION_ERROR", "details": {"errors": errors}}
    )
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={
            "error": {
                "code": "VALIDATION_ERROR",
                "message": errors[0]["message"] if errors else "Request validation failed",
                "details": {"errors": errors}
            }
        },
        headers=_headers()
    )


async def general_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.error(f"Unhandled error on {request.method} {request.url.path}: {exc}", exc_info=True)
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={
            "error": {
                "code": "INTERNAL_ERROR",
                "message": "An unexpected error occurred",
                "details": {"correlation_id": get_correlation_id()}
            }
        },
        headers=_headers()
    )


def register_error_handlers(app: FastAPI) -> None:
    app.add_exception_handler(DomainError, domain_error_handler)
    app.add_exception_handler(RequestValidationError, validation_error_handler)
    app.add_exception_handler(Exception, general_exception_handler)
