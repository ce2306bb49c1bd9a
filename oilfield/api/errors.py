"""
Mapping of domain errors onto HTTP responses.

Every error response has the same body: ``success``, ``error_code``,
``message`` and ``details``. Messages come from the exception's
player-safe text; persistence errors never reach the body.
"""

from typing import Any, Dict, Optional

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from fastapi.encoders import jsonable_encoder

import structlog

from oilfield.api.schemas.common import ErrorResponse
from oilfield.core.exceptions import OilfieldException, DatabaseError, SettlementPartialFailure

logger = structlog.get_logger(__name__)


ERROR_STATUS: Dict[str, int] = {
    "VALIDATION_ERROR": status.HTTP_400_BAD_REQUEST,
    "AUTHENTICATION_ERROR": status.HTTP_401_UNAUTHORIZED,
    "AUTHORIZATION_ERROR": status.HTTP_403_FORBIDDEN,
    "NOT_VERIFIED": status.HTTP_403_FORBIDDEN,
    "FEATURE_DISABLED": status.HTTP_403_FORBIDDEN,
    "NOT_FOUND": status.HTTP_404_NOT_FOUND,
    "INSUFFICIENT_BALANCE": status.HTTP_409_CONFLICT,
    "STATE_CONFLICT": status.HTTP_409_CONFLICT,
    "RATE_LIMITED": status.HTTP_429_TOO_MANY_REQUESTS,
    "EXTERNAL_DEPENDENCY_FAILURE": status.HTTP_502_BAD_GATEWAY,
    "CONFIGURATION_ERROR": status.HTTP_503_SERVICE_UNAVAILABLE,
    "DATABASE_ERROR": status.HTTP_500_INTERNAL_SERVER_ERROR,
}


def error_body(code: str, message: str, details: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    return ErrorResponse(
        error_code=code,
        message=message,
        details=jsonable_encoder(details or {})
    ).model_dump(mode="json")


async def oilfield_exception_handler(request: Request, exc: OilfieldException) -> JSONResponse:
    status_code = ERROR_STATUS.get(exc.code, status.HTTP_400_BAD_REQUEST)
    details = exc.details

    if isinstance(exc, DatabaseError) and not isinstance(exc, SettlementPartialFailure):
        logger.error("Database error", path=request.url.path, error=exc.message, details=exc.details)
        details = {}
    elif status_code >= 500:
        logger.error("Request error", path=request.url.path, code=exc.code, error=exc.message)
    else:
        logger.info("Request rejected", path=request.url.path, code=exc.code, error=exc.message)

    return JSONResponse(status_code=status_code, content=error_body(exc.code, exc.message, details))


async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    errors = [
        {"loc": list(err.get("loc", ())), "msg": err.get("msg"), "type": err.get("type")}
        for err in exc.errors()
    ]
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content=error_body("VALIDATION_ERROR", "Invalid request", {"errors": errors})
    )


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(OilfieldException, oilfield_exception_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)
