"""Translation of engine errors into the HTTP error envelope.

This is the only place an ``OrderingError`` becomes a transport response:

    {"error": {"code": ..., "kind": ..., "message": ..., "details": {...}}}
"""

import structlog
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from protean.exceptions import ObjectNotFoundError, ValidationError

from ordering.errors import ErrorKind, Internal, OrderingError
from ordering.store import StoreError

logger = structlog.get_logger(__name__)

ERROR_STATUS_CODES = {
    ErrorKind.VALIDATION: 400,
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.CONFLICT: 409,
    ErrorKind.FORBIDDEN: 403,
    ErrorKind.GATEWAY_ANOMALY: 200,
    ErrorKind.INTERNAL: 500,
}


def error_response(status_code: int, code: str, kind: str, message: str, details: dict | None = None) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={"error": {"code": code, "kind": kind, "message": message, "details": details or {}}},
    )


async def ordering_error_handler(request: Request, exc: OrderingError) -> JSONResponse:
    status_code = ERROR_STATUS_CODES.get(exc.kind, 500)
    log = logger.error if status_code >= 500 else logger.info
    log("Request failed", path=request.url.path, code=exc.code, kind=exc.kind.value, details=exc.details)
    return JSONResponse(status_code=status_code, content={"error": exc.to_dict()})


async def store_error_handler(request: Request, exc: StoreError) -> JSONResponse:
    logger.error("Document store failure", path=request.url.path, error=str(exc))
    return await ordering_error_handler(request, Internal("Internal error, please retry later"))


async def validation_error_handler(request: Request, exc: ValidationError) -> JSONResponse:
    return error_response(400, "VALIDATION_ERROR", ErrorKind.VALIDATION.value, "Invalid request", exc.messages)


async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    details = {".".join(str(part) for part in error["loc"]): error["msg"] for error in exc.errors()}
    return error_response(400, "VALIDATION_ERROR", ErrorKind.VALIDATION.value, "Malformed request", details)


async def not_found_handler(request: Request, exc: ObjectNotFoundError) -> JSONResponse:
    return error_response(404, "NOT_FOUND", ErrorKind.NOT_FOUND.value, str(exc))


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(OrderingError, ordering_error_handler)
    app.add_exception_handler(StoreError, store_error_handler)
    app.add_exception_handler(ValidationError, validation_error_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)
    app.add_exception_handler(ObjectNotFoundError, not_found_handler)
