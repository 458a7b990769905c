from __future__ import annotations

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from tenantauth.logging import get_logger
from tenantauth.schemas import ErrorResult
from tenantauth.service.errors import ErrorCode, InternalError, ServiceError
from tenantauth.storage.errors import ConstraintViolation

logger = get_logger(__name__)

_STATUS_TO_CODE = {
    400: ErrorCode.VALIDATION_ERROR,
    401: ErrorCode.INVALID,
    404: ErrorCode.NOT_FOUND,
    409: ErrorCode.ALREADY_EXISTS,
}


def _error_code_for_status(status_code: int) -> ErrorCode:
    if status_code in _STATUS_TO_CODE:
        return _STATUS_TO_CODE[status_code]
    if status_code < 500:
        return ErrorCode.VALIDATION_ERROR
    return ErrorCode.INTERNAL


def _error_response(
    status_code: int, message: str, code: ErrorCode | None = None
) -> JSONResponse:
    body = ErrorResult(message=message, error_code=code or _error_code_for_status(status_code))
    return JSONResponse(status_code=status_code, content=body.model_dump(mode="json"))


def register_exception_handlers(app: FastAPI) -> None:
    """Install handlers so every error body has the result shape."""

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation(request: Request, exc: RequestValidationError):
        fields = [".".join(str(p) for p in err.get("loc", ())) for err in exc.errors()]
        logger.warning(
            "request_validation_failed",
            path=request.url.path,
            method=request.method,
            fields=fields,
        )
        return _error_response(400, "Invalid request body", ErrorCode.VALIDATION_ERROR)

    @app.exception_handler(ServiceError)
    async def handle_service_error(request: Request, exc: ServiceError):
        log_fn = logger.error if exc.status_code >= 500 else logger.warning
        log_fn(
            "service_error",
            path=request.url.path,
            method=request.method,
            status_code=exc.status_code,
            error_code=exc.error_code.value,
            message=exc.message,
        )
        return _error_response(exc.status_code, exc.message, exc.error_code)

    @app.exception_handler(ConstraintViolation)
    async def handle_constraint_violation(request: Request, exc: ConstraintViolation):
        logger.warning(
            "constraint_violation",
            path=request.url.path,
            method=request.method,
            message=exc.message,
            detail=exc.detail,
        )
        return _error_response(409, "Resource already exists", ErrorCode.ALREADY_EXISTS)

    @app.exception_handler(StarletteHTTPException)
    async def handle_http_exception(request: Request, exc: StarletteHTTPException):
        if exc.status_code >= 500:
            logger.error(
                "http_error",
                path=request.url.path,
                method=request.method,
                status_code=exc.status_code,
            )
        message = exc.detail if isinstance(exc.detail, str) else "http error"
        return _error_response(exc.status_code, message)

    @app.exception_handler(Exception)
    async def handle_uncaught(request: Request, exc: Exception):
        logger.exception(
            "unhandled_exception",
            exc_info=exc,
            path=request.url.path,
            method=request.method,
            error_type=type(exc).__name__,
        )
        return _error_response(500, InternalError.default_message, ErrorCode.INTERNAL)
