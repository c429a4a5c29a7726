"""
Application error types and the exception handlers that turn them into the
JSON error envelope.
"""
import logging
from datetime import datetime, timezone
from typing import Any, List, Optional

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from starlette.exceptions import HTTPException as StarletteHTTPException

from .config import Settings

logger = logging.getLogger(__name__)

# PostgreSQL error codes that point at bad input rather than a conflict
FOREIGN_KEY_VIOLATION = "23503"
NOT_NULL_VIOLATION = "23502"


class AppError(Exception):
    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR
    code: str = "INTERNAL_ERROR"
    default_message: str = "Internal server error"

    def __init__(self, message: Optional[str] = None, errors: Optional[List[dict]] = None):
        self.message = message or self.default_message
        self.errors = errors
        super().__init__(self.message)


class ValidationError(AppError):
    status_code = status.HTTP_400_BAD_REQUEST
    code = "VALIDATION_ERROR"
    default_message = "Validation failed"


class AuthenticationError(AppError):
    status_code = status.HTTP_401_UNAUTHORIZED
    code = "AUTHENTICATION_ERROR"
    default_message = "Authentication failed"


class AuthorizationError(AppError):
    status_code = status.HTTP_403_FORBIDDEN
    code = "AUTHORIZATION_ERROR"
    default_message = "Access denied"


class NotFoundError(AppError):
    status_code = status.HTTP_404_NOT_FOUND
    code = "NOT_FOUND_ERROR"
    default_message = "Resource not found"


class ConflictError(AppError):
    status_code = status.HTTP_409_CONFLICT
    code = "CONFLICT_ERROR"
    default_message = "Resource conflict"


class RateLimitError(AppError):
    status_code = status.HTTP_429_TOO_MANY_REQUESTS
    code = "RATE_LIMIT_ERROR"
    default_message = "Too many requests"


class DatabaseError(AppError):
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    code = "DATABASE_ERROR"
    default_message = "Database operation failed"


def error_body(request: Request, message: str, code: Optional[str], errors: Optional[List[dict]] = None) -> dict:
    body: dict[str, Any] = {
        "success": False,
        "message": message,
        "code": code,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "path": request.url.path,
        "method": request.method,
    }
    if errors:
        body["errors"] = errors
    return body


def _log(request: Request, status_code: int, message: str, code: Optional[str]) -> None:
    extra = {"method": request.method, "path": request.url.path, "status_code": status_code, "code": code}
    if status_code >= 500:
        logger.error(f"Request error: {message}", extra=extra)
    else:
        logger.warning(f"Request error: {message}", extra=extra)


def _field(loc: tuple) -> str:
    parts = [str(p) for p in loc if p not in ("body", "path", "query", "header")]
    return ".".join(parts)


def map_integrity_error(exc: IntegrityError) -> AppError:
    pgcode = getattr(exc.orig, "pgcode", None)
    if pgcode == FOREIGN_KEY_VIOLATION:
        return ValidationError("Referenced resource does not exist")
    if pgcode == NOT_NULL_VIOLATION:
        return ValidationError("Required field is missing")
    return ConflictError("Resource already exists")


def register_exception_handlers(app: FastAPI, settings: Settings) -> None:

    @app.exception_handler(AppError)
    async def app_error_handler(request: Request, exc: AppError):
        _log(request, exc.status_code, exc.message, exc.code)
        return JSONResponse(status_code=exc.status_code, content=error_body(request, exc.message, exc.code, exc.errors))

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        errors = [{"field": _field(err.get("loc", ())), "message": err.get("msg", "")} for err in exc.errors()]
        _log(request, status.HTTP_400_BAD_REQUEST, "Validation failed", ValidationError.code)
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content=error_body(request, "Validation failed", ValidationError.code, errors),
        )

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(request: Request, exc: StarletteHTTPException):
        if exc.status_code == status.HTTP_404_NOT_FOUND and exc.detail == "Not Found":
            message = f"Route {request.method} {request.url.path} not found"
            code = NotFoundError.code
        else:
            message = str(exc.detail)
            code = "HTTP_ERROR"
        _log(request, exc.status_code, message, code)
        return JSONResponse(
            status_code=exc.status_code,
            content=error_body(request, message, code),
            headers=getattr(exc, "headers", None),
        )

    @app.exception_handler(IntegrityError)
    async def integrity_error_handler(request: Request, exc: IntegrityError):
        mapped = map_integrity_error(exc)
        _log(request, mapped.status_code, mapped.message, mapped.code)
        return JSONResponse(status_code=mapped.status_code, content=error_body(request, mapped.message, mapped.code))

    @app.exception_handler(SQLAlchemyError)
    async def database_error_handler(request: Request, exc: SQLAlchemyError):
        logger.error(f"Database error: {exc}", exc_info=True)
        return JSONResponse(
            status_code=DatabaseError.status_code,
            content=error_body(request, DatabaseError.default_message, DatabaseError.code),
        )

    @app.exception_handler(Exception)
    async def general_exception_handler(request: Request, exc: Exception):
        logger.error(f"Unhandled exception: {exc}", exc_info=True)
        message = "Internal server error" if settings.is_production() else str(exc)
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content=error_body(request, message, AppError.code),
        )
