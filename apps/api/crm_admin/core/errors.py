from __future__ import annotations

import logging
from dataclasses import asdict, dataclass

from fastapi import FastAPI, HTTPException, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from crm_admin.context import get_correlation_id


logger = logging.getLogger("crm_admin.errors")


class CRMError(HTTPException):
    """Base error rendered through the error envelope.

    Subclasses pin the HTTP status, the error category and a stable code; the
    message may be overridden per raise site.
    """

    http_status = status.HTTP_500_INTERNAL_SERVER_ERROR
    category = "internal_error"
    code = "INTERNAL_ERROR"
    default_message = "Internal server error"

    def __init__(self, message: str | None = None, *, code: str | None = None) -> None:
        if code is not None:
            self.code = code
        super().__init__(status_code=self.http_status, detail=message or self.default_message)

    @property
    def message(self) -> str:
        return str(self.detail)


class AuthenticationError(CRMError):
    http_status = status.HTTP_401_UNAUTHORIZED
    category = "unauthorized"
    code = "UNAUTHORIZED"
    default_message = "Authentication required"


class MissingCredential(AuthenticationError):
    code = "MISSING_TOKEN"
    default_message = "Authorization header is required"


class MalformedCredential(AuthenticationError):
    code = "INVALID_TOKEN_FORMAT"
    default_message = "Authorization header format must be Bearer {token}"


class MalformedToken(AuthenticationError):
    code = "INVALID_TOKEN"
    default_message = "Token is malformed"


class ExpiredCredential(AuthenticationError):
    code = "INVALID_TOKEN"
    default_message = "Token has expired"


class InvalidSignature(AuthenticationError):
    code = "INVALID_TOKEN"
    default_message = "Invalid token"


class MissingRoleClaim(AuthenticationError):
    code = "MISSING_ROLE"
    default_message = "User role not found in token"


class Unauthenticated(AuthenticationError):
    code = "NO_USER_CONTEXT"
    default_message = "User not found in context"


class AuthorizationError(CRMError):
    """Raised when a verified caller fails a role or permission gate."""

    http_status = status.HTTP_403_FORBIDDEN
    category = "forbidden"
    code = "INSUFFICIENT_PERMISSIONS"
    default_message = "You don't have permission to perform this action"


Forbidden = AuthorizationError


class ValidationFailed(CRMError):
    http_status = status.HTTP_400_BAD_REQUEST
    category = "validation_error"
    code = "INVALID_REQUEST"
    default_message = "Invalid request payload"


class InvalidIdentifier(ValidationFailed):
    code = "INVALID_ID"
    default_message = "Invalid identifier"


class NoFieldsProvided(ValidationFailed):
    code = "NO_UPDATES"
    default_message = "No valid fields to update"


class InvalidStage(ValidationFailed):
    code = "INVALID_STAGE"
    default_message = "Invalid deal stage"


class MissingLink(ValidationFailed):
    code = "MISSING_LINK"
    default_message = "Either customer_id or deal_id is required"


class ConflictError(CRMError):
    http_status = status.HTTP_409_CONFLICT
    category = "conflict"
    code = "CONFLICT"
    default_message = "Resource already exists"


class DuplicateEmail(ConflictError):
    code = "EMAIL_EXISTS"
    default_message = "A customer with this email already exists"


class DuplicateName(ConflictError):
    code = "TAG_EXISTS"
    default_message = "A tag with this name already exists"


class NotFoundError(CRMError):
    http_status = status.HTTP_404_NOT_FOUND
    category = "not_found"
    code = "NOT_FOUND"
    default_message = "Resource not found"


class CustomerNotFound(NotFoundError):
    code = "CUSTOMER_NOT_FOUND"
    default_message = "Customer not found"


class ContactNotFound(NotFoundError):
    code = "CONTACT_NOT_FOUND"
    default_message = "Contact not found"


class DealNotFound(NotFoundError):
    code = "DEAL_NOT_FOUND"
    default_message = "Deal not found"


class ActivityNotFound(NotFoundError):
    code = "ACTIVITY_NOT_FOUND"
    default_message = "Activity not found"


class TagNotFound(NotFoundError):
    code = "TAG_NOT_FOUND"
    default_message = "Tag not found"


class StorageError(CRMError):
    """Persistence failure. The message never carries driver detail."""

    code = "DATABASE_ERROR"
    default_message = "A database error occurred"


_CATEGORY_BY_STATUS = {
    status.HTTP_400_BAD_REQUEST: "validation_error",
    status.HTTP_401_UNAUTHORIZED: "unauthorized",
    status.HTTP_403_FORBIDDEN: "forbidden",
    status.HTTP_404_NOT_FOUND: "not_found",
    status.HTTP_405_METHOD_NOT_ALLOWED: "method_not_allowed",
    status.HTTP_409_CONFLICT: "conflict",
}


@dataclass
class ErrorEnvelope:
    error: str
    code: str
    message: str
    correlation_id: str | None


def error_response(
    request: Request,
    *,
    status_code: int,
    category: str,
    code: str,
    message: str,
) -> JSONResponse:
    correlation_id = get_correlation_id() or getattr(getattr(request.state, "context", None), "request_id", None)
    payload = ErrorEnvelope(error=category, code=code, message=message, correlation_id=correlation_id)
    return JSONResponse(status_code=status_code, content=asdict(payload))


async def _crm_error_handler(request: Request, exc: CRMError) -> JSONResponse:
    return error_response(
        request,
        status_code=exc.status_code,
        category=exc.category,
        code=exc.code,
        message=exc.message,
    )


async def _http_error_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    category = _CATEGORY_BY_STATUS.get(exc.status_code, "internal_error")
    return error_response(
        request,
        status_code=exc.status_code,
        category=category,
        code=category.upper(),
        message=str(exc.detail),
    )


async def _request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    first = exc.errors()[0] if exc.errors() else {}
    location = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
    message = first.get("msg", "Invalid request payload")
    if location:
        message = f"{location}: {message}"
    return error_response(
        request,
        status_code=status.HTTP_400_BAD_REQUEST,
        category="validation_error",
        code="INVALID_REQUEST",
        message=message,
    )


async def _unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.error("unhandled.error", exc_info=exc, extra={"path": request.url.path, "error": str(exc)})
    return error_response(
        request,
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        category="internal_error",
        code="INTERNAL_ERROR",
        message="Internal server error",
    )


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(CRMError, _crm_error_handler)  # type: ignore[arg-type]
    app.add_exception_handler(StarletteHTTPException, _http_error_handler)  # type: ignore[arg-type]
    app.add_exception_handler(RequestValidationError, _request_validation_handler)  # type: ignore[arg-type]
    app.add_exception_handler(Exception, _unhandled_error_handler)
