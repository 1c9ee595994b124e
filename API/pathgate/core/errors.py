import logging
import uuid

from fastapi import HTTPException, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

logger = logging.getLogger(__name__)


class PathgateError(Exception):
    code = "pathgate_error"
    status_code = 500

    def __init__(self, message: str, *, details=None):
        super().__init__(message)
        self.message = message
        self.details = details


class ValidationError(PathgateError):
    code = "validation_error"
    status_code = 422

    def __init__(self, message: str, *, field: str | None = None, details=None):
        super().__init__(message, details=details if details is not None else ({"field": field} if field else None))
        self.field = field


class DuplicateAttemptError(ValidationError):
    code = "duplicate_attempt"
    status_code = 409


class NotFoundError(PathgateError):
    code = "not_found"
    status_code = 404

    def __init__(self, kind: str, identifier: str):
        super().__init__(f"{kind} not found: {identifier}", details={"kind": kind, "id": identifier})
        self.kind = kind
        self.identifier = identifier


class AuthorizationError(PathgateError):
    code = "authorization_error"
    status_code = 403


class AttemptLimitExceededError(PathgateError):
    code = "attempt_limit_exceeded"
    status_code = 409

    def __init__(self, assessment_id: str, max_attempts: int):
        super().__init__(
            f"Maximum attempts ({max_attempts}) reached for assessment {assessment_id}",
            details={"assessment_id": assessment_id, "max_attempts": max_attempts},
        )
        self.assessment_id = assessment_id
        self.max_attempts = max_attempts


class TimeLimitExceededError(PathgateError):
    code = "time_limit_exceeded"
    status_code = 409


class AdvisorServiceError(PathgateError):
    code = "advisor_error"
    status_code = 503

    def __init__(self, message: str, *, retryable: bool = True, kind: str = "unavailable"):
        super().__init__(message, details={"retryable": retryable, "kind": kind})
        self.retryable = retryable
        self.kind = kind


class CircuitOpenError(AdvisorServiceError):
    def __init__(self, name: str):
        super().__init__(f"Circuit breaker '{name}' is open", retryable=False, kind="circuit_open")


class ConcurrencyConflictError(PathgateError):
    code = "concurrency_conflict"
    status_code = 409


def get_request_id(request: Request) -> str:
    return getattr(request.state, "request_id", "unknown")


def error_response(
    request: Request,
    *,
    code: str,
    message: str,
    status_code: int,
    details=None,
) -> JSONResponse:
    payload = {
        "success": False,
        "error": {
            "code": code,
            "message": message,
            "request_id": get_request_id(request),
            "details": details,
        },
    }
    return JSONResponse(status_code=status_code, content=payload)


async def pathgate_exception_handler(request: Request, exc: PathgateError):
    if exc.status_code >= 500:
        logger.warning("Service error | request_id=%s | %s: %s", get_request_id(request), exc.code, exc.message)
    return error_response(
        request,
        code=exc.code,
        message=exc.message,
        status_code=exc.status_code,
        details=exc.details,
    )


async def http_exception_handler(request: Request, exc: HTTPException):
    return error_response(
        request,
        code="http_error",
        message=str(exc.detail),
        status_code=exc.status_code,
    )


async def validation_exception_handler(request: Request, exc: RequestValidationError):
    return error_response(
        request,
        code="validation_error",
        message="Request validation failed",
        status_code=422,
        details=jsonable_encoder(exc.errors()),
    )


async def unhandled_exception_handler(request: Request, exc: Exception):
    logger.exception("Unhandled exception | request_id=%s", get_request_id(request), exc_info=exc)
    return error_response(
        request,
        code="internal_error",
        message="Internal server error",
        status_code=500,
    )


async def request_id_middleware(request: Request, call_next):
    incoming = request.headers.get("x-request-id")
    request.state.request_id = incoming or str(uuid.uuid4())
    response = await call_next(request)
    response.headers["x-request-id"] = request.state.request_id
    return response
