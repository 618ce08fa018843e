from typing import Any

from fastapi import Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import ORJSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException


class AppError(Exception):
    """Base application error rendered as the error envelope."""

    def __init__(
        self,
        message: str,
        code: str = "ERROR",
        status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR,
        details: dict[str, Any] | None = None,
    ):
        self.message = message
        self.code = code
        self.status_code = status_code
        self.details = details or {}
        super().__init__(message)


class UnauthorizedError(AppError):
    def __init__(self, message: str = "Unauthorized"):
        super().__init__(message, code="UNAUTHORIZED", status_code=status.HTTP_401_UNAUTHORIZED)


class ForbiddenError(AppError):
    def __init__(self, message: str = "Forbidden"):
        super().__init__(message, code="FORBIDDEN", status_code=status.HTTP_403_FORBIDDEN)


class NotFoundError(AppError):
    def __init__(self, message: str = "Not found"):
        super().__init__(message, code="NOT_FOUND", status_code=status.HTTP_404_NOT_FOUND)


class ConflictError(AppError):
    def __init__(self, message: str = "Conflict", details: dict[str, Any] | None = None):
        super().__init__(message, code="CONFLICT", status_code=status.HTTP_409_CONFLICT, details=details)


class BadRequestError(AppError):
    def __init__(self, message: str = "Bad request", details: dict[str, Any] | None = None):
        super().__init__(message, code="BAD_REQUEST", status_code=status.HTTP_400_BAD_REQUEST, details=details)


class ValidationError(AppError):
    def __init__(self, message: str = "Validation error", errors: list[Any] | None = None):
        super().__init__(
            message,
            code="VALIDATION_ERROR",
            status_code=status.HTTP_400_BAD_REQUEST,
            details={"errors": errors or []},
        )

    @classmethod
    def from_pydantic(cls, exc: Any, message: str = "Validation error") -> "ValidationError":
        errors = [{"field": ".".join(str(p) for p in err["loc"]), "message": err["msg"]} for err in exc.errors()]
        return cls(message, errors=errors)


class InsufficientPointsError(AppError):
    """Balance is lower than the amount a debit needs. Nothing has been written."""

    def __init__(self, required: int, available: int, message: str = "Insufficient points"):
        self.required = required
        self.available = available
        self.shortage = required - available
        super().__init__(
            message,
            code="INSUFFICIENT_POINTS",
            status_code=status.HTTP_400_BAD_REQUEST,
            details={"required": required, "available": available, "shortage": self.shortage},
        )


def _envelope(request: Request, message: str, code: str, data: dict[str, Any] | None = None) -> dict[str, Any]:
    body: dict[str, Any] = {"status": "error", "message": message, "code": code}
    if data:
        body["data"] = data
    if hasattr(request.state, "request_id"):
        body["request_id"] = request.state.request_id
    return body


def error_response(request: Request, exc: AppError) -> ORJSONResponse:
    return ORJSONResponse(
        status_code=exc.status_code,
        content=_envelope(request, exc.message, exc.code, exc.details),
    )


async def app_exception_handler(request: Request, exc: AppError) -> ORJSONResponse:
    return error_response(request, exc)


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> ORJSONResponse:
    errors = [
        {"field": ".".join(str(p) for p in e.get("loc", ()) if p != "body"), "message": e.get("msg"), "type": e.get("type")}
        for e in exc.errors()
    ]
    return error_response(request, ValidationError("Invalid request data", errors=errors))


async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> ORJSONResponse:
    return ORJSONResponse(
        status_code=exc.status_code,
        content=_envelope(request, str(exc.detail), "HTTP_ERROR"),
        headers=getattr(exc, "headers", None),
    )


async def generic_exception_handler(request: Request, exc: Exception) -> ORJSONResponse:
    from app.core.config import get_settings
    from app.core.logging import get_logger
    get_logger(__name__).exception("unhandled_exception", exc_info=exc, path=request.url.path)
    data = {"error": str(exc)} if get_settings().debug else None
    return ORJSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content=_envelope(request, "Internal server error", "INTERNAL_ERROR", data),
    )
