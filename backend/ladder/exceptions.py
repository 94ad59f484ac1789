import logging
from typing import Any, Optional

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel

logger = logging.getLogger(__name__)


class ProblemDetail(BaseModel):
    """RFC 7807 compliant error response."""

    type: str = "about:blank"
    title: str
    detail: Optional[str] = None
    status: int
    instance: Optional[str] = None
    code: str
    details: Optional[dict[str, Any]] = None


class DomainException(Exception):
    """Base class for domain-specific exceptions."""

    def __init__(
        self,
        status_code: int,
        title: str,
        *,
        code: str,
        detail: str | None = None,
        type_: str = "about:blank",
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(detail or title)
        self.status_code = status_code
        self.title = title
        self.detail = detail
        self.type = type_
        self.code = code
        self.details = details


class SessionNotFound(DomainException):
    def __init__(self, session_id: str) -> None:
        super().__init__(
            status_code=404,
            title="Session not found",
            detail=f"session '{session_id}' not found",
            code="session_not_found",
        )


class MatchNotFound(DomainException):
    def __init__(self, match_id: str) -> None:
        super().__init__(
            status_code=404,
            title="Match not found",
            detail=f"match '{match_id}' not found in session",
            code="match_not_found",
        )


class UnsupportedMatchType(DomainException):
    def __init__(self, match_type: str) -> None:
        super().__init__(
            status_code=400,
            title="Unsupported match type",
            detail=f"match type '{match_type}' cannot be recalculated",
            code="unsupported_match_type",
        )


class NotSessionOwner(DomainException):
    def __init__(self) -> None:
        super().__init__(
            status_code=403,
            title="Forbidden",
            detail="you can only change matches in your own sessions",
            code="session_forbidden",
        )


class RecalculationInProgress(DomainException):
    def __init__(self, session_id: str) -> None:
        super().__init__(
            status_code=409,
            title="Recalculation in progress",
            detail="recalculation already in progress, please wait",
            code="recalculation_in_progress",
            details={"sessionId": session_id},
        )


class SessionCompleted(DomainException):
    def __init__(self, session_id: str) -> None:
        super().__init__(
            status_code=409,
            title="Session completed",
            detail="session is already completed",
            code="session_completed",
            details={"sessionId": session_id},
        )


class RoundNotSubmittable(DomainException):
    def __init__(self, detail: str, *, status_code: int = 409, code: str = "round_not_submittable") -> None:
        super().__init__(
            status_code=status_code,
            title="Round cannot be submitted",
            detail=detail,
            code=code,
        )


class RecalculationFailed(DomainException):
    def __init__(self, detail: str, *, details: dict[str, Any] | None = None) -> None:
        super().__init__(
            status_code=500,
            title="Recalculation failed",
            detail=detail,
            code="recalculation_failed",
            details=details,
        )


def http_problem(
    status_code: int,
    detail: str,
    code: str,
    *,
    headers: Optional[dict[str, str]] = None,
) -> HTTPException:
    """Create an HTTPException with an attached problem code."""

    exc = HTTPException(status_code=status_code, detail=detail, headers=headers)
    setattr(exc, "code", code)
    return exc


async def domain_exception_handler(request: Request, exc: DomainException) -> JSONResponse:
    problem = ProblemDetail(
        type=exc.type,
        title=exc.title,
        detail=exc.detail,
        status=exc.status_code,
        code=exc.code,
        details=exc.details,
    )
    return JSONResponse(
        status_code=exc.status_code,
        content=problem.model_dump(exclude_none=True),
        media_type="application/problem+json",
    )


async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    detail = exc.detail if isinstance(exc.detail, str) else str(exc.detail)
    code = getattr(exc, "code", f"http_{exc.status_code}")
    problem = ProblemDetail(
        title=detail,
        detail=detail,
        status=exc.status_code,
        code=code,
    )
    return JSONResponse(
        status_code=exc.status_code,
        content=problem.model_dump(exclude_none=True),
        media_type="application/problem+json",
        headers=getattr(exc, "headers", None),
    )


async def validation_exception_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    errors = exc.errors()
    first = errors[0] if errors else {}
    detail = first.get("msg") or "malformed request body"
    location = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
    if location:
        detail = f"{location}: {detail}"
    problem = ProblemDetail(
        title="Invalid request",
        detail=detail,
        status=400,
        code="invalid_request",
    )
    return JSONResponse(
        status_code=400,
        content=problem.model_dump(exclude_none=True),
        media_type="application/problem+json",
    )


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.error("Unhandled exception", exc_info=(type(exc), exc, exc.__traceback__))
    problem = ProblemDetail(
        title="Internal Server Error",
        status=500,
        detail=str(exc),
        code="internal_server_error",
    )
    return JSONResponse(
        status_code=500,
        content=problem.model_dump(exclude_none=True),
        media_type="application/problem+json",
    )


def register_exception_handlers(app: FastAPI) -> None:
    """Render domain and HTTP errors as ``application/problem+json``."""

    app.add_exception_handler(DomainException, domain_exception_handler)
    app.add_exception_handler(HTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)
