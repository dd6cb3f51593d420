from typing import Any, Dict, Optional

from fastapi import FastAPI, HTTPException, Request, status
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from sqlalchemy.exc import IntegrityError

from src.shared.logging import get_logger

logger = get_logger(__name__)


# ───────────────────────── Base & Domain Exceptions ─────────────────────────
class DomainError(Exception):
    """
    Base class for pipeline errors. Services raise these, never HTTPException; the
    handlers below turn them into ``{code, message, details?, correlation_id?}``.
    """
    code: str = "domain_error"
    status_code: int = status.HTTP_400_BAD_REQUEST
    message: str
    details: Optional[Dict[str, Any]]

    def __init__(
        self,
        message: str = "",
        *,
        code: Optional[str] = None,
        status_code: Optional[int] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message or self.__class__.__name__)
        if code is not None:
            self.code = code
        if status_code is not None:
            self.status_code = status_code
        self.message = message or self.__class__.__name__
        self.details = details

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(code={self.code!r}, message={self.message!r})"


class ValidationError(DomainError):
    code = "validation_error"
    status_code = status.HTTP_422_UNPROCESSABLE_ENTITY


class NotFoundError(DomainError):
    # subclasses narrow the code, e.g. "conversation_not_found"
    code = "not_found"
    status_code = status.HTTP_404_NOT_FOUND


class ConflictError(DomainError):
    code = "conflict"
    status_code = status.HTTP_409_CONFLICT


class ExternalServiceError(DomainError):
    """A channel provider or other upstream refused or failed the call."""
    code = "external_service_error"
    status_code = status.HTTP_502_BAD_GATEWAY


# ───────────────────────────── Helpers ──────────────────────────────────────

def problem(
    code: str,
    message: str,
    details: Optional[Dict[str, Any]] = None,
    correlation_id: Optional[str] = None,
) -> Dict[str, Any]:
    body: Dict[str, Any] = {"code": code, "message": message}
    if details:
        body["details"] = details
    if correlation_id:
        body["correlation_id"] = correlation_id
    return body


def _correlation_id(req: Request) -> Optional[str]:
    return getattr(req.state, "correlation_id", None)


def _respond(req: Request, status_code: int, code: str, message: str, details: Optional[Dict[str, Any]] = None) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=jsonable_encoder(problem(code, message, details, _correlation_id(req))),
    )


# ─────────────────────────── Registration ───────────────────────────

def register_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(DomainError)
    async def handle_domain_error(req: Request, exc: DomainError):
        if exc.status_code >= 500:
            logger.error("domain_error", code=exc.code, path=req.url.path, error=exc.message)
        else:
            logger.info("domain_error", code=exc.code, path=req.url.path, status_code=exc.status_code)
        return _respond(req, exc.status_code, exc.code, exc.message, exc.details)

    @app.exception_handler(IntegrityError)
    async def handle_integrity_error(req: Request, exc: IntegrityError):
        # Services translate the constraints they expect; anything reaching here is a race we did not map.
        logger.warning("unmapped_integrity_error", path=req.url.path, constraint=str(exc.orig)[:200])
        return _respond(req, status.HTTP_409_CONFLICT, "conflict", "Conflicting write, retry the request")

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation(req: Request, exc: RequestValidationError):
        return _respond(
            req,
            status.HTTP_422_UNPROCESSABLE_ENTITY,
            "validation_error",
            "Request validation failed",
            {"errors": exc.errors()},
        )

    @app.exception_handler(HTTPException)
    async def handle_http_exception(req: Request, exc: HTTPException):
        detail = exc.detail
        return _respond(
            req,
            exc.status_code,
            f"http_{exc.status_code}",
            detail if isinstance(detail, str) else "HTTP error",
            detail if isinstance(detail, dict) else None,
        )

    @app.exception_handler(Exception)
    async def handle_unhandled(req: Request, exc: Exception):
        logger.exception("unhandled_exception", path=req.url.path, error_type=exc.__class__.__name__)
        return _respond(
            req,
            status.HTTP_500_INTERNAL_SERVER_ERROR,
            "internal_error",
            "Internal server error",
            {"type": exc.__class__.__name__},
        )
