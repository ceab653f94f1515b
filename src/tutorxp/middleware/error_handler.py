"""Global error handlers: domain exceptions and HTTP errors as consistent JSON."""

import structlog
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from tutorxp.errors import (
    ConcurrentModificationConflict,
    InsufficientBalance,
    InvalidStateTransition,
    LedgerIntegrityError,
    NotEligible,
    NotFound,
    RewardUnavailable,
    RuleConfigurationError,
)

logger = structlog.get_logger()


def setup_error_handlers(app: FastAPI) -> None:
    """Register global exception handlers.

    Starlette picks the handler of the closest class in the exception's MRO,
    so the domain subclasses win over the plain ValueError handler.
    """

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(_request: Request, exc: StarletteHTTPException) -> JSONResponse:
        """Handle HTTP exceptions with consistent JSON format."""
        return JSONResponse(
            status_code=exc.status_code,
            content={"detail": exc.detail},
        )

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(_request: Request, exc: RequestValidationError) -> JSONResponse:
        """Handle validation errors with consistent JSON format."""
        return JSONResponse(
            status_code=422,
            content={"detail": "Validation error", "errors": exc.errors()},
        )

    @app.exception_handler(InsufficientBalance)
    async def insufficient_balance_handler(_request: Request, exc: InsufficientBalance) -> JSONResponse:
        return JSONResponse(
            status_code=409,
            content={"detail": "Insufficient points", "requested": exc.requested, "available": exc.available},
        )

    @app.exception_handler(RewardUnavailable)
    async def reward_unavailable_handler(_request: Request, exc: RewardUnavailable) -> JSONResponse:
        return JSONResponse(status_code=409, content={"detail": "Reward unavailable", "reason": str(exc)})

    @app.exception_handler(InvalidStateTransition)
    async def invalid_transition_handler(_request: Request, exc: InvalidStateTransition) -> JSONResponse:
        return JSONResponse(status_code=409, content={"detail": str(exc)})

    @app.exception_handler(NotFound)
    async def not_found_handler(_request: Request, exc: NotFound) -> JSONResponse:
        return JSONResponse(status_code=404, content={"detail": str(exc)})

    @app.exception_handler(NotEligible)
    async def not_eligible_handler(_request: Request, exc: NotEligible) -> JSONResponse:
        return JSONResponse(status_code=403, content={"detail": str(exc)})

    @app.exception_handler(RuleConfigurationError)
    async def rule_configuration_handler(request: Request, exc: RuleConfigurationError) -> JSONResponse:
        logger.warning("rule_configuration_error", path=request.url.path, error=str(exc))
        return JSONResponse(status_code=422, content={"detail": str(exc)})

    @app.exception_handler(ValueError)
    async def value_error_handler(_request: Request, exc: ValueError) -> JSONResponse:
        return JSONResponse(status_code=400, content={"detail": str(exc)})

    @app.exception_handler(ConcurrentModificationConflict)
    async def conflict_handler(request: Request, exc: ConcurrentModificationConflict) -> JSONResponse:
        logger.warning("concurrent_modification", path=request.url.path, error=str(exc))
        return JSONResponse(
            status_code=503,
            content={"detail": "Temporarily busy, please retry"},
            headers={"Retry-After": "1"},
        )

    @app.exception_handler(LedgerIntegrityError)
    async def ledger_integrity_handler(request: Request, exc: LedgerIntegrityError) -> JSONResponse:
        logger.error("ledger_integrity_error", path=request.url.path, error=str(exc), exc_info=exc)
        return JSONResponse(status_code=500, content={"detail": "Internal server error"})

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        """Catch-all for unhandled exceptions, always JSON."""
        logger.error(
            "unhandled_exception",
            path=request.url.path,
            method=request.method,
            error=str(exc),
            exc_info=exc,
        )
        return JSONResponse(
            status_code=500,
            content={"detail": "Internal server error"},
        )
