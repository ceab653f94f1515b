"""Middleware registration."""

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from tutorxp.config import Settings
from tutorxp.middleware.error_handler import setup_error_handlers
from tutorxp.middleware.logging import setup_logging
from tutorxp.middleware.request_id import RequestIdMiddleware


def setup_middleware(app: FastAPI, settings: Settings) -> None:
    """Logging, error mapping, request ids, then CORS as the outermost layer.

    Starlette runs middleware in reverse-add order, so CORS headers also land on error responses.
    """
    setup_logging(settings)
    setup_error_handlers(app)
    app.add_middleware(RequestIdMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "OPTIONS"],
        allow_headers=["*"],
        expose_headers=["X-Request-Id"],
    )
