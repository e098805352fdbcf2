"""Middleware registration."""

from fastapi import FastAPI

from labquest.config import Settings
from labquest.middleware.cors import setup_cors
from labquest.middleware.error_handler import setup_error_handlers
from labquest.middleware.logging import setup_logging
from labquest.middleware.request_id import RequestIdMiddleware


def setup_middleware(app: FastAPI, settings: Settings) -> None:
    """Register logging, error handlers and middleware.

    Starlette runs middleware in reverse-add order, so CORS is added last
    to stay outermost and wrap error responses.
    """
    setup_logging(settings)
    setup_error_handlers(app)
    app.add_middleware(RequestIdMiddleware)
    setup_cors(app, settings)
