"""FastAPI application factory."""

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI
from sqlalchemy.exc import SQLAlchemyError

from labquest.config import get_settings
from labquest.database import close_db, get_session, init_db
from labquest.gamification.exceptions import ConfigurationError
from labquest.gamification.router import router as gamification_router
from labquest.gamification.seed import seed_defaults
from labquest.health.router import router as health_router
from labquest.middleware import setup_middleware
from labquest.redis_client import close_redis, init_redis

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(_app: FastAPI) -> AsyncGenerator[None, None]:
    """Startup and shutdown lifecycle."""
    settings = get_settings()
    await init_db(settings.database_url)
    if settings.redis_url:
        await init_redis(settings.redis_url)

    if settings.seed_defaults:
        try:
            async for db in get_session():
                await seed_defaults(db)
                break
        except (SQLAlchemyError, ConfigurationError):
            logger.warning("Default content seeding failed (tables may not exist yet)", exc_info=True)

    yield

    await close_db()
    await close_redis()


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = get_settings()

    app = FastAPI(
        title="LabQuest Gamification API",
        description="Progression and rewards engine for laboratory activity",
        version=settings.app_version,
        docs_url="/docs" if settings.debug else None,
        redoc_url="/redoc" if settings.debug else None,
        lifespan=lifespan,
    )

    setup_middleware(app, settings)
    app.include_router(health_router, tags=["Health"])
    app.include_router(gamification_router)

    return app


app = create_app()
