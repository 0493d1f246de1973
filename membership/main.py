import logging
import os
from contextlib import asynccontextmanager

from fastapi import FastAPI
from starlette.exceptions import HTTPException as StarletteHTTPException
from dotenv import load_dotenv

if "PYTEST_CURRENT_TEST" not in os.environ:
    load_dotenv()

from membership.core.config import settings, validate_config
from membership.core.database import create_all_tables, get_database_url
from membership.core.logging import configure_logging
from membership.core.middleware.request_id import RequestIdMiddleware
from membership.core.errors import (
    AppError,
    app_error_handler,
    http_error_handler,
    unhandled_exception_handler,
)
from membership.features.catalog.service import get_catalog
from membership.api import admin, billing, entitlements, health, subscriptions, users


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger = logging.getLogger("membership")
    logger.info("Starting membership service...")
    if get_database_url():
        create_all_tables()
    else:
        logger.warning("DATABASE_URL not set; schema not created")
    try:
        yield
    finally:
        logger.info("Stopping membership service...")


def create_app() -> FastAPI:
    configure_logging(settings.ENV, settings.LOG_LEVEL)
    validate_config(strict=settings.CONFIG_STRICT)
    # A malformed catalog is fatal at startup, not on the first request
    get_catalog()

    app = FastAPI(title="Membership Service", lifespan=lifespan)
    app.add_middleware(RequestIdMiddleware)

    app.add_exception_handler(AppError, app_error_handler)
    app.add_exception_handler(StarletteHTTPException, http_error_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)

    app.include_router(health.router)
    app.include_router(users.router)
    app.include_router(entitlements.router)
    app.include_router(subscriptions.router)
    app.include_router(billing.router)
    app.include_router(admin.router)
    return app


app = create_app()
