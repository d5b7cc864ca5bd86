"""
FastAPI application for the internal entitlements service.

    uvicorn entitlement_engine.main:app
"""
import logging
import os
from contextlib import asynccontextmanager

from dotenv import load_dotenv
from fastapi import FastAPI, HTTPException

if "PYTEST_CURRENT_TEST" not in os.environ:
    load_dotenv()

from entitlement_engine.api import entitlements, health
from entitlement_engine.core.config import settings, validate_config
from entitlement_engine.core.database import create_all_tables, dispose_engine
from entitlement_engine.core.errors import (
    AppError,
    app_error_handler,
    http_error_handler,
    unhandled_exception_handler,
)
from entitlement_engine.core.logging import configure_logging
from entitlement_engine.core.middleware.request_id import RequestIdMiddleware
from entitlement_engine.core.validation import validate_env
from entitlement_engine.features.catalog.service import seed_catalog


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger = logging.getLogger("entitlement_engine")
    logger.info("Starting entitlements service...")
    if app.state.bootstrap_storage:
        create_all_tables()
        seed_catalog()
    try:
        yield
    finally:
        dispose_engine()
        logger.info("Stopping entitlements service...")


def create_app(bootstrap_storage: bool = True) -> FastAPI:
    """
    Build the application.

    Args:
        bootstrap_storage: Create tables and seed the default catalog on startup
    """
    configure_logging(settings.ENV)
    validate_env()
    validate_config(strict=settings.CONFIG_STRICT)

    app = FastAPI(title="Entitlement Engine", lifespan=lifespan)
    app.state.bootstrap_storage = bootstrap_storage

    app.add_middleware(RequestIdMiddleware)
    app.add_exception_handler(AppError, app_error_handler)
    app.add_exception_handler(HTTPException, http_error_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)

    app.include_router(health.router)
    app.include_router(entitlements.router)
    return app


app = create_app()
