"""
FastAPI Server for the BMS Workflow Core
Mounts the BMS routes, maps domain errors to HTTP status codes, and exposes health checks
"""

import logging
import os
from contextlib import asynccontextmanager
from typing import Optional

from dotenv import load_dotenv
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

# .env must be loaded before config reads the environment
load_dotenv(os.path.join(os.path.dirname(os.path.abspath(__file__)), ".env"))

from config import Config, IntegrationSettings
from database import create_tables, test_connection
from routes.bms_routes import router as bms_router
from services.external_services import ExternalServices
from utils.exception_handler import (
    BMSError,
    EntityNotFoundError,
    ExternalServiceError,
    UnknownEntityTypeError,
    ValidationError,
)

logger = logging.getLogger(__name__)

# First match wins; every other BMSError is a state conflict
ERROR_STATUS_CODES = (
    (ValidationError, 422),
    (UnknownEntityTypeError, 404),
    (EntityNotFoundError, 404),
    (ExternalServiceError, 502),
)


def status_code_for(error: BMSError) -> int:
    for error_cls, status_code in ERROR_STATUS_CODES:
        if isinstance(error, error_cls):
            return status_code
    return 409


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Startup: log configuration and make sure the schema exists
    Shutdown: nothing to release; sessions are request-scoped
    """
    logger.info(f"🔧 BMS worker {os.getpid()} starting...")
    Config.log_environment_config()
    if not create_tables():
        logger.error("❌ Schema creation failed; requests will error until the database is reachable")
    yield
    logger.info(f"🔄 BMS worker {os.getpid()} shutting down...")


def create_app(settings: Optional[IntegrationSettings] = None, run_lifespan: bool = True) -> FastAPI:
    """
    Build the application.

    ``settings`` defaults to the environment-derived IntegrationSettings; tests
    pass explicit mock settings instead.
    """
    settings = settings or IntegrationSettings.from_config()
    app = FastAPI(
        title="BMS Workflow Core",
        description="Back-office records and workflows for the exchange",
        lifespan=lifespan if run_lifespan else None,
    )
    app.state.external_services = ExternalServices.from_settings(settings)

    @app.exception_handler(BMSError)
    async def handle_bms_error(request: Request, exc: BMSError):
        status_code = status_code_for(exc)
        log = logger.error if status_code >= 500 else logger.info
        log(f"⚠️ BMS_ERROR: {request.method} {request.url.path} -> {status_code} {exc.error_code}: {exc}")
        return JSONResponse(status_code=status_code, content=exc.to_dict())

    @app.get("/health")
    async def health_check():
        """Health check endpoint with a database connectivity check"""
        database_ok = test_connection()
        return JSONResponse(
            content={
                "status": "ok" if database_ok else "degraded",
                "service": "bms-workflow-core",
                "environment": Config.CURRENT_ENVIRONMENT,
                "database": "connected" if database_ok else "unavailable",
                "external_services": settings.mode,
            },
            status_code=200 if database_ok else 503,
        )

    app.include_router(bms_router)
    return app


if __name__ == "__main__":
    import uvicorn

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    uvicorn.run(
        "api_server:create_app",
        factory=True,
        host=os.getenv("HOST", "0.0.0.0"),
        port=int(os.getenv("PORT", "8000")),
    )
