import logging
import time
from datetime import datetime, timezone
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

import database
from activation_engine import ActivationEngine, ActivationOutcome
from errors import OutcomeCode, error_type_for, http_status_for
from license_store import LicenseStore
from models import (
    ActivationResponse,
    ApiHealthResponse,
    DeactivationResponse,
    ErrorResponse,
    HealthCheckResponse,
    LicenseRequest,
    ValidationResponse,
)

logger = logging.getLogger(__name__)

ERROR_RESPONSES = {
    400: {"model": ErrorResponse},
    403: {"model": ErrorResponse},
    404: {"model": ErrorResponse},
    410: {"model": ErrorResponse},
    429: {"model": ErrorResponse},
    500: {"model": ErrorResponse},
}


def _error(outcome: ActivationOutcome) -> JSONResponse:
    body = ErrorResponse(
        error=outcome.message,
        errorType=error_type_for(outcome.code).value,
        reason=outcome.code.value,
    )
    return JSONResponse(status_code=http_status_for(outcome.code), content=body.model_dump())


def create_app(activation_engine: Optional[ActivationEngine] = None) -> FastAPI:
    """
    Build the license server application.

    Without an explicit engine the app serves the database configured by
    DATABASE_URL, creating its tables if needed.
    """
    if activation_engine is None:
        database.init_db(database.engine)
        store = LicenseStore(database.SessionLocal, logger=logging.getLogger("license_store"))
        activation_engine = ActivationEngine(store, logger=logging.getLogger("activation_engine"))

    started = time.monotonic()

    app = FastAPI(
        title="PS License Server",
        description="License activation, validation and deactivation for PS installations",
        version="1.0.0",
    )
    app.state.activation_engine = activation_engine

    # CORS
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["GET", "POST"],
        allow_headers=["Content-Type", "Accept"],
    )

    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        logger.info("%s %s", request.method, request.url.path)
        return await call_next(request)

    @app.exception_handler(StarletteHTTPException)
    async def http_error(request: Request, exc: StarletteHTTPException):
        error = "Endpoint not found" if exc.status_code == 404 else str(exc.detail)
        return JSONResponse(status_code=exc.status_code, content={"success": False, "error": error})

    @app.exception_handler(RequestValidationError)
    async def malformed_request(request: Request, exc: RequestValidationError):
        logger.info("Malformed request body on %s", request.url.path)
        return _error(ActivationOutcome(OutcomeCode.FORMAT_ERROR, "Invalid request body"))

    @app.exception_handler(Exception)
    async def internal_error(request: Request, exc: Exception):
        logger.exception("Unhandled error on %s", request.url.path)
        return JSONResponse(status_code=500, content={"success": False, "error": "Internal server error"})

    # API Endpoints
    @app.post("/api/activate", response_model=ActivationResponse, responses=ERROR_RESPONSES)
    def activate(request: LicenseRequest):
        """
        Bind a license key to a machine.

        Re-activating a machine that already holds a seat succeeds without
        using another seat.
        """
        outcome = activation_engine.activate(request.licenseKey, request.machineId)
        if not outcome.success:
            return _error(outcome)
        return ActivationResponse(success=True, message=outcome.message, activationId=outcome.activation_id)

    @app.post("/api/validate", response_model=ValidationResponse, responses=ERROR_RESPONSES)
    def validate(request: LicenseRequest):
        """
        Check that a license is bound to this machine and not expired.
        """
        outcome = activation_engine.validate(request.licenseKey, request.machineId)
        if not outcome.success:
            return _error(outcome)
        return ValidationResponse(success=True, status=outcome.status, expiresAt=outcome.expires_at)

    @app.post("/api/deactivate", response_model=DeactivationResponse, responses=ERROR_RESPONSES)
    def deactivate(request: LicenseRequest):
        """
        Release the seat held by a machine.
        """
        outcome = activation_engine.deactivate(request.licenseKey, request.machineId)
        if not outcome.success:
            return _error(outcome)
        return DeactivationResponse(success=True, message=outcome.message)

    @app.get("/api/health", response_model=ApiHealthResponse)
    def api_health():
        return ApiHealthResponse(
            success=True,
            status="online",
            message="License server is running",
            timestamp=datetime.now(timezone.utc),
        )

    @app.get("/health", response_model=HealthCheckResponse)
    def health_check():
        """
        Health check endpoint for container orchestration.
        """
        return HealthCheckResponse(
            status="OK",
            timestamp=datetime.now(timezone.utc),
            uptime=round(time.monotonic() - started, 3),
        )

    @app.get("/")
    def root():
        return {"name": "PS License Server", "version": "1.0.0", "status": "running"}

    return app
