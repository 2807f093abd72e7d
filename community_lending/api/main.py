"""FastAPI application factory"""

import logging

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from starlette.responses import Response

from community_lending.api.dependencies import get_request_id
from community_lending.api.middleware import MetricsMiddleware, RequestIDMiddleware
from community_lending.api.v1 import audit, eligibility, loans, schedule
from community_lending.config import settings
from community_lending.domain.exceptions import (
    AuthorizationError,
    ConflictError,
    DomainException,
    IneligibleError,
    InternalError,
    NotFoundError,
    ValidationError,
)
from community_lending.infrastructure.observability.logging import setup_logging

# Setup structured logging
setup_logging(settings.log_level)

logger = logging.getLogger(__name__)

ERROR_STATUS_CODES = {
    ValidationError: 422,
    NotFoundError: 404,
    AuthorizationError: 403,
    ConflictError: 409,
    IneligibleError: 422,
    InternalError: 500,
}


def status_code_for(exc: DomainException) -> int:
    for error_type, status_code in ERROR_STATUS_CODES.items():
        if isinstance(exc, error_type):
            return status_code
    return 500


async def domain_exception_handler(request: Request, exc: DomainException) -> JSONResponse:
    status_code = status_code_for(exc)
    if status_code >= 500:
        logger.error(f"Request failed: {exc.message}", extra={"request_id": get_request_id(request)})
    return JSONResponse(
        status_code=status_code,
        content={"error": exc.code, "message": exc.message, "details": jsonable_encoder(exc.details)},
    )


def create_app() -> FastAPI:
    """Create and configure FastAPI application"""
    app = FastAPI(
        title="Community Lending",
        description="Loan eligibility and lifecycle engine for community savings groups",
        version="0.1.0",
        docs_url="/docs",
        redoc_url="/redoc",
    )

    # Add middleware (order matters: last added = first executed)
    app.add_middleware(MetricsMiddleware)
    app.add_middleware(RequestIDMiddleware)

    app.add_exception_handler(DomainException, domain_exception_handler)

    # Health check endpoint
    @app.get("/health")
    def health_check():
        return {"status": "ok", "service": settings.service_name}

    # Prometheus metrics endpoint
    @app.get("/metrics")
    def metrics():
        return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)

    # Register API routers
    app.include_router(eligibility.router, prefix="/v1", tags=["eligibility"])
    app.include_router(loans.router, prefix="/v1", tags=["loans"])
    app.include_router(schedule.router, prefix="/v1", tags=["schedules"])
    app.include_router(audit.router, prefix="/v1", tags=["audit"])

    return app


app = create_app()
