"""
Compliance Audit Pipeline - Main API
PHI detection, compliance validation and tamper-evident audit logging
"""

from typing import Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from contextlib import asynccontextmanager
import structlog

from compliance_pipeline.api.dependencies import ServiceContainer
from compliance_pipeline.api.middleware import RequestLoggingMiddleware, RequestSizeLimitMiddleware
from compliance_pipeline.api.routes import scan, audit, compliance, export
from compliance_pipeline.exceptions import (
    AuditBufferFullError,
    EncryptionError,
    ExportError,
    PipelineError,
    SignatureVerificationError,
    SigningKeyMissingError,
    StorageError,
)
from compliance_pipeline.services.audit_store import AuditStore
from compliance_pipeline.utils.config import Settings, get_settings
from compliance_pipeline.utils.logging_config import configure_logging

logger = structlog.get_logger()


def create_app(settings: Optional[Settings] = None, store: Optional[AuditStore] = None) -> FastAPI:
    """Build the application; services are created in the lifespan"""
    settings = settings or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Application lifespan manager"""
        configure_logging(settings.LOG_LEVEL, settings.LOG_JSON)
        logger.info("starting_compliance_pipeline", environment=settings.ENVIRONMENT)
        container = ServiceContainer(settings, store=store)
        app.state.container = container
        await container.start()
        try:
            yield
        finally:
            await container.stop()
            logger.info("compliance_pipeline_stopped")

    app = FastAPI(
        title=settings.APP_NAME,
        description="PHI detection, compliance validation and tamper-evident audit logging for healthcare",
        version="1.0.0",
        lifespan=lifespan
    )

    app.add_middleware(RequestLoggingMiddleware)
    app.add_middleware(RequestSizeLimitMiddleware, max_size=settings.MAX_REQUEST_SIZE)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.ALLOWED_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    _register_exception_handlers(app)

    # Include routers
    app.include_router(scan.router, prefix="/scan", tags=["PHI Scanning"])
    app.include_router(compliance.router, prefix="/compliance", tags=["Compliance"])
    app.include_router(audit.router, prefix="/audit", tags=["Audit"])
    app.include_router(export.router, prefix="/export", tags=["Audit Export"])

    @app.get("/")
    async def root():
        return {
            "service": settings.APP_NAME,
            "version": "1.0.0",
            "status": "operational"
        }

    @app.get("/health")
    async def health_check(request: Request):
        container = request.app.state.container
        return {
            "status": "healthy",
            "encryption": container.encryptor.configured,
            "signing": container.signer.configured,
            "pending_audit_entries": container.writer.pending
        }

    return app


def _register_exception_handlers(app: FastAPI) -> None:
    """Map pipeline failures to generic messages; internals are only logged"""

    def _handler(status_code: int, message: str):
        async def handle(request: Request, exc: PipelineError):
            logger.error(
                "request_failed",
                path=request.url.path,
                error_type=type(exc).__name__
            )
            return JSONResponse(status_code=status_code, content={"detail": message})
        return handle

    app.add_exception_handler(ExportError, _handler(500, "Export failed, try again"))
    app.add_exception_handler(AuditBufferFullError, _handler(503, "Audit log unavailable, try again"))
    app.add_exception_handler(StorageError, _handler(503, "Storage unavailable, try again"))
    app.add_exception_handler(EncryptionError, _handler(500, "Operation failed, try again"))
    app.add_exception_handler(SigningKeyMissingError, _handler(500, "Operation failed, try again"))
    app.add_exception_handler(SignatureVerificationError, _handler(409, "Signature verification failed"))
    app.add_exception_handler(PipelineError, _handler(500, "Operation failed, try again"))


app = create_app()
