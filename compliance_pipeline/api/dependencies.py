"""Service wiring for the API"""

from fastapi import Request
import structlog

from compliance_pipeline.rules.registry import ComplianceRuleRegistry, build_default_registry
from compliance_pipeline.services.audit_service import AuditLogWriter
from compliance_pipeline.services.audit_store import AuditStore, create_audit_store
from compliance_pipeline.services.compliance_service import ComplianceEngine
from compliance_pipeline.services.encryption_service import AuditSigner, FieldEncryptor
from compliance_pipeline.services.export_service import AuditExportEngine
from compliance_pipeline.services.phi_detector import PHIDetector
from compliance_pipeline.services.pipeline import CompliancePipeline
from compliance_pipeline.utils.config import Settings

logger = structlog.get_logger()


class ServiceContainer:
    """
    Process-wide services, built once at start-up

    The rule registry is frozen here and shared by every component that
    validates.
    """

    def __init__(self, settings: Settings, store: AuditStore = None):
        self.settings = settings
        self.registry: ComplianceRuleRegistry = build_default_registry()
        self.detector = PHIDetector()
        self.engine = ComplianceEngine(self.registry)

        self.encryptor = FieldEncryptor(settings.encryption_key_bytes)
        self.signer = AuditSigner(settings.signing_key_bytes, disabled=settings.SIGNING_DISABLED)
        self.store = store if store is not None else create_audit_store(settings)

        self.writer = AuditLogWriter(
            store=self.store,
            encryptor=self.encryptor,
            signer=self.signer,
            retention_days=settings.AUDIT_RETENTION_DAYS,
            batch_size=settings.AUDIT_BATCH_SIZE,
            flush_interval_seconds=settings.AUDIT_FLUSH_INTERVAL_SECONDS,
            max_buffer_size=settings.AUDIT_MAX_BUFFER_SIZE,
        )
        self.exporter = AuditExportEngine(
            writer=self.writer,
            export_dir=settings.EXPORT_DIR,
            encryptor=self.encryptor,
            signer=self.signer,
            max_records=settings.EXPORT_MAX_RECORDS,
        )
        self.pipeline = CompliancePipeline(
            detector=self.detector,
            engine=self.engine,
            writer=self.writer,
            detect_pii=settings.DETECT_PII,
            hipaa_compliant=settings.HIPAA_COMPLIANT,
        )

        logger.info(
            "services_initialized",
            store=type(self.store).__name__,
            encryption=self.encryptor.configured,
            signing=self.signer.configured,
            rules=len(self.registry)
        )

    async def start(self):
        self.writer.start()

    async def stop(self):
        await self.writer.stop()
        await self.store.close()


def get_container(request: Request) -> ServiceContainer:
    return request.app.state.container
