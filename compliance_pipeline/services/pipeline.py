"""Compliance Pipeline"""

from typing import Any, Dict, Iterable, List, Optional
import structlog

from compliance_pipeline.models.audit import DataClassification, SecurityContext
from compliance_pipeline.models.compliance import ComplianceStandard, PipelineResult
from compliance_pipeline.services.audit_service import AuditLogWriter
from compliance_pipeline.services.compliance_service import ComplianceEngine
from compliance_pipeline.services.phi_detector import PHIDetector

logger = structlog.get_logger()


class CompliancePipeline:
    """
    Detector -> rule engine -> audit writer

    Every record that passes through is audited, whatever the outcome.
    When PHI is found the audit entry is classified as PHI, which raises
    its risk score and compliance level.
    """

    def __init__(
        self,
        detector: PHIDetector,
        engine: ComplianceEngine,
        writer: AuditLogWriter,
        detect_pii: bool = True,
        hipaa_compliant: bool = True
    ):
        self.detector = detector
        self.engine = engine
        self.writer = writer
        self.detect_pii = detect_pii
        self.hipaa_compliant = hipaa_compliant

    def _standards(self, standards: Optional[Iterable[ComplianceStandard]]) -> List[ComplianceStandard]:
        selected = list(standards) if standards is not None else [ComplianceStandard.HIPAA]
        # HIPAA deployments always evaluate HIPAA rules
        if self.hipaa_compliant and ComplianceStandard.HIPAA not in selected:
            selected.insert(0, ComplianceStandard.HIPAA)
        return selected

    async def process(
        self,
        data: Dict[str, Any],
        standards: Optional[Iterable[ComplianceStandard]] = None,
        resource_type: str = "record",
        resource_id: Optional[str] = None,
        context: Optional[SecurityContext] = None
    ) -> PipelineResult:
        """
        Run a record through the pipeline

        Returns:
            Detection and compliance results plus the audit entry id
        """
        context = context or SecurityContext()
        selected = self._standards(standards)

        detection = None
        if self.detect_pii:
            detection = self.detector.detect_in_record(data)

        compliance = self.engine.validate_compliance(data, selected)

        if detection is not None and detection.has_phi:
            classifications = list(context.data_classifications)
            if DataClassification.PHI not in classifications:
                classifications.append(DataClassification.PHI)
            context = context.model_copy(update={"data_classifications": classifications})

        entry = await self.writer.create_compliance_audit_event(
            resource_type=resource_type,
            resource_id=resource_id,
            standards=selected,
            result=compliance,
            context=context,
            metadata={
                "phi_detected": bool(detection and detection.has_phi),
                "phi_types": [t.value for t in detection.phi_types] if detection else [],
            },
        )

        logger.info(
            "pipeline_processed",
            resource_type=resource_type,
            passed=compliance.passed,
            score=compliance.score,
            audit_log_id=entry.id
        )

        return PipelineResult(
            detection=detection,
            compliance=compliance,
            audit_log_id=entry.id,
        )
