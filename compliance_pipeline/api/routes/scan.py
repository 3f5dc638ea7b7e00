"""PHI Scanning Endpoints"""

from fastapi import APIRouter, Depends
from pydantic import BaseModel
from typing import List
import structlog

from compliance_pipeline.api.dependencies import ServiceContainer, get_container
from compliance_pipeline.models.audit import AuditAction, SecurityContext
from compliance_pipeline.models.scan import (
    ApprovalRequirement,
    PHIType,
    SanitizeResult,
    ScanRequest,
    ScanResult,
    TerminologyValidation,
)
from compliance_pipeline.services.content_review import (
    requires_manual_approval,
    validate_medical_terminology,
)

router = APIRouter()
logger = structlog.get_logger()

HIGH_RISK_TYPES = {PHIType.SSN, PHIType.MEDICAL_RECORD_NUMBER, PHIType.HIPAA_ID, PHIType.CREDIT_CARD}
MEDIUM_RISK_TYPES = {PHIType.DATE_OF_BIRTH, PHIType.ADDRESS, PHIType.NPI, PHIType.MEDICAL_CONDITION}


class ContentRequest(BaseModel):
    content: str


class ApprovalRequest(BaseModel):
    content: str
    workflow_type: str = "general"  # treatment-plan, medication, diagnosis, general


@router.post("/text", response_model=ScanResult)
async def scan_text(
    request: ScanRequest,
    container: ServiceContainer = Depends(get_container)
):
    """
    Scan text content for PHI

    Detects:
    - SSN, MRN, NPI and patient identifiers
    - Dates of birth
    - Contact information and addresses
    - Credit card numbers
    - Medical conditions
    """
    detection = container.detector.detect(request.content)

    # Log audit trail; matched values stay out of the entry
    await container.writer.log_audit(
        action=AuditAction.READ,
        resource_type="text",
        resource_id=request.reference_id,
        message="PHI scan",
        context=SecurityContext(user_id=request.user_id),
        metadata={
            "matches": len(detection.locations),
            "phi_types": [t.value for t in detection.phi_types]
        }
    )

    return ScanResult(
        reference_id=request.reference_id,
        detection=detection,
        risk_level=_calculate_risk_level(detection.phi_types)
    )


@router.post("/sanitize", response_model=SanitizeResult)
async def sanitize_text(
    request: ContentRequest,
    container: ServiceContainer = Depends(get_container)
):
    """Redact PHI from text"""
    return container.detector.sanitize(request.content)


@router.post("/terminology", response_model=TerminologyValidation)
async def check_terminology(request: ContentRequest):
    """Flag dangerous drug combinations and context-free procedures"""
    return validate_medical_terminology(request.content)


@router.post("/approval", response_model=ApprovalRequirement)
async def check_approval(request: ApprovalRequest):
    """Decide whether content needs human review before release"""
    return requires_manual_approval(request.content, request.workflow_type)


def _calculate_risk_level(phi_types: List[PHIType]) -> str:
    """Calculate risk level based on detected types"""
    if not phi_types:
        return "none"

    if any(t in HIGH_RISK_TYPES for t in phi_types):
        return "high"
    elif any(t in MEDIUM_RISK_TYPES for t in phi_types):
        return "medium"
    return "low"
