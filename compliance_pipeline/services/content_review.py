"""Clinical content review helpers"""

import re
from typing import Any

from compliance_pipeline.models.scan import (
    ApprovalRequirement,
    TerminologyIssue,
    TerminologyValidation,
)
from compliance_pipeline.services.phi_detector import detect_phi

MEDICATIONS = re.compile(
    r'\b(?:aspirin|ibuprofen|acetaminophen|metformin|lisinopril|amlodipine|atorvastatin|'
    r'metoprolol|omeprazole|albuterol|warfarin)\b',
    re.IGNORECASE
)
PROCEDURES = re.compile(
    r'\b(?:surgery|biopsy|endoscopy|angioplasty|catheterization|dialysis|chemotherapy|'
    r'radiation therapy)\b',
    re.IGNORECASE
)

# (drug, drug) pairs that must be escalated to a pharmacist
DANGEROUS_COMBINATIONS = [
    ("warfarin", "aspirin"),
]

CLINICAL_WORKFLOWS = {
    "treatment-plan": "Treatment plans require clinical approval",
    "medication": "Medication workflows require clinical oversight",
}


def validate_medical_terminology(content: str) -> TerminologyValidation:
    """
    Check clinical text for unsafe or context-free terminology

    Dangerous drug combinations are errors; procedures mentioned without a
    surgical context are warnings. Only errors make the content invalid.
    """
    issues = []
    lowered = content.lower()
    medications = {m.group(0).lower() for m in MEDICATIONS.finditer(content)}

    for first, second in DANGEROUS_COMBINATIONS:
        if first in medications and second in medications:
            issues.append(TerminologyIssue(
                term=f"{first} + {second}",
                issue="Potential dangerous drug combination detected",
                suggestion="Verify with clinical pharmacist",
                severity="error"
            ))

    for match in PROCEDURES.finditer(content):
        term = match.group(0)
        if "surgery" in term.lower() and "surgeon" not in lowered and "surgical" not in lowered:
            issues.append(TerminologyIssue(
                term=term,
                issue="Surgery mentioned without proper medical context",
                suggestion="Add appropriate medical professional reference",
                severity="warning"
            ))

    return TerminologyValidation(
        is_valid=not any(i.severity == "error" for i in issues),
        issues=issues
    )


def requires_manual_approval(content: Any, workflow_type: str = "general") -> ApprovalRequirement:
    """
    Decide whether content must be reviewed by a human before release

    Args:
        content: Text (or structured content, which skips text checks)
        workflow_type: treatment-plan, medication, diagnosis or general
    """
    reasons = []
    approval_level = "administrative"

    if isinstance(content, str) and detect_phi(content).has_phi:
        reasons.append("Contains PHI requiring review")
        approval_level = "legal"

    if workflow_type in CLINICAL_WORKFLOWS:
        reasons.append(CLINICAL_WORKFLOWS[workflow_type])
        approval_level = "clinical"

    if isinstance(content, str) and not validate_medical_terminology(content).is_valid:
        reasons.append("Medical terminology requires validation")
        if approval_level == "administrative":
            approval_level = "clinical"

    return ApprovalRequirement(
        required=bool(reasons),
        reasons=reasons,
        approval_level=approval_level
    )
