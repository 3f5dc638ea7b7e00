"""Default compliance rules

Each rule is a pure predicate over a record dict, optionally paired with a
pure auto-fix. Predicates must not raise for any dict input.
"""

from typing import Any, Dict, List, Optional

from compliance_pipeline.models.compliance import (
    ComplianceRule,
    ComplianceStandard,
    ComplianceViolation,
    Severity,
)
from compliance_pipeline.services.phi_detector import detect_phi

# Fields that must never be stored in clear text (HIPAA 164.312(e)(1))
PHI_ENCRYPTED_FIELDS = ["ssn", "mrn", "dob"]
ENCRYPTED_PREFIXES = ("ENC_", "TOK_", "v1:")


def _violation(rule_id, standard, severity, title, description, data, suggestion, auto_fix=False):
    return ComplianceViolation(
        rule_id=rule_id,
        standard=standard,
        severity=severity,
        title=title,
        description=description,
        offending_data=data,
        suggestion=suggestion,
        auto_fix_available=auto_fix,
    )


# HIPAA

def check_phi_detection(data: Dict[str, Any]) -> Optional[ComplianceViolation]:
    content = data.get("content")
    if not isinstance(content, str) or not content:
        return None
    result = detect_phi(content)
    if not result.has_phi:
        return None
    return _violation(
        "hipaa-phi-detection", ComplianceStandard.HIPAA, Severity.CRITICAL,
        "PHI Detected",
        f"Potential PHI found: {', '.join(t.value for t in result.phi_types)}",
        {"phi_types": [t.value for t in result.phi_types], "confidence": result.confidence},
        "Remove or encrypt PHI before processing",
        auto_fix=True,
    )


def fix_phi_detection(data: Dict[str, Any]) -> Dict[str, Any]:
    content = data.get("content")
    if not isinstance(content, str):
        return dict(data)
    return {**data, "content": detect_phi(content).sanitized_content}


def check_minimum_necessary(data: Dict[str, Any]) -> Optional[ComplianceViolation]:
    if data.get("accessScope") == "full" and not data.get("justification"):
        return _violation(
            "hipaa-minimum-necessary", ComplianceStandard.HIPAA, Severity.HIGH,
            "Minimum Necessary Violation",
            "Full PHI access requested without proper justification",
            {"accessScope": data.get("accessScope")},
            "Limit access scope or provide justification",
        )
    return None


def check_audit_logging(data: Dict[str, Any]) -> Optional[ComplianceViolation]:
    if data.get("containsPHI") and not data.get("auditLogged"):
        return _violation(
            "hipaa-audit-logging", ComplianceStandard.HIPAA, Severity.CRITICAL,
            "Missing Audit Log",
            "PHI access not properly logged",
            {"containsPHI": True, "auditLogged": data.get("auditLogged", False)},
            "Enable audit logging for this operation",
            auto_fix=True,
        )
    return None


def fix_audit_logging(data: Dict[str, Any]) -> Dict[str, Any]:
    return {**data, "auditLogged": True}


def _get_nested_value(data: Dict[str, Any], path: str) -> Any:
    """Get value from nested dictionary"""
    value: Any = data
    for key in path.split("."):
        if isinstance(value, dict) and key in value:
            value = value[key]
        else:
            return None
    return value


def _is_unencrypted(value: Any) -> bool:
    # Encrypted or tokenized values carry a known prefix
    return not str(value).startswith(ENCRYPTED_PREFIXES)


def check_phi_encryption(data: Dict[str, Any]) -> Optional[ComplianceViolation]:
    exposed: List[str] = [
        field for field in PHI_ENCRYPTED_FIELDS
        if _get_nested_value(data, field) is not None
        and _is_unencrypted(_get_nested_value(data, field))
    ]
    if not exposed:
        return None
    return _violation(
        "hipaa-phi-encryption", ComplianceStandard.HIPAA, Severity.CRITICAL,
        "Unencrypted PHI Field",
        f"Fields must be encrypted: {', '.join(exposed)}",
        {"fields": exposed},
        "Encrypt all PHI fields using AES-256 encryption",
    )


# GDPR

def check_consent(data: Dict[str, Any]) -> Optional[ComplianceViolation]:
    if data.get("processingPersonalData") and not data.get("userConsent"):
        return _violation(
            "gdpr-consent-required", ComplianceStandard.GDPR, Severity.CRITICAL,
            "Missing User Consent",
            "Personal data processing without user consent",
            {"processingPersonalData": True},
            "Obtain explicit user consent before processing",
        )
    return None


# SOC2

def check_access_control(data: Dict[str, Any]) -> Optional[ComplianceViolation]:
    if data.get("sensitiveOperation") and not data.get("roleBasedAccess"):
        return _violation(
            "soc2-access-control", ComplianceStandard.SOC2, Severity.HIGH,
            "Access Control Missing",
            "Sensitive operation without proper access controls",
            {"sensitiveOperation": True},
            "Implement role-based access control",
        )
    return None


# ISO27001

def check_encryption(data: Dict[str, Any]) -> Optional[ComplianceViolation]:
    if data.get("sensitiveData") and not data.get("encrypted"):
        return _violation(
            "iso27001-encryption", ComplianceStandard.ISO27001, Severity.CRITICAL,
            "Data Not Encrypted",
            "Sensitive data stored without encryption",
            {"sensitiveData": True},
            "Enable encryption for sensitive data",
        )
    return None


# FDA

def check_clinical_validation(data: Dict[str, Any]) -> Optional[ComplianceViolation]:
    if data.get("medicalRecommendation") and not data.get("clinicallyValidated"):
        return _violation(
            "fda-clinical-validation", ComplianceStandard.FDA, Severity.CRITICAL,
            "Clinical Validation Required",
            "Medical recommendation without clinical validation",
            {"medicalRecommendation": True},
            "Require clinical validation for medical content",
        )
    return None


DEFAULT_RULES: List[ComplianceRule] = [
    ComplianceRule(
        id="hipaa-phi-detection",
        standard=ComplianceStandard.HIPAA,
        category="Privacy",
        title="PHI Detection and Protection",
        description="Detects and flags potential PHI in content",
        severity=Severity.CRITICAL,
        check=check_phi_detection,
        auto_fix=fix_phi_detection,
    ),
    ComplianceRule(
        id="hipaa-minimum-necessary",
        standard=ComplianceStandard.HIPAA,
        category="Privacy",
        title="Minimum Necessary Rule",
        description="Ensures minimum necessary PHI is accessed",
        severity=Severity.HIGH,
        check=check_minimum_necessary,
    ),
    ComplianceRule(
        id="hipaa-audit-logging",
        standard=ComplianceStandard.HIPAA,
        category="Security",
        title="Audit Logging Required",
        description="All PHI access must be logged for audit purposes",
        severity=Severity.CRITICAL,
        check=check_audit_logging,
        auto_fix=fix_audit_logging,
    ),
    ComplianceRule(
        id="hipaa-phi-encryption",
        standard=ComplianceStandard.HIPAA,
        category="Encryption",
        title="PHI Encryption Policy",
        description="PHI identifiers must be encrypted at rest and in transit",
        severity=Severity.CRITICAL,
        check=check_phi_encryption,
    ),
    ComplianceRule(
        id="gdpr-consent-required",
        standard=ComplianceStandard.GDPR,
        category="Privacy",
        title="Consent Required",
        description="User consent required for personal data processing",
        severity=Severity.CRITICAL,
        check=check_consent,
    ),
    ComplianceRule(
        id="soc2-access-control",
        standard=ComplianceStandard.SOC2,
        category="Security",
        title="Access Control",
        description="Proper access controls must be implemented",
        severity=Severity.HIGH,
        check=check_access_control,
    ),
    ComplianceRule(
        id="iso27001-encryption",
        standard=ComplianceStandard.ISO27001,
        category="Information Security",
        title="Data Encryption",
        description="Sensitive data must be encrypted",
        severity=Severity.CRITICAL,
        check=check_encryption,
    ),
    ComplianceRule(
        id="fda-clinical-validation",
        standard=ComplianceStandard.FDA,
        category="Medical Device",
        title="Clinical Validation",
        description="Medical recommendations must be clinically validated",
        severity=Severity.CRITICAL,
        check=check_clinical_validation,
    ),
]
