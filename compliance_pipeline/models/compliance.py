"""Compliance Models"""

from pydantic import BaseModel, Field
from typing import Any, Callable, Dict, List, Optional
from enum import Enum

from compliance_pipeline.models.audit import SecurityContext
from compliance_pipeline.models.scan import PHIDetectionResult


class ComplianceStandard(str, Enum):
    """Regulatory framework a rule belongs to"""
    HIPAA = "HIPAA"
    GDPR = "GDPR"
    SOC2 = "SOC2"
    ISO27001 = "ISO27001"
    FDA = "FDA"


class Severity(str, Enum):
    """Violation severity"""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class ComplianceViolation(BaseModel):
    """A rule predicate's finding against one record"""
    rule_id: str
    standard: ComplianceStandard
    severity: Severity
    title: str
    description: str
    offending_data: Any = None
    suggestion: Optional[str] = None
    auto_fix_available: bool = False


class ComplianceRule(BaseModel):
    """
    Registered validation rule

    ``check`` returns a violation or None and must not raise.
    ``auto_fix`` is a pure data -> data transform.
    """
    id: str
    standard: ComplianceStandard
    category: str
    title: str
    description: str
    severity: Severity
    check: Callable[[Dict[str, Any]], Optional[ComplianceViolation]]
    auto_fix: Optional[Callable[[Dict[str, Any]], Dict[str, Any]]] = None

    class Config:
        frozen = True

    def describe(self) -> Dict[str, Any]:
        """Serializable view without the callables"""
        return {
            "id": self.id,
            "standard": self.standard.value,
            "category": self.category,
            "title": self.title,
            "description": self.description,
            "severity": self.severity.value,
            "auto_fix": self.auto_fix is not None,
        }


class ComplianceSummary(BaseModel):
    """Violation counts by severity"""
    total: int = 0
    critical: int = 0
    high: int = 0
    medium: int = 0
    low: int = 0


class ComplianceResult(BaseModel):
    """Outcome of validating one record"""
    passed: bool
    score: float = Field(ge=0, le=100)
    violations: List[ComplianceViolation] = Field(default_factory=list)
    summary: ComplianceSummary = Field(default_factory=ComplianceSummary)
    recommendations: List[str] = Field(default_factory=list)
    rules_evaluated: int = 0


class AutoFixResult(BaseModel):
    """Outcome of applying available auto-fixes"""
    fixed_data: Dict[str, Any]
    applied_fixes: List[str] = Field(default_factory=list)
    remaining_violations: List[ComplianceViolation] = Field(default_factory=list)


class ComplianceRequest(BaseModel):
    """Request to validate a record"""
    data: Dict[str, Any]
    standards: List[ComplianceStandard] = Field(default_factory=lambda: [ComplianceStandard.HIPAA])


class AutoFixRequest(BaseModel):
    """Request to validate a record and apply fixes"""
    data: Dict[str, Any]
    standards: List[ComplianceStandard] = Field(default_factory=lambda: [ComplianceStandard.HIPAA])


class PipelineRequest(BaseModel):
    """Record to run through detection, validation and audit"""
    data: Dict[str, Any]
    standards: List[ComplianceStandard] = Field(default_factory=lambda: [ComplianceStandard.HIPAA])
    resource_type: str = "record"
    resource_id: Optional[str] = None
    context: SecurityContext = Field(default_factory=SecurityContext)


class PipelineResult(BaseModel):
    """Outcome of one pipeline pass"""
    detection: Optional[PHIDetectionResult] = None
    compliance: ComplianceResult
    audit_log_id: str
