"""Audit Export Models"""

from pydantic import BaseModel, Field, field_validator
from typing import Optional, List, Dict, Any
from datetime import datetime, timezone
from enum import Enum

from compliance_pipeline.models.audit import AuditEventType, LogLevel


class ExportFormat(str, Enum):
    """Export file format"""
    CSV = "csv"
    JSON = "json"
    PDF = "pdf"
    XLSX = "xlsx"
    XML = "xml"


class ExportScope(str, Enum):
    """Preset event selection"""
    FULL_AUDIT_TRAIL = "full_audit_trail"
    SECURITY_EVENTS = "security_events"
    COMPLIANCE_EVENTS = "compliance_events"
    DATA_ACCESS_EVENTS = "data_access_events"
    AUTHENTICATION_EVENTS = "authentication_events"
    ADMINISTRATIVE_EVENTS = "administrative_events"
    CUSTOM_FILTERED = "custom_filtered"


SCOPE_EVENT_TYPES: Dict[ExportScope, List[str]] = {
    ExportScope.SECURITY_EVENTS: [
        AuditEventType.SECURITY_BREACH.value,
        AuditEventType.THREAT_DETECTED.value,
        AuditEventType.SUSPICIOUS_ACTIVITY.value,
        AuditEventType.ACCESS_VIOLATION.value,
        AuditEventType.UNAUTHORIZED_ACCESS.value,
    ],
    ExportScope.COMPLIANCE_EVENTS: [
        AuditEventType.COMPLIANCE_VALIDATION.value,
        AuditEventType.COMPLIANCE_REPORT.value,
        AuditEventType.AUDIT_POLICY_VIEWED.value,
        AuditEventType.HIPAA_BREACH_DETECTED.value,
        AuditEventType.LEGAL_HOLD_APPLIED.value,
    ],
    ExportScope.DATA_ACCESS_EVENTS: [
        AuditEventType.PHI_ACCESS.value,
        AuditEventType.PHI_READ.value,
        AuditEventType.PHI_EXPORT.value,
        AuditEventType.DATA_ACCESS.value,
        AuditEventType.DATA_READ.value,
        AuditEventType.PATIENT_LOOKUP.value,
    ],
    ExportScope.AUTHENTICATION_EVENTS: [
        AuditEventType.LOGIN.value,
        AuditEventType.LOGOUT.value,
        AuditEventType.LOGIN_FAILED.value,
        AuditEventType.MFA_SETUP.value,
        AuditEventType.MFA_VERIFIED.value,
        AuditEventType.MFA_FAILED.value,
    ],
    ExportScope.ADMINISTRATIVE_EVENTS: [
        AuditEventType.USER_CREATED.value,
        AuditEventType.ROLE_CHANGED.value,
        AuditEventType.SETTINGS_CHANGED.value,
    ],
}

MIME_TYPES = {
    ExportFormat.CSV: "text/csv",
    ExportFormat.JSON: "application/json",
    ExportFormat.PDF: "application/pdf",
    ExportFormat.XLSX: "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
    ExportFormat.XML: "application/xml",
}


class DateRange(BaseModel):
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None

    @field_validator("start_date", "end_date")
    @classmethod
    def _assume_utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        if value is not None and value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value


class ExportFilters(BaseModel):
    """Explicit filters, combined with the scope preset"""
    event_types: Optional[List[str]] = None
    user_ids: Optional[List[str]] = None
    resource_types: Optional[List[str]] = None
    severity_levels: Optional[List[LogLevel]] = None
    statuses: Optional[List[str]] = None  # success, failure, partial, blocked
    min_risk_score: Optional[int] = Field(default=None, ge=0, le=10)
    max_risk_score: Optional[int] = Field(default=None, ge=0, le=10)


class SearchCriteria(BaseModel):
    search_text: Optional[str] = None
    search_fields: List[str] = Field(default_factory=lambda: ["action", "resource_id"])
    case_sensitive: bool = False


class ExportOptions(BaseModel):
    include_sensitive_data: bool = False
    include_hash_verification: bool = True
    include_digital_signatures: bool = False
    max_records: Optional[int] = Field(default=None, gt=0)
    sort_order: str = "asc"  # asc, desc
    sort_field: Optional[str] = None
    column_selection: Optional[List[str]] = None


class AccessRestrictions(BaseModel):
    """Recorded with the export; enforced by the web layer"""
    ip_whitelist: Optional[List[str]] = None
    expiration_hours: Optional[int] = Field(default=None, gt=0)
    download_limit: Optional[int] = Field(default=None, gt=0)


class SecurityOptions(BaseModel):
    encrypt_export: bool = False
    password_protect: bool = False
    access_restrictions: Optional[AccessRestrictions] = None


class ComplianceRequirements(BaseModel):
    include_chain_of_custody: bool = True
    include_attestation: bool = False
    regulatory_purpose: Optional[str] = None
    legal_basis: Optional[str] = None


class AuditExportRequest(BaseModel):
    """Request for an audit trail export"""
    export_id: Optional[str] = None
    requester_id: str
    export_scope: ExportScope = ExportScope.FULL_AUDIT_TRAIL
    export_format: ExportFormat = ExportFormat.JSON
    date_range: DateRange = Field(default_factory=DateRange)
    filters: ExportFilters = Field(default_factory=ExportFilters)
    search_criteria: Optional[SearchCriteria] = None
    export_options: ExportOptions = Field(default_factory=ExportOptions)
    security_options: SecurityOptions = Field(default_factory=SecurityOptions)
    compliance_requirements: ComplianceRequirements = Field(default_factory=ComplianceRequirements)

    class Config:
        json_schema_extra = {
            "example": {
                "requester_id": "compliance-officer-1",
                "export_scope": "data_access_events",
                "export_format": "csv",
                "date_range": {
                    "start_date": "2024-01-01T00:00:00Z",
                    "end_date": "2024-01-31T23:59:59Z"
                },
                "export_options": {"include_sensitive_data": False},
                "security_options": {"encrypt_export": True}
            }
        }


class RequestMetadata(BaseModel):
    requester_id: str
    requested_at: datetime
    completed_at: Optional[datetime] = None
    processing_duration_ms: Optional[int] = None


class ExportStatistics(BaseModel):
    total_records_available: int
    records_exported: int
    records_filtered_out: int
    file_size_bytes: int


class FileInformation(BaseModel):
    filename: str
    format: ExportFormat
    mime_type: str
    storage_path: str
    expires_at: Optional[datetime] = None


class SecurityInformation(BaseModel):
    file_hash: str
    encryption_applied: bool = False
    digital_signature: Optional[str] = None
    signed_at: Optional[str] = None
    password_protected: bool = False
    access_controls_applied: bool = False
    access_restrictions: Optional[AccessRestrictions] = None


class IntegrityVerification(BaseModel):
    record_count_hash: str
    content_hash: str
    chain_integrity_verified: bool
    tamper_evidence: List[str] = Field(default_factory=list)


class AccessLogEntry(BaseModel):
    accessed_by: str
    access_timestamp: datetime
    access_purpose: str


class ChainOfCustody(BaseModel):
    created_by: str
    creation_timestamp: datetime
    access_log: List[AccessLogEntry] = Field(default_factory=list)


class Attestation(BaseModel):
    attestor_name: str
    attestation_statement: str
    attestation_timestamp: datetime


class ComplianceDocumentation(BaseModel):
    export_purpose: str
    legal_basis: Optional[str] = None
    chain_of_custody: Optional[ChainOfCustody] = None
    attestation: Optional[Attestation] = None


class AuditExportResult(BaseModel):
    """Completed export; the file exists at ``file_information.storage_path``"""
    export_id: str
    request_metadata: RequestMetadata
    export_statistics: ExportStatistics
    file_information: FileInformation
    security_information: SecurityInformation
    integrity_verification: IntegrityVerification
    compliance_documentation: ComplianceDocumentation
