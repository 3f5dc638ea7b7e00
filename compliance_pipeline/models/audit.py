"""Audit Models"""

from pydantic import BaseModel, Field, field_validator
from typing import Optional, List, Dict, Any
from datetime import datetime, timezone
from enum import Enum


class AuditAction(str, Enum):
    """Tracked action on a resource"""
    CREATE = "create"
    READ = "read"
    UPDATE = "update"
    DELETE = "delete"
    EXECUTE = "execute"
    ACCESS = "access"
    MODIFY = "modify"
    EXPORT = "export"


class LogLevel(str, Enum):
    """Entry level, derived from the risk score"""
    DEBUG = "debug"
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


class AuditEventType(str, Enum):
    """Known event types; entries may carry custom strings too"""
    # data
    DATA_CREATE = "data_create"
    DATA_READ = "data_read"
    DATA_UPDATE = "data_update"
    DATA_DELETE = "data_delete"
    DATA_EXECUTE = "data_execute"
    DATA_ACCESS = "data_access"
    DATA_MODIFY = "data_modify"
    DATA_EXPORT = "data_export"
    PHI_ACCESS = "phi_access"
    PHI_READ = "phi_read"
    PHI_EXPORT = "phi_export"
    PATIENT_LOOKUP = "patient_lookup"
    AUDIT_LOG_ACCESS = "audit_log_access"
    # security
    SECURITY_BREACH = "security_breach"
    THREAT_DETECTED = "threat_detected"
    SUSPICIOUS_ACTIVITY = "suspicious_activity"
    ACCESS_VIOLATION = "access_violation"
    UNAUTHORIZED_ACCESS = "unauthorized_access"
    # compliance
    COMPLIANCE_VALIDATION = "compliance_validation"
    COMPLIANCE_REPORT = "compliance_report"
    AUDIT_POLICY_VIEWED = "audit_policy_viewed"
    HIPAA_BREACH_DETECTED = "hipaa_breach_detected"
    LEGAL_HOLD_APPLIED = "legal_hold_applied"
    # authentication
    LOGIN = "login"
    LOGOUT = "logout"
    LOGIN_FAILED = "login_failed"
    MFA_SETUP = "mfa_setup"
    MFA_VERIFIED = "mfa_verified"
    MFA_FAILED = "mfa_failed"
    # administrative
    USER_CREATED = "user_created"
    ROLE_CHANGED = "role_changed"
    SETTINGS_CHANGED = "settings_changed"


class DataClassification(str, Enum):
    """Classification of the data touched by an action"""
    PUBLIC = "public"
    INTERNAL = "internal"
    CONFIDENTIAL = "confidential"
    PII = "pii"
    PHI = "phi"


class EncryptionLevel(str, Enum):
    """Transport/storage encryption in effect for the action"""
    NONE = "none"
    STANDARD = "standard"
    HIGH = "high"


class ComplianceLevel(str, Enum):
    """Handling level derived from data classifications"""
    PUBLIC = "public"
    INTERNAL = "internal"
    CONFIDENTIAL = "confidential"
    RESTRICTED = "restricted"


class SecurityContext(BaseModel):
    """Who performed an action and under which protections"""
    user_id: Optional[str] = None
    session_id: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    data_classifications: List[DataClassification] = Field(default_factory=list)
    encryption_level: EncryptionLevel = EncryptionLevel.STANDARD


class AuditLogEntry(BaseModel):
    """
    Append-only audit entry

    Sensitive attributes are typed ``Any`` because field encryption replaces
    their value with an envelope string before persistence.
    """
    id: str
    timestamp: datetime
    level: LogLevel
    source: str = "audit"
    event_type: str
    action: AuditAction
    message: str
    resource_type: str
    resource_id: Optional[str] = None
    user_id: Optional[str] = None
    session_id: Optional[str] = None
    ip_address: Optional[Any] = None
    user_agent: Optional[str] = None
    patient_identifier: Optional[Any] = None
    old_values: Optional[Any] = None
    new_values: Optional[Any] = None
    metadata: Optional[Any] = None
    stack_trace: Optional[Any] = None
    status: str = "success"  # success, failure, partial, blocked
    compliance_impact: bool = False
    risk_score: int = Field(default=0, ge=0, le=10)
    compliance_level: ComplianceLevel = ComplianceLevel.PUBLIC
    data_classifications: List[DataClassification] = Field(default_factory=list)
    encrypted_fields: List[str] = Field(default_factory=list)
    data_hash: str
    retention_days: int
    expires_at: datetime
    # integrity chain
    previous_hash: Optional[str] = None
    integrity_hash: Optional[str] = None
    signature: Optional[str] = None
    signed_at: Optional[str] = None

    class Config:
        json_schema_extra = {
            "example": {
                "id": "6f1c2b8e-4a55-4d0c-9d0e-2f3b9a7c1e10",
                "timestamp": "2024-01-15T10:30:00Z",
                "level": "critical",
                "event_type": "data_delete",
                "action": "delete",
                "message": "Patient record removed",
                "resource_type": "patient_record",
                "resource_id": "patient-67890",
                "user_id": "user-12345",
                "risk_score": 10,
                "compliance_impact": True,
                "data_hash": "9f86d081884c7d65...",
                "retention_days": 2555,
                "previous_hash": "",
                "integrity_hash": "2c26b46b68ffc68f..."
            }
        }


class AuditQuery(BaseModel):
    """Filter for stored audit entries"""
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    event_types: Optional[List[str]] = None
    user_ids: Optional[List[str]] = None
    resource_types: Optional[List[str]] = None
    resource_id: Optional[str] = None
    actions: Optional[List[AuditAction]] = None
    levels: Optional[List[LogLevel]] = None
    statuses: Optional[List[str]] = None
    min_risk_score: Optional[int] = None
    limit: Optional[int] = 100  # None = no limit
    offset: int = 0

    @field_validator("start_date", "end_date")
    @classmethod
    def _assume_utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        if value is not None and value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value

    def matches(self, entry: AuditLogEntry) -> bool:
        """Whether an entry passes every filter set on this query"""
        if self.start_date and entry.timestamp < self.start_date:
            return False
        if self.end_date and entry.timestamp > self.end_date:
            return False
        if self.event_types is not None and entry.event_type not in self.event_types:
            return False
        if self.user_ids is not None and entry.user_id not in self.user_ids:
            return False
        if self.resource_types is not None and entry.resource_type not in self.resource_types:
            return False
        if self.resource_id and entry.resource_id != self.resource_id:
            return False
        if self.actions is not None and entry.action not in self.actions:
            return False
        if self.levels is not None and entry.level not in self.levels:
            return False
        if self.statuses is not None and entry.status not in self.statuses:
            return False
        if self.min_risk_score is not None and entry.risk_score < self.min_risk_score:
            return False
        return True

    def paginate(self, entries: List[AuditLogEntry]) -> List[AuditLogEntry]:
        if self.limit is None:
            return entries[self.offset:]
        return entries[self.offset:self.offset + self.limit]


class SignedPayload(BaseModel):
    """Data with its HMAC-SHA512 signature"""
    data: str
    signature: Optional[str] = None
    timestamp: str
    algorithm: str = "HMAC-SHA512"


class ChainVerification(BaseModel):
    """Result of recomputing an integrity chain"""
    valid: bool
    checked: int
    first_invalid_index: Optional[int] = None
    invalid_entry_ids: List[str] = Field(default_factory=list)
    signatures_checked: int = 0
    invalid_signature_ids: List[str] = Field(default_factory=list)


class AuditLogRequest(BaseModel):
    """Request to record an audit event"""
    action: AuditAction
    resource_type: str
    resource_id: Optional[str] = None
    message: str
    context: SecurityContext = Field(default_factory=SecurityContext)
    before_state: Optional[Dict[str, Any]] = None
    after_state: Optional[Dict[str, Any]] = None
    event_type: Optional[str] = None
    patient_identifier: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None
    status: str = "success"
