"""PHI Detection Models"""

from pydantic import BaseModel, Field
from typing import Optional, List
from enum import Enum


class PHIType(str, Enum):
    """Detected identifier types, in detection order"""
    SSN = "ssn"
    PHONE = "phone"
    EMAIL = "email"
    DATE_OF_BIRTH = "dob"
    MEDICAL_RECORD_NUMBER = "mrn"
    NPI = "npi"
    ADDRESS = "address"
    CREDIT_CARD = "creditCard"
    HIPAA_ID = "hipaaIds"
    MEDICAL_CONDITION = "medicalConditions"

    @property
    def placeholder(self) -> str:
        """Redaction marker, e.g. ``[SSN_REDACTED]``"""
        return f"[{self.value.upper()}_REDACTED]"


class PHILocation(BaseModel):
    """Single PHI match"""
    type: PHIType
    location: str  # "position <offset>"
    value: str
    confidence: float = Field(ge=0, le=1)


class PHIDetectionResult(BaseModel):
    """Result of running the detector over a piece of text"""
    has_phi: bool
    phi_types: List[PHIType] = Field(default_factory=list)
    confidence: float = Field(default=0.0, ge=0, le=1)
    locations: List[PHILocation] = Field(default_factory=list)
    sanitized_content: str = ""

    class Config:
        json_schema_extra = {
            "example": {
                "has_phi": True,
                "phi_types": ["ssn"],
                "confidence": 1.0,
                "locations": [
                    {"type": "ssn", "location": "position 23", "value": "123-45-6789", "confidence": 1.0}
                ],
                "sanitized_content": "Patient John Doe, SSN: [SSN_REDACTED]"
            }
        }


class SanitizeResult(BaseModel):
    """Redacted text plus what was found"""
    sanitized: str
    phi_detected: bool
    phi_types: List[PHIType] = Field(default_factory=list)


class TerminologyIssue(BaseModel):
    """Medical terminology finding"""
    term: str
    issue: str
    suggestion: Optional[str] = None
    severity: str  # error, warning, info


class TerminologyValidation(BaseModel):
    """Result of medical terminology validation"""
    is_valid: bool
    issues: List[TerminologyIssue] = Field(default_factory=list)


class ApprovalRequirement(BaseModel):
    """Whether content needs human sign-off before release"""
    required: bool
    reasons: List[str] = Field(default_factory=list)
    approval_level: str  # clinical, administrative, legal


class ScanRequest(BaseModel):
    """Request to scan content for PHI"""
    content: str = Field(..., description="Text content to scan")
    reference_id: Optional[str] = Field(None, description="Reference ID for tracking")
    user_id: Optional[str] = Field(None, description="User performing scan")


class ScanResult(BaseModel):
    """PHI scan response"""
    reference_id: Optional[str]
    detection: PHIDetectionResult
    risk_level: str  # none, low, medium, high
