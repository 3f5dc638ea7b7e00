"""PHI Detector Service"""

import re
from typing import Any, Dict, List, Tuple
import structlog

from compliance_pipeline.models.scan import (
    PHIDetectionResult,
    PHILocation,
    PHIType,
    SanitizeResult,
)

logger = structlog.get_logger()


# Detection order matters: redaction runs pattern by pattern in this order.
_PATTERNS: List[Tuple[PHIType, re.Pattern]] = [
    (PHIType.SSN, re.compile(
        r'(?<!\d)\d{3}-?\d{2}-?\d{4}(?!\d)'
    )),
    (PHIType.PHONE, re.compile(
        r'(?:\(\d{3}\)\s?|\b\d{3}[-.]?)\d{3}[-.]?\d{4}\b'
    )),
    (PHIType.EMAIL, re.compile(
        r'\b[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}\b'
    )),
    (PHIType.DATE_OF_BIRTH, re.compile(
        r'\b(?:0[1-9]|1[0-2])[-/](?:0[1-9]|[12]\d|3[01])[-/](?:19|20)\d{2}\b'
    )),
    (PHIType.MEDICAL_RECORD_NUMBER, re.compile(
        r'\b(?:MRN|Medical Record(?: Number)?)[\s:#]+([A-Z0-9-]*\d[A-Z0-9-]*)',
        re.IGNORECASE
    )),
    (PHIType.NPI, re.compile(
        r'\b\d{10}\b'
    )),
    (PHIType.ADDRESS, re.compile(
        r'\b\d+\s+[A-Za-z\s,]{1,60}?\b(?:Street|St|Avenue|Ave|Road|Rd|Lane|Ln|Drive|Dr|'
        r'Boulevard|Blvd|Circle|Cir|Court|Ct)\b',
        re.IGNORECASE
    )),
    (PHIType.CREDIT_CARD, re.compile(
        r'\b(?:\d{4}[-\s]?){3}\d{4}\b'
    )),
    # Case-sensitive and digit-bearing so "Patient John" is not an identifier
    (PHIType.HIPAA_ID, re.compile(
        r'\b(?:Patient|patient|ID|id)[\s:]+([A-Z0-9-]*\d[A-Z0-9-]*)'
    )),
    (PHIType.MEDICAL_CONDITION, re.compile(
        r'\b(?:diabetes|hypertension|cancer|HIV|AIDS|depression|anxiety|heart disease|'
        r'stroke|pneumonia)\b',
        re.IGNORECASE
    )),
]

_BASE_CONFIDENCE: Dict[PHIType, float] = {
    PHIType.SSN: 0.95,
    PHIType.PHONE: 0.80,
    PHIType.EMAIL: 0.90,
    PHIType.DATE_OF_BIRTH: 0.85,
    PHIType.MEDICAL_RECORD_NUMBER: 0.90,
    PHIType.NPI: 0.95,
    PHIType.ADDRESS: 0.70,
    PHIType.CREDIT_CARD: 0.95,
    PHIType.HIPAA_ID: 0.75,
    PHIType.MEDICAL_CONDITION: 0.60,
}

_STRICT_FORMATS: Dict[PHIType, re.Pattern] = {
    PHIType.SSN: re.compile(r'^\d{3}-\d{2}-\d{4}$'),
    PHIType.PHONE: re.compile(r'^\(\d{3}\)\s\d{3}-\d{4}$'),
}


class PHIDetector:
    """
    Protected Health Information Detector

    Runs a fixed, ordered list of regular expressions over free text and
    produces match locations, an aggregate confidence and a redacted copy.

    Each pattern is matched against the original text for reporting, then
    redacts its own matches in the running redacted copy. When two patterns
    of different types overlap the same span, the earlier one consumes it and
    the later one finds nothing left to replace. This is a known limitation
    and the order above is relied upon.
    """

    def __init__(self, patterns: List[Tuple[PHIType, re.Pattern]] = None):
        self.patterns = patterns if patterns is not None else list(_PATTERNS)

    def detect(self, content: str) -> PHIDetectionResult:
        """
        Detect PHI in text

        Args:
            content: Text to scan, any length

        Returns:
            Detection result; empty when nothing matched
        """
        locations: List[PHILocation] = []
        phi_types: List[PHIType] = []
        sanitized = content

        for phi_type, pattern in self.patterns:
            for match in pattern.finditer(content):
                value = match.group(0)
                if not value:
                    continue
                confidence = self._calculate_confidence(phi_type, value)
                locations.append(PHILocation(
                    type=phi_type,
                    location=f"position {match.start()}",
                    value=value,
                    confidence=confidence,
                ))
                if phi_type not in phi_types:
                    phi_types.append(phi_type)
            if phi_type in phi_types:
                sanitized = pattern.sub(phi_type.placeholder, sanitized)

        confidence = (
            sum(loc.confidence for loc in locations) / len(locations)
            if locations else 0.0
        )

        logger.debug(
            "phi_detection_completed",
            matches=len(locations),
            phi_types=[t.value for t in phi_types],
            content_length=len(content)
        )

        return PHIDetectionResult(
            has_phi=bool(phi_types),
            phi_types=phi_types,
            confidence=confidence,
            locations=locations,
            sanitized_content=sanitized,
        )

    def detect_in_record(self, data: Any) -> PHIDetectionResult:
        """Detect PHI anywhere inside a JSON-like record"""
        return self.detect(self._flatten_json(data))

    def sanitize(self, content: str) -> SanitizeResult:
        """Redact PHI from text"""
        result = self.detect(content)
        return SanitizeResult(
            sanitized=result.sanitized_content if result.has_phi else content,
            phi_detected=result.has_phi,
            phi_types=result.phi_types,
        )

    def _calculate_confidence(self, phi_type: PHIType, value: str) -> float:
        """Per-type base score, nudged up for strict formatting"""
        confidence = _BASE_CONFIDENCE.get(phi_type, 0.5)
        strict = _STRICT_FORMATS.get(phi_type)
        if strict is not None and strict.match(value):
            confidence = min(1.0, confidence + 0.05)
        return confidence

    def _flatten_json(self, data: Any, prefix: str = "") -> str:
        """Flatten JSON to searchable text"""
        parts = []
        if isinstance(data, dict):
            for key, value in data.items():
                new_prefix = f"{prefix}.{key}" if prefix else str(key)
                parts.append(f"{new_prefix}: {self._flatten_json(value, new_prefix)}")
        elif isinstance(data, (list, tuple)):
            for i, item in enumerate(data):
                parts.append(self._flatten_json(item, f"{prefix}[{i}]"))
        elif data is None:
            return ""
        else:
            return str(data)
        return " ".join(parts)


_default_detector = PHIDetector()


def detect_phi(content: str) -> PHIDetectionResult:
    """Detect PHI with the default pattern set"""
    return _default_detector.detect(content)


def sanitize_content(content: str) -> SanitizeResult:
    """Redact PHI with the default pattern set"""
    return _default_detector.sanitize(content)


def detect_phi_in_record(data: Any) -> PHIDetectionResult:
    """Detect PHI anywhere inside a JSON-like record with the default pattern set"""
    return _default_detector.detect_in_record(data)
