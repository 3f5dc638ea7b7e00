"""Tests for PHI Detector"""

import pytest
from compliance_pipeline.services.phi_detector import (
    PHIDetector,
    detect_phi,
    detect_phi_in_record,
    sanitize_content,
)
from compliance_pipeline.models.scan import PHIType


@pytest.fixture
def detector():
    return PHIDetector()


class TestPHIDetector:
    """Test PHI detection capabilities"""

    def test_detect_ssn(self, detector):
        """Test SSN detection"""
        result = detector.detect("Patient SSN is 123-45-6789")

        assert result.has_phi
        assert result.phi_types == [PHIType.SSN]
        assert result.locations[0].value == "123-45-6789"
        assert result.locations[0].location == "position 15"
        assert result.sanitized_content == "Patient SSN is [SSN_REDACTED]"

    def test_strict_ssn_format_raises_confidence(self, detector):
        strict = detector.detect("SSN 123-45-6789")
        loose = detector.detect("SSN 123456789")

        assert strict.locations[0].confidence == pytest.approx(1.0)
        assert loose.locations[0].confidence == pytest.approx(0.95)

    def test_patient_name_and_condition(self, detector):
        result = detector.detect("Patient John Doe, SSN: 123-45-6789, diagnosis: diabetes")

        assert result.has_phi
        assert result.phi_types == [PHIType.SSN, PHIType.MEDICAL_CONDITION]
        assert result.sanitized_content == (
            "Patient John Doe, SSN: [SSN_REDACTED], diagnosis: [MEDICALCONDITIONS_REDACTED]"
        )

    def test_redacts_match_not_earlier_lookalike(self, detector):
        result = detector.detect("Ref 1123-45-6789; SSN 123-45-6789")

        assert result.sanitized_content == "Ref 1123-45-6789; SSN [SSN_REDACTED]"
        assert [loc.location for loc in result.locations] == ["position 22"]

    def test_condition_inside_longer_word_untouched(self, detector):
        result = detector.detect("heatstroke risk; history of stroke")

        assert result.sanitized_content == "heatstroke risk; history of [MEDICALCONDITIONS_REDACTED]"

    def test_repeated_value_redacted_everywhere(self, detector):
        result = detector.detect("SSN 123-45-6789, confirmed 123-45-6789")

        assert len(result.locations) == 2
        assert "6789" not in result.sanitized_content

    def test_detect_email(self, detector):
        """Test email detection"""
        result = detector.detect("Contact: john.doe@hospital.com")

        assert PHIType.EMAIL in result.phi_types
        assert "[EMAIL_REDACTED]" in result.sanitized_content

    def test_detect_phone(self, detector):
        """Test phone number detection"""
        result = detector.detect("Call patient at (555) 123-4567")

        phones = [loc for loc in result.locations if loc.type == PHIType.PHONE]
        assert len(phones) == 1
        assert phones[0].confidence == pytest.approx(0.85)

    def test_detect_mrn(self, detector):
        """Test Medical Record Number detection"""
        result = detector.detect("MRN: ABC123456")

        assert PHIType.MEDICAL_RECORD_NUMBER in result.phi_types

    def test_detect_date_of_birth(self, detector):
        result = detector.detect("DOB: 01/15/1980")

        assert result.phi_types == [PHIType.DATE_OF_BIRTH]

    def test_detect_credit_card(self, detector):
        result = detector.detect("Card 4111 1111 1111 1111 on file")

        assert PHIType.CREDIT_CARD in result.phi_types

    def test_detect_medical_conditions(self, detector):
        result = detector.detect("History of Diabetes and hypertension")

        conditions = [loc for loc in result.locations if loc.type == PHIType.MEDICAL_CONDITION]
        assert len(conditions) == 2
        assert all(loc.confidence == pytest.approx(0.6) for loc in conditions)

    def test_hipaa_identifier_needs_digit(self, detector):
        assert PHIType.HIPAA_ID in detector.detect("Patient ID: A12345").phi_types
        assert not detector.detect("Patient John arrived").has_phi

    def test_no_phi_clean_text(self, detector):
        """Test no false positives on clean text"""
        text = "The patient is feeling better today."
        result = detector.detect(text)

        assert not result.has_phi
        assert result.confidence == 0.0
        assert result.locations == []
        assert result.sanitized_content == text

    def test_empty_content(self, detector):
        result = detector.detect("")

        assert not result.has_phi
        assert result.sanitized_content == ""

    def test_multiple_phi_types(self, detector):
        """Test detecting multiple PHI types in one text"""
        text = """
        SSN: 123-45-6789
        Phone: (555) 123-4567
        Email: john.smith@email.com
        MRN: PAT12345678
        """
        result = detector.detect(text)

        assert PHIType.SSN in result.phi_types
        assert PHIType.PHONE in result.phi_types
        assert PHIType.EMAIL in result.phi_types
        assert PHIType.MEDICAL_RECORD_NUMBER in result.phi_types
        assert "123-45-6789" not in result.sanitized_content
        assert "john.smith@email.com" not in result.sanitized_content

    def test_phi_types_follow_detection_order(self, detector):
        result = detector.detect("mail a@b.com, SSN 123-45-6789")

        assert result.phi_types == [PHIType.SSN, PHIType.EMAIL]

    def test_confidence_is_mean_of_matches(self, detector):
        result = detector.detect("SSN 123-45-6789 mail a@b.com")

        assert result.confidence == pytest.approx((1.0 + 0.9) / 2)

    def test_overlapping_matches_redact_once(self, detector):
        # A bare ten digit number is both a phone number and an NPI;
        # the phone pattern runs first and consumes the text
        result = detector.detect("NPI 1234567890")

        assert PHIType.PHONE in result.phi_types
        assert PHIType.NPI in result.phi_types
        assert result.sanitized_content == "NPI [PHONE_REDACTED]"

    def test_detect_in_record(self, detector):
        record = {"patient": {"name": "J. Doe", "contacts": ["jd@example.com"]}, "ssn": "123-45-6789"}
        result = detector.detect_in_record(record)

        assert PHIType.EMAIL in result.phi_types
        assert PHIType.SSN in result.phi_types

    def test_flatten_skips_none(self, detector):
        assert detector._flatten_json({"a": None, "b": [1, 2]}) == "a:  b: 1 2"


class TestModuleHelpers:

    def test_sanitize_content(self):
        result = sanitize_content("Reach me at jane@clinic.org")

        assert result.phi_detected
        assert result.sanitized == "Reach me at [EMAIL_REDACTED]"

    def test_sanitize_clean_text_unchanged(self):
        result = sanitize_content("Nothing to see")

        assert not result.phi_detected
        assert result.sanitized == "Nothing to see"

    def test_detect_phi_and_record_helpers(self):
        assert detect_phi("SSN 123-45-6789").has_phi
        assert detect_phi_in_record({"note": "SSN 123-45-6789"}).has_phi
