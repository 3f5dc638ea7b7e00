"""Tests for the HTTP API"""

import pytest
from fastapi.testclient import TestClient

from compliance_pipeline.api.main import create_app
from compliance_pipeline.services.audit_store import InMemoryAuditStore
from compliance_pipeline.utils.config import Settings

from tests.conftest import MASTER_KEY, SIGNING_KEY


def _settings(tmp_path, **overrides):
    values = {
        "ENCRYPTION_KEY": MASTER_KEY.hex(),
        "SIGNING_KEY": SIGNING_KEY.hex(),
        "EXPORT_DIR": str(tmp_path),
        "MAX_REQUEST_SIZE": 4096,
        "LOG_JSON": True,
    }
    values.update(overrides)
    return Settings(_env_file=None, **values)


@pytest.fixture
def client(tmp_path):
    app = create_app(_settings(tmp_path), store=InMemoryAuditStore())
    with TestClient(app) as client:
        yield client


@pytest.fixture
def unsigned_client(tmp_path):
    app = create_app(_settings(tmp_path, SIGNING_KEY=None), store=InMemoryAuditStore())
    with TestClient(app) as client:
        yield client


class TestService:

    def test_root(self, client):
        response = client.get("/")

        assert response.status_code == 200
        assert response.json()["status"] == "operational"

    def test_health(self, client):
        body = client.get("/health").json()

        assert body["status"] == "healthy"
        assert body["encryption"] is True
        assert body["signing"] is True

    def test_oversized_request_rejected(self, client):
        response = client.post("/scan/text", json={"content": "x" * 5000})

        assert response.status_code == 413

    def test_oversized_chunked_request_rejected(self, client):
        def body():
            yield b'{"content": "'
            for _ in range(5):
                yield b"x" * 1000
            yield b'"}'

        response = client.post("/scan/text", content=body(), headers={"content-type": "application/json"})

        assert response.status_code == 413
        assert response.json() == {"detail": "Request body exceeds 4096 bytes"}

    def test_small_chunked_request_accepted(self, client):
        def body():
            yield b'{"content": '
            yield b'"Routine visit"}'

        response = client.post("/scan/text", content=body(), headers={"content-type": "application/json"})

        assert response.status_code == 200


class TestScanRoutes:

    def test_scan_text(self, client):
        response = client.post("/scan/text", json={
            "content": "Patient SSN: 123-45-6789",
            "reference_id": "doc-1",
            "user_id": "dr-1",
        })

        assert response.status_code == 200
        body = response.json()
        assert body["reference_id"] == "doc-1"
        assert body["risk_level"] == "high"
        assert body["detection"]["phi_types"] == ["ssn"]

    def test_scan_is_audited(self, client):
        client.post("/scan/text", json={"content": "nothing here", "reference_id": "doc-2"})

        logs = client.get("/audit/logs", params={"resource_type": "text"}).json()
        assert logs["total"] == 1
        assert logs["logs"][0]["resource_id"] == "doc-2"

    def test_risk_levels(self, client):
        def level(content):
            return client.post("/scan/text", json={"content": content}).json()["risk_level"]

        assert level("Routine visit") == "none"
        assert level("DOB 01/15/1980") == "medium"
        assert level("mail jd@example.com") == "low"

    def test_sanitize(self, client):
        body = client.post("/scan/sanitize", json={"content": "Email jd@example.com"}).json()

        assert body["sanitized"] == "Email [EMAIL_REDACTED]"
        assert body["phi_detected"] is True

    def test_terminology(self, client):
        body = client.post("/scan/terminology", json={"content": "warfarin and aspirin"}).json()

        assert body["is_valid"] is False

    def test_approval(self, client):
        body = client.post("/scan/approval", json={"content": "Plan", "workflow_type": "medication"}).json()

        assert body["required"] is True
        assert body["approval_level"] == "clinical"


class TestComplianceRoutes:

    def test_validate(self, client):
        response = client.post("/compliance/validate", json={"data": {"content": "SSN 123-45-6789"}})

        assert response.status_code == 200
        body = response.json()
        assert body["passed"] is False
        assert body["violations"][0]["rule_id"] == "hipaa-phi-detection"

    def test_autofix(self, client):
        body = client.post("/compliance/autofix", json={
            "data": {"content": "SSN 123-45-6789", "containsPHI": True}
        }).json()

        assert body["fixed_data"]["content"] == "SSN [SSN_REDACTED]"
        assert body["applied_fixes"] == ["hipaa-phi-detection", "hipaa-audit-logging"]

    def test_process(self, client):
        body = client.post("/compliance/process", json={
            "data": {"content": "Routine follow-up"},
            "resource_id": "rec-1",
        }).json()

        assert body["compliance"]["passed"] is True
        log = client.get(f"/audit/logs/{body['audit_log_id']}").json()
        assert log["event_type"] == "compliance_validation"

    def test_rules(self, client):
        assert client.get("/compliance/rules").json()["total"] == 8
        assert client.get("/compliance/rules", params={"standard": "GDPR"}).json()["total"] == 1
        assert client.get("/compliance/rules/soc2-access-control").json()["severity"] == "high"
        assert client.get("/compliance/rules/unknown").status_code == 404


class TestAuditRoutes:

    def test_create_and_read_log(self, client):
        response = client.post("/audit/logs", json={
            "action": "update",
            "resource_type": "patient_record",
            "resource_id": "patient-1",
            "message": "Allergy added",
            "context": {"user_id": "nurse-1", "data_classifications": ["phi"]},
            "patient_identifier": "P-1",
            "after_state": {"allergy": "penicillin"},
        })

        assert response.status_code == 201
        created = response.json()
        assert created["patient_identifier"].startswith("v1:")
        assert created["signature"]

        stored = client.get(f"/audit/logs/{created['id']}").json()
        assert stored["patient_identifier"] == created["patient_identifier"]

        decrypted = client.get(f"/audit/logs/{created['id']}", params={"decrypt": True}).json()
        assert decrypted["patient_identifier"] == "P-1"
        assert decrypted["new_values"] == {"allergy": "penicillin"}

    def test_missing_log(self, client):
        assert client.get("/audit/logs/unknown").status_code == 404

    def test_invalid_action_rejected(self, client):
        response = client.post("/audit/logs", json={
            "action": "teleport", "resource_type": "x", "message": "m"
        })

        assert response.status_code == 422

    def test_query_flush_and_verify(self, client):
        for i in range(3):
            client.post("/audit/logs", json={
                "action": "read", "resource_type": "lab_result", "resource_id": f"lab-{i}", "message": "Viewed"
            })

        page = client.get("/audit/logs", params={"resource_type": "lab_result", "limit": 2, "offset": 1}).json()
        assert page["total"] == 3
        assert [log["resource_id"] for log in page["logs"]] == ["lab-1", "lab-2"]

        assert client.post("/audit/flush").json() == {"written": 3, "pending": 0}

        verification = client.get("/audit/verify").json()
        assert verification["valid"] is True
        assert verification["checked"] == 3
        assert verification["signatures_checked"] == 3

    def test_keys_hide_material(self, client):
        keys = client.get("/audit/keys").json()["keys"]

        assert keys == [{"key_id": "default-key", "active": True, "algorithm": "AES-256-GCM"}]


class TestExportRoutes:

    def test_create_and_get_export(self, client):
        client.post("/audit/logs", json={"action": "read", "resource_type": "patient_record", "message": "Viewed"})

        response = client.post("/export", json={"requester_id": "officer-1", "export_format": "csv"})

        assert response.status_code == 201
        result = response.json()
        assert result["export_statistics"]["records_exported"] == 1
        assert result["file_information"]["mime_type"] == "text/csv"

        fetched = client.get(f"/export/{result['export_id']}")
        assert fetched.status_code == 200
        assert fetched.json()["security_information"]["file_hash"] == result["security_information"]["file_hash"]

    def test_missing_export(self, client):
        assert client.get("/export/unknown").status_code == 404

    def test_export_failure_is_generic(self, unsigned_client):
        response = unsigned_client.post("/export", json={
            "requester_id": "officer-1",
            "export_options": {"include_digital_signatures": True},
        })

        assert response.status_code == 500
        assert response.json() == {"detail": "Export failed, try again"}
