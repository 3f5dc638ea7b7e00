"""Tests for the audit log writer"""

import asyncio

import pytest

from compliance_pipeline.exceptions import AuditBufferFullError, StorageError
from compliance_pipeline.models.audit import (
    AuditAction,
    AuditQuery,
    ComplianceLevel,
    DataClassification,
    EncryptionLevel,
    LogLevel,
    SecurityContext,
)
from compliance_pipeline.models.compliance import (
    ComplianceResult,
    ComplianceStandard,
    ComplianceViolation,
    Severity,
)
from compliance_pipeline.services.audit_service import (
    AuditLogWriter,
    assess_compliance_impact,
    calculate_risk_score,
    determine_compliance_level,
    determine_level,
)
from compliance_pipeline.services.audit_store import InMemoryAuditStore
from compliance_pipeline.services.encryption_service import FieldEncryptor
from compliance_pipeline.services.integrity import compute_data_hash


class FlakyStore(InMemoryAuditStore):
    """Fails the first ``failures`` writes"""

    def __init__(self, failures=1):
        super().__init__()
        self.failures = failures

    async def write_batch(self, entries):
        if self.failures > 0:
            self.failures -= 1
            raise StorageError("store unavailable")
        await super().write_batch(entries)


class SlowStore(InMemoryAuditStore):

    async def write_batch(self, entries):
        await asyncio.sleep(1)
        await super().write_batch(entries)


class LostAckStore(InMemoryAuditStore):
    """Persists the first batch but reports a timeout to the caller"""

    def __init__(self):
        super().__init__()
        self.lost = False

    async def write_batch(self, entries):
        await super().write_batch(entries)
        if not self.lost:
            self.lost = True
            raise asyncio.TimeoutError()


PHI_CONTEXT = SecurityContext(user_id="dr-1", data_classifications=[DataClassification.PHI])


class TestRiskScoring:

    def test_action_base_scores(self):
        context = SecurityContext()

        assert calculate_risk_score(AuditAction.READ, context) == 1
        assert calculate_risk_score(AuditAction.DELETE, context) == 8

    def test_modifiers_and_clamp(self):
        unencrypted = SecurityContext(encryption_level=EncryptionLevel.NONE)

        assert calculate_risk_score(AuditAction.READ, unencrypted) == 3
        assert calculate_risk_score(AuditAction.READ, PHI_CONTEXT) == 4
        assert calculate_risk_score(AuditAction.DELETE, PHI_CONTEXT) == 10

    def test_level_thresholds(self):
        assert determine_level(8) == LogLevel.CRITICAL
        assert determine_level(7) == LogLevel.ERROR
        assert determine_level(6) == LogLevel.ERROR
        assert determine_level(5) == LogLevel.INFO

    def test_compliance_impact(self):
        assert assess_compliance_impact(AuditAction.EXPORT, None, None)
        assert assess_compliance_impact(AuditAction.UPDATE, {"ssn": "1"}, {"ssn": "2"})
        assert not assess_compliance_impact(AuditAction.UPDATE, {"ssn": "1"}, {"ssn": "1"})
        assert not assess_compliance_impact(AuditAction.UPDATE, {"name": "a"}, {"name": "b"})

    def test_compliance_level(self):
        assert determine_compliance_level([DataClassification.PII]) == ComplianceLevel.RESTRICTED
        assert determine_compliance_level([DataClassification.CONFIDENTIAL]) == ComplianceLevel.CONFIDENTIAL
        assert determine_compliance_level([DataClassification.INTERNAL]) == ComplianceLevel.INTERNAL
        assert determine_compliance_level([]) == ComplianceLevel.PUBLIC


class TestLogAudit:

    @pytest.mark.asyncio
    async def test_entry_is_buffered(self, writer, store):
        entry = await writer.log_audit(AuditAction.READ, "patient_record", "patient-1", "Chart viewed")

        assert entry.event_type == "data_read"
        assert entry.level == LogLevel.INFO
        assert entry.risk_score == 1
        assert entry.retention_days == 2555
        assert writer.pending == 1
        assert len(store) == 0

    @pytest.mark.asyncio
    async def test_critical_entry_is_written_immediately(self, writer, store):
        entry = await writer.log_audit(
            AuditAction.DELETE, "patient_record", "patient-1", "Record removed", context=PHI_CONTEXT
        )

        assert entry.level == LogLevel.CRITICAL
        assert entry.compliance_level == ComplianceLevel.RESTRICTED
        assert entry.compliance_impact
        assert writer.pending == 0
        assert len(store) == 1

    @pytest.mark.asyncio
    async def test_batch_size_triggers_flush(self, store):
        writer = AuditLogWriter(store, batch_size=2)

        await writer.log_audit(AuditAction.READ, "patient_record")
        assert len(store) == 0
        await writer.log_audit(AuditAction.READ, "patient_record")

        assert len(store) == 2
        assert writer.pending == 0

    @pytest.mark.asyncio
    async def test_sensitive_fields_are_encrypted(self, writer, encryptor):
        entry = await writer.log_audit(
            AuditAction.UPDATE,
            "patient_record",
            "patient-1",
            "Address changed",
            context=SecurityContext(user_id="nurse-1", ip_address="10.0.0.1"),
            before_state={"address": "1 Old Rd"},
            after_state={"address": "2 New Rd"},
            patient_identifier="P-1",
            metadata={"reason": "moved"},
        )

        assert set(entry.encrypted_fields) == {
            "patient_identifier", "ip_address", "metadata", "old_values", "new_values"
        }
        assert FieldEncryptor.is_encrypted(entry.patient_identifier)
        assert FieldEncryptor.is_encrypted(entry.old_values)
        assert entry.user_id == "nurse-1"
        assert entry.data_hash == compute_data_hash(
            "update", "patient_record", "patient-1", {"address": "1 Old Rd"}, {"address": "2 New Rd"}
        )

        decrypted = writer.decrypt_entry(entry)
        assert decrypted.patient_identifier == "P-1"
        assert decrypted.ip_address == "10.0.0.1"
        assert decrypted.new_values == {"address": "2 New Rd"}
        assert decrypted.metadata == {"reason": "moved"}
        assert decrypted.encrypted_fields == []

    @pytest.mark.asyncio
    async def test_without_keys_entries_are_plain_and_unsigned(self, plain_writer):
        entry = await plain_writer.log_audit(
            AuditAction.READ, "patient_record", patient_identifier="P-1"
        )
        await plain_writer.flush()

        assert entry.patient_identifier == "P-1"
        assert entry.encrypted_fields == []
        assert entry.signature is None
        assert entry.integrity_hash

        verification = await plain_writer.verify_integrity()
        assert verification.valid
        assert verification.signatures_checked == 0

    @pytest.mark.asyncio
    async def test_custom_event_type_and_status(self, plain_writer):
        entry = await plain_writer.log_audit(
            AuditAction.ACCESS, "session", event_type="login_failed", status="failure"
        )

        assert entry.event_type == "login_failed"
        assert entry.status == "failure"


class TestChain:

    @pytest.mark.asyncio
    async def test_entries_are_linked_and_signed(self, writer, signer):
        first = await writer.log_audit(AuditAction.READ, "patient_record")
        second = await writer.log_audit(AuditAction.READ, "patient_record")
        await writer.flush()

        assert first.previous_hash == ""
        assert second.previous_hash == first.integrity_hash
        assert first.signature and first.signed_at
        assert writer.verify_entry_signature(second)

        verification = await writer.verify_integrity()
        assert verification.valid
        assert verification.checked == 2
        assert verification.signatures_checked == 2

    @pytest.mark.asyncio
    async def test_concurrent_writers_form_one_chain(self, writer, store):
        await asyncio.gather(*[
            writer.log_audit(AuditAction.READ, "patient_record", f"patient-{i}")
            for i in range(20)
        ])
        await writer.flush()

        assert len(store) == 20
        verification = await writer.verify_integrity()
        assert verification.valid
        assert verification.checked == 20

    @pytest.mark.asyncio
    async def test_verification_spans_store_and_buffer(self, writer):
        await writer.log_audit(AuditAction.READ, "patient_record")
        await writer.flush()
        await writer.log_audit(AuditAction.READ, "patient_record")

        verification = await writer.verify_integrity()

        assert verification.valid
        assert verification.checked == 2

    @pytest.mark.asyncio
    async def test_tampered_entry_detected(self, writer, store):
        entry = await writer.log_audit(AuditAction.READ, "patient_record", message="original")
        await writer.log_audit(AuditAction.READ, "patient_record")
        await writer.flush()

        entry.message = "rewritten"

        verification = await writer.verify_integrity()
        assert not verification.valid
        assert verification.invalid_entry_ids == [entry.id]

    @pytest.mark.asyncio
    async def test_forged_signature_detected(self, writer):
        entry = await writer.log_audit(AuditAction.READ, "patient_record")
        await writer.flush()

        entry.signature = "0" * 128

        verification = await writer.verify_integrity()
        assert not verification.valid
        assert verification.invalid_entry_ids == []
        assert verification.invalid_signature_ids == [entry.id]

    @pytest.mark.asyncio
    async def test_chain_continues_from_stored_head(self, store):
        first_writer = AuditLogWriter(store)
        await first_writer.log_audit(AuditAction.READ, "patient_record")
        await first_writer.flush()

        second_writer = AuditLogWriter(store)
        entry = await second_writer.log_audit(AuditAction.READ, "patient_record")
        await second_writer.flush()

        stored = await store.query(AuditQuery())
        assert entry.previous_hash == stored[0].integrity_hash
        assert (await second_writer.verify_integrity()).valid


class TestDelivery:

    @pytest.mark.asyncio
    async def test_failed_flush_keeps_entries(self):
        store = FlakyStore(failures=1)
        writer = AuditLogWriter(store)
        await writer.log_audit(AuditAction.READ, "patient_record")

        with pytest.raises(StorageError):
            await writer.flush()
        assert writer.pending == 1

        assert await writer.flush() == 1
        assert writer.pending == 0
        assert len(store) == 1
        assert (await writer.verify_integrity()).valid

    @pytest.mark.asyncio
    async def test_deferred_flush_does_not_fail_logging(self):
        writer = AuditLogWriter(FlakyStore(failures=1), batch_size=1)

        entry = await writer.log_audit(AuditAction.READ, "patient_record")

        assert entry.id
        assert writer.pending == 1

    @pytest.mark.asyncio
    async def test_flush_timeout(self):
        store = SlowStore()
        writer = AuditLogWriter(store)
        await writer.log_audit(AuditAction.READ, "patient_record")

        with pytest.raises(StorageError):
            await writer.flush(timeout=0.01)

        assert writer.pending == 1
        assert len(store) == 0

    @pytest.mark.asyncio
    async def test_buffer_full_raises(self):
        writer = AuditLogWriter(FlakyStore(failures=10), max_buffer_size=2)
        await writer.log_audit(AuditAction.READ, "patient_record")
        await writer.log_audit(AuditAction.READ, "patient_record")

        with pytest.raises(AuditBufferFullError):
            await writer.log_audit(AuditAction.READ, "patient_record")
        assert writer.pending == 2

    @pytest.mark.asyncio
    async def test_buffer_full_flushes_first(self, store):
        writer = AuditLogWriter(store, max_buffer_size=2)
        for _ in range(3):
            await writer.log_audit(AuditAction.READ, "patient_record")

        assert len(store) == 2
        assert writer.pending == 1

    @pytest.mark.asyncio
    async def test_conflicting_writer_relinks(self, store):
        writer_a = AuditLogWriter(store)
        writer_b = AuditLogWriter(store)
        await writer_a.log_audit(AuditAction.READ, "patient_record", "a")
        await writer_b.log_audit(AuditAction.READ, "patient_record", "b")
        await writer_b.flush()

        with pytest.raises(StorageError):
            await writer_a.flush()
        assert writer_a.pending == 1

        assert await writer_a.flush() == 1
        verification = await writer_a.verify_integrity()
        assert verification.valid
        assert verification.checked == 2

    @pytest.mark.asyncio
    async def test_write_acknowledged_late_is_not_duplicated(self):
        store = LostAckStore()
        writer = AuditLogWriter(store)
        await writer.log_audit(AuditAction.READ, "patient_record")

        with pytest.raises(StorageError):
            await writer.flush()
        assert writer.pending == 1

        # The retry hits a chain conflict; the already stored entry is dropped
        with pytest.raises(StorageError):
            await writer.flush()

        assert writer.pending == 0
        assert len(store) == 1

    @pytest.mark.asyncio
    async def test_stop_flushes_remaining(self, writer, store):
        writer.start()
        await writer.log_audit(AuditAction.READ, "patient_record")

        await writer.stop()

        assert len(store) == 1
        assert writer.pending == 0

    @pytest.mark.asyncio
    async def test_auto_flush(self, store):
        writer = AuditLogWriter(store, flush_interval_seconds=0.01)
        writer.start()
        await writer.log_audit(AuditAction.READ, "patient_record")

        await asyncio.sleep(0.1)

        assert len(store) == 1
        await writer.stop()


class TestQueries:

    @pytest.mark.asyncio
    async def test_query_merges_store_and_buffer(self, plain_writer):
        stored = await plain_writer.log_audit(AuditAction.READ, "patient_record", "p-1")
        await plain_writer.flush()
        pending = await plain_writer.log_audit(AuditAction.READ, "lab_result", "l-1")

        logs = await plain_writer.query_logs(AuditQuery())

        assert [e.id for e in logs] == [stored.id, pending.id]
        assert await plain_writer.count_logs(AuditQuery()) == 2
        assert (await plain_writer.get_log(pending.id)).id == pending.id
        assert (await plain_writer.get_log(stored.id)).id == stored.id
        assert await plain_writer.get_log("missing") is None

    @pytest.mark.asyncio
    async def test_query_filters_and_pagination(self, plain_writer):
        for i in range(5):
            await plain_writer.log_audit(AuditAction.READ, "patient_record", f"p-{i}")
        await plain_writer.log_audit(AuditAction.UPDATE, "lab_result", "l-1")

        records = await plain_writer.query_logs(AuditQuery(resource_types=["patient_record"], limit=2, offset=1))
        updates = await plain_writer.query_logs(AuditQuery(actions=[AuditAction.UPDATE]))

        assert [e.resource_id for e in records] == ["p-1", "p-2"]
        assert [e.resource_id for e in updates] == ["l-1"]
        assert await plain_writer.count_logs(AuditQuery(min_risk_score=4)) == 1


class TestComplianceEvent:

    @pytest.mark.asyncio
    async def test_failed_validation_is_recorded(self, plain_writer):
        result = ComplianceResult(
            passed=False,
            score=75.0,
            violations=[ComplianceViolation(
                rule_id="hipaa-audit-logging",
                standard=ComplianceStandard.HIPAA,
                severity=Severity.CRITICAL,
                title="Missing Audit Log",
                description="PHI access not properly logged",
            )],
        )

        entry = await plain_writer.create_compliance_audit_event(
            "record", "r-1", [ComplianceStandard.HIPAA], result, metadata={"phi_detected": True}
        )

        assert entry.event_type == "compliance_validation"
        assert entry.status == "failure"
        assert entry.metadata["violations"] == ["hipaa-audit-logging"]
        assert entry.metadata["standards"] == ["HIPAA"]
        assert entry.metadata["phi_detected"] is True

    @pytest.mark.asyncio
    async def test_passed_validation_is_success(self, plain_writer):
        entry = await plain_writer.create_compliance_audit_event(
            "record", None, [ComplianceStandard.GDPR], ComplianceResult(passed=True, score=100.0)
        )

        assert entry.status == "success"
        assert entry.message == "Compliance validation passed"
