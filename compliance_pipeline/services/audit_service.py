"""Audit Service"""

import asyncio
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Iterable, List, Optional
import structlog

from compliance_pipeline.exceptions import (
    AuditBufferFullError,
    ChainConflictError,
    StorageError,
)
from compliance_pipeline.models.audit import (
    AuditAction,
    AuditEventType,
    AuditLogEntry,
    AuditQuery,
    ChainVerification,
    ComplianceLevel,
    DataClassification,
    EncryptionLevel,
    LogLevel,
    SecurityContext,
    SignedPayload,
)
from compliance_pipeline.models.compliance import ComplianceResult, ComplianceStandard
from compliance_pipeline.services.audit_store import AuditStore
from compliance_pipeline.services.encryption_service import (
    SENSITIVE_FIELDS,
    AuditSigner,
    FieldEncryptor,
)
from compliance_pipeline.services.integrity import (
    compute_chain_hash,
    compute_data_hash,
    verify_chain,
)

logger = structlog.get_logger()

ACTION_RISK = {
    AuditAction.DELETE: 8,
    AuditAction.EXPORT: 7,
    AuditAction.MODIFY: 6,
    AuditAction.EXECUTE: 5,
    AuditAction.CREATE: 4,
    AuditAction.UPDATE: 4,
    AuditAction.ACCESS: 2,
    AuditAction.READ: 1,
}

CLASSIFICATION_RISK = {
    DataClassification.PHI: 3,
    DataClassification.PII: 2,
    DataClassification.CONFIDENTIAL: 2,
}

HIGH_IMPACT_ACTIONS = {AuditAction.DELETE, AuditAction.EXPORT, AuditAction.MODIFY}

# Changes to these fields always affect compliance
SENSITIVE_STATE_FIELDS = ["ssn", "dob", "medical_record", "diagnosis", "prescription"]


def calculate_risk_score(action: AuditAction, context: SecurityContext) -> int:
    """Action base score plus data classification and transport modifiers, clamped to 0..10"""
    score = ACTION_RISK.get(action, 0)
    for classification in set(context.data_classifications):
        score += CLASSIFICATION_RISK.get(classification, 0)
    if context.encryption_level == EncryptionLevel.NONE:
        score += 2
    return max(0, min(10, score))


def determine_level(risk_score: int) -> LogLevel:
    if risk_score > 7:
        return LogLevel.CRITICAL
    if risk_score > 5:
        return LogLevel.ERROR
    return LogLevel.INFO


def assess_compliance_impact(
    action: AuditAction,
    before_state: Optional[Dict[str, Any]],
    after_state: Optional[Dict[str, Any]]
) -> bool:
    if action in HIGH_IMPACT_ACTIONS:
        return True
    before = before_state or {}
    after = after_state or {}
    return any(before.get(field) != after.get(field) for field in SENSITIVE_STATE_FIELDS)


def determine_compliance_level(classifications: Iterable[DataClassification]) -> ComplianceLevel:
    classifications = set(classifications)
    if DataClassification.PHI in classifications or DataClassification.PII in classifications:
        return ComplianceLevel.RESTRICTED
    if DataClassification.CONFIDENTIAL in classifications:
        return ComplianceLevel.CONFIDENTIAL
    if DataClassification.INTERNAL in classifications:
        return ComplianceLevel.INTERNAL
    return ComplianceLevel.PUBLIC


class AuditLogWriter:
    """
    Tamper-evident audit log writer

    Features:
    - Risk scoring and compliance impact assessment
    - Per-field AES-256-GCM encryption of sensitive attributes
    - SHA-256 hash chain linked at append time
    - HMAC-SHA512 signature over each entry's chain hash
    - Buffered batch writes with at-least-once delivery

    A single asyncio lock serializes buffer mutation and chain linking, so
    concurrent callers always produce one linear chain. Entries leave the
    buffer only after the store acknowledged them.
    """

    def __init__(
        self,
        store: AuditStore,
        encryptor: Optional[FieldEncryptor] = None,
        signer: Optional[AuditSigner] = None,
        retention_days: int = 2555,
        batch_size: int = 100,
        flush_interval_seconds: float = 5.0,
        max_buffer_size: int = 10000,
        flush_timeout: Optional[float] = None
    ):
        self.store = store
        self.encryptor = encryptor
        self.signer = signer
        self.retention_days = retention_days
        self.batch_size = batch_size
        self.flush_interval_seconds = flush_interval_seconds
        self.max_buffer_size = max_buffer_size
        self.flush_timeout = flush_timeout

        self._buffer: List[AuditLogEntry] = []
        self._head: Optional[str] = None
        self._lock = asyncio.Lock()
        self._flush_task: Optional[asyncio.Task] = None
        self._closed = False

        if not self.encrypts:
            logger.warning("audit_encryption_unavailable", detail="sensitive fields stored in plaintext")
        if not self.signs:
            logger.warning("audit_signing_unavailable", detail="entries stored unsigned")

    @property
    def encrypts(self) -> bool:
        return self.encryptor is not None and self.encryptor.configured

    @property
    def signs(self) -> bool:
        return self.signer is not None and self.signer.configured

    @property
    def pending(self) -> int:
        return len(self._buffer)

    async def log_audit(
        self,
        action: AuditAction,
        resource_type: str,
        resource_id: Optional[str] = None,
        message: str = "",
        context: Optional[SecurityContext] = None,
        before_state: Optional[Dict[str, Any]] = None,
        after_state: Optional[Dict[str, Any]] = None,
        event_type: Optional[str] = None,
        patient_identifier: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
        stack_trace: Optional[str] = None,
        status: str = "success",
        source: str = "audit"
    ) -> AuditLogEntry:
        """
        Record an audit event

        Args:
            action: Action performed on the resource
            resource_type: Type of resource affected
            resource_id: ID of resource affected
            message: Human readable description
            context: Who acted and under which protections
            before_state: Resource state before the action
            after_state: Resource state after the action
            event_type: Event type (defaults to ``data_<action>``)
            patient_identifier: Patient the event concerns
            metadata: Additional details
            stack_trace: Error trace for failed operations
            status: success, failure, partial or blocked

        Returns:
            The entry as it will be persisted (sensitive fields encrypted)

        Raises:
            EncryptionError: Encryption was configured but failed
            AuditBufferFullError: The buffer is full and could not be flushed
        """
        action = AuditAction(action)
        context = context or SecurityContext()
        risk_score = calculate_risk_score(action, context)
        compliance_impact = assess_compliance_impact(action, before_state, after_state)
        now = datetime.now(timezone.utc)

        record: Dict[str, Any] = {
            "id": str(uuid.uuid4()),
            "timestamp": now,
            "level": determine_level(risk_score),
            "source": source,
            "event_type": event_type or f"data_{action.value}",
            "action": action,
            "message": message,
            "resource_type": resource_type,
            "resource_id": resource_id,
            "user_id": context.user_id,
            "session_id": context.session_id,
            "ip_address": context.ip_address,
            "user_agent": context.user_agent,
            "patient_identifier": patient_identifier,
            "old_values": before_state,
            "new_values": after_state,
            "metadata": metadata,
            "stack_trace": stack_trace,
            "status": status,
            "compliance_impact": compliance_impact,
            "risk_score": risk_score,
            "compliance_level": determine_compliance_level(context.data_classifications),
            "data_classifications": list(context.data_classifications),
            "data_hash": compute_data_hash(
                action.value, resource_type, resource_id, before_state, after_state
            ),
            "retention_days": self.retention_days,
            "expires_at": now + timedelta(days=self.retention_days),
        }

        encrypted_fields: List[str] = []
        if self.encrypts:
            record, encrypted_fields = self.encryptor.encrypt_fields(record, SENSITIVE_FIELDS)

        entry = AuditLogEntry(**record, encrypted_fields=encrypted_fields)

        async with self._lock:
            if len(self._buffer) >= self.max_buffer_size:
                await self._make_room()

            await self._link(entry)
            self._buffer.append(entry)

            logger.info(
                "audit_log_created",
                log_id=entry.id,
                action=action.value,
                resource_type=resource_type,
                risk_score=risk_score,
                compliance_impact=compliance_impact
            )
            if risk_score > 7 or compliance_impact:
                logger.warning("high_risk_audit_event", log_id=entry.id, risk_score=risk_score)

            # Critical entries are persisted immediately
            if len(self._buffer) >= self.batch_size or entry.level == LogLevel.CRITICAL:
                try:
                    await self._flush_unlocked(self.flush_timeout)
                except StorageError as e:
                    logger.error(
                        "audit_flush_deferred",
                        pending=len(self._buffer),
                        error_type=type(e).__name__
                    )

        return entry

    async def _make_room(self) -> None:
        try:
            await self._flush_unlocked(self.flush_timeout)
        except StorageError as e:
            logger.error("audit_buffer_full", pending=len(self._buffer))
            raise AuditBufferFullError(
                f"Audit buffer full ({self.max_buffer_size} entries) and flush failed"
            ) from e

    async def _chain_head(self) -> str:
        if self._head is None:
            self._head = await self.store.last_hash()
        return self._head

    async def _link(self, entry: AuditLogEntry) -> None:
        """Chain and sign an entry; caller holds the lock"""
        previous_hash = await self._chain_head()
        entry.previous_hash = previous_hash
        entry.integrity_hash = compute_chain_hash(previous_hash, entry)
        if self.signs:
            signed = self.signer.sign_data(entry.integrity_hash)
            entry.signature = signed.signature
            entry.signed_at = signed.timestamp
        self._head = entry.integrity_hash

    async def _recover_from_conflict(self) -> None:
        """
        Re-link the buffer onto the store's current head

        Entries the store already holds (a write that completed after its
        caller timed out) are dropped from the buffer first.
        """
        while self._buffer and await self.store.get(self._buffer[0].id) is not None:
            self._buffer.pop(0)

        self._head = await self.store.last_hash()
        for entry in self._buffer:
            await self._link(entry)

        logger.warning("audit_chain_relinked", pending=len(self._buffer))

    async def _flush_unlocked(self, timeout: Optional[float]) -> int:
        if not self._buffer:
            return 0

        batch = list(self._buffer)
        try:
            await asyncio.wait_for(self.store.write_batch(batch), timeout)
        except ChainConflictError as e:
            await self._recover_from_conflict()
            raise StorageError("Audit chain head moved; buffered entries re-linked") from e
        except asyncio.TimeoutError as e:
            logger.error("audit_flush_timeout", pending=len(batch), timeout=timeout)
            raise StorageError("Audit flush timed out") from e

        del self._buffer[:len(batch)]
        logger.info("audit_flush_completed", count=len(batch))
        return len(batch)

    async def flush(self, timeout: Optional[float] = None) -> int:
        """
        Write buffered entries to the store

        On failure, timeout or cancellation the entries stay buffered and
        the next flush writes them again.

        Returns:
            Number of entries written

        Raises:
            StorageError: The store did not acknowledge the batch
        """
        async with self._lock:
            return await self._flush_unlocked(timeout if timeout is not None else self.flush_timeout)

    async def _auto_flush_loop(self):
        while not self._closed:
            await asyncio.sleep(self.flush_interval_seconds)
            if self._closed:
                break
            try:
                await self.flush()
            except StorageError as e:
                logger.error(
                    "audit_auto_flush_failed",
                    pending=self.pending,
                    error_type=type(e).__name__
                )

    def start(self):
        """Start the background flush task"""
        self._closed = False
        if self._flush_task is None or self._flush_task.done():
            self._flush_task = asyncio.create_task(self._auto_flush_loop())

    async def stop(self):
        """Stop the background flush task and flush what remains"""
        self._closed = True
        if self._flush_task and not self._flush_task.done():
            self._flush_task.cancel()
            try:
                await self._flush_task
            except asyncio.CancelledError:
                pass
        self._flush_task = None
        await self.flush()

    async def create_compliance_audit_event(
        self,
        resource_type: str,
        resource_id: Optional[str],
        standards: List[ComplianceStandard],
        result: ComplianceResult,
        context: Optional[SecurityContext] = None,
        metadata: Optional[Dict[str, Any]] = None,
        action: AuditAction = AuditAction.READ
    ) -> AuditLogEntry:
        """Record the outcome of a compliance validation"""
        details = {
            **(metadata or {}),
            "score": result.score,
            "passed": result.passed,
            "violation_count": len(result.violations),
            "violations": [v.rule_id for v in result.violations],
            "standards": [s.value for s in standards],
        }
        return await self.log_audit(
            action=action,
            resource_type=resource_type,
            resource_id=resource_id,
            message=(
                "Compliance validation passed" if result.passed
                else f"Compliance validation failed with {len(result.violations)} violation(s)"
            ),
            context=context,
            event_type=AuditEventType.COMPLIANCE_VALIDATION.value,
            metadata=details,
            status="success" if result.passed else "failure",
        )

    async def query_logs(self, query: AuditQuery) -> List[AuditLogEntry]:
        """Stored entries followed by matching buffered ones, in chain order"""
        stored = await self.store.query(query.model_copy(update={"limit": None, "offset": 0}))
        async with self._lock:
            pending = [e for e in self._buffer if query.matches(e)]
        return query.paginate(stored + pending)

    async def count_logs(self, query: AuditQuery) -> int:
        stored = await self.store.count(query)
        async with self._lock:
            return stored + sum(1 for e in self._buffer if query.matches(e))

    async def get_log(self, log_id: str) -> Optional[AuditLogEntry]:
        async with self._lock:
            for entry in self._buffer:
                if entry.id == log_id:
                    return entry
        return await self.store.get(log_id)

    def decrypt_entry(self, entry: AuditLogEntry) -> AuditLogEntry:
        """
        Reverse field encryption for display

        Raises:
            DecryptionError: Missing key, wrong key or tampered ciphertext
        """
        if not entry.encrypted_fields:
            return entry
        encryptor = self.encryptor or FieldEncryptor()
        data = encryptor.decrypt_fields(entry.model_dump(), entry.encrypted_fields)
        return AuditLogEntry(**{**data, "encrypted_fields": []})

    def verify_entry_signature(self, entry: AuditLogEntry) -> bool:
        if self.signer is None:
            return entry.signature is None
        return self.signer.verify_signature(SignedPayload(
            data=entry.integrity_hash or "",
            signature=entry.signature,
            timestamp=entry.signed_at or "",
        ))

    async def verify_integrity(self) -> ChainVerification:
        """Recompute the chain over every surviving entry and check every signature"""
        entries = await self.query_logs(AuditQuery(limit=None))
        result = verify_chain(entries, start_hash=await self.store.chain_start_hash())

        bad_signatures: List[str] = []
        checked = 0
        if self.signs:
            for entry in entries:
                checked += 1
                if not self.verify_entry_signature(entry):
                    bad_signatures.append(entry.id)

        verification = result.model_copy(update={
            "valid": result.valid and not bad_signatures,
            "signatures_checked": checked,
            "invalid_signature_ids": bad_signatures,
        })

        log = logger.info if verification.valid else logger.warning
        log(
            "audit_integrity_verified",
            valid=verification.valid,
            checked=verification.checked,
            invalid_entries=len(verification.invalid_entry_ids),
            invalid_signatures=len(bad_signatures)
        )
        return verification
