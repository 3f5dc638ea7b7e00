"""Audit Export Service"""

import asyncio
import json
import os
import time
import uuid
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple
import structlog

from compliance_pipeline.exceptions import ExportError, PipelineError
from compliance_pipeline.models.audit import (
    AuditAction,
    AuditEventType,
    AuditLogEntry,
    AuditQuery,
    SecurityContext,
    SignedPayload,
)
from compliance_pipeline.models.export import (
    MIME_TYPES,
    SCOPE_EVENT_TYPES,
    Attestation,
    AuditExportRequest,
    AuditExportResult,
    ChainOfCustody,
    ComplianceDocumentation,
    ExportStatistics,
    FileInformation,
    IntegrityVerification,
    RequestMetadata,
    SecurityInformation,
)
from compliance_pipeline.services.audit_service import AuditLogWriter
from compliance_pipeline.services.encryption_service import AuditSigner, FieldEncryptor
from compliance_pipeline.services.export_formats import render
from compliance_pipeline.services.integrity import canonicalize, compute_chain_hash, sha256_hex

logger = structlog.get_logger()

REDACTED = "[REDACTED]"
REDACTED_FIELDS = ["patient_identifier", "old_values", "new_values"]

ATTESTATION_STATEMENT = (
    "I attest that this export was generated in accordance with "
    "organizational policies and regulatory requirements."
)


def record_count_hash(count: int) -> str:
    return sha256_hex(str(count))


def content_hash(records: List[Dict[str, Any]]) -> str:
    return sha256_hex(canonicalize(records))


def verify_export(result: AuditExportResult, records: List[Dict[str, Any]]) -> bool:
    """Whether ``records`` are exactly the records the export was built from"""
    integrity = result.integrity_verification
    return (
        integrity.record_count_hash == record_count_hash(len(records))
        and integrity.content_hash == content_hash(records)
    )


class AuditExportEngine:
    """
    Audit trail export engine

    Selects entries through the audit writer, redacts and reshapes them,
    renders the requested format and writes the file under
    ``<export_dir>/<export_id>/``. A file only appears under its final name
    once the export fully succeeded.
    """

    def __init__(
        self,
        writer: AuditLogWriter,
        export_dir: str = "./exports",
        encryptor: Optional[FieldEncryptor] = None,
        signer: Optional[AuditSigner] = None,
        max_records: int = 10000
    ):
        self.writer = writer
        self.export_dir = Path(export_dir)
        self.encryptor = encryptor
        self.signer = signer
        self.max_records = max_records

    async def create_audit_export(
        self,
        request: AuditExportRequest,
        timeout: Optional[float] = None
    ) -> AuditExportResult:
        """
        Create an audit trail export

        The export reflects the trail as it was when the request started;
        the export's own audit events are not part of it.

        Raises:
            ExportError: Generation failed or timed out; no file is left behind
        """
        export_id = request.export_id or str(uuid.uuid4())
        try:
            return await asyncio.wait_for(self._create(request, export_id), timeout)
        except asyncio.TimeoutError as e:
            logger.error("audit_export_timeout", export_id=export_id, timeout=timeout)
            await self._log_failure(request, export_id, "timeout")
            raise ExportError("Audit export timed out") from e
        except PipelineError as e:
            logger.error("audit_export_failed", export_id=export_id, error_type=type(e).__name__)
            await self._log_failure(request, export_id, type(e).__name__)
            raise ExportError("Failed to create audit export") from e

    async def _create(self, request: AuditExportRequest, export_id: str) -> AuditExportResult:
        started = time.monotonic()
        requested_at = datetime.now(timezone.utc)

        query = self._build_query(request)
        total_available = await self.writer.count_logs(query)
        entries = await self.writer.query_logs(query)

        await self.writer.log_audit(
            action=AuditAction.ACCESS,
            resource_type="audit_export",
            resource_id=export_id,
            message="Audit export requested",
            context=SecurityContext(user_id=request.requester_id, user_agent="audit-export-engine"),
            event_type=AuditEventType.AUDIT_LOG_ACCESS.value,
            metadata={
                "stage": "requested",
                "format": request.export_format.value,
                "scope": request.export_scope.value,
            },
        )

        tamper_evidence = [
            entry.id for entry in entries
            if entry.integrity_hash != compute_chain_hash(entry.previous_hash, entry)
        ]
        records = self._process_records(entries, request)

        metadata = {
            "export_id": export_id,
            "generated_at": requested_at.isoformat(),
            "total_records": len(records),
            "export_scope": request.export_scope.value,
            "date_range": request.date_range.model_dump(mode="json"),
        }
        try:
            content = render(request.export_format, records, metadata)
        except ValueError as e:
            raise ExportError(f"Could not render {request.export_format.value} export") from e
        file_hash = sha256_hex(content)

        signature, signed_at = self._sign(request, file_hash)
        payload, encrypted = self._encrypt(request, content)

        restrictions = request.security_options.access_restrictions
        expires_at = None
        if restrictions and restrictions.expiration_hours:
            expires_at = requested_at + timedelta(hours=restrictions.expiration_hours)

        stamp = requested_at.strftime("%Y%m%dT%H%M%S%fZ")
        filename = f"audit_export_{export_id}_{stamp}.{request.export_format.value}"
        if encrypted:
            filename += ".enc"
        final_path = self.export_dir / export_id / filename

        completed = False
        try:
            self._write_file(final_path, payload)

            result = AuditExportResult(
                export_id=export_id,
                request_metadata=RequestMetadata(
                    requester_id=request.requester_id,
                    requested_at=requested_at,
                    completed_at=datetime.now(timezone.utc),
                    processing_duration_ms=int((time.monotonic() - started) * 1000),
                ),
                export_statistics=ExportStatistics(
                    total_records_available=total_available,
                    records_exported=len(records),
                    records_filtered_out=max(0, total_available - len(records)),
                    file_size_bytes=len(content),
                ),
                file_information=FileInformation(
                    filename=filename,
                    format=request.export_format,
                    mime_type=MIME_TYPES[request.export_format],
                    storage_path=str(final_path),
                    expires_at=expires_at,
                ),
                security_information=SecurityInformation(
                    file_hash=file_hash,
                    encryption_applied=encrypted,
                    digital_signature=signature,
                    signed_at=signed_at,
                    password_protected=request.security_options.password_protect,
                    access_controls_applied=restrictions is not None,
                    access_restrictions=restrictions,
                ),
                integrity_verification=IntegrityVerification(
                    record_count_hash=record_count_hash(len(records)),
                    content_hash=content_hash(records),
                    chain_integrity_verified=not tamper_evidence,
                    tamper_evidence=tamper_evidence,
                ),
                compliance_documentation=self._compliance_documentation(request, requested_at),
            )

            await self.writer.log_audit(
                action=AuditAction.EXPORT,
                resource_type="audit_export",
                resource_id=export_id,
                message="Audit export completed",
                context=SecurityContext(user_id=request.requester_id, user_agent="audit-export-engine"),
                event_type=AuditEventType.AUDIT_LOG_ACCESS.value,
                metadata={
                    "stage": "completed",
                    "records_exported": len(records),
                    "file_hash": file_hash,
                },
            )
            await self.writer.store.save_export_metadata(
                export_id,
                result.model_dump(mode="json"),
                ttl_seconds=self._metadata_ttl(request),
            )
            completed = True
        finally:
            if not completed:
                self._remove_file(final_path)

        logger.info(
            "audit_export_completed",
            export_id=export_id,
            format=request.export_format.value,
            records_exported=len(records),
            encrypted=encrypted,
            duration_ms=result.request_metadata.processing_duration_ms
        )
        return result

    def _build_query(self, request: AuditExportRequest) -> AuditQuery:
        """Scope preset event types unioned with explicit filters"""
        filters = request.filters
        event_types = None
        preset = SCOPE_EVENT_TYPES.get(request.export_scope)
        if preset is not None or filters.event_types:
            event_types = list(dict.fromkeys((preset or []) + (filters.event_types or [])))

        return AuditQuery(
            start_date=request.date_range.start_date,
            end_date=request.date_range.end_date,
            event_types=event_types,
            user_ids=filters.user_ids,
            resource_types=filters.resource_types,
            levels=filters.severity_levels,
            statuses=filters.statuses,
            min_risk_score=filters.min_risk_score,
            limit=request.export_options.max_records or self.max_records,
        )

    def _process_records(
        self,
        entries: List[AuditLogEntry],
        request: AuditExportRequest
    ) -> List[Dict[str, Any]]:
        """Search, redact, select columns and sort; redaction precedes any rendering"""
        options = request.export_options
        max_risk = request.filters.max_risk_score
        if max_risk is not None:
            entries = [e for e in entries if e.risk_score <= max_risk]

        criteria = request.search_criteria
        if criteria and criteria.search_text:
            entries = [e for e in entries if _matches_search(e, criteria)]

        if options.include_sensitive_data:
            # Fails loudly (DecryptionError) rather than exporting ciphertext as data
            entries = [self.writer.decrypt_entry(e) for e in entries]

        records = [entry.model_dump(mode="json") for entry in entries]

        if not options.include_sensitive_data:
            for record in records:
                for field in REDACTED_FIELDS:
                    record[field] = REDACTED if record.get(field) else None

        if options.column_selection:
            records = [
                {column: record[column] for column in options.column_selection if column in record}
                for record in records
            ]

        if options.sort_field:
            field = options.sort_field
            records.sort(
                key=lambda r: _sort_key(r.get(field)),
                reverse=options.sort_order == "desc",
            )

        return records

    def _sign(self, request: AuditExportRequest, file_hash: str) -> Tuple[Optional[str], Optional[str]]:
        if not request.export_options.include_digital_signatures:
            return None, None
        signer = self.signer or AuditSigner()
        signed = signer.sign_data(file_hash)
        return signed.signature, signed.timestamp

    def _encrypt(self, request: AuditExportRequest, content: bytes) -> Tuple[bytes, bool]:
        if not request.security_options.encrypt_export:
            return content, False
        encryptor = self.encryptor or FieldEncryptor()
        return encryptor.encrypt_bytes(content).encode("ascii"), True

    def _write_file(self, path: Path, payload: bytes) -> None:
        """Write through a .partial file renamed into place"""
        partial = path.with_name(path.name + ".partial")
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            with open(partial, "wb") as f:
                f.write(payload)
                f.flush()
                os.fsync(f.fileno())
            os.replace(partial, path)
        except OSError as e:
            self._remove_file(partial)
            raise ExportError("Could not write export file") from e

    def _remove_file(self, path: Path) -> None:
        for candidate in (path, path.with_name(path.name + ".partial")):
            try:
                candidate.unlink(missing_ok=True)
            except OSError as e:
                logger.error("audit_export_cleanup_failed", path=str(candidate), error_type=type(e).__name__)

    def _metadata_ttl(self, request: AuditExportRequest) -> int:
        restrictions = request.security_options.access_restrictions
        if restrictions and restrictions.expiration_hours:
            return restrictions.expiration_hours * 3600
        return self.writer.retention_days * 86400

    def _compliance_documentation(
        self,
        request: AuditExportRequest,
        created_at: datetime
    ) -> ComplianceDocumentation:
        requirements = request.compliance_requirements
        custody = None
        if requirements.include_chain_of_custody:
            custody = ChainOfCustody(
                created_by=request.requester_id,
                creation_timestamp=created_at,
            )
        attestation = None
        if requirements.include_attestation:
            attestation = Attestation(
                attestor_name=request.requester_id,
                attestation_statement=ATTESTATION_STATEMENT,
                attestation_timestamp=created_at,
            )
        return ComplianceDocumentation(
            export_purpose=requirements.regulatory_purpose or "Compliance audit and reporting",
            legal_basis=requirements.legal_basis,
            chain_of_custody=custody,
            attestation=attestation,
        )

    async def _log_failure(self, request: AuditExportRequest, export_id: str, reason: str) -> None:
        try:
            await self.writer.log_audit(
                action=AuditAction.ACCESS,
                resource_type="audit_export",
                resource_id=export_id,
                message="Audit export failed",
                context=SecurityContext(user_id=request.requester_id, user_agent="audit-export-engine"),
                event_type=AuditEventType.AUDIT_LOG_ACCESS.value,
                metadata={"stage": "failed", "reason": reason},
                status="failure",
            )
        except PipelineError as e:
            logger.error("audit_export_failure_not_logged", export_id=export_id, error_type=type(e).__name__)

    async def get_export(self, export_id: str) -> Optional[AuditExportResult]:
        metadata = await self.writer.store.get_export_metadata(export_id)
        if metadata is None:
            return None
        return AuditExportResult.model_validate(metadata)

    def verify_export_file(self, result: AuditExportResult) -> bool:
        """
        Check a written export file against its recorded hash and signature

        Raises:
            DecryptionError: The file is encrypted and cannot be decrypted
            SigningKeyMissingError: The export is signed and no key is available
        """
        data = Path(result.file_information.storage_path).read_bytes()
        security = result.security_information
        if security.encryption_applied:
            encryptor = self.encryptor or FieldEncryptor()
            data = encryptor.decrypt_bytes(data.decode("ascii"))

        file_hash = sha256_hex(data)
        if file_hash != security.file_hash:
            return False
        if security.digital_signature:
            signer = self.signer or AuditSigner()
            return signer.verify_signature(SignedPayload(
                data=file_hash,
                signature=security.digital_signature,
                timestamp=security.signed_at or "",
            ))
        return True


def _sort_key(value: Any) -> Tuple[int, Any]:
    # Numbers compare numerically, other values as text; None sorts after both ascending
    if value is None:
        return (2, "")
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return (0, value)
    return (1, str(value))


def _matches_search(entry: AuditLogEntry, criteria) -> bool:
    needle = criteria.search_text if criteria.case_sensitive else criteria.search_text.lower()
    for field in criteria.search_fields:
        value = getattr(entry, field, None)
        if value is None:
            continue
        if hasattr(value, "value"):
            value = value.value
        text = value if isinstance(value, str) else json.dumps(value, default=str)
        if not criteria.case_sensitive:
            text = text.lower()
        if needle in text:
            return True
    return False
