"""Audit Trail Endpoints"""

from fastapi import APIRouter, Depends, HTTPException, Query
from typing import Optional, List
from datetime import datetime
import structlog

from compliance_pipeline.api.dependencies import ServiceContainer, get_container
from compliance_pipeline.models.audit import (
    AuditAction,
    AuditLogEntry,
    AuditLogRequest,
    AuditQuery,
    ChainVerification,
    LogLevel,
)

router = APIRouter()
logger = structlog.get_logger()


@router.post("/logs", response_model=AuditLogEntry, status_code=201)
async def create_audit_log(
    request: AuditLogRequest,
    container: ServiceContainer = Depends(get_container)
):
    """
    Record an audit event

    The response is the stored form: sensitive fields are encrypted when an
    encryption key is configured.
    """
    return await container.writer.log_audit(
        action=request.action,
        resource_type=request.resource_type,
        resource_id=request.resource_id,
        message=request.message,
        context=request.context,
        before_state=request.before_state,
        after_state=request.after_state,
        event_type=request.event_type,
        patient_identifier=request.patient_identifier,
        metadata=request.metadata,
        status=request.status
    )


@router.get("/logs")
async def get_audit_logs(
    resource_id: Optional[str] = None,
    resource_type: Optional[List[str]] = Query(default=None),
    user_id: Optional[List[str]] = Query(default=None),
    action: Optional[List[AuditAction]] = Query(default=None),
    event_type: Optional[List[str]] = Query(default=None),
    level: Optional[List[LogLevel]] = Query(default=None),
    status: Optional[List[str]] = Query(default=None),
    min_risk_score: Optional[int] = Query(default=None, ge=0, le=10),
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
    limit: int = Query(default=100, le=1000),
    offset: int = 0,
    container: ServiceContainer = Depends(get_container)
):
    """
    Query audit logs

    Supports filtering by:
    - Resource ID/Type
    - User ID
    - Action and event type
    - Level, status and minimum risk score
    - Date range
    """
    query = AuditQuery(
        resource_id=resource_id,
        resource_types=resource_type,
        user_ids=user_id,
        actions=action,
        event_types=event_type,
        levels=level,
        statuses=status,
        min_risk_score=min_risk_score,
        start_date=start_date,
        end_date=end_date,
        limit=limit,
        offset=offset
    )

    logs = await container.writer.query_logs(query)
    total = await container.writer.count_logs(query)

    return {
        "logs": logs,
        "total": total,
        "limit": limit,
        "offset": offset
    }


@router.get("/logs/{log_id}", response_model=AuditLogEntry)
async def get_audit_log(
    log_id: str,
    decrypt: bool = False,
    container: ServiceContainer = Depends(get_container)
):
    """Get specific audit log entry, optionally with sensitive fields decrypted"""
    log = await container.writer.get_log(log_id)
    if not log:
        raise HTTPException(status_code=404, detail="Audit log not found")
    if decrypt:
        return container.writer.decrypt_entry(log)
    return log


@router.post("/flush")
async def flush_audit_logs(container: ServiceContainer = Depends(get_container)):
    """Write buffered entries to the store"""
    written = await container.writer.flush()
    return {"written": written, "pending": container.writer.pending}


@router.get("/verify", response_model=ChainVerification)
async def verify_audit_chain(container: ServiceContainer = Depends(get_container)):
    """Recompute the integrity chain and check entry signatures"""
    return await container.writer.verify_integrity()


@router.get("/keys")
async def list_encryption_keys(container: ServiceContainer = Depends(get_container)):
    """List encryption key ids; key material is never returned"""
    return {"keys": container.encryptor.list_keys()}
