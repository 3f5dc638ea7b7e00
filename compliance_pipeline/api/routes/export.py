"""Audit Export Endpoints"""

from fastapi import APIRouter, Depends, HTTPException
import structlog

from compliance_pipeline.api.dependencies import ServiceContainer, get_container
from compliance_pipeline.models.export import AuditExportRequest, AuditExportResult

router = APIRouter()
logger = structlog.get_logger()

EXPORT_TIMEOUT_SECONDS = 120.0


@router.post("", response_model=AuditExportResult, status_code=201)
async def create_export(
    request: AuditExportRequest,
    container: ServiceContainer = Depends(get_container)
):
    """
    Export the audit trail

    Formats: csv, json, xlsx, xml, pdf. Sensitive fields are redacted
    unless ``include_sensitive_data`` is set.
    """
    return await container.exporter.create_audit_export(request, timeout=EXPORT_TIMEOUT_SECONDS)


@router.get("/{export_id}", response_model=AuditExportResult)
async def get_export(
    export_id: str,
    container: ServiceContainer = Depends(get_container)
):
    """Get recorded export metadata"""
    result = await container.exporter.get_export(export_id)
    if result is None:
        raise HTTPException(status_code=404, detail="Export not found")
    return result
