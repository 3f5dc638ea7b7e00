"""Compliance Management Endpoints"""

from fastapi import APIRouter, Depends, HTTPException, Query
from typing import List, Optional
import structlog

from compliance_pipeline.api.dependencies import ServiceContainer, get_container
from compliance_pipeline.models.compliance import (
    AutoFixRequest,
    AutoFixResult,
    ComplianceRequest,
    ComplianceResult,
    ComplianceStandard,
    PipelineRequest,
    PipelineResult,
)

router = APIRouter()
logger = structlog.get_logger()


@router.post("/validate", response_model=ComplianceResult)
async def validate_compliance(
    request: ComplianceRequest,
    container: ServiceContainer = Depends(get_container)
):
    """
    Validate a record against compliance rules

    Violations are part of the result; a failing record is still a 200.
    """
    return container.engine.validate_compliance(request.data, request.standards)


@router.post("/autofix", response_model=AutoFixResult)
async def autofix(
    request: AutoFixRequest,
    container: ServiceContainer = Depends(get_container)
):
    """Validate a record and apply every available auto-fix"""
    result = container.engine.validate_compliance(request.data, request.standards)
    return container.engine.apply_auto_fixes(request.data, result.violations)


@router.post("/process", response_model=PipelineResult)
async def process_record(
    request: PipelineRequest,
    container: ServiceContainer = Depends(get_container)
):
    """Run a record through detection, validation and audit"""
    return await container.pipeline.process(
        request.data,
        standards=request.standards,
        resource_type=request.resource_type,
        resource_id=request.resource_id,
        context=request.context
    )


@router.get("/rules")
async def list_rules(
    standard: Optional[List[ComplianceStandard]] = Query(default=None),
    container: ServiceContainer = Depends(get_container)
):
    """List registered compliance rules"""
    rules = (
        container.registry.rules_for(standard) if standard
        else container.registry.list_rules()
    )
    return {
        "rules": [rule.describe() for rule in rules],
        "total": len(rules)
    }


@router.get("/rules/{rule_id}")
async def get_rule(
    rule_id: str,
    container: ServiceContainer = Depends(get_container)
):
    rule = container.registry.get_rule(rule_id)
    if rule is None:
        raise HTTPException(status_code=404, detail="Rule not found")
    return rule.describe()
