"""Compliance Service"""

import copy
from typing import Any, Dict, Iterable, List, Optional
import structlog

from compliance_pipeline.models.compliance import (
    AutoFixResult,
    ComplianceResult,
    ComplianceStandard,
    ComplianceSummary,
    ComplianceViolation,
)
from compliance_pipeline.rules.registry import ComplianceRuleRegistry

logger = structlog.get_logger()


class ComplianceEngine:
    """
    Compliance rule engine

    Evaluates records against the rules of an injected registry. Evaluation
    is synchronous and never caches results.
    """

    def __init__(self, registry: ComplianceRuleRegistry):
        self.registry = registry

    def validate_compliance(
        self,
        data: Dict[str, Any],
        standards: Optional[Iterable[ComplianceStandard]] = None
    ) -> ComplianceResult:
        """
        Validate a record against the rules of the requested standards

        Args:
            data: Record to validate
            standards: Standards to apply (None = HIPAA only)

        Returns:
            Compliance result. ``passed`` is False on any violation,
            whatever its severity.

        A rule predicate that raises propagates to the caller.
        """
        standards = list(standards) if standards is not None else [ComplianceStandard.HIPAA]
        rules = self.registry.rules_for(standards)

        violations: List[ComplianceViolation] = []
        for rule in rules:
            violation = rule.check(data)
            if violation is not None:
                violations.append(violation)

        total_rules = len(rules)
        score = (
            100.0 * (total_rules - len(violations)) / total_rules
            if total_rules else 100.0
        )

        summary = ComplianceSummary()
        for violation in violations:
            summary.total += 1
            setattr(summary, violation.severity.value, getattr(summary, violation.severity.value) + 1)

        logger.info(
            "compliance_validation_completed",
            standards=[s.value for s in standards],
            rules_evaluated=total_rules,
            violations_found=len(violations),
            score=score
        )

        return ComplianceResult(
            passed=not violations,
            score=score,
            violations=violations,
            summary=summary,
            recommendations=self._generate_recommendations(summary, violations),
            rules_evaluated=total_rules,
        )

    def apply_auto_fixes(
        self,
        data: Dict[str, Any],
        violations: List[ComplianceViolation]
    ) -> AutoFixResult:
        """
        Apply auto-fixes for the given violations

        Fixes run in violation order on a copy of ``data``; when two fixes
        touch the same field the later one wins. Violations whose rule has
        no auto-fix are returned as remaining.
        """
        fixed_data = copy.deepcopy(data)
        applied_fixes: List[str] = []
        remaining: List[ComplianceViolation] = []

        for violation in violations:
            rule = self.registry.get_rule(violation.rule_id)
            if rule is not None and rule.auto_fix is not None:
                fixed_data = rule.auto_fix(fixed_data)
                applied_fixes.append(violation.rule_id)
            else:
                remaining.append(violation)

        logger.info(
            "auto_fixes_applied",
            applied=applied_fixes,
            remaining=len(remaining)
        )

        return AutoFixResult(
            fixed_data=fixed_data,
            applied_fixes=applied_fixes,
            remaining_violations=remaining,
        )

    def _generate_recommendations(
        self,
        summary: ComplianceSummary,
        violations: List[ComplianceViolation]
    ) -> List[str]:
        """Generate recommendations based on violations"""
        recommendations = []

        if summary.critical > 0:
            recommendations.append(
                "Address critical compliance violations immediately"
            )

        if summary.high > 0:
            recommendations.append(
                "Review and fix high-priority compliance issues"
            )

        if any(v.auto_fix_available for v in violations):
            recommendations.append(
                "Apply available automatic fixes to resolve violations"
            )

        return recommendations

