"""Compliance Rule Registry"""

from typing import Dict, Iterable, List, Optional
import structlog

from compliance_pipeline.exceptions import RegistryFrozenError
from compliance_pipeline.models.compliance import ComplianceRule, ComplianceStandard

logger = structlog.get_logger()


class ComplianceRuleRegistry:
    """
    Ordered catalog of compliance rules

    Built once at start-up and handed to every component that validates.
    Once frozen the registry is read-only and safe to share between
    concurrent readers.
    """

    def __init__(self, rules: Iterable[ComplianceRule] = ()):
        self._rules: Dict[str, ComplianceRule] = {}
        self._frozen = False
        for rule in rules:
            self.add_rule(rule)

    def add_rule(self, rule: ComplianceRule) -> None:
        """Register a rule; a rule with the same id is replaced"""
        if self._frozen:
            raise RegistryFrozenError(f"Registry is frozen, cannot add rule: {rule.id}")
        self._rules[rule.id] = rule
        logger.debug("compliance_rule_registered", rule_id=rule.id, standard=rule.standard.value)

    def freeze(self) -> "ComplianceRuleRegistry":
        self._frozen = True
        return self

    @property
    def frozen(self) -> bool:
        return self._frozen

    def get_rule(self, rule_id: str) -> Optional[ComplianceRule]:
        return self._rules.get(rule_id)

    def rules_for(self, standards: Iterable[ComplianceStandard]) -> List[ComplianceRule]:
        """Rules belonging to any of the given standards, in registration order"""
        wanted = set(standards)
        return [rule for rule in self._rules.values() if rule.standard in wanted]

    def list_rules(self) -> List[ComplianceRule]:
        return list(self._rules.values())

    def __len__(self) -> int:
        return len(self._rules)

    def __contains__(self, rule_id: str) -> bool:
        return rule_id in self._rules


def build_default_registry(extra_rules: Iterable[ComplianceRule] = ()) -> ComplianceRuleRegistry:
    """
    Create the process-wide registry

    Registers the default HIPAA/GDPR/SOC2/ISO27001/FDA rules followed by
    ``extra_rules`` and returns the registry frozen.
    """
    from compliance_pipeline.rules.default_rules import DEFAULT_RULES

    registry = ComplianceRuleRegistry(DEFAULT_RULES)
    for rule in extra_rules:
        registry.add_rule(rule)
    registry.freeze()

    logger.info("compliance_registry_built", rules=len(registry))
    return registry
