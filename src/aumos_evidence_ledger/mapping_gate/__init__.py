"""Mapping Gate: deterministic admission control for entities derived from evidence.

Public API:
    evaluate: Pure evaluation of one snapshot against an explicit RuleSet.
    MappingGateService: Persists, audits, publishes, and escalates decisions.
    RulesetRegistry: Versioned YAML rule sets.
"""

from aumos_evidence_ledger.mapping_gate.decision import MappingDecision
from aumos_evidence_ledger.mapping_gate.engine import evaluate
from aumos_evidence_ledger.mapping_gate.rules import RuleSet, RulesetRegistry
from aumos_evidence_ledger.mapping_gate.service import MappingGateService

__all__ = ["MappingDecision", "MappingGateService", "RuleSet", "RulesetRegistry", "evaluate"]
