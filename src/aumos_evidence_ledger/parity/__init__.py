"""Parity Enforcer and the standing silent-mutation policy."""

from aumos_evidence_ledger.parity.enforcer import ParityEnforcer, ParityReport
from aumos_evidence_ledger.parity.silent_mutation import MutationKind, SilentMutation, detect_silent_mutations

__all__ = [
    "MutationKind",
    "ParityEnforcer",
    "ParityReport",
    "SilentMutation",
    "detect_silent_mutations",
]
