"""Mapping Decision: the immutable outcome of one Mapping Gate evaluation."""

import uuid
from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field

from aumos_evidence_ledger.core.enums import EntityType, EvidenceState, MappingStatus, Severity


class _Frozen(BaseModel):
    model_config = ConfigDict(frozen=True)


class MissingField(_Frozen):
    """A required attribute the entity does not populate.

    Attributes:
        field: Attribute name.
        scope: GLOBAL, a framework code, or COMPLETENESS.
        severity: BLOCKING for global fields, HIGH for framework gaps,
            LOW for attributes only counted by completeness.
    """

    field: str
    scope: str
    severity: Severity


class BlockingReason(_Frozen):
    """Why a decision is BLOCKED."""

    code: str
    category: str
    message: str


class DuplicateCandidate(_Frozen):
    """An existing entity that resembles the evaluated one."""

    entity_type: EntityType
    entity_id: str
    similarity: float
    near_certain: bool = False


class FrameworkReadiness(_Frozen):
    """Readiness of the entity for one regulatory framework."""

    ready: bool
    completeness_pct: float
    missing_fields: list[str] = Field(default_factory=list)


class LineageEntry(_Frozen):
    """One evidence record the decision relied on."""

    evidence_id: uuid.UUID
    state: EvidenceState
    payload_hash: str | None = None
    sealed: bool


class MappingDecision(_Frozen):
    """Outcome of one evaluation. A re-evaluation creates a new decision."""

    mapping_decision_id: uuid.UUID
    tenant_id: uuid.UUID | None = None
    evidence_id: uuid.UUID | None = None
    entity_type: EntityType
    entity_id: str
    status: MappingStatus
    completeness_score: float
    missing_fields: list[MissingField] = Field(default_factory=list)
    blocking_reasons: list[BlockingReason] = Field(default_factory=list)
    duplicate_candidates: list[DuplicateCandidate] = Field(default_factory=list)
    framework_readiness: dict[str, FrameworkReadiness] = Field(default_factory=dict)
    required_next_actions: list[str] = Field(default_factory=list)
    evidence_lineage: list[LineageEntry] = Field(default_factory=list)
    primary_reason: str | None = None
    rule_version: str
    inputs_hash: str
    evaluated_at: datetime
