"""Pydantic request and response schemas for the evidence ledger API.

Channel ingestion bodies are accepted as raw JSON objects and validated by
the channel adapters, so the deterministic error codes of the validation
order apply. All other inputs and every output use Pydantic models.

Resources:
- Evidence: receipts, records, lifecycle operations
- AuditEvent: immutable audit trail and chain verification
- MappingDecision: Mapping Gate evaluation
- Parity: cross-channel verification report
- WorkItem: escalations
"""

import uuid
from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from aumos_evidence_ledger.core.audit import AuditEvent, ChainVerification
from aumos_evidence_ledger.core.enums import EntityType
from aumos_evidence_ledger.core.evidence import EvidenceRecord, Receipt
from aumos_evidence_ledger.core.orchestrator import IngestionOutcome
from aumos_evidence_ledger.escalation.router import WorkItem
from aumos_evidence_ledger.parity.enforcer import ParityReport

# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------


class FieldErrorResponse(BaseModel):
    field: str
    message: str


class ErrorResponse(BaseModel):
    """Standard error envelope."""

    error_code: str = Field(description="Deterministic machine-readable code")
    message: str = Field(description="Human-readable explanation")
    field_errors: list[FieldErrorResponse] = Field(default_factory=list)
    request_id: str = Field(description="Correlation id; matches the REQUEST_REJECTED audit event")


# ---------------------------------------------------------------------------
# Evidence schemas
# ---------------------------------------------------------------------------


class ReceiptResponse(BaseModel):
    """Receipt returned for every successful ingestion call."""

    evidence_id: uuid.UUID
    state: str
    payload_hash: str | None = Field(description="SHA-256 of the canonical payload")
    metadata_hash: str | None = Field(description="SHA-256 of the canonical declared metadata")
    created_at: datetime
    retention_end: datetime | None
    replayed: bool = Field(default=False, description="True when an idempotent replay returned a prior record")
    quarantine_reason: str | None = None
    mapping_decision_id: uuid.UUID | None = Field(
        default=None,
        description="Decision recorded when sealing registered an entity",
    )
    mapping_status: str | None = None
    work_item_id: uuid.UUID | None = Field(default=None, description="Escalation raised by this call")

    @classmethod
    def from_outcome(cls, outcome: IngestionOutcome) -> "ReceiptResponse":
        receipt = Receipt.for_record(outcome.record, replayed=outcome.replayed)
        return cls(
            evidence_id=receipt.evidence_id,
            state=receipt.state.value,
            payload_hash=receipt.payload_hash,
            metadata_hash=receipt.metadata_hash,
            created_at=receipt.created_at,
            retention_end=receipt.retention_end,
            replayed=receipt.replayed,
            quarantine_reason=outcome.record.quarantine_reason,
            mapping_decision_id=outcome.decision.mapping_decision_id if outcome.decision else None,
            mapping_status=outcome.decision.status.value if outcome.decision else None,
            work_item_id=outcome.work_item.work_item_id if outcome.work_item else None,
        )


class StateTransitionResponse(BaseModel):
    from_state: str | None
    to_state: str
    actor_id: uuid.UUID
    occurred_at: datetime
    reason: str | None = None
    request_id: str | None = None


class EvidenceResponse(BaseModel):
    """Full evidence record. Attachment content is never returned, only descriptors."""

    evidence_id: uuid.UUID
    tenant_id: uuid.UUID
    capture_channel: str
    upstream_system: str
    state: str
    trust_level: str
    metadata: dict[str, Any]
    payload_mode: str
    payload_size_bytes: int
    attachments: list[dict[str, Any]] = Field(default_factory=list, description="Attachment descriptors")
    structured_payload: Any = None
    digest_reference: str | None = None
    provenance: dict[str, Any]
    idempotency_key: str | None
    payload_hash: str | None
    metadata_hash: str | None
    retention_end: datetime | None
    retention_overridden: bool
    supersedes: uuid.UUID | None
    superseded_by: uuid.UUID | None
    quarantine_reason: str | None
    rejection_code: str | None
    created_by: uuid.UUID
    created_at: datetime
    updated_at: datetime | None
    state_history: list[StateTransitionResponse]

    @classmethod
    def from_record(cls, record: EvidenceRecord) -> "EvidenceResponse":
        return cls(
            evidence_id=record.evidence_id,
            tenant_id=record.tenant_id,
            capture_channel=record.capture_channel.value,
            upstream_system=record.upstream_system,
            state=record.state.value,
            trust_level=record.trust_level.value,
            metadata=record.metadata.to_canonical(),
            payload_mode=record.payload.mode.value,
            payload_size_bytes=record.payload.size_bytes,
            attachments=[a.descriptor() for a in record.payload.attachments],
            structured_payload=record.payload.structured,
            digest_reference=record.payload.digest_reference,
            provenance=record.provenance,
            idempotency_key=record.idempotency_key,
            payload_hash=record.payload_hash,
            metadata_hash=record.metadata_hash,
            retention_end=record.retention_end,
            retention_overridden=record.retention_overridden,
            supersedes=record.supersedes,
            superseded_by=record.superseded_by,
            quarantine_reason=record.quarantine_reason,
            rejection_code=record.rejection_code,
            created_by=record.created_by,
            created_at=record.created_at,
            updated_at=record.updated_at,
            state_history=[StateTransitionResponse(**t.to_dict()) for t in record.state_history],
        )


class RejectRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    error_code: str = Field(min_length=1, max_length=64, description="Code recorded as rejection_code")
    reason: str = Field(min_length=1, description="Why the record is rejected")


class ResolveQuarantineRequest(BaseModel):
    """Declared-metadata corrections that complete a quarantined record."""

    model_config = ConfigDict(extra="forbid")

    patch: dict[str, Any] = Field(default_factory=dict)


class RetentionOverrideRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    retention_end: datetime = Field(description="Explicit retention end, timezone-aware")
    reason: str = Field(min_length=1)


class SupersedeRequest(BaseModel):
    """Replacement evidence, submitted in the native shape of a channel."""

    model_config = ConfigDict(extra="forbid")

    channel: str = Field(description="Channel whose adapter shapes the replacement")
    reason: str = Field(min_length=1)
    evidence: dict[str, Any] = Field(description="Channel-native body of the replacement")


class SupersedeResponse(BaseModel):
    superseded: EvidenceResponse
    replacement: ReceiptResponse


# ---------------------------------------------------------------------------
# Audit schemas
# ---------------------------------------------------------------------------


class AuditEventResponse(BaseModel):
    audit_event_id: uuid.UUID
    tenant_id: uuid.UUID
    sequence: int
    action: str
    actor_id: uuid.UUID
    actor_role: str
    request_id: str
    occurred_at: datetime
    result_code: str
    evidence_id: uuid.UUID | None
    mapping_decision_id: uuid.UUID | None
    work_item_id: uuid.UUID | None
    context: dict[str, Any]
    previous_hash: str | None
    entry_hash: str | None

    @classmethod
    def from_event(cls, event: AuditEvent) -> "AuditEventResponse":
        return cls(
            audit_event_id=event.audit_event_id,
            tenant_id=event.tenant_id,
            sequence=event.sequence,
            action=event.action.value,
            actor_id=event.actor_id,
            actor_role=event.actor_role,
            request_id=event.request_id,
            occurred_at=event.occurred_at,
            result_code=event.result_code,
            evidence_id=event.evidence_id,
            mapping_decision_id=event.mapping_decision_id,
            work_item_id=event.work_item_id,
            context=event.context,
            previous_hash=event.previous_hash,
            entry_hash=event.entry_hash,
        )


class ChainVerificationResponse(BaseModel):
    valid: bool
    events_checked: int
    broken_at: uuid.UUID | None = None
    reason: str | None = None

    @classmethod
    def from_result(cls, result: ChainVerification) -> "ChainVerificationResponse":
        return cls(
            valid=result.valid,
            events_checked=result.events_checked,
            broken_at=result.broken_at,
            reason=result.reason,
        )


# ---------------------------------------------------------------------------
# Mapping Gate schemas
# ---------------------------------------------------------------------------


class MappingEvaluateRequest(BaseModel):
    """Evaluate a registered entity (entity_id) or an inline snapshot."""

    model_config = ConfigDict(extra="forbid")

    entity_type: EntityType
    entity_id: str | None = Field(default=None, min_length=1)
    entity_snapshot: dict[str, Any] | None = None
    frameworks: list[str] = Field(default_factory=list)
    evidence_ids: list[uuid.UUID] = Field(default_factory=list)
    rule_version: str | None = Field(default=None, description="Pinned rule set version")


# ---------------------------------------------------------------------------
# Parity and escalation schemas
# ---------------------------------------------------------------------------


class ChannelOutcomeResponse(BaseModel):
    channel: str
    accepted: bool
    error_code: str | None = None
    entry: dict[str, Any] = Field(default_factory=dict)


class ParityReportResponse(BaseModel):
    parity: bool
    violation: str | None = None
    channels: list[ChannelOutcomeResponse]

    @classmethod
    def from_report(cls, report: ParityReport) -> "ParityReportResponse":
        return cls.model_validate(report.to_dict())


class WorkItemResponse(BaseModel):
    work_item_id: uuid.UUID
    tenant_id: uuid.UUID
    source_type: str
    source_id: uuid.UUID
    reason_code: str
    resolver_role: str
    priority: str
    sla_hours: int
    due_at: datetime
    created_at: datetime
    status: str
    resolved_at: datetime | None = None

    @classmethod
    def from_item(cls, item: WorkItem) -> "WorkItemResponse":
        return cls.model_validate(item.to_dict())
