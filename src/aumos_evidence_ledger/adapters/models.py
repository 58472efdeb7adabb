"""SQLAlchemy ORM models for the evidence ledger.

All tables use the `ledger_` prefix. Structured values are stored as JSON
(JSONB on PostgreSQL).

Models:
- EvidenceRow       : evidence records and their state history
- MappingDecisionRow: append-only Mapping Gate decisions
- EntityRow         : latest entity snapshot per (tenant, type, id)
- WorkItemRow       : escalation work items, one per source
- AuditEventRow     : IMMUTABLE audit trail (lives on the SEPARATE audit DB)

IMPORTANT: AuditEventRow is declared on its own metadata (AuditBase) so it is
only ever created on, and written to, the Audit Wall engine.
"""

import uuid
from datetime import datetime
from typing import Any

from sqlalchemy import JSON, Boolean, DateTime, Index, Integer, String, UniqueConstraint, Uuid, text
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

JsonType = JSON().with_variant(JSONB(), "postgresql")

LIVE_IDEMPOTENCY_INDEX = "uq_ledger_evidence_live_idempotency"
_CLAIMS_IDEMPOTENCY_KEY = text(
    "idempotency_key IS NOT NULL AND supersedes IS NULL AND state NOT IN ('REJECTED', 'SUPERSEDED')"
)


class Base(DeclarativeBase):
    """Declarative base for the primary database."""


class AuditBase(DeclarativeBase):
    """Declarative base for the Audit Wall database."""


class EvidenceRow(Base):
    """Evidence record.

    Sealed rows are never updated except for the single SEALED -> SUPERSEDED
    transition; state changes are conditional updates on the stored state.
    At most one live record that opens a supersession chain may hold a given
    (tenant_id, idempotency_key).
    """

    __tablename__ = "ledger_evidence_records"
    __table_args__ = (
        Index(
            LIVE_IDEMPOTENCY_INDEX,
            "tenant_id",
            "idempotency_key",
            unique=True,
            postgresql_where=_CLAIMS_IDEMPOTENCY_KEY,
            sqlite_where=_CLAIMS_IDEMPOTENCY_KEY,
        ),
    )

    evidence_id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True)
    tenant_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, index=True)
    capture_channel: Mapped[str] = mapped_column(String(32), nullable=False, index=True)
    upstream_system: Mapped[str] = mapped_column(String(64), nullable=False)
    dataset_type: Mapped[str] = mapped_column(String(32), nullable=False, index=True)
    state: Mapped[str] = mapped_column(String(16), nullable=False, index=True)
    trust_level: Mapped[str] = mapped_column(String(8), nullable=False)
    declared_metadata: Mapped[dict[str, Any]] = mapped_column(JsonType, nullable=False)
    payload: Mapped[dict[str, Any]] = mapped_column(JsonType, nullable=False)
    provenance: Mapped[dict[str, Any]] = mapped_column(JsonType, nullable=False, default=dict)
    idempotency_key: Mapped[str | None] = mapped_column(String(512), nullable=True, index=True)
    payload_hash: Mapped[str | None] = mapped_column(String(64), nullable=True)
    metadata_hash: Mapped[str | None] = mapped_column(String(64), nullable=True)
    retention_end: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    retention_overridden: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    state_history: Mapped[list[dict[str, Any]]] = mapped_column(JsonType, nullable=False, default=list)
    supersedes: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)
    superseded_by: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)
    quarantine_reason: Mapped[str | None] = mapped_column(String(64), nullable=True)
    rejection_code: Mapped[str | None] = mapped_column(String(64), nullable=True)
    created_by: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)
    updated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class MappingDecisionRow(Base):
    """Mapping Gate decision. Insert-only."""

    __tablename__ = "ledger_mapping_decisions"

    mapping_decision_id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True)
    tenant_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, index=True)
    evidence_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True, index=True)
    entity_type: Mapped[str] = mapped_column(String(16), nullable=False)
    entity_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    status: Mapped[str] = mapped_column(String(16), nullable=False)
    rule_version: Mapped[str] = mapped_column(String(32), nullable=False)
    inputs_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    lineage_evidence_ids: Mapped[list[str]] = mapped_column(JsonType, nullable=False, default=list)
    decision: Mapped[dict[str, Any]] = mapped_column(JsonType, nullable=False)
    evaluated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)


class EntityRow(Base):
    """Latest registered snapshot of an entity."""

    __tablename__ = "ledger_entities"

    tenant_id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True)
    entity_type: Mapped[str] = mapped_column(String(16), primary_key=True)
    entity_id: Mapped[str] = mapped_column(String(255), primary_key=True)
    snapshot: Mapped[dict[str, Any]] = mapped_column(JsonType, nullable=False)
    source_evidence_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)
    registered_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class WorkItemRow(Base):
    """Escalation work item."""

    __tablename__ = "ledger_work_items"
    __table_args__ = (UniqueConstraint("tenant_id", "source_type", "source_id", name="uq_ledger_work_items_source"),)

    work_item_id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True)
    tenant_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, index=True)
    source_type: Mapped[str] = mapped_column(String(32), nullable=False)
    source_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    reason_code: Mapped[str] = mapped_column(String(64), nullable=False)
    resolver_role: Mapped[str] = mapped_column(String(32), nullable=False)
    priority: Mapped[str] = mapped_column(String(16), nullable=False)
    sla_hours: Mapped[int] = mapped_column(Integer, nullable=False)
    due_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="OPEN")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    resolved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class AuditEventRow(AuditBase):
    """IMMUTABLE audit trail row.

    The Audit Wall role should hold only INSERT and SELECT grants on this
    table. The (tenant_id, sequence) constraint makes concurrent writers
    from several processes fail instead of forking the hash chain.
    """

    __tablename__ = "ledger_audit_events"
    __table_args__ = (UniqueConstraint("tenant_id", "sequence", name="uq_ledger_audit_events_sequence"),)

    audit_event_id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True)
    tenant_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, index=True)
    sequence: Mapped[int] = mapped_column(Integer, nullable=False)
    action: Mapped[str] = mapped_column(String(32), nullable=False, index=True)
    actor_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    actor_role: Mapped[str] = mapped_column(String(64), nullable=False)
    request_id: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    occurred_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    result_code: Mapped[str] = mapped_column(String(64), nullable=False)
    evidence_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True, index=True)
    mapping_decision_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True, index=True)
    work_item_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)
    context: Mapped[dict[str, Any]] = mapped_column(JsonType, nullable=False, default=dict)
    previous_hash: Mapped[str | None] = mapped_column(String(64), nullable=True)
    entry_hash: Mapped[str | None] = mapped_column(String(64), nullable=True)
