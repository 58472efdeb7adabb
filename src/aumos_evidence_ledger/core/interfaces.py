"""Abstract interfaces (Protocol classes) for the evidence ledger.

Defines the contracts between the service layer and the adapter layer using
Python's typing.Protocol. Services depend on these protocols, never on
concrete adapter implementations; both the in-memory adapters and the
SQLAlchemy adapters implement them.

Protocols defined:
- IEvidenceRepository
- IAuditRepository
- IMappingDecisionRepository
- IEntityRepository
- IWorkItemRepository
- IEventPublisher
- IFileStorage
- IErpConnector
- IChannelRules
"""

from __future__ import annotations

import uuid
from datetime import date, datetime
from typing import TYPE_CHECKING, Any, Protocol

from aumos_evidence_ledger.core.enums import (
    AuditAction,
    CaptureChannel,
    DatasetType,
    EntityType,
    EvidenceState,
    WorkItemSource,
)

if TYPE_CHECKING:
    from aumos_evidence_ledger.core.audit import AuditEvent
    from aumos_evidence_ledger.core.evidence import DeclaredMetadata, EvidenceRecord
    from aumos_evidence_ledger.core.validation import Violations
    from aumos_evidence_ledger.escalation.router import WorkItem
    from aumos_evidence_ledger.mapping_gate.decision import MappingDecision
    from aumos_evidence_ledger.mapping_gate.entities import RegisteredEntity


class IEvidenceRepository(Protocol):
    """Repository contract for EvidenceRecord persistence."""

    async def add(self, record: EvidenceRecord) -> None:
        """Persist a new record.

        Raises:
            StorageError: The evidence_id already exists.
            DuplicateIdempotencyKeyError: The record claims an idempotency key that
                another live record of the tenant already claims.
        """
        ...

    async def get(self, tenant_id: uuid.UUID, evidence_id: uuid.UUID) -> EvidenceRecord | None:
        """Return the record for the tenant, or None."""
        ...

    async def find_by_idempotency_key(self, tenant_id: uuid.UUID, idempotency_key: str) -> list[EvidenceRecord]:
        """Return all records of the tenant carrying the idempotency key, oldest first."""
        ...

    async def compare_and_set(self, record: EvidenceRecord, expected_state: EvidenceState) -> bool:
        """Store record only if the stored copy is still in expected_state.

        Returns:
            True when the write happened, False when another writer won.
        """
        ...

    async def list(
        self,
        tenant_id: uuid.UUID,
        state: EvidenceState | None = None,
        dataset_type: DatasetType | None = None,
        capture_channel: CaptureChannel | None = None,
        page: int = 1,
        page_size: int = 50,
    ) -> list[EvidenceRecord]:
        """List records for a tenant, newest first."""
        ...


class IAuditRepository(Protocol):
    """Append-only repository contract for AuditEvent rows."""

    async def append(self, event: AuditEvent) -> None:
        """Persist one audit event. No update or delete counterpart exists."""
        ...

    async def latest(self, tenant_id: uuid.UUID) -> AuditEvent | None:
        """Return the tenant's event with the highest sequence."""
        ...

    async def query(
        self,
        tenant_id: uuid.UUID,
        evidence_id: uuid.UUID | None = None,
        mapping_decision_id: uuid.UUID | None = None,
        action: AuditAction | None = None,
        request_id: str | None = None,
        page: int = 1,
        page_size: int = 50,
    ) -> list[AuditEvent]:
        """Query events for a tenant ordered by sequence ascending."""
        ...

    async def chain(self, tenant_id: uuid.UUID) -> list[AuditEvent]:
        """Return every event of the tenant ordered by sequence."""
        ...


class IMappingDecisionRepository(Protocol):
    """Append-only repository contract for Mapping Decisions."""

    async def add(self, tenant_id: uuid.UUID, decision: MappingDecision) -> bool:
        """Persist a decision. Returns False if an identical decision id already exists."""
        ...

    async def get(self, tenant_id: uuid.UUID, decision_id: uuid.UUID) -> MappingDecision | None:
        """Return a decision, or None."""
        ...

    async def list(
        self,
        tenant_id: uuid.UUID,
        entity_id: str | None = None,
        evidence_id: uuid.UUID | None = None,
    ) -> list[MappingDecision]:
        """List decisions for a tenant ordered by evaluation time."""
        ...


class IEntityRepository(Protocol):
    """Repository contract for entity snapshots derived from sealed evidence."""

    async def upsert(self, tenant_id: uuid.UUID, entity: RegisteredEntity) -> None:
        """Register or replace the latest snapshot of an entity."""
        ...

    async def get(self, tenant_id: uuid.UUID, entity_type: EntityType, entity_id: str) -> RegisteredEntity | None:
        """Return the latest registered snapshot, or None."""
        ...

    async def list_by_type(self, tenant_id: uuid.UUID, entity_type: EntityType) -> list[RegisteredEntity]:
        """Return every registered entity of a type for the tenant."""
        ...


class IWorkItemRepository(Protocol):
    """Repository contract for escalation work items."""

    async def add_if_absent(self, item: WorkItem) -> tuple[WorkItem, bool]:
        """Insert item unless one already exists for its (tenant, source_type, source_id).

        Returns:
            The stored item and True when it was created by this call.
        """
        ...

    async def list(self, tenant_id: uuid.UUID, status: str | None = None) -> list[WorkItem]:
        """List work items for a tenant ordered by due date."""
        ...

    async def get_by_source(
        self,
        tenant_id: uuid.UUID,
        source_type: WorkItemSource,
        source_id: uuid.UUID,
    ) -> WorkItem | None:
        """Return the work item raised for a source, or None."""
        ...

    async def resolve(
        self,
        tenant_id: uuid.UUID,
        source_type: WorkItemSource,
        source_id: uuid.UUID,
        resolved_at: datetime,
    ) -> WorkItem | None:
        """Mark the OPEN work item for a source RESOLVED.

        Returns:
            The resolved item, or None when no OPEN item exists for the source.
        """
        ...


class IEventPublisher(Protocol):
    """Publisher contract for ledger domain events."""

    async def publish_evidence_transition(
        self,
        tenant_id: uuid.UUID,
        evidence_id: uuid.UUID,
        from_state: str | None,
        to_state: str,
        payload_hash: str | None,
        correlation_id: str | None = None,
    ) -> None:
        """Publish an evidence state change."""
        ...

    async def publish_mapping_decision(
        self,
        tenant_id: uuid.UUID,
        decision_id: uuid.UUID,
        entity_id: str,
        status: str,
        rule_version: str,
        correlation_id: str | None = None,
    ) -> None:
        """Publish a Mapping Gate decision."""
        ...

    async def publish_escalation(
        self,
        tenant_id: uuid.UUID,
        work_item_id: uuid.UUID,
        reason_code: str,
        resolver_role: str,
        priority: str,
        correlation_id: str | None = None,
    ) -> None:
        """Publish a created escalation work item."""
        ...


class IFileStorage(Protocol):
    """File storage collaborator that resolves attachment storage URIs."""

    async def fetch(self, storage_uri: str) -> bytes:
        """Return the stored bytes. Raises UpstreamTimeoutError / UpstreamError."""
        ...


class IErpConnector(Protocol):
    """Live ERP connector used by the ERP_API channel."""

    @property
    def source_system(self) -> str:
        """Upstream system name reported for fetched evidence."""
        ...

    async def fetch_snapshot(
        self,
        connector_reference: str,
        dataset_type: DatasetType,
        snapshot_date: date,
    ) -> Any:
        """Fetch the dataset snapshot. Raises UpstreamTimeoutError / UpstreamError."""
        ...


class IChannelRules(Protocol):
    """Channel-specific rules that depend only on declared metadata."""

    def check_metadata(self, channel: CaptureChannel, metadata: DeclaredMetadata, violations: Violations) -> None:
        """Add a violation for every channel rule the metadata breaks."""
        ...
