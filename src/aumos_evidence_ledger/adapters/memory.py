"""In-memory adapters implementing the core Protocols.

Used when no database URL is configured, and by the test suite. Every read
and write passes through a deep copy, so callers never share mutable state
with the store, matching the isolation a database round-trip gives.
"""

import copy
import dataclasses
import uuid
from datetime import datetime
from typing import Any

from aumos_evidence_ledger.adapters.kafka import LedgerEventPublisher
from aumos_evidence_ledger.core.audit import AuditEvent
from aumos_evidence_ledger.core.enums import (
    AuditAction,
    CaptureChannel,
    DatasetType,
    EntityType,
    EvidenceState,
    WorkItemSource,
)
from aumos_evidence_ledger.core.evidence import EvidenceRecord
from aumos_evidence_ledger.errors import DuplicateIdempotencyKeyError, StorageError
from aumos_evidence_ledger.escalation.router import WORK_ITEM_OPEN, WORK_ITEM_RESOLVED, WorkItem
from aumos_evidence_ledger.mapping_gate.decision import MappingDecision
from aumos_evidence_ledger.mapping_gate.entities import RegisteredEntity


def _page(items: list[Any], page: int, page_size: int) -> list[Any]:
    start = (max(page, 1) - 1) * page_size
    return items[start : start + page_size]


class InMemoryEvidenceRepository:
    """Evidence records keyed by (tenant_id, evidence_id)."""

    def __init__(self) -> None:
        self._records: dict[tuple[uuid.UUID, uuid.UUID], EvidenceRecord] = {}

    async def add(self, record: EvidenceRecord) -> None:
        key = (record.tenant_id, record.evidence_id)
        if key in self._records:
            raise StorageError(message=f"Evidence {record.evidence_id} already exists")
        if record.claims_idempotency_key and any(
            r.tenant_id == record.tenant_id and r.idempotency_key == record.idempotency_key and r.claims_idempotency_key
            for r in self._records.values()
        ):
            raise DuplicateIdempotencyKeyError(
                message=f"Idempotency key {record.idempotency_key!r} is held by another live record",
                details={"idempotency_key": record.idempotency_key},
            )
        self._records[key] = copy.deepcopy(record)

    async def get(self, tenant_id: uuid.UUID, evidence_id: uuid.UUID) -> EvidenceRecord | None:
        record = self._records.get((tenant_id, evidence_id))
        return copy.deepcopy(record) if record is not None else None

    async def find_by_idempotency_key(self, tenant_id: uuid.UUID, idempotency_key: str) -> list[EvidenceRecord]:
        matches = [
            r for (t, _), r in self._records.items() if t == tenant_id and r.idempotency_key == idempotency_key
        ]
        return [copy.deepcopy(r) for r in sorted(matches, key=lambda r: r.created_at)]

    async def compare_and_set(self, record: EvidenceRecord, expected_state: EvidenceState) -> bool:
        key = (record.tenant_id, record.evidence_id)
        stored = self._records.get(key)
        if stored is None or stored.state != expected_state:
            return False
        self._records[key] = copy.deepcopy(record)
        return True

    async def list(
        self,
        tenant_id: uuid.UUID,
        state: EvidenceState | None = None,
        dataset_type: DatasetType | None = None,
        capture_channel: CaptureChannel | None = None,
        page: int = 1,
        page_size: int = 50,
    ) -> list[EvidenceRecord]:
        records = [
            r
            for (t, _), r in self._records.items()
            if t == tenant_id
            and (state is None or r.state == state)
            and (dataset_type is None or r.metadata.dataset_type == dataset_type)
            and (capture_channel is None or r.capture_channel == capture_channel)
        ]
        records.sort(key=lambda r: r.created_at, reverse=True)
        return [copy.deepcopy(r) for r in _page(records, page, page_size)]


class InMemoryAuditRepository:
    """Append-only audit events per tenant. No update or delete exists."""

    def __init__(self) -> None:
        self._events: dict[uuid.UUID, list[AuditEvent]] = {}

    async def append(self, event: AuditEvent) -> None:
        self._events.setdefault(event.tenant_id, []).append(event)

    async def latest(self, tenant_id: uuid.UUID) -> AuditEvent | None:
        events = self._events.get(tenant_id)
        return events[-1] if events else None

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
        events = [
            e
            for e in self._events.get(tenant_id, [])
            if (evidence_id is None or e.evidence_id == evidence_id)
            and (mapping_decision_id is None or e.mapping_decision_id == mapping_decision_id)
            and (action is None or e.action == action)
            and (request_id is None or e.request_id == request_id)
        ]
        return _page(events, page, page_size)

    async def chain(self, tenant_id: uuid.UUID) -> list[AuditEvent]:
        return list(self._events.get(tenant_id, []))


class InMemoryMappingDecisionRepository:
    """Append-only Mapping Decisions."""

    def __init__(self) -> None:
        self._decisions: dict[tuple[uuid.UUID, uuid.UUID], MappingDecision] = {}

    async def add(self, tenant_id: uuid.UUID, decision: MappingDecision) -> bool:
        key = (tenant_id, decision.mapping_decision_id)
        if key in self._decisions:
            return False
        self._decisions[key] = decision
        return True

    async def get(self, tenant_id: uuid.UUID, decision_id: uuid.UUID) -> MappingDecision | None:
        return self._decisions.get((tenant_id, decision_id))

    async def list(
        self,
        tenant_id: uuid.UUID,
        entity_id: str | None = None,
        evidence_id: uuid.UUID | None = None,
    ) -> list[MappingDecision]:
        decisions = [
            d
            for (t, _), d in self._decisions.items()
            if t == tenant_id
            and (entity_id is None or d.entity_id == entity_id)
            and (
                evidence_id is None
                or d.evidence_id == evidence_id
                or any(entry.evidence_id == evidence_id for entry in d.evidence_lineage)
            )
        ]
        return sorted(decisions, key=lambda d: d.evaluated_at)


class InMemoryEntityRepository:
    """Latest registered snapshot per (tenant, entity_type, entity_id)."""

    def __init__(self) -> None:
        self._entities: dict[tuple[uuid.UUID, EntityType, str], RegisteredEntity] = {}

    async def upsert(self, tenant_id: uuid.UUID, entity: RegisteredEntity) -> None:
        self._entities[(tenant_id, entity.entity_type, entity.entity_id)] = entity

    async def get(self, tenant_id: uuid.UUID, entity_type: EntityType, entity_id: str) -> RegisteredEntity | None:
        return self._entities.get((tenant_id, entity_type, entity_id))

    async def list_by_type(self, tenant_id: uuid.UUID, entity_type: EntityType) -> list[RegisteredEntity]:
        return sorted(
            (e for (t, et, _), e in self._entities.items() if t == tenant_id and et == entity_type),
            key=lambda e: e.entity_id,
        )


class InMemoryWorkItemRepository:
    """Escalation work items, at most one per (tenant, source_type, source_id)."""

    def __init__(self) -> None:
        self._items: dict[tuple[uuid.UUID, WorkItemSource, uuid.UUID], WorkItem] = {}

    async def add_if_absent(self, item: WorkItem) -> tuple[WorkItem, bool]:
        key = (item.tenant_id, item.source_type, item.source_id)
        existing = self._items.get(key)
        if existing is not None:
            return existing, False
        self._items[key] = item
        return item, True

    async def list(self, tenant_id: uuid.UUID, status: str | None = None) -> list[WorkItem]:
        items = [
            i for (t, _, _), i in self._items.items() if t == tenant_id and (status is None or i.status == status)
        ]
        return sorted(items, key=lambda i: (i.due_at, str(i.work_item_id)))

    async def get_by_source(
        self,
        tenant_id: uuid.UUID,
        source_type: WorkItemSource,
        source_id: uuid.UUID,
    ) -> WorkItem | None:
        return self._items.get((tenant_id, source_type, source_id))

    async def resolve(
        self,
        tenant_id: uuid.UUID,
        source_type: WorkItemSource,
        source_id: uuid.UUID,
        resolved_at: datetime,
    ) -> WorkItem | None:
        key = (tenant_id, source_type, source_id)
        item = self._items.get(key)
        if item is None or item.status != WORK_ITEM_OPEN:
            return None
        self._items[key] = dataclasses.replace(item, status=WORK_ITEM_RESOLVED, resolved_at=resolved_at)
        return self._items[key]


class InMemoryEventPublisher(LedgerEventPublisher):
    """Collects published envelopes instead of sending them to Kafka."""

    def __init__(self) -> None:
        super().__init__()
        self.events: list[tuple[str, str, dict[str, Any]]] = []

    async def start(self) -> None:
        return None

    async def stop(self) -> None:
        return None

    async def _publish(self, topic: str, key: str, event: dict[str, Any]) -> None:
        self.events.append((topic, key, event))

    def of_type(self, event_type: str) -> list[dict[str, Any]]:
        return [event for _, _, event in self.events if event["event_type"] == event_type]
