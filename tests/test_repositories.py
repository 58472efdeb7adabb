"""Tests for the adapter/repository layer.

The in-memory repositories are exercised directly. The SQLAlchemy
repositories are covered through their pure row converters and a session
stand-in that fails on commit; tests against a real PostgreSQL database run
separately.
"""

import dataclasses
import uuid
from datetime import timedelta
from unittest.mock import AsyncMock

import pytest
from sqlalchemy.exc import IntegrityError

from aumos_evidence_ledger.adapters.audit_wall import SqlAuditRepository, _to_event
from aumos_evidence_ledger.adapters.memory import (
    InMemoryEntityRepository,
    InMemoryEvidenceRepository,
    InMemoryWorkItemRepository,
)
from aumos_evidence_ledger.adapters.models import (
    LIVE_IDEMPOTENCY_INDEX,
    AuditEventRow,
    EntityRow,
    EvidenceRow,
    WorkItemRow,
)
from aumos_evidence_ledger.adapters.repositories import (
    SqlEntityRepository,
    SqlEvidenceRepository,
    SqlWorkItemRepository,
    record_to_values,
    row_to_record,
)
from aumos_evidence_ledger.auth import TenantContext
from aumos_evidence_ledger.container import LedgerContainer
from aumos_evidence_ledger.core.enums import (
    AuditAction,
    EntityType,
    EvidenceState,
    Priority,
    ResolverRole,
    WorkItemSource,
)
from aumos_evidence_ledger.core.evidence import EvidenceRecord
from aumos_evidence_ledger.errors import DuplicateIdempotencyKeyError, StorageError
from aumos_evidence_ledger.escalation.router import WorkItem
from aumos_evidence_ledger.mapping_gate.entities import RegisteredEntity, parse_snapshot
from tests.conftest import FROZEN_NOW, make_partner_payload, make_request

REQUEST_ID = "req-repo-1"


async def sealed_record(container: LedgerContainer, tenant: TenantContext) -> EvidenceRecord:
    record, _ = await container.ledger.ingest(make_request(idempotency_key="k-repo"), tenant, REQUEST_ID)
    return await container.ledger.seal(record.evidence_id, tenant, REQUEST_ID)


def make_work_item(tenant_id: uuid.UUID, source_id: uuid.UUID | None = None, hours: int = 4) -> WorkItem:
    return WorkItem(
        work_item_id=uuid.uuid4(),
        tenant_id=tenant_id,
        source_type=WorkItemSource.MAPPING_DECISION,
        source_id=source_id or uuid.uuid4(),
        reason_code="IR_STATUS",
        resolver_role=ResolverRole.COMPLIANCE_OFFICER,
        priority=Priority.CRITICAL,
        sla_hours=hours,
        due_at=FROZEN_NOW + timedelta(hours=hours),
        created_at=FROZEN_NOW,
    )


def make_entity(entity_id: str = "P-1001") -> RegisteredEntity:
    return RegisteredEntity(
        entity_type=EntityType.PARTNER,
        entity_id=entity_id,
        snapshot=parse_snapshot(make_partner_payload(entity_id=entity_id)),
        registered_at=FROZEN_NOW,
    )


# ---------------------------------------------------------------------------
# InMemoryEvidenceRepository
# ---------------------------------------------------------------------------


class TestInMemoryEvidenceRepository:
    @pytest.mark.asyncio()
    async def test_reads_are_isolated_copies(self, container: LedgerContainer, tenant: TenantContext) -> None:
        record = await sealed_record(container, tenant)
        repo = InMemoryEvidenceRepository()
        await repo.add(record)

        fetched = await repo.get(tenant.tenant_id, record.evidence_id)
        assert fetched is not None
        fetched.state = EvidenceState.REJECTED

        again = await repo.get(tenant.tenant_id, record.evidence_id)
        assert again is not None
        assert again.state == EvidenceState.SEALED

    @pytest.mark.asyncio()
    async def test_duplicate_add_fails(self, container: LedgerContainer, tenant: TenantContext) -> None:
        record = await sealed_record(container, tenant)
        repo = InMemoryEvidenceRepository()
        await repo.add(record)

        with pytest.raises(StorageError):
            await repo.add(record)

    @pytest.mark.asyncio()
    async def test_compare_and_set_requires_expected_state(
        self,
        container: LedgerContainer,
        tenant: TenantContext,
    ) -> None:
        record = await sealed_record(container, tenant)
        repo = InMemoryEvidenceRepository()
        await repo.add(record)
        changed = dataclasses.replace(record, superseded_by=uuid.uuid4())

        assert await repo.compare_and_set(changed, EvidenceState.INGESTED) is False
        assert await repo.compare_and_set(changed, EvidenceState.SEALED) is True
        stored = await repo.get(tenant.tenant_id, record.evidence_id)
        assert stored is not None
        assert stored.superseded_by == changed.superseded_by

    @pytest.mark.asyncio()
    async def test_idempotency_lookup_is_tenant_scoped(
        self,
        container: LedgerContainer,
        tenant: TenantContext,
        other_tenant: TenantContext,
    ) -> None:
        record = await sealed_record(container, tenant)
        repo = InMemoryEvidenceRepository()
        await repo.add(record)

        assert [r.evidence_id for r in await repo.find_by_idempotency_key(tenant.tenant_id, "k-repo")] == [
            record.evidence_id
        ]
        assert await repo.find_by_idempotency_key(other_tenant.tenant_id, "k-repo") == []

    @pytest.mark.asyncio()
    async def test_second_live_claim_on_a_key_is_refused(
        self,
        container: LedgerContainer,
        tenant: TenantContext,
    ) -> None:
        record = await sealed_record(container, tenant)
        repo = InMemoryEvidenceRepository()
        await repo.add(record)

        with pytest.raises(DuplicateIdempotencyKeyError) as exc_info:
            await repo.add(dataclasses.replace(record, evidence_id=uuid.uuid4()))

        assert exc_info.value.error_code == "IDEMPOTENCY_CONFLICT"
        assert len(await repo.find_by_idempotency_key(tenant.tenant_id, "k-repo")) == 1

    @pytest.mark.asyncio()
    async def test_successors_and_retired_records_share_a_key(
        self,
        container: LedgerContainer,
        tenant: TenantContext,
    ) -> None:
        record = await sealed_record(container, tenant)
        repo = InMemoryEvidenceRepository()
        await repo.add(record)

        await repo.add(dataclasses.replace(record, evidence_id=uuid.uuid4(), supersedes=record.evidence_id))
        await repo.add(dataclasses.replace(record, evidence_id=uuid.uuid4(), state=EvidenceState.REJECTED))

        assert len(await repo.find_by_idempotency_key(tenant.tenant_id, "k-repo")) == 3


# ---------------------------------------------------------------------------
# InMemoryEntityRepository / InMemoryWorkItemRepository
# ---------------------------------------------------------------------------


class TestInMemoryEntityRepository:
    @pytest.mark.asyncio()
    async def test_upsert_replaces_and_lists_sorted(self, tenant_id: uuid.UUID) -> None:
        repo = InMemoryEntityRepository()
        await repo.upsert(tenant_id, make_entity("P-2"))
        await repo.upsert(tenant_id, make_entity("P-1"))
        await repo.upsert(tenant_id, make_entity("P-1"))

        entities = await repo.list_by_type(tenant_id, EntityType.PARTNER)

        assert [e.entity_id for e in entities] == ["P-1", "P-2"]
        assert await repo.list_by_type(tenant_id, EntityType.SITE) == []
        assert await repo.get(uuid.uuid4(), EntityType.PARTNER, "P-1") is None


class TestInMemoryWorkItemRepository:
    @pytest.mark.asyncio()
    async def test_one_item_per_source(self, tenant_id: uuid.UUID) -> None:
        repo = InMemoryWorkItemRepository()
        source_id = uuid.uuid4()
        first = make_work_item(tenant_id, source_id)

        stored, created = await repo.add_if_absent(first)
        again, created_again = await repo.add_if_absent(make_work_item(tenant_id, source_id))

        assert created is True
        assert created_again is False
        assert again.work_item_id == stored.work_item_id == first.work_item_id

    @pytest.mark.asyncio()
    async def test_list_filters_by_status(self, tenant_id: uuid.UUID) -> None:
        repo = InMemoryWorkItemRepository()
        await repo.add_if_absent(make_work_item(tenant_id))

        assert len(await repo.list(tenant_id, status="OPEN")) == 1
        assert await repo.list(tenant_id, status="CLOSED") == []

    @pytest.mark.asyncio()
    async def test_resolve_closes_only_open_items(self, tenant_id: uuid.UUID) -> None:
        repo = InMemoryWorkItemRepository()
        item = make_work_item(tenant_id)
        await repo.add_if_absent(item)
        resolved_at = FROZEN_NOW + timedelta(hours=1)

        resolved = await repo.resolve(tenant_id, item.source_type, item.source_id, resolved_at)

        assert resolved is not None
        assert resolved.status == "RESOLVED"
        assert resolved.resolved_at == resolved_at
        assert await repo.resolve(tenant_id, item.source_type, item.source_id, resolved_at) is None
        assert await repo.resolve(tenant_id, item.source_type, uuid.uuid4(), resolved_at) is None
        assert await repo.list(tenant_id, status="OPEN") == []


# ---------------------------------------------------------------------------
# SQL row conversion
# ---------------------------------------------------------------------------


class TestEvidenceRowConversion:
    @pytest.mark.asyncio()
    async def test_record_survives_row_conversion(self, container: LedgerContainer, tenant: TenantContext) -> None:
        record = await sealed_record(container, tenant)

        restored = row_to_record(EvidenceRow(**record_to_values(record)))

        assert restored == record

    @pytest.mark.asyncio()
    async def test_row_values_are_json_friendly(self, container: LedgerContainer, tenant: TenantContext) -> None:
        record = await sealed_record(container, tenant)

        values = record_to_values(record)

        assert values["state"] == "SEALED"
        assert values["dataset_type"] == "PARTNER_MASTER"
        assert values["declared_metadata"]["purpose_tags"] == ["cbam", "onboarding"]
        assert [t["to_state"] for t in values["state_history"]] == ["DRAFT", "INGESTED", "SEALED"]


class TestEntityAndWorkItemRows:
    def test_entity_row_conversion(self, tenant_id: uuid.UUID) -> None:
        entity = make_entity()
        row = EntityRow(
            tenant_id=tenant_id,
            entity_type=entity.entity_type.value,
            entity_id=entity.entity_id,
            snapshot=entity.snapshot.model_dump(mode="json"),
            source_evidence_id=None,
            registered_at=entity.registered_at,
        )

        assert SqlEntityRepository._to_entity(row) == entity

    def test_work_item_row_conversion(self, tenant_id: uuid.UUID) -> None:
        item = make_work_item(tenant_id)
        row = WorkItemRow(
            work_item_id=item.work_item_id,
            tenant_id=item.tenant_id,
            source_type=item.source_type.value,
            source_id=item.source_id,
            reason_code=item.reason_code,
            resolver_role=item.resolver_role.value,
            priority=item.priority.value,
            sla_hours=item.sla_hours,
            due_at=item.due_at,
            status=item.status,
            created_at=item.created_at,
        )

        assert SqlWorkItemRepository._to_item(row) == item


# ---------------------------------------------------------------------------
# Audit Wall
# ---------------------------------------------------------------------------


class TestSqlAuditRepository:
    def test_repository_has_no_update_or_delete(self) -> None:
        repo = SqlAuditRepository(AsyncMock())

        assert not hasattr(repo, "update")
        assert not hasattr(repo, "delete")
        assert not hasattr(repo, "truncate")

    def test_row_conversion(self, tenant_id: uuid.UUID, actor_id: uuid.UUID) -> None:
        row = AuditEventRow(
            audit_event_id=uuid.uuid4(),
            tenant_id=tenant_id,
            action=AuditAction.SEALED.value,
            actor_id=actor_id,
            actor_role="data_steward",
            request_id=REQUEST_ID,
            occurred_at=FROZEN_NOW,
            result_code="SEALED",
            sequence=3,
            evidence_id=uuid.uuid4(),
            mapping_decision_id=None,
            work_item_id=None,
            context=None,
            previous_hash="0" * 64,
            entry_hash="a" * 64,
        )

        event = _to_event(row)

        assert event.action == AuditAction.SEALED
        assert event.sequence == 3
        assert event.context == {}
        assert event.entry_hash == "a" * 64


# ---------------------------------------------------------------------------
# SqlEvidenceRepository inserts
# ---------------------------------------------------------------------------


class _FailingCommit:
    def __init__(self, error: Exception) -> None:
        self._error = error

    async def __aenter__(self) -> None:
        return None

    async def __aexit__(self, exc_type: type[BaseException] | None, *_: object) -> bool:
        if exc_type is None:
            raise self._error
        return False


class RefusingSession:
    """Session stand-in whose commit fails with a fixed database error."""

    def __init__(self, error: Exception) -> None:
        self._error = error
        self.added: list[object] = []

    async def __aenter__(self) -> "RefusingSession":
        return self

    async def __aexit__(self, *_: object) -> bool:
        return False

    def begin(self) -> _FailingCommit:
        return _FailingCommit(self._error)

    def add(self, row: object) -> None:
        self.added.append(row)


def refusing_repository(database_message: str) -> SqlEvidenceRepository:
    error = IntegrityError("INSERT INTO ledger_evidence_records", {}, Exception(database_message))
    return SqlEvidenceRepository(lambda: RefusingSession(error))  # type: ignore[arg-type]


class TestSqlEvidenceRepositoryAdd:
    def test_live_idempotency_index_is_partial_and_unique(self) -> None:
        index = next(i for i in EvidenceRow.__table__.indexes if i.name == LIVE_IDEMPOTENCY_INDEX)

        assert index.unique is True
        assert [c.name for c in index.columns] == ["tenant_id", "idempotency_key"]
        where = str(index.dialect_options["postgresql"]["where"])
        assert "supersedes IS NULL" in where
        assert "'REJECTED', 'SUPERSEDED'" in where

    @pytest.mark.asyncio()
    async def test_live_key_violation_is_an_idempotency_conflict(
        self,
        container: LedgerContainer,
        tenant: TenantContext,
    ) -> None:
        record = await sealed_record(container, tenant)
        repo = refusing_repository(f'duplicate key value violates unique constraint "{LIVE_IDEMPOTENCY_INDEX}"')

        with pytest.raises(DuplicateIdempotencyKeyError) as exc_info:
            await repo.add(record)

        assert exc_info.value.error_code == "IDEMPOTENCY_CONFLICT"
        assert exc_info.value.details == {"idempotency_key": "k-repo"}

    @pytest.mark.asyncio()
    async def test_primary_key_violation_is_a_storage_error(
        self,
        container: LedgerContainer,
        tenant: TenantContext,
    ) -> None:
        record = await sealed_record(container, tenant)
        repo = refusing_repository('duplicate key value violates unique constraint "ledger_evidence_records_pkey"')

        with pytest.raises(StorageError):
            await repo.add(record)
