"""SQLAlchemy repositories for the ledger's primary database.

Each repository implements the corresponding Protocol from core/interfaces.py
and opens one short transaction per call from a shared session factory.

Repositories:
- SqlEvidenceRepository        : evidence records with compare-and-set updates
- SqlMappingDecisionRepository : insert-only Mapping Decisions
- SqlEntityRepository          : registered entity snapshots
- SqlWorkItemRepository        : escalation work items, one per source

NOTE: the audit trail repository lives in audit_wall.py. It uses a separate
engine and must never share sessions with the primary DB repositories.
"""

import uuid
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from datetime import date, datetime
from typing import Any

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from aumos_evidence_ledger.adapters.models import (
    LIVE_IDEMPOTENCY_INDEX,
    Base,
    EntityRow,
    EvidenceRow,
    MappingDecisionRow,
    WorkItemRow,
)
from aumos_evidence_ledger.core.enums import (
    CaptureChannel,
    DatasetType,
    DeclaredScope,
    EntityType,
    EvidenceState,
    LegalBasis,
    Priority,
    ResolverRole,
    RetentionPolicy,
    TrustLevel,
    WorkItemSource,
)
from aumos_evidence_ledger.core.evidence import DeclaredMetadata, EvidencePayload, EvidenceRecord, StateTransition
from aumos_evidence_ledger.errors import DuplicateIdempotencyKeyError, StorageError
from aumos_evidence_ledger.escalation.router import WORK_ITEM_OPEN, WORK_ITEM_RESOLVED, WorkItem
from aumos_evidence_ledger.mapping_gate.decision import MappingDecision
from aumos_evidence_ledger.mapping_gate.entities import RegisteredEntity
from aumos_evidence_ledger.observability import get_logger

logger = get_logger(__name__)


def create_primary_engine(database_url: str, pool_size: int = 10, max_overflow: int = 5) -> AsyncEngine:
    """Create the primary database engine."""
    kwargs: dict[str, Any] = {"echo": False, "pool_pre_ping": True}
    if not database_url.startswith("sqlite"):
        kwargs.update(pool_size=pool_size, max_overflow=max_overflow)
    return create_async_engine(database_url, **kwargs)


async def create_primary_schema(engine: AsyncEngine) -> None:
    """Create the primary tables if they do not exist."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


def _violates_live_idempotency(exc: IntegrityError) -> bool:
    # PostgreSQL names the index; SQLite names the indexed columns.
    detail = str(exc.orig)
    return LIVE_IDEMPOTENCY_INDEX in detail or "idempotency_key" in detail


class _SessionScoped:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._sessions = session_factory

    @asynccontextmanager
    async def _transaction(self) -> AsyncGenerator[AsyncSession, None]:
        try:
            async with self._sessions() as session, session.begin():
                yield session
        except IntegrityError:
            raise
        except SQLAlchemyError as exc:
            logger.error("Primary database operation failed", error=str(exc))
            raise StorageError(message="Primary database operation failed") from exc


# ---------------------------------------------------------------------------
# Row conversion
# ---------------------------------------------------------------------------


def metadata_from_canonical(data: dict[str, Any]) -> DeclaredMetadata:
    return DeclaredMetadata(
        dataset_type=DatasetType(data["dataset_type"]),
        declared_scope=DeclaredScope(data["declared_scope"]),
        primary_intent=data["primary_intent"],
        purpose_tags=tuple(data["purpose_tags"]),
        contains_personal_data=data["contains_personal_data"],
        retention_policy=RetentionPolicy(data["retention_policy"]),
        scope_target_id=data.get("scope_target_id"),
        legal_basis=LegalBasis(data["legal_basis"]) if data.get("legal_basis") else None,
        retention_days=data.get("retention_days"),
        unlinked_reason=data.get("unlinked_reason"),
        resolution_due_date=(
            date.fromisoformat(data["resolution_due_date"]) if data.get("resolution_due_date") else None
        ),
    )


def record_to_values(record: EvidenceRecord) -> dict[str, Any]:
    return {
        "evidence_id": record.evidence_id,
        "tenant_id": record.tenant_id,
        "capture_channel": record.capture_channel.value,
        "upstream_system": record.upstream_system,
        "dataset_type": record.metadata.dataset_type.value,
        "state": record.state.value,
        "trust_level": record.trust_level.value,
        "declared_metadata": record.metadata.to_canonical(),
        "payload": record.payload.to_storage(),
        "provenance": record.provenance,
        "idempotency_key": record.idempotency_key,
        "payload_hash": record.payload_hash,
        "metadata_hash": record.metadata_hash,
        "retention_end": record.retention_end,
        "retention_overridden": record.retention_overridden,
        "state_history": [t.to_dict() for t in record.state_history],
        "supersedes": record.supersedes,
        "superseded_by": record.superseded_by,
        "quarantine_reason": record.quarantine_reason,
        "rejection_code": record.rejection_code,
        "created_by": record.created_by,
        "created_at": record.created_at,
        "updated_at": record.updated_at,
    }


def row_to_record(row: EvidenceRow) -> EvidenceRecord:
    return EvidenceRecord(
        evidence_id=row.evidence_id,
        tenant_id=row.tenant_id,
        capture_channel=CaptureChannel(row.capture_channel),
        upstream_system=row.upstream_system,
        metadata=metadata_from_canonical(row.declared_metadata),
        payload=EvidencePayload.from_storage(row.payload),
        trust_level=TrustLevel(row.trust_level),
        state=EvidenceState(row.state),
        created_by=row.created_by,
        created_at=row.created_at,
        provenance=dict(row.provenance or {}),
        idempotency_key=row.idempotency_key,
        payload_hash=row.payload_hash,
        metadata_hash=row.metadata_hash,
        retention_end=row.retention_end,
        state_history=[StateTransition.from_dict(t) for t in row.state_history or []],
        supersedes=row.supersedes,
        superseded_by=row.superseded_by,
        quarantine_reason=row.quarantine_reason,
        rejection_code=row.rejection_code,
        retention_overridden=row.retention_overridden,
        updated_at=row.updated_at,
    )


# ---------------------------------------------------------------------------
# Repositories
# ---------------------------------------------------------------------------


class SqlEvidenceRepository(_SessionScoped):
    """Evidence records on the primary database.

    Args:
        session_factory: Primary DB session factory.
    """

    async def add(self, record: EvidenceRecord) -> None:
        try:
            async with self._transaction() as session:
                session.add(EvidenceRow(**record_to_values(record)))
        except IntegrityError as exc:
            if record.claims_idempotency_key and _violates_live_idempotency(exc):
                raise DuplicateIdempotencyKeyError(
                    message=f"Idempotency key {record.idempotency_key!r} is held by another live record",
                    details={"idempotency_key": record.idempotency_key},
                ) from exc
            raise StorageError(message=f"Evidence {record.evidence_id} already exists") from exc

    async def get(self, tenant_id: uuid.UUID, evidence_id: uuid.UUID) -> EvidenceRecord | None:
        async with self._transaction() as session:
            row = await session.scalar(
                select(EvidenceRow).where(EvidenceRow.tenant_id == tenant_id, EvidenceRow.evidence_id == evidence_id)
            )
            return row_to_record(row) if row is not None else None

    async def find_by_idempotency_key(self, tenant_id: uuid.UUID, idempotency_key: str) -> list[EvidenceRecord]:
        async with self._transaction() as session:
            rows = await session.scalars(
                select(EvidenceRow)
                .where(EvidenceRow.tenant_id == tenant_id, EvidenceRow.idempotency_key == idempotency_key)
                .order_by(EvidenceRow.created_at)
            )
            return [row_to_record(row) for row in rows]

    async def compare_and_set(self, record: EvidenceRecord, expected_state: EvidenceState) -> bool:
        """Conditional UPDATE ... WHERE state = :expected; exactly one writer wins."""
        values = record_to_values(record)
        for key in ("evidence_id", "tenant_id", "created_by", "created_at"):
            values.pop(key)
        async with self._transaction() as session:
            result = await session.execute(
                update(EvidenceRow)
                .where(
                    EvidenceRow.tenant_id == record.tenant_id,
                    EvidenceRow.evidence_id == record.evidence_id,
                    EvidenceRow.state == expected_state.value,
                )
                .values(**values)
            )
            won = result.rowcount == 1
        if not won:
            logger.info(
                "Compare-and-set lost",
                evidence_id=str(record.evidence_id),
                expected_state=expected_state.value,
            )
        return won

    async def list(
        self,
        tenant_id: uuid.UUID,
        state: EvidenceState | None = None,
        dataset_type: DatasetType | None = None,
        capture_channel: CaptureChannel | None = None,
        page: int = 1,
        page_size: int = 50,
    ) -> list[EvidenceRecord]:
        stmt = select(EvidenceRow).where(EvidenceRow.tenant_id == tenant_id)
        if state is not None:
            stmt = stmt.where(EvidenceRow.state == state.value)
        if dataset_type is not None:
            stmt = stmt.where(EvidenceRow.dataset_type == dataset_type.value)
        if capture_channel is not None:
            stmt = stmt.where(EvidenceRow.capture_channel == capture_channel.value)
        stmt = stmt.order_by(EvidenceRow.created_at.desc()).offset((max(page, 1) - 1) * page_size).limit(page_size)
        async with self._transaction() as session:
            return [row_to_record(row) for row in await session.scalars(stmt)]


class SqlMappingDecisionRepository(_SessionScoped):
    """Insert-only Mapping Decisions."""

    async def add(self, tenant_id: uuid.UUID, decision: MappingDecision) -> bool:
        row = MappingDecisionRow(
            mapping_decision_id=decision.mapping_decision_id,
            tenant_id=tenant_id,
            evidence_id=decision.evidence_id,
            entity_type=decision.entity_type.value,
            entity_id=decision.entity_id,
            status=decision.status.value,
            rule_version=decision.rule_version,
            inputs_hash=decision.inputs_hash,
            lineage_evidence_ids=[str(e.evidence_id) for e in decision.evidence_lineage],
            decision=decision.model_dump(mode="json"),
            evaluated_at=decision.evaluated_at,
        )
        try:
            async with self._transaction() as session:
                session.add(row)
        except IntegrityError:
            return False
        return True

    async def get(self, tenant_id: uuid.UUID, decision_id: uuid.UUID) -> MappingDecision | None:
        async with self._transaction() as session:
            row = await session.scalar(
                select(MappingDecisionRow).where(
                    MappingDecisionRow.tenant_id == tenant_id,
                    MappingDecisionRow.mapping_decision_id == decision_id,
                )
            )
            return MappingDecision.model_validate(row.decision) if row is not None else None

    async def list(
        self,
        tenant_id: uuid.UUID,
        entity_id: str | None = None,
        evidence_id: uuid.UUID | None = None,
    ) -> list[MappingDecision]:
        stmt = select(MappingDecisionRow).where(MappingDecisionRow.tenant_id == tenant_id)
        if entity_id is not None:
            stmt = stmt.where(MappingDecisionRow.entity_id == entity_id)
        async with self._transaction() as session:
            rows = list(await session.scalars(stmt.order_by(MappingDecisionRow.evaluated_at)))
        if evidence_id is not None:
            wanted = str(evidence_id)
            rows = [r for r in rows if r.evidence_id == evidence_id or wanted in (r.lineage_evidence_ids or [])]
        return [MappingDecision.model_validate(r.decision) for r in rows]


class SqlEntityRepository(_SessionScoped):
    """Registered entity snapshots."""

    async def upsert(self, tenant_id: uuid.UUID, entity: RegisteredEntity) -> None:
        async with self._transaction() as session:
            await session.merge(
                EntityRow(
                    tenant_id=tenant_id,
                    entity_type=entity.entity_type.value,
                    entity_id=entity.entity_id,
                    snapshot=entity.snapshot.model_dump(mode="json"),
                    source_evidence_id=entity.source_evidence_id,
                    registered_at=entity.registered_at,
                )
            )

    async def get(self, tenant_id: uuid.UUID, entity_type: EntityType, entity_id: str) -> RegisteredEntity | None:
        async with self._transaction() as session:
            row = await session.get(EntityRow, (tenant_id, entity_type.value, entity_id))
            return self._to_entity(row) if row is not None else None

    async def list_by_type(self, tenant_id: uuid.UUID, entity_type: EntityType) -> list[RegisteredEntity]:
        async with self._transaction() as session:
            rows = await session.scalars(
                select(EntityRow)
                .where(EntityRow.tenant_id == tenant_id, EntityRow.entity_type == entity_type.value)
                .order_by(EntityRow.entity_id)
            )
            return [self._to_entity(row) for row in rows]

    @staticmethod
    def _to_entity(row: EntityRow) -> RegisteredEntity:
        return RegisteredEntity(
            entity_type=EntityType(row.entity_type),
            entity_id=row.entity_id,
            snapshot=row.snapshot,
            source_evidence_id=row.source_evidence_id,
            registered_at=row.registered_at,
        )


class SqlWorkItemRepository(_SessionScoped):
    """Escalation work items; the unique source constraint enforces one item per source."""

    async def add_if_absent(self, item: WorkItem) -> tuple[WorkItem, bool]:
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
            resolved_at=item.resolved_at,
        )
        try:
            async with self._transaction() as session:
                session.add(row)
        except IntegrityError:
            existing = await self.get_by_source(item.tenant_id, item.source_type, item.source_id)
            if existing is None:
                raise StorageError(message=f"Work item for {item.source_id} could not be stored") from None
            return existing, False
        return item, True

    async def list(self, tenant_id: uuid.UUID, status: str | None = None) -> list[WorkItem]:
        stmt = select(WorkItemRow).where(WorkItemRow.tenant_id == tenant_id)
        if status is not None:
            stmt = stmt.where(WorkItemRow.status == status)
        async with self._transaction() as session:
            return [self._to_item(row) for row in await session.scalars(stmt.order_by(WorkItemRow.due_at))]

    async def get_by_source(
        self,
        tenant_id: uuid.UUID,
        source_type: WorkItemSource,
        source_id: uuid.UUID,
    ) -> WorkItem | None:
        async with self._transaction() as session:
            row = await session.scalar(
                select(WorkItemRow).where(
                    WorkItemRow.tenant_id == tenant_id,
                    WorkItemRow.source_type == source_type.value,
                    WorkItemRow.source_id == source_id,
                )
            )
            return self._to_item(row) if row is not None else None

    async def resolve(
        self,
        tenant_id: uuid.UUID,
        source_type: WorkItemSource,
        source_id: uuid.UUID,
        resolved_at: datetime,
    ) -> WorkItem | None:
        async with self._transaction() as session:
            row = await session.scalar(
                update(WorkItemRow)
                .where(
                    WorkItemRow.tenant_id == tenant_id,
                    WorkItemRow.source_type == source_type.value,
                    WorkItemRow.source_id == source_id,
                    WorkItemRow.status == WORK_ITEM_OPEN,
                )
                .values(status=WORK_ITEM_RESOLVED, resolved_at=resolved_at)
                .returning(WorkItemRow)
            )
            return self._to_item(row) if row is not None else None

    @staticmethod
    def _to_item(row: WorkItemRow) -> WorkItem:
        return WorkItem(
            work_item_id=row.work_item_id,
            tenant_id=row.tenant_id,
            source_type=WorkItemSource(row.source_type),
            source_id=row.source_id,
            reason_code=row.reason_code,
            resolver_role=ResolverRole(row.resolver_role),
            priority=Priority(row.priority),
            sla_hours=row.sla_hours,
            due_at=row.due_at,
            created_at=row.created_at,
            status=row.status,
            resolved_at=row.resolved_at,
        )
