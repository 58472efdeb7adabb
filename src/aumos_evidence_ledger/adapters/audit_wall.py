"""Audit Wall: separate database connection for the immutable audit trail.

This module is the ONLY place that connects to AUMOS_LEDGER_AUDIT_DB_URL.
All other SQL adapters use the primary engine from repositories.py.

The Audit Wall is meant to run on a physically separate PostgreSQL instance
with INSERT and SELECT grants only on ledger_audit_events. No UPDATE or DELETE
operation exists at the application level.

Key exports:
- create_audit_engine(...) : build the Audit Wall engine at startup
- create_audit_schema(...) : create ledger_audit_events if missing
- SqlAuditRepository       : append-only write plus read operations
"""

import uuid

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from aumos_evidence_ledger.adapters.models import AuditBase, AuditEventRow
from aumos_evidence_ledger.core.audit import AuditEvent
from aumos_evidence_ledger.core.enums import AuditAction
from aumos_evidence_ledger.errors import StorageError
from aumos_evidence_ledger.observability import get_logger

logger = get_logger(__name__)


def create_audit_engine(
    audit_db_url: str,
    pool_size: int = 5,
    max_overflow: int = 2,
    pool_timeout: int = 30,
) -> AsyncEngine:
    """Create the Audit Wall database engine.

    Args:
        audit_db_url: Connection URL for the separate audit database.
        pool_size: Connection pool size.
        max_overflow: Max overflow connections above pool_size.
        pool_timeout: Seconds to wait for a connection before raising.
    """
    logger.info("Initializing Audit Wall engine", pool_size=pool_size, max_overflow=max_overflow)
    if audit_db_url.startswith("sqlite"):
        return create_async_engine(audit_db_url, echo=False)
    return create_async_engine(
        audit_db_url,
        pool_size=pool_size,
        max_overflow=max_overflow,
        pool_timeout=pool_timeout,
        # Audit queries must not log values
        echo=False,
        pool_pre_ping=True,
    )


async def create_audit_schema(engine: AsyncEngine) -> None:
    async with engine.begin() as conn:
        await conn.run_sync(AuditBase.metadata.create_all)


def _to_event(row: AuditEventRow) -> AuditEvent:
    return AuditEvent(
        audit_event_id=row.audit_event_id,
        tenant_id=row.tenant_id,
        action=AuditAction(row.action),
        actor_id=row.actor_id,
        actor_role=row.actor_role,
        request_id=row.request_id,
        occurred_at=row.occurred_at,
        result_code=row.result_code,
        sequence=row.sequence,
        evidence_id=row.evidence_id,
        mapping_decision_id=row.mapping_decision_id,
        work_item_id=row.work_item_id,
        context=dict(row.context or {}),
        previous_hash=row.previous_hash,
        entry_hash=row.entry_hash,
    )


class SqlAuditRepository:
    """Append-only repository for AuditEvent rows on the Audit Wall database.

    IMPORTANT: This repository has no update() or delete() methods because
    the audit trail is immutable. The insert-only pattern should also be
    enforced at the database level through the role's grants.

    Args:
        session_factory: Session factory bound to the Audit Wall engine.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._sessions = session_factory

    async def append(self, event: AuditEvent) -> None:
        """Append one immutable audit event. This is the ONLY write operation."""
        row = AuditEventRow(
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
        try:
            async with self._sessions() as session, session.begin():
                session.add(row)
        except SQLAlchemyError as exc:
            logger.error("Audit Wall append failed", audit_event_id=str(event.audit_event_id), error=str(exc))
            raise StorageError(message="Audit event could not be written") from exc

    async def latest(self, tenant_id: uuid.UUID) -> AuditEvent | None:
        async with self._sessions() as session:
            row = await session.scalar(
                select(AuditEventRow)
                .where(AuditEventRow.tenant_id == tenant_id)
                .order_by(AuditEventRow.sequence.desc())
                .limit(1)
            )
            return _to_event(row) if row is not None else None

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
        """Query the trail with filters; tenant isolation is always enforced."""
        stmt = select(AuditEventRow).where(AuditEventRow.tenant_id == tenant_id)
        if evidence_id is not None:
            stmt = stmt.where(AuditEventRow.evidence_id == evidence_id)
        if mapping_decision_id is not None:
            stmt = stmt.where(AuditEventRow.mapping_decision_id == mapping_decision_id)
        if action is not None:
            stmt = stmt.where(AuditEventRow.action == action.value)
        if request_id is not None:
            stmt = stmt.where(AuditEventRow.request_id == request_id)
        stmt = stmt.order_by(AuditEventRow.sequence).offset((max(page, 1) - 1) * page_size).limit(page_size)
        async with self._sessions() as session:
            return [_to_event(row) for row in await session.scalars(stmt)]

    async def chain(self, tenant_id: uuid.UUID) -> list[AuditEvent]:
        async with self._sessions() as session:
            rows = await session.scalars(
                select(AuditEventRow).where(AuditEventRow.tenant_id == tenant_id).order_by(AuditEventRow.sequence)
            )
            return [_to_event(row) for row in rows]
