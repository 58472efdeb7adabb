"""Escalation Router: turns non-APPROVED decisions and quarantines into work items.

Each reason code maps to a resolver role, a priority, and an SLA in hours.
Exactly one work item exists per escalation source; routing the same source
again returns the stored item without a second audit event.
"""

from __future__ import annotations

import uuid
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING, Any

from aumos_evidence_ledger.auth import TenantContext
from aumos_evidence_ledger.core.audit import AuditService
from aumos_evidence_ledger.core.enums import AuditAction, Priority, ResolverRole, WorkItemSource
from aumos_evidence_ledger.core.evidence import EvidenceRecord
from aumos_evidence_ledger.core.interfaces import IEventPublisher, IWorkItemRepository
from aumos_evidence_ledger.observability import get_logger

if TYPE_CHECKING:
    from aumos_evidence_ledger.mapping_gate.decision import MappingDecision

logger = get_logger(__name__)

WORK_ITEM_NAMESPACE = uuid.UUID("0b8d6f2e-47c1-5a93-9e5d-3c7a1f60b2d4")
WORK_ITEM_OPEN = "OPEN"
WORK_ITEM_RESOLVED = "RESOLVED"


@dataclass(frozen=True)
class Route:
    """Who resolves a reason, how urgently, and by when."""

    resolver_role: ResolverRole
    priority: Priority
    sla_hours: int


# ---------------------------------------------------------------------------
# Reason code routing table
# ---------------------------------------------------------------------------

ROUTES: dict[str, Route] = {
    "SANCTIONED_COUNTRY": Route(ResolverRole.COMPLIANCE_OFFICER, Priority.CRITICAL, 4),
    "SANCTIONED_NAME_MATCH": Route(ResolverRole.COMPLIANCE_OFFICER, Priority.CRITICAL, 4),
    "LEGAL_ENTITY_VALIDATION_FAILED": Route(ResolverRole.LEGAL, Priority.HIGH, 24),
    "BLOCKED_LIFECYCLE_STATE": Route(ResolverRole.PROCUREMENT, Priority.HIGH, 24),
    "MISSING_GLOBAL_FIELD": Route(ResolverRole.DATA_STEWARD, Priority.HIGH, 24),
    "NEAR_CERTAIN_DUPLICATE": Route(ResolverRole.DATA_STEWARD, Priority.HIGH, 24),
    "FRAMEWORK_GAP": Route(ResolverRole.PROCUREMENT, Priority.MEDIUM, 72),
    "LOW_COMPLETENESS": Route(ResolverRole.DATA_STEWARD, Priority.MEDIUM, 72),
    "UNSEALED_LINEAGE": Route(ResolverRole.DATA_STEWARD, Priority.LOW, 96),
    "DUPLICATE_CANDIDATE": Route(ResolverRole.DATA_STEWARD, Priority.LOW, 96),
    "MISSING_PORTAL_CONTEXT": Route(ResolverRole.SUPPLIER_MANAGER, Priority.MEDIUM, 48),
    "UNKNOWN_SCOPE": Route(ResolverRole.DATA_STEWARD, Priority.MEDIUM, 72),
}

DEFAULT_ROUTE = Route(ResolverRole.DATA_STEWARD, Priority.MEDIUM, 48)


def route_for(reason_code: str | None) -> Route:
    return ROUTES.get(reason_code or "", DEFAULT_ROUTE)


def _utcnow() -> datetime:
    return datetime.now(UTC)


@dataclass(frozen=True)
class WorkItem:
    """An escalation awaiting a human resolver."""

    work_item_id: uuid.UUID
    tenant_id: uuid.UUID
    source_type: WorkItemSource
    source_id: uuid.UUID
    reason_code: str
    resolver_role: ResolverRole
    priority: Priority
    sla_hours: int
    due_at: datetime
    created_at: datetime
    status: str = WORK_ITEM_OPEN
    resolved_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "work_item_id": str(self.work_item_id),
            "tenant_id": str(self.tenant_id),
            "source_type": self.source_type.value,
            "source_id": str(self.source_id),
            "reason_code": self.reason_code,
            "resolver_role": self.resolver_role.value,
            "priority": self.priority.value,
            "sla_hours": self.sla_hours,
            "due_at": self.due_at.isoformat(),
            "created_at": self.created_at.isoformat(),
            "status": self.status,
            "resolved_at": self.resolved_at.isoformat() if self.resolved_at else None,
        }


def work_item_id_for(tenant_id: uuid.UUID, source_type: WorkItemSource, source_id: uuid.UUID) -> uuid.UUID:
    """Deterministic work item id for an escalation source."""
    return uuid.uuid5(WORK_ITEM_NAMESPACE, f"{tenant_id}:{source_type.value}:{source_id}")


class EscalationRouter:
    """Creates one work item per escalation source.

    Args:
        work_item_repo: Repository implementing IWorkItemRepository.
        audit_service: Append-only audit trail service.
        publisher: Domain event publisher.
        clock: Source of the current UTC time.
    """

    def __init__(
        self,
        work_item_repo: IWorkItemRepository,
        audit_service: AuditService,
        publisher: IEventPublisher,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._repo = work_item_repo
        self._audit = audit_service
        self._publisher = publisher
        self._clock = clock

    async def escalate_decision(
        self,
        decision: MappingDecision,
        tenant: TenantContext,
        request_id: str,
    ) -> WorkItem:
        """Route a non-APPROVED decision by its primary reason.

        The due date is measured from the decision's evaluation time.
        """
        return await self._escalate(
            tenant=tenant,
            source_type=WorkItemSource.MAPPING_DECISION,
            source_id=decision.mapping_decision_id,
            reason_code=decision.primary_reason or decision.status.value,
            since=decision.evaluated_at,
            request_id=request_id,
            mapping_decision_id=decision.mapping_decision_id,
            evidence_id=decision.evidence_id,
        )

    async def escalate_quarantine(
        self,
        record: EvidenceRecord,
        tenant: TenantContext,
        request_id: str,
    ) -> WorkItem:
        """Route a QUARANTINED evidence record by its quarantine reason."""
        return await self._escalate(
            tenant=tenant,
            source_type=WorkItemSource.EVIDENCE_QUARANTINE,
            source_id=record.evidence_id,
            reason_code=record.quarantine_reason or "QUARANTINED",
            since=record.updated_at or record.created_at,
            request_id=request_id,
            evidence_id=record.evidence_id,
        )

    async def resolve_quarantine(
        self,
        record: EvidenceRecord,
        tenant: TenantContext,
        request_id: str,
    ) -> WorkItem | None:
        """Close the work item raised for a quarantine that has been resolved.

        Returns:
            The RESOLVED item, or None when the record had no OPEN work item.
        """
        item = await self._repo.resolve(
            tenant.tenant_id, WorkItemSource.EVIDENCE_QUARANTINE, record.evidence_id, self._clock()
        )
        if item is None:
            return None
        await self._audit.record(
            tenant_id=tenant.tenant_id,
            action=AuditAction.ESCALATION_RESOLVED,
            actor_id=tenant.user_id,
            actor_role=tenant.role,
            request_id=request_id,
            result_code=item.reason_code,
            evidence_id=record.evidence_id,
            work_item_id=item.work_item_id,
        )
        logger.info("Escalation resolved", work_item_id=str(item.work_item_id), tenant_id=str(tenant.tenant_id))
        return item

    async def list(self, tenant_id: uuid.UUID, status: str | None = None) -> list[WorkItem]:
        return await self._repo.list(tenant_id, status=status)

    async def _escalate(
        self,
        tenant: TenantContext,
        source_type: WorkItemSource,
        source_id: uuid.UUID,
        reason_code: str,
        since: datetime,
        request_id: str,
        mapping_decision_id: uuid.UUID | None = None,
        evidence_id: uuid.UUID | None = None,
    ) -> WorkItem:
        route = route_for(reason_code)
        candidate = WorkItem(
            work_item_id=work_item_id_for(tenant.tenant_id, source_type, source_id),
            tenant_id=tenant.tenant_id,
            source_type=source_type,
            source_id=source_id,
            reason_code=reason_code,
            resolver_role=route.resolver_role,
            priority=route.priority,
            sla_hours=route.sla_hours,
            due_at=since + timedelta(hours=route.sla_hours),
            created_at=self._clock(),
        )
        item, created = await self._repo.add_if_absent(candidate)
        if not created:
            logger.debug("Escalation already exists", work_item_id=str(item.work_item_id), source_id=str(source_id))
            return item

        await self._audit.record(
            tenant_id=tenant.tenant_id,
            action=AuditAction.ESCALATION_CREATED,
            actor_id=tenant.user_id,
            actor_role=tenant.role,
            request_id=request_id,
            result_code=reason_code,
            evidence_id=evidence_id,
            mapping_decision_id=mapping_decision_id,
            work_item_id=item.work_item_id,
            context={
                "source_type": source_type.value,
                "resolver_role": route.resolver_role.value,
                "priority": route.priority.value,
                "due_at": item.due_at.isoformat(),
            },
        )
        await self._publisher.publish_escalation(
            tenant_id=tenant.tenant_id,
            work_item_id=item.work_item_id,
            reason_code=reason_code,
            resolver_role=route.resolver_role.value,
            priority=route.priority.value,
            correlation_id=request_id,
        )
        logger.info(
            "Escalation created",
            work_item_id=str(item.work_item_id),
            tenant_id=str(tenant.tenant_id),
            reason_code=reason_code,
            resolver_role=route.resolver_role.value,
            priority=route.priority.value,
        )
        return item
