"""Mapping Gate service: resolves inputs, evaluates, persists, audits, escalates.

The service reads the ledger but never mutates it. Decisions are append-only:
re-evaluating an entity always produces a new decision.
"""

import json
import uuid
from collections.abc import Callable, Iterable
from datetime import UTC, datetime
from typing import Any

from aumos_evidence_ledger.auth import TenantContext
from aumos_evidence_ledger.core.audit import AuditService
from aumos_evidence_ledger.core.enums import AuditAction, DatasetType, EntityType, EvidenceState, MappingStatus
from aumos_evidence_ledger.core.evidence import EvidenceRecord
from aumos_evidence_ledger.core.interfaces import IEntityRepository, IEventPublisher, IMappingDecisionRepository
from aumos_evidence_ledger.core.ledger import EvidenceLedger
from aumos_evidence_ledger.errors import NotFoundError, ValidationError
from aumos_evidence_ledger.escalation.router import EscalationRouter
from aumos_evidence_ledger.mapping_gate.decision import LineageEntry, MappingDecision
from aumos_evidence_ledger.mapping_gate.engine import evaluate, lineage_entry
from aumos_evidence_ledger.mapping_gate.entities import RegisteredEntity, parse_snapshot, snapshot_entity_type
from aumos_evidence_ledger.mapping_gate.rules import RulesetRegistry
from aumos_evidence_ledger.observability import get_logger

logger = get_logger(__name__)

# Entity types a master-data dataset may register.
DATASET_ENTITY_TYPES: dict[DatasetType, tuple[EntityType, ...]] = {
    DatasetType.PARTNER_MASTER: (EntityType.PARTNER, EntityType.SITE),
    DatasetType.PRODUCT_MASTER: (EntityType.PRODUCT,),
}

_JSON_CONTENT_TYPES = frozenset({"application/json", "text/json"})


def _utcnow() -> datetime:
    return datetime.now(UTC)


def structured_view(record: EvidenceRecord) -> Any:
    """Return the record's payload as a structure, or None.

    Structured and server-fetched payloads are returned as stored. A byte
    payload with exactly one JSON attachment is decoded.
    """
    if record.payload.structured is not None:
        return record.payload.structured
    attachments = record.payload.attachments
    if len(attachments) != 1 or attachments[0].content_type.lower() not in _JSON_CONTENT_TYPES:
        return None
    try:
        return json.loads(attachments[0].content.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError):
        return None


class MappingGateService:
    """Entity admission control.

    Args:
        decision_repo: Append-only decision repository.
        entity_repo: Registry of entity snapshots derived from sealed evidence.
        ledger: Evidence ledger, read for lineage.
        audit_service: Append-only audit trail service.
        publisher: Domain event publisher.
        rulesets: Loaded rule set versions.
        router: Escalation router for non-APPROVED decisions.
        near_certain_blocks: Treat a near-certain duplicate as blocking.
        clock: Source of the evaluation time.
    """

    def __init__(
        self,
        decision_repo: IMappingDecisionRepository,
        entity_repo: IEntityRepository,
        ledger: EvidenceLedger,
        audit_service: AuditService,
        publisher: IEventPublisher,
        rulesets: RulesetRegistry,
        router: EscalationRouter,
        near_certain_blocks: bool = False,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._decisions = decision_repo
        self._entities = entity_repo
        self._ledger = ledger
        self._audit = audit_service
        self._publisher = publisher
        self._rulesets = rulesets
        self._router = router
        self._near_certain_blocks = near_certain_blocks
        self._clock = clock

    async def evaluate_entity(
        self,
        tenant: TenantContext,
        entity_type: EntityType,
        request_id: str,
        entity_id: str | None = None,
        entity_snapshot: dict[str, Any] | None = None,
        frameworks: Iterable[str] = (),
        evidence_ids: Iterable[uuid.UUID] = (),
        rule_version: str | None = None,
        triggered_by: uuid.UUID | None = None,
    ) -> MappingDecision:
        """Evaluate an entity and persist the decision.

        The snapshot is taken from `entity_snapshot` when given, otherwise the
        latest registered snapshot of `entity_id` is used and its source
        evidence joins the lineage.

        Args:
            tenant: Verified caller identity.
            entity_type: PARTNER, SITE, or PRODUCT.
            request_id: Correlation id.
            entity_id: Registered entity to evaluate.
            entity_snapshot: Inline snapshot to evaluate.
            frameworks: Framework codes to assess readiness for.
            evidence_ids: Evidence the evaluation relies on.
            rule_version: Rule set version; the default version when omitted.
            triggered_by: Evidence whose sealing triggered the evaluation.

        Returns:
            The persisted MappingDecision.

        Raises:
            ValidationError: Neither or inconsistent entity references, or an
                unknown framework.
            NotFoundError: Unknown entity, evidence, or rule version.
        """
        ruleset = self._rulesets.get(rule_version)
        snapshot, source_evidence_id = await self._resolve_snapshot(
            tenant.tenant_id, entity_type, entity_id, entity_snapshot
        )

        lineage_ids = list(dict.fromkeys(evidence_ids))
        if source_evidence_id is not None and source_evidence_id not in lineage_ids:
            lineage_ids.append(source_evidence_id)
        lineage = await self._collect_lineage(tenant.tenant_id, lineage_ids)
        existing = await self._entities.list_by_type(tenant.tenant_id, entity_type)

        decision = evaluate(
            snapshot=snapshot,
            lineage=lineage,
            frameworks=frameworks,
            ruleset=ruleset,
            existing_entities=existing,
            evaluated_at=self._clock(),
            tenant_id=tenant.tenant_id,
            evidence_id=triggered_by or (lineage_ids[0] if lineage_ids else None),
            near_certain_blocks=self._near_certain_blocks,
        )

        if not await self._decisions.add(tenant.tenant_id, decision):
            stored = await self._decisions.get(tenant.tenant_id, decision.mapping_decision_id)
            logger.info("Mapping decision already recorded", mapping_decision_id=str(decision.mapping_decision_id))
            return stored or decision

        await self._audit.record(
            tenant_id=tenant.tenant_id,
            action=AuditAction.MAPPING_EVALUATED,
            actor_id=tenant.user_id,
            actor_role=tenant.role,
            request_id=request_id,
            result_code=decision.status.value,
            evidence_id=decision.evidence_id,
            mapping_decision_id=decision.mapping_decision_id,
            context={
                "entity_type": entity_type.value,
                "entity_id": decision.entity_id,
                "rule_version": decision.rule_version,
                "inputs_hash": decision.inputs_hash,
                "completeness_score": decision.completeness_score,
                "primary_reason": decision.primary_reason,
            },
        )
        await self._publisher.publish_mapping_decision(
            tenant_id=tenant.tenant_id,
            decision_id=decision.mapping_decision_id,
            entity_id=decision.entity_id,
            status=decision.status.value,
            rule_version=decision.rule_version,
            correlation_id=request_id,
        )
        logger.info(
            "Mapping decision recorded",
            mapping_decision_id=str(decision.mapping_decision_id),
            tenant_id=str(tenant.tenant_id),
            entity_type=entity_type.value,
            entity_id=decision.entity_id,
            status=decision.status.value,
            rule_version=decision.rule_version,
        )

        if decision.status != MappingStatus.APPROVED:
            await self._router.escalate_decision(decision, tenant, request_id)
        return decision

    async def register_entity_from_evidence(self, record: EvidenceRecord) -> RegisteredEntity | None:
        """Register the entity snapshot carried by a sealed master-data record.

        Returns:
            The registered entity, or None when the record carries no entity.

        Raises:
            ValidationError: The payload is not a valid snapshot for the dataset.
        """
        allowed = DATASET_ENTITY_TYPES.get(record.metadata.dataset_type)
        if allowed is None or record.state != EvidenceState.SEALED:
            return None
        data = structured_view(record)
        if not isinstance(data, dict):
            return None

        declared_type = data.get("entity_type", allowed[0].value)
        if declared_type not in {t.value for t in allowed}:
            raise ValidationError.for_field(
                "ENTITY_TYPE_MISMATCH",
                "payload.entity_type",
                f"{declared_type} cannot be registered from {record.metadata.dataset_type.value}",
            )
        snapshot = parse_snapshot(data, EntityType(declared_type))
        entity = RegisteredEntity(
            entity_type=snapshot_entity_type(snapshot),
            entity_id=snapshot.entity_id,
            snapshot=snapshot,
            source_evidence_id=record.evidence_id,
            registered_at=self._clock(),
        )
        await self._entities.upsert(record.tenant_id, entity)
        logger.info(
            "Entity registered from evidence",
            tenant_id=str(record.tenant_id),
            entity_type=entity.entity_type.value,
            entity_id=entity.entity_id,
            evidence_id=str(record.evidence_id),
        )
        return entity

    async def get_decision(self, tenant_id: uuid.UUID, decision_id: uuid.UUID) -> MappingDecision:
        """Return a decision.

        Raises:
            NotFoundError: If the decision does not exist for this tenant.
        """
        decision = await self._decisions.get(tenant_id, decision_id)
        if decision is None:
            raise NotFoundError(resource="MappingDecision", resource_id=str(decision_id))
        return decision

    async def list_decisions(
        self,
        tenant_id: uuid.UUID,
        entity_id: str | None = None,
        evidence_id: uuid.UUID | None = None,
    ) -> list[MappingDecision]:
        return await self._decisions.list(tenant_id, entity_id=entity_id, evidence_id=evidence_id)

    async def _resolve_snapshot(
        self,
        tenant_id: uuid.UUID,
        entity_type: EntityType,
        entity_id: str | None,
        entity_snapshot: dict[str, Any] | None,
    ) -> tuple[Any, uuid.UUID | None]:
        if entity_snapshot is not None:
            snapshot = parse_snapshot(entity_snapshot, entity_type)
            if entity_id is not None and entity_id != snapshot.entity_id:
                raise ValidationError.for_field(
                    "ENTITY_ID_MISMATCH",
                    "entity_id",
                    f"entity_id {entity_id} does not match snapshot entity_id {snapshot.entity_id}",
                )
            return snapshot, None

        if not entity_id:
            raise ValidationError.for_field(
                "MISSING_ENTITY_REFERENCE",
                "entity_id",
                "either entity_id or entity_snapshot is required",
            )
        registered = await self._entities.get(tenant_id, entity_type, entity_id)
        if registered is None:
            raise NotFoundError(resource="Entity", resource_id=entity_id)
        return registered.snapshot, registered.source_evidence_id

    async def _collect_lineage(self, tenant_id: uuid.UUID, evidence_ids: list[uuid.UUID]) -> list[LineageEntry]:
        lineage: list[LineageEntry] = []
        for evidence_id in evidence_ids:
            record = await self._ledger.get(tenant_id, evidence_id)
            lineage.append(lineage_entry(record.evidence_id, record.state, record.payload_hash))
        return lineage
