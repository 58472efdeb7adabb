"""Ingestion Orchestrator: sequences channel shaping, ledger writes, the Mapping Gate, and escalation.

Each step persists its result, and the audit event for it, before the next
step runs:

    1. shape       channel adapter builds the canonical request
    2. guard       silent-mutation check; a detection rejects the draft
    3. ingest      ledger creates and ingests (or quarantines, or replays)
    4. seal        optional, when the caller asks for it
    5. register    sealed master data registers its entity snapshot
    6. evaluate    the Mapping Gate evaluates the registered entity
    7. escalate    quarantines raise a work item; resolving one closes it
"""

import uuid
from dataclasses import dataclass
from typing import Any

from aumos_evidence_ledger.auth import TenantContext
from aumos_evidence_ledger.channels.base import ChannelSubmission
from aumos_evidence_ledger.channels.registry import ChannelRegistry
from aumos_evidence_ledger.core.audit import AuditService
from aumos_evidence_ledger.core.enums import AuditAction, CaptureChannel, EvidenceState
from aumos_evidence_ledger.core.evidence import EvidenceRecord, IngestionRequest
from aumos_evidence_ledger.core.ledger import EvidenceLedger
from aumos_evidence_ledger.errors import LedgerError, ValidationError
from aumos_evidence_ledger.escalation.router import EscalationRouter, WorkItem
from aumos_evidence_ledger.mapping_gate.decision import MappingDecision
from aumos_evidence_ledger.mapping_gate.entities import RegisteredEntity
from aumos_evidence_ledger.mapping_gate.service import MappingGateService
from aumos_evidence_ledger.observability import get_logger
from aumos_evidence_ledger.parity.silent_mutation import detect_silent_mutations

logger = get_logger(__name__)

SILENT_MUTATION_DETECTED = "SILENT_MUTATION_DETECTED"


@dataclass
class IngestionOutcome:
    """Everything one orchestrated ingestion produced."""

    record: EvidenceRecord
    replayed: bool = False
    entity: RegisteredEntity | None = None
    decision: MappingDecision | None = None
    work_item: WorkItem | None = None
    registration_error: str | None = None


class IngestionOrchestrator:
    """Explicit, audited ingestion pipeline.

    Args:
        channels: Channel adapter registry.
        ledger: Evidence ledger.
        audit_service: Append-only audit trail service.
        mapping_gate: Mapping Gate service.
        router: Escalation router.
        auto_evaluate: Evaluate entities registered from sealed evidence.
    """

    def __init__(
        self,
        channels: ChannelRegistry,
        ledger: EvidenceLedger,
        audit_service: AuditService,
        mapping_gate: MappingGateService,
        router: EscalationRouter,
        auto_evaluate: bool = True,
    ) -> None:
        self._channels = channels
        self._ledger = ledger
        self._audit = audit_service
        self._mapping_gate = mapping_gate
        self._router = router
        self._auto_evaluate = auto_evaluate

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    async def submit(
        self,
        channel: CaptureChannel | str,
        submission: ChannelSubmission,
        tenant: TenantContext,
        request_id: str,
        seal: bool = False,
        frameworks: list[str] | None = None,
    ) -> IngestionOutcome:
        """Ingest channel-native input, optionally sealing it.

        Args:
            channel: Capture channel the input arrived through.
            submission: Raw channel input.
            tenant: Verified caller identity.
            request_id: Correlation id.
            seal: Seal the record once ingested.
            frameworks: Frameworks assessed when a sealed record registers an entity.

        Returns:
            IngestionOutcome; `replayed` is True for an idempotent replay.
        """
        request = await self._shape_guarded(channel, submission, tenant, request_id)
        record, replayed = await self._ledger.ingest(request, tenant, request_id)
        outcome = IngestionOutcome(record=record, replayed=replayed)

        if record.state == EvidenceState.QUARANTINED:
            outcome.work_item = await self._router.escalate_quarantine(record, tenant, request_id)
            return outcome
        if seal and not replayed and record.state == EvidenceState.INGESTED:
            outcome.record = await self._ledger.seal(record.evidence_id, tenant, request_id)
            await self._after_seal(outcome, tenant, request_id, frameworks or [])
        return outcome

    async def create_draft(
        self,
        channel: CaptureChannel | str,
        submission: ChannelSubmission,
        tenant: TenantContext,
        request_id: str,
    ) -> IngestionOutcome:
        """Shape channel input and persist it as a DRAFT (or QUARANTINED)."""
        request = await self._shape_guarded(channel, submission, tenant, request_id)
        record = await self._ledger.create_draft(request, tenant, request_id)
        outcome = IngestionOutcome(record=record)
        if record.state == EvidenceState.QUARANTINED:
            outcome.work_item = await self._router.escalate_quarantine(record, tenant, request_id)
        return outcome

    async def ingest_draft(self, evidence_id: uuid.UUID, tenant: TenantContext, request_id: str) -> IngestionOutcome:
        record, _ = await self._ledger.ingest(evidence_id, tenant, request_id)
        outcome = IngestionOutcome(record=record)
        if record.state == EvidenceState.QUARANTINED:
            outcome.work_item = await self._router.escalate_quarantine(record, tenant, request_id)
        return outcome

    async def seal(
        self,
        evidence_id: uuid.UUID,
        tenant: TenantContext,
        request_id: str,
        frameworks: list[str] | None = None,
    ) -> IngestionOutcome:
        """Seal an INGESTED record and run the post-seal steps."""
        outcome = IngestionOutcome(record=await self._ledger.seal(evidence_id, tenant, request_id))
        await self._after_seal(outcome, tenant, request_id, frameworks or [])
        return outcome

    async def update(
        self,
        evidence_id: uuid.UUID,
        patch: dict[str, Any],
        tenant: TenantContext,
        request_id: str,
    ) -> IngestionOutcome:
        """Patch a non-sealed record; a patch to UNKNOWN scope quarantines and escalates."""
        record = await self._ledger.update(evidence_id, patch, tenant, request_id)
        outcome = IngestionOutcome(record=record)
        if record.state == EvidenceState.QUARANTINED:
            outcome.work_item = await self._router.escalate_quarantine(record, tenant, request_id)
        return outcome

    async def resolve_quarantine(
        self,
        evidence_id: uuid.UUID,
        patch: dict[str, Any],
        tenant: TenantContext,
        request_id: str,
        provenance_updates: dict[str, Any] | None = None,
    ) -> IngestionOutcome:
        """Ingest a QUARANTINED record and close its work item."""
        record = await self._ledger.resolve_quarantine(
            evidence_id, patch, tenant, request_id, provenance_updates=provenance_updates
        )
        outcome = IngestionOutcome(record=record)
        outcome.work_item = await self._router.resolve_quarantine(record, tenant, request_id)
        return outcome

    async def supersede(
        self,
        old_id: uuid.UUID,
        channel: CaptureChannel | str,
        submission: ChannelSubmission,
        reason: str,
        tenant: TenantContext,
        request_id: str,
    ) -> tuple[EvidenceRecord, EvidenceRecord]:
        """Replace a sealed record with a new draft shaped by a channel adapter."""
        request = await self._shape_guarded(channel, submission, tenant, request_id, create_evidence=False)
        return await self._ledger.supersede(old_id, request, reason, tenant, request_id)

    # ------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------

    async def _shape_guarded(
        self,
        channel: CaptureChannel | str,
        submission: ChannelSubmission,
        tenant: TenantContext,
        request_id: str,
        create_evidence: bool = True,
    ) -> IngestionRequest:
        """Shape input and enforce the silent-mutation policy.

        A detected mutation is logged at critical level and audited. When
        `create_evidence` is set, the shaped request is persisted as a draft
        and immediately REJECTED so it can never be sealed.

        Raises:
            ValidationError: SILENT_MUTATION_DETECTED.
        """
        adapter = self._channels.get(channel)
        request = await adapter.shape(submission, tenant)
        mutations = detect_silent_mutations(submission.body, request)
        if not mutations:
            return request

        details = [m.to_dict() for m in mutations]
        logger.critical(
            "Silent mutation detected",
            capture_channel=adapter.channel.value,
            tenant_id=str(tenant.tenant_id),
            request_id=request_id,
            mutations=details,
        )
        evidence_id = None
        if create_evidence:
            draft = await self._ledger.create_draft(request, tenant, request_id)
            evidence_id = draft.evidence_id
        await self._audit.record(
            tenant_id=tenant.tenant_id,
            action=AuditAction.SILENT_MUTATION_DETECTED,
            actor_id=tenant.user_id,
            actor_role=tenant.role,
            request_id=request_id,
            result_code=SILENT_MUTATION_DETECTED,
            evidence_id=evidence_id,
            context={"capture_channel": adapter.channel.value, "mutations": details},
        )
        if evidence_id is not None:
            await self._ledger.reject(
                evidence_id,
                SILENT_MUTATION_DETECTED,
                "Declared fields were altered during shaping",
                tenant,
                request_id,
                context={"mutations": details},
            )
        raise ValidationError(
            message="Declared fields were altered during shaping",
            error_code=SILENT_MUTATION_DETECTED,
            details={"evidence_id": str(evidence_id) if evidence_id else None, "mutations": details},
        )

    async def _after_seal(
        self,
        outcome: IngestionOutcome,
        tenant: TenantContext,
        request_id: str,
        frameworks: list[str],
    ) -> None:
        try:
            outcome.entity = await self._mapping_gate.register_entity_from_evidence(outcome.record)
        except ValidationError as exc:
            # The seal stands; the entity simply is not registered.
            outcome.registration_error = exc.error_code
            logger.warning(
                "Sealed evidence carries no valid entity snapshot",
                evidence_id=str(outcome.record.evidence_id),
                error_code=exc.error_code,
            )
            return

        if outcome.entity is None or not self._auto_evaluate:
            return
        try:
            outcome.decision = await self._mapping_gate.evaluate_entity(
                tenant=tenant,
                entity_type=outcome.entity.entity_type,
                request_id=request_id,
                entity_id=outcome.entity.entity_id,
                frameworks=frameworks,
                triggered_by=outcome.record.evidence_id,
            )
        except LedgerError as exc:
            outcome.registration_error = exc.error_code
            logger.warning(
                "Mapping evaluation after seal failed",
                evidence_id=str(outcome.record.evidence_id),
                error_code=exc.error_code,
            )
