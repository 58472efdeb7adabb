"""Tests for the IngestionOrchestrator pipeline."""

import dataclasses

import pytest

from aumos_evidence_ledger.auth import TenantContext
from aumos_evidence_ledger.channels.base import ChannelSubmission
from aumos_evidence_ledger.channels.manual import ManualEntryAdapter
from aumos_evidence_ledger.channels.registry import ChannelRegistry
from aumos_evidence_ledger.container import LedgerContainer
from aumos_evidence_ledger.core.enums import AuditAction, CaptureChannel, EvidenceState, MappingStatus
from aumos_evidence_ledger.core.evidence import IngestionRequest
from aumos_evidence_ledger.core.orchestrator import IngestionOrchestrator
from aumos_evidence_ledger.errors import ValidationError
from tests.conftest import (
    FROZEN_NOW,
    MutableClock,
    make_api_push_body,
    make_manual_body,
    make_partner_payload,
    make_portal_body,
    make_unknown_scope_fields,
)

REQUEST_ID = "req-orch-1"


class TrimmingManualAdapter(ManualEntryAdapter):
    """Strips primary_intent after validation, altering a declared value."""

    async def shape(self, submission: ChannelSubmission, tenant: TenantContext) -> IngestionRequest:
        request = await super().shape(submission, tenant)
        metadata = dataclasses.replace(request.metadata, primary_intent=request.metadata.primary_intent.strip())
        return dataclasses.replace(request, metadata=metadata)


def orchestrator_with_trimming_manual(container: LedgerContainer, clock: MutableClock) -> IngestionOrchestrator:
    return IngestionOrchestrator(
        channels=ChannelRegistry([TrimmingManualAdapter(clock=clock)]),
        ledger=container.ledger,
        audit_service=container.audit_service,
        mapping_gate=container.mapping_gate,
        router=container.escalations,
    )


# ---------------------------------------------------------------------------
# submit()
# ---------------------------------------------------------------------------


class TestSubmit:
    @pytest.mark.asyncio()
    async def test_submit_without_seal_stops_at_ingested(
        self,
        container: LedgerContainer,
        tenant: TenantContext,
    ) -> None:
        outcome = await container.orchestrator.submit(
            CaptureChannel.API_PUSH, ChannelSubmission(body=make_api_push_body()), tenant, REQUEST_ID
        )

        assert outcome.record.state == EvidenceState.INGESTED
        assert outcome.entity is None
        assert outcome.decision is None

    @pytest.mark.asyncio()
    async def test_submit_with_seal_registers_and_evaluates(
        self,
        container: LedgerContainer,
        tenant: TenantContext,
    ) -> None:
        outcome = await container.orchestrator.submit(
            "API_PUSH", ChannelSubmission(body=make_api_push_body()), tenant, REQUEST_ID, seal=True
        )

        assert outcome.record.state == EvidenceState.SEALED
        assert outcome.entity is not None
        assert outcome.entity.source_evidence_id == outcome.record.evidence_id
        assert outcome.decision is not None
        assert outcome.decision.status == MappingStatus.APPROVED
        assert outcome.decision.evidence_id == outcome.record.evidence_id
        assert outcome.decision.evidence_lineage[0].sealed is True

        actions = [e.action for e in await container.audit_service.query(tenant.tenant_id)]
        assert actions == [
            AuditAction.DRAFT_CREATED,
            AuditAction.INGESTED,
            AuditAction.SEALED,
            AuditAction.MAPPING_EVALUATED,
        ]

    @pytest.mark.asyncio()
    async def test_requested_frameworks_reach_the_gate(
        self,
        container: LedgerContainer,
        tenant: TenantContext,
    ) -> None:
        outcome = await container.orchestrator.submit(
            "MANUAL", ChannelSubmission(body=make_manual_body()), tenant, REQUEST_ID, seal=True, frameworks=["CBAM"]
        )

        assert outcome.decision is not None
        assert outcome.decision.status == MappingStatus.PROVISIONAL
        assert outcome.decision.primary_reason == "FRAMEWORK_GAP"
        assert len(await container.escalations.list(tenant.tenant_id)) == 1

    @pytest.mark.asyncio()
    async def test_auto_evaluate_disabled(self, container: LedgerContainer, tenant: TenantContext) -> None:
        orchestrator = IngestionOrchestrator(
            channels=container.channels,
            ledger=container.ledger,
            audit_service=container.audit_service,
            mapping_gate=container.mapping_gate,
            router=container.escalations,
            auto_evaluate=False,
        )

        outcome = await orchestrator.submit(
            "API_PUSH", ChannelSubmission(body=make_api_push_body()), tenant, REQUEST_ID, seal=True
        )

        assert outcome.entity is not None
        assert outcome.decision is None

    @pytest.mark.asyncio()
    async def test_invalid_snapshot_keeps_the_seal(self, container: LedgerContainer, tenant: TenantContext) -> None:
        body = make_api_push_body(payload=make_partner_payload(favourite_colour="blue"))

        outcome = await container.orchestrator.submit(
            "API_PUSH", ChannelSubmission(body=body), tenant, REQUEST_ID, seal=True
        )

        assert outcome.record.state == EvidenceState.SEALED
        assert outcome.entity is None
        assert outcome.registration_error == "INVALID_ENTITY_SNAPSHOT"

    @pytest.mark.asyncio()
    async def test_replay_does_not_seal_again(self, container: LedgerContainer, tenant: TenantContext) -> None:
        submission = ChannelSubmission(body=make_api_push_body(), idempotency_key="k-orch")

        first = await container.orchestrator.submit("API_PUSH", submission, tenant, REQUEST_ID, seal=True)
        second = await container.orchestrator.submit("API_PUSH", submission, tenant, "req-orch-2", seal=True)

        assert second.replayed is True
        assert second.record.evidence_id == first.record.evidence_id
        assert second.decision is None


# ---------------------------------------------------------------------------
# Quarantine escalation
# ---------------------------------------------------------------------------


class TestQuarantine:
    @pytest.mark.asyncio()
    async def test_portal_submission_without_context_is_escalated(
        self,
        container: LedgerContainer,
        tenant: TenantContext,
    ) -> None:
        outcome = await container.orchestrator.submit(
            "SUPPLIER_PORTAL", ChannelSubmission(body=make_portal_body()), tenant, REQUEST_ID, seal=True
        )

        assert outcome.record.state == EvidenceState.QUARANTINED
        assert outcome.record.quarantine_reason == "MISSING_PORTAL_CONTEXT"
        assert outcome.work_item is not None
        assert outcome.work_item.reason_code == "MISSING_PORTAL_CONTEXT"
        assert outcome.work_item.resolver_role.value == "SUPPLIER_MANAGER"

    @pytest.mark.asyncio()
    async def test_unknown_scope_is_escalated_on_ingest(
        self,
        container: LedgerContainer,
        tenant: TenantContext,
    ) -> None:
        body = make_manual_body(**make_unknown_scope_fields())
        draft = await container.orchestrator.create_draft("MANUAL", ChannelSubmission(body=body), tenant, REQUEST_ID)
        assert draft.work_item is None

        outcome = await container.orchestrator.ingest_draft(draft.record.evidence_id, tenant, REQUEST_ID)

        assert outcome.record.state == EvidenceState.QUARANTINED
        assert outcome.work_item is not None
        assert outcome.work_item.reason_code == "UNKNOWN_SCOPE"

    @pytest.mark.asyncio()
    async def test_patch_to_unknown_scope_is_escalated(self, container: LedgerContainer, tenant: TenantContext) -> None:
        created = await container.orchestrator.submit(
            "MANUAL", ChannelSubmission(body=make_manual_body()), tenant, REQUEST_ID
        )

        outcome = await container.orchestrator.update(
            created.record.evidence_id, make_unknown_scope_fields(), tenant, REQUEST_ID
        )

        assert outcome.record.state == EvidenceState.QUARANTINED
        assert outcome.work_item is not None

    @pytest.mark.asyncio()
    async def test_resolving_the_quarantine_closes_its_work_item(
        self,
        container: LedgerContainer,
        tenant: TenantContext,
    ) -> None:
        body = make_manual_body(**make_unknown_scope_fields())
        held = await container.orchestrator.submit("MANUAL", ChannelSubmission(body=body), tenant, REQUEST_ID)
        assert held.work_item is not None

        outcome = await container.orchestrator.resolve_quarantine(
            held.record.evidence_id,
            {"declared_scope": "LEGAL_ENTITY", "scope_target_id": "LE-DE-01"},
            tenant,
            "req-orch-resolve",
        )

        assert outcome.record.state == EvidenceState.INGESTED
        assert outcome.work_item is not None
        assert outcome.work_item.work_item_id == held.work_item.work_item_id
        assert outcome.work_item.status == "RESOLVED"
        assert outcome.work_item.resolved_at == FROZEN_NOW
        assert await container.escalations.list(tenant.tenant_id, status="OPEN") == []
        resolved_events = await container.audit_service.query(
            tenant.tenant_id, action=AuditAction.ESCALATION_RESOLVED
        )
        assert [e.work_item_id for e in resolved_events] == [held.work_item.work_item_id]

    @pytest.mark.asyncio()
    async def test_failed_resolution_leaves_the_work_item_open(
        self,
        container: LedgerContainer,
        tenant: TenantContext,
    ) -> None:
        body = make_manual_body(**make_unknown_scope_fields())
        held = await container.orchestrator.submit("MANUAL", ChannelSubmission(body=body), tenant, REQUEST_ID)
        assert held.work_item is not None

        with pytest.raises(ValidationError):
            await container.orchestrator.resolve_quarantine(held.record.evidence_id, {}, tenant, REQUEST_ID)

        open_items = await container.escalations.list(tenant.tenant_id, status="OPEN")
        assert [i.work_item_id for i in open_items] == [held.work_item.work_item_id]


# ---------------------------------------------------------------------------
# Silent mutation guard
# ---------------------------------------------------------------------------


class TestSilentMutationGuard:
    @pytest.mark.asyncio()
    async def test_mutation_rejects_the_draft(
        self,
        container: LedgerContainer,
        tenant: TenantContext,
        clock: MutableClock,
    ) -> None:
        orchestrator = orchestrator_with_trimming_manual(container, clock)
        body = make_manual_body(primary_intent="Supplier onboarding for CBAM reporting  ")

        with pytest.raises(ValidationError) as exc_info:
            await orchestrator.submit("MANUAL", ChannelSubmission(body=body), tenant, REQUEST_ID, seal=True)

        assert exc_info.value.error_code == "SILENT_MUTATION_DETECTED"
        assert exc_info.value.details["mutations"] == [{"field": "primary_intent", "kind": "AUTO_TRIM"}]
        records = await container.ledger.list(tenant.tenant_id)
        assert [r.state for r in records] == [EvidenceState.REJECTED]
        actions = [e.action for e in await container.audit_service.query(tenant.tenant_id)]
        assert AuditAction.SILENT_MUTATION_DETECTED in actions
        assert actions[-1] == AuditAction.REJECTED

    @pytest.mark.asyncio()
    async def test_untouched_body_passes(
        self,
        container: LedgerContainer,
        tenant: TenantContext,
        clock: MutableClock,
    ) -> None:
        orchestrator = orchestrator_with_trimming_manual(container, clock)

        outcome = await orchestrator.submit("MANUAL", ChannelSubmission(body=make_manual_body()), tenant, REQUEST_ID)

        assert outcome.record.state == EvidenceState.INGESTED

    @pytest.mark.asyncio()
    async def test_mutation_on_supersede_creates_nothing(
        self,
        container: LedgerContainer,
        tenant: TenantContext,
        clock: MutableClock,
    ) -> None:
        sealed = await container.orchestrator.submit(
            "MANUAL", ChannelSubmission(body=make_manual_body()), tenant, REQUEST_ID, seal=True
        )
        orchestrator = orchestrator_with_trimming_manual(container, clock)
        body = make_manual_body(primary_intent=" Supplier onboarding for CBAM reporting")

        with pytest.raises(ValidationError):
            await orchestrator.supersede(
                sealed.record.evidence_id, "MANUAL", ChannelSubmission(body=body), "Correction", tenant, REQUEST_ID
            )

        stored = await container.ledger.get(tenant.tenant_id, sealed.record.evidence_id)
        assert stored.state == EvidenceState.SEALED
        assert len(await container.ledger.list(tenant.tenant_id)) == 1
