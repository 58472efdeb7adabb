"""API router for aumos-evidence-ledger.

All endpoints are prefixed with /api/v1 (applied in main.py).
The tenant and actor come from verified gateway headers (see auth.py).

Endpoints:
  POST   /evidence/{channel}/drafts                 : Shape channel input into a DRAFT
  POST   /evidence/{channel}                        : Ingest channel input (optionally seal)
  POST   /evidence/{evidence_id}/ingest             : Ingest a DRAFT
  POST   /evidence/{evidence_id}/seal               : Seal an INGESTED record
  POST   /evidence/{evidence_id}/reject             : Reject a non-sealed record
  POST   /evidence/{evidence_id}/quarantine/resolve : Complete a quarantined record
  POST   /evidence/{evidence_id}/retention-override : Set retention_end explicitly
  POST   /evidence/{evidence_id}/supersede          : Replace a SEALED record
  PATCH  /evidence/{evidence_id}                    : Patch declared metadata
  GET    /evidence/{evidence_id}                    : Get a record
  GET    /evidence                                  : List records

  GET    /audit                                     : Query the audit trail
  GET    /audit/verify                              : Verify the audit hash chain

  POST   /mapping-gate/evaluate                     : Evaluate an entity
  GET    /mapping-gate/decisions/{decision_id}      : Get a decision
  GET    /mapping-gate/decisions                    : List decisions

  POST   /parity/verify                             : Cross-channel parity report
  GET    /escalations                               : List escalation work items
"""

import uuid
from typing import Annotated, Any

from fastapi import APIRouter, Body, Depends, Header, Query, Request, Response, status

from aumos_evidence_ledger.api.schemas import (
    AuditEventResponse,
    ChainVerificationResponse,
    EvidenceResponse,
    MappingEvaluateRequest,
    ParityReportResponse,
    ReceiptResponse,
    RejectRequest,
    ResolveQuarantineRequest,
    RetentionOverrideRequest,
    SupersedeRequest,
    SupersedeResponse,
    WorkItemResponse,
)
from aumos_evidence_ledger.auth import TenantContext, get_current_user, get_portal_submission_id, get_request_id
from aumos_evidence_ledger.channels.base import ChannelSubmission
from aumos_evidence_ledger.container import LedgerContainer
from aumos_evidence_ledger.core.enums import AuditAction, CaptureChannel, DatasetType, EvidenceState
from aumos_evidence_ledger.core.orchestrator import IngestionOutcome
from aumos_evidence_ledger.errors import MalformedRequestError, NotFoundError
from aumos_evidence_ledger.mapping_gate.decision import MappingDecision
from aumos_evidence_ledger.observability import get_logger

logger = get_logger(__name__)

router = APIRouter(tags=["evidence-ledger"])

CurrentUser = Annotated[TenantContext, Depends(get_current_user)]
RequestId = Annotated[str, Depends(get_request_id)]
RawBody = Annotated[Any, Body()]


# ---------------------------------------------------------------------------
# Dependency factories
# ---------------------------------------------------------------------------


def get_container(request: Request) -> LedgerContainer:
    """Return the service container built during application startup."""
    return request.app.state.container


Container = Annotated[LedgerContainer, Depends(get_container)]


def parse_channel(channel: str) -> CaptureChannel:
    """Map a channel path segment (e.g. `supplier-portal`) to a CaptureChannel.

    Raises:
        NotFoundError: CHANNEL_NOT_FOUND for an unknown segment.
    """
    try:
        return CaptureChannel(channel.upper().replace("-", "_"))
    except ValueError:
        raise NotFoundError(resource="Channel", resource_id=channel) from None


def _receipt(outcome: IngestionOutcome, response: Response, created: bool) -> ReceiptResponse:
    if outcome.record.state == EvidenceState.QUARANTINED:
        response.status_code = status.HTTP_202_ACCEPTED
    elif outcome.replayed or not created:
        response.status_code = status.HTTP_200_OK
    else:
        response.status_code = status.HTTP_201_CREATED
    return ReceiptResponse.from_outcome(outcome)


# ---------------------------------------------------------------------------
# Evidence ingestion
# ---------------------------------------------------------------------------


@router.post(
    "/evidence/{channel}/drafts",
    response_model=ReceiptResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Shape channel input into a DRAFT",
)
async def create_draft(
    channel: str,
    response: Response,
    tenant: CurrentUser,
    request_id: RequestId,
    container: Container,
    portal_submission_id: Annotated[str | None, Depends(get_portal_submission_id)],
    body: RawBody = None,
    idempotency_key: Annotated[str | None, Header()] = None,
) -> ReceiptResponse:
    """Validate channel-native input and persist it as a DRAFT.

    Args:
        channel: Channel path segment (file-upload, erp-export, erp-api,
            supplier-portal, api-push, manual).
        response: Used to set 202 when the draft is quarantined.
        tenant: Verified caller identity.
        request_id: Correlation id.
        container: Service container.
        portal_submission_id: Gateway-verified portal submission id.
        body: Channel-native JSON object.
        idempotency_key: Optional client idempotency key.

    Returns:
        Receipt for the new draft.
    """
    capture_channel = parse_channel(channel)
    logger.info(
        "POST /evidence/{channel}/drafts",
        capture_channel=capture_channel.value,
        tenant_id=str(tenant.tenant_id),
    )
    outcome = await container.orchestrator.create_draft(
        capture_channel,
        ChannelSubmission(body=body, portal_submission_id=portal_submission_id, idempotency_key=idempotency_key),
        tenant,
        request_id,
    )
    return _receipt(outcome, response, created=True)


@router.post(
    "/evidence/{channel}",
    response_model=ReceiptResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Ingest channel input",
)
async def submit_evidence(
    channel: str,
    response: Response,
    tenant: CurrentUser,
    request_id: RequestId,
    container: Container,
    portal_submission_id: Annotated[str | None, Depends(get_portal_submission_id)],
    body: RawBody = None,
    idempotency_key: Annotated[str | None, Header()] = None,
    seal: bool = Query(default=False, description="Seal the record once ingested"),
    frameworks: list[str] = Query(default=[], description="Frameworks assessed if sealing registers an entity"),
) -> ReceiptResponse:
    """Ingest channel-native input.

    Returns 201 for a new record, 200 for an idempotent replay, and 202 when
    the record was quarantined.
    """
    capture_channel = parse_channel(channel)
    logger.info(
        "POST /evidence/{channel}",
        capture_channel=capture_channel.value,
        tenant_id=str(tenant.tenant_id),
        seal=seal,
    )
    outcome = await container.orchestrator.submit(
        capture_channel,
        ChannelSubmission(body=body, portal_submission_id=portal_submission_id, idempotency_key=idempotency_key),
        tenant,
        request_id,
        seal=seal,
        frameworks=frameworks,
    )
    return _receipt(outcome, response, created=True)


# ---------------------------------------------------------------------------
# Evidence lifecycle
# ---------------------------------------------------------------------------


@router.post("/evidence/{evidence_id}/ingest", response_model=ReceiptResponse, summary="Ingest a DRAFT")
async def ingest_draft(
    evidence_id: uuid.UUID,
    response: Response,
    tenant: CurrentUser,
    request_id: RequestId,
    container: Container,
) -> ReceiptResponse:
    logger.info("POST /evidence/{id}/ingest", evidence_id=str(evidence_id))
    outcome = await container.orchestrator.ingest_draft(evidence_id, tenant, request_id)
    return _receipt(outcome, response, created=False)


@router.post("/evidence/{evidence_id}/seal", response_model=ReceiptResponse, summary="Seal an INGESTED record")
async def seal_evidence(
    evidence_id: uuid.UUID,
    response: Response,
    tenant: CurrentUser,
    request_id: RequestId,
    container: Container,
    frameworks: list[str] = Query(default=[], description="Frameworks assessed if sealing registers an entity"),
) -> ReceiptResponse:
    """Seal a record. Sealed master data registers its entity and is evaluated by the Mapping Gate."""
    logger.info("POST /evidence/{id}/seal", evidence_id=str(evidence_id))
    outcome = await container.orchestrator.seal(evidence_id, tenant, request_id, frameworks=frameworks)
    return _receipt(outcome, response, created=False)


@router.post("/evidence/{evidence_id}/reject", response_model=EvidenceResponse, summary="Reject a record")
async def reject_evidence(
    evidence_id: uuid.UUID,
    body: RejectRequest,
    tenant: CurrentUser,
    request_id: RequestId,
    container: Container,
) -> EvidenceResponse:
    logger.info("POST /evidence/{id}/reject", evidence_id=str(evidence_id), error_code=body.error_code)
    record = await container.ledger.reject(evidence_id, body.error_code, body.reason, tenant, request_id)
    return EvidenceResponse.from_record(record)


@router.post(
    "/evidence/{evidence_id}/quarantine/resolve",
    response_model=EvidenceResponse,
    summary="Complete a quarantined record",
)
async def resolve_quarantine(
    evidence_id: uuid.UUID,
    body: ResolveQuarantineRequest,
    tenant: CurrentUser,
    request_id: RequestId,
    container: Container,
    portal_submission_id: Annotated[str | None, Depends(get_portal_submission_id)],
) -> EvidenceResponse:
    """Move a QUARANTINED record to INGESTED once its cause is resolved.

    A supplier portal record is resolved by the gateway re-sending the
    request with a verified X-Portal-Submission-ID header.
    """
    logger.info("POST /evidence/{id}/quarantine/resolve", evidence_id=str(evidence_id))
    provenance = {"portal_submission_id": portal_submission_id} if portal_submission_id else None
    outcome = await container.orchestrator.resolve_quarantine(
        evidence_id, body.patch, tenant, request_id, provenance_updates=provenance
    )
    return EvidenceResponse.from_record(outcome.record)


@router.post(
    "/evidence/{evidence_id}/retention-override",
    response_model=EvidenceResponse,
    summary="Set retention_end explicitly",
)
async def override_retention(
    evidence_id: uuid.UUID,
    body: RetentionOverrideRequest,
    tenant: CurrentUser,
    request_id: RequestId,
    container: Container,
) -> EvidenceResponse:
    logger.info("POST /evidence/{id}/retention-override", evidence_id=str(evidence_id))
    record = await container.ledger.override_retention(
        evidence_id, body.retention_end, body.reason, tenant, request_id
    )
    return EvidenceResponse.from_record(record)


@router.post(
    "/evidence/{evidence_id}/supersede",
    response_model=SupersedeResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Replace a SEALED record",
)
async def supersede_evidence(
    evidence_id: uuid.UUID,
    body: SupersedeRequest,
    tenant: CurrentUser,
    request_id: RequestId,
    container: Container,
    portal_submission_id: Annotated[str | None, Depends(get_portal_submission_id)],
) -> SupersedeResponse:
    """Supersede a sealed record with a new DRAFT shaped by the named channel.

    The superseded record stays queryable; decisions tied to it are untouched.
    """
    capture_channel = parse_channel(body.channel)
    logger.info(
        "POST /evidence/{id}/supersede",
        evidence_id=str(evidence_id),
        capture_channel=capture_channel.value,
    )
    old, new = await container.orchestrator.supersede(
        evidence_id,
        capture_channel,
        ChannelSubmission(body=body.evidence, portal_submission_id=portal_submission_id),
        body.reason,
        tenant,
        request_id,
    )
    return SupersedeResponse(
        superseded=EvidenceResponse.from_record(old),
        replacement=ReceiptResponse.from_outcome(IngestionOutcome(record=new)),
    )


@router.patch("/evidence/{evidence_id}", response_model=EvidenceResponse, summary="Patch declared metadata")
async def update_evidence(
    evidence_id: uuid.UUID,
    response: Response,
    tenant: CurrentUser,
    request_id: RequestId,
    container: Container,
    body: RawBody = None,
) -> EvidenceResponse:
    """Patch declared metadata of a DRAFT or INGESTED record.

    SEALED and SUPERSEDED records answer 409 EVIDENCE_SEALED_IMMUTABLE.
    """
    if not isinstance(body, dict):
        raise MalformedRequestError(message="Request body must be a JSON object")
    logger.info("PATCH /evidence/{id}", evidence_id=str(evidence_id), fields=sorted(body))
    outcome = await container.orchestrator.update(evidence_id, body, tenant, request_id)
    if outcome.record.state == EvidenceState.QUARANTINED:
        response.status_code = status.HTTP_202_ACCEPTED
    return EvidenceResponse.from_record(outcome.record)


@router.get("/evidence/{evidence_id}", response_model=EvidenceResponse, summary="Get a record")
async def get_evidence(
    evidence_id: uuid.UUID,
    tenant: CurrentUser,
    container: Container,
) -> EvidenceResponse:
    return EvidenceResponse.from_record(await container.ledger.get(tenant.tenant_id, evidence_id))


@router.get("/evidence", response_model=list[EvidenceResponse], summary="List records")
async def list_evidence(
    tenant: CurrentUser,
    container: Container,
    state: EvidenceState | None = Query(default=None),
    dataset_type: DatasetType | None = Query(default=None),
    capture_channel: CaptureChannel | None = Query(default=None),
    page: int = Query(default=1, ge=1),
    page_size: int = Query(default=50, ge=1, le=500),
) -> list[EvidenceResponse]:
    """List the tenant's records, newest first."""
    records = await container.ledger.list(
        tenant.tenant_id,
        state=state,
        dataset_type=dataset_type,
        capture_channel=capture_channel,
        page=page,
        page_size=page_size,
    )
    return [EvidenceResponse.from_record(r) for r in records]


# ---------------------------------------------------------------------------
# Audit trail
# ---------------------------------------------------------------------------


@router.get("/audit", response_model=list[AuditEventResponse], summary="Query the audit trail")
async def query_audit(
    tenant: CurrentUser,
    container: Container,
    evidence_id: uuid.UUID | None = Query(default=None),
    mapping_decision_id: uuid.UUID | None = Query(default=None),
    action: AuditAction | None = Query(default=None),
    request_id: str | None = Query(default=None, description="Correlation id to trace"),
    page: int = Query(default=1, ge=1),
    page_size: int = Query(default=50, ge=1, le=500),
) -> list[AuditEventResponse]:
    """Query the tenant's audit events, oldest first."""
    events = await container.audit_service.query(
        tenant.tenant_id,
        evidence_id=evidence_id,
        mapping_decision_id=mapping_decision_id,
        action=action,
        request_id=request_id,
        page=page,
        page_size=page_size,
    )
    return [AuditEventResponse.from_event(e) for e in events]


@router.get("/audit/verify", response_model=ChainVerificationResponse, summary="Verify the audit hash chain")
async def verify_audit_chain(tenant: CurrentUser, container: Container) -> ChainVerificationResponse:
    logger.info("GET /audit/verify", tenant_id=str(tenant.tenant_id))
    return ChainVerificationResponse.from_result(await container.audit_service.verify_chain(tenant.tenant_id))


# ---------------------------------------------------------------------------
# Mapping Gate
# ---------------------------------------------------------------------------


@router.post(
    "/mapping-gate/evaluate",
    response_model=MappingDecision,
    status_code=status.HTTP_201_CREATED,
    summary="Evaluate an entity",
)
async def evaluate_entity(
    body: MappingEvaluateRequest,
    tenant: CurrentUser,
    request_id: RequestId,
    container: Container,
) -> MappingDecision:
    """Evaluate a registered entity or an inline snapshot and persist the decision.

    Args:
        body: Entity reference, frameworks, lineage evidence, and optional rule version.
        tenant: Verified caller identity.
        request_id: Correlation id.
        container: Service container.

    Returns:
        The MappingDecision. Non-APPROVED decisions also raise a work item.
    """
    logger.info(
        "POST /mapping-gate/evaluate",
        entity_type=body.entity_type.value,
        entity_id=body.entity_id,
        tenant_id=str(tenant.tenant_id),
    )
    return await container.mapping_gate.evaluate_entity(
        tenant=tenant,
        entity_type=body.entity_type,
        request_id=request_id,
        entity_id=body.entity_id,
        entity_snapshot=body.entity_snapshot,
        frameworks=body.frameworks,
        evidence_ids=body.evidence_ids,
        rule_version=body.rule_version,
    )


@router.get(
    "/mapping-gate/decisions/{decision_id}",
    response_model=MappingDecision,
    summary="Get a decision",
)
async def get_decision(decision_id: uuid.UUID, tenant: CurrentUser, container: Container) -> MappingDecision:
    return await container.mapping_gate.get_decision(tenant.tenant_id, decision_id)


@router.get("/mapping-gate/decisions", response_model=list[MappingDecision], summary="List decisions")
async def list_decisions(
    tenant: CurrentUser,
    container: Container,
    entity_id: str | None = Query(default=None),
    evidence_id: uuid.UUID | None = Query(default=None, description="Decisions that relied on this evidence"),
) -> list[MappingDecision]:
    return await container.mapping_gate.list_decisions(tenant.tenant_id, entity_id=entity_id, evidence_id=evidence_id)


# ---------------------------------------------------------------------------
# Parity and escalations
# ---------------------------------------------------------------------------


@router.post("/parity/verify", response_model=ParityReportResponse, summary="Cross-channel parity report")
async def verify_parity(
    tenant: CurrentUser,
    container: Container,
    body: RawBody = None,
) -> ParityReportResponse:
    """Run one sample through every channel adapter and compare the entries.

    Nothing is persisted. The body is `{"declared": {...}, "payload": {...}}`.
    """
    logger.info("POST /parity/verify", tenant_id=str(tenant.tenant_id))
    return ParityReportResponse.from_report(await container.parity.verify(body))


@router.get("/escalations", response_model=list[WorkItemResponse], summary="List escalation work items")
async def list_escalations(
    tenant: CurrentUser,
    container: Container,
    work_item_status: str | None = Query(default=None, alias="status"),
) -> list[WorkItemResponse]:
    """List the tenant's work items, soonest due first."""
    items = await container.escalations.list(tenant.tenant_id, status=work_item_status)
    return [WorkItemResponse.from_item(item) for item in items]
