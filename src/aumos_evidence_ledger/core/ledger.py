"""Evidence Ledger: lifecycle state machine for evidence records.

Lifecycle:

    DRAFT -> INGESTED -> SEALED -> SUPERSEDED (once, with successor reference)
    DRAFT | INGESTED | QUARANTINED -> REJECTED (terminal)
    DRAFT | INGESTED -> QUARANTINED -> INGESTED (via resolve_quarantine)

Every transition is a compare-and-set on the stored state followed by exactly
one audit event. If the audit append fails, the stored state is compensated
back so no transition exists without its audit row. Seals are serialized per
(tenant, evidence_id) and idempotent ingestion per (tenant, idempotency_key).
"""

from __future__ import annotations

import asyncio
import copy
import uuid
from collections.abc import Callable
from datetime import UTC, datetime
from functools import partial
from typing import Any

from aumos_evidence_ledger.auth import TenantContext
from aumos_evidence_ledger.core.audit import AuditService
from aumos_evidence_ledger.core.enums import (
    AuditAction,
    CaptureChannel,
    DatasetType,
    DeclaredScope,
    EvidenceState,
)
from aumos_evidence_ledger.core.evidence import DeclaredMetadata, EvidenceRecord, IngestionRequest, StateTransition
from aumos_evidence_ledger.core.hashing import compute_hashes, hash_payload
from aumos_evidence_ledger.core.interfaces import IChannelRules, IEventPublisher, IEvidenceRepository
from aumos_evidence_ledger.core.locks import KeyedLock
from aumos_evidence_ledger.core.retention import compute_retention_end
from aumos_evidence_ledger.core.validation import (
    DECLARED_FIELDS,
    Violations,
    check_cross_field,
    check_forbidden_fields,
    is_missing,
    metadata_to_body,
    validate_declared_fields,
)
from aumos_evidence_ledger.errors import (
    ConflictError,
    DuplicateIdempotencyKeyError,
    HashingError,
    NotFoundError,
    StorageError,
    ValidationError,
)
from aumos_evidence_ledger.observability import get_logger

logger = get_logger(__name__)

QUARANTINE_UNKNOWN_SCOPE = "UNKNOWN_SCOPE"
QUARANTINE_MISSING_PORTAL_CONTEXT = "MISSING_PORTAL_CONTEXT"

_REJECTABLE_STATES = frozenset({EvidenceState.DRAFT, EvidenceState.INGESTED, EvidenceState.QUARANTINED})
_QUARANTINABLE_STATES = frozenset({EvidenceState.DRAFT, EvidenceState.INGESTED})
_MUTABLE_STATES = frozenset({EvidenceState.DRAFT, EvidenceState.INGESTED})


def _utcnow() -> datetime:
    return datetime.now(UTC)


def _state_conflict(record: EvidenceRecord, operation: str) -> ConflictError:
    if record.state in (EvidenceState.SEALED, EvidenceState.SUPERSEDED):
        code = "EVIDENCE_SEALED_IMMUTABLE"
    elif record.state == EvidenceState.REJECTED:
        code = "EVIDENCE_REJECTED"
    else:
        code = "INVALID_STATE_TRANSITION"
    return ConflictError(
        message=f"Cannot {operation} evidence {record.evidence_id} in state {record.state.value}",
        error_code=code,
        details={"evidence_id": str(record.evidence_id), "state": record.state.value},
    )


class EvidenceLedger:
    """Owns evidence records and their lifecycle.

    Args:
        evidence_repo: Repository implementing IEvidenceRepository.
        audit_service: Append-only audit trail service.
        publisher: Domain event publisher.
        clock: Source of the current UTC time.
        channel_rules: Channel metadata rules re-applied to patches (optional).
    """

    def __init__(
        self,
        evidence_repo: IEvidenceRepository,
        audit_service: AuditService,
        publisher: IEventPublisher,
        clock: Callable[[], datetime] = _utcnow,
        channel_rules: IChannelRules | None = None,
    ) -> None:
        self._repo = evidence_repo
        self._channel_rules = channel_rules
        self._audit = audit_service
        self._publisher = publisher
        self._clock = clock
        self._record_locks = KeyedLock()
        self._idempotency_locks = KeyedLock()

    # ------------------------------------------------------------------
    # Creation and ingestion
    # ------------------------------------------------------------------

    async def create_draft(
        self,
        request: IngestionRequest,
        tenant: TenantContext,
        request_id: str,
        supersedes: uuid.UUID | None = None,
    ) -> EvidenceRecord:
        """Validate a canonical request and persist it as a DRAFT.

        A request carrying a quarantine_reason is persisted and immediately
        moved to QUARANTINED.

        Args:
            request: Canonical request produced by a channel adapter.
            tenant: Verified caller identity.
            request_id: Correlation id.
            supersedes: Predecessor evidence id when called from supersede().

        Returns:
            The persisted record (DRAFT or QUARANTINED).

        Raises:
            ValidationError: If the canonical request violates a declared-field rule.
            DuplicateIdempotencyKeyError: Another live record already holds the request's idempotency key.
        """
        self._validate_request(request)

        now = self._clock()
        record = EvidenceRecord(
            evidence_id=uuid.uuid4(),
            tenant_id=tenant.tenant_id,
            capture_channel=request.capture_channel,
            upstream_system=request.upstream_system,
            metadata=request.metadata,
            payload=request.payload,
            trust_level=request.trust_level,
            state=EvidenceState.DRAFT,
            created_by=tenant.user_id,
            created_at=now,
            provenance=dict(request.provenance),
            idempotency_key=request.idempotency_key,
            supersedes=supersedes,
            updated_at=now,
            state_history=[
                StateTransition(
                    from_state=None,
                    to_state=EvidenceState.DRAFT,
                    actor_id=tenant.user_id,
                    occurred_at=now,
                    request_id=request_id,
                )
            ],
        )

        await self._audit.record(
            tenant_id=tenant.tenant_id,
            action=AuditAction.DRAFT_CREATED,
            actor_id=tenant.user_id,
            actor_role=tenant.role,
            request_id=request_id,
            result_code=EvidenceState.DRAFT.value,
            evidence_id=record.evidence_id,
            context={
                "capture_channel": record.capture_channel.value,
                "dataset_type": record.metadata.dataset_type.value,
                "supersedes": str(supersedes) if supersedes else None,
            },
        )
        try:
            await self._repo.add(record)
        except (StorageError, DuplicateIdempotencyKeyError) as exc:
            await self._audit.record(
                tenant_id=tenant.tenant_id,
                action=AuditAction.REQUEST_REJECTED,
                actor_id=tenant.user_id,
                actor_role=tenant.role,
                request_id=request_id,
                result_code=exc.error_code,
                evidence_id=record.evidence_id,
                context={"compensates": AuditAction.DRAFT_CREATED.value},
            )
            raise

        logger.info(
            "Evidence draft created",
            evidence_id=str(record.evidence_id),
            tenant_id=str(tenant.tenant_id),
            capture_channel=record.capture_channel.value,
        )
        await self._publisher.publish_evidence_transition(
            tenant_id=tenant.tenant_id,
            evidence_id=record.evidence_id,
            from_state=None,
            to_state=EvidenceState.DRAFT.value,
            payload_hash=None,
            correlation_id=request_id,
        )

        if request.quarantine_reason:
            return await self.quarantine(record.evidence_id, request.quarantine_reason, tenant, request_id)
        return record

    async def ingest(
        self,
        target: IngestionRequest | uuid.UUID,
        tenant: TenantContext,
        request_id: str,
    ) -> tuple[EvidenceRecord, bool]:
        """Move a draft (or a new request) to INGESTED.

        For a request with an idempotency_key, a prior live record with the
        same key and payload hash is returned instead of creating a new one;
        the same key with a different payload is a conflict. Requests with
        UNKNOWN scope are ingested into QUARANTINED.

        Args:
            target: A canonical request, or the id of an existing DRAFT.
            tenant: Verified caller identity.
            request_id: Correlation id.

        Returns:
            (record, replayed) where replayed is True for an idempotent replay.

        Raises:
            ConflictError: IDEMPOTENCY_CONFLICT, or the draft is not in DRAFT.
            HashingError: NO_HASH_COMPUTED when payload or metadata is absent.
        """
        if isinstance(target, uuid.UUID):
            async with self._record_locks.hold((tenant.tenant_id, target)):
                record = await self.get(tenant.tenant_id, target)
                if record.state != EvidenceState.DRAFT:
                    raise _state_conflict(record, "ingest")
                return await self._ingest_record(record, tenant, request_id), False

        if not target.idempotency_key:
            record = await self.create_draft(target, tenant, request_id)
            if record.state == EvidenceState.QUARANTINED:
                return record, False
            return await self._ingest_record(record, tenant, request_id), False

        async with self._idempotency_locks.hold((tenant.tenant_id, target.idempotency_key)):
            payload_hash = hash_payload(target.payload)
            prior = await self._find_live_by_key(tenant.tenant_id, target.idempotency_key)
            if prior is not None:
                return await self._replay_or_conflict(prior, payload_hash, tenant, request_id), True

            try:
                record = await self.create_draft(target, tenant, request_id)
            except DuplicateIdempotencyKeyError:
                # Another process stored the key after the lookup above.
                prior = await self._find_live_by_key(tenant.tenant_id, target.idempotency_key)
                if prior is None:
                    raise
                return await self._replay_or_conflict(prior, payload_hash, tenant, request_id), True
            if record.state == EvidenceState.QUARANTINED:
                return record, False
            return await self._ingest_record(record, tenant, request_id), False

    async def _find_live_by_key(self, tenant_id: uuid.UUID, idempotency_key: str) -> EvidenceRecord | None:
        candidates = [r for r in await self._repo.find_by_idempotency_key(tenant_id, idempotency_key) if r.is_live]
        return candidates[-1] if candidates else None

    async def _replay_or_conflict(
        self,
        prior: EvidenceRecord,
        payload_hash: str,
        tenant: TenantContext,
        request_id: str,
    ) -> EvidenceRecord:
        prior_hash = prior.payload_hash or hash_payload(prior.payload)
        if prior_hash != payload_hash:
            logger.warning(
                "Idempotency conflict",
                evidence_id=str(prior.evidence_id),
                tenant_id=str(tenant.tenant_id),
                idempotency_key=prior.idempotency_key,
            )
            raise ConflictError(
                message="Same idempotency key but different payload",
                error_code="IDEMPOTENCY_CONFLICT",
                details={
                    "existing_evidence_id": str(prior.evidence_id),
                    "existing_payload_hash": prior_hash,
                    "provided_payload_hash": payload_hash,
                },
            )

        await self._audit.record(
            tenant_id=tenant.tenant_id,
            action=AuditAction.IDEMPOTENT_REPLAY,
            actor_id=tenant.user_id,
            actor_role=tenant.role,
            request_id=request_id,
            result_code=prior.state.value,
            evidence_id=prior.evidence_id,
            context={"idempotency_key": prior.idempotency_key},
        )
        logger.info("Idempotent replay", evidence_id=str(prior.evidence_id), tenant_id=str(tenant.tenant_id))
        return prior

    async def _ingest_record(self, record: EvidenceRecord, tenant: TenantContext, request_id: str) -> EvidenceRecord:
        payload_hash, metadata_hash = compute_hashes(record.payload, record.metadata)
        now = self._clock()
        retention_end = (
            record.retention_end
            if record.retention_overridden
            else compute_retention_end(record.metadata.retention_policy, now, record.metadata.retention_days)
        )

        def apply(r: EvidenceRecord) -> None:
            r.payload_hash = payload_hash
            r.metadata_hash = metadata_hash
            r.retention_end = retention_end

        if record.metadata.declared_scope == DeclaredScope.UNKNOWN:

            def apply_quarantine(r: EvidenceRecord) -> None:
                apply(r)
                r.quarantine_reason = QUARANTINE_UNKNOWN_SCOPE

            return await self._transition(
                record,
                EvidenceState.QUARANTINED,
                AuditAction.QUARANTINED,
                tenant,
                request_id,
                reason=QUARANTINE_UNKNOWN_SCOPE,
                mutate=apply_quarantine,
                context={"payload_hash": payload_hash, "metadata_hash": metadata_hash},
            )

        return await self._transition(
            record,
            EvidenceState.INGESTED,
            AuditAction.INGESTED,
            tenant,
            request_id,
            mutate=apply,
            context={"payload_hash": payload_hash, "metadata_hash": metadata_hash},
        )

    # ------------------------------------------------------------------
    # Sealing and supersession
    # ------------------------------------------------------------------

    async def seal(self, evidence_id: uuid.UUID, tenant: TenantContext, request_id: str) -> EvidenceRecord:
        """Seal an INGESTED record, making it immutable.

        Concurrent seals of the same record are serialized; the loser sees the
        record already SEALED and receives a conflict. The commit and its
        audit event are shielded from caller cancellation.

        Raises:
            ConflictError: The record is not INGESTED.
            HashingError: The record has no computed hashes.
        """
        async with self._record_locks.hold((tenant.tenant_id, evidence_id)):
            record = await self.get(tenant.tenant_id, evidence_id)
            if record.state != EvidenceState.INGESTED:
                raise _state_conflict(record, "seal")
            if not record.payload_hash or not record.metadata_hash:
                raise HashingError(message=f"Evidence {evidence_id} has no computed hashes")

            sealed = await asyncio.shield(
                self._transition(
                    record,
                    EvidenceState.SEALED,
                    AuditAction.SEALED,
                    tenant,
                    request_id,
                    context={"payload_hash": record.payload_hash, "metadata_hash": record.metadata_hash},
                )
            )
        logger.info(
            "Evidence sealed",
            evidence_id=str(evidence_id),
            tenant_id=str(tenant.tenant_id),
            payload_hash=sealed.payload_hash,
        )
        return sealed

    async def supersede(
        self,
        old_id: uuid.UUID,
        replacement: IngestionRequest,
        reason: str,
        tenant: TenantContext,
        request_id: str,
    ) -> tuple[EvidenceRecord, EvidenceRecord]:
        """Replace a SEALED record with a new DRAFT.

        The old record becomes SUPERSEDED with superseded_by set, and stays
        queryable. Mapping Decisions tied to it are never touched.

        Args:
            old_id: The sealed record to supersede.
            replacement: Canonical request for the successor.
            reason: Why the record is superseded.
            tenant: Verified caller identity.
            request_id: Correlation id.

        Returns:
            (superseded_record, new_draft)
        """
        if not isinstance(reason, str) or is_missing(reason):
            raise ValidationError.for_field("MISSING_SUPERSESSION_REASON", "reason", "reason is required")

        async with self._record_locks.hold((tenant.tenant_id, old_id)):
            old = await self.get(tenant.tenant_id, old_id)
            if old.state != EvidenceState.SEALED:
                if old.state == EvidenceState.SUPERSEDED:
                    raise ConflictError(
                        message=f"Evidence {old_id} is already superseded by {old.superseded_by}",
                        error_code="EVIDENCE_ALREADY_SUPERSEDED",
                    )
                raise ConflictError(
                    message=f"Only SEALED evidence can be superseded; {old_id} is {old.state.value}",
                    error_code="INVALID_STATE_TRANSITION",
                )

            new = await self.create_draft(replacement, tenant, request_id, supersedes=old_id)

            def link(r: EvidenceRecord) -> None:
                r.superseded_by = new.evidence_id

            try:
                superseded = await self._transition(
                    old,
                    EvidenceState.SUPERSEDED,
                    AuditAction.SUPERSEDED,
                    tenant,
                    request_id,
                    reason=reason,
                    mutate=link,
                    context={"superseded_by": str(new.evidence_id), "reason": reason},
                )
            except ConflictError:
                await self.reject(
                    new.evidence_id, "SUPERSESSION_ABORTED", "Predecessor changed state", tenant, request_id
                )
                raise

        return superseded, new

    # ------------------------------------------------------------------
    # Mutation of non-sealed records
    # ------------------------------------------------------------------

    async def update(
        self,
        evidence_id: uuid.UUID,
        patch: dict[str, Any],
        tenant: TenantContext,
        request_id: str,
    ) -> EvidenceRecord:
        """Patch declared metadata of a DRAFT or INGESTED record.

        Hashes and retention are recomputed for INGESTED records.

        Raises:
            ConflictError: EVIDENCE_SEALED_IMMUTABLE for SEALED/SUPERSEDED,
                EVIDENCE_REJECTED for REJECTED, INVALID_STATE_TRANSITION otherwise.
            ValidationError: The patch is invalid.
        """
        async with self._record_locks.hold((tenant.tenant_id, evidence_id)):
            record = await self.get(tenant.tenant_id, evidence_id)
            if record.state not in _MUTABLE_STATES:
                logger.warning(
                    "Rejected update of immutable evidence",
                    evidence_id=str(evidence_id),
                    state=record.state.value,
                )
                raise _state_conflict(record, "update")

            metadata = self._validate_patch(record, patch)
            recompute = record.state == EvidenceState.INGESTED

            def apply(r: EvidenceRecord) -> None:
                r.metadata = metadata
                if recompute:
                    r.payload_hash, r.metadata_hash = compute_hashes(r.payload, metadata)
                    if not r.retention_overridden:
                        r.retention_end = compute_retention_end(
                            metadata.retention_policy, self._clock(), metadata.retention_days
                        )

            updated = await self._transition(
                record,
                record.state,
                AuditAction.UPDATED,
                tenant,
                request_id,
                mutate=apply,
                context={"fields": sorted(patch)},
                record_history=False,
            )

        if recompute and metadata.declared_scope == DeclaredScope.UNKNOWN:
            return await self.quarantine(evidence_id, QUARANTINE_UNKNOWN_SCOPE, tenant, request_id)
        return updated

    async def reject(
        self,
        evidence_id: uuid.UUID,
        error_code: str,
        reason: str,
        tenant: TenantContext,
        request_id: str,
        context: dict[str, Any] | None = None,
    ) -> EvidenceRecord:
        """Move a record to the terminal REJECTED state."""
        async with self._record_locks.hold((tenant.tenant_id, evidence_id)):
            record = await self.get(tenant.tenant_id, evidence_id)
            if record.state not in _REJECTABLE_STATES:
                raise _state_conflict(record, "reject")

            def apply(r: EvidenceRecord) -> None:
                r.rejection_code = error_code

            return await self._transition(
                record,
                EvidenceState.REJECTED,
                AuditAction.REJECTED,
                tenant,
                request_id,
                reason=reason,
                mutate=apply,
                result_code=error_code,
                context=context,
            )

    async def quarantine(
        self,
        evidence_id: uuid.UUID,
        reason_code: str,
        tenant: TenantContext,
        request_id: str,
    ) -> EvidenceRecord:
        """Hold a DRAFT or INGESTED record until its provenance is completed."""
        async with self._record_locks.hold((tenant.tenant_id, evidence_id)):
            record = await self.get(tenant.tenant_id, evidence_id)
            if record.state not in _QUARANTINABLE_STATES:
                raise _state_conflict(record, "quarantine")

            def apply(r: EvidenceRecord) -> None:
                r.quarantine_reason = reason_code

            quarantined = await self._transition(
                record,
                EvidenceState.QUARANTINED,
                AuditAction.QUARANTINED,
                tenant,
                request_id,
                reason=reason_code,
                mutate=apply,
                result_code=reason_code,
            )
        logger.warning(
            "Evidence quarantined",
            evidence_id=str(evidence_id),
            tenant_id=str(tenant.tenant_id),
            reason=reason_code,
        )
        return quarantined

    async def resolve_quarantine(
        self,
        evidence_id: uuid.UUID,
        patch: dict[str, Any],
        tenant: TenantContext,
        request_id: str,
        provenance_updates: dict[str, Any] | None = None,
    ) -> EvidenceRecord:
        """Complete a quarantined record's provenance and move it to INGESTED.

        Args:
            evidence_id: Quarantined record.
            patch: Declared-metadata corrections (e.g. a concrete scope).
            tenant: Verified caller identity.
            request_id: Correlation id.
            provenance_updates: Server-verified provenance (e.g. the portal
                submission id confirmed by the gateway).

        Raises:
            ValidationError: The quarantine cause is still present.
        """
        async with self._record_locks.hold((tenant.tenant_id, evidence_id)):
            record = await self.get(tenant.tenant_id, evidence_id)
            if record.state != EvidenceState.QUARANTINED:
                raise _state_conflict(record, "resolve quarantine for")

            metadata = self._validate_patch(record, patch) if patch else record.metadata
            provenance = {**record.provenance, **(provenance_updates or {})}

            if metadata.declared_scope == DeclaredScope.UNKNOWN:
                raise ValidationError.for_field(
                    "UNKNOWN_SCOPE_UNRESOLVED",
                    "declared_scope",
                    "declared_scope must be resolved to a concrete scope",
                )
            if (
                record.capture_channel == CaptureChannel.SUPPLIER_PORTAL
                and is_missing(provenance.get("portal_submission_id"))
            ):
                raise ValidationError.for_field(
                    QUARANTINE_MISSING_PORTAL_CONTEXT,
                    "portal_submission_id",
                    "A verified supplier portal submission id is required",
                )

            payload_hash, metadata_hash = compute_hashes(record.payload, metadata)
            retention_end = (
                record.retention_end
                if record.retention_overridden
                else compute_retention_end(metadata.retention_policy, self._clock(), metadata.retention_days)
            )
            previous_reason = record.quarantine_reason

            def apply(r: EvidenceRecord) -> None:
                r.metadata = metadata
                r.provenance = provenance
                r.payload_hash = payload_hash
                r.metadata_hash = metadata_hash
                r.retention_end = retention_end
                r.quarantine_reason = None

            return await self._transition(
                record,
                EvidenceState.INGESTED,
                AuditAction.QUARANTINE_RESOLVED,
                tenant,
                request_id,
                reason=previous_reason,
                mutate=apply,
                context={"resolved_reason": previous_reason, "payload_hash": payload_hash},
            )

    async def override_retention(
        self,
        evidence_id: uuid.UUID,
        retention_end: datetime,
        reason: str,
        tenant: TenantContext,
        request_id: str,
    ) -> EvidenceRecord:
        """Explicitly set retention_end on a non-sealed record; always audited."""
        if retention_end.tzinfo is None:
            raise ValidationError.for_field(
                "INVALID_RETENTION_OVERRIDE", "retention_end", "retention_end must be timezone-aware"
            )
        if not isinstance(reason, str) or is_missing(reason):
            raise ValidationError.for_field("MISSING_OVERRIDE_REASON", "reason", "reason is required")

        async with self._record_locks.hold((tenant.tenant_id, evidence_id)):
            record = await self.get(tenant.tenant_id, evidence_id)
            if record.state not in _REJECTABLE_STATES:
                raise _state_conflict(record, "override retention for")
            if retention_end <= record.created_at:
                raise ValidationError.for_field(
                    "INVALID_RETENTION_OVERRIDE", "retention_end", "retention_end must be after created_at"
                )
            previous = record.retention_end

            def apply(r: EvidenceRecord) -> None:
                r.retention_end = retention_end
                r.retention_overridden = True

            updated = await self._transition(
                record,
                record.state,
                AuditAction.RETENTION_OVERRIDDEN,
                tenant,
                request_id,
                reason=reason,
                mutate=apply,
                context={
                    "previous_retention_end": previous.isoformat() if previous else None,
                    "retention_end": retention_end.isoformat(),
                    "reason": reason,
                },
                record_history=False,
            )
        logger.warning("Retention overridden", evidence_id=str(evidence_id), tenant_id=str(tenant.tenant_id))
        return updated

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get(self, tenant_id: uuid.UUID, evidence_id: uuid.UUID) -> EvidenceRecord:
        """Return a record for the tenant.

        Raises:
            NotFoundError: If the record does not exist for this tenant.
        """
        record = await self._repo.get(tenant_id, evidence_id)
        if record is None:
            raise NotFoundError(resource="Evidence", resource_id=str(evidence_id))
        return record

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
        return await self._repo.list(
            tenant_id,
            state=state,
            dataset_type=dataset_type,
            capture_channel=capture_channel,
            page=page,
            page_size=page_size,
        )

    def preview(self, request: IngestionRequest, tenant_id: uuid.UUID, at: datetime) -> EvidenceRecord:
        """Build the INGESTED entry a request would produce, without persisting it.

        Used by the Parity Enforcer to compare channels.
        """
        self._validate_request(request)
        payload_hash, metadata_hash = compute_hashes(request.payload, request.metadata)
        return EvidenceRecord(
            evidence_id=uuid.UUID(int=0),
            tenant_id=tenant_id,
            capture_channel=request.capture_channel,
            upstream_system=request.upstream_system,
            metadata=request.metadata,
            payload=request.payload,
            trust_level=request.trust_level,
            state=EvidenceState.INGESTED,
            created_by=uuid.UUID(int=0),
            created_at=at,
            provenance=dict(request.provenance),
            idempotency_key=request.idempotency_key,
            payload_hash=payload_hash,
            metadata_hash=metadata_hash,
            retention_end=compute_retention_end(
                request.metadata.retention_policy, at, request.metadata.retention_days
            ),
        )

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _validate_request(self, request: IngestionRequest) -> None:
        violations = check_cross_field(request.metadata, request.capture_channel, self._clock().date())
        if request.payload is None or request.payload.is_empty():
            violations.add("MISSING_PAYLOAD", "payload", "payload content is required")
        violations.raise_if_any()

    def _validate_patch(self, record: EvidenceRecord, patch: dict[str, Any]) -> DeclaredMetadata:
        if not isinstance(patch, dict):
            raise ValidationError(message="patch must be a JSON object", error_code="INVALID_REQUEST_BODY")
        check_forbidden_fields(patch)
        unknown = Violations("Non-patchable field")
        for name in sorted(patch):
            if name not in DECLARED_FIELDS:
                unknown.add("NON_PATCHABLE_FIELD", name, f"{name} cannot be changed after creation")
        unknown.raise_if_any()
        merged = {**metadata_to_body(record.metadata), **patch}
        channel_rules = None
        if self._channel_rules is not None:
            channel_rules = partial(self._channel_rules.check_metadata, record.capture_channel)
        return validate_declared_fields(merged, record.capture_channel, self._clock().date(), channel_rules)

    async def _transition(
        self,
        record: EvidenceRecord,
        to_state: EvidenceState,
        action: AuditAction,
        tenant: TenantContext,
        request_id: str,
        reason: str | None = None,
        mutate: Callable[[EvidenceRecord], None] | None = None,
        result_code: str | None = None,
        context: dict[str, Any] | None = None,
        record_history: bool = True,
    ) -> EvidenceRecord:
        """Compare-and-set a record into to_state and append its audit event.

        Raises:
            ConflictError: Another writer changed the stored state first.
        """
        expected = record.state
        now = self._clock()
        updated = copy.deepcopy(record)
        if mutate is not None:
            mutate(updated)
        updated.updated_at = now
        if record_history:
            updated.state_history.append(
                StateTransition(
                    from_state=expected,
                    to_state=to_state,
                    actor_id=tenant.user_id,
                    occurred_at=now,
                    reason=reason,
                    request_id=request_id,
                )
            )
        updated.state = to_state

        if not await self._repo.compare_and_set(updated, expected):
            raise ConflictError(
                message=f"Evidence {record.evidence_id} changed state concurrently",
                error_code="INVALID_STATE_TRANSITION",
                details={"evidence_id": str(record.evidence_id), "expected_state": expected.value},
            )

        try:
            await self._audit.record(
                tenant_id=tenant.tenant_id,
                action=action,
                actor_id=tenant.user_id,
                actor_role=tenant.role,
                request_id=request_id,
                result_code=result_code or to_state.value,
                evidence_id=record.evidence_id,
                context={"from_state": expected.value, "to_state": to_state.value, **(context or {})},
            )
        except Exception:
            logger.error(
                "Audit append failed; compensating evidence state",
                evidence_id=str(record.evidence_id),
                from_state=expected.value,
                to_state=to_state.value,
            )
            await self._repo.compare_and_set(record, to_state)
            raise

        await self._publisher.publish_evidence_transition(
            tenant_id=tenant.tenant_id,
            evidence_id=record.evidence_id,
            from_state=expected.value,
            to_state=to_state.value,
            payload_hash=updated.payload_hash,
            correlation_id=request_id,
        )
        return updated
