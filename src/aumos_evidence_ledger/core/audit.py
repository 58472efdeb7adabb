"""Append-only audit trail service.

AuditService is the single write path into the audit trail. Every evidence
state transition, every rejected request, every Mapping Gate decision and
every escalation produces exactly one AuditEvent. There are no update or
delete operations; a correction is written as a new, compensating event.

When the hash chain is enabled, each event stores the previous event's hash
and its own entry_hash = SHA-256(previous_hash || canonical(event body)), so
any later modification of a stored row breaks verification.
"""

from __future__ import annotations

import json
import uuid
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from typing import Any

from aumos_evidence_ledger.core.enums import AuditAction
from aumos_evidence_ledger.core.hashing import canonicalize, sha256_hex
from aumos_evidence_ledger.core.interfaces import IAuditRepository
from aumos_evidence_ledger.core.locks import KeyedLock
from aumos_evidence_ledger.observability import get_logger

logger = get_logger(__name__)

GENESIS_HASH = "0" * 64


@dataclass(frozen=True)
class AuditEvent:
    """One immutable audit trail row.

    Attributes:
        audit_event_id: Generated UUID.
        tenant_id: Owning tenant.
        action: Lifecycle or decision verb.
        actor_id: Acting user or service account.
        actor_role: Role of the actor at the time of the action.
        request_id: Correlation id of the request that caused the event.
        occurred_at: Event timestamp (UTC).
        result_code: Outcome code (target state, error_code, or decision status).
        sequence: Per-tenant monotonically increasing position in the trail.
        evidence_id: Affected evidence record, if any.
        mapping_decision_id: Affected Mapping Decision, if any.
        work_item_id: Affected escalation work item, if any.
        context: Structured, opaque context.
        previous_hash: entry_hash of the preceding event (chain mode).
        entry_hash: This event's chain hash (chain mode).
    """

    audit_event_id: uuid.UUID
    tenant_id: uuid.UUID
    action: AuditAction
    actor_id: uuid.UUID
    actor_role: str
    request_id: str
    occurred_at: datetime
    result_code: str
    sequence: int
    evidence_id: uuid.UUID | None = None
    mapping_decision_id: uuid.UUID | None = None
    work_item_id: uuid.UUID | None = None
    context: dict[str, Any] = field(default_factory=dict)
    previous_hash: str | None = None
    entry_hash: str | None = None

    def body(self) -> dict[str, Any]:
        """Return the hashed portion of the event (everything but the chain hashes)."""
        return {
            "audit_event_id": str(self.audit_event_id),
            "tenant_id": str(self.tenant_id),
            "action": self.action.value,
            "actor_id": str(self.actor_id),
            "actor_role": self.actor_role,
            "request_id": self.request_id,
            "occurred_at": self.occurred_at.isoformat(),
            "result_code": self.result_code,
            "sequence": self.sequence,
            "evidence_id": str(self.evidence_id) if self.evidence_id else None,
            "mapping_decision_id": str(self.mapping_decision_id) if self.mapping_decision_id else None,
            "work_item_id": str(self.work_item_id) if self.work_item_id else None,
            "context": self.context,
        }


def compute_entry_hash(previous_hash: str, event: AuditEvent) -> str:
    """Chain hash of an event given its predecessor's hash."""
    return sha256_hex(previous_hash.encode("ascii") + canonicalize(event.body()))


@dataclass(frozen=True)
class ChainVerification:
    """Result of verifying a tenant's audit chain."""

    valid: bool
    events_checked: int
    broken_at: uuid.UUID | None = None
    reason: str | None = None


class AuditService:
    """Immutable audit trail write orchestration.

    IMPORTANT: This service contains NO update or delete operations.

    Args:
        audit_repo: Append-only repository (the audit wall).
        hash_chain: Link each event to its predecessor with a chain hash.
    """

    def __init__(self, audit_repo: IAuditRepository, hash_chain: bool = True) -> None:
        self._audit_repo = audit_repo
        self._hash_chain = hash_chain
        self._tenant_locks = KeyedLock()

    async def record(
        self,
        tenant_id: uuid.UUID,
        action: AuditAction,
        actor_id: uuid.UUID,
        actor_role: str,
        request_id: str,
        result_code: str,
        evidence_id: uuid.UUID | None = None,
        mapping_decision_id: uuid.UUID | None = None,
        work_item_id: uuid.UUID | None = None,
        context: dict[str, Any] | None = None,
    ) -> AuditEvent:
        """Append one audit event.

        Args:
            tenant_id: Owning tenant.
            action: Lifecycle or decision verb.
            actor_id: Acting user.
            actor_role: Role of the acting user.
            request_id: Correlation id, recorded verbatim.
            result_code: Outcome code.
            evidence_id: Affected evidence, if any.
            mapping_decision_id: Affected decision, if any.
            work_item_id: Affected work item, if any.
            context: Structured context; must be canonically serializable.

        Returns:
            The persisted AuditEvent.
        """
        async with self._tenant_locks.hold(tenant_id):
            latest = await self._audit_repo.latest(tenant_id)
            sequence = latest.sequence + 1 if latest is not None else 1
            event = AuditEvent(
                audit_event_id=uuid.uuid4(),
                tenant_id=tenant_id,
                action=action,
                actor_id=actor_id,
                actor_role=actor_role,
                request_id=request_id,
                occurred_at=datetime.now(UTC),
                result_code=result_code,
                sequence=sequence,
                evidence_id=evidence_id,
                mapping_decision_id=mapping_decision_id,
                work_item_id=work_item_id,
                context=json.loads(canonicalize(context or {})),
            )
            if self._hash_chain:
                previous_hash = latest.entry_hash if latest is not None and latest.entry_hash else GENESIS_HASH
                event = replace(event, previous_hash=previous_hash)
                event = replace(event, entry_hash=compute_entry_hash(previous_hash, event))

            await self._audit_repo.append(event)

        logger.info(
            "Audit event written",
            audit_event_id=str(event.audit_event_id),
            tenant_id=str(tenant_id),
            action=action.value,
            result_code=result_code,
            request_id=request_id,
        )
        return event

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
        """Query the trail for one tenant, oldest first."""
        return await self._audit_repo.query(
            tenant_id=tenant_id,
            evidence_id=evidence_id,
            mapping_decision_id=mapping_decision_id,
            action=action,
            request_id=request_id,
            page=page,
            page_size=page_size,
        )

    async def verify_chain(self, tenant_id: uuid.UUID) -> ChainVerification:
        """Recompute the hash chain for a tenant and report the first break.

        Args:
            tenant_id: Tenant whose trail is verified.

        Returns:
            ChainVerification with valid=False and the first offending event
            when any stored event does not match its recomputed hash.
        """
        events = await self._audit_repo.chain(tenant_id)
        previous_hash = GENESIS_HASH
        for index, event in enumerate(events, start=1):
            if event.sequence != index:
                return self._broken(tenant_id, index - 1, event, "sequence gap")
            if event.entry_hash is None:
                previous_hash = GENESIS_HASH
                continue
            if event.previous_hash != previous_hash:
                return self._broken(tenant_id, index - 1, event, "previous_hash mismatch")
            if compute_entry_hash(previous_hash, event) != event.entry_hash:
                return self._broken(tenant_id, index - 1, event, "entry_hash mismatch")
            previous_hash = event.entry_hash
        return ChainVerification(valid=True, events_checked=len(events))

    @staticmethod
    def _broken(tenant_id: uuid.UUID, checked: int, event: AuditEvent, reason: str) -> ChainVerification:
        logger.critical(
            "Audit chain verification failed",
            tenant_id=str(tenant_id),
            audit_event_id=str(event.audit_event_id),
            reason=reason,
        )
        return ChainVerification(
            valid=False,
            events_checked=checked,
            broken_at=event.audit_event_id,
            reason=reason,
        )
