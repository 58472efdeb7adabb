"""Domain types for evidence records and the canonical ingestion request.

Channel adapters build an IngestionRequest from channel-native input; the
ledger turns it into an EvidenceRecord and tracks its lifecycle. Once a record
is SEALED its fields are frozen: only `state` and `superseded_by` may still be
assigned (for the single SEALED -> SUPERSEDED transition).
"""

from __future__ import annotations

import base64
import hashlib
import uuid
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any

from aumos_evidence_ledger.core.enums import (
    CaptureChannel,
    DatasetType,
    DeclaredScope,
    EvidenceState,
    LegalBasis,
    PayloadMode,
    RetentionPolicy,
    TrustLevel,
)
from aumos_evidence_ledger.errors import ConflictError

# Fields that may still be assigned on a SEALED record.
_SEALED_WRITABLE_FIELDS = frozenset({"state", "superseded_by", "updated_at"})

_IMMUTABLE_STATES = frozenset({EvidenceState.SEALED, EvidenceState.SUPERSEDED})
RETIRED_STATES = frozenset({EvidenceState.REJECTED, EvidenceState.SUPERSEDED})


@dataclass(frozen=True)
class DeclaredMetadata:
    """Caller-declared metadata common to every channel.

    These are exactly the fields covered by the metadata hash. Channel-specific
    provenance (snapshot timestamps, portal ids, entry notes) lives on the
    request's provenance mapping instead.
    """

    dataset_type: DatasetType
    declared_scope: DeclaredScope
    primary_intent: str
    purpose_tags: tuple[str, ...]
    contains_personal_data: bool
    retention_policy: RetentionPolicy
    scope_target_id: str | None = None
    legal_basis: LegalBasis | None = None
    retention_days: int | None = None
    unlinked_reason: str | None = None
    resolution_due_date: date | None = None

    def to_canonical(self) -> dict[str, Any]:
        """Return the order-independent representation used for hashing and parity."""
        return {
            "dataset_type": self.dataset_type.value,
            "declared_scope": self.declared_scope.value,
            "scope_target_id": self.scope_target_id,
            "primary_intent": self.primary_intent,
            "purpose_tags": sorted(self.purpose_tags),
            "contains_personal_data": self.contains_personal_data,
            "legal_basis": self.legal_basis.value if self.legal_basis else None,
            "retention_policy": self.retention_policy.value,
            "retention_days": self.retention_days,
            "unlinked_reason": self.unlinked_reason,
            "resolution_due_date": self.resolution_due_date.isoformat() if self.resolution_due_date else None,
        }


@dataclass(frozen=True)
class Attachment:
    """One file delivered with a BYTES payload.

    Attributes:
        filename: Original file name as declared by the sender.
        content_type: Declared MIME type.
        content: Raw file bytes (resolved from inline base64 or file storage).
        storage_uri: Location in the file storage collaborator, when the bytes
            were fetched rather than sent inline.
    """

    filename: str
    content_type: str
    content: bytes
    storage_uri: str | None = None

    @property
    def sha256(self) -> str:
        return hashlib.sha256(self.content).hexdigest()

    def descriptor(self) -> dict[str, Any]:
        """Describe the attachment without its content."""
        return {
            "filename": self.filename,
            "content_type": self.content_type,
            "size_bytes": len(self.content),
            "sha256": self.sha256,
            "storage_uri": self.storage_uri,
        }


@dataclass(frozen=True)
class EvidencePayload:
    """The payload of an evidence record, in one of the channel payload modes."""

    mode: PayloadMode
    attachments: tuple[Attachment, ...] = ()
    structured: Any = None
    digest_reference: str | None = None

    @property
    def size_bytes(self) -> int:
        return sum(len(a.content) for a in self.attachments)

    def is_empty(self) -> bool:
        if self.mode == PayloadMode.BYTES:
            return not self.attachments
        if self.mode == PayloadMode.DIGEST_REFERENCE:
            return not self.digest_reference
        return self.structured is None

    def to_storage(self) -> dict[str, Any]:
        """Serialize for persistence (attachment bytes as base64)."""
        return {
            "mode": self.mode.value,
            "attachments": [
                {
                    "filename": a.filename,
                    "content_type": a.content_type,
                    "content_base64": base64.b64encode(a.content).decode("ascii"),
                    "storage_uri": a.storage_uri,
                }
                for a in self.attachments
            ],
            "structured": self.structured,
            "digest_reference": self.digest_reference,
        }

    @classmethod
    def from_storage(cls, data: dict[str, Any]) -> EvidencePayload:
        return cls(
            mode=PayloadMode(data["mode"]),
            attachments=tuple(
                Attachment(
                    filename=a["filename"],
                    content_type=a["content_type"],
                    content=base64.b64decode(a["content_base64"]),
                    storage_uri=a.get("storage_uri"),
                )
                for a in data.get("attachments", [])
            ),
            structured=data.get("structured"),
            digest_reference=data.get("digest_reference"),
        )


@dataclass(frozen=True)
class IngestionRequest:
    """Canonical, channel-independent creation request produced by an adapter.

    Attributes:
        capture_channel: Channel the request arrived through (from the route,
            never from client fields).
        upstream_system: Declared or forced origin system.
        metadata: Declared metadata (hashed).
        payload: The payload in the channel's payload mode.
        trust_level: Provenance trust derived from the channel.
        provenance: Channel-specific fields, excluded from parity and hashing.
        idempotency_key: Optional key for replay detection.
        quarantine_reason: Set by an adapter when the request is valid but its
            provenance is incomplete (e.g. MISSING_PORTAL_CONTEXT).
    """

    capture_channel: CaptureChannel
    upstream_system: str
    metadata: DeclaredMetadata
    payload: EvidencePayload
    trust_level: TrustLevel
    provenance: dict[str, Any] = field(default_factory=dict)
    idempotency_key: str | None = None
    quarantine_reason: str | None = None


@dataclass(frozen=True)
class StateTransition:
    """One entry of an evidence record's append-only state history."""

    from_state: EvidenceState | None
    to_state: EvidenceState
    actor_id: uuid.UUID
    occurred_at: datetime
    reason: str | None = None
    request_id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "from_state": self.from_state.value if self.from_state else None,
            "to_state": self.to_state.value,
            "actor_id": str(self.actor_id),
            "occurred_at": self.occurred_at.isoformat(),
            "reason": self.reason,
            "request_id": self.request_id,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> StateTransition:
        return cls(
            from_state=EvidenceState(data["from_state"]) if data.get("from_state") else None,
            to_state=EvidenceState(data["to_state"]),
            actor_id=uuid.UUID(data["actor_id"]),
            occurred_at=datetime.fromisoformat(data["occurred_at"]),
            reason=data.get("reason"),
            request_id=data.get("request_id"),
        )


@dataclass
class EvidenceRecord:
    """A ledger entry. Immutable once SEALED.

    Attributes:
        evidence_id: Generated UUID.
        tenant_id: Owning tenant.
        capture_channel: Channel the evidence arrived through.
        upstream_system: Declared origin system or INTERNAL_MANUAL.
        metadata: Declared metadata.
        payload: Payload as received (or fetched server-side).
        trust_level: Provenance trust.
        state: Lifecycle state.
        created_by: Actor that created the record.
        created_at: Creation timestamp (UTC).
        provenance: Channel-specific provenance fields.
        idempotency_key: Optional replay key.
        payload_hash: SHA-256 of the canonical payload, set on ingest.
        metadata_hash: SHA-256 of the canonical declared metadata, set on ingest.
        retention_end: Derived retention end, set on ingest.
        state_history: Append-only list of transitions.
        supersedes: Predecessor evidence id when this record replaces another.
        superseded_by: Successor evidence id once SUPERSEDED.
        quarantine_reason: Reason code while QUARANTINED.
        rejection_code: Error code that caused REJECTED.
        retention_overridden: True when retention_end was set explicitly.
        updated_at: Last modification timestamp.
    """

    evidence_id: uuid.UUID
    tenant_id: uuid.UUID
    capture_channel: CaptureChannel
    upstream_system: str
    metadata: DeclaredMetadata
    payload: EvidencePayload
    trust_level: TrustLevel
    state: EvidenceState
    created_by: uuid.UUID
    created_at: datetime
    provenance: dict[str, Any] = field(default_factory=dict)
    idempotency_key: str | None = None
    payload_hash: str | None = None
    metadata_hash: str | None = None
    retention_end: datetime | None = None
    state_history: list[StateTransition] = field(default_factory=list)
    supersedes: uuid.UUID | None = None
    superseded_by: uuid.UUID | None = None
    quarantine_reason: str | None = None
    rejection_code: str | None = None
    retention_overridden: bool = False
    updated_at: datetime | None = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "_guard_armed", True)

    def __setattr__(self, name: str, value: Any) -> None:
        if self.__dict__.get("_guard_armed"):
            state = self.__dict__.get("state")
            if state == EvidenceState.SUPERSEDED or (
                state in _IMMUTABLE_STATES and name not in _SEALED_WRITABLE_FIELDS
            ):
                raise ConflictError(
                    message=f"Evidence {self.evidence_id} is {state.value} and cannot be modified",
                    error_code="EVIDENCE_SEALED_IMMUTABLE",
                    details={"evidence_id": str(self.evidence_id), "field": name},
                )
        object.__setattr__(self, name, value)

    @property
    def is_immutable(self) -> bool:
        return self.state in _IMMUTABLE_STATES

    @property
    def is_live(self) -> bool:
        return self.state not in RETIRED_STATES

    @property
    def claims_idempotency_key(self) -> bool:
        """True while no other record may be stored under this record's idempotency key.

        A successor inherits its predecessor's key, so only the record that
        opened a supersession chain claims it.
        """
        return self.idempotency_key is not None and self.supersedes is None and self.is_live

    @property
    def structured_payload(self) -> Any:
        return self.payload.structured


@dataclass(frozen=True)
class Receipt:
    """Response returned for every successful ingestion call."""

    evidence_id: uuid.UUID
    state: EvidenceState
    payload_hash: str | None
    metadata_hash: str | None
    created_at: datetime
    retention_end: datetime | None
    replayed: bool = False

    @classmethod
    def for_record(cls, record: EvidenceRecord, replayed: bool = False) -> Receipt:
        return cls(
            evidence_id=record.evidence_id,
            state=record.state,
            payload_hash=record.payload_hash,
            metadata_hash=record.metadata_hash,
            created_at=record.created_at,
            retention_end=record.retention_end,
            replayed=replayed,
        )
