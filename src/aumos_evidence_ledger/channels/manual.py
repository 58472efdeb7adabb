"""MANUAL channel: operator-typed entries with a server-captured attestation.

The attestation (who entered the data, when, through which session) is
recorded by the server from the verified identity. Any attempt by the client
to supply attestor fields is treated as forgery.
"""

from typing import Any

from aumos_evidence_ledger.auth import TenantContext
from aumos_evidence_ledger.channels.base import ChannelAdapter, ChannelSubmission, ShapingContext
from aumos_evidence_ledger.core.enums import (
    CaptureChannel,
    DatasetType,
    DeclaredScope,
    PayloadMode,
    SourceSystem,
    TrustLevel,
)
from aumos_evidence_ledger.core.evidence import DeclaredMetadata, EvidencePayload
from aumos_evidence_ledger.core.validation import Violations, is_missing, is_placeholder

MIN_ENTRY_NOTES_LENGTH = 20

ATTESTOR_FIELDS = (
    "attestor_user_id",
    "attested_by",
    "attested_by_email",
    "attestation_method",
    "attested_at_utc",
)

# Scopes an operator may declare per dataset type when typing data in by hand.
MANUAL_DATASET_SCOPES: dict[DatasetType, frozenset[DeclaredScope]] = {
    DatasetType.PARTNER_MASTER: frozenset(
        {DeclaredScope.ENTIRE_ORGANIZATION, DeclaredScope.LEGAL_ENTITY, DeclaredScope.UNKNOWN}
    ),
    DatasetType.PRODUCT_MASTER: frozenset(
        {
            DeclaredScope.ENTIRE_ORGANIZATION,
            DeclaredScope.LEGAL_ENTITY,
            DeclaredScope.PRODUCT_FAMILY,
            DeclaredScope.UNKNOWN,
        }
    ),
    DatasetType.BOM: frozenset(
        {DeclaredScope.LEGAL_ENTITY, DeclaredScope.PRODUCT_FAMILY, DeclaredScope.SITE, DeclaredScope.UNKNOWN}
    ),
    DatasetType.CERTIFICATE: frozenset(
        {DeclaredScope.LEGAL_ENTITY, DeclaredScope.SITE, DeclaredScope.PRODUCT_FAMILY, DeclaredScope.UNKNOWN}
    ),
    DatasetType.TEST_REPORT: frozenset(
        {DeclaredScope.LEGAL_ENTITY, DeclaredScope.SITE, DeclaredScope.PRODUCT_FAMILY, DeclaredScope.UNKNOWN}
    ),
}


def _placeholder_paths(value: Any, path: str = "payload") -> list[str]:
    if isinstance(value, dict):
        return [p for key in sorted(value) for p in _placeholder_paths(value[key], f"{path}.{key}")]
    if isinstance(value, list):
        return [p for index, item in enumerate(value) for p in _placeholder_paths(item, f"{path}[{index}]")]
    return [path] if is_placeholder(value) else []


class ManualEntryAdapter(ChannelAdapter):
    """Structured payload typed by an operator; upstream forced to INTERNAL_MANUAL."""

    channel = CaptureChannel.MANUAL
    trust_level = TrustLevel.LOW
    payload_mode = PayloadMode.STRUCTURED
    channel_fields = frozenset({"payload", "entry_notes"})
    forbidden_fields = {
        **{name: "ATTESTOR_FORGERY_ATTEMPT" for name in ATTESTOR_FIELDS},
        "attachments": "METHOD_DISALLOWS_FILE",
    }
    forced_upstream_system = SourceSystem.INTERNAL_MANUAL.value

    def check_channel_requirements(self, body: dict[str, Any], violations: Violations, context: ShapingContext) -> None:
        notes = body.get("entry_notes")
        if not isinstance(notes, str) or is_placeholder(notes) or len(notes.strip()) < MIN_ENTRY_NOTES_LENGTH:
            violations.add(
                "INVALID_ATTESTATION_NOTES",
                "entry_notes",
                f"entry_notes must be at least {MIN_ENTRY_NOTES_LENGTH} characters and not a placeholder",
            )

        payload = body.get("payload")
        if payload is None:
            violations.add("MISSING_CHANNEL_FIELD", "payload", "payload is required")
            return
        if not isinstance(payload, dict) or is_missing(payload):
            violations.add("INVALID_PAYLOAD", "payload", "payload must be a non-empty JSON object")
            return
        for path in _placeholder_paths(payload):
            violations.add("PLACEHOLDER_VALUE", path, f"{path} must not be a placeholder")

    def check_metadata_rules(self, metadata: DeclaredMetadata, violations: Violations) -> None:
        allowed = MANUAL_DATASET_SCOPES.get(metadata.dataset_type)
        if allowed is not None and metadata.declared_scope not in allowed:
            violations.add(
                "INVALID_DATASET_SCOPE_COMBINATION",
                "declared_scope",
                f"declared_scope={metadata.declared_scope.value} is not allowed for "
                f"{metadata.dataset_type.value} manual entries",
            )

    async def resolve_payload(
        self,
        body: dict[str, Any],
        metadata: DeclaredMetadata,
        context: ShapingContext,
    ) -> EvidencePayload:
        return EvidencePayload(mode=PayloadMode.STRUCTURED, structured=body["payload"])

    def build_provenance(
        self,
        body: dict[str, Any],
        submission: ChannelSubmission,
        tenant: TenantContext,
        context: ShapingContext,
    ) -> dict[str, Any]:
        return {
            "entry_notes": body["entry_notes"],
            "attestation": {
                "attestor_user_id": str(tenant.user_id),
                "attestor_role": tenant.role,
                "attestation_method": "AUTHENTICATED_SESSION",
                "attested_at_utc": self._clock().isoformat(),
            },
        }

    def synthesize(self, declared: dict[str, Any], payload: Any) -> ChannelSubmission:
        return ChannelSubmission(
            body={
                **declared,
                "entry_notes": "Parity sample entered through the manual channel",
                "payload": payload,
            }
        )
