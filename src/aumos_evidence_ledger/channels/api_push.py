"""API_PUSH channel: system-to-system pushes of structured data or digest references.

The caller's external_reference_id is the idempotency anchor: the key is
`{tenant_id}:{dataset_type}:{external_reference_id}`, so a retried push with
the same payload returns the original receipt.
"""

import re
from typing import Any

from aumos_evidence_ledger.auth import TenantContext
from aumos_evidence_ledger.channels.base import ChannelAdapter, ChannelSubmission, ShapingContext
from aumos_evidence_ledger.core.enums import CaptureChannel, PayloadMode, SourceSystem, TrustLevel
from aumos_evidence_ledger.core.evidence import DeclaredMetadata, EvidencePayload
from aumos_evidence_ledger.core.validation import Violations

_SHA256_HEX = re.compile(r"^[0-9a-f]{64}$")


class ApiPushAdapter(ChannelAdapter):
    """STRUCTURED payload or a digest-only reference; attachments are forbidden."""

    channel = CaptureChannel.API_PUSH
    trust_level = TrustLevel.MEDIUM
    payload_mode = PayloadMode.STRUCTURED
    channel_fields = frozenset({"payload", "digest_reference", "external_reference_id"})
    forbidden_fields = {"attachments": "METHOD_DISALLOWS_FILE"}
    allowed_upstream_systems = frozenset(s.value for s in SourceSystem) - {
        SourceSystem.SUPPLIER_PORTAL.value,
        SourceSystem.INTERNAL_MANUAL.value,
    }

    def check_channel_requirements(self, body: dict[str, Any], violations: Violations, context: ShapingContext) -> None:
        self.require_string(body, "external_reference_id", violations)

        has_payload = body.get("payload") is not None
        has_digest = body.get("digest_reference") is not None
        if has_payload and has_digest:
            violations.add(
                "INVALID_PAYLOAD",
                "payload",
                "Send either payload or digest_reference, not both",
            )
        elif not has_payload and not has_digest:
            violations.add("MISSING_CHANNEL_FIELD", "payload", "payload or digest_reference is required")
        elif has_digest:
            digest = body["digest_reference"]
            if not isinstance(digest, str) or not _SHA256_HEX.match(digest):
                violations.add(
                    "INVALID_DIGEST_REFERENCE",
                    "digest_reference",
                    "digest_reference must be a lowercase SHA-256 hex digest",
                )
        elif not isinstance(body["payload"], dict) or not body["payload"]:
            violations.add("INVALID_PAYLOAD", "payload", "payload must be a non-empty JSON object")

    async def resolve_payload(
        self,
        body: dict[str, Any],
        metadata: DeclaredMetadata,
        context: ShapingContext,
    ) -> EvidencePayload:
        if body.get("digest_reference") is not None:
            return EvidencePayload(mode=PayloadMode.DIGEST_REFERENCE, digest_reference=body["digest_reference"])
        return EvidencePayload(mode=PayloadMode.STRUCTURED, structured=body["payload"])

    def build_provenance(
        self,
        body: dict[str, Any],
        submission: ChannelSubmission,
        tenant: TenantContext,
        context: ShapingContext,
    ) -> dict[str, Any]:
        return {"external_reference_id": body["external_reference_id"]}

    def idempotency_key(
        self,
        body: dict[str, Any],
        metadata: DeclaredMetadata,
        submission: ChannelSubmission,
        tenant: TenantContext,
    ) -> str | None:
        return f"{tenant.tenant_id}:{metadata.dataset_type.value}:{body['external_reference_id']}"

    def synthesize(self, declared: dict[str, Any], payload: Any) -> ChannelSubmission:
        return ChannelSubmission(
            body={
                **declared,
                "upstream_system": SourceSystem.OTHER.value,
                "external_reference_id": "parity-reference",
                "payload": payload,
            }
        )
