"""SUPPLIER_PORTAL channel: structured submissions from the supplier portal.

Channel identity comes from the gateway: the portal submission id is read from
the X-Portal-Submission-ID header that the gateway sets after verifying the
submission token. A body field with the same name is rejected. Without a
verified id the record is still persisted, then held in QUARANTINED with
reason MISSING_PORTAL_CONTEXT.
"""

from typing import Any

from aumos_evidence_ledger.auth import TenantContext
from aumos_evidence_ledger.channels.base import ChannelAdapter, ChannelSubmission, ShapingContext
from aumos_evidence_ledger.core.enums import CaptureChannel, PayloadMode, SourceSystem, TrustLevel
from aumos_evidence_ledger.core.evidence import DeclaredMetadata, EvidencePayload
from aumos_evidence_ledger.core.ledger import QUARANTINE_MISSING_PORTAL_CONTEXT
from aumos_evidence_ledger.core.validation import Violations
from aumos_evidence_ledger.observability import get_logger

logger = get_logger(__name__)


class SupplierPortalAdapter(ChannelAdapter):
    """Structured object payload; upstream system forced to SUPPLIER_PORTAL."""

    channel = CaptureChannel.SUPPLIER_PORTAL
    trust_level = TrustLevel.HIGH
    payload_mode = PayloadMode.STRUCTURED
    channel_fields = frozenset({"payload"})
    forbidden_fields = {
        "portal_submission_id": "FORBIDDEN_CLIENT_FIELD",
        "attachments": "METHOD_DISALLOWS_FILE",
    }
    forced_upstream_system = SourceSystem.SUPPLIER_PORTAL.value

    def check_channel_requirements(self, body: dict[str, Any], violations: Violations, context: ShapingContext) -> None:
        payload = body.get("payload")
        if payload is None:
            violations.add("MISSING_CHANNEL_FIELD", "payload", "payload is required")
        elif not isinstance(payload, dict) or not payload:
            violations.add("INVALID_PAYLOAD", "payload", "payload must be a non-empty JSON object")

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
        return {"portal_submission_id": submission.portal_submission_id}

    def quarantine_reason(self, submission: ChannelSubmission) -> str | None:
        if submission.portal_submission_id:
            return None
        logger.warning("Supplier portal submission without verified portal context")
        return QUARANTINE_MISSING_PORTAL_CONTEXT

    def synthesize(self, declared: dict[str, Any], payload: Any) -> ChannelSubmission:
        return ChannelSubmission(body={**declared, "payload": payload}, portal_submission_id="parity-portal-submission")
