"""FILE_UPLOAD channel: operator-uploaded files exported from a declared source system."""

import base64
from typing import Any

from aumos_evidence_ledger.channels.base import ChannelAdapter, ChannelSubmission, ShapingContext
from aumos_evidence_ledger.core.enums import CaptureChannel, PayloadMode, SourceSystem, TrustLevel
from aumos_evidence_ledger.core.evidence import DeclaredMetadata, EvidencePayload
from aumos_evidence_ledger.core.hashing import canonicalize
from aumos_evidence_ledger.core.validation import Violations

ERP_SOURCE_SYSTEMS = frozenset(
    {
        SourceSystem.SAP.value,
        SourceSystem.MICROSOFT_DYNAMICS.value,
        SourceSystem.ODOO.value,
        SourceSystem.ORACLE.value,
        SourceSystem.NETSUITE.value,
        SourceSystem.OTHER.value,
    }
)


def inline_attachment(payload: Any, filename: str = "evidence.json") -> dict[str, str]:
    """Render a structured payload as one inline JSON attachment.

    The attachment bytes are the canonical JSON of the payload, so the
    resulting payload hash equals the structured payload hash.
    """
    return {
        "filename": filename,
        "content_type": "application/json",
        "content_base64": base64.b64encode(canonicalize(payload)).decode("ascii"),
    }


class FileUploadAdapter(ChannelAdapter):
    """At least one attachment; the client declares the upstream source system."""

    channel = CaptureChannel.FILE_UPLOAD
    trust_level = TrustLevel.MEDIUM
    payload_mode = PayloadMode.BYTES
    channel_fields = frozenset({"attachments"})
    allowed_upstream_systems = ERP_SOURCE_SYSTEMS

    def check_channel_requirements(self, body: dict[str, Any], violations: Violations, context: ShapingContext) -> None:
        self.collect_attachments(body, violations, context)

    async def resolve_payload(
        self,
        body: dict[str, Any],
        metadata: DeclaredMetadata,
        context: ShapingContext,
    ) -> EvidencePayload:
        return await self.resolve_attachments(context)

    def synthesize(self, declared: dict[str, Any], payload: Any) -> ChannelSubmission:
        return ChannelSubmission(
            body={
                **declared,
                "upstream_system": SourceSystem.OTHER.value,
                "attachments": [inline_attachment(payload)],
            }
        )
