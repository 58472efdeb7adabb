"""ERP channels.

- ErpExportAdapter      : scheduled batch export files (ERP_EXPORT)
- ErpApiAdapter         : live connector pull, fetched server-side (ERP_API)
- StaticSnapshotConnector: in-process connector returning fixed snapshots
"""

from datetime import date
from typing import Any

from aumos_evidence_ledger.auth import TenantContext
from aumos_evidence_ledger.channels.base import ChannelAdapter, ChannelSubmission, ShapingContext
from aumos_evidence_ledger.channels.file_upload import ERP_SOURCE_SYSTEMS, inline_attachment
from aumos_evidence_ledger.core.enums import CaptureChannel, DatasetType, PayloadMode, SourceSystem, TrustLevel
from aumos_evidence_ledger.core.evidence import DeclaredMetadata, EvidencePayload
from aumos_evidence_ledger.core.interfaces import IErpConnector
from aumos_evidence_ledger.core.validation import Violations
from aumos_evidence_ledger.errors import UpstreamError
from aumos_evidence_ledger.observability import get_logger

logger = get_logger(__name__)


class ErpExportAdapter(ChannelAdapter):
    """Batch export files with a declared snapshot date and export job id."""

    channel = CaptureChannel.ERP_EXPORT
    trust_level = TrustLevel.MEDIUM
    payload_mode = PayloadMode.BYTES
    channel_fields = frozenset({"attachments", "snapshot_date", "export_job_id"})
    allowed_upstream_systems = ERP_SOURCE_SYSTEMS

    def check_channel_requirements(self, body: dict[str, Any], violations: Violations, context: ShapingContext) -> None:
        self.require_string(body, "snapshot_date", violations)
        self.require_string(body, "export_job_id", violations)
        self.collect_attachments(body, violations, context)

    def check_channel_cross_field(
        self,
        body: dict[str, Any],
        metadata: DeclaredMetadata,
        violations: Violations,
        context: ShapingContext,
    ) -> None:
        self.check_snapshot_date(body, violations, context)

    async def resolve_payload(
        self,
        body: dict[str, Any],
        metadata: DeclaredMetadata,
        context: ShapingContext,
    ) -> EvidencePayload:
        return await self.resolve_attachments(context)

    def build_provenance(
        self,
        body: dict[str, Any],
        submission: ChannelSubmission,
        tenant: TenantContext,
        context: ShapingContext,
    ) -> dict[str, Any]:
        return {"snapshot_date": body["snapshot_date"], "export_job_id": body["export_job_id"]}

    def synthesize(self, declared: dict[str, Any], payload: Any) -> ChannelSubmission:
        return ChannelSubmission(
            body={
                **declared,
                "upstream_system": SourceSystem.OTHER.value,
                "snapshot_date": self._clock().date().isoformat(),
                "export_job_id": "parity-export",
                "attachments": [inline_attachment(payload)],
            }
        )


class ErpApiAdapter(ChannelAdapter):
    """Live ERP pull: the payload is fetched server-side through the connector.

    Args:
        erp_connector: Connector used to fetch snapshots.
        **kwargs: Passed to ChannelAdapter.
    """

    channel = CaptureChannel.ERP_API
    trust_level = TrustLevel.HIGH
    payload_mode = PayloadMode.SERVER_FETCH
    channel_fields = frozenset({"snapshot_date", "connector_reference"})
    forbidden_fields = {
        "payload": "CLIENT_PAYLOAD_NOT_ALLOWED",
        "attachments": "CLIENT_PAYLOAD_NOT_ALLOWED",
        "digest_reference": "CLIENT_PAYLOAD_NOT_ALLOWED",
    }

    def __init__(self, erp_connector: IErpConnector | None = None, **kwargs: Any) -> None:
        super().__init__(**kwargs)
        self._erp_connector = erp_connector

    def check_channel_requirements(self, body: dict[str, Any], violations: Violations, context: ShapingContext) -> None:
        self.require_string(body, "snapshot_date", violations)
        self.require_string(body, "connector_reference", violations)

    def check_channel_cross_field(
        self,
        body: dict[str, Any],
        metadata: DeclaredMetadata,
        violations: Violations,
        context: ShapingContext,
    ) -> None:
        self.check_snapshot_date(body, violations, context)

    def resolve_upstream_system(self, body: dict[str, Any]) -> str:
        if self._erp_connector is None:
            return SourceSystem.OTHER.value
        return self._erp_connector.source_system

    async def resolve_payload(
        self,
        body: dict[str, Any],
        metadata: DeclaredMetadata,
        context: ShapingContext,
    ) -> EvidencePayload:
        if self._erp_connector is None:
            raise UpstreamError(
                message="ERP connector is not configured",
                error_code="ERP_CONNECTOR_UNAVAILABLE",
            )
        snapshot_date = context.snapshot_date or date.fromisoformat(body["snapshot_date"])
        snapshot = await self.call_upstream(
            self._erp_connector.fetch_snapshot(body["connector_reference"], metadata.dataset_type, snapshot_date),
            "erp_connector",
        )
        logger.info(
            "ERP snapshot fetched",
            connector_reference=body["connector_reference"],
            dataset_type=metadata.dataset_type.value,
        )
        return EvidencePayload(mode=PayloadMode.SERVER_FETCH, structured=snapshot)

    def build_provenance(
        self,
        body: dict[str, Any],
        submission: ChannelSubmission,
        tenant: TenantContext,
        context: ShapingContext,
    ) -> dict[str, Any]:
        return {
            "snapshot_date": body["snapshot_date"],
            "connector_reference": body["connector_reference"],
            "fetched_at": self._clock().isoformat(),
        }

    def synthesize(self, declared: dict[str, Any], payload: Any) -> ChannelSubmission:
        return ChannelSubmission(
            body={
                **declared,
                "snapshot_date": self._clock().date().isoformat(),
                "connector_reference": "parity-connector",
            }
        )


class StaticSnapshotConnector:
    """Connector that serves fixed snapshots from memory.

    Serves `snapshots[connector_reference]` when present, otherwise `default`.

    Args:
        default: Snapshot returned for unknown connector references.
        snapshots: Per-connector-reference snapshots.
        source_system: Reported upstream system.
    """

    def __init__(
        self,
        default: Any = None,
        snapshots: dict[str, Any] | None = None,
        source_system: str = SourceSystem.OTHER.value,
    ) -> None:
        self._default = default
        self._snapshots = dict(snapshots or {})
        self._source_system = source_system

    @property
    def source_system(self) -> str:
        return self._source_system

    async def fetch_snapshot(
        self,
        connector_reference: str,
        dataset_type: DatasetType,
        snapshot_date: date,
    ) -> Any:
        snapshot = self._snapshots.get(connector_reference, self._default)
        if snapshot is None:
            raise UpstreamError(message=f"No snapshot available for connector {connector_reference}")
        return snapshot
