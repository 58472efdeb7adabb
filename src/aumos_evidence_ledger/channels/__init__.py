"""Channel adapters: one per ingestion channel, all producing the same IngestionRequest."""

from aumos_evidence_ledger.channels.api_push import ApiPushAdapter
from aumos_evidence_ledger.channels.base import ChannelAdapter, ChannelSubmission
from aumos_evidence_ledger.channels.erp import ErpApiAdapter, ErpExportAdapter, StaticSnapshotConnector
from aumos_evidence_ledger.channels.file_upload import FileUploadAdapter
from aumos_evidence_ledger.channels.manual import ManualEntryAdapter
from aumos_evidence_ledger.channels.registry import ChannelRegistry, build_channel_registry
from aumos_evidence_ledger.channels.supplier_portal import SupplierPortalAdapter

__all__ = [
    "ApiPushAdapter",
    "ChannelAdapter",
    "ChannelRegistry",
    "ChannelSubmission",
    "ErpApiAdapter",
    "ErpExportAdapter",
    "FileUploadAdapter",
    "ManualEntryAdapter",
    "StaticSnapshotConnector",
    "SupplierPortalAdapter",
    "build_channel_registry",
]
