"""Channel adapter registry."""

from collections.abc import Callable
from datetime import datetime

from aumos_evidence_ledger.channels.api_push import ApiPushAdapter
from aumos_evidence_ledger.channels.base import ChannelAdapter
from aumos_evidence_ledger.channels.erp import ErpApiAdapter, ErpExportAdapter
from aumos_evidence_ledger.channels.file_upload import FileUploadAdapter
from aumos_evidence_ledger.channels.manual import ManualEntryAdapter
from aumos_evidence_ledger.channels.supplier_portal import SupplierPortalAdapter
from aumos_evidence_ledger.core.enums import CaptureChannel
from aumos_evidence_ledger.core.evidence import DeclaredMetadata
from aumos_evidence_ledger.core.interfaces import IErpConnector, IFileStorage
from aumos_evidence_ledger.core.validation import Violations
from aumos_evidence_ledger.errors import NotFoundError


class ChannelRegistry:
    """Maps each capture channel to its adapter.

    Args:
        adapters: One adapter per channel.
    """

    def __init__(self, adapters: list[ChannelAdapter]) -> None:
        self._adapters = {adapter.channel: adapter for adapter in adapters}

    def get(self, channel: CaptureChannel | str) -> ChannelAdapter:
        """Return the adapter for a channel.

        Raises:
            NotFoundError: The channel is unknown.
        """
        try:
            key = CaptureChannel(channel)
        except ValueError as exc:
            raise NotFoundError(resource="Channel", resource_id=str(channel)) from exc
        adapter = self._adapters.get(key)
        if adapter is None:
            raise NotFoundError(resource="Channel", resource_id=key.value)
        return adapter

    def check_metadata(self, channel: CaptureChannel, metadata: DeclaredMetadata, violations: Violations) -> None:
        """Apply the channel's metadata rules to an existing record's patched metadata."""
        adapter = self._adapters.get(channel)
        if adapter is not None:
            adapter.check_metadata_rules(metadata, violations)

    def all(self) -> list[ChannelAdapter]:
        """Adapters in CaptureChannel declaration order."""
        return [self._adapters[c] for c in CaptureChannel if c in self._adapters]


def build_channel_registry(
    file_storage: IFileStorage | None = None,
    erp_connector: IErpConnector | None = None,
    clock: Callable[[], datetime] | None = None,
    upstream_timeout_seconds: float = 10.0,
) -> ChannelRegistry:
    """Build a registry with one adapter per channel sharing the same collaborators."""
    kwargs: dict = {"file_storage": file_storage, "upstream_timeout_seconds": upstream_timeout_seconds}
    if clock is not None:
        kwargs["clock"] = clock
    return ChannelRegistry(
        [
            FileUploadAdapter(**kwargs),
            ErpExportAdapter(**kwargs),
            ErpApiAdapter(erp_connector=erp_connector, **kwargs),
            SupplierPortalAdapter(**kwargs),
            ApiPushAdapter(**kwargs),
            ManualEntryAdapter(**kwargs),
        ]
    )
