"""HTTP clients for upstream collaborators used during ingestion.

- HttpFileStorage  : resolves attachment storage_uri values to bytes
- HttpErpConnector : live ERP connector gateway for the ERP_API channel

Both clients use httpx with a hard timeout (AUMOS_LEDGER_UPSTREAM_TIMEOUT_SECONDS)
and surface a timeout as UpstreamTimeoutError (504) and any other transport or
HTTP failure as UpstreamError (502). Upstream calls happen before any evidence
record is created, so a failed call never leaves a partial record behind.
"""

from datetime import date
from typing import Any
from urllib.parse import quote

import httpx

from aumos_evidence_ledger.core.enums import DatasetType
from aumos_evidence_ledger.errors import UpstreamError, UpstreamTimeoutError
from aumos_evidence_ledger.observability import get_logger

logger = get_logger(__name__)

_DEFAULT_TIMEOUT_SECONDS = 10.0


class HttpFileStorage:
    """File storage client resolving `storage_uri` values over HTTP.

    Args:
        base_url: Base URL of the file storage service.
        timeout_seconds: Hard timeout for one fetch.
        transport: Optional httpx transport (tests inject a MockTransport).
    """

    def __init__(
        self,
        base_url: str,
        timeout_seconds: float = _DEFAULT_TIMEOUT_SECONDS,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._timeout_seconds = timeout_seconds
        self._transport = transport

    async def fetch(self, storage_uri: str) -> bytes:
        """Download the object behind a storage URI.

        Args:
            storage_uri: Object key or URI issued by the file storage service.

        Returns:
            The raw object bytes.

        Raises:
            UpstreamTimeoutError: The service did not answer in time.
            UpstreamError: Transport failure or non-200 response.
        """
        url = f"{self._base_url}/v1/objects/{quote(storage_uri, safe='')}"
        logger.debug("Fetching attachment from file storage", storage_uri=storage_uri)

        try:
            async with httpx.AsyncClient(timeout=self._timeout_seconds, transport=self._transport) as client:
                response = await client.get(url)
        except httpx.TimeoutException as exc:
            logger.warning(
                "File storage fetch timed out",
                storage_uri=storage_uri,
                timeout_seconds=self._timeout_seconds,
            )
            raise UpstreamTimeoutError(
                message=f"File storage did not respond within {self._timeout_seconds}s",
            ) from exc
        except httpx.RequestError as exc:
            logger.error("File storage request failed", storage_uri=storage_uri, error=str(exc))
            raise UpstreamError(message=f"File storage request error: {exc}") from exc

        if response.status_code != 200:
            logger.error(
                "File storage returned unexpected status",
                storage_uri=storage_uri,
                status_code=response.status_code,
            )
            raise UpstreamError(
                message=f"File storage returned status {response.status_code} for {storage_uri}",
            )
        return response.content


class HttpErpConnector:
    """Client for the ERP connector gateway.

    The gateway executes the configured extraction for a connector reference
    and returns the dataset snapshot as JSON.

    Args:
        base_url: Base URL of the connector gateway.
        source_system: Upstream system name (e.g. "SAP") reported on evidence.
        timeout_seconds: Hard timeout for one snapshot fetch.
        transport: Optional httpx transport (tests inject a MockTransport).
    """

    def __init__(
        self,
        base_url: str,
        source_system: str = "OTHER",
        timeout_seconds: float = _DEFAULT_TIMEOUT_SECONDS,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._source_system = source_system
        self._timeout_seconds = timeout_seconds
        self._transport = transport

    @property
    def source_system(self) -> str:
        return self._source_system

    async def fetch_snapshot(
        self,
        connector_reference: str,
        dataset_type: DatasetType,
        snapshot_date: date,
    ) -> Any:
        """Fetch a dataset snapshot from the ERP.

        Raises:
            UpstreamTimeoutError: The connector did not answer in time.
            UpstreamError: Transport failure, non-200 response, or non-JSON body.
        """
        url = f"{self._base_url}/v1/connectors/{quote(connector_reference, safe='')}/snapshots"
        params = {"dataset_type": dataset_type.value, "snapshot_date": snapshot_date.isoformat()}
        logger.info(
            "Fetching ERP snapshot",
            connector_reference=connector_reference,
            dataset_type=dataset_type.value,
        )

        try:
            async with httpx.AsyncClient(timeout=self._timeout_seconds, transport=self._transport) as client:
                response = await client.get(url, params=params)
        except httpx.TimeoutException as exc:
            logger.warning(
                "ERP connector timed out",
                connector_reference=connector_reference,
                timeout_seconds=self._timeout_seconds,
            )
            raise UpstreamTimeoutError(
                message=f"ERP connector did not respond within {self._timeout_seconds}s",
            ) from exc
        except httpx.RequestError as exc:
            logger.error("ERP connector request failed", connector_reference=connector_reference, error=str(exc))
            raise UpstreamError(message=f"ERP connector request error: {exc}") from exc

        if response.status_code != 200:
            raise UpstreamError(
                message=f"ERP connector returned status {response.status_code} for {connector_reference}",
            )
        try:
            return response.json()
        except ValueError as exc:
            raise UpstreamError(message="ERP connector returned a non-JSON body") from exc
