"""Tests for the channel adapters and the shared shaping pipeline.

Covers:
- Channel registry lookup
- Category order of the shared pipeline
- Per-channel requirements for all six capture channels
- Upstream resolution (file storage, ERP connector) and its timeout bound
"""

import asyncio
import base64
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import pytest

from aumos_evidence_ledger.auth import TenantContext
from aumos_evidence_ledger.channels.base import ChannelSubmission
from aumos_evidence_ledger.channels.erp import StaticSnapshotConnector
from aumos_evidence_ledger.channels.registry import ChannelRegistry, build_channel_registry
from aumos_evidence_ledger.core.enums import CaptureChannel, PayloadMode, TrustLevel
from aumos_evidence_ledger.core.ledger import QUARANTINE_MISSING_PORTAL_CONTEXT
from aumos_evidence_ledger.errors import (
    LedgerError,
    MalformedRequestError,
    NotFoundError,
    UpstreamError,
    UpstreamTimeoutError,
    ValidationError,
)
from tests.conftest import (
    MutableClock,
    make_api_push_body,
    make_attachment,
    make_erp_api_body,
    make_erp_export_body,
    make_file_upload_body,
    make_manual_body,
    make_partner_payload,
    make_portal_body,
)

CONNECTOR_SNAPSHOT = {"partners": [make_partner_payload()]}


def make_file_storage(content: bytes = b"stored,file\n") -> MagicMock:
    storage = MagicMock()
    storage.fetch = AsyncMock(return_value=content)
    return storage


@pytest.fixture()
def registry(clock: MutableClock) -> ChannelRegistry:
    """A registry with a mock file storage and a static ERP connector."""
    return build_channel_registry(
        file_storage=make_file_storage(),
        erp_connector=StaticSnapshotConnector(default=CONNECTOR_SNAPSHOT, source_system="SAP"),
        clock=clock,
        upstream_timeout_seconds=1.0,
    )


async def shape(
    registry: ChannelRegistry,
    channel: CaptureChannel,
    body: Any,
    tenant: TenantContext,
    **submission: Any,
) -> Any:
    return await registry.get(channel).shape(ChannelSubmission(body=body, **submission), tenant)


async def shaping_error(
    registry: ChannelRegistry,
    channel: CaptureChannel,
    body: Any,
    tenant: TenantContext,
) -> LedgerError:
    with pytest.raises(LedgerError) as exc_info:
        await shape(registry, channel, body, tenant)
    return exc_info.value


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------


class TestChannelRegistry:
    def test_get_by_enum_and_string(self, registry: ChannelRegistry) -> None:
        assert registry.get(CaptureChannel.MANUAL).channel == CaptureChannel.MANUAL
        assert registry.get("ERP_API").channel == CaptureChannel.ERP_API

    def test_unknown_channel(self, registry: ChannelRegistry) -> None:
        with pytest.raises(NotFoundError) as exc_info:
            registry.get("FAX")

        assert exc_info.value.error_code == "CHANNEL_NOT_FOUND"

    def test_all_follows_declaration_order(self, registry: ChannelRegistry) -> None:
        assert [a.channel for a in registry.all()] == list(CaptureChannel)


# ---------------------------------------------------------------------------
# Shared pipeline
# ---------------------------------------------------------------------------


class TestSharedPipeline:
    """Category order and the checks every channel shares."""

    @pytest.mark.asyncio()
    async def test_non_object_body_is_malformed(self, registry: ChannelRegistry, tenant: TenantContext) -> None:
        error = await shaping_error(registry, CaptureChannel.MANUAL, ["not", "an", "object"], tenant)

        assert isinstance(error, MalformedRequestError)
        assert error.error_code == "INVALID_REQUEST_BODY"

    @pytest.mark.asyncio()
    async def test_forbidden_field_wins_over_later_categories(
        self,
        registry: ChannelRegistry,
        tenant: TenantContext,
    ) -> None:
        body = make_manual_body(payload_hash="0" * 64, entry_notes="short")
        del body["dataset_type"]

        error = await shaping_error(registry, CaptureChannel.MANUAL, body, tenant)

        assert error.error_code == "CLIENT_HASH_REJECTED"

    @pytest.mark.asyncio()
    async def test_channel_requirement_wins_over_presence(
        self,
        registry: ChannelRegistry,
        tenant: TenantContext,
    ) -> None:
        body = make_manual_body(entry_notes="short")
        del body["dataset_type"]

        error = await shaping_error(registry, CaptureChannel.MANUAL, body, tenant)

        assert error.error_code == "INVALID_ATTESTATION_NOTES"

    @pytest.mark.asyncio()
    async def test_unknown_field(self, registry: ChannelRegistry, tenant: TenantContext) -> None:
        error = await shaping_error(registry, CaptureChannel.MANUAL, make_manual_body(colour="blue"), tenant)

        assert error.error_code == "UNKNOWN_FIELD"
        assert error.field_errors[0].field == "colour"

    @pytest.mark.asyncio()
    async def test_capture_channel_mismatch(self, registry: ChannelRegistry, tenant: TenantContext) -> None:
        body = make_api_push_body(capture_channel="MANUAL")

        error = await shaping_error(registry, CaptureChannel.API_PUSH, body, tenant)

        assert error.error_code == "CAPTURE_CHANNEL_MISMATCH"

    @pytest.mark.asyncio()
    async def test_matching_capture_channel_is_accepted(
        self,
        registry: ChannelRegistry,
        tenant: TenantContext,
    ) -> None:
        request = await shape(registry, CaptureChannel.API_PUSH, make_api_push_body(capture_channel="API_PUSH"), tenant)

        assert request.capture_channel == CaptureChannel.API_PUSH

    @pytest.mark.asyncio()
    async def test_upstream_system_on_forced_channel(self, registry: ChannelRegistry, tenant: TenantContext) -> None:
        body = make_manual_body(upstream_system="SAP")

        error = await shaping_error(registry, CaptureChannel.MANUAL, body, tenant)

        assert error.error_code == "FORBIDDEN_CLIENT_FIELD"

    @pytest.mark.asyncio()
    async def test_declared_values_are_carried_as_sent(
        self,
        registry: ChannelRegistry,
        tenant: TenantContext,
    ) -> None:
        body = make_manual_body(purpose_tags=["onboarding", "cbam"])

        request = await shape(registry, CaptureChannel.MANUAL, body, tenant)

        assert request.metadata.purpose_tags == ("onboarding", "cbam")
        assert request.metadata.primary_intent == "Supplier onboarding for CBAM reporting"


# ---------------------------------------------------------------------------
# FILE_UPLOAD
# ---------------------------------------------------------------------------


class TestFileUpload:
    @pytest.mark.asyncio()
    async def test_valid_upload(self, registry: ChannelRegistry, tenant: TenantContext) -> None:
        request = await shape(registry, CaptureChannel.FILE_UPLOAD, make_file_upload_body(), tenant)

        assert request.payload.mode == PayloadMode.BYTES
        assert request.payload.attachments[0].content == b"partner,country\nNordlicht,DE\n"
        assert request.upstream_system == "SAP"
        assert request.trust_level == TrustLevel.MEDIUM
        assert request.provenance["attachments"][0]["filename"] == "partners.csv"
        assert "content" not in request.provenance["attachments"][0]

    @pytest.mark.asyncio()
    @pytest.mark.parametrize(
        ("attachments", "error_code"),
        [
            (None, "MISSING_ATTACHMENT"),
            ([], "MISSING_ATTACHMENT"),
            ("partners.csv", "INVALID_ATTACHMENT"),
            ([make_attachment(content_base64="not base64!")], "INVALID_ATTACHMENT"),
            ([make_attachment(storage_uri="s3://bucket/a.csv")], "INVALID_ATTACHMENT"),
            ([make_attachment(checksum="abc")], "INVALID_ATTACHMENT"),
            ([make_attachment(content=b"")], "EMPTY_ATTACHMENT"),
        ],
    )
    async def test_invalid_attachments(
        self,
        registry: ChannelRegistry,
        tenant: TenantContext,
        attachments: Any,
        error_code: str,
    ) -> None:
        body = make_file_upload_body(attachments=attachments)
        if attachments is None:
            del body["attachments"]

        error = await shaping_error(registry, CaptureChannel.FILE_UPLOAD, body, tenant)

        assert error.error_code == error_code

    @pytest.mark.asyncio()
    @pytest.mark.parametrize(
        ("upstream_system", "error_code"),
        [
            (None, "MISSING_CHANNEL_FIELD"),
            ("SUPPLIER_PORTAL", "INVALID_SOURCE_FOR_METHOD"),
            ("sap", "INVALID_SOURCE_FOR_METHOD"),
        ],
    )
    async def test_upstream_system_must_be_an_erp(
        self,
        registry: ChannelRegistry,
        tenant: TenantContext,
        upstream_system: str | None,
        error_code: str,
    ) -> None:
        body = make_file_upload_body(upstream_system=upstream_system)

        error = await shaping_error(registry, CaptureChannel.FILE_UPLOAD, body, tenant)

        assert error.error_code == error_code

    @pytest.mark.asyncio()
    async def test_storage_uri_is_fetched(self, clock: MutableClock, tenant: TenantContext) -> None:
        storage = make_file_storage(b"stored,file\n")
        registry = build_channel_registry(file_storage=storage, clock=clock)
        attachment = {"filename": "p.csv", "content_type": "text/csv", "storage_uri": "s3://bucket/p.csv"}

        request = await shape(
            registry, CaptureChannel.FILE_UPLOAD, make_file_upload_body(attachments=[attachment]), tenant
        )

        storage.fetch.assert_awaited_once_with("s3://bucket/p.csv")
        assert request.payload.attachments[0].content == b"stored,file\n"
        assert request.payload.attachments[0].storage_uri == "s3://bucket/p.csv"

    @pytest.mark.asyncio()
    async def test_empty_stored_object(self, clock: MutableClock, tenant: TenantContext) -> None:
        registry = build_channel_registry(file_storage=make_file_storage(b""), clock=clock)
        attachment = {"filename": "p.csv", "content_type": "text/csv", "storage_uri": "s3://bucket/p.csv"}

        error = await shaping_error(
            registry, CaptureChannel.FILE_UPLOAD, make_file_upload_body(attachments=[attachment]), tenant
        )

        assert error.error_code == "EMPTY_ATTACHMENT"

    @pytest.mark.asyncio()
    async def test_storage_uri_without_storage(self, clock: MutableClock, tenant: TenantContext) -> None:
        registry = build_channel_registry(clock=clock)
        attachment = {"filename": "p.csv", "content_type": "text/csv", "storage_uri": "s3://bucket/p.csv"}

        error = await shaping_error(
            registry, CaptureChannel.FILE_UPLOAD, make_file_upload_body(attachments=[attachment]), tenant
        )

        assert isinstance(error, UpstreamError)
        assert error.error_code == "FILE_STORAGE_UNAVAILABLE"
        assert error.status_code == 502

    @pytest.mark.asyncio()
    async def test_slow_storage_times_out(self, clock: MutableClock, tenant: TenantContext) -> None:
        async def never_answers(uri: str) -> bytes:
            await asyncio.sleep(10)
            return b""

        storage = MagicMock()
        storage.fetch = never_answers
        registry = build_channel_registry(file_storage=storage, clock=clock, upstream_timeout_seconds=0.01)
        attachment = {"filename": "p.csv", "content_type": "text/csv", "storage_uri": "s3://bucket/p.csv"}

        error = await shaping_error(
            registry, CaptureChannel.FILE_UPLOAD, make_file_upload_body(attachments=[attachment]), tenant
        )

        assert isinstance(error, UpstreamTimeoutError)
        assert error.status_code == 504


# ---------------------------------------------------------------------------
# ERP_EXPORT and ERP_API
# ---------------------------------------------------------------------------


class TestErpExport:
    @pytest.mark.asyncio()
    async def test_valid_export(self, registry: ChannelRegistry, tenant: TenantContext) -> None:
        request = await shape(registry, CaptureChannel.ERP_EXPORT, make_erp_export_body(), tenant)

        assert request.upstream_system == "ODOO"
        assert request.provenance["snapshot_date"] == "2025-03-13"
        assert request.provenance["export_job_id"] == "nightly-0313"

    @pytest.mark.asyncio()
    @pytest.mark.parametrize("snapshot_date", ["2025-03-15", "13/03/2025", "2025-3-13"])
    async def test_invalid_snapshot_date(
        self,
        registry: ChannelRegistry,
        tenant: TenantContext,
        snapshot_date: str,
    ) -> None:
        body = make_erp_export_body(snapshot_date=snapshot_date)

        error = await shaping_error(registry, CaptureChannel.ERP_EXPORT, body, tenant)

        assert error.error_code == "INVALID_SNAPSHOT_DATE"

    @pytest.mark.asyncio()
    async def test_snapshot_date_today_is_accepted(self, registry: ChannelRegistry, tenant: TenantContext) -> None:
        body = make_erp_export_body(snapshot_date="2025-03-14")

        request = await shape(registry, CaptureChannel.ERP_EXPORT, body, tenant)

        assert request.provenance["snapshot_date"] == "2025-03-14"

    @pytest.mark.asyncio()
    async def test_export_job_id_is_required(self, registry: ChannelRegistry, tenant: TenantContext) -> None:
        body = make_erp_export_body()
        del body["export_job_id"]

        error = await shaping_error(registry, CaptureChannel.ERP_EXPORT, body, tenant)

        assert error.error_code == "MISSING_CHANNEL_FIELD"


class TestErpApi:
    @pytest.mark.asyncio()
    async def test_payload_is_fetched_server_side(self, registry: ChannelRegistry, tenant: TenantContext) -> None:
        request = await shape(registry, CaptureChannel.ERP_API, make_erp_api_body(), tenant)

        assert request.payload.mode == PayloadMode.SERVER_FETCH
        assert request.payload.structured == CONNECTOR_SNAPSHOT
        assert request.upstream_system == "SAP"
        assert request.trust_level == TrustLevel.HIGH
        assert request.provenance["connector_reference"] == "sap-prod-bp"
        assert request.provenance["fetched_at"] == "2025-03-14T09:30:00+00:00"

    @pytest.mark.asyncio()
    @pytest.mark.parametrize("field", ["payload", "attachments", "digest_reference"])
    async def test_client_payload_is_not_allowed(
        self,
        registry: ChannelRegistry,
        tenant: TenantContext,
        field: str,
    ) -> None:
        body = make_erp_api_body(**{field: make_partner_payload()})

        error = await shaping_error(registry, CaptureChannel.ERP_API, body, tenant)

        assert error.error_code == "CLIENT_PAYLOAD_NOT_ALLOWED"

    @pytest.mark.asyncio()
    async def test_connector_is_required(self, clock: MutableClock, tenant: TenantContext) -> None:
        registry = build_channel_registry(clock=clock)

        error = await shaping_error(registry, CaptureChannel.ERP_API, make_erp_api_body(), tenant)

        assert error.error_code == "ERP_CONNECTOR_UNAVAILABLE"

    @pytest.mark.asyncio()
    async def test_connector_reference_is_routed(self, clock: MutableClock, tenant: TenantContext) -> None:
        connector = StaticSnapshotConnector(snapshots={"sap-prod-bp": {"rows": 1}})
        registry = build_channel_registry(erp_connector=connector, clock=clock)

        request = await shape(registry, CaptureChannel.ERP_API, make_erp_api_body(), tenant)
        error = await shaping_error(
            registry, CaptureChannel.ERP_API, make_erp_api_body(connector_reference="unknown-ref"), tenant
        )

        assert request.payload.structured == {"rows": 1}
        assert isinstance(error, UpstreamError)


# ---------------------------------------------------------------------------
# SUPPLIER_PORTAL
# ---------------------------------------------------------------------------


class TestSupplierPortal:
    @pytest.mark.asyncio()
    async def test_verified_submission(self, registry: ChannelRegistry, tenant: TenantContext) -> None:
        request = await shape(
            registry, CaptureChannel.SUPPLIER_PORTAL, make_portal_body(), tenant, portal_submission_id="PS-42"
        )

        assert request.upstream_system == "SUPPLIER_PORTAL"
        assert request.provenance == {"portal_submission_id": "PS-42"}
        assert request.quarantine_reason is None

    @pytest.mark.asyncio()
    async def test_missing_portal_context_is_quarantined(
        self,
        registry: ChannelRegistry,
        tenant: TenantContext,
    ) -> None:
        request = await shape(registry, CaptureChannel.SUPPLIER_PORTAL, make_portal_body(), tenant)

        assert request.quarantine_reason == QUARANTINE_MISSING_PORTAL_CONTEXT

    @pytest.mark.asyncio()
    @pytest.mark.parametrize(
        ("overrides", "error_code"),
        [
            ({"portal_submission_id": "PS-forged"}, "FORBIDDEN_CLIENT_FIELD"),
            ({"attachments": [make_attachment()]}, "METHOD_DISALLOWS_FILE"),
            ({"payload": []}, "INVALID_PAYLOAD"),
            ({"payload": {}}, "INVALID_PAYLOAD"),
        ],
    )
    async def test_invalid_portal_body(
        self,
        registry: ChannelRegistry,
        tenant: TenantContext,
        overrides: dict,
        error_code: str,
    ) -> None:
        error = await shaping_error(registry, CaptureChannel.SUPPLIER_PORTAL, make_portal_body(**overrides), tenant)

        assert error.error_code == error_code


# ---------------------------------------------------------------------------
# API_PUSH
# ---------------------------------------------------------------------------


class TestApiPush:
    @pytest.mark.asyncio()
    async def test_idempotency_key_is_derived(self, registry: ChannelRegistry, tenant: TenantContext) -> None:
        request = await shape(registry, CaptureChannel.API_PUSH, make_api_push_body(), tenant)

        assert request.idempotency_key == f"{tenant.tenant_id}:PARTNER_MASTER:sap-bp-1001"
        assert request.provenance == {"external_reference_id": "sap-bp-1001"}

    @pytest.mark.asyncio()
    async def test_digest_reference(self, registry: ChannelRegistry, tenant: TenantContext) -> None:
        body = make_api_push_body(digest_reference="ab" * 32)
        del body["payload"]

        request = await shape(registry, CaptureChannel.API_PUSH, body, tenant)

        assert request.payload.mode == PayloadMode.DIGEST_REFERENCE
        assert request.payload.digest_reference == "ab" * 32

    @pytest.mark.asyncio()
    @pytest.mark.parametrize(
        ("overrides", "error_code"),
        [
            ({"digest_reference": "ab" * 32}, "INVALID_PAYLOAD"),
            ({"payload": None}, "MISSING_CHANNEL_FIELD"),
            ({"payload": None, "digest_reference": "AB" * 32}, "INVALID_DIGEST_REFERENCE"),
            ({"payload": {}}, "INVALID_PAYLOAD"),
            ({"payload": "sap-bp-1001"}, "INVALID_PAYLOAD"),
            ({"payload": 42}, "INVALID_PAYLOAD"),
            ({"upstream_system": "INTERNAL_MANUAL"}, "INVALID_SOURCE_FOR_METHOD"),
            ({"attachments": [make_attachment()]}, "METHOD_DISALLOWS_FILE"),
            ({"external_reference_id": "n/a"}, "PLACEHOLDER_VALUE"),
            ({"dataset_type": "CERTIFICATE"}, "UNSUPPORTED_METHOD_DATASET_COMBINATION"),
        ],
    )
    async def test_invalid_push(
        self,
        registry: ChannelRegistry,
        tenant: TenantContext,
        overrides: dict,
        error_code: str,
    ) -> None:
        error = await shaping_error(registry, CaptureChannel.API_PUSH, make_api_push_body(**overrides), tenant)

        assert isinstance(error, ValidationError)
        assert error.error_code == error_code


# ---------------------------------------------------------------------------
# MANUAL
# ---------------------------------------------------------------------------


class TestManualEntry:
    @pytest.mark.asyncio()
    async def test_attestation_comes_from_verified_identity(
        self,
        registry: ChannelRegistry,
        tenant: TenantContext,
    ) -> None:
        request = await shape(registry, CaptureChannel.MANUAL, make_manual_body(), tenant)

        attestation = request.provenance["attestation"]
        assert attestation["attestor_user_id"] == str(tenant.user_id)
        assert attestation["attestor_role"] == "data_steward"
        assert attestation["attested_at_utc"] == "2025-03-14T09:30:00+00:00"
        assert request.upstream_system == "INTERNAL_MANUAL"
        assert request.trust_level == TrustLevel.LOW

    @pytest.mark.asyncio()
    @pytest.mark.parametrize("field", ["attestor_user_id", "attested_by", "attested_at_utc"])
    async def test_client_attestation_is_forgery(
        self,
        registry: ChannelRegistry,
        tenant: TenantContext,
        field: str,
    ) -> None:
        error = await shaping_error(registry, CaptureChannel.MANUAL, make_manual_body(**{field: "x"}), tenant)

        assert error.error_code == "ATTESTOR_FORGERY_ATTEMPT"

    @pytest.mark.asyncio()
    @pytest.mark.parametrize("notes", [None, "tbd", "too short notes", 42])
    async def test_entry_notes_are_required(
        self,
        registry: ChannelRegistry,
        tenant: TenantContext,
        notes: Any,
    ) -> None:
        error = await shaping_error(registry, CaptureChannel.MANUAL, make_manual_body(entry_notes=notes), tenant)

        assert error.error_code == "INVALID_ATTESTATION_NOTES"

    @pytest.mark.asyncio()
    async def test_placeholder_in_payload(self, registry: ChannelRegistry, tenant: TenantContext) -> None:
        body = make_manual_body(payload=make_partner_payload(city="TBD"))

        error = await shaping_error(registry, CaptureChannel.MANUAL, body, tenant)

        assert error.error_code == "PLACEHOLDER_VALUE"
        assert error.field_errors[0].field == "payload.city"

    @pytest.mark.asyncio()
    async def test_dataset_scope_combination(self, registry: ChannelRegistry, tenant: TenantContext) -> None:
        body = make_manual_body(dataset_type="PRODUCT_MASTER", declared_scope="SITE", scope_target_id="SITE-7")

        error = await shaping_error(registry, CaptureChannel.MANUAL, body, tenant)

        assert error.error_code == "INVALID_DATASET_SCOPE_COMBINATION"

    @pytest.mark.asyncio()
    async def test_attachments_are_disallowed(self, registry: ChannelRegistry, tenant: TenantContext) -> None:
        body = make_manual_body(attachments=[{"filename": "a", "content_base64": base64.b64encode(b"a").decode()}])

        error = await shaping_error(registry, CaptureChannel.MANUAL, body, tenant)

        assert error.error_code == "METHOD_DISALLOWS_FILE"
