"""Test fixtures for aumos-evidence-ledger.

Provides:
- tenant_id / actor_id: deterministic identity UUIDs
- tenant: A TenantContext for service-level tests
- clock: A controllable UTC clock shared by every service in the container
- publisher: An InMemoryEventPublisher capturing domain events
- container: A fully wired LedgerContainer on in-memory repositories
- make_*_body: Channel-native request bodies that pass validation
"""

import base64
import uuid
from datetime import UTC, datetime, timedelta
from typing import Any

import pytest

from aumos_evidence_ledger.adapters.memory import InMemoryEventPublisher
from aumos_evidence_ledger.auth import TenantContext
from aumos_evidence_ledger.container import LedgerContainer, assemble, in_memory_repositories
from aumos_evidence_ledger.core.enums import (
    CaptureChannel,
    DatasetType,
    DeclaredScope,
    PayloadMode,
    RetentionPolicy,
    TrustLevel,
)
from aumos_evidence_ledger.core.evidence import DeclaredMetadata, EvidencePayload, IngestionRequest
from aumos_evidence_ledger.settings import Settings

FROZEN_NOW = datetime(2025, 3, 14, 9, 30, tzinfo=UTC)


class MutableClock:
    """A UTC clock that only moves when a test advances it."""

    def __init__(self, now: datetime = FROZEN_NOW) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **delta: float) -> datetime:
        self.now = self.now + timedelta(**delta)
        return self.now


# ---------------------------------------------------------------------------
# Identity
# ---------------------------------------------------------------------------


@pytest.fixture()
def tenant_id() -> uuid.UUID:
    """Return a fixed tenant UUID for consistent test assertions.

    Returns:
        A deterministic UUID for the test tenant.
    """
    return uuid.UUID("00000000-0000-0000-0000-000000000001")


@pytest.fixture()
def actor_id() -> uuid.UUID:
    """Return a fixed actor UUID for consistent test assertions.

    Returns:
        A deterministic UUID for the test actor (user).
    """
    return uuid.UUID("00000000-0000-0000-0000-000000000002")


@pytest.fixture()
def tenant(tenant_id: uuid.UUID, actor_id: uuid.UUID) -> TenantContext:
    """Create a TenantContext for service tests."""
    return TenantContext(tenant_id=tenant_id, user_id=actor_id, role="data_steward")


@pytest.fixture()
def other_tenant() -> TenantContext:
    """A second tenant, for isolation checks."""
    return TenantContext(
        tenant_id=uuid.UUID("00000000-0000-0000-0000-0000000000aa"),
        user_id=uuid.UUID("00000000-0000-0000-0000-0000000000ab"),
    )


# ---------------------------------------------------------------------------
# Services
# ---------------------------------------------------------------------------


@pytest.fixture()
def clock() -> MutableClock:
    """Return a clock frozen at FROZEN_NOW until a test advances it."""
    return MutableClock()


@pytest.fixture()
def publisher() -> InMemoryEventPublisher:
    """Return a publisher that records envelopes instead of sending them."""
    return InMemoryEventPublisher()


@pytest.fixture()
def settings() -> Settings:
    """Settings with every external collaborator disabled."""
    return Settings(database_url="", audit_db_url="", kafka_enabled=False, log_json=False)


@pytest.fixture()
def container(settings: Settings, publisher: InMemoryEventPublisher, clock: MutableClock) -> LedgerContainer:
    """Return a LedgerContainer wired on in-memory repositories.

    Args:
        settings: Injected settings fixture.
        publisher: Injected publisher fixture.
        clock: Injected clock fixture.

    Returns:
        A container whose services share the test clock.
    """
    return assemble(settings, in_memory_repositories(), publisher, clock=clock)


# ---------------------------------------------------------------------------
# Request bodies
# ---------------------------------------------------------------------------


def make_declared(**overrides: Any) -> dict[str, Any]:
    """Return declared fields valid on every channel for PARTNER_MASTER."""
    declared: dict[str, Any] = {
        "dataset_type": "PARTNER_MASTER",
        "declared_scope": "ENTIRE_ORGANIZATION",
        "primary_intent": "Supplier onboarding for CBAM reporting",
        "purpose_tags": ["cbam", "onboarding"],
        "contains_personal_data": False,
        "retention_policy": "STANDARD_7_YEARS",
    }
    declared.update(overrides)
    return declared


def make_partner_payload(**overrides: Any) -> dict[str, Any]:
    """Return a PARTNER snapshot with every scored attribute populated."""
    payload: dict[str, Any] = {
        "entity_type": "PARTNER",
        "entity_id": "P-1001",
        "legal_name": "Nordlicht Stahlwerke GmbH",
        "country": "DE",
        "primary_contact_name": "Jana Keller",
        "primary_contact_email": "jana.keller@nordlicht.example",
        "registration_number": "HRB 40123",
        "address_line": "Industriestrasse 12",
        "city": "Duisburg",
        "postal_code": "47051",
        "nace_code": "24.10",
        "website": "https://nordlicht.example",
    }
    payload.update(overrides)
    return payload


def make_manual_body(**overrides: Any) -> dict[str, Any]:
    """Return a valid MANUAL body carrying a partner snapshot."""
    body = make_declared(
        entry_notes="Typed from the signed supplier questionnaire",
        payload=make_partner_payload(),
    )
    body.update(overrides)
    return body


def make_api_push_body(**overrides: Any) -> dict[str, Any]:
    """Return a valid API_PUSH body."""
    body = make_declared(
        upstream_system="SAP",
        external_reference_id="sap-bp-1001",
        payload=make_partner_payload(),
    )
    body.update(overrides)
    return body


def make_attachment(content: bytes = b"partner,country\nNordlicht,DE\n", **overrides: Any) -> dict[str, Any]:
    attachment: dict[str, Any] = {
        "filename": "partners.csv",
        "content_type": "text/csv",
        "content_base64": base64.b64encode(content).decode("ascii"),
    }
    attachment.update(overrides)
    return attachment


def make_file_upload_body(**overrides: Any) -> dict[str, Any]:
    """Return a valid FILE_UPLOAD body with one inline attachment."""
    body = make_declared(upstream_system="SAP", attachments=[make_attachment()])
    body.update(overrides)
    return body


def make_erp_export_body(**overrides: Any) -> dict[str, Any]:
    """Return a valid ERP_EXPORT body dated the day before FROZEN_NOW."""
    body = make_declared(
        upstream_system="ODOO",
        snapshot_date="2025-03-13",
        export_job_id="nightly-0313",
        attachments=[make_attachment()],
    )
    body.update(overrides)
    return body


def make_erp_api_body(**overrides: Any) -> dict[str, Any]:
    body = make_declared(snapshot_date="2025-03-13", connector_reference="sap-prod-bp")
    body.update(overrides)
    return body


def make_portal_body(**overrides: Any) -> dict[str, Any]:
    """Return a valid SUPPLIER_PORTAL body."""
    body = make_declared(payload=make_partner_payload())
    body.update(overrides)
    return body


def make_unknown_scope_fields(today: datetime = FROZEN_NOW) -> dict[str, Any]:
    """Declared fields that move a record to QUARANTINED with UNKNOWN_SCOPE."""
    return {
        "declared_scope": "UNKNOWN",
        "unlinked_reason": "Legacy spreadsheet without any site or entity reference",
        "resolution_due_date": (today + timedelta(days=30)).date().isoformat(),
    }


def make_metadata(**overrides: Any) -> DeclaredMetadata:
    fields: dict[str, Any] = {
        "dataset_type": DatasetType.PARTNER_MASTER,
        "declared_scope": DeclaredScope.ENTIRE_ORGANIZATION,
        "primary_intent": "Supplier onboarding for CBAM reporting",
        "purpose_tags": ("cbam", "onboarding"),
        "contains_personal_data": False,
        "retention_policy": RetentionPolicy.STANDARD_7_YEARS,
    }
    fields.update(overrides)
    return DeclaredMetadata(**fields)


def make_request(
    payload: Any = None,
    idempotency_key: str | None = None,
    channel: CaptureChannel = CaptureChannel.API_PUSH,
    **metadata: Any,
) -> IngestionRequest:
    """Return a canonical STRUCTURED request, bypassing channel shaping."""
    return IngestionRequest(
        capture_channel=channel,
        upstream_system="SAP",
        metadata=make_metadata(**metadata),
        payload=EvidencePayload(
            mode=PayloadMode.STRUCTURED,
            structured=payload if payload is not None else make_partner_payload(),
        ),
        trust_level=TrustLevel.MEDIUM,
        provenance={"external_reference_id": "sap-bp-1001"},
        idempotency_key=idempotency_key,
    )
