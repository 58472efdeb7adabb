"""Tests for API endpoints (router layer).

The router runs against a real in-memory container placed on app.state, so
these tests cover HTTP concerns on top of the real services:
- Gateway identity headers
- Channel path segments and status codes (201 / 200 / 202)
- The error envelope and its REQUEST_REJECTED audit event
- Mapping Gate, parity and escalation endpoints
"""

import uuid
from collections.abc import AsyncGenerator
from typing import Any

import pytest
import pytest_asyncio
from fastapi import FastAPI
from httpx import ASGITransport, AsyncClient

from aumos_evidence_ledger.api.errors import register_exception_handlers
from aumos_evidence_ledger.api.router import router
from aumos_evidence_ledger.auth import TenantContext
from aumos_evidence_ledger.container import LedgerContainer
from tests.conftest import (
    make_api_push_body,
    make_declared,
    make_file_upload_body,
    make_manual_body,
    make_partner_payload,
    make_portal_body,
    make_unknown_scope_fields,
)


@pytest.fixture()
def test_app(container: LedgerContainer) -> FastAPI:
    """Create a FastAPI test app backed by the in-memory container.

    Args:
        container: The container fixture.

    Returns:
        FastAPI app with the ledger router and exception handlers.
    """
    app = FastAPI()
    register_exception_handlers(app)
    app.include_router(router, prefix="/api/v1")
    app.state.container = container
    return app


@pytest.fixture()
def headers(tenant: TenantContext) -> dict[str, str]:
    """Gateway identity headers for the test tenant."""
    return {
        "X-Tenant-ID": str(tenant.tenant_id),
        "X-Actor-ID": str(tenant.user_id),
        "X-Actor-Role": tenant.role,
    }


@pytest_asyncio.fixture()
async def client(test_app: FastAPI) -> AsyncGenerator[AsyncClient, None]:
    async with AsyncClient(transport=ASGITransport(app=test_app), base_url="http://test") as ac:
        yield ac


async def post_evidence(
    client: AsyncClient,
    headers: dict[str, str],
    channel: str,
    body: Any,
    **params: Any,
) -> Any:
    return await client.post(f"/api/v1/evidence/{channel}", json=body, headers=headers, params=params)


# ---------------------------------------------------------------------------
# Identity headers
# ---------------------------------------------------------------------------


class TestIdentityHeaders:
    @pytest.mark.asyncio()
    async def test_missing_tenant_header(self, client: AsyncClient) -> None:
        response = await client.get("/api/v1/evidence", headers={"X-Actor-ID": str(uuid.uuid4())})

        assert response.status_code == 422
        body = response.json()
        assert body["error_code"] == "MISSING_IDENTITY_HEADER"
        assert body["field_errors"][0]["field"] == "X-Tenant-ID"

    @pytest.mark.asyncio()
    async def test_malformed_actor_header(self, client: AsyncClient, tenant: TenantContext) -> None:
        response = await client.get(
            "/api/v1/evidence", headers={"X-Tenant-ID": str(tenant.tenant_id), "X-Actor-ID": "alice"}
        )

        assert response.status_code == 422
        assert response.json()["error_code"] == "INVALID_IDENTITY_HEADER"

    @pytest.mark.asyncio()
    async def test_request_id_header_is_echoed_in_errors(self, client: AsyncClient) -> None:
        response = await client.get("/api/v1/evidence", headers={"X-Request-ID": "trace-123"})

        assert response.json()["request_id"] == "trace-123"


# ---------------------------------------------------------------------------
# Ingestion endpoints
# ---------------------------------------------------------------------------


class TestIngestion:
    @pytest.mark.asyncio()
    @pytest.mark.parametrize(
        ("segment", "body"),
        [
            ("api-push", make_api_push_body()),
            ("manual", make_manual_body()),
            ("file-upload", make_file_upload_body()),
        ],
    )
    async def test_new_record_is_201(
        self,
        client: AsyncClient,
        headers: dict[str, str],
        segment: str,
        body: dict[str, Any],
    ) -> None:
        response = await post_evidence(client, headers, segment, body)

        assert response.status_code == 201
        receipt = response.json()
        assert receipt["state"] == "INGESTED"
        assert len(receipt["payload_hash"]) == 64
        assert receipt["replayed"] is False

    @pytest.mark.asyncio()
    async def test_idempotent_replay_is_200(self, client: AsyncClient, headers: dict[str, str]) -> None:
        keyed = {**headers, "Idempotency-Key": "k-api-1"}

        first = await post_evidence(client, keyed, "api-push", make_api_push_body())
        second = await post_evidence(client, keyed, "api-push", make_api_push_body())

        assert first.status_code == 201
        assert second.status_code == 200
        assert second.json()["evidence_id"] == first.json()["evidence_id"]
        assert second.json()["replayed"] is True

    @pytest.mark.asyncio()
    async def test_idempotency_conflict_is_409(self, client: AsyncClient, headers: dict[str, str]) -> None:
        keyed = {**headers, "Idempotency-Key": "k-api-2"}
        await post_evidence(client, keyed, "api-push", make_api_push_body())

        response = await post_evidence(
            client, keyed, "api-push", make_api_push_body(payload=make_partner_payload(city="Essen"))
        )

        assert response.status_code == 409
        assert response.json()["error_code"] == "IDEMPOTENCY_CONFLICT"

    @pytest.mark.asyncio()
    async def test_portal_without_gateway_context_is_202(self, client: AsyncClient, headers: dict[str, str]) -> None:
        response = await post_evidence(client, headers, "supplier-portal", make_portal_body())

        assert response.status_code == 202
        receipt = response.json()
        assert receipt["state"] == "QUARANTINED"
        assert receipt["quarantine_reason"] == "MISSING_PORTAL_CONTEXT"
        assert receipt["work_item_id"] is not None

    @pytest.mark.asyncio()
    async def test_portal_with_gateway_context_is_ingested(
        self,
        client: AsyncClient,
        headers: dict[str, str],
    ) -> None:
        response = await post_evidence(
            client, {**headers, "X-Portal-Submission-ID": "ps-77"}, "supplier-portal", make_portal_body()
        )

        assert response.status_code == 201
        evidence = await client.get(f"/api/v1/evidence/{response.json()['evidence_id']}", headers=headers)
        assert evidence.json()["provenance"]["portal_submission_id"] == "ps-77"

    @pytest.mark.asyncio()
    async def test_submit_and_seal_returns_the_decision(self, client: AsyncClient, headers: dict[str, str]) -> None:
        response = await post_evidence(client, headers, "api-push", make_api_push_body(), seal="true")

        receipt = response.json()
        assert receipt["state"] == "SEALED"
        assert receipt["mapping_status"] == "APPROVED"
        decision = await client.get(f"/api/v1/mapping-gate/decisions/{receipt['mapping_decision_id']}", headers=headers)
        assert decision.status_code == 200
        assert decision.json()["entity_id"] == "P-1001"

    @pytest.mark.asyncio()
    async def test_unknown_channel_is_404(self, client: AsyncClient, headers: dict[str, str]) -> None:
        response = await post_evidence(client, headers, "carrier-pigeon", make_declared())

        assert response.status_code == 404
        assert response.json()["error_code"] == "CHANNEL_NOT_FOUND"

    @pytest.mark.asyncio()
    async def test_non_object_body_is_400(self, client: AsyncClient, headers: dict[str, str]) -> None:
        response = await post_evidence(client, headers, "manual", ["not", "an", "object"])

        assert response.status_code == 400
        assert response.json()["error_code"] == "INVALID_REQUEST_BODY"

    @pytest.mark.asyncio()
    async def test_rejection_is_audited_with_the_request_id(
        self,
        client: AsyncClient,
        headers: dict[str, str],
        container: LedgerContainer,
        tenant: TenantContext,
    ) -> None:
        body = make_api_push_body(payload_hash="a" * 64)

        response = await post_evidence(client, {**headers, "X-Request-ID": "trace-rej"}, "api-push", body)

        assert response.status_code == 422
        envelope = response.json()
        assert envelope["error_code"] == "CLIENT_HASH_REJECTED"
        assert envelope["request_id"] == "trace-rej"
        assert set(envelope) == {"error_code", "message", "field_errors", "request_id"}
        events = await container.audit_service.query(tenant.tenant_id, request_id="trace-rej")
        assert [(e.action.value, e.result_code) for e in events] == [("REQUEST_REJECTED", "CLIENT_HASH_REJECTED")]

    @pytest.mark.asyncio()
    async def test_draft_then_ingest(self, client: AsyncClient, headers: dict[str, str]) -> None:
        draft = await client.post("/api/v1/evidence/manual/drafts", json=make_manual_body(), headers=headers)
        evidence_id = draft.json()["evidence_id"]

        ingested = await client.post(f"/api/v1/evidence/{evidence_id}/ingest", headers=headers)

        assert draft.status_code == 201
        assert draft.json()["state"] == "DRAFT"
        assert ingested.status_code == 200
        assert ingested.json()["state"] == "INGESTED"


# ---------------------------------------------------------------------------
# Lifecycle endpoints
# ---------------------------------------------------------------------------


class TestLifecycle:
    @pytest.mark.asyncio()
    async def test_patch_sealed_record_is_409(self, client: AsyncClient, headers: dict[str, str]) -> None:
        created = await post_evidence(client, headers, "api-push", make_api_push_body(), seal="true")
        evidence_id = created.json()["evidence_id"]

        response = await client.patch(
            f"/api/v1/evidence/{evidence_id}", json={"primary_intent": "Changed"}, headers=headers
        )

        assert response.status_code == 409
        assert response.json()["error_code"] == "EVIDENCE_SEALED_IMMUTABLE"

    @pytest.mark.asyncio()
    async def test_patch_with_non_object_body_is_400(self, client: AsyncClient, headers: dict[str, str]) -> None:
        created = await post_evidence(client, headers, "api-push", make_api_push_body())

        response = await client.patch(
            f"/api/v1/evidence/{created.json()['evidence_id']}", json="primary_intent", headers=headers
        )

        assert response.status_code == 400
        assert response.json()["error_code"] == "INVALID_REQUEST_BODY"

    @pytest.mark.asyncio()
    async def test_patch_to_unknown_scope_is_202(self, client: AsyncClient, headers: dict[str, str]) -> None:
        created = await post_evidence(client, headers, "manual", make_manual_body())

        response = await client.patch(
            f"/api/v1/evidence/{created.json()['evidence_id']}", json=make_unknown_scope_fields(), headers=headers
        )

        assert response.status_code == 202
        assert response.json()["state"] == "QUARANTINED"

    @pytest.mark.asyncio()
    async def test_resolve_portal_quarantine(self, client: AsyncClient, headers: dict[str, str]) -> None:
        created = await post_evidence(client, headers, "supplier-portal", make_portal_body())
        evidence_id = created.json()["evidence_id"]

        response = await client.post(
            f"/api/v1/evidence/{evidence_id}/quarantine/resolve",
            json={},
            headers={**headers, "X-Portal-Submission-ID": "ps-88"},
        )

        assert response.status_code == 200
        assert response.json()["state"] == "INGESTED"
        assert response.json()["quarantine_reason"] is None
        escalations = await client.get("/api/v1/escalations", headers=headers)
        assert [(i["reason_code"], i["status"]) for i in escalations.json()] == [("MISSING_PORTAL_CONTEXT", "RESOLVED")]

    @pytest.mark.asyncio()
    async def test_reject(self, client: AsyncClient, headers: dict[str, str]) -> None:
        created = await post_evidence(client, headers, "manual", make_manual_body())

        response = await client.post(
            f"/api/v1/evidence/{created.json()['evidence_id']}/reject",
            json={"error_code": "DUPLICATE_UPLOAD", "reason": "Same questionnaire entered twice"},
            headers=headers,
        )

        assert response.status_code == 200
        assert response.json()["state"] == "REJECTED"
        assert response.json()["rejection_code"] == "DUPLICATE_UPLOAD"

    @pytest.mark.asyncio()
    async def test_supersede(self, client: AsyncClient, headers: dict[str, str]) -> None:
        created = await post_evidence(client, headers, "manual", make_manual_body(), seal="true")
        evidence_id = created.json()["evidence_id"]

        response = await client.post(
            f"/api/v1/evidence/{evidence_id}/supersede",
            json={
                "channel": "manual",
                "reason": "Corrected contact email",
                "evidence": make_manual_body(
                    payload=make_partner_payload(primary_contact_email="jk@nordlicht.example")
                ),
            },
            headers=headers,
        )

        assert response.status_code == 201
        body = response.json()
        assert body["superseded"]["state"] == "SUPERSEDED"
        assert body["replacement"]["state"] == "DRAFT"
        assert body["superseded"]["superseded_by"] == body["replacement"]["evidence_id"]

    @pytest.mark.asyncio()
    async def test_get_unknown_record_is_404(self, client: AsyncClient, headers: dict[str, str]) -> None:
        response = await client.get(f"/api/v1/evidence/{uuid.uuid4()}", headers=headers)

        assert response.status_code == 404
        assert response.json()["error_code"] == "EVIDENCE_NOT_FOUND"

    @pytest.mark.asyncio()
    async def test_list_filters_by_state(self, client: AsyncClient, headers: dict[str, str]) -> None:
        await post_evidence(client, headers, "manual", make_manual_body())
        await post_evidence(client, headers, "api-push", make_api_push_body(), seal="true")

        response = await client.get("/api/v1/evidence", params={"state": "SEALED"}, headers=headers)

        assert [r["capture_channel"] for r in response.json()] == ["API_PUSH"]


# ---------------------------------------------------------------------------
# Audit, Mapping Gate, parity and escalations
# ---------------------------------------------------------------------------


class TestQueryEndpoints:
    @pytest.mark.asyncio()
    async def test_audit_trail_and_chain(self, client: AsyncClient, headers: dict[str, str]) -> None:
        created = await post_evidence(client, headers, "manual", make_manual_body())

        trail = await client.get(
            "/api/v1/audit", params={"evidence_id": created.json()["evidence_id"]}, headers=headers
        )
        verification = await client.get("/api/v1/audit/verify", headers=headers)

        assert [e["action"] for e in trail.json()] == ["DRAFT_CREATED", "INGESTED"]
        assert verification.json()["valid"] is True
        assert verification.json()["events_checked"] == 2

    @pytest.mark.asyncio()
    async def test_evaluate_inline_snapshot(self, client: AsyncClient, headers: dict[str, str]) -> None:
        response = await client.post(
            "/api/v1/mapping-gate/evaluate",
            json={
                "entity_type": "PARTNER",
                "entity_snapshot": make_partner_payload(),
                "frameworks": ["CBAM"],
            },
            headers=headers,
        )

        assert response.status_code == 201
        decision = response.json()
        assert decision["status"] == "PROVISIONAL"
        assert decision["primary_reason"] == "FRAMEWORK_GAP"
        assert decision["framework_readiness"]["CBAM"]["ready"] is False

        escalations = await client.get("/api/v1/escalations", params={"status": "OPEN"}, headers=headers)
        assert [i["reason_code"] for i in escalations.json()] == ["FRAMEWORK_GAP"]

    @pytest.mark.asyncio()
    async def test_evaluate_unknown_framework_is_422(self, client: AsyncClient, headers: dict[str, str]) -> None:
        response = await client.post(
            "/api/v1/mapping-gate/evaluate",
            json={"entity_type": "PARTNER", "entity_snapshot": make_partner_payload(), "frameworks": ["GHG"]},
            headers=headers,
        )

        assert response.status_code == 422
        assert response.json()["error_code"] == "UNKNOWN_FRAMEWORK"

    @pytest.mark.asyncio()
    async def test_evaluate_invalid_entity_type_is_422(self, client: AsyncClient, headers: dict[str, str]) -> None:
        response = await client.post(
            "/api/v1/mapping-gate/evaluate",
            json={"entity_type": "VESSEL", "entity_id": "V-1"},
            headers=headers,
        )

        assert response.status_code == 422
        assert response.json()["error_code"] == "VALIDATION_FAILED"

    @pytest.mark.asyncio()
    async def test_parity_report(self, client: AsyncClient, headers: dict[str, str]) -> None:
        response = await client.post(
            "/api/v1/parity/verify",
            json={"declared": make_declared(), "payload": make_partner_payload()},
            headers=headers,
        )

        assert response.status_code == 200
        assert response.json()["parity"] is True
        assert len(response.json()["channels"]) == 6


# ---------------------------------------------------------------------------
# Unhandled errors
# ---------------------------------------------------------------------------


class TestUnhandledErrors:
    @pytest.mark.asyncio()
    async def test_unexpected_exception_renders_envelope(
        self,
        test_app: FastAPI,
        container: LedgerContainer,
        headers: dict[str, str],
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        async def explode(*args: Any, **kwargs: Any) -> Any:
            raise RuntimeError("boom")

        monkeypatch.setattr(container.ledger, "list", explode)
        transport = ASGITransport(app=test_app, raise_app_exceptions=False)

        async with AsyncClient(transport=transport, base_url="http://test") as ac:
            response = await ac.get("/api/v1/evidence", headers={**headers, "X-Request-ID": "trace-500"})

        assert response.status_code == 500
        assert response.json() == {
            "error_code": "INTERNAL_ERROR",
            "message": "Internal server error",
            "field_errors": [],
            "request_id": "trace-500",
        }
