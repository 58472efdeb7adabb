"""Tenant and actor context for the evidence ledger.

Authentication and tenant resolution happen upstream at the API gateway. The
gateway forwards the verified identity as request headers; this module turns
those headers into a TenantContext and rejects requests that arrive without
them.

Headers:
- X-Tenant-ID            : verified tenant UUID
- X-Actor-ID             : verified actor (user or service account) UUID
- X-Actor-Role           : actor role name (defaults to "member")
- X-Request-ID           : optional correlation id; generated when absent
- X-Portal-Submission-ID : set by the gateway only after it verified a supplier
                            portal submission token
"""

import uuid
from dataclasses import dataclass
from typing import Annotated

from fastapi import Header, Request

from aumos_evidence_ledger.errors import ValidationError
from aumos_evidence_ledger.observability import bind_request_context


@dataclass(frozen=True)
class TenantContext:
    """Verified identity of the caller.

    Attributes:
        tenant_id: Owning tenant UUID.
        user_id: Acting user or service account UUID.
        role: Actor role name, recorded verbatim in audit events.
    """

    tenant_id: uuid.UUID
    user_id: uuid.UUID
    role: str = "member"


def _parse_uuid_header(name: str, value: str | None) -> uuid.UUID:
    if not value:
        raise ValidationError.for_field("MISSING_IDENTITY_HEADER", name, f"{name} header is required")
    try:
        return uuid.UUID(value)
    except ValueError as exc:
        raise ValidationError.for_field("INVALID_IDENTITY_HEADER", name, f"{name} must be a UUID") from exc


def get_request_id(request: Request) -> str:
    """Return the request correlation id, generating one when absent.

    The id is cached on request.state so the exception handlers render the
    same id that the audit trail recorded.
    """
    existing = getattr(request.state, "request_id", None)
    if existing:
        return existing
    request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
    request.state.request_id = request_id
    return request_id


def get_current_user(
    request: Request,
    x_tenant_id: Annotated[str | None, Header()] = None,
    x_actor_id: Annotated[str | None, Header()] = None,
    x_actor_role: Annotated[str | None, Header()] = None,
) -> TenantContext:
    """FastAPI dependency that builds the TenantContext from gateway headers.

    Raises:
        ValidationError: If a required identity header is missing or malformed.
    """
    tenant = TenantContext(
        tenant_id=_parse_uuid_header("X-Tenant-ID", x_tenant_id),
        user_id=_parse_uuid_header("X-Actor-ID", x_actor_id),
        role=x_actor_role or "member",
    )
    request.state.tenant = tenant
    bind_request_context(get_request_id(request), tenant_id=str(tenant.tenant_id))
    return tenant


def get_portal_submission_id(
    x_portal_submission_id: Annotated[str | None, Header()] = None,
) -> str | None:
    """Return the gateway-verified supplier portal submission id, if any."""
    return x_portal_submission_id or None
