"""Exception handlers that render the standard error envelope.

Every rejected request returns `{error_code, message, field_errors, request_id}`
and, when the caller's tenant is known, leaves a REQUEST_REJECTED audit event
with the same request_id.
"""

import uuid
from typing import Any

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from aumos_evidence_ledger.auth import TenantContext, get_request_id
from aumos_evidence_ledger.core.enums import AuditAction
from aumos_evidence_ledger.errors import FieldError, LedgerError
from aumos_evidence_ledger.observability import get_logger

logger = get_logger(__name__)

_MALFORMED_BODY_ERRORS = frozenset({"json_invalid", "json_type", "model_attributes_type", "dict_type"})


def error_body(error_code: str, message: str, field_errors: list[FieldError], request_id: str) -> dict[str, Any]:
    return {
        "error_code": error_code,
        "message": message,
        "field_errors": [fe.to_dict() for fe in field_errors],
        "request_id": request_id,
    }


def _path_uuid(request: Request, name: str) -> uuid.UUID | None:
    value = request.path_params.get(name)
    if value is None:
        return None
    try:
        return uuid.UUID(str(value))
    except ValueError:
        return None


def _loc_field(err: dict[str, Any]) -> str:
    # loc is ("body", "field", ...) or ("query", "name")
    return ".".join(str(part) for part in tuple(err.get("loc", ()))[1:]) or "body"


async def _audit_rejection(request: Request, error_code: str, status_code: int) -> None:
    tenant: TenantContext | None = getattr(request.state, "tenant", None)
    container = getattr(request.app.state, "container", None)
    if tenant is None or container is None:
        return
    request_id = get_request_id(request)
    try:
        await container.audit_service.record(
            tenant_id=tenant.tenant_id,
            action=AuditAction.REQUEST_REJECTED,
            actor_id=tenant.user_id,
            actor_role=tenant.role,
            request_id=request_id,
            result_code=error_code,
            evidence_id=_path_uuid(request, "evidence_id"),
            context={"method": request.method, "path": request.url.path, "status_code": status_code},
        )
    except LedgerError as exc:
        logger.error(
            "Could not audit rejected request",
            request_id=request_id,
            error_code=error_code,
            audit_error=exc.error_code,
        )


async def ledger_error_handler(request: Request, exc: LedgerError) -> JSONResponse:
    """Render a LedgerError and audit the rejection."""
    request_id = get_request_id(request)
    log = logger.error if exc.status_code >= 500 else logger.info
    log(
        "Request rejected",
        request_id=request_id,
        error_code=exc.error_code,
        status_code=exc.status_code,
        path=request.url.path,
    )
    await _audit_rejection(request, exc.error_code, exc.status_code)
    return JSONResponse(
        status_code=exc.status_code,
        content=error_body(exc.error_code, exc.message, exc.field_errors, request_id),
    )


async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Render FastAPI request validation failures.

    A body that is not valid JSON, or not an object, is a 400; a well-formed
    body that fails field validation is a 422.
    """
    request_id = get_request_id(request)
    errors = exc.errors()
    malformed = any(
        err.get("type") in _MALFORMED_BODY_ERRORS and tuple(err.get("loc", ()))[:1] == ("body",) for err in errors
    )
    status_code = 400 if malformed else 422
    error_code = "INVALID_REQUEST_BODY" if malformed else "VALIDATION_FAILED"
    field_errors = [FieldError(field=_loc_field(err), message=err.get("msg", "")) for err in errors]
    logger.info("Request validation failed", request_id=request_id, error_code=error_code, path=request.url.path)
    await _audit_rejection(request, error_code, status_code)
    return JSONResponse(
        status_code=status_code,
        content=error_body(error_code, "Request validation failed", field_errors, request_id),
    )


async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    request_id = get_request_id(request)
    logger.exception("Unhandled error", request_id=request_id, path=request.url.path)
    return JSONResponse(
        status_code=500,
        content=error_body("INTERNAL_ERROR", "Internal server error", [], request_id),
    )


def register_exception_handlers(app: FastAPI) -> None:
    """Attach the ledger exception handlers to an application."""
    app.add_exception_handler(LedgerError, ledger_error_handler)  # type: ignore[arg-type]
    app.add_exception_handler(RequestValidationError, request_validation_handler)  # type: ignore[arg-type]
    app.add_exception_handler(Exception, unhandled_error_handler)
