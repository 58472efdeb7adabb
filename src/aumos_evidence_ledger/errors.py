"""Error taxonomy for the evidence ledger.

Every error raised by the ledger, the channel adapters, and the Mapping Gate
derives from LedgerError and carries a deterministic `error_code` and the HTTP
status it maps to. The API layer renders these into the standard error
envelope `{error_code, message, field_errors, request_id}`.

Categories:
- ValidationError      : missing/invalid declared fields (422, or 400 for a malformed body)
- ConflictError        : mutation of immutable state, idempotency conflicts (409)
- DuplicateIdempotencyKeyError : the store refused a second live record for a key (409)
- NotFoundError        : unknown evidence, decision, or entity (404)
- HashingError         : NO_HASH_COMPUTED (500)
- StorageError         : persistence failure (500)
- UpstreamError        : external collaborator failure (502)
- UpstreamTimeoutError : external collaborator exceeded its bounded timeout (504)
"""

from dataclasses import dataclass
from typing import Any


@dataclass(frozen=True)
class FieldError:
    """A single field-level validation failure.

    Attributes:
        field: Name of the offending request field.
        message: Human-readable explanation.
    """

    field: str
    message: str

    def to_dict(self) -> dict[str, str]:
        """Return the wire representation of this field error."""
        return {"field": self.field, "message": self.message}


class LedgerError(Exception):
    """Base class for all evidence ledger errors.

    Args:
        message: Human-readable error message.
        error_code: Deterministic machine-readable code. Defaults to the
            class-level default_code.
        field_errors: Optional field-level details.
        details: Optional structured context (never rendered with payload values).
    """

    status_code: int = 500
    default_code: str = "INTERNAL_ERROR"
    category: str = "SYSTEM"

    def __init__(
        self,
        message: str,
        error_code: str | None = None,
        field_errors: list[FieldError] | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.error_code = error_code or self.default_code
        self.field_errors = field_errors or []
        self.details = details or {}

    def __str__(self) -> str:
        return f"{self.error_code}: {self.message}"


class ValidationError(LedgerError):
    """A caller-recoverable validation failure."""

    status_code = 422
    default_code = "VALIDATION_FAILED"
    category = "VALIDATION"

    @classmethod
    def for_field(cls, error_code: str, field: str, message: str) -> "ValidationError":
        """Build a ValidationError pointing at a single field.

        Args:
            error_code: Deterministic error code.
            field: The offending field name.
            message: Human-readable message.

        Returns:
            A ValidationError with one FieldError.
        """
        return cls(message=message, error_code=error_code, field_errors=[FieldError(field, message)])


class MalformedRequestError(ValidationError):
    """The request body could not be interpreted at all (e.g. not a JSON object)."""

    status_code = 400
    default_code = "INVALID_REQUEST_BODY"


class ConflictError(LedgerError):
    """Attempted mutation of immutable state or conflicting idempotent request."""

    status_code = 409
    default_code = "CONFLICT"
    category = "CONFLICT"


class DuplicateIdempotencyKeyError(ConflictError):
    """The store refused a record because a live record already claims its idempotency key."""

    default_code = "IDEMPOTENCY_CONFLICT"


class NotFoundError(LedgerError):
    """A requested resource does not exist for the calling tenant.

    Args:
        resource: Resource type name (e.g. "Evidence").
        resource_id: Identifier that was looked up.
    """

    status_code = 404
    default_code = "NOT_FOUND"
    category = "NOT_FOUND"

    def __init__(self, resource: str, resource_id: str) -> None:
        super().__init__(
            message=f"{resource} {resource_id} not found",
            error_code=f"{resource.upper()}_NOT_FOUND",
            details={"resource": resource, "resource_id": resource_id},
        )
        self.resource = resource
        self.resource_id = resource_id


class HashingError(LedgerError):
    """Payload or metadata hashing could not be performed."""

    status_code = 500
    default_code = "NO_HASH_COMPUTED"


class StorageError(LedgerError):
    """The backing store failed to persist or read a record."""

    status_code = 500
    default_code = "STORAGE_FAILURE"


class UpstreamError(LedgerError):
    """An external collaborator (file storage, ERP connector) failed."""

    status_code = 502
    default_code = "UPSTREAM_FAILURE"


class UpstreamTimeoutError(UpstreamError):
    """An external collaborator did not answer within its bounded timeout."""

    status_code = 504
    default_code = "UPSTREAM_TIMEOUT"
