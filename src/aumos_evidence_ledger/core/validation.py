"""Validation of declared evidence fields.

Validation runs in a fixed category order and stops at the first category that
has any violation; all violations of that category are reported together and
the error_code is the code of the first one found. The order is:

1. forbidden client fields
2. channel-specific requirements (enforced by the channel adapter)
3. presence of the common required fields
4. types and enum values
5. cross-field rules

Values are never trimmed, cast or defaulted here. A string with surrounding
whitespace is validated and stored exactly as sent; "true" is not a boolean.
"""

from __future__ import annotations

import re
from collections.abc import Callable, Iterable, Mapping
from datetime import date, timedelta
from typing import Any

from aumos_evidence_ledger.core.enums import (
    CaptureChannel,
    DatasetType,
    DeclaredScope,
    LegalBasis,
    RetentionPolicy,
)
from aumos_evidence_ledger.core.evidence import DeclaredMetadata
from aumos_evidence_ledger.core.retention import MAX_CUSTOM_RETENTION_DAYS, MIN_CUSTOM_RETENTION_DAYS
from aumos_evidence_ledger.errors import FieldError, ValidationError

COMMON_REQUIRED_FIELDS: tuple[str, ...] = (
    "dataset_type",
    "declared_scope",
    "primary_intent",
    "purpose_tags",
    "contains_personal_data",
    "retention_policy",
)

DECLARED_FIELDS: tuple[str, ...] = COMMON_REQUIRED_FIELDS + (
    "scope_target_id",
    "legal_basis",
    "retention_days",
    "unlinked_reason",
    "resolution_due_date",
)

# Server-computed or server-owned fields a client may never send.
FORBIDDEN_CLIENT_FIELDS: dict[str, str] = {
    "payload_hash": "CLIENT_HASH_REJECTED",
    "metadata_hash": "CLIENT_HASH_REJECTED",
    "payload_hash_sha256": "CLIENT_HASH_REJECTED",
    "metadata_hash_sha256": "CLIENT_HASH_REJECTED",
    "evidence_id": "FORBIDDEN_CLIENT_FIELD",
    "state": "FORBIDDEN_CLIENT_FIELD",
    "state_history": "FORBIDDEN_CLIENT_FIELD",
    "created_at": "FORBIDDEN_CLIENT_FIELD",
    "created_by": "FORBIDDEN_CLIENT_FIELD",
    "retention_end": "FORBIDDEN_CLIENT_FIELD",
    "trust_level": "FORBIDDEN_CLIENT_FIELD",
    "idempotency_key": "FORBIDDEN_CLIENT_FIELD",
    "supersedes": "FORBIDDEN_CLIENT_FIELD",
    "superseded_by": "FORBIDDEN_CLIENT_FIELD",
    "quarantine_reason": "FORBIDDEN_CLIENT_FIELD",
}

MIN_PRIMARY_INTENT_LENGTH = 10
MIN_UNLINKED_REASON_LENGTH = 30
MAX_RESOLUTION_WINDOW_DAYS = 90

PLACEHOLDER_VALUES = frozenset({"test", "asdf", "xxx", "-", "n/a", "tbd"})

_ISO_DATE = re.compile(r"^\d{4}-\d{2}-\d{2}$")

_TARGETED_SCOPES = frozenset({DeclaredScope.LEGAL_ENTITY, DeclaredScope.SITE, DeclaredScope.PRODUCT_FAMILY})

# Which channels may carry which dataset.
METHOD_DATASET_ALLOWED: dict[DatasetType, frozenset[CaptureChannel]] = {
    DatasetType.PARTNER_MASTER: frozenset(CaptureChannel),
    DatasetType.PRODUCT_MASTER: frozenset(
        {
            CaptureChannel.MANUAL,
            CaptureChannel.FILE_UPLOAD,
            CaptureChannel.ERP_EXPORT,
            CaptureChannel.ERP_API,
            CaptureChannel.API_PUSH,
        }
    ),
    DatasetType.BOM: frozenset(
        {
            CaptureChannel.MANUAL,
            CaptureChannel.FILE_UPLOAD,
            CaptureChannel.ERP_EXPORT,
            CaptureChannel.ERP_API,
            CaptureChannel.API_PUSH,
        }
    ),
    DatasetType.CERTIFICATE: frozenset({CaptureChannel.FILE_UPLOAD, CaptureChannel.SUPPLIER_PORTAL}),
    DatasetType.TEST_REPORT: frozenset({CaptureChannel.FILE_UPLOAD, CaptureChannel.SUPPLIER_PORTAL}),
    DatasetType.TRANSACTION_LOG: frozenset(
        {
            CaptureChannel.API_PUSH,
            CaptureChannel.FILE_UPLOAD,
            CaptureChannel.ERP_EXPORT,
            CaptureChannel.ERP_API,
        }
    ),
}


class Violations:
    """Collects the violations of one validation category.

    Args:
        category: Short category label used in the error message.
    """

    def __init__(self, category: str) -> None:
        self._category = category
        self._codes: list[str] = []
        self._errors: list[FieldError] = []

    def add(self, error_code: str, field: str, message: str) -> None:
        self._codes.append(error_code)
        self._errors.append(FieldError(field=field, message=message))

    def __bool__(self) -> bool:
        return bool(self._errors)

    def raise_if_any(self) -> None:
        """Raise a ValidationError carrying every violation of this category.

        Raises:
            ValidationError: When at least one violation was collected.
        """
        if not self._errors:
            return
        raise ValidationError(
            message=f"{self._category}: {self._errors[0].message}",
            error_code=self._codes[0],
            field_errors=list(self._errors),
        )


def is_missing(value: Any) -> bool:
    """Return True for absent values: None, blank strings, and empty collections."""
    if value is None:
        return True
    if isinstance(value, str):
        return value.strip() == ""
    if isinstance(value, (list, tuple, set, dict)):
        return len(value) == 0
    return False


def is_placeholder(value: Any) -> bool:
    return isinstance(value, str) and value.strip().lower() in PLACEHOLDER_VALUES


def collect_forbidden_fields(
    body: Mapping[str, Any],
    violations: Violations,
    extra: Mapping[str, str] | None = None,
) -> Violations:
    """Add a violation for every server-owned field present in body."""
    forbidden = dict(FORBIDDEN_CLIENT_FIELDS)
    if extra:
        forbidden.update(extra)
    for name in sorted(forbidden):
        if name in body:
            violations.add(forbidden[name], name, f"{name} must not be supplied by the client")
    return violations


def check_forbidden_fields(body: Mapping[str, Any], extra: Mapping[str, str] | None = None) -> None:
    """Category 1: reject server-owned fields sent by the client.

    Args:
        body: Raw client body.
        extra: Channel-specific forbidden fields mapped to their error codes.
    """
    collect_forbidden_fields(body, Violations("Forbidden client field"), extra).raise_if_any()


def check_presence(body: Mapping[str, Any], fields: Iterable[str] = COMMON_REQUIRED_FIELDS) -> None:
    """Category 3: every common required field must be present and non-empty."""
    violations = Violations("Missing required metadata")
    for name in fields:
        value = body.get(name)
        if isinstance(value, bool):
            continue
        if is_missing(value):
            violations.add("MISSING_REQUIRED_METADATA", name, f"{name} is required")
    violations.raise_if_any()


def _check_enum(violations: Violations, body: Mapping[str, Any], name: str, enum_cls: type, optional: bool) -> None:
    value = body.get(name)
    if value is None and optional:
        return
    if not isinstance(value, str):
        violations.add("INVALID_FIELD_TYPE", name, f"{name} must be a string")
        return
    if value not in {m.value for m in enum_cls}:
        allowed = ", ".join(m.value for m in enum_cls)
        violations.add("INVALID_ENUM_VALUE", name, f"{name} must be one of: {allowed}")


def _check_optional_string(violations: Violations, body: Mapping[str, Any], name: str) -> None:
    value = body.get(name)
    if value is not None and not isinstance(value, str):
        violations.add("INVALID_FIELD_TYPE", name, f"{name} must be a string")


def parse_iso_date(value: str) -> date | None:
    """Parse a strict YYYY-MM-DD date, returning None when it does not parse."""
    if not _ISO_DATE.match(value):
        return None
    try:
        return date.fromisoformat(value)
    except ValueError:
        return None


def check_types(body: Mapping[str, Any]) -> None:
    """Category 4: declared field types, enum values and minimum content."""
    violations = Violations("Invalid field value")

    _check_enum(violations, body, "dataset_type", DatasetType, optional=False)
    _check_enum(violations, body, "declared_scope", DeclaredScope, optional=False)
    _check_optional_string(violations, body, "scope_target_id")

    intent = body.get("primary_intent")
    if not isinstance(intent, str):
        violations.add("INVALID_FIELD_TYPE", "primary_intent", "primary_intent must be a string")
    elif is_placeholder(intent):
        violations.add("PLACEHOLDER_VALUE", "primary_intent", "primary_intent must not be a placeholder")
    elif len(intent.strip()) < MIN_PRIMARY_INTENT_LENGTH:
        violations.add(
            "FIELD_TOO_SHORT",
            "primary_intent",
            f"primary_intent must be at least {MIN_PRIMARY_INTENT_LENGTH} characters",
        )

    tags = body.get("purpose_tags")
    if not isinstance(tags, list):
        violations.add("INVALID_FIELD_TYPE", "purpose_tags", "purpose_tags must be a list of strings")
    elif any(not isinstance(tag, str) or is_missing(tag) for tag in tags):
        violations.add("INVALID_FIELD_TYPE", "purpose_tags", "purpose_tags entries must be non-empty strings")
    elif len(set(tags)) != len(tags):
        violations.add("DUPLICATE_PURPOSE_TAG", "purpose_tags", "purpose_tags must not contain duplicates")

    if not isinstance(body.get("contains_personal_data"), bool):
        violations.add("INVALID_FIELD_TYPE", "contains_personal_data", "contains_personal_data must be a boolean")

    _check_enum(violations, body, "legal_basis", LegalBasis, optional=True)
    _check_enum(violations, body, "retention_policy", RetentionPolicy, optional=False)

    days = body.get("retention_days")
    if days is not None and (isinstance(days, bool) or not isinstance(days, int)):
        violations.add("INVALID_FIELD_TYPE", "retention_days", "retention_days must be an integer")

    _check_optional_string(violations, body, "unlinked_reason")

    due = body.get("resolution_due_date")
    if due is not None and (not isinstance(due, str) or parse_iso_date(due) is None):
        violations.add("INVALID_FIELD_TYPE", "resolution_due_date", "resolution_due_date must be a YYYY-MM-DD date")

    violations.raise_if_any()


def build_metadata(body: Mapping[str, Any]) -> DeclaredMetadata:
    """Build DeclaredMetadata from a body that passed check_types."""
    due = body.get("resolution_due_date")
    legal_basis = body.get("legal_basis")
    return DeclaredMetadata(
        dataset_type=DatasetType(body["dataset_type"]),
        declared_scope=DeclaredScope(body["declared_scope"]),
        scope_target_id=body.get("scope_target_id"),
        primary_intent=body["primary_intent"],
        purpose_tags=tuple(body["purpose_tags"]),
        contains_personal_data=body["contains_personal_data"],
        legal_basis=LegalBasis(legal_basis) if legal_basis is not None else None,
        retention_policy=RetentionPolicy(body["retention_policy"]),
        retention_days=body.get("retention_days"),
        unlinked_reason=body.get("unlinked_reason"),
        resolution_due_date=parse_iso_date(due) if due is not None else None,
    )


def check_cross_field(
    metadata: DeclaredMetadata,
    channel: CaptureChannel,
    today: date,
    violations: Violations | None = None,
) -> Violations:
    """Category 5: rules that relate several declared fields.

    Args:
        metadata: Typed declared metadata.
        channel: Capture channel (for the method x dataset matrix).
        today: Current UTC date (for resolution_due_date bounds).
        violations: Collector to extend; a new one is created when omitted.

    Returns:
        The collector, so channel adapters can append their own cross-field
        rules before raising.
    """
    violations = violations if violations is not None else Violations("Cross-field rule violated")

    allowed_channels = METHOD_DATASET_ALLOWED.get(metadata.dataset_type, frozenset())
    if channel not in allowed_channels:
        allowed = ", ".join(sorted(c.value for c in allowed_channels))
        violations.add(
            "UNSUPPORTED_METHOD_DATASET_COMBINATION",
            "dataset_type",
            f"{channel.value} is not supported for {metadata.dataset_type.value}; use one of: {allowed}",
        )

    scope = metadata.declared_scope
    if scope in _TARGETED_SCOPES and is_missing(metadata.scope_target_id):
        violations.add(
            "MISSING_SCOPE_TARGET_ID",
            "scope_target_id",
            f"declared_scope={scope.value} requires scope_target_id",
        )
    if scope == DeclaredScope.ENTIRE_ORGANIZATION and metadata.scope_target_id is not None:
        violations.add(
            "SCOPE_TARGET_NOT_ALLOWED",
            "scope_target_id",
            "declared_scope=ENTIRE_ORGANIZATION cannot have scope_target_id",
        )

    if scope == DeclaredScope.UNKNOWN:
        reason = metadata.unlinked_reason
        if reason is None or len(reason.strip()) < MIN_UNLINKED_REASON_LENGTH:
            violations.add(
                "MISSING_UNLINKED_REASON",
                "unlinked_reason",
                f"declared_scope=UNKNOWN requires unlinked_reason (min {MIN_UNLINKED_REASON_LENGTH} chars)",
            )
        due = metadata.resolution_due_date
        if due is None:
            violations.add(
                "MISSING_RESOLUTION_DUE_DATE",
                "resolution_due_date",
                "declared_scope=UNKNOWN requires resolution_due_date",
            )
        elif not today < due <= today + timedelta(days=MAX_RESOLUTION_WINDOW_DAYS):
            violations.add(
                "INVALID_RESOLUTION_DATE",
                "resolution_due_date",
                f"resolution_due_date must be between tomorrow and {MAX_RESOLUTION_WINDOW_DAYS} days from now",
            )

    if metadata.contains_personal_data and metadata.legal_basis is None:
        violations.add(
            "MISSING_GDPR_BASIS",
            "legal_basis",
            "legal_basis is required when contains_personal_data is true",
        )

    if metadata.retention_policy == RetentionPolicy.CUSTOM:
        days = metadata.retention_days
        if days is None or not MIN_CUSTOM_RETENTION_DAYS <= days <= MAX_CUSTOM_RETENTION_DAYS:
            violations.add(
                "INVALID_RETENTION_DAYS",
                "retention_days",
                f"CUSTOM retention requires retention_days between "
                f"{MIN_CUSTOM_RETENTION_DAYS} and {MAX_CUSTOM_RETENTION_DAYS}",
            )
    elif metadata.retention_days is not None:
        violations.add(
            "RETENTION_DAYS_NOT_ALLOWED",
            "retention_days",
            "retention_days is only allowed with retention_policy=CUSTOM",
        )

    return violations


def validate_declared_fields(
    body: Mapping[str, Any],
    channel: CaptureChannel,
    today: date,
    channel_rules: Callable[[DeclaredMetadata, Violations], None] | None = None,
) -> DeclaredMetadata:
    """Run categories 3 to 5 over a body and return the typed metadata.

    Used by the ledger to validate update and quarantine-resolution patches
    merged over an existing record's declared metadata. `channel_rules` adds
    the capture channel's own metadata rules to the cross-field category.

    Raises:
        ValidationError: On the first failing category.
    """
    check_presence(body)
    check_types(body)
    metadata = build_metadata(body)
    violations = check_cross_field(metadata, channel, today)
    if channel_rules is not None:
        channel_rules(metadata, violations)
    violations.raise_if_any()
    return metadata


def metadata_to_body(metadata: DeclaredMetadata) -> dict[str, Any]:
    """Render declared metadata back into its raw wire form."""
    return {
        "dataset_type": metadata.dataset_type.value,
        "declared_scope": metadata.declared_scope.value,
        "scope_target_id": metadata.scope_target_id,
        "primary_intent": metadata.primary_intent,
        "purpose_tags": list(metadata.purpose_tags),
        "contains_personal_data": metadata.contains_personal_data,
        "legal_basis": metadata.legal_basis.value if metadata.legal_basis else None,
        "retention_policy": metadata.retention_policy.value,
        "retention_days": metadata.retention_days,
        "unlinked_reason": metadata.unlinked_reason,
        "resolution_due_date": (
            metadata.resolution_due_date.isoformat() if metadata.resolution_due_date else None
        ),
    }
