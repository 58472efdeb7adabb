"""Base class for channel adapters.

A channel adapter turns channel-native input into the ledger's canonical
IngestionRequest. The shaping pipeline is fixed and shared by every channel so
the validation category order is identical everywhere:

1. forbidden client fields, undeclared fields, capture_channel mismatch
2. channel-specific requirements (check_channel_requirements)
3. presence of the common required fields
4. types and enum values
5. cross-field rules (common rules plus check_channel_cross_field)

Upstream collaborators (file storage, ERP connector) are only called after the
request passed validation, and always under a bounded timeout.

Adapters never trim, cast or default a declared value: the raw value is
validated and carried into the request exactly as sent.
"""

import asyncio
import base64
import binascii
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass, field
from datetime import UTC, date, datetime
from typing import Any, ClassVar, TypeVar

from aumos_evidence_ledger.auth import TenantContext
from aumos_evidence_ledger.core.enums import CaptureChannel, PayloadMode, TrustLevel
from aumos_evidence_ledger.core.evidence import Attachment, DeclaredMetadata, EvidencePayload, IngestionRequest
from aumos_evidence_ledger.core.interfaces import IFileStorage
from aumos_evidence_ledger.core.validation import (
    DECLARED_FIELDS,
    FORBIDDEN_CLIENT_FIELDS,
    Violations,
    build_metadata,
    check_cross_field,
    check_presence,
    check_types,
    collect_forbidden_fields,
    is_missing,
    is_placeholder,
    parse_iso_date,
)
from aumos_evidence_ledger.errors import MalformedRequestError, UpstreamError, UpstreamTimeoutError, ValidationError
from aumos_evidence_ledger.observability import get_logger

logger = get_logger(__name__)

T = TypeVar("T")

_DEFAULT_UPSTREAM_TIMEOUT_SECONDS = 10.0


def _utcnow() -> datetime:
    return datetime.now(UTC)


@dataclass(frozen=True)
class ChannelSubmission:
    """Channel-native input as received by the API layer.

    Attributes:
        body: Raw JSON body, exactly as sent.
        portal_submission_id: Gateway-verified supplier portal submission id
            (request header, never read from the body).
        idempotency_key: Client idempotency key from the Idempotency-Key header.
    """

    body: Any
    portal_submission_id: str | None = None
    idempotency_key: str | None = None


@dataclass(frozen=True)
class AttachmentSpec:
    """A validated, not yet resolved attachment reference."""

    filename: str
    content_type: str
    content: bytes | None = None
    storage_uri: str | None = None


@dataclass
class ShapingContext:
    """Values derived during validation that later shaping steps reuse."""

    attachments: list[AttachmentSpec] = field(default_factory=list)
    snapshot_date: date | None = None


class ChannelAdapter(ABC):
    """Template for one ingestion channel.

    Subclasses declare their channel constants and implement the
    channel-specific hooks; shape() runs the shared pipeline.

    Args:
        file_storage: Resolves attachment storage URIs (optional).
        clock: Source of the current UTC time.
        upstream_timeout_seconds: Bound on any upstream call.
    """

    channel: ClassVar[CaptureChannel]
    trust_level: ClassVar[TrustLevel]
    payload_mode: ClassVar[PayloadMode]

    # Channel-specific keys the body may carry in addition to the declared fields.
    channel_fields: ClassVar[frozenset[str]] = frozenset()
    # Channel-specific forbidden keys mapped to their error code (category 1).
    forbidden_fields: ClassVar[Mapping[str, str]] = {}
    # Upstream system imposed by the channel; when set, the client may not declare one.
    forced_upstream_system: ClassVar[str | None] = None
    # Accepted values for a client-declared upstream_system.
    allowed_upstream_systems: ClassVar[frozenset[str]] = frozenset()

    def __init__(
        self,
        file_storage: IFileStorage | None = None,
        clock: Callable[[], datetime] = _utcnow,
        upstream_timeout_seconds: float = _DEFAULT_UPSTREAM_TIMEOUT_SECONDS,
    ) -> None:
        self._file_storage = file_storage
        self._clock = clock
        self._upstream_timeout_seconds = upstream_timeout_seconds

    # ------------------------------------------------------------------
    # Pipeline
    # ------------------------------------------------------------------

    async def shape(self, submission: ChannelSubmission, tenant: TenantContext) -> IngestionRequest:
        """Validate channel-native input and build the canonical request.

        Args:
            submission: Raw channel input.
            tenant: Verified caller identity.

        Returns:
            The canonical IngestionRequest.

        Raises:
            MalformedRequestError: The body is not a JSON object.
            ValidationError: On the first failing validation category.
            UpstreamTimeoutError: An upstream fetch exceeded its timeout.
            UpstreamError: An upstream fetch failed.
        """
        body = submission.body
        if not isinstance(body, dict):
            raise MalformedRequestError(message="Request body must be a JSON object")

        self._check_forbidden(body)

        context = ShapingContext()
        requirements = Violations("Channel requirement not met")
        self._check_upstream_system(body, requirements)
        self.check_channel_requirements(body, requirements, context)
        requirements.raise_if_any()

        check_presence(body)
        check_types(body)
        metadata = build_metadata(body)

        today = self._clock().date()
        cross_field = check_cross_field(metadata, self.channel, today)
        self.check_metadata_rules(metadata, cross_field)
        self.check_channel_cross_field(body, metadata, cross_field, context)
        cross_field.raise_if_any()

        payload = await self.resolve_payload(body, metadata, context)
        provenance = self.build_provenance(body, submission, tenant, context)
        if payload.mode == PayloadMode.BYTES:
            provenance["attachments"] = [a.descriptor() for a in payload.attachments]

        request = IngestionRequest(
            capture_channel=self.channel,
            upstream_system=self.resolve_upstream_system(body),
            metadata=metadata,
            payload=payload,
            trust_level=self.trust_level,
            provenance=provenance,
            idempotency_key=self.idempotency_key(body, metadata, submission, tenant),
            quarantine_reason=self.quarantine_reason(submission),
        )
        logger.debug(
            "Channel input shaped",
            capture_channel=self.channel.value,
            dataset_type=metadata.dataset_type.value,
            payload_mode=payload.mode.value,
        )
        return request

    def accepted_fields(self) -> frozenset[str]:
        """Keys the body may carry for this channel."""
        accepted = set(DECLARED_FIELDS) | set(self.channel_fields) | {"capture_channel"}
        if self.forced_upstream_system is None and self.allowed_upstream_systems:
            accepted.add("upstream_system")
        return frozenset(accepted)

    def _check_forbidden(self, body: dict[str, Any]) -> None:
        violations = collect_forbidden_fields(body, Violations("Forbidden client field"), self.forbidden_fields)
        accepted = self.accepted_fields()
        for name in sorted(body):
            if name in accepted or name in self.forbidden_fields or name in FORBIDDEN_CLIENT_FIELDS:
                continue
            if name == "upstream_system":
                violations.add(
                    "FORBIDDEN_CLIENT_FIELD",
                    name,
                    f"upstream_system is determined by the server for {self.channel.value}",
                )
            else:
                violations.add("UNKNOWN_FIELD", name, f"{name} is not accepted on the {self.channel.value} channel")
        declared_channel = body.get("capture_channel")
        if declared_channel is not None and declared_channel != self.channel.value:
            violations.add(
                "CAPTURE_CHANNEL_MISMATCH",
                "capture_channel",
                f"capture_channel is determined by the endpoint ({self.channel.value})",
            )
        violations.raise_if_any()

    def _check_upstream_system(self, body: dict[str, Any], violations: Violations) -> None:
        if self.forced_upstream_system is not None or not self.allowed_upstream_systems:
            return
        value = body.get("upstream_system")
        if is_missing(value):
            violations.add("MISSING_CHANNEL_FIELD", "upstream_system", "upstream_system is required")
        elif value not in self.allowed_upstream_systems:
            allowed = ", ".join(sorted(self.allowed_upstream_systems))
            violations.add(
                "INVALID_SOURCE_FOR_METHOD",
                "upstream_system",
                f"upstream_system for {self.channel.value} must be one of: {allowed}",
            )

    def resolve_upstream_system(self, body: dict[str, Any]) -> str:
        if self.forced_upstream_system is not None:
            return self.forced_upstream_system
        return body["upstream_system"]

    # ------------------------------------------------------------------
    # Channel hooks
    # ------------------------------------------------------------------

    @abstractmethod
    def check_channel_requirements(self, body: dict[str, Any], violations: Violations, context: ShapingContext) -> None:
        """Category 2: add a violation for every unmet channel requirement."""

    def check_metadata_rules(self, metadata: DeclaredMetadata, violations: Violations) -> None:
        """Category 5: channel rules over declared metadata alone.

        These also apply when an existing record's metadata is patched.
        """

    def check_channel_cross_field(
        self,
        body: dict[str, Any],
        metadata: DeclaredMetadata,
        violations: Violations,
        context: ShapingContext,
    ) -> None:
        """Category 5: channel-specific rules relating several fields."""

    @abstractmethod
    async def resolve_payload(
        self,
        body: dict[str, Any],
        metadata: DeclaredMetadata,
        context: ShapingContext,
    ) -> EvidencePayload:
        """Build the payload, fetching it upstream when the channel requires it."""

    def build_provenance(
        self,
        body: dict[str, Any],
        submission: ChannelSubmission,
        tenant: TenantContext,
        context: ShapingContext,
    ) -> dict[str, Any]:
        return {}

    def idempotency_key(
        self,
        body: dict[str, Any],
        metadata: DeclaredMetadata,
        submission: ChannelSubmission,
        tenant: TenantContext,
    ) -> str | None:
        return submission.idempotency_key or None

    def quarantine_reason(self, submission: ChannelSubmission) -> str | None:
        return None

    @abstractmethod
    def synthesize(self, declared: dict[str, Any], payload: Any) -> ChannelSubmission:
        """Build this channel's native input from declared fields and a structured payload.

        Used by the Parity Enforcer to feed one canonical sample through
        every channel.
        """

    # ------------------------------------------------------------------
    # Shared helpers
    # ------------------------------------------------------------------

    def collect_attachments(self, body: dict[str, Any], violations: Violations, context: ShapingContext) -> None:
        """Validate the `attachments` list of a file-bearing channel."""
        attachments = body.get("attachments")
        if attachments is None or (isinstance(attachments, list) and not attachments):
            violations.add(
                "MISSING_ATTACHMENT",
                "attachments",
                f"{self.channel.value} requires at least one attachment",
            )
            return
        if not isinstance(attachments, list):
            violations.add("INVALID_ATTACHMENT", "attachments", "attachments must be a list")
            return

        for index, item in enumerate(attachments):
            name = f"attachments[{index}]"
            if not isinstance(item, dict):
                violations.add("INVALID_ATTACHMENT", name, f"{name} must be an object")
                continue
            unknown = set(item) - {"filename", "content_type", "content_base64", "storage_uri"}
            if unknown:
                violations.add("INVALID_ATTACHMENT", name, f"{name} has unknown keys: {', '.join(sorted(unknown))}")
                continue
            filename = item.get("filename")
            content_type = item.get("content_type")
            if not isinstance(filename, str) or is_missing(filename):
                violations.add("INVALID_ATTACHMENT", f"{name}.filename", "filename is required")
                continue
            if not isinstance(content_type, str) or is_missing(content_type):
                violations.add("INVALID_ATTACHMENT", f"{name}.content_type", "content_type is required")
                continue

            inline = item.get("content_base64")
            storage_uri = item.get("storage_uri")
            if (inline is None) == (storage_uri is None):
                violations.add(
                    "INVALID_ATTACHMENT",
                    name,
                    f"{name} must carry exactly one of content_base64 or storage_uri",
                )
                continue
            if storage_uri is not None:
                if not isinstance(storage_uri, str) or is_missing(storage_uri):
                    violations.add("INVALID_ATTACHMENT", f"{name}.storage_uri", "storage_uri must be a string")
                    continue
                context.attachments.append(
                    AttachmentSpec(filename=filename, content_type=content_type, storage_uri=storage_uri)
                )
                continue

            if not isinstance(inline, str):
                violations.add("INVALID_ATTACHMENT", f"{name}.content_base64", "content_base64 must be a string")
                continue
            try:
                content = base64.b64decode(inline, validate=True)
            except (binascii.Error, ValueError):
                violations.add("INVALID_ATTACHMENT", f"{name}.content_base64", "content_base64 is not valid base64")
                continue
            if not content:
                violations.add("EMPTY_ATTACHMENT", name, f"{name} is empty")
                continue
            context.attachments.append(AttachmentSpec(filename=filename, content_type=content_type, content=content))

    async def resolve_attachments(self, context: ShapingContext) -> EvidencePayload:
        """Resolve validated attachment specs into a BYTES payload."""
        resolved: list[Attachment] = []
        for pending in context.attachments:
            content = pending.content
            if content is None:
                content = await self._fetch_from_storage(pending.storage_uri or "")
                if not content:
                    raise ValidationError.for_field(
                        "EMPTY_ATTACHMENT",
                        "attachments",
                        f"Attachment {pending.filename} resolved to an empty object",
                    )
            resolved.append(
                Attachment(
                    filename=pending.filename,
                    content_type=pending.content_type,
                    content=content,
                    storage_uri=pending.storage_uri,
                )
            )
        return EvidencePayload(mode=PayloadMode.BYTES, attachments=tuple(resolved))

    async def _fetch_from_storage(self, storage_uri: str) -> bytes:
        if self._file_storage is None:
            raise UpstreamError(
                message="File storage is not configured; attachments must be sent inline",
                error_code="FILE_STORAGE_UNAVAILABLE",
            )
        return await self.call_upstream(self._file_storage.fetch(storage_uri), "file_storage")

    async def call_upstream(self, call: Awaitable[T], collaborator: str) -> T:
        """Await an upstream call under the adapter's timeout bound.

        Raises:
            UpstreamTimeoutError: The call did not finish within the bound.
        """
        try:
            return await asyncio.wait_for(call, timeout=self._upstream_timeout_seconds)
        except TimeoutError as exc:
            logger.warning(
                "Upstream call timed out",
                collaborator=collaborator,
                capture_channel=self.channel.value,
                timeout_seconds=self._upstream_timeout_seconds,
            )
            raise UpstreamTimeoutError(
                message=f"{collaborator} did not respond within {self._upstream_timeout_seconds}s",
            ) from exc

    def check_snapshot_date(self, body: dict[str, Any], violations: Violations, context: ShapingContext) -> None:
        """Cross-field check for a strict, non-future YYYY-MM-DD snapshot_date."""
        raw = body.get("snapshot_date")
        parsed = parse_iso_date(raw) if isinstance(raw, str) else None
        if parsed is None:
            violations.add("INVALID_SNAPSHOT_DATE", "snapshot_date", "snapshot_date must be a YYYY-MM-DD date")
            return
        if parsed > self._clock().date():
            violations.add("INVALID_SNAPSHOT_DATE", "snapshot_date", "snapshot_date cannot be in the future")
            return
        context.snapshot_date = parsed

    @staticmethod
    def require_string(body: dict[str, Any], name: str, violations: Violations) -> None:
        value = body.get(name)
        if is_missing(value):
            violations.add("MISSING_CHANNEL_FIELD", name, f"{name} is required")
        elif not isinstance(value, str):
            violations.add("INVALID_FIELD_TYPE", name, f"{name} must be a string")
        elif is_placeholder(value):
            violations.add("PLACEHOLDER_VALUE", name, f"{name} must not be a placeholder")
