"""Parity Enforcer: cross-channel contract checker.

Feeds one canonical sample through every channel adapter's shaping logic,
previews the ledger entry each channel would produce, and compares the entries
field-for-field. Fields that legitimately differ per channel are excluded.

A channel that rejects the sample while another accepts it is a parity
violation as well; if every channel rejects the sample with the same error
code, the channels still behave identically.
"""

import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from aumos_evidence_ledger.auth import TenantContext
from aumos_evidence_ledger.channels.base import ChannelAdapter
from aumos_evidence_ledger.channels.erp import StaticSnapshotConnector
from aumos_evidence_ledger.channels.registry import build_channel_registry
from aumos_evidence_ledger.core.evidence import EvidenceRecord
from aumos_evidence_ledger.core.ledger import EvidenceLedger
from aumos_evidence_ledger.errors import LedgerError, MalformedRequestError
from aumos_evidence_ledger.observability import get_logger
from aumos_evidence_ledger.parity.silent_mutation import detect_silent_mutations

logger = get_logger(__name__)

# Entry fields that legitimately differ between channels.
EXCLUDED_FIELDS = frozenset(
    {
        "evidence_id",
        "capture_channel",
        "upstream_system",
        "created_at",
        "created_by",
        "updated_at",
        "trust_level",
        "provenance",
        "idempotency_key",
        "payload",
        "state_history",
    }
)

_PARITY_TENANT = TenantContext(tenant_id=uuid.UUID(int=1), user_id=uuid.UUID(int=1), role="parity")


def _utcnow() -> datetime:
    return datetime.now(UTC)


@dataclass(frozen=True)
class ChannelOutcome:
    """What one channel produced for the sample."""

    channel: str
    accepted: bool
    error_code: str | None = None
    entry: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "channel": self.channel,
            "accepted": self.accepted,
            "error_code": self.error_code,
            "entry": self.entry,
        }


@dataclass(frozen=True)
class ParityReport:
    """Result of one parity verification."""

    parity: bool
    channels: list[ChannelOutcome]
    violation: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "parity": self.parity,
            "violation": self.violation,
            "channels": [c.to_dict() for c in self.channels],
        }


def comparable_entry(record: EvidenceRecord) -> dict[str, Any]:
    """Render the channel-independent part of a ledger entry."""
    entry = {
        "tenant_id": str(record.tenant_id),
        "state": record.state.value,
        "metadata": record.metadata.to_canonical(),
        "payload_hash": record.payload_hash,
        "metadata_hash": record.metadata_hash,
        "retention_end": record.retention_end.isoformat() if record.retention_end else None,
        "supersedes": str(record.supersedes) if record.supersedes else None,
        "superseded_by": str(record.superseded_by) if record.superseded_by else None,
        "quarantine_reason": record.quarantine_reason,
        "rejection_code": record.rejection_code,
        "retention_overridden": record.retention_overridden,
    }
    return {k: v for k, v in entry.items() if k not in EXCLUDED_FIELDS}


class ParityEnforcer:
    """Verifies that all channel adapters shape equivalent input identically.

    Args:
        ledger: Ledger used to preview entries (nothing is persisted).
        clock: Source of the current UTC time; one instant is used for every
            channel in a verification run.
        adapter_factory: Builds the adapter set for a sample payload. The
            default wires the ERP_API adapter to a connector that serves the
            sample payload.
    """

    def __init__(
        self,
        ledger: EvidenceLedger,
        clock: Callable[[], datetime] = _utcnow,
        adapter_factory: Callable[[Any, Callable[[], datetime]], list[ChannelAdapter]] | None = None,
    ) -> None:
        self._ledger = ledger
        self._clock = clock
        self._adapter_factory = adapter_factory or self._default_adapters

    @staticmethod
    def _default_adapters(payload: Any, clock: Callable[[], datetime]) -> list[ChannelAdapter]:
        registry = build_channel_registry(erp_connector=StaticSnapshotConnector(default=payload), clock=clock)
        return registry.all()

    async def verify(self, sample: Any) -> ParityReport:
        """Run the sample through every channel and compare the results.

        Args:
            sample: `{"declared": {...declared fields...}, "payload": {...}}`.

        Returns:
            ParityReport with parity=False and the first difference when the
            channels disagree.

        Raises:
            MalformedRequestError: The sample does not have the expected shape.
        """
        if not isinstance(sample, dict) or not isinstance(sample.get("declared"), dict) or "payload" not in sample:
            raise MalformedRequestError(message="Parity sample must be an object with 'declared' and 'payload'")

        declared: dict[str, Any] = sample["declared"]
        payload = sample["payload"]
        at = self._clock()

        def frozen_clock() -> datetime:
            return at

        outcomes = [
            await self._run_channel(adapter, declared, payload, at)
            for adapter in self._adapter_factory(payload, frozen_clock)
        ]
        violation = self._first_difference(outcomes)
        if violation is not None:
            logger.warning("Channel parity violated", violation=violation)
        return ParityReport(parity=violation is None, channels=outcomes, violation=violation)

    async def _run_channel(
        self,
        adapter: ChannelAdapter,
        declared: dict[str, Any],
        payload: Any,
        at: datetime,
    ) -> ChannelOutcome:
        submission = adapter.synthesize(declared, payload)
        try:
            request = await adapter.shape(submission, _PARITY_TENANT)
            mutations = detect_silent_mutations(submission.body, request)
            if mutations:
                return ChannelOutcome(
                    channel=adapter.channel.value,
                    accepted=False,
                    error_code="SILENT_MUTATION_DETECTED",
                )
            record = self._ledger.preview(request, _PARITY_TENANT.tenant_id, at)
        except LedgerError as exc:
            return ChannelOutcome(channel=adapter.channel.value, accepted=False, error_code=exc.error_code)
        return ChannelOutcome(channel=adapter.channel.value, accepted=True, entry=comparable_entry(record))

    @staticmethod
    def _first_difference(outcomes: list[ChannelOutcome]) -> str | None:
        if not outcomes:
            return None
        reference = outcomes[0]
        for outcome in outcomes[1:]:
            if outcome.accepted != reference.accepted or outcome.error_code != reference.error_code:
                return (
                    f"{outcome.channel} {'accepted' if outcome.accepted else f'rejected ({outcome.error_code})'} "
                    f"but {reference.channel} "
                    f"{'accepted' if reference.accepted else f'rejected ({reference.error_code})'}"
                )
            for name in sorted(reference.entry):
                if outcome.entry.get(name) != reference.entry[name]:
                    return f"{outcome.channel} differs from {reference.channel} on {name}"
        return None
