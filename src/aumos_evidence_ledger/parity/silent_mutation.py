"""Silent-mutation guard.

Standing policy: neither an adapter nor the ledger may auto-trim a declared
string, auto-cast a declared value to another type, or auto-inject a default
for a field the client did not declare. The guard compares the raw client
body with the shaped request's declared metadata and reports every
occurrence.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any

from aumos_evidence_ledger.core.evidence import IngestionRequest
from aumos_evidence_ledger.core.validation import DECLARED_FIELDS, metadata_to_body


class MutationKind(str, Enum):
    """Forbidden silent behaviors."""

    AUTO_TRIM = "AUTO_TRIM"
    AUTO_CAST = "AUTO_CAST"
    AUTO_DEFAULT = "AUTO_DEFAULT"


@dataclass(frozen=True)
class SilentMutation:
    """One detected mutation of a declared field."""

    field: str
    kind: MutationKind

    def to_dict(self) -> dict[str, str]:
        return {"field": self.field, "kind": self.kind.value}


def _classify(raw: Any, shaped: Any) -> MutationKind | None:
    if type(raw) is not type(shaped):
        return MutationKind.AUTO_CAST
    if isinstance(raw, str) and raw != shaped and raw.strip() == shaped.strip():
        return MutationKind.AUTO_TRIM
    if isinstance(raw, list):
        for raw_item, shaped_item in zip(raw, shaped, strict=False):
            kind = _classify(raw_item, shaped_item)
            if kind is not None:
                return kind
        if len(raw) != len(shaped):
            return MutationKind.AUTO_CAST
    if raw != shaped:
        return MutationKind.AUTO_CAST
    return None


def detect_silent_mutations(raw_body: dict[str, Any], request: IngestionRequest) -> list[SilentMutation]:
    """Compare the raw body with the shaped request.

    Args:
        raw_body: The client body exactly as received.
        request: The canonical request the adapter produced.

    Returns:
        One SilentMutation per altered declared field, in field order.
    """
    shaped = metadata_to_body(request.metadata)
    mutations: list[SilentMutation] = []
    for name in DECLARED_FIELDS:
        value = shaped[name]
        if name not in raw_body:
            if value is not None:
                mutations.append(SilentMutation(field=name, kind=MutationKind.AUTO_DEFAULT))
            continue
        kind = _classify(raw_body[name], value)
        if kind is not None:
            mutations.append(SilentMutation(field=name, kind=kind))
    return mutations
