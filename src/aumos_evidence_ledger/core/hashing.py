"""Canonicalization and content hashing for evidence.

Canonical JSON: keys sorted, compact separators, UTF-8, NaN/Infinity rejected.
Python's float repr is locale-independent, so numeric formatting is stable.

Hashing rules:
- BYTES with one attachment: SHA-256 of the raw bytes.
- BYTES with several attachments: SHA-256 of the canonical JSON list of
  per-attachment digests, in submission order.
- STRUCTURED / SERVER_FETCH: SHA-256 of the canonical JSON bytes. A file whose
  content is the canonical JSON of a structure therefore hashes identically
  to that structure.
- DIGEST_REFERENCE: SHA-256 of the canonical JSON `{"digest_reference": ...}`.
- Metadata: SHA-256 of the canonical declared metadata (purpose tags sorted).
"""

from __future__ import annotations

import hashlib
import json
import uuid
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any

from aumos_evidence_ledger.core.enums import PayloadMode
from aumos_evidence_ledger.core.evidence import DeclaredMetadata, EvidencePayload
from aumos_evidence_ledger.errors import HashingError


def _json_default(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, (uuid.UUID, Decimal)):
        return str(value)
    if isinstance(value, (set, frozenset)):
        return sorted(value)
    if isinstance(value, tuple):
        return list(value)
    raise TypeError(f"Value of type {type(value).__name__} is not canonically serializable")


def canonicalize(value: Any) -> bytes:
    """Serialize a structured value to canonical JSON bytes.

    Args:
        value: Any JSON-compatible structure (dicts, lists, scalars, plus
            UUID/datetime/date/Decimal/Enum/set values).

    Returns:
        UTF-8 encoded canonical JSON.

    Raises:
        HashingError: If the value contains NaN/Infinity or unsupported types.
    """
    try:
        text = json.dumps(
            value,
            sort_keys=True,
            separators=(",", ":"),
            ensure_ascii=False,
            allow_nan=False,
            default=_json_default,
        )
    except (TypeError, ValueError) as exc:
        raise HashingError(message=f"Value cannot be canonicalized: {exc}") from exc
    return text.encode("utf-8")


def sha256_hex(data: bytes) -> str:
    """Return the SHA-256 hex digest (64 chars) of raw bytes."""
    return hashlib.sha256(data).hexdigest()


def hash_payload(payload: EvidencePayload | None) -> str:
    """Compute the payload hash.

    Args:
        payload: The evidence payload.

    Returns:
        64-character hex digest.

    Raises:
        HashingError: NO_HASH_COMPUTED when there is no payload content.
    """
    if payload is None or payload.is_empty():
        raise HashingError(message="No payload content to hash")

    if payload.mode == PayloadMode.BYTES:
        if len(payload.attachments) == 1:
            return sha256_hex(payload.attachments[0].content)
        return sha256_hex(canonicalize([a.sha256 for a in payload.attachments]))

    if payload.mode == PayloadMode.DIGEST_REFERENCE:
        return sha256_hex(canonicalize({"digest_reference": payload.digest_reference}))

    return sha256_hex(canonicalize(payload.structured))


def hash_metadata(metadata: DeclaredMetadata | None) -> str:
    """Compute the metadata hash over declared metadata only.

    Raises:
        HashingError: NO_HASH_COMPUTED when metadata is absent.
    """
    if metadata is None:
        raise HashingError(message="No declared metadata to hash")
    return sha256_hex(canonicalize(metadata.to_canonical()))


def compute_hashes(payload: EvidencePayload | None, metadata: DeclaredMetadata | None) -> tuple[str, str]:
    """Return (payload_hash, metadata_hash)."""
    return hash_payload(payload), hash_metadata(metadata)
