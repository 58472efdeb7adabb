"""Duplicate detection and sanctioned-name matching.

Duplicate detection is read-only and never gates a decision on its own. The
candidate is compared only with existing entities that share its strong key
(the entity type's country attribute). Similarity is a weighted combination
of per-attribute scores, each computed with the method the rule set assigns:

- exact       : normalized values are equal (1.0) or not (0.0)
- levenshtein : normalized Levenshtein similarity
- token_set   : token-set ratio, insensitive to word order and repetition

Attributes missing on either side do not contribute to the weighted average.
"""

import re
import unicodedata
from collections import defaultdict
from collections.abc import Iterable, Mapping
from typing import Any

from rapidfuzz import fuzz
from rapidfuzz.distance import Levenshtein

from aumos_evidence_ledger.core.enums import EntityType
from aumos_evidence_ledger.mapping_gate.decision import DuplicateCandidate
from aumos_evidence_ledger.mapping_gate.entities import RegisteredEntity
from aumos_evidence_ledger.mapping_gate.rules import AttributeWeight, EntityRules

_SCORE_DIGITS = 4


def normalize_text(value: Any) -> str:
    """Normalize a value for comparison: strip accents and punctuation, collapse spaces, upper-case."""
    if value is None:
        return ""
    text = "".join(c for c in unicodedata.normalize("NFD", str(value)) if unicodedata.category(c) != "Mn")
    text = re.sub(r"[^\w\s]", " ", text)
    text = re.sub(r"\s+", " ", text)
    return text.upper().strip()


def attribute_similarity(method: str, left: Any, right: Any) -> float:
    """Similarity in [0, 1] of two populated attribute values."""
    a, b = normalize_text(left), normalize_text(right)
    if method == "exact":
        return 1.0 if a.replace(" ", "") == b.replace(" ", "") else 0.0
    if method == "levenshtein":
        return Levenshtein.normalized_similarity(a, b)
    return fuzz.token_set_ratio(a, b) / 100.0


def weighted_similarity(
    candidate: Any,
    existing: Any,
    weights: Mapping[str, AttributeWeight],
) -> float | None:
    """Weighted similarity of two snapshots, or None when no weighted attribute is comparable."""
    total_weight = 0.0
    score = 0.0
    for name in sorted(weights):
        left, right = candidate.attribute(name), existing.attribute(name)
        if normalize_text(left) == "" or normalize_text(right) == "":
            continue
        rule = weights[name]
        total_weight += rule.weight
        score += rule.weight * attribute_similarity(rule.method, left, right)
    if total_weight == 0.0:
        return None
    return round(score / total_weight, _SCORE_DIGITS)


def partition_by_strong_key(entities: Iterable[RegisteredEntity], key_field: str) -> dict[str, list[RegisteredEntity]]:
    """Group registered entities by their normalized strong key value."""
    partitions: dict[str, list[RegisteredEntity]] = defaultdict(list)
    for entity in entities:
        key = normalize_text(entity.snapshot.attribute(key_field))
        if key:
            partitions[key].append(entity)
    return dict(partitions)


def find_duplicates(
    snapshot: Any,
    existing: Iterable[RegisteredEntity],
    rules: EntityRules,
    flag_threshold: float,
    near_certain_threshold: float,
) -> list[DuplicateCandidate]:
    """Return existing entities at or above the flag threshold, most similar first.

    Args:
        snapshot: The evaluated entity snapshot.
        existing: Registered entities of the same type.
        rules: Entity rules carrying the strong key and attribute weights.
        flag_threshold: Minimum similarity to report a candidate.
        near_certain_threshold: Similarity at which a candidate is near-certain.
    """
    key = normalize_text(snapshot.attribute(rules.country_field))
    if not key:
        return []
    partition = partition_by_strong_key(existing, rules.country_field).get(key, [])

    candidates: list[DuplicateCandidate] = []
    for entity in partition:
        if entity.entity_id == snapshot.entity_id:
            continue
        similarity = weighted_similarity(snapshot, entity.snapshot, rules.duplicate_weights)
        if similarity is None or similarity < flag_threshold:
            continue
        candidates.append(
            DuplicateCandidate(
                entity_type=EntityType(entity.entity_type),
                entity_id=entity.entity_id,
                similarity=similarity,
                near_certain=similarity >= near_certain_threshold,
            )
        )
    return sorted(candidates, key=lambda c: (-c.similarity, c.entity_id))


def best_sanctioned_name_match(name: Any, sanctioned_names: Iterable[str]) -> tuple[str, float] | None:
    """Return the closest sanctioned name and its similarity, or None for an empty name."""
    query = normalize_text(name)
    if not query:
        return None
    best: tuple[str, float] | None = None
    for listed in sanctioned_names:
        score = round(fuzz.token_sort_ratio(query, normalize_text(listed)) / 100.0, _SCORE_DIGITS)
        if best is None or score > best[1]:
            best = (listed, score)
    return best
