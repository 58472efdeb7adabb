"""Mapping Gate evaluation.

`evaluate` is a pure function of its inputs: the entity snapshot, the
evidence lineage, the requested frameworks, an explicit RuleSet, the set of
already-registered entities, and the evaluation instant. Identical inputs
produce a byte-identical MappingDecision, including its identifier.

Evaluation order:
    1. Hard stops (sanctioned country, sanctioned name, blocked lifecycle
       state, failed legal entity validation). Any hit blocks the entity with
       a completeness score of 0 and ends the evaluation.
    2. Global mandatory fields, one blocking reason per category.
    3. Framework readiness for each requested framework.
    4. Overall completeness against the rule set threshold.
    5. Evidence lineage: unsealed evidence downgrades an approval.
    6. Duplicate candidates, attached as flags.
"""

import uuid
from collections.abc import Iterable, Sequence
from datetime import datetime
from typing import Any

from aumos_evidence_ledger.core.enums import EntityType, EvidenceState, MappingStatus, Severity
from aumos_evidence_ledger.core.hashing import canonicalize, sha256_hex
from aumos_evidence_ledger.errors import FieldError, ValidationError
from aumos_evidence_ledger.mapping_gate.decision import (
    BlockingReason,
    DuplicateCandidate,
    FrameworkReadiness,
    LineageEntry,
    MappingDecision,
    MissingField,
)
from aumos_evidence_ledger.mapping_gate.duplicates import best_sanctioned_name_match, find_duplicates, normalize_text
from aumos_evidence_ledger.mapping_gate.entities import RegisteredEntity, snapshot_entity_type
from aumos_evidence_ledger.mapping_gate.rules import EntityRules, RuleSet

# Namespace for deterministic decision identifiers.
DECISION_NAMESPACE = uuid.UUID("6f1c3e52-9a4d-5b7e-8c21-0d4f7a9e3b10")

NEAR_CERTAIN_DUPLICATE = "NEAR_CERTAIN_DUPLICATE"

# Escalation precedence of non-hard-stop reasons.
_REASON_PRECEDENCE = (
    "MISSING_GLOBAL_FIELD",
    NEAR_CERTAIN_DUPLICATE,
    "FRAMEWORK_GAP",
    "LOW_COMPLETENESS",
    "UNSEALED_LINEAGE",
    "DUPLICATE_CANDIDATE",
)


def is_populated(name: str, value: Any, zero_is_missing: frozenset[str] = frozenset()) -> bool:
    """Whether an attribute counts as provided.

    Blank strings and empty collections are missing. Booleans are always
    provided, including False. A numeric 0 is missing only for attributes
    listed in `zero_is_missing`.
    """
    if value is None:
        return False
    if isinstance(value, str):
        return value.strip() != ""
    if isinstance(value, (list, tuple, set, frozenset, dict)):
        return len(value) > 0
    if isinstance(value, bool):
        return True
    if isinstance(value, (int, float)) and value == 0:
        return name not in zero_is_missing
    return True


def lineage_entry(evidence_id: uuid.UUID, state: EvidenceState, payload_hash: str | None) -> LineageEntry:
    return LineageEntry(
        evidence_id=evidence_id,
        state=state,
        payload_hash=payload_hash,
        sealed=state == EvidenceState.SEALED,
    )


def validate_frameworks(frameworks: Iterable[str], ruleset: RuleSet) -> list[str]:
    """Normalize requested framework codes to a sorted, de-duplicated list.

    Raises:
        ValidationError: UNKNOWN_FRAMEWORK for codes the rule set does not define.
    """
    known = ruleset.frameworks()
    requested = sorted({str(code).strip().upper() for code in frameworks})
    unknown = [code for code in requested if code not in known]
    if unknown:
        raise ValidationError(
            message=f"Unknown framework(s): {', '.join(unknown)}",
            error_code="UNKNOWN_FRAMEWORK",
            field_errors=[FieldError(field="frameworks", message=f"unknown framework {code}") for code in unknown],
        )
    return requested


def compute_inputs_hash(
    snapshot: Any,
    lineage: Sequence[LineageEntry],
    frameworks: Sequence[str],
    ruleset: RuleSet,
    existing_entities: Sequence[RegisteredEntity],
) -> str:
    """SHA-256 over the canonical form of everything an evaluation depends on."""
    inputs = {
        "snapshot": snapshot.model_dump(mode="json"),
        "lineage": [entry.model_dump(mode="json") for entry in lineage],
        "frameworks": list(frameworks),
        "rule_version": ruleset.rule_version,
        "ruleset_hash": ruleset.content_hash,
        "existing_entities": sorted(
            (
                {"entity_id": entity.entity_id, "snapshot": entity.snapshot.model_dump(mode="json")}
                for entity in existing_entities
            ),
            key=lambda item: item["entity_id"],
        ),
    }
    return sha256_hex(canonicalize(inputs))


def _hard_stops(snapshot: Any, rules: EntityRules, ruleset: RuleSet) -> list[BlockingReason]:
    stops = ruleset.hard_stops
    reasons: list[BlockingReason] = []

    country = normalize_text(snapshot.attribute(rules.country_field))
    if country and country in stops.sanctioned_countries:
        reasons.append(
            BlockingReason(
                code="SANCTIONED_COUNTRY",
                category="SANCTIONS",
                message=f"{rules.country_field} {country} is subject to sanctions",
            )
        )

    match = best_sanctioned_name_match(snapshot.attribute(rules.name_field), stops.sanctioned_names)
    if match is not None and match[1] >= ruleset.sanctioned_name_threshold:
        reasons.append(
            BlockingReason(
                code="SANCTIONED_NAME_MATCH",
                category="SANCTIONS",
                message=f"{rules.name_field} matches sanctioned name '{match[0]}' (similarity {match[1]:.2f})",
            )
        )

    lifecycle = normalize_text(snapshot.lifecycle_state)
    if lifecycle in stops.blocked_lifecycle_states:
        reasons.append(
            BlockingReason(
                code="BLOCKED_LIFECYCLE_STATE",
                category="LIFECYCLE",
                message=f"lifecycle_state {lifecycle} does not permit use",
            )
        )

    validation = normalize_text(snapshot.legal_entity_validation)
    if validation and validation in stops.failed_legal_entity_statuses:
        reasons.append(
            BlockingReason(
                code="LEGAL_ENTITY_VALIDATION_FAILED",
                category="LEGAL_ENTITY",
                message=f"legal entity validation returned {validation}",
            )
        )
    return reasons


def evaluate(
    snapshot: Any,
    lineage: Sequence[LineageEntry],
    frameworks: Iterable[str],
    ruleset: RuleSet,
    existing_entities: Sequence[RegisteredEntity],
    evaluated_at: datetime,
    tenant_id: uuid.UUID | None = None,
    evidence_id: uuid.UUID | None = None,
    near_certain_blocks: bool = False,
) -> MappingDecision:
    """Evaluate one entity snapshot against a rule set.

    Args:
        snapshot: Tagged-union entity snapshot.
        lineage: Evidence the snapshot was derived from.
        frameworks: Framework codes to assess readiness for.
        ruleset: Rule set applied; its version is stamped on the decision.
        existing_entities: Registered entities of the same type, for
            duplicate detection.
        evaluated_at: Evaluation instant.
        tenant_id: Owning tenant, stamped on the decision.
        evidence_id: Evidence the evaluation was triggered by, if any.
        near_certain_blocks: Block when a near-certain duplicate exists.

    Returns:
        The MappingDecision.

    Raises:
        ValidationError: UNKNOWN_FRAMEWORK.
    """
    entity_type: EntityType = snapshot_entity_type(snapshot)
    rules = ruleset.for_entity(entity_type)
    requested = validate_frameworks(frameworks, ruleset)
    lineage = sorted(lineage, key=lambda entry: str(entry.evidence_id))
    existing = [e for e in existing_entities if e.entity_type == entity_type]

    inputs_hash = compute_inputs_hash(snapshot, lineage, requested, ruleset, existing)
    decision_id = uuid.uuid5(DECISION_NAMESPACE, f"{inputs_hash}:{evaluated_at.isoformat()}")

    def build(**fields: Any) -> MappingDecision:
        return MappingDecision(
            mapping_decision_id=decision_id,
            tenant_id=tenant_id,
            evidence_id=evidence_id,
            entity_type=entity_type,
            entity_id=snapshot.entity_id,
            evidence_lineage=list(lineage),
            rule_version=ruleset.rule_version,
            inputs_hash=inputs_hash,
            evaluated_at=evaluated_at,
            **fields,
        )

    def value(name: str) -> Any:
        return snapshot.attribute(name)

    # 1. Hard stops
    hard_stops = _hard_stops(snapshot, rules, ruleset)
    if hard_stops:
        return build(
            status=MappingStatus.BLOCKED,
            completeness_score=0.0,
            blocking_reasons=hard_stops,
            required_next_actions=list(dict.fromkeys(ruleset.action(r.code) for r in hard_stops)),
            primary_reason=hard_stops[0].code,
        )

    status = MappingStatus.APPROVED
    fired: list[str] = []
    actions: list[str] = []
    missing: dict[tuple[str, str], MissingField] = {}
    blocking: list[BlockingReason] = []

    # 2. Global mandatory fields
    for category, fields in rules.global_fields.items():
        absent = [name for name in fields if not is_populated(name, value(name), rules.zero_is_missing)]
        if not absent:
            continue
        blocking.append(
            BlockingReason(
                code=f"MISSING_GLOBAL_{category}",
                category=category,
                message=f"Missing mandatory {category.lower()} field(s): {', '.join(absent)}",
            )
        )
        for name in absent:
            missing[(name, "GLOBAL")] = MissingField(field=name, scope="GLOBAL", severity=Severity.BLOCKING)
            actions.append(ruleset.action("MISSING_GLOBAL_FIELD", field=name))
    if blocking:
        status = MappingStatus.BLOCKED
        fired.append("MISSING_GLOBAL_FIELD")

    # 3. Framework readiness
    readiness: dict[str, FrameworkReadiness] = {}
    for framework in requested:
        required = rules.frameworks.get(framework, ())
        absent = [name for name in required if not is_populated(name, value(name), rules.zero_is_missing)]
        pct = 100.0 if not required else round((len(required) - len(absent)) / len(required) * 100, 2)
        readiness[framework] = FrameworkReadiness(ready=not absent, completeness_pct=pct, missing_fields=absent)
        for name in absent:
            missing.setdefault((name, framework), MissingField(field=name, scope=framework, severity=Severity.HIGH))
            actions.append(ruleset.action("FRAMEWORK_GAP", field=name, framework=framework))
        if absent:
            fired.append("FRAMEWORK_GAP")

    # 4. Completeness
    scored = rules.scored_fields
    populated = [name for name in scored if is_populated(name, value(name), rules.zero_is_missing)]
    ratio = len(populated) / len(scored) if scored else 1.0
    completeness_score = round(ratio * 100, 2)
    for name in scored:
        if name not in populated and not any(key[0] == name for key in missing):
            missing[(name, "COMPLETENESS")] = MissingField(field=name, scope="COMPLETENESS", severity=Severity.LOW)
    if ratio < ruleset.completeness_threshold:
        fired.append("LOW_COMPLETENESS")
        actions.append(ruleset.action("LOW_COMPLETENESS"))

    # 5. Lineage
    if any(not entry.sealed for entry in lineage):
        fired.append("UNSEALED_LINEAGE")
        actions.append(ruleset.action("UNSEALED_LINEAGE"))

    # 6. Duplicates
    duplicates: list[DuplicateCandidate] = find_duplicates(
        snapshot,
        existing,
        rules,
        ruleset.duplicate_flag_threshold,
        ruleset.duplicate_near_certain_threshold,
    )
    if duplicates:
        fired.append("DUPLICATE_CANDIDATE")
        actions.append(ruleset.action("DUPLICATE_CANDIDATE"))
        if near_certain_blocks and any(d.near_certain for d in duplicates):
            top = duplicates[0]
            blocking.append(
                BlockingReason(
                    code=NEAR_CERTAIN_DUPLICATE,
                    category="DUPLICATE",
                    message=f"{entity_type.value} {top.entity_id} is a near-certain duplicate "
                    f"(similarity {top.similarity:.2f})",
                )
            )
            status = MappingStatus.BLOCKED
            fired.append(NEAR_CERTAIN_DUPLICATE)

    downgrades = {"FRAMEWORK_GAP", "LOW_COMPLETENESS", "UNSEALED_LINEAGE"}
    if status == MappingStatus.APPROVED and downgrades.intersection(fired):
        status = MappingStatus.PROVISIONAL

    primary_reason = None
    if status != MappingStatus.APPROVED:
        primary_reason = next(reason for reason in _REASON_PRECEDENCE if reason in fired)

    return build(
        status=status,
        completeness_score=completeness_score,
        missing_fields=list(missing.values()),
        blocking_reasons=blocking,
        duplicate_candidates=duplicates,
        framework_readiness=readiness,
        required_next_actions=list(dict.fromkeys(actions)),
        primary_reason=primary_reason,
    )
