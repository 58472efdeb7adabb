"""Versioned Mapping Gate rule sets.

Rule sets are YAML files named `{rule_version}.yaml` under the rule set
directory. Each file is parsed once into frozen structures; evaluations
receive the RuleSet explicitly, so concurrent evaluations under different
versions never share mutable state.
"""

import hashlib
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path
from types import MappingProxyType
from typing import Any

import yaml

from aumos_evidence_ledger.core.enums import EntityType
from aumos_evidence_ledger.errors import NotFoundError
from aumos_evidence_ledger.observability import get_logger

logger = get_logger(__name__)

SIMILARITY_METHODS = frozenset({"exact", "levenshtein", "token_set"})


@dataclass(frozen=True)
class AttributeWeight:
    """Weight and comparison method of one attribute in duplicate scoring."""

    weight: float
    method: str


@dataclass(frozen=True)
class EntityRules:
    """Rules for one entity type.

    Attributes:
        name_field: Attribute holding the entity's display/legal name.
        country_field: Strong key used to partition duplicate detection and
            for the sanctioned-country hard stop.
        global_fields: Mandatory fields grouped by category.
        scored_fields: Attributes counted by overall completeness.
        zero_is_missing: Numeric attributes where 0 means "not provided".
        frameworks: Framework code -> required attributes.
        duplicate_weights: Attribute -> weight/method for duplicate scoring.
    """

    name_field: str
    country_field: str
    global_fields: Mapping[str, tuple[str, ...]]
    scored_fields: tuple[str, ...]
    zero_is_missing: frozenset[str]
    frameworks: Mapping[str, tuple[str, ...]]
    duplicate_weights: Mapping[str, AttributeWeight]


@dataclass(frozen=True)
class HardStopRules:
    """Non-waivable conditions."""

    sanctioned_countries: frozenset[str]
    sanctioned_names: tuple[str, ...]
    blocked_lifecycle_states: frozenset[str]
    failed_legal_entity_statuses: frozenset[str]


@dataclass(frozen=True)
class RuleSet:
    """One immutable, versioned rule set."""

    rule_version: str
    completeness_threshold: float
    duplicate_flag_threshold: float
    duplicate_near_certain_threshold: float
    sanctioned_name_threshold: float
    hard_stops: HardStopRules
    entities: Mapping[EntityType, EntityRules]
    next_actions: Mapping[str, str]
    content_hash: str = ""

    def for_entity(self, entity_type: EntityType) -> EntityRules:
        return self.entities[entity_type]

    def frameworks(self) -> frozenset[str]:
        """Every framework code known to any entity type."""
        return frozenset(code for rules in self.entities.values() for code in rules.frameworks)

    def action(self, rule: str, **values: str) -> str:
        """Render the next action for a fired rule."""
        return self.next_actions[rule].format(**values)


def _freeze_groups(raw: Mapping[str, Any]) -> Mapping[str, tuple[str, ...]]:
    return MappingProxyType({str(k): tuple(v) for k, v in raw.items()})


def _parse_entity(raw: Mapping[str, Any]) -> EntityRules:
    weights: dict[str, AttributeWeight] = {}
    for name, entry in raw.get("duplicate_weights", {}).items():
        method = entry["method"]
        if method not in SIMILARITY_METHODS:
            raise ValueError(f"Unknown similarity method '{method}' for {name}")
        weights[name] = AttributeWeight(weight=float(entry["weight"]), method=method)
    return EntityRules(
        name_field=raw["name_field"],
        country_field=raw["country_field"],
        global_fields=_freeze_groups(raw.get("global_fields", {})),
        scored_fields=tuple(raw.get("scored_fields", [])),
        zero_is_missing=frozenset(raw.get("zero_is_missing", [])),
        frameworks=_freeze_groups(raw.get("frameworks", {})),
        duplicate_weights=MappingProxyType(weights),
    )


def parse_ruleset(raw: Mapping[str, Any], content_hash: str = "") -> RuleSet:
    """Build a RuleSet from a parsed YAML document.

    Raises:
        KeyError: A required section is missing.
        ValueError: A value is out of range or unknown.
    """
    thresholds = raw["thresholds"]
    hard_stops = raw["hard_stops"]
    ruleset = RuleSet(
        rule_version=str(raw["rule_version"]),
        completeness_threshold=float(thresholds["completeness"]),
        duplicate_flag_threshold=float(thresholds["duplicate_flag"]),
        duplicate_near_certain_threshold=float(thresholds["duplicate_near_certain"]),
        sanctioned_name_threshold=float(thresholds["sanctioned_name_match"]),
        hard_stops=HardStopRules(
            sanctioned_countries=frozenset(hard_stops.get("sanctioned_countries", [])),
            sanctioned_names=tuple(hard_stops.get("sanctioned_names", [])),
            blocked_lifecycle_states=frozenset(hard_stops.get("blocked_lifecycle_states", [])),
            failed_legal_entity_statuses=frozenset(hard_stops.get("failed_legal_entity_statuses", [])),
        ),
        entities=MappingProxyType(
            {EntityType(name): _parse_entity(entity_raw) for name, entity_raw in raw["entities"].items()}
        ),
        next_actions=MappingProxyType(dict(raw["next_actions"])),
        content_hash=content_hash,
    )
    for value in (
        ruleset.completeness_threshold,
        ruleset.duplicate_flag_threshold,
        ruleset.duplicate_near_certain_threshold,
        ruleset.sanctioned_name_threshold,
    ):
        if not 0.0 <= value <= 1.0:
            raise ValueError(f"Threshold {value} must be between 0 and 1")
    if ruleset.duplicate_near_certain_threshold < ruleset.duplicate_flag_threshold:
        raise ValueError("duplicate_near_certain must not be below duplicate_flag")
    return ruleset


class RulesetRegistry:
    """Loads every rule set version from a directory.

    Args:
        ruleset_dir: Directory containing `{rule_version}.yaml` files.
        default_version: Version used when a caller does not pin one.
    """

    def __init__(self, ruleset_dir: Path, default_version: str) -> None:
        self._rulesets: dict[str, RuleSet] = {}
        self._default_version = default_version
        self._load(ruleset_dir)

    def _load(self, ruleset_dir: Path) -> None:
        if not ruleset_dir.exists():
            logger.warning("Rule set directory not found, no rule sets loaded", ruleset_dir=str(ruleset_dir))
            return

        for yaml_file in sorted(ruleset_dir.glob("*.yaml")):
            try:
                text = yaml_file.read_text(encoding="utf-8")
                ruleset = parse_ruleset(
                    yaml.safe_load(text),
                    content_hash=hashlib.sha256(text.encode("utf-8")).hexdigest(),
                )
            except (OSError, yaml.YAMLError, KeyError, TypeError, ValueError) as exc:
                logger.error("Failed to load rule set", yaml_file=str(yaml_file), error=str(exc))
                continue
            self._rulesets[ruleset.rule_version] = ruleset
            logger.debug("Loaded rule set", rule_version=ruleset.rule_version, content_hash=ruleset.content_hash)

        logger.info("Mapping Gate rule sets loaded", versions=sorted(self._rulesets))

    @property
    def default_version(self) -> str:
        return self._default_version

    def versions(self) -> list[str]:
        return sorted(self._rulesets)

    def get(self, rule_version: str | None = None) -> RuleSet:
        """Return a rule set by version, or the default version.

        Raises:
            NotFoundError: The version is not loaded.
        """
        version = rule_version or self._default_version
        ruleset = self._rulesets.get(version)
        if ruleset is None:
            raise NotFoundError(resource="RuleSet", resource_id=version)
        return ruleset
