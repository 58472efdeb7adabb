"""Entity snapshots evaluated by the Mapping Gate.

Snapshots are a tagged union on `entity_type` with an explicit
`schema_version`, so completeness scoring always runs over a closed,
known attribute set. Unknown attributes are rejected.
"""

import uuid
from datetime import datetime
from typing import Annotated, Any, Literal

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter
from pydantic import ValidationError as PydanticValidationError

from aumos_evidence_ledger.core.enums import EntityType
from aumos_evidence_ledger.errors import FieldError, ValidationError


class _SnapshotBase(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    schema_version: Literal[1] = 1
    entity_id: str = Field(min_length=1)
    lifecycle_state: str = "ACTIVE"
    legal_entity_validation: str | None = None

    def attribute(self, name: str) -> Any:
        """Return an attribute value, or None for attributes this type does not define."""
        return getattr(self, name, None)


class PartnerSnapshot(_SnapshotBase):
    """Business partner master data."""

    entity_type: Literal["PARTNER"] = "PARTNER"

    legal_name: str | None = None
    country: str | None = None
    primary_contact_name: str | None = None
    primary_contact_email: str | None = None
    registration_number: str | None = None
    address_line: str | None = None
    city: str | None = None
    postal_code: str | None = None
    nace_code: str | None = None
    website: str | None = None
    eori_number: str | None = None
    cbam_installation_id: str | None = None
    production_geolocation: str | None = None
    deforestation_free_declaration: bool | None = None
    employee_count: int | None = None
    annual_revenue_eur: float | None = None
    pfas_declaration: str | None = None
    packaging_recycled_content_pct: float | None = None
    eudamed_actor_id: str | None = None


class SiteSnapshot(_SnapshotBase):
    """Production or operating site of a partner."""

    entity_type: Literal["SITE"] = "SITE"

    site_name: str | None = None
    partner_id: str | None = None
    country: str | None = None
    city: str | None = None
    address_line: str | None = None
    postal_code: str | None = None
    site_type: str | None = None
    geolocation: str | None = None
    installation_id: str | None = None


class ProductSnapshot(_SnapshotBase):
    """Product master data."""

    entity_type: Literal["PRODUCT"] = "PRODUCT"

    product_name: str | None = None
    sku: str | None = None
    country_of_origin: str | None = None
    partner_id: str | None = None
    cn_code: str | None = None
    net_mass_kg: float | None = None
    material_composition: list[str] = Field(default_factory=list)
    embedded_emissions_tco2e: float | None = None
    pfas_content_declared: bool | None = None
    recycled_content_pct: float | None = None
    packaging_material: str | None = None
    udi_di: str | None = None


EntitySnapshot = Annotated[
    PartnerSnapshot | SiteSnapshot | ProductSnapshot,
    Field(discriminator="entity_type"),
]

_SNAPSHOT_ADAPTER: TypeAdapter[Any] = TypeAdapter(EntitySnapshot)


def parse_snapshot(raw: Any, entity_type: EntityType | None = None) -> PartnerSnapshot | SiteSnapshot | ProductSnapshot:
    """Validate a raw snapshot into its tagged-union member.

    Args:
        raw: Snapshot mapping.
        entity_type: Expected type; used as the tag when raw omits it.

    Raises:
        ValidationError: INVALID_ENTITY_SNAPSHOT with one field error per problem.
    """
    if not isinstance(raw, dict):
        raise ValidationError.for_field("INVALID_ENTITY_SNAPSHOT", "entity_snapshot", "must be a JSON object")
    data = dict(raw)
    if entity_type is not None:
        declared = data.setdefault("entity_type", entity_type.value)
        if declared != entity_type.value:
            raise ValidationError.for_field(
                "ENTITY_TYPE_MISMATCH",
                "entity_snapshot.entity_type",
                f"snapshot entity_type {declared} does not match {entity_type.value}",
            )
    try:
        return _SNAPSHOT_ADAPTER.validate_python(data)
    except PydanticValidationError as exc:
        raise ValidationError(
            message="Entity snapshot is invalid",
            error_code="INVALID_ENTITY_SNAPSHOT",
            field_errors=[
                FieldError(
                    field="entity_snapshot." + ".".join(str(p) for p in err["loc"]),
                    message=err["msg"],
                )
                for err in exc.errors()
            ],
        ) from exc


def snapshot_entity_type(snapshot: PartnerSnapshot | SiteSnapshot | ProductSnapshot) -> EntityType:
    return EntityType(snapshot.entity_type)


class RegisteredEntity(BaseModel):
    """Latest known snapshot of an entity, derived from sealed evidence."""

    model_config = ConfigDict(frozen=True)

    entity_type: EntityType
    entity_id: str
    snapshot: EntitySnapshot
    source_evidence_id: uuid.UUID | None = None
    registered_at: datetime
