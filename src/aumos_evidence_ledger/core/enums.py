"""Enumerations shared across the ledger, channel adapters, and Mapping Gate."""

from enum import Enum


class CaptureChannel(str, Enum):
    """Ingestion channel through which evidence arrived."""

    FILE_UPLOAD = "FILE_UPLOAD"
    ERP_EXPORT = "ERP_EXPORT"
    ERP_API = "ERP_API"
    SUPPLIER_PORTAL = "SUPPLIER_PORTAL"
    API_PUSH = "API_PUSH"
    MANUAL = "MANUAL"


class DatasetType(str, Enum):
    """Shape of the evidence payload."""

    PARTNER_MASTER = "PARTNER_MASTER"
    PRODUCT_MASTER = "PRODUCT_MASTER"
    BOM = "BOM"
    CERTIFICATE = "CERTIFICATE"
    TEST_REPORT = "TEST_REPORT"
    TRANSACTION_LOG = "TRANSACTION_LOG"


class DeclaredScope(str, Enum):
    """Organizational scope the evidence applies to."""

    ENTIRE_ORGANIZATION = "ENTIRE_ORGANIZATION"
    LEGAL_ENTITY = "LEGAL_ENTITY"
    SITE = "SITE"
    PRODUCT_FAMILY = "PRODUCT_FAMILY"
    UNKNOWN = "UNKNOWN"


class RetentionPolicy(str, Enum):
    """Retention policy; fixed policies are expressed in calendar years."""

    STANDARD_1_YEAR = "STANDARD_1_YEAR"
    STANDARD_3_YEARS = "STANDARD_3_YEARS"
    STANDARD_7_YEARS = "STANDARD_7_YEARS"
    CUSTOM = "CUSTOM"


class LegalBasis(str, Enum):
    """GDPR Art. 6(1) lawful basis for processing personal data."""

    CONSENT = "CONSENT"
    CONTRACT = "CONTRACT"
    LEGAL_OBLIGATION = "LEGAL_OBLIGATION"
    VITAL_INTERESTS = "VITAL_INTERESTS"
    PUBLIC_TASK = "PUBLIC_TASK"
    LEGITIMATE_INTERESTS = "LEGITIMATE_INTERESTS"


class SourceSystem(str, Enum):
    """Declared upstream origin system."""

    SAP = "SAP"
    MICROSOFT_DYNAMICS = "MICROSOFT_DYNAMICS"
    ORACLE = "ORACLE"
    ODOO = "ODOO"
    NETSUITE = "NETSUITE"
    SUPPLIER_PORTAL = "SUPPLIER_PORTAL"
    INTERNAL_MANUAL = "INTERNAL_MANUAL"
    OTHER = "OTHER"


class PayloadMode(str, Enum):
    """How a channel delivers its payload."""

    BYTES = "BYTES"
    STRUCTURED = "STRUCTURED"
    DIGEST_REFERENCE = "DIGEST_REFERENCE"
    SERVER_FETCH = "SERVER_FETCH"


class EvidenceState(str, Enum):
    """Evidence lifecycle state."""

    DRAFT = "DRAFT"
    INGESTED = "INGESTED"
    SEALED = "SEALED"
    REJECTED = "REJECTED"
    QUARANTINED = "QUARANTINED"
    SUPERSEDED = "SUPERSEDED"


class TrustLevel(str, Enum):
    """Provenance trust derived from the capture channel."""

    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"


class AuditAction(str, Enum):
    """Verbs recorded in the audit trail."""

    DRAFT_CREATED = "DRAFT_CREATED"
    UPDATED = "UPDATED"
    INGESTED = "INGESTED"
    SEALED = "SEALED"
    REJECTED = "REJECTED"
    QUARANTINED = "QUARANTINED"
    QUARANTINE_RESOLVED = "QUARANTINE_RESOLVED"
    SUPERSEDED = "SUPERSEDED"
    RETENTION_OVERRIDDEN = "RETENTION_OVERRIDDEN"
    IDEMPOTENT_REPLAY = "IDEMPOTENT_REPLAY"
    REQUEST_REJECTED = "REQUEST_REJECTED"
    SILENT_MUTATION_DETECTED = "SILENT_MUTATION_DETECTED"
    MAPPING_EVALUATED = "MAPPING_EVALUATED"
    ESCALATION_CREATED = "ESCALATION_CREATED"
    ESCALATION_RESOLVED = "ESCALATION_RESOLVED"


class MappingStatus(str, Enum):
    """Mapping Gate outcome."""

    APPROVED = "APPROVED"
    PROVISIONAL = "PROVISIONAL"
    BLOCKED = "BLOCKED"


class EntityType(str, Enum):
    """Kinds of real-world entity the Mapping Gate admits."""

    PARTNER = "PARTNER"
    SITE = "SITE"
    PRODUCT = "PRODUCT"


class Severity(str, Enum):
    """Severity of a missing field."""

    BLOCKING = "BLOCKING"
    HIGH = "HIGH"
    MEDIUM = "MEDIUM"
    LOW = "LOW"


class Priority(str, Enum):
    """Escalation priority."""

    CRITICAL = "CRITICAL"
    HIGH = "HIGH"
    MEDIUM = "MEDIUM"
    LOW = "LOW"


class ResolverRole(str, Enum):
    """Role responsible for resolving an escalation."""

    COMPLIANCE_OFFICER = "COMPLIANCE_OFFICER"
    LEGAL = "LEGAL"
    DATA_STEWARD = "DATA_STEWARD"
    PROCUREMENT = "PROCUREMENT"
    SUPPLIER_MANAGER = "SUPPLIER_MANAGER"


class WorkItemSource(str, Enum):
    """What raised an escalation work item."""

    MAPPING_DECISION = "MAPPING_DECISION"
    EVIDENCE_QUARANTINE = "EVIDENCE_QUARANTINE"
