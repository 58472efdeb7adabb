"""Service settings for aumos-evidence-ledger.

Settings use the AUMOS_LEDGER_ prefix and cover:
- Primary database (evidence, mapping decisions, escalation work items)
- Audit Wall (separate database for the append-only audit trail)
- Kafka domain event publishing
- Upstream collaborators (file storage, ERP connector) and their timeouts
- Mapping Gate rule sets
- Logging
"""

from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

_DEFAULT_RULESET_DIR = Path(__file__).parent / "mapping_gate" / "rulesets"


class Settings(BaseSettings):
    """Settings for aumos-evidence-ledger.

    Environment variable prefix: AUMOS_LEDGER_
    """

    service_name: str = "aumos-evidence-ledger"
    environment: str = Field(default="development", description="Deployment environment name.")
    host: str = Field(default="0.0.0.0", description="Interface the HTTP server binds to.")
    port: int = Field(default=8000, description="Port the HTTP server listens on.")

    # -------------------------------------------------------------------------
    # Primary database
    # -------------------------------------------------------------------------

    database_url: str = Field(
        default="",
        description="Async SQLAlchemy URL for the primary database (postgresql+asyncpg://...). "
        "Leave empty to run with in-memory repositories.",
    )
    db_pool_size: int = Field(default=10, description="Connection pool size for the primary DB.")
    db_max_overflow: int = Field(default=5, description="Max overflow connections above db_pool_size.")

    # -------------------------------------------------------------------------
    # Audit Wall: separate database for the append-only audit trail
    # -------------------------------------------------------------------------

    audit_db_url: str = Field(
        default="",
        description="Async SQLAlchemy URL for the SEPARATE audit database. "
        "The DB user should have only INSERT and SELECT grants on ledger_audit_events. "
        "Leave empty to keep the audit trail in memory.",
    )
    audit_db_pool_size: int = Field(
        default=5,
        description="Connection pool size for the audit DB. Audit writes are append-only.",
    )
    audit_db_max_overflow: int = Field(default=2, description="Max overflow connections above audit_db_pool_size.")
    audit_db_pool_timeout: int = Field(
        default=30,
        description="Seconds to wait for an audit DB connection before raising an error.",
    )
    audit_hash_chain_enabled: bool = Field(
        default=True,
        description="Link every audit event to its predecessor with a SHA-256 chain hash.",
    )

    # -------------------------------------------------------------------------
    # Kafka domain events
    # -------------------------------------------------------------------------

    kafka_enabled: bool = Field(default=False, description="Publish domain events to Kafka.")
    kafka_bootstrap_servers: str = Field(
        default="localhost:9092",
        description="Comma-separated Kafka bootstrap servers.",
    )

    # -------------------------------------------------------------------------
    # Upstream collaborators
    # -------------------------------------------------------------------------

    file_storage_url: str = Field(
        default="",
        description="Base URL of the file storage service that resolves attachment storage_uri values.",
    )
    erp_connector_url: str = Field(
        default="",
        description="Base URL of the ERP connector gateway used by the ERP_API channel.",
    )
    upstream_timeout_seconds: float = Field(
        default=10.0,
        description="Hard timeout for any upstream call. Exceeding it fails with UPSTREAM_TIMEOUT.",
    )

    # -------------------------------------------------------------------------
    # Mapping Gate
    # -------------------------------------------------------------------------

    ruleset_dir: Path = Field(
        default=_DEFAULT_RULESET_DIR,
        description="Directory containing versioned Mapping Gate rule set YAML files.",
    )
    default_rule_version: str = Field(
        default="2025.1",
        description="Rule set version used when a request does not pin one.",
    )
    near_certain_duplicate_blocks: bool = Field(
        default=False,
        description="Treat near-certain duplicates as a hard stop.",
    )
    mapping_auto_evaluate: bool = Field(
        default=True,
        description="Evaluate entities registered from sealed master-data evidence immediately.",
    )

    # -------------------------------------------------------------------------
    # Logging
    # -------------------------------------------------------------------------

    log_level: str = Field(default="INFO", description="Minimum log level.")
    log_json: bool = Field(default=True, description="Render logs as JSON lines.")

    model_config = SettingsConfigDict(env_prefix="AUMOS_LEDGER_")
