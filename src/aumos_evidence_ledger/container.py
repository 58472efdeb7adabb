"""Service wiring for the evidence ledger.

build_container() assembles repositories, collaborators, and services from
Settings. Empty database URLs select the in-memory repositories, so the
service and the test suite run without PostgreSQL.
"""

from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime

from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker

from aumos_evidence_ledger.adapters.audit_wall import SqlAuditRepository, create_audit_engine, create_audit_schema
from aumos_evidence_ledger.adapters.kafka import LedgerEventPublisher
from aumos_evidence_ledger.adapters.memory import (
    InMemoryAuditRepository,
    InMemoryEntityRepository,
    InMemoryEvidenceRepository,
    InMemoryMappingDecisionRepository,
    InMemoryWorkItemRepository,
)
from aumos_evidence_ledger.adapters.repositories import (
    SqlEntityRepository,
    SqlEvidenceRepository,
    SqlMappingDecisionRepository,
    SqlWorkItemRepository,
    create_primary_engine,
    create_primary_schema,
)
from aumos_evidence_ledger.adapters.upstream import HttpErpConnector, HttpFileStorage
from aumos_evidence_ledger.channels.registry import ChannelRegistry, build_channel_registry
from aumos_evidence_ledger.core.audit import AuditService
from aumos_evidence_ledger.core.interfaces import (
    IAuditRepository,
    IEntityRepository,
    IEvidenceRepository,
    IMappingDecisionRepository,
    IWorkItemRepository,
)
from aumos_evidence_ledger.core.ledger import EvidenceLedger
from aumos_evidence_ledger.core.orchestrator import IngestionOrchestrator
from aumos_evidence_ledger.escalation.router import EscalationRouter
from aumos_evidence_ledger.mapping_gate.rules import RulesetRegistry
from aumos_evidence_ledger.mapping_gate.service import MappingGateService
from aumos_evidence_ledger.observability import get_logger
from aumos_evidence_ledger.parity.enforcer import ParityEnforcer
from aumos_evidence_ledger.settings import Settings

logger = get_logger(__name__)


def _utcnow() -> datetime:
    return datetime.now(UTC)


@dataclass
class Repositories:
    evidence: IEvidenceRepository
    audit: IAuditRepository
    decisions: IMappingDecisionRepository
    entities: IEntityRepository
    work_items: IWorkItemRepository


@dataclass
class LedgerContainer:
    """Every long-lived service the API needs, stored on app.state.container."""

    settings: Settings
    repositories: Repositories
    publisher: LedgerEventPublisher
    channels: ChannelRegistry
    audit_service: AuditService
    ledger: EvidenceLedger
    rulesets: RulesetRegistry
    escalations: EscalationRouter
    mapping_gate: MappingGateService
    orchestrator: IngestionOrchestrator
    parity: ParityEnforcer
    engines: list[AsyncEngine] = field(default_factory=list)

    async def close(self) -> None:
        await self.publisher.stop()
        for engine in self.engines:
            await engine.dispose()


def in_memory_repositories() -> Repositories:
    return Repositories(
        evidence=InMemoryEvidenceRepository(),
        audit=InMemoryAuditRepository(),
        decisions=InMemoryMappingDecisionRepository(),
        entities=InMemoryEntityRepository(),
        work_items=InMemoryWorkItemRepository(),
    )


async def _sql_repositories(settings: Settings, repos: Repositories, engines: list[AsyncEngine]) -> None:
    if settings.database_url:
        engine = create_primary_engine(settings.database_url, settings.db_pool_size, settings.db_max_overflow)
        await create_primary_schema(engine)
        engines.append(engine)
        sessions = async_sessionmaker(engine, expire_on_commit=False)
        repos.evidence = SqlEvidenceRepository(sessions)
        repos.decisions = SqlMappingDecisionRepository(sessions)
        repos.entities = SqlEntityRepository(sessions)
        repos.work_items = SqlWorkItemRepository(sessions)
        logger.info("Primary database connected")

    if settings.audit_db_url:
        audit_engine = create_audit_engine(
            settings.audit_db_url,
            pool_size=settings.audit_db_pool_size,
            max_overflow=settings.audit_db_max_overflow,
            pool_timeout=settings.audit_db_pool_timeout,
        )
        await create_audit_schema(audit_engine)
        engines.append(audit_engine)
        repos.audit = SqlAuditRepository(async_sessionmaker(audit_engine, expire_on_commit=False))
        logger.info("Audit Wall database connected")


def assemble(
    settings: Settings,
    repositories: Repositories,
    publisher: LedgerEventPublisher,
    clock: Callable[[], datetime] = _utcnow,
    engines: list[AsyncEngine] | None = None,
) -> LedgerContainer:
    """Wire services on top of ready repositories and a publisher."""
    file_storage = (
        HttpFileStorage(settings.file_storage_url, timeout_seconds=settings.upstream_timeout_seconds)
        if settings.file_storage_url
        else None
    )
    erp_connector = (
        HttpErpConnector(settings.erp_connector_url, timeout_seconds=settings.upstream_timeout_seconds)
        if settings.erp_connector_url
        else None
    )
    channels = build_channel_registry(
        file_storage=file_storage,
        erp_connector=erp_connector,
        clock=clock,
        upstream_timeout_seconds=settings.upstream_timeout_seconds,
    )
    audit_service = AuditService(repositories.audit, hash_chain=settings.audit_hash_chain_enabled)
    ledger = EvidenceLedger(repositories.evidence, audit_service, publisher, clock=clock, channel_rules=channels)
    rulesets = RulesetRegistry(settings.ruleset_dir, settings.default_rule_version)
    escalations = EscalationRouter(repositories.work_items, audit_service, publisher, clock=clock)
    mapping_gate = MappingGateService(
        decision_repo=repositories.decisions,
        entity_repo=repositories.entities,
        ledger=ledger,
        audit_service=audit_service,
        publisher=publisher,
        rulesets=rulesets,
        router=escalations,
        near_certain_blocks=settings.near_certain_duplicate_blocks,
        clock=clock,
    )
    orchestrator = IngestionOrchestrator(
        channels=channels,
        ledger=ledger,
        audit_service=audit_service,
        mapping_gate=mapping_gate,
        router=escalations,
        auto_evaluate=settings.mapping_auto_evaluate,
    )
    return LedgerContainer(
        settings=settings,
        repositories=repositories,
        publisher=publisher,
        channels=channels,
        audit_service=audit_service,
        ledger=ledger,
        rulesets=rulesets,
        escalations=escalations,
        mapping_gate=mapping_gate,
        orchestrator=orchestrator,
        parity=ParityEnforcer(ledger, clock=clock),
        engines=engines or [],
    )


async def build_container(settings: Settings) -> LedgerContainer:
    """Connect storage and Kafka according to settings and wire all services."""
    repositories = in_memory_repositories()
    engines: list[AsyncEngine] = []
    await _sql_repositories(settings, repositories, engines)

    publisher = LedgerEventPublisher(bootstrap_servers=settings.kafka_bootstrap_servers)
    if settings.kafka_enabled:
        await publisher.start()
        logger.info("Kafka publisher ready", bootstrap_servers=settings.kafka_bootstrap_servers)
    else:
        logger.info("Kafka publishing disabled")

    return assemble(settings, repositories, publisher, engines=engines)
