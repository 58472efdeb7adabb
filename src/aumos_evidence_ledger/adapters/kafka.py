"""LedgerEventPublisher: Kafka domain event publishing for ledger events.

Publishes structured domain events to Kafka after every state-changing
operation, using aiokafka.

Events published:
- ledger.evidence.transitioned  : evidence changed lifecycle state
- ledger.mapping.decided        : Mapping Gate decision recorded
- ledger.escalation.created     : escalation work item created

All events include tenant_id and correlation_id for distributed tracing.
"""

import json
import uuid
from datetime import UTC, datetime
from typing import Any

from aiokafka import AIOKafkaProducer
from aiokafka.errors import KafkaError

from aumos_evidence_ledger.observability import get_logger

logger = get_logger(__name__)

# Kafka topic names for ledger events
TOPIC_LEDGER_EVIDENCE = "ledger.evidence"
TOPIC_LEDGER_MAPPING = "ledger.mapping"
TOPIC_LEDGER_ESCALATION = "ledger.escalation"

# Default bootstrap servers (overridden by settings)
_DEFAULT_BOOTSTRAP_SERVERS = "localhost:9092"

SOURCE_SERVICE = "aumos-evidence-ledger"


class LedgerEventPublisher:
    """Kafka event publisher for ledger domain events.

    Args:
        bootstrap_servers: Comma-separated Kafka bootstrap server addresses.
    """

    def __init__(self, bootstrap_servers: str = _DEFAULT_BOOTSTRAP_SERVERS) -> None:
        self._bootstrap_servers = bootstrap_servers
        self._producer: AIOKafkaProducer | None = None

    async def start(self) -> None:
        """Start the underlying Kafka producer.

        Called in the lifespan startup handler in main.py.
        """
        producer = AIOKafkaProducer(
            bootstrap_servers=self._bootstrap_servers,
            key_serializer=lambda key: key.encode("utf-8"),
            value_serializer=lambda value: json.dumps(value, sort_keys=True).encode("utf-8"),
        )
        await producer.start()
        self._producer = producer
        logger.info("LedgerEventPublisher started", bootstrap_servers=self._bootstrap_servers)

    async def stop(self) -> None:
        """Flush and close the Kafka producer."""
        if self._producer is not None:
            await self._producer.stop()
            self._producer = None
            logger.info("LedgerEventPublisher stopped")

    def _build_envelope(
        self,
        event_type: str,
        tenant_id: uuid.UUID,
        payload: dict[str, Any],
        correlation_id: str | None = None,
    ) -> dict[str, Any]:
        """Build a standard ledger event envelope."""
        return {
            "event_type": event_type,
            "tenant_id": str(tenant_id),
            "source_service": SOURCE_SERVICE,
            "occurred_at": datetime.now(UTC).isoformat(),
            "correlation_id": correlation_id,
            "payload": payload,
        }

    async def publish_evidence_transition(
        self,
        tenant_id: uuid.UUID,
        evidence_id: uuid.UUID,
        from_state: str | None,
        to_state: str,
        payload_hash: str | None,
        correlation_id: str | None = None,
    ) -> None:
        """Publish a ledger.evidence.transitioned event."""
        event = self._build_envelope(
            event_type="ledger.evidence.transitioned",
            tenant_id=tenant_id,
            payload={
                "evidence_id": str(evidence_id),
                "from_state": from_state,
                "to_state": to_state,
                "payload_hash": payload_hash,
            },
            correlation_id=correlation_id,
        )
        await self._publish(TOPIC_LEDGER_EVIDENCE, str(evidence_id), event)

    async def publish_mapping_decision(
        self,
        tenant_id: uuid.UUID,
        decision_id: uuid.UUID,
        entity_id: str,
        status: str,
        rule_version: str,
        correlation_id: str | None = None,
    ) -> None:
        """Publish a ledger.mapping.decided event."""
        event = self._build_envelope(
            event_type="ledger.mapping.decided",
            tenant_id=tenant_id,
            payload={
                "mapping_decision_id": str(decision_id),
                "entity_id": entity_id,
                "status": status,
                "rule_version": rule_version,
            },
            correlation_id=correlation_id,
        )
        await self._publish(TOPIC_LEDGER_MAPPING, entity_id, event)

    async def publish_escalation(
        self,
        tenant_id: uuid.UUID,
        work_item_id: uuid.UUID,
        reason_code: str,
        resolver_role: str,
        priority: str,
        correlation_id: str | None = None,
    ) -> None:
        """Publish a ledger.escalation.created event."""
        event = self._build_envelope(
            event_type="ledger.escalation.created",
            tenant_id=tenant_id,
            payload={
                "work_item_id": str(work_item_id),
                "reason_code": reason_code,
                "resolver_role": resolver_role,
                "priority": priority,
            },
            correlation_id=correlation_id,
        )
        await self._publish(TOPIC_LEDGER_ESCALATION, str(work_item_id), event)

    async def _publish(self, topic: str, key: str, event: dict[str, Any]) -> None:
        """Send an event to a Kafka topic.

        If the producer is not started (e.g., Kafka disabled), logs a warning
        and skips the publish. Broker errors are logged and not re-raised so a
        committed ledger transition is never reported as failed.

        Args:
            topic: Kafka topic name.
            key: Message partition key.
            event: Structured event envelope.
        """
        if self._producer is None:
            logger.warning(
                "LedgerEventPublisher not started, skipping Kafka publish",
                topic=topic,
                event_type=event.get("event_type"),
            )
            return

        try:
            await self._producer.send_and_wait(topic, value=event, key=key)
            logger.debug(
                "Ledger event published",
                topic=topic,
                event_type=event.get("event_type"),
                tenant_id=event.get("tenant_id"),
            )
        except KafkaError as exc:
            logger.error(
                "Failed to publish ledger event",
                topic=topic,
                event_type=event.get("event_type"),
                error=str(exc),
            )
