"""Payment domain events and the Kafka producer that ships them.

Events are staged in the outbox as `EventEnvelope` dicts and published to a
topic named after the event type under the configured prefix
(`paysettle.payments.paid`, `paysettle.webhooks.received`, ...). The payment
uuid is the message key so every event for one payment lands on the same
partition in order.
"""

import json
from datetime import datetime, timezone
from typing import Any
from uuid import uuid4

from aiokafka import AIOKafkaProducer
from pydantic import BaseModel, Field

from paysettle.common.config import settings


class EventEnvelope(BaseModel):
    event_id: str = Field(default_factory=lambda: str(uuid4()))
    event_type: str
    aggregate_type: str
    aggregate_id: str
    source: str = "paysettle"
    occurred_at: str = Field(default_factory=lambda: datetime.now(timezone.utc).isoformat())
    trace_id: str
    payload: dict[str, Any]


def topic_for(event_type: str, prefix: str | None = None) -> str:
    prefix = settings.kafka_topic_prefix if prefix is None else prefix
    return f"{prefix}{event_type}"


class KafkaBus:
    """Producer started on first publish and stopped with the app."""

    def __init__(self, bootstrap_servers: str | None = None) -> None:
        self.bootstrap_servers = bootstrap_servers or settings.kafka_bootstrap_servers
        self._producer: AIOKafkaProducer | None = None

    async def producer(self) -> AIOKafkaProducer:
        if self._producer is None:
            self._producer = AIOKafkaProducer(bootstrap_servers=self.bootstrap_servers, acks="all")
            await self._producer.start()
        return self._producer

    async def publish(self, topic: str, event: EventEnvelope) -> None:
        producer = await self.producer()
        await producer.send_and_wait(
            topic,
            json.dumps(event.model_dump()).encode("utf-8"),
            key=event.aggregate_id.encode("utf-8"),
            headers=[("event_type", event.event_type.encode("utf-8")), ("trace_id", event.trace_id.encode("utf-8"))],
        )

    async def close(self) -> None:
        if self._producer is not None:
            await self._producer.stop()
            self._producer = None
